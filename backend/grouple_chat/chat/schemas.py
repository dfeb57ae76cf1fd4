"""Data models for the booking chat rooms.

Wire format:
    Every frame, in both directions, is a JSON object
    ``{"type": <event name>, "data": <payload>}``.

Server -> client events:
    - history: list of ChatMessage (sent on join, and to the whole room
      after an admin clears the history)
    - message: a single ChatMessage
    - userJoined / userLeft: PresenceNotice
    - error: {"message": str}
    - accessDenied: no payload

Client -> server events:
    - sendMessage: SendMessageEvent
"""
import json
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from fastapi import WebSocket
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from grouple_chat.errors import ClaimsValidationError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Enums
# =============================================================================


class UserRole(str, Enum):
    """Role a connection claims in a booking chat.

    Attributes:
        USER: The customer who made the booking.
        ADMIN: The owner of the booking's restaurant.
    """
    USER = "user"
    ADMIN = "admin"


class ServerEvent(str, Enum):
    HISTORY = "history"
    MESSAGE = "message"
    USER_JOINED = "userJoined"
    USER_LEFT = "userLeft"
    ERROR = "error"
    ACCESS_DENIED = "accessDenied"


class ClientEvent(str, Enum):
    SEND_MESSAGE = "sendMessage"


class ConnectionState(str, Enum):
    """Lifecycle of a single chat connection.

    CONNECTING -> AUTHORIZING -> JOINED -> CLOSED, or
    AUTHORIZING -> REJECTED -> CLOSED.
    """
    CONNECTING = "connecting"
    AUTHORIZING = "authorizing"
    JOINED = "joined"
    REJECTED = "rejected"
    CLOSED = "closed"


# =============================================================================
# Messages
# =============================================================================


class ChatMessage(BaseModel):
    """A persisted chat message.

    Attributes:
        id: Unique message identifier (server-generated UUID).
        bookingId: Booking whose room the message belongs to.
        restaurantId: Restaurant of the booking (denormalized for indexing).
        senderId: User ID of the sender.
        sender: Display name of the sender.
        message: Message body.
        timestamp: When the server accepted the message (UTC).
    """
    id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        description="Unique message ID"
    )
    bookingId: str = Field(..., description="Booking ID this message belongs to")
    restaurantId: str = Field(..., description="Restaurant ID of the booking")
    senderId: str = Field(..., description="User ID of the sender")
    sender: str = Field(..., description="Display name of the sender")
    message: str = Field(..., description="Message body")
    timestamp: datetime = Field(
        default_factory=utcnow,
        description="Server timestamp (UTC)"
    )


class PresenceNotice(BaseModel):
    """Payload of userJoined / userLeft events."""
    username: str
    timestamp: datetime = Field(default_factory=utcnow)


# =============================================================================
# Inbound events
# =============================================================================


class ConnectClaims(BaseModel):
    """Identity claims carried in the WebSocket query string.

    ``restaurantUserId`` is only required for admins: it is the admin's own
    user ID and must match both ``userId`` and the restaurant's owner.
    """
    bookingId: str = Field(..., min_length=1)
    userId: str = Field(..., min_length=1)
    username: str = Field(..., min_length=1)
    role: str = Field(..., min_length=1)
    restaurantUserId: Optional[str] = None

    @model_validator(mode="after")
    def _admin_needs_counterparty(self) -> "ConnectClaims":
        if self.role == UserRole.ADMIN.value and not self.restaurantUserId:
            raise ValueError("restaurantUserId is required for admin connections")
        return self

    @classmethod
    def from_query(cls, params: Any) -> "ConnectClaims":
        """Build claims from a query-parameter mapping.

        Raises:
            ClaimsValidationError: If a required claim is missing or empty.
        """
        fields = ("bookingId", "userId", "username", "role", "restaurantUserId")
        raw = {name: params.get(name) for name in fields if params.get(name) is not None}
        try:
            return cls(**raw)
        except ValidationError as e:
            raise ClaimsValidationError(f"Missing required parameters: {_summarize(e)}") from e


class SendMessageEvent(BaseModel):
    """Payload of a client ``sendMessage`` event.

    ``senderId`` and ``sender`` are accepted for compatibility with existing
    clients; the server always uses the identity of the session instead.
    """
    bookingId: str
    senderId: Optional[str] = None
    sender: Optional[str] = None
    message: str = ""

    @field_validator("bookingId", "senderId", mode="before")
    @classmethod
    def _ids_as_strings(cls, value: Any) -> Any:
        # Web clients send numeric IDs
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value


def parse_client_frame(frame: Any) -> SendMessageEvent:
    """Validate a raw client frame into a typed event.

    Args:
        frame: A decoded JSON object, or the raw text or bytes of a frame.

    Raises:
        ClaimsValidationError: On invalid JSON, unknown event types or
            malformed payloads.
    """
    if isinstance(frame, (str, bytes)):
        try:
            frame = json.loads(frame)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ClaimsValidationError("Invalid message format: not valid JSON") from e

    if not isinstance(frame, dict):
        raise ClaimsValidationError("Invalid message format: expected an object")

    event_type = frame.get("type")
    if event_type != ClientEvent.SEND_MESSAGE.value:
        raise ClaimsValidationError(f"Unknown event type: {event_type}")

    data = frame.get("data")
    if not isinstance(data, dict):
        raise ClaimsValidationError("Invalid message format: data is required")
    try:
        return SendMessageEvent(**data)
    except (ValidationError, TypeError) as e:
        raise ClaimsValidationError(f"Invalid message format: {e}") from e


def _summarize(error: ValidationError) -> str:
    parts = []
    for err in error.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "claims"
        parts.append(f"{loc}: {err.get('msg', 'invalid')}")
    return "; ".join(parts)


# =============================================================================
# Server-side state
# =============================================================================


class BookingAuthorization(BaseModel):
    """The identities allowed into one booking's chat.

    ``adminId`` is empty when the booking's restaurant could not be found;
    admins are then always refused.
    """
    customerId: str
    adminId: str = ""
    restaurantId: str


@dataclass(eq=False)
class Session:
    """An authorized connection's identity and room membership."""
    websocket: WebSocket
    user_id: str
    username: str
    booking_id: str
    role: str
    connected_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "userId": self.user_id,
            "username": self.username,
            "bookingId": self.booking_id,
            "role": self.role,
            "connectedAt": self.connected_at,
        }


def server_frame(event: ServerEvent, data: Any = None) -> dict:
    """Build an outbound frame, serializing pydantic payloads to JSON types."""
    if isinstance(data, BaseModel):
        data = data.model_dump(mode="json")
    elif isinstance(data, list):
        data = [
            item.model_dump(mode="json") if isinstance(item, BaseModel) else item
            for item in data
        ]
    return {"type": event.value, "data": data}
