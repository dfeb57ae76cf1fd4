"""Chat router providing WebSocket and HTTP endpoints.

This module provides:
    - WebSocket /ws/chat: Real-time booking chat
    - GET /bookings/{booking_id}/chat/history: Persisted message history
    - GET /bookings/{booking_id}/chat/participants: Who is connected
    - DELETE /bookings/{booking_id}/chat/history: Admin clear-history

The WebSocket protocol supports:
    - Authorization of the booking's customer and restaurant admin
    - Message history delivery on connect
    - User join/leave notifications
    - Real-time message broadcasting

Connection query parameters:
    bookingId, userId, username, role ("user" | "admin"), and
    restaurantUserId (admins only).

The read-only HTTP endpoints take the same userId, role and
restaurantUserId parameters and apply the same authorization.
"""
import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.requests import HTTPConnection

from grouple_chat.errors import ChatAuthorizationError, ClaimsValidationError

from .manager import ChatCoordinator
from .schemas import (
    ConnectClaims,
    ConnectionState,
    ServerEvent,
    parse_client_frame,
    server_frame,
)

logger = logging.getLogger(__name__)

router = APIRouter()

# 1008 = Policy Violation
POLICY_VIOLATION = 1008


def get_coordinator(connection: HTTPConnection) -> ChatCoordinator:
    """Return the ChatCoordinator built during application startup."""
    return connection.app.state.chat_coordinator


async def require_participant(
    booking_id: str,
    userId: str = Query(..., min_length=1, description="User ID of the caller"),
    role: str = Query(..., min_length=1, description='"user" or "admin"'),
    restaurantUserId: Optional[str] = Query(None, description="Admin's own user ID (admins only)"),
    coordinator: ChatCoordinator = Depends(get_coordinator),
) -> str:
    """Allow only the booking's customer or restaurant admin through.

    Raises:
        HTTPException: 403 if the caller may not access the booking's chat.
    """
    allowed = await coordinator.resolver.authorize(booking_id, userId, role, restaurantUserId)
    if not allowed:
        error = ChatAuthorizationError()
        raise HTTPException(status_code=error.status_code, detail=error.message)
    return userId


@router.get("/bookings/{booking_id}/chat/history")
async def get_chat_history(
    booking_id: str,
    _caller: str = Depends(require_participant),
    coordinator: ChatCoordinator = Depends(get_coordinator),
) -> dict:
    """Get the full message history of a booking, oldest first.

    Example:
        GET /bookings/42/chat/history?userId=11&role=user
    """
    messages = await coordinator.get_history(booking_id)
    return {
        "messages": [msg.model_dump(mode="json") for msg in messages],
        "count": len(messages),
    }


@router.get("/bookings/{booking_id}/chat/participants")
async def get_chat_participants(
    booking_id: str,
    _caller: str = Depends(require_participant),
    coordinator: ChatCoordinator = Depends(get_coordinator),
) -> dict:
    """List the sessions currently connected to a booking's chat."""
    sessions = coordinator.get_active_sessions(booking_id)
    return {
        "participants": [s.to_dict() for s in sessions],
        "count": len(sessions),
    }


@router.delete("/bookings/{booking_id}/chat/history")
async def clear_chat_history(
    booking_id: str,
    adminId: str = Query(..., min_length=1, description="User ID of the requesting admin"),
    coordinator: ChatCoordinator = Depends(get_coordinator),
) -> dict:
    """Clear a booking's chat history (restaurant admin only).

    Connected clients receive an empty ``history`` event.

    Raises:
        HTTPException: 403 if the requester does not own the booking's
            restaurant or the history could not be cleared.
    """
    cleared = await coordinator.clear_history(booking_id, adminId)
    if not cleared:
        error = ChatAuthorizationError("Not allowed to clear this chat history")
        raise HTTPException(status_code=error.status_code, detail=error.message)
    return {"cleared": True, "bookingId": booking_id}


@router.websocket("/ws/chat")
async def websocket_chat_endpoint(
    websocket: WebSocket,
    coordinator: ChatCoordinator = Depends(get_coordinator),
) -> None:
    """WebSocket endpoint for real-time chat about one booking.

    Protocol Flow:
        1. Client connects with its claims in the query string
           → on missing claims: {type: "error"} and close
           → on failed authorization: {type: "error"}, {type: "accessDenied"}, close
        2. Server sends: {type: "history", data: [messages]}
           Others receive: {type: "userJoined", data: {username, timestamp}}
        3. Client sends: {type: "sendMessage", data: {bookingId, message, ...}}
           → Server broadcasts: {type: "message", data: message} (sender included)
        4. On disconnect → others receive {type: "userLeft", data: {...}}
    """
    await websocket.accept()

    try:
        claims = ConnectClaims.from_query(websocket.query_params)
    except ClaimsValidationError as e:
        logger.warning(f"[WS] Rejecting connection: {e.message}")
        await websocket.send_json(server_frame(ServerEvent.ERROR, {"message": e.message}))
        await websocket.close(code=POLICY_VIOLATION)
        return

    logger.info(
        f"[WS] User connected: {claims.username}, ID: {claims.userId}, "
        f"Booking ID: {claims.bookingId}, Role: {claims.role}"
    )

    session = await coordinator.join(websocket, claims)
    if session is None:
        try:
            await websocket.close(code=POLICY_VIOLATION)
        except RuntimeError:
            # Already closed by the client
            pass
        return

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000))
            try:
                # Text and binary frames carry the same JSON payload
                event = parse_client_frame(message.get("text") or message.get("bytes"))
                await coordinator.handle_send_message(session, event)
            except ClaimsValidationError as e:
                logger.debug(f"[WS] Invalid frame from {session.user_id}: {e.message}")
                await websocket.send_json(server_frame(ServerEvent.ERROR, {"message": e.message}))
    except WebSocketDisconnect:
        pass
    finally:
        # Presence cleanup must finish even if this task is cancelled
        await asyncio.shield(coordinator.disconnect(websocket))
        logger.info(
            f"[WS] {session.username} {ConnectionState.CLOSED.value} "
            f"(booking {session.booking_id})"
        )
