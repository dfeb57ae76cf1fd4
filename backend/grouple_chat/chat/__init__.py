"""Real-time booking chat: authorization, sessions, history and rooms."""

from .authorization import AuthorizationResolver
from .manager import ChatCoordinator
from .message_store import ChatMessageStore
from .registry import SessionRegistry
from .schemas import BookingAuthorization, ChatMessage, Session, UserRole

__all__ = [
    "AuthorizationResolver",
    "ChatCoordinator",
    "ChatMessageStore",
    "SessionRegistry",
    "BookingAuthorization",
    "ChatMessage",
    "Session",
    "UserRole",
]
