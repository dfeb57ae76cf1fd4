"""In-memory registry of connected chat sessions.

Maps each live WebSocket to the Session it authorized as, and indexes
sessions by booking for broadcasting. Nothing here is persisted.

Thread Safety:
    Designed for a single asyncio event loop; only the ChatCoordinator
    mutates it. Running several worker processes needs an external pub/sub
    layer keyed by booking ID instead of this registry.
"""
import logging
from typing import Dict, List, Optional

from fastapi import WebSocket

from .schemas import Session

logger = logging.getLogger(__name__)


class SessionRegistry:
    """Tracks which session each connection belongs to."""

    def __init__(self) -> None:
        # websocket -> session
        self._sessions: Dict[WebSocket, Session] = {}
        # booking_id -> sessions in join order
        self._by_booking: Dict[str, List[Session]] = {}

    def add(self, session: Session) -> None:
        """Register a session. A connection already registered is replaced."""
        self.remove(session.websocket)
        self._sessions[session.websocket] = session
        self._by_booking.setdefault(session.booking_id, []).append(session)

    def remove(self, websocket: WebSocket) -> Optional[Session]:
        """Unregister a connection.

        Returns:
            The removed Session, or None if the connection was not registered.
        """
        session = self._sessions.pop(websocket, None)
        if session is None:
            return None

        sessions = self._by_booking.get(session.booking_id)
        if sessions is not None:
            sessions.remove(session)
            if not sessions:
                del self._by_booking[session.booking_id]
        return session

    def get(self, websocket: WebSocket) -> Optional[Session]:
        return self._sessions.get(websocket)

    def list_by_booking(self, booking_id: str) -> List[Session]:
        """Return a copy of the sessions joined to a booking, in join order."""
        return list(self._by_booking.get(booking_id, []))

    def count(self, booking_id: Optional[str] = None) -> int:
        if booking_id is None:
            return len(self._sessions)
        return len(self._by_booking.get(booking_id, []))
