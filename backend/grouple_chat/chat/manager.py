"""Chat room coordinator for booking chats.

This module owns the live state of every booking chat room: which sessions
are joined (via the SessionRegistry) and each booking's message history
(an in-memory cache backed by the ChatMessageStore). It drives each
connection through its lifecycle:

    CONNECTING -> AUTHORIZING -> JOINED -> CLOSED
                       \\-> REJECTED -> CLOSED

Key features:
    - Authorization of customers and restaurant admins per booking
    - History hydration on first join (first joiner pays the load)
    - Persist-then-broadcast: a message is stored before anyone sees it
    - Presence events (userJoined / userLeft)
    - Admin clear-history, reflected live in connected clients
    - Automatic dead connection cleanup during broadcast

Ordering:
    Join, send, leave and clear for one booking run under that booking's
    asyncio.Lock, so every participant observes messages in the same order
    and a message's persist + broadcast finishes before the next one starts.
    Different bookings never wait on each other.

Thread Safety:
    Designed for a single asyncio event loop. Blocking store calls run in
    the default executor. It is NOT safe to share across processes.
"""
import asyncio
import logging
from typing import Dict, List, Optional

from fastapi import WebSocket

from grouple_chat.errors import ChatAuthorizationError, ClaimsValidationError, StoreError

from .authorization import AuthorizationResolver
from .message_store import ChatMessageStore
from .registry import SessionRegistry
from .schemas import (
    ChatMessage,
    ConnectClaims,
    ConnectionState,
    PresenceNotice,
    SendMessageEvent,
    ServerEvent,
    Session,
    server_frame,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_MESSAGE_LENGTH = 2000


class ChatCoordinator:
    """Coordinates booking chat rooms.

    One instance is built at startup and shared by every WebSocket and HTTP
    handler through ``app.state``.

    Attributes:
        resolver: Authorization resolver for booking participants.
        message_store: Durable message persistence.
        registry: Connected sessions.
        history: booking_id -> ordered messages (only hydrated bookings).
        max_message_length: Longest accepted message body.
    """

    def __init__(
        self,
        resolver: AuthorizationResolver,
        message_store: ChatMessageStore,
        registry: Optional[SessionRegistry] = None,
        max_message_length: int = DEFAULT_MAX_MESSAGE_LENGTH,
    ) -> None:
        self.resolver = resolver
        self.message_store = message_store
        self.registry = registry or SessionRegistry()
        self.max_message_length = max_message_length

        # booking_id -> list of messages, oldest first
        self.history: Dict[str, List[ChatMessage]] = {}

        # booking_id -> lock serializing that booking's events
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, booking_id: str) -> asyncio.Lock:
        lock = self._locks.get(booking_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[booking_id] = lock
        return lock

    # =========================================================================
    # Connection lifecycle
    # =========================================================================

    async def join(self, websocket: WebSocket, claims: ConnectClaims) -> Optional[Session]:
        """Authorize an accepted connection and join it to its booking room.

        On success the client receives the booking's history and the other
        participants receive ``userJoined``. On failure the client receives
        ``error`` and ``accessDenied``; the caller closes the socket.

        Args:
            websocket: An accepted WebSocket connection.
            claims: Validated identity claims from the query string.

        Returns:
            The registered Session, or None if the connection was rejected or
            went away while it was being authorized.
        """
        booking_id = claims.bookingId
        state = ConnectionState.AUTHORIZING
        logger.info(
            f"[Chat] {claims.username} ({claims.userId}, {claims.role}) "
            f"{state.value} for booking {booking_id}"
        )

        authorized = await self.resolver.authorize(
            booking_id, claims.userId, claims.role, claims.restaurantUserId
        )
        if not authorized:
            state = ConnectionState.REJECTED
            logger.warning(f"[Chat] User {claims.userId} {state.value} for booking {booking_id}")
            denied = ChatAuthorizationError()
            await self._safe_send(websocket, server_frame(ServerEvent.ERROR, {"message": denied.message}))
            await self._safe_send(websocket, server_frame(ServerEvent.ACCESS_DENIED))
            return None

        async with self._lock_for(booking_id):
            session = Session(
                websocket=websocket,
                user_id=claims.userId,
                username=claims.username,
                booking_id=booking_id,
                role=claims.role,
            )
            self.registry.add(session)

            history = await self._ensure_history(booking_id)
            delivered = await self._safe_send(
                websocket, server_frame(ServerEvent.HISTORY, history)
            )
            if not delivered:
                # Client left while we were authorizing; discard quietly.
                self.registry.remove(websocket)
                logger.info(f"[Chat] {claims.username} left booking {booking_id} before joining")
                return None

            state = ConnectionState.JOINED
            logger.info(
                f"[Chat] {claims.username} {state.value} booking room {booking_id} "
                f"({self.registry.count(booking_id)} connected)"
            )
            await self.broadcast(
                server_frame(ServerEvent.USER_JOINED, PresenceNotice(username=claims.username)),
                booking_id,
                exclude_websocket=websocket,
            )
        return session

    async def handle_send_message(
        self, session: Session, event: SendMessageEvent
    ) -> Optional[ChatMessage]:
        """Persist a message and broadcast it to the booking room.

        The sender identity is always taken from the session. The message is
        broadcast to every participant, sender included, only after it has
        been stored.

        Returns:
            The stored message, or None if it was dropped.

        Raises:
            ClaimsValidationError: If the payload is empty, too long, or
                addressed to a different booking than the session's.
        """
        if not event.message.strip():
            raise ClaimsValidationError("Invalid message format: message is required")
        if len(event.message) > self.max_message_length:
            raise ClaimsValidationError(
                f"Message exceeds {self.max_message_length} characters"
            )
        if event.bookingId != session.booking_id:
            raise ClaimsValidationError("Message booking does not match this chat")

        booking_id = session.booking_id
        async with self._lock_for(booking_id):
            authorization = await self.resolver.resolve(booking_id)
            if authorization is None:
                logger.error(
                    f"[Chat] Could not find restaurant for booking {booking_id}; "
                    f"dropping message from {session.user_id}"
                )
                return None

            message = ChatMessage(
                bookingId=booking_id,
                restaurantId=authorization.restaurantId,
                senderId=session.user_id,
                sender=session.username,
                message=event.message,
            )

            loop = asyncio.get_event_loop()
            try:
                await loop.run_in_executor(None, self.message_store.append_message, message)
            except StoreError as e:
                logger.error(f"[Chat] Failed to persist message for booking {booking_id}: {e}")
                await self._safe_send(session.websocket, server_frame(
                    ServerEvent.ERROR, {"message": "Failed to process message"}
                ))
                return None

            # Bookings not yet hydrated pick the message up from the store.
            cached = self.history.get(booking_id)
            if cached is not None:
                cached.append(message)

            logger.info(
                f"[Chat] Broadcasting message {message.id} from {session.username} "
                f"to {self.registry.count(booking_id)} connections in booking {booking_id}"
            )
            await self.broadcast(server_frame(ServerEvent.MESSAGE, message), booking_id)
        return message

    async def disconnect(self, websocket: WebSocket) -> Optional[Session]:
        """Remove a connection and tell the rest of its room.

        Graceful closes and dropped connections both end up here.

        Returns:
            The removed Session, or None if the connection never joined.
        """
        session = self.registry.remove(websocket)
        if session is None:
            return None

        logger.info(f"[Chat] {session.username} left booking room {session.booking_id}")
        async with self._lock_for(session.booking_id):
            await self.broadcast(
                server_frame(ServerEvent.USER_LEFT, PresenceNotice(username=session.username)),
                session.booking_id,
            )
        return session

    # =========================================================================
    # History
    # =========================================================================

    async def _ensure_history(self, booking_id: str) -> List[ChatMessage]:
        """Return the cached history, loading it from the store on a miss.

        A failed load is not cached, so the next access tries again.
        Callers hold the booking's lock.
        """
        cached = self.history.get(booking_id)
        if cached is not None:
            return cached

        loop = asyncio.get_event_loop()
        try:
            messages = await loop.run_in_executor(
                None, self.message_store.list_messages_for_booking, booking_id
            )
        except StoreError as e:
            logger.error(f"[Chat] Error loading message history for booking {booking_id}: {e}")
            return []

        self.history[booking_id] = messages
        logger.info(f"[Chat] Loaded {len(messages)} messages for booking {booking_id}")
        return messages

    async def get_history(self, booking_id: str) -> List[ChatMessage]:
        """Return a copy of a booking's history, oldest first.

        Bookings that do not resolve (unknown or deleted) have no history;
        nothing is cached for them.
        """
        if await self.resolver.resolve(booking_id) is None:
            return []
        async with self._lock_for(booking_id):
            return list(await self._ensure_history(booking_id))

    async def preload_history(self) -> int:
        """Hydrate the cache for every booking with persisted messages.

        Returns:
            Number of bookings hydrated.
        """
        loop = asyncio.get_event_loop()
        try:
            booking_ids = await loop.run_in_executor(None, self.message_store.list_booking_ids)
        except StoreError as e:
            logger.error(f"[Chat] Error listing bookings with chat history: {e}")
            return 0

        loaded = 0
        for booking_id in booking_ids:
            if await self.resolver.resolve(booking_id) is None:
                logger.warning(f"[Chat] Ignoring chat history of unknown booking {booking_id}")
                continue
            async with self._lock_for(booking_id):
                await self._ensure_history(booking_id)
            loaded += 1
        logger.info(f"[Chat] Preloaded chat history for {loaded} of {len(booking_ids)} bookings")
        return loaded

    async def clear_history(self, booking_id: str, admin_id: str) -> bool:
        """Delete a booking's chat history on behalf of its restaurant admin.

        Connected clients immediately receive an empty ``history`` event.

        Args:
            booking_id: Booking whose history is cleared.
            admin_id: User ID of the admin requesting the clear.

        Returns:
            True if the history was cleared, False if the request was refused
            or the store failed (nothing is changed in either case).
        """
        authorization = await self.resolver.resolve(booking_id)
        if authorization is None or not authorization.adminId or authorization.adminId != admin_id:
            logger.warning(
                f"[Chat] User {admin_id} not authorized to clear history for booking {booking_id}"
            )
            return False

        async with self._lock_for(booking_id):
            loop = asyncio.get_event_loop()
            try:
                deleted = await loop.run_in_executor(
                    None, self.message_store.delete_messages_for_booking, booking_id
                )
            except StoreError as e:
                logger.error(f"[Chat] Error clearing message history for booking {booking_id}: {e}")
                return False

            self.history[booking_id] = []
            await self.broadcast(server_frame(ServerEvent.HISTORY, []), booking_id)

        logger.info(f"[Chat] Cleared {deleted} messages for booking {booking_id}")
        return True

    # =========================================================================
    # Broadcasting
    # =========================================================================

    async def broadcast(
        self,
        frame: dict,
        booking_id: str,
        exclude_websocket: Optional[WebSocket] = None,
    ) -> None:
        """Send a frame to every session of a booking concurrently.

        Sessions whose send fails are removed, and the remaining participants
        are told they left.

        Args:
            frame: JSON-serializable frame to send.
            booking_id: Room to broadcast to.
            exclude_websocket: Connection to skip (e.g. the one that joined).
        """
        pending = [(frame, exclude_websocket)]
        while pending:
            current, excluded = pending.pop(0)
            targets = [
                s for s in self.registry.list_by_booking(booking_id)
                if s.websocket is not excluded
            ]
            if not targets:
                continue

            results = await asyncio.gather(
                *[self._safe_send(s.websocket, current) for s in targets],
                return_exceptions=True
            )

            for session, success in zip(targets, results):
                if success is True:
                    continue
                if self.registry.remove(session.websocket) is not None:
                    logger.debug(f"Removed dead connection from booking {booking_id}")
                    pending.append((
                        server_frame(ServerEvent.USER_LEFT, PresenceNotice(username=session.username)),
                        None,
                    ))

    async def _safe_send(self, connection: WebSocket, message: dict) -> bool:
        """Send a frame to a WebSocket connection with error handling.

        Returns:
            True if successful, False if connection failed.
        """
        try:
            await connection.send_json(message)
            return True
        except Exception as e:
            logger.debug(f"Failed to send to connection: {e}")
            return False

    # =========================================================================
    # Queries
    # =========================================================================

    def get_active_sessions(self, booking_id: str) -> List[Session]:
        """Get the sessions currently joined to a booking."""
        return self.registry.list_by_booking(booking_id)

    def get_room_size(self, booking_id: str) -> int:
        """Get the number of active connections in a booking room."""
        return self.registry.count(booking_id)

    def get_message_count(self, booking_id: str) -> int:
        """Get the number of cached messages for a booking."""
        return len(self.history.get(booking_id, []))
