"""Booking chat authorization.

Decides who may join a booking's chat: the customer who made the booking,
and the admin who owns the booking's restaurant. The two identities (plus
the restaurant ID, needed to stamp messages) form an authorization triple
that is cached per booking for the lifetime of the process. A booking's
customer and restaurant never change after creation, so entries are never
expired.

Resolution is lazy: a cache miss loads the booking from the BookingStore.
``preload()`` warms the cache at startup and must agree with lazy
resolution for every booking.

Every failure fails closed. Store errors are logged and treated as an
unresolvable booking; nothing is retried here (clients reconnect).

Usage:
    resolver = AuthorizationResolver(booking_store)
    await resolver.preload()
    allowed = await resolver.authorize("42", "11", "user", None)
"""
import asyncio
import logging
from typing import Dict, Optional

from grouple_chat.bookings import BookingStore, BookingWithOwner
from grouple_chat.errors import StoreError

from .schemas import BookingAuthorization, UserRole

logger = logging.getLogger(__name__)


def _to_authorization(record: BookingWithOwner) -> Optional[BookingAuthorization]:
    """Build the triple for a booking, or None if it has no restaurant."""
    booking = record.booking
    if booking.restaurant_id is None:
        return None
    owner = record.restaurant_owner_id
    return BookingAuthorization(
        customerId=str(booking.user_id),
        adminId=str(owner) if owner is not None else "",
        restaurantId=str(booking.restaurant_id),
    )


class AuthorizationResolver:
    """Resolves and caches booking authorization triples.

    Attributes:
        allow_unverified: When True, connections that fail the identity
            checks are let into bookings that do resolve. Local debugging
            only; every use is logged as a warning.
    """

    def __init__(self, booking_store: BookingStore, allow_unverified: bool = False) -> None:
        self._store = booking_store
        self.allow_unverified = allow_unverified
        # booking_id -> authorization triple
        self._cache: Dict[str, BookingAuthorization] = {}

        if allow_unverified:
            logger.warning(
                "[Auth] allow_unverified_connections is ON: chat identity checks "
                "are not enforced. Never enable this in production."
            )

    async def resolve(self, booking_id: str) -> Optional[BookingAuthorization]:
        """Return the authorization triple for a booking.

        Args:
            booking_id: The booking ID as sent by the client.

        Returns:
            The cached or freshly loaded triple, or None if the booking (or its
            restaurant reference) does not exist or could not be loaded.
        """
        cached = self._cache.get(booking_id)
        if cached is not None:
            return cached

        try:
            numeric_id = int(booking_id)
        except (TypeError, ValueError):
            logger.warning(f"[Auth] Invalid booking id {booking_id!r}")
            return None

        loop = asyncio.get_event_loop()
        try:
            record = await loop.run_in_executor(
                None, self._store.find_booking_with_owner, numeric_id
            )
        except StoreError as e:
            logger.error(f"[Auth] Failed to load booking {booking_id}: {e}")
            return None

        if record is None:
            logger.warning(f"[Auth] Booking {booking_id} not found")
            return None

        authorization = _to_authorization(record)
        if authorization is None:
            logger.warning(f"[Auth] Booking {booking_id} has no restaurant")
            return None
        if not authorization.adminId:
            logger.warning(
                f"[Auth] Restaurant {authorization.restaurantId} of booking "
                f"{booking_id} not found; admins will be refused"
            )

        self._cache[booking_id] = authorization
        logger.info(f"[Auth] Resolved authorization for booking {booking_id}")
        return authorization

    async def preload(self) -> int:
        """Resolve every existing booking into the cache.

        Returns:
            Number of bookings cached. Zero if the scan failed.
        """
        loop = asyncio.get_event_loop()
        try:
            records = await loop.run_in_executor(None, self._store.list_bookings_with_owner)
        except StoreError as e:
            logger.error(f"[Auth] Failed to preload booking authorizations: {e}")
            return 0

        loaded = 0
        for record in records:
            authorization = _to_authorization(record)
            if authorization is None:
                continue
            self._cache[str(record.booking.id)] = authorization
            loaded += 1

        logger.info(f"[Auth] Loaded authorizations for {loaded} of {len(records)} bookings")
        return loaded

    async def authorize(
        self,
        booking_id: str,
        user_id: str,
        role: str,
        claimed_counterparty_id: Optional[str] = None,
    ) -> bool:
        """Check whether a user may join a booking's chat.

        Args:
            booking_id: Booking whose chat is being joined.
            user_id: The connecting user's ID.
            role: Claimed role, "user" or "admin".
            claimed_counterparty_id: For admins, the admin's own user ID as
                asserted by the client (restaurantUserId).

        Returns:
            True if the user may join.
        """
        authorization = await self.resolve(booking_id)
        if authorization is None:
            logger.warning(
                f"[Auth] Refusing {user_id} ({role}): booking {booking_id} unresolved"
            )
            return False

        if self._check(authorization, user_id, role, claimed_counterparty_id):
            logger.info(f"[Auth] {user_id} authorized as {role} for booking {booking_id}")
            return True

        if self.allow_unverified:
            logger.warning(
                f"[Auth] UNVERIFIED access granted to {user_id} ({role}) "
                f"for booking {booking_id}"
            )
            return True

        logger.warning(f"[Auth] {user_id} with role {role} not authorized for booking {booking_id}")
        return False

    @staticmethod
    def _check(
        authorization: BookingAuthorization,
        user_id: str,
        role: str,
        claimed_counterparty_id: Optional[str],
    ) -> bool:
        if role == UserRole.USER.value:
            return user_id == authorization.customerId
        if role == UserRole.ADMIN.value:
            return (
                bool(authorization.adminId)
                and user_id == claimed_counterparty_id
                and user_id == authorization.adminId
            )
        return False

    def get_cached(self, booking_id: str) -> Optional[BookingAuthorization]:
        return self._cache.get(booking_id)

    def invalidate(self, booking_id: str) -> None:
        """Drop a booking's cached triple so the next lookup hits the store."""
        self._cache.pop(booking_id, None)

    def cache_size(self) -> int:
        return len(self._cache)
