"""Booking and restaurant lookups consumed by the chat service."""

from .schemas import Booking, BookingStatus, BookingWithOwner, Restaurant
from .service import BookingStore

__all__ = [
    "Booking",
    "BookingStatus",
    "BookingWithOwner",
    "Restaurant",
    "BookingStore",
]
