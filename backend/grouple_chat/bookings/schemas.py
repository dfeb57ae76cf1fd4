"""Pydantic schemas for the booking records the chat service reads.

Bookings and restaurants are owned by the main Grouple API. The chat
service only needs enough of them to decide who may join a booking's chat:
the booking's customer and the user who owns the booking's restaurant.

These schemas are used by:
    - BookingStore: DuckDB lookups
    - AuthorizationResolver: building authorization triples
"""
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class BookingStatus(str, Enum):
    """Lifecycle state of a booking.

    Attributes:
        PENDING: Requested by the customer, not yet reviewed.
        CONFIRMED: Accepted by the restaurant.
        CANCELLED: Cancelled by either side.
    """
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


class Restaurant(BaseModel):
    """A restaurant and the admin user who owns it."""
    id: int = Field(..., description="Restaurant ID")
    name: str = Field(default="", description="Display name")
    user_id: int = Field(..., description="Owning admin user ID")


class Booking(BaseModel):
    """A table reservation made by a customer.

    Attributes:
        id: Booking identifier.
        user_id: Customer who made the booking.
        restaurant_id: Restaurant the booking is for.
        table_id: Assigned table, if any.
        title: Short label shown in booking lists.
        start_time: Reservation start (UTC).
        end_time: Reservation end (UTC).
        status: Current lifecycle state.
        guest_count: Party size.
    """
    id: int = Field(..., description="Booking ID")
    user_id: int = Field(..., description="Customer user ID")
    restaurant_id: Optional[int] = Field(None, description="Restaurant ID")
    table_id: Optional[int] = Field(None, description="Assigned table ID")
    title: str = Field(default="", description="Booking title")
    start_time: Optional[datetime] = Field(None, description="Start time (UTC)")
    end_time: Optional[datetime] = Field(None, description="End time (UTC)")
    status: BookingStatus = Field(default=BookingStatus.PENDING)
    guest_count: int = Field(default=1, ge=1, description="Number of guests")


class BookingWithOwner(BaseModel):
    """A booking joined with the owner of its restaurant.

    ``restaurant_owner_id`` is None when the booking's restaurant row no
    longer exists (the join found nothing).
    """
    booking: Booking
    restaurant_owner_id: Optional[int] = None
