"""Shared test fixtures and configuration for backend tests.

Seed data used across the suite:
    - restaurant 3 "Blue Door", owned by admin 7
    - restaurant 4 "Harbour", owned by admin 9
    - booking 42 at restaurant 3, customer 11
    - booking 5 at restaurant 3, customer 11
    - booking 43 at restaurant 4, customer 12
    - booking 99 at restaurant 555 (restaurant row missing), customer 13
"""
from datetime import datetime

import pytest
from fastapi.testclient import TestClient

from grouple_chat.bookings import Booking, BookingStatus, BookingStore, Restaurant
from grouple_chat.chat.message_store import ChatMessageStore
from grouple_chat.config import AppSettings, DatabaseSettings, reset_config, set_config
from grouple_chat.main import app


def seed_bookings(store: BookingStore) -> None:
    store.add_restaurant(Restaurant(id=3, name="Blue Door", user_id=7))
    store.add_restaurant(Restaurant(id=4, name="Harbour", user_id=9))
    store.add_booking(Booking(
        id=42,
        user_id=11,
        restaurant_id=3,
        table_id=2,
        title="Birthday dinner",
        start_time=datetime(2026, 11, 1, 19, 0),
        end_time=datetime(2026, 11, 1, 21, 0),
        status=BookingStatus.CONFIRMED,
        guest_count=4,
    ))
    store.add_booking(Booking(id=5, user_id=11, restaurant_id=3, title="Lunch"))
    store.add_booking(Booking(id=43, user_id=12, restaurant_id=4, title="Team outing", guest_count=8))
    store.add_booking(Booking(id=99, user_id=13, restaurant_id=555, title="Orphan"))


@pytest.fixture
def booking_store():
    """A seeded in-memory BookingStore."""
    store = BookingStore(db_path=":memory:")
    seed_bookings(store)
    yield store
    store.close()


@pytest.fixture
def message_store():
    """An empty in-memory ChatMessageStore."""
    store = ChatMessageStore(db_path=":memory:")
    yield store
    store.close()


@pytest.fixture
def memory_config():
    """Point the app at in-memory databases for the duration of a test."""
    config = AppSettings(database=DatabaseSettings(bookings_path=":memory:", chat_path=":memory:"))
    set_config(config)
    yield config
    reset_config()


@pytest.fixture
def api_client(memory_config):
    """Provide a started TestClient for the main FastAPI app with seed data.

    The client is used as a context manager so the lifespan runs and every
    WebSocket shares the application's event loop.
    """
    with TestClient(app) as client:
        seed_bookings(app.state.booking_store)
        yield client
