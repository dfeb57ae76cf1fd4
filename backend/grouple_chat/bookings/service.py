"""DuckDB-backed read model of bookings and restaurants.

The main Grouple API owns these records; this store exposes the lookups the
chat service consumes (booking by id joined with its restaurant owner, and a
full scan used to warm the authorization cache). The insert helpers exist so
the service can be seeded for local development and tests.

Database Schema:
    restaurants table:
        - id: Restaurant identifier
        - name: Display name
        - user_id: Owning admin user
    bookings table:
        - id: Booking identifier
        - user_id: Customer who booked
        - restaurant_id: Restaurant booked (nullable, orphaned rows allowed)
        - table_id, title, start_time, end_time, status, guest_count

Thread Safety:
    A single DuckDB connection is shared and guarded by a lock, since calls
    arrive from executor threads.

Usage:
    store = BookingStore(db_path=":memory:")
    store.add_restaurant(Restaurant(id=3, name="Blue Door", user_id=7))
    store.add_booking(Booking(id=42, user_id=11, restaurant_id=3))
    record = store.find_booking_with_owner(42)
"""
import logging
import threading
from typing import List, Optional

import duckdb

from grouple_chat.errors import StoreError

from .schemas import Booking, BookingStatus, BookingWithOwner, Restaurant

logger = logging.getLogger(__name__)

_BOOKING_COLUMNS = """
    b.id, b.user_id, b.restaurant_id, b.table_id, b.title,
    b.start_time, b.end_time, b.status, b.guest_count, r.user_id
"""


class BookingStore:
    """Lookups over the bookings and restaurants tables.

    Attributes:
        _db_path: Path to the DuckDB database file.
    """

    _db_path: str = "grouple_bookings.duckdb"

    def __init__(self, db_path: Optional[str] = None) -> None:
        """Open the database and create the schema if needed.

        Args:
            db_path: Path to DuckDB file. Defaults to "grouple_bookings.duckdb".
        """
        if db_path:
            self._db_path = db_path
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._lock = threading.Lock()
        self._initialize_db()

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            self._connection = duckdb.connect(self._db_path)
        return self._connection

    def _initialize_db(self) -> None:
        """Create the restaurants and bookings tables (idempotent)."""
        conn = self._get_connection()
        conn.execute("""
            CREATE TABLE IF NOT EXISTS restaurants (
                id INTEGER PRIMARY KEY,
                name VARCHAR NOT NULL,
                user_id INTEGER NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS bookings (
                id INTEGER PRIMARY KEY,
                user_id INTEGER NOT NULL,
                restaurant_id INTEGER,
                table_id INTEGER,
                title VARCHAR NOT NULL,
                start_time TIMESTAMP,
                end_time TIMESTAMP,
                status VARCHAR NOT NULL,
                guest_count INTEGER NOT NULL
            )
        """)

    # =========================================================================
    # Lookups
    # =========================================================================

    def find_booking_with_owner(self, booking_id: int) -> Optional[BookingWithOwner]:
        """Load a booking joined with the owner of its restaurant.

        Args:
            booking_id: The booking to look up.

        Returns:
            BookingWithOwner, or None if the booking does not exist.

        Raises:
            StoreError: If the query fails.
        """
        try:
            with self._lock:
                row = self._get_connection().execute(
                    f"""
                    SELECT {_BOOKING_COLUMNS}
                    FROM bookings b
                    LEFT JOIN restaurants r ON r.id = b.restaurant_id
                    WHERE b.id = ?
                    """,
                    [booking_id],
                ).fetchone()
        except duckdb.Error as e:
            raise StoreError(str(e), "find_booking_with_owner") from e

        if row is None:
            return None
        return _row_to_booking_with_owner(row)

    def list_bookings_with_owner(self) -> List[BookingWithOwner]:
        """Return every booking joined with its restaurant owner.

        Raises:
            StoreError: If the query fails.
        """
        try:
            with self._lock:
                rows = self._get_connection().execute(
                    f"""
                    SELECT {_BOOKING_COLUMNS}
                    FROM bookings b
                    LEFT JOIN restaurants r ON r.id = b.restaurant_id
                    ORDER BY b.id
                    """
                ).fetchall()
        except duckdb.Error as e:
            raise StoreError(str(e), "list_bookings_with_owner") from e

        return [_row_to_booking_with_owner(row) for row in rows]

    # =========================================================================
    # Seeding
    # =========================================================================

    def add_restaurant(self, restaurant: Restaurant) -> Restaurant:
        with self._lock:
            self._get_connection().execute(
                "INSERT INTO restaurants (id, name, user_id) VALUES (?, ?, ?)",
                [restaurant.id, restaurant.name, restaurant.user_id],
            )
        return restaurant

    def add_booking(self, booking: Booking) -> Booking:
        with self._lock:
            self._get_connection().execute(
                """
                INSERT INTO bookings (
                    id, user_id, restaurant_id, table_id, title,
                    start_time, end_time, status, guest_count
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    booking.id,
                    booking.user_id,
                    booking.restaurant_id,
                    booking.table_id,
                    booking.title,
                    booking.start_time,
                    booking.end_time,
                    booking.status.value,
                    booking.guest_count,
                ],
            )
        return booking

    def delete_booking(self, booking_id: int) -> None:
        with self._lock:
            self._get_connection().execute(
                "DELETE FROM bookings WHERE id = ?", [booking_id]
            )

    def delete_restaurant(self, restaurant_id: int) -> None:
        with self._lock:
            self._get_connection().execute(
                "DELETE FROM restaurants WHERE id = ?", [restaurant_id]
            )

    def close(self) -> None:
        """Close the database connection."""
        if self._connection is not None:
            self._connection.close()
            self._connection = None


def _row_to_booking_with_owner(row: tuple) -> BookingWithOwner:
    booking = Booking(
        id=row[0],
        user_id=row[1],
        restaurant_id=row[2],
        table_id=row[3],
        title=row[4],
        start_time=row[5],
        end_time=row[6],
        status=BookingStatus(row[7]),
        guest_count=row[8],
    )
    return BookingWithOwner(booking=booking, restaurant_owner_id=row[9])
