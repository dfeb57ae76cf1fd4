"""DuckDB-based chat message storage.

Append-only persistence of booking chat messages. Messages are only ever
removed in bulk, one booking at a time, by the admin clear-history
operation.

Database Schema:
    chat_messages table:
        - seq: Auto-incrementing insertion order (tie-breaker for ordering)
        - id: Message UUID (primary key)
        - booking_id: Booking the message belongs to
        - restaurant_id: Restaurant of the booking (indexed)
        - sender_id: User ID of the sender
        - sender: Display name of the sender
        - message: Message body
        - timestamp: When the message was accepted (UTC, stored naive)

Thread Safety:
    The DuckDB connection is NOT thread-safe. Calls arrive from executor
    threads, so every statement runs under a lock.
"""
import logging
import threading
from datetime import datetime, timezone
from typing import List, Optional

import duckdb

from grouple_chat.errors import StoreError

from .schemas import ChatMessage

logger = logging.getLogger(__name__)


class ChatMessageStore:
    """Persistent store for chat messages.

    Attributes:
        _db_path: Path to the DuckDB database file.
    """

    _db_path: str = "grouple_chat.duckdb"

    def __init__(self, db_path: Optional[str] = None) -> None:
        """Initialize the message store.

        Creates the database file and schema if they don't exist.

        Args:
            db_path: Path to DuckDB file. Defaults to "grouple_chat.duckdb".
        """
        if db_path:
            self._db_path = db_path
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._lock = threading.Lock()
        self._initialize_db()

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        """Get the DuckDB connection, creating if needed."""
        if self._connection is None:
            self._connection = duckdb.connect(self._db_path)
        return self._connection

    def _initialize_db(self) -> None:
        """Create the chat_messages table, sequence and indexes (idempotent)."""
        conn = self._get_connection()
        conn.execute("CREATE SEQUENCE IF NOT EXISTS chat_messages_seq START 1")
        conn.execute("""
            CREATE TABLE IF NOT EXISTS chat_messages (
                seq BIGINT DEFAULT nextval('chat_messages_seq'),
                id VARCHAR PRIMARY KEY,
                booking_id VARCHAR NOT NULL,
                restaurant_id VARCHAR NOT NULL,
                sender_id VARCHAR NOT NULL,
                sender VARCHAR NOT NULL,
                message VARCHAR NOT NULL,
                timestamp TIMESTAMP NOT NULL
            )
        """)
        conn.execute(
            "CREATE INDEX IF NOT EXISTS chat_messages_booking_idx ON chat_messages (booking_id)"
        )
        conn.execute(
            "CREATE INDEX IF NOT EXISTS chat_messages_restaurant_idx ON chat_messages (restaurant_id)"
        )

    def append_message(self, message: ChatMessage) -> ChatMessage:
        """Persist one message.

        Raises:
            StoreError: If the insert fails (including a duplicate id).
        """
        try:
            with self._lock:
                self._get_connection().execute(
                    """
                    INSERT INTO chat_messages
                        (id, booking_id, restaurant_id, sender_id, sender, message, timestamp)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        message.id,
                        message.bookingId,
                        message.restaurantId,
                        message.senderId,
                        message.sender,
                        message.message,
                        _to_naive_utc(message.timestamp),
                    ],
                )
        except duckdb.Error as e:
            raise StoreError(str(e), "append_message") from e
        return message

    def list_messages_for_booking(self, booking_id: str) -> List[ChatMessage]:
        """Return a booking's full history, oldest first.

        Ties on timestamp are broken by insertion order.

        Raises:
            StoreError: If the query fails.
        """
        try:
            with self._lock:
                rows = self._get_connection().execute(
                    """
                    SELECT id, booking_id, restaurant_id, sender_id, sender, message, timestamp
                    FROM chat_messages
                    WHERE booking_id = ?
                    ORDER BY timestamp ASC, seq ASC
                    """,
                    [booking_id],
                ).fetchall()
        except duckdb.Error as e:
            raise StoreError(str(e), "list_messages_for_booking") from e

        return [
            ChatMessage(
                id=row[0],
                bookingId=row[1],
                restaurantId=row[2],
                senderId=row[3],
                sender=row[4],
                message=row[5],
                timestamp=row[6].replace(tzinfo=timezone.utc),
            )
            for row in rows
        ]

    def delete_messages_for_booking(self, booking_id: str) -> int:
        """Delete every message of a booking.

        Returns:
            Number of messages deleted.

        Raises:
            StoreError: If the delete fails.
        """
        try:
            with self._lock:
                conn = self._get_connection()
                count = conn.execute(
                    "SELECT COUNT(*) FROM chat_messages WHERE booking_id = ?",
                    [booking_id],
                ).fetchone()[0]
                conn.execute(
                    "DELETE FROM chat_messages WHERE booking_id = ?", [booking_id]
                )
        except duckdb.Error as e:
            raise StoreError(str(e), "delete_messages_for_booking") from e
        return count

    def list_booking_ids(self) -> List[str]:
        """Return the IDs of all bookings that have persisted messages.

        Raises:
            StoreError: If the query fails.
        """
        try:
            with self._lock:
                rows = self._get_connection().execute(
                    "SELECT DISTINCT booking_id FROM chat_messages ORDER BY booking_id"
                ).fetchall()
        except duckdb.Error as e:
            raise StoreError(str(e), "list_booking_ids") from e
        return [row[0] for row in rows]

    def close(self) -> None:
        """Close the database connection."""
        if self._connection is not None:
            self._connection.close()
            self._connection = None


def _to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
