"""
Persistence of bookings.

Writes take an explicit connection so the conflict guard can run its
overlap check and the insert inside one transaction.
"""

from __future__ import annotations

import sqlite3
from typing import List

from pendulum import DateTime

from ..domain.exceptions import StorageError
from ..domain.models import Booking, BookingStatus, TimeRange
from .database import Database, from_ts, to_ts


class BookingStore:
    def __init__(self, database: Database):
        self._db = database

    def find_overlapping(
        self,
        conn: sqlite3.Connection,
        host_id: str,
        time_range: TimeRange,
        exclude_id: str | None = None,
    ) -> List[Booking]:
        """
        Confirmed bookings of ``host_id`` overlapping ``time_range``.

        The SQL filter is the half-open test ``start < other.end AND end > other.start``;
        rows are re-checked with ``TimeRange.overlaps`` so there is exactly one
        definition of overlap. ``exclude_id`` leaves one booking out, which is
        how a booking being moved ignores its own current range.
        """
        rows = conn.execute(
            """
            SELECT * FROM bookings
            WHERE host_id = ? AND status = ? AND start_ts < ? AND end_ts > ?
            ORDER BY start_ts
            """,
            (
                host_id,
                BookingStatus.CONFIRMED.value,
                to_ts(time_range.end),
                to_ts(time_range.start),
            ),
        ).fetchall()
        bookings = [self._from_row(row) for row in rows]
        return [b for b in bookings if b.id != exclude_id and b.time_range.overlaps(time_range)]

    def list_confirmed(
        self,
        host_id: str,
        time_range: TimeRange,
        exclude_id: str | None = None,
    ) -> List[Booking]:
        conn = self._db.connect()
        try:
            return self.find_overlapping(conn, host_id, time_range, exclude_id)
        except sqlite3.Error as exc:
            raise StorageError(f"Could not load bookings for {host_id}: {exc}") from exc
        finally:
            conn.close()

    def get(self, booking_id: str) -> Booking | None:
        rows = self._db.query("SELECT * FROM bookings WHERE id = ?", (booking_id,))
        return self._from_row(rows[0]) if rows else None

    def get_for_update(self, conn: sqlite3.Connection, booking_id: str) -> Booking | None:
        row = conn.execute("SELECT * FROM bookings WHERE id = ?", (booking_id,)).fetchone()
        return self._from_row(row) if row else None

    def insert(self, conn: sqlite3.Connection, booking: Booking, now: DateTime) -> None:
        conn.execute(
            """
            INSERT INTO bookings (
                id, host_id, client_id, start_ts, end_ts, status, title,
                description, location, provider_event_id, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                booking.id,
                booking.host_id,
                booking.client_id,
                to_ts(booking.time_range.start),
                to_ts(booking.time_range.end),
                booking.status.value,
                booking.title,
                booking.description,
                booking.location,
                booking.provider_event_id,
                to_ts(now),
                to_ts(now),
            ),
        )

    def mark_cancelled(
        self,
        conn: sqlite3.Connection,
        booking_id: str,
        reason: str | None,
        now: DateTime,
    ) -> None:
        conn.execute(
            "UPDATE bookings SET status = ?, cancel_reason = ?, updated_at = ? WHERE id = ?",
            (BookingStatus.CANCELLED.value, reason, to_ts(now), booking_id),
        )

    def move(self, conn: sqlite3.Connection, booking: Booking, now: DateTime) -> None:
        """Write a rescheduled booking's range and details."""
        conn.execute(
            """
            UPDATE bookings
            SET start_ts = ?, end_ts = ?, title = ?, description = ?, location = ?, updated_at = ?
            WHERE id = ?
            """,
            (
                to_ts(booking.time_range.start),
                to_ts(booking.time_range.end),
                booking.title,
                booking.description,
                booking.location,
                to_ts(now),
                booking.id,
            ),
        )

    def set_provider_event_id(self, booking_id: str, event_id: str | None, now: DateTime) -> Booking | None:
        """
        Record the provider event mirroring a booking.

        Returns:
            The booking as stored once the id is written, or None if it is gone.
            A status of CANCELLED here means the cancellation committed before
            the event id existed.
        """
        with self._db.transaction() as conn:
            conn.execute(
                "UPDATE bookings SET provider_event_id = ?, updated_at = ? WHERE id = ?",
                (event_id, to_ts(now), booking_id),
            )
            return self.get_for_update(conn, booking_id)

    @staticmethod
    def _from_row(row: sqlite3.Row) -> Booking:
        return Booking(
            id=row["id"],
            host_id=row["host_id"],
            client_id=row["client_id"],
            time_range=TimeRange(start=from_ts(row["start_ts"]), end=from_ts(row["end_ts"])),
            status=BookingStatus(row["status"]),
            title=row["title"],
            description=row["description"],
            location=row["location"],
            provider_event_id=row["provider_event_id"],
            cancel_reason=row["cancel_reason"],
            created_at=from_ts(row["created_at"]),
        )
