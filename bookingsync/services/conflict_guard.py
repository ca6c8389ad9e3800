"""
Authoritative double-booking protection.

The overlap check and the insert (or move) run in the same
``BEGIN IMMEDIATE`` transaction. SQLite grants that write lock to one
connection at a time, so two concurrent writes for overlapping ranges are
serialized and the second one sees the first one's row.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Callable, Dict, Tuple

import pendulum
from pendulum import DateTime

from ..adapters.booking_store import BookingStore
from ..adapters.database import Database
from ..domain.exceptions import BookingCancelledError, BookingNotFoundError, SlotTakenError
from ..domain.models import Booking, BookingStatus, TimeRange

logger = logging.getLogger(__name__)


class BookingConflictGuard:
    def __init__(
        self,
        database: Database,
        bookings: BookingStore,
        clock: Callable[[], DateTime] | None = None,
        id_factory: Callable[[], str] | None = None,
    ):
        self._db = database
        self._bookings = bookings
        self._clock = clock or (lambda: pendulum.now("UTC"))
        self._new_id = id_factory or (lambda: uuid.uuid4().hex)

    def create_booking(
        self,
        host_id: str,
        client_id: str,
        time_range: TimeRange,
        details: Dict[str, Any] | None = None,
    ) -> Booking:
        """
        Insert a confirmed booking unless the host is already booked.

        Args:
            host_id: Host whose time is booked
            client_id: Client making the booking
            time_range: Requested range
            details: Optional ``title``, ``description`` and ``location``

        Returns:
            The committed booking

        Raises:
            SlotTakenError: If a confirmed booking overlaps ``time_range``
            StorageError: If the transaction could not be committed
        """
        details = details or {}
        booking = Booking(
            id=self._new_id(),
            host_id=host_id,
            client_id=client_id,
            time_range=time_range.in_utc(),
            status=BookingStatus.CONFIRMED,
            title=details.get("title", ""),
            description=details.get("description", ""),
            location=details.get("location", ""),
        )

        with self._db.transaction() as conn:
            clashes = self._bookings.find_overlapping(conn, host_id, booking.time_range)
            if clashes:
                logger.info(
                    "Rejected booking for host %s at %s: overlaps %s",
                    host_id,
                    booking.time_range,
                    ", ".join(b.id for b in clashes),
                )
                raise SlotTakenError(f"Time slot not available for host {host_id}")

            now = self._clock()
            self._bookings.insert(conn, booking, now)

        booking.created_at = now
        logger.info("Created booking %s for host %s at %s", booking.id, host_id, booking.time_range)
        return booking

    def reschedule_booking(
        self,
        booking_id: str,
        time_range: TimeRange,
        details: Dict[str, Any] | None = None,
    ) -> Booking:
        """
        Move a confirmed booking to ``time_range``.

        The overlap check skips the booking itself, so a booking can slide
        into a range that overlaps where it currently sits. It runs in the
        same transaction as the update, like ``create_booking``.

        Raises:
            BookingNotFoundError: If the booking does not exist
            BookingCancelledError: If the booking was cancelled
            SlotTakenError: If another confirmed booking overlaps ``time_range``
        """
        details = details or {}
        new_range = time_range.in_utc()

        with self._db.transaction() as conn:
            booking = self._bookings.get_for_update(conn, booking_id)
            if booking is None:
                raise BookingNotFoundError(f"Booking not found: {booking_id}")
            if not booking.is_active:
                raise BookingCancelledError(f"Booking {booking_id} is cancelled")

            clashes = self._bookings.find_overlapping(conn, booking.host_id, new_range, exclude_id=booking_id)
            if clashes:
                logger.info(
                    "Rejected move of booking %s to %s: overlaps %s",
                    booking_id,
                    new_range,
                    ", ".join(b.id for b in clashes),
                )
                raise SlotTakenError(f"Time slot not available for host {booking.host_id}")

            previous = booking.time_range
            booking.time_range = new_range
            booking.title = details.get("title", booking.title)
            booking.description = details.get("description", booking.description)
            booking.location = details.get("location", booking.location)
            self._bookings.move(conn, booking, self._clock())

        logger.info("Moved booking %s from %s to %s", booking_id, previous, new_range)
        return booking

    def cancel_booking(self, booking_id: str, reason: str | None = None) -> Tuple[Booking, bool]:
        """
        Mark a booking cancelled. Cancelling twice is a no-op.

        Returns:
            (booking, changed) where ``changed`` is False if it was already cancelled

        Raises:
            BookingNotFoundError: If the booking does not exist
        """
        with self._db.transaction() as conn:
            booking = self._bookings.get_for_update(conn, booking_id)
            if booking is None:
                raise BookingNotFoundError(f"Booking not found: {booking_id}")

            if booking.status == BookingStatus.CANCELLED:
                return booking, False

            self._bookings.mark_cancelled(conn, booking_id, reason, self._clock())

        booking.status = BookingStatus.CANCELLED
        booking.cancel_reason = reason
        logger.info("Cancelled booking %s for host %s", booking_id, booking.host_id)
        return booking, True
