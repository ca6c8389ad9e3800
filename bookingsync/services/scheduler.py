"""
Application service behind every booking and calendar operation.

Combines internal bookings with the host's external busy blocks, runs the
slot calculator over the union and hands booking writes to the conflict
guard. Provider trouble never fails a read: availability falls back to
internal bookings and reports the degradation. Provider writes go through
the durable retry queue after the booking has committed and are delivered
on a worker pool, so a slow provider never holds up a booking call.
"""

from __future__ import annotations

import logging
from concurrent.futures import Executor, ThreadPoolExecutor
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Protocol, Tuple

import pendulum
from pendulum import DateTime

from ..adapters.booking_store import BookingStore
from ..adapters.credential_store import CredentialStore
from ..domain.exceptions import (
    BookingCancelledError,
    BookingNotFoundError,
    BookingSyncError,
    CalendarAPIError,
    CalendarNotConnectedError,
    CredentialRevokedError,
    EventNotFoundError,
    InvalidDurationError,
    InvalidInputError,
    InvalidRangeError,
    SlotTakenError,
)
from ..domain.models import (
    AvailabilityResult,
    Booking,
    CalendarConnection,
    CalendarStatus,
    ConnectionState,
    ExternalSyncStatus,
    SlotResult,
    SyncAction,
    SyncJob,
    TimeRange,
    TokenGrant,
    WorkingHoursPolicy,
)
from ..domain.slot_calculator import SlotCalculator
from .busy_cache import BusyCache
from .conflict_guard import BookingConflictGuard
from .provider_client import ProviderClient
from .sync_queue import SyncRetryQueue
from .token_manager import TokenRefreshManager

logger = logging.getLogger(__name__)


MIN_DURATION_MINUTES = 15
MAX_DURATION_MINUTES = 480


class AuthorizationProtocol(Protocol):
    """The authorization-code half of the OAuth client."""

    provider_name: str

    def get_authorization_url(self, state: str) -> str:
        """Consent URL for the host to visit."""

    def exchange_code(self, code: str) -> TokenGrant:
        """Redeem the code delivered to the redirect URI."""


class SchedulingOrchestrator:
    """
    Entry point for the route layer and the CLI.

    Every collaborator is injected; ``policy_for`` is usually
    ``AppConfig.policy_for``. Without an ``executor`` the orchestrator runs
    its own thread pool for outbound sync; call ``close`` to drain it.
    """

    def __init__(
        self,
        *,
        policy_for: Callable[[str], WorkingHoursPolicy],
        bookings: BookingStore,
        guard: BookingConflictGuard,
        credentials: CredentialStore,
        token_manager: TokenRefreshManager,
        provider: ProviderClient,
        authorization: AuthorizationProtocol,
        busy_cache: BusyCache,
        sync_queue: SyncRetryQueue,
        calculator: SlotCalculator | None = None,
        clock: Callable[[], DateTime] | None = None,
        executor: Executor | None = None,
        sync_workers: int = 4,
    ) -> None:
        self._policy_for = policy_for
        self._bookings = bookings
        self._guard = guard
        self._credentials = credentials
        self._tokens = token_manager
        self._provider = provider
        self._authorization = authorization
        self._busy_cache = busy_cache
        self._sync_queue = sync_queue
        self._calculator = calculator or SlotCalculator()
        self._clock = clock or (lambda: pendulum.now("UTC"))
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=sync_workers,
            thread_name_prefix="bookingsync-sync",
        )

    # Availability

    def get_available_slots(self, host_id: str, day: date | str, duration_minutes: int) -> SlotResult:
        """
        Slots of ``duration_minutes`` on ``day`` in the host's working hours.

        Raises:
            InvalidDurationError: If the duration is outside 15..480 minutes
            UnknownHostError: If the host has no working hours configured
        """
        self._validate_duration(duration_minutes)
        policy = self._policy_for(host_id)
        day = self._as_date(day)

        window = policy.day_range(day)
        busy, external_sync = self._collect_busy(host_id, window)

        slots = self._calculator.compute_slots(policy, duration_minutes, busy, day, self._clock())
        logger.debug(
            "Host %s on %s: %d slot(s), %d available, external sync %s",
            host_id,
            day,
            len(slots),
            sum(1 for s in slots if s.available),
            external_sync.value,
        )
        return SlotResult(
            host_id=host_id,
            date=day,
            duration=duration_minutes,
            slots=slots,
            external_sync=external_sync,
        )

    def check_availability(self, host_id: str, start: DateTime, end: DateTime) -> AvailabilityResult:
        """
        Whether ``[start, end)`` is free for the host.

        Working hours are not applied; only bookings and busy blocks count.
        """
        if not host_id:
            raise InvalidInputError("host_id is required")
        self._validate_range(start, end)

        candidate = TimeRange(start=start, end=end)
        busy, external_sync = self._collect_busy(host_id, candidate)
        return AvailabilityResult(
            available=self._calculator.check_range(candidate, busy),
            external_sync=external_sync,
        )

    def _collect_busy(
        self,
        host_id: str,
        window: TimeRange,
        exclude_id: str | None = None,
    ) -> Tuple[List[TimeRange], ExternalSyncStatus]:
        internal = [b.time_range for b in self._bookings.list_confirmed(host_id, window, exclude_id)]
        external, external_sync = self._external_busy(host_id, window)
        return internal + external, external_sync

    def _external_busy(self, host_id: str, window: TimeRange) -> Tuple[List[TimeRange], ExternalSyncStatus]:
        connection = self._credentials.get(host_id)
        if connection is None:
            return [], ExternalSyncStatus.NOT_CONNECTED
        if not connection.sync_enabled:
            return [], ExternalSyncStatus.REVOKED

        cached = self._busy_cache.get(host_id, window)
        if cached is not None:
            return cached, ExternalSyncStatus.OK

        try:
            busy = self._provider.list_busy(host_id, window)
        except CalendarNotConnectedError:
            return [], ExternalSyncStatus.NOT_CONNECTED
        except CredentialRevokedError as exc:
            logger.warning("External busy data for host %s unusable: %s", host_id, exc)
            return [], ExternalSyncStatus.REVOKED
        except CalendarAPIError as exc:
            logger.warning(
                "External busy data for host %s unavailable, using internal bookings only: %s",
                host_id,
                exc,
            )
            return [], ExternalSyncStatus.UNAVAILABLE
        except Exception:
            logger.exception("Unexpected error reading external busy data for host %s", host_id)
            return [], ExternalSyncStatus.UNAVAILABLE

        self._busy_cache.put(host_id, window, busy)
        return busy, ExternalSyncStatus.OK

    # Bookings

    def create_booking(
        self,
        host_id: str,
        client_id: str,
        time_range: TimeRange,
        details: Dict[str, Any] | None = None,
    ) -> Booking:
        """
        Book ``time_range`` for a client and queue the provider push.

        The availability check here only rejects early; the conflict guard's
        transaction makes the decision.

        Raises:
            InvalidInputError: If host or client is missing
            SlotTakenError: If the range is not free
        """
        if not host_id or not client_id:
            raise InvalidInputError("host_id and client_id are required")

        precheck = self.check_availability(host_id, time_range.start, time_range.end)
        if not precheck.available:
            raise SlotTakenError(f"Time slot not available for host {host_id}")

        booking = self._guard.create_booking(host_id, client_id, time_range, details)
        self._queue_sync(SyncAction.PUSH, booking)
        return booking

    def reschedule_booking(
        self,
        booking_id: str,
        time_range: TimeRange,
        details: Dict[str, Any] | None = None,
    ) -> Booking:
        """
        Move a booking to ``time_range`` and queue the matching calendar update.

        The booking's own current range does not block the move. A booking
        that was never pushed gets a fresh push instead of an update.

        Raises:
            BookingNotFoundError: If the booking does not exist
            BookingCancelledError: If the booking was cancelled
            SlotTakenError: If the new range is not free
        """
        current = self._bookings.get(booking_id)
        if current is None:
            raise BookingNotFoundError(f"Booking not found: {booking_id}")
        if not current.is_active:
            raise BookingCancelledError(f"Booking {booking_id} is cancelled")
        self._validate_range(time_range.start, time_range.end)

        busy, _ = self._collect_busy(current.host_id, time_range, exclude_id=booking_id)
        if not self._calculator.check_range(time_range, busy):
            raise SlotTakenError(f"Time slot not available for host {current.host_id}")

        booking = self._guard.reschedule_booking(booking_id, time_range, details)
        action = SyncAction.UPDATE if booking.provider_event_id else SyncAction.PUSH
        self._queue_sync(action, booking)
        return booking

    def cancel_booking(self, booking_id: str, reason: str | None = None) -> Booking:
        """
        Cancel a booking; cancelling twice returns the cancelled booking.

        Raises:
            BookingNotFoundError: If the booking does not exist
        """
        booking, changed = self._guard.cancel_booking(booking_id, reason)
        if changed and booking.provider_event_id:
            self._queue_sync(SyncAction.DELETE, booking)
        return booking

    def _queue_sync(self, action: SyncAction, booking: Booking) -> None:
        job = self._enqueue(action, booking)
        if job is not None:
            self._executor.submit(self._run_job_safely, job.id)

    def _enqueue(self, action: SyncAction, booking: Booking) -> SyncJob | None:
        connection = self._credentials.get(booking.host_id)
        if connection is None or not connection.sync_enabled:
            return None

        try:
            return self._sync_queue.enqueue(
                action,
                booking.host_id,
                booking.id,
                self._clock(),
                provider_event_id=booking.provider_event_id,
            )
        except BookingSyncError:
            logger.exception("Could not queue %s of booking %s", action.value, booking.id)
            return None

    def close(self) -> None:
        """Wait for in-flight sync jobs and stop the orchestrator's own pool."""
        if self._owns_executor:
            self._executor.shutdown(wait=True)

    # Outbound sync

    def process_sync_queue(self) -> int:
        """
        Run every due job once.

        Returns:
            Number of jobs delivered to the provider
        """
        delivered = 0
        for job in self._sync_queue.due(self._clock()):
            if self._run_job_safely(job.id):
                delivered += 1
        return delivered

    def _run_job_safely(self, job_id: int) -> bool:
        try:
            if not self._sync_queue.claim(job_id, self._clock()):
                return False
            job = self._sync_queue.get(job_id)
            return job is not None and self._run_job(job)
        except Exception:
            logger.exception("Sync job %s failed unexpectedly", job_id)
            return False

    def _run_job(self, job: SyncJob) -> bool:
        try:
            delivered = self._deliver(job)
        except (CalendarNotConnectedError, CredentialRevokedError) as exc:
            logger.warning("Dropping %s job %s for host %s: %s", job.action.value, job.id, job.host_id, exc)
            self._sync_queue.complete(job.id)
            return False
        except CalendarAPIError as exc:
            self._sync_queue.reschedule(job, str(exc), self._clock())
            return False
        except Exception as exc:
            logger.exception("Unexpected error in %s job %s", job.action.value, job.id)
            self._sync_queue.reschedule(job, str(exc) or type(exc).__name__, self._clock())
            return False

        self._sync_queue.complete(job.id)
        return delivered

    def _deliver(self, job: SyncJob) -> bool:
        if job.action == SyncAction.DELETE:
            self._provider.delete_booking(job.host_id, job.provider_event_id)
            logger.info("Deleted event %s of booking %s", job.provider_event_id, job.booking_id)
            return True

        booking = self._bookings.get(job.booking_id)
        if booking is None or not booking.is_active:
            return False

        # Pushes and updates both converge on the booking's current state
        if booking.provider_event_id:
            try:
                self._provider.update_booking(job.host_id, booking.provider_event_id, booking)
                logger.info("Updated event %s of booking %s", booking.provider_event_id, booking.id)
                return True
            except EventNotFoundError:
                logger.info(
                    "Event %s of booking %s is gone at the provider, creating a new one",
                    booking.provider_event_id,
                    booking.id,
                )

        event_id = self._provider.push_booking(job.host_id, booking)
        stored = self._bookings.set_provider_event_id(booking.id, event_id, self._clock())
        logger.info("Pushed booking %s to calendar of host %s as %s", booking.id, job.host_id, event_id)

        if stored is None:
            return True
        followup = None
        if not stored.is_active:
            logger.info("Booking %s was cancelled during its push, removing event %s", booking.id, event_id)
            followup = self._enqueue(SyncAction.DELETE, stored)
        elif stored.time_range != booking.time_range:
            followup = self._enqueue(SyncAction.UPDATE, stored)
        # Already on a sync worker, so the follow-up runs here
        if followup is not None:
            self._run_job_safely(followup.id)
        return True

    # Calendar connection

    def connect_calendar(self, host_id: str) -> str:
        """Authorization URL the host visits; the host id travels as ``state``."""
        self._policy_for(host_id)
        return self._authorization.get_authorization_url(state=host_id)

    def complete_connection(self, host_id: str, code: str) -> CalendarStatus:
        """
        Finish the OAuth callback: redeem the code and store the connection.

        Reconnecting replaces the previous tokens and re-enables sync.
        """
        self._policy_for(host_id)
        grant = self._authorization.exchange_code(code)
        now = self._clock()

        connection = CalendarConnection(
            host_id=host_id,
            provider=self._authorization.provider_name,
            access_token=grant.access_token,
            refresh_token=grant.refresh_token or "",
            expires_at=grant.expires_at,
            account_email=grant.account_email,
            sync_enabled=True,
        )
        self._credentials.save(connection, now)
        self._tokens.forget(host_id)
        self._busy_cache.invalidate(host_id)

        logger.info("Connected %s calendar for host %s", connection.provider, host_id)
        return self.calendar_status(host_id)

    def disconnect_calendar(self, host_id: str) -> bool:
        """
        Remove the host's connection. Disconnecting twice is a no-op.

        Returns:
            True if a connection was removed
        """
        removed = self._credentials.delete(host_id)
        self._tokens.forget(host_id)
        self._busy_cache.invalidate(host_id)
        dropped = self._sync_queue.drop_host(host_id)

        if removed:
            logger.info("Disconnected calendar of host %s (%d pending job(s) dropped)", host_id, dropped)
        return removed

    def calendar_status(self, host_id: str) -> CalendarStatus:
        connection = self._credentials.get(host_id)
        if connection is None:
            return CalendarStatus(connected=False)

        now = self._clock()
        if not connection.sync_enabled:
            state = ConnectionState.REVOKED
        else:
            state = self._tokens.state(host_id)
            if state is None or state == ConnectionState.REVOKED:
                state = ConnectionState.VALID if not connection.is_expired(now) else ConnectionState.NEAR_EXPIRY

        return CalendarStatus(
            connected=True,
            provider=connection.provider,
            expired=connection.is_expired(now),
            sync_enabled=connection.sync_enabled,
            account_email=connection.account_email,
            state=state,
        )

    # Helpers

    @staticmethod
    def _validate_duration(duration_minutes: Any) -> None:
        if (
            isinstance(duration_minutes, bool)
            or not isinstance(duration_minutes, int)
            or not MIN_DURATION_MINUTES <= duration_minutes <= MAX_DURATION_MINUTES
        ):
            raise InvalidDurationError(
                f"Duration must be {MIN_DURATION_MINUTES}-{MAX_DURATION_MINUTES} minutes, "
                f"got {duration_minutes!r}"
            )

    @staticmethod
    def _validate_range(start: DateTime, end: DateTime) -> None:
        # Instants are stored as whole epoch seconds
        if start.microsecond or end.microsecond:
            raise InvalidRangeError(f"Range {start} - {end} must use whole seconds")
        if start >= end:
            raise InvalidRangeError(f"Start {start} must be before end {end}")

    @staticmethod
    def _as_date(value: date | str) -> date:
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, date):
            return value
        try:
            parsed = pendulum.parse(value, exact=True)
        except (TypeError, ValueError) as exc:
            raise InvalidInputError(f"Invalid date: {value!r}") from exc
        if isinstance(parsed, datetime):
            return parsed.date()
        if isinstance(parsed, date):
            return parsed
        raise InvalidInputError(f"Invalid date: {value!r}")
