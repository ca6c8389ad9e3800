"""
In-memory stand-ins for Microsoft Graph and the OAuth token endpoint.

Used by the CLI's ``--mock`` mode and by the test-suite; no network access.
"""

import itertools
import json
import threading
import time
from pathlib import Path
from typing import Callable, Dict, List

import pendulum
from pendulum import DateTime

from ..domain.exceptions import CredentialRevokedError, EventNotFoundError, ProviderAuthError
from ..domain.models import Booking, TimeRange, TokenGrant


class MockGraphClient:
    """
    Simulates the Graph calendar endpoints against a single in-memory calendar.

    Attributes:
        events: event id -> busy range
        fail_with: if set, every call raises this exception
        call_delays: operation name -> seconds it sleeps before answering
        rejected_tokens: access tokens answered with 401
        calls: names of the operations invoked, in order
    """

    def __init__(self, busy: List[TimeRange] | None = None, data_file: Path | None = None):
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        self.events: Dict[str, TimeRange] = {}
        self.fail_with: Exception | None = None
        self.rejected_tokens: set = set()
        self.calls: List[str] = []
        self.call_delays: Dict[str, float] = {}
        self._by_booking: Dict[str, str] = {}

        for busy_range in busy or []:
            self.events[self._next_id()] = busy_range
        if data_file is not None:
            self._load_calendar_data(data_file)

    def _next_id(self) -> str:
        return f"mock-event-{next(self._ids)}"

    def _load_calendar_data(self, data_file: Path) -> None:
        """Load events from a JSON list of {"start": ..., "end": ...} objects."""
        with open(data_file, "r", encoding="utf-8") as f:
            for event in json.load(f):
                start = pendulum.parse(event["start"])
                end = pendulum.parse(event["end"])
                self.events[self._next_id()] = TimeRange(start=start, end=end)

    def _enter(self, name: str, access_token: str) -> None:
        with self._lock:
            self.calls.append(name)
        if self.call_delays.get(name):
            time.sleep(self.call_delays[name])
        if self.fail_with is not None:
            raise self.fail_with
        if access_token in self.rejected_tokens:
            raise ProviderAuthError("Mock provider rejected the access token")

    def list_busy(self, access_token: str, time_range: TimeRange) -> List[TimeRange]:
        self._enter("list_busy", access_token)
        with self._lock:
            return [r for r in self.events.values() if r.overlaps(time_range)]

    def create_event(self, access_token: str, booking: Booking) -> str:
        self._enter("create_event", access_token)
        with self._lock:
            # Same transactionId, same event
            existing = self._by_booking.get(booking.id)
            if existing in self.events:
                return existing
            event_id = self._next_id()
            self.events[event_id] = booking.time_range
            self._by_booking[booking.id] = event_id
            return event_id

    def update_event(self, access_token: str, event_id: str, booking: Booking) -> None:
        self._enter("update_event", access_token)
        with self._lock:
            if event_id not in self.events:
                raise EventNotFoundError(f"Mock event {event_id} does not exist")
            self.events[event_id] = booking.time_range

    def delete_event(self, access_token: str, event_id: str) -> None:
        self._enter("delete_event", access_token)
        with self._lock:
            self.events.pop(event_id, None)


class MockOAuthClient:
    """
    Token endpoint stand-in that issues numbered tokens.

    ``refresh_delay`` slows every refresh down so concurrent callers overlap.
    """

    provider_name = "mock"

    def __init__(
        self,
        lifetime_seconds: int = 3600,
        clock: Callable[[], DateTime] | None = None,
        refresh_delay: float = 0.0,
    ):
        self.lifetime_seconds = lifetime_seconds
        self.refresh_delay = refresh_delay
        self.revoked = False
        self.fail_with: Exception | None = None
        self.refresh_calls = 0
        self._clock = clock or (lambda: pendulum.now("UTC"))
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def get_authorization_url(self, state: str) -> str:
        return f"https://login.example.invalid/oauth2/v2.0/authorize?state={state}"

    def exchange_code(self, code: str) -> TokenGrant:
        n = next(self._ids)
        return TokenGrant(
            access_token=f"mock-access-{n}",
            refresh_token=f"mock-refresh-{n}",
            expires_at=self._clock().add(seconds=self.lifetime_seconds),
            account_email="mock.user@example.com",
        )

    def refresh(self, refresh_token: str) -> TokenGrant:
        with self._lock:
            self.refresh_calls += 1
        if self.refresh_delay:
            time.sleep(self.refresh_delay)
        if self.fail_with is not None:
            raise self.fail_with
        if self.revoked:
            raise CredentialRevokedError("Refresh token rejected: invalid_grant")

        n = next(self._ids)
        return TokenGrant(
            access_token=f"mock-access-{n}",
            refresh_token=f"mock-refresh-{n}",
            expires_at=self._clock().add(seconds=self.lifetime_seconds),
        )
