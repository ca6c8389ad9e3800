"""
Shared fixtures: a temporary SQLite database, a fixed clock and the mock provider.
"""

import threading
from concurrent.futures import Future
from datetime import time

import pendulum
import pytest
from cryptography.fernet import Fernet

from bookingsync.adapters.booking_store import BookingStore
from bookingsync.adapters.credential_store import CredentialStore, TokenCipher
from bookingsync.adapters.database import Database
from bookingsync.adapters.mock_graph_client import MockGraphClient, MockOAuthClient
from bookingsync.domain.exceptions import UnknownHostError
from bookingsync.domain.models import CalendarConnection, WeeklyWindow, WorkingHoursPolicy
from bookingsync.services.busy_cache import BusyCache
from bookingsync.services.conflict_guard import BookingConflictGuard
from bookingsync.services.provider_client import ProviderClient
from bookingsync.services.scheduler import SchedulingOrchestrator
from bookingsync.services.sync_queue import SyncRetryQueue
from bookingsync.services.token_manager import TokenRefreshManager

HOST = "host-1"

# Sunday noon, the day before the Monday most tests look at
START_OF_TESTS = pendulum.parse("2024-11-24 12:00", tz="UTC")


class FakeClock:
    """Settable clock; call it to read the current instant."""

    def __init__(self, now):
        self.now = now
        self._lock = threading.Lock()

    def __call__(self):
        with self._lock:
            return self.now

    def advance(self, **kwargs):
        with self._lock:
            self.now = self.now.add(**kwargs)


class InlineExecutor:
    """Runs submitted work on the calling thread."""

    def submit(self, fn, *args, **kwargs):
        future = Future()
        future.set_result(fn(*args, **kwargs))
        return future

    def shutdown(self, wait=True):
        pass


@pytest.fixture
def clock():
    return FakeClock(START_OF_TESTS)


@pytest.fixture
def database(tmp_path):
    return Database(tmp_path / "bookingsync.db")


@pytest.fixture
def cipher():
    return TokenCipher(Fernet.generate_key())


@pytest.fixture
def credentials(database, cipher):
    return CredentialStore(database, cipher)


@pytest.fixture
def bookings(database):
    return BookingStore(database)


@pytest.fixture
def policy():
    """Monday to Friday 09:00-17:00 UTC, 30 minute steps, one hour lead time."""
    return WorkingHoursPolicy(
        windows=tuple(WeeklyWindow(weekday=d, open_time=time(9, 0), close_time=time(17, 0)) for d in range(5)),
        granularity_minutes=30,
        lead_time_minutes=60,
        timezone="UTC",
    )


@pytest.fixture
def graph():
    return MockGraphClient()


@pytest.fixture
def oauth(clock):
    return MockOAuthClient(clock=clock)


@pytest.fixture
def token_manager(credentials, oauth, clock):
    return TokenRefreshManager(credentials, oauth, refresh_skew_minutes=5, clock=clock)


@pytest.fixture
def busy_cache():
    return BusyCache(ttl_seconds=300)


@pytest.fixture
def sync_queue(database):
    return SyncRetryQueue(database, retry_delays=(60, 300, 1800))


@pytest.fixture
def guard(database, bookings, clock):
    return BookingConflictGuard(database, bookings, clock=clock)


@pytest.fixture
def orchestrator(policy, bookings, guard, credentials, token_manager, graph, oauth, busy_cache, sync_queue, clock):
    def policy_for(host_id):
        if host_id != HOST:
            raise UnknownHostError(f"Unknown host: '{host_id}'")
        return policy

    return SchedulingOrchestrator(
        policy_for=policy_for,
        bookings=bookings,
        guard=guard,
        credentials=credentials,
        token_manager=token_manager,
        provider=ProviderClient(token_manager, graph),
        authorization=oauth,
        busy_cache=busy_cache,
        sync_queue=sync_queue,
        clock=clock,
        executor=InlineExecutor(),
    )


def connect_host(credentials, clock, host_id=HOST, access_token="access-0", expires_in=3600):
    """Store a calendar connection as if the host had just authorized."""
    connection = CalendarConnection(
        host_id=host_id,
        provider="mock",
        access_token=access_token,
        refresh_token="refresh-0",
        expires_at=clock().add(seconds=expires_in),
        account_email="host@example.com",
    )
    credentials.save(connection, clock())
    return connection


def utc(value):
    return pendulum.parse(value, tz="UTC")
