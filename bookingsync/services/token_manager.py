"""
Keeps each host's provider access token valid.

Refreshes run single-flight per host: concurrent callers for the same host
wait for the in-flight exchange and reuse its result, while hosts never
block each other.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, Protocol

import pendulum
from pendulum import DateTime

from ..adapters.credential_store import CredentialStore
from ..domain.exceptions import (
    CalendarNotConnectedError,
    CredentialRevokedError,
    ProviderUnavailableError,
)
from ..domain.models import CalendarConnection, ConnectionState, TokenGrant

logger = logging.getLogger(__name__)


class TokenEndpointProtocol(Protocol):
    """The part of the OAuth client the manager needs."""

    def refresh(self, refresh_token: str) -> TokenGrant:
        """Redeem a refresh token."""


class KeyedLock:
    """A lazily created ``threading.Lock`` per key."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
        with lock:
            yield


class TokenRefreshManager:
    """
    Per-host token state machine.

    VALID -> NEAR_EXPIRY -> REFRESHING -> VALID on success, or -> REVOKED
    when the provider rejects the refresh token. A revoked connection stays
    in the store with ``sync_enabled=False`` until the host reconnects.
    """

    def __init__(
        self,
        store: CredentialStore,
        token_endpoint: TokenEndpointProtocol,
        refresh_skew_minutes: int = 5,
        clock: Callable[[], DateTime] | None = None,
    ):
        self._store = store
        self._token_endpoint = token_endpoint
        self._skew_seconds = refresh_skew_minutes * 60
        self._clock = clock or (lambda: pendulum.now("UTC"))
        self._locks = KeyedLock()
        self._states: Dict[str, ConnectionState] = {}
        self._states_guard = threading.Lock()

    def state(self, host_id: str) -> ConnectionState | None:
        """Last known state for the host, or None if never observed."""
        with self._states_guard:
            return self._states.get(host_id)

    def forget(self, host_id: str) -> None:
        with self._states_guard:
            self._states.pop(host_id, None)

    def _set_state(self, host_id: str, state: ConnectionState) -> None:
        with self._states_guard:
            previous = self._states.get(host_id)
            self._states[host_id] = state
        if previous != state:
            logger.debug("Connection %s: %s -> %s", host_id, previous, state)

    def _needs_refresh(self, connection: CalendarConnection) -> bool:
        return connection.expires_within(self._clock(), self._skew_seconds)

    def ensure_fresh(
        self,
        host_id: str,
        force: bool = False,
        rejected_token: str | None = None,
    ) -> CalendarConnection:
        """
        Return the host's connection with a usable access token.

        Args:
            host_id: Host whose token is needed
            force: Refresh even if the token looks valid (after a 401), unless
                another caller already replaced the token in the meantime
            rejected_token: The access token the provider refused; defaults to
                the token currently stored

        Raises:
            CalendarNotConnectedError: If the host has no connection
            CredentialRevokedError: If sync is disabled or the refresh was rejected
            ProviderUnavailableError: If the refresh failed and the token is expired
        """
        connection = self._load(host_id)

        if not force and not self._needs_refresh(connection):
            self._set_state(host_id, ConnectionState.VALID)
            return connection

        if not force:
            self._set_state(host_id, ConnectionState.NEAR_EXPIRY)

        with self._locks.hold(host_id):
            # Re-read: a caller holding the lock before us may have refreshed
            current = self._load(host_id)

            if force:
                if current.access_token != (rejected_token or connection.access_token):
                    self._set_state(host_id, ConnectionState.VALID)
                    return current
            elif not self._needs_refresh(current):
                self._set_state(host_id, ConnectionState.VALID)
                return current

            return self._refresh(current)

    def _load(self, host_id: str) -> CalendarConnection:
        connection = self._store.get(host_id)
        if connection is None:
            self.forget(host_id)
            raise CalendarNotConnectedError(f"Host {host_id} has no calendar connection")
        if not connection.sync_enabled:
            self._set_state(host_id, ConnectionState.REVOKED)
            raise CredentialRevokedError(f"Calendar sync is disabled for host {host_id}")
        return connection

    def _refresh(self, connection: CalendarConnection) -> CalendarConnection:
        host_id = connection.host_id
        self._set_state(host_id, ConnectionState.REFRESHING)
        logger.info("Refreshing access token for host %s", host_id)

        try:
            grant = self._token_endpoint.refresh(connection.refresh_token)
        except CredentialRevokedError:
            self._store.set_sync_enabled(host_id, False, self._clock())
            self._set_state(host_id, ConnectionState.REVOKED)
            logger.warning("Provider revoked credentials of host %s; sync disabled", host_id)
            raise
        except ProviderUnavailableError as exc:
            self._set_state(host_id, ConnectionState.NEAR_EXPIRY)
            if not connection.is_expired(self._clock()):
                logger.warning(
                    "Token refresh for host %s failed (%s); using current token until %s",
                    host_id,
                    exc,
                    connection.expires_at,
                )
                return connection
            raise
        except Exception:
            self._set_state(host_id, ConnectionState.NEAR_EXPIRY)
            raise

        refresh_token = grant.refresh_token or connection.refresh_token
        now = self._clock()
        if not self._store.update_tokens(host_id, grant.access_token, refresh_token, grant.expires_at, now):
            self.forget(host_id)
            raise CalendarNotConnectedError(f"Host {host_id} disconnected during token refresh")

        self._set_state(host_id, ConnectionState.VALID)
        connection.access_token = grant.access_token
        connection.refresh_token = refresh_token
        connection.expires_at = grant.expires_at
        connection.updated_at = now
        return connection
