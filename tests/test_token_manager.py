"""
Tests for TokenRefreshManager.
"""

import threading

import pytest

from bookingsync.domain.exceptions import (
    CalendarNotConnectedError,
    CredentialRevokedError,
    ProviderUnavailableError,
)
from bookingsync.domain.models import ConnectionState
from bookingsync.services.token_manager import TokenRefreshManager

from conftest import HOST, connect_host


class TestEnsureFresh:
    """Tests for the refresh decision."""

    def test_valid_token_is_not_refreshed(self, token_manager, credentials, oauth, clock):
        connect_host(credentials, clock, expires_in=3600)

        connection = token_manager.ensure_fresh(HOST)

        assert connection.access_token == "access-0"
        assert oauth.refresh_calls == 0
        assert token_manager.state(HOST) == ConnectionState.VALID

    def test_token_near_expiry_is_refreshed(self, token_manager, credentials, oauth, clock):
        connect_host(credentials, clock, expires_in=240)

        connection = token_manager.ensure_fresh(HOST)

        assert connection.access_token == "mock-access-1"
        assert oauth.refresh_calls == 1
        assert credentials.get(HOST).access_token == "mock-access-1"
        assert token_manager.state(HOST) == ConnectionState.VALID

    def test_not_connected(self, token_manager):
        with pytest.raises(CalendarNotConnectedError):
            token_manager.ensure_fresh(HOST)

    def test_revoked_refresh_disables_sync(self, token_manager, credentials, oauth, clock):
        connect_host(credentials, clock, expires_in=60)
        oauth.revoked = True

        with pytest.raises(CredentialRevokedError):
            token_manager.ensure_fresh(HOST)

        assert not credentials.get(HOST).sync_enabled
        assert token_manager.state(HOST) == ConnectionState.REVOKED

        # Later calls fail fast without asking the provider again
        with pytest.raises(CredentialRevokedError):
            token_manager.ensure_fresh(HOST)
        assert oauth.refresh_calls == 1

    def test_unavailable_provider_keeps_unexpired_token(self, token_manager, credentials, oauth, clock):
        connect_host(credentials, clock, expires_in=120)
        oauth.fail_with = ProviderUnavailableError("timeout")

        connection = token_manager.ensure_fresh(HOST)

        assert connection.access_token == "access-0"
        assert credentials.get(HOST).sync_enabled

    def test_unavailable_provider_with_expired_token(self, token_manager, credentials, oauth, clock):
        connect_host(credentials, clock, expires_in=60)
        clock.advance(minutes=2)
        oauth.fail_with = ProviderUnavailableError("timeout")

        with pytest.raises(ProviderUnavailableError):
            token_manager.ensure_fresh(HOST)
        assert credentials.get(HOST).sync_enabled

    def test_forced_refresh_skipped_if_token_already_replaced(self, token_manager, credentials, oauth, clock):
        connect_host(credentials, clock, expires_in=3600)

        connection = token_manager.ensure_fresh(HOST, force=True, rejected_token="access-0")
        assert connection.access_token == "mock-access-1"

        # A second caller that saw the same rejected token reuses the new one
        connection = token_manager.ensure_fresh(HOST, force=True, rejected_token="access-0")
        assert connection.access_token == "mock-access-1"
        assert oauth.refresh_calls == 1


class TestSingleFlight:
    """Tests for per-host refresh exclusion."""

    def test_concurrent_callers_share_one_refresh(self, credentials, oauth, clock):
        oauth.refresh_delay = 0.2
        manager = TokenRefreshManager(credentials, oauth, refresh_skew_minutes=5, clock=clock)
        connect_host(credentials, clock, expires_in=60)

        callers = 8
        barrier = threading.Barrier(callers)
        tokens = []
        errors = []

        def use_token():
            barrier.wait()
            try:
                tokens.append(manager.ensure_fresh(HOST).access_token)
            except Exception as exc:
                errors.append(exc)

        threads = [threading.Thread(target=use_token) for _ in range(callers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert oauth.refresh_calls == 1
        assert tokens == ["mock-access-1"] * callers

    def test_hosts_refresh_independently(self, credentials, oauth, clock):
        manager = TokenRefreshManager(credentials, oauth, refresh_skew_minutes=5, clock=clock)
        connect_host(credentials, clock, host_id="a", expires_in=60)
        connect_host(credentials, clock, host_id="b", expires_in=60)

        manager.ensure_fresh("a")
        manager.ensure_fresh("b")

        assert oauth.refresh_calls == 2
