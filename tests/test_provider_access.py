"""
Tests for ProviderClient retry behaviour and the MSAL-backed OAuth client.
"""

import pendulum
import pytest
import requests

from bookingsync.adapters.oauth_client import OAuthClient
from bookingsync.config import ProviderConfig
from bookingsync.domain.exceptions import (
    CalendarAPIError,
    CalendarNotConnectedError,
    CredentialRevokedError,
    ProviderAuthError,
    ProviderUnavailableError,
)
from bookingsync.domain.models import TimeRange
from bookingsync.services.provider_client import ProviderClient

from conftest import HOST, connect_host, utc

DAY = TimeRange(start=utc("2024-11-25 00:00"), end=utc("2024-11-26 00:00"))


class TestProviderClient:
    """Tests for token handling around provider calls."""

    def test_uses_stored_token(self, token_manager, credentials, graph, clock):
        connect_host(credentials, clock)
        graph.events["evt"] = TimeRange(start=utc("2024-11-25 14:00"), end=utc("2024-11-25 15:00"))

        busy = ProviderClient(token_manager, graph).list_busy(HOST, DAY)

        assert busy == [graph.events["evt"]]
        assert graph.calls == ["list_busy"]

    def test_retries_once_after_rejected_token(self, token_manager, credentials, graph, oauth, clock):
        connect_host(credentials, clock, access_token="stale")
        graph.rejected_tokens.add("stale")

        busy = ProviderClient(token_manager, graph).list_busy(HOST, DAY)

        assert busy == []
        assert oauth.refresh_calls == 1
        assert graph.calls == ["list_busy", "list_busy"]
        assert credentials.get(HOST).access_token == "mock-access-1"

    def test_second_rejection_propagates(self, token_manager, credentials, graph, oauth, clock):
        connect_host(credentials, clock, access_token="stale")
        graph.rejected_tokens.update({"stale", "mock-access-1"})

        with pytest.raises(ProviderAuthError):
            ProviderClient(token_manager, graph).list_busy(HOST, DAY)

        assert graph.calls == ["list_busy", "list_busy"]

    def test_not_connected(self, token_manager, graph):
        with pytest.raises(CalendarNotConnectedError):
            ProviderClient(token_manager, graph).list_busy(HOST, DAY)
        assert graph.calls == []

    def test_push_and_delete(self, token_manager, credentials, graph, guard, clock):
        connect_host(credentials, clock)
        booking = guard.create_booking(HOST, "client-1", TimeRange(start=utc("2024-11-25 10:00"), end=utc("2024-11-25 10:30")))
        client = ProviderClient(token_manager, graph)

        event_id = client.push_booking(HOST, booking)
        assert graph.events[event_id] == booking.time_range

        client.delete_booking(HOST, event_id)
        assert event_id not in graph.events


class FakeMsalApp:
    """Stands in for msal.ConfidentialClientApplication."""

    instances = []

    def __init__(self, result=None, error=None, **kwargs):
        self.kwargs = kwargs
        self.result = result
        self.error = error
        FakeMsalApp.instances.append(self)

    def _answer(self):
        if self.error is not None:
            raise self.error
        return self.result

    def get_authorization_request_url(self, scopes, state=None, redirect_uri=None, prompt=None):
        return f"https://login.microsoftonline.com/authorize?state={state}&prompt={prompt}"

    def acquire_token_by_authorization_code(self, code, scopes, redirect_uri=None):
        return self._answer()

    def acquire_token_by_refresh_token(self, refresh_token, scopes):
        return self._answer()


def _oauth_client(clock, result=None, error=None):
    config = ProviderConfig(
        client_id="app-id",
        client_secret="app-secret",
        redirect_uri="http://localhost:8000/calendar/callback",
    )
    return OAuthClient(
        config,
        timeout=4.0,
        clock=clock,
        app_factory=lambda **kwargs: FakeMsalApp(result=result, error=error, **kwargs),
    )


class TestOAuthClient:
    """Tests for OAuthClient result mapping."""

    def test_authorization_url(self, clock):
        url = _oauth_client(clock).get_authorization_url("anna")

        assert "state=anna" in url
        assert "prompt=consent" in url

    def test_app_built_per_call_with_timeout(self, clock):
        FakeMsalApp.instances.clear()
        client = _oauth_client(clock, result={"access_token": "a", "expires_in": 60})

        client.refresh("r")
        client.refresh("r")

        assert len(FakeMsalApp.instances) == 2
        assert FakeMsalApp.instances[0].kwargs["timeout"] == 4.0
        assert FakeMsalApp.instances[0].kwargs["client_credential"] == "app-secret"

    def test_exchange_code(self, clock):
        client = _oauth_client(clock, result={
            "access_token": "access",
            "refresh_token": "refresh",
            "expires_in": 3600,
            "id_token_claims": {"preferred_username": "anna@example.com"},
        })

        grant = client.exchange_code("code")

        assert grant.refresh_token == "refresh"
        assert grant.account_email == "anna@example.com"
        assert grant.expires_at == clock().add(seconds=3600)

    def test_exchange_code_without_refresh_token(self, clock):
        client = _oauth_client(clock, result={"access_token": "access", "expires_in": 3600})

        with pytest.raises(CalendarAPIError):
            client.exchange_code("code")

    def test_refresh_without_rotation(self, clock):
        grant = _oauth_client(clock, result={"access_token": "new", "expires_in": 1800}).refresh("r")

        assert grant.access_token == "new"
        assert grant.refresh_token is None
        assert grant.expires_at == pendulum.parse("2024-11-24 12:30", tz="UTC")

    def test_invalid_grant_is_revocation(self, clock):
        client = _oauth_client(clock, result={"error": "invalid_grant", "error_description": "AADSTS70008"})

        with pytest.raises(CredentialRevokedError):
            client.refresh("r")

    def test_transient_endpoint_error(self, clock):
        client = _oauth_client(clock, result={"error": "temporarily_unavailable"})

        with pytest.raises(ProviderUnavailableError):
            client.refresh("r")

    def test_network_failure(self, clock):
        client = _oauth_client(clock, error=requests.exceptions.ConnectionError("down"))

        with pytest.raises(ProviderUnavailableError):
            client.refresh("r")
