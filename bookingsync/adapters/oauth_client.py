"""
OAuth2 token endpoint access for Microsoft Graph using MSAL.

Hosts connect with the authorization-code flow (consent in the browser,
code delivered to our redirect URI). Afterwards access tokens are renewed
with the refresh-token grant without user interaction.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List

import msal
import pendulum
import requests
from pendulum import DateTime

from ..config import ProviderConfig
from ..domain.exceptions import CalendarAPIError, CredentialRevokedError, ProviderUnavailableError
from ..domain.models import TokenGrant

logger = logging.getLogger(__name__)


PROVIDER_NAME = "microsoft"

# Token endpoint errors meaning the refresh token is dead for good
_REVOKED_ERRORS = {"invalid_grant", "interaction_required", "consent_required", "unauthorized_client"}
_TRANSIENT_ERRORS = {"temporarily_unavailable", "server_error"}


class OAuthClient:
    """
    Performs authorization-code and refresh-token grants.

    A fresh ``msal.ConfidentialClientApplication`` is built for every call
    and no MSAL token cache is kept: the credential store is the only
    source of truth for tokens.
    """

    provider_name = PROVIDER_NAME

    def __init__(
        self,
        config: ProviderConfig,
        timeout: float = 10.0,
        clock: Callable[[], DateTime] | None = None,
        app_factory: Callable[..., Any] | None = None,
    ):
        """
        Initialize the OAuth client.

        Args:
            config: Registered application (client id, secret, tenant, redirect URI)
            timeout: Seconds before a token endpoint request is abandoned
            clock: Source of the current instant, used to compute expiry
            app_factory: Replacement for ``msal.ConfidentialClientApplication``
        """
        self.config = config
        self.timeout = timeout
        self._clock = clock or (lambda: pendulum.now("UTC"))
        self._app_factory = app_factory or msal.ConfidentialClientApplication

    @property
    def scopes(self) -> List[str]:
        return list(self.config.scopes)

    def _build_app(self):
        return self._app_factory(
            client_id=self.config.client_id,
            client_credential=self.config.resolve_client_secret(),
            authority=self.config.get_authority_url(),
            timeout=self.timeout,
        )

    def get_authorization_url(self, state: str) -> str:
        """
        Build the consent URL a host visits to connect their calendar.

        Args:
            state: Opaque value echoed back to the redirect URI
        """
        try:
            return self._build_app().get_authorization_request_url(
                scopes=self.scopes,
                state=state,
                redirect_uri=self.config.redirect_uri,
                prompt="consent",
            )
        except requests.exceptions.RequestException as exc:
            raise ProviderUnavailableError(f"Authority discovery failed: {exc}") from exc

    def exchange_code(self, code: str) -> TokenGrant:
        """
        Exchange an authorization code for the initial token set.

        Raises:
            CalendarAPIError: If the provider rejects the code or omits a refresh token
        """
        try:
            result = self._build_app().acquire_token_by_authorization_code(
                code,
                scopes=self.scopes,
                redirect_uri=self.config.redirect_uri,
            )
        except requests.exceptions.RequestException as exc:
            raise ProviderUnavailableError(f"Token endpoint unreachable: {exc}") from exc

        if "access_token" not in result:
            error = result.get("error_description") or result.get("error", "Unknown error")
            raise CalendarAPIError(f"Authorization code exchange failed: {error}")

        if not result.get("refresh_token"):
            raise CalendarAPIError("Provider did not return a refresh token")

        return self._to_grant(result)

    def refresh(self, refresh_token: str) -> TokenGrant:
        """
        Redeem a refresh token for a new access token.

        Returns:
            TokenGrant; ``refresh_token`` is set only if the provider rotated it

        Raises:
            CredentialRevokedError: If the provider rejected the refresh token
            ProviderUnavailableError: If the token endpoint could not be reached
        """
        try:
            result = self._build_app().acquire_token_by_refresh_token(
                refresh_token,
                scopes=self.scopes,
            )
        except requests.exceptions.RequestException as exc:
            raise ProviderUnavailableError(f"Token endpoint unreachable: {exc}") from exc

        if "access_token" in result:
            return self._to_grant(result)

        error = result.get("error", "")
        description = result.get("error_description") or error or "Unknown error"

        if error in _REVOKED_ERRORS:
            logger.warning("Token endpoint answered %s for refresh grant", error)
            raise CredentialRevokedError(f"Refresh token rejected: {description}")
        if error in _TRANSIENT_ERRORS:
            raise ProviderUnavailableError(f"Token endpoint unavailable: {description}")
        raise CalendarAPIError(f"Token refresh failed: {description}")

    def _to_grant(self, result: Dict[str, Any]) -> TokenGrant:
        expires_in = int(result.get("expires_in", 3600))
        claims = result.get("id_token_claims") or {}
        return TokenGrant(
            access_token=result["access_token"],
            refresh_token=result.get("refresh_token"),
            expires_at=self._clock().add(seconds=expires_in),
            account_email=claims.get("preferred_username") or claims.get("email", ""),
        )
