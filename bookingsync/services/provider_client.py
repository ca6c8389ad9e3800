"""
Token-aware access to the external calendar.

Every call first obtains a fresh connection from the token refresh manager;
a 401 from the provider triggers one forced refresh and a single retry.
"""

from __future__ import annotations

import logging
from typing import Callable, List, Protocol, TypeVar

from ..domain.exceptions import ProviderAuthError
from ..domain.models import Booking, TimeRange
from .token_manager import TokenRefreshManager

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CalendarAPIProtocol(Protocol):
    """Protocol describing the calendar API behaviour needed by the client."""

    def list_busy(self, access_token: str, time_range: TimeRange) -> List[TimeRange]:
        """Return busy ranges overlapping the window."""

    def create_event(self, access_token: str, booking: Booking) -> str:
        """Create an event and return its provider id."""

    def update_event(self, access_token: str, event_id: str, booking: Booking) -> None:
        """Rewrite an existing event from the booking."""

    def delete_event(self, access_token: str, event_id: str) -> None:
        """Delete an event."""


class ProviderClient:
    def __init__(self, token_manager: TokenRefreshManager, api: CalendarAPIProtocol):
        self._tokens = token_manager
        self._api = api

    def list_busy(self, host_id: str, time_range: TimeRange) -> List[TimeRange]:
        """All external busy blocks of the host overlapping ``time_range``."""
        return self._call(host_id, lambda token: self._api.list_busy(token, time_range))

    def push_booking(self, host_id: str, booking: Booking) -> str:
        """Mirror a booking into the host's calendar; returns the provider event id."""
        return self._call(host_id, lambda token: self._api.create_event(token, booking))

    def update_booking(self, host_id: str, event_id: str, booking: Booking) -> None:
        self._call(host_id, lambda token: self._api.update_event(token, event_id, booking))

    def delete_booking(self, host_id: str, event_id: str) -> None:
        self._call(host_id, lambda token: self._api.delete_event(token, event_id))

    def _call(self, host_id: str, operation: Callable[[str], T]) -> T:
        connection = self._tokens.ensure_fresh(host_id)
        try:
            return operation(connection.access_token)
        except ProviderAuthError:
            logger.info("Provider rejected token of host %s; forcing refresh", host_id)

        connection = self._tokens.ensure_fresh(
            host_id,
            force=True,
            rejected_token=connection.access_token,
        )
        return operation(connection.access_token)
