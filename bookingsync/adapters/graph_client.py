"""
Microsoft Graph API client for calendar busy data and event sync.
"""

import logging
from typing import Any, Dict, List

import pendulum
import requests
from pendulum import DateTime

from ..domain.exceptions import (
    CalendarAPIError,
    EventNotFoundError,
    ProviderAuthError,
    ProviderUnavailableError,
)
from ..domain.models import Booking, TimeRange

logger = logging.getLogger(__name__)


# showAs values that block a host's time
BUSY_STATUSES = {"busy", "tentative", "oof", "workingelsewhere"}


class GraphCalendarClient:
    """
    Stateless client for Microsoft Graph calendar operations.

    Every method takes the access token to use, so no credential outlives a
    single call. Uses ``/me/calendarView`` for busy data, which is paged via
    ``@odata.nextLink``.
    """

    GRAPH_API_ENDPOINT = "https://graph.microsoft.com/v1.0"
    PAGE_SIZE = 100

    def __init__(self, timeout: float = 10.0, session: requests.Session | None = None):
        """
        Initialize the Graph API client.

        Args:
            timeout: Seconds before a request is abandoned
            session: Optional requests session (connection pooling, tests)
        """
        self.timeout = timeout
        self._http = session or requests.Session()

    def list_busy(self, access_token: str, time_range: TimeRange) -> List[TimeRange]:
        """
        Fetch every busy block overlapping ``time_range``.

        Follows ``@odata.nextLink`` until the provider reports no further
        pages, so a busy day is never truncated.

        Raises:
            ProviderAuthError: On 401
            ProviderUnavailableError: On timeout, network failure, 429 or 5xx
            CalendarAPIError: On any other failed response
        """
        url = f"{self.GRAPH_API_ENDPOINT}/me/calendarView"
        params: Dict[str, Any] | None = {
            "startDateTime": time_range.start.in_timezone("UTC").to_iso8601_string(),
            "endDateTime": time_range.end.in_timezone("UTC").to_iso8601_string(),
            "$select": "showAs,isCancelled,start,end",
            "$top": self.PAGE_SIZE,
        }

        busy_ranges: List[TimeRange] = []
        seen_links = set()
        pages = 0

        while url:
            response = self._request("GET", url, access_token, params=params)
            data = self._json(response)
            events = data.get("value", [])
            if not isinstance(events, list):
                raise CalendarAPIError("Provider returned a calendarView page without an event list")
            busy_ranges.extend(self._parse_events(events))
            pages += 1

            url = data.get("@odata.nextLink")
            params = None  # nextLink already carries the query
            if url in seen_links:
                raise CalendarAPIError("Provider returned a repeating page link")
            if url:
                seen_links.add(url)

        logger.debug("Fetched %d busy blocks in %d page(s)", len(busy_ranges), pages)
        return busy_ranges

    def create_event(self, access_token: str, booking: Booking) -> str:
        """
        Create a calendar event mirroring ``booking``.

        The booking id is sent as ``transactionId`` so a retried push does not
        create a duplicate event.

        Returns:
            Provider event id
        """
        payload = self._event_payload(booking)
        payload["transactionId"] = booking.id

        response = self._request(
            "POST",
            f"{self.GRAPH_API_ENDPOINT}/me/events",
            access_token,
            json=payload,
        )
        data = self._json(response)

        event_id = data.get("id")
        if not event_id:
            raise CalendarAPIError("Provider response did not include an event id")
        return event_id

    def update_event(self, access_token: str, event_id: str, booking: Booking) -> None:
        """
        Bring an existing event in line with a rescheduled booking.

        Raises:
            EventNotFoundError: If the event no longer exists at the provider
        """
        response = self._request(
            "PATCH",
            f"{self.GRAPH_API_ENDPOINT}/me/events/{event_id}",
            access_token,
            json=self._event_payload(booking),
        )
        if response.status_code in (404, 410):
            raise EventNotFoundError(f"Event {event_id} no longer exists at the provider")
        self._raise_for_status(response)

    def delete_event(self, access_token: str, event_id: str) -> None:
        """Delete an event. An event that is already gone counts as deleted."""
        response = self._request(
            "DELETE",
            f"{self.GRAPH_API_ENDPOINT}/me/events/{event_id}",
            access_token,
        )
        if response.status_code in (404, 410):
            logger.info("Event %s already absent at provider", event_id)
            return
        self._raise_for_status(response)

    def _request(
        self,
        method: str,
        url: str,
        access_token: str,
        **kwargs: Any,
    ) -> requests.Response:
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
            "Prefer": 'outlook.timezone="UTC"',
        }

        try:
            response = self._http.request(
                method,
                url,
                headers=headers,
                timeout=self.timeout,
                **kwargs,
            )
        except requests.exceptions.Timeout as exc:
            raise ProviderUnavailableError(f"Microsoft Graph timed out: {exc}") from exc
        except requests.exceptions.RequestException as exc:
            raise ProviderUnavailableError(f"Microsoft Graph unreachable: {exc}") from exc

        if response.status_code == 401:
            raise ProviderAuthError("Microsoft Graph rejected the access token")
        if response.status_code == 429 or response.status_code >= 500:
            raise ProviderUnavailableError(
                f"Microsoft Graph unavailable (HTTP {response.status_code})"
            )
        return response

    def _json(self, response: requests.Response) -> Dict[str, Any]:
        self._raise_for_status(response)
        try:
            data = response.json()
        except ValueError as exc:
            raise CalendarAPIError(f"Invalid JSON from Microsoft Graph: {exc}") from exc
        if not isinstance(data, dict):
            raise CalendarAPIError(f"Expected a JSON object from Microsoft Graph, got {type(data).__name__}")
        return data

    @staticmethod
    def _raise_for_status(response: requests.Response) -> None:
        try:
            response.raise_for_status()
        except requests.exceptions.HTTPError as exc:
            raise CalendarAPIError(f"Microsoft Graph request failed: {exc}") from exc

    def _parse_events(self, events: List[Dict[str, Any]]) -> List[TimeRange]:
        """
        Convert calendarView events into busy ranges.

        Event format:
        {
            "showAs": "busy",
            "isCancelled": false,
            "start": {"dateTime": "2024-11-25T10:00:00.0000000", "timeZone": "UTC"},
            "end": {"dateTime": "2024-11-25T11:00:00.0000000", "timeZone": "UTC"}
        }
        """
        busy_ranges: List[TimeRange] = []

        for event in events:
            if not isinstance(event, dict):
                logger.warning("Skipping malformed calendar event: %r", event)
                continue
            if event.get("isCancelled"):
                continue

            status = str(event.get("showAs") or "").lower()
            if status not in BUSY_STATUSES:
                continue

            try:
                start = self._parse_datetime(
                    event["start"]["dateTime"],
                    event["start"].get("timeZone", "UTC"),
                )
                end = self._parse_datetime(
                    event["end"]["dateTime"],
                    event["end"].get("timeZone", "UTC"),
                )
                busy_ranges.append(TimeRange(start=start, end=end))

            except (AttributeError, KeyError, TypeError, ValueError) as e:
                logger.warning("Could not parse calendar event: %s", e)
                continue

        return busy_ranges

    @staticmethod
    def _parse_datetime(datetime_str: str, timezone: str) -> DateTime:
        """
        Parse a Graph datetime string to a pendulum DateTime in UTC.

        Graph sends seven fractional digits; Python keeps six.
        """
        if "." in datetime_str:
            head, fraction = datetime_str.split(".", 1)
            datetime_str = f"{head}.{fraction[:6]}"

        dt = pendulum.parse(datetime_str, tz=timezone)

        if isinstance(dt, DateTime):
            return dt.in_timezone("UTC")

        raise ValueError(f"Could not parse datetime: {datetime_str}")

    def _event_payload(self, booking: Booking) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "subject": booking.title or "Booking",
            "body": {"contentType": "text", "content": booking.description},
            "start": self._graph_datetime(booking.time_range.start),
            "end": self._graph_datetime(booking.time_range.end),
            "showAs": "busy",
        }
        if booking.location:
            payload["location"] = {"displayName": booking.location}
        return payload

    @staticmethod
    def _graph_datetime(value: DateTime) -> Dict[str, str]:
        return {
            "dateTime": value.in_timezone("UTC").format("YYYY-MM-DDTHH:mm:ss"),
            "timeZone": "UTC",
        }
