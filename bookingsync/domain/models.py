"""
Domain models for time ranges, bookings and calendar connections.
"""

from dataclasses import dataclass
from datetime import time
from enum import Enum
from typing import Any, Dict, List, Tuple

import pendulum
from pendulum import Date, DateTime


@dataclass(frozen=True)
class TimeRange:
    """
    Represents an immutable time range with start and end datetime.

    Invariant: start must be before end. The range is half-open,
    ``[start, end)``, so ranges that merely touch do not overlap.
    """
    start: DateTime
    end: DateTime

    def __post_init__(self):
        if self.start >= self.end:
            raise ValueError(f"Start time {self.start} must be before end time {self.end}")

    def duration_minutes(self) -> int:
        """Return the duration in minutes."""
        return int((self.end - self.start).total_seconds() / 60)

    def overlaps(self, other: "TimeRange") -> bool:
        """Check if this range overlaps with another."""
        return self.start < other.end and self.end > other.start

    def intersect(self, other: "TimeRange") -> "TimeRange | None":
        """
        Calculate the intersection of two time ranges.
        Returns None if there is no overlap.
        """
        if not self.overlaps(other):
            return None

        start = max(self.start, other.start)
        end = min(self.end, other.end)

        return TimeRange(start=start, end=end)

    def in_utc(self) -> "TimeRange":
        return TimeRange(start=self.start.in_timezone("UTC"), end=self.end.in_timezone("UTC"))

    def __str__(self) -> str:
        return f"{self.start.format('DD.MM.YYYY HH:mm')} - {self.end.format('HH:mm')}"


class BookingStatus(str, Enum):
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"


@dataclass
class Booking:
    """
    A committed booking of a host's time by a client.

    Cancelled bookings are kept but never count as busy time.
    """
    id: str
    host_id: str
    client_id: str
    time_range: TimeRange
    status: BookingStatus = BookingStatus.CONFIRMED
    title: str = ""
    description: str = ""
    location: str = ""
    provider_event_id: str | None = None
    cancel_reason: str | None = None
    created_at: DateTime | None = None

    @property
    def is_active(self) -> bool:
        return self.status == BookingStatus.CONFIRMED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "hostId": self.host_id,
            "clientId": self.client_id,
            "startTime": self.time_range.start.to_iso8601_string(),
            "endTime": self.time_range.end.to_iso8601_string(),
            "duration": self.time_range.duration_minutes(),
            "status": self.status.value,
            "title": self.title,
            "providerEventId": self.provider_event_id,
        }


class ConnectionState(str, Enum):
    """Token lifecycle of a calendar connection."""
    VALID = "VALID"
    NEAR_EXPIRY = "NEAR_EXPIRY"
    REFRESHING = "REFRESHING"
    REVOKED = "REVOKED"


@dataclass
class CalendarConnection:
    """
    OAuth2 credentials linking one host to an external calendar.

    Tokens are held decrypted in memory only; the credential store encrypts
    them at rest.
    """
    host_id: str
    provider: str
    access_token: str
    refresh_token: str
    expires_at: DateTime
    account_email: str = ""
    sync_enabled: bool = True
    created_at: DateTime | None = None
    updated_at: DateTime | None = None

    def expires_within(self, now: DateTime, seconds: float) -> bool:
        """True if the access token expires less than ``seconds`` after ``now``."""
        return (self.expires_at - now).total_seconds() < seconds

    def is_expired(self, now: DateTime) -> bool:
        return self.expires_at <= now


@dataclass(frozen=True)
class TokenGrant:
    """Result of a token exchange against the provider's token endpoint."""
    access_token: str
    expires_at: DateTime
    refresh_token: str | None = None
    account_email: str = ""


@dataclass(frozen=True)
class WeeklyWindow:
    """Opening window for one weekday (0=Monday, 6=Sunday)."""
    weekday: int
    open_time: time
    close_time: time


@dataclass(frozen=True)
class WorkingHoursPolicy:
    """
    Per-host working hours, slot granularity and minimum lead time.

    Window times are wall-clock times in ``timezone``.
    """
    windows: Tuple[WeeklyWindow, ...]
    granularity_minutes: int = 15
    lead_time_minutes: int = 60
    timezone: str = "UTC"

    def windows_for_day(self, day: Date) -> List[TimeRange]:
        """
        Get the working ranges for a specific day, ordered by start.
        Returns an empty list if the policy excludes the day.
        """
        base = pendulum.datetime(day.year, day.month, day.day, tz=self.timezone)
        ranges: List[TimeRange] = []

        for window in self.windows:
            if window.weekday != base.weekday():
                continue
            start = base.set(hour=window.open_time.hour, minute=window.open_time.minute)
            end = base.set(hour=window.close_time.hour, minute=window.close_time.minute)
            if start < end:
                ranges.append(TimeRange(start=start, end=end))

        return sorted(ranges, key=lambda r: r.start)

    def day_range(self, day: Date) -> TimeRange:
        """The whole calendar day in the policy's timezone."""
        start = pendulum.datetime(day.year, day.month, day.day, tz=self.timezone)
        return TimeRange(start=start, end=start.add(days=1))


@dataclass(frozen=True)
class AvailabilitySlot:
    """A candidate booking window, marked available or not. Never persisted."""
    start: DateTime
    end: DateTime
    available: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "time": self.start.format("HH:mm"),
            "start": self.start.to_iso8601_string(),
            "end": self.end.to_iso8601_string(),
            "available": self.available,
        }


class ExternalSyncStatus(str, Enum):
    """How external busy data contributed to an availability answer."""
    OK = "ok"
    NOT_CONNECTED = "not_connected"
    REVOKED = "revoked"
    UNAVAILABLE = "unavailable"

    @property
    def degraded(self) -> bool:
        return self in (ExternalSyncStatus.REVOKED, ExternalSyncStatus.UNAVAILABLE)


@dataclass
class SlotResult:
    host_id: str
    date: Date
    duration: int
    slots: List[AvailabilitySlot]
    external_sync: ExternalSyncStatus = ExternalSyncStatus.OK

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hostId": self.host_id,
            "date": self.date.isoformat(),
            "duration": self.duration,
            "slots": [slot.to_dict() for slot in self.slots],
            "externalSync": self.external_sync.value,
            "degraded": self.external_sync.degraded,
        }


@dataclass
class AvailabilityResult:
    available: bool
    external_sync: ExternalSyncStatus = ExternalSyncStatus.OK

    def to_dict(self) -> Dict[str, Any]:
        return {
            "available": self.available,
            "externalSync": self.external_sync.value,
            "degraded": self.external_sync.degraded,
        }


@dataclass
class CalendarStatus:
    connected: bool
    provider: str | None = None
    expired: bool = False
    sync_enabled: bool = False
    account_email: str | None = None
    state: ConnectionState | None = None

    def to_dict(self) -> Dict[str, Any]:
        if not self.connected:
            return {"connected": False}
        return {
            "connected": True,
            "provider": self.provider,
            "expired": self.expired,
            "syncEnabled": self.sync_enabled,
            "email": self.account_email,
            "state": self.state.value if self.state else None,
        }


class SyncAction(str, Enum):
    PUSH = "push"
    UPDATE = "update"
    DELETE = "delete"


@dataclass
class SyncJob:
    """One outbound push, update or delete waiting to be delivered to the provider."""
    id: int
    host_id: str
    booking_id: str
    action: SyncAction
    next_attempt_at: DateTime
    attempts: int = 0
    provider_event_id: str | None = None
    last_error: str | None = None
