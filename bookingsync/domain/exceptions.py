"""
Domain-specific exception hierarchy for the booking engine.

Every error carries an ``http_status`` so a thin route layer can map it
without knowing the individual classes.
"""


class BookingSyncError(Exception):
    """Base class for all application-level errors."""

    http_status = 500


class InvalidInputError(BookingSyncError):
    """Raised for malformed requests. Never retried."""

    http_status = 400


class InvalidRangeError(InvalidInputError):
    """Raised when a requested range does not start before it ends."""


class InvalidDurationError(InvalidInputError):
    """Raised when a slot duration is outside the allowed bounds."""


class UnknownHostError(InvalidInputError):
    """Raised when no working-hours policy is configured for a host."""

    http_status = 404


class BookingNotFoundError(InvalidInputError):
    """Raised when a booking id does not exist."""

    http_status = 404


class SlotTakenError(BookingSyncError):
    """Raised when a confirmed booking already occupies part of the requested range."""

    http_status = 409
    reason = "SlotTaken"


class BookingCancelledError(BookingSyncError):
    """Raised when a cancelled booking is asked to move."""

    http_status = 409


class CalendarNotConnectedError(BookingSyncError):
    """Raised when a host has no external calendar connection."""

    http_status = 404


class CredentialRevokedError(BookingSyncError):
    """Raised when the provider rejected the refresh token; sync is disabled for the host."""

    http_status = 401


class CalendarAPIError(BookingSyncError):
    """Raised when calendar data cannot be fetched, pushed or parsed."""

    http_status = 502


class ProviderUnavailableError(CalendarAPIError):
    """Transient provider failure: timeout, network error, throttling or 5xx."""

    http_status = 503


class ProviderAuthError(CalendarAPIError):
    """The provider answered 401 for the access token we sent."""


class EventNotFoundError(CalendarAPIError):
    """The provider no longer has the event a booking points at."""

    http_status = 404


class StorageError(BookingSyncError):
    """Raised when the persistence layer fails; the operation did not commit."""
