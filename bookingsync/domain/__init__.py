"""
Domain layer - Pure business logic without external dependencies.
"""

from .models import (
    AvailabilityResult,
    AvailabilitySlot,
    Booking,
    BookingStatus,
    CalendarConnection,
    CalendarStatus,
    ConnectionState,
    ExternalSyncStatus,
    SlotResult,
    SyncAction,
    SyncJob,
    TimeRange,
    TokenGrant,
    WeeklyWindow,
    WorkingHoursPolicy,
)
from .slot_calculator import SlotCalculator, is_free, merge_busy

__all__ = [
    "AvailabilityResult",
    "AvailabilitySlot",
    "Booking",
    "BookingStatus",
    "CalendarConnection",
    "CalendarStatus",
    "ConnectionState",
    "ExternalSyncStatus",
    "SlotResult",
    "SyncAction",
    "SyncJob",
    "TimeRange",
    "TokenGrant",
    "WeeklyWindow",
    "WorkingHoursPolicy",
    "SlotCalculator",
    "is_free",
    "merge_busy",
]
