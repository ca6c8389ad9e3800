"""
Service layer helpers that orchestrate adapters and domain logic.
"""

from .busy_cache import BusyCache
from .conflict_guard import BookingConflictGuard
from .provider_client import CalendarAPIProtocol, ProviderClient
from .scheduler import SchedulingOrchestrator
from .sync_queue import SyncRetryQueue
from .token_manager import TokenRefreshManager

__all__ = [
    "BookingConflictGuard",
    "BusyCache",
    "CalendarAPIProtocol",
    "ProviderClient",
    "SchedulingOrchestrator",
    "SyncRetryQueue",
    "TokenRefreshManager",
]
