"""
Short-lived cache of external busy blocks, keyed by host and queried range.
"""

from __future__ import annotations

import threading
import time
from typing import Callable, Dict, List, Tuple

from ..domain.models import TimeRange

_Key = Tuple[str, int, int]


class BusyCache:
    """
    TTL cache; only successful provider answers are stored.

    Expired entries are dropped on read and swept out on every write, so the
    cache holds at most the keys written within one TTL.
    """

    def __init__(self, ttl_seconds: float = 300, monotonic: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._monotonic = monotonic
        self._lock = threading.Lock()
        self._entries: Dict[_Key, Tuple[float, List[TimeRange]]] = {}

    @staticmethod
    def _key(host_id: str, time_range: TimeRange) -> _Key:
        return host_id, time_range.start.int_timestamp, time_range.end.int_timestamp

    def get(self, host_id: str, time_range: TimeRange) -> List[TimeRange] | None:
        key = self._key(host_id, time_range)
        now = self._monotonic()
        with self._lock:
            hit = self._entries.get(key)
            if hit is None:
                return None
            stored_at, busy = hit
            if now - stored_at >= self.ttl_seconds:
                del self._entries[key]
                return None
            return list(busy)

    def put(self, host_id: str, time_range: TimeRange, busy: List[TimeRange]) -> None:
        """Store an answer and drop every entry whose TTL has run out."""
        if self.ttl_seconds <= 0:
            return
        now = self._monotonic()
        with self._lock:
            expired = [k for k, (stored_at, _) in self._entries.items() if now - stored_at >= self.ttl_seconds]
            for key in expired:
                del self._entries[key]
            self._entries[self._key(host_id, time_range)] = (now, list(busy))

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def invalidate(self, host_id: str) -> None:
        with self._lock:
            for key in [k for k in self._entries if k[0] == host_id]:
                del self._entries[key]
