"""
Tests for the durable sync retry queue and the busy-data cache.
"""

from bookingsync.domain.models import SyncAction, TimeRange
from bookingsync.services.busy_cache import BusyCache
from bookingsync.services.sync_queue import SyncRetryQueue

from conftest import HOST, utc


class TestSyncRetryQueue:
    """Tests for SyncRetryQueue."""

    def test_enqueued_job_is_due_immediately(self, sync_queue, clock):
        job = sync_queue.enqueue(SyncAction.PUSH, HOST, "booking-1", clock())

        assert [j.id for j in sync_queue.due(clock())] == [job.id]

    def test_backoff_schedule_and_drop(self, sync_queue, clock):
        job = sync_queue.enqueue(SyncAction.DELETE, HOST, "booking-1", clock(), provider_event_id="evt-1")

        waits = []
        while job is not None:
            now = clock()
            job = sync_queue.reschedule(job, "timeout", now)
            if job is not None:
                waits.append(int((job.next_attempt_at - now).total_seconds()))

        assert waits == [60, 300, 1800]
        assert sync_queue.pending() == []

    def test_reschedule_is_persisted(self, sync_queue, clock):
        job = sync_queue.enqueue(SyncAction.PUSH, HOST, "booking-1", clock())

        sync_queue.reschedule(job, "HTTP 503", clock())

        stored = sync_queue.get(job.id)
        assert stored.attempts == 1
        assert stored.last_error == "HTTP 503"
        assert sync_queue.due(clock()) == []
        assert len(sync_queue.due(clock().add(seconds=60))) == 1

    def test_claim_is_exclusive(self, sync_queue, clock):
        job = sync_queue.enqueue(SyncAction.PUSH, HOST, "booking-1", clock())

        assert sync_queue.claim(job.id, clock())
        assert not sync_queue.claim(job.id, clock())
        # The lease runs out eventually
        assert sync_queue.claim(job.id, clock().add(seconds=301))

    def test_drop_host(self, sync_queue, clock):
        sync_queue.enqueue(SyncAction.PUSH, HOST, "booking-1", clock())
        sync_queue.enqueue(SyncAction.PUSH, "other", "booking-2", clock())

        assert sync_queue.drop_host(HOST) == 1
        assert [j.host_id for j in sync_queue.pending()] == ["other"]

    def test_jobs_survive_a_new_queue_instance(self, database, sync_queue, clock):
        sync_queue.enqueue(SyncAction.PUSH, HOST, "booking-1", clock())

        reopened = SyncRetryQueue(database)

        assert len(reopened.pending(HOST)) == 1


class FakeMonotonic:
    def __init__(self):
        self.value = 1000.0

    def __call__(self):
        return self.value


class TestBusyCache:
    """Tests for BusyCache."""

    def _window(self):
        return TimeRange(start=utc("2024-11-25 00:00"), end=utc("2024-11-26 00:00"))

    def test_hit_until_ttl(self):
        monotonic = FakeMonotonic()
        cache = BusyCache(ttl_seconds=300, monotonic=monotonic)
        busy = [TimeRange(start=utc("2024-11-25 14:00"), end=utc("2024-11-25 15:00"))]

        cache.put(HOST, self._window(), busy)
        monotonic.value += 299
        assert cache.get(HOST, self._window()) == busy

        monotonic.value += 1
        assert cache.get(HOST, self._window()) is None

    def test_invalidate_host(self):
        cache = BusyCache(ttl_seconds=300)
        cache.put(HOST, self._window(), [])
        cache.put("other", self._window(), [])

        cache.invalidate(HOST)

        assert cache.get(HOST, self._window()) is None
        assert cache.get("other", self._window()) == []

    def test_zero_ttl_disables_cache(self):
        cache = BusyCache(ttl_seconds=0)
        cache.put(HOST, self._window(), [])

        assert cache.get(HOST, self._window()) is None

    def test_expired_entries_are_swept_on_write(self):
        monotonic = FakeMonotonic()
        cache = BusyCache(ttl_seconds=300, monotonic=monotonic)
        for hour in range(10):
            window = TimeRange(start=utc(f"2024-11-25 {hour:02d}:00"), end=utc(f"2024-11-25 {hour:02d}:30"))
            cache.put(HOST, window, [])
        assert len(cache) == 10

        monotonic.value += 300
        cache.put(HOST, self._window(), [])

        assert len(cache) == 1
        assert cache.get(HOST, self._window()) == []
