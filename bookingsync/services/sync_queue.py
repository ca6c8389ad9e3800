"""
Durable queue of outbound calendar pushes, updates and deletes.

Jobs live in the ``sync_jobs`` table so a restart does not lose them.
Each job gets an initial attempt plus one retry per configured delay;
after that it is dropped and logged.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import List, Sequence

from pendulum import DateTime

from ..adapters.database import Database, from_ts, to_ts
from ..domain.models import SyncAction, SyncJob

logger = logging.getLogger(__name__)


DEFAULT_RETRY_DELAYS = (60, 300, 1800)


class SyncRetryQueue:
    def __init__(self, database: Database, retry_delays: Sequence[int] = DEFAULT_RETRY_DELAYS):
        self._db = database
        self.retry_delays = tuple(retry_delays)

    @property
    def max_attempts(self) -> int:
        return len(self.retry_delays) + 1

    def enqueue(
        self,
        action: SyncAction,
        host_id: str,
        booking_id: str,
        now: DateTime,
        provider_event_id: str | None = None,
    ) -> SyncJob:
        """Record a job that is due immediately."""
        with self._db.transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO sync_jobs (
                    host_id, booking_id, action, provider_event_id,
                    attempts, next_attempt_at, created_at
                ) VALUES (?, ?, ?, ?, 0, ?, ?)
                """,
                (host_id, booking_id, action.value, provider_event_id, to_ts(now), to_ts(now)),
            )
            job_id = cursor.lastrowid

        return SyncJob(
            id=job_id,
            host_id=host_id,
            booking_id=booking_id,
            action=action,
            next_attempt_at=now,
            provider_event_id=provider_event_id,
        )

    def get(self, job_id: int) -> SyncJob | None:
        rows = self._db.query("SELECT * FROM sync_jobs WHERE id = ?", (job_id,))
        return self._from_row(rows[0]) if rows else None

    def due(self, now: DateTime) -> List[SyncJob]:
        rows = self._db.query(
            "SELECT * FROM sync_jobs WHERE next_attempt_at <= ? ORDER BY next_attempt_at, id",
            (to_ts(now),),
        )
        return [self._from_row(row) for row in rows]

    def pending(self, host_id: str | None = None) -> List[SyncJob]:
        if host_id is None:
            rows = self._db.query("SELECT * FROM sync_jobs ORDER BY id")
        else:
            rows = self._db.query("SELECT * FROM sync_jobs WHERE host_id = ? ORDER BY id", (host_id,))
        return [self._from_row(row) for row in rows]

    def claim(self, job_id: int, now: DateTime, lease_seconds: int = 300) -> bool:
        """
        Take a due job for processing.

        Pushes the job's due time past the lease so a concurrent runner skips
        it; a runner that dies mid-job releases it when the lease runs out.
        """
        with self._db.transaction() as conn:
            cursor = conn.execute(
                "UPDATE sync_jobs SET next_attempt_at = ? WHERE id = ? AND next_attempt_at <= ?",
                (to_ts(now.add(seconds=lease_seconds)), job_id, to_ts(now)),
            )
            return cursor.rowcount == 1

    def complete(self, job_id: int) -> None:
        with self._db.transaction() as conn:
            conn.execute("DELETE FROM sync_jobs WHERE id = ?", (job_id,))

    def reschedule(self, job: SyncJob, error: str, now: DateTime) -> SyncJob | None:
        """
        Count a failed attempt and schedule the next one.

        Returns:
            The updated job, or None if it exhausted its attempts and was dropped
        """
        attempts = job.attempts + 1

        if attempts >= self.max_attempts:
            self.complete(job.id)
            logger.error(
                "Dropping %s job %s for booking %s (host %s) after %d attempts: %s",
                job.action.value,
                job.id,
                job.booking_id,
                job.host_id,
                attempts,
                error,
            )
            return None

        next_attempt_at = now.add(seconds=self.retry_delays[attempts - 1])
        with self._db.transaction() as conn:
            conn.execute(
                "UPDATE sync_jobs SET attempts = ?, next_attempt_at = ?, last_error = ? WHERE id = ?",
                (attempts, to_ts(next_attempt_at), error, job.id),
            )

        logger.warning(
            "%s job %s for booking %s failed (attempt %d), retrying at %s: %s",
            job.action.value,
            job.id,
            job.booking_id,
            attempts,
            next_attempt_at.to_iso8601_string(),
            error,
        )
        job.attempts = attempts
        job.next_attempt_at = next_attempt_at
        job.last_error = error
        return job

    def drop_host(self, host_id: str) -> int:
        with self._db.transaction() as conn:
            cursor = conn.execute("DELETE FROM sync_jobs WHERE host_id = ?", (host_id,))
            return cursor.rowcount

    @staticmethod
    def _from_row(row: sqlite3.Row) -> SyncJob:
        return SyncJob(
            id=row["id"],
            host_id=row["host_id"],
            booking_id=row["booking_id"],
            action=SyncAction(row["action"]),
            next_attempt_at=from_ts(row["next_attempt_at"]),
            attempts=row["attempts"],
            provider_event_id=row["provider_event_id"],
            last_error=row["last_error"],
        )
