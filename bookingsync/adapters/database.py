"""
SQLite persistence: connection factory, schema and write transactions.
"""

from __future__ import annotations

import logging
import random
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

import pendulum
from pendulum import DateTime

from ..domain.exceptions import StorageError

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS bookings (
    id TEXT PRIMARY KEY,
    host_id TEXT NOT NULL,
    client_id TEXT NOT NULL,
    start_ts INTEGER NOT NULL,
    end_ts INTEGER NOT NULL,
    status TEXT NOT NULL,
    title TEXT NOT NULL DEFAULT '',
    description TEXT NOT NULL DEFAULT '',
    location TEXT NOT NULL DEFAULT '',
    provider_event_id TEXT,
    cancel_reason TEXT,
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_bookings_host_time
    ON bookings (host_id, status, start_ts, end_ts);

CREATE TABLE IF NOT EXISTS calendar_connections (
    host_id TEXT PRIMARY KEY,
    provider TEXT NOT NULL,
    account_email TEXT NOT NULL DEFAULT '',
    access_token TEXT NOT NULL,
    refresh_token TEXT NOT NULL,
    expires_at INTEGER NOT NULL,
    sync_enabled INTEGER NOT NULL DEFAULT 1,
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS sync_jobs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    host_id TEXT NOT NULL,
    booking_id TEXT NOT NULL,
    action TEXT NOT NULL,
    provider_event_id TEXT,
    attempts INTEGER NOT NULL DEFAULT 0,
    next_attempt_at INTEGER NOT NULL,
    last_error TEXT,
    created_at INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sync_jobs_due ON sync_jobs (next_attempt_at);
"""

# Busy/locked errors are the only ones worth retrying
_RETRYABLE_MESSAGES = ("database is locked", "database is busy", "database table is locked")


def to_ts(value: DateTime) -> int:
    """
    Instants are stored as integer UTC epoch seconds.

    Sub-second parts are dropped; the orchestrator rejects ranges that carry them.
    """
    return int(value.int_timestamp)


def from_ts(value: int) -> DateTime:
    return pendulum.from_timestamp(value, tz="UTC")


def _is_retryable(exc: sqlite3.OperationalError) -> bool:
    message = str(exc).lower()
    return any(fragment in message for fragment in _RETRYABLE_MESSAGES)


class Database:
    """
    Thin wrapper around a SQLite file.

    Every transaction opens its own connection, so the object can be shared
    freely between threads.
    """

    def __init__(
        self,
        path: Path | str,
        busy_timeout: float = 5.0,
        max_retries: int = 5,
    ):
        self.path = str(path)
        self.busy_timeout = busy_timeout
        self.max_retries = max_retries
        self._init_db()

    def _init_db(self) -> None:
        """Create tables if they do not exist."""
        conn = self.connect()
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(SCHEMA)
        except sqlite3.Error as exc:
            raise StorageError(f"Could not initialise database {self.path}: {exc}") from exc
        finally:
            conn.close()

    def connect(self) -> sqlite3.Connection:
        # isolation_level=None: transactions are opened explicitly below
        conn = sqlite3.connect(self.path, timeout=self.busy_timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA synchronous=NORMAL")
        return conn

    @contextmanager
    def transaction(self, immediate: bool = True) -> Iterator[sqlite3.Connection]:
        """
        Run a block inside one write transaction.

        ``BEGIN IMMEDIATE`` takes SQLite's write lock up front, so a
        read-then-write sequence inside the block cannot interleave with
        another writer. Lock contention is retried with jittered backoff;
        exceptions raised by the block roll back and propagate unchanged.

        Raises:
            StorageError: If the lock cannot be obtained or SQLite fails
        """
        conn = self._begin(immediate)
        try:
            yield conn
            conn.execute("COMMIT")
        except sqlite3.Error as exc:
            self._rollback(conn)
            raise StorageError(f"Transaction failed: {exc}") from exc
        except BaseException:
            self._rollback(conn)
            raise
        finally:
            conn.close()

    def _begin(self, immediate: bool) -> sqlite3.Connection:
        statement = "BEGIN IMMEDIATE" if immediate else "BEGIN"
        attempt = 0

        while True:
            conn = self.connect()
            try:
                conn.execute(statement)
                return conn
            except sqlite3.OperationalError as exc:
                conn.close()
                attempt += 1
                if not _is_retryable(exc) or attempt > self.max_retries:
                    raise StorageError(f"Could not start transaction: {exc}") from exc
                delay = min(0.05 * (2 ** attempt), 1.0) * (0.5 + random.random())
                logger.debug("Database busy, retrying in %.2fs (attempt %d)", delay, attempt)
                time.sleep(delay)

    @staticmethod
    def _rollback(conn: sqlite3.Connection) -> None:
        try:
            conn.execute("ROLLBACK")
        except sqlite3.Error as exc:
            logger.warning("Rollback failed: %s", exc)

    def query(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        """Run a read-only statement outside any explicit transaction."""
        conn = self.connect()
        try:
            return conn.execute(sql, params).fetchall()
        except sqlite3.Error as exc:
            raise StorageError(f"Query failed: {exc}") from exc
        finally:
            conn.close()
