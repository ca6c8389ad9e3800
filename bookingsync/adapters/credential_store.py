"""
Persistence of per-host OAuth2 credentials, encrypted at rest with Fernet.
"""

from __future__ import annotations

import logging
import sqlite3

import keyring
from cryptography.fernet import Fernet, InvalidToken
from keyring.errors import KeyringError
from pendulum import DateTime

from ..domain.exceptions import StorageError
from ..domain.models import CalendarConnection
from .database import Database, from_ts, to_ts

logger = logging.getLogger(__name__)


KEYRING_SERVICE_NAME = "bookingsync"
KEYRING_KEY_NAME = "token-encryption-key"


def load_encryption_key(configured_key: str = "") -> str:
    """
    Resolve the Fernet key used for token encryption.

    A key from configuration wins. Otherwise the key lives in the OS keyring
    and is generated on first use.

    Raises:
        StorageError: If no key is configured and the keyring is unusable
    """
    if configured_key:
        return configured_key

    try:
        stored = keyring.get_password(KEYRING_SERVICE_NAME, KEYRING_KEY_NAME)
        if stored:
            return stored

        generated = Fernet.generate_key().decode("ascii")
        keyring.set_password(KEYRING_SERVICE_NAME, KEYRING_KEY_NAME, generated)
        logger.info("Generated a new token encryption key in the OS keyring")
        return generated
    except KeyringError as exc:
        raise StorageError(
            "No encryption key configured and the OS keyring is unavailable "
            f"({exc}). Set BOOKINGSYNC_ENCRYPTION_KEY."
        ) from exc


class TokenCipher:
    """Symmetric encryption for tokens stored in the database."""

    def __init__(self, key: str | bytes):
        try:
            self._fernet = Fernet(key)
        except (TypeError, ValueError) as exc:
            raise StorageError(f"Invalid token encryption key: {exc}") from exc

    def encrypt(self, value: str) -> str:
        return self._fernet.encrypt(value.encode("utf-8")).decode("ascii")

    def decrypt(self, value: str) -> str:
        try:
            return self._fernet.decrypt(value.encode("ascii")).decode("utf-8")
        except InvalidToken as exc:
            raise StorageError("Stored token cannot be decrypted with the configured key") from exc


class CredentialStore:
    """
    One ``CalendarConnection`` row per host.

    Only the token refresh manager rotates tokens; everything else reads.
    """

    def __init__(self, database: Database, cipher: TokenCipher):
        self._db = database
        self._cipher = cipher

    def get(self, host_id: str) -> CalendarConnection | None:
        rows = self._db.query(
            "SELECT * FROM calendar_connections WHERE host_id = ?",
            (host_id,),
        )
        if not rows:
            return None
        return self._from_row(rows[0])

    def save(self, connection: CalendarConnection, now: DateTime) -> None:
        """Insert or replace the host's connection (fresh OAuth handshake)."""
        with self._db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO calendar_connections (
                    host_id, provider, account_email, access_token, refresh_token,
                    expires_at, sync_enabled, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(host_id) DO UPDATE SET
                    provider = excluded.provider,
                    account_email = excluded.account_email,
                    access_token = excluded.access_token,
                    refresh_token = excluded.refresh_token,
                    expires_at = excluded.expires_at,
                    sync_enabled = excluded.sync_enabled,
                    updated_at = excluded.updated_at
                """,
                (
                    connection.host_id,
                    connection.provider,
                    connection.account_email,
                    self._cipher.encrypt(connection.access_token),
                    self._cipher.encrypt(connection.refresh_token),
                    to_ts(connection.expires_at),
                    int(connection.sync_enabled),
                    to_ts(now),
                    to_ts(now),
                ),
            )

    def update_tokens(
        self,
        host_id: str,
        access_token: str,
        refresh_token: str,
        expires_at: DateTime,
        now: DateTime,
    ) -> bool:
        """
        Persist a rotated token set in a single statement.

        Returns:
            False if the connection was deleted meanwhile
        """
        with self._db.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE calendar_connections
                SET access_token = ?, refresh_token = ?, expires_at = ?, updated_at = ?
                WHERE host_id = ?
                """,
                (
                    self._cipher.encrypt(access_token),
                    self._cipher.encrypt(refresh_token),
                    to_ts(expires_at),
                    to_ts(now),
                    host_id,
                ),
            )
            return cursor.rowcount > 0

    def set_sync_enabled(self, host_id: str, enabled: bool, now: DateTime) -> None:
        with self._db.transaction() as conn:
            conn.execute(
                "UPDATE calendar_connections SET sync_enabled = ?, updated_at = ? WHERE host_id = ?",
                (int(enabled), to_ts(now), host_id),
            )

    def delete(self, host_id: str) -> bool:
        """Remove the host's connection. Missing rows are not an error."""
        with self._db.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM calendar_connections WHERE host_id = ?",
                (host_id,),
            )
            return cursor.rowcount > 0

    def _from_row(self, row: sqlite3.Row) -> CalendarConnection:
        return CalendarConnection(
            host_id=row["host_id"],
            provider=row["provider"],
            account_email=row["account_email"],
            access_token=self._cipher.decrypt(row["access_token"]),
            refresh_token=self._cipher.decrypt(row["refresh_token"]),
            expires_at=from_ts(row["expires_at"]),
            sync_enabled=bool(row["sync_enabled"]),
            created_at=from_ts(row["created_at"]),
            updated_at=from_ts(row["updated_at"]),
        )
