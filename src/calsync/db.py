"""
SQLite state persistence: stored credentials and external-identity mappings.
"""

import logging
import sqlite3
import time
from datetime import UTC
from datetime import datetime
from pathlib import Path

from calsync.models import Credential
from calsync.models import Provider

logger = logging.getLogger(__name__)


def to_epoch(value: datetime | None) -> int | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return int(value.timestamp())


def from_epoch(value: int | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=UTC)


class StateDatabase:
    """Manages the SQLite database holding credentials and sync mappings.

    Write methods do not commit; callers decide the transaction boundary
    (one provider push, one inbound event) and call commit() or rollback().
    """

    def __init__(self, db_path: Path):
        self.db_path = db_path
        self.conn: sqlite3.Connection | None = None

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def connect(self):
        """Initialize and connect to the state database."""
        if str(self.db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(self.db_path))
        self.conn.row_factory = sqlite3.Row  # Enable column access by name
        self._init_schema()

    def _init_schema(self):
        """Create the credential and mapping tables if they don't exist."""
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS user_integrations (
                user_id INTEGER NOT NULL,
                provider TEXT NOT NULL,
                access_token TEXT,
                refresh_token TEXT,
                app_password TEXT,
                username TEXT,
                expires_at INTEGER,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL,
                UNIQUE(user_id, provider)
            );
            CREATE TABLE IF NOT EXISTS event_integrations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                local_id INTEGER NOT NULL,
                provider TEXT NOT NULL,
                external_id TEXT NOT NULL,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL,
                UNIQUE(local_id, provider),
                UNIQUE(provider, external_id)
            );
            CREATE TABLE IF NOT EXISTS calendar_integrations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                calendar_id INTEGER NOT NULL,
                provider TEXT NOT NULL,
                external_id TEXT NOT NULL,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL,
                UNIQUE(user_id, provider, external_id)
            );
        """)
        self.conn.commit()

    # ------------------------------------------------------------------ #
    # Credentials                                                          #
    # ------------------------------------------------------------------ #

    @staticmethod
    def _row_to_credential(row: sqlite3.Row) -> Credential:
        return Credential(
            user_id=row["user_id"],
            provider=Provider(row["provider"]),
            access_token=row["access_token"],
            refresh_token=row["refresh_token"],
            app_password=row["app_password"],
            username=row["username"],
            expires_at=from_epoch(row["expires_at"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def upsert_credential(self, credential: Credential):
        """Insert or overwrite the credential for (user_id, provider).

        created_at is kept from the first insert.
        """
        timestamp = int(time.time())
        self.conn.execute(
            "INSERT INTO user_integrations "
            "(user_id, provider, access_token, refresh_token, app_password, username, "
            " expires_at, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?) "
            "ON CONFLICT(user_id, provider) DO UPDATE SET "
            "access_token = excluded.access_token, "
            "refresh_token = excluded.refresh_token, "
            "app_password = excluded.app_password, "
            "username = excluded.username, "
            "expires_at = excluded.expires_at, "
            "updated_at = excluded.updated_at",
            (
                credential.user_id,
                credential.provider.value,
                credential.access_token,
                credential.refresh_token,
                credential.app_password,
                credential.username,
                to_epoch(credential.expires_at),
                timestamp,
                timestamp,
            ),
        )

    def get_credential(self, user_id: int, provider: Provider) -> Credential | None:
        cursor = self.conn.execute(
            "SELECT * FROM user_integrations WHERE user_id = ? AND provider = ? LIMIT 1",
            (user_id, provider.value),
        )
        row = cursor.fetchone()
        return self._row_to_credential(row) if row else None

    def list_credentials(self, user_id: int) -> list[Credential]:
        """All providers this user has connected, in provider order."""
        cursor = self.conn.execute(
            "SELECT * FROM user_integrations WHERE user_id = ? ORDER BY provider",
            (user_id,),
        )
        return [self._row_to_credential(row) for row in cursor.fetchall()]

    def delete_credential(self, user_id: int, provider: Provider):
        self.conn.execute(
            "DELETE FROM user_integrations WHERE user_id = ? AND provider = ?",
            (user_id, provider.value),
        )

    # ------------------------------------------------------------------ #
    # Event mappings                                                       #
    # ------------------------------------------------------------------ #

    def get_external_id(self, local_id: int, provider: Provider) -> str | None:
        cursor = self.conn.execute(
            "SELECT external_id FROM event_integrations "
            "WHERE local_id = ? AND provider = ? LIMIT 1",
            (local_id, provider.value),
        )
        row = cursor.fetchone()
        return row["external_id"] if row else None

    def get_local_id(self, provider: Provider, external_id: str) -> int | None:
        cursor = self.conn.execute(
            "SELECT local_id FROM event_integrations "
            "WHERE provider = ? AND external_id = ? LIMIT 1",
            (provider.value, external_id),
        )
        row = cursor.fetchone()
        return row["local_id"] if row else None

    def store_external_id(self, local_id: int, provider: Provider, external_id: str):
        """Outbound write, keyed by (local_id, provider).

        Any other local event still pointing at the same remote object loses
        its link, so (provider, external_id) stays unique.
        """
        timestamp = int(time.time())
        self.conn.execute(
            "DELETE FROM event_integrations "
            "WHERE provider = ? AND external_id = ? AND local_id != ?",
            (provider.value, external_id, local_id),
        )
        self.conn.execute(
            "INSERT INTO event_integrations "
            "(local_id, provider, external_id, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?) "
            "ON CONFLICT(local_id, provider) DO UPDATE SET "
            "external_id = excluded.external_id, updated_at = excluded.updated_at",
            (local_id, provider.value, external_id, timestamp, timestamp),
        )

    def link_external_id(self, local_id: int, provider: Provider, external_id: str):
        """Inbound write, keyed by (provider, external_id); repoints local_id."""
        timestamp = int(time.time())
        self.conn.execute(
            "DELETE FROM event_integrations "
            "WHERE local_id = ? AND provider = ? AND external_id != ?",
            (local_id, provider.value, external_id),
        )
        self.conn.execute(
            "INSERT INTO event_integrations "
            "(local_id, provider, external_id, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?) "
            "ON CONFLICT(provider, external_id) DO UPDATE SET "
            "local_id = excluded.local_id, updated_at = excluded.updated_at",
            (local_id, provider.value, external_id, timestamp, timestamp),
        )

    def remove_external_id(self, local_id: int, provider: Provider):
        """Delete the mapping; a missing row is not an error."""
        self.conn.execute(
            "DELETE FROM event_integrations WHERE local_id = ? AND provider = ?",
            (local_id, provider.value),
        )

    def list_event_mappings(self, provider: Provider | None = None) -> list:
        if provider is None:
            cursor = self.conn.execute(
                "SELECT local_id, provider, external_id FROM event_integrations ORDER BY id"
            )
        else:
            cursor = self.conn.execute(
                "SELECT local_id, provider, external_id FROM event_integrations "
                "WHERE provider = ? ORDER BY id",
                (provider.value,),
            )
        return cursor.fetchall()

    # ------------------------------------------------------------------ #
    # Calendar mappings                                                    #
    # ------------------------------------------------------------------ #

    def get_calendar_mapping(
        self, user_id: int, provider: Provider, external_id: str
    ) -> int | None:
        cursor = self.conn.execute(
            "SELECT calendar_id FROM calendar_integrations "
            "WHERE user_id = ? AND provider = ? AND external_id = ? LIMIT 1",
            (user_id, provider.value, external_id),
        )
        row = cursor.fetchone()
        return row["calendar_id"] if row else None

    def get_external_calendar_id(self, calendar_id: int, provider: Provider) -> str | None:
        """Remote calendar id a local calendar is mapped to for one provider."""
        cursor = self.conn.execute(
            "SELECT external_id FROM calendar_integrations "
            "WHERE calendar_id = ? AND provider = ? ORDER BY id LIMIT 1",
            (calendar_id, provider.value),
        )
        row = cursor.fetchone()
        return row["external_id"] if row else None

    def store_calendar_mapping(
        self, user_id: int, calendar_id: int, provider: Provider, external_id: str
    ):
        """Insert a calendar mapping; an existing mapping for the key wins."""
        timestamp = int(time.time())
        self.conn.execute(
            "INSERT INTO calendar_integrations "
            "(user_id, calendar_id, provider, external_id, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?) "
            "ON CONFLICT(user_id, provider, external_id) DO NOTHING",
            (user_id, calendar_id, provider.value, external_id, timestamp, timestamp),
        )

    def list_calendar_mappings(self, user_id: int) -> list:
        cursor = self.conn.execute(
            "SELECT calendar_id, provider, external_id FROM calendar_integrations "
            "WHERE user_id = ? ORDER BY id",
            (user_id,),
        )
        return cursor.fetchall()

    # ------------------------------------------------------------------ #
    # Transactions                                                         #
    # ------------------------------------------------------------------ #

    def commit(self):
        """Commit pending transactions."""
        if self.conn:
            self.conn.commit()

    def rollback(self):
        """Discard pending writes."""
        if self.conn:
            self.conn.rollback()

    def close(self):
        """Close the database connection."""
        if self.conn:
            self.conn.close()
            self.conn = None


def query_status(db_path: Path, user_id: int | None = None) -> list:
    """
    Return one summary row per (user_id, provider) credential.

    Each row exposes: user_id, provider, expires_at, updated_at, mapped_events,
    mapped_calendars. Event links carry no user column, so mapped_events is
    the provider-wide count. Returns an empty list when the DB file does not
    exist or has no user_integrations table yet.
    """
    if not db_path.exists():
        return []
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    try:
        tables = {
            row["name"]
            for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
        }
        if "user_integrations" not in tables:
            return []
        query = """
            SELECT
                u.user_id,
                u.provider,
                u.expires_at,
                u.updated_at,
                (SELECT COUNT(*) FROM event_integrations e
                   WHERE e.provider = u.provider) AS mapped_events,
                (SELECT COUNT(*) FROM calendar_integrations c
                   WHERE c.provider = u.provider AND c.user_id = u.user_id) AS mapped_calendars
            FROM user_integrations u
        """
        params: tuple = ()
        if user_id is not None:
            query += " WHERE u.user_id = ?"
            params = (user_id,)
        query += " ORDER BY u.user_id, u.provider"
        return conn.execute(query, params).fetchall()
    finally:
        conn.close()
