"""
Local calendar/event store.

The sync engine only depends on the EventStore protocol; SQLiteEventStore is
the reference implementation used by the CLI and the test-suite. It shares
the StateDatabase connection so one commit covers an event and its mapping.
"""

import time
from dataclasses import replace
from datetime import UTC
from datetime import datetime
from typing import Protocol

from calsync.db import StateDatabase
from calsync.models import CalendarSyncError
from calsync.models import LocalEvent


class EventStore(Protocol):
    def get_event(self, event_id: int) -> LocalEvent | None: ...

    def list_events(self, user_id: int) -> list[LocalEvent]: ...

    def create_event(self, event: LocalEvent) -> LocalEvent: ...

    def update_event(self, event: LocalEvent) -> LocalEvent: ...

    def delete_event(self, event_id: int) -> None: ...

    def insert_event_if_absent(self, event: LocalEvent) -> LocalEvent | None: ...

    def default_calendar_id(self, user_id: int) -> int | None: ...

    def create_calendar(self, user_id: int, name: str) -> int: ...

    def list_calendars(self, user_id: int) -> list: ...


def _to_text(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat()


def _from_text(value: str) -> datetime:
    return datetime.fromisoformat(value)


class SQLiteEventStore:
    """Events and calendars kept alongside the sync state."""

    def __init__(self, state_db: StateDatabase):
        self.state_db = state_db
        self._init_schema()

    @property
    def conn(self):
        if self.state_db.conn is None:
            raise CalendarSyncError("State database not connected")
        return self.state_db.conn

    def _init_schema(self):
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS calendars (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                name TEXT NOT NULL,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL
            );
            CREATE TABLE IF NOT EXISTS events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                calendar_id INTEGER NOT NULL,
                user_id INTEGER NOT NULL,
                title TEXT NOT NULL,
                description TEXT,
                location TEXT,
                start_time TEXT NOT NULL,
                end_time TEXT NOT NULL,
                all_day INTEGER NOT NULL DEFAULT 0,
                recurrence_rule TEXT,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL,
                UNIQUE(user_id, calendar_id, title, start_time, end_time)
            );
        """)
        self.conn.commit()

    @staticmethod
    def _row_to_event(row) -> LocalEvent:
        return LocalEvent(
            id=row["id"],
            calendar_id=row["calendar_id"],
            user_id=row["user_id"],
            title=row["title"],
            description=row["description"],
            location=row["location"],
            start_time=_from_text(row["start_time"]),
            end_time=_from_text(row["end_time"]),
            all_day=bool(row["all_day"]),
            recurrence_rule=row["recurrence_rule"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _values(event: LocalEvent) -> tuple:
        return (
            event.calendar_id,
            event.user_id,
            event.title,
            event.description,
            event.location,
            _to_text(event.start_time),
            _to_text(event.end_time),
            int(event.all_day),
            event.recurrence_rule,
        )

    # ------------------------------------------------------------------ #
    # Events                                                               #
    # ------------------------------------------------------------------ #

    def get_event(self, event_id: int) -> LocalEvent | None:
        row = self.conn.execute("SELECT * FROM events WHERE id = ?", (event_id,)).fetchone()
        return self._row_to_event(row) if row else None

    def list_events(self, user_id: int) -> list[LocalEvent]:
        cursor = self.conn.execute(
            "SELECT * FROM events WHERE user_id = ? ORDER BY start_time, id", (user_id,)
        )
        return [self._row_to_event(row) for row in cursor.fetchall()]

    def create_event(self, event: LocalEvent) -> LocalEvent:
        """Plain insert; a natural-key clash raises sqlite3.IntegrityError."""
        timestamp = int(time.time())
        cursor = self.conn.execute(
            "INSERT INTO events "
            "(calendar_id, user_id, title, description, location, start_time, end_time, "
            " all_day, recurrence_rule, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            self._values(event) + (timestamp, timestamp),
        )
        return replace(event, id=cursor.lastrowid, created_at=timestamp, updated_at=timestamp)

    def insert_event_if_absent(self, event: LocalEvent) -> LocalEvent | None:
        """Insert, doing nothing on a natural-key conflict.

        Returns the stored event, or None when an equal event already existed.
        """
        timestamp = int(time.time())
        cursor = self.conn.execute(
            "INSERT INTO events "
            "(calendar_id, user_id, title, description, location, start_time, end_time, "
            " all_day, recurrence_rule, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
            "ON CONFLICT(user_id, calendar_id, title, start_time, end_time) DO NOTHING",
            self._values(event) + (timestamp, timestamp),
        )
        if cursor.rowcount != 1:
            return None
        return replace(event, id=cursor.lastrowid, created_at=timestamp, updated_at=timestamp)

    def update_event(self, event: LocalEvent) -> LocalEvent:
        if event.id is None:
            raise CalendarSyncError("Cannot update an event without an id")
        timestamp = int(time.time())
        self.conn.execute(
            "UPDATE events SET calendar_id = ?, user_id = ?, title = ?, description = ?, "
            "location = ?, start_time = ?, end_time = ?, all_day = ?, recurrence_rule = ?, "
            "updated_at = ? WHERE id = ?",
            self._values(event) + (timestamp, event.id),
        )
        return replace(event, updated_at=timestamp)

    def delete_event(self, event_id: int) -> None:
        self.conn.execute("DELETE FROM events WHERE id = ?", (event_id,))

    # ------------------------------------------------------------------ #
    # Calendars                                                            #
    # ------------------------------------------------------------------ #

    def default_calendar_id(self, user_id: int) -> int | None:
        row = self.conn.execute(
            "SELECT id FROM calendars WHERE user_id = ? ORDER BY id LIMIT 1", (user_id,)
        ).fetchone()
        return row["id"] if row else None

    def create_calendar(self, user_id: int, name: str) -> int:
        timestamp = int(time.time())
        cursor = self.conn.execute(
            "INSERT INTO calendars (user_id, name, created_at, updated_at) VALUES (?, ?, ?, ?)",
            (user_id, name, timestamp, timestamp),
        )
        return cursor.lastrowid

    def list_calendars(self, user_id: int) -> list:
        return self.conn.execute(
            "SELECT id, name FROM calendars WHERE user_id = ? ORDER BY id", (user_id,)
        ).fetchall()
