"""
Remote-calendar to local-calendar resolution used while pulling events.
"""

import logging

from calsync.db import StateDatabase
from calsync.local_store import EventStore
from calsync.models import Provider

logger = logging.getLogger(__name__)


class CalendarMapper:
    """Resolve (user, provider, remote calendar) to a local calendar id.

    Repeated resolution of the same remote calendar always yields the same
    local calendar.
    """

    def __init__(self, state_db: StateDatabase, event_store: EventStore):
        self.state_db = state_db
        self.event_store = event_store

    def resolve(self, user_id: int, provider: Provider, external_calendar_id: str) -> int:
        calendar_id = self.state_db.get_calendar_mapping(user_id, provider, external_calendar_id)
        if calendar_id is not None:
            return calendar_id

        # Park unmapped remote events in the user's default calendar, creating
        # one named after the provider when the user has none yet.
        calendar_id = self.event_store.default_calendar_id(user_id)
        if calendar_id is None:
            calendar_id = self.event_store.create_calendar(user_id, provider.display_name)
            logger.info(
                f"Created local calendar {calendar_id} for {provider.value} (user {user_id})"
            )

        self.state_db.store_calendar_mapping(user_id, calendar_id, provider, external_calendar_id)
        self.state_db.commit()

        # Another resolver may have won the insert; the stored row is authoritative.
        stored = self.state_db.get_calendar_mapping(user_id, provider, external_calendar_id)
        logger.debug(
            f"Mapped {provider.value} calendar '{external_calendar_id}' to local calendar {stored}"
        )
        return stored if stored is not None else calendar_id

    def external_calendars(self, user_id: int) -> dict[tuple[str, str], int]:
        """Current mappings keyed by (provider, external calendar id)."""
        return {
            (row["provider"], row["external_id"]): row["calendar_id"]
            for row in self.state_db.list_calendar_mappings(user_id)
        }

    def external_calendar_id(self, calendar_id: int, provider: Provider) -> str | None:
        """Reverse of ``resolve``: the remote calendar a local calendar maps to."""
        return self.state_db.get_external_calendar_id(calendar_id, provider)
