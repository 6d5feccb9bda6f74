"""
CalendarSynchronizer: the entry point that wires token handling and adapters into the sync passes.
"""

import logging

import httpx

from calsync.db import StateDatabase
from calsync.local_store import EventStore
from calsync.local_store import SQLiteEventStore
from calsync.mapping import CalendarMapper
from calsync.models import LocalEvent
from calsync.models import Provider
from calsync.models import SyncAction
from calsync.models import SyncReport
from calsync.models import SyncSettings
from calsync.providers import build_adapters
from calsync.providers.base import ProviderAdapter
from calsync.sync.inbound import run_inbound
from calsync.sync.log import SyncLog
from calsync.sync.outbound import run_outbound
from calsync.tokens import TokenManager


class CalendarSynchronizer:
    """Main synchronization engine.

    ``state_db`` must already be connected. Adapters default to the three
    built-in providers sharing one ``httpx.Client``.
    """

    def __init__(
        self,
        settings: SyncSettings,
        state_db: StateDatabase,
        event_store: EventStore | None = None,
        client: httpx.Client | None = None,
        adapters: dict[Provider, ProviderAdapter] | None = None,
        sync_log: SyncLog | None = None,
    ):
        self.settings = settings
        self.state_db = state_db
        self.logger = logging.getLogger(__name__)
        self.event_store = event_store or SQLiteEventStore(state_db)
        self._owns_client = client is None
        self.client = client or httpx.Client(timeout=settings.http_timeout)
        self.calendars = CalendarMapper(state_db, self.event_store)
        self.token_manager = TokenManager(state_db, settings, self.client)
        if adapters is None:
            adapters = build_adapters(settings, state_db, self.calendars, self.client)
        self.adapters = adapters
        self.sync_log = sync_log or SyncLog()
        self.report: SyncReport | None = None

    def sync_out_to_provider(self, user_id: int, event: LocalEvent, action: SyncAction) -> None:
        """Mirror one local create/update/delete to every connected provider."""
        action = SyncAction(action)
        self.report = SyncReport(user_id=user_id, operation="sync_out")
        self.logger.debug(f"Outbound {action.value} of event {event.id} for user {user_id}")
        run_outbound(
            user_id,
            event,
            action,
            self.state_db,
            self.token_manager,
            self.adapters,
            self.report,
            self.sync_log,
        )

    def sync_in_from_provider(self, user_id: int) -> list[LocalEvent]:
        """Import new remote events for the user; returns what was inserted."""
        self.report = SyncReport(user_id=user_id, operation="sync_in")
        self.logger.debug(f"Inbound sync for user {user_id}")
        return run_inbound(
            user_id,
            self.state_db,
            self.event_store,
            self.token_manager,
            self.adapters,
            self.report,
            self.sync_log,
        )

    def close(self):
        if self._owns_client:
            self.client.close()
