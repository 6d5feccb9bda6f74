"""
Provider adapter registry, keyed by the closed Provider enum.
"""

import httpx

from calsync.db import StateDatabase
from calsync.mapping import CalendarMapper
from calsync.models import Provider
from calsync.models import SyncSettings
from calsync.providers.base import ProviderAdapter
from calsync.providers.caldav import CalDAVAdapter
from calsync.providers.google import GoogleCalendarAdapter
from calsync.providers.outlook import OutlookCalendarAdapter

ADAPTER_CLASSES: dict[Provider, type[ProviderAdapter]] = {
    Provider.GOOGLE: GoogleCalendarAdapter,
    Provider.OUTLOOK: OutlookCalendarAdapter,
    Provider.APPLE: CalDAVAdapter,
}


def build_adapters(
    settings: SyncSettings,
    state_db: StateDatabase,
    calendars: CalendarMapper,
    client: httpx.Client,
) -> dict[Provider, ProviderAdapter]:
    return {
        provider: cls(settings, state_db, calendars, client)
        for provider, cls in ADAPTER_CLASSES.items()
    }


__all__ = [
    "ADAPTER_CLASSES",
    "CalDAVAdapter",
    "GoogleCalendarAdapter",
    "OutlookCalendarAdapter",
    "ProviderAdapter",
    "build_adapters",
]
