"""
Shared pytest fixtures and event helpers.
"""

import logging
from datetime import UTC
from datetime import datetime
from datetime import timedelta

import httpx
import pytest

from calsync.db import StateDatabase
from calsync.local_store import SQLiteEventStore
from calsync.mapping import CalendarMapper
from calsync.models import CalDAVConfig
from calsync.models import Credential
from calsync.models import LocalEvent
from calsync.models import Provider
from calsync.models import SyncSettings
from calsync.sync.log import SyncLog

USER_ID = 42
CALDAV_URL = "https://caldav.example.com/42/calendars/home/"


def make_event(
    calendar_id: int,
    title: str = "Standup",
    start: datetime | None = None,
    hours: int = 1,
    user_id: int = USER_ID,
    **kwargs,
) -> LocalEvent:
    """Return an unsaved LocalEvent starting at ``start`` (default 2026-03-01 10:00Z)."""
    start = start or datetime(2026, 3, 1, 10, 0, tzinfo=UTC)
    return LocalEvent(
        calendar_id=calendar_id,
        user_id=user_id,
        title=title,
        start_time=start,
        end_time=start + timedelta(hours=hours),
        **kwargs,
    )


def future(hours: int = 1) -> datetime:
    return datetime.now(UTC) + timedelta(hours=hours)


def past(hours: int = 1) -> datetime:
    return datetime.now(UTC) - timedelta(hours=hours)


def oauth_credential(provider: Provider, user_id: int = USER_ID, **kwargs) -> Credential:
    kwargs.setdefault("access_token", f"{provider.value}-access")
    kwargs.setdefault("refresh_token", f"{provider.value}-refresh")
    kwargs.setdefault("expires_at", future())
    return Credential(user_id=user_id, provider=provider, **kwargs)


def apple_credential(user_id: int = USER_ID) -> Credential:
    return Credential(
        user_id=user_id,
        provider=Provider.APPLE,
        username="someone@icloud.com",
        app_password="abcd-efgh-ijkl-mnop",
    )


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "test_state.db"


@pytest.fixture
def state_db(db_path):
    with StateDatabase(db_path) as db:
        yield db


@pytest.fixture
def event_store(state_db):
    return SQLiteEventStore(state_db)


@pytest.fixture
def calendar_id(event_store, state_db):
    cid = event_store.create_calendar(USER_ID, "Personal")
    state_db.commit()
    return cid


@pytest.fixture
def calendars(state_db, event_store):
    return CalendarMapper(state_db, event_store)


@pytest.fixture
def settings(db_path):
    s = SyncSettings(state_db_path=db_path, caldav=CalDAVConfig(calendar_url=CALDAV_URL))
    for provider in (Provider.GOOGLE, Provider.OUTLOOK):
        oauth = s.oauth_config(provider)
        oauth.client_id = f"{provider.value}-client"
        oauth.client_secret = f"{provider.value}-secret"
        oauth.redirect_uri = f"http://localhost:3000/api/auth/{provider.value}/callback"
    return s


@pytest.fixture
def http_client():
    with httpx.Client() as client:
        yield client


@pytest.fixture
def sync_logger():
    return logging.getLogger("test_sync")


@pytest.fixture
def sync_log(sync_logger):
    return SyncLog(logger=sync_logger)
