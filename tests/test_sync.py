"""
Integration tests for the outbound and inbound orchestrators.

Every test uses FakeAdapter (in-memory remote calendars) + a real SQLite
StateDatabase and event store, so the orchestration, token lookup and mapping
writes run end-to-end without any network access.
"""

from datetime import UTC
from datetime import datetime

import httpx
import pytest
import respx

from calsync.models import ItemStatus
from calsync.models import Provider
from calsync.models import ProviderError
from calsync.models import RemoteEvent
from calsync.models import SyncAction
from calsync.sync import CalendarSynchronizer
from tests.conftest import USER_ID
from tests.conftest import apple_credential
from tests.conftest import make_event
from tests.conftest import oauth_credential
from tests.conftest import past
from tests.fake_adapter import fake_adapter_class

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _remote(external_id: str, provider: Provider, calendar_id: int, title: str, day: int = 1):
    start = datetime(2026, 3, day, 9, 0, tzinfo=UTC)
    return RemoteEvent(
        external_id=external_id,
        provider=provider,
        calendar_id=calendar_id,
        user_id=USER_ID,
        title=title,
        start_time=start,
        end_time=start.replace(hour=10),
    )


def _connect(state_db, *credentials):
    for credential in credentials:
        state_db.upsert_credential(credential)
    state_db.commit()


def _failing_lookup(synchronizer, provider: Provider):
    """Token lookup that raises for ``provider`` and defers to the real one otherwise."""
    real_get = synchronizer.token_manager.get

    def get(user_id, requested):
        if requested is provider:
            raise RuntimeError("credential row unreadable")
        return real_get(user_id, requested)

    return get


@pytest.fixture
def adapters(settings, state_db, calendars, http_client):
    return {
        provider: fake_adapter_class(provider)(settings, state_db, calendars, http_client)
        for provider in Provider
    }


@pytest.fixture
def synchronizer(settings, state_db, event_store, http_client, adapters, sync_log):
    return CalendarSynchronizer(settings, state_db, event_store, http_client, adapters, sync_log)


@pytest.fixture
def event(event_store, calendar_id, state_db):
    created = event_store.create_event(make_event(calendar_id))
    state_db.commit()
    return created


# ---------------------------------------------------------------------------
# Outbound
# ---------------------------------------------------------------------------


class TestOutbound:
    def test_no_integrations_is_noop(self, synchronizer, adapters, event):
        synchronizer.sync_out_to_provider(USER_ID, event, SyncAction.CREATE)

        assert synchronizer.report.results == []
        assert all(a.event_count == 0 for a in adapters.values())

    def test_failing_provider_does_not_block_others(
        self, synchronizer, adapters, event, state_db
    ):
        """Google down, Outlook up: Outlook gets the event, Google is reported failed."""
        _connect(state_db, oauth_credential(Provider.GOOGLE), oauth_credential(Provider.OUTLOOK))
        adapters[Provider.GOOGLE].fail = ProviderError("google returned 503")

        synchronizer.sync_out_to_provider(USER_ID, event, SyncAction.CREATE)

        assert state_db.get_external_id(event.id, Provider.GOOGLE) is None
        assert state_db.get_external_id(event.id, Provider.OUTLOOK) is not None
        report = synchronizer.report
        assert report.failed_providers() == {Provider.GOOGLE}
        assert [r.provider for r in report.by_status(ItemStatus.OK)] == [Provider.OUTLOOK]
        assert report.errors == 1

    def test_unexpected_exception_is_isolated(self, synchronizer, adapters, event, state_db):
        _connect(state_db, oauth_credential(Provider.GOOGLE), oauth_credential(Provider.OUTLOOK))
        adapters[Provider.GOOGLE].fail = RuntimeError("boom")

        synchronizer.sync_out_to_provider(USER_ID, event, SyncAction.CREATE)

        assert adapters[Provider.OUTLOOK].event_count == 1

    def test_create_update_delete_lifecycle(self, synchronizer, adapters, event, state_db):
        _connect(state_db, oauth_credential(Provider.OUTLOOK))
        outlook = adapters[Provider.OUTLOOK]

        synchronizer.sync_out_to_provider(USER_ID, event, SyncAction.CREATE)
        external_id = state_db.get_external_id(event.id, Provider.OUTLOOK)
        assert outlook.remote[external_id].title == "Standup"

        event.title = "Standup (moved)"
        synchronizer.sync_out_to_provider(USER_ID, event, SyncAction.UPDATE)
        assert outlook.updates == [external_id]
        assert outlook.remote[external_id].title == "Standup (moved)"

        synchronizer.sync_out_to_provider(USER_ID, event, SyncAction.DELETE)
        assert outlook.deletes == [external_id]
        assert state_db.get_external_id(event.id, Provider.OUTLOOK) is None

    def test_repeated_create_keeps_one_mapping(self, synchronizer, event, state_db):
        _connect(state_db, oauth_credential(Provider.GOOGLE))

        synchronizer.sync_out_to_provider(USER_ID, event, SyncAction.CREATE)
        synchronizer.sync_out_to_provider(USER_ID, event, SyncAction.CREATE)

        assert len(state_db.list_event_mappings(Provider.GOOGLE)) == 1

    def test_update_without_mapping_makes_no_remote_call(
        self, synchronizer, adapters, event, state_db
    ):
        _connect(state_db, oauth_credential(Provider.GOOGLE))

        synchronizer.sync_out_to_provider(USER_ID, event, SyncAction.UPDATE)

        assert adapters[Provider.GOOGLE].updates == []
        assert synchronizer.report.errors == 0

    def test_expired_unrefreshable_provider_is_skipped(
        self, synchronizer, adapters, event, state_db
    ):
        _connect(
            state_db,
            oauth_credential(Provider.GOOGLE, refresh_token=None, expires_at=past()),
            oauth_credential(Provider.OUTLOOK),
        )

        synchronizer.sync_out_to_provider(USER_ID, event, SyncAction.CREATE)

        assert adapters[Provider.GOOGLE].credentials_seen == []
        assert adapters[Provider.OUTLOOK].event_count == 1
        skipped = synchronizer.report.by_status(ItemStatus.SKIPPED)
        assert [r.provider for r in skipped] == [Provider.GOOGLE]
        # The credential is kept for a later reconnect.
        assert state_db.get_credential(USER_ID, Provider.GOOGLE) is not None

    def test_adapter_receives_live_credential(self, synchronizer, adapters, event, state_db):
        _connect(state_db, oauth_credential(Provider.OUTLOOK, access_token="live"))

        synchronizer.sync_out_to_provider(USER_ID, event, SyncAction.CREATE)

        (seen,) = adapters[Provider.OUTLOOK].credentials_seen
        assert seen.access_token == "live"

    def test_caldav_update_is_reported_unsupported(self, settings, state_db, event_store, event):
        """The real CalDAV adapter refuses update; the mapping survives."""
        _connect(state_db, apple_credential())
        state_db.store_external_id(event.id, Provider.APPLE, f"{event.id}@calsync.local")
        state_db.commit()

        synchronizer = CalendarSynchronizer(settings, state_db, event_store)
        try:
            synchronizer.sync_out_to_provider(USER_ID, event, SyncAction.UPDATE)
        finally:
            synchronizer.close()

        (result,) = synchronizer.report.results
        assert result.status is ItemStatus.UNSUPPORTED
        assert state_db.get_external_id(event.id, Provider.APPLE) == f"{event.id}@calsync.local"

    def test_only_connected_provider_receives_push(self, synchronizer, adapters, event, state_db):
        _connect(state_db, oauth_credential(Provider.OUTLOOK))

        synchronizer.sync_out_to_provider(USER_ID, event, SyncAction.CREATE)

        assert adapters[Provider.OUTLOOK].creates == [event.id]
        assert adapters[Provider.GOOGLE].credentials_seen == []
        assert adapters[Provider.APPLE].credentials_seen == []
        (mapping,) = state_db.list_event_mappings()
        assert mapping["provider"] == Provider.OUTLOOK.value
        assert mapping["local_id"] == event.id

    @respx.mock
    def test_malformed_refresh_response_does_not_block_others(
        self, synchronizer, adapters, event, state_db, settings
    ):
        _connect(
            state_db,
            oauth_credential(Provider.GOOGLE, expires_at=past()),
            oauth_credential(Provider.OUTLOOK),
        )
        respx.post(settings.google.token_url).mock(
            return_value=httpx.Response(200, json={"access_token": "x", "expires_in": 10**15})
        )

        synchronizer.sync_out_to_provider(USER_ID, event, SyncAction.CREATE)

        assert adapters[Provider.GOOGLE].credentials_seen == []
        assert adapters[Provider.OUTLOOK].creates == [event.id]
        skipped = synchronizer.report.by_status(ItemStatus.SKIPPED)
        assert [r.provider for r in skipped] == [Provider.GOOGLE]

    def test_token_lookup_error_is_isolated(
        self, synchronizer, adapters, event, state_db, monkeypatch
    ):
        _connect(state_db, oauth_credential(Provider.GOOGLE), oauth_credential(Provider.OUTLOOK))
        monkeypatch.setattr(
            synchronizer.token_manager, "get", _failing_lookup(synchronizer, Provider.GOOGLE)
        )

        synchronizer.sync_out_to_provider(USER_ID, event, SyncAction.CREATE)

        assert adapters[Provider.OUTLOOK].creates == [event.id]
        assert synchronizer.report.failed_providers() == {Provider.GOOGLE}

    def test_other_users_integrations_untouched(self, synchronizer, adapters, event, state_db):
        _connect(state_db, oauth_credential(Provider.GOOGLE, user_id=7))

        synchronizer.sync_out_to_provider(USER_ID, event, SyncAction.CREATE)

        assert adapters[Provider.GOOGLE].event_count == 0


# ---------------------------------------------------------------------------
# Inbound
# ---------------------------------------------------------------------------


class TestInbound:
    def test_no_integrations_returns_empty(self, synchronizer):
        assert synchronizer.sync_in_from_provider(USER_ID) == []

    def test_imports_and_links(self, synchronizer, adapters, calendar_id, state_db, event_store):
        _connect(state_db, oauth_credential(Provider.GOOGLE))
        adapters[Provider.GOOGLE].to_pull = [
            _remote("g-1", Provider.GOOGLE, calendar_id, "Dentist"),
            _remote("g-2", Provider.GOOGLE, calendar_id, "Gym", day=2),
        ]

        inserted = synchronizer.sync_in_from_provider(USER_ID)

        assert [e.title for e in inserted] == ["Dentist", "Gym"]
        assert all(e.id is not None for e in inserted)
        assert state_db.get_local_id(Provider.GOOGLE, "g-1") == inserted[0].id
        assert len(event_store.list_events(USER_ID)) == 2
        assert synchronizer.report.fetched == 2

    def test_second_run_inserts_nothing(self, synchronizer, adapters, calendar_id, state_db):
        _connect(state_db, oauth_credential(Provider.GOOGLE))
        adapters[Provider.GOOGLE].to_pull = [
            _remote("g-1", Provider.GOOGLE, calendar_id, "Dentist")
        ]

        assert len(synchronizer.sync_in_from_provider(USER_ID)) == 1
        assert synchronizer.sync_in_from_provider(USER_ID) == []
        assert len(state_db.list_event_mappings(Provider.GOOGLE)) == 1

    def test_linked_event_edited_locally_not_reimported(
        self, synchronizer, adapters, calendar_id, state_db, event_store
    ):
        _connect(state_db, oauth_credential(Provider.GOOGLE))
        google = adapters[Provider.GOOGLE]
        google.to_pull = [_remote("g-1", Provider.GOOGLE, calendar_id, "Dentist")]
        (local,) = synchronizer.sync_in_from_provider(USER_ID)

        local.title = "Dentist (rescheduled)"
        event_store.update_event(local)
        state_db.commit()

        assert synchronizer.sync_in_from_provider(USER_ID) == []
        assert [e.title for e in event_store.list_events(USER_ID)] == ["Dentist (rescheduled)"]

    def test_equal_local_event_is_not_duplicated(
        self, synchronizer, adapters, calendar_id, state_db, event_store
    ):
        existing = event_store.create_event(
            make_event(
                calendar_id,
                title="Dentist",
                start=datetime(2026, 3, 1, 9, 0, tzinfo=UTC),
            )
        )
        state_db.commit()
        _connect(state_db, oauth_credential(Provider.OUTLOOK))
        adapters[Provider.OUTLOOK].to_pull = [
            _remote("o-1", Provider.OUTLOOK, calendar_id, "Dentist")
        ]

        assert synchronizer.sync_in_from_provider(USER_ID) == []
        assert [e.id for e in event_store.list_events(USER_ID)] == [existing.id]

    def test_provider_outage_does_not_block_others(
        self, synchronizer, adapters, calendar_id, state_db
    ):
        _connect(
            state_db,
            oauth_credential(Provider.GOOGLE),
            oauth_credential(Provider.OUTLOOK),
            apple_credential(),
        )
        adapters[Provider.GOOGLE].fail = ProviderError("google returned 503")
        adapters[Provider.OUTLOOK].to_pull = [
            _remote("o-1", Provider.OUTLOOK, calendar_id, "Review")
        ]
        adapters[Provider.APPLE].to_pull = [
            _remote("a-1", Provider.APPLE, calendar_id, "Dinner", day=3)
        ]

        inserted = synchronizer.sync_in_from_provider(USER_ID)

        assert sorted(e.title for e in inserted) == ["Dinner", "Review"]

    def test_bad_event_does_not_block_batch(self, synchronizer, adapters, calendar_id, state_db):
        _connect(state_db, oauth_credential(Provider.GOOGLE))
        broken = _remote("g-bad", Provider.GOOGLE, calendar_id, "x")
        broken.title = None  # violates NOT NULL
        adapters[Provider.GOOGLE].to_pull = [
            broken,
            _remote("g-1", Provider.GOOGLE, calendar_id, "Dentist"),
        ]

        inserted = synchronizer.sync_in_from_provider(USER_ID)

        assert [e.title for e in inserted] == ["Dentist"]
        failed = synchronizer.report.by_status(ItemStatus.FAILED)
        assert [r.external_id for r in failed] == ["g-bad"]
        assert state_db.get_local_id(Provider.GOOGLE, "g-bad") is None

    def test_token_lookup_error_is_isolated(
        self, synchronizer, adapters, calendar_id, state_db, monkeypatch
    ):
        _connect(state_db, oauth_credential(Provider.GOOGLE), oauth_credential(Provider.OUTLOOK))
        adapters[Provider.OUTLOOK].to_pull = [
            _remote("o-1", Provider.OUTLOOK, calendar_id, "Review")
        ]
        monkeypatch.setattr(
            synchronizer.token_manager, "get", _failing_lookup(synchronizer, Provider.GOOGLE)
        )

        inserted = synchronizer.sync_in_from_provider(USER_ID)

        assert [e.title for e in inserted] == ["Review"]
        assert synchronizer.report.failed_providers() == {Provider.GOOGLE}

    def test_expired_unrefreshable_provider_is_skipped(self, synchronizer, adapters, state_db):
        _connect(
            state_db, oauth_credential(Provider.OUTLOOK, refresh_token=None, expires_at=past())
        )

        assert synchronizer.sync_in_from_provider(USER_ID) == []
        assert adapters[Provider.OUTLOOK].credentials_seen == []


# ---------------------------------------------------------------------------
# Sync log
# ---------------------------------------------------------------------------


class TestSyncLog:
    def test_entries_filterable_by_provider_and_user(self, synchronizer, adapters, event, state_db):
        _connect(state_db, oauth_credential(Provider.GOOGLE), oauth_credential(Provider.OUTLOOK))
        adapters[Provider.GOOGLE].fail = ProviderError("nope")

        synchronizer.sync_out_to_provider(USER_ID, event, SyncAction.CREATE)

        google_logs = synchronizer.sync_log.get_logs(provider=Provider.GOOGLE)
        assert [e.level for e in google_logs] == ["ERROR"]
        assert google_logs[0].error == "nope"
        assert synchronizer.sync_log.get_logs(user_id=7) == []
        assert len(synchronizer.sync_log.get_logs(user_id=USER_ID)) == 2

    def test_outbound_entries_carry_event_id(self, synchronizer, event, state_db):
        _connect(state_db, oauth_credential(Provider.OUTLOOK))

        synchronizer.sync_out_to_provider(USER_ID, event, SyncAction.CREATE)

        (entry,) = synchronizer.sync_log.get_logs(event_id=event.id)
        assert entry.provider is Provider.OUTLOOK
        assert synchronizer.sync_log.get_logs(event_id=event.id + 1) == []

    def test_buffer_is_bounded(self, sync_log):
        sync_log.entries = type(sync_log.entries)(maxlen=3)
        for i in range(5):
            sync_log.info("sync_in", f"entry {i}")

        assert [e.message for e in sync_log.get_logs()] == ["entry 2", "entry 3", "entry 4"]
        assert [e.message for e in sync_log.get_logs(limit=1)] == ["entry 4"]

        sync_log.clear()
        assert sync_log.get_logs() == []
