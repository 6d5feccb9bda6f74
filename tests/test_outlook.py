"""Tests for the Microsoft Graph (Outlook) adapter."""

import json
from datetime import UTC
from datetime import datetime

import httpx
import pytest
import respx

from calsync.models import Provider
from calsync.models import SyncAction
from calsync.providers.outlook import OutlookCalendarAdapter
from calsync.providers.outlook import event_body
from calsync.providers.outlook import parse_graph_datetime
from tests.conftest import make_event
from tests.conftest import oauth_credential

HOST = "graph.microsoft.com"
EVENTS_PATH = "/v1.0/me/events"
EVENTS_URL = f"https://{HOST}{EVENTS_PATH}"

RECURRENCE = {
    "pattern": {"type": "weekly", "interval": 1, "daysOfWeek": ["monday"]},
    "range": {"type": "noEnd", "startDate": "2026-03-02"},
}


@pytest.fixture
def adapter(settings, state_db, calendars, http_client):
    return OutlookCalendarAdapter(settings, state_db, calendars, http_client)


@pytest.fixture
def credential():
    return oauth_credential(Provider.OUTLOOK)


def test_parse_graph_datetime_accepts_seven_digit_fraction():
    assert parse_graph_datetime("2026-03-01T10:00:00.0000000") == datetime(
        2026, 3, 1, 10, 0, tzinfo=UTC
    )


class TestEventBody:
    def test_fields(self, calendar_id):
        body = event_body(make_event(calendar_id, description="Notes", location="HQ"))
        assert body["subject"] == "Standup"
        assert body["start"] == {"dateTime": "2026-03-01T10:00:00", "timeZone": "UTC"}
        assert body["body"] == {"contentType": "text", "content": "Notes"}
        assert body["location"] == {"displayName": "HQ"}
        assert body["isAllDay"] is False

    def test_graph_recurrence_sent_back(self, calendar_id):
        event = make_event(calendar_id, recurrence_rule=json.dumps(RECURRENCE))
        assert event_body(event)["recurrence"] == RECURRENCE

    def test_foreign_recurrence_text_not_sent(self, calendar_id):
        event = make_event(calendar_id, recurrence_rule="RRULE:FREQ=DAILY")
        assert "recurrence" not in event_body(event)


class TestPush:
    @respx.mock
    def test_create_stores_mapping(self, adapter, credential, event_store, calendar_id, state_db):
        event = event_store.create_event(make_event(calendar_id))
        route = respx.post(EVENTS_URL).mock(
            return_value=httpx.Response(201, json={"id": "AAMk-1"})
        )

        adapter.push(credential, event, SyncAction.CREATE)

        assert state_db.get_external_id(event.id, Provider.OUTLOOK) == "AAMk-1"
        assert route.calls.last.request.headers["Authorization"] == "Bearer outlook-access"

    @respx.mock
    def test_update_patches(self, adapter, credential, event_store, calendar_id, state_db):
        event = event_store.create_event(make_event(calendar_id))
        state_db.store_external_id(event.id, Provider.OUTLOOK, "AAMk-1")
        route = respx.patch(f"{EVENTS_URL}/AAMk-1").mock(return_value=httpx.Response(200, json={}))

        adapter.push(credential, event, SyncAction.UPDATE)

        assert route.called

    @respx.mock
    def test_delete_404_counts_as_done(
        self, adapter, credential, event_store, calendar_id, state_db
    ):
        event = event_store.create_event(make_event(calendar_id))
        state_db.store_external_id(event.id, Provider.OUTLOOK, "AAMk-1")
        respx.delete(f"{EVENTS_URL}/AAMk-1").mock(return_value=httpx.Response(404))

        adapter.push(credential, event, SyncAction.DELETE)

        assert state_db.get_external_id(event.id, Provider.OUTLOOK) is None


class TestPull:
    @respx.mock
    def test_pull_maps_fields_and_follows_next_link(self, adapter, credential, calendar_id):
        next_link = f"{EVENTS_URL}?$skip=1"
        route = respx.get(host=HOST, path=EVENTS_PATH).mock(
            side_effect=[
                httpx.Response(
                    200,
                    json={
                        "value": [
                            {
                                "id": "o-1",
                                "subject": "Review",
                                "body": {"contentType": "text", "content": ""},
                                "location": {"displayName": "Room 4"},
                                "start": {
                                    "dateTime": "2026-03-01T10:00:00.0000000",
                                    "timeZone": "UTC",
                                },
                                "end": {
                                    "dateTime": "2026-03-01T11:30:00.0000000",
                                    "timeZone": "UTC",
                                },
                                "isAllDay": False,
                                "recurrence": RECURRENCE,
                            }
                        ],
                        "@odata.nextLink": next_link,
                    },
                ),
                httpx.Response(
                    200,
                    json={
                        "value": [
                            {
                                "id": "o-2",
                                "start": {"dateTime": "2026-03-05T00:00:00.0000000"},
                                "end": {"dateTime": "2026-03-06T00:00:00.0000000"},
                                "isAllDay": True,
                            },
                            {"id": "o-3", "isCancelled": True},
                        ]
                    },
                ),
            ]
        )

        events = adapter.pull(credential)

        assert [e.external_id for e in events] == ["o-1", "o-2"]
        review, holiday = events
        assert review.title == "Review"
        assert review.description is None
        assert review.location == "Room 4"
        assert review.end_time == datetime(2026, 3, 1, 11, 30, tzinfo=UTC)
        assert not review.all_day
        assert json.loads(review.recurrence_rule) == RECURRENCE
        assert holiday.title == "Untitled Event"
        assert holiday.all_day

        first, second = route.calls
        assert "end/dateTime ge" in first.request.url.params["$filter"]
        assert first.request.headers["Prefer"].startswith('outlook.timezone="UTC"')
        assert second.request.url.params["$skip"] == "1"

    @respx.mock
    def test_pull_failure_returns_empty(self, adapter, credential):
        respx.get(host=HOST, path=EVENTS_PATH).mock(side_effect=httpx.ConnectError("down"))
        assert adapter.pull(credential) == []
