"""
Microsoft Graph calendar adapter.
"""

import json
import re
from datetime import UTC
from datetime import datetime
from typing import Any

from calsync.models import Credential
from calsync.models import LocalEvent
from calsync.models import Provider
from calsync.models import ProviderError
from calsync.models import RemoteEvent
from calsync.providers.base import ProviderAdapter
from calsync.providers.base import as_utc

API_BASE = "https://graph.microsoft.com/v1.0"
CALENDAR_ID = "primary"

# Graph emits seven fractional digits ("2026-03-01T10:00:00.0000000").
_FRACTION_RE = re.compile(r"(\.\d{6})\d+")

_PREFER = 'outlook.timezone="UTC", outlook.body-content-type="text"'


def parse_graph_datetime(value: str) -> datetime:
    return as_utc(datetime.fromisoformat(_FRACTION_RE.sub(r"\1", value)))


def _graph_time(value: datetime) -> dict[str, str]:
    return {
        "dateTime": as_utc(value).replace(tzinfo=None).isoformat(),
        "timeZone": "UTC",
    }


def event_body(event: LocalEvent) -> dict[str, Any]:
    """Request body for create/patch."""
    body: dict[str, Any] = {
        "subject": event.title,
        "start": _graph_time(event.start_time),
        "end": _graph_time(event.end_time),
        "body": {"contentType": "text", "content": event.description or ""},
        "location": {"displayName": event.location or ""},
        "isAllDay": event.all_day,
    }
    if event.recurrence_rule:
        # Only Graph's own patternedRecurrence JSON can be sent back.
        try:
            recurrence = json.loads(event.recurrence_rule)
        except ValueError:
            recurrence = None
        if isinstance(recurrence, dict):
            body["recurrence"] = recurrence
    return body


class OutlookCalendarAdapter(ProviderAdapter):
    provider = Provider.OUTLOOK

    def _headers(self, credential: Credential) -> dict[str, str]:
        return {**self._bearer(credential), "Prefer": _PREFER}

    def create_remote(self, credential: Credential, event: LocalEvent) -> str:
        response = self._request(
            "POST",
            f"{API_BASE}/me/events",
            headers=self._headers(credential),
            json=event_body(event),
        )
        external_id = self._json(response).get("id")
        if not external_id:
            raise ProviderError("Graph create response carried no event id")
        return external_id

    def update_remote(self, credential: Credential, event: LocalEvent, external_id: str) -> None:
        self._request(
            "PATCH",
            f"{API_BASE}/me/events/{external_id}",
            headers=self._headers(credential),
            json=event_body(event),
        )

    def delete_remote(self, credential: Credential, event: LocalEvent, external_id: str) -> None:
        self._delete(f"{API_BASE}/me/events/{external_id}", headers=self._bearer(credential))

    def fetch_remote(self, credential: Credential) -> list[RemoteEvent]:
        now = datetime.now(UTC).replace(tzinfo=None).isoformat(timespec="seconds")
        url: str | None = f"{API_BASE}/me/events"
        params: dict[str, str] | None = {
            "$filter": f"end/dateTime ge '{now}'",
            "$top": str(self.settings.pull_max_results),
        }
        items: list[dict[str, Any]] = []
        while url:
            response = self._request("GET", url, headers=self._headers(credential), params=params)
            data = self._json(response)
            items.extend(data.get("value") or [])
            # nextLink already carries the query string.
            url = data.get("@odata.nextLink")
            params = None

        calendar_id = self.calendars.resolve(credential.user_id, self.provider, CALENDAR_ID)

        events = []
        for item in items:
            if item.get("isCancelled"):
                continue
            try:
                events.append(self.to_remote_event(item, credential.user_id, calendar_id))
            except (ProviderError, ValueError) as e:
                self.logger.warning(f"Skipping malformed Graph event {item.get('id')}: {e}")
        self.logger.debug(f"Fetched {len(events)} Outlook events for user {credential.user_id}")
        return events

    def to_remote_event(self, item: dict[str, Any], user_id: int, calendar_id: int) -> RemoteEvent:
        if not item.get("id"):
            raise ProviderError("Graph event without id")
        start = item.get("start") or {}
        end = item.get("end") or {}
        start_value = start.get("dateTime") or start.get("date")
        end_value = end.get("dateTime") or end.get("date")
        if not start_value or not end_value:
            raise ProviderError("Graph event has no start/end")

        recurrence = item.get("recurrence")
        return RemoteEvent(
            external_id=item["id"],
            provider=self.provider,
            calendar_id=calendar_id,
            user_id=user_id,
            title=item.get("subject") or "Untitled Event",
            description=(item.get("body") or {}).get("content") or None,
            location=(item.get("location") or {}).get("displayName") or None,
            start_time=parse_graph_datetime(start_value),
            end_time=parse_graph_datetime(end_value),
            all_day=not start.get("dateTime") or bool(item.get("isAllDay")),
            recurrence_rule=json.dumps(recurrence, sort_keys=True) if recurrence else None,
        )
