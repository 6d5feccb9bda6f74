"""
Google Calendar v3 adapter.
"""

import logging
from datetime import UTC
from datetime import date
from datetime import datetime
from typing import Any

from calsync.models import Credential
from calsync.models import LocalEvent
from calsync.models import Provider
from calsync.models import ProviderError
from calsync.models import RemoteEvent
from calsync.providers.base import ProviderAdapter
from calsync.providers.base import as_utc
from calsync.providers.base import day_start

logger = logging.getLogger(__name__)

API_BASE = "https://www.googleapis.com/calendar/v3"
CALENDAR_ID = "primary"

# Line types Google accepts in an event's ``recurrence`` list.
RECURRENCE_PREFIXES = ("RRULE:", "EXRULE:", "RDATE", "EXDATE")


def _time_field(value: datetime, all_day: bool) -> dict[str, str]:
    if all_day:
        return {"date": as_utc(value).date().isoformat()}
    return {"dateTime": as_utc(value).isoformat(), "timeZone": "UTC"}


def event_body(event: LocalEvent) -> dict[str, Any]:
    """Request body for insert/update."""
    body: dict[str, Any] = {
        "summary": event.title,
        "description": event.description or "",
        "location": event.location or "",
        "start": _time_field(event.start_time, event.all_day),
        "end": _time_field(event.end_time, event.all_day),
    }
    recurrence = recurrence_lines(event.recurrence_rule)
    if recurrence:
        body["recurrence"] = recurrence
    return body


def recurrence_lines(rule: str | None) -> list[str]:
    """iCalendar recurrence lines from a stored rule; anything else is dropped."""
    if not rule:
        return []
    lines = [line.strip() for line in rule.splitlines() if line.strip()]
    kept = [line for line in lines if line.upper().startswith(RECURRENCE_PREFIXES)]
    if len(kept) != len(lines):
        logger.debug(f"Dropping recurrence text Google cannot read: {rule!r}")
    return kept


def parse_time(value: dict[str, str] | None) -> tuple[datetime, bool]:
    """Return (instant, has_time). A ``date``-only value is all-day."""
    if not value:
        raise ProviderError("Google event has no start/end")
    if value.get("dateTime"):
        return as_utc(datetime.fromisoformat(value["dateTime"])), True
    if value.get("date"):
        return day_start(date.fromisoformat(value["date"])), False
    raise ProviderError(f"Unrecognised Google time value: {value!r}")


class GoogleCalendarAdapter(ProviderAdapter):
    provider = Provider.GOOGLE

    def _events_url(self, external_id: str | None = None) -> str:
        url = f"{API_BASE}/calendars/{CALENDAR_ID}/events"
        return f"{url}/{external_id}" if external_id else url

    def create_remote(self, credential: Credential, event: LocalEvent) -> str:
        response = self._request(
            "POST", self._events_url(), headers=self._bearer(credential), json=event_body(event)
        )
        external_id = self._json(response).get("id")
        if not external_id:
            raise ProviderError("Google insert response carried no event id")
        return external_id

    def update_remote(self, credential: Credential, event: LocalEvent, external_id: str) -> None:
        self._request(
            "PUT",
            self._events_url(external_id),
            headers=self._bearer(credential),
            json=event_body(event),
        )

    def delete_remote(self, credential: Credential, event: LocalEvent, external_id: str) -> None:
        self._delete(self._events_url(external_id), headers=self._bearer(credential))

    def fetch_remote(self, credential: Credential) -> list[RemoteEvent]:
        params = {
            "timeMin": datetime.now(UTC).isoformat(),
            "maxResults": str(self.settings.pull_max_results),
            # Keep recurring series as one item carrying its RRULE text.
            "singleEvents": "false",
        }
        items: list[dict[str, Any]] = []
        while True:
            response = self._request(
                "GET", self._events_url(), headers=self._bearer(credential), params=params
            )
            data = self._json(response)
            items.extend(data.get("items") or [])
            page_token = data.get("nextPageToken")
            if not page_token:
                break
            params["pageToken"] = page_token

        calendar_id = self.calendars.resolve(credential.user_id, self.provider, CALENDAR_ID)

        events = []
        for item in items:
            if item.get("status") == "cancelled":
                continue
            try:
                events.append(self.to_remote_event(item, credential.user_id, calendar_id))
            except (ProviderError, ValueError) as e:
                self.logger.warning(f"Skipping malformed Google event {item.get('id')}: {e}")
        self.logger.debug(f"Fetched {len(events)} Google events for user {credential.user_id}")
        return events

    def to_remote_event(self, item: dict[str, Any], user_id: int, calendar_id: int) -> RemoteEvent:
        if not item.get("id"):
            raise ProviderError("Google event without id")
        start, has_time = parse_time(item.get("start"))
        end, _ = parse_time(item.get("end"))
        recurrence = item.get("recurrence")
        return RemoteEvent(
            external_id=item["id"],
            provider=self.provider,
            calendar_id=calendar_id,
            user_id=user_id,
            title=item.get("summary") or "Untitled Event",
            description=item.get("description") or None,
            location=item.get("location") or None,
            start_time=start,
            end_time=end,
            all_day=not has_time,
            recurrence_rule="\n".join(recurrence) if recurrence else None,
        )
