"""
CalDAV adapter (iCloud-style server, HTTP Basic with an app-specific password).

Create is a PUT of a single-VEVENT calendar object; pull is a calendar-query
REPORT whose multistatus response carries one VCALENDAR per resource.
"""

import logging
import xml.etree.ElementTree as ET
from datetime import UTC
from datetime import date
from datetime import datetime
from urllib.parse import quote

import httpx
from icalendar import Calendar
from icalendar import Event

from calsync.models import Credential
from calsync.models import LocalEvent
from calsync.models import Provider
from calsync.models import ProviderError
from calsync.models import RemoteEvent
from calsync.models import UnsupportedOperationError
from calsync.providers.base import ProviderAdapter
from calsync.providers.base import as_utc
from calsync.providers.base import day_start

logger = logging.getLogger(__name__)

CALENDAR_ID = "default"
PRODID = "-//calsync//calsync//EN"

NAMESPACES = {"D": "DAV:", "C": "urn:ietf:params:xml:ns:caldav"}

CALENDAR_QUERY = """<?xml version="1.0" encoding="utf-8" ?>
<C:calendar-query xmlns:D="DAV:" xmlns:C="urn:ietf:params:xml:ns:caldav">
  <D:prop>
    <D:getetag/>
    <C:calendar-data/>
  </D:prop>
  <C:filter>
    <C:comp-filter name="VCALENDAR">
      <C:comp-filter name="VEVENT"/>
    </C:comp-filter>
  </C:filter>
</C:calendar-query>"""


def event_uid(event: LocalEvent, uid_domain: str) -> str:
    return f"{event.id}@{uid_domain}"


def build_vcalendar(event: LocalEvent, uid: str, now: datetime | None = None) -> bytes:
    """Minimal VCALENDAR wrapping one VEVENT for a CalDAV PUT."""
    cal = Calendar()
    cal.add("prodid", PRODID)
    cal.add("version", "2.0")

    vevent = Event()
    vevent.add("uid", uid)
    vevent.add("dtstamp", now or datetime.now(UTC))
    if event.all_day:
        vevent.add("dtstart", as_utc(event.start_time).date())
        vevent.add("dtend", as_utc(event.end_time).date())
    else:
        vevent.add("dtstart", as_utc(event.start_time))
        vevent.add("dtend", as_utc(event.end_time))
    vevent.add("summary", event.title)
    vevent.add("description", event.description or "")
    vevent.add("location", event.location or "")
    cal.add_component(vevent)
    return cal.to_ical()


def _instant(value: date | datetime) -> tuple[datetime, bool]:
    """Return (UTC instant, has_time). A DATE value is all-day."""
    if isinstance(value, datetime):
        return as_utc(value), True
    return day_start(value), False


def _text(component, name: str) -> str | None:
    value = component.get(name)
    if value is None:
        return None
    return str(value) or None


def _recurrence(component) -> str | None:
    """RRULE lines as ``RRULE:<value>``, one per line. A VEVENT may carry several."""
    rrules = component.get("RRULE")
    if rrules is None:
        return None
    if not isinstance(rrules, list):
        rrules = [rrules]
    return "\n".join(f"RRULE:{rrule.to_ical().decode('utf-8')}" for rrule in rrules) or None


def _to_remote(
    component, user_id: int, calendar_id: int, log: logging.Logger
) -> RemoteEvent | None:
    uid = _text(component, "UID")
    if not uid or component.get("DTSTART") is None:
        log.debug(f"Skipping VEVENT without UID/DTSTART: {uid}")
        return None
    # Detached occurrences share the master UID; the master carries the RRULE.
    if component.get("RECURRENCE-ID") is not None:
        return None

    start, has_time = _instant(component.decoded("DTSTART"))
    if component.get("DTEND") is not None:
        end, _ = _instant(component.decoded("DTEND"))
    elif component.get("DURATION") is not None:
        end = start + component.decoded("DURATION")
    else:
        log.debug(f"Skipping VEVENT {uid}: no DTEND or DURATION")
        return None

    return RemoteEvent(
        external_id=uid,
        provider=Provider.APPLE,
        calendar_id=calendar_id,
        user_id=user_id,
        title=_text(component, "SUMMARY") or "Untitled Event",
        description=_text(component, "DESCRIPTION"),
        location=_text(component, "LOCATION"),
        start_time=start,
        end_time=end,
        all_day=not has_time,
        recurrence_rule=_recurrence(component),
    )


def parse_vevents(
    ical_text: str, user_id: int, calendar_id: int, log: logging.Logger | None = None
) -> list[RemoteEvent]:
    """Turn the VEVENTs of one calendar object into RemoteEvents.

    A VEVENT that cannot be converted is logged and skipped; its siblings are kept.
    A calendar object that cannot be parsed at all raises ``ValueError``.
    """
    log = log or logger
    events = []
    calendar = Calendar.from_ical(ical_text)
    for component in calendar.walk("VEVENT"):
        try:
            event = _to_remote(component, user_id, calendar_id, log)
        except Exception as e:
            log.warning(f"Skipping malformed VEVENT {component.get('UID')}: {e}")
            continue
        if event is not None:
            events.append(event)
    return events


def parse_multistatus(body: bytes) -> list[str]:
    """Extract every calendar-data payload from a WebDAV multistatus document."""
    try:
        root = ET.fromstring(body)
    except ET.ParseError as e:
        raise ProviderError(f"CalDAV returned malformed XML: {e}") from e
    payloads = []
    for response in root.iterfind("D:response", NAMESPACES):
        for data in response.iterfind(".//C:calendar-data", NAMESPACES):
            if data.text and data.text.strip():
                payloads.append(data.text)
    return payloads


class CalDAVAdapter(ProviderAdapter):
    provider = Provider.APPLE

    def _auth(self, credential: Credential) -> httpx.BasicAuth:
        if not credential.app_password:
            raise ProviderError("CalDAV credential has no app-specific password")
        username = credential.username or str(credential.user_id)
        return httpx.BasicAuth(username, credential.app_password)

    def _object_url(self, uid: str) -> str:
        return f"{self.settings.caldav.calendar_url}{quote(uid, safe='@.-_')}.ics"

    def create_remote(self, credential: Credential, event: LocalEvent) -> str:
        uid = event_uid(event, self.settings.caldav.uid_domain)
        self._request(
            "PUT",
            self._object_url(uid),
            auth=self._auth(credential),
            headers={"Content-Type": "text/calendar; charset=utf-8"},
            content=build_vcalendar(event, uid),
        )
        return uid

    def update_remote(self, credential: Credential, event: LocalEvent, external_id: str) -> None:
        self.logger.error(
            f"CalDAV update is not implemented; event {event.id} ({external_id}) "
            f"was NOT changed on the server"
        )
        raise UnsupportedOperationError("CalDAV update is not supported")

    def delete_remote(self, credential: Credential, event: LocalEvent, external_id: str) -> None:
        self.logger.error(
            f"CalDAV delete is not implemented; event {event.id} ({external_id}) "
            f"was NOT removed from the server"
        )
        raise UnsupportedOperationError("CalDAV delete is not supported")

    def fetch_remote(self, credential: Credential) -> list[RemoteEvent]:
        response = self._request(
            "REPORT",
            self.settings.caldav.calendar_url,
            auth=self._auth(credential),
            headers={"Content-Type": "application/xml; charset=utf-8", "Depth": "1"},
            content=CALENDAR_QUERY.encode("utf-8"),
        )
        payloads = parse_multistatus(response.content)

        calendar_id = self.calendars.resolve(credential.user_id, self.provider, CALENDAR_ID)

        events = []
        for payload in payloads:
            try:
                events.extend(
                    parse_vevents(payload, credential.user_id, calendar_id, self.logger)
                )
            except Exception as e:
                self.logger.warning(f"Skipping unparseable calendar object: {e}")
        self.logger.debug(f"Fetched {len(events)} CalDAV events for user {credential.user_id}")
        return events
