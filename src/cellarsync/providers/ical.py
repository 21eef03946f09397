"""iCalendar document parsing and building for the CalDAV adapter.

Parsing keeps enough of each timestamp's original form (all-day date, UTC,
named zone, or floating wall-clock) for the normalizer to apply the
provider's timezone policy; nothing is converted here.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from enum import StrEnum
from typing import Any

from icalendar import Calendar, Event

from cellarsync.providers.base import CalendarDraft

logger = logging.getLogger(__name__)

PRODID = "-//cellarsync//booking publisher//FR"
UTC_ZONE_IDS = frozenset({"UTC", "Z", "GMT", "ZULU", "UNIVERSAL", "ETC/UTC", "ETC/GMT", "ETC/ZULU"})


class TimestampKind(StrEnum):
    DATE = "date"
    UTC = "utc"
    ZONED = "zoned"
    FLOATING = "floating"


@dataclass(frozen=True)
class RawTimestamp:
    """A DTSTART/DTEND value as the server stored it."""

    value: date | datetime
    kind: TimestampKind
    tzid: str | None = None

    @property
    def day(self) -> date:
        if isinstance(self.value, datetime):
            return self.value.date()
        return self.value


@dataclass
class CaldavRawEvent:
    """One VEVENT pulled from a calendar resource."""

    uid: str
    summary: str
    start: RawTimestamp
    end: RawTimestamp | None = None
    description: str | None = None
    status: str | None = None
    href: str | None = None
    etag: str | None = None


def classify_timestamp(prop: Any) -> RawTimestamp:
    """Classify an icalendar date/date-time property by its zone information."""
    value = prop.dt
    tzid = prop.params.get("TZID") if hasattr(prop, "params") else None
    tzid = str(tzid).strip() if tzid else None

    if not isinstance(value, datetime):
        return RawTimestamp(value=value, kind=TimestampKind.DATE)
    if tzid:
        kind = TimestampKind.UTC if tzid.upper() in UTC_ZONE_IDS else TimestampKind.ZONED
        return RawTimestamp(value=value, kind=kind, tzid=tzid)
    if value.tzinfo is None:
        return RawTimestamp(value=value, kind=TimestampKind.FLOATING)
    if value.utcoffset() == timedelta(0):
        return RawTimestamp(value=value, kind=TimestampKind.UTC)
    return RawTimestamp(value=value, kind=TimestampKind.ZONED)


def _optional_text(component: Any, key: str) -> str | None:
    value = component.get(key)
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def parse_calendar(
    text: str | bytes,
    *,
    href: str | None = None,
    etag: str | None = None,
) -> list[CaldavRawEvent]:
    """Parse a calendar resource into raw events.

    VEVENTs missing a UID or DTSTART are dropped with a warning. A document
    that fails to parse raises ``ValueError``.
    """
    calendar = Calendar.from_ical(text)
    events: list[CaldavRawEvent] = []
    for component in calendar.walk("VEVENT"):
        uid = _optional_text(component, "UID")
        dtstart = component.get("DTSTART")
        if uid is None or dtstart is None:
            logger.warning("Dropping VEVENT without UID or DTSTART (resource=%s)", href)
            continue
        dtend = component.get("DTEND")
        status = _optional_text(component, "STATUS")
        events.append(
            CaldavRawEvent(
                uid=uid,
                summary=_optional_text(component, "SUMMARY") or "",
                description=_optional_text(component, "DESCRIPTION"),
                start=classify_timestamp(dtstart),
                end=classify_timestamp(dtend) if dtend is not None else None,
                status=status.upper() if status else None,
                href=href,
                etag=etag,
            )
        )
    return events


def build_calendar(draft: CalendarDraft) -> tuple[str, bytes]:
    """Build a single-event calendar document for upload.

    Start and end are written as floating local times. Returns the event
    UID and the serialized document.
    """
    uid = draft.uid or f"{uuid.uuid4()}@cellarsync"

    event = Event()
    event.add("uid", uid)
    event.add("dtstamp", datetime.now(UTC))
    event.add("dtstart", draft.start)
    event.add("dtend", draft.end)
    event.add("summary", draft.title)
    if draft.description:
        event.add("description", draft.description)
    event.add("status", "CONFIRMED")
    event.add("transp", "OPAQUE")
    event.add("sequence", 0)

    calendar = Calendar()
    calendar.add("prodid", PRODID)
    calendar.add("version", "2.0")
    calendar.add_component(event)
    return uid, calendar.to_ical()
