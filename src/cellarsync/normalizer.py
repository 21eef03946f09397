"""Event normalization: provider-native events -> NormalizedExternalEvent.

Each provider gets its own timezone policy:

- CalDAV: UTC timestamps are converted to the display zone, timestamps in
  another named zone keep their wall clock, and floating timestamps (no zone
  information at all) are shifted by a fixed number of hours to match how
  the server stores them.
- Microsoft Graph: listing requests times in the display zone through the
  ``Prefer: outlook.timezone`` header; anything still reported in another
  zone is projected into the display zone.
- Google: RFC 3339 timestamps carry their offset and are projected into the
  display zone.

Multi-day all-day events expand to one entry per calendar day, with the
uid suffixed ``_day1``, ``_day2``, ... so each day keeps its own dedup key.
Raw events missing a uid or start yield no entries; malformed values raise
``ValueError``.
"""

from __future__ import annotations

import logging
import re
from datetime import UTC, date, datetime, timedelta, tzinfo
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from cellarsync.models import EventStatus, NormalizedExternalEvent
from cellarsync.providers.ical import CaldavRawEvent, RawTimestamp, TimestampKind

logger = logging.getLogger(__name__)

ALL_DAY_START = "00:00"
ALL_DAY_END = "23:59"
_FRACTION_PATTERN = re.compile(r"\.(\d{6})\d+")


def _hhmm(value: datetime) -> str:
    return value.strftime("%H:%M")


def _fallback_title(uid: str) -> str:
    return f"Event {uid[:8]}"


def _coerce_zoneinfo(timezone: str | None, default: tzinfo) -> tzinfo:
    if not timezone:
        return default
    try:
        return ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError):
        # Graph may report Windows zone names; those are left to the default.
        return default


def expand_all_day(
    *,
    uid: str,
    title: str,
    description: str | None,
    start: date,
    end_exclusive: date | None,
    status: EventStatus = EventStatus.ACTIVE,
) -> list[NormalizedExternalEvent]:
    """Build one all-day entry per calendar day in ``[start, end_exclusive)``."""
    days = (end_exclusive - start).days if end_exclusive is not None else 1
    if days <= 1:
        return [
            NormalizedExternalEvent(
                uid=uid,
                title=title,
                description=description,
                is_all_day=True,
                start_date=start,
                start_time=ALL_DAY_START,
                end_time=ALL_DAY_END,
                status=status,
            )
        ]
    return [
        NormalizedExternalEvent(
            uid=f"{uid}_day{index + 1}",
            title=title,
            description=description,
            is_all_day=True,
            start_date=start + timedelta(days=index),
            start_time=ALL_DAY_START,
            end_time=ALL_DAY_END,
            status=status,
        )
        for index in range(days)
    ]


# ---------------------------------------------------------------------------
# CalDAV
# ---------------------------------------------------------------------------


def caldav_display_time(
    timestamp: RawTimestamp,
    *,
    display_tz: tzinfo,
    no_zone_offset_hours: int,
) -> datetime:
    """Project a CalDAV date-time into a naive display-zone wall clock."""
    value = timestamp.value
    if not isinstance(value, datetime):
        raise ValueError(f"Expected a date-time, got an all-day date: {value!r}")

    match timestamp.kind:
        case TimestampKind.UTC:
            aware = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
            return aware.astimezone(display_tz).replace(tzinfo=None)
        case TimestampKind.ZONED:
            return value.replace(tzinfo=None)
        case TimestampKind.FLOATING:
            return value + timedelta(hours=no_zone_offset_hours)
        case _:
            raise ValueError(f"Unsupported timestamp kind: {timestamp.kind}")


def normalize_caldav_event(
    raw: CaldavRawEvent,
    *,
    display_tz: tzinfo,
    no_zone_offset_hours: int,
) -> list[NormalizedExternalEvent]:
    if not raw.uid:
        return []

    title = raw.summary or _fallback_title(raw.uid)
    status = EventStatus.CANCELLED if raw.status == "CANCELLED" else EventStatus.ACTIVE

    if raw.start.kind is TimestampKind.DATE:
        end_exclusive = raw.end.day if raw.end is not None else None
        return expand_all_day(
            uid=raw.uid,
            title=title,
            description=raw.description,
            start=raw.start.day,
            end_exclusive=end_exclusive,
            status=status,
        )

    start = caldav_display_time(
        raw.start, display_tz=display_tz, no_zone_offset_hours=no_zone_offset_hours
    )
    end_time = None
    if raw.end is not None and raw.end.kind is not TimestampKind.DATE:
        end = caldav_display_time(
            raw.end, display_tz=display_tz, no_zone_offset_hours=no_zone_offset_hours
        )
        end_time = _hhmm(end)

    return [
        NormalizedExternalEvent(
            uid=raw.uid,
            title=title,
            description=raw.description,
            is_all_day=False,
            start_date=start.date(),
            start_time=_hhmm(start),
            end_time=end_time,
            status=status,
        )
    ]


# ---------------------------------------------------------------------------
# Microsoft Graph
# ---------------------------------------------------------------------------


def _parse_graph_datetime(boundary: Any, display_tz: tzinfo) -> datetime:
    if not isinstance(boundary, dict) or not isinstance(boundary.get("dateTime"), str):
        raise ValueError(f"Graph event boundary is missing dateTime: {boundary!r}")
    raw_value = _FRACTION_PATTERN.sub(r".\1", boundary["dateTime"].strip())
    if raw_value.endswith("Z"):
        raw_value = f"{raw_value[:-1]}+00:00"
    parsed = datetime.fromisoformat(raw_value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=_coerce_zoneinfo(boundary.get("timeZone"), display_tz))
    return parsed.astimezone(display_tz)


def normalize_graph_event(
    payload: dict[str, Any],
    *,
    display_tz: tzinfo,
) -> list[NormalizedExternalEvent]:
    uid = payload.get("id")
    if not isinstance(uid, str) or not uid or not payload.get("start"):
        return []

    title = str(payload.get("subject") or "").strip() or _fallback_title(uid)
    description = str(payload.get("bodyPreview") or "").strip() or None
    status = EventStatus.CANCELLED if payload.get("isCancelled") else EventStatus.ACTIVE

    if payload.get("isAllDay"):
        start_day = _parse_all_day_boundary(payload["start"])
        end_day = _parse_all_day_boundary(payload["end"]) if payload.get("end") else None
        return expand_all_day(
            uid=uid,
            title=title,
            description=description,
            start=start_day,
            end_exclusive=end_day,
            status=status,
        )

    start = _parse_graph_datetime(payload["start"], display_tz)
    end_time = None
    if payload.get("end"):
        end_time = _hhmm(_parse_graph_datetime(payload["end"], display_tz))
    return [
        NormalizedExternalEvent(
            uid=uid,
            title=title,
            description=description,
            start_date=start.date(),
            start_time=_hhmm(start),
            end_time=end_time,
            status=status,
        )
    ]


def _parse_all_day_boundary(boundary: Any) -> date:
    # All-day Graph events report midnight in the event zone; only the date matters.
    if not isinstance(boundary, dict) or not isinstance(boundary.get("dateTime"), str):
        raise ValueError(f"Graph all-day boundary is missing dateTime: {boundary!r}")
    return date.fromisoformat(boundary["dateTime"].strip()[:10])


# ---------------------------------------------------------------------------
# Google
# ---------------------------------------------------------------------------


def _parse_google_datetime(value: str) -> datetime:
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise ValueError(f"Google Calendar returned an invalid dateTime: {value}") from exc
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def normalize_google_event(
    payload: dict[str, Any],
    *,
    display_tz: tzinfo,
) -> list[NormalizedExternalEvent]:
    uid = payload.get("id")
    start_payload = payload.get("start")
    if not isinstance(uid, str) or not uid or not isinstance(start_payload, dict):
        return []

    title = str(payload.get("summary") or "").strip() or _fallback_title(uid)
    description = str(payload.get("description") or "").strip() or None
    status = (
        EventStatus.CANCELLED
        if str(payload.get("status", "")).lower() == "cancelled"
        else EventStatus.ACTIVE
    )
    end_payload = payload.get("end") if isinstance(payload.get("end"), dict) else {}

    if isinstance(start_payload.get("date"), str):
        end_raw = end_payload.get("date")
        return expand_all_day(
            uid=uid,
            title=title,
            description=description,
            start=date.fromisoformat(start_payload["date"]),
            end_exclusive=date.fromisoformat(end_raw) if isinstance(end_raw, str) else None,
            status=status,
        )

    start_raw = start_payload.get("dateTime")
    if not isinstance(start_raw, str):
        logger.debug("Dropping Google event %s without a start", uid)
        return []

    start = _parse_google_datetime(start_raw).astimezone(display_tz)
    end_time = None
    end_raw = end_payload.get("dateTime")
    if isinstance(end_raw, str):
        end_time = _hhmm(_parse_google_datetime(end_raw).astimezone(display_tz))
    return [
        NormalizedExternalEvent(
            uid=uid,
            title=title,
            description=description,
            start_date=start.date(),
            start_time=_hhmm(start),
            end_time=end_time,
            status=status,
        )
    ]
