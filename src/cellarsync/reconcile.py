"""Reconciliation: merge normalized external events into the local event store.

For each incoming event, in order:

1. Find the local event by ``(user_id, external_event_id, source)``. Write
   only the fields that differ; no difference means no write, which is what
   makes replaying a batch a no-op.
2. Otherwise find a same-day booking event whose title names the same
   customer under one of the booking labels, and link it to the external
   event instead of creating a duplicate.
3. Otherwise insert a new ``external`` event.

One bad event is counted as failed and never aborts the batch.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping, Sequence
from datetime import date, datetime, timedelta
from typing import Any

from cellarsync.core.metrics import ProviderMetrics
from cellarsync.models import (
    EVENT_NAME_MAX_LENGTH,
    Event,
    EventType,
    NormalizedExternalEvent,
    ProviderName,
    ReconcileCounts,
)
from cellarsync.stores import DuplicateEventError, EventStore

logger = logging.getLogger(__name__)

TITLE_ELLIPSIS = "..."
# Local bookings are titled in French, events published outward in English.
BOOKING_TITLE_LABELS = ("Réservation", "Reservation", "Booking")
_LABEL_PATTERN = re.compile(
    r"^\s*(?:" + "|".join(re.escape(label) for label in BOOKING_TITLE_LABELS) + r")\s*[:\-–]?\s*",
    re.IGNORECASE,
)
_DIFF_FIELDS = ("event_date", "time", "end_time", "name", "description", "is_all_day", "status")
# A linked booking event keeps the title and notes the booking layer wrote.
_BOOKING_OWNED_FIELDS = frozenset({"name", "description"})


def truncate_title(title: str) -> str:
    """Clamp a title to the stored maximum, marking the cut with an ellipsis."""
    if len(title) <= EVENT_NAME_MAX_LENGTH:
        return title
    return title[: EVENT_NAME_MAX_LENGTH - len(TITLE_ELLIPSIS)] + TITLE_ELLIPSIS


def strip_booking_label(title: str) -> str | None:
    """Return the customer part of a labelled booking title, or None if unlabelled."""
    match = _LABEL_PATTERN.match(title)
    if match is None:
        return None
    remainder = " ".join(title[match.end() :].split()).casefold()
    return remainder or None


def booking_titles_match(local_title: str, incoming_title: str) -> bool:
    """True when both titles carry a booking label and name the same customer."""
    local_name = strip_booking_label(local_title)
    incoming_name = strip_booking_label(incoming_title)
    return local_name is not None and local_name == incoming_name


def _shift(day: date, hhmm: str, hours: int) -> tuple[date, str]:
    hour, minute = (int(part) for part in hhmm.split(":"))
    shifted = datetime(day.year, day.month, day.day, hour, minute) + timedelta(hours=hours)
    return shifted.date(), shifted.strftime("%H:%M")


class ReconciliationEngine:
    """Applies normalized batches for one (user, provider) pair."""

    def __init__(
        self,
        event_store: EventStore,
        *,
        persist_offset_hours: Mapping[ProviderName, int] | None = None,
    ) -> None:
        self._store = event_store
        self._persist_offset_hours = dict(persist_offset_hours or {})

    def _target_fields(
        self, provider: ProviderName, incoming: NormalizedExternalEvent
    ) -> dict[str, Any]:
        event_date, start_time, end_time = incoming.start_date, incoming.start_time, incoming.end_time
        offset = self._persist_offset_hours.get(provider, 0)
        if offset and not incoming.is_all_day:
            event_date, start_time = _shift(incoming.start_date, incoming.start_time, offset)
            if end_time is not None:
                _, end_time = _shift(incoming.start_date, end_time, offset)
        return {
            "event_date": event_date,
            "time": start_time,
            "end_time": end_time,
            "name": truncate_title(incoming.title),
            "description": incoming.description,
            "is_all_day": incoming.is_all_day,
            "status": incoming.status,
        }

    async def reconcile(
        self,
        user_id: str,
        provider: ProviderName,
        events: Sequence[NormalizedExternalEvent],
    ) -> ReconcileCounts:
        counts = ReconcileCounts()
        for incoming in events:
            try:
                action = await self._reconcile_one(user_id, provider, incoming)
            except Exception:
                counts.failed += 1
                logger.warning(
                    "Failed to reconcile %s event %s", provider.value, incoming.uid, exc_info=True
                )
                continue
            setattr(counts, action, getattr(counts, action) + 1)

        metrics = ProviderMetrics(provider.value)
        for action, count in counts.as_dict().items():
            metrics.record_reconciled(action, count)
        logger.info(
            "Reconciled %d %s event(s): %s", len(events), provider.value, counts.as_dict()
        )
        return counts

    async def _reconcile_one(
        self,
        user_id: str,
        provider: ProviderName,
        incoming: NormalizedExternalEvent,
    ) -> str:
        target = self._target_fields(provider, incoming)
        source = provider.value

        existing = await self._store.find_by_external_id(user_id, incoming.uid, source)
        if existing is not None:
            return await self._apply_diff(existing, target)

        linked = await self._find_booking_match(user_id, incoming, target["event_date"])
        if linked is not None:
            assert linked.id is not None
            await self._store.update(
                linked.id,
                {
                    "external_event_id": incoming.uid,
                    "external_calendar_source": source,
                    "event_date": target["event_date"],
                    "time": target["time"],
                    "end_time": target["end_time"],
                    "is_all_day": target["is_all_day"],
                },
            )
            logger.info("Linked %s event %s to booking event %s", source, incoming.uid, linked.id)
            return "updated"

        event = Event(
            user_id=user_id,
            event_type=EventType.EXTERNAL,
            external_calendar_source=source,
            external_event_id=incoming.uid,
            **target,
        )
        try:
            await self._store.insert(event)
        except DuplicateEventError:
            # A concurrent run inserted it first; fall back to diffing.
            existing = await self._store.find_by_external_id(user_id, incoming.uid, source)
            if existing is None:
                raise
            return await self._apply_diff(existing, target)
        return "inserted"

    async def _apply_diff(self, existing: Event, target: dict[str, Any]) -> str:
        changed = {
            field: target[field]
            for field in _DIFF_FIELDS
            if getattr(existing, field) != target[field]
            and not (
                existing.event_type is EventType.BOOKING and field in _BOOKING_OWNED_FIELDS
            )
        }
        if not changed:
            return "unchanged"
        assert existing.id is not None
        await self._store.update(existing.id, changed)
        return "updated"

    async def _find_booking_match(
        self, user_id: str, incoming: NormalizedExternalEvent, day: date
    ) -> Event | None:
        if strip_booking_label(incoming.title) is None:
            return None
        for candidate in await self._store.find_booking_events_on(user_id, day):
            if candidate.external_event_id not in (None, incoming.uid):
                continue
            if booking_titles_match(candidate.name, incoming.title):
                return candidate
        return None
