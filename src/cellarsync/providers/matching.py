"""Best-effort resource matching for CalDAV deletes.

CalDAV resources created by this service are not addressable by any id the
booking side keeps, so deleting one means finding it again among the
calendar's resources. ``BestEffortMatcher`` encapsulates that search.

Contract: the matcher may fail to find the event (the caller logs and gives
up) but must never select a wrong one. Ambiguity resolves to "no match".
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date

from cellarsync.providers.ical import CaldavRawEvent

logger = logging.getLogger(__name__)


def _fold(value: str) -> str:
    return " ".join(value.split()).casefold()


@dataclass(frozen=True)
class BestEffortMatcher:
    """Select the resource holding a published booking event.

    Matching happens in two tiers:

    1. exact: the resource SUMMARY equals ``title`` byte for byte (and falls
       on ``on_date`` when given). The first exact match wins.
    2. fuzzy: the SUMMARY contains ``customer_name`` (case- and
       whitespace-insensitive) and the event starts on ``on_date``. Used only
       when exactly one resource qualifies.
    """

    title: str
    customer_name: str | None = None
    on_date: date | None = None

    def _on_expected_day(self, event: CaldavRawEvent) -> bool:
        return self.on_date is None or event.start.day == self.on_date

    def select(self, candidates: Sequence[CaldavRawEvent]) -> CaldavRawEvent | None:
        for event in candidates:
            if event.summary == self.title and self._on_expected_day(event):
                return event

        if not self.customer_name or self.on_date is None:
            return None

        needle = _fold(self.customer_name)
        fuzzy = [
            event
            for event in candidates
            if needle in _fold(event.summary) and event.start.day == self.on_date
        ]
        if len(fuzzy) == 1:
            return fuzzy[0]
        if len(fuzzy) > 1:
            logger.warning(
                "Refusing ambiguous CalDAV delete: %d resources match %r on %s",
                len(fuzzy),
                self.customer_name,
                self.on_date,
            )
        return None
