"""TTL cache for CalDAV discovery results."""

from __future__ import annotations

import time
from collections.abc import Callable

from cellarsync.providers.base import DiscoveredCalendar

DEFAULT_TTL_SECONDS = 300.0


class CalendarHandleCache:
    """Username -> discovered calendar, expiring after ``ttl_seconds``.

    Last writer wins; there is no locking. A stale entry only costs an extra
    discovery round-trip because callers re-validate the URL by using it.
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, tuple[float, DiscoveredCalendar]] = {}

    def get(self, key: str) -> DiscoveredCalendar | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        stored_at, calendar = entry
        if self._clock() - stored_at >= self._ttl_seconds:
            self._entries.pop(key, None)
            return None
        return calendar

    def set(self, key: str, calendar: DiscoveredCalendar) -> None:
        self._entries[key] = (self._clock(), calendar)

    def invalidate(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
