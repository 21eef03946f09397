"""Persistence contracts and their PostgreSQL implementations.

The core only talks to the abstract ``ConnectorStore``, ``EventStore`` and
``BookingStore``; the ``Postgres*`` classes implement them on asyncpg with
plain SQL. ``ensure_schema`` is idempotent and safe to run on every start.
"""

from __future__ import annotations

import abc
import json
import logging
from datetime import date
from typing import Any

import asyncpg

from cellarsync.models import Connector, Event, EventType

logger = logging.getLogger(__name__)


class DuplicateEventError(Exception):
    """Raised when an insert collides with the (user, external id, source) key."""


class ConnectorStore(abc.ABC):
    @abc.abstractmethod
    async def list_all(self) -> list[Connector]:
        """Every connector regardless of owner, oldest first."""

    @abc.abstractmethod
    async def get_for_user(self, user_id: str) -> Connector | None:
        """The user's connector, if one was ever created."""

    @abc.abstractmethod
    async def upsert(self, connector: Connector) -> Connector:
        """Insert or replace the user's connector (one per user)."""

    @abc.abstractmethod
    async def save_credentials(self, connector: Connector) -> None:
        """Persist ``connector.credentials`` after a token refresh or invalidation."""


class EventStore(abc.ABC):
    @abc.abstractmethod
    async def find_by_external_id(
        self, user_id: str, external_event_id: str, source: str
    ) -> Event | None:
        """Look up an event by its reconciliation key."""

    @abc.abstractmethod
    async def find_booking_events_on(self, user_id: str, day: date) -> list[Event]:
        """Booking-type events on ``day``, ordered by start time."""

    @abc.abstractmethod
    async def insert(self, event: Event) -> Event:
        """Insert and return the stored event; raises DuplicateEventError on key collision."""

    @abc.abstractmethod
    async def update(self, event_id: str, fields: dict[str, Any]) -> None:
        """Apply a partial update keyed by ``Event`` field names."""


class BookingStore(abc.ABC):
    @abc.abstractmethod
    async def set_external_event_id(self, booking_id: str, external_event_id: str | None) -> None:
        """Remember the provider event id a booking was published as."""


# ---------------------------------------------------------------------------
# PostgreSQL
# ---------------------------------------------------------------------------

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS calendar_connectors (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    user_id TEXT NOT NULL UNIQUE,
    name TEXT NOT NULL DEFAULT 'none',
    credentials JSONB NOT NULL DEFAULT '{"kind": "none"}'::jsonb,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS events (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    user_id TEXT NOT NULL,
    booking_id TEXT,
    event_name VARCHAR(200) NOT NULL,
    event_date DATE NOT NULL,
    event_time CHAR(5) NOT NULL,
    event_end_time CHAR(5),
    event_description TEXT,
    event_type TEXT NOT NULL DEFAULT 'personal',
    external_calendar_source TEXT,
    external_event_id TEXT,
    event_status TEXT NOT NULL DEFAULT 'active',
    is_all_day BOOLEAN NOT NULL DEFAULT false,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE UNIQUE INDEX IF NOT EXISTS events_external_key_idx
    ON events (user_id, external_event_id, external_calendar_source)
    WHERE external_event_id IS NOT NULL;

CREATE INDEX IF NOT EXISTS events_user_date_idx ON events (user_id, event_date);

ALTER TABLE IF EXISTS bookings ADD COLUMN IF NOT EXISTS external_event_id TEXT;
"""

# Event field name -> column name.
_EVENT_COLUMNS = {
    "user_id": "user_id",
    "booking_id": "booking_id",
    "name": "event_name",
    "event_date": "event_date",
    "time": "event_time",
    "end_time": "event_end_time",
    "description": "event_description",
    "event_type": "event_type",
    "external_calendar_source": "external_calendar_source",
    "external_event_id": "external_event_id",
    "status": "event_status",
    "is_all_day": "is_all_day",
}

_EVENT_SELECT = """
    SELECT id, user_id, booking_id, event_name, event_date, event_time, event_end_time,
           event_description, event_type, external_calendar_source, external_event_id,
           event_status, is_all_day
    FROM events
"""


async def ensure_schema(pool: asyncpg.Pool) -> None:
    """Create tables and indexes if they do not exist."""
    await pool.execute(SCHEMA_SQL)
    logger.info("Calendar sync schema ensured")


def _column_value(value: Any) -> Any:
    # Enums are stored by value.
    return getattr(value, "value", value)


def _row_to_event(row: Any) -> Event:
    return Event(
        id=str(row["id"]),
        user_id=row["user_id"],
        booking_id=row["booking_id"],
        name=row["event_name"],
        event_date=row["event_date"],
        time=row["event_time"].strip(),
        end_time=row["event_end_time"].strip() if row["event_end_time"] else None,
        description=row["event_description"],
        event_type=row["event_type"],
        external_calendar_source=row["external_calendar_source"],
        external_event_id=row["external_event_id"],
        status=row["event_status"],
        is_all_day=row["is_all_day"],
    )


def _row_to_connector(row: Any) -> Connector:
    credentials = row["credentials"]
    if not isinstance(credentials, dict):
        credentials = json.loads(credentials)
    return Connector(
        id=str(row["id"]),
        user_id=row["user_id"],
        name=row["name"],
        credentials=credentials,
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class PostgresConnectorStore(ConnectorStore):
    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def list_all(self) -> list[Connector]:
        rows = await self._pool.fetch(
            """
            SELECT id, user_id, name, credentials, created_at, updated_at
            FROM calendar_connectors
            ORDER BY created_at
            """
        )
        return [_row_to_connector(row) for row in rows]

    async def get_for_user(self, user_id: str) -> Connector | None:
        row = await self._pool.fetchrow(
            """
            SELECT id, user_id, name, credentials, created_at, updated_at
            FROM calendar_connectors
            WHERE user_id = $1
            """,
            user_id,
        )
        return _row_to_connector(row) if row is not None else None

    async def upsert(self, connector: Connector) -> Connector:
        row = await self._pool.fetchrow(
            """
            INSERT INTO calendar_connectors (user_id, name, credentials)
            VALUES ($1, $2, $3::jsonb)
            ON CONFLICT (user_id) DO UPDATE
                SET name = EXCLUDED.name,
                    credentials = EXCLUDED.credentials,
                    updated_at = now()
            RETURNING id, user_id, name, credentials, created_at, updated_at
            """,
            connector.user_id,
            connector.name,
            connector.credentials.model_dump_json(),
        )
        return _row_to_connector(row)

    async def save_credentials(self, connector: Connector) -> None:
        await self._pool.execute(
            """
            UPDATE calendar_connectors
            SET credentials = $2::jsonb, updated_at = now()
            WHERE user_id = $1
            """,
            connector.user_id,
            connector.credentials.model_dump_json(),
        )


class PostgresEventStore(EventStore):
    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def find_by_external_id(
        self, user_id: str, external_event_id: str, source: str
    ) -> Event | None:
        row = await self._pool.fetchrow(
            _EVENT_SELECT
            + """
            WHERE user_id = $1 AND external_event_id = $2 AND external_calendar_source = $3
            """,
            user_id,
            external_event_id,
            source,
        )
        return _row_to_event(row) if row is not None else None

    async def find_booking_events_on(self, user_id: str, day: date) -> list[Event]:
        rows = await self._pool.fetch(
            _EVENT_SELECT
            + """
            WHERE user_id = $1 AND event_date = $2 AND event_type = $3
            ORDER BY event_time
            """,
            user_id,
            day,
            EventType.BOOKING.value,
        )
        return [_row_to_event(row) for row in rows]

    async def insert(self, event: Event) -> Event:
        values = event.model_dump(exclude={"id"})
        columns = list(_EVENT_COLUMNS)
        placeholders = ", ".join(f"${index}" for index in range(1, len(columns) + 1))
        try:
            row = await self._pool.fetchrow(
                f"""
                INSERT INTO events ({", ".join(_EVENT_COLUMNS[c] for c in columns)})
                VALUES ({placeholders})
                RETURNING id
                """,
                *(_column_value(values[c]) for c in columns),
            )
        except asyncpg.UniqueViolationError as exc:
            raise DuplicateEventError(
                f"Event {event.external_event_id!r} already stored for user {event.user_id!r}"
            ) from exc
        return event.model_copy(update={"id": str(row["id"])})

    async def update(self, event_id: str, fields: dict[str, Any]) -> None:
        if not fields:
            return
        unknown = set(fields) - set(_EVENT_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown event field(s): {', '.join(sorted(unknown))}")
        names = list(fields)
        assignments = ", ".join(
            f"{_EVENT_COLUMNS[name]} = ${index}" for index, name in enumerate(names, start=2)
        )
        await self._pool.execute(
            f"UPDATE events SET {assignments}, updated_at = now() WHERE id = $1::uuid",
            event_id,
            *(_column_value(fields[name]) for name in names),
        )


class PostgresBookingStore(BookingStore):
    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def set_external_event_id(self, booking_id: str, external_event_id: str | None) -> None:
        await self._pool.execute(
            "UPDATE bookings SET external_event_id = $2 WHERE id::text = $1",
            booking_id,
            external_event_id,
        )
