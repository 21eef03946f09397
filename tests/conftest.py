"""Shared fixtures: in-memory store doubles and credential factories."""

from __future__ import annotations

import uuid
from datetime import UTC, date, datetime, timedelta
from typing import Any

import pytest

from cellarsync.models import (
    Booking,
    CaldavCredentials,
    Connector,
    Event,
    EventType,
    GoogleCredentials,
    MicrosoftCredentials,
)
from cellarsync.stores import BookingStore, ConnectorStore, DuplicateEventError, EventStore
from cellarsync.vault import CredentialVault

TEST_VAULT_KEY = "test-vault-key-do-not-use-in-production"


class InMemoryConnectorStore(ConnectorStore):
    def __init__(self, connectors: list[Connector] | None = None) -> None:
        self.connectors: dict[str, Connector] = {}
        self.saved: list[Connector] = []
        self.fail_list_all: Exception | None = None
        for connector in connectors or []:
            self.connectors[connector.user_id] = connector

    async def list_all(self) -> list[Connector]:
        if self.fail_list_all is not None:
            raise self.fail_list_all
        return list(self.connectors.values())

    async def get_for_user(self, user_id: str) -> Connector | None:
        return self.connectors.get(user_id)

    async def upsert(self, connector: Connector) -> Connector:
        stored = connector.model_copy(
            update={"id": connector.id or str(uuid.uuid4()), "updated_at": datetime.now(UTC)}
        )
        self.connectors[stored.user_id] = stored
        return stored

    async def save_credentials(self, connector: Connector) -> None:
        self.saved.append(connector.model_copy(deep=True))
        self.connectors[connector.user_id] = connector


class InMemoryEventStore(EventStore):
    """Enforces the (user_id, external_event_id, source) uniqueness key."""

    def __init__(self) -> None:
        self.events: dict[str, Event] = {}
        self.updates: list[tuple[str, dict[str, Any]]] = []
        self.inserts = 0

    def _key(self, event: Event) -> tuple[str, str, str] | None:
        if event.external_event_id is None or event.external_calendar_source is None:
            return None
        return (event.user_id, event.external_event_id, event.external_calendar_source)

    async def find_by_external_id(
        self, user_id: str, external_event_id: str, source: str
    ) -> Event | None:
        for event in self.events.values():
            if self._key(event) == (user_id, external_event_id, source):
                return event
        return None

    async def find_booking_events_on(self, user_id: str, day: date) -> list[Event]:
        return [
            event
            for event in self.events.values()
            if event.user_id == user_id
            and event.event_type is EventType.BOOKING
            and event.event_date == day
        ]

    async def insert(self, event: Event) -> Event:
        key = self._key(event)
        if key is not None and any(self._key(existing) == key for existing in self.events.values()):
            raise DuplicateEventError(str(key))
        stored = event.model_copy(update={"id": event.id or str(uuid.uuid4())})
        self.events[stored.id] = stored
        self.inserts += 1
        return stored

    async def update(self, event_id: str, fields: dict[str, Any]) -> None:
        self.updates.append((event_id, dict(fields)))
        self.events[event_id] = self.events[event_id].model_copy(update=fields)

    def by_uid(self, uid: str) -> Event | None:
        return next((e for e in self.events.values() if e.external_event_id == uid), None)


class InMemoryBookingStore(BookingStore):
    def __init__(self) -> None:
        self.external_ids: dict[str, str | None] = {}

    async def set_external_event_id(self, booking_id: str, external_event_id: str | None) -> None:
        self.external_ids[booking_id] = external_event_id


@pytest.fixture
def vault() -> CredentialVault:
    return CredentialVault(TEST_VAULT_KEY)


@pytest.fixture
def connector_store() -> InMemoryConnectorStore:
    return InMemoryConnectorStore()


@pytest.fixture
def event_store() -> InMemoryEventStore:
    return InMemoryEventStore()


@pytest.fixture
def booking_store() -> InMemoryBookingStore:
    return InMemoryBookingStore()


def caldav_connector(
    vault: CredentialVault, user_id: str = "user-1", *, username: str = "owner@orange.fr"
) -> Connector:
    return Connector.connected(
        user_id=user_id,
        credentials=CaldavCredentials(username=username, password=vault.encrypt("s3cret")),
        connector_id=f"conn-{user_id}",
    )


def microsoft_connector(
    user_id: str = "user-1", *, expires_in: timedelta = timedelta(hours=1)
) -> Connector:
    return Connector.connected(
        user_id=user_id,
        credentials=MicrosoftCredentials(
            access_token="ms-access",
            refresh_token="ms-refresh",
            expires_at=datetime.now(UTC) + expires_in,
        ),
        connector_id=f"conn-{user_id}",
    )


def google_connector(
    user_id: str = "user-1", *, expires_in: timedelta = timedelta(hours=1)
) -> Connector:
    return Connector.connected(
        user_id=user_id,
        credentials=GoogleCredentials(
            access_token="g-access",
            refresh_token="g-refresh",
            expires_at=datetime.now(UTC) + expires_in,
        ),
        connector_id=f"conn-{user_id}",
    )


def make_booking(**overrides: Any) -> Booking:
    values: dict[str, Any] = {
        "id": "booking-1",
        "user_id": "user-1",
        "booking_date": date(2025, 10, 15),
        "time": "14:00",
        "customer_first_name": "Jane",
        "customer_last_name": "Doe",
        "customer_email": "jane@example.com",
        "participants_adults": 2,
    }
    values.update(overrides)
    return Booking(**values)
