"""Tests for the outbound booking publisher."""

from __future__ import annotations

import json
from datetime import date, datetime
from typing import Any

import httpx
import pytest

from cellarsync.config import OAuthClientConfig
from cellarsync.models import Connector, NormalizedExternalEvent, ProviderName
from cellarsync.providers.base import CalendarDraft, CalendarHandle, CalendarProvider
from cellarsync.providers.google import GoogleProvider
from cellarsync.providers.matching import BestEffortMatcher
from cellarsync.publisher import BookingPublisher, booking_description, published_title
from conftest import (
    InMemoryBookingStore,
    InMemoryConnectorStore,
    caldav_connector,
    google_connector,
    make_booking,
)

pytestmark = pytest.mark.unit


class RecordingCaldav(CalendarProvider):
    def __init__(self) -> None:
        self.created: list[CalendarDraft] = []
        self.deleted: list[BestEffortMatcher] = []
        self.fail_create: Exception | None = None
        self.fail_delete: Exception | None = None

    @property
    def name(self) -> ProviderName:
        return ProviderName.CALDAV

    async def discover_calendar(self, connector: Connector) -> CalendarHandle:
        return CalendarHandle(provider=ProviderName.CALDAV, url="https://dav/cal/")

    async def list_events(self, handle, *, window_start, window_end) -> list[Any]:
        return []

    def normalize(self, raw_event: Any) -> list[NormalizedExternalEvent]:
        return []

    async def create_event(self, handle: CalendarHandle, draft: CalendarDraft) -> str:
        if self.fail_create is not None:
            raise self.fail_create
        self.created.append(draft)
        return "uid@cellarsync"

    async def delete_event(self, handle, *, external_id=None, matcher=None) -> bool:
        if self.fail_delete is not None:
            raise self.fail_delete
        self.deleted.append(matcher)
        return True


class FixedCatalog:
    def __init__(self, minutes: int | None) -> None:
        self.minutes = minutes

    async def get_service_duration(self, user_id: str, service_id: str) -> int | None:
        return self.minutes


@pytest.fixture
def caldav() -> RecordingCaldav:
    return RecordingCaldav()


def _publisher(
    connector: Connector,
    providers: dict[ProviderName, CalendarProvider],
    booking_store: InMemoryBookingStore,
    **kwargs: Any,
) -> BookingPublisher:
    return BookingPublisher(
        InMemoryConnectorStore([connector]),
        booking_store,
        providers,
        timezone="Europe/Paris",
        **kwargs,
    )


class GoogleRecorder:
    def __init__(self, *, patch_status: int = 200) -> None:
        self.requests: list[httpx.Request] = []
        self.patch_status = patch_status

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.method == "POST":
            return httpx.Response(200, json={"id": "g-created"})
        if request.method == "PATCH":
            return httpx.Response(self.patch_status, json={"id": "g-1"})
        return httpx.Response(204)


def _google_provider(recorder: GoogleRecorder, store: InMemoryConnectorStore) -> GoogleProvider:
    return GoogleProvider(
        OAuthClientConfig(client_id="cid", client_secret="secret"),
        store,
        display_timezone="Europe/Paris",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(recorder)),
    )


def test_title_and_description():
    booking = make_booking(notes="Allergic to sulfites", participants_children=1)
    assert published_title(booking) == "Booking: Jane Doe"
    assert published_title(make_booking(customer_first_name="", customer_last_name="")) == (
        "Booking: Customer"
    )
    description = booking_description(booking)
    assert "Customer: Jane Doe" in description
    assert "Participants: 2 adult(s), 1 child(ren)" in description
    assert "Notes: Allergic to sulfites" in description


class TestCaldavPublishing:
    async def test_create_applies_write_offset_and_default_duration(
        self, vault, caldav: RecordingCaldav, booking_store: InMemoryBookingStore
    ):
        publisher = _publisher(caldav_connector(vault), {ProviderName.CALDAV: caldav}, booking_store)

        await publisher.on_booking_created(make_booking())

        (draft,) = caldav.created
        assert draft.title == "Booking: Jane Doe"
        assert draft.start == datetime(2025, 10, 15, 13, 0)
        assert draft.end == datetime(2025, 10, 15, 14, 0)
        assert draft.attendee_email == "jane@example.com"
        assert booking_store.external_ids == {}

    async def test_service_duration_from_catalog(
        self, vault, caldav: RecordingCaldav, booking_store: InMemoryBookingStore
    ):
        publisher = _publisher(
            caldav_connector(vault),
            {ProviderName.CALDAV: caldav},
            booking_store,
            catalog=FixedCatalog(90),
        )

        await publisher.publish_created(make_booking(service_id="tasting"))

        assert caldav.created[0].end == datetime(2025, 10, 15, 14, 30)

    async def test_update_without_calendar_changes_is_a_no_op(
        self, vault, caldav: RecordingCaldav, booking_store: InMemoryBookingStore
    ):
        publisher = _publisher(caldav_connector(vault), {ProviderName.CALDAV: caldav}, booking_store)
        old = make_booking()

        await publisher.publish_updated(old, make_booking(notes="changed notes only"))

        assert caldav.created == []
        assert caldav.deleted == []

    async def test_update_is_delete_then_create(
        self, vault, caldav: RecordingCaldav, booking_store: InMemoryBookingStore
    ):
        publisher = _publisher(caldav_connector(vault), {ProviderName.CALDAV: caldav}, booking_store)
        old = make_booking()
        new = make_booking(booking_date=date(2025, 10, 17), time="18:00")

        await publisher.publish_updated(old, new)

        (matcher,) = caldav.deleted
        assert matcher == BestEffortMatcher(
            title="Booking: Jane Doe", customer_name="Jane Doe", on_date=date(2025, 10, 15)
        )
        assert caldav.created[0].start == datetime(2025, 10, 17, 17, 0)

    async def test_failed_delete_still_creates_new_event(
        self, vault, caldav: RecordingCaldav, booking_store: InMemoryBookingStore
    ):
        caldav.fail_delete = RuntimeError("server unreachable")
        publisher = _publisher(caldav_connector(vault), {ProviderName.CALDAV: caldav}, booking_store)

        await publisher.publish_updated(make_booking(), make_booking(time="16:00"))

        assert len(caldav.created) == 1

    async def test_delete_uses_matcher(
        self, vault, caldav: RecordingCaldav, booking_store: InMemoryBookingStore
    ):
        publisher = _publisher(caldav_connector(vault), {ProviderName.CALDAV: caldav}, booking_store)

        await publisher.publish_deleted(make_booking())

        assert caldav.deleted[0].title == "Booking: Jane Doe"

    async def test_failures_never_reach_the_caller(
        self, vault, caldav: RecordingCaldav, booking_store: InMemoryBookingStore
    ):
        caldav.fail_create = RuntimeError("500 from server")
        publisher = _publisher(caldav_connector(vault), {ProviderName.CALDAV: caldav}, booking_store)

        task = publisher.on_booking_created(make_booking())
        await publisher.drain()

        assert task.exception() is None
        assert publisher.pending == 0

    async def test_disconnected_user_publishes_nothing(
        self, caldav: RecordingCaldav, booking_store: InMemoryBookingStore
    ):
        publisher = _publisher(
            Connector(user_id="user-1"), {ProviderName.CALDAV: caldav}, booking_store
        )

        await publisher.publish_created(make_booking())

        assert caldav.created == []


class TestOAuthPublishing:
    async def test_create_stores_external_id(self, booking_store: InMemoryBookingStore):
        store = InMemoryConnectorStore([google_connector()])
        recorder = GoogleRecorder()
        publisher = BookingPublisher(
            store,
            booking_store,
            {ProviderName.GOOGLE: _google_provider(recorder, store)},
            timezone="Europe/Paris",
        )

        await publisher.publish_created(make_booking())

        assert booking_store.external_ids == {"booking-1": "g-created"}
        body = json.loads(recorder.requests[0].content)
        assert body["start"]["dateTime"] == "2025-10-15T14:00:00"

    async def test_update_patches_by_stored_id(self, booking_store: InMemoryBookingStore):
        store = InMemoryConnectorStore([google_connector()])
        recorder = GoogleRecorder()
        publisher = BookingPublisher(
            store,
            booking_store,
            {ProviderName.GOOGLE: _google_provider(recorder, store)},
            timezone="Europe/Paris",
        )
        old = make_booking(external_event_id="g-1")

        await publisher.publish_updated(old, make_booking(external_event_id="g-1", time="16:00"))

        (request,) = recorder.requests
        assert request.method == "PATCH"
        assert request.url.path.endswith("/events/g-1")

    async def test_update_of_unpublished_booking_creates(
        self, booking_store: InMemoryBookingStore
    ):
        store = InMemoryConnectorStore([google_connector()])
        recorder = GoogleRecorder()
        publisher = BookingPublisher(
            store,
            booking_store,
            {ProviderName.GOOGLE: _google_provider(recorder, store)},
            timezone="Europe/Paris",
        )

        await publisher.publish_updated(make_booking(), make_booking(time="16:00"))

        assert [r.method for r in recorder.requests] == ["POST"]
        assert booking_store.external_ids == {"booking-1": "g-created"}

    async def test_delete_by_stored_id(self, booking_store: InMemoryBookingStore):
        store = InMemoryConnectorStore([google_connector()])
        recorder = GoogleRecorder()
        publisher = BookingPublisher(
            store,
            booking_store,
            {ProviderName.GOOGLE: _google_provider(recorder, store)},
            timezone="Europe/Paris",
        )

        await publisher.publish_deleted(make_booking(external_event_id="g-1"))
        await publisher.publish_deleted(make_booking())

        (request,) = recorder.requests
        assert request.method == "DELETE"
        assert request.url.path.endswith("/events/g-1")
