"""Tests for SyncService wiring and the recurring poller."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from zoneinfo import ZoneInfo

import httpx
import pytest

from cellarsync.config import parse_config
from cellarsync.models import ProviderName, SyncReport
from cellarsync.providers.caldav import CaldavProvider
from cellarsync.providers.microsoft import MicrosoftProvider
from cellarsync.service import SyncService, next_run_at
from conftest import (
    TEST_VAULT_KEY,
    InMemoryBookingStore,
    InMemoryConnectorStore,
    InMemoryEventStore,
    make_booking,
)

pytestmark = pytest.mark.unit


def _service(**sections) -> SyncService:
    config = parse_config(
        {"cellarsync": {"vault": {"encryption_key": TEST_VAULT_KEY}, **sections}}
    )
    return SyncService(
        config,
        connector_store=InMemoryConnectorStore(),
        event_store=InMemoryEventStore(),
        booking_store=InMemoryBookingStore(),
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(500))),
    )


def test_next_run_is_evaluated_in_business_timezone():
    paris = ZoneInfo("Europe/Paris")
    now = datetime(2025, 10, 15, 10, 30, tzinfo=UTC)

    assert next_run_at("0 * * * *", paris, now=now) == datetime(2025, 10, 15, 11, 0, tzinfo=UTC)
    assert next_run_at("0 6 * * *", paris, now=now) == datetime(2025, 10, 16, 4, 0, tzinfo=UTC)


def test_oauth_adapters_are_built_only_when_configured():
    caldav_only = _service()
    assert set(caldav_only.providers) == {ProviderName.CALDAV}
    assert isinstance(caldav_only.providers[ProviderName.CALDAV], CaldavProvider)

    with_microsoft = _service(microsoft={"client_id": "id", "client_secret": "secret"})
    assert isinstance(with_microsoft.providers[ProviderName.MICROSOFT], MicrosoftProvider)


async def test_trigger_sync_with_no_connectors():
    service = _service()

    report = await service.trigger_sync()

    assert report.message == "Synced 0 connector(s)"
    assert report.data.total_processed == 0
    await service.stop()


async def test_request_sync_wakes_the_poller(monkeypatch: pytest.MonkeyPatch):
    service = _service(sync={"cron": "0 0 1 1 *"})
    ran = asyncio.Event()

    async def fake_run() -> SyncReport:
        ran.set()
        return SyncReport(success=True, message="Synced 0 connector(s)")

    monkeypatch.setattr(service.orchestrator, "run", fake_run)

    await service.start()
    service.request_sync()
    await asyncio.wait_for(ran.wait(), timeout=2)
    await service.stop()


async def test_poller_survives_a_failing_run(monkeypatch: pytest.MonkeyPatch):
    service = _service(sync={"cron": "0 0 1 1 *"})
    calls: list[int] = []
    second = asyncio.Event()

    async def flaky_run() -> SyncReport:
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("database down")
        second.set()
        return SyncReport(success=True, message="ok")

    monkeypatch.setattr(service.orchestrator, "run", flaky_run)

    await service.start()
    service.request_sync()
    while not calls:
        await asyncio.sleep(0.01)
    service.request_sync()
    await asyncio.wait_for(second.wait(), timeout=2)
    await service.stop()


async def test_disabled_sync_starts_no_poller():
    service = _service(sync={"enabled": False})
    await service.start()
    assert service._poller_task is None
    await service.stop()


async def test_stop_waits_for_in_flight_publishes(monkeypatch: pytest.MonkeyPatch):
    service = _service()
    released = asyncio.Event()
    published: list[str] = []

    async def slow_publish(booking) -> None:
        await released.wait()
        published.append(booking.id)

    monkeypatch.setattr(service.publisher, "publish_created", slow_publish)
    service.publisher.on_booking_created(make_booking())
    assert service.publisher.pending == 1

    stopping = asyncio.create_task(service.stop())
    await asyncio.sleep(0)
    assert not stopping.done()
    released.set()
    await asyncio.wait_for(stopping, timeout=2)

    assert published == [make_booking().id]
    assert service.publisher.pending == 0
