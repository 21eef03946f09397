"""SyncService: wires config, adapters, stores, and the recurring poller.

Typical daemon usage::

    service = await SyncService.from_config(load_config(config_dir))
    await service.start()
    ...
    await service.stop()
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime, tzinfo
from zoneinfo import ZoneInfo

import httpx
from croniter import croniter

from cellarsync.config import SyncServiceConfig
from cellarsync.connectors import ConnectorService
from cellarsync.db import Database
from cellarsync.models import Booking, ProviderName, SyncReport
from cellarsync.orchestrator import SyncOrchestrator
from cellarsync.providers.base import CalendarProvider
from cellarsync.providers.cache import CalendarHandleCache
from cellarsync.providers.caldav import CaldavProvider
from cellarsync.providers.google import GoogleProvider
from cellarsync.providers.microsoft import MicrosoftProvider
from cellarsync.publisher import BookingPublisher, ServiceCatalog
from cellarsync.reconcile import ReconciliationEngine
from cellarsync.stores import (
    BookingStore,
    ConnectorStore,
    EventStore,
    PostgresBookingStore,
    PostgresConnectorStore,
    PostgresEventStore,
    ensure_schema,
)
from cellarsync.vault import CredentialVault

logger = logging.getLogger(__name__)


def next_run_at(cron: str, tz: tzinfo, *, now: datetime | None = None) -> datetime:
    """Next fire time of ``cron`` evaluated in the business timezone."""
    anchor = (now or datetime.now(UTC)).astimezone(tz)
    return croniter(cron, anchor).get_next(datetime)


def build_providers(
    config: SyncServiceConfig,
    *,
    vault: CredentialVault,
    cache: CalendarHandleCache,
    connector_store: ConnectorStore,
    http_client: httpx.AsyncClient,
) -> dict[ProviderName, CalendarProvider]:
    """One adapter per configured provider; OAuth providers need client credentials."""
    display_tz = ZoneInfo(config.timezone)
    providers: dict[ProviderName, CalendarProvider] = {
        ProviderName.CALDAV: CaldavProvider(
            config.caldav, vault, cache, display_tz=display_tz, http_client=http_client
        )
    }
    if config.microsoft is not None:
        providers[ProviderName.MICROSOFT] = MicrosoftProvider(
            config.microsoft,
            connector_store,
            display_timezone=config.timezone,
            http_client=http_client,
        )
    if config.google is not None:
        providers[ProviderName.GOOGLE] = GoogleProvider(
            config.google,
            connector_store,
            display_timezone=config.timezone,
            http_client=http_client,
        )
    return providers


class SyncService:
    """Long-lived owner of every sync component."""

    def __init__(
        self,
        config: SyncServiceConfig,
        *,
        connector_store: ConnectorStore,
        event_store: EventStore,
        booking_store: BookingStore,
        http_client: httpx.AsyncClient | None = None,
        catalog: ServiceCatalog | None = None,
        database: Database | None = None,
    ) -> None:
        self.config = config
        self._database = database
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=config.sync.http_timeout_s)
        self.vault = CredentialVault(config.encryption_key)
        self.cache = CalendarHandleCache(config.caldav.discovery_cache_ttl_s)
        self._display_tz = ZoneInfo(config.timezone)

        self.providers = build_providers(
            config,
            vault=self.vault,
            cache=self.cache,
            connector_store=connector_store,
            http_client=self._http_client,
        )
        self.engine = ReconciliationEngine(
            event_store,
            persist_offset_hours={ProviderName.CALDAV: config.caldav.persist_offset_hours},
        )
        self.orchestrator = SyncOrchestrator(
            connector_store,
            self.engine,
            self.providers,
            display_tz=self._display_tz,
            window_months={
                ProviderName.CALDAV: config.sync.caldav_window_months,
                ProviderName.MICROSOFT: config.sync.oauth_window_months,
                ProviderName.GOOGLE: config.sync.oauth_window_months,
            },
        )
        self.publisher = BookingPublisher(
            connector_store,
            booking_store,
            self.providers,
            timezone=config.timezone,
            caldav_write_offset_hours=config.caldav.write_offset_hours,
            catalog=catalog,
        )
        self.connectors = ConnectorService(connector_store, self.vault, self.providers)

        self._force_sync_event = asyncio.Event()
        self._poller_task: asyncio.Task[None] | None = None

    @classmethod
    async def from_config(
        cls,
        config: SyncServiceConfig,
        *,
        catalog: ServiceCatalog | None = None,
    ) -> SyncService:
        """Connect to PostgreSQL, ensure the schema, and build the service."""
        database = Database.from_config(config.db)
        pool = await database.connect()
        await ensure_schema(pool)
        return cls(
            config,
            connector_store=PostgresConnectorStore(pool),
            event_store=PostgresEventStore(pool),
            booking_store=PostgresBookingStore(pool),
            catalog=catalog,
            database=database,
        )

    # -- inbound sync ------------------------------------------------------

    async def trigger_sync(self) -> SyncReport:
        """Run one sync pass now and return its report."""
        return await self.orchestrator.run()

    def request_sync(self) -> None:
        """Wake the poller so it runs a pass without waiting for the next cron tick."""
        self._force_sync_event.set()

    async def _run_poller(self) -> None:
        cron = self.config.sync.cron
        logger.debug("Sync poller loop started (cron=%s, tz=%s)", cron, self.config.timezone)
        while True:
            next_run = next_run_at(cron, self._display_tz)
            delay = max((next_run - datetime.now(UTC)).total_seconds(), 0.0)
            try:
                await asyncio.wait_for(self._force_sync_event.wait(), timeout=delay)
                logger.info("On-demand sync requested")
            except TimeoutError:
                pass
            self._force_sync_event.clear()

            try:
                report = await self.orchestrator.run()
                logger.info("Scheduled sync finished: %s", report.message)
            except Exception as exc:
                logger.error("Sync poller error: %s", exc, exc_info=True)

    # -- outbound publishing ----------------------------------------------

    def on_booking_created(self, booking: Booking) -> asyncio.Task[None]:
        return self.publisher.on_booking_created(booking)

    def on_booking_updated(self, old: Booking, new: Booking) -> asyncio.Task[None]:
        return self.publisher.on_booking_updated(old, new)

    def on_booking_deleted(self, booking: Booking) -> asyncio.Task[None]:
        return self.publisher.on_booking_deleted(booking)

    # -- lifecycle ---------------------------------------------------------

    async def start(self) -> None:
        if not self.config.sync.enabled:
            logger.info("Recurring sync disabled by configuration")
            return
        if self._poller_task is None or self._poller_task.done():
            self._poller_task = asyncio.create_task(self._run_poller(), name="cellarsync-poller")
            logger.info(
                "Sync poller started (cron=%s, timezone=%s)",
                self.config.sync.cron,
                self.config.timezone,
            )

    async def stop(self) -> None:
        if self._poller_task is not None and not self._poller_task.done():
            self._poller_task.cancel()
            try:
                await self._poller_task
            except asyncio.CancelledError:
                pass
        self._poller_task = None

        if self.publisher.pending:
            logger.info("Waiting for %d in-flight publish task(s)", self.publisher.pending)
        await self.publisher.drain()
        for provider in self.providers.values():
            await provider.shutdown()
        if self._owns_http_client:
            await self._http_client.aclose()
        if self._database is not None:
            await self._database.close()
        logger.info("Sync service stopped")
