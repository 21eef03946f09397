"""Sync orchestrator: one pass over every connector.

Connectors are processed sequentially. Each one is dispatched on its
provider and runs discover -> list window -> normalize -> reconcile; any
failure is caught per connector and becomes an ``error`` entry in the
report. Only failing to enumerate connectors fails the whole run.

Runs are not mutually excluded. Overlapping runs are harmless because
reconciliation is keyed and diff-based.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from datetime import UTC, datetime, tzinfo

from cellarsync.core.logging import sync_context
from cellarsync.core.metrics import ProviderMetrics, record_sync_run
from cellarsync.models import (
    Connector,
    ConnectorSyncResult,
    NormalizedExternalEvent,
    ProviderName,
    ReconcileCounts,
    RunState,
    SyncReport,
    SyncReportData,
    SyncStatus,
)
from cellarsync.providers.base import CalendarProvider, sanitize_error
from cellarsync.reconcile import ReconciliationEngine
from cellarsync.stores import ConnectorStore

logger = logging.getLogger(__name__)


def month_window(now: datetime, months: int, tz: tzinfo) -> tuple[datetime, datetime]:
    """Return ``[first of this month, first of the month ``months`` later)`` in ``tz``."""
    local = now.astimezone(tz)
    start = datetime(local.year, local.month, 1, tzinfo=tz)
    month_index = local.month - 1 + months
    end = datetime(local.year + month_index // 12, month_index % 12 + 1, 1, tzinfo=tz)
    return start, end


class SyncOrchestrator:
    """Runs the inbound sync for all connectors and builds the report."""

    def __init__(
        self,
        connector_store: ConnectorStore,
        engine: ReconciliationEngine,
        providers: Mapping[ProviderName, CalendarProvider],
        *,
        display_tz: tzinfo,
        window_months: Mapping[ProviderName, int],
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._connector_store = connector_store
        self._engine = engine
        self._providers = dict(providers)
        self._display_tz = display_tz
        self._window_months = dict(window_months)
        self._clock = clock or (lambda: datetime.now(UTC))
        self._state = RunState.IDLE

    @property
    def state(self) -> RunState:
        return self._state

    async def run(self) -> SyncReport:
        self._state = RunState.RUNNING
        try:
            connectors = await self._connector_store.list_all()
        except Exception:
            self._state = RunState.IDLE
            logger.exception("Failed to enumerate connectors; sync run aborted")
            raise

        logger.info("Sync run started for %d connector(s)", len(connectors))
        data = SyncReportData()
        for connector in connectors:
            result = await self._sync_connector(connector)
            data.sync_results.append(result)
            if result.status in (SyncStatus.SUCCESS, SyncStatus.ERROR):
                data.total_processed += 1

        failures = sum(1 for r in data.sync_results if r.status is SyncStatus.ERROR)
        self._state = RunState.PARTIALLY_FAILED if failures else RunState.COMPLETED
        record_sync_run(self._state.value)
        message = f"Synced {data.total_processed} connector(s)"
        if failures:
            message += f", {failures} failed"
        logger.info("Sync run finished: %s (%s)", message, self._state.value)
        return SyncReport(success=True, message=message, data=data)

    async def _sync_connector(self, connector: Connector) -> ConnectorSyncResult:
        match connector.provider:
            case None:
                logger.warning(
                    "Connector for user %s has unknown provider %r",
                    connector.user_id,
                    connector.name,
                )
                return ConnectorSyncResult(
                    connector_type=connector.name,
                    user_id=connector.user_id,
                    status=SyncStatus.UNKNOWN,
                    message=f"Unknown connector type: {connector.name}",
                )
            case ProviderName.NONE:
                return ConnectorSyncResult(
                    connector_type=connector.name,
                    user_id=connector.user_id,
                    status=SyncStatus.SKIPPED,
                    message="No calendar connected",
                )
            case ProviderName.CALDAV | ProviderName.MICROSOFT | ProviderName.GOOGLE as provider:
                return await self._sync_provider(connector, provider)

    async def _sync_provider(
        self, connector: Connector, provider: ProviderName
    ) -> ConnectorSyncResult:
        metrics = ProviderMetrics(provider.value)
        if not connector.credentials.is_usable:
            metrics.record_connector_result(SyncStatus.SKIPPED.value)
            return ConnectorSyncResult(
                connector_type=provider.value,
                user_id=connector.user_id,
                status=SyncStatus.SKIPPED,
                message="Connector inactive or credentials invalid",
            )

        adapter = self._providers.get(provider)
        if adapter is None:
            metrics.record_connector_result(SyncStatus.NOT_IMPLEMENTED.value)
            return ConnectorSyncResult(
                connector_type=provider.value,
                user_id=connector.user_id,
                status=SyncStatus.NOT_IMPLEMENTED,
                message=f"{provider.value} sync is not configured",
            )

        with sync_context(provider=provider.value, user_id=connector.user_id):
            try:
                counts = await self._run_pipeline(connector, provider, adapter)
            except Exception as exc:
                logger.warning("Connector sync failed: %s", sanitize_error(exc), exc_info=True)
                metrics.record_connector_result(SyncStatus.ERROR.value)
                return ConnectorSyncResult(
                    connector_type=provider.value,
                    user_id=connector.user_id,
                    status=SyncStatus.ERROR,
                    message=sanitize_error(exc),
                )

        metrics.record_connector_result(SyncStatus.SUCCESS.value)
        return ConnectorSyncResult(
            connector_type=provider.value,
            user_id=connector.user_id,
            status=SyncStatus.SUCCESS,
            message=f"Synced {counts.written} event(s)",
            events_synced=counts.written,
            counts=counts.as_dict(),
        )

    async def _run_pipeline(
        self, connector: Connector, provider: ProviderName, adapter: CalendarProvider
    ) -> ReconcileCounts:
        window_start, window_end = month_window(
            self._clock(), self._window_months.get(provider, 1), self._display_tz
        )
        handle = await adapter.discover_calendar(connector)
        raw_events = await adapter.list_events(
            handle, window_start=window_start, window_end=window_end
        )

        normalized: list[NormalizedExternalEvent] = []
        dropped = 0
        for raw_event in raw_events:
            try:
                normalized.extend(adapter.normalize(raw_event))
            except ValueError:
                dropped += 1
                logger.warning("Dropping malformed %s event", provider.value, exc_info=True)

        counts = await self._engine.reconcile(connector.user_id, provider, normalized)
        counts.failed += dropped
        return counts
