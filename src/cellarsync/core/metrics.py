"""Prometheus metrics instrumentation for calendar sync.

Metrics exported:
- cellarsync_sync_runs_total: Counter of orchestrator runs by final state
- cellarsync_connector_results_total: Counter of per-connector results
- cellarsync_reconciled_events_total: Counter of reconciliation outcomes
- cellarsync_provider_api_calls_total: Counter of provider API calls
- cellarsync_provider_api_latency_seconds: Histogram of provider API latency
- cellarsync_publish_total: Counter of outbound booking publish attempts

Provider-scoped metrics carry a ``provider`` label (caldav, microsoft, google).
"""

from __future__ import annotations

import time
from collections.abc import Iterator
from contextlib import contextmanager

from prometheus_client import Counter, Histogram

sync_runs_total = Counter(
    "cellarsync_sync_runs_total",
    "Total number of sync orchestrator runs",
    labelnames=["state"],
)

connector_results_total = Counter(
    "cellarsync_connector_results_total",
    "Per-connector sync results",
    labelnames=["provider", "status"],
)

reconciled_events_total = Counter(
    "cellarsync_reconciled_events_total",
    "External events processed by reconciliation",
    labelnames=["provider", "action"],
)

provider_api_calls_total = Counter(
    "cellarsync_provider_api_calls_total",
    "Total number of provider API calls",
    labelnames=["provider", "operation", "status"],
)

provider_api_latency_seconds = Histogram(
    "cellarsync_provider_api_latency_seconds",
    "Latency of provider API calls in seconds",
    labelnames=["provider", "operation"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 15.0, 30.0),
)

publish_total = Counter(
    "cellarsync_publish_total",
    "Outbound booking publish attempts",
    labelnames=["provider", "action", "status"],
)


def status_for_response(status_code: int) -> str:
    """Map an HTTP status code to the ``status`` label of an API call."""
    if status_code == 429:
        return "rate_limited"
    if status_code >= 500:
        return "server_error"
    if status_code >= 400:
        return "client_error"
    return "success"


class CallStatus:
    """Outcome of one tracked call; call sites report the HTTP reply into it."""

    def __init__(self) -> None:
        self.status = "success"

    def record_response(self, status_code: int) -> None:
        self.status = status_for_response(status_code)


class ProviderMetrics:
    """Metrics collector bound to one provider label."""

    def __init__(self, provider: str) -> None:
        self._provider = provider

    @contextmanager
    def track_call(self, operation: str) -> Iterator[CallStatus]:
        """Record latency and status of a provider API call.

        The status is ``error`` when the block raises, otherwise whatever the
        call site reported through ``CallStatus.record_response``.

        Example:
            with metrics.track_call("list_events") as call:
                response = await client.get(...)
                call.record_response(response.status_code)
        """
        start = time.perf_counter()
        call = CallStatus()
        try:
            yield call
        except Exception:
            call.status = "error"
            raise
        finally:
            provider_api_latency_seconds.labels(
                provider=self._provider, operation=operation
            ).observe(time.perf_counter() - start)
            provider_api_calls_total.labels(
                provider=self._provider, operation=operation, status=call.status
            ).inc()

    def record_reconciled(self, action: str, count: int = 1) -> None:
        if count > 0:
            reconciled_events_total.labels(provider=self._provider, action=action).inc(count)

    def record_connector_result(self, status: str) -> None:
        connector_results_total.labels(provider=self._provider, status=status).inc()

    def record_publish(self, action: str, status: str) -> None:
        publish_total.labels(provider=self._provider, action=action, status=status).inc()


def record_sync_run(state: str) -> None:
    sync_runs_total.labels(state=state).inc()
