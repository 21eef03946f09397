"""Tests for sync-context log tagging and provider metrics."""

from __future__ import annotations

import pytest
from prometheus_client import REGISTRY

from cellarsync.core.logging import add_sync_context, sync_context
from cellarsync.core.metrics import ProviderMetrics, status_for_response

pytestmark = pytest.mark.unit


def _sample(name: str, labels: dict[str, str]) -> float:
    return REGISTRY.get_sample_value(name, labels) or 0.0


class TestSyncContext:
    def test_context_is_scoped_to_block(self):
        with sync_context(provider="caldav", user_id="user-1"):
            inside = add_sync_context(None, "info", {"event": "x"})
        outside = add_sync_context(None, "info", {"event": "x"})

        assert inside == {"event": "x", "provider": "caldav", "user_id": "user-1"}
        assert outside == {"event": "x"}

    def test_processor_injects_connector_identity(self):
        with sync_context(provider="google", user_id="user-9"):
            event = add_sync_context(None, "info", {"event": "listing"})
        assert event == {"event": "listing", "provider": "google", "user_id": "user-9"}

    def test_processor_keeps_explicit_values(self):
        with sync_context(provider="google", user_id="user-9"):
            event = add_sync_context(None, "info", {"event": "x", "user_id": "override"})
        assert event["user_id"] == "override"

    def test_processor_without_context(self):
        assert add_sync_context(None, "info", {"event": "x"}) == {"event": "x"}


class TestProviderMetrics:
    def test_track_call_counts_success(self):
        labels = {"provider": "metrics-test", "operation": "list_events", "status": "success"}
        before = _sample("cellarsync_provider_api_calls_total", labels)

        with ProviderMetrics("metrics-test").track_call("list_events"):
            pass

        assert _sample("cellarsync_provider_api_calls_total", labels) == before + 1

    def test_track_call_counts_error_and_reraises(self):
        labels = {"provider": "metrics-test", "operation": "delete_event", "status": "error"}
        before = _sample("cellarsync_provider_api_calls_total", labels)

        with pytest.raises(RuntimeError):
            with ProviderMetrics("metrics-test").track_call("delete_event"):
                raise RuntimeError("boom")

        assert _sample("cellarsync_provider_api_calls_total", labels) == before + 1

    def test_track_call_counts_reported_http_failure(self):
        labels = {"provider": "metrics-test", "operation": "create_event", "status": "server_error"}
        success = {**labels, "status": "success"}
        before = _sample("cellarsync_provider_api_calls_total", labels)
        before_success = _sample("cellarsync_provider_api_calls_total", success)

        with ProviderMetrics("metrics-test").track_call("create_event") as call:
            call.record_response(503)

        assert _sample("cellarsync_provider_api_calls_total", labels) == before + 1
        assert _sample("cellarsync_provider_api_calls_total", success) == before_success

    @pytest.mark.parametrize(
        ("status_code", "status"),
        [
            (200, "success"),
            (207, "success"),
            (404, "client_error"),
            (429, "rate_limited"),
            (502, "server_error"),
        ],
    )
    def test_status_for_response(self, status_code: int, status: str):
        assert status_for_response(status_code) == status

    def test_zero_reconciled_count_is_not_recorded(self):
        labels = {"provider": "metrics-zero", "action": "inserted"}
        ProviderMetrics("metrics-zero").record_reconciled("inserted", 0)
        assert _sample("cellarsync_reconciled_events_total", labels) == 0.0
