"""Unit tests for metric definitions and the counters the sync path updates."""

import httpx
import pytest
import respx
from prometheus_client import REGISTRY

from infraops.observability.metrics import (
    APP_INFO,
    COST_ANOMALIES_TOTAL,
    FORECAST_ROWS_TOTAL,
    INTEGRATION_HEALTHY,
    RECORDS_SYNCED_TOTAL,
    SLA_PERCENTAGE,
    SYNC_DURATION,
    SYNC_RUNS_TOTAL,
    SYNC_SKIPPED_TOTAL,
)
from infraops.sync.orchestrator import SyncOrchestrator

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _sample(metric_name: str, labels: dict[str, str] | None = None) -> float:
    """Read current value from the default registry (0 if never observed)."""
    return REGISTRY.get_sample_value(metric_name, labels or {}) or 0.0


# ---------------------------------------------------------------------------
# Metric definition tests
# ---------------------------------------------------------------------------


class TestMetricDefinitions:
    def test_sync_runs_total_is_counter(self) -> None:
        assert SYNC_RUNS_TOTAL._type == "counter"

    def test_sync_duration_is_histogram(self) -> None:
        assert SYNC_DURATION._type == "histogram"

    def test_records_synced_total_is_counter(self) -> None:
        assert RECORDS_SYNCED_TOTAL._type == "counter"

    def test_sync_skipped_total_is_counter(self) -> None:
        assert SYNC_SKIPPED_TOTAL._type == "counter"

    def test_integration_healthy_is_gauge(self) -> None:
        assert INTEGRATION_HEALTHY._type == "gauge"

    def test_forecast_and_anomaly_counters(self) -> None:
        assert FORECAST_ROWS_TOTAL._type == "counter"
        assert COST_ANOMALIES_TOTAL._type == "counter"

    def test_sla_percentage_is_gauge(self) -> None:
        assert SLA_PERCENTAGE._type == "gauge"

    def test_app_info(self) -> None:
        assert APP_INFO._type == "info"


# ---------------------------------------------------------------------------
# Instrumentation tests
# ---------------------------------------------------------------------------


@pytest.mark.integration
class TestSyncInstrumentation:
    @respx.mock
    async def test_failed_sync_updates_metrics(self, orchestrator: SyncOrchestrator) -> None:
        respx.get("https://jira.test/rest/api/3/search").mock(return_value=httpx.Response(500, text="boom"))
        labels = {"integration": "jira", "status": "failed"}
        before = _sample("infraops_sync_runs_total", labels)

        await orchestrator.run_jira_sync()

        assert _sample("infraops_sync_runs_total", labels) == before + 1
        assert _sample("infraops_integration_healthy", {"integration": "jira"}) == 0.0

    @respx.mock
    async def test_successful_sync_counts_records(self, orchestrator: SyncOrchestrator) -> None:
        respx.get("https://jira.test/rest/api/3/search").mock(
            return_value=httpx.Response(200, json={"issues": [{"key": "INFRA-1", "fields": {"summary": "x"}}]})
        )
        before = _sample("infraops_records_synced_total", {"integration": "jira"})

        await orchestrator.run_jira_sync()

        # the same issue comes back for all three searches
        assert _sample("infraops_records_synced_total", {"integration": "jira"}) == before + 3
        assert _sample("infraops_integration_healthy", {"integration": "jira"}) == 1.0
