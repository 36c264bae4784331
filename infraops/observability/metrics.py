"""Prometheus metric definitions for the sync worker.

All metrics are module-level singletons registered with the default
prometheus_client registry.  Import them wherever instrumentation is needed.
"""

from prometheus_client import Counter, Gauge, Histogram, Info

# ---------------------------------------------------------------------------
# Histogram bucket definitions
# ---------------------------------------------------------------------------

SYNC_DURATION_BUCKETS = (0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0)

# ---------------------------------------------------------------------------
# Sync metrics
# ---------------------------------------------------------------------------

SYNC_RUNS_TOTAL = Counter(
    "infraops_sync_runs_total",
    "Total number of sync runs",
    labelnames=["integration", "status"],
)

SYNC_DURATION = Histogram(
    "infraops_sync_duration_seconds",
    "Duration of a sync run in seconds",
    labelnames=["integration"],
    buckets=SYNC_DURATION_BUCKETS,
)

RECORDS_SYNCED_TOTAL = Counter(
    "infraops_records_synced_total",
    "Total number of records merged into the store",
    labelnames=["integration"],
)

SYNC_SKIPPED_TOTAL = Counter(
    "infraops_sync_skipped_total",
    "Scheduled runs skipped because the previous run of the same job was still in progress",
    labelnames=["job"],
)

# ---------------------------------------------------------------------------
# Health / info metrics
# ---------------------------------------------------------------------------

INTEGRATION_HEALTHY = Gauge(
    "infraops_integration_healthy",
    "Whether an external integration is healthy (1=healthy, 0=unhealthy)",
    labelnames=["integration"],
)

APP_INFO = Info(
    "infraops",
    "InfraOps sync worker build information",
)

# ---------------------------------------------------------------------------
# Forecast metrics
# ---------------------------------------------------------------------------

FORECAST_ROWS_TOTAL = Counter(
    "infraops_forecast_rows_total",
    "Total number of cost forecast rows written",
    labelnames=["environment"],
)

COST_ANOMALIES_TOTAL = Counter(
    "infraops_cost_anomalies_total",
    "Total number of anomalous cost days detected",
    labelnames=["environment"],
)

SLA_PERCENTAGE = Gauge(
    "infraops_weekly_sla_percentage",
    "Most recently computed weekly uptime SLA percentage",
)
