"""Sync orchestration: sync log bracketing and integration health.

Every source sync writes a ``started`` sync log entry before any external
call and always completes it (``success`` or ``failed``) afterwards, then
overwrites the integration's status row.  Exceptions stop at this boundary:
a failing source never affects another source's log entry or status, and
never reaches the scheduler.

Each public job holds its own asyncio.Lock.  A firing that finds the previous
run of the same job still in progress is skipped.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta

from infraops.forecast.engine import ForecastEngine
from infraops.integrations import cost_explorer, jira
from infraops.integrations.cost_explorer import CostExplorerClient
from infraops.integrations.jira import JiraClient
from infraops.observability.metrics import (
    INTEGRATION_HEALTHY,
    RECORDS_SYNCED_TOTAL,
    SLA_PERCENTAGE,
    SYNC_DURATION,
    SYNC_RUNS_TOTAL,
    SYNC_SKIPPED_TOTAL,
)
from infraops.store.db import Store
from infraops.store.models import IntegrationHealth, SLAMetricRecord, SyncLogRecord, SyncStatus

logger = logging.getLogger(__name__)

COST_LOOKBACK_DAYS = 7
SLA_WINDOW_DAYS = 7
DEFAULT_SYNC_TIMEOUT_SECONDS = 600.0


class SyncOrchestrator:
    """Runs source syncs, forecast generation and SLA aggregation against one store."""

    def __init__(
        self,
        store: Store,
        jira_client: JiraClient,
        cost_client: CostExplorerClient,
        forecast_engine: ForecastEngine,
        *,
        forecast_days: int = 30,
        sync_timeout: float = DEFAULT_SYNC_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.jira = jira_client
        self.cost = cost_client
        self.forecast = forecast_engine
        self.forecast_days = forecast_days
        self.sync_timeout = sync_timeout
        self._clock = clock or (lambda: datetime.now(UTC))
        self._locks: dict[str, asyncio.Lock] = {}

    def _now(self) -> str:
        return self._clock().isoformat()

    def _lock(self, job: str) -> asyncio.Lock:
        if job not in self._locks:
            self._locks[job] = asyncio.Lock()
        return self._locks[job]

    # -----------------------------------------------------------------------
    # Source syncs
    # -----------------------------------------------------------------------

    async def _run_sync(
        self,
        integration: str,
        sync_type: str,
        work: Callable[[], Awaitable[int]],
    ) -> SyncLogRecord | None:
        """Bracket one sync with its log entry and update integration health.

        Returns the completed log entry, or None if the run was skipped or the
        store could not record it.
        """
        lock = self._lock(integration)
        if lock.locked():
            logger.warning("%s sync still running; skipping this run", integration)
            SYNC_SKIPPED_TOTAL.labels(job=integration).inc()
            return None

        async with lock:
            try:
                sync_id = self.store.start_sync_log(integration, sync_type, self._now())
            except Exception:
                logger.exception("Could not write sync log for %s; sync not started", integration)
                return None

            start = time.monotonic()
            records = 0
            error: str | None = None
            cancelled = False
            try:
                async with asyncio.timeout(self.sync_timeout):
                    records = await work()
            except TimeoutError:
                error = f"{integration}: sync exceeded {self.sync_timeout:g}s deadline"
                logger.error("%s sync timed out", integration)
            except asyncio.CancelledError:
                error = "sync cancelled"
                cancelled = True
            except Exception as e:
                error = str(e) or type(e).__name__
                logger.exception("%s sync failed", integration)
            duration = time.monotonic() - start
            SYNC_DURATION.labels(integration=integration).observe(duration)

            status = SyncStatus.SUCCESS if error is None else SyncStatus.FAILED
            health = IntegrationHealth.ACTIVE if error is None else IntegrationHealth.ERROR
            SYNC_RUNS_TOTAL.labels(integration=integration, status=status.value).inc()
            INTEGRATION_HEALTHY.labels(integration=integration).set(1 if error is None else 0)
            if error is None:
                RECORDS_SYNCED_TOTAL.labels(integration=integration).inc(records)
                logger.info("%s sync completed: %d records synced in %.1fs", integration, records, duration)

            completed_at = self._now()
            try:
                self.store.complete_sync_log(
                    sync_id,
                    status=status,
                    records_synced=records if error is None else 0,
                    completed_at=completed_at,
                    error_message=error,
                )
                self.store.set_integration_status(integration, health, last_sync=completed_at, last_error=error)
                record = self.store.get_sync_log(sync_id)
            except Exception:
                logger.exception("Could not record outcome of %s sync %d", integration, sync_id)
                record = None
            if cancelled:
                raise asyncio.CancelledError
            return record

    async def _jira_work(self) -> int:
        incidents = await self.jira.sync_incidents()
        tasks = await self.jira.sync_tasks()
        uptime = await self.jira.sync_uptime_requests()
        return incidents + tasks + uptime

    async def _cost_work(self) -> int:
        today = self._clock().date()
        start = today - timedelta(days=COST_LOOKBACK_DAYS)
        count = await self.cost.sync_costs(start.isoformat(), today.isoformat())
        self.cost.calculate_monthly_budgets(today.replace(day=1))
        return count

    async def run_jira_sync(self) -> SyncLogRecord | None:
        return await self._run_sync(jira.INTEGRATION_NAME, "full_sync", self._jira_work)

    async def run_cost_sync(self) -> SyncLogRecord | None:
        return await self._run_sync(cost_explorer.INTEGRATION_NAME, "cost_sync", self._cost_work)

    # -----------------------------------------------------------------------
    # Derived data
    # -----------------------------------------------------------------------

    async def run_forecast_generation(self) -> int:
        """Forecast every environment seen in the trailing window. Returns rows written."""
        lock = self._lock("forecast_generation")
        if lock.locked():
            logger.warning("Forecast generation still running; skipping this run")
            SYNC_SKIPPED_TOTAL.labels(job="forecast_generation").inc()
            return 0

        async with lock:
            logger.info("Starting forecast generation...")
            try:
                environments = self.forecast.environments()
            except Exception:
                logger.exception("Forecast generation failed")
                return 0

            written = 0
            for environment in environments:
                try:
                    written += self.forecast.generate_forecasts(environment, self.forecast_days)
                except Exception:
                    logger.exception("Forecast generation failed for environment %s", environment)
            logger.info("Forecast generation completed (%d rows)", written)
            return written

    async def run_weekly_sla(self) -> SLAMetricRecord | None:
        """Aggregate uptime windows that started in the last 7 days.

        A week with zero requested hours writes nothing.
        """
        lock = self._lock("weekly_sla")
        if lock.locked():
            logger.warning("Weekly SLA calculation still running; skipping this run")
            SYNC_SKIPPED_TOTAL.labels(job="weekly_sla").inc()
            return None

        async with lock:
            logger.info("Calculating weekly SLA...")
            now = self._clock()
            week_start = (now - timedelta(days=SLA_WINDOW_DAYS)).isoformat()
            week_end = now.isoformat()
            try:
                requested, delivered = self.store.sum_uptime_hours(week_start, week_end)
                if requested <= 0:
                    logger.info("No requested uptime hours in the last week; SLA metric skipped")
                    return None

                metric = SLAMetricRecord(
                    week_start=week_start,
                    week_end=week_end,
                    total_requested_hours=requested,
                    total_delivered_hours=delivered,
                    sla_percentage=delivered / requested * 100,
                )
                self.store.upsert_sla_metric(metric)
            except Exception:
                logger.exception("Weekly SLA calculation failed")
                return None

            SLA_PERCENTAGE.set(metric["sla_percentage"])
            logger.info("Weekly SLA calculated: %.2f%%", metric["sla_percentage"])
            return metric

    async def run_initial_sync(self) -> None:
        """Warm-up run after process start: both sources, then forecasts."""
        logger.info("Running initial sync...")
        await self.run_jira_sync()
        await self.run_cost_sync()
        await self.run_forecast_generation()

    # -----------------------------------------------------------------------
    # Connectivity checks
    # -----------------------------------------------------------------------

    async def test_integration(self, integration: str) -> bool:
        """Probe one integration and overwrite its status with the result."""
        checks: dict[str, Callable[[], Awaitable[bool]]] = {
            jira.INTEGRATION_NAME: self.jira.test_connection,
            cost_explorer.INTEGRATION_NAME: self.cost.test_connection,
        }
        if integration not in checks:
            raise ValueError(f"Unknown integration: {integration}")

        connected = await checks[integration]()
        self.store.set_integration_status(
            integration,
            IntegrationHealth.ACTIVE if connected else IntegrationHealth.ERROR,
            last_sync=self._now(),
            last_error=None if connected else "Connection test failed",
        )
        INTEGRATION_HEALTHY.labels(integration=integration).set(1 if connected else 0)
        return connected
