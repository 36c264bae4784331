"""APScheduler integration for the recurring sync jobs.

Uses AsyncIOScheduler with CronTrigger for the recurring jobs and a one-shot
DateTrigger for the warm-up sync shortly after start.  Empty cron expressions
fall back to the defaults from ``infraops.config``.
"""

import contextlib
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta

from apscheduler.schedulers.asyncio import AsyncIOScheduler  # type: ignore[import-untyped]
from apscheduler.triggers.cron import CronTrigger  # type: ignore[import-untyped]
from apscheduler.triggers.date import DateTrigger  # type: ignore[import-untyped]

from infraops.config import DEFAULT_FORECAST_CRON, DEFAULT_SLA_CRON, DEFAULT_SYNC_INTERVAL_CRON
from infraops.sync.orchestrator import SyncOrchestrator

logger = logging.getLogger(__name__)

JIRA_SYNC_JOB = "jira_sync"
COST_SYNC_JOB = "cost_sync"
FORECAST_JOB = "forecast_generation"
SLA_JOB = "weekly_sla"
INITIAL_SYNC_JOB = "initial_sync"


class SyncScheduler:
    """Owns the recurring jobs of one orchestrator; each job can be paused or run by hand."""

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        *,
        sync_interval_cron: str = DEFAULT_SYNC_INTERVAL_CRON,
        forecast_cron: str = DEFAULT_FORECAST_CRON,
        sla_cron: str = DEFAULT_SLA_CRON,
        initial_sync_delay_seconds: float = 5,
    ) -> None:
        self.orchestrator = orchestrator
        self.sync_interval_cron = sync_interval_cron or DEFAULT_SYNC_INTERVAL_CRON
        self.forecast_cron = forecast_cron or DEFAULT_FORECAST_CRON
        self.sla_cron = sla_cron or DEFAULT_SLA_CRON
        self.initial_sync_delay_seconds = initial_sync_delay_seconds
        self._scheduler: AsyncIOScheduler | None = None

    def _jobs(self) -> dict[str, tuple[str, Callable[[], Awaitable[object]]]]:
        o = self.orchestrator
        return {
            JIRA_SYNC_JOB: ("Jira sync", o.run_jira_sync),
            COST_SYNC_JOB: ("AWS cost sync", o.run_cost_sync),
            FORECAST_JOB: ("Cost forecast generation", o.run_forecast_generation),
            SLA_JOB: ("Weekly SLA aggregation", o.run_weekly_sla),
            INITIAL_SYNC_JOB: ("Initial sync", o.run_initial_sync),
        }

    @property
    def running(self) -> bool:
        return self._scheduler is not None

    def start(self) -> None:
        """Register all jobs and start the scheduler on the running event loop."""
        if self._scheduler is not None:
            return

        jobs = self._jobs()
        triggers = {
            JIRA_SYNC_JOB: CronTrigger.from_crontab(self.sync_interval_cron),
            COST_SYNC_JOB: CronTrigger.from_crontab(self.sync_interval_cron),
            FORECAST_JOB: CronTrigger.from_crontab(self.forecast_cron),
            SLA_JOB: CronTrigger.from_crontab(self.sla_cron),
            INITIAL_SYNC_JOB: DateTrigger(
                run_date=datetime.now(UTC) + timedelta(seconds=self.initial_sync_delay_seconds)
            ),
        }

        scheduler = AsyncIOScheduler()
        for job_id, trigger in triggers.items():
            name, func = jobs[job_id]
            scheduler.add_job(
                func,
                trigger=trigger,
                id=job_id,
                name=name,
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
        scheduler.start()
        self._scheduler = scheduler
        logger.info(
            "Sync scheduler started (sources: %s, forecasts: %s, SLA: %s, warm-up in %ss)",
            self.sync_interval_cron,
            self.forecast_cron,
            self.sla_cron,
            self.initial_sync_delay_seconds,
        )

    def stop(self) -> None:
        """Gracefully shut down the scheduler if it is running."""
        if self._scheduler is not None:
            with contextlib.suppress(Exception):
                self._scheduler.shutdown(wait=False)
            logger.info("Sync scheduler stopped")
            self._scheduler = None

    def job_ids(self) -> list[str]:
        if self._scheduler is None:
            return []
        return [job.id for job in self._scheduler.get_jobs()]

    def pause_job(self, job_id: str) -> None:
        if self._scheduler is None:
            raise RuntimeError("Scheduler is not running")
        self._scheduler.pause_job(job_id)

    def resume_job(self, job_id: str) -> None:
        if self._scheduler is None:
            raise RuntimeError("Scheduler is not running")
        self._scheduler.resume_job(job_id)

    async def run_job(self, job_id: str) -> object:
        """Run one job immediately and wait for it (manual tick)."""
        jobs = self._jobs()
        if job_id not in jobs:
            raise ValueError(f"Unknown job: {job_id}")
        _, func = jobs[job_id]
        logger.info("Running job %s on demand", job_id)
        return await func()
