"""Long-running sync worker.

Usage:
    python -m infraops.worker
    # or via the console script:
    infraops-worker

Opens the store (exiting with status 1 if it is unusable; no sync could ever
succeed without it), wires the connectors, forecast engine and orchestrator
together, and runs the scheduler until SIGINT/SIGTERM.
"""

import asyncio
import logging
import signal
import sys

from prometheus_client import start_http_server

from infraops.config import Settings, get_settings
from infraops.errors import StoreError
from infraops.forecast.engine import ForecastEngine
from infraops.integrations.cost_explorer import CostExplorerClient
from infraops.integrations.jira import JiraClient
from infraops.observability.metrics import APP_INFO
from infraops.store.db import Store
from infraops.sync.orchestrator import SyncOrchestrator
from infraops.sync.scheduler import SyncScheduler

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


def build_orchestrator(settings: Settings, store: Store) -> SyncOrchestrator:
    """Construct the connectors and forecast engine around one store."""
    jira_client = JiraClient(
        store,
        base_url=settings.jira_base_url,
        email=settings.jira_email,
        api_token=settings.jira_api_token,
        project_key=settings.jira_project_key,
        timeout=settings.http_timeout_seconds,
    )
    cost_client = CostExplorerClient(
        store,
        access_key_id=settings.aws_access_key_id,
        secret_access_key=settings.aws_secret_access_key,
        region=settings.aws_region,
        timeout=settings.http_timeout_seconds,
    )
    return SyncOrchestrator(
        store,
        jira_client,
        cost_client,
        ForecastEngine(store),
        forecast_days=settings.forecast_days,
        sync_timeout=settings.sync_timeout_seconds,
    )


def build_scheduler(settings: Settings, orchestrator: SyncOrchestrator) -> SyncScheduler:
    return SyncScheduler(
        orchestrator,
        sync_interval_cron=settings.sync_interval_cron,
        forecast_cron=settings.forecast_cron,
        sla_cron=settings.sla_cron,
        initial_sync_delay_seconds=settings.initial_sync_delay_seconds,
    )


def open_store_or_exit(settings: Settings) -> Store:
    try:
        return Store.open(settings.database_path)
    except StoreError:
        logger.exception("Cannot open store at %s", settings.database_path)
        sys.exit(1)


async def run_worker(scheduler: SyncScheduler, stop_event: asyncio.Event | None = None) -> None:
    """Run the scheduler until ``stop_event`` is set (or a termination signal arrives)."""
    stop_event = stop_event or asyncio.Event()
    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            # add_signal_handler is unavailable on some platforms / non-main threads
            logger.debug("Signal handler for %s not installed", sig)

    scheduler.start()
    try:
        await stop_event.wait()
    finally:
        scheduler.stop()
        for sig in installed:
            loop.remove_signal_handler(sig)
        logger.info("Shutting down sync worker")


def main() -> None:
    settings = get_settings()
    configure_logging(settings.log_level)
    APP_INFO.info({"version": "0.1.0"})

    store = open_store_or_exit(settings)
    if settings.metrics_port:
        start_http_server(settings.metrics_port)
        logger.info("Metrics exposed on :%d/metrics", settings.metrics_port)

    scheduler = build_scheduler(settings, build_orchestrator(settings, store))
    try:
        asyncio.run(run_worker(scheduler))
    finally:
        store.close()


if __name__ == "__main__":
    main()
