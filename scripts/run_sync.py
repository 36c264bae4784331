"""Run one full sync pass (both sources, forecasts, SLA) and print the outcome.

Usage:
    python -m scripts.run_sync
"""

import asyncio
import logging
import sys

from infraops.config import get_settings
from infraops.worker import build_orchestrator, open_store_or_exit

logging.basicConfig(
    level=logging.WARNING,
    format="%(levelname)s: %(message)s",
)


async def main() -> None:
    """Run every job once, in the same order as the warm-up sync."""
    settings = get_settings()
    store = open_store_or_exit(settings)
    orchestrator = build_orchestrator(settings, store)
    failed = False
    try:
        for run in (orchestrator.run_jira_sync, orchestrator.run_cost_sync):
            entry = await run()
            if entry is None or entry["status"] != "success":
                failed = True
            if entry is not None:
                print(f"{entry['integration_name']}: {entry['status']} ({entry['records_synced']} records)")
        rows = await orchestrator.run_forecast_generation()
        print(f"forecasts: {rows} rows")
        metric = await orchestrator.run_weekly_sla()
        print(f"weekly SLA: {metric['sla_percentage']:.2f}%" if metric else "weekly SLA: skipped")
    finally:
        store.close()
    if failed:
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
