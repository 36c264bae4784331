"""Operator CLI for one-off syncs, forecasts and connectivity checks.

Usage:
    python -m infraops.cli sync jira
    python -m infraops.cli sync all
    python -m infraops.cli forecast --environment production --days 14
    python -m infraops.cli anomalies production
    python -m infraops.cli test aws_cost_explorer
    python -m infraops.cli status
"""

import argparse
import asyncio
import sys

from infraops.config import get_settings
from infraops.integrations import cost_explorer, jira
from infraops.store.db import Store
from infraops.sync.orchestrator import SyncOrchestrator
from infraops.worker import build_orchestrator, configure_logging, open_store_or_exit


async def _sync(orchestrator: SyncOrchestrator, source: str) -> int:
    runners = {"jira": [orchestrator.run_jira_sync], "aws": [orchestrator.run_cost_sync]}
    runners["all"] = runners["jira"] + runners["aws"]
    failed = False
    for run in runners[source]:
        entry = await run()
        if entry is None:
            print("Sync did not run (see logs)", file=sys.stderr)
            failed = True
            continue
        print(f"{entry['integration_name']}: {entry['status']} ({entry['records_synced']} records)")
        if entry["error_message"]:
            print(f"  error: {entry['error_message']}")
            failed = True
    return 1 if failed else 0


def _forecast(orchestrator: SyncOrchestrator, environment: str | None, days: int) -> int:
    engine = orchestrator.forecast
    environments = [environment] if environment else engine.environments()
    if not environments:
        print("No environments with cost data in the last 30 days.")
        return 0
    for env in environments:
        written = engine.generate_forecasts(env, days)
        print(f"{env}: {written} forecast rows written" if written else f"{env}: not enough history, skipped")
    return 0


def _anomalies(orchestrator: SyncOrchestrator, environment: str) -> int:
    anomalies = orchestrator.forecast.detect_anomalies(environment)
    if not anomalies:
        print(f"No cost anomalies for {environment}.")
        return 0
    print(f"Found {len(anomalies)} anomalous day(s) for {environment}:")
    for a in anomalies:
        print(f"  {a.date}  ${a.cost:,.2f}  (threshold ${a.threshold:,.2f})")
    return 0


def _status(store: Store) -> int:
    for row in store.list_integration_statuses():
        line = f"{row['integration_name']:<20} {row['status']:<8} last sync: {row['last_sync'] or 'never'}"
        if row["last_error"]:
            line += f"  ({row['last_error']})"
        print(line)
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="infraops", description="InfraOps sync tooling")
    sub = parser.add_subparsers(dest="command", required=True)

    sync = sub.add_parser("sync", help="Run a source sync now")
    sync.add_argument("source", choices=["jira", "aws", "all"])

    forecast = sub.add_parser("forecast", help="Generate cost forecasts")
    forecast.add_argument("--environment", "-e", default=None, help="Single environment (default: all)")
    forecast.add_argument("--days", type=int, default=None, help="Days to forecast (default: FORECAST_DAYS)")

    anomalies = sub.add_parser("anomalies", help="List anomalous cost days")
    anomalies.add_argument("environment")

    sub.add_parser("sla", help="Compute the weekly uptime SLA now")

    test = sub.add_parser("test", help="Test connectivity to an integration")
    test.add_argument("integration", choices=[jira.INTEGRATION_NAME, cost_explorer.INTEGRATION_NAME])

    sub.add_parser("status", help="Show integration health")

    burn = sub.add_parser("burn-rate", help="Show ICS credit balance and burn rate")
    burn.add_argument("--record", action="store_true", help="Store the computed burn rate as a new balance row")

    return parser


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    settings = get_settings()
    configure_logging(settings.log_level)

    store = open_store_or_exit(settings)
    orchestrator = build_orchestrator(settings, store)
    try:
        if args.command == "sync":
            return asyncio.run(_sync(orchestrator, args.source))
        if args.command == "forecast":
            days = args.days if args.days is not None else settings.forecast_days
            return _forecast(orchestrator, args.environment, days)
        if args.command == "anomalies":
            return _anomalies(orchestrator, args.environment)
        if args.command == "sla":
            metric = asyncio.run(orchestrator.run_weekly_sla())
            print(f"Weekly SLA: {metric['sla_percentage']:.2f}%" if metric else "No uptime requested last week.")
            return 0
        if args.command == "test":
            connected = asyncio.run(orchestrator.test_integration(args.integration))
            print(f"{args.integration}: {'connected' if connected else 'FAILED'}")
            return 0 if connected else 1
        if args.command == "status":
            return _status(store)
        if args.command == "burn-rate":
            rate = orchestrator.forecast.calculate_ics_burn_rate()
            print(f"ICS balance: ${rate.balance:,.2f}  burn rate: ${rate.burn_rate:,.2f}/day")
            if args.record:
                remaining = orchestrator.cost.update_ics_credits(rate.balance, rate.burn_rate)
                print(f"Recorded; {remaining} days remaining")
            return 0
    finally:
        store.close()
    return 2


if __name__ == "__main__":
    sys.exit(main())
