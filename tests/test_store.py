"""Unit tests for the SQLite store with an in-memory database."""

import pytest

from infraops.errors import StoreError
from infraops.store.db import KNOWN_INTEGRATIONS, Store, get_connection, init_schema
from infraops.store.models import (
    CostRecord,
    IncidentRecord,
    IntegrationHealth,
    SLAMetricRecord,
    SyncStatus,
    TaskRecord,
    UptimeRequestRecord,
)


def _cost(
    day: str = "2026-10-18",
    environment: str = "production",
    service: str = "Amazon EC2",
    cost: float = 10.0,
    resource: str | None = None,
    ics: float = 0.0,
) -> CostRecord:
    return CostRecord(
        date=day,
        environment=environment,
        service=service,
        resource=resource,
        cost_usd=cost,
        ics_credits_applied=ics,
    )


def _incident(jira_id: str = "INFRA-1", **overrides: object) -> IncidentRecord:
    record = IncidentRecord(
        jira_id=jira_id,
        title="Database down",
        description="",
        severity="critical",
        status="open",
        squad="Platform",
        created_at="2026-10-18T09:00:00.000+0000",
        resolved_at=None,
    )
    record.update(overrides)  # type: ignore[typeddict-item]
    return record


def _uptime(jira_id: str, window_start: str, requested: float, delivered: float) -> UptimeRequestRecord:
    return UptimeRequestRecord(
        jira_id=jira_id,
        requester="alice",
        environment="staging",
        requested_hours=requested,
        delivered_hours=delivered,
        sla_met=delivered >= requested,
        window_start=window_start,
        window_end=window_start,
    )


# ---------------------------------------------------------------------------
# Connection and schema
# ---------------------------------------------------------------------------


class TestConnection:
    def test_empty_path_raises(self) -> None:
        with pytest.raises(StoreError, match="not configured"):
            get_connection("")

    def test_unopenable_path_raises(self) -> None:
        with pytest.raises(StoreError):
            Store.open("/nonexistent-dir/sub/infraops.db")


class TestSchemaInit:
    def test_creates_tables(self, store: Store) -> None:
        rows = store.execute("SELECT name FROM sqlite_master WHERE type='table'")["rows"]
        names = {r["name"] for r in rows}
        for table in (
            "sync_logs",
            "integration_status",
            "incidents",
            "tasks",
            "uptime_requests",
            "sla_metrics",
            "cost_records",
            "cost_forecasts",
            "monthly_budgets",
            "ics_credits",
        ):
            assert table in names

    def test_creates_partial_unique_indexes(self, store: Store) -> None:
        rows = store.execute("SELECT name FROM sqlite_master WHERE type='index'")["rows"]
        names = {r["name"] for r in rows}
        assert "uq_cost_records_aggregate" in names
        assert "uq_cost_records_resource" in names

    def test_idempotent(self) -> None:
        conn = get_connection(":memory:")
        init_schema(conn)
        init_schema(conn)
        rows = conn.execute("SELECT COUNT(*) AS n FROM integration_status").fetchone()
        assert rows["n"] == len(KNOWN_INTEGRATIONS)

    def test_seeds_integrations_as_unknown(self, store: Store) -> None:
        statuses = store.list_integration_statuses()
        assert [s["integration_name"] for s in statuses] == ["aws_cost_explorer", "jira"]
        assert all(s["status"] == "unknown" for s in statuses)
        assert all(s["last_sync"] is None for s in statuses)


class TestExecute:
    def test_returns_rows_and_count(self, store: Store) -> None:
        result = store.execute("SELECT integration_name FROM integration_status ORDER BY integration_name")
        assert result["row_count"] == 2
        assert result["rows"][0]["integration_name"] == "aws_cost_explorer"

    def test_sql_error_becomes_store_error(self, store: Store) -> None:
        with pytest.raises(StoreError):
            store.execute("SELECT * FROM no_such_table")

    def test_list_rows_rejects_unknown_table(self, store: Store) -> None:
        with pytest.raises(ValueError, match="Unknown table"):
            store.list_rows("sqlite_master")


# ---------------------------------------------------------------------------
# Sync log and integration status
# ---------------------------------------------------------------------------


class TestSyncLog:
    def test_start_then_complete(self, store: Store) -> None:
        sync_id = store.start_sync_log("jira", "full_sync", "2026-10-19T12:00:00+00:00")
        started = store.get_sync_log(sync_id)
        assert started is not None
        assert started["status"] == "started"
        assert started["completed_at"] is None

        store.complete_sync_log(
            sync_id,
            status=SyncStatus.SUCCESS,
            records_synced=12,
            completed_at="2026-10-19T12:00:05+00:00",
        )
        done = store.get_sync_log(sync_id)
        assert done is not None
        assert done["status"] == "success"
        assert done["records_synced"] == 12
        assert done["error_message"] is None
        assert done["completed_at"] == "2026-10-19T12:00:05+00:00"

    def test_ids_are_unique(self, store: Store) -> None:
        first = store.start_sync_log("jira", "full_sync", "2026-10-19T12:00:00+00:00")
        second = store.start_sync_log("jira", "full_sync", "2026-10-19T12:00:00+00:00")
        assert first != second

    def test_get_sync_logs_newest_first_and_filtered(self, store: Store) -> None:
        store.start_sync_log("jira", "full_sync", "2026-10-19T06:00:00+00:00")
        store.start_sync_log("aws_cost_explorer", "cost_sync", "2026-10-19T07:00:00+00:00")
        store.start_sync_log("jira", "full_sync", "2026-10-19T12:00:00+00:00")

        logs = store.get_sync_logs("jira")
        assert [log["started_at"] for log in logs] == ["2026-10-19T12:00:00+00:00", "2026-10-19T06:00:00+00:00"]
        assert len(store.get_sync_logs()) == 3
        assert len(store.get_sync_logs(limit=1)) == 1

    def test_missing_sync_log(self, store: Store) -> None:
        assert store.get_sync_log(999) is None


class TestIntegrationStatus:
    def test_overwrites_status(self, store: Store) -> None:
        store.set_integration_status("jira", IntegrationHealth.ERROR, last_sync="t1", last_error="boom")
        store.set_integration_status("jira", IntegrationHealth.ACTIVE, last_sync="t2")
        status = store.get_integration_status("jira")
        assert status == {"integration_name": "jira", "status": "active", "last_sync": "t2", "last_error": None}

    def test_unknown_integration(self, store: Store) -> None:
        assert store.get_integration_status("github") is None


# ---------------------------------------------------------------------------
# Jira-sourced records
# ---------------------------------------------------------------------------


class TestIncidentUpsert:
    def test_merge_by_jira_id(self, store: Store) -> None:
        store.upsert_incident(_incident())
        store.upsert_incident(_incident(status="resolved", resolved_at="2026-10-18T11:00:00.000+0000"))
        rows = store.list_rows("incidents")
        assert len(rows) == 1
        assert rows[0]["status"] == "resolved"
        assert rows[0]["resolved_at"] == "2026-10-18T11:00:00.000+0000"

    def test_runbook_id_preserved(self, store: Store) -> None:
        store.upsert_incident(_incident())
        store.execute("UPDATE incidents SET runbook_id = ? WHERE jira_id = ?", ("rb-42", "INFRA-1"))
        store.upsert_incident(_incident(title="Database down again"))
        row = store.list_rows("incidents")[0]
        assert row["runbook_id"] == "rb-42"
        assert row["title"] == "Database down again"

    def test_created_at_not_overwritten(self, store: Store) -> None:
        store.upsert_incident(_incident())
        store.upsert_incident(_incident(created_at="2030-01-01T00:00:00.000+0000"))
        assert store.list_rows("incidents")[0]["created_at"] == "2026-10-18T09:00:00.000+0000"


class TestTaskUpsert:
    def test_sop_id_preserved(self, store: Store) -> None:
        task = TaskRecord(
            jira_id="INFRA-7",
            title="Rotate certs",
            description="",
            status="todo",
            squad="Platform",
            assignee=None,
        )
        store.upsert_task(task)
        store.execute("UPDATE tasks SET sop_id = 'sop-1' WHERE jira_id = 'INFRA-7'")
        store.upsert_task({**task, "status": "done", "assignee": "Bob"})
        rows = store.list_rows("tasks")
        assert len(rows) == 1
        assert rows[0]["sop_id"] == "sop-1"
        assert rows[0]["status"] == "done"
        assert rows[0]["assignee"] == "Bob"


class TestUptimeHours:
    def test_sums_windows_in_range(self, store: Store) -> None:
        store.upsert_uptime_request(_uptime("INFRA-1", "2026-10-13T08:00:00.000+0000", 10, 9))
        store.upsert_uptime_request(_uptime("INFRA-2", "2026-10-18T08:00:00.000+0000", 5, 5))
        store.upsert_uptime_request(_uptime("INFRA-3", "2026-10-01T08:00:00.000+0000", 100, 0))

        requested, delivered = store.sum_uptime_hours("2026-10-12T12:00:00+00:00", "2026-10-19T12:00:00+00:00")
        assert requested == 15
        assert delivered == 14

    def test_no_rows(self, store: Store) -> None:
        assert store.sum_uptime_hours("2026-10-12T12:00:00", "2026-10-19T12:00:00") == (0.0, 0.0)

    def test_compares_instants_across_offsets(self, store: Store) -> None:
        # 10:00-05:00 is 15:00 UTC, inside the window; 12:30+05:00 is 07:30 UTC, before it.
        store.upsert_uptime_request(_uptime("INFRA-1", "2026-10-12T10:00:00.000-0500", 10, 10))
        store.upsert_uptime_request(_uptime("INFRA-2", "2026-10-12T12:30:00.000+0500", 40, 0))

        requested, delivered = store.sum_uptime_hours("2026-10-12T12:00:00+00:00", "2026-10-19T12:00:00+00:00")
        assert requested == 10
        assert delivered == 10

    def test_unparseable_window_ignored(self, store: Store) -> None:
        store.upsert_uptime_request(_uptime("INFRA-1", "next tuesday", 10, 0))
        store.upsert_uptime_request(_uptime("INFRA-2", "2026-10-14T08:00:00", 4, 4))

        assert store.sum_uptime_hours("2026-10-12T12:00:00+00:00", "2026-10-19T12:00:00+00:00") == (4.0, 4.0)

    def test_invalid_bounds_rejected(self, store: Store) -> None:
        with pytest.raises(ValueError):
            store.sum_uptime_hours("last week", "2026-10-19T12:00:00+00:00")

    def test_sla_met_stored_as_integer(self, store: Store) -> None:
        store.upsert_uptime_request(_uptime("INFRA-1", "2026-10-13T08:00:00", 10, 9))
        assert store.list_rows("uptime_requests")[0]["sla_met"] == 0


class TestSlaMetricUpsert:
    def test_merge_by_week(self, store: Store) -> None:
        metric = SLAMetricRecord(
            week_start="a", week_end="b", total_requested_hours=10, total_delivered_hours=9, sla_percentage=90.0
        )
        store.upsert_sla_metric(metric)
        store.upsert_sla_metric({**metric, "total_delivered_hours": 10, "sla_percentage": 100.0})
        rows = store.list_rows("sla_metrics")
        assert len(rows) == 1
        assert rows[0]["sla_percentage"] == 100.0


# ---------------------------------------------------------------------------
# Cost records
# ---------------------------------------------------------------------------


class TestCostRecordUpsert:
    def test_aggregate_merge_updates_cost(self, store: Store) -> None:
        store.upsert_cost_record(_cost(cost=10.0))
        store.upsert_cost_record(_cost(cost=12.5))
        rows = store.list_rows("cost_records")
        assert len(rows) == 1
        assert rows[0]["cost_usd"] == 12.5
        assert rows[0]["resource"] is None

    def test_aggregate_and_resource_rows_coexist(self, store: Store) -> None:
        store.upsert_cost_record(_cost(cost=10.0))
        store.upsert_cost_record(_cost(cost=4.0, resource="i-0abc"))
        store.upsert_cost_record(_cost(cost=5.0, resource="i-0abc"))
        store.upsert_cost_record(_cost(cost=1.0, resource="i-0def"))
        rows = store.list_rows("cost_records")
        assert len(rows) == 3
        by_resource = {r["resource"]: r["cost_usd"] for r in rows}
        assert by_resource == {None: 10.0, "i-0abc": 5.0, "i-0def": 1.0}

    def test_only_cost_is_overwritten(self, store: Store) -> None:
        store.upsert_cost_record(_cost(cost=10.0, ics=3.0))
        store.upsert_cost_record(_cost(cost=11.0, ics=0.0))
        row = store.list_rows("cost_records")[0]
        assert row["cost_usd"] == 11.0
        assert row["ics_credits_applied"] == 3.0


class TestCostQueries:
    def test_daily_costs_sum_services_oldest_first(self, store: Store) -> None:
        store.upsert_cost_record(_cost(day="2026-10-18", service="EC2", cost=10.0))
        store.upsert_cost_record(_cost(day="2026-10-18", service="S3", cost=2.0))
        store.upsert_cost_record(_cost(day="2026-10-17", service="EC2", cost=8.0))
        store.upsert_cost_record(_cost(day="2026-09-01", service="EC2", cost=99.0))
        store.upsert_cost_record(_cost(day="2026-10-18", environment="staging", cost=1.0))

        daily = store.get_daily_costs("production", "2026-09-19")
        assert daily == [{"date": "2026-10-17", "cost": 8.0}, {"date": "2026-10-18", "cost": 12.0}]

    def test_environments_since(self, store: Store) -> None:
        store.upsert_cost_record(_cost(environment="staging"))
        store.upsert_cost_record(_cost(environment="production"))
        store.upsert_cost_record(_cost(day="2026-01-01", environment="legacy"))
        assert store.get_environments_since("2026-09-19") == ["production", "staging"]

    def test_cost_by_environment_half_open(self, store: Store) -> None:
        store.upsert_cost_record(_cost(day="2026-10-01", cost=5.0))
        store.upsert_cost_record(_cost(day="2026-10-31", cost=7.0))
        store.upsert_cost_record(_cost(day="2026-11-01", cost=100.0))
        assert store.get_cost_by_environment("2026-10-01", "2026-11-01") == {"production": 12.0}

    def test_average_ics_ignores_zero(self, store: Store) -> None:
        store.upsert_cost_record(_cost(service="EC2", ics=4.0))
        store.upsert_cost_record(_cost(service="S3", ics=2.0))
        store.upsert_cost_record(_cost(service="RDS", ics=0.0))
        assert store.get_average_ics_credits_applied("2026-09-19") == pytest.approx(3.0)

    def test_average_ics_none(self, store: Store) -> None:
        assert store.get_average_ics_credits_applied("2026-09-19") == 0.0


# ---------------------------------------------------------------------------
# Budgets and ICS credits
# ---------------------------------------------------------------------------


class TestBudgets:
    def test_set_and_update_actuals(self, store: Store) -> None:
        store.set_monthly_budget("2026-10-01", "production", 1000.0)
        store.update_budget_actuals(
            "2026-10-01", "production", actual_usd=1100.0, variance_usd=100.0, variance_percentage=10.0
        )
        budget = store.get_monthly_budget("2026-10-01", "production")
        assert budget == {
            "month": "2026-10-01",
            "environment": "production",
            "budget_usd": 1000.0,
            "actual_usd": 1100.0,
            "variance_usd": 100.0,
            "variance_percentage": 10.0,
        }

    def test_update_without_budget_creates_nothing(self, store: Store) -> None:
        store.update_budget_actuals("2026-10-01", "dev", actual_usd=1.0, variance_usd=1.0, variance_percentage=0.0)
        assert store.get_monthly_budget("2026-10-01", "dev") is None


class TestIcsCredits:
    def test_latest_balance(self, store: Store) -> None:
        assert store.get_latest_ics_balance() is None
        store.save_ics_credits(balance=500.0, burn_rate_per_day=10.0, remaining_days=50, last_updated="2026-10-01")
        store.save_ics_credits(balance=400.0, burn_rate_per_day=10.0, remaining_days=40, last_updated="2026-10-10")
        assert store.get_latest_ics_balance() == 400.0
