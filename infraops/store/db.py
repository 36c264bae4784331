"""SQLite-backed store: connection management, schema init and upserts.

All database operations use parameterized queries.  Every entity written by a
sync is merged with ``INSERT ... ON CONFLICT DO UPDATE`` against its natural
key, so re-running a sync never duplicates rows.  The schema is auto-created on
first access via CREATE TABLE IF NOT EXISTS (idempotent).

Cost records carry two separate partial unique indexes: one for aggregate rows
(resource IS NULL) and one for per-resource rows.  The two identity spaces
never collide.
"""

import logging
import sqlite3
import threading
from collections.abc import Sequence
from datetime import UTC, datetime

from infraops.errors import StoreError
from infraops.store.models import (
    CostForecastRecord,
    CostRecord,
    DailyCost,
    IncidentRecord,
    IntegrationHealth,
    IntegrationStatusRecord,
    MonthlyBudgetRecord,
    QueryResult,
    SLAMetricRecord,
    SyncLogRecord,
    SyncStatus,
    TaskRecord,
    UptimeRequestRecord,
)

logger = logging.getLogger(__name__)

KNOWN_INTEGRATIONS = ("jira", "aws_cost_explorer")

_SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS sync_logs (
    id               INTEGER PRIMARY KEY AUTOINCREMENT,
    integration_name TEXT NOT NULL,
    sync_type        TEXT NOT NULL,
    status           TEXT NOT NULL,
    records_synced   INTEGER DEFAULT 0,
    error_message    TEXT,
    started_at       TEXT NOT NULL,
    completed_at     TEXT
);
CREATE INDEX IF NOT EXISTS idx_sync_logs_started ON sync_logs(integration_name, started_at);

CREATE TABLE IF NOT EXISTS integration_status (
    integration_name TEXT PRIMARY KEY,
    status           TEXT NOT NULL DEFAULT 'unknown',
    last_sync        TEXT,
    last_error       TEXT
);

CREATE TABLE IF NOT EXISTS incidents (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    jira_id      TEXT NOT NULL UNIQUE,
    title        TEXT NOT NULL,
    description  TEXT DEFAULT '',
    severity     TEXT NOT NULL,
    status       TEXT NOT NULL,
    squad        TEXT DEFAULT 'Unknown',
    created_at   TEXT NOT NULL,
    resolved_at  TEXT,
    runbook_id   TEXT
);

CREATE TABLE IF NOT EXISTS tasks (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    jira_id      TEXT NOT NULL UNIQUE,
    title        TEXT NOT NULL,
    description  TEXT DEFAULT '',
    status       TEXT NOT NULL,
    squad        TEXT DEFAULT 'Unknown',
    assignee     TEXT,
    sop_id       TEXT
);

CREATE TABLE IF NOT EXISTS uptime_requests (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    jira_id         TEXT NOT NULL UNIQUE,
    requester       TEXT NOT NULL,
    environment     TEXT NOT NULL,
    requested_hours REAL NOT NULL,
    delivered_hours REAL NOT NULL,
    sla_met         INTEGER NOT NULL,
    window_start    TEXT NOT NULL,
    window_end      TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS sla_metrics (
    id                    INTEGER PRIMARY KEY AUTOINCREMENT,
    week_start            TEXT NOT NULL,
    week_end              TEXT NOT NULL,
    total_requested_hours REAL NOT NULL,
    total_delivered_hours REAL NOT NULL,
    sla_percentage        REAL NOT NULL,
    UNIQUE (week_start, week_end)
);

CREATE TABLE IF NOT EXISTS cost_records (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    date                TEXT NOT NULL,
    environment         TEXT NOT NULL,
    service             TEXT NOT NULL,
    resource            TEXT,
    cost_usd            REAL NOT NULL,
    ics_credits_applied REAL DEFAULT 0
);
CREATE UNIQUE INDEX IF NOT EXISTS uq_cost_records_aggregate
    ON cost_records(date, environment, service) WHERE resource IS NULL;
CREATE UNIQUE INDEX IF NOT EXISTS uq_cost_records_resource
    ON cost_records(date, environment, service, resource) WHERE resource IS NOT NULL;
CREATE INDEX IF NOT EXISTS idx_cost_records_env_date ON cost_records(environment, date);

CREATE TABLE IF NOT EXISTS cost_forecasts (
    id               INTEGER PRIMARY KEY AUTOINCREMENT,
    forecast_date    TEXT NOT NULL,
    environment      TEXT NOT NULL,
    scenario         TEXT NOT NULL,
    predicted_cost   REAL NOT NULL,
    confidence_lower REAL NOT NULL,
    confidence_upper REAL NOT NULL,
    UNIQUE (forecast_date, environment, scenario)
);

CREATE TABLE IF NOT EXISTS monthly_budgets (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    month               TEXT NOT NULL,
    environment         TEXT NOT NULL,
    budget_usd          REAL NOT NULL,
    actual_usd          REAL,
    variance_usd        REAL,
    variance_percentage REAL,
    UNIQUE (month, environment)
);

CREATE TABLE IF NOT EXISTS ics_credits (
    id                INTEGER PRIMARY KEY AUTOINCREMENT,
    balance           REAL NOT NULL,
    burn_rate_per_day REAL NOT NULL,
    remaining_days    INTEGER NOT NULL,
    last_updated      TEXT NOT NULL
);
"""


def get_connection(db_path: str) -> sqlite3.Connection:
    """Open a SQLite connection with WAL mode for concurrent reads.

    Args:
        db_path: Path to the database file. Pass ":memory:" for in-memory
                 databases (tests).

    Raises:
        StoreError: If the path is empty or the database cannot be opened.
    """
    if not db_path:
        msg = "Store not configured (DATABASE_PATH is empty)"
        raise StoreError(msg)

    try:
        conn = sqlite3.connect(db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
    except sqlite3.Error as e:
        raise StoreError(f"Cannot open store at {db_path}: {e}") from e
    return conn


def init_schema(conn: sqlite3.Connection) -> None:
    """Create tables and indexes if they don't exist and seed integration rows (idempotent)."""
    try:
        conn.executescript(_SCHEMA_SQL)
        conn.executemany(
            "INSERT OR IGNORE INTO integration_status (integration_name, status) VALUES (?, ?)",
            [(name, IntegrationHealth.UNKNOWN.value) for name in KNOWN_INTEGRATIONS],
        )
        conn.commit()
    except sqlite3.Error as e:
        raise StoreError(f"Schema initialization failed: {e}") from e


class Store:
    """Thread-safe wrapper over a single SQLite connection.

    Each ``execute`` call runs one statement and commits it while holding an
    internal lock, which makes every upsert atomic per key.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self._lock = threading.Lock()

    @classmethod
    def open(cls, db_path: str) -> "Store":
        """Open (and initialize) a store. Raises StoreError if unusable."""
        conn = get_connection(db_path)
        init_schema(conn)
        return cls(conn)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def execute(self, query: str, params: Sequence[object] = ()) -> QueryResult:
        """Run a parameterized statement and return its rows and affected-row count."""
        with self._lock:
            try:
                cursor = self._conn.execute(query, tuple(params))
                rows = [dict(r) for r in cursor.fetchall()]
                self._conn.commit()
            except sqlite3.Error as e:
                self._conn.rollback()
                raise StoreError(str(e)) from e
        row_count = cursor.rowcount if cursor.rowcount >= 0 else len(rows)
        return QueryResult(rows=rows, row_count=row_count)

    def _one(self, query: str, params: Sequence[object] = ()) -> dict[str, object] | None:
        rows = self.execute(query, params)["rows"]
        return rows[0] if rows else None

    # -----------------------------------------------------------------------
    # Sync log
    # -----------------------------------------------------------------------

    def start_sync_log(self, integration_name: str, sync_type: str, started_at: str) -> int:
        """Append a ``started`` sync log entry. Returns its ID."""
        row = self._one(
            """INSERT INTO sync_logs (integration_name, sync_type, status, records_synced, started_at)
               VALUES (?, ?, ?, 0, ?)
               RETURNING id""",
            (integration_name, sync_type, SyncStatus.STARTED.value, started_at),
        )
        if row is None:
            raise StoreError("Sync log insert returned no id")
        return int(row["id"])  # type: ignore[call-overload]

    def complete_sync_log(
        self,
        sync_id: int,
        *,
        status: SyncStatus,
        records_synced: int,
        completed_at: str,
        error_message: str | None = None,
    ) -> None:
        self.execute(
            """UPDATE sync_logs
               SET status = ?, records_synced = ?, error_message = ?, completed_at = ?
               WHERE id = ?""",
            (status.value, records_synced, error_message, completed_at, sync_id),
        )

    def get_sync_log(self, sync_id: int) -> SyncLogRecord | None:
        row = self._one("SELECT * FROM sync_logs WHERE id = ?", (sync_id,))
        return _row_to_sync_log(row) if row is not None else None

    def get_sync_logs(self, integration_name: str | None = None, limit: int = 50) -> list[SyncLogRecord]:
        """Most recent sync log entries first, optionally filtered by integration."""
        if integration_name:
            rows = self.execute(
                "SELECT * FROM sync_logs WHERE integration_name = ? ORDER BY started_at DESC, id DESC LIMIT ?",
                (integration_name, limit),
            )["rows"]
        else:
            rows = self.execute("SELECT * FROM sync_logs ORDER BY started_at DESC, id DESC LIMIT ?", (limit,))[
                "rows"
            ]
        return [_row_to_sync_log(r) for r in rows]

    # -----------------------------------------------------------------------
    # Integration status
    # -----------------------------------------------------------------------

    def set_integration_status(
        self,
        integration_name: str,
        status: IntegrationHealth,
        *,
        last_sync: str,
        last_error: str | None = None,
    ) -> None:
        """Overwrite the health row for one integration."""
        self.execute(
            """INSERT INTO integration_status (integration_name, status, last_sync, last_error)
               VALUES (?, ?, ?, ?)
               ON CONFLICT (integration_name) DO UPDATE SET
               status = excluded.status,
               last_sync = excluded.last_sync,
               last_error = excluded.last_error""",
            (integration_name, status.value, last_sync, last_error),
        )

    def get_integration_status(self, integration_name: str) -> IntegrationStatusRecord | None:
        row = self._one("SELECT * FROM integration_status WHERE integration_name = ?", (integration_name,))
        if row is None:
            return None
        return IntegrationStatusRecord(
            integration_name=str(row["integration_name"]),
            status=str(row["status"]),
            last_sync=row["last_sync"],  # type: ignore[typeddict-item]
            last_error=row["last_error"],  # type: ignore[typeddict-item]
        )

    def list_integration_statuses(self) -> list[IntegrationStatusRecord]:
        rows = self.execute("SELECT * FROM integration_status ORDER BY integration_name")["rows"]
        return [IntegrationStatusRecord(**r) for r in rows]  # type: ignore[typeddict-item]

    # -----------------------------------------------------------------------
    # Jira-sourced records
    # -----------------------------------------------------------------------

    def upsert_incident(self, incident: IncidentRecord) -> None:
        """Merge an incident by jira_id. runbook_id is never overwritten."""
        self.execute(
            """INSERT INTO incidents
               (jira_id, title, description, severity, status, squad, created_at, resolved_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT (jira_id) DO UPDATE SET
               title = excluded.title,
               description = excluded.description,
               severity = excluded.severity,
               status = excluded.status,
               squad = excluded.squad,
               resolved_at = excluded.resolved_at""",
            (
                incident["jira_id"],
                incident["title"],
                incident["description"],
                incident["severity"],
                incident["status"],
                incident["squad"],
                incident["created_at"],
                incident["resolved_at"],
            ),
        )

    def upsert_task(self, task: TaskRecord) -> None:
        """Merge a task by jira_id. sop_id is never overwritten."""
        self.execute(
            """INSERT INTO tasks (jira_id, title, description, status, squad, assignee)
               VALUES (?, ?, ?, ?, ?, ?)
               ON CONFLICT (jira_id) DO UPDATE SET
               title = excluded.title,
               description = excluded.description,
               status = excluded.status,
               squad = excluded.squad,
               assignee = excluded.assignee""",
            (
                task["jira_id"],
                task["title"],
                task["description"],
                task["status"],
                task["squad"],
                task["assignee"],
            ),
        )

    def upsert_uptime_request(self, request: UptimeRequestRecord) -> None:
        self.execute(
            """INSERT INTO uptime_requests
               (jira_id, requester, environment, requested_hours, delivered_hours,
                sla_met, window_start, window_end)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT (jira_id) DO UPDATE SET
               requester = excluded.requester,
               environment = excluded.environment,
               requested_hours = excluded.requested_hours,
               delivered_hours = excluded.delivered_hours,
               sla_met = excluded.sla_met,
               window_start = excluded.window_start,
               window_end = excluded.window_end""",
            (
                request["jira_id"],
                request["requester"],
                request["environment"],
                request["requested_hours"],
                request["delivered_hours"],
                int(request["sla_met"]),
                request["window_start"],
                request["window_end"],
            ),
        )

    def list_rows(self, table: str) -> list[dict[str, object]]:
        """All rows of a synced table ordered by primary key (admin views, tests)."""
        if table not in ("incidents", "tasks", "uptime_requests", "cost_records", "cost_forecasts", "sla_metrics"):
            raise ValueError(f"Unknown table: {table}")
        return self.execute(f"SELECT * FROM {table} ORDER BY id")["rows"]

    def sum_uptime_hours(self, window_from: str, window_to: str) -> tuple[float, float]:
        """Total requested and delivered hours for windows starting in [from, to).

        Window boundaries are stored verbatim from Jira with their own UTC
        offsets, so each one is parsed to an aware UTC instant before it is
        compared.  Naive values are read as UTC; unparseable ones are skipped.
        """
        lower = _parse_instant(window_from)
        upper = _parse_instant(window_to)
        if lower is None or upper is None:
            raise ValueError(f"Invalid uptime window bounds: {window_from!r}, {window_to!r}")

        rows = self.execute("SELECT jira_id, requested_hours, delivered_hours, window_start FROM uptime_requests")[
            "rows"
        ]
        requested = delivered = 0.0
        for r in rows:
            start = _parse_instant(str(r["window_start"]))
            if start is None:
                logger.warning("Ignoring uptime request %s: bad window start %r", r["jira_id"], r["window_start"])
                continue
            if lower <= start < upper:
                requested += float(r["requested_hours"])  # type: ignore[arg-type]
                delivered += float(r["delivered_hours"])  # type: ignore[arg-type]
        return requested, delivered

    def upsert_sla_metric(self, metric: SLAMetricRecord) -> None:
        self.execute(
            """INSERT INTO sla_metrics
               (week_start, week_end, total_requested_hours, total_delivered_hours, sla_percentage)
               VALUES (?, ?, ?, ?, ?)
               ON CONFLICT (week_start, week_end) DO UPDATE SET
               total_requested_hours = excluded.total_requested_hours,
               total_delivered_hours = excluded.total_delivered_hours,
               sla_percentage = excluded.sla_percentage""",
            (
                metric["week_start"],
                metric["week_end"],
                metric["total_requested_hours"],
                metric["total_delivered_hours"],
                metric["sla_percentage"],
            ),
        )

    # -----------------------------------------------------------------------
    # Cost records
    # -----------------------------------------------------------------------

    def upsert_cost_record(self, record: CostRecord) -> None:
        """Merge a cost record into the aggregate or per-resource identity space.

        On conflict only ``cost_usd`` is overwritten.
        """
        params = (
            record["date"],
            record["environment"],
            record["service"],
            record["resource"],
            record["cost_usd"],
            record["ics_credits_applied"],
        )
        if record["resource"] is None:
            conflict = "ON CONFLICT (date, environment, service) WHERE resource IS NULL"
        else:
            conflict = "ON CONFLICT (date, environment, service, resource) WHERE resource IS NOT NULL"
        self.execute(
            f"""INSERT INTO cost_records
                (date, environment, service, resource, cost_usd, ics_credits_applied)
                VALUES (?, ?, ?, ?, ?, ?)
                {conflict}
                DO UPDATE SET cost_usd = excluded.cost_usd""",
            params,
        )

    def get_daily_costs(self, environment: str, since: str) -> list[DailyCost]:
        """Per-day cost totals for an environment from ``since`` onwards, oldest first."""
        rows = self.execute(
            """SELECT date, SUM(cost_usd) AS daily_cost
               FROM cost_records
               WHERE environment = ? AND date >= ?
               GROUP BY date
               ORDER BY date ASC""",
            (environment, since),
        )["rows"]
        return [DailyCost(date=str(r["date"]), cost=float(r["daily_cost"])) for r in rows]  # type: ignore[arg-type]

    def get_environments_since(self, since: str) -> list[str]:
        rows = self.execute(
            "SELECT DISTINCT environment FROM cost_records WHERE date >= ? ORDER BY environment",
            (since,),
        )["rows"]
        return [str(r["environment"]) for r in rows]

    def get_cost_by_environment(self, date_from: str, date_to: str) -> dict[str, float]:
        """Total cost per environment for dates in [from, to)."""
        rows = self.execute(
            """SELECT environment, SUM(cost_usd) AS total_cost
               FROM cost_records
               WHERE date >= ? AND date < ?
               GROUP BY environment""",
            (date_from, date_to),
        )["rows"]
        return {str(r["environment"]): float(r["total_cost"]) for r in rows}  # type: ignore[arg-type]

    def get_average_ics_credits_applied(self, since: str) -> float:
        """Average positive ``ics_credits_applied`` over cost records since a date (0 if none)."""
        row = self._one(
            """SELECT AVG(ics_credits_applied) AS avg_daily_usage
               FROM cost_records
               WHERE date >= ? AND ics_credits_applied > 0""",
            (since,),
        )
        if row is None or row["avg_daily_usage"] is None:
            return 0.0
        return float(row["avg_daily_usage"])  # type: ignore[arg-type]

    # -----------------------------------------------------------------------
    # Forecasts
    # -----------------------------------------------------------------------

    def upsert_cost_forecast(self, forecast: CostForecastRecord) -> None:
        self.execute(
            """INSERT INTO cost_forecasts
               (forecast_date, environment, scenario, predicted_cost, confidence_lower, confidence_upper)
               VALUES (?, ?, ?, ?, ?, ?)
               ON CONFLICT (forecast_date, environment, scenario) DO UPDATE SET
               predicted_cost = excluded.predicted_cost,
               confidence_lower = excluded.confidence_lower,
               confidence_upper = excluded.confidence_upper""",
            (
                forecast["forecast_date"],
                forecast["environment"],
                forecast["scenario"],
                forecast["predicted_cost"],
                forecast["confidence_lower"],
                forecast["confidence_upper"],
            ),
        )

    def get_cost_forecasts(self, environment: str) -> list[CostForecastRecord]:
        rows = self.execute(
            """SELECT forecast_date, environment, scenario, predicted_cost, confidence_lower, confidence_upper
               FROM cost_forecasts WHERE environment = ?
               ORDER BY forecast_date, scenario""",
            (environment,),
        )["rows"]
        return [CostForecastRecord(**r) for r in rows]  # type: ignore[typeddict-item]

    # -----------------------------------------------------------------------
    # Budgets and ICS credits
    # -----------------------------------------------------------------------

    def set_monthly_budget(self, month: str, environment: str, budget_usd: float) -> None:
        """Create or replace the budget amount for (month, environment)."""
        self.execute(
            """INSERT INTO monthly_budgets (month, environment, budget_usd)
               VALUES (?, ?, ?)
               ON CONFLICT (month, environment) DO UPDATE SET budget_usd = excluded.budget_usd""",
            (month, environment, budget_usd),
        )

    def get_monthly_budget(self, month: str, environment: str) -> MonthlyBudgetRecord | None:
        row = self._one(
            """SELECT month, environment, budget_usd, actual_usd, variance_usd, variance_percentage
               FROM monthly_budgets WHERE month = ? AND environment = ?""",
            (month, environment),
        )
        return MonthlyBudgetRecord(**row) if row is not None else None  # type: ignore[typeddict-item]

    def update_budget_actuals(
        self,
        month: str,
        environment: str,
        *,
        actual_usd: float,
        variance_usd: float,
        variance_percentage: float,
    ) -> None:
        self.execute(
            """UPDATE monthly_budgets
               SET actual_usd = ?, variance_usd = ?, variance_percentage = ?
               WHERE month = ? AND environment = ?""",
            (actual_usd, variance_usd, variance_percentage, month, environment),
        )

    def save_ics_credits(
        self,
        *,
        balance: float,
        burn_rate_per_day: float,
        remaining_days: int,
        last_updated: str,
    ) -> None:
        self.execute(
            """INSERT INTO ics_credits (balance, burn_rate_per_day, remaining_days, last_updated)
               VALUES (?, ?, ?, ?)""",
            (balance, burn_rate_per_day, remaining_days, last_updated),
        )

    def get_latest_ics_balance(self) -> float | None:
        row = self._one("SELECT balance FROM ics_credits ORDER BY last_updated DESC, id DESC LIMIT 1")
        if row is None:
            return None
        return float(row["balance"])  # type: ignore[arg-type]


def _row_to_sync_log(row: dict[str, object]) -> SyncLogRecord:
    return SyncLogRecord(
        id=int(row["id"]),  # type: ignore[call-overload]
        integration_name=str(row["integration_name"]),
        sync_type=str(row["sync_type"]),
        status=str(row["status"]),
        records_synced=int(row["records_synced"] or 0),  # type: ignore[call-overload]
        error_message=row["error_message"],  # type: ignore[typeddict-item]
        started_at=str(row["started_at"]),
        completed_at=row["completed_at"],  # type: ignore[typeddict-item]
    )


def _parse_instant(value: str) -> datetime | None:
    """Parse an ISO 8601 timestamp (``+0000`` or ``+00:00`` offsets) to aware UTC."""
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)
