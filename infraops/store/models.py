"""Enums and TypedDict row models for the store."""

from enum import StrEnum
from typing import TypedDict


class Severity(StrEnum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class IncidentStatus(StrEnum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    CLOSED = "closed"


class TaskStatus(StrEnum):
    TODO = "todo"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    DONE = "done"


class SyncStatus(StrEnum):
    STARTED = "started"
    SUCCESS = "success"
    FAILED = "failed"


class IntegrationHealth(StrEnum):
    ACTIVE = "active"
    ERROR = "error"
    UNKNOWN = "unknown"


class ForecastScenario(StrEnum):
    BASELINE = "baseline"
    HIGH_LOAD = "high_load"
    LOW_LOAD = "low_load"


class QueryResult(TypedDict):
    rows: list[dict[str, object]]
    row_count: int


class SyncLogRecord(TypedDict):
    id: int
    integration_name: str
    sync_type: str
    status: str  # started | success | failed
    records_synced: int
    error_message: str | None
    started_at: str  # ISO 8601
    completed_at: str | None


class IntegrationStatusRecord(TypedDict):
    integration_name: str
    status: str  # active | error | unknown
    last_sync: str | None
    last_error: str | None


class IncidentRecord(TypedDict):
    jira_id: str
    title: str
    description: str
    severity: str
    status: str
    squad: str
    created_at: str
    resolved_at: str | None


class TaskRecord(TypedDict):
    jira_id: str
    title: str
    description: str
    status: str
    squad: str
    assignee: str | None


class UptimeRequestRecord(TypedDict):
    jira_id: str
    requester: str
    environment: str
    requested_hours: float
    delivered_hours: float
    sla_met: bool
    window_start: str
    window_end: str


class CostRecord(TypedDict):
    date: str  # YYYY-MM-DD
    environment: str
    service: str
    resource: str | None
    cost_usd: float
    ics_credits_applied: float


class CostForecastRecord(TypedDict):
    forecast_date: str
    environment: str
    scenario: str
    predicted_cost: float
    confidence_lower: float
    confidence_upper: float


class DailyCost(TypedDict):
    date: str
    cost: float


class SLAMetricRecord(TypedDict):
    week_start: str
    week_end: str
    total_requested_hours: float
    total_delivered_hours: float
    sla_percentage: float


class MonthlyBudgetRecord(TypedDict):
    month: str  # YYYY-MM-01
    environment: str
    budget_usd: float
    actual_usd: float | None
    variance_usd: float | None
    variance_percentage: float | None
