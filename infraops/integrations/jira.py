"""Jira Cloud connector. Syncs incidents, tasks and uptime requests.

Each sync issues one bounded JQL search (newest first), normalizes Jira's
priority/status vocabulary into internal enums and merges every issue into the
store by its issue key.  Issues that cannot be turned into a row are skipped
and not counted.
"""

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import TypedDict

import httpx

from infraops.errors import ConnectivityError, DataShapeError
from infraops.integrations.vocabulary import map_incident_status, map_priority_to_severity, map_task_status
from infraops.store.db import Store
from infraops.store.models import IncidentRecord, TaskRecord, UptimeRequestRecord

logger = logging.getLogger(__name__)

INTEGRATION_NAME = "jira"
DEFAULT_TIMEOUT_SECONDS = 30.0
MAX_RESULTS = 100
UNKNOWN = "Unknown"

SEARCH_PATH = "/rest/api/3/search"
MYSELF_PATH = "/rest/api/3/myself"

# Custom field IDs configured in the INFRA Jira project.
SQUAD_FIELD = "customfield_10001"
REQUESTER_FIELD = "customfield_10002"
ENVIRONMENT_FIELD = "customfield_10003"
REQUESTED_HOURS_FIELD = "customfield_10004"
DELIVERED_HOURS_FIELD = "customfield_10005"
UPTIME_WINDOW_FIELD = "customfield_10006"

INCIDENT_FIELDS = f"summary,description,priority,status,created,resolutiondate,{SQUAD_FIELD}"
TASK_FIELDS = f"summary,description,status,assignee,{SQUAD_FIELD}"
UPTIME_FIELDS = ",".join(
    [
        "summary",
        REQUESTER_FIELD,
        ENVIRONMENT_FIELD,
        REQUESTED_HOURS_FIELD,
        DELIVERED_HOURS_FIELD,
        UPTIME_WINDOW_FIELD,
    ]
)


# --- Response TypedDicts ---


class JiraIssue(TypedDict, total=False):
    id: str
    key: str
    fields: dict[str, object]


# --- Field helpers ---


def _adf_to_text(node: object) -> str:
    """Flatten an Atlassian Document Format node into plain text."""
    if isinstance(node, str):
        return node
    if isinstance(node, dict):
        if node.get("type") == "text":
            return str(node.get("text", ""))
        content = node.get("content")
        if isinstance(content, list):
            parts = [_adf_to_text(child) for child in content]
            sep = "\n" if node.get("type") == "doc" else ""
            return sep.join(p for p in parts if p)
    return ""


def _text_field(value: object, default: str = UNKNOWN) -> str:
    """Read a text-ish custom field (plain string, option or user object)."""
    if isinstance(value, dict):
        for key in ("value", "displayName", "name"):
            inner = value.get(key)
            if inner:
                return str(inner)
        return default
    if value is None or value == "":
        return default
    return str(value)


def _named(value: object) -> str | None:
    if isinstance(value, dict):
        name = value.get("name")
        return str(name) if name else None
    return None


def _hours(value: object, field: str) -> float:
    if value is None or value == "":
        return 0.0
    try:
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as e:
        raise DataShapeError(f"{field} is not a number: {value!r}") from e


def _issue_parts(issue: JiraIssue) -> tuple[str, dict[str, object]]:
    if not isinstance(issue, dict):
        raise DataShapeError(f"Issue is not an object: {issue!r}")
    key = issue.get("key")
    fields = issue.get("fields")
    if not key or not isinstance(fields, dict):
        raise DataShapeError(f"Issue without key or fields: {issue.get('id', '?')}")
    return key, fields


def _summary(key: str, fields: dict[str, object]) -> str:
    summary = fields.get("summary")
    if not summary:
        raise DataShapeError(f"{key} has no summary")
    return str(summary)


# --- Record builders ---


def build_incident(issue: JiraIssue, now: datetime) -> IncidentRecord:
    """Build an incident row from a Jira issue. Raises DataShapeError if unusable."""
    key, fields = _issue_parts(issue)
    resolved = fields.get("resolutiondate")
    return IncidentRecord(
        jira_id=key,
        title=_summary(key, fields),
        description=_adf_to_text(fields.get("description")),
        severity=map_priority_to_severity(_named(fields.get("priority"))).value,
        status=map_incident_status(_named(fields.get("status"))).value,
        squad=_text_field(fields.get(SQUAD_FIELD)),
        created_at=str(fields.get("created") or now.isoformat()),
        resolved_at=str(resolved) if resolved else None,
    )


def build_task(issue: JiraIssue) -> TaskRecord:
    """Build a task row from a Jira issue. Raises DataShapeError if unusable."""
    key, fields = _issue_parts(issue)
    assignee = fields.get("assignee")
    return TaskRecord(
        jira_id=key,
        title=_summary(key, fields),
        description=_adf_to_text(fields.get("description")),
        status=map_task_status(_named(fields.get("status"))).value,
        squad=_text_field(fields.get(SQUAD_FIELD)),
        assignee=str(assignee["displayName"]) if isinstance(assignee, dict) and assignee.get("displayName") else None,
    )


def build_uptime_request(issue: JiraIssue, now: datetime) -> UptimeRequestRecord:
    """Build an uptime request row; ``sla_met`` is fixed at ingestion time.

    A missing window boundary defaults to ``now``.
    """
    key, fields = _issue_parts(issue)
    requested = _hours(fields.get(REQUESTED_HOURS_FIELD), REQUESTED_HOURS_FIELD)
    delivered = _hours(fields.get(DELIVERED_HOURS_FIELD), DELIVERED_HOURS_FIELD)
    window = fields.get(UPTIME_WINDOW_FIELD)
    window = window if isinstance(window, dict) else {}
    return UptimeRequestRecord(
        jira_id=key,
        requester=_text_field(fields.get(REQUESTER_FIELD)),
        environment=_text_field(fields.get(ENVIRONMENT_FIELD)),
        requested_hours=requested,
        delivered_hours=delivered,
        sla_met=delivered >= requested,
        window_start=str(window.get("start") or now.isoformat()),
        window_end=str(window.get("end") or now.isoformat()),
    )


# --- Connector ---


class JiraClient:
    """Authenticated Jira REST client bound to one project and one store."""

    def __init__(
        self,
        store: Store,
        *,
        base_url: str,
        email: str,
        api_token: str,
        project_key: str = "INFRA",
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.base_url = base_url.rstrip("/")
        self.email = email
        self.api_token = api_token
        self.project_key = project_key
        self.timeout = timeout
        self._clock = clock or (lambda: datetime.now(UTC))

    # --- HTTP helper ---

    async def _get(self, path: str, params: dict[str, str | int] | None = None) -> dict[str, object]:
        """Authenticated GET. Any transport or HTTP error becomes a ConnectivityError."""
        if not self.base_url:
            raise ConnectivityError(INTEGRATION_NAME, "JIRA_BASE_URL is not configured")
        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout,
                auth=(self.email, self.api_token),
                headers={"Accept": "application/json"},
            ) as client:
                response = await client.get(url, params=params)
                _ = response.raise_for_status()
                data: dict[str, object] = response.json()
                return data
        except httpx.TimeoutException as e:
            raise ConnectivityError(INTEGRATION_NAME, f"Request to {path} timed out") from e
        except httpx.HTTPStatusError as e:
            raise ConnectivityError(
                INTEGRATION_NAME, f"HTTP {e.response.status_code} from {path}: {e.response.text[:200]}"
            ) from e
        except httpx.HTTPError as e:
            raise ConnectivityError(INTEGRATION_NAME, f"Cannot connect to Jira: {e}") from e
        except ValueError as e:
            raise ConnectivityError(INTEGRATION_NAME, f"Invalid JSON from {path}") from e

    async def search(self, jql: str, fields: str) -> list[JiraIssue]:
        """Run a bounded JQL search and return the raw issues."""
        data = await self._get(SEARCH_PATH, params={"jql": jql, "maxResults": MAX_RESULTS, "fields": fields})
        issues = data.get("issues")
        return issues if isinstance(issues, list) else []  # type: ignore[return-value]

    # --- Syncs ---

    async def sync_incidents(self) -> int:
        logger.info("Syncing incidents from Jira...")
        jql = f"project = {self.project_key} AND type = Incident ORDER BY created DESC"
        issues = await self.search(jql, INCIDENT_FIELDS)
        now = self._clock()
        synced = 0
        for issue in issues:
            try:
                record = build_incident(issue, now)
            except DataShapeError as e:
                logger.warning("Skipping Jira incident: %s", e)
                continue
            self.store.upsert_incident(record)
            synced += 1
        logger.info("Synced %d incidents from Jira", synced)
        return synced

    async def sync_tasks(self) -> int:
        logger.info("Syncing tasks from Jira...")
        jql = f"project = {self.project_key} AND type IN (Task, Story, Bug) ORDER BY created DESC"
        issues = await self.search(jql, TASK_FIELDS)
        synced = 0
        for issue in issues:
            try:
                record = build_task(issue)
            except DataShapeError as e:
                logger.warning("Skipping Jira task: %s", e)
                continue
            self.store.upsert_task(record)
            synced += 1
        logger.info("Synced %d tasks from Jira", synced)
        return synced

    async def sync_uptime_requests(self) -> int:
        logger.info("Syncing uptime requests from Jira...")
        jql = f'project = {self.project_key} AND type = "Uptime Request" ORDER BY created DESC'
        issues = await self.search(jql, UPTIME_FIELDS)
        now = self._clock()
        synced = 0
        for issue in issues:
            try:
                record = build_uptime_request(issue, now)
            except DataShapeError as e:
                logger.warning("Skipping Jira uptime request: %s", e)
                continue
            self.store.upsert_uptime_request(record)
            synced += 1
        logger.info("Synced %d uptime requests from Jira", synced)
        return synced

    async def test_connection(self) -> bool:
        try:
            await self._get(MYSELF_PATH)
        except ConnectivityError as e:
            logger.error("Jira connection test failed: %s", e)
            return False
        logger.info("Jira connection test successful")
        return True
