"""Jira vocabulary → internal enum mapping tables.

Each table is an ordered tuple of (keywords, result).  The first entry with a
keyword contained in the lower-cased input wins; if nothing matches (or the
input is absent) the table's default applies.  Order matters: "highest" must
be checked before "high", and "in progress" before anything else for statuses.
"""

from enum import StrEnum

from infraops.store.models import IncidentStatus, Severity, TaskStatus

MappingTable = tuple[tuple[tuple[str, ...], StrEnum], ...]

PRIORITY_TO_SEVERITY: MappingTable = (
    (("critical", "highest"), Severity.CRITICAL),
    (("high",), Severity.HIGH),
    (("low", "lowest"), Severity.LOW),
)
DEFAULT_SEVERITY = Severity.MEDIUM

STATUS_TO_INCIDENT_STATUS: MappingTable = (
    (("in progress", "investigating"), IncidentStatus.IN_PROGRESS),
    (("resolved", "fixed"), IncidentStatus.RESOLVED),
    (("closed", "done"), IncidentStatus.CLOSED),
)
DEFAULT_INCIDENT_STATUS = IncidentStatus.OPEN

STATUS_TO_TASK_STATUS: MappingTable = (
    (("in progress",), TaskStatus.IN_PROGRESS),
    (("blocked", "waiting"), TaskStatus.BLOCKED),
    (("done", "closed"), TaskStatus.DONE),
)
DEFAULT_TASK_STATUS = TaskStatus.TODO


def match_vocabulary(value: str | None, table: MappingTable, default: StrEnum) -> StrEnum:
    """Resolve an external label against an ordered mapping table."""
    if not value:
        return default
    lowered = value.lower()
    for keywords, result in table:
        if any(k in lowered for k in keywords):
            return result
    return default


def map_priority_to_severity(priority: str | None) -> Severity:
    return Severity(match_vocabulary(priority, PRIORITY_TO_SEVERITY, DEFAULT_SEVERITY))


def map_incident_status(status: str | None) -> IncidentStatus:
    return IncidentStatus(match_vocabulary(status, STATUS_TO_INCIDENT_STATUS, DEFAULT_INCIDENT_STATUS))


def map_task_status(status: str | None) -> TaskStatus:
    return TaskStatus(match_vocabulary(status, STATUS_TO_TASK_STATUS, DEFAULT_TASK_STATUS))
