"""Exception taxonomy shared by connectors, the store and the orchestrator.

ConnectivityError and StoreError abort the current sync and are recorded in
the sync log.  DataShapeError is raised per external record and handled by
skipping that record.
"""


class InfraOpsError(Exception):
    """Base class for all errors raised by this package."""


class ConnectivityError(InfraOpsError):
    """Network, authentication or timeout failure talking to an external system."""

    def __init__(self, integration: str, message: str) -> None:
        super().__init__(f"{integration}: {message}")
        self.integration = integration


class DataShapeError(InfraOpsError):
    """An external record is missing a field required to build a local row."""


class StoreError(InfraOpsError):
    """The persistence layer rejected a read or write."""
