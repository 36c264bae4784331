"""Shared pytest configuration and fixtures."""

from collections.abc import Generator
from datetime import UTC, datetime
from typing import Any
from unittest.mock import patch

import pytest

from infraops.config import Settings, get_settings
from infraops.forecast.engine import ForecastEngine
from infraops.integrations.cost_explorer import CostExplorerClient
from infraops.integrations.jira import JiraClient
from infraops.store.db import Store
from infraops.sync.orchestrator import SyncOrchestrator

FIXED_NOW = datetime(2026, 10, 19, 12, 0, 0, tzinfo=UTC)

JIRA_URL = "https://jira.test"
CE_URL = "https://ce.us-east-1.amazonaws.com/"


def fixed_clock() -> datetime:
    return FIXED_NOW


@pytest.fixture(autouse=True)
def _no_dotenv() -> Generator[None]:
    """Block .env loading so a developer's local credentials never leak into tests."""
    get_settings.cache_clear()
    original = Settings.model_config.get("env_file")
    Settings.model_config["env_file"] = None

    try:
        yield
    finally:
        Settings.model_config["env_file"] = original
        get_settings.cache_clear()


@pytest.fixture
def store() -> Generator[Store]:
    """An initialized in-memory store."""
    s = Store.open(":memory:")
    try:
        yield s
    finally:
        s.close()


@pytest.fixture
def jira_client(store: Store) -> JiraClient:
    return JiraClient(
        store,
        base_url=JIRA_URL,
        email="ops@test.com",
        api_token="jira-test-token",
        project_key="INFRA",
        timeout=5.0,
        clock=fixed_clock,
    )


@pytest.fixture
def cost_client(store: Store) -> CostExplorerClient:
    return CostExplorerClient(
        store,
        access_key_id="AKIDEXAMPLE",
        secret_access_key="wJalrXUtnFEMI/K7MDENG+bPxRfiCYEXAMPLEKEY",
        region="us-east-1",
        timeout=5.0,
        clock=fixed_clock,
    )


@pytest.fixture
def forecast_engine(store: Store) -> ForecastEngine:
    return ForecastEngine(store, clock=fixed_clock)


@pytest.fixture
def orchestrator(
    store: Store,
    jira_client: JiraClient,
    cost_client: CostExplorerClient,
    forecast_engine: ForecastEngine,
) -> SyncOrchestrator:
    return SyncOrchestrator(
        store,
        jira_client,
        cost_client,
        forecast_engine,
        forecast_days=3,
        sync_timeout=5.0,
        clock=fixed_clock,
    )


@pytest.fixture
def mock_settings() -> Generator[Any]:
    """Provide fake settings so tests don't need a .env file.

    Patches get_settings at every import site so cached references are overridden.
    """
    fake_settings = Settings(
        jira_base_url=JIRA_URL,
        jira_email="ops@test.com",
        jira_api_token="jira-test-token",
        jira_project_key="INFRA",
        aws_access_key_id="AKIDEXAMPLE",
        aws_secret_access_key="test-secret",
        aws_region="us-east-1",
        database_path=":memory:",
        http_timeout_seconds=5.0,
        sync_timeout_seconds=5.0,
        log_level="WARNING",
    )
    with (
        patch("infraops.config.get_settings", return_value=fake_settings),
        patch("infraops.cli.get_settings", return_value=fake_settings),
    ):
        yield fake_settings
