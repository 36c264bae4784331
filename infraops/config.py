from functools import lru_cache
from typing import ClassVar

from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_SYNC_INTERVAL_CRON = "0 */6 * * *"  # every 6 hours
DEFAULT_FORECAST_CRON = "0 2 * * *"  # daily at 02:00
DEFAULT_SLA_CRON = "0 3 * * 1"  # Monday at 03:00


class Settings(BaseSettings):
    """Application settings loaded from environment variables / .env file."""

    # Jira Cloud (optional; empty string means not configured)
    jira_base_url: str = ""
    jira_email: str = ""
    jira_api_token: str = ""
    jira_project_key: str = "INFRA"

    # AWS Cost Explorer (optional; empty string means not configured)
    aws_access_key_id: str = ""
    aws_secret_access_key: str = ""
    aws_region: str = "us-east-1"

    # SQLite store
    database_path: str = "infraops.db"

    # Schedules (empty = use the default expression)
    sync_interval_cron: str = DEFAULT_SYNC_INTERVAL_CRON
    forecast_cron: str = DEFAULT_FORECAST_CRON
    sla_cron: str = DEFAULT_SLA_CRON
    initial_sync_delay_seconds: int = 5
    forecast_days: int = 30

    # Deadlines for outbound calls and whole sync runs
    http_timeout_seconds: float = 30.0
    sync_timeout_seconds: float = 600.0

    # Prometheus exposition port (0 = disabled)
    metrics_port: int = 0
    log_level: str = "INFO"

    # Consumed by the report renderer, not by the worker itself
    report_output_dir: str = "reports"

    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Lazily load and cache settings. Fails at first call, not at import time."""
    return Settings()
