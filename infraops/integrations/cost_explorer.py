"""AWS Cost Explorer connector: daily cost sync, budget variance and ICS credits.

Requests are signed locally with Signature Version 4 (see ``signing``) and sent
over httpx; no AWS SDK is involved.
"""

import json
import logging
import math
from collections.abc import Callable
from datetime import UTC, date, datetime, timedelta

import httpx
from pydantic import BaseModel, Field, ValidationError

from infraops.errors import ConnectivityError
from infraops.integrations.signing import RequestSigner
from infraops.store.db import Store
from infraops.store.models import CostRecord

logger = logging.getLogger(__name__)

INTEGRATION_NAME = "aws_cost_explorer"
SERVICE = "ce"
TARGET_PREFIX = "AWSInsightsIndexService"
CONTENT_TYPE = "application/x-amz-json-1.1"
DEFAULT_TIMEOUT_SECONDS = 30.0
ENVIRONMENT_TAG = "Environment"
UNKNOWN = "Unknown"
NO_BURN_REMAINING_DAYS = 999
TEST_LOOKBACK_DAYS = 7
MAX_PAGES = 50


# --- Response models ---


class CostMetric(BaseModel):
    amount: str = Field(alias="Amount")
    unit: str = Field("USD", alias="Unit")


class CostGroup(BaseModel):
    keys: list[str] = Field(default_factory=list, alias="Keys")
    metrics: dict[str, CostMetric] = Field(alias="Metrics")


class TimePeriod(BaseModel):
    start: str = Field(alias="Start")
    end: str = Field(alias="End")


class ResultByTime(BaseModel):
    time_period: TimePeriod = Field(alias="TimePeriod")
    groups: list[dict[str, object]] = Field(default_factory=list, alias="Groups")


# --- Helpers ---


def _environment_from_tag(key: str | None) -> str:
    """Cost Explorer returns tag group keys as ``Environment$<value>``."""
    if not key:
        return UNKNOWN
    prefix = f"{ENVIRONMENT_TAG}$"
    value = key[len(prefix) :] if key.startswith(prefix) else key
    return value or UNKNOWN


def _month_bounds(month: str | date) -> tuple[str, str]:
    """Return [first day, first day of next month) as ISO dates."""
    start = date.fromisoformat(month) if isinstance(month, str) else month
    start = start.replace(day=1)
    end = start.replace(year=start.year + 1, month=1) if start.month == 12 else start.replace(month=start.month + 1)
    return start.isoformat(), end.isoformat()


def cost_records_from_response(data: dict[str, object]) -> list[CostRecord]:
    """Map a GetCostAndUsage response to aggregate cost records.

    Groups with a zero (or negative) cost are dropped.  Groups that fail
    validation or carry an unparseable amount are skipped with a warning.
    """
    records: list[CostRecord] = []
    results = data.get("ResultsByTime")
    if not isinstance(results, list):
        return records

    for raw_result in results:
        try:
            result = ResultByTime.model_validate(raw_result)
        except ValidationError as e:
            logger.warning("Skipping malformed Cost Explorer period: %s", e)
            continue

        for raw_group in result.groups:
            try:
                group = CostGroup.model_validate(raw_group)
                cost = float(group.metrics["UnblendedCost"].amount)
            except (ValidationError, KeyError, ValueError) as e:
                logger.warning("Skipping malformed Cost Explorer group on %s: %s", result.time_period.start, e)
                continue
            if not math.isfinite(cost) or cost <= 0:
                continue

            service = group.keys[0] if group.keys and group.keys[0] else UNKNOWN
            environment = _environment_from_tag(group.keys[1] if len(group.keys) > 1 else None)
            records.append(
                CostRecord(
                    date=result.time_period.start,
                    environment=environment,
                    service=service,
                    resource=None,
                    cost_usd=cost,
                    ics_credits_applied=0.0,
                )
            )
    return records


# --- Connector ---


class CostExplorerClient:
    """Signed Cost Explorer client writing into one store."""

    def __init__(
        self,
        store: Store,
        *,
        access_key_id: str,
        secret_access_key: str,
        region: str = "us-east-1",
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.region = region
        self.host = f"{SERVICE}.{region}.amazonaws.com"
        self.timeout = timeout
        self.signer = RequestSigner(access_key_id, secret_access_key, region, SERVICE)
        self._clock = clock or (lambda: datetime.now(UTC))

    async def _request(self, operation: str, payload: dict[str, object]) -> dict[str, object]:
        """Sign and POST one JSON 1.1 operation. Errors become ConnectivityError."""
        body = json.dumps(payload)
        target = f"{TARGET_PREFIX}.{operation}"
        signed = self.signer.sign(
            method="POST",
            path="/",
            headers={"content-type": CONTENT_TYPE, "host": self.host, "x-amz-target": target},
            payload=body,
            timestamp=self._clock(),
        )
        headers = {
            "Content-Type": CONTENT_TYPE,
            "X-Amz-Date": signed.amz_date,
            "X-Amz-Target": target,
            "Authorization": signed.authorization,
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(f"https://{self.host}/", content=body, headers=headers)
                _ = response.raise_for_status()
                data: dict[str, object] = response.json()
                return data
        except httpx.TimeoutException as e:
            raise ConnectivityError(INTEGRATION_NAME, f"{operation} timed out") from e
        except httpx.HTTPStatusError as e:
            raise ConnectivityError(
                INTEGRATION_NAME, f"HTTP {e.response.status_code} from {operation}: {e.response.text[:200]}"
            ) from e
        except httpx.HTTPError as e:
            raise ConnectivityError(INTEGRATION_NAME, f"Cannot connect to Cost Explorer: {e}") from e
        except ValueError as e:
            raise ConnectivityError(INTEGRATION_NAME, f"Invalid JSON from {operation}") from e

    async def fetch_cost_and_usage(
        self, start_date: str, end_date: str, *, max_pages: int = MAX_PAGES
    ) -> dict[str, object]:
        """Daily unblended cost grouped by service and Environment tag for [start, end).

        Follows ``NextPageToken`` and merges every page's ``ResultsByTime`` into
        a single response.
        """
        payload: dict[str, object] = {
            "TimePeriod": {"Start": start_date, "End": end_date},
            "Granularity": "DAILY",
            "Metrics": ["UnblendedCost"],
            "GroupBy": [
                {"Type": "DIMENSION", "Key": "SERVICE"},
                {"Type": "TAG", "Key": ENVIRONMENT_TAG},
            ],
        }
        results: list[object] = []
        seen_tokens: set[str] = set()
        for _ in range(max_pages):
            data = await self._request("GetCostAndUsage", payload)
            page = data.get("ResultsByTime")
            if isinstance(page, list):
                results.extend(page)
            token = data.get("NextPageToken")
            if not isinstance(token, str) or not token or token in seen_tokens:
                break
            seen_tokens.add(token)
            payload["NextPageToken"] = token
        else:
            logger.warning("Cost Explorer results truncated after %d pages", max_pages)
        return {"ResultsByTime": results}

    async def sync_costs(self, start_date: str, end_date: str) -> int:
        """Fetch costs for [start, end) and merge them as aggregate records."""
        logger.info("Syncing AWS costs from %s to %s...", start_date, end_date)
        data = await self.fetch_cost_and_usage(start_date, end_date)
        records = cost_records_from_response(data)
        for record in records:
            self.store.upsert_cost_record(record)
        logger.info("Synced %d cost records from AWS", len(records))
        return len(records)

    def calculate_monthly_budgets(self, month: str | date) -> int:
        """Refresh actual/variance on existing budget rows for a month.

        Environments without a stored budget are skipped, never created.
        Returns the number of budget rows updated.
        """
        month_start, month_end = _month_bounds(month)
        totals = self.store.get_cost_by_environment(month_start, month_end)
        updated = 0
        for environment, actual in totals.items():
            budget = self.store.get_monthly_budget(month_start, environment)
            if budget is None:
                continue
            budget_usd = budget["budget_usd"]
            variance = actual - budget_usd
            variance_pct = (variance / budget_usd) * 100 if budget_usd else 0.0
            self.store.update_budget_actuals(
                month_start,
                environment,
                actual_usd=actual,
                variance_usd=variance,
                variance_percentage=variance_pct,
            )
            updated += 1
        logger.info("Calculated monthly budgets for %s (%d updated)", month_start, updated)
        return updated

    def update_ics_credits(self, balance: float, burn_rate_per_day: float) -> int:
        """Record a new ICS credit balance. Returns the projected remaining days."""
        remaining = math.floor(balance / burn_rate_per_day) if burn_rate_per_day > 0 else NO_BURN_REMAINING_DAYS
        self.store.save_ics_credits(
            balance=balance,
            burn_rate_per_day=burn_rate_per_day,
            remaining_days=remaining,
            last_updated=self._clock().isoformat(),
        )
        logger.info("Updated ICS credits: balance=%.2f, burn_rate=%.2f", balance, burn_rate_per_day)
        return remaining

    async def test_connection(self) -> bool:
        """Run a 7-day lookback query without persisting anything."""
        end = self._clock().date()
        start = end - timedelta(days=TEST_LOOKBACK_DAYS)
        try:
            await self.fetch_cost_and_usage(start.isoformat(), end.isoformat(), max_pages=1)
        except ConnectivityError as e:
            logger.error("AWS Cost Explorer connection test failed: %s", e)
            return False
        logger.info("AWS Cost Explorer connection test successful")
        return True
