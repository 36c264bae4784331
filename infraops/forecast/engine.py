"""Cost forecasting and anomaly detection over the merged cost history.

The statistical basis is the trailing window of daily cost totals for one
environment (up to 30 days, ending today).  Forecasts use a 7-day moving
average as the baseline and the population standard deviation of the whole
window for the high/low scenarios and the 95% band.
"""

import logging
import math
from collections.abc import Callable, Sequence
from datetime import UTC, date, datetime, timedelta

from pydantic import BaseModel

from infraops.observability.metrics import COST_ANOMALIES_TOTAL, FORECAST_ROWS_TOTAL
from infraops.store.db import Store
from infraops.store.models import CostForecastRecord, ForecastScenario

logger = logging.getLogger(__name__)

HISTORY_WINDOW_DAYS = 30
MOVING_AVERAGE_WINDOW = 7
MIN_HISTORY_DAYS = 7
SCENARIO_SIGMA = 1.5
CONFIDENCE_Z = 1.96
SCENARIO_BAND = 0.10
ANOMALY_SIGMA = 2.0


class ScenarioForecast(BaseModel):
    scenario: ForecastScenario
    predicted_cost: float
    confidence_lower: float
    confidence_upper: float


class CostAnomaly(BaseModel):
    date: str
    cost: float
    threshold: float


class IcsBurnRate(BaseModel):
    balance: float
    burn_rate: float


def moving_average(values: Sequence[float], window: int) -> float:
    """Mean of the last ``window`` values (or of all values if fewer)."""
    recent = values[-window:]
    if not recent:
        return 0.0
    return sum(recent) / len(recent)


def population_std_dev(values: Sequence[float]) -> float:
    if not values:
        return 0.0
    mean = sum(values) / len(values)
    return math.sqrt(sum((v - mean) ** 2 for v in values) / len(values))


def build_scenarios(daily_costs: Sequence[float]) -> list[ScenarioForecast]:
    """Derive the baseline, high-load and low-load forecasts from a history.

    The baseline band is the 95% interval clamped at zero; the high/low
    bands are ±10% of their own value.
    """
    baseline = moving_average(daily_costs, MOVING_AVERAGE_WINDOW)
    sigma = population_std_dev(daily_costs)
    high = baseline + SCENARIO_SIGMA * sigma
    low = max(baseline - SCENARIO_SIGMA * sigma, 0.0)
    return [
        ScenarioForecast(
            scenario=ForecastScenario.BASELINE,
            predicted_cost=baseline,
            confidence_lower=max(baseline - CONFIDENCE_Z * sigma, 0.0),
            confidence_upper=baseline + CONFIDENCE_Z * sigma,
        ),
        ScenarioForecast(
            scenario=ForecastScenario.HIGH_LOAD,
            predicted_cost=high,
            confidence_lower=high * (1 - SCENARIO_BAND),
            confidence_upper=high * (1 + SCENARIO_BAND),
        ),
        ScenarioForecast(
            scenario=ForecastScenario.LOW_LOAD,
            predicted_cost=low,
            confidence_lower=low * (1 - SCENARIO_BAND),
            confidence_upper=low * (1 + SCENARIO_BAND),
        ),
    ]


class ForecastEngine:
    """Reads cost history from the store and writes forecasts back."""

    def __init__(self, store: Store, *, clock: Callable[[], datetime] | None = None) -> None:
        self.store = store
        self._clock = clock or (lambda: datetime.now(UTC))

    def _today(self) -> date:
        return self._clock().date()

    def _history_since(self) -> str:
        return (self._today() - timedelta(days=HISTORY_WINDOW_DAYS)).isoformat()

    def environments(self) -> list[str]:
        """Environments with cost records inside the trailing window."""
        return self.store.get_environments_since(self._history_since())

    def generate_forecasts(self, environment: str, days_to_forecast: int = 30) -> int:
        """Upsert forecasts for each of the next N days and all three scenarios.

        Returns the number of rows written; 0 when the history is shorter than
        seven days (not an error).
        """
        logger.info("Generating %d-day forecast for environment: %s", days_to_forecast, environment)
        history = self.store.get_daily_costs(environment, self._history_since())
        if len(history) < MIN_HISTORY_DAYS:
            logger.warning("Not enough historical data for forecasting %s (%d days)", environment, len(history))
            return 0

        scenarios = build_scenarios([d["cost"] for d in history])
        start = self._today() + timedelta(days=1)
        written = 0
        for offset in range(days_to_forecast):
            forecast_date = (start + timedelta(days=offset)).isoformat()
            for s in scenarios:
                self.store.upsert_cost_forecast(
                    CostForecastRecord(
                        forecast_date=forecast_date,
                        environment=environment,
                        scenario=s.scenario.value,
                        predicted_cost=s.predicted_cost,
                        confidence_lower=s.confidence_lower,
                        confidence_upper=s.confidence_upper,
                    )
                )
                written += 1

        FORECAST_ROWS_TOTAL.labels(environment=environment).inc(written)
        logger.info("Generated forecasts for %d days for environment: %s", days_to_forecast, environment)
        return written

    def detect_anomalies(self, environment: str, days: int = 7) -> list[CostAnomaly]:
        """Days in the trailing window whose total exceeds mean + 2σ.

        ``days`` is accepted for API compatibility; the statistics always use
        the full 30-day window.
        """
        history = self.store.get_daily_costs(environment, self._history_since())
        if not history:
            return []

        costs = [d["cost"] for d in history]
        mean = sum(costs) / len(costs)
        threshold = mean + ANOMALY_SIGMA * population_std_dev(costs)
        anomalies = [
            CostAnomaly(date=d["date"], cost=d["cost"], threshold=threshold) for d in history if d["cost"] > threshold
        ]

        if anomalies:
            COST_ANOMALIES_TOTAL.labels(environment=environment).inc(len(anomalies))
        logger.info("Detected %d cost anomalies for environment: %s", len(anomalies), environment)
        return anomalies

    def calculate_ics_burn_rate(self) -> IcsBurnRate:
        """Current ICS balance and average daily credit usage. Writes nothing."""
        balance = self.store.get_latest_ics_balance()
        burn_rate = self.store.get_average_ics_credits_applied(self._history_since())
        return IcsBurnRate(balance=balance or 0.0, burn_rate=burn_rate)
