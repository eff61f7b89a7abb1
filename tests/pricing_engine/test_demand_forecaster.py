# This test file validates the demand forecast grid and its history tiers.
# It exists to ensure forecasts cover the requested window exactly once per tick,
# reject oversized windows, and report which history tier shaped each point.

from __future__ import annotations

from dataclasses import replace
from datetime import UTC, datetime, timedelta

import pandas as pd
import pytest

from src.pricing_engine.demand_forecaster import (
    DemandForecaster,
    build_demand_profile,
    demand_level_for_ratio,
)
from src.pricing_engine.engine_config import EngineConfig
from src.pricing_engine.errors import HistoricalDataUnavailableError, PricingValidationError
from src.pricing_engine.historical_store import InMemoryHistoricalDataStore
from src.pricing_engine.models import ForecastPeriod, Location

NOW = datetime(2024, 5, 15, 14, 0, tzinfo=UTC)
NYC = Location(lat=40.7128, lng=-74.006, currency="USD", country_code="US")


class FailingHistoryStore(InMemoryHistoricalDataStore):
    def demand_history(self, **_: object) -> pd.DataFrame:
        raise HistoricalDataUnavailableError("database offline")


def _weekly_history(weeks: int, *, hour: int, demand: float, supply: float) -> InMemoryHistoricalDataStore:
    store = InMemoryHistoricalDataStore()
    target_day = NOW.replace(hour=hour)
    for week in range(1, weeks + 1):
        store.add_observation(
            location=NYC,
            category="rides",
            bucket_start_ts=target_day + timedelta(days=1) - timedelta(weeks=week),
            demand=demand,
            supply=supply,
        )
    return store


def test_grid_has_one_point_per_tick() -> None:
    forecaster = DemandForecaster(config=EngineConfig(), clock=lambda: NOW)
    period = ForecastPeriod(start=NOW, end=NOW + timedelta(hours=23), granularity="hour")

    points = forecaster.forecast(category="rides", location=NYC, period=period)

    assert len(points) == 24
    assert [point.timestamp for point in points] == [NOW + timedelta(hours=step) for step in range(24)]
    assert all(point.recommended_multiplier > 0 for point in points)
    forecaster.shutdown()


def test_single_instant_window_yields_one_point() -> None:
    forecaster = DemandForecaster(config=EngineConfig(), clock=lambda: NOW)
    points = forecaster.forecast(category="rides", location=NYC, period=ForecastPeriod(start=NOW, end=NOW))
    assert len(points) == 1
    forecaster.shutdown()


def test_oversized_window_is_rejected() -> None:
    config = replace(EngineConfig(), forecast_max_points=10)
    forecaster = DemandForecaster(config=config, clock=lambda: NOW)
    period = ForecastPeriod(start=NOW, end=NOW + timedelta(hours=10), granularity="hour")

    with pytest.raises(PricingValidationError) as excinfo:
        forecaster.forecast(category="rides", location=NYC, period=period)
    assert excinfo.value.field == "period"
    forecaster.shutdown()


def test_inverted_period_is_rejected() -> None:
    with pytest.raises(PricingValidationError) as excinfo:
        ForecastPeriod(start=NOW, end=NOW - timedelta(hours=1))
    assert excinfo.value.field == "period.end"


def test_hour_of_week_history_drives_surge_recommendation() -> None:
    store = _weekly_history(4, hour=17, demand=30, supply=10)
    forecaster = DemandForecaster(config=EngineConfig(), store=store, clock=lambda: NOW)
    thursday_17 = NOW.replace(hour=17) + timedelta(days=1)

    points = forecaster.forecast(
        category="rides", location=NYC, period=ForecastPeriod(start=thursday_17, end=thursday_17)
    )

    point = points[0]
    assert "history:hour_of_week" in point.factors
    assert "surge:high" in point.factors
    assert point.demand_level == "surge"
    assert point.recommended_multiplier == pytest.approx(2.0)
    forecaster.shutdown()


def test_sparse_history_uses_lower_confidence_tier() -> None:
    store = _weekly_history(4, hour=17, demand=30, supply=10)
    forecaster = DemandForecaster(config=EngineConfig(), store=store, clock=lambda: NOW)
    dense_tick = NOW.replace(hour=17) + timedelta(days=1)
    sparse_tick = NOW.replace(hour=9) + timedelta(days=1)

    dense = forecaster.forecast(category="rides", location=NYC, period=ForecastPeriod(start=dense_tick, end=dense_tick))
    sparse = forecaster.forecast(
        category="rides", location=NYC, period=ForecastPeriod(start=sparse_tick, end=sparse_tick)
    )

    assert "history:global" in sparse[0].factors
    assert sparse[0].confidence < dense[0].confidence
    forecaster.shutdown()


def test_history_failure_forecasts_from_calendar_only() -> None:
    forecaster = DemandForecaster(config=EngineConfig(), store=FailingHistoryStore(), clock=lambda: NOW)
    late = NOW.replace(hour=23)

    points = forecaster.forecast(category="rides", location=NYC, period=ForecastPeriod(start=late, end=late))

    assert points[0].factors == ("history:no_history", "time:late_night")
    assert points[0].recommended_multiplier == pytest.approx(1.2)
    forecaster.shutdown()


def test_day_granularity_applies_weekend_multiplier() -> None:
    forecaster = DemandForecaster(config=EngineConfig(), clock=lambda: NOW)
    saturday = datetime(2024, 5, 18, tzinfo=UTC)

    points = forecaster.forecast(
        category="rides",
        location=NYC,
        period=ForecastPeriod(start=saturday, end=saturday, granularity="day"),
    )

    assert "weekend" in points[0].factors
    assert points[0].recommended_multiplier == pytest.approx(1.1)
    forecaster.shutdown()


def test_profile_and_level_helpers() -> None:
    history = pd.DataFrame(
        {
            "bucket_start_ts": [NOW, NOW + timedelta(hours=1)],
            "demand": [10.0, 30.0],
            "supply": [10.0, 0.0],
        }
    )
    profile = build_demand_profile(history)
    assert profile.global_count == 2
    assert profile.global_ratio == pytest.approx(15.5)
    assert demand_level_for_ratio(0.5) == "low"
    assert demand_level_for_ratio(1.0) == "medium"
    assert demand_level_for_ratio(1.5) == "high"
    assert demand_level_for_ratio(2.5) == "surge"
