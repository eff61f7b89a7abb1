# This module forecasts demand levels and recommended multipliers over a future time grid.
# It exists so callers can plan around surges and so quotes can suggest cheaper nearby windows.
# Historical demand/supply is profiled by hour-of-week, then hour-of-day, then globally when sparse,
# and every point records which tier was used so sparse-history forecasts are visibly less certain.
# The forecaster is read-only: it never touches live surge smoothing state.

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

import pandas as pd

from src.pricing_engine.engine_config import EngineConfig
from src.pricing_engine.errors import PricingValidationError
from src.pricing_engine.factor_calculators import seasonal_factor, time_factor
from src.pricing_engine.historical_store import HISTORY_COLUMNS, HistoricalDataStore, bounded_store_call
from src.pricing_engine.models import ForecastPeriod, ForecastPoint, Location, PricingContext, PricingOptions
from src.pricing_engine.surge_calculator import surge_band_for_ratio
from src.pricing_engine.time_buckets import Clock, count_ticks, iter_ticks, season_for, utc_now

LOGGER = logging.getLogger("pricing.forecast")

TIER_BASE_CONFIDENCE = {
    "hour_of_week": 0.85,
    "day_of_week": 0.8,
    "hour_of_day": 0.7,
    "global": 0.5,
    "no_history": 0.3,
}


def demand_level_for_ratio(ratio: float) -> str:
    if ratio > 2.0:
        return "surge"
    if ratio > 1.2:
        return "high"
    if ratio >= 0.8:
        return "medium"
    return "low"


@dataclass(frozen=True)
class DemandProfile:
    hour_of_week: pd.DataFrame
    day_of_week: pd.DataFrame
    hour_of_day: pd.DataFrame
    global_ratio: float | None
    global_count: int


def build_demand_profile(history: pd.DataFrame) -> DemandProfile:
    """Aggregate demand/supply history into mean ratios per calendar key."""

    empty = pd.DataFrame(columns=["mean_ratio", "sample_count"])
    if history.empty:
        return DemandProfile(
            hour_of_week=empty, day_of_week=empty, hour_of_day=empty, global_ratio=None, global_count=0
        )

    frame = history.copy()
    frame["bucket_start_ts"] = pd.to_datetime(frame["bucket_start_ts"], utc=True)
    frame["ratio"] = frame["demand"].astype(float) / frame["supply"].astype(float).clip(lower=1.0)
    frame["dow"] = frame["bucket_start_ts"].dt.dayofweek.astype(int)
    frame["hour"] = frame["bucket_start_ts"].dt.hour.astype(int)

    def _aggregate(keys: list[str]) -> pd.DataFrame:
        return frame.groupby(keys)["ratio"].agg(mean_ratio="mean", sample_count="count")

    return DemandProfile(
        hour_of_week=_aggregate(["dow", "hour"]),
        day_of_week=_aggregate(["dow"]),
        hour_of_day=_aggregate(["hour"]),
        global_ratio=float(frame["ratio"].mean()),
        global_count=int(len(frame)),
    )


def _lookup(table: pd.DataFrame, key: object) -> tuple[float, int] | None:
    if table.empty or key not in table.index:
        return None
    row = table.loc[key]
    return float(row["mean_ratio"]), int(row["sample_count"])


class DemandForecaster:
    def __init__(
        self,
        *,
        config: EngineConfig,
        store: HistoricalDataStore | None = None,
        executor: ThreadPoolExecutor | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.config = config
        self.store = store
        self.clock = clock
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(max_workers=2, thread_name_prefix="forecast-history")

    def _load_history(self, *, location: Location, category: str, anchor: datetime) -> pd.DataFrame:
        if self.store is None:
            return pd.DataFrame(columns=HISTORY_COLUMNS)
        try:
            return bounded_store_call(
                self._executor,
                self.store.demand_history,
                timeout_seconds=self.config.external_timeout_seconds,
                location=location,
                category=category,
                start=anchor - timedelta(days=self.config.forecast_lookback_days),
                end=anchor,
            )
        except Exception:
            LOGGER.warning("Demand history unavailable for %s; forecasting without history", category, exc_info=True)
            return pd.DataFrame(columns=HISTORY_COLUMNS)

    def _resolve_ratio(self, profile: DemandProfile, tick_utc: datetime, granularity: str) -> tuple[float, int, str]:
        min_samples = self.config.forecast_min_samples
        if granularity == "hour":
            tiers = [
                ("hour_of_week", profile.hour_of_week, (tick_utc.weekday(), tick_utc.hour)),
                ("hour_of_day", profile.hour_of_day, tick_utc.hour),
            ]
        elif granularity == "day":
            tiers = [("day_of_week", profile.day_of_week, tick_utc.weekday())]
        else:
            tiers = []

        for tier_name, table, key in tiers:
            found = _lookup(table, key)
            if found is not None and found[1] >= min_samples:
                return found[0], found[1], tier_name
        if profile.global_ratio is not None and profile.global_count >= min_samples:
            return profile.global_ratio, profile.global_count, "global"
        return 1.0, 0, "no_history"

    def _confidence(self, tier: str, sample_count: int) -> float:
        base = TIER_BASE_CONFIDENCE[tier]
        if tier == "no_history":
            return base
        saturation = min(1.0, sample_count / float(self.config.forecast_min_samples * 3))
        return round(base * (0.5 + 0.5 * saturation), 3)

    def _calendar_multiplier(
        self, *, location: Location, tick: datetime, granularity: str, season: str | None
    ) -> tuple[float, list[str]]:
        tick_season = season or season_for(tick, lat=location.lat)
        context = PricingContext(
            location=location,
            time_of_day=tick.hour,
            day_of_week=tick.weekday(),
            season=tick_season,
        )
        options = PricingOptions()
        labels: list[str] = []

        seasonal_value, _ = seasonal_factor(context, options, self.config)
        multiplier = seasonal_value
        if seasonal_value != 1.0:
            labels.append(f"season:{tick_season}")

        if granularity == "hour":
            time_value, _ = time_factor(context, options, self.config)
            multiplier *= time_value
            for band in self.config.time_bands:
                if band.contains(tick.hour) and band.multiplier != 1.0:
                    labels.append(f"time:{band.label}")
                    break
            if context.is_weekend:
                labels.append("weekend")
        elif granularity == "day" and context.is_weekend:
            multiplier *= self.config.weekend_multiplier
            labels.append("weekend")
        return multiplier, labels

    def forecast(
        self,
        *,
        category: str,
        location: Location,
        period: ForecastPeriod,
        season: str | None = None,
    ) -> list[ForecastPoint]:
        start = period.start if period.start.tzinfo else period.start.replace(tzinfo=UTC)
        end = period.end if period.end.tzinfo else period.end.replace(tzinfo=UTC)
        tick_count = count_ticks(start, end, period.granularity)
        if tick_count > self.config.forecast_max_points:
            raise PricingValidationError(
                "period",
                f"window produces {tick_count} points; at most {self.config.forecast_max_points} are allowed",
            )

        anchor = min(self.clock(), start)
        profile = build_demand_profile(self._load_history(location=location, category=category, anchor=anchor))

        points: list[ForecastPoint] = []
        for tick in iter_ticks(start, end, period.granularity):
            ratio, sample_count, tier = self._resolve_ratio(profile, tick.astimezone(UTC), period.granularity)
            surge_multiplier, surge_level = surge_band_for_ratio(ratio, self.config.surge_bands)
            calendar_multiplier, labels = self._calendar_multiplier(
                location=location, tick=tick, granularity=period.granularity, season=season
            )
            factors = [f"history:{tier}"]
            if surge_level != "none":
                factors.append(f"surge:{surge_level}")
            factors.extend(labels)
            points.append(
                ForecastPoint(
                    timestamp=tick,
                    demand_level=demand_level_for_ratio(ratio),
                    recommended_multiplier=round(surge_multiplier * calendar_multiplier, 4),
                    confidence=self._confidence(tier, sample_count),
                    factors=tuple(factors),
                )
            )
        return points

    def shutdown(self) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=False, cancel_futures=True)
