# This module turns a demand-to-supply ratio into a banded surge multiplier for a location cell.
# It exists so every quote in the same cell and category sees one consistent, smoothly moving surge.
# Demand and supply come from the historical store under a bounded timeout, falling back to the
# caller's context snapshot and finally to a neutral ratio when neither is available.
# Smoothing state is kept per (cell, category) and updated atomically under a per-key lock.

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta

from src.pricing_engine.engine_config import EngineConfig, SurgeBand
from src.pricing_engine.historical_store import DemandSupplySnapshot, HistoricalDataStore, bounded_store_call
from src.pricing_engine.metrics import SURGE_SIGNAL_TOTAL
from src.pricing_engine.models import Location, PricingContext, SurgeInfo
from src.pricing_engine.time_buckets import Clock, utc_now

LOGGER = logging.getLogger("pricing.surge")

SURGE_REASONS = {
    "none": "Normal demand",
    "low": "Slightly elevated demand",
    "medium": "Elevated demand in your area",
    "high": "High demand in your area",
    "extreme": "Extreme demand with very limited availability",
}


def demand_supply_ratio(demand: float, supply: float) -> float:
    return float(demand) / max(float(supply), 1.0)


def surge_band_for_ratio(ratio: float, bands: tuple[SurgeBand, ...]) -> tuple[float, str]:
    """Return `(multiplier, level)` for the first band whose threshold the ratio exceeds."""

    for band in bands:
        if ratio > band.threshold:
            return band.multiplier, band.level
    return 1.0, "none"


def level_for_multiplier(multiplier: float, bands: tuple[SurgeBand, ...]) -> str:
    for band in bands:
        if multiplier >= band.multiplier:
            return band.level
    return "none"


@dataclass(frozen=True)
class SurgeState:
    multiplier: float
    updated_at: datetime


class SurgeCalculator:
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
        self._executor = executor or ThreadPoolExecutor(max_workers=2, thread_name_prefix="surge-signal")
        self._states: dict[tuple[tuple[float, float], str], SurgeState] = {}
        self._key_locks: dict[tuple[tuple[float, float], str], threading.Lock] = {}
        self._key_locks_guard = threading.Lock()

    def _lock_for(self, key: tuple[tuple[float, float], str]) -> threading.Lock:
        with self._key_locks_guard:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._key_locks[key] = lock
            return lock

    def _fetch_snapshot(
        self, *, location: Location, category: str, start: datetime, end: datetime
    ) -> tuple[DemandSupplySnapshot | None, bool]:
        """Return `(snapshot, store_failed)`; an empty window is not a failure."""
        if self.store is None:
            return None, False
        try:
            snapshot = bounded_store_call(
                self._executor,
                self.store.demand_supply_snapshot,
                timeout_seconds=self.config.external_timeout_seconds,
                location=location,
                category=category,
                start=start,
                end=end,
            )
        except Exception:
            LOGGER.warning(
                "Demand/supply lookup failed for %s/%s; using fallback signal",
                location.cell(self.config.location_precision),
                category,
                exc_info=True,
            )
            return None, True
        return snapshot, False

    def _signal(
        self,
        *,
        location: Location,
        category: str,
        start: datetime,
        end: datetime,
        context: PricingContext | None,
    ) -> tuple[float, float, str, bool]:
        snapshot, store_failed = self._fetch_snapshot(location=location, category=category, start=start, end=end)
        if snapshot is not None:
            return snapshot.demand, snapshot.supply, "historical_store", False
        if context is not None:
            demand = self.config.demand_level_values.get(context.demand_level, 1.0)
            supply = self.config.supply_level_values.get(context.supply_level, 1.0)
            return demand, supply, "context", store_failed
        return 1.0, 1.0, "neutral", store_failed

    def _smooth(
        self,
        key: tuple[tuple[float, float], str],
        raw: float,
        now: datetime,
        *,
        commit: bool = True,
    ) -> tuple[float, bool]:
        with self._lock_for(key):
            previous = self._states.get(key)
            window = timedelta(seconds=self.config.smoothing_window_seconds)
            applied = raw
            smoothed = False
            if self.config.smoothing_enabled and previous is not None and now - previous.updated_at <= window:
                alpha = self.config.smoothing_alpha
                blended = alpha * raw + (1.0 - alpha) * previous.multiplier
                step = self.config.smoothing_max_step
                applied = min(previous.multiplier + step, max(previous.multiplier - step, blended))
                applied = max(1.0, applied)
                smoothed = True
            if commit:
                self._states[key] = SurgeState(multiplier=applied, updated_at=now)
            return applied, smoothed

    def calculate(
        self,
        *,
        location: Location,
        category: str,
        time_window_ms: int | None = None,
        context: PricingContext | None = None,
        at: datetime | None = None,
        commit: bool = True,
    ) -> SurgeInfo:
        """Compute the surge for a cell and category.

        With `commit=False` the smoothed value is read against the current state
        without recording it, so market lookups never move customer surge.
        """
        now = at or self.clock()
        window_ms = time_window_ms if time_window_ms is not None else self.config.surge_window_ms
        if window_ms <= 0:
            raise ValueError("time_window_ms must be > 0")
        start = now - timedelta(milliseconds=window_ms)

        demand, supply, source, store_failed = self._signal(
            location=location, category=category, start=start, end=now, context=context
        )
        SURGE_SIGNAL_TOTAL.labels(source=source).inc()

        ratio = demand_supply_ratio(demand, supply)
        raw_multiplier, _ = surge_band_for_ratio(ratio, self.config.surge_bands)
        key = (location.cell(self.config.location_precision), category)
        multiplier, smoothing_applied = self._smooth(key, raw_multiplier, now, commit=commit)
        level = level_for_multiplier(multiplier, self.config.surge_bands)

        return SurgeInfo(
            multiplier=multiplier,
            raw_multiplier=raw_multiplier,
            level=level,
            reason=SURGE_REASONS.get(level, SURGE_REASONS["none"]),
            duration_seconds=self.config.duration_for_level(level),
            affected_radius_km=min(self.config.max_affected_radius_km, ratio * 2.0),
            demand_to_supply_ratio=ratio,
            signal_source=source,
            smoothing_applied=smoothing_applied,
            store_unavailable=store_failed,
        )

    def last_multiplier(self, location: Location, category: str) -> float | None:
        key = (location.cell(self.config.location_precision), category)
        with self._lock_for(key):
            state = self._states.get(key)
            return state.multiplier if state else None

    def shutdown(self) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=False, cancel_futures=True)
