# This module provides access to historical demand/supply, competitor offers, and price elasticity.
# It exists so surge, forecasting, competitive analysis, and experiments read one narrow interface.
# An in-memory store backs tests and local runs; the SQL store reads Postgres through SQLAlchemy.
# Store failures surface as HistoricalDataUnavailableError so callers can take a degraded path.

from __future__ import annotations

import re
import threading
from concurrent.futures import Executor
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Protocol, TypeVar

import pandas as pd
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from src.common.db import test_connection
from src.pricing_engine.errors import HistoricalDataUnavailableError
from src.pricing_engine.models import CompetitorOffer, Location

_IDENTIFIER_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")

HISTORY_COLUMNS = ["bucket_start_ts", "demand", "supply"]

T = TypeVar("T")


def _safe_identifier(identifier: str) -> str:
    if not _IDENTIFIER_RE.match(identifier):
        raise ValueError(f"Unsafe SQL identifier: {identifier!r}")
    return identifier


@dataclass(frozen=True)
class DemandSupplySnapshot:
    demand: float
    supply: float
    sample_count: int


def bounded_store_call(
    executor: Executor,
    call: Callable[..., T],
    *,
    timeout_seconds: float,
    **kwargs: Any,
) -> T:
    """Run one store read on `executor` and give up after `timeout_seconds`.

    A read that overruns is reported as HistoricalDataUnavailableError, the same
    way a failed query is, so callers keep a single degraded path.
    """
    future = executor.submit(call, **kwargs)
    try:
        return future.result(timeout=timeout_seconds)
    except TimeoutError as exc:
        future.cancel()
        name = getattr(call, "__name__", "store read")
        raise HistoricalDataUnavailableError(f"{name} did not finish within {timeout_seconds}s") from exc


class HistoricalDataStore(Protocol):
    def demand_supply_snapshot(
        self, *, location: Location, category: str, start: datetime, end: datetime
    ) -> DemandSupplySnapshot | None: ...

    def demand_history(
        self, *, location: Location, category: str, start: datetime, end: datetime
    ) -> pd.DataFrame: ...

    def competitor_offers(self, *, category: str, location: Location) -> list[CompetitorOffer]: ...

    def price_elasticity(self, *, service_id: str) -> float | None: ...

    def can_connect(self) -> bool: ...


@dataclass(frozen=True)
class _Observation:
    cell: tuple[float, float]
    category: str
    bucket_start_ts: datetime
    demand: float
    supply: float


class InMemoryHistoricalDataStore:
    def __init__(self, *, location_precision: int = 2) -> None:
        self.location_precision = location_precision
        self._observations: list[_Observation] = []
        self._offers: dict[tuple[str, str], list[CompetitorOffer]] = {}
        self._elasticity: dict[str, float] = {}
        self._lock = threading.Lock()

    def add_observation(
        self,
        *,
        location: Location,
        category: str,
        bucket_start_ts: datetime,
        demand: float,
        supply: float,
    ) -> None:
        with self._lock:
            self._observations.append(
                _Observation(
                    cell=location.cell(self.location_precision),
                    category=category,
                    bucket_start_ts=bucket_start_ts,
                    demand=float(demand),
                    supply=float(supply),
                )
            )

    def add_offer(self, *, category: str, country_code: str, offer: CompetitorOffer) -> None:
        with self._lock:
            self._offers.setdefault((category, country_code.upper()), []).append(offer)

    def set_elasticity(self, *, service_id: str, elasticity: float) -> None:
        with self._lock:
            self._elasticity[service_id] = float(elasticity)

    def can_connect(self) -> bool:
        return True

    def _matching(self, location: Location, category: str, start: datetime, end: datetime) -> list[_Observation]:
        cell = location.cell(self.location_precision)
        with self._lock:
            return [
                obs
                for obs in self._observations
                if obs.cell == cell and obs.category == category and start <= obs.bucket_start_ts < end
            ]

    def demand_supply_snapshot(
        self, *, location: Location, category: str, start: datetime, end: datetime
    ) -> DemandSupplySnapshot | None:
        rows = self._matching(location, category, start, end)
        if not rows:
            return None
        return DemandSupplySnapshot(
            demand=sum(obs.demand for obs in rows),
            supply=sum(obs.supply for obs in rows),
            sample_count=len(rows),
        )

    def demand_history(
        self, *, location: Location, category: str, start: datetime, end: datetime
    ) -> pd.DataFrame:
        rows = self._matching(location, category, start, end)
        return pd.DataFrame(
            [{"bucket_start_ts": obs.bucket_start_ts, "demand": obs.demand, "supply": obs.supply} for obs in rows],
            columns=HISTORY_COLUMNS,
        )

    def competitor_offers(self, *, category: str, location: Location) -> list[CompetitorOffer]:
        with self._lock:
            return list(self._offers.get((category, location.country_code), []))

    def price_elasticity(self, *, service_id: str) -> float | None:
        with self._lock:
            return self._elasticity.get(service_id)


class SqlHistoricalDataStore:
    def __init__(
        self,
        *,
        engine: Engine,
        location_precision: int = 2,
        history_table_name: str = "demand_supply_history",
        offers_table_name: str = "competitor_offers",
        elasticity_table_name: str = "price_elasticity",
    ) -> None:
        self.engine = engine
        self.location_precision = location_precision
        self.history_table_name = _safe_identifier(history_table_name)
        self.offers_table_name = _safe_identifier(offers_table_name)
        self.elasticity_table_name = _safe_identifier(elasticity_table_name)

    def can_connect(self) -> bool:
        return test_connection(self.engine)

    def _cell_params(self, location: Location) -> dict[str, float]:
        cell_lat, cell_lng = location.cell(self.location_precision)
        return {"cell_lat": cell_lat, "cell_lng": cell_lng}

    def _read(self, query: str, params: dict[str, object]) -> pd.DataFrame:
        try:
            return pd.read_sql_query(text(query), con=self.engine, params=params)
        except SQLAlchemyError as exc:
            raise HistoricalDataUnavailableError(f"Historical query failed: {exc}") from exc

    def demand_supply_snapshot(
        self, *, location: Location, category: str, start: datetime, end: datetime
    ) -> DemandSupplySnapshot | None:
        frame = self._read(
            f"""
            SELECT
                COALESCE(SUM(demand_count), 0) AS demand,
                COALESCE(SUM(supply_count), 0) AS supply,
                COUNT(*) AS sample_count
            FROM {self.history_table_name}
            WHERE cell_lat = :cell_lat
              AND cell_lng = :cell_lng
              AND category = :category
              AND bucket_start_ts >= :start_ts
              AND bucket_start_ts < :end_ts
            """,
            {**self._cell_params(location), "category": category, "start_ts": start, "end_ts": end},
        )
        if frame.empty or int(frame.iloc[0]["sample_count"]) == 0:
            return None
        row = frame.iloc[0]
        return DemandSupplySnapshot(
            demand=float(row["demand"]),
            supply=float(row["supply"]),
            sample_count=int(row["sample_count"]),
        )

    def demand_history(
        self, *, location: Location, category: str, start: datetime, end: datetime
    ) -> pd.DataFrame:
        frame = self._read(
            f"""
            SELECT
                bucket_start_ts,
                demand_count AS demand,
                supply_count AS supply
            FROM {self.history_table_name}
            WHERE cell_lat = :cell_lat
              AND cell_lng = :cell_lng
              AND category = :category
              AND bucket_start_ts >= :start_ts
              AND bucket_start_ts < :end_ts
            ORDER BY bucket_start_ts
            """,
            {**self._cell_params(location), "category": category, "start_ts": start, "end_ts": end},
        )
        if frame.empty:
            return pd.DataFrame(columns=HISTORY_COLUMNS)
        frame["bucket_start_ts"] = pd.to_datetime(frame["bucket_start_ts"], utc=True)
        return frame[HISTORY_COLUMNS]

    def competitor_offers(self, *, category: str, location: Location) -> list[CompetitorOffer]:
        frame = self._read(
            f"""
            SELECT provider_id, service_id, base_price, quality_tier, rating
            FROM {self.offers_table_name}
            WHERE category = :category
              AND country_code = :country_code
            ORDER BY provider_id
            """,
            {"category": category, "country_code": location.country_code},
        )
        return [
            CompetitorOffer(
                provider_id=str(row["provider_id"]),
                service_id=str(row["service_id"]),
                base_price=float(row["base_price"]),
                quality_tier=str(row["quality_tier"] or "standard"),
                rating=None if pd.isna(row["rating"]) else float(row["rating"]),
            )
            for _, row in frame.iterrows()
        ]

    def price_elasticity(self, *, service_id: str) -> float | None:
        frame = self._read(
            f"SELECT elasticity FROM {self.elasticity_table_name} WHERE service_id = :service_id LIMIT 1",
            {"service_id": service_id},
        )
        if frame.empty or pd.isna(frame.iloc[0]["elasticity"]):
            return None
        return float(frame.iloc[0]["elasticity"])
