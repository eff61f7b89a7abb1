# This module registers price experiments and assigns quote requests to experiment variants.
# It exists so pricing changes can be trialled on a slice of traffic before becoming policy.
# Expected conversion and revenue per variant come from a constant-elasticity demand model.
# The manager only supplies a variant multiplier; it never changes the pricing algorithm itself.

from __future__ import annotations

import hashlib
import json
import logging
import math
import re
import threading
import uuid
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, replace
from datetime import datetime, timedelta
from typing import Any, Protocol

from sqlalchemy import text
from sqlalchemy.engine import Engine

from src.pricing_engine.engine_config import EngineConfig
from src.pricing_engine.errors import (
    ExperimentNotFoundError,
    HistoricalDataUnavailableError,
    PricingValidationError,
)
from src.pricing_engine.historical_store import HistoricalDataStore, bounded_store_call
from src.pricing_engine.models import (
    VALID_EXPERIMENT_STATUSES,
    ExperimentAssignment,
    ExperimentVariant,
    PricingExperiment,
    VariantMetrics,
    VariantObservation,
    validate_base_price,
)
from src.pricing_engine.time_buckets import Clock, utc_now

LOGGER = logging.getLogger("pricing.experiments")

_IDENTIFIER_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")


class ExperimentStore(Protocol):
    def save(self, experiment: PricingExperiment) -> None: ...

    def get(self, test_id: str) -> PricingExperiment | None: ...

    def list(self, *, service_id: str | None = None) -> list[PricingExperiment]: ...


class InMemoryExperimentStore:
    def __init__(self) -> None:
        self._experiments: dict[str, PricingExperiment] = {}
        self._lock = threading.Lock()

    def save(self, experiment: PricingExperiment) -> None:
        with self._lock:
            self._experiments[experiment.test_id] = experiment

    def get(self, test_id: str) -> PricingExperiment | None:
        with self._lock:
            return self._experiments.get(test_id)

    def list(self, *, service_id: str | None = None) -> list[PricingExperiment]:
        with self._lock:
            experiments = list(self._experiments.values())
        if service_id is not None:
            experiments = [item for item in experiments if item.service_id == service_id]
        return sorted(experiments, key=lambda item: (item.start, item.test_id))


def experiment_to_payload(experiment: PricingExperiment) -> dict[str, Any]:
    payload = asdict(experiment)
    payload["start"] = experiment.start.isoformat()
    payload["end"] = experiment.end.isoformat()
    return payload


def experiment_from_payload(payload: dict[str, Any]) -> PricingExperiment:
    return PricingExperiment(
        test_id=str(payload["test_id"]),
        service_id=str(payload["service_id"]),
        base_price=float(payload["base_price"]),
        variants=tuple(ExperimentVariant(**variant) for variant in payload["variants"]),
        start=datetime.fromisoformat(str(payload["start"])),
        end=datetime.fromisoformat(str(payload["end"])),
        status=str(payload["status"]),
        expected_metrics={
            name: VariantMetrics(**metrics) for name, metrics in dict(payload["expected_metrics"]).items()
        },
        observed={name: VariantObservation(**obs) for name, obs in dict(payload.get("observed", {})).items()},
    )


class SqlExperimentStore:
    def __init__(self, *, engine: Engine, table_name: str = "pricing_experiments") -> None:
        if not _IDENTIFIER_RE.match(table_name):
            raise ValueError(f"Unsafe SQL identifier: {table_name!r}")
        self.engine = engine
        self.table_name = table_name

    def save(self, experiment: PricingExperiment) -> None:
        statement = text(
            f"""
            INSERT INTO {self.table_name} (test_id, service_id, status, start_ts, end_ts, payload)
            VALUES (:test_id, :service_id, :status, :start_ts, :end_ts, CAST(:payload AS JSONB))
            ON CONFLICT (test_id) DO UPDATE SET
                status = EXCLUDED.status,
                end_ts = EXCLUDED.end_ts,
                payload = EXCLUDED.payload
            """
        )
        with self.engine.begin() as connection:
            connection.execute(
                statement,
                {
                    "test_id": experiment.test_id,
                    "service_id": experiment.service_id,
                    "status": experiment.status,
                    "start_ts": experiment.start,
                    "end_ts": experiment.end,
                    "payload": json.dumps(experiment_to_payload(experiment), default=str),
                },
            )

    def get(self, test_id: str) -> PricingExperiment | None:
        with self.engine.connect() as connection:
            row = connection.execute(
                text(f"SELECT payload FROM {self.table_name} WHERE test_id = :test_id"),
                {"test_id": test_id},
            ).fetchone()
        if row is None:
            return None
        payload = row[0] if isinstance(row[0], dict) else json.loads(row[0])
        return experiment_from_payload(payload)

    def list(self, *, service_id: str | None = None) -> list[PricingExperiment]:
        query = f"SELECT payload FROM {self.table_name}"
        params: dict[str, Any] = {}
        if service_id is not None:
            query += " WHERE service_id = :service_id"
            params["service_id"] = service_id
        query += " ORDER BY start_ts, test_id"
        with self.engine.connect() as connection:
            rows = connection.execute(text(query), params).fetchall()
        return [experiment_from_payload(row[0] if isinstance(row[0], dict) else json.loads(row[0])) for row in rows]


def expected_conversion_rate(*, baseline: float, multiplier: float, elasticity: float) -> float:
    """Constant-elasticity response: conversion scales with multiplier ** -elasticity."""

    return max(0.0, min(1.0, baseline * multiplier ** (-elasticity)))


class ExperimentManager:
    def __init__(
        self,
        *,
        config: EngineConfig,
        store: ExperimentStore | None = None,
        history: HistoricalDataStore | None = None,
        clock: Clock = utc_now,
        id_factory: Callable[[], str] | None = None,
        executor: ThreadPoolExecutor | None = None,
    ) -> None:
        self.config = config
        self.store = store or InMemoryExperimentStore()
        self.history = history
        self.clock = clock
        self.id_factory = id_factory or (lambda: uuid.uuid4().hex)
        self._outcome_lock = threading.Lock()
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(max_workers=2, thread_name_prefix="experiment-history")

    def _elasticity(self, service_id: str) -> tuple[float, bool]:
        if self.history is not None:
            try:
                observed = bounded_store_call(
                    self._executor,
                    self.history.price_elasticity,
                    timeout_seconds=self.config.external_timeout_seconds,
                    service_id=service_id,
                )
            except HistoricalDataUnavailableError:
                LOGGER.warning("Elasticity lookup failed for %s; using default", service_id, exc_info=True)
                observed = None
            if observed is not None and math.isfinite(observed) and observed > 0:
                return float(observed), True
        return self.config.experiment_default_elasticity, False

    def _expected_metrics(
        self, *, service_id: str, base_price: float, variants: tuple[ExperimentVariant, ...]
    ) -> dict[str, VariantMetrics]:
        elasticity, from_history = self._elasticity(service_id)
        baseline = self.config.experiment_baseline_conversion
        volume = self.config.experiment_expected_volume
        metrics: dict[str, VariantMetrics] = {}
        for variant in variants:
            multiplier = float(variant.price_multiplier)
            conversion = expected_conversion_rate(baseline=baseline, multiplier=multiplier, elasticity=elasticity)
            revenue = base_price * multiplier * conversion * volume
            # The model is less trustworthy the further a variant strays from the current price.
            confidence = (0.8 if from_history else 0.6) - 0.2 * abs(math.log(multiplier))
            metrics[variant.name] = VariantMetrics(
                expected_conversion_rate=round(conversion, 4),
                expected_revenue=round(revenue, 2),
                confidence=round(max(0.1, min(0.95, confidence)), 3),
            )
        return metrics

    def register_test(
        self,
        *,
        service_id: str,
        base_price: float,
        variants: list[ExperimentVariant],
        duration: timedelta | None = None,
    ) -> PricingExperiment:
        if not service_id:
            raise PricingValidationError("service_id", "must not be empty")
        price = validate_base_price(base_price)
        if not variants:
            raise PricingValidationError("variants", "at least one variant is required")
        names = [variant.name for variant in variants]
        if len(set(names)) != len(names):
            raise PricingValidationError("variants", "variant names must be unique")
        window = duration if duration is not None else timedelta(days=self.config.experiment_default_duration_days)
        if window <= timedelta(0):
            raise PricingValidationError("duration", "must be positive")

        start = self.clock()
        variant_tuple = tuple(variants)
        experiment = PricingExperiment(
            test_id=self.id_factory(),
            service_id=service_id,
            base_price=price,
            variants=variant_tuple,
            start=start,
            end=start + window,
            status="active",
            expected_metrics=self._expected_metrics(service_id=service_id, base_price=price, variants=variant_tuple),
            observed={variant.name: VariantObservation() for variant in variant_tuple},
        )
        self.store.save(experiment)
        LOGGER.info("Registered pricing experiment %s for %s with %d variants", experiment.test_id, service_id, len(names))
        return experiment

    def get_test(self, test_id: str) -> PricingExperiment:
        experiment = self.store.get(test_id)
        if experiment is None:
            raise ExperimentNotFoundError(test_id)
        return experiment

    def list_tests(self, *, service_id: str | None = None) -> list[PricingExperiment]:
        return self.store.list(service_id=service_id)

    def select_variant(
        self,
        *,
        service_id: str,
        subject_id: str | None,
        segment: str | None = None,
        at: datetime | None = None,
    ) -> ExperimentAssignment | None:
        """Deterministically bucket a subject into a variant of the service's active test."""

        if subject_id is None:
            return None
        now = at or self.clock()
        for experiment in self.store.list(service_id=service_id):
            if not experiment.is_active(now):
                continue
            eligible = [
                variant
                for variant in experiment.variants
                if variant.target_segment is None or variant.target_segment == segment
            ]
            if not eligible:
                continue
            digest = hashlib.sha256(f"{experiment.test_id}|{subject_id}".encode()).hexdigest()
            chosen = eligible[int(digest[:12], 16) % len(eligible)]
            return ExperimentAssignment(
                test_id=experiment.test_id,
                variant_name=chosen.name,
                price_multiplier=float(chosen.price_multiplier),
            )
        return None

    def record_outcome(
        self,
        *,
        test_id: str,
        variant_name: str,
        impressions: int = 1,
        conversions: int = 0,
        revenue: float = 0.0,
    ) -> VariantObservation:
        if impressions < 0 or conversions < 0 or revenue < 0:
            raise PricingValidationError("outcome", "counts and revenue must not be negative")
        with self._outcome_lock:
            experiment = self.get_test(test_id)
            if experiment.variant(variant_name) is None:
                raise PricingValidationError("variant_name", f"unknown variant {variant_name!r} for {test_id}")
            current = experiment.observed.get(variant_name, VariantObservation())
            updated = VariantObservation(
                impressions=current.impressions + impressions,
                conversions=current.conversions + conversions,
                revenue=round(current.revenue + revenue, 2),
            )
            if updated.conversions > updated.impressions:
                raise PricingValidationError("conversions", "cannot exceed impressions")
            self.store.save(replace(experiment, observed={**experiment.observed, variant_name: updated}))
        return updated

    def end_test(self, test_id: str, *, status: str = "completed") -> PricingExperiment:
        if status not in VALID_EXPERIMENT_STATUSES or status == "active":
            raise PricingValidationError("status", "must be 'completed' or 'cancelled'")
        with self._outcome_lock:
            experiment = self.get_test(test_id)
            now = self.clock()
            ended = replace(experiment, status=status, end=min(experiment.end, now))
            self.store.save(ended)
        LOGGER.info("Pricing experiment %s ended with status %s", test_id, status)
        return ended

    def shutdown(self) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=False, cancel_futures=True)
