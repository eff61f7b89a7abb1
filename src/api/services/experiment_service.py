# This file implements the service layer behind price experiment endpoints.
# It exists so routers stay thin while variant mapping and experiment lookups live in one layer.
# Unknown experiment ids are translated into a 404 API error here.

from __future__ import annotations

from dataclasses import asdict
from datetime import timedelta
from typing import Any

from src.api.error_handlers import APIError
from src.api.schemas.experiment_schemas import ExperimentCreateRequestV1, OutcomeRequestV1
from src.pricing_engine.ab_testing import ExperimentManager
from src.pricing_engine.errors import ExperimentNotFoundError
from src.pricing_engine.models import ExperimentVariant, PricingExperiment
from src.pricing_engine.pricing_orchestrator import DynamicPricingEngine


def _not_found(exc: ExperimentNotFoundError) -> APIError:
    return APIError(
        status_code=404,
        error_code="EXPERIMENT_NOT_FOUND",
        message=str(exc),
        details={"test_id": exc.test_id},
    )


class ExperimentService:
    """Experiment registration and tracking for experiment API routes."""

    def __init__(self, *, engine: DynamicPricingEngine) -> None:
        self.engine = engine

    def _manager(self) -> ExperimentManager:
        if self.engine.experiments is None:
            raise APIError(
                status_code=503,
                error_code="EXPERIMENTS_UNAVAILABLE",
                message="Experiment manager is not configured.",
            )
        return self.engine.experiments

    @staticmethod
    def _shape(experiment: PricingExperiment) -> dict[str, Any]:
        return asdict(experiment)

    def create(self, request: ExperimentCreateRequestV1) -> dict[str, Any]:
        self._manager()
        variants = [
            ExperimentVariant(
                name=variant.name,
                price_multiplier=variant.price_multiplier,
                target_segment=variant.target_segment,
            )
            for variant in request.variants
        ]
        duration = timedelta(days=request.duration_days) if request.duration_days is not None else None
        experiment = self.engine.optimize_pricing_with_ab_test(
            request.service_id, request.base_price, variants, duration
        )
        return self._shape(experiment)

    def get(self, test_id: str) -> dict[str, Any]:
        try:
            return self._shape(self._manager().get_test(test_id))
        except ExperimentNotFoundError as exc:
            raise _not_found(exc) from exc

    def list(self, *, service_id: str | None) -> list[dict[str, Any]]:
        return [self._shape(item) for item in self._manager().list_tests(service_id=service_id)]

    def record_outcome(self, test_id: str, request: OutcomeRequestV1) -> dict[str, Any]:
        try:
            observation = self._manager().record_outcome(
                test_id=test_id,
                variant_name=request.variant_name,
                impressions=request.impressions,
                conversions=request.conversions,
                revenue=request.revenue,
            )
        except ExperimentNotFoundError as exc:
            raise _not_found(exc) from exc
        return asdict(observation)

    def end(self, test_id: str, *, status: str) -> dict[str, Any]:
        try:
            return self._shape(self._manager().end_test(test_id, status=status))
        except ExperimentNotFoundError as exc:
            raise _not_found(exc) from exc
