# This file implements the service layer behind the demand forecast endpoint.
# It exists so the router only handles transport concerns while the engine produces the grid.

from __future__ import annotations

from dataclasses import asdict
from datetime import datetime
from typing import Any

from src.api.schemas.common import LocationIn
from src.api.services.pricing_service import to_location
from src.pricing_engine.models import ForecastPeriod
from src.pricing_engine.pricing_orchestrator import DynamicPricingEngine


class ForecastService:
    """Forecast grid retrieval for forecast API routes."""

    def __init__(self, *, engine: DynamicPricingEngine) -> None:
        self.engine = engine

    def forecast(
        self,
        *,
        location: LocationIn,
        category: str,
        start: datetime,
        end: datetime,
        granularity: str,
    ) -> list[dict[str, Any]]:
        period = ForecastPeriod(start=start, end=end, granularity=granularity)
        points = self.engine.forecast_demand_and_pricing(category, to_location(location), period)
        return [asdict(point) for point in points]
