# This file implements the service layer behind quote, surge, conversion, and market endpoints.
# It exists so routers can stay transport-focused while request mapping and result shaping live here.
# Request models are converted into engine value types, which perform all domain validation.
# Results are returned as plain dictionaries that Pydantic response models validate at runtime.

from __future__ import annotations

from dataclasses import asdict
from typing import Any

from src.api.schemas.common import LocationIn
from src.api.schemas.pricing_schemas import PricingContextIn, QuoteRequestV1
from src.pricing_engine.models import (
    LocalEvent,
    Location,
    PricingContext,
    PricingOptions,
    RecommendationHint,
)
from src.pricing_engine.pricing_orchestrator import DynamicPricingEngine


def to_location(location: LocationIn) -> Location:
    return Location(
        lat=location.lat,
        lng=location.lng,
        currency=location.currency,
        country_code=location.country_code,
        city=location.city,
    )


def to_context(context: PricingContextIn) -> PricingContext:
    return PricingContext(
        location=to_location(context.location),
        time_of_day=context.time_of_day,
        day_of_week=context.day_of_week,
        season=context.season,
        demand_level=context.demand_level,
        supply_level=context.supply_level,
        competition_level=context.competition_level,
        weather=context.weather,
        local_events=tuple(LocalEvent(name=event.name, impact=event.impact) for event in context.local_events),
    )


class PricingService:
    """Quote and market operations for pricing API routes."""

    def __init__(self, *, engine: DynamicPricingEngine) -> None:
        self.engine = engine

    def quote(self, request: QuoteRequestV1) -> dict[str, Any]:
        options = PricingOptions(**request.options.model_dump()) if request.options else None
        hint = RecommendationHint(**request.hint.model_dump()) if request.hint else None
        price = self.engine.calculate_dynamic_price(
            request.service_id,
            request.provider_id,
            request.base_price,
            to_context(request.context),
            options,
            hint=hint,
            category=request.category,
        )
        return asdict(price)

    def surge(self, *, location: LocationIn, category: str, time_window_ms: int | None) -> dict[str, Any]:
        info = self.engine.calculate_surge_multiplier(to_location(location), category, time_window_ms)
        return asdict(info)

    def competitive(self, *, location: LocationIn, category: str, quality_tier: str) -> dict[str, Any]:
        comparison = self.engine.get_competitive_pricing(category, to_location(location), quality_tier)
        return asdict(comparison)

    def location_optimization(self, *, location: LocationIn, category: str, base_price: float) -> dict[str, Any]:
        result = self.engine.optimize_price_for_location(base_price, to_location(location), category)
        return asdict(result)

    def convert(self, *, amount: float, from_currency: str, to_currency: str) -> dict[str, Any]:
        return asdict(self.engine.convert_currency(amount, from_currency, to_currency))
