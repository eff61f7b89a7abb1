# This file defines request and response schemas for quote, surge, conversion, and market endpoints.
# It exists so pricing payloads are strongly typed and backward-compatible for clients.
# Request models mirror the engine's context and options; domain validation happens in the engine.
# Keeping these models explicit helps catch accidental payload drift during development.

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from src.api.schemas.common import EnvelopeFields, LocationIn


class LocalEventIn(BaseModel):
    name: str
    impact: float | None = None


class PricingContextIn(BaseModel):
    location: LocationIn
    time_of_day: str | int
    day_of_week: str | int
    season: str
    demand_level: str = "medium"
    supply_level: str = "medium"
    competition_level: float = 0.5
    weather: str | None = None
    local_events: list[LocalEventIn] = Field(default_factory=list)


class PricingOptionsIn(BaseModel):
    urgency: str | None = None
    quality: str | None = None
    duration_hours: float | None = None
    customer_tier: str = "basic"
    customer_segment: str | None = None
    subject_id: str | None = None
    base_currency: str | None = None


class RecommendationHintIn(BaseModel):
    urgency: str | None = None
    quality_tier: str | None = None


class QuoteRequestV1(BaseModel):
    service_id: str
    provider_id: str
    base_price: float
    category: str | None = None
    context: PricingContextIn
    options: PricingOptionsIn | None = None
    hint: RecommendationHintIn | None = None


class PricingFactorsV1(BaseModel):
    base_demand: float
    seasonal: float
    time: float
    weather: float
    event: float
    competition: float
    urgency: float
    quality: float
    location: float


class CurrencyConversionV1(BaseModel):
    from_currency: str
    to_currency: str
    rate: float
    original_amount: float
    converted_amount: float
    fees: float
    total_cost: float
    last_updated: datetime
    provider: str
    degraded: bool


class ConversionResponseV1(EnvelopeFields):
    data: CurrencyConversionV1


class PriceAlternativeV1(BaseModel):
    start: datetime
    multiplier: float
    estimated_price: float
    savings: float


class PriceExplanationV1(BaseModel):
    primary_factors: list[str]
    reason: str
    suggested_alternatives: list[PriceAlternativeV1]
    degraded: bool
    guardrails_applied: list[str] = Field(default_factory=list)


class ExperimentAssignmentV1(BaseModel):
    test_id: str
    variant_name: str
    price_multiplier: float


class DynamicPriceV1(BaseModel):
    service_id: str
    provider_id: str
    base_price: float
    final_price: float
    currency: str
    factors: PricingFactorsV1
    surge_multiplier: float
    surge_level: str
    confidence: float = Field(ge=0.0, le=1.0)
    valid_until: datetime
    explanation: PriceExplanationV1
    fingerprint: str
    conversion: CurrencyConversionV1 | None = None
    experiment: ExperimentAssignmentV1 | None = None
    computed_at: datetime | None = None


class QuoteResponseV1(EnvelopeFields):
    data: DynamicPriceV1


class SurgeInfoV1(BaseModel):
    multiplier: float
    raw_multiplier: float
    level: str
    reason: str
    duration_seconds: int
    affected_radius_km: float
    demand_to_supply_ratio: float
    signal_source: str
    smoothing_applied: bool
    store_unavailable: bool = False


class SurgeResponseV1(EnvelopeFields):
    data: SurgeInfoV1


class ProviderPriceV1(BaseModel):
    provider_id: str
    price: DynamicPriceV1
    market_position: str
    value_score: float


class MarketAnalysisV1(BaseModel):
    average_price: float | None = None
    median_price: float | None = None
    price_range: tuple[float, float] | None = None
    recommended_price: float | None = None
    competitiveness_score: float | None = None
    sample_size: int


class PricingStrategyV1(BaseModel):
    name: str
    price: float
    expected_booking_rate: float
    expected_revenue: float
    description: str


class PriceComparisonV1(BaseModel):
    category: str
    currency: str
    providers: list[ProviderPriceV1]
    market_analysis: MarketAnalysisV1
    insights: list[str]
    strategies: list[PricingStrategyV1]


class CompetitiveResponseV1(EnvelopeFields):
    data: PriceComparisonV1


class LocationOptimizationV1(BaseModel):
    base_price: float
    optimized_price: float
    adjustment_factor: float
    local_factors: dict[str, float]
    recommendations: list[str]


class LocationOptimizationResponseV1(EnvelopeFields):
    data: LocationOptimizationV1
