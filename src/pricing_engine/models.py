# This module defines the value types that flow through the pricing engine.
# It exists so every component agrees on one validated shape for contexts, quotes, and forecasts.
# Records are frozen dataclasses; request-side types validate themselves on construction.
# Invalid request input raises PricingValidationError naming the offending field.

from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any

from src.pricing_engine.errors import PricingValidationError

VALID_SEASONS = {"spring", "summer", "autumn", "winter", "holiday"}
VALID_DEMAND_LEVELS = {"low", "medium", "high", "surge"}
VALID_SUPPLY_LEVELS = {"low", "medium", "high", "oversupply"}
VALID_URGENCY = {"low", "medium", "high", "emergency"}
VALID_QUALITY_TIERS = {"budget", "standard", "premium"}
VALID_CUSTOMER_TIERS = {"basic", "premium", "enterprise"}
VALID_SURGE_LEVELS = ("none", "low", "medium", "high", "extreme")
VALID_GRANULARITIES = {"hour", "day", "week"}
VALID_MARKET_POSITIONS = {"budget", "standard", "premium"}
VALID_EXPERIMENT_STATUSES = {"active", "completed", "cancelled"}

KNOWN_CURRENCIES = frozenset(
    {
        "USD", "EUR", "GBP", "JPY", "CHF", "CAD", "AUD", "NZD", "CNY", "HKD",
        "SGD", "SEK", "NOK", "DKK", "PLN", "CZK", "HUF", "RON", "TRY", "ILS",
        "INR", "IDR", "MYR", "PHP", "THB", "VND", "KRW", "TWD", "BRL", "MXN",
        "ARS", "CLP", "COP", "PEN", "ZAR", "NGN", "KES", "EGP", "MAD", "AED",
        "SAR", "QAR", "ISK",
    }
)
ZERO_DECIMAL_CURRENCIES = frozenset({"JPY", "KRW", "VND", "CLP", "ISK"})

_DAY_NAMES = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


def validate_currency(code: Any, field_name: str) -> str:
    if not isinstance(code, str) or code.upper() not in KNOWN_CURRENCIES:
        raise PricingValidationError(field_name, f"unknown ISO 4217 currency code: {code!r}")
    return code.upper()


def validate_base_price(value: Any, field_name: str = "base_price") -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise PricingValidationError(field_name, f"must be a number, got {type(value).__name__}")
    numeric = float(value)
    if not math.isfinite(numeric):
        raise PricingValidationError(field_name, "must be finite")
    if numeric < 0:
        raise PricingValidationError(field_name, "must not be negative")
    return numeric


def round_money(amount: float, currency: str) -> float:
    digits = 0 if currency in ZERO_DECIMAL_CURRENCIES else 2
    return round(float(amount), digits)


def parse_hour(time_of_day: Any) -> int:
    """Return the hour (0-23) for an `HH:MM` string or an integer hour."""

    if isinstance(time_of_day, bool):
        raise PricingValidationError("time_of_day", "must be 'HH:MM' or an hour between 0 and 23")
    if isinstance(time_of_day, int):
        hour = time_of_day
    elif isinstance(time_of_day, str):
        head, _, tail = time_of_day.strip().partition(":")
        try:
            hour = int(head)
            minute = int(tail) if tail else 0
        except ValueError as exc:
            raise PricingValidationError("time_of_day", f"cannot parse {time_of_day!r}") from exc
        if not 0 <= minute <= 59:
            raise PricingValidationError("time_of_day", f"minute out of range in {time_of_day!r}")
    else:
        raise PricingValidationError("time_of_day", "must be 'HH:MM' or an hour between 0 and 23")
    if not 0 <= hour <= 23:
        raise PricingValidationError("time_of_day", f"hour out of range: {hour}")
    return hour


def parse_weekday(day_of_week: Any) -> int:
    """Return the weekday index with Monday=0 for a day name or an index."""

    if isinstance(day_of_week, bool):
        raise PricingValidationError("day_of_week", "must be a day name or an index between 0 and 6")
    if isinstance(day_of_week, int):
        if not 0 <= day_of_week <= 6:
            raise PricingValidationError("day_of_week", f"index out of range: {day_of_week}")
        return day_of_week
    if isinstance(day_of_week, str):
        normalized = day_of_week.strip().lower()
        for index, name in enumerate(_DAY_NAMES):
            if normalized == name or (len(normalized) >= 3 and name.startswith(normalized)):
                return index
    raise PricingValidationError("day_of_week", f"unknown day: {day_of_week!r}")


@dataclass(frozen=True)
class Location:
    lat: float
    lng: float
    currency: str
    country_code: str
    city: str | None = None

    def __post_init__(self) -> None:
        for name, bound in (("lat", 90.0), ("lng", 180.0)):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
                raise PricingValidationError(f"location.{name}", "must be a finite number")
            if abs(value) > bound:
                raise PricingValidationError(f"location.{name}", f"must be within +/-{bound}")
        object.__setattr__(self, "currency", validate_currency(self.currency, "location.currency"))
        if not isinstance(self.country_code, str) or len(self.country_code) != 2 or not self.country_code.isalpha():
            raise PricingValidationError("location.country_code", "must be an ISO 3166 alpha-2 code")
        object.__setattr__(self, "country_code", self.country_code.upper())

    def cell(self, precision: int = 2) -> tuple[float, float]:
        return (round(float(self.lat), precision), round(float(self.lng), precision))


@dataclass(frozen=True)
class LocalEvent:
    name: str
    impact: float | None = None


@dataclass(frozen=True)
class PricingContext:
    location: Location
    time_of_day: str | int
    day_of_week: str | int
    season: str
    demand_level: str = "medium"
    supply_level: str = "medium"
    competition_level: float = 0.5
    weather: str | None = None
    local_events: tuple[LocalEvent, ...] = ()

    def __post_init__(self) -> None:
        parse_hour(self.time_of_day)
        parse_weekday(self.day_of_week)
        if self.season not in VALID_SEASONS:
            raise PricingValidationError("season", f"must be one of {sorted(VALID_SEASONS)}")
        if self.demand_level not in VALID_DEMAND_LEVELS:
            raise PricingValidationError("demand_level", f"must be one of {sorted(VALID_DEMAND_LEVELS)}")
        if self.supply_level not in VALID_SUPPLY_LEVELS:
            raise PricingValidationError("supply_level", f"must be one of {sorted(VALID_SUPPLY_LEVELS)}")
        level = self.competition_level
        if isinstance(level, bool) or not isinstance(level, (int, float)) or not 0.0 <= float(level) <= 1.0:
            raise PricingValidationError("competition_level", "must be a number in [0, 1]")
        events = tuple(
            event if isinstance(event, LocalEvent) else LocalEvent(name=str(event)) for event in self.local_events
        )
        object.__setattr__(self, "local_events", events)

    @property
    def hour(self) -> int:
        return parse_hour(self.time_of_day)

    @property
    def weekday(self) -> int:
        return parse_weekday(self.day_of_week)

    @property
    def is_weekend(self) -> bool:
        return self.weekday >= 5


@dataclass(frozen=True)
class RecommendationHint:
    urgency: str | None = None
    quality_tier: str | None = None


@dataclass(frozen=True)
class PricingOptions:
    urgency: str | None = None
    quality: str | None = None
    duration_hours: float | None = None
    customer_tier: str = "basic"
    customer_segment: str | None = None
    subject_id: str | None = None
    base_currency: str | None = None

    def __post_init__(self) -> None:
        if self.urgency is not None and self.urgency not in VALID_URGENCY:
            raise PricingValidationError("options.urgency", f"must be one of {sorted(VALID_URGENCY)}")
        if self.quality is not None and self.quality not in VALID_QUALITY_TIERS:
            raise PricingValidationError("options.quality", f"must be one of {sorted(VALID_QUALITY_TIERS)}")
        if self.customer_tier not in VALID_CUSTOMER_TIERS:
            raise PricingValidationError("options.customer_tier", f"must be one of {sorted(VALID_CUSTOMER_TIERS)}")
        if self.duration_hours is not None and (
            not math.isfinite(float(self.duration_hours)) or float(self.duration_hours) <= 0
        ):
            raise PricingValidationError("options.duration_hours", "must be a positive number")
        if self.base_currency is not None:
            object.__setattr__(
                self, "base_currency", validate_currency(self.base_currency, "options.base_currency")
            )

    def resolved(self, hint: RecommendationHint | None = None) -> PricingOptions:
        """Fill unset urgency and quality from a recommendation hint, then from defaults."""

        urgency = self.urgency or (hint.urgency if hint else None) or "medium"
        quality = self.quality or (hint.quality_tier if hint else None) or "standard"
        if urgency not in VALID_URGENCY:
            urgency = "medium"
        if quality not in VALID_QUALITY_TIERS:
            quality = "standard"
        return replace(self, urgency=urgency, quality=quality)


PRICED_FACTORS = ("seasonal", "time", "weather", "event", "competition", "urgency", "quality", "location")
ALL_FACTORS = ("base_demand",) + PRICED_FACTORS


@dataclass(frozen=True)
class PricingFactors:
    base_demand: float = 1.0
    seasonal: float = 1.0
    time: float = 1.0
    weather: float = 1.0
    event: float = 1.0
    competition: float = 1.0
    urgency: float = 1.0
    quality: float = 1.0
    location: float = 1.0

    @classmethod
    def neutral(cls) -> PricingFactors:
        return cls()

    def as_dict(self) -> dict[str, float]:
        return {name: float(getattr(self, name)) for name in ALL_FACTORS}

    def priced_product(self) -> float:
        product = 1.0
        for name in PRICED_FACTORS:
            product *= float(getattr(self, name))
        return product


@dataclass(frozen=True)
class SurgeInfo:
    multiplier: float
    raw_multiplier: float
    level: str
    reason: str
    duration_seconds: int
    affected_radius_km: float
    demand_to_supply_ratio: float
    signal_source: str
    smoothing_applied: bool = False
    store_unavailable: bool = False

    @property
    def is_active(self) -> bool:
        return self.multiplier > 1.0


@dataclass(frozen=True)
class CurrencyConversion:
    from_currency: str
    to_currency: str
    rate: float
    original_amount: float
    converted_amount: float
    fees: float
    total_cost: float
    last_updated: datetime
    provider: str
    degraded: bool = False


@dataclass(frozen=True)
class PriceAlternative:
    start: datetime
    multiplier: float
    estimated_price: float
    savings: float


@dataclass(frozen=True)
class PriceExplanation:
    primary_factors: tuple[str, ...]
    reason: str
    suggested_alternatives: tuple[PriceAlternative, ...] = ()
    degraded: bool = False
    guardrails_applied: tuple[str, ...] = ()


@dataclass(frozen=True)
class ExperimentAssignment:
    test_id: str
    variant_name: str
    price_multiplier: float


@dataclass(frozen=True)
class DynamicPrice:
    service_id: str
    provider_id: str
    base_price: float
    final_price: float
    currency: str
    factors: PricingFactors
    surge_multiplier: float
    surge_level: str
    confidence: float
    valid_until: datetime
    explanation: PriceExplanation
    fingerprint: str
    conversion: CurrencyConversion | None = None
    experiment: ExperimentAssignment | None = None
    computed_at: datetime | None = None


@dataclass(frozen=True)
class ForecastPeriod:
    start: datetime
    end: datetime
    granularity: str = "hour"

    def __post_init__(self) -> None:
        if self.granularity not in VALID_GRANULARITIES:
            raise PricingValidationError("period.granularity", f"must be one of {sorted(VALID_GRANULARITIES)}")
        if (self.start.tzinfo is None) != (self.end.tzinfo is None):
            raise PricingValidationError("period", "start and end must both be naive or both be timezone-aware")
        if self.end < self.start:
            raise PricingValidationError("period.end", "must not be before period.start")


@dataclass(frozen=True)
class ForecastPoint:
    timestamp: datetime
    demand_level: str
    recommended_multiplier: float
    confidence: float
    factors: tuple[str, ...] = ()


@dataclass(frozen=True)
class CompetitorOffer:
    provider_id: str
    service_id: str
    base_price: float
    quality_tier: str = "standard"
    rating: float | None = None


@dataclass(frozen=True)
class ProviderPrice:
    provider_id: str
    price: DynamicPrice
    market_position: str
    value_score: float


@dataclass(frozen=True)
class MarketAnalysis:
    average_price: float | None
    median_price: float | None
    price_range: tuple[float, float] | None
    recommended_price: float | None
    competitiveness_score: float | None
    sample_size: int = 0


@dataclass(frozen=True)
class PricingStrategy:
    name: str
    price: float
    expected_booking_rate: float
    expected_revenue: float
    description: str


@dataclass(frozen=True)
class PriceComparison:
    category: str
    currency: str
    providers: tuple[ProviderPrice, ...]
    market_analysis: MarketAnalysis
    insights: tuple[str, ...]
    strategies: tuple[PricingStrategy, ...] = ()


@dataclass(frozen=True)
class LocationPriceOptimization:
    base_price: float
    optimized_price: float
    adjustment_factor: float
    local_factors: dict[str, float]
    recommendations: tuple[str, ...]


@dataclass(frozen=True)
class ExperimentVariant:
    name: str
    price_multiplier: float
    target_segment: str | None = None

    def __post_init__(self) -> None:
        if not self.name:
            raise PricingValidationError("variants.name", "must not be empty")
        multiplier = self.price_multiplier
        if isinstance(multiplier, bool) or not isinstance(multiplier, (int, float)):
            raise PricingValidationError("variants.price_multiplier", "must be a number")
        if not math.isfinite(float(multiplier)) or float(multiplier) <= 0:
            raise PricingValidationError("variants.price_multiplier", "must be finite and > 0")


@dataclass(frozen=True)
class VariantMetrics:
    expected_conversion_rate: float
    expected_revenue: float
    confidence: float


@dataclass(frozen=True)
class VariantObservation:
    impressions: int = 0
    conversions: int = 0
    revenue: float = 0.0

    @property
    def conversion_rate(self) -> float | None:
        if self.impressions == 0:
            return None
        return self.conversions / self.impressions


@dataclass(frozen=True)
class PricingExperiment:
    test_id: str
    service_id: str
    base_price: float
    variants: tuple[ExperimentVariant, ...]
    start: datetime
    end: datetime
    status: str
    expected_metrics: dict[str, VariantMetrics]
    observed: dict[str, VariantObservation] = field(default_factory=dict)

    def is_active(self, at: datetime) -> bool:
        return self.status == "active" and self.start <= at < self.end

    def variant(self, name: str) -> ExperimentVariant | None:
        for variant in self.variants:
            if variant.name == name:
                return variant
        return None
