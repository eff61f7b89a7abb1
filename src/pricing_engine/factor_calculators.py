# This module computes the independent multiplicative pricing factors for one quote.
# It exists so each signal (season, time, weather, events, competition, urgency, quality, location)
# can be evaluated, tested, and degraded on its own without failing the whole quote.
# Every calculator is a pure function of context, options, and config returning (value, confidence).

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from dataclasses import dataclass

from src.pricing_engine.engine_config import EngineConfig
from src.pricing_engine.models import ALL_FACTORS, PricingContext, PricingFactors, PricingOptions

LOGGER = logging.getLogger("pricing.factors")

FactorCalculator = Callable[[PricingContext, PricingOptions, EngineConfig], tuple[float, float]]


@dataclass(frozen=True)
class FactorResult:
    name: str
    value: float
    confidence: float
    degraded: bool = False


def _lookup(table: dict[str, float], key: str | None, config: EngineConfig) -> tuple[float, float]:
    if key is None:
        return 1.0, 1.0
    if key in table:
        return float(table[key]), 1.0
    return 1.0, config.unknown_lookup_confidence


def seasonal_factor(context: PricingContext, _: PricingOptions, config: EngineConfig) -> tuple[float, float]:
    return _lookup(config.seasonal_factors, context.season, config)


def time_factor(context: PricingContext, _: PricingOptions, config: EngineConfig) -> tuple[float, float]:
    hour = context.hour
    value = 1.0
    for band in config.time_bands:
        if band.contains(hour):
            value = band.multiplier
            break
    if context.is_weekend:
        value *= config.weekend_multiplier
    return value, 1.0


def weather_factor(context: PricingContext, _: PricingOptions, config: EngineConfig) -> tuple[float, float]:
    weather = context.weather.strip().lower() if context.weather else None
    return _lookup(config.weather_factors, weather, config)


def event_factor(context: PricingContext, _: PricingOptions, config: EngineConfig) -> tuple[float, float]:
    if not context.local_events:
        return 1.0, 1.0
    total_impact = 0.0
    estimated = False
    for event in context.local_events:
        if event.impact is None:
            total_impact += config.default_event_impact
            estimated = True
        else:
            total_impact += max(0.0, float(event.impact))
    value = min(config.max_event_multiplier, 1.0 + total_impact)
    return value, 0.8 if estimated else 1.0


def competition_factor(context: PricingContext, _: PricingOptions, config: EngineConfig) -> tuple[float, float]:
    level = float(context.competition_level)
    return config.competition_intercept - config.competition_slope * level, 1.0


def urgency_factor(_: PricingContext, options: PricingOptions, config: EngineConfig) -> tuple[float, float]:
    return _lookup(config.urgency_factors, options.urgency, config)


def quality_factor(_: PricingContext, options: PricingOptions, config: EngineConfig) -> tuple[float, float]:
    return _lookup(config.quality_factors, options.quality, config)


def location_factor(context: PricingContext, _: PricingOptions, config: EngineConfig) -> tuple[float, float]:
    return _lookup(config.cost_of_living, context.location.country_code, config)


def base_demand_factor(context: PricingContext, _: PricingOptions, config: EngineConfig) -> tuple[float, float]:
    return _lookup(config.base_demand_factors, context.demand_level, config)


FACTOR_CALCULATORS: dict[str, FactorCalculator] = {
    "base_demand": base_demand_factor,
    "seasonal": seasonal_factor,
    "time": time_factor,
    "weather": weather_factor,
    "event": event_factor,
    "competition": competition_factor,
    "urgency": urgency_factor,
    "quality": quality_factor,
    "location": location_factor,
}


def run_factor_calculator(
    *,
    name: str,
    calculator: FactorCalculator,
    context: PricingContext,
    options: PricingOptions,
    config: EngineConfig,
) -> FactorResult:
    """Evaluate one calculator, degrading to a neutral factor on any failure."""

    try:
        value, confidence = calculator(context, options, config)
        value = float(value)
    except Exception:
        LOGGER.warning("Factor %s failed; using neutral value", name, exc_info=True)
        return FactorResult(name=name, value=1.0, confidence=config.degraded_factor_confidence, degraded=True)

    if not math.isfinite(value) or value <= 0:
        LOGGER.warning("Factor %s returned invalid value %r; using neutral value", name, value)
        return FactorResult(name=name, value=1.0, confidence=config.degraded_factor_confidence, degraded=True)
    return FactorResult(name=name, value=value, confidence=max(0.0, min(1.0, float(confidence))))


def compute_factors(
    *,
    context: PricingContext,
    options: PricingOptions,
    config: EngineConfig,
    calculators: dict[str, FactorCalculator] | None = None,
) -> dict[str, FactorResult]:
    registry = calculators or FACTOR_CALCULATORS
    return {
        name: run_factor_calculator(
            name=name,
            calculator=calculator,
            context=context,
            options=options,
            config=config,
        )
        for name, calculator in registry.items()
    }


def assemble_factors(results: dict[str, FactorResult]) -> PricingFactors:
    values = {name: results[name].value for name in ALL_FACTORS if name in results}
    return PricingFactors(**values)
