# This module translates pricing factors and surge state into plain-language explanations.
# It exists so every quote tells the customer which signals moved the price and by how much.
# The wording is deterministic and tied to the configured materiality thresholds.
# Keeping the phrasing in one module prevents contradictory wording across endpoints.

from __future__ import annotations

from src.pricing_engine.engine_config import EngineConfig
from src.pricing_engine.models import (
    PRICED_FACTORS,
    PriceAlternative,
    PriceExplanation,
    PricingContext,
    PricingFactors,
    PricingOptions,
    SurgeInfo,
)

FALLBACK_REASON = "Using fallback pricing due to system limitations"

_RAISED_PHRASES = {
    "seasonal": "Seasonal demand for {season}",
    "time": "Peak time pricing",
    "weather": "Weather conditions ({weather})",
    "event": "Local events nearby",
    "competition": "Limited competition in the area",
    "urgency": "{urgency} urgency booking",
    "quality": "{quality} service level",
    "location": "Higher local cost of living",
}
_LOWERED_PHRASES = {
    "seasonal": "Off-peak season",
    "time": "Off-peak time",
    "weather": "Favourable weather",
    "event": "No local events",
    "competition": "Strong local competition",
    "urgency": "Flexible booking",
    "quality": "{quality} service level",
    "location": "Lower local cost of living",
}
_GUARDRAIL_PHRASES = {
    "surge_cap": "Surge capped for this service",
    "price_floor": "Minimum price applied",
}


def _describe(name: str, phrases: dict[str, str], context: PricingContext, options: PricingOptions) -> str:
    template = phrases[name]
    return template.format(
        season=context.season,
        weather=context.weather or "unknown",
        urgency=(options.urgency or "medium").capitalize(),
        quality=(options.quality or "standard").capitalize(),
    )


def primary_factors(
    *,
    factors: PricingFactors,
    surge: SurgeInfo,
    context: PricingContext,
    options: PricingOptions,
    config: EngineConfig,
) -> tuple[str, ...]:
    """List the signals that moved the price beyond the materiality thresholds."""

    described: list[tuple[float, str]] = []
    if surge.multiplier > config.materiality_high:
        described.append((surge.multiplier, surge.reason))
    for name in PRICED_FACTORS:
        value = float(getattr(factors, name))
        if value > config.materiality_high:
            described.append((value, _describe(name, _RAISED_PHRASES, context, options)))
        elif value < config.materiality_low:
            described.append((1.0 / value, _describe(name, _LOWERED_PHRASES, context, options)))
    # Largest effect first.
    described.sort(key=lambda item: item[0], reverse=True)
    return tuple(text for _, text in described)


def pricing_reason(*, factors: PricingFactors, surge: SurgeInfo, config: EngineConfig) -> str:
    if surge.multiplier > config.surge_reason_threshold:
        return "Higher prices due to increased demand"
    combined = factors.priced_product() * surge.multiplier
    if combined > config.materiality_high:
        return "Price adjusted upward for current conditions"
    if combined < config.materiality_low:
        return "Price adjusted downward for current conditions"
    return "Standard pricing"


def build_explanation(
    *,
    factors: PricingFactors,
    surge: SurgeInfo,
    context: PricingContext,
    options: PricingOptions,
    config: EngineConfig,
    alternatives: tuple[PriceAlternative, ...] = (),
    guardrails: tuple[str, ...] = (),
) -> PriceExplanation:
    described = primary_factors(factors=factors, surge=surge, context=context, options=options, config=config)
    # Guardrail notes go last; they explain a clamp, not a signal.
    notes = tuple(_GUARDRAIL_PHRASES[name] for name in guardrails if name in _GUARDRAIL_PHRASES)
    return PriceExplanation(
        primary_factors=described + notes,
        reason=pricing_reason(factors=factors, surge=surge, config=config),
        suggested_alternatives=alternatives,
        degraded=False,
        guardrails_applied=tuple(guardrails),
    )


def fallback_explanation() -> PriceExplanation:
    return PriceExplanation(primary_factors=(), reason=FALLBACK_REASON, suggested_alternatives=(), degraded=True)
