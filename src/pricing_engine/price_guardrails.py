# This module clamps a composed quote to the service's surge cap and minimum price.
# It runs after factors and surge are multiplied and before any currency conversion.
# Order is fixed (surge cap first, then price floor) so an audit can replay the same result.
# Each clamp that fires is named in the outcome so explanations can say what happened.

from __future__ import annotations

from dataclasses import dataclass

from src.pricing_engine.engine_config import EngineConfig


@dataclass(frozen=True)
class GuardrailOutcome:
    surge_multiplier: float
    price: float
    applied: tuple[str, ...] = ()
    cap_value: float | None = None
    floor_value: float | None = None

    @property
    def surge_capped(self) -> bool:
        return "surge_cap" in self.applied


def surge_cap_for(service_id: str, config: EngineConfig) -> float:
    cap = config.service_surge_caps.get(service_id)
    if cap is None:
        return config.surge_multiplier_max
    return min(cap, config.surge_multiplier_max)


def minimum_price_for(service_id: str, base_price: float, config: EngineConfig) -> float:
    explicit = config.service_minimum_prices.get(service_id)
    if explicit is not None:
        return explicit
    return base_price * config.minimum_price_ratio


def apply_price_guardrails(
    *,
    service_id: str,
    base_price: float,
    pre_surge_price: float,
    surge_multiplier: float,
    config: EngineConfig,
) -> GuardrailOutcome:
    """Cap the surge multiplier, then floor the resulting price.

    `pre_surge_price` is the base price with every factor and experiment
    multiplier applied except surge.
    """
    applied: list[str] = []
    cap_value: float | None = None
    floor_value: float | None = None

    cap = surge_cap_for(service_id, config)
    multiplier = surge_multiplier
    if multiplier > cap:
        multiplier = cap
        cap_value = cap
        applied.append("surge_cap")

    price = pre_surge_price * multiplier
    minimum = minimum_price_for(service_id, base_price, config)
    if price < minimum:
        price = minimum
        floor_value = minimum
        applied.append("price_floor")

    return GuardrailOutcome(
        surge_multiplier=multiplier,
        price=price,
        applied=tuple(applied),
        cap_value=cap_value,
        floor_value=floor_value,
    )
