# This file defines runtime configuration for the dynamic pricing engine.
# It exists so quote requests, forecasts, and experiments all read one consistent policy surface.
# The loader merges YAML defaults with PRICING_* environment overrides and validates every table.
# Keeping factor tables and surge bands here makes pricing decisions reproducible and easy to audit.

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

import yaml

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parents[2] / "configs" / "pricing_engine.yaml"


def _load_yaml(path: str | Path) -> dict[str, Any]:
    with open(path, encoding="utf-8") as handle:
        loaded = yaml.safe_load(handle) or {}
    if not isinstance(loaded, dict):
        raise ValueError(f"Config at {path} must be a mapping, got: {type(loaded).__name__}")
    return dict(loaded)


def _env_str(name: str, default: str | None = None) -> str | None:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value


def _env_float(name: str, default: float | None = None) -> float | None:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return float(value)


def _env_int(name: str, default: int | None = None) -> int | None:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return int(value)


def _env_bool(name: str, default: bool | None = None) -> bool | None:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    raise ValueError(f"{name} must be a boolean value (true/false), got: {value!r}")


def _as_float_mapping(value: Any, field_name: str) -> dict[str, float]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"{field_name} must be a mapping of string->float")
    mapped: dict[str, float] = {}
    for key, raw in value.items():
        mapped[str(key)] = float(raw)
    return mapped


def _as_int_mapping(value: Any, field_name: str) -> dict[str, int]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"{field_name} must be a mapping of string->int")
    return {str(key): int(raw) for key, raw in value.items()}


@dataclass(frozen=True)
class SurgeBand:
    threshold: float
    multiplier: float
    level: str


@dataclass(frozen=True)
class TimeBand:
    start_hour: int
    end_hour: int
    multiplier: float
    label: str

    def contains(self, hour: int) -> bool:
        if self.start_hour <= self.end_hour:
            return self.start_hour <= hour < self.end_hour
        # Band wraps past midnight, e.g. 22 -> 6.
        return hour >= self.start_hour or hour < self.end_hour


def _default_surge_bands() -> tuple[SurgeBand, ...]:
    return (
        SurgeBand(threshold=3.0, multiplier=2.5, level="extreme"),
        SurgeBand(threshold=2.0, multiplier=2.0, level="high"),
        SurgeBand(threshold=1.5, multiplier=1.5, level="medium"),
        SurgeBand(threshold=1.2, multiplier=1.25, level="low"),
    )


def _default_time_bands() -> tuple[TimeBand, ...]:
    return (
        TimeBand(start_hour=22, end_hour=6, multiplier=1.2, label="late_night"),
        TimeBand(start_hour=18, end_hour=22, multiplier=1.1, label="evening"),
        TimeBand(start_hour=6, end_hour=18, multiplier=1.0, label="daytime"),
    )


@dataclass(frozen=True)
class EngineConfig:
    base_currency: str = "USD"
    max_workers: int = 8
    fallback_confidence: float = 0.5

    cache_ttl_seconds: int = 900
    cache_max_entries: int | None = 10_000
    cache_bucket_minutes: int = 15
    location_precision: int = 2

    rate_api_url: str = "https://api.exchangerate-api.com/v4"
    rate_ttl_seconds: int = 3600
    external_timeout_seconds: float = 3.0
    default_fee_rate: float = 0.02
    fee_overrides: dict[str, float] = field(default_factory=dict)

    surge_bands: tuple[SurgeBand, ...] = field(default_factory=_default_surge_bands)
    surge_duration_seconds: dict[str, int] = field(
        default_factory=lambda: {"none": 0, "low": 1800, "medium": 2700, "high": 3600, "extreme": 5400}
    )
    surge_window_ms: int = 3_600_000
    max_affected_radius_km: float = 10.0
    demand_level_values: dict[str, float] = field(
        default_factory=lambda: {"low": 5.0, "medium": 10.0, "high": 20.0, "surge": 30.0}
    )
    supply_level_values: dict[str, float] = field(
        default_factory=lambda: {"low": 5.0, "medium": 10.0, "high": 20.0, "oversupply": 30.0}
    )

    smoothing_enabled: bool = True
    smoothing_alpha: float = 0.6
    smoothing_max_step: float = 0.5
    smoothing_window_seconds: int = 900

    seasonal_factors: dict[str, float] = field(
        default_factory=lambda: {"spring": 1.0, "summer": 1.1, "autumn": 1.0, "winter": 0.95, "holiday": 1.2}
    )
    time_bands: tuple[TimeBand, ...] = field(default_factory=_default_time_bands)
    weekend_multiplier: float = 1.1
    weather_factors: dict[str, float] = field(
        default_factory=lambda: {
            "clear": 1.0,
            "cloudy": 1.0,
            "rain": 1.1,
            "snow": 1.2,
            "storm": 1.3,
            "extreme_heat": 1.1,
        }
    )
    default_event_impact: float = 0.05
    max_event_multiplier: float = 1.5
    competition_intercept: float = 1.1
    competition_slope: float = 0.2
    urgency_factors: dict[str, float] = field(
        default_factory=lambda: {"low": 1.0, "medium": 1.0, "high": 1.3, "emergency": 1.5}
    )
    quality_factors: dict[str, float] = field(
        default_factory=lambda: {"budget": 0.8, "standard": 1.0, "premium": 1.2}
    )
    base_demand_factors: dict[str, float] = field(
        default_factory=lambda: {"low": 0.8, "medium": 1.0, "high": 1.2, "surge": 1.5}
    )
    cost_of_living: dict[str, float] = field(
        default_factory=lambda: {
            "US": 1.0,
            "CA": 0.95,
            "GB": 1.05,
            "DE": 1.0,
            "FR": 1.0,
            "CH": 1.3,
            "NO": 1.25,
            "JP": 1.05,
            "AU": 1.05,
            "IN": 0.6,
            "BR": 0.7,
            "MX": 0.7,
        }
    )

    factor_confidence_weights: dict[str, float] = field(
        default_factory=lambda: {
            "base_demand": 1.0,
            "seasonal": 0.5,
            "time": 1.0,
            "weather": 0.5,
            "event": 0.5,
            "competition": 1.0,
            "urgency": 1.0,
            "quality": 1.0,
            "location": 1.0,
            "surge": 2.0,
            "conversion": 1.0,
        }
    )
    degraded_factor_confidence: float = 0.3
    unknown_lookup_confidence: float = 0.5

    materiality_high: float = 1.1
    materiality_low: float = 0.9
    surge_reason_threshold: float = 1.3
    max_alternatives: int = 3
    alternatives_horizon_hours: int = 6

    forecast_max_points: int = 1000
    forecast_min_samples: int = 4
    forecast_lookback_days: int = 28

    experiment_default_duration_days: int = 7
    experiment_baseline_conversion: float = 0.1
    experiment_default_elasticity: float = 1.2
    experiment_expected_volume: int = 1000

    competitive_discount: float = 0.05
    premium_markup: float = 0.2

    surge_multiplier_max: float = 3.0
    service_surge_caps: dict[str, float] = field(default_factory=dict)
    minimum_price_ratio: float = 0.8
    service_minimum_prices: dict[str, float] = field(default_factory=dict)

    def fee_rate_for(self, from_currency: str, to_currency: str) -> float:
        return self.fee_overrides.get(f"{from_currency}:{to_currency}", self.default_fee_rate)

    def duration_for_level(self, level: str) -> int:
        return int(self.surge_duration_seconds.get(level, 0))

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _parse_surge_bands(raw: Any) -> tuple[SurgeBand, ...]:
    if raw is None:
        return _default_surge_bands()
    if not isinstance(raw, list):
        raise ValueError("surge.bands must be a list of {threshold, multiplier, level} mappings")
    bands = [
        SurgeBand(
            threshold=float(item["threshold"]),
            multiplier=float(item["multiplier"]),
            level=str(item["level"]),
        )
        for item in raw
    ]
    return tuple(sorted(bands, key=lambda band: band.threshold, reverse=True))


def _parse_time_bands(raw: Any) -> tuple[TimeBand, ...]:
    if raw is None:
        return _default_time_bands()
    if not isinstance(raw, list):
        raise ValueError("factors.time_bands must be a list of {start_hour, end_hour, multiplier, label} mappings")
    return tuple(
        TimeBand(
            start_hour=int(item["start_hour"]),
            end_hour=int(item["end_hour"]),
            multiplier=float(item["multiplier"]),
            label=str(item.get("label", f"{item['start_hour']}-{item['end_hour']}")),
        )
        for item in raw
    )


def validate_engine_config(config: EngineConfig) -> None:
    """Raise ValueError when any setting would break pricing invariants."""

    if len(config.base_currency) != 3 or not config.base_currency.isalpha() or not config.base_currency.isupper():
        raise ValueError("base_currency must be a 3-letter uppercase ISO 4217 code")
    if config.cache_ttl_seconds <= 0:
        raise ValueError("cache.ttl_seconds must be > 0")
    if config.cache_max_entries is not None and config.cache_max_entries <= 0:
        raise ValueError("cache.max_entries must be > 0 when set")
    if config.cache_bucket_minutes <= 0 or 60 % config.cache_bucket_minutes != 0:
        raise ValueError("cache.bucket_minutes must divide 60")
    if config.rate_ttl_seconds <= 0:
        raise ValueError("rates.ttl_seconds must be > 0")
    if config.external_timeout_seconds <= 0:
        raise ValueError("external_timeout_seconds must be > 0")
    if not 0.0 <= config.default_fee_rate < 1.0:
        raise ValueError("rates.default_fee_rate must be in [0, 1)")
    for pair, fee in config.fee_overrides.items():
        if not 0.0 <= fee < 1.0:
            raise ValueError(f"rates.fee_overrides[{pair}] must be in [0, 1)")
    if not config.surge_bands:
        raise ValueError("surge.bands must not be empty")
    previous_multiplier: float | None = None
    for band in config.surge_bands:
        if band.multiplier < 1.0:
            raise ValueError(f"surge band {band.level} multiplier must be >= 1.0")
        if previous_multiplier is not None and band.multiplier > previous_multiplier:
            raise ValueError("surge band multipliers must not increase as thresholds decrease")
        previous_multiplier = band.multiplier
    if not 0.0 < config.smoothing_alpha <= 1.0:
        raise ValueError("smoothing.alpha must be in (0, 1]")
    if config.smoothing_max_step <= 0:
        raise ValueError("smoothing.max_step must be > 0")
    if config.max_workers <= 0:
        raise ValueError("max_workers must be > 0")
    if not 0.0 <= config.fallback_confidence <= 1.0:
        raise ValueError("fallback_confidence must be in [0, 1]")
    if config.forecast_max_points <= 0:
        raise ValueError("forecast.max_points must be > 0")
    if config.max_alternatives < 0:
        raise ValueError("explanation.max_alternatives must be >= 0")

    factor_tables = {
        "seasonal_factors": config.seasonal_factors,
        "weather_factors": config.weather_factors,
        "urgency_factors": config.urgency_factors,
        "quality_factors": config.quality_factors,
        "base_demand_factors": config.base_demand_factors,
        "cost_of_living": config.cost_of_living,
    }
    for table_name, table in factor_tables.items():
        for key, value in table.items():
            if value <= 0:
                raise ValueError(f"{table_name}[{key}] must be > 0")
    for band in config.time_bands:
        if band.multiplier <= 0 or not 0 <= band.start_hour <= 23 or not 0 <= band.end_hour <= 24:
            raise ValueError(f"time band {band.label} is invalid")
    if config.weekend_multiplier <= 0:
        raise ValueError("factors.weekend_multiplier must be > 0")
    if config.competition_intercept - config.competition_slope <= 0:
        raise ValueError("competition factor must stay > 0 at competition_level=1")
    if config.surge_multiplier_max < 1.0:
        raise ValueError("guardrails.surge_multiplier_max must be >= 1.0")
    for service_id, cap in config.service_surge_caps.items():
        if cap < 1.0:
            raise ValueError(f"guardrails.service_surge_caps[{service_id}] must be >= 1.0")
    if not 0.0 <= config.minimum_price_ratio <= 1.0:
        raise ValueError("guardrails.minimum_price_ratio must be in [0, 1]")
    for service_id, floor in config.service_minimum_prices.items():
        if floor < 0:
            raise ValueError(f"guardrails.service_minimum_prices[{service_id}] must be >= 0")


def load_engine_config(*, config_path: str | Path | None = None) -> EngineConfig:
    path = Path(config_path) if config_path is not None else DEFAULT_CONFIG_PATH
    cfg = _load_yaml(path)
    defaults = EngineConfig()

    cache_cfg = dict(cfg.get("cache", {}))
    rates_cfg = dict(cfg.get("rates", {}))
    surge_cfg = dict(cfg.get("surge", {}))
    smoothing_cfg = dict(cfg.get("smoothing", {}))
    factors_cfg = dict(cfg.get("factors", {}))
    confidence_cfg = dict(cfg.get("confidence", {}))
    explanation_cfg = dict(cfg.get("explanation", {}))
    forecast_cfg = dict(cfg.get("forecast", {}))
    experiments_cfg = dict(cfg.get("experiments", {}))
    strategies_cfg = dict(cfg.get("strategies", {}))
    guardrails_cfg = dict(cfg.get("guardrails", {}))

    raw_max_entries = _env_int("PRICING_CACHE_MAX_ENTRIES", cache_cfg.get("max_entries", defaults.cache_max_entries))

    config = EngineConfig(
        base_currency=str(_env_str("PRICING_BASE_CURRENCY", str(cfg.get("base_currency", defaults.base_currency)))).upper(),
        max_workers=int(_env_int("PRICING_MAX_WORKERS", int(cfg.get("max_workers", defaults.max_workers)))),
        fallback_confidence=float(cfg.get("fallback_confidence", defaults.fallback_confidence)),
        cache_ttl_seconds=int(
            _env_int("PRICING_CACHE_TTL_SECONDS", int(cache_cfg.get("ttl_seconds", defaults.cache_ttl_seconds)))
        ),
        cache_max_entries=int(raw_max_entries) if raw_max_entries is not None else None,
        cache_bucket_minutes=int(cache_cfg.get("bucket_minutes", defaults.cache_bucket_minutes)),
        location_precision=int(cache_cfg.get("location_precision", defaults.location_precision)),
        rate_api_url=str(_env_str("EXCHANGE_RATE_API_URL", str(rates_cfg.get("api_url", defaults.rate_api_url)))),
        rate_ttl_seconds=int(
            _env_int("PRICING_RATE_TTL_SECONDS", int(rates_cfg.get("ttl_seconds", defaults.rate_ttl_seconds)))
        ),
        external_timeout_seconds=float(
            _env_float(
                "PRICING_EXTERNAL_TIMEOUT_SECONDS",
                float(cfg.get("external_timeout_seconds", defaults.external_timeout_seconds)),
            )
        ),
        default_fee_rate=float(
            _env_float("PRICING_DEFAULT_FEE_RATE", float(rates_cfg.get("default_fee_rate", defaults.default_fee_rate)))
        ),
        fee_overrides=_as_float_mapping(rates_cfg.get("fee_overrides"), "rates.fee_overrides"),
        surge_bands=_parse_surge_bands(surge_cfg.get("bands")),
        surge_duration_seconds=_as_int_mapping(
            surge_cfg.get("duration_seconds", defaults.surge_duration_seconds), "surge.duration_seconds"
        ),
        surge_window_ms=int(surge_cfg.get("window_ms", defaults.surge_window_ms)),
        max_affected_radius_km=float(surge_cfg.get("max_affected_radius_km", defaults.max_affected_radius_km)),
        demand_level_values=_as_float_mapping(
            surge_cfg.get("demand_level_values", defaults.demand_level_values), "surge.demand_level_values"
        ),
        supply_level_values=_as_float_mapping(
            surge_cfg.get("supply_level_values", defaults.supply_level_values), "surge.supply_level_values"
        ),
        smoothing_enabled=bool(
            _env_bool("PRICING_SMOOTHING_ENABLED", bool(smoothing_cfg.get("enabled", defaults.smoothing_enabled)))
        ),
        smoothing_alpha=float(
            _env_float("PRICING_SMOOTHING_ALPHA", float(smoothing_cfg.get("alpha", defaults.smoothing_alpha)))
        ),
        smoothing_max_step=float(
            _env_float("PRICING_SMOOTHING_MAX_STEP", float(smoothing_cfg.get("max_step", defaults.smoothing_max_step)))
        ),
        smoothing_window_seconds=int(smoothing_cfg.get("window_seconds", defaults.smoothing_window_seconds)),
        seasonal_factors=_as_float_mapping(
            factors_cfg.get("seasonal", defaults.seasonal_factors), "factors.seasonal"
        ),
        time_bands=_parse_time_bands(factors_cfg.get("time_bands")),
        weekend_multiplier=float(factors_cfg.get("weekend_multiplier", defaults.weekend_multiplier)),
        weather_factors=_as_float_mapping(factors_cfg.get("weather", defaults.weather_factors), "factors.weather"),
        default_event_impact=float(factors_cfg.get("default_event_impact", defaults.default_event_impact)),
        max_event_multiplier=float(factors_cfg.get("max_event_multiplier", defaults.max_event_multiplier)),
        competition_intercept=float(factors_cfg.get("competition_intercept", defaults.competition_intercept)),
        competition_slope=float(factors_cfg.get("competition_slope", defaults.competition_slope)),
        urgency_factors=_as_float_mapping(factors_cfg.get("urgency", defaults.urgency_factors), "factors.urgency"),
        quality_factors=_as_float_mapping(factors_cfg.get("quality", defaults.quality_factors), "factors.quality"),
        base_demand_factors=_as_float_mapping(
            factors_cfg.get("base_demand", defaults.base_demand_factors), "factors.base_demand"
        ),
        cost_of_living=_as_float_mapping(
            factors_cfg.get("cost_of_living", defaults.cost_of_living), "factors.cost_of_living"
        ),
        factor_confidence_weights=_as_float_mapping(
            confidence_cfg.get("weights", defaults.factor_confidence_weights), "confidence.weights"
        ),
        degraded_factor_confidence=float(
            confidence_cfg.get("degraded_factor_confidence", defaults.degraded_factor_confidence)
        ),
        unknown_lookup_confidence=float(
            confidence_cfg.get("unknown_lookup_confidence", defaults.unknown_lookup_confidence)
        ),
        materiality_high=float(explanation_cfg.get("materiality_high", defaults.materiality_high)),
        materiality_low=float(explanation_cfg.get("materiality_low", defaults.materiality_low)),
        surge_reason_threshold=float(explanation_cfg.get("surge_reason_threshold", defaults.surge_reason_threshold)),
        max_alternatives=int(explanation_cfg.get("max_alternatives", defaults.max_alternatives)),
        alternatives_horizon_hours=int(
            explanation_cfg.get("alternatives_horizon_hours", defaults.alternatives_horizon_hours)
        ),
        forecast_max_points=int(
            _env_int("PRICING_FORECAST_MAX_POINTS", int(forecast_cfg.get("max_points", defaults.forecast_max_points)))
        ),
        forecast_min_samples=int(forecast_cfg.get("min_samples", defaults.forecast_min_samples)),
        forecast_lookback_days=int(forecast_cfg.get("lookback_days", defaults.forecast_lookback_days)),
        experiment_default_duration_days=int(
            experiments_cfg.get("default_duration_days", defaults.experiment_default_duration_days)
        ),
        experiment_baseline_conversion=float(
            experiments_cfg.get("baseline_conversion", defaults.experiment_baseline_conversion)
        ),
        experiment_default_elasticity=float(
            experiments_cfg.get("default_elasticity", defaults.experiment_default_elasticity)
        ),
        experiment_expected_volume=int(experiments_cfg.get("expected_volume", defaults.experiment_expected_volume)),
        competitive_discount=float(strategies_cfg.get("competitive_discount", defaults.competitive_discount)),
        premium_markup=float(strategies_cfg.get("premium_markup", defaults.premium_markup)),
        surge_multiplier_max=float(
            _env_float(
                "PRICING_SURGE_MULTIPLIER_MAX",
                float(guardrails_cfg.get("surge_multiplier_max", defaults.surge_multiplier_max)),
            )
        ),
        service_surge_caps=_as_float_mapping(guardrails_cfg.get("service_surge_caps"), "guardrails.service_surge_caps"),
        minimum_price_ratio=float(
            _env_float(
                "PRICING_MINIMUM_PRICE_RATIO",
                float(guardrails_cfg.get("minimum_price_ratio", defaults.minimum_price_ratio)),
            )
        ),
        service_minimum_prices=_as_float_mapping(
            guardrails_cfg.get("service_minimum_prices"), "guardrails.service_minimum_prices"
        ),
    )
    validate_engine_config(config)
    return config
