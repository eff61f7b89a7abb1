# This module orchestrates one dynamic price quote from request validation to cached result.
# It exists so factors, surge, currency conversion, experiments, and explanations are combined
# in one place with one consistent fallback path.
# Factor calculators and the surge calculator run concurrently on a shared worker pool, identical
# requests inside one 15-minute bucket share a cached quote, and any unexpected failure after
# validation degrades to the base price instead of an error.

from __future__ import annotations

import hashlib
import json
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any

from src.pricing_engine.ab_testing import ExperimentManager
from src.pricing_engine.competitive_analyzer import CompetitivePricingAnalyzer
from src.pricing_engine.demand_forecaster import DemandForecaster
from src.pricing_engine.engine_config import EngineConfig
from src.pricing_engine.errors import PricingValidationError
from src.pricing_engine.explanation import build_explanation, fallback_explanation
from src.pricing_engine.factor_calculators import (
    FACTOR_CALCULATORS,
    FactorCalculator,
    FactorResult,
    assemble_factors,
    run_factor_calculator,
)
from src.pricing_engine.historical_store import HistoricalDataStore
from src.pricing_engine.metrics import PRICING_QUOTE_DURATION_SECONDS, PRICING_QUOTES_TOTAL
from src.pricing_engine.models import (
    CurrencyConversion,
    DynamicPrice,
    ExperimentAssignment,
    ExperimentVariant,
    ForecastPeriod,
    ForecastPoint,
    Location,
    LocationPriceOptimization,
    PriceAlternative,
    PriceComparison,
    PricingContext,
    PricingExperiment,
    PricingFactors,
    PricingOptions,
    RecommendationHint,
    SurgeInfo,
    round_money,
    validate_base_price,
)
from src.pricing_engine.price_cache import PriceCache
from src.pricing_engine.price_guardrails import GuardrailOutcome, apply_price_guardrails
from src.pricing_engine.rate_provider import ExchangeRateClient, RateProvider, conversion_confidence
from src.pricing_engine.surge_calculator import SURGE_REASONS, SurgeCalculator, level_for_multiplier
from src.pricing_engine.time_buckets import Clock, floor_timestamp, utc_now

LOGGER = logging.getLogger("pricing")

SIGNAL_CONFIDENCE = {"historical_store": 1.0, "context": 0.7, "neutral": 0.4}


def neutral_surge(reason: str = "Surge signal unavailable") -> SurgeInfo:
    return SurgeInfo(
        multiplier=1.0,
        raw_multiplier=1.0,
        level="none",
        reason=reason,
        duration_seconds=0,
        affected_radius_km=0.0,
        demand_to_supply_ratio=1.0,
        signal_source="neutral",
    )


def quote_fingerprint(
    *,
    service_id: str,
    provider_id: str,
    base_price: float,
    base_currency: str,
    context: PricingContext,
    options: PricingOptions,
    bucket_start: datetime,
    assignment: ExperimentAssignment | None,
    location_precision: int = 2,
) -> str:
    """Deterministic hash identifying a cacheable quote request."""

    cell_lat, cell_lng = context.location.cell(location_precision)
    raw = {
        "service_id": service_id,
        "provider_id": provider_id,
        "base_price": round(base_price, 6),
        "base_currency": base_currency,
        "cell": [cell_lat, cell_lng],
        "currency": context.location.currency,
        "country_code": context.location.country_code,
        "bucket_start": bucket_start.isoformat(),
        "hour": context.hour,
        "weekday": context.weekday,
        "season": context.season,
        "weather": context.weather,
        "events": [[event.name, event.impact] for event in context.local_events],
        "demand_level": context.demand_level,
        "supply_level": context.supply_level,
        "competition_level": round(float(context.competition_level), 4),
        "urgency": options.urgency,
        "quality": options.quality,
        "customer_tier": options.customer_tier,
        "duration_hours": options.duration_hours,
        "variant": [assignment.test_id, assignment.variant_name] if assignment else None,
    }
    return hashlib.sha256(json.dumps(raw, sort_keys=True).encode()).hexdigest()[:32]


class DynamicPricingEngine:
    def __init__(
        self,
        *,
        config: EngineConfig,
        rate_provider: RateProvider,
        surge_calculator: SurgeCalculator,
        forecaster: DemandForecaster | None = None,
        experiments: ExperimentManager | None = None,
        history: HistoricalDataStore | None = None,
        cache: PriceCache[DynamicPrice] | None = None,
        calculators: dict[str, FactorCalculator] | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.config = config
        self.rate_provider = rate_provider
        self.surge_calculator = surge_calculator
        self.forecaster = forecaster
        self.experiments = experiments
        self.history = history
        self.clock = clock
        self.calculators = calculators or FACTOR_CALCULATORS
        self.cache: PriceCache[DynamicPrice] = cache or PriceCache(
            ttl_seconds=config.cache_ttl_seconds,
            max_entries=config.cache_max_entries,
            clock=clock,
        )
        self.analyzer = CompetitivePricingAnalyzer(engine=self, config=config, store=history)
        self._executor = ThreadPoolExecutor(max_workers=config.max_workers, thread_name_prefix="pricing-factors")

    # Quote pipeline

    def _validate_request(
        self,
        *,
        service_id: Any,
        provider_id: Any,
        base_price: Any,
        context: Any,
        options: PricingOptions | None,
        hint: RecommendationHint | None,
    ) -> tuple[float, PricingOptions, str]:
        if not isinstance(service_id, str) or not service_id.strip():
            raise PricingValidationError("service_id", "must be a non-empty string")
        if not isinstance(provider_id, str) or not provider_id.strip():
            raise PricingValidationError("provider_id", "must be a non-empty string")
        price = validate_base_price(base_price)
        if not isinstance(context, PricingContext):
            raise PricingValidationError("context", "must be a PricingContext")
        resolved = (options or PricingOptions()).resolved(hint)
        base_currency = resolved.base_currency or self.config.base_currency
        return price, resolved, base_currency

    def _select_variant(self, *, service_id: str, options: PricingOptions) -> ExperimentAssignment | None:
        if self.experiments is None:
            return None
        try:
            return self.experiments.select_variant(
                service_id=service_id,
                subject_id=options.subject_id,
                segment=options.customer_segment,
            )
        except Exception:
            LOGGER.warning("Experiment assignment failed for %s; pricing without variant", service_id, exc_info=True)
            return None

    def _surge_for_quote(self, *, context: PricingContext, category: str, commit: bool = True) -> SurgeInfo:
        try:
            return self.surge_calculator.calculate(
                location=context.location, category=category, context=context, commit=commit
            )
        except Exception:
            LOGGER.warning("Surge calculation failed for %s; using neutral surge", category, exc_info=True)
            return neutral_surge()

    def _run_factors(
        self, *, context: PricingContext, options: PricingOptions, category: str, commit_surge: bool = True
    ) -> tuple[dict[str, FactorResult], SurgeInfo]:
        surge_future = self._executor.submit(
            self._surge_for_quote, context=context, category=category, commit=commit_surge
        )
        factor_futures = {
            name: self._executor.submit(
                run_factor_calculator,
                name=name,
                calculator=calculator,
                context=context,
                options=options,
                config=self.config,
            )
            for name, calculator in self.calculators.items()
        }
        results = {name: future.result() for name, future in factor_futures.items()}
        return results, surge_future.result()

    def _confidence(self, *, results: dict[str, FactorResult], surge: SurgeInfo, conversion_score: float) -> float:
        weights = self.config.factor_confidence_weights
        scored = [(weights.get(name, 1.0), result.confidence) for name, result in results.items()]
        scored.append((weights.get("surge", 1.0), SIGNAL_CONFIDENCE.get(surge.signal_source, 0.5)))
        scored.append((weights.get("conversion", 1.0), conversion_score))
        total_weight = sum(weight for weight, _ in scored)
        if total_weight <= 0:
            return self.config.fallback_confidence
        return round(sum(weight * score for weight, score in scored) / total_weight, 3)

    def _alternatives(
        self,
        *,
        category: str,
        context: PricingContext,
        factors: PricingFactors,
        surge: SurgeInfo,
        final_price: float,
        currency: str,
        now: datetime,
    ) -> tuple[PriceAlternative, ...]:
        if not surge.is_active or self.forecaster is None or self.config.max_alternatives == 0:
            return ()
        start = now.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)
        period = ForecastPeriod(
            start=start,
            end=start + timedelta(hours=max(0, self.config.alternatives_horizon_hours - 1)),
            granularity="hour",
        )
        try:
            points = self.forecaster.forecast(
                category=category, location=context.location, period=period, season=context.season
            )
        except Exception:
            LOGGER.warning("Forecast for alternatives failed for %s", category, exc_info=True)
            return ()

        current_effective = surge.multiplier * factors.time * factors.seasonal
        candidates: list[PriceAlternative] = []
        for point in points:
            if point.recommended_multiplier >= current_effective:
                continue
            estimated = round_money(final_price * point.recommended_multiplier / current_effective, currency)
            savings = round_money(final_price - estimated, currency)
            if savings <= 0:
                continue
            candidates.append(
                PriceAlternative(
                    start=point.timestamp,
                    multiplier=point.recommended_multiplier,
                    estimated_price=estimated,
                    savings=savings,
                )
            )
        best = sorted(candidates, key=lambda item: item.savings, reverse=True)[: self.config.max_alternatives]
        return tuple(sorted(best, key=lambda item: item.start))

    def _fallback_price(
        self,
        *,
        service_id: str,
        provider_id: str,
        base_price: float,
        base_currency: str,
        fingerprint: str,
        now: datetime,
    ) -> DynamicPrice:
        return DynamicPrice(
            service_id=service_id,
            provider_id=provider_id,
            base_price=base_price,
            final_price=base_price,
            currency=base_currency,
            factors=PricingFactors.neutral(),
            surge_multiplier=1.0,
            surge_level="none",
            confidence=self.config.fallback_confidence,
            valid_until=now + timedelta(seconds=self.config.cache_ttl_seconds),
            explanation=fallback_explanation(),
            fingerprint=fingerprint,
            computed_at=now,
        )

    def _guarded_surge(self, surge: SurgeInfo, outcome: GuardrailOutcome) -> SurgeInfo:
        if not outcome.surge_capped:
            return surge
        level = level_for_multiplier(outcome.surge_multiplier, self.config.surge_bands)
        return replace(
            surge,
            multiplier=outcome.surge_multiplier,
            level=level,
            reason=SURGE_REASONS.get(level, SURGE_REASONS["none"]),
            duration_seconds=self.config.duration_for_level(level),
        )

    def _compute_price(
        self,
        *,
        service_id: str,
        provider_id: str,
        base_price: float,
        base_currency: str,
        context: PricingContext,
        options: PricingOptions,
        category: str,
        assignment: ExperimentAssignment | None,
        fingerprint: str,
        now: datetime,
        commit_surge: bool = True,
    ) -> DynamicPrice:
        def fallback() -> DynamicPrice:
            return self._fallback_price(
                service_id=service_id,
                provider_id=provider_id,
                base_price=base_price,
                base_currency=base_currency,
                fingerprint=fingerprint,
                now=now,
            )

        started = time.perf_counter()
        try:
            results, surge = self._run_factors(
                context=context, options=options, category=category, commit_surge=commit_surge
            )
            factors = assemble_factors(results)
            variant_multiplier = assignment.price_multiplier if assignment else 1.0
            guarded = apply_price_guardrails(
                service_id=service_id,
                base_price=base_price,
                pre_surge_price=base_price * factors.priced_product() * variant_multiplier,
                surge_multiplier=surge.multiplier,
                config=self.config,
            )
            surge = self._guarded_surge(surge, guarded)

            target_currency = context.location.currency
            conversion = self.rate_provider.convert(guarded.price, base_currency, target_currency)
            if conversion.degraded and target_currency != base_currency:
                LOGGER.warning(
                    "No %s->%s rate for %s/%s; returning base price", base_currency, target_currency, service_id, provider_id
                )
                return fallback()
            if (
                surge.store_unavailable
                and conversion.provider == "no_conversion"
                and not self.rate_provider.source_available(base_currency)
            ):
                LOGGER.warning(
                    "Historical store and rate source both unavailable for %s/%s; returning base price",
                    service_id,
                    provider_id,
                )
                return fallback()
            final_price = conversion.converted_amount

            alternatives = self._alternatives(
                category=category,
                context=context,
                factors=factors,
                surge=surge,
                final_price=final_price,
                currency=target_currency,
                now=now,
            )
            return DynamicPrice(
                service_id=service_id,
                provider_id=provider_id,
                base_price=base_price,
                final_price=final_price,
                currency=target_currency,
                factors=factors,
                surge_multiplier=surge.multiplier,
                surge_level=surge.level,
                confidence=self._confidence(
                    results=results, surge=surge, conversion_score=conversion_confidence(conversion)
                ),
                valid_until=now + timedelta(seconds=self.config.cache_ttl_seconds),
                explanation=build_explanation(
                    factors=factors,
                    surge=surge,
                    context=context,
                    options=options,
                    config=self.config,
                    alternatives=alternatives,
                    guardrails=guarded.applied,
                ),
                fingerprint=fingerprint,
                conversion=conversion if conversion.provider != "no_conversion" else None,
                experiment=assignment,
                computed_at=now,
            )
        except Exception:
            LOGGER.exception("Dynamic price computation failed for %s/%s; returning base price", service_id, provider_id)
            return fallback()
        finally:
            PRICING_QUOTE_DURATION_SECONDS.observe(time.perf_counter() - started)

    def calculate_dynamic_price(
        self,
        service_id: str,
        provider_id: str,
        base_price: float,
        context: PricingContext,
        options: PricingOptions | None = None,
        *,
        hint: RecommendationHint | None = None,
        category: str | None = None,
        commit_surge: bool = True,
    ) -> DynamicPrice:
        """Quote a context-sensitive, surge-adjusted price in the location's currency.

        Invalid input raises PricingValidationError before any work is done. Identical requests in the
        same 15-minute bucket return the identical cached quote. When conversion is impossible, when the
        historical store and the rate source are both down, or when any later step fails, the base price
        is returned in the base currency with confidence 0.5 and a degraded explanation; such fallback
        quotes are never cached.

        `commit_surge=False` prices against the current surge state without advancing it.
        """

        price, resolved, base_currency = self._validate_request(
            service_id=service_id,
            provider_id=provider_id,
            base_price=base_price,
            context=context,
            options=options,
            hint=hint,
        )
        surge_category = category or service_id
        assignment = self._select_variant(service_id=service_id, options=resolved)
        now = self.clock()
        fingerprint = quote_fingerprint(
            service_id=service_id,
            provider_id=provider_id,
            base_price=price,
            base_currency=base_currency,
            context=context,
            options=resolved,
            bucket_start=floor_timestamp(now, minutes=self.config.cache_bucket_minutes),
            assignment=assignment,
            location_precision=self.config.location_precision,
        )

        quote, from_cache = self.cache.get_or_compute(
            fingerprint,
            lambda: self._compute_price(
                service_id=service_id,
                provider_id=provider_id,
                base_price=price,
                base_currency=base_currency,
                context=context,
                options=resolved,
                category=surge_category,
                assignment=assignment,
                fingerprint=fingerprint,
                now=now,
                commit_surge=commit_surge,
            ),
            expires_at=lambda value: value.valid_until,
            cacheable=lambda value: not value.explanation.degraded,
        )
        if from_cache:
            outcome = "cache_hit"
        elif quote.explanation.degraded:
            outcome = "fallback"
        else:
            outcome = "computed"
        PRICING_QUOTES_TOTAL.labels(outcome=outcome).inc()
        return quote

    # Other entry points

    def calculate_surge_multiplier(
        self, location: Location, category: str, time_window_ms: int | None = None
    ) -> SurgeInfo:
        if time_window_ms is not None and time_window_ms <= 0:
            raise PricingValidationError("time_window_ms", "must be > 0")
        return self.surge_calculator.calculate(location=location, category=category, time_window_ms=time_window_ms)

    def get_competitive_pricing(
        self,
        category: str,
        location: Location,
        quality_tier: str = "standard",
        context: PricingContext | None = None,
    ) -> PriceComparison:
        return self.analyzer.compare(category=category, location=location, quality_tier=quality_tier, context=context)

    def forecast_demand_and_pricing(
        self, category: str, location: Location, period: ForecastPeriod
    ) -> list[ForecastPoint]:
        if self.forecaster is None:
            raise RuntimeError("Demand forecaster is not configured")
        return self.forecaster.forecast(category=category, location=location, period=period)

    def optimize_pricing_with_ab_test(
        self,
        service_id: str,
        base_price: float,
        variants: list[ExperimentVariant],
        duration: timedelta | None = None,
    ) -> PricingExperiment:
        if self.experiments is None:
            raise RuntimeError("Experiment manager is not configured")
        return self.experiments.register_test(
            service_id=service_id, base_price=base_price, variants=variants, duration=duration
        )

    def convert_currency(self, amount: float, from_currency: str, to_currency: str) -> CurrencyConversion:
        """Convert `amount` with the same cached rates and fees used for quotes.

        Never raises for an unreachable rate API; the result is flagged `degraded` instead.
        """
        return self.rate_provider.convert(amount, from_currency, to_currency)

    def optimize_price_for_location(
        self, base_price: float, location: Location, category: str
    ) -> LocationPriceOptimization:
        return self.analyzer.optimize_for_location(base_price=base_price, location=location, category=category)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
        self.surge_calculator.shutdown()
        self.analyzer.shutdown()
        if self.experiments is not None:
            self.experiments.shutdown()
        if self.forecaster is not None:
            self.forecaster.shutdown()


def build_pricing_engine(
    *,
    config: EngineConfig,
    history: HistoricalDataStore | None = None,
    rate_client: Any | None = None,
    experiment_manager: ExperimentManager | None = None,
    clock: Clock = utc_now,
) -> DynamicPricingEngine:
    """Wire a DynamicPricingEngine with default collaborators."""

    client = rate_client or ExchangeRateClient(
        base_url=config.rate_api_url,
        timeout_seconds=config.external_timeout_seconds,
    )
    return DynamicPricingEngine(
        config=config,
        rate_provider=RateProvider(config=config, client=client, clock=clock),
        surge_calculator=SurgeCalculator(config=config, store=history, clock=clock),
        forecaster=DemandForecaster(config=config, store=history, clock=clock),
        experiments=experiment_manager or ExperimentManager(config=config, history=history, clock=clock),
        history=history,
        clock=clock,
    )
