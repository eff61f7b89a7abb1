# This module compares competitor prices for a category and location and recommends a price.
# It exists so providers can see where they sit in the local market before setting a base price.
# Each competitor offer is quoted through the pricing engine so comparisons share one factor model;
# those quotes read surge state without advancing it.
# Market statistics use numpy; positions are assigned by price tertile and insights by quartile.

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING

import numpy as np

from src.pricing_engine.ab_testing import expected_conversion_rate
from src.pricing_engine.engine_config import EngineConfig
from src.pricing_engine.errors import HistoricalDataUnavailableError, PricingValidationError
from src.pricing_engine.historical_store import HistoricalDataStore, bounded_store_call
from src.pricing_engine.models import (
    VALID_QUALITY_TIERS,
    CompetitorOffer,
    DynamicPrice,
    Location,
    LocationPriceOptimization,
    MarketAnalysis,
    PriceComparison,
    PricingContext,
    PricingOptions,
    PricingStrategy,
    ProviderPrice,
)
from src.pricing_engine.time_buckets import season_for

if TYPE_CHECKING:
    from src.pricing_engine.pricing_orchestrator import DynamicPricingEngine

LOGGER = logging.getLogger("pricing.competition")


def market_position(price: float, lower_tertile: float, upper_tertile: float) -> str:
    if price <= lower_tertile:
        return "budget"
    if price <= upper_tertile:
        return "standard"
    return "premium"


def quartile_insight(recommended: float, prices: np.ndarray) -> str:
    q1, q3 = np.quantile(prices, [0.25, 0.75])
    if recommended < q1:
        return "Recommended price sits in the lowest quartile of the market"
    if recommended > q3:
        return "Recommended price sits in the highest quartile of the market"
    return "Recommended price sits within the middle half of the market"


class CompetitivePricingAnalyzer:
    def __init__(
        self,
        *,
        engine: DynamicPricingEngine,
        config: EngineConfig,
        store: HistoricalDataStore | None = None,
        executor: ThreadPoolExecutor | None = None,
    ) -> None:
        self.engine = engine
        self.config = config
        self.store = store
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(max_workers=2, thread_name_prefix="market-data")

    def _offers(self, *, category: str, location: Location) -> tuple[list[CompetitorOffer], bool]:
        if self.store is None:
            return [], False
        try:
            offers = bounded_store_call(
                self._executor,
                self.store.competitor_offers,
                timeout_seconds=self.config.external_timeout_seconds,
                category=category,
                location=location,
            )
            return list(offers), True
        except HistoricalDataUnavailableError:
            LOGGER.warning("Competitor offers unavailable for %s", category, exc_info=True)
            return [], False

    def _default_context(self, location: Location) -> PricingContext:
        now = self.engine.clock()
        return PricingContext(
            location=location,
            time_of_day=now.hour,
            day_of_week=now.weekday(),
            season=season_for(now, lat=location.lat),
        )

    def _quote_offers(
        self, *, category: str, offers: list[CompetitorOffer], context: PricingContext
    ) -> list[tuple[CompetitorOffer, DynamicPrice]]:
        quoted: list[tuple[CompetitorOffer, DynamicPrice]] = []
        for offer in offers:
            quality = offer.quality_tier if offer.quality_tier in VALID_QUALITY_TIERS else "standard"
            try:
                price = self.engine.calculate_dynamic_price(
                    offer.service_id,
                    offer.provider_id,
                    offer.base_price,
                    context,
                    PricingOptions(quality=quality),
                    category=category,
                    commit_surge=False,
                )
            except PricingValidationError:
                LOGGER.warning("Skipping invalid competitor offer %s", offer.provider_id, exc_info=True)
                continue
            quoted.append((offer, price))
        return quoted

    def _strategies(
        self, *, average: float, median: float, recommended: float, quality_tier: str
    ) -> tuple[PricingStrategy, ...]:
        candidates = [
            ("competitive", average * (1.0 - self.config.competitive_discount), "Undercut the market average"),
            ("value", median, "Match the typical market price"),
            ("dynamic", recommended, "Follow the blended market recommendation"),
        ]
        if quality_tier == "premium":
            candidates.append(
                ("premium", recommended * (1.0 + self.config.premium_markup), "Premium positioning above the market")
            )

        strategies: list[PricingStrategy] = []
        for name, price, description in candidates:
            relative = price / average if average > 0 else 1.0
            booking_rate = expected_conversion_rate(
                baseline=self.config.experiment_baseline_conversion,
                multiplier=relative,
                elasticity=self.config.experiment_default_elasticity,
            )
            strategies.append(
                PricingStrategy(
                    name=name,
                    price=round(price, 2),
                    expected_booking_rate=round(booking_rate, 4),
                    expected_revenue=round(price * booking_rate * self.config.experiment_expected_volume, 2),
                    description=description,
                )
            )
        return tuple(sorted(strategies, key=lambda item: item.expected_revenue, reverse=True))

    def compare(
        self,
        *,
        category: str,
        location: Location,
        quality_tier: str = "standard",
        context: PricingContext | None = None,
    ) -> PriceComparison:
        if quality_tier not in VALID_QUALITY_TIERS:
            raise PricingValidationError("quality_tier", f"must be one of {sorted(VALID_QUALITY_TIERS)}")

        offers, source_ok = self._offers(category=category, location=location)
        quote_context = context or self._default_context(location)
        all_quotes = self._quote_offers(category=category, offers=offers, context=quote_context)
        # Fallback quotes stay in the base currency and cannot be compared.
        quoted = [(offer, price) for offer, price in all_quotes if price.currency == location.currency]
        unconverted = len(all_quotes) - len(quoted)

        if not quoted:
            if unconverted:
                insight = f"Competitor prices could not be converted to {location.currency}; market data is degraded"
            elif source_ok:
                insight = f"No competitor offers found for {category} in {location.country_code}"
            else:
                insight = "Market data is currently unavailable"
            return PriceComparison(
                category=category,
                currency=location.currency,
                providers=(),
                market_analysis=MarketAnalysis(
                    average_price=None,
                    median_price=None,
                    price_range=None,
                    recommended_price=None,
                    competitiveness_score=None,
                    sample_size=0,
                ),
                insights=(insight,),
            )

        prices = np.array([price.final_price for _, price in quoted], dtype=float)
        average = float(np.mean(prices))
        median = float(np.median(prices))
        low, high = float(np.min(prices)), float(np.max(prices))
        tier_factor = self.config.quality_factors.get(quality_tier, 1.0)
        recommended = float(np.clip((average + median) / 2.0 * tier_factor, low, high))
        competitiveness = float(np.mean(prices >= recommended))
        lower_tertile, upper_tertile = np.quantile(prices, [1.0 / 3.0, 2.0 / 3.0])

        providers: list[ProviderPrice] = []
        for offer, price in quoted:
            rating = offer.rating if offer.rating is not None else 3.0
            relative_cost = average / price.final_price if price.final_price > 0 else 1.0
            position = "standard" if len(quoted) == 1 else market_position(
                price.final_price, float(lower_tertile), float(upper_tertile)
            )
            providers.append(
                ProviderPrice(
                    provider_id=offer.provider_id,
                    price=price,
                    market_position=position,
                    value_score=round(float(np.clip(rating / 5.0 * relative_cost, 0.0, 1.0)), 3),
                )
            )

        insights = [quartile_insight(recommended, prices)]
        spread = (high - low) / average if average > 0 else 0.0
        if spread > 0.5:
            insights.append("Wide price spread suggests a fragmented market")
        elif spread < 0.1:
            insights.append("Tight price spread; competitors price almost identically")
        if len(quoted) < 3:
            insights.append("Few competitors; statistics are indicative only")
        surged = sum(1 for _, price in quoted if price.surge_multiplier > 1.0)
        if surged:
            insights.append(f"{surged} of {len(quoted)} competitor quotes include surge pricing")
        if unconverted:
            insights.append(f"{unconverted} competitor quotes excluded: no {location.currency} exchange rate")

        return PriceComparison(
            category=category,
            currency=location.currency,
            providers=tuple(sorted(providers, key=lambda item: item.price.final_price)),
            market_analysis=MarketAnalysis(
                average_price=round(average, 2),
                median_price=round(median, 2),
                price_range=(round(low, 2), round(high, 2)),
                recommended_price=round(recommended, 2),
                competitiveness_score=round(competitiveness, 3),
                sample_size=len(quoted),
            ),
            insights=tuple(insights),
            strategies=self._strategies(
                average=average, median=median, recommended=recommended, quality_tier=quality_tier
            ),
        )

    def optimize_for_location(
        self, *, base_price: float, location: Location, category: str
    ) -> LocationPriceOptimization:
        """Adjust a base price for local cost of living, market maturity, competition, and demand."""

        if base_price < 0:
            raise PricingValidationError("base_price", "must not be negative")
        offers, _ = self._offers(category=category, location=location)
        competitor_count = len(offers)

        cost_of_living = self.config.cost_of_living.get(location.country_code, 1.0)
        if competitor_count == 0:
            market_maturity = 0.95
        elif competitor_count < 5:
            market_maturity = 1.0
        else:
            market_maturity = 1.05
        competition = max(0.9, 1.05 - 0.02 * competitor_count)
        last_surge = self.engine.surge_calculator.last_multiplier(location, category) or 1.0
        demand = min(1.2, 1.0 + (last_surge - 1.0) * 0.2)

        local_factors = {
            "cost_of_living": cost_of_living,
            "market_maturity": market_maturity,
            "competition": round(competition, 3),
            "demand": round(demand, 3),
        }
        adjustment = float(np.prod(list(local_factors.values())))

        recommendations: list[str] = []
        if cost_of_living > 1.1:
            recommendations.append("High cost-of-living market; premium positioning is viable")
        elif cost_of_living < 0.9:
            recommendations.append("Lower cost-of-living market; keep prices accessible")
        if competitor_count == 0:
            recommendations.append("No local competitors found; introductory pricing can build share")
        elif competitor_count >= 5:
            recommendations.append("Crowded market; differentiate on quality rather than price")
        if demand > 1.05:
            recommendations.append("Demand is elevated; consider limited-time surge pricing")

        return LocationPriceOptimization(
            base_price=base_price,
            optimized_price=round(base_price * adjustment, 2),
            adjustment_factor=round(adjustment, 4),
            local_factors=local_factors,
            recommendations=tuple(recommendations),
        )

    def shutdown(self) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=False, cancel_futures=True)
