# This test file validates competitor price comparison and location price optimization.
# It exists to ensure market statistics, positions, and strategies are derived from engine quotes
# and that an empty market produces an explicit insight instead of invented numbers.

from __future__ import annotations

import time
from dataclasses import replace

import pytest

from src.pricing_engine.engine_config import EngineConfig
from src.pricing_engine.errors import PricingValidationError
from src.pricing_engine.historical_store import InMemoryHistoricalDataStore
from src.pricing_engine.models import CompetitorOffer, Location
from tests.pricing_engine.engine_support import (
    BERLIN,
    NYC,
    StalledHistoryStore,
    StaticRateClient,
    UnavailableHistoryStore,
    add_live_demand,
    build_in_memory_engine,
    wednesday_context,
)

ZURICH = Location(lat=47.3769, lng=8.5417, currency="CHF", country_code="CH")


def _market() -> InMemoryHistoricalDataStore:
    store = InMemoryHistoricalDataStore()
    for provider_id, price, rating in (("p-low", 80.0, 4.0), ("p-mid", 100.0, None), ("p-high", 120.0, 5.0)):
        store.add_offer(
            category="rides",
            country_code="US",
            offer=CompetitorOffer(provider_id=provider_id, service_id=f"svc-{provider_id}", base_price=price, rating=rating),
        )
    return store


def test_market_statistics_and_positions() -> None:
    engine = build_in_memory_engine(history=_market())

    comparison = engine.get_competitive_pricing("rides", NYC, context=wednesday_context())

    analysis = comparison.market_analysis
    assert comparison.currency == "USD"
    assert analysis.sample_size == 3
    assert analysis.average_price == pytest.approx(100.0)
    assert analysis.median_price == pytest.approx(100.0)
    assert analysis.price_range == (80.0, 120.0)
    assert analysis.recommended_price == pytest.approx(100.0)
    assert analysis.competitiveness_score == pytest.approx(0.667, abs=1e-3)
    positions = {provider.provider_id: provider.market_position for provider in comparison.providers}
    assert positions == {"p-low": "budget", "p-mid": "standard", "p-high": "premium"}
    assert [provider.price.final_price for provider in comparison.providers] == sorted(
        provider.price.final_price for provider in comparison.providers
    )
    assert all(0.0 <= provider.value_score <= 1.0 for provider in comparison.providers)
    assert comparison.insights[0] == "Recommended price sits within the middle half of the market"
    engine.shutdown()


def test_strategies_sorted_by_expected_revenue() -> None:
    engine = build_in_memory_engine(history=_market())

    standard = engine.get_competitive_pricing("rides", NYC, context=wednesday_context())
    premium = engine.get_competitive_pricing("rides", NYC, quality_tier="premium", context=wednesday_context())

    revenues = [strategy.expected_revenue for strategy in standard.strategies]
    assert revenues == sorted(revenues, reverse=True)
    assert {strategy.name for strategy in standard.strategies} == {"competitive", "value", "dynamic"}
    assert "premium" in {strategy.name for strategy in premium.strategies}
    engine.shutdown()


def test_empty_market_reports_insight() -> None:
    engine = build_in_memory_engine(history=_market())

    comparison = engine.get_competitive_pricing("boats", NYC, context=wednesday_context())

    assert comparison.providers == ()
    assert comparison.market_analysis.average_price is None
    assert comparison.market_analysis.sample_size == 0
    assert comparison.insights == ("No competitor offers found for boats in US",)
    engine.shutdown()


def test_unknown_quality_tier_is_rejected() -> None:
    engine = build_in_memory_engine()
    with pytest.raises(PricingValidationError) as excinfo:
        engine.get_competitive_pricing("rides", NYC, quality_tier="luxury")
    assert excinfo.value.field == "quality_tier"
    engine.shutdown()


def test_location_optimization_for_high_cost_market_without_competitors() -> None:
    engine = build_in_memory_engine()

    result = engine.optimize_price_for_location(100.0, ZURICH, "rides")

    assert result.local_factors["cost_of_living"] == pytest.approx(1.3)
    assert result.local_factors["market_maturity"] == pytest.approx(0.95)
    assert result.adjustment_factor == pytest.approx(1.3 * 0.95 * 1.05, abs=1e-4)
    assert result.optimized_price == pytest.approx(129.68, abs=0.01)
    assert "High cost-of-living market; premium positioning is viable" in result.recommendations
    assert "No local competitors found; introductory pricing can build share" in result.recommendations
    engine.shutdown()


def test_location_optimization_counts_local_competitors() -> None:
    engine = build_in_memory_engine(history=_market())
    result = engine.optimize_price_for_location(100.0, NYC, "rides")
    assert result.local_factors["market_maturity"] == 1.0
    assert result.local_factors["competition"] == pytest.approx(0.99)
    engine.shutdown()


def test_market_quotes_do_not_advance_customer_surge() -> None:
    store = _market()
    engine = build_in_memory_engine(history=store)
    assert engine.calculate_surge_multiplier(NYC, "rides").multiplier == 1.0

    add_live_demand(store, demand=35, supply=10)
    comparison = engine.get_competitive_pricing("rides", NYC, context=wednesday_context())
    assert comparison.market_analysis.sample_size == 3
    assert engine.surge_calculator.last_multiplier(NYC, "rides") == 1.0

    customer = engine.calculate_dynamic_price("svc-1", "prov-1", 100.0, wednesday_context(), category="rides")
    assert customer.surge_multiplier == pytest.approx(1.5)
    assert customer.surge_multiplier - 1.0 <= EngineConfig().smoothing_max_step + 1e-9
    engine.shutdown()


def test_stalled_offer_lookup_degrades_within_timeout() -> None:
    store = StalledHistoryStore()
    engine = build_in_memory_engine(config=replace(EngineConfig(), external_timeout_seconds=0.2), history=store)
    try:
        started = time.perf_counter()
        comparison = engine.get_competitive_pricing("rides", NYC, context=wednesday_context())
        elapsed = time.perf_counter() - started
    finally:
        store.release.set()
        engine.shutdown()

    assert elapsed < 2.0
    assert comparison.providers == ()
    assert comparison.insights == ("Market data is currently unavailable",)


def test_failing_offer_store_reports_unavailable_market() -> None:
    engine = build_in_memory_engine(history=UnavailableHistoryStore())
    result = engine.optimize_price_for_location(100.0, NYC, "rides")
    comparison = engine.get_competitive_pricing("rides", NYC, context=wednesday_context())
    assert result.local_factors["market_maturity"] == pytest.approx(0.95)
    assert comparison.insights == ("Market data is currently unavailable",)
    engine.shutdown()


def test_unconvertible_competitor_quotes_report_degraded_market() -> None:
    store = InMemoryHistoricalDataStore()
    for provider_id, price in (("p-1", 80.0), ("p-2", 100.0)):
        store.add_offer(
            category="rides",
            country_code="DE",
            offer=CompetitorOffer(provider_id=provider_id, service_id=f"svc-{provider_id}", base_price=price),
        )
    engine = build_in_memory_engine(history=store, rate_client=StaticRateClient(fail=True))

    comparison = engine.get_competitive_pricing("rides", BERLIN, context=wednesday_context(BERLIN))

    assert comparison.providers == ()
    assert comparison.currency == "EUR"
    assert comparison.insights == ("Competitor prices could not be converted to EUR; market data is degraded",)
    engine.shutdown()
