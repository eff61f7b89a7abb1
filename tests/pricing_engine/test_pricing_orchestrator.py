# This test file validates end-to-end quote computation in the pricing orchestrator.
# It exists to ensure factors, surge, conversion, experiments, and caching combine into one quote,
# and that dependency failures degrade to the base price instead of raising.

from __future__ import annotations

import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from datetime import timedelta
from typing import Any

import pytest

from src.pricing_engine.engine_config import EngineConfig
from src.pricing_engine.errors import PricingValidationError
from src.pricing_engine.explanation import FALLBACK_REASON
from src.pricing_engine.historical_store import InMemoryHistoricalDataStore
from src.pricing_engine.models import (
    ExperimentVariant,
    ForecastPeriod,
    Location,
    PricingOptions,
    RecommendationHint,
)
from src.pricing_engine.pricing_orchestrator import DynamicPricingEngine, quote_fingerprint
from src.pricing_engine.rate_provider import RateProvider
from tests.pricing_engine.engine_support import (
    BERLIN,
    FIXED_NOW,
    NYC,
    StaticRateClient,
    UnavailableHistoryStore,
    add_live_demand,
    build_in_memory_engine,
    wednesday_context,
)


class BrokenSurgeCalculator:
    def calculate(self, **_: object) -> None:
        raise RuntimeError("surge state corrupted")

    def last_multiplier(self, *_: object) -> None:
        return None

    def shutdown(self) -> None:
        return None


def test_high_urgency_quote_under_surge() -> None:
    store = InMemoryHistoricalDataStore()
    add_live_demand(store, demand=25, supply=10)
    engine = build_in_memory_engine(history=store)

    price = engine.calculate_dynamic_price(
        "svc-1", "prov-1", 100.0, wednesday_context(), PricingOptions(urgency="high"), category="rides"
    )

    assert price.final_price == pytest.approx(260.0)
    assert price.currency == "USD"
    assert price.surge_multiplier == 2.0
    assert price.surge_level == "high"
    assert price.factors.urgency == pytest.approx(1.3)
    assert price.conversion is None
    assert price.confidence == pytest.approx(1.0)
    assert price.valid_until == FIXED_NOW + timedelta(seconds=900)
    assert price.explanation.reason == "Higher prices due to increased demand"
    assert price.explanation.primary_factors[0] == "High demand in your area"
    assert "High urgency booking" in price.explanation.primary_factors
    assert price.explanation.degraded is False
    engine.shutdown()


def test_surge_quote_suggests_cheaper_windows() -> None:
    store = InMemoryHistoricalDataStore()
    add_live_demand(store, demand=25, supply=10)
    engine = build_in_memory_engine(history=store)

    price = engine.calculate_dynamic_price("svc-1", "prov-1", 100.0, wednesday_context(), category="rides")

    alternatives = price.explanation.suggested_alternatives
    assert 0 < len(alternatives) <= 3
    assert all(item.estimated_price < price.final_price for item in alternatives)
    assert all(item.start > FIXED_NOW for item in alternatives)
    assert [item.start for item in alternatives] == sorted(item.start for item in alternatives)
    engine.shutdown()


def test_neutral_quote_equals_base_price() -> None:
    engine = build_in_memory_engine()

    price = engine.calculate_dynamic_price("svc-1", "prov-1", 100.0, wednesday_context())

    assert price.final_price == pytest.approx(100.0)
    assert price.surge_level == "none"
    assert price.explanation.reason == "Standard pricing"
    assert price.explanation.primary_factors == ()
    assert price.explanation.suggested_alternatives == ()
    engine.shutdown()


def test_identical_requests_return_identical_quote() -> None:
    store = InMemoryHistoricalDataStore()
    add_live_demand(store, demand=25, supply=10)
    engine = build_in_memory_engine(history=store)
    context = wednesday_context()

    first = engine.calculate_dynamic_price("svc-1", "prov-1", 100.0, context, category="rides")
    second = engine.calculate_dynamic_price("svc-1", "prov-1", 100.0, context, category="rides")

    assert second is first
    assert len(engine.cache) == 1
    engine.shutdown()


def test_different_base_price_is_not_served_from_cache() -> None:
    engine = build_in_memory_engine()
    first = engine.calculate_dynamic_price("svc-1", "prov-1", 100.0, wednesday_context())
    second = engine.calculate_dynamic_price("svc-1", "prov-1", 120.0, wednesday_context())
    assert first.fingerprint != second.fingerprint
    assert second.final_price == pytest.approx(120.0)
    engine.shutdown()


def test_concurrent_identical_requests_share_one_quote() -> None:
    engine = build_in_memory_engine()
    context = wednesday_context()

    with ThreadPoolExecutor(max_workers=8) as pool:
        futures = [
            pool.submit(engine.calculate_dynamic_price, "svc-1", "prov-1", 100.0, context) for _ in range(16)
        ]
        quotes = [future.result(timeout=10) for future in futures]

    assert all(quote is quotes[0] for quote in quotes)
    engine.shutdown()


def test_currency_conversion_to_location_currency() -> None:
    client = StaticRateClient()
    engine = build_in_memory_engine(rate_client=client)

    price = engine.calculate_dynamic_price("svc-1", "prov-1", 100.0, wednesday_context(BERLIN))

    assert price.currency == "EUR"
    assert price.final_price == pytest.approx(90.0)
    assert price.conversion is not None
    assert price.conversion.fees == pytest.approx(1.8)
    assert price.conversion.total_cost == pytest.approx(91.8)
    assert client.calls == ["USD"]
    engine.shutdown()


def test_rate_outage_returns_base_price_fallback() -> None:
    engine = build_in_memory_engine(rate_client=StaticRateClient(fail=True))

    price = engine.calculate_dynamic_price("svc-1", "prov-1", 100.0, wednesday_context(BERLIN))

    assert price.final_price == 100.0
    assert price.currency == "USD"
    assert price.confidence == 0.5
    assert price.explanation.degraded is True
    assert price.explanation.reason == FALLBACK_REASON
    assert price.factors.as_dict() == {name: 1.0 for name in price.factors.as_dict()}
    assert len(engine.cache) == 0
    engine.shutdown()


def test_surge_failure_degrades_to_neutral_surge() -> None:
    config = EngineConfig()
    engine = DynamicPricingEngine(
        config=config,
        rate_provider=RateProvider(config=config, client=StaticRateClient(), clock=lambda: FIXED_NOW),
        surge_calculator=BrokenSurgeCalculator(),
        clock=lambda: FIXED_NOW,
    )

    price = engine.calculate_dynamic_price("svc-1", "prov-1", 100.0, wednesday_context())

    assert price.final_price == pytest.approx(100.0)
    assert price.surge_multiplier == 1.0
    assert price.explanation.degraded is False
    assert price.confidence < 1.0
    engine.shutdown()


def test_hint_fills_unset_options() -> None:
    engine = build_in_memory_engine()
    price = engine.calculate_dynamic_price(
        "svc-1",
        "prov-1",
        100.0,
        wednesday_context(),
        PricingOptions(quality="budget"),
        hint=RecommendationHint(urgency="emergency", quality_tier="premium"),
    )
    assert price.factors.urgency == pytest.approx(1.5)
    assert price.factors.quality == pytest.approx(0.8)
    engine.shutdown()


def test_experiment_variant_multiplier_is_applied() -> None:
    engine = build_in_memory_engine()
    experiment = engine.optimize_pricing_with_ab_test(
        "svc-1", 100.0, [ExperimentVariant(name="higher", price_multiplier=1.1)]
    )

    price = engine.calculate_dynamic_price(
        "svc-1", "prov-1", 100.0, wednesday_context(), PricingOptions(subject_id="customer-7")
    )

    assert price.experiment is not None
    assert price.experiment.test_id == experiment.test_id
    assert price.final_price == pytest.approx(110.0)
    engine.shutdown()


@pytest.mark.parametrize(
    ("args", "field"),
    [
        (("", "prov-1", 100.0), "service_id"),
        (("svc-1", " ", 100.0), "provider_id"),
        (("svc-1", "prov-1", -1.0), "base_price"),
        (("svc-1", "prov-1", math.nan), "base_price"),
        (("svc-1", "prov-1", "100"), "base_price"),
    ],
)
def test_invalid_requests_raise_validation_error(args: tuple[object, object, object], field: str) -> None:
    engine = build_in_memory_engine()
    with pytest.raises(PricingValidationError) as excinfo:
        engine.calculate_dynamic_price(*args, wednesday_context())
    assert excinfo.value.field == field
    engine.shutdown()


def test_invalid_context_values_raise_validation_error() -> None:
    with pytest.raises(PricingValidationError) as excinfo:
        wednesday_context(season="monsoon")
    assert excinfo.value.field == "season"
    with pytest.raises(PricingValidationError) as excinfo:
        Location(lat=40.0, lng=-74.0, currency="XYZ", country_code="US")
    assert excinfo.value.field == "location.currency"
    with pytest.raises(PricingValidationError) as excinfo:
        wednesday_context(time_of_day="25:00")
    assert excinfo.value.field == "time_of_day"


def test_zero_base_price_is_allowed() -> None:
    engine = build_in_memory_engine()
    price = engine.calculate_dynamic_price("svc-1", "prov-1", 0, wednesday_context())
    assert price.final_price == 0.0
    engine.shutdown()


def test_fingerprint_ignores_sub_cell_coordinate_noise() -> None:
    options = PricingOptions().resolved()
    near = Location(lat=40.71281, lng=-74.00601, currency="USD", country_code="US")

    def fingerprint(location: Location) -> str:
        return quote_fingerprint(
            service_id="svc-1",
            provider_id="prov-1",
            base_price=100.0,
            base_currency="USD",
            context=wednesday_context(location),
            options=options,
            bucket_start=FIXED_NOW,
            assignment=None,
        )

    assert fingerprint(NYC) == fingerprint(near)


def test_surge_and_forecast_entry_points() -> None:
    store = InMemoryHistoricalDataStore()
    add_live_demand(store, demand=35, supply=10)
    engine = build_in_memory_engine(history=store)

    surge = engine.calculate_surge_multiplier(NYC, "rides")
    assert surge.level == "extreme"
    with pytest.raises(PricingValidationError):
        engine.calculate_surge_multiplier(NYC, "rides", time_window_ms=0)

    period = ForecastPeriod(start=FIXED_NOW, end=FIXED_NOW + timedelta(days=2), granularity="day")
    assert len(engine.forecast_demand_and_pricing("rides", NYC, period)) == 3
    engine.shutdown()


def test_repeated_fingerprint_skips_surge_and_conversion(monkeypatch: pytest.MonkeyPatch) -> None:
    client = StaticRateClient()
    engine = build_in_memory_engine(rate_client=client)
    surge_calls: list[dict[str, Any]] = []
    convert_calls: list[tuple[Any, ...]] = []
    real_calculate = engine.surge_calculator.calculate
    real_convert = engine.rate_provider.convert

    def counting_calculate(**kwargs: Any) -> Any:
        surge_calls.append(kwargs)
        return real_calculate(**kwargs)

    def counting_convert(*args: Any, **kwargs: Any) -> Any:
        convert_calls.append(args)
        return real_convert(*args, **kwargs)

    monkeypatch.setattr(engine.surge_calculator, "calculate", counting_calculate)
    monkeypatch.setattr(engine.rate_provider, "convert", counting_convert)
    context = wednesday_context(BERLIN)

    first = engine.calculate_dynamic_price("svc-1", "prov-1", 100.0, context, category="rides")
    second = engine.calculate_dynamic_price("svc-1", "prov-1", 100.0, context, category="rides")

    assert second is first
    assert first.currency == "EUR"
    assert len(surge_calls) == 1
    assert len(convert_calls) == 1
    assert client.calls == ["USD"]
    engine.shutdown()


def test_store_and_rate_outage_returns_base_price_fallback() -> None:
    engine = build_in_memory_engine(history=UnavailableHistoryStore(), rate_client=StaticRateClient(fail=True))

    price = engine.calculate_dynamic_price(
        "svc-1", "prov-1", 100.0, wednesday_context(), PricingOptions(urgency="high"), category="rides"
    )

    assert price.final_price == 100.0
    assert price.currency == "USD"
    assert price.confidence == 0.5
    assert price.explanation.degraded is True
    assert price.explanation.reason == FALLBACK_REASON
    assert len(engine.cache) == 0
    engine.shutdown()


def test_store_outage_alone_still_prices_from_context() -> None:
    client = StaticRateClient()
    engine = build_in_memory_engine(history=UnavailableHistoryStore(), rate_client=client)

    price = engine.calculate_dynamic_price(
        "svc-1", "prov-1", 100.0, wednesday_context(), PricingOptions(urgency="high"), category="rides"
    )

    assert price.final_price == pytest.approx(130.0)
    assert price.explanation.degraded is False
    assert price.confidence < 1.0
    assert client.calls == ["USD"]
    engine.shutdown()


def test_service_surge_cap_limits_multiplier() -> None:
    store = InMemoryHistoricalDataStore()
    add_live_demand(store, demand=35, supply=10)
    config = replace(EngineConfig(), service_surge_caps={"svc-airport": 1.5})
    engine = build_in_memory_engine(config=config, history=store)

    price = engine.calculate_dynamic_price("svc-airport", "prov-1", 100.0, wednesday_context(), category="rides")

    assert price.final_price == pytest.approx(150.0)
    assert price.surge_multiplier == 1.5
    assert price.surge_level == "medium"
    assert price.explanation.guardrails_applied == ("surge_cap",)
    assert price.explanation.primary_factors[-1] == "Surge capped for this service"
    engine.shutdown()


def test_global_surge_cap_applies_to_every_service() -> None:
    store = InMemoryHistoricalDataStore()
    add_live_demand(store, demand=35, supply=10)
    engine = build_in_memory_engine(config=replace(EngineConfig(), surge_multiplier_max=2.0), history=store)

    price = engine.calculate_dynamic_price("svc-1", "prov-1", 100.0, wednesday_context(), category="rides")

    assert price.final_price == pytest.approx(200.0)
    assert price.surge_level == "high"
    engine.shutdown()


def test_discounted_quote_is_floored_at_minimum_price() -> None:
    engine = build_in_memory_engine()

    price = engine.calculate_dynamic_price(
        "svc-1", "prov-1", 100.0, wednesday_context(competition_level=1.0), PricingOptions(quality="budget")
    )

    # Budget (0.8) under full competition (0.9) would quote 72.
    assert price.final_price == pytest.approx(80.0)
    assert price.explanation.guardrails_applied == ("price_floor",)
    assert "Minimum price applied" in price.explanation.primary_factors
    engine.shutdown()


def test_service_minimum_price_overrides_ratio() -> None:
    engine = build_in_memory_engine(config=replace(EngineConfig(), service_minimum_prices={"svc-1": 95.0}))

    price = engine.calculate_dynamic_price(
        "svc-1", "prov-1", 100.0, wednesday_context(competition_level=1.0), PricingOptions(quality="budget")
    )

    assert price.final_price == pytest.approx(95.0)
    engine.shutdown()


def test_convert_currency_uses_cached_rates() -> None:
    client = StaticRateClient()
    engine = build_in_memory_engine(rate_client=client)

    first = engine.convert_currency(100.0, "usd", "EUR")
    second = engine.convert_currency(50.0, "USD", "EUR")

    assert first.converted_amount == pytest.approx(90.0)
    assert first.fees == pytest.approx(1.8)
    assert first.provider == "exchange_api"
    assert second.provider == "cache"
    assert client.calls == ["USD"]
    with pytest.raises(PricingValidationError) as excinfo:
        engine.convert_currency(10.0, "USD", "XYZ")
    assert excinfo.value.field == "to_currency"
    engine.shutdown()
