# This test file validates exchange-rate fetching, caching, and conversion fees.
# It exists to ensure conversions survive API outages by serving stale or identity rates.
# A fake requests session and a mutable clock keep the cases deterministic.

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
import requests

from src.pricing_engine.engine_config import EngineConfig
from src.pricing_engine.errors import PricingValidationError, RateUnavailableError
from src.pricing_engine.rate_provider import ExchangeRateClient, RateProvider, conversion_confidence


class FakeResponse:
    def __init__(self, *, status_code: int = 200, payload: Any = None, invalid_json: bool = False) -> None:
        self.status_code = status_code
        self._payload = payload
        self._invalid_json = invalid_json

    def json(self) -> Any:
        if self._invalid_json:
            raise ValueError("not json")
        return self._payload


class FakeSession:
    def __init__(self, response: FakeResponse | None = None, *, error: Exception | None = None) -> None:
        self.response = response
        self.error = error
        self.requested: list[tuple[str, float]] = []

    def get(self, url: str, timeout: float) -> FakeResponse:
        self.requested.append((url, timeout))
        if self.error is not None:
            raise self.error
        assert self.response is not None
        return self.response


class FakeRateClient:
    def __init__(self, rates: dict[str, float]) -> None:
        self.rates = rates
        self.fail = False
        self.calls = 0

    def fetch_rates(self, base_currency: str) -> dict[str, float]:
        self.calls += 1
        if self.fail:
            raise RateUnavailableError("rate API down")
        return dict(self.rates)


class MutableClock:
    def __init__(self, value: datetime) -> None:
        self.value = value

    def __call__(self) -> datetime:
        return self.value


def test_client_parses_rates_and_drops_invalid_entries() -> None:
    session = FakeSession(FakeResponse(payload={"base": "USD", "rates": {"EUR": "0.9", "BAD": "x", "ZERO": 0}}))
    client = ExchangeRateClient(base_url="https://rates.example/v4/", timeout_seconds=2.0, session=session)

    rates = client.fetch_rates("USD")

    assert rates == {"EUR": 0.9}
    assert session.requested == [("https://rates.example/v4/latest/USD", 2.0)]


@pytest.mark.parametrize(
    "session",
    [
        FakeSession(error=requests.ConnectionError("refused")),
        FakeSession(FakeResponse(status_code=503, payload={})),
        FakeSession(FakeResponse(invalid_json=True)),
        FakeSession(FakeResponse(payload={"rates": {}})),
    ],
)
def test_client_failures_raise_rate_unavailable(session: FakeSession) -> None:
    client = ExchangeRateClient(base_url="https://rates.example/v4", session=session)
    with pytest.raises(RateUnavailableError):
        client.fetch_rates("USD")


def test_same_currency_is_identity_without_fees() -> None:
    client = FakeRateClient({"EUR": 0.9})
    provider = RateProvider(config=EngineConfig(), client=client)

    conversion = provider.convert(100.0, "USD", "USD")

    assert conversion.rate == 1.0
    assert conversion.converted_amount == 100.0
    assert conversion.fees == 0.0
    assert conversion.provider == "no_conversion"
    assert client.calls == 0


def test_conversion_applies_rate_and_fee() -> None:
    provider = RateProvider(config=EngineConfig(), client=FakeRateClient({"EUR": 0.9}))

    conversion = provider.convert(100.0, "USD", "EUR")

    assert conversion.converted_amount == pytest.approx(90.0)
    assert conversion.fees == pytest.approx(1.8)
    assert conversion.total_cost == pytest.approx(91.8)
    assert conversion.provider == "exchange_api"
    assert conversion.degraded is False


def test_zero_decimal_currency_rounds_to_whole_units() -> None:
    provider = RateProvider(config=EngineConfig(), client=FakeRateClient({"JPY": 151.237}))
    conversion = provider.convert(10.0, "USD", "JPY", include_fees=False)
    assert conversion.converted_amount == 1512.0
    assert conversion.fees == 0.0


def test_rates_are_cached_until_ttl_expires() -> None:
    clock = MutableClock(datetime(2024, 5, 15, 12, 0, tzinfo=UTC))
    client = FakeRateClient({"EUR": 0.9, "GBP": 0.8})
    provider = RateProvider(config=EngineConfig(), client=client, clock=clock)

    provider.get_rate("USD", "EUR")
    cached = provider.get_rate("USD", "GBP")
    assert client.calls == 1
    assert cached.provider == "cache"

    clock.value += timedelta(hours=2)
    refreshed = provider.get_rate("USD", "EUR")
    assert client.calls == 2
    assert refreshed.provider == "exchange_api"


def test_stale_rate_served_when_api_fails() -> None:
    clock = MutableClock(datetime(2024, 5, 15, 12, 0, tzinfo=UTC))
    client = FakeRateClient({"EUR": 0.9})
    provider = RateProvider(config=EngineConfig(), client=client, clock=clock)
    provider.get_rate("USD", "EUR")

    clock.value += timedelta(hours=2)
    client.fail = True
    quote = provider.get_rate("USD", "EUR")

    assert quote.provider == "stale_cache"
    assert quote.rate == 0.9
    assert quote.last_updated == datetime(2024, 5, 15, 12, 0, tzinfo=UTC)


def test_identity_fallback_when_no_rate_ever_fetched() -> None:
    client = FakeRateClient({})
    client.fail = True
    provider = RateProvider(config=EngineConfig(), client=client)

    conversion = provider.convert(100.0, "USD", "EUR")

    assert conversion.degraded is True
    assert conversion.provider == "fallback"
    assert conversion.converted_amount == 100.0
    assert conversion.fees == 0.0
    assert conversion_confidence(conversion) == 0.0


def test_missing_target_currency_falls_back() -> None:
    provider = RateProvider(config=EngineConfig(), client=FakeRateClient({"GBP": 0.8}))
    assert provider.get_rate("USD", "EUR").provider == "fallback"


def test_unknown_currency_is_rejected() -> None:
    provider = RateProvider(config=EngineConfig(), client=FakeRateClient({"EUR": 0.9}))
    with pytest.raises(PricingValidationError) as excinfo:
        provider.convert(10.0, "USD", "XXX")
    assert excinfo.value.field == "to_currency"


def test_source_available_uses_fresh_cache_before_calling_api() -> None:
    clock = MutableClock(datetime(2024, 5, 15, 12, 0, tzinfo=UTC))
    client = FakeRateClient({"EUR": 0.9})
    provider = RateProvider(config=EngineConfig(), client=client, clock=clock)

    assert provider.source_available("USD") is True
    assert provider.source_available("USD") is True
    assert client.calls == 1
    assert provider.get_rate("USD", "EUR").provider == "cache"

    clock.value += timedelta(hours=2)
    client.fail = True
    assert provider.source_available("USD") is False
    assert client.calls == 2
