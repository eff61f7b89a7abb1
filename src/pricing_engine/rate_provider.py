# This module converts amounts between currencies using an external exchange-rate API.
# It exists so quotes can be expressed in the customer's local currency with a transparent fee.
# Rates are cached per currency pair for one hour and concurrent fetches for a pair collapse to one.
# When the API is down the most recent cached rate is served; with no rate at all an identity
# conversion flagged as degraded is returned so the caller can fall back safely.

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

import requests

from src.pricing_engine.engine_config import EngineConfig
from src.pricing_engine.errors import RateUnavailableError
from src.pricing_engine.metrics import EXCHANGE_RATE_FETCHES_TOTAL
from src.pricing_engine.models import CurrencyConversion, round_money, validate_base_price, validate_currency
from src.pricing_engine.time_buckets import Clock, utc_now

LOGGER = logging.getLogger("pricing.rates")

PROVIDER_CONFIDENCE = {
    "no_conversion": 1.0,
    "exchange_api": 1.0,
    "cache": 1.0,
    "stale_cache": 0.7,
    "fallback": 0.0,
}


class ExchangeRateClient:
    """Thin `requests` client for `GET {base_url}/latest/{base}` style rate APIs."""

    def __init__(
        self,
        *,
        base_url: str,
        timeout_seconds: float = 3.0,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.session = session or requests.Session()

    def fetch_rates(self, base_currency: str) -> dict[str, float]:
        url = f"{self.base_url}/latest/{base_currency}"
        try:
            response = self.session.get(url, timeout=self.timeout_seconds)
        except requests.RequestException as exc:
            raise RateUnavailableError(f"Rate request failed for {url}: {exc}") from exc

        if response.status_code >= 400:
            raise RateUnavailableError(f"Rate request failed with status {response.status_code} for {url}")

        try:
            payload = response.json()
        except ValueError as exc:
            raise RateUnavailableError(f"Rate API did not return valid JSON for {url}") from exc

        rates = payload.get("rates") if isinstance(payload, dict) else None
        if not isinstance(rates, dict) or not rates:
            raise RateUnavailableError(f"Unexpected payload shape from {url}")
        return _clean_rates(rates)


def _clean_rates(raw: dict[str, Any]) -> dict[str, float]:
    cleaned: dict[str, float] = {}
    for code, value in raw.items():
        try:
            rate = float(value)
        except (TypeError, ValueError):
            continue
        if rate > 0:
            cleaned[str(code).upper()] = rate
    return cleaned


@dataclass(frozen=True)
class CachedRate:
    rate: float
    fetched_at: datetime


@dataclass(frozen=True)
class RateQuote:
    rate: float
    provider: str
    last_updated: datetime

    @property
    def degraded(self) -> bool:
        return self.provider == "fallback"


class RateProvider:
    def __init__(
        self,
        *,
        config: EngineConfig,
        client: ExchangeRateClient | Any,
        clock: Clock = utc_now,
    ) -> None:
        self.config = config
        self.client = client
        self.clock = clock
        self._rates: dict[tuple[str, str], CachedRate] = {}
        self._rates_guard = threading.Lock()
        self._pair_locks: dict[tuple[str, str], threading.Lock] = {}
        self._pair_locks_guard = threading.Lock()

    def _lock_for(self, pair: tuple[str, str]) -> threading.Lock:
        with self._pair_locks_guard:
            lock = self._pair_locks.get(pair)
            if lock is None:
                lock = threading.Lock()
                self._pair_locks[pair] = lock
            return lock

    def _cached(self, pair: tuple[str, str]) -> CachedRate | None:
        with self._rates_guard:
            return self._rates.get(pair)

    def _is_fresh(self, cached: CachedRate, now: datetime) -> bool:
        return now - cached.fetched_at < timedelta(seconds=self.config.rate_ttl_seconds)

    def _store_table(self, base_currency: str, rates: dict[str, float], fetched_at: datetime) -> None:
        with self._rates_guard:
            for code, rate in rates.items():
                if code == base_currency:
                    continue
                self._rates[(base_currency, code)] = CachedRate(rate=rate, fetched_at=fetched_at)

    def get_rate(self, from_currency: str, to_currency: str) -> RateQuote:
        if from_currency == to_currency:
            return RateQuote(rate=1.0, provider="no_conversion", last_updated=self.clock())

        pair = (from_currency, to_currency)
        cached = self._cached(pair)
        if cached is not None and self._is_fresh(cached, self.clock()):
            return RateQuote(rate=cached.rate, provider="cache", last_updated=cached.fetched_at)

        with self._lock_for(pair):
            # Another caller may have refreshed the pair while this one waited.
            cached = self._cached(pair)
            now = self.clock()
            if cached is not None and self._is_fresh(cached, now):
                return RateQuote(rate=cached.rate, provider="cache", last_updated=cached.fetched_at)

            try:
                rates = self.client.fetch_rates(from_currency)
                if to_currency not in rates:
                    raise RateUnavailableError(f"Rate API has no {from_currency}->{to_currency} rate")
            except RateUnavailableError as exc:
                EXCHANGE_RATE_FETCHES_TOTAL.labels(result="failed").inc()
                if cached is not None:
                    LOGGER.warning("Serving stale %s->%s rate from %s: %s", *pair, cached.fetched_at.isoformat(), exc)
                    return RateQuote(rate=cached.rate, provider="stale_cache", last_updated=cached.fetched_at)
                LOGGER.warning("No %s->%s rate available; using identity conversion: %s", *pair, exc)
                return RateQuote(rate=1.0, provider="fallback", last_updated=now)

            EXCHANGE_RATE_FETCHES_TOTAL.labels(result="ok").inc()
            self._store_table(from_currency, rates, now)
            return RateQuote(rate=rates[to_currency], provider="exchange_api", last_updated=now)

    def source_available(self, base_currency: str) -> bool:
        """True when a fresh rate table for `base_currency` is cached or the API answers now."""
        base = validate_currency(base_currency, "base_currency")
        now = self.clock()
        with self._rates_guard:
            if any(pair[0] == base and self._is_fresh(cached, now) for pair, cached in self._rates.items()):
                return True

        with self._lock_for((base, "*")):
            try:
                rates = self.client.fetch_rates(base)
            except RateUnavailableError as exc:
                EXCHANGE_RATE_FETCHES_TOTAL.labels(result="failed").inc()
                LOGGER.warning("Rate source unreachable for base %s: %s", base, exc)
                return False
            EXCHANGE_RATE_FETCHES_TOTAL.labels(result="ok").inc()
            self._store_table(base, rates, now)
            return True

    def convert(
        self,
        amount: float,
        from_currency: str,
        to_currency: str,
        *,
        include_fees: bool = True,
    ) -> CurrencyConversion:
        amount = validate_base_price(amount, "amount")
        source = validate_currency(from_currency, "from_currency")
        target = validate_currency(to_currency, "to_currency")

        quote = self.get_rate(source, target)
        converted = round_money(amount * quote.rate, target)
        if quote.provider in {"no_conversion", "fallback"} or not include_fees:
            fees = 0.0
        else:
            fees = round_money(converted * self.config.fee_rate_for(source, target), target)
        return CurrencyConversion(
            from_currency=source,
            to_currency=target,
            rate=quote.rate,
            original_amount=amount,
            converted_amount=converted,
            fees=fees,
            total_cost=round_money(converted + fees, target),
            last_updated=quote.last_updated.astimezone(UTC),
            provider=quote.provider,
            degraded=quote.degraded,
        )

    def clear(self) -> None:
        with self._rates_guard:
            self._rates.clear()


def conversion_confidence(conversion: CurrencyConversion | None) -> float:
    if conversion is None:
        return 1.0
    return PROVIDER_CONFIDENCE.get(conversion.provider, 0.5)
