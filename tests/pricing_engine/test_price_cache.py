# This test file validates quote cache expiry, eviction, and single-flight computation.
# It exists to ensure concurrent identical requests compute once and share one result.

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime, timedelta

import pytest

from src.pricing_engine.price_cache import PriceCache


class MutableClock:
    def __init__(self, value: datetime) -> None:
        self.value = value

    def __call__(self) -> datetime:
        return self.value


def test_entries_expire_after_ttl() -> None:
    clock = MutableClock(datetime(2024, 5, 15, 12, 0, tzinfo=UTC))
    cache: PriceCache[str] = PriceCache(ttl_seconds=900, clock=clock)
    cache.put("fp", "quote")

    clock.value += timedelta(seconds=899)
    assert cache.get("fp") == "quote"

    clock.value += timedelta(seconds=1)
    assert cache.get("fp") is None
    assert len(cache) == 0


def test_least_recently_used_entry_is_evicted() -> None:
    cache: PriceCache[int] = PriceCache(ttl_seconds=900, max_entries=2)
    cache.put("a", 1)
    cache.put("b", 2)
    cache.get("a")
    cache.put("c", 3)

    assert cache.get("a") == 1
    assert cache.get("b") is None
    assert cache.get("c") == 3


def test_purge_expired_and_invalidate() -> None:
    clock = MutableClock(datetime(2024, 5, 15, 12, 0, tzinfo=UTC))
    cache: PriceCache[int] = PriceCache(ttl_seconds=60, clock=clock)
    cache.put("short", 1)
    cache.put("long", 2, ttl_seconds=600)

    clock.value += timedelta(seconds=120)
    assert cache.purge_expired() == 1
    assert cache.invalidate("long") is True
    assert cache.invalidate("long") is False


def test_non_positive_ttl_is_rejected() -> None:
    with pytest.raises(ValueError):
        PriceCache(ttl_seconds=0)


def test_get_or_compute_skips_uncacheable_values() -> None:
    cache: PriceCache[str] = PriceCache()
    calls = []

    def compute() -> str:
        calls.append(1)
        return "fallback"

    cache.get_or_compute("fp", compute, cacheable=lambda value: value != "fallback")
    cache.get_or_compute("fp", compute, cacheable=lambda value: value != "fallback")

    assert len(calls) == 2
    assert len(cache) == 0


def test_concurrent_misses_compute_once() -> None:
    cache: PriceCache[str] = PriceCache()
    started = threading.Event()
    release = threading.Event()
    calls: list[int] = []

    def compute() -> str:
        calls.append(1)
        started.set()
        release.wait(timeout=5)
        return "quote"

    with ThreadPoolExecutor(max_workers=4) as pool:
        leader = pool.submit(cache.get_or_compute, "fp", compute)
        assert started.wait(timeout=5)
        followers = [pool.submit(cache.get_or_compute, "fp", compute) for _ in range(3)]
        release.set()
        results = [leader.result(timeout=5)] + [future.result(timeout=5) for future in followers]

    assert len(calls) == 1
    assert results[0] == ("quote", False)
    assert all(result == ("quote", True) for result in results[1:])


def test_compute_errors_propagate_and_clear_in_flight() -> None:
    cache: PriceCache[str] = PriceCache()

    def broken() -> str:
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        cache.get_or_compute("fp", broken)
    assert cache.get_or_compute("fp", lambda: "ok") == ("ok", False)


def test_non_positive_lock_stripes_are_rejected() -> None:
    with pytest.raises(ValueError, match="lock_stripes"):
        PriceCache(lock_stripes=0)


def test_busy_fingerprint_does_not_block_unrelated_fingerprint() -> None:
    cache: PriceCache[str] = PriceCache(lock_stripes=8)
    busy = cache._stripe_for("busy")
    other = next(f"fp-{index}" for index in range(1000) if cache._stripe_for(f"fp-{index}") is not busy)

    with busy.lock, ThreadPoolExecutor(max_workers=1) as pool:
        result = pool.submit(cache.get_or_compute, other, lambda: "quote").result(timeout=5)

    assert result == ("quote", False)
    assert cache.get(other) == "quote"


def test_distinct_fingerprints_compute_concurrently() -> None:
    cache: PriceCache[str] = PriceCache()
    barrier = threading.Barrier(2, timeout=5)

    def compute(name: str) -> str:
        # Both computations must be running at once to pass the barrier.
        barrier.wait()
        return name

    with ThreadPoolExecutor(max_workers=2) as pool:
        first = pool.submit(cache.get_or_compute, "fp-a", lambda: compute("a"))
        second = pool.submit(cache.get_or_compute, "fp-b", lambda: compute("b"))
        assert first.result(timeout=10) == ("a", False)
        assert second.result(timeout=10) == ("b", False)
    assert len(cache) == 2
