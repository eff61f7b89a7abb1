# This module holds computed quotes keyed by request fingerprint for a bounded time.
# It exists so repeated requests inside one 15-minute bucket return the identical quote.
# Expiry is checked lazily on read; an optional entry bound evicts least recently used quotes.
# `get_or_compute` collapses concurrent misses for one fingerprint into a single computation,
# coordinated under a lock striped by fingerprint so unrelated quotes never wait on each other.

from __future__ import annotations

import threading
from collections import OrderedDict
from collections.abc import Callable
from concurrent.futures import Future
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Generic, TypeVar

from src.pricing_engine.time_buckets import Clock, utc_now

T = TypeVar("T")


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    value: T
    expires_at: datetime


@dataclass
class _Stripe:
    lock: threading.Lock = field(default_factory=threading.Lock)
    in_flight: dict[str, Future] = field(default_factory=dict)


class PriceCache(Generic[T]):
    def __init__(
        self,
        *,
        ttl_seconds: int = 900,
        max_entries: int | None = None,
        lock_stripes: int = 64,
        clock: Clock = utc_now,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0")
        if lock_stripes <= 0:
            raise ValueError("lock_stripes must be > 0")
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self.clock = clock
        self._entries: OrderedDict[str, CacheEntry[T]] = OrderedDict()
        # Held only for dict reads and writes, never across a computation.
        self._entries_guard = threading.Lock()
        self._stripes = tuple(_Stripe() for _ in range(lock_stripes))

    def __len__(self) -> int:
        with self._entries_guard:
            return len(self._entries)

    def _stripe_for(self, fingerprint: str) -> _Stripe:
        return self._stripes[hash(fingerprint) % len(self._stripes)]

    def get(self, fingerprint: str) -> T | None:
        now = self.clock()
        with self._entries_guard:
            entry = self._entries.get(fingerprint)
            if entry is None:
                return None
            if entry.expires_at <= now:
                del self._entries[fingerprint]
                return None
            self._entries.move_to_end(fingerprint)
            return entry.value

    def put(
        self,
        fingerprint: str,
        value: T,
        *,
        ttl_seconds: int | None = None,
        expires_at: datetime | None = None,
    ) -> None:
        if expires_at is None:
            expires_at = self.clock() + timedelta(seconds=ttl_seconds or self.ttl_seconds)
        with self._entries_guard:
            self._entries[fingerprint] = CacheEntry(value=value, expires_at=expires_at)
            self._entries.move_to_end(fingerprint)
            if self.max_entries is not None:
                while len(self._entries) > self.max_entries:
                    self._entries.popitem(last=False)

    def invalidate(self, fingerprint: str) -> bool:
        with self._entries_guard:
            return self._entries.pop(fingerprint, None) is not None

    def clear(self) -> None:
        with self._entries_guard:
            self._entries.clear()

    def purge_expired(self) -> int:
        now = self.clock()
        with self._entries_guard:
            expired = [key for key, entry in self._entries.items() if entry.expires_at <= now]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def get_or_compute(
        self,
        fingerprint: str,
        compute: Callable[[], T],
        *,
        expires_at: Callable[[T], datetime] | None = None,
        cacheable: Callable[[T], bool] | None = None,
    ) -> tuple[T, bool]:
        """Return `(value, from_cache)`, computing at most once per fingerprint at a time."""

        cached = self.get(fingerprint)
        if cached is not None:
            return cached, True

        stripe = self._stripe_for(fingerprint)
        with stripe.lock:
            # The previous leader stores its value before leaving the in-flight map.
            cached = self.get(fingerprint)
            if cached is not None:
                return cached, True
            future = stripe.in_flight.get(fingerprint)
            leader = future is None
            if leader:
                future = Future()
                stripe.in_flight[fingerprint] = future

        if not leader:
            return future.result(), True

        try:
            value = compute()
        except BaseException as exc:
            future.set_exception(exc)
            raise
        else:
            if cacheable is None or cacheable(value):
                self.put(fingerprint, value, expires_at=expires_at(value) if expires_at else None)
            future.set_result(value)
            return value, False
        finally:
            with stripe.lock:
                stripe.in_flight.pop(fingerprint, None)
