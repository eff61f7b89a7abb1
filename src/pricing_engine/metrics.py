# This module declares the Prometheus counters emitted by the pricing engine.
# It exists so the engine, the rate provider, and the API share one metric registry entry per series.
# The API exposes these through the same `/metrics` route as its HTTP request metrics.

from __future__ import annotations

from prometheus_client import Counter, Histogram

PRICING_QUOTES_TOTAL = Counter(
    "pricing_quotes_total",
    "Number of price quotes served, labelled by how they were produced.",
    ["outcome"],
)
PRICING_QUOTE_DURATION_SECONDS = Histogram(
    "pricing_quote_duration_seconds",
    "Time spent computing a price quote on a cache miss.",
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5),
)
EXCHANGE_RATE_FETCHES_TOTAL = Counter(
    "pricing_exchange_rate_fetches_total",
    "Exchange-rate fetch attempts, labelled by result.",
    ["result"],
)
SURGE_SIGNAL_TOTAL = Counter(
    "pricing_surge_signal_total",
    "Surge computations, labelled by the demand/supply signal source used.",
    ["source"],
)
