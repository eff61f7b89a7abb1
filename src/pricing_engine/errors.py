# This module defines the exception types raised by the pricing engine.
# It exists so callers can tell invalid input apart from unavailable dependencies.
# Validation errors carry the offending field name for structured API responses.
# Dependency errors are recovered inside the engine and only surface from adapters.

from __future__ import annotations


class PricingEngineError(Exception):
    """Base class for pricing engine failures."""


class PricingValidationError(PricingEngineError, ValueError):
    """Raised synchronously when a quote request carries invalid input."""

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}")


class RateUnavailableError(PricingEngineError, RuntimeError):
    """Raised when the exchange-rate source cannot be reached or returns junk."""


class HistoricalDataUnavailableError(PricingEngineError, RuntimeError):
    """Raised when the historical data store cannot serve a query."""


class ExperimentNotFoundError(PricingEngineError, LookupError):
    """Raised when a pricing experiment id is unknown."""

    def __init__(self, test_id: str) -> None:
        self.test_id = test_id
        super().__init__(f"Unknown pricing experiment: {test_id}")
