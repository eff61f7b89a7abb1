# This file provides shared helpers for API endpoint tests.
# It exists so tests can override service dependencies without touching real databases or rate APIs.
# The helpers build consistent config objects, a fully in-memory engine, and scoped TestClient contexts.
# Centralized test wiring keeps API tests small and focused on behavior.

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from fastapi.testclient import TestClient

from src.api.api_config import ApiConfig
from src.api.app import app
from src.api.dependencies import (
    get_config,
    get_experiment_service,
    get_forecast_service,
    get_history_store,
    get_pricing_service,
)
from src.api.services.experiment_service import ExperimentService
from src.api.services.forecast_service import ForecastService
from src.api.services.pricing_service import PricingService
from src.pricing_engine.historical_store import InMemoryHistoricalDataStore
from src.pricing_engine.pricing_orchestrator import DynamicPricingEngine
from tests.pricing_engine.engine_support import build_in_memory_engine


def build_test_config() -> ApiConfig:
    """Create deterministic API config for tests."""

    return ApiConfig(
        api_name="Test Pricing API",
        api_version_path="/api/v1",
        schema_version="1.0.0",
        host="0.0.0.0",
        port=8000,
        environment="test",
        historical_database_url=None,
        allowed_origins=[],
        app_version="0.1.0",
    )


class FakeHistoryStore(InMemoryHistoricalDataStore):
    """In-memory store whose reachability can be toggled for readiness tests."""

    def __init__(self, *, connected: bool = True) -> None:
        super().__init__()
        self._connected = connected

    def can_connect(self) -> bool:
        return self._connected


@contextmanager
def api_test_client(
    *,
    config: ApiConfig | None = None,
    history_store: Any | None = None,
    engine: DynamicPricingEngine | None = None,
) -> Iterator[TestClient]:
    """Yield a TestClient with scoped dependency overrides."""

    resolved_config = config or build_test_config()
    resolved_history = history_store if history_store is not None else FakeHistoryStore()
    resolved_engine = engine or build_in_memory_engine(history=resolved_history)

    pricing_service = PricingService(engine=resolved_engine)
    forecast_service = ForecastService(engine=resolved_engine)
    experiment_service = ExperimentService(engine=resolved_engine)

    app.dependency_overrides[get_config] = lambda: resolved_config
    app.dependency_overrides[get_history_store] = lambda: resolved_history
    app.dependency_overrides[get_pricing_service] = lambda: pricing_service
    app.dependency_overrides[get_forecast_service] = lambda: forecast_service
    app.dependency_overrides[get_experiment_service] = lambda: experiment_service

    try:
        with TestClient(app) as client:
            yield client
    finally:
        app.dependency_overrides.clear()
        resolved_engine.shutdown()
