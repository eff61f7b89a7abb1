# This file provides dependency factories for FastAPI routes.
# It exists so the pricing engine and its stores are created once and shared through dependency injection.
# Without a historical database URL the engine runs against an empty in-memory store.
# The setup keeps routers thin and makes endpoint tests easy to override.

from __future__ import annotations

from functools import lru_cache

from src.api.api_config import ApiConfig, get_api_config
from src.api.services.experiment_service import ExperimentService
from src.api.services.forecast_service import ForecastService
from src.api.services.pricing_service import PricingService
from src.common.db import get_engine
from src.pricing_engine.ab_testing import ExperimentManager, InMemoryExperimentStore, SqlExperimentStore
from src.pricing_engine.engine_config import EngineConfig, load_engine_config
from src.pricing_engine.historical_store import (
    HistoricalDataStore,
    InMemoryHistoricalDataStore,
    SqlHistoricalDataStore,
)
from src.pricing_engine.pricing_orchestrator import DynamicPricingEngine, build_pricing_engine


@lru_cache(maxsize=1)
def get_engine_config() -> EngineConfig:
    config = get_api_config()
    return load_engine_config(config_path=config.engine_config_path)


@lru_cache(maxsize=1)
def get_history_store() -> HistoricalDataStore:
    config = get_api_config()
    engine_config = get_engine_config()
    if not config.historical_database_url:
        return InMemoryHistoricalDataStore(location_precision=engine_config.location_precision)
    return SqlHistoricalDataStore(
        engine=get_engine(config.historical_database_url, engine_config.external_timeout_seconds),
        location_precision=engine_config.location_precision,
        history_table_name=config.history_table_name,
        offers_table_name=config.offers_table_name,
        elasticity_table_name=config.elasticity_table_name,
    )


@lru_cache(maxsize=1)
def get_pricing_engine() -> DynamicPricingEngine:
    config = get_api_config()
    engine_config = get_engine_config()
    history = get_history_store()
    if config.historical_database_url:
        experiment_store = SqlExperimentStore(
            engine=get_engine(config.historical_database_url, engine_config.external_timeout_seconds),
            table_name=config.experiments_table_name,
        )
    else:
        experiment_store = InMemoryExperimentStore()
    return build_pricing_engine(
        config=engine_config,
        history=history,
        experiment_manager=ExperimentManager(config=engine_config, store=experiment_store, history=history),
    )


@lru_cache(maxsize=1)
def get_pricing_service() -> PricingService:
    return PricingService(engine=get_pricing_engine())


@lru_cache(maxsize=1)
def get_forecast_service() -> ForecastService:
    return ForecastService(engine=get_pricing_engine())


@lru_cache(maxsize=1)
def get_experiment_service() -> ExperimentService:
    return ExperimentService(engine=get_pricing_engine())


def get_config() -> ApiConfig:
    return get_api_config()
