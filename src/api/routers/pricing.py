# This file defines pricing endpoints under the versioned API path.
# It exists so clients can request quotes, inspect surge, convert amounts, and compare local market prices.
# Domain validation errors from the engine surface as structured 422 responses.
# Degraded results are still returned with a warning so clients can decide how to present them.

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request

from src.api.api_config import ApiConfig
from src.api.dependencies import get_config, get_pricing_service
from src.api.query_params import location_query
from src.api.response_envelope import build_object_envelope
from src.api.schemas.common import LocationIn
from src.api.schemas.pricing_schemas import (
    CompetitiveResponseV1,
    ConversionResponseV1,
    LocationOptimizationResponseV1,
    QuoteRequestV1,
    QuoteResponseV1,
    SurgeResponseV1,
)
from src.api.services.pricing_service import PricingService

router = APIRouter(prefix="/pricing", tags=["pricing"])
PricingServiceDep = Annotated[PricingService, Depends(get_pricing_service)]
ConfigDep = Annotated[ApiConfig, Depends(get_config)]
LocationDep = Annotated[LocationIn, Depends(location_query)]


@router.post("/quote", response_model=QuoteResponseV1)
def pricing_quote(
    request: Request,
    payload: QuoteRequestV1,
    service: PricingServiceDep,
    config: ConfigDep,
) -> dict[str, object]:
    quote = service.quote(payload)
    warnings = None
    if quote["explanation"]["degraded"]:
        warnings = ["Fallback pricing applied; dependencies were unavailable."]
    return build_object_envelope(
        api_version_path=config.api_version_path,
        schema_version=config.schema_version,
        request_id=request.state.request_id,
        data=quote,
        warnings=warnings,
    )


@router.get("/surge", response_model=SurgeResponseV1)
def pricing_surge(
    request: Request,
    service: PricingServiceDep,
    config: ConfigDep,
    location: LocationDep,
    category: str = Query(min_length=1),
    time_window_ms: int | None = Query(default=None, gt=0),
) -> dict[str, object]:
    surge = service.surge(location=location, category=category, time_window_ms=time_window_ms)
    warnings = None
    if surge["signal_source"] != "historical_store":
        warnings = ["Live demand/supply data unavailable; surge uses a fallback signal."]
        if surge["store_unavailable"]:
            warnings.append("Historical store is unreachable.")
    return build_object_envelope(
        api_version_path=config.api_version_path,
        schema_version=config.schema_version,
        request_id=request.state.request_id,
        data=surge,
        warnings=warnings,
    )


@router.get("/competitive", response_model=CompetitiveResponseV1)
def pricing_competitive(
    request: Request,
    service: PricingServiceDep,
    config: ConfigDep,
    location: LocationDep,
    category: str = Query(min_length=1),
    quality_tier: str = Query(default="standard"),
) -> dict[str, object]:
    comparison = service.competitive(location=location, category=category, quality_tier=quality_tier)
    return build_object_envelope(
        api_version_path=config.api_version_path,
        schema_version=config.schema_version,
        request_id=request.state.request_id,
        data=comparison,
    )


@router.get("/location-optimization", response_model=LocationOptimizationResponseV1)
def pricing_location_optimization(
    request: Request,
    service: PricingServiceDep,
    config: ConfigDep,
    location: LocationDep,
    category: str = Query(min_length=1),
    base_price: float = Query(ge=0.0),
) -> dict[str, object]:
    result = service.location_optimization(location=location, category=category, base_price=base_price)
    return build_object_envelope(
        api_version_path=config.api_version_path,
        schema_version=config.schema_version,
        request_id=request.state.request_id,
        data=result,
    )


@router.get("/convert", response_model=ConversionResponseV1)
def pricing_convert(
    request: Request,
    service: PricingServiceDep,
    config: ConfigDep,
    amount: float = Query(),
    from_currency: str = Query(min_length=1),
    to_currency: str = Query(min_length=1),
) -> dict[str, object]:
    conversion = service.convert(amount=amount, from_currency=from_currency, to_currency=to_currency)
    warnings = None
    if conversion["degraded"]:
        warnings = ["No exchange rate available; amount returned unconverted."]
    elif conversion["provider"] == "stale_cache":
        warnings = ["Exchange rate API unreachable; a cached rate older than its TTL was used."]
    return build_object_envelope(
        api_version_path=config.api_version_path,
        schema_version=config.schema_version,
        request_id=request.state.request_id,
        data=conversion,
        warnings=warnings,
    )
