# This file defines the demand forecast endpoint under the versioned API path.
# It exists so planning clients can fetch demand levels and recommended multipliers over a window.
# Inverted or oversized windows are rejected by the engine with a structured 422 response.

from __future__ import annotations

from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request

from src.api.api_config import ApiConfig
from src.api.dependencies import get_config, get_forecast_service
from src.api.query_params import location_query
from src.api.response_envelope import build_object_envelope
from src.api.schemas.common import LocationIn
from src.api.schemas.forecast_schemas import ForecastResponseV1
from src.api.services.forecast_service import ForecastService

router = APIRouter(prefix="/forecast", tags=["forecast"])
ForecastServiceDep = Annotated[ForecastService, Depends(get_forecast_service)]
ConfigDep = Annotated[ApiConfig, Depends(get_config)]
LocationDep = Annotated[LocationIn, Depends(location_query)]


@router.get("", response_model=ForecastResponseV1)
def forecast_window(
    request: Request,
    service: ForecastServiceDep,
    config: ConfigDep,
    location: LocationDep,
    category: str = Query(min_length=1),
    start_ts: datetime = Query(),
    end_ts: datetime = Query(),
    granularity: str = Query(default="hour"),
) -> dict[str, object]:
    points = service.forecast(
        location=location,
        category=category,
        start=start_ts,
        end=end_ts,
        granularity=granularity,
    )
    warnings = None
    if points and all("history:no_history" in point["factors"] for point in points):
        warnings = ["No demand history found; multipliers reflect calendar effects only."]
    return build_object_envelope(
        api_version_path=config.api_version_path,
        schema_version=config.schema_version,
        request_id=request.state.request_id,
        data=points,
        warnings=warnings,
    )
