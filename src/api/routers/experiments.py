# This file defines price experiment endpoints under the versioned API path.
# It exists so experiments can be registered, inspected, fed with outcomes, and closed over HTTP.
# Unknown experiment ids return a structured 404 error from the service layer.

from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends, Query, Request

from src.api.api_config import ApiConfig
from src.api.dependencies import get_config, get_experiment_service
from src.api.response_envelope import build_object_envelope
from src.api.schemas.experiment_schemas import (
    EndExperimentRequestV1,
    ExperimentCreateRequestV1,
    ExperimentListResponseV1,
    ExperimentResponseV1,
    OutcomeRequestV1,
    OutcomeResponseV1,
)
from src.api.services.experiment_service import ExperimentService

router = APIRouter(prefix="/experiments", tags=["experiments"])
ExperimentServiceDep = Annotated[ExperimentService, Depends(get_experiment_service)]
ConfigDep = Annotated[ApiConfig, Depends(get_config)]


def _envelope(request: Request, config: ApiConfig, data: Any) -> dict[str, object]:
    return build_object_envelope(
        api_version_path=config.api_version_path,
        schema_version=config.schema_version,
        request_id=request.state.request_id,
        data=data,
    )


@router.post("", response_model=ExperimentResponseV1, status_code=201)
def create_experiment(
    request: Request,
    payload: ExperimentCreateRequestV1,
    service: ExperimentServiceDep,
    config: ConfigDep,
) -> dict[str, object]:
    return _envelope(request, config, service.create(payload))


@router.get("", response_model=ExperimentListResponseV1)
def list_experiments(
    request: Request,
    service: ExperimentServiceDep,
    config: ConfigDep,
    service_id: str | None = Query(default=None),
) -> dict[str, object]:
    return _envelope(request, config, service.list(service_id=service_id))


@router.get("/{test_id}", response_model=ExperimentResponseV1)
def get_experiment(
    request: Request,
    test_id: str,
    service: ExperimentServiceDep,
    config: ConfigDep,
) -> dict[str, object]:
    return _envelope(request, config, service.get(test_id))


@router.post("/{test_id}/outcomes", response_model=OutcomeResponseV1)
def record_outcome(
    request: Request,
    test_id: str,
    payload: OutcomeRequestV1,
    service: ExperimentServiceDep,
    config: ConfigDep,
) -> dict[str, object]:
    return _envelope(request, config, service.record_outcome(test_id, payload))


@router.post("/{test_id}/end", response_model=ExperimentResponseV1)
def end_experiment(
    request: Request,
    test_id: str,
    payload: EndExperimentRequestV1,
    service: ExperimentServiceDep,
    config: ConfigDep,
) -> dict[str, object]:
    return _envelope(request, config, service.end(test_id, status=payload.status))
