# This file maps pricing engine failures and transport errors onto one JSON error shape.
# Invalid quote input becomes a 422 naming the offending field, and a store or rate source that
# leaks past the engine's own fallbacks becomes a 503 instead of an opaque 500.
# Every body carries the request id so a failed quote can be traced in the access log.

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from src.pricing_engine.errors import (
    HistoricalDataUnavailableError,
    PricingValidationError,
    RateUnavailableError,
)

LOGGER = logging.getLogger("pricing.api")

DEPENDENCY_ERROR_CODES: dict[type[Exception], str] = {
    HistoricalDataUnavailableError: "HISTORICAL_DATA_UNAVAILABLE",
    RateUnavailableError: "EXCHANGE_RATES_UNAVAILABLE",
}


class APIError(Exception):
    """Raised by API services to return a specific status and error code."""

    def __init__(
        self,
        *,
        status_code: int,
        error_code: str,
        message: str,
        details: Any | None = None,
    ) -> None:
        self.status_code = status_code
        self.error_code = error_code
        self.message = message
        self.details = details
        super().__init__(message)


def error_response(
    request: Request,
    *,
    status_code: int,
    error_code: str,
    message: str,
    details: Any | None = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "error_code": error_code,
            "message": message,
            "details": details,
            "request_id": str(getattr(request.state, "request_id", "unknown")),
            "timestamp": datetime.now(tz=UTC).isoformat(),
        },
    )


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(APIError)
    async def on_api_error(request: Request, exc: APIError) -> JSONResponse:
        return error_response(
            request,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
            details=exc.details,
        )

    @app.exception_handler(PricingValidationError)
    async def on_pricing_validation(request: Request, exc: PricingValidationError) -> JSONResponse:
        return error_response(
            request,
            status_code=422,
            error_code="PRICING_VALIDATION_ERROR",
            message=exc.message,
            details={"field": exc.field},
        )

    async def on_dependency_unavailable(request: Request, exc: Exception) -> JSONResponse:
        LOGGER.warning("Dependency unavailable while serving %s: %s", request.url.path, exc)
        return error_response(
            request,
            status_code=503,
            error_code=DEPENDENCY_ERROR_CODES.get(type(exc), "DEPENDENCY_UNAVAILABLE"),
            message="A pricing data source is temporarily unavailable; retry shortly.",
        )

    for error_type in DEPENDENCY_ERROR_CODES:
        app.add_exception_handler(error_type, on_dependency_unavailable)

    @app.exception_handler(RequestValidationError)
    async def on_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
        return error_response(
            request,
            status_code=422,
            error_code="VALIDATION_ERROR",
            message="Request body or query parameters failed validation.",
            details=exc.errors(),
        )

    @app.exception_handler(HTTPException)
    async def on_http_exception(request: Request, exc: HTTPException) -> JSONResponse:
        return error_response(request, status_code=exc.status_code, error_code="HTTP_ERROR", message=str(exc.detail))

    @app.exception_handler(Exception)
    async def on_unhandled(request: Request, exc: Exception) -> JSONResponse:
        LOGGER.error("Unhandled error for request %s", getattr(request.state, "request_id", "unknown"), exc_info=exc)
        return error_response(
            request,
            status_code=500,
            error_code="INTERNAL_SERVER_ERROR",
            message="Pricing service failed unexpectedly.",
        )
