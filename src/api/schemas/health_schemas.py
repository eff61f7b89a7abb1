# This file types the liveness, readiness, and build-info payloads of the pricing API.
# Readiness reports whether the engine policy loaded and whether the historical store answers,
# since quotes still work without the store but surge and forecasts fall back to context signals.

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field


class _TracedStatus(BaseModel):
    api_version: str
    schema_version: str
    request_id: str
    timestamp: datetime


class HealthResponse(_TracedStatus):
    status: Literal["ok"]
    environment: str
    service_name: str


class ReadinessResponse(_TracedStatus):
    engine_ready: bool = Field(description="Engine policy YAML loaded and validated.")
    history_store: Literal["sql", "in_memory"]
    history_reachable: bool
    ready: bool


class VersionResponse(_TracedStatus):
    api_version_path: str
    app_version: str
    git_commit: str | None = None
    project: str
    version: str
