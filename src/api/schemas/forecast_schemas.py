# This file defines response schemas for demand and pricing forecast endpoints.
# It exists so forecast grids are strongly typed and stable for planning clients.
# Each point carries the history tier and calendar labels that shaped its multiplier.

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel

from src.api.schemas.common import EnvelopeFields


class ForecastPointV1(BaseModel):
    timestamp: datetime
    demand_level: str
    recommended_multiplier: float
    confidence: float
    factors: list[str]


class ForecastResponseV1(EnvelopeFields):
    data: list[ForecastPointV1]
