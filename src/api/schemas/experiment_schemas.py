# This file defines request and response schemas for price experiment endpoints.
# It exists so experiment registration, outcome tracking, and closure share one typed contract.
# Expected metrics and observed outcomes are keyed by variant name.

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from src.api.schemas.common import EnvelopeFields


class VariantIn(BaseModel):
    name: str
    price_multiplier: float
    target_segment: str | None = None


class ExperimentCreateRequestV1(BaseModel):
    service_id: str
    base_price: float
    variants: list[VariantIn] = Field(min_length=1)
    duration_days: float | None = Field(default=None, gt=0)


class OutcomeRequestV1(BaseModel):
    variant_name: str
    impressions: int = Field(default=1, ge=0)
    conversions: int = Field(default=0, ge=0)
    revenue: float = Field(default=0.0, ge=0.0)


class EndExperimentRequestV1(BaseModel):
    status: str = "completed"


class VariantV1(BaseModel):
    name: str
    price_multiplier: float
    target_segment: str | None = None


class VariantMetricsV1(BaseModel):
    expected_conversion_rate: float
    expected_revenue: float
    confidence: float


class VariantObservationV1(BaseModel):
    impressions: int
    conversions: int
    revenue: float


class ExperimentV1(BaseModel):
    test_id: str
    service_id: str
    base_price: float
    variants: list[VariantV1]
    start: datetime
    end: datetime
    status: str
    expected_metrics: dict[str, VariantMetricsV1]
    observed: dict[str, VariantObservationV1]


class ExperimentResponseV1(EnvelopeFields):
    data: ExperimentV1


class ExperimentListResponseV1(EnvelopeFields):
    data: list[ExperimentV1]


class OutcomeResponseV1(EnvelopeFields):
    data: VariantObservationV1
