# This file wraps every pricing API payload with version fields, the request id, and warnings.
# Degraded quotes and fallback surge signals are still 200 responses, so the warnings list is how
# clients learn that a result came from a fallback path.

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from src.api.schema_versions import build_version_fields


def _normalized_warnings(warnings: list[str] | None) -> list[str] | None:
    if not warnings:
        return None
    # Keep first occurrence order; the same fallback can be reported by more than one step.
    return list(dict.fromkeys(warnings))


def build_object_envelope(
    *,
    api_version_path: str,
    schema_version: str,
    request_id: str,
    data: dict[str, Any] | list[dict[str, Any]] | None,
    warnings: list[str] | None = None,
) -> dict[str, Any]:
    envelope: dict[str, Any] = dict(
        build_version_fields(api_version_path=api_version_path, schema_version=schema_version)
    )
    envelope.update(
        request_id=request_id,
        generated_at=datetime.now(tz=UTC),
        data=data,
        warnings=_normalized_warnings(warnings),
    )
    return envelope
