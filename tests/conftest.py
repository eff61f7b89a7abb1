"""
Shared test configuration.
It asserts expected behavior and guards against regressions in the corresponding component.
These tests are executed by `pytest` locally and in CI and should remain deterministic.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

ROOT_DIR = Path(__file__).resolve().parent.parent
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))


@pytest.fixture(autouse=True)
def base_test_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Ensure required environment variables are present during tests."""

    defaults = {
        "PROJECT_NAME": "test-project",
        "ENV": "test",
        "LOG_LEVEL": "INFO",
        "API_HOST": "0.0.0.0",
        "API_PORT": "8000",
    }

    for key, value in defaults.items():
        if os.getenv(key) is None:
            monkeypatch.setenv(key, value)

    for key in (
        "HISTORICAL_DATABASE_URL",
        "PRICING_BASE_CURRENCY",
        "PRICING_MAX_WORKERS",
        "PRICING_CACHE_TTL_SECONDS",
        "PRICING_SMOOTHING_ENABLED",
        "PRICING_SMOOTHING_ALPHA",
        "PRICING_SURGE_MULTIPLIER_MAX",
        "PRICING_MINIMUM_PRICE_RATIO",
    ):
        monkeypatch.delenv(key, raising=False)
