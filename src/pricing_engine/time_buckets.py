"""
Time bucketing and calendar helpers shared by quotes, surge state, and forecasts.
Quote fingerprints use a 15-minute bucket so requests inside one bucket share a cache entry.
Forecast grids step through hour, day, or week ticks using the same helpers.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
from datetime import UTC, datetime, timedelta

from src.pricing_engine.errors import PricingValidationError

Clock = Callable[[], datetime]

GRANULARITY_STEPS: dict[str, timedelta] = {
    "hour": timedelta(hours=1),
    "day": timedelta(days=1),
    "week": timedelta(weeks=1),
}

_NORTHERN_SEASONS = {
    12: "winter", 1: "winter", 2: "winter",
    3: "spring", 4: "spring", 5: "spring",
    6: "summer", 7: "summer", 8: "summer",
    9: "autumn", 10: "autumn", 11: "autumn",
}
_SOUTHERN_FLIP = {"winter": "summer", "summer": "winter", "spring": "autumn", "autumn": "spring"}


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def floor_timestamp(ts: datetime, *, minutes: int = 15) -> datetime:
    """Floor a timezone-aware datetime to its canonical bucket boundary in UTC."""

    if ts.tzinfo is None:
        raise ValueError("Timestamp must be timezone-aware")
    ts_utc = ts.astimezone(UTC)
    minute = (ts_utc.minute // minutes) * minutes
    return ts_utc.replace(minute=minute, second=0, microsecond=0)


def season_for(ts: datetime, *, lat: float = 0.0) -> str:
    season = _NORTHERN_SEASONS[ts.month]
    if lat < 0:
        return _SOUTHERN_FLIP[season]
    return season


def step_for(granularity: str) -> timedelta:
    try:
        return GRANULARITY_STEPS[granularity]
    except KeyError as exc:
        raise PricingValidationError("period.granularity", f"unsupported granularity: {granularity!r}") from exc


def count_ticks(start: datetime, end: datetime, granularity: str) -> int:
    if end < start:
        return 0
    return int((end - start) // step_for(granularity)) + 1


def iter_ticks(start: datetime, end: datetime, granularity: str) -> Iterator[datetime]:
    """Yield `start`, `start + step`, ... up to and including `end`."""

    step = step_for(granularity)
    current = start
    while current <= end:
        yield current
        current = current + step
