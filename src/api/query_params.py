# This file defines shared query-parameter dependencies for GET endpoints.
# It exists so every route that needs a location reads and bounds it the same way.

from __future__ import annotations

from fastapi import Query

from src.api.schemas.common import LocationIn


def location_query(
    lat: float = Query(ge=-90.0, le=90.0),
    lng: float = Query(ge=-180.0, le=180.0),
    currency: str = Query(min_length=3, max_length=3),
    country_code: str = Query(min_length=2, max_length=2),
    city: str | None = Query(default=None),
) -> LocationIn:
    return LocationIn(lat=lat, lng=lng, currency=currency, country_code=country_code, city=city)
