from __future__ import annotations

import math

from fastapi import APIRouter, Depends, Query

from ...core.errors import BadInput
from ...domain.auth import Identity
from ...domain.weather import GeocodeResponse, WeatherResponse
from ...services.weather import DEFAULT_GEOCODE_RESULTS, WeatherClient
from ..dependencies import get_current_identity, get_weather_client

router = APIRouter(tags=["weather"])


def safe_number(value: str | None) -> float | None:
    if value is None:
        return None
    try:
        number = float(value)
    except ValueError:
        return None
    return number if math.isfinite(number) else None


@router.get("/weather", response_model=WeatherResponse)
async def weather(
    lat: str | None = Query(default=None),
    lon: str | None = Query(default=None),
    latitude: str | None = Query(default=None),
    longitude: str | None = Query(default=None),
    unit: str | None = Query(default=None),
    identity: Identity = Depends(get_current_identity),
    client: WeatherClient = Depends(get_weather_client),
) -> WeatherResponse:
    lat_value = safe_number(lat if lat is not None else latitude)
    lon_value = safe_number(lon if lon is not None else longitude)
    if lat_value is None or lon_value is None:
        raise BadInput("Latitude and longitude query parameters are required")
    return await client.forecast(lat_value, lon_value, (unit or "celsius").lower())


@router.get("/geocode", response_model=GeocodeResponse)
async def geocode(
    q: str | None = Query(default=None),
    query: str | None = Query(default=None),
    limit: str | None = Query(default=None),
    lang: str | None = Query(default=None),
    identity: Identity = Depends(get_current_identity),
    client: WeatherClient = Depends(get_weather_client),
) -> GeocodeResponse:
    text = (q or query or "").strip()
    if len(text) < 2:
        raise BadInput("Query must be at least 2 characters")
    requested = safe_number(limit)
    count = int(requested) if requested else DEFAULT_GEOCODE_RESULTS
    matches = await client.geocode(text, count, (lang or "en"))
    return GeocodeResponse(matches=matches)
