"""Open-Meteo forecast and geocoding proxy."""

from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Any, Mapping

import httpx
import structlog

from ..core.errors import UpstreamFailure
from ..domain.weather import (
    Coordinates,
    GeocodeMatch,
    TemperatureReading,
    WeatherResponse,
)

logger = structlog.get_logger(__name__)

ALLOWED_UNITS = frozenset({"celsius", "fahrenheit"})
MAX_GEOCODE_RESULTS = 8
DEFAULT_GEOCODE_RESULTS = 5


def _finite(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value) if math.isfinite(value) else None


def format_coordinate(value: float | None, digits: int = 4) -> float | None:
    value = _finite(value)
    if value is None:
        return None
    return round(value, digits)


def clamp(value: float, low: float, high: float) -> float:
    return min(max(value, low), high)


def blend_temperatures(current: float | None, next_hour: float | None) -> float | None:
    """Weight the current reading 70/30 against the next hourly forecast."""

    current = _finite(current)
    next_hour = _finite(next_hour)
    if current is not None and next_hour is not None:
        return round(current * 0.7 + next_hour * 0.3, 1)
    if current is not None:
        return round(current, 1)
    if next_hour is not None:
        return round(next_hour, 1)
    return None


def normalize_weather_payload(
    latitude: float, longitude: float, payload: Mapping[str, Any]
) -> WeatherResponse:
    current = payload.get("current") or {}
    hourly = payload.get("hourly") or {}
    current_temp = _finite(current.get("temperature_2m"))
    hourly_temps = hourly.get("temperature_2m")
    next_hour = _finite(hourly_temps[0]) if isinstance(hourly_temps, list) and hourly_temps else None
    unit = (
        (payload.get("current_units") or {}).get("temperature_2m")
        or (payload.get("hourly_units") or {}).get("temperature_2m")
        or "°C"
    )
    return WeatherResponse(
        coords=Coordinates(
            latitude=format_coordinate(latitude),
            longitude=format_coordinate(longitude),
        ),
        temperature=TemperatureReading(
            current=current_temp,
            next_hour=next_hour,
            blended=blend_temperatures(current_temp, next_hour),
            unit=unit,
        ),
        humidity=_finite(current.get("relative_humidity_2m")),
        fetched_at=current.get("time") or datetime.now(timezone.utc).isoformat(),
    )


def map_geocode_matches(results: list[Mapping[str, Any]]) -> list[GeocodeMatch]:
    return [
        GeocodeMatch(
            name=item.get("name"),
            country=item.get("country"),
            region=item.get("admin1") or None,
            latitude=format_coordinate(item.get("latitude")),
            longitude=format_coordinate(item.get("longitude")),
        )
        for item in results[:MAX_GEOCODE_RESULTS]
    ]


class WeatherClient:
    """Thin async wrapper over the Open-Meteo HTTP APIs."""

    def __init__(
        self,
        *,
        weather_endpoint: str,
        geocode_endpoint: str,
        timeout_seconds: float,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._weather_endpoint = weather_endpoint
        self._geocode_endpoint = geocode_endpoint
        self._timeout = httpx.Timeout(timeout_seconds)
        self._transport = transport

    async def _fetch_json(self, url: str, params: Mapping[str, Any], *, what: str) -> Any:
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.get(url, params=params)
                response.raise_for_status()
                return response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.error(f"{what}.upstream_failed", url=url, error=str(exc))
            label = "Weather" if what == "weather" else "Geocode"
            raise UpstreamFailure(f"{label} lookup failed") from exc

    async def forecast(self, latitude: float, longitude: float, unit: str = "celsius") -> WeatherResponse:
        latitude = clamp(latitude, -90, 90)
        longitude = clamp(longitude, -180, 180)
        params = {
            "latitude": format_coordinate(latitude),
            "longitude": format_coordinate(longitude),
            "current": "temperature_2m,relative_humidity_2m,apparent_temperature",
            "hourly": "temperature_2m",
            "timezone": "auto",
            "forecast_days": "1",
            "models": "best_match",
            "temperature_unit": unit if unit in ALLOWED_UNITS else "celsius",
        }
        payload = await self._fetch_json(self._weather_endpoint, params, what="weather")
        if not isinstance(payload, Mapping):
            payload = {}
        return normalize_weather_payload(latitude, longitude, payload)

    async def geocode(self, query: str, limit: int = DEFAULT_GEOCODE_RESULTS, language: str = "en") -> list[GeocodeMatch]:
        params = {
            "name": query,
            "count": max(1, min(limit, MAX_GEOCODE_RESULTS)),
            "language": language[:5],
            "format": "json",
        }
        payload = await self._fetch_json(self._geocode_endpoint, params, what="geocode")
        results = payload.get("results") if isinstance(payload, Mapping) else None
        return map_geocode_matches(results or [])
