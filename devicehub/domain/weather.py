"""Normalised payloads for the weather and geocoding proxy endpoints."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class Coordinates(BaseModel):
    latitude: float | None
    longitude: float | None


class TemperatureReading(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    current: float | None = None
    next_hour: float | None = Field(default=None, alias="nextHour")
    blended: float | None = None
    unit: str = "°C"


class WeatherResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    ok: bool = True
    coords: Coordinates
    provider: str = "open-meteo"
    temperature: TemperatureReading
    humidity: float | None = None
    fetched_at: str = Field(alias="fetchedAt")


class GeocodeMatch(BaseModel):
    name: str | None = None
    country: str | None = None
    region: str | None = None
    latitude: float | None = None
    longitude: float | None = None


class GeocodeResponse(BaseModel):
    ok: bool = True
    matches: list[GeocodeMatch]
