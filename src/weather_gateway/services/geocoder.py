"""Reverse geocoding used to key the city cache tier."""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Any

import httpx
import structlog
from cachetools import TTLCache

from weather_gateway.config import Settings

logger = structlog.get_logger()

# Address fields tried in order when naming a place
PLACE_FIELDS = ("city", "town", "village", "municipality", "county", "state")

# Coordinates are truncated to about 100 m before caching a name
COORD_DECIMALS = 3


class ReverseGeocoder:
    """Resolves a place name for coordinates via a Nominatim-compatible API.

    Names are cached for the lifetime of the city tier. Lookups never raise:
    on any failure the name is reported as unknown and the city tier is
    skipped. Failures are remembered for ``geocoder_failure_ttl_seconds`` so
    an outage costs at most one call per point in that window.
    """

    def __init__(self, settings: Settings, clock: Callable[[], float] = time.time) -> None:
        self._enabled = settings.geocoder_enabled
        self._url = settings.geocoder_url
        self._timeout = settings.geocoder_timeout_seconds
        self._headers = {
            "User-Agent": settings.geocoder_user_agent,
            "Accept": "application/json",
        }
        self._cache: TTLCache[tuple[float, float], str | None] = TTLCache(
            maxsize=settings.cache_max_size,
            ttl=settings.cache_city_ttl_seconds,
            timer=clock,
        )
        self._failures: TTLCache[tuple[float, float], bool] = TTLCache(
            maxsize=settings.cache_max_size,
            ttl=settings.geocoder_failure_ttl_seconds,
            timer=clock,
        )

    async def __call__(self, lat: float, lon: float) -> str | None:
        return await self.resolve(lat, lon)

    async def resolve(self, lat: float, lon: float) -> str | None:
        """Return a place name for the point, or None if it cannot be resolved."""
        if not self._enabled:
            return None

        key = (round(lat, COORD_DECIMALS), round(lon, COORD_DECIMALS))
        if key in self._cache:
            return self._cache[key]
        if key in self._failures:
            return None

        params: dict[str, str | float | int] = {
            "format": "jsonv2",
            "lat": lat,
            "lon": lon,
            "zoom": 10,
        }
        try:
            async with httpx.AsyncClient(timeout=self._timeout, headers=self._headers) as client:
                response = await client.get(self._url, params=params)
            response.raise_for_status()
            name = self._parse_response(response.json())
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Reverse geocoding failed", lat=lat, lon=lon, error=str(e))
            self._failures[key] = True
            return None

        self._cache[key] = name
        return name

    @staticmethod
    def _parse_response(data: Any) -> str | None:
        if not isinstance(data, dict):
            return None
        address = data.get("address") or {}
        for field in PLACE_FIELDS:
            value = address.get(field)
            if value:
                return str(value)
        name = data.get("name")
        return str(name) if name else None
