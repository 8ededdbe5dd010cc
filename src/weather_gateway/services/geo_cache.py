"""Tiered location cache for weather payloads."""

from __future__ import annotations

import math
import re
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Literal

import structlog
from cachetools import TTLCache
from prometheus_client import Counter, Gauge

from weather_gateway.config import Settings

logger = structlog.get_logger()

Tier = Literal["exact", "grid", "city"]
TIERS: tuple[Tier, ...] = ("exact", "grid", "city")

EARTH_RADIUS_KM = 6371.0

CityResolver = Callable[[float, float], Awaitable[str | None]]

# Metrics
cache_lookups = Counter(
    "cache_lookups_total",
    "Cache lookups by tier and outcome",
    ["cache", "tier", "outcome"],
)
cache_promotions = Counter(
    "cache_promotions_total",
    "Entries copied from a coarser tier into finer tiers",
    ["cache", "source_tier"],
)
cache_size_gauge = Gauge(
    "cache_size",
    "Current number of cache entries",
    ["cache", "tier"],
)


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two points in kilometres."""
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


@dataclass(frozen=True)
class CacheEntry:
    """A stored payload and when it was stored."""

    payload: dict[str, Any]
    stored_at: float
    ttl: float


@dataclass(frozen=True)
class CacheHit:
    """Result of a successful lookup."""

    payload: dict[str, Any]
    tier: Tier
    key: str
    stored_at: float
    distance_km: float | None = None


class GeoCache:
    """Three-tier weather cache keyed by exact point, grid cell and city name.

    Each tier is a ``TTLCache`` with its own time-to-live. A hit in a coarser
    tier is copied into the finer tiers so the next exact lookup hits.

    An entry is gone from the instant ``now >= stored_at + ttl`` (the
    ``TTLCache`` rule), so an entry exactly ``ttl`` seconds old is a miss.
    """

    def __init__(
        self,
        settings: Settings,
        name: str = "tomorrow.io",
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize tiers from settings."""
        self.name = name
        self._clock = clock
        self._resolution = settings.grid_resolution
        self._ttls: dict[Tier, float] = {
            "exact": settings.cache_exact_ttl_seconds,
            "grid": settings.cache_grid_ttl_seconds,
            "city": settings.cache_city_ttl_seconds,
        }
        self._tiers: dict[Tier, TTLCache[str, CacheEntry]] = {
            tier: TTLCache(maxsize=settings.cache_max_size, ttl=ttl, timer=clock)
            for tier, ttl in self._ttls.items()
        }

    # Keys

    @staticmethod
    def exact_key(lat: float, lon: float) -> str:
        """Key at full input precision."""
        return f"{lat},{lon}"

    def _snap(self, value: float) -> float:
        # Round half up so the lattice does not depend on banker's rounding
        return math.floor(value * self._resolution + 0.5) / self._resolution

    def grid_key(self, lat: float, lon: float) -> str:
        """Key of the grid cell containing the point."""
        return f"{self._snap(lat):.6f},{self._snap(lon):.6f}"

    @staticmethod
    def decode_grid_key(key: str) -> tuple[float, float]:
        lat, lon = key.split(",")
        return float(lat), float(lon)

    @staticmethod
    def city_key(name: str | None) -> str | None:
        """Normalize a place name: lower-cased, whitespace runs replaced by underscores."""
        if not name or not name.strip():
            return None
        return re.sub(r"\s+", "_", name.strip().lower())

    # Tier primitives

    def _get(self, tier: Tier, key: str) -> CacheEntry | None:
        entry = self._tiers[tier].get(key)
        cache_lookups.labels(
            cache=self.name, tier=tier, outcome="hit" if entry is not None else "miss"
        ).inc()
        return entry

    def _put(self, tier: Tier, key: str, payload: dict[str, Any]) -> None:
        self._tiers[tier][key] = CacheEntry(
            payload=payload,
            stored_at=self._clock(),
            ttl=self._ttls[tier],
        )
        cache_size_gauge.labels(cache=self.name, tier=tier).set(len(self._tiers[tier]))

    async def _resolve_city(
        self, lat: float, lon: float, resolver: CityResolver | None
    ) -> str | None:
        if resolver is None:
            return None
        return self.city_key(await resolver(lat, lon))

    # Public API

    async def lookup(
        self,
        lat: float,
        lon: float,
        resolve_city: CityResolver | None = None,
    ) -> CacheHit | None:
        """Find a cached payload for the point, checking exact, grid then city.

        The city name is only resolved when the exact and grid tiers miss.
        Coarser hits are promoted into the finer tiers.
        """
        exact_key = self.exact_key(lat, lon)
        entry = self._get("exact", exact_key)
        if entry is not None:
            return CacheHit(entry.payload, "exact", exact_key, entry.stored_at)

        grid_key = self.grid_key(lat, lon)
        entry = self._get("grid", grid_key)
        if entry is not None:
            self._put("exact", exact_key, entry.payload)
            cache_promotions.labels(cache=self.name, source_tier="grid").inc()
            return CacheHit(entry.payload, "grid", grid_key, entry.stored_at)

        city_key = await self._resolve_city(lat, lon, resolve_city)
        if city_key is None:
            return None

        entry = self._get("city", city_key)
        if entry is None:
            return None

        self._put("grid", grid_key, entry.payload)
        self._put("exact", exact_key, entry.payload)
        cache_promotions.labels(cache=self.name, source_tier="city").inc()
        return CacheHit(entry.payload, "city", city_key, entry.stored_at)

    async def store(
        self,
        lat: float,
        lon: float,
        payload: dict[str, Any],
        resolve_city: CityResolver | None = None,
    ) -> None:
        """Write a fresh payload into every tier.

        The city name is resolved before any write so that all tiers are
        populated together. Without a city name the city tier is skipped.
        """
        city_key = await self._resolve_city(lat, lon, resolve_city)

        self._put("exact", self.exact_key(lat, lon), payload)
        self._put("grid", self.grid_key(lat, lon), payload)
        if city_key is not None:
            self._put("city", city_key, payload)

    def find_nearest(self, lat: float, lon: float, max_distance_km: float) -> CacheHit | None:
        """Return the closest live grid entry within ``max_distance_km``."""
        self.purge_expired()

        best: CacheHit | None = None
        best_distance = max_distance_km
        for key, entry in list(self._tiers["grid"].items()):
            cell_lat, cell_lon = self.decode_grid_key(key)
            distance = haversine_km(lat, lon, cell_lat, cell_lon)
            if distance <= best_distance:
                best = CacheHit(entry.payload, "grid", key, entry.stored_at, distance)
                best_distance = distance
        return best

    def purge_expired(self) -> int:
        """Drop expired entries from every tier, returning how many were removed."""
        removed = 0
        for tier, cache in self._tiers.items():
            before = len(cache)
            cache.expire()
            removed += before - len(cache)
            cache_size_gauge.labels(cache=self.name, tier=tier).set(len(cache))
        return removed

    def clear(self) -> int:
        """Clear all tiers, returning the number of entries removed."""
        removed = self.size
        for tier, cache in self._tiers.items():
            cache.clear()
            cache_size_gauge.labels(cache=self.name, tier=tier).set(0)
        return removed

    def counts(self) -> dict[str, int]:
        """Live entry count per tier."""
        self.purge_expired()
        return {tier: len(cache) for tier, cache in self._tiers.items()}

    def entries(self) -> list[dict[str, Any]]:
        """Describe every live entry with its age in seconds."""
        self.purge_expired()
        now = self._clock()
        return [
            {
                "key": key,
                "type": tier,
                "age": int(now - entry.stored_at),
                "ttl": int(entry.ttl),
            }
            for tier, cache in self._tiers.items()
            for key, entry in list(cache.items())
        ]

    @property
    def size(self) -> int:
        """Return current number of entries across tiers."""
        return sum(len(cache) for cache in self._tiers.values())

    def is_healthy(self) -> bool:
        """Check if every tier is operational."""
        return all(isinstance(len(cache), int) for cache in self._tiers.values())
