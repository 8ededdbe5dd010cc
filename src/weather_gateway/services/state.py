"""Process-wide gateway state, built once at startup."""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field

from weather_gateway.config import Settings
from weather_gateway.services.backoff import FailureBackoff
from weather_gateway.services.gateway import WeatherGateway
from weather_gateway.services.geo_cache import GeoCache
from weather_gateway.services.geocoder import ReverseGeocoder
from weather_gateway.services.key_pool import KeyPool
from weather_gateway.services.openweathermap import OpenWeatherMapClient
from weather_gateway.services.stats import StatsCollector
from weather_gateway.services.tomorrow import TomorrowClient
from weather_gateway.services.upstream import UpstreamClient


@dataclass
class GatewayState:
    """Owns every mutable component: caches, key pools, counters."""

    settings: Settings
    stats: StatsCollector
    geocoder: ReverseGeocoder
    primary: WeatherGateway
    secondary: WeatherGateway | None = None
    clock: Callable[[], float] = field(default=time.time)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        clock: Callable[[], float] = time.time,
        primary_client: UpstreamClient | None = None,
        secondary_client: UpstreamClient | None = None,
    ) -> GatewayState:
        """Build a fresh state; clients can be replaced for testing."""
        stats = StatsCollector(clock=clock)
        geocoder = ReverseGeocoder(settings, clock=clock)

        primary = WeatherGateway(
            settings=settings,
            cache=GeoCache(settings, name="tomorrow.io", clock=clock),
            key_pool=KeyPool(
                settings.api_keys,
                hourly_limit=settings.key_hourly_limit,
                daily_limit=settings.key_daily_limit,
                provider="tomorrow.io",
                clock=clock,
            ),
            client=primary_client or TomorrowClient(settings),
            stats=stats,
            backoff=FailureBackoff(settings, clock=clock),
            resolve_city=geocoder,
        )

        secondary = None
        if settings.openweathermap_api_key:
            secondary = WeatherGateway(
                settings=settings,
                cache=GeoCache(settings, name="openweathermap", clock=clock),
                key_pool=KeyPool(
                    [settings.openweathermap_api_key],
                    hourly_limit=settings.openweathermap_hourly_limit,
                    daily_limit=settings.openweathermap_daily_limit,
                    provider="openweathermap",
                    clock=clock,
                ),
                client=secondary_client or OpenWeatherMapClient(settings),
                stats=stats,
                backoff=FailureBackoff(settings, clock=clock),
                resolve_city=geocoder,
            )

        return cls(
            settings=settings,
            stats=stats,
            geocoder=geocoder,
            primary=primary,
            secondary=secondary,
            clock=clock,
        )

    @property
    def gateways(self) -> list[WeatherGateway]:
        return [g for g in (self.primary, self.secondary) if g is not None]

    def stats_report(self) -> dict:
        report = self.stats.snapshot(
            self.primary.key_pool, self.primary.cache, self.primary.backoff
        )
        if self.secondary is not None:
            report["openweathermap"] = {
                "apiKeys": self.secondary.key_pool.usage(),
                "cache": self.secondary.cache.counts(),
                "isInBackoff": self.secondary.backoff.is_active(),
            }
        return report

    def clear_caches(self) -> int:
        """Empty every cache tier and reset the counters."""
        removed = sum(gateway.cache.clear() for gateway in self.gateways)
        self.stats.reset()
        return removed
