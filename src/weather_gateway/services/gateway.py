"""Weather gateway orchestrating cache, key pool and upstream client."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from typing import Any

import structlog
from prometheus_client import Counter

from weather_gateway.config import Settings
from weather_gateway.errors import (
    NoFallbackAvailable,
    RateLimitExhausted,
    UpstreamAuthError,
    UpstreamError,
    UpstreamRateLimited,
    UpstreamUnavailable,
)
from weather_gateway.services.backoff import FailureBackoff
from weather_gateway.services.geo_cache import CityResolver, GeoCache
from weather_gateway.services.key_pool import KeyPool
from weather_gateway.services.stats import StatsCollector
from weather_gateway.services.upstream import UpstreamClient

logger = structlog.get_logger()

coalesced_requests = Counter(
    "coalesced_requests_total",
    "Requests that waited on an in-flight fetch instead of calling upstream",
    ["provider"],
)


@dataclass(frozen=True)
class WeatherResult:
    """Payload plus how it was obtained."""

    payload: dict[str, Any]
    cached: bool
    provider: str
    cache_type: str | None = None
    approximate: bool = False
    distance_km: float | None = None
    coalesced: bool = False


# Outcome shared with coalesced waiters: at most one side is set,
# neither when the leading request was cancelled
_Outcome = tuple[WeatherResult | None, BaseException | None]


class WeatherGateway:
    """Serves weather for a point, calling upstream only on a cache miss.

    Flow: cache tiers, then a credential from the pool, then the upstream
    call. A fresh payload is written to every tier. When the call fails the
    nearest cached grid cell is served as an approximate answer, otherwise
    the classified upstream error propagates.
    """

    def __init__(
        self,
        settings: Settings,
        cache: GeoCache,
        key_pool: KeyPool,
        client: UpstreamClient,
        stats: StatsCollector,
        backoff: FailureBackoff,
        resolve_city: CityResolver | None = None,
    ) -> None:
        """Initialize gateway with its collaborators."""
        self._settings = settings
        self.cache = cache
        self.key_pool = key_pool
        self.client = client
        self.stats = stats
        self.backoff = backoff
        self._resolve_city = resolve_city
        self._inflight: dict[str, asyncio.Future[_Outcome]] = {}

    @property
    def provider(self) -> str:
        return self.client.provider

    async def get_weather(self, lat: float, lon: float) -> WeatherResult:
        """Get weather for validated coordinates.

        Raises:
            RateLimitExhausted: No credential has quota left
            NoFallbackAvailable: No credential is configured and nothing nearby is cached
            UpstreamError: Upstream failed and no nearby entry is cached
        """
        self.stats.record_request()

        hit = await self.cache.lookup(lat, lon, self._resolve_city)
        if hit is not None:
            self.stats.record_cache_hit(hit.tier)
            logger.info(
                "Cache hit for weather request",
                provider=self.provider,
                lat=lat,
                lon=lon,
                cache_hit=True,
                tier=hit.tier,
            )
            return WeatherResult(
                payload=hit.payload,
                cached=True,
                provider=self.provider,
                cache_type=hit.tier,
            )

        logger.info(
            "Cache miss, fetching from upstream",
            provider=self.provider,
            lat=lat,
            lon=lon,
            cache_hit=False,
        )

        if not self._settings.coalesce_requests:
            return await self._fetch_and_store(lat, lon)
        return await self._coalesced_fetch(lat, lon)

    async def _coalesced_fetch(self, lat: float, lon: float) -> WeatherResult:
        key = self.cache.exact_key(lat, lon)

        pending = self._inflight.get(key)
        if pending is not None:
            coalesced_requests.labels(provider=self.provider).inc()
            result, error = await asyncio.shield(pending)
            if error is not None:
                raise error
            if result is None:
                # Leading request was cancelled before it finished
                logger.info(
                    "Shared fetch abandoned, fetching again",
                    provider=self.provider,
                    lat=lat,
                    lon=lon,
                )
                return await self._coalesced_fetch(lat, lon)
            return replace(result, coalesced=True)

        future: asyncio.Future[_Outcome] = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        try:
            result = await self._fetch_and_store(lat, lon)
        except Exception as e:
            future.set_result((None, e))
            raise
        else:
            future.set_result((result, None))
            return result
        finally:
            if not future.done():
                future.set_result((None, None))
            self._inflight.pop(key, None)

    async def _fetch_and_store(self, lat: float, lon: float) -> WeatherResult:
        if not self.key_pool:
            return self._fallback(
                lat,
                lon,
                NoFallbackAvailable(f"No {self.provider} credentials are configured"),
            )

        if self.backoff.is_active():
            return self._fallback(
                lat,
                lon,
                UpstreamUnavailable(
                    f"{self.provider} calls are suspended after repeated failures",
                    retry_after=self.backoff.retry_after(),
                ),
            )

        try:
            payload = await self._fetch_live(lat, lon)
        except UpstreamError as e:
            self.backoff.record_failure(e.code)
            self.stats.record_failure()
            logger.error(
                "Upstream request failed",
                provider=self.provider,
                lat=lat,
                lon=lon,
                error_code=e.code,
                status_code=e.upstream_status,
                error=str(e),
            )
            return self._fallback(lat, lon, e)

        self.backoff.record_success()
        await self.cache.store(lat, lon, payload, self._resolve_city)
        self.stats.record_api_call()

        return WeatherResult(payload=payload, cached=False, provider=self.provider)

    async def _fetch_live(self, lat: float, lon: float) -> dict[str, Any]:
        """Call upstream, rotating to the next credential on auth or rate-limit rejections."""
        last_error: UpstreamError | None = None

        for _ in range(len(self.key_pool)):
            credential = self.key_pool.reserve()
            if credential is None:
                break

            logger.info(
                "Calling upstream",
                provider=self.provider,
                key_id=credential.identifier,
                key=credential.masked,
            )
            try:
                return await self.client.fetch(lat, lon, credential)
            except UpstreamRateLimited as e:
                self.key_pool.bench(credential, "hourly")
                last_error = e
            except UpstreamAuthError as e:
                self.key_pool.bench(credential, "daily")
                last_error = e

        if last_error is not None:
            raise last_error

        retry_after = self.key_pool.seconds_until_available()
        logger.warning(
            "All API keys exhausted",
            provider=self.provider,
            retry_after=retry_after,
        )
        raise RateLimitExhausted(
            "API rate limit reached. Please try again later.",
            retry_after=retry_after,
        )

    def _fallback(self, lat: float, lon: float, error: Exception) -> WeatherResult:
        """Serve the nearest cached grid cell or re-raise ``error``."""
        hit = self.cache.find_nearest(lat, lon, self._settings.nearest_max_distance_km)
        if hit is None:
            raise error

        self.stats.record_fallback()
        logger.warning(
            "Serving approximate data from nearest cached location",
            provider=self.provider,
            lat=lat,
            lon=lon,
            cell=hit.key,
            distance_km=round(hit.distance_km or 0.0, 2),
        )
        return WeatherResult(
            payload=hit.payload,
            cached=True,
            provider=self.provider,
            cache_type="nearest",
            approximate=True,
            distance_km=hit.distance_km,
        )
