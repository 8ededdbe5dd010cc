"""Tests for the weather gateway flow."""

import asyncio

import pytest
from conftest import TIMELINES_PAYLOAD, FakeClock, FakeUpstream, make_settings

from weather_gateway.config import Settings
from weather_gateway.errors import (
    NoFallbackAvailable,
    RateLimitExhausted,
    UpstreamAuthError,
    UpstreamForbidden,
    UpstreamGenericError,
    UpstreamRateLimited,
    UpstreamTimeout,
    UpstreamUnavailable,
)
from weather_gateway.services.backoff import FailureBackoff
from weather_gateway.services.gateway import WeatherGateway
from weather_gateway.services.geo_cache import GeoCache
from weather_gateway.services.key_pool import KeyPool
from weather_gateway.services.stats import StatsCollector


def make_gateway(
    clock: FakeClock,
    upstream: FakeUpstream,
    settings: Settings | None = None,
) -> WeatherGateway:
    settings = settings or make_settings()
    return WeatherGateway(
        settings=settings,
        cache=GeoCache(settings, clock=clock),
        key_pool=KeyPool(
            settings.api_keys,
            hourly_limit=settings.key_hourly_limit,
            daily_limit=settings.key_daily_limit,
            clock=clock,
        ),
        client=upstream,
        stats=StatsCollector(clock=clock),
        backoff=FailureBackoff(settings, clock=clock),
    )


class TestCacheFlow:
    """Tests for serving from cache."""

    @pytest.mark.asyncio
    async def test_miss_then_hit(self, gateway: WeatherGateway, upstream: FakeUpstream) -> None:
        """Test the second request for a point is served from cache."""
        first = await gateway.get_weather(16.8661, 96.1951)
        second = await gateway.get_weather(16.8661, 96.1951)

        assert first.cached is False
        assert first.payload == TIMELINES_PAYLOAD
        assert second.cached is True
        assert second.cache_type == "exact"
        assert len(upstream.calls) == 1
        assert gateway.stats.requests == 2
        assert gateway.stats.cache_hits == 1
        assert gateway.stats.api_calls == 1

    @pytest.mark.asyncio
    async def test_nearby_point_hits_grid(
        self, gateway: WeatherGateway, upstream: FakeUpstream
    ) -> None:
        """Test a point in the same cell needs no upstream call."""
        await gateway.get_weather(16.8661, 96.1951)
        result = await gateway.get_weather(16.87, 96.20)

        assert result.cached is True
        assert result.cache_type == "grid"
        assert len(upstream.calls) == 1
        assert gateway.stats.tier_hits == {"grid": 1}

    @pytest.mark.asyncio
    async def test_city_tier_uses_resolver(self, clock: FakeClock) -> None:
        """Test a different cell in the same city is served from the city tier."""
        upstream = FakeUpstream()
        settings = make_settings()

        async def resolve(lat: float, lon: float) -> str:
            return "Yangon"

        gateway = WeatherGateway(
            settings=settings,
            cache=GeoCache(settings, clock=clock),
            key_pool=KeyPool(settings.api_keys, hourly_limit=25, daily_limit=500, clock=clock),
            client=upstream,
            stats=StatsCollector(clock=clock),
            backoff=FailureBackoff(settings, clock=clock),
            resolve_city=resolve,
        )

        await gateway.get_weather(16.8661, 96.1951)
        result = await gateway.get_weather(16.78, 96.15)

        assert result.cache_type == "city"
        assert len(upstream.calls) == 1


class TestCoalescing:
    """Tests for concurrent misses on the same point."""

    @pytest.mark.asyncio
    async def test_concurrent_misses_share_one_call(self, clock: FakeClock) -> None:
        """Test only one upstream call is made for simultaneous requests."""
        upstream = FakeUpstream(delay=0.05)
        gateway = make_gateway(clock, upstream)

        results = await asyncio.gather(
            *(gateway.get_weather(16.8661, 96.1951) for _ in range(5))
        )

        assert len(upstream.calls) == 1
        assert all(result.payload == TIMELINES_PAYLOAD for result in results)
        assert sum(result.coalesced for result in results) == 4
        assert gateway.key_pool.credentials[0].hourly_count == 1

    @pytest.mark.asyncio
    async def test_waiters_share_the_failure(self, clock: FakeClock) -> None:
        """Test every waiter sees the error of the shared call."""
        upstream = FakeUpstream(UpstreamGenericError("boom", 500), delay=0.05)
        gateway = make_gateway(clock, upstream)

        results = await asyncio.gather(
            *(gateway.get_weather(16.8661, 96.1951) for _ in range(3)),
            return_exceptions=True,
        )

        assert len(upstream.calls) == 1
        assert all(isinstance(result, UpstreamGenericError) for result in results)

    @pytest.mark.asyncio
    async def test_waiter_finishes_when_leader_is_cancelled(self, clock: FakeClock) -> None:
        """Test a cancelled leading request does not strand its waiters."""
        upstream = FakeUpstream(delay=0.2)
        gateway = make_gateway(clock, upstream)

        leader = asyncio.create_task(gateway.get_weather(16.8661, 96.1951))
        await asyncio.sleep(0.01)
        waiter = asyncio.create_task(gateway.get_weather(16.8661, 96.1951))
        await asyncio.sleep(0.01)

        leader.cancel()
        result = await asyncio.wait_for(waiter, 2.0)

        with pytest.raises(asyncio.CancelledError):
            await leader
        assert result.payload == TIMELINES_PAYLOAD
        assert result.cached is False
        assert len(upstream.calls) == 2

    @pytest.mark.asyncio
    async def test_disabled(self, clock: FakeClock) -> None:
        """Test each request calls upstream when coalescing is off."""
        upstream = FakeUpstream(delay=0.05)
        gateway = make_gateway(clock, upstream, make_settings(coalesce_requests=False))

        await asyncio.gather(*(gateway.get_weather(16.8661, 96.1951) for _ in range(3)))

        assert len(upstream.calls) == 3


class TestKeyRotation:
    """Tests for credential selection and penalties."""

    @pytest.mark.asyncio
    async def test_all_keys_exhausted(self, gateway: WeatherGateway, upstream: FakeUpstream) -> None:
        """Test no upstream call is made when every key is over its limit."""
        for credential in gateway.key_pool.credentials:
            gateway.key_pool.bench(credential, "daily")

        with pytest.raises(RateLimitExhausted) as exc_info:
            await gateway.get_weather(16.8661, 96.1951)

        assert upstream.calls == []
        assert exc_info.value.retry_after == 86400

    @pytest.mark.asyncio
    async def test_concurrent_misses_never_overshoot_quota(self, clock: FakeClock) -> None:
        """Test simultaneous misses for different points share the quota safely."""
        upstream = FakeUpstream(delay=0.01)
        gateway = make_gateway(clock, upstream, make_settings(key_hourly_limit=1))

        results = await asyncio.gather(
            *(gateway.get_weather(10.0 + i, 96.0) for i in range(6)),
            return_exceptions=True,
        )

        served = [result for result in results if not isinstance(result, BaseException)]
        exhausted = [result for result in results if isinstance(result, RateLimitExhausted)]
        assert len(served) == 2
        assert len(exhausted) == 4
        assert len(upstream.calls) == 2
        assert all(c.hourly_count <= 1 for c in gateway.key_pool.credentials)

    @pytest.mark.asyncio
    async def test_rate_limited_key_is_benched_for_the_hour(self, clock: FakeClock) -> None:
        """Test a provider 429 moves the request to the next key."""
        upstream = FakeUpstream(UpstreamRateLimited("limited", 429, retry_after=3600))
        gateway = make_gateway(clock, upstream)

        result = await gateway.get_weather(16.8661, 96.1951)

        assert result.cached is False
        assert [call[2] for call in upstream.calls] == ["1", "2"]
        first = gateway.key_pool.credentials[0]
        assert first.hourly_count == gateway.key_pool.hourly_limit
        assert first.daily_count == 1

        clock.advance(3600)
        credential = gateway.key_pool.acquire()
        assert credential is not None
        assert credential.identifier == "1"

    @pytest.mark.asyncio
    async def test_rejected_key_is_benched_for_the_day(self, clock: FakeClock) -> None:
        """Test a provider 401 disables the key until the daily rollover."""
        upstream = FakeUpstream(UpstreamAuthError("bad key", 401))
        gateway = make_gateway(clock, upstream)

        await gateway.get_weather(16.8661, 96.1951)

        assert [call[2] for call in upstream.calls] == ["1", "2"]
        clock.advance(3600)
        credential = gateway.key_pool.acquire()
        assert credential is not None
        assert credential.identifier == "2"

    @pytest.mark.asyncio
    async def test_every_key_rate_limited(self, clock: FakeClock) -> None:
        """Test the provider error surfaces when every key is rejected."""
        upstream = FakeUpstream(
            UpstreamRateLimited("limited", 429, retry_after=3600),
            UpstreamRateLimited("limited", 429, retry_after=3600),
        )
        gateway = make_gateway(clock, upstream)

        with pytest.raises(UpstreamRateLimited):
            await gateway.get_weather(16.8661, 96.1951)

        assert len(upstream.calls) == 2

    @pytest.mark.asyncio
    async def test_forbidden_is_not_retried(self, clock: FakeClock) -> None:
        """Test a 403 does not rotate or penalize the key."""
        upstream = FakeUpstream(UpstreamForbidden("plan", 403))
        gateway = make_gateway(clock, upstream)

        with pytest.raises(UpstreamForbidden):
            await gateway.get_weather(16.8661, 96.1951)

        assert len(upstream.calls) == 1
        assert gateway.key_pool.credentials[0].hourly_count == 1

    @pytest.mark.asyncio
    async def test_no_credentials(self, clock: FakeClock) -> None:
        """Test a provider without keys and without cached data."""
        upstream = FakeUpstream()
        settings = make_settings(tomorrow_api_key="", tomorrow_api_keys="")
        gateway = make_gateway(clock, upstream, settings)

        with pytest.raises(NoFallbackAvailable):
            await gateway.get_weather(16.8661, 96.1951)

        assert upstream.calls == []


class TestFailures:
    """Tests for upstream failures and fallbacks."""

    @pytest.mark.asyncio
    async def test_timeout_without_fallback(self, clock: FakeClock) -> None:
        """Test the classified error propagates and quota is still consumed."""
        upstream = FakeUpstream(UpstreamTimeout("timed out"))
        gateway = make_gateway(clock, upstream)

        with pytest.raises(UpstreamTimeout):
            await gateway.get_weather(16.8661, 96.1951)

        assert gateway.key_pool.credentials[0].hourly_count == 1
        assert gateway.stats.api_failures == 1
        assert gateway.stats.api_calls == 0
        assert gateway.backoff.consecutive_failures == 1
        assert gateway.cache.counts() == {"exact": 0, "grid": 0, "city": 0}

    @pytest.mark.asyncio
    async def test_failure_serves_nearest_cell(self, clock: FakeClock) -> None:
        """Test a nearby cached cell is served as an approximate answer."""
        upstream = FakeUpstream(TIMELINES_PAYLOAD, UpstreamGenericError("boom", 500))
        gateway = make_gateway(clock, upstream)

        await gateway.get_weather(16.85, 96.20)
        result = await gateway.get_weather(16.88, 96.26)

        assert result.approximate is True
        assert result.cached is True
        assert result.cache_type == "nearest"
        assert result.distance_km is not None
        assert result.distance_km < 10
        assert gateway.stats.fallback_hits == 1
        assert gateway.stats.cache_hits == 0

    @pytest.mark.asyncio
    async def test_backoff_suspends_calls(self, clock: FakeClock) -> None:
        """Test repeated failures suspend upstream calls until the period ends."""
        upstream = FakeUpstream(
            UpstreamGenericError("boom", 500),
            UpstreamGenericError("boom", 500),
        )
        settings = make_settings(backoff_failure_threshold=2, backoff_base_seconds=60)
        gateway = make_gateway(clock, upstream, settings)

        for lat in (10.0, 20.0):
            with pytest.raises(UpstreamGenericError):
                await gateway.get_weather(lat, 96.0)

        with pytest.raises(UpstreamUnavailable) as exc_info:
            await gateway.get_weather(30.0, 96.0)

        assert exc_info.value.retry_after == 60
        assert len(upstream.calls) == 2

        clock.advance(61)
        result = await gateway.get_weather(30.0, 96.0)

        assert result.cached is False
        assert gateway.backoff.consecutive_failures == 0
