"""Test fixtures."""

import asyncio
from typing import Any

import pytest
from fastapi.testclient import TestClient

from weather_gateway.config import Settings
from weather_gateway.main import create_app
from weather_gateway.services.backoff import FailureBackoff
from weather_gateway.services.gateway import WeatherGateway
from weather_gateway.services.geo_cache import GeoCache
from weather_gateway.services.key_pool import Credential, KeyPool
from weather_gateway.services.state import GatewayState
from weather_gateway.services.stats import StatsCollector

START_TIME = 1_700_000_000.0

TIMELINES_PAYLOAD: dict[str, Any] = {
    "data": {
        "timelines": [
            {
                "timestep": "1h",
                "startTime": "2026-10-17T00:00:00Z",
                "endTime": "2026-10-18T00:00:00Z",
                "intervals": [
                    {
                        "startTime": "2026-10-17T00:00:00Z",
                        "values": {
                            "temperature": 30.5,
                            "precipitationProbability": 20,
                            "weatherCode": 1100,
                        },
                    }
                ],
            }
        ]
    }
}


class FakeClock:
    """Manually advanced replacement for ``time.time``."""

    def __init__(self, now: float = START_TIME) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeUpstream:
    """Upstream client returning queued payloads or raising queued errors."""

    provider = "tomorrow.io"

    def __init__(self, *outcomes: Any, delay: float = 0.0) -> None:
        self.outcomes = list(outcomes)
        self.delay = delay
        self.calls: list[tuple[float, float, str]] = []

    async def fetch(self, lat: float, lon: float, credential: Credential) -> dict[str, Any]:
        self.calls.append((lat, lon, credential.identifier))
        if self.delay:
            await asyncio.sleep(self.delay)
        outcome = self.outcomes.pop(0) if self.outcomes else TIMELINES_PAYLOAD
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "tomorrow_api_key": "test-key-1111",
        "tomorrow_api_keys": "test-key-2222",
        "openweathermap_api_key": "",
        "upstream_timeout_seconds": 1.0,
        "geocoder_enabled": False,
        "cache_exact_ttl_seconds": 3600,
        "cache_grid_ttl_seconds": 7200,
        "cache_city_ttl_seconds": 14400,
        "cache_max_size": 1000,
        "log_level": "DEBUG",
        "log_format": "text",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def clock() -> FakeClock:
    """Create a fake clock."""
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    """Create test settings."""
    return make_settings()


@pytest.fixture
def geo_cache(settings: Settings, clock: FakeClock) -> GeoCache:
    """Create test cache."""
    return GeoCache(settings, clock=clock)


@pytest.fixture
def key_pool(settings: Settings, clock: FakeClock) -> KeyPool:
    """Create a two-key pool."""
    return KeyPool(
        settings.api_keys,
        hourly_limit=settings.key_hourly_limit,
        daily_limit=settings.key_daily_limit,
        clock=clock,
    )


@pytest.fixture
def upstream() -> FakeUpstream:
    """Create a fake upstream that always succeeds."""
    return FakeUpstream()


@pytest.fixture
def gateway(
    settings: Settings,
    geo_cache: GeoCache,
    key_pool: KeyPool,
    upstream: FakeUpstream,
    clock: FakeClock,
) -> WeatherGateway:
    """Create a gateway around the fake upstream."""
    return WeatherGateway(
        settings=settings,
        cache=geo_cache,
        key_pool=key_pool,
        client=upstream,
        stats=StatsCollector(clock=clock),
        backoff=FailureBackoff(settings, clock=clock),
    )


@pytest.fixture
def state(settings: Settings, clock: FakeClock) -> GatewayState:
    """Create a fresh gateway state."""
    return GatewayState.from_settings(settings, clock=clock)


@pytest.fixture
def app(settings: Settings, state: GatewayState):
    """Create test application."""
    return create_app(settings, state=state)


@pytest.fixture
def client(app) -> TestClient:
    """Create test client."""
    return TestClient(app)
