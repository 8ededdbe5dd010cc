"""Tests for OpenWeatherMap client."""

import httpx
import pytest
import respx
from conftest import START_TIME, make_settings
from httpx import Response

from weather_gateway.errors import UpstreamAuthError, UpstreamGenericError, UpstreamTimeout
from weather_gateway.services.key_pool import Credential
from weather_gateway.services.openweathermap import OpenWeatherMapClient

CURRENT = {"main": {"temp": 29.1}, "name": "Yangon"}
FORECAST = {"hourly": [{"temp": 28.4}], "daily": [{"temp": {"max": 32.0}}]}


def make_credential() -> Credential:
    return Credential(
        identifier="1",
        secret="owm-secret",
        daily_count=0,
        hourly_count=0,
        daily_reset_at=START_TIME,
        hourly_reset_at=START_TIME,
    )


class TestOpenWeatherMapClient:
    """Tests for OpenWeatherMapClient."""

    @respx.mock
    @pytest.mark.asyncio
    async def test_fetch_combines_both_calls(self) -> None:
        """Test current conditions and forecast are merged."""
        settings = make_settings()
        client = OpenWeatherMapClient(settings)

        current_route = respx.get(settings.openweathermap_current_url).mock(
            return_value=Response(200, json=CURRENT)
        )
        forecast_route = respx.get(settings.openweathermap_onecall_url).mock(
            return_value=Response(200, json=FORECAST)
        )

        result = await client.fetch(16.8661, 96.1951, make_credential())

        assert result["current"] == CURRENT
        assert result["forecast"] == FORECAST
        assert result["source"] == "openweathermap"
        assert isinstance(result["timestamp"], int)

        assert current_route.calls.last.request.url.params["appid"] == "owm-secret"
        forecast_params = forecast_route.calls.last.request.url.params
        assert forecast_params["exclude"] == "minutely,alerts"
        assert forecast_params["units"] == "metric"

    @respx.mock
    @pytest.mark.asyncio
    async def test_fetch_auth_error(self) -> None:
        """Test a rejected key is classified."""
        settings = make_settings()
        client = OpenWeatherMapClient(settings)

        respx.get(settings.openweathermap_current_url).mock(
            return_value=Response(401, json={"message": "Invalid API key"})
        )
        respx.get(settings.openweathermap_onecall_url).mock(
            return_value=Response(200, json=FORECAST)
        )

        with pytest.raises(UpstreamAuthError):
            await client.fetch(16.8661, 96.1951, make_credential())

    @respx.mock
    @pytest.mark.asyncio
    async def test_fetch_forecast_failure(self) -> None:
        """Test one failing call fails the whole fetch."""
        settings = make_settings()
        client = OpenWeatherMapClient(settings)

        respx.get(settings.openweathermap_current_url).mock(
            return_value=Response(200, json=CURRENT)
        )
        respx.get(settings.openweathermap_onecall_url).mock(
            return_value=Response(500, text="Internal Server Error")
        )

        with pytest.raises(UpstreamGenericError) as exc_info:
            await client.fetch(16.8661, 96.1951, make_credential())

        assert exc_info.value.upstream_status == 500

    @respx.mock
    @pytest.mark.asyncio
    async def test_fetch_timeout(self) -> None:
        """Test timeout handling."""
        settings = make_settings(upstream_timeout_seconds=0.1)
        client = OpenWeatherMapClient(settings)

        respx.get(settings.openweathermap_current_url).mock(
            side_effect=httpx.TimeoutException("timeout")
        )
        respx.get(settings.openweathermap_onecall_url).mock(
            return_value=Response(200, json=FORECAST)
        )

        with pytest.raises(UpstreamTimeout):
            await client.fetch(16.8661, 96.1951, make_credential())
