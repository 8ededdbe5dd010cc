"""OpenWeatherMap client used as the secondary provider."""

import asyncio
import time
from typing import Any

import httpx

from weather_gateway.config import Settings
from weather_gateway.errors import UpstreamGenericError, UpstreamTimeout
from weather_gateway.services.key_pool import Credential
from weather_gateway.services.upstream import (
    classify_response,
    upstream_duration,
    upstream_requests,
)


class OpenWeatherMapClient:
    """Fetches current conditions and the One Call forecast in parallel."""

    provider = "openweathermap"

    def __init__(self, settings: Settings) -> None:
        self._current_url = settings.openweathermap_current_url
        self._onecall_url = settings.openweathermap_onecall_url
        self._timeout = settings.upstream_timeout_seconds

    async def fetch(self, lat: float, lon: float, credential: Credential) -> dict[str, Any]:
        """Return ``{current, forecast, source, timestamp}`` for the point.

        Both calls must succeed; the first failure is raised.
        """
        base: dict[str, str] = {
            "lat": str(lat),
            "lon": str(lon),
            "appid": credential.secret,
            "units": "metric",
        }
        forecast_params = {**base, "exclude": "minutely,alerts"}

        with upstream_duration.labels(provider=self.provider).time():
            try:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    current_response, forecast_response = await asyncio.gather(
                        client.get(self._current_url, params=base),
                        client.get(self._onecall_url, params=forecast_params),
                    )

            except httpx.TimeoutException as e:
                upstream_requests.labels(provider=self.provider, status="timeout").inc()
                raise UpstreamTimeout(
                    f"OpenWeatherMap request timed out after {self._timeout}s"
                ) from e

            except httpx.RequestError as e:
                upstream_requests.labels(provider=self.provider, status="error").inc()
                raise UpstreamGenericError(f"OpenWeatherMap request failed: {e}") from e

        for response in (current_response, forecast_response):
            if not response.is_success:
                raise classify_response(self.provider, response)

        try:
            current = current_response.json()
            forecast = forecast_response.json()
        except ValueError as e:
            raise UpstreamGenericError("OpenWeatherMap returned a non-JSON body") from e

        upstream_requests.labels(provider=self.provider, status="success").inc()
        return {
            "current": current,
            "forecast": forecast,
            "source": "openweathermap",
            "timestamp": int(time.time() * 1000),
        }
