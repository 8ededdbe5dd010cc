"""Tomorrow.io timelines API client."""

from datetime import UTC, datetime, timedelta
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

FORECAST_WINDOW = timedelta(hours=24)


def _isoformat(value: datetime) -> str:
    return value.isoformat(timespec="seconds").replace("+00:00", "Z")


class TomorrowClient:
    """HTTP client for the Tomorrow.io timelines endpoint."""

    provider = "tomorrow.io"

    def __init__(self, settings: Settings) -> None:
        """Initialize client with settings."""
        self._base_url = settings.tomorrow_url
        self._fields = settings.tomorrow_fields
        self._timesteps = settings.tomorrow_timesteps
        self._timeout = settings.upstream_timeout_seconds

    def build_params(self, lat: float, lon: float, credential: Credential) -> dict[str, str]:
        """Query for the next 24 hours in metric units."""
        now = datetime.now(UTC)
        return {
            "apikey": credential.secret,
            "location": f"{lat},{lon}",
            "fields": self._fields,
            "timesteps": self._timesteps,
            "startTime": _isoformat(now),
            "endTime": _isoformat(now + FORECAST_WINDOW),
            "units": "metric",
        }

    async def fetch(self, lat: float, lon: float, credential: Credential) -> dict[str, Any]:
        """Fetch hourly and daily timelines for coordinates.

        Args:
            lat: Latitude (-90 to 90)
            lon: Longitude (-180 to 180)
            credential: Key used for this call

        Returns:
            The provider payload, unmodified

        Raises:
            UpstreamTimeout: If the request times out
            UpstreamAuthError: On HTTP 401
            UpstreamForbidden: On HTTP 403
            UpstreamRateLimited: On HTTP 429
            UpstreamGenericError: On any other failure
        """
        params = self.build_params(lat, lon, credential)

        with upstream_duration.labels(provider=self.provider).time():
            try:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.get(self._base_url, params=params)

            except httpx.TimeoutException as e:
                upstream_requests.labels(provider=self.provider, status="timeout").inc()
                raise UpstreamTimeout(
                    f"Tomorrow.io request timed out after {self._timeout}s"
                ) from e

            except httpx.RequestError as e:
                upstream_requests.labels(provider=self.provider, status="error").inc()
                raise UpstreamGenericError(f"Tomorrow.io request failed: {e}") from e

        if not response.is_success:
            raise classify_response(self.provider, response)

        upstream_requests.labels(provider=self.provider, status="success").inc()
        return self._parse_response(response)

    def _parse_response(self, response: httpx.Response) -> dict[str, Any]:
        """Validate the timelines payload.

        Raises:
            UpstreamGenericError: If the body is not JSON or has no timelines
        """
        try:
            data = response.json()
        except ValueError as e:
            raise UpstreamGenericError("Tomorrow.io returned a non-JSON body") from e

        if not isinstance(data, dict) or not isinstance(data.get("data"), dict):
            raise UpstreamGenericError("Missing 'data' field in response")

        if "timelines" not in data["data"]:
            raise UpstreamGenericError("Missing 'timelines' in response data")

        return data
