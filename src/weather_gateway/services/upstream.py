"""Shared pieces of the weather provider clients."""

from typing import Any, Protocol

import httpx
from prometheus_client import Counter, Histogram

from weather_gateway.errors import (
    UpstreamAuthError,
    UpstreamError,
    UpstreamForbidden,
    UpstreamGenericError,
    UpstreamRateLimited,
)
from weather_gateway.services.key_pool import Credential

# Seconds a client should wait after the provider reports its own rate limit
PROVIDER_RETRY_AFTER = 3600

# Metrics
upstream_requests = Counter(
    "upstream_requests_total",
    "Total upstream API requests",
    ["provider", "status"],
)
upstream_duration = Histogram(
    "upstream_request_duration_seconds",
    "Upstream request duration in seconds",
    ["provider"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)


class UpstreamClient(Protocol):
    """A weather provider reachable with one credential."""

    provider: str

    async def fetch(self, lat: float, lon: float, credential: Credential) -> dict[str, Any]:
        """Fetch the forecast payload for a point."""
        ...


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        return str(body.get("message") or body.get("error") or body)
    return str(body)


def classify_response(provider: str, response: httpx.Response) -> UpstreamError:
    """Map a non-2xx provider response to a typed error."""
    status = response.status_code
    message = f"{provider} returned {status}: {_error_message(response)}"

    if status == 401:
        upstream_requests.labels(provider=provider, status="auth_error").inc()
        return UpstreamAuthError(message, status)
    if status == 403:
        upstream_requests.labels(provider=provider, status="forbidden").inc()
        return UpstreamForbidden(message, status)
    if status == 429:
        upstream_requests.labels(provider=provider, status="rate_limited").inc()
        return UpstreamRateLimited(message, status, retry_after=PROVIDER_RETRY_AFTER)

    upstream_requests.labels(provider=provider, status="error").inc()
    return UpstreamGenericError(message, status)
