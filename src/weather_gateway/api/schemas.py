"""API request and response schemas."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class WeatherRequest(BaseModel):
    """Body of ``POST /api/weather``; values are validated by the route."""

    lat: float | str | None = Field(default=None, description="Latitude")
    lon: float | str | None = Field(default=None, description="Longitude")


class WeatherResponse(BaseModel):
    """Provider payload with cache annotations merged in.

    The provider's own fields are passed through untouched as extra keys.
    """

    model_config = ConfigDict(extra="allow")

    cached: bool = Field(..., description="Served from cache")
    provider: str = Field(..., description="Weather provider")
    cacheType: str | None = Field(default=None, description="Tier that served the data")  # noqa: N815
    approximate: bool | None = Field(
        default=None, description="Data belongs to a nearby location"
    )
    distanceKm: float | None = Field(  # noqa: N815
        default=None, description="Distance to the location the data belongs to"
    )
    apiCallsToday: int | None = Field(default=None, description="Upstream calls so far")  # noqa: N815
    cacheHitRate: str | None = Field(default=None, description="Share of requests served from cache")  # noqa: N815


class ErrorDetail(BaseModel):
    """Error detail."""

    code: str = Field(..., description="Error code")
    message: str = Field(..., description="Error message")


class ErrorResponse(BaseModel):
    """Error response."""

    error: ErrorDetail
    retryAfter: int | None = Field(default=None, description="Seconds before retrying")  # noqa: N815


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(..., description="Health status")
    timestamp: str = Field(..., description="Server time, ISO 8601")
    apiHealth: str = Field(..., description="healthy or degraded")  # noqa: N815


class ReadinessResponse(BaseModel):
    """Readiness check response."""

    status: str = Field(..., description="Readiness status")
    checks: dict[str, str] = Field(default_factory=dict, description="Component checks")


class StatsResponse(BaseModel):
    """Diagnostics report."""

    uptime: str
    uptimeSeconds: int  # noqa: N815
    stats: dict[str, Any]
    apiStatus: dict[str, Any]  # noqa: N815
    apiKeys: list[dict[str, Any]]  # noqa: N815
    cache: dict[str, int]
    estimatedUsers: int  # noqa: N815
    maxCapacity: int  # noqa: N815
    openweathermap: dict[str, Any] | None = None


class CacheEntryInfo(BaseModel):
    """One cache entry."""

    key: str
    type: str
    age: int = Field(..., description="Seconds since the entry was stored")
    ttl: int
    provider: str


class CacheInfoResponse(BaseModel):
    """Cache contents."""

    entries: list[CacheEntryInfo]
    totalSize: int  # noqa: N815
    oldestEntry: int  # noqa: N815


class ClearCacheResponse(BaseModel):
    """Result of clearing the cache."""

    message: str
    entriesRemoved: int  # noqa: N815
    newSize: int  # noqa: N815
