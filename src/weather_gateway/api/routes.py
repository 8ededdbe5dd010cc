"""API route definitions."""

import math
from datetime import UTC, datetime
from typing import Annotated, Any

import structlog
from fastapi import APIRouter, HTTPException, Query, Request, Response, status
from fastapi.responses import JSONResponse

from weather_gateway.api.dependencies import (
    OpenWeatherMapGatewayDep,
    StateDep,
    WeatherGatewayDep,
)
from weather_gateway.api.schemas import (
    CacheEntryInfo,
    CacheInfoResponse,
    ClearCacheResponse,
    ErrorDetail,
    ErrorResponse,
    HealthResponse,
    ReadinessResponse,
    StatsResponse,
    WeatherRequest,
    WeatherResponse,
)
from weather_gateway.errors import CoordinateValidationError, GatewayError
from weather_gateway.services.gateway import WeatherGateway, WeatherResult

logger = structlog.get_logger()

# API router for weather and diagnostics endpoints
api_router = APIRouter(prefix="/api", tags=["weather"])

# Health router for health checks
health_router = APIRouter(prefix="/health", tags=["health"])


WEATHER_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: {"model": ErrorResponse, "description": "Invalid coordinates"},
    429: {"model": ErrorResponse, "description": "API quota exhausted"},
    502: {"model": ErrorResponse, "description": "Upstream API error"},
    503: {"model": ErrorResponse, "description": "Upstream suspended"},
    504: {"model": ErrorResponse, "description": "Upstream timeout"},
}


def parse_coordinates(lat: Any, lon: Any) -> tuple[float, float]:
    """Validate raw latitude and longitude values.

    Raises:
        CoordinateValidationError: If either value is missing, non-numeric,
            not finite or out of range
    """
    try:
        latitude = float(lat)
        longitude = float(lon)
    except (TypeError, ValueError) as e:
        raise CoordinateValidationError(
            "Invalid coordinates. Please provide valid latitude and longitude values."
        ) from e

    if not (math.isfinite(latitude) and math.isfinite(longitude)):
        raise CoordinateValidationError("Coordinates must be finite numbers.")

    if not (-90 <= latitude <= 90 and -180 <= longitude <= 180):
        raise CoordinateValidationError("Coordinates out of valid range.")

    return latitude, longitude


async def gateway_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Render a ``GatewayError`` as ``{"error": {code, message}, "retryAfter"?}``."""
    if not isinstance(exc, GatewayError):
        raise exc
    body = ErrorResponse(
        error=ErrorDetail(code=exc.code, message=exc.message),
        retryAfter=exc.retry_after,
    )
    headers = {"Retry-After": str(exc.retry_after)} if exc.retry_after else None
    return JSONResponse(
        status_code=exc.status_code,
        content=body.model_dump(exclude_none=True),
        headers=headers,
    )


def _shape(result: WeatherResult, gateway: WeatherGateway, response: Response) -> WeatherResponse:
    meta: dict[str, Any] = {
        "cached": result.cached,
        "provider": result.provider,
        "cacheHitRate": gateway.stats.cache_hit_rate,
    }
    if result.cache_type is not None:
        meta["cacheType"] = result.cache_type
    if result.approximate:
        meta["approximate"] = True
        meta["distanceKm"] = round(result.distance_km or 0.0, 2)
    if not result.cached:
        meta["apiCallsToday"] = gateway.stats.api_calls_today

    response.headers["X-Cache"] = result.cache_type or "miss"
    return WeatherResponse.model_validate({**result.payload, **meta})


async def _serve(
    gateway: WeatherGateway, lat: Any, lon: Any, response: Response
) -> WeatherResponse:
    latitude, longitude = parse_coordinates(lat, lon)
    try:
        result = await gateway.get_weather(latitude, longitude)
    except GatewayError as e:
        logger.error(
            "Weather request failed",
            provider=gateway.provider,
            lat=latitude,
            lon=longitude,
            error_code=e.code,
            error=str(e),
        )
        raise
    return _shape(result, gateway, response)


@api_router.get(
    "/weather",
    response_model=WeatherResponse,
    response_model_exclude_unset=True,
    responses=WEATHER_RESPONSES,
)
async def get_weather(
    gateway: WeatherGatewayDep,
    response: Response,
    lat: Annotated[str | None, Query(description="Latitude")] = None,
    lon: Annotated[str | None, Query(description="Longitude")] = None,
) -> WeatherResponse:
    """Get the 24-hour forecast for coordinates.

    Served from the exact, grid or city cache tier when possible; otherwise
    fetched from Tomorrow.io with the first API key that has quota left.
    """
    return await _serve(gateway, lat, lon, response)


@api_router.post(
    "/weather",
    response_model=WeatherResponse,
    response_model_exclude_unset=True,
    responses=WEATHER_RESPONSES,
)
async def post_weather(
    gateway: WeatherGatewayDep,
    response: Response,
    body: WeatherRequest,
) -> WeatherResponse:
    """Same as ``GET /api/weather`` with coordinates in a JSON body."""
    return await _serve(gateway, body.lat, body.lon, response)


@api_router.get(
    "/weather/openweathermap",
    response_model=WeatherResponse,
    response_model_exclude_unset=True,
    responses=WEATHER_RESPONSES,
)
async def get_openweathermap(
    gateway: OpenWeatherMapGatewayDep,
    response: Response,
    lat: Annotated[str | None, Query(description="Latitude")] = None,
    lon: Annotated[str | None, Query(description="Longitude")] = None,
) -> WeatherResponse:
    """Get current weather and forecast from OpenWeatherMap."""
    return await _serve(gateway, lat, lon, response)


@api_router.post(
    "/weather/openweathermap",
    response_model=WeatherResponse,
    response_model_exclude_unset=True,
    responses=WEATHER_RESPONSES,
)
async def post_openweathermap(
    gateway: OpenWeatherMapGatewayDep,
    response: Response,
    body: WeatherRequest,
) -> WeatherResponse:
    """OpenWeatherMap variant taking a JSON body."""
    return await _serve(gateway, body.lat, body.lon, response)


@api_router.get(
    "/weather/{lat}/{lon}",
    response_model=WeatherResponse,
    response_model_exclude_unset=True,
    responses=WEATHER_RESPONSES,
)
async def get_weather_by_path(
    gateway: WeatherGatewayDep,
    response: Response,
    lat: str,
    lon: str,
) -> WeatherResponse:
    """Path-style variant of ``GET /api/weather``."""
    return await _serve(gateway, lat, lon, response)


@api_router.get("/stats", response_model=StatsResponse, response_model_exclude_none=True)
async def get_stats(state: StateDep) -> StatsResponse:
    """Counters, per-key quota and cache sizes."""
    return StatsResponse.model_validate(state.stats_report())


@api_router.get("/cache-info", response_model=CacheInfoResponse)
async def get_cache_info(state: StateDep) -> CacheInfoResponse:
    """List live cache entries with their age."""
    entries = [
        CacheEntryInfo(provider=gateway.provider, **entry)
        for gateway in state.gateways
        for entry in gateway.cache.entries()
    ]
    return CacheInfoResponse(
        entries=entries,
        totalSize=len(entries),
        oldestEntry=max((entry.age for entry in entries), default=0),
    )


@api_router.post("/clear-cache", response_model=ClearCacheResponse)
async def clear_cache(state: StateDep) -> ClearCacheResponse:
    """Drop every cached entry and reset the counters."""
    removed = state.clear_caches()
    logger.info("Cache cleared", entries_removed=removed)
    return ClearCacheResponse(
        message="Cache cleared successfully",
        entriesRemoved=removed,
        newSize=sum(gateway.cache.size for gateway in state.gateways),
    )


@health_router.get("", response_model=HealthResponse)
async def health(state: StateDep) -> HealthResponse:
    """Liveness probe - reports upstream health without failing."""
    return HealthResponse(
        status="ok",
        timestamp=datetime.now(UTC).isoformat(),
        apiHealth="healthy" if state.primary.backoff.healthy else "degraded",
    )


@health_router.get("/ready", response_model=ReadinessResponse)
async def readiness(state: StateDep) -> ReadinessResponse:
    """Readiness probe - checks caches and that some credential is configured."""
    cache_status = (
        "ok" if all(gateway.cache.is_healthy() for gateway in state.gateways) else "unhealthy"
    )
    keys_status = "ok" if any(len(gateway.key_pool) for gateway in state.gateways) else "missing"

    checks = {"cache": cache_status, "apiKeys": keys_status}
    overall_status = "ok" if all(value == "ok" for value in checks.values()) else "unhealthy"

    response = ReadinessResponse(status=overall_status, checks=checks)

    if overall_status != "ok":
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=response.model_dump(),
        )

    return response
