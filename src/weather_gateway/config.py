"""Application configuration management."""

from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Values shipped in sample env files; never treated as real credentials
PLACEHOLDER_KEYS = frozenset(
    {
        "REPLACE_WITH_YOUR_API_KEY",
        "YOUR_SECOND_API_KEY_HERE",
        "YOUR_KEY_HERE",
    }
)


def _split_csv(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Server settings
    app_host: str = Field(default="0.0.0.0", description="Server bind host")
    app_port: int = Field(default=3001, description="Server bind port")
    cors_origins: str = Field(
        default="http://localhost:3000,http://localhost:5173",
        description="Comma-separated list of allowed CORS origins",
    )

    # Tomorrow.io settings
    tomorrow_api_key: str = Field(default="", description="Primary Tomorrow.io API key")
    tomorrow_api_keys: str = Field(
        default="",
        description="Additional Tomorrow.io API keys, comma-separated",
    )
    tomorrow_url: str = Field(
        default="https://api.tomorrow.io/v4/timelines",
        description="Tomorrow.io timelines endpoint",
    )
    tomorrow_fields: str = Field(
        default=(
            "temperature,temperatureApparent,humidity,windSpeed,windDirection,"
            "weatherCode,precipitationProbability,precipitationType,"
            "pressureSurfaceLevel,uvIndex,visibility,sunriseTime,sunsetTime"
        ),
        description="Fields requested from Tomorrow.io",
    )
    tomorrow_timesteps: str = Field(default="1h,1d", description="Tomorrow.io timesteps")

    # Per-credential quota
    key_hourly_limit: int = Field(default=25, description="Calls per key per hour", ge=1)
    key_daily_limit: int = Field(default=500, description="Calls per key per day", ge=1)

    # OpenWeatherMap settings
    openweathermap_api_key: str = Field(default="", description="OpenWeatherMap API key")
    openweathermap_current_url: str = Field(
        default="https://api.openweathermap.org/data/2.5/weather",
        description="OpenWeatherMap current weather endpoint",
    )
    openweathermap_onecall_url: str = Field(
        default="https://api.openweathermap.org/data/3.0/onecall",
        description="OpenWeatherMap One Call endpoint",
    )
    openweathermap_hourly_limit: int = Field(default=60, ge=1)
    openweathermap_daily_limit: int = Field(default=1000, ge=1)

    # Upstream API settings
    upstream_timeout_seconds: float = Field(
        default=10.0,
        description="Upstream request timeout in seconds",
        ge=0.1,
        le=60.0,
    )

    # Cache settings
    cache_exact_ttl_seconds: int = Field(
        default=3600,
        description="TTL of the exact-coordinate tier",
        ge=1,
        le=86400,
    )
    cache_grid_ttl_seconds: int = Field(
        default=7200,
        description="TTL of the rounded-grid tier",
        ge=1,
        le=86400,
    )
    cache_city_ttl_seconds: int = Field(
        default=14400,
        description="TTL of the city-name tier",
        ge=1,
        le=86400,
    )
    cache_max_size: int = Field(
        default=10000,
        description="Maximum entries per cache tier",
        ge=1,
        le=1000000,
    )
    grid_resolution: int = Field(
        default=20,
        description="Grid lattice steps per degree (20 is roughly 5 km)",
        ge=1,
        le=1000,
    )
    nearest_max_distance_km: float = Field(
        default=10.0,
        description="Radius searched for an approximate fallback",
        gt=0,
    )

    # Reverse geocoding
    geocoder_enabled: bool = Field(default=True, description="Resolve city names for the city tier")
    geocoder_url: str = Field(
        default="https://nominatim.openstreetmap.org/reverse",
        description="Reverse geocoding endpoint",
    )
    geocoder_user_agent: str = Field(default="weather-gateway/0.1")
    geocoder_timeout_seconds: float = Field(default=3.0, ge=0.1, le=30.0)
    geocoder_failure_ttl_seconds: float = Field(
        default=60.0, gt=0, description="How long a failed lookup is remembered"
    )

    # Resilience
    coalesce_requests: bool = Field(
        default=True,
        description="Share one upstream fetch between concurrent misses for a location",
    )
    backoff_failure_threshold: int = Field(default=5, ge=1)
    backoff_base_seconds: float = Field(default=60.0, gt=0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)
    backoff_max_seconds: float = Field(default=1800.0, gt=0)

    # Logging settings
    log_level: str = Field(
        default="INFO",
        description="Logging level",
    )
    log_format: str = Field(
        default="json",
        description="Log format (json or text)",
    )

    @model_validator(mode="after")
    def _check_tier_ordering(self) -> "Settings":
        if not (
            self.cache_exact_ttl_seconds
            <= self.cache_grid_ttl_seconds
            <= self.cache_city_ttl_seconds
        ):
            raise ValueError("cache TTLs must satisfy exact <= grid <= city")
        return self

    @property
    def api_keys(self) -> list[str]:
        """Configured Tomorrow.io keys in priority order, placeholders removed."""
        keys: list[str] = []
        for key in [self.tomorrow_api_key, *_split_csv(self.tomorrow_api_keys)]:
            key = key.strip()
            if key and key not in PLACEHOLDER_KEYS and key not in keys:
                keys.append(key)
        return keys

    @property
    def allowed_origins(self) -> list[str]:
        return _split_csv(self.cors_origins)


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings."""
    return Settings()
