"""Error taxonomy shared by the gateway services and the HTTP layer."""


class GatewayError(Exception):
    """Base exception for errors surfaced to API clients."""

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str, retry_after: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.retry_after = retry_after


class CoordinateValidationError(GatewayError):
    """Raised when latitude or longitude is missing, non-numeric or out of range."""

    code = "VALIDATION_ERROR"
    status_code = 400


class RateLimitExhausted(GatewayError):
    """Raised when no credential in the pool has quota left."""

    code = "RATE_LIMIT_EXHAUSTED"
    status_code = 429


class NoFallbackAvailable(GatewayError):
    """Raised when nothing can serve the request: no credential and no cached data."""

    code = "NO_FALLBACK_AVAILABLE"
    status_code = 500


class ProviderNotConfigured(GatewayError):
    """Raised when a provider-specific route is called without credentials."""

    code = "PROVIDER_NOT_CONFIGURED"
    status_code = 503


class UpstreamError(GatewayError):
    """Base exception for weather provider failures."""

    code = "UPSTREAM_ERROR"
    status_code = 502

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        retry_after: int | None = None,
    ) -> None:
        super().__init__(message, retry_after=retry_after)
        # HTTP status returned by the provider, if any
        self.upstream_status = status_code


class UpstreamAuthError(UpstreamError):
    """Provider rejected the credential (HTTP 401)."""

    code = "UPSTREAM_AUTH_ERROR"
    status_code = 401


class UpstreamForbidden(UpstreamError):
    """Provider refused the request (HTTP 403), e.g. geo-blocking or subscription."""

    code = "UPSTREAM_FORBIDDEN"
    status_code = 403


class UpstreamRateLimited(UpstreamError):
    """Provider reported its own rate limit (HTTP 429)."""

    code = "UPSTREAM_RATE_LIMITED"
    status_code = 429


class UpstreamTimeout(UpstreamError):
    """Provider did not answer within the configured timeout."""

    code = "UPSTREAM_TIMEOUT"
    status_code = 504


class UpstreamGenericError(UpstreamError):
    """Any other provider or transport failure."""

    code = "UPSTREAM_ERROR"
    status_code = 502


class UpstreamUnavailable(UpstreamError):
    """Upstream calls are suspended after repeated failures."""

    code = "UPSTREAM_BACKOFF"
    status_code = 503
