"""Application entry point."""

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import make_asgi_app

from weather_gateway import __version__
from weather_gateway.api.routes import api_router, gateway_error_handler, health_router
from weather_gateway.config import Settings, get_settings
from weather_gateway.errors import GatewayError
from weather_gateway.middleware.logging import LoggingMiddleware, configure_logging
from weather_gateway.services.state import GatewayState


def create_app(settings: Settings | None = None, state: GatewayState | None = None) -> FastAPI:
    """Create and configure FastAPI application.

    A fresh ``GatewayState`` is built from settings unless one is given.
    """
    settings = settings or get_settings()

    # Configure logging
    configure_logging(settings)

    app = FastAPI(
        title="Weather Gateway API",
        description="Caching proxy for Tomorrow.io with API key rotation",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    # All mutable state lives here for the process lifetime
    app.state.gateway_state = state or GatewayState.from_settings(settings)

    # Add middleware
    app.add_middleware(LoggingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
        expose_headers=["X-Cache", "X-Request-ID", "Retry-After"],
    )

    app.add_exception_handler(GatewayError, gateway_error_handler)

    # Include routers
    app.include_router(api_router)
    app.include_router(health_router)

    # Mount Prometheus metrics endpoint
    metrics_app = make_asgi_app()
    app.mount("/metrics", metrics_app)

    return app


def run() -> None:
    """Run the application with uvicorn."""
    settings = get_settings()
    uvicorn.run(
        "weather_gateway.main:create_app",
        factory=True,
        host=settings.app_host,
        port=settings.app_port,
        reload=False,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
