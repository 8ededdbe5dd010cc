"""FastAPI dependencies."""

from typing import Annotated

from fastapi import Depends, Request

from weather_gateway.errors import ProviderNotConfigured
from weather_gateway.services.gateway import WeatherGateway
from weather_gateway.services.state import GatewayState


def get_state(request: Request) -> GatewayState:
    """Get the state object built by ``create_app``."""
    state: GatewayState = request.app.state.gateway_state
    return state


def get_weather_gateway(state: Annotated[GatewayState, Depends(get_state)]) -> WeatherGateway:
    """Get the Tomorrow.io gateway."""
    return state.primary


def get_openweathermap_gateway(
    state: Annotated[GatewayState, Depends(get_state)],
) -> WeatherGateway:
    """Get the OpenWeatherMap gateway, if a key is configured."""
    if state.secondary is None:
        raise ProviderNotConfigured("OpenWeatherMap API key is not set on the server")
    return state.secondary


# Type aliases for dependency injection
StateDep = Annotated[GatewayState, Depends(get_state)]
WeatherGatewayDep = Annotated[WeatherGateway, Depends(get_weather_gateway)]
OpenWeatherMapGatewayDep = Annotated[WeatherGateway, Depends(get_openweathermap_gateway)]
