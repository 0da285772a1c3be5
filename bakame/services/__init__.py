"""Services package - callers composing the resilience substrate."""
from .weather import OpenWeatherClient, WeatherService

__all__ = [
    "OpenWeatherClient",
    "WeatherService",
]
