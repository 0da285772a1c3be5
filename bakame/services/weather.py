"""
Weather tool service - example caller composing the resilience substrate.
Serves cached reports first, protects the upstream call with the "weather"
circuit breaker and caches fresh results.
"""
import logging
from typing import Optional, Union

import httpx
from pydantic import ValidationError as PydanticValidationError

from bakame.core.cache import CacheLayer, CacheTTL, derive_key
from bakame.core.circuit_breaker import CircuitBreakerRegistry
from bakame.core.exceptions import NotFoundError
from bakame.models.interfaces import WeatherProvider
from bakame.models.schemas import FallbackResponse, WeatherReport, WeatherResponse

logger = logging.getLogger(__name__)

SERVICE_NAME = "weather"
CACHE_NAMESPACE = "tool:weather"


class OpenWeatherClient:
    """
    OpenWeather current-weather API client.
    Implements WeatherProvider.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.openweathermap.org/data/2.5",
        timeout_sec: float = 10.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._client = http_client or httpx.AsyncClient(timeout=timeout_sec)

    async def fetch_current(self, location: str, units: str) -> Optional[WeatherReport]:
        """Fetch current weather; None when OpenWeather does not know the location."""
        response = await self._client.get(
            f"{self._base_url}/weather",
            params={
                "q": location,
                "units": "imperial" if units == "fahrenheit" else "metric",
                "appid": self._api_key,
            },
        )
        if response.status_code == 404:
            return None
        response.raise_for_status()

        data = response.json()
        return WeatherReport(
            location=data["name"],
            country=data.get("sys", {}).get("country"),
            temperature=round(data["main"]["temp"]),
            feels_like=round(data["main"]["feels_like"]),
            humidity=data["main"]["humidity"],
            description=data["weather"][0]["description"],
            wind_speed=data.get("wind", {}).get("speed", 0.0),
            units=units,
        )

    async def aclose(self) -> None:
        await self._client.aclose()


class WeatherService:
    """
    Weather lookups with caching and circuit breaking.

    Flow:
    - Cache hit: return it (even while the circuit is OPEN)
    - Miss: call the provider through the circuit breaker
    - Fresh report: cache it, return it
    - Circuit open / upstream failure: return the fallback payload
    """

    def __init__(
        self,
        provider: WeatherProvider,
        cache: CacheLayer,
        breakers: CircuitBreakerRegistry,
        ttl_seconds: int = CacheTTL.WEATHER,
    ) -> None:
        self._provider = provider
        self._cache = cache
        self._breakers = breakers
        self._ttl = ttl_seconds

    async def get_weather(
        self,
        location: str,
        units: str = "celsius",
    ) -> Union[WeatherResponse, FallbackResponse]:
        """
        Get current weather for a location.

        Args:
            location: City name
            units: "celsius" or "fahrenheit"

        Returns:
            WeatherResponse, or FallbackResponse when the upstream is unavailable

        Raises:
            NotFoundError: Upstream does not know the location
        """
        key = derive_key(CACHE_NAMESPACE, {"location": location.strip().lower(), "units": units})

        cached = await self._cache.read(key)
        if cached is not None:
            try:
                return WeatherResponse(data=WeatherReport(**cached), cached=True)
            except (TypeError, PydanticValidationError):
                logger.warning(f"Ignoring cached weather with unexpected shape: {key}")

        fallback = self._breakers.fallback_response(SERVICE_NAME)
        report = await self._breakers.execute(
            SERVICE_NAME,
            lambda: self._provider.fetch_current(location, units),
            fallback,
        )

        if report is fallback:
            logger.warning(f"Weather unavailable for {location}, serving fallback")
            return fallback
        if report is None:
            raise NotFoundError("Location", location)

        await self._cache.write(key, report.model_dump(), self._ttl)
        return WeatherResponse(data=report)
