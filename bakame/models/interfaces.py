"""
Collaborator interfaces (abstractions).
Using Protocol for structural subtyping (duck typing with type hints).
"""
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from bakame.models.schemas import WeatherReport


@runtime_checkable
class SortedSetPipeline(Protocol):
    """
    Queued batch of sorted-set commands, executed as one atomic unit.
    Production: redis-py MULTI/EXEC pipeline.
    Testing: mocked pipeline.
    """

    def zremrangebyscore(self, name: str, min: float, max: float) -> Any:
        ...

    def zadd(self, name: str, mapping: Dict[str, float]) -> Any:
        ...

    def zcard(self, name: str) -> Any:
        ...

    def zrange(self, name: str, start: int, end: int, withscores: bool = False) -> Any:
        ...

    def expire(self, name: str, time: int) -> Any:
        ...

    async def execute(self) -> List[Any]:
        """
        Run every queued command atomically.

        Returns:
            One result per queued command, in queue order
        """
        ...


@runtime_checkable
class WeatherProvider(Protocol):
    """
    Interface for the upstream weather API.
    Production: OpenWeather over httpx.
    Testing: in-memory fake.
    """

    async def fetch_current(self, location: str, units: str) -> Optional[WeatherReport]:
        """
        Fetch current weather.

        Args:
            location: City name, e.g. "Kigali"
            units: "celsius" or "fahrenheit"

        Returns:
            WeatherReport, or None if the upstream does not know the location

        Raises:
            Any exception on upstream failure (counted by the circuit breaker)
        """
        ...
