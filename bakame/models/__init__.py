"""Models package - domain entities and interfaces."""
from .interfaces import SortedSetPipeline, WeatherProvider
from .schemas import (
    CacheStats,
    CacheStatsResponse,
    CircuitBreakerConfig,
    CircuitState,
    CircuitStats,
    CircuitStatus,
    EndpointRateLimits,
    ErrorResponse,
    FailureInfo,
    FallbackResponse,
    InvalidateResponse,
    RateLimitConfig,
    RateLimitResult,
    ServiceHealth,
    SystemHealth,
    WeatherReport,
    WeatherResponse,
)

__all__ = [
    # Interfaces
    "SortedSetPipeline",
    "WeatherProvider",
    # Schemas
    "CacheStats",
    "CacheStatsResponse",
    "CircuitBreakerConfig",
    "CircuitState",
    "CircuitStats",
    "CircuitStatus",
    "EndpointRateLimits",
    "ErrorResponse",
    "FailureInfo",
    "FallbackResponse",
    "InvalidateResponse",
    "RateLimitConfig",
    "RateLimitResult",
    "ServiceHealth",
    "SystemHealth",
    "WeatherReport",
    "WeatherResponse",
]
