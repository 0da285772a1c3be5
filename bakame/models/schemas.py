"""
Domain models using Pydantic.
All data structures for the resilience substrate and its HTTP surface.
"""
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, model_validator


# =============================================================================
# Rate Limiting
# =============================================================================


class RateLimitConfig(BaseModel):
    """Quota for one (endpoint, identity type) pair."""

    max_requests: int = Field(..., gt=0, description="Requests allowed per window")
    window_seconds: int = Field(..., gt=0, description="Window length in seconds")


class EndpointRateLimits(BaseModel):
    """
    Authenticated and guest quotas for a single endpoint.
    Authenticated identities never get less than guests.
    """

    authenticated: RateLimitConfig
    guest: RateLimitConfig

    @model_validator(mode="after")
    def check_authenticated_quota(self) -> "EndpointRateLimits":
        if self.authenticated.max_requests < self.guest.max_requests:
            raise ValueError(
                "authenticated quota must be >= guest quota "
                f"({self.authenticated.max_requests} < {self.guest.max_requests})"
            )
        return self

    def for_identity(self, is_authenticated: bool) -> RateLimitConfig:
        return self.authenticated if is_authenticated else self.guest


class RateLimitResult(BaseModel):
    """Outcome of a rate limit check or status read."""

    allowed: bool
    remaining: int = Field(..., ge=0)
    reset_time: int = Field(..., description="Unix timestamp (ms) when the window resets")
    retry_after: Optional[int] = Field(
        default=None,
        description="Seconds to wait before retrying (only when not allowed)",
    )


# =============================================================================
# Circuit Breaker
# =============================================================================


class CircuitState(str, Enum):
    """Circuit breaker states."""
    CLOSED = "CLOSED"        # Normal operation
    OPEN = "OPEN"            # Blocking calls
    HALF_OPEN = "HALF_OPEN"  # Testing recovery


class CircuitBreakerConfig(BaseModel):
    """Per-service circuit breaker profile."""

    failure_threshold: int = Field(default=5, gt=0)
    success_threshold: int = Field(default=3, gt=0)
    reset_timeout_ms: int = Field(default=30000, ge=0)
    request_timeout_ms: Optional[int] = Field(default=10000, gt=0)


class FailureInfo(BaseModel):
    """Most recent failure recorded for a service."""

    timestamp: float
    reason: Literal["error", "timeout"]
    message: str = ""


class CircuitStatus(BaseModel):
    """Point-in-time snapshot of one service's circuit."""

    service: str
    state: CircuitState
    consecutive_failures: int = 0
    consecutive_successes: int = 0
    opened_at: Optional[float] = None
    last_state_change: float
    last_failure: Optional[FailureInfo] = None
    total_requests: int = 0
    total_successes: int = 0
    total_failures: int = 0


class CircuitStats(BaseModel):
    """Derived statistics for monitoring dashboards."""

    state: CircuitState
    failure_rate: float = Field(..., description="Percentage of failed requests")
    total_requests: int
    uptime_ms: int = Field(..., description="Time since last state change")
    last_failure: Optional[str] = Field(default=None, description="ISO timestamp")


class FallbackResponse(BaseModel):
    """Error-shaped payload returned when a service is unavailable."""

    error: str
    service: str
    fallback: bool = True
    retry_after: Optional[int] = None


class ServiceHealth(BaseModel):
    state: CircuitState
    healthy: bool


class SystemHealth(BaseModel):
    """Overall health derived from all known circuits."""

    healthy: bool
    services: Dict[str, ServiceHealth] = Field(default_factory=dict)
    open_circuits: List[str] = Field(default_factory=list)


# =============================================================================
# Cache
# =============================================================================


class CacheStats(BaseModel):
    """Cache hit/miss/error counters."""

    hits: int = 0
    misses: int = 0
    errors: int = 0

    @property
    def hit_rate(self) -> float:
        lookups = self.hits + self.misses
        return round(self.hits / lookups * 100, 2) if lookups else 0.0


# =============================================================================
# API Models (External)
# =============================================================================


class WeatherReport(BaseModel):
    """Current weather for a location, as returned to clients."""

    location: str
    country: Optional[str] = None
    temperature: int
    feels_like: int
    humidity: int
    description: str
    wind_speed: float
    units: Literal["celsius", "fahrenheit"] = "celsius"


class WeatherResponse(BaseModel):
    """Response body for the weather tool endpoint."""

    success: bool = True
    data: WeatherReport
    cached: bool = Field(default=False, description="Served from cache")


class CacheStatsResponse(BaseModel):
    hits: int
    misses: int
    errors: int
    hit_rate: float
    backend: str


class InvalidateResponse(BaseModel):
    pattern: str
    deleted: int


class ErrorResponse(BaseModel):
    """Standard error response format."""

    error: Dict[str, Any]
