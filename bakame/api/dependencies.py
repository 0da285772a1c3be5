"""
Dependency injection container.
Creates and wires all application components.
Uses FastAPI's dependency injection system.
"""
import hmac
from functools import lru_cache
from typing import Any, Dict, Optional, Set, Tuple

from fastapi import Depends, Header, Request, Response

from bakame.config import Settings, get_settings
from bakame.core.cache import CacheLayer
from bakame.core.circuit_breaker import CircuitBreakerRegistry
from bakame.core.exceptions import RateLimitError, UnauthorizedError
from bakame.core.rate_limiter import RateLimiter
from bakame.core.store import KeyValueStore, create_store
from bakame.models.interfaces import WeatherProvider
from bakame.models.schemas import CircuitBreakerConfig, RateLimitResult
from bakame.services.weather import OpenWeatherClient, WeatherService

# Endpoint names used by RateLimitGuard; checked against the limiter at start-up
GUARDED_ENDPOINTS: Set[str] = set()


def build_rate_limits(settings: Settings) -> Dict[str, Dict[str, Any]]:
    """Per-endpoint quotas from settings."""
    window = settings.RATE_LIMIT_WINDOW_SEC

    def quota(max_requests: int) -> Dict[str, int]:
        return {"max_requests": max_requests, "window_seconds": window}

    return {
        "chat": {
            "authenticated": quota(settings.RATE_LIMIT_CHAT_AUTHENTICATED),
            "guest": quota(settings.RATE_LIMIT_CHAT_GUEST),
        },
        "upload": {
            "authenticated": quota(settings.RATE_LIMIT_UPLOAD_AUTHENTICATED),
            "guest": quota(settings.RATE_LIMIT_UPLOAD_GUEST),
        },
        "tools": {
            "authenticated": quota(settings.RATE_LIMIT_TOOLS_AUTHENTICATED),
            "guest": quota(settings.RATE_LIMIT_TOOLS_GUEST),
        },
    }


# =============================================================================
# Singleton Instances (Application Lifetime)
# =============================================================================


@lru_cache()
def get_store() -> KeyValueStore:
    """Get singleton key-value store (Redis or in-memory fallback)."""
    return create_store(get_settings())


@lru_cache()
def get_cache_layer() -> CacheLayer:
    """Get singleton cache layer."""
    return CacheLayer(get_store(), single_flight=get_settings().CACHE_SINGLE_FLIGHT)


@lru_cache()
def get_rate_limiter() -> RateLimiter:
    """Get singleton rate limiter."""
    settings = get_settings()
    return RateLimiter(
        get_store(),
        limits=build_rate_limits(settings),
        enabled=settings.RATE_LIMIT_ENABLED,
    )


@lru_cache()
def get_circuit_breakers() -> CircuitBreakerRegistry:
    """Get singleton circuit breaker registry."""
    settings = get_settings()
    return CircuitBreakerRegistry(
        default_config=CircuitBreakerConfig(
            failure_threshold=settings.CIRCUIT_BREAKER_FAILURE_THRESHOLD,
            success_threshold=settings.CIRCUIT_BREAKER_SUCCESS_THRESHOLD,
            reset_timeout_ms=settings.CIRCUIT_BREAKER_RESET_TIMEOUT_MS,
            request_timeout_ms=settings.CIRCUIT_BREAKER_REQUEST_TIMEOUT_MS,
        )
    )


@lru_cache()
def get_weather_provider() -> WeatherProvider:
    """Get singleton OpenWeather client."""
    settings = get_settings()
    return OpenWeatherClient(
        api_key=settings.OPENWEATHER_API_KEY,
        base_url=settings.OPENWEATHER_BASE_URL,
    )


# =============================================================================
# Request-Scoped Dependencies (Per-Request Lifetime)
# =============================================================================


def get_weather_service(
    provider: WeatherProvider = Depends(get_weather_provider),
    cache: CacheLayer = Depends(get_cache_layer),
    breakers: CircuitBreakerRegistry = Depends(get_circuit_breakers),
) -> WeatherService:
    """Get weather service with all dependencies wired."""
    return WeatherService(
        provider=provider,
        cache=cache,
        breakers=breakers,
        ttl_seconds=get_settings().WEATHER_CACHE_TTL_SEC,
    )


def resolve_identity(request: Request) -> Tuple[str, bool]:
    """
    Identify the caller for rate limiting.

    X-User-ID is set by the upstream auth layer for signed-in users;
    everyone else is keyed by client IP.

    Returns:
        (identifier, is_authenticated)
    """
    user_id = request.headers.get("X-User-ID")
    if user_id:
        return f"user:{user_id}", True

    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip(), False

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip(), False

    if request.client and request.client.host:
        return request.client.host, False
    return "unknown", False


class RateLimitGuard:
    """
    Route dependency enforcing an endpoint's quota.

    Usage:
        @router.get("/tool", dependencies=[Depends(RateLimitGuard("tools"))])
    """

    def __init__(self, endpoint: str) -> None:
        self.endpoint = endpoint
        GUARDED_ENDPOINTS.add(endpoint)

    async def __call__(
        self,
        request: Request,
        response: Response,
        limiter: RateLimiter = Depends(get_rate_limiter),
    ) -> RateLimitResult:
        identifier, is_authenticated = resolve_identity(request)
        result = await limiter.check_rate_limit(self.endpoint, identifier, is_authenticated)
        if not result.allowed:
            raise RateLimitError(retry_after=result.retry_after or 1, reset_time=result.reset_time)

        response.headers["X-RateLimit-Remaining"] = str(result.remaining)
        response.headers["X-RateLimit-Reset"] = str(result.reset_time)
        return result


def require_admin(
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
) -> None:
    """Guard admin routes. Without a configured ADMIN_TOKEN they are closed."""
    expected = get_settings().ADMIN_TOKEN
    if not expected:
        raise UnauthorizedError("Admin endpoints disabled: ADMIN_TOKEN is not configured")
    if not x_admin_token or not hmac.compare_digest(x_admin_token, expected):
        raise UnauthorizedError()


# =============================================================================
# Cleanup Functions
# =============================================================================


def clear_caches() -> None:
    """Clear all cached singleton instances (for testing)."""
    get_store.cache_clear()
    get_cache_layer.cache_clear()
    get_rate_limiter.cache_clear()
    get_circuit_breakers.cache_clear()
    get_weather_provider.cache_clear()
