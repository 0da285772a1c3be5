"""Core infrastructure components."""
from .cache import CacheLayer, CacheTTL, derive_key
from .circuit_breaker import CircuitBreaker, CircuitBreakerRegistry
from .exceptions import (
    AppException,
    ConfigurationError,
    NotFoundError,
    RateLimitError,
    StoreError,
    UnauthorizedError,
    ValidationError,
)
from .rate_limiter import RateLimiter
from .store import InMemoryStore, KeyValueStore, RedisStore, create_store

__all__ = [
    "AppException",
    "CacheLayer",
    "CacheTTL",
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "ConfigurationError",
    "InMemoryStore",
    "KeyValueStore",
    "NotFoundError",
    "RateLimitError",
    "RateLimiter",
    "RedisStore",
    "StoreError",
    "UnauthorizedError",
    "ValidationError",
    "create_store",
    "derive_key",
]
