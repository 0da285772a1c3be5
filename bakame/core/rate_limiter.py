"""
Per-endpoint, per-identity rate limiting over the key-value store.

- Sliding window (sorted set of request timestamps) when the backend supports
  sorted sets; trim + add + count run as one MULTI/EXEC batch.
- Fixed window counter (INCR + EXPIRE) otherwise.

Backend failures fail open: an outage of the limiter must never turn into a
denial of service against the application.
"""
import logging
import math
import time
import uuid
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from bakame.core.exceptions import ConfigurationError
from bakame.core.metrics import RATE_LIMIT_DECISIONS
from bakame.core.store import KeyValueStore
from bakame.models.schemas import EndpointRateLimits, RateLimitConfig, RateLimitResult

logger = logging.getLogger(__name__)

DEFAULT_RATE_LIMITS = {
    "chat": EndpointRateLimits(
        authenticated=RateLimitConfig(max_requests=100, window_seconds=60),
        guest=RateLimitConfig(max_requests=30, window_seconds=60),
    ),
    "upload": EndpointRateLimits(
        authenticated=RateLimitConfig(max_requests=10, window_seconds=60),
        guest=RateLimitConfig(max_requests=5, window_seconds=60),
    ),
    "tools": EndpointRateLimits(
        authenticated=RateLimitConfig(max_requests=60, window_seconds=60),
        guest=RateLimitConfig(max_requests=20, window_seconds=60),
    ),
}


def rate_limit_key(endpoint: str, identifier: str) -> str:
    return f"ratelimit:{endpoint}:{identifier}"


class RateLimiter:
    """
    Distributed rate limiter with authenticated/guest quotas per endpoint.

    Two concurrent checks for the same identifier are never serialized here;
    correctness relies on the backend's atomic INCR / MULTI-EXEC.

    Usage:
        limiter = RateLimiter(store)
        result = await limiter.check_rate_limit("chat", "203.0.113.7", False)
        if not result.allowed:
            raise RateLimitError(retry_after=result.retry_after)
    """

    def __init__(
        self,
        store: KeyValueStore,
        limits: Optional[Mapping[str, Union[EndpointRateLimits, Mapping[str, Any]]]] = None,
        enabled: bool = True,
    ) -> None:
        self._store = store
        self._enabled = enabled
        # Chosen once: the backend's capabilities do not change at runtime
        self._sliding_window = store.supports_sorted_sets
        self._limits: Dict[str, EndpointRateLimits] = {}
        for endpoint, endpoint_limits in (limits if limits is not None else DEFAULT_RATE_LIMITS).items():
            self.register(endpoint, endpoint_limits)

    @property
    def algorithm(self) -> str:
        return "sliding_window" if self._sliding_window else "fixed_window"

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def endpoints(self) -> List[str]:
        return sorted(self._limits)

    def register(
        self,
        endpoint: str,
        limits: Union[EndpointRateLimits, Mapping[str, Any]],
    ) -> EndpointRateLimits:
        """Register quotas for an endpoint, validating them up front."""
        if not isinstance(limits, EndpointRateLimits):
            try:
                limits = EndpointRateLimits(**limits)
            except PydanticValidationError as e:
                raise ConfigurationError(f"Invalid rate limit config for '{endpoint}': {e}") from e
        self._limits[endpoint] = limits
        return limits

    def config_for(self, endpoint: str, is_authenticated: bool) -> RateLimitConfig:
        limits = self._limits.get(endpoint)
        if limits is None:
            raise ConfigurationError(f"No rate limit configured for endpoint '{endpoint}'")
        return limits.for_identity(is_authenticated)

    def ensure_configured(self, endpoints: Iterable[str]) -> None:
        """Fail fast at start-up for endpoints without quotas."""
        missing = sorted(set(endpoints) - set(self._limits))
        if missing:
            raise ConfigurationError(f"No rate limit configured for endpoints: {', '.join(missing)}")

    async def check_rate_limit(
        self,
        endpoint: str,
        identifier: str,
        is_authenticated: bool,
    ) -> RateLimitResult:
        """
        Record this request and decide whether it is allowed.

        Args:
            endpoint: Registered endpoint name, e.g. "chat"
            identifier: Caller identity (IP address or user id)
            is_authenticated: Selects the authenticated or guest quota

        Returns:
            RateLimitResult; retry_after is set only when not allowed
        """
        config = self.config_for(endpoint, is_authenticated)
        now_ms = int(time.time() * 1000)
        window_ms = config.window_seconds * 1000

        if not self._enabled:
            logger.debug(
                f"Rate limiting disabled, allowing {endpoint}:{identifier}",
                extra={"endpoint": endpoint, "identifier": identifier},
            )
            return RateLimitResult(
                allowed=True,
                remaining=config.max_requests,
                reset_time=now_ms + window_ms,
            )

        key = rate_limit_key(endpoint, identifier)
        try:
            if self._sliding_window:
                result = await self._check_sliding_window(key, config, now_ms)
            else:
                result = await self._check_fixed_window(key, config, now_ms)
        except Exception as e:
            logger.error(
                f"Rate limit check failed for {endpoint}:{identifier}, allowing request (fail-open): {e}",
                exc_info=True,
                extra={"endpoint": endpoint, "identifier": identifier},
            )
            RATE_LIMIT_DECISIONS.labels(endpoint=endpoint, decision="fail_open").inc()
            return RateLimitResult(
                allowed=True,
                remaining=config.max_requests,
                reset_time=now_ms + window_ms,
            )

        if result.allowed:
            RATE_LIMIT_DECISIONS.labels(endpoint=endpoint, decision="allowed").inc()
        else:
            RATE_LIMIT_DECISIONS.labels(endpoint=endpoint, decision="rejected").inc()
            logger.warning(
                f"Rate limit exceeded for {endpoint}:{identifier}, retry after {result.retry_after}s",
                extra={"endpoint": endpoint, "identifier": identifier},
            )
        return result

    async def _check_sliding_window(
        self,
        key: str,
        config: RateLimitConfig,
        now_ms: int,
    ) -> RateLimitResult:
        window_ms = config.window_seconds * 1000
        # Unique member so two requests in the same millisecond both count
        member = f"{now_ms}-{uuid.uuid4().hex[:12]}"

        pipeline = self._store.pipeline()
        pipeline.zremrangebyscore(key, 0, now_ms - window_ms)
        pipeline.zadd(key, {member: now_ms})
        pipeline.zcard(key)
        pipeline.expire(key, config.window_seconds)
        pipeline.zrange(key, 0, 0, withscores=True)
        results = await pipeline.execute()

        count = int(results[2])
        reset_ms = self._oldest_score(results[4], now_ms) + window_ms
        return self._build_result(config, count, count <= config.max_requests, reset_ms, now_ms)

    async def _check_fixed_window(
        self,
        key: str,
        config: RateLimitConfig,
        now_ms: int,
    ) -> RateLimitResult:
        count = await self._store.incr(key)
        if count == 1:
            await self._store.expire(key, config.window_seconds)
            ttl = float(config.window_seconds)
        else:
            ttl = await self._store.ttl(key)
            if ttl is None:
                # Counter lost its expiry (e.g. failure between INCR and EXPIRE)
                await self._store.expire(key, config.window_seconds)
                ttl = float(config.window_seconds)

        reset_ms = now_ms + int(ttl * 1000)
        return self._build_result(config, count, count <= config.max_requests, reset_ms, now_ms)

    async def get_rate_limit_status(
        self,
        endpoint: str,
        identifier: str,
        is_authenticated: bool,
    ) -> RateLimitResult:
        """Current quota for an identity without consuming any of it."""
        config = self.config_for(endpoint, is_authenticated)
        now_ms = int(time.time() * 1000)
        window_ms = config.window_seconds * 1000
        key = rate_limit_key(endpoint, identifier)

        try:
            if self._sliding_window:
                pipeline = self._store.pipeline()
                pipeline.zremrangebyscore(key, 0, now_ms - window_ms)
                pipeline.zcard(key)
                pipeline.zrange(key, 0, 0, withscores=True)
                results = await pipeline.execute()
                count = int(results[1])
                reset_ms = self._oldest_score(results[2], now_ms) + window_ms
            else:
                raw = await self._store.get(key)
                count = int(raw) if raw is not None else 0
                ttl = await self._store.ttl(key) if count else None
                reset_ms = now_ms + int((ttl if ttl is not None else config.window_seconds) * 1000)
        except Exception as e:
            logger.error(
                f"Rate limit status failed for {endpoint}:{identifier}: {e}",
                exc_info=True,
                extra={"endpoint": endpoint, "identifier": identifier},
            )
            return RateLimitResult(
                allowed=True,
                remaining=config.max_requests,
                reset_time=now_ms + window_ms,
            )

        # "<" rather than "<=": the next request has not been made yet
        return self._build_result(config, count, count < config.max_requests, reset_ms, now_ms)

    async def reset_rate_limit(self, endpoint: str, identifier: str) -> None:
        """Administrative reset of one identity's window."""
        await self._store.delete(rate_limit_key(endpoint, identifier))
        logger.info(
            f"Reset rate limit for {endpoint}:{identifier}",
            extra={"endpoint": endpoint, "identifier": identifier},
        )

    @staticmethod
    def _oldest_score(entries: Any, default: int) -> int:
        """Score of the oldest surviving request from ZRANGE ... WITHSCORES."""
        if not entries:
            return default
        return int(float(entries[0][1]))

    @staticmethod
    def _build_result(
        config: RateLimitConfig,
        count: int,
        allowed: bool,
        reset_ms: int,
        now_ms: int,
    ) -> RateLimitResult:
        retry_after = None
        if not allowed:
            retry_after = max(1, math.ceil((reset_ms - now_ms) / 1000))
        return RateLimitResult(
            allowed=allowed,
            remaining=max(0, config.max_requests - count),
            reset_time=reset_ms,
            retry_after=retry_after,
        )
