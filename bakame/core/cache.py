"""
Cache-aside layer over the key-value store.

Keys are derived deterministically from a namespace and an argument set, so
semantically identical calls always share one entry. Caching never breaks the
caller: backend and deserialization failures are counted and logged, then
treated as misses.
"""
import asyncio
import hashlib
import json
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, TypeVar

from bakame.core.metrics import CACHE_LOOKUPS
from bakame.core.store import KeyValueStore
from bakame.models.schemas import CacheStats

logger = logging.getLogger(__name__)

T = TypeVar("T")

KEY_PREFIX = "cache"
DIGEST_LENGTH = 32  # hex chars, 128 bits
HEALTH_CHECK_KEY = "cache:health:check"


class CacheTTL:
    """Default time-to-live per tool type (seconds)."""
    WEATHER = 600        # 10 minutes
    CURRENCY = 300       # 5 minutes
    NEWS = 900           # 15 minutes
    WEB_SEARCH = 1800    # 30 minutes
    PLACES = 3600        # 1 hour
    DEFAULT = 600


def canonicalize(args: Any) -> str:
    """Stable JSON: object keys sorted at every depth, arrays keep their order."""
    return json.dumps(args, sort_keys=True, separators=(",", ":"), default=str)


def derive_key(namespace: str, args: Any = None) -> str:
    """
    Build a cache key from a namespace and call arguments.

    Example:
        derive_key("tool:weather", {"city": "Kigali", "units": "metric"})
        # "cache:tool:weather:3f0c...". same key for any argument order
    """
    digest = hashlib.sha256(canonicalize({} if args is None else args).encode()).hexdigest()
    return f"{KEY_PREFIX}:{namespace}:{digest[:DIGEST_LENGTH]}"


class CacheLayer:
    """
    Read-through cache helper.

    Concurrent misses on the same key may each run the operation (no
    de-duplication) unless single_flight is enabled, in which case they share
    one in-flight execution within this process.

    Usage:
        cache = CacheLayer(store)
        report = await cache.with_cache(
            derive_key("tool:weather", {"city": city}),
            CacheTTL.WEATHER,
            lambda: client.fetch(city),
        )
    """

    def __init__(self, store: KeyValueStore, single_flight: bool = False) -> None:
        self._store = store
        self._single_flight = single_flight
        self._in_flight: Dict[str, asyncio.Task] = {}
        self._hits = 0
        self._misses = 0
        self._errors = 0

    @property
    def store(self) -> KeyValueStore:
        return self._store

    async def _lookup(self, key: str) -> Tuple[bool, Any]:
        """Return (hit, value). A stored JSON null is still a hit."""
        try:
            raw = await self._store.get(key)
        except Exception as e:
            self._record_error()
            logger.error(f"Cache read failed for {key}: {e}", extra={"cache_key": key})
            return False, None

        if raw is None:
            self._misses += 1
            CACHE_LOOKUPS.labels(result="miss").inc()
            logger.debug(f"Cache MISS - {key}", extra={"cache_key": key})
            return False, None

        try:
            value = json.loads(raw)
        except (TypeError, ValueError) as e:
            self._record_error()
            logger.warning(f"Discarding malformed cache entry {key}: {e}", extra={"cache_key": key})
            return False, None

        self._hits += 1
        CACHE_LOOKUPS.labels(result="hit").inc()
        logger.debug(f"Cache HIT - {key}", extra={"cache_key": key})
        return True, value

    def _record_error(self) -> None:
        self._errors += 1
        CACHE_LOOKUPS.labels(result="error").inc()

    async def read(self, key: str) -> Optional[Any]:
        """Get cached value, None on miss or any failure."""
        _, value = await self._lookup(key)
        return value

    async def write(self, key: str, value: Any, ttl_seconds: float) -> None:
        """Store value as JSON with a TTL. Failures are logged, never raised."""
        if ttl_seconds <= 0:
            raise ValueError(f"ttl_seconds must be positive, got {ttl_seconds}")
        try:
            serialized = json.dumps(value)
            await self._store.set(key, serialized, ttl_seconds=ttl_seconds)
        except Exception as e:
            self._errors += 1
            logger.error(f"Cache write failed for {key}: {e}", extra={"cache_key": key})
            return
        logger.debug(f"Cache SET - {key} (TTL: {ttl_seconds}s)", extra={"cache_key": key})

    async def with_cache(
        self,
        key: str,
        ttl_seconds: float,
        operation: Callable[[], Awaitable[T]],
    ) -> T:
        """
        Return the cached value, or run the operation and cache its result.

        Args:
            key: Cache key (usually from derive_key)
            ttl_seconds: Lifetime of a freshly cached result
            operation: Async callable executed on a miss

        Returns:
            Cached or freshly computed value

        Raises:
            Whatever the operation raises; nothing is cached in that case
        """
        hit, value = await self._lookup(key)
        if hit:
            return value

        if not self._single_flight:
            return await self._load(key, ttl_seconds, operation)

        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._load(key, ttl_seconds, operation))
            self._in_flight[key] = task
            task.add_done_callback(lambda _: self._in_flight.pop(key, None))
        # shield: one cancelled waiter must not cancel the shared load
        return await asyncio.shield(task)

    async def _load(
        self,
        key: str,
        ttl_seconds: float,
        operation: Callable[[], Awaitable[T]],
    ) -> T:
        logger.debug(f"Executing operation for {key}", extra={"cache_key": key})
        result = await operation()
        await self.write(key, result, ttl_seconds)
        return result

    async def invalidate(self, pattern_or_key: str) -> int:
        """
        Delete one key, or every key matching a `*` wildcard pattern.
        Only keys under the `cache:` prefix are ever deleted.

        Returns:
            Number of keys deleted (0 when the backend cannot enumerate keys)
        """
        if not pattern_or_key.startswith(f"{KEY_PREFIX}:"):
            logger.warning(f"Refusing to invalidate outside the cache namespace: {pattern_or_key}")
            return 0

        try:
            if "*" not in pattern_or_key:
                existed = await self._store.exists(pattern_or_key)
                await self._store.delete(pattern_or_key)
                return int(existed)

            if not self._store.supports_key_scan:
                logger.warning(
                    f"Pattern invalidation not supported by {self._store.backend} "
                    f"backend: {pattern_or_key}"
                )
                return 0

            keys = [
                key for key in await self._store.keys(pattern_or_key)
                if key.startswith(f"{KEY_PREFIX}:")
            ]
            for key in keys:
                await self._store.delete(key)
        except Exception as e:
            self._errors += 1
            logger.error(f"Cache invalidation failed for {pattern_or_key}: {e}")
            return 0

        logger.info(f"Cache INVALIDATE - {pattern_or_key} ({len(keys)} keys deleted)")
        return len(keys)

    def stats(self) -> CacheStats:
        """Snapshot of hit/miss/error counters."""
        return CacheStats(hits=self._hits, misses=self._misses, errors=self._errors)

    def reset_stats(self) -> None:
        self._hits = 0
        self._misses = 0
        self._errors = 0
        logger.info("Cache statistics reset")

    async def is_healthy(self) -> bool:
        """Round-trip a sample value through the backend."""
        sample = {"timestamp": time.time(), "test": True}
        try:
            await self._store.set(HEALTH_CHECK_KEY, json.dumps(sample), ttl_seconds=10)
            raw = await self._store.get(HEALTH_CHECK_KEY)
            await self._store.delete(HEALTH_CHECK_KEY)
        except Exception as e:
            logger.error(f"Cache health check failed: {e}")
            return False
        try:
            return json.loads(raw).get("test") is True
        except (TypeError, ValueError, AttributeError):
            return False
