"""
TTL-capable key-value store shared by the cache and the rate limiter.

Two implementations:
- RedisStore: networked backend, authoritative for multi-process deployments.
- InMemoryStore: single-process fallback used when no REDIS_URL is configured.

Capabilities (sorted sets, key scanning) are fixed at construction time so
callers choose their algorithm once instead of probing the client per call.
"""
import asyncio
import fnmatch
import logging
import time
from abc import ABC, abstractmethod
from threading import Lock
from typing import Any, Awaitable, Dict, List, Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError

from bakame.config import Settings
from bakame.core.exceptions import StoreError
from bakame.models.interfaces import SortedSetPipeline

logger = logging.getLogger(__name__)


class KeyValueStore(ABC):
    """Abstract interface for key-value backends."""

    backend: str = "abstract"
    supports_sorted_sets: bool = False
    supports_key_scan: bool = False

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        """Get value by key, returns None if not set or expired."""
        pass

    @abstractmethod
    async def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        """Set value; without a TTL the entry never expires on its own."""
        pass

    @abstractmethod
    async def incr(self, key: str) -> int:
        """Atomically increment an integer value (absent counts as 0)."""
        pass

    @abstractmethod
    async def expire(self, key: str, ttl_seconds: float) -> None:
        """Set or overwrite the expiry of an existing key. No-op if absent."""
        pass

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove key immediately."""
        pass

    @abstractmethod
    async def exists(self, key: str) -> bool:
        pass

    @abstractmethod
    async def ttl(self, key: str) -> Optional[float]:
        """Seconds left before expiry, None if absent or persistent."""
        pass

    @abstractmethod
    async def ping(self) -> bool:
        pass

    async def keys(self, pattern: str = "*") -> List[str]:
        """List live keys matching a glob pattern."""
        raise StoreError("keys", f"key scanning not supported by {self.backend} backend")

    def pipeline(self) -> SortedSetPipeline:
        """Start an atomic batch of sorted-set commands."""
        raise StoreError("pipeline", f"sorted sets not supported by {self.backend} backend")

    async def start(self) -> None:
        """Start background work (if any)."""

    async def close(self) -> None:
        """Release backend resources."""


# =============================================================================
# In-Memory Fallback
# =============================================================================


class StoreEntry:
    """Single store entry with expiration tracking."""

    __slots__ = ("value", "expires_at")

    def __init__(self, value: Any, expires_at: Optional[float]) -> None:
        self.value = value
        self.expires_at = expires_at

    def is_expired(self, now: Optional[float] = None) -> bool:
        """Check if entry has expired."""
        if self.expires_at is None:
            return False
        return (now if now is not None else time.time()) >= self.expires_at


class InMemoryStore(KeyValueStore):
    """
    Thread-safe in-process store with lazy expiry and a periodic sweep.

    Every operation checks expiry itself; the sweep only bounds memory held
    by entries nobody reads again. No operation awaits while holding the
    lock, so read-modify-write sequences such as incr are atomic.

    Only valid for a single process: horizontally scaled deployments must
    use RedisStore or every instance keeps its own quotas and cache.

    Usage:
        store = InMemoryStore(sweep_interval_seconds=60)
        await store.start()
        await store.set("key", "value", ttl_seconds=30)
    """

    backend = "memory"
    supports_sorted_sets = False
    supports_key_scan = True

    def __init__(self, sweep_interval_seconds: float = 60) -> None:
        self._data: Dict[str, StoreEntry] = {}
        self._lock = Lock()
        self._sweep_interval = sweep_interval_seconds
        self._sweep_task: Optional[asyncio.Task] = None

    def _live_entry(self, key: str) -> Optional[StoreEntry]:
        """Return the entry if present and unexpired. Caller holds the lock."""
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry.is_expired():
            del self._data[key]
            return None
        return entry

    async def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._live_entry(key)
            return entry.value if entry else None

    async def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        expires_at = time.time() + ttl_seconds if ttl_seconds is not None else None
        with self._lock:
            self._data[key] = StoreEntry(value, expires_at)

    async def incr(self, key: str) -> int:
        with self._lock:
            entry = self._live_entry(key)
            current = entry.value if entry else 0
            try:
                new_value = int(current) + 1
            except (TypeError, ValueError):
                raise StoreError("incr", f"value at '{key}' is not an integer")
            self._data[key] = StoreEntry(new_value, entry.expires_at if entry else None)
            return new_value

    async def expire(self, key: str, ttl_seconds: float) -> None:
        with self._lock:
            entry = self._live_entry(key)
            if entry is not None:
                entry.expires_at = time.time() + ttl_seconds

    async def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    async def exists(self, key: str) -> bool:
        with self._lock:
            return self._live_entry(key) is not None

    async def ttl(self, key: str) -> Optional[float]:
        with self._lock:
            entry = self._live_entry(key)
            if entry is None or entry.expires_at is None:
                return None
            return max(0.0, entry.expires_at - time.time())

    async def keys(self, pattern: str = "*") -> List[str]:
        now = time.time()
        with self._lock:
            return [
                key for key, entry in self._data.items()
                if not entry.is_expired(now) and fnmatch.fnmatchcase(key, pattern)
            ]

    async def ping(self) -> bool:
        return True

    def size(self) -> int:
        """Return number of entries (including possibly expired)."""
        with self._lock:
            return len(self._data)

    def cleanup_expired(self) -> int:
        """Remove expired entries, return count removed."""
        now = time.time()
        with self._lock:
            expired_keys = [k for k, v in self._data.items() if v.is_expired(now)]
            for key in expired_keys:
                del self._data[key]
        return len(expired_keys)

    async def start(self) -> None:
        """Start the background sweep on the running event loop."""
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def close(self) -> None:
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            try:
                removed = self.cleanup_expired()
                if removed:
                    logger.debug(f"In-memory store swept {removed} expired entries")
            except Exception as e:
                logger.error(f"Error in store sweep: {e}", exc_info=True)


# =============================================================================
# Redis Backend
# =============================================================================


class RedisPipeline:
    """MULTI/EXEC pipeline whose failures surface as StoreError."""

    def __init__(self, pipeline: Any) -> None:
        self._pipeline = pipeline

    def __getattr__(self, name: str) -> Any:
        return getattr(self._pipeline, name)

    async def execute(self) -> List[Any]:
        try:
            return await self._pipeline.execute()
        except RedisError as e:
            raise StoreError("pipeline", str(e)) from e


class RedisStore(KeyValueStore):
    """
    Redis-backed store (redis-py asyncio client).

    Usage:
        store = RedisStore.from_url("redis://localhost:6379/0")
        count = await store.incr("ratelimit:chat:1.2.3.4")
    """

    backend = "redis"
    supports_sorted_sets = True
    supports_key_scan = True

    def __init__(self, client: Redis) -> None:
        self._client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisStore":
        return cls(Redis.from_url(url, decode_responses=True))

    async def _run(self, operation: str, command: Awaitable[Any]) -> Any:
        try:
            return await command
        except RedisError as e:
            raise StoreError(operation, str(e)) from e

    async def get(self, key: str) -> Optional[Any]:
        return await self._run("get", self._client.get(key))

    async def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        if ttl_seconds is None:
            await self._run("set", self._client.set(key, value))
            return
        ttl_ms = int(ttl_seconds * 1000)
        if ttl_ms <= 0:
            # Redis rejects PX 0; an already-expired write leaves the key absent
            await self._run("set", self._client.delete(key))
            return
        await self._run("set", self._client.set(key, value, px=ttl_ms))

    async def incr(self, key: str) -> int:
        return int(await self._run("incr", self._client.incr(key)))

    async def expire(self, key: str, ttl_seconds: float) -> None:
        await self._run("expire", self._client.pexpire(key, int(ttl_seconds * 1000)))

    async def delete(self, key: str) -> None:
        await self._run("delete", self._client.delete(key))

    async def exists(self, key: str) -> bool:
        return bool(await self._run("exists", self._client.exists(key)))

    async def ttl(self, key: str) -> Optional[float]:
        remaining_ms = await self._run("ttl", self._client.pttl(key))
        # -2: missing key, -1: no expiry
        if remaining_ms is None or remaining_ms < 0:
            return None
        return remaining_ms / 1000

    async def keys(self, pattern: str = "*") -> List[str]:
        try:
            return [key async for key in self._client.scan_iter(match=pattern)]
        except RedisError as e:
            raise StoreError("keys", str(e)) from e

    def pipeline(self) -> SortedSetPipeline:
        return RedisPipeline(self._client.pipeline(transaction=True))

    async def ping(self) -> bool:
        return bool(await self._run("ping", self._client.ping()))

    async def close(self) -> None:
        await self._client.aclose()


def create_store(settings: Settings) -> KeyValueStore:
    """
    Build the configured backend.
    Falls back to the in-memory store when REDIS_URL is not set.
    """
    if settings.REDIS_URL:
        logger.info("Initializing Redis key-value store")
        return RedisStore.from_url(settings.REDIS_URL)

    logger.warning(
        "REDIS_URL not set - using in-memory store. Rate limits and cache are "
        "per-process; set REDIS_URL for horizontally scaled deployments."
    )
    return InMemoryStore(sweep_interval_seconds=settings.STORE_SWEEP_INTERVAL_SEC)
