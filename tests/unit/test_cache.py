import asyncio
from unittest.mock import AsyncMock

import pytest

from bakame.core.cache import CacheLayer, derive_key
from bakame.core.exceptions import StoreError
from bakame.core.store import InMemoryStore


class NoScanStore(InMemoryStore):
    supports_key_scan = False


class BrokenStore(InMemoryStore):
    async def get(self, key):
        raise StoreError("get", "connection refused")

    async def set(self, key, value, ttl_seconds=None):
        raise StoreError("set", "connection refused")


class TestDeriveKey:
    def test_argument_order_does_not_matter(self):
        k1 = derive_key("tool:weather", {"location": "Kigali", "units": "celsius"})
        k2 = derive_key("tool:weather", {"units": "celsius", "location": "Kigali"})
        assert k1 == k2

    def test_nested_objects_are_canonical(self):
        k1 = derive_key("tool:search", {"q": "x", "filters": {"a": 1, "b": [1, 2]}})
        k2 = derive_key("tool:search", {"filters": {"b": [1, 2], "a": 1}, "q": "x"})
        assert k1 == k2

    def test_different_arguments_differ(self):
        assert derive_key("tool:weather", {"location": "Kigali"}) != derive_key(
            "tool:weather", {"location": "Nairobi"}
        )
        # Array order is significant
        assert derive_key("ns", {"a": [1, 2]}) != derive_key("ns", {"a": [2, 1]})

    def test_falsy_arguments_are_distinct(self):
        empty = derive_key("ns")
        assert derive_key("ns", None) == empty
        assert derive_key("ns", {}) == empty
        keys = {derive_key("ns", args) for args in ([], 0, "", False)}
        assert empty not in keys
        assert len(keys) == 4

    def test_key_format(self):
        key = derive_key("tool:weather", {"location": "Kigali"})
        prefix = "cache:tool:weather:"
        assert key.startswith(prefix)
        digest = key[len(prefix):]
        assert len(digest) == 32
        int(digest, 16)


class TestCacheLayer:
    @pytest.mark.asyncio
    async def test_write_read(self):
        cache = CacheLayer(InMemoryStore())
        await cache.write("cache:k", {"temp": 24, "tags": ["a"]}, 60)
        assert await cache.read("cache:k") == {"temp": 24, "tags": ["a"]}
        assert await cache.read("cache:missing") is None

    @pytest.mark.asyncio
    async def test_entry_expires(self):
        cache = CacheLayer(InMemoryStore())
        await cache.write("cache:k", "v", 1)
        await asyncio.sleep(1.1)
        assert await cache.read("cache:k") is None

    @pytest.mark.asyncio
    async def test_write_rejects_non_positive_ttl(self):
        cache = CacheLayer(InMemoryStore())
        with pytest.raises(ValueError):
            await cache.write("cache:k", "v", 0)

    @pytest.mark.asyncio
    async def test_with_cache_executes_once(self):
        cache = CacheLayer(InMemoryStore())
        operation = AsyncMock(return_value={"temp": 24})

        first = await cache.with_cache("cache:k", 60, operation)
        second = await cache.with_cache("cache:k", 60, operation)

        assert first == second == {"temp": 24}
        operation.assert_awaited_once()
        assert cache.stats().hits == 1
        assert cache.stats().misses == 1

    @pytest.mark.asyncio
    async def test_cached_null_is_a_hit(self):
        cache = CacheLayer(InMemoryStore())
        operation = AsyncMock(return_value=None)

        assert await cache.with_cache("cache:k", 60, operation) is None
        assert await cache.with_cache("cache:k", 60, operation) is None
        operation.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failure_is_not_cached(self):
        cache = CacheLayer(InMemoryStore())
        operation = AsyncMock(side_effect=[RuntimeError("upstream down"), "ok"])

        with pytest.raises(RuntimeError):
            await cache.with_cache("cache:k", 60, operation)
        assert await cache.with_cache("cache:k", 60, operation) == "ok"
        assert operation.await_count == 2

    @pytest.mark.asyncio
    async def test_backend_failure_degrades_to_miss(self):
        cache = CacheLayer(BrokenStore())
        operation = AsyncMock(return_value="fresh")

        assert await cache.read("cache:k") is None
        assert await cache.with_cache("cache:k", 60, operation) == "fresh"
        operation.assert_awaited_once()
        assert cache.stats().errors >= 2

    @pytest.mark.asyncio
    async def test_malformed_entry_is_a_miss(self):
        store = InMemoryStore()
        await store.set("cache:k", "{not json")
        cache = CacheLayer(store)

        assert await cache.read("cache:k") is None
        assert cache.stats().errors == 1

    @pytest.mark.asyncio
    async def test_invalidate_exact_key(self):
        cache = CacheLayer(InMemoryStore())
        await cache.write("cache:k", "v", 60)

        assert await cache.invalidate("cache:k") == 1
        assert await cache.invalidate("cache:k") == 0
        assert await cache.read("cache:k") is None

    @pytest.mark.asyncio
    async def test_invalidate_pattern(self):
        store = InMemoryStore()
        cache = CacheLayer(store)
        await cache.write(derive_key("tool:weather", {"location": "a"}), 1, 60)
        await cache.write(derive_key("tool:weather", {"location": "b"}), 2, 60)
        await cache.write(derive_key("tool:news", {"q": "c"}), 3, 60)

        assert await cache.invalidate("cache:tool:weather:*") == 2
        assert len(await store.keys("cache:*")) == 1

    @pytest.mark.asyncio
    async def test_invalidate_never_touches_other_namespaces(self):
        store = InMemoryStore()
        cache = CacheLayer(store)
        await store.set("ratelimit:chat:ip-1", 3, ttl_seconds=60)
        await cache.write("cache:tool:weather:x", 1, 60)

        assert await cache.invalidate("**") == 0
        assert await cache.invalidate("?*") == 0
        assert await cache.invalidate("ratelimit:chat:ip-1") == 0
        assert await cache.invalidate("cache:**") == 1
        assert await store.get("ratelimit:chat:ip-1") == 3

    @pytest.mark.asyncio
    async def test_invalidate_pattern_without_key_scan(self):
        cache = CacheLayer(NoScanStore())
        await cache.write("cache:tool:weather:x", 1, 60)

        assert await cache.invalidate("cache:tool:weather:*") == 0
        assert await cache.read("cache:tool:weather:x") == 1

    @pytest.mark.asyncio
    async def test_stats_and_reset(self):
        cache = CacheLayer(InMemoryStore())
        await cache.write("cache:k", "v", 60)
        await cache.read("cache:k")
        await cache.read("cache:k")
        await cache.read("cache:missing")

        stats = cache.stats()
        assert (stats.hits, stats.misses, stats.errors) == (2, 1, 0)
        assert stats.hit_rate == 66.67

        cache.reset_stats()
        assert cache.stats().hit_rate == 0.0

    @pytest.mark.asyncio
    async def test_is_healthy(self):
        assert await CacheLayer(InMemoryStore()).is_healthy() is True
        assert await CacheLayer(BrokenStore()).is_healthy() is False

    @pytest.mark.asyncio
    async def test_concurrent_misses_without_single_flight(self):
        cache = CacheLayer(InMemoryStore())
        calls = 0

        async def slow():
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.05)
            return "v"

        results = await asyncio.gather(
            cache.with_cache("cache:k", 60, slow),
            cache.with_cache("cache:k", 60, slow),
        )
        assert results == ["v", "v"]
        assert calls == 2

    @pytest.mark.asyncio
    async def test_single_flight_shares_execution(self):
        cache = CacheLayer(InMemoryStore(), single_flight=True)
        calls = 0

        async def slow():
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.05)
            return "v"

        results = await asyncio.gather(
            cache.with_cache("cache:k", 60, slow),
            cache.with_cache("cache:k", 60, slow),
            cache.with_cache("cache:k", 60, slow),
        )
        assert results == ["v", "v", "v"]
        assert calls == 1
