"""Unit tests for the LRU cache service and the similarity cache."""
import pytest

from memoryengine.services.cache import CacheNamespace, cache_key
from memoryengine.services.cache.lru import LRUCacheService
from memoryengine.services.similarity.default import DefaultSimilarityCache


class FakeClock:
    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now


class TestLRUCacheService:

    @pytest.mark.asyncio
    async def test_set_get_delete(self):
        cache = LRUCacheService(maxsize=10)

        assert await cache.get("missing") is None
        await cache.set("a", [1.0, 2.0])
        assert await cache.get("a") == [1.0, 2.0]
        assert await cache.exists("a")

        assert await cache.delete("a") is True
        assert await cache.delete("a") is False
        assert await cache.get("a") is None

    @pytest.mark.asyncio
    async def test_ttl_expiry(self):
        clock = FakeClock()
        cache = LRUCacheService(maxsize=10, clock=clock)

        await cache.set("short", "v", ttl_seconds=10)
        await cache.set("forever", "v")

        clock.now = 9.9
        assert await cache.get("short") == "v"

        clock.now = 10.0
        assert await cache.get("short") is None
        assert not await cache.exists("short")
        assert await cache.get("forever") == "v"

    @pytest.mark.asyncio
    async def test_cleanup_expired(self):
        clock = FakeClock()
        cache = LRUCacheService(maxsize=10, clock=clock)
        for i in range(3):
            await cache.set(f"k{i}", i, ttl_seconds=5)
        await cache.set("keep", 1, ttl_seconds=50)

        clock.now = 6
        assert cache.cleanup_expired() == 3
        assert cache.stats()["size"] == 1

    @pytest.mark.asyncio
    async def test_lru_eviction(self):
        cache = LRUCacheService(maxsize=2)
        await cache.set("a", 1)
        await cache.set("b", 2)
        await cache.get("a")  # b is now least recently used
        await cache.set("c", 3)

        assert await cache.get("b") is None
        assert await cache.get("a") == 1
        assert await cache.get("c") == 3

    @pytest.mark.asyncio
    async def test_clear_prefix(self):
        cache = LRUCacheService(maxsize=10)
        await cache.set("emb:1", 1)
        await cache.set("emb:2", 2)
        await cache.set("qexp:1", 3)

        assert await cache.clear_prefix("emb:") == 2
        assert await cache.get("qexp:1") == 3

    @pytest.mark.asyncio
    async def test_get_or_set(self):
        cache = LRUCacheService(maxsize=10)
        calls = []

        async def factory():
            calls.append(1)
            return "computed"

        assert await cache.get_or_set("k", factory) == "computed"
        assert await cache.get_or_set("k", factory) == "computed"
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_get_many_and_set_many(self):
        cache = LRUCacheService(maxsize=10)
        await cache.set_many({"a": 1, "b": 2})

        assert await cache.get_many(["a", "b", "missing"]) == {"a": 1, "b": 2}

    @pytest.mark.asyncio
    async def test_namespaced_keys(self):
        cache = LRUCacheService(maxsize=10)
        emb = cache_key(CacheNamespace.EMBEDDING, "model", "hello")
        qexp = cache_key(CacheNamespace.QUERY_EXPANSION, None, "hello")
        await cache.set(emb, [0.1])
        await cache.set(qexp, {"terms": []})

        assert emb.startswith("emb:") and qexp.startswith("qexp:")
        assert cache_key(CacheNamespace.EMBEDDING, "model", "hello") == emb
        assert await cache.clear_namespace(CacheNamespace.EMBEDDING) == 1
        assert await cache.get(qexp) == {"terms": []}


class TestSimilarityCache:

    def test_hit_and_order_independence(self):
        cache = DefaultSimilarityCache(max_size=10)
        a, b = [1.0, 0.0], [0.6, 0.8]

        first = cache.get_similarity(a, b)
        second = cache.get_similarity(b, a)

        assert first == pytest.approx(0.6)
        assert second == first
        stats = cache.stats()
        assert stats["total_calculations"] == 1
        assert stats["hit_rate"] == pytest.approx(0.5)

    def test_eviction_at_capacity(self):
        clock = FakeClock()
        cache = DefaultSimilarityCache(max_size=2, clock=clock)
        base = [1.0, 0.0]

        for i in range(3):
            clock.now = float(i)
            cache.get_similarity(base, [float(i + 1), 1.0])

        stats = cache.stats()
        assert stats["size"] == 2
        assert stats["evictions"] == 1

        # the least recently used pair was evicted and must be recomputed
        cache.get_similarity(base, [1.0, 1.0])
        assert cache.stats()["total_calculations"] == 4

    def test_recently_read_entry_survives_eviction(self):
        cache = DefaultSimilarityCache(max_size=2)
        query, a, b, c = [1.0, 0.0], [0.6, 0.8], [0.8, 0.6], [0.0, 1.0]

        cache.get_similarity(query, a)
        cache.get_similarity(query, b)
        cache.get_similarity(query, a)
        cache.get_similarity(query, c)

        assert cache.stats()["total_calculations"] == 3
        cache.get_similarity(query, a)
        assert cache.stats()["total_calculations"] == 3
        cache.get_similarity(query, b)
        assert cache.stats()["total_calculations"] == 4
        assert cache.stats()["evictions"] == 2

    def test_expired_entry_recomputed_on_read(self):
        clock = FakeClock()
        cache = DefaultSimilarityCache(max_size=10, ttl_seconds=60, clock=clock)
        cache.get_similarity([1.0, 0.0], [0.6, 0.8])

        clock.now = 61
        assert cache.get_similarity([1.0, 0.0], [0.6, 0.8]) == pytest.approx(0.6)

        stats = cache.stats()
        assert stats["total_calculations"] == 2
        assert stats["hits"] == 0

    def test_ttl_expiry(self):
        clock = FakeClock()
        cache = DefaultSimilarityCache(max_size=10, ttl_seconds=60, clock=clock)
        cache.get_similarity([1.0, 0.0], [0.0, 1.0])

        clock.now = 61
        assert cache.cleanup_expired() == 1
        assert cache.stats()["size"] == 0
        assert cache.stats()["expirations"] == 1

    def test_batch_similarity(self):
        cache = DefaultSimilarityCache(max_size=10)
        scores = cache.batch_similarity([1.0, 0.0], [[1.0, 0.0], [0.0, 1.0], [-1.0, 0.0]])

        assert scores == pytest.approx([1.0, 0.0, -1.0])

    def test_clear_resets_counters(self):
        cache = DefaultSimilarityCache(max_size=10)
        cache.get_similarity([1.0, 0.0], [0.0, 1.0])
        cache.clear()

        stats = cache.stats()
        assert stats["size"] == 0
        assert stats["total_calculations"] == 0
