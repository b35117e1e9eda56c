"""In-process similarity cache with LRU eviction and TTL expiry."""
import threading
import time
from logging import Logger
from typing import Callable, Sequence

from cachetools import TTLCache
from scitrera_app_framework import Variables, get_logger

from ...utils import cosine_similarity, vector_pair_key
from .base import (
    SimilarityCache, SimilarityCachePluginBase, CacheEntry,
    MEMORYENGINE_SIMILARITY_CACHE_MAXSIZE, DEFAULT_MEMORYENGINE_SIMILARITY_CACHE_MAXSIZE,
    MEMORYENGINE_SIMILARITY_CACHE_TTL_SECONDS, DEFAULT_MEMORYENGINE_SIMILARITY_CACHE_TTL_SECONDS,
)


class _CountingTTLCache(TTLCache):
    """TTLCache that counts entries dropped for capacity and for age."""

    def __init__(self, maxsize: int, ttl: float, timer: Callable[[], float]):
        super().__init__(maxsize=maxsize, ttl=ttl, timer=timer)
        self.evictions = 0
        self.expirations = 0

    def popitem(self):
        item = super().popitem()
        self.evictions += 1
        return item

    def expire(self, time=None):
        expired = super().expire(time)
        self.expirations += len(expired)
        return expired


class DefaultSimilarityCache(SimilarityCache):
    """Similarity cache keyed by an order-independent fingerprint of the vector pair.

    Entries live in a cachetools ``TTLCache``: a hit refreshes recency, the least
    recently used pair is evicted when full and entries older than the TTL read
    as misses. Lookups reorder the cache, so every access takes the same mutex;
    the cosine itself is computed outside it.
    """

    def __init__(
            self,
            v: Variables = None,
            max_size: int = DEFAULT_MEMORYENGINE_SIMILARITY_CACHE_MAXSIZE,
            ttl_seconds: float = DEFAULT_MEMORYENGINE_SIMILARITY_CACHE_TTL_SECONDS,
            clock: Callable[[], float] = time.monotonic,
    ):
        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries = self._new_entries()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0
        self.calculations = 0
        self.logger = get_logger(v, name=self.__class__.__name__)
        self.logger.info("Initialized DefaultSimilarityCache: max_size=%d, ttl=%ss", max_size, ttl_seconds)

    def _new_entries(self) -> _CountingTTLCache:
        return _CountingTTLCache(self.max_size, self.ttl_seconds, self._clock)

    def get_similarity(self, vec_a: Sequence[float], vec_b: Sequence[float]) -> float:
        key = vector_pair_key(vec_a, vec_b)
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None:
                self.hits += 1
                entry.access_count += 1
                return entry.similarity
            self.misses += 1

        similarity = cosine_similarity(vec_a, vec_b)
        with self._lock:
            self.calculations += 1
            self._entries[key] = CacheEntry(similarity=similarity, timestamp=self._clock())
        return similarity

    def cleanup_expired(self) -> int:
        with self._lock:
            return len(self._entries.expire())

    def clear(self) -> None:
        with self._lock:
            self._entries = self._new_entries()
            self.hits = self.misses = self.calculations = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def stats(self) -> dict:
        with self._lock:
            total = self.hits + self.misses
            return {
                "size": len(self._entries),
                "max_size": self.max_size,
                "hits": self.hits,
                "misses": self.misses,
                "hit_rate": self.hits / total if total else 0.0,
                "evictions": self._entries.evictions,
                "expirations": self._entries.expirations,
                "total_calculations": self.calculations,
                "ttl_seconds": self.ttl_seconds,
            }


class DefaultSimilarityCachePlugin(SimilarityCachePluginBase):
    """Plugin for the default similarity cache."""
    PROVIDER_NAME = 'default'

    def initialize(self, v: Variables, logger: Logger) -> DefaultSimilarityCache:
        return DefaultSimilarityCache(
            v=v,
            max_size=v.environ(MEMORYENGINE_SIMILARITY_CACHE_MAXSIZE,
                               default=DEFAULT_MEMORYENGINE_SIMILARITY_CACHE_MAXSIZE, type_fn=int),
            ttl_seconds=v.environ(MEMORYENGINE_SIMILARITY_CACHE_TTL_SECONDS,
                                  default=DEFAULT_MEMORYENGINE_SIMILARITY_CACHE_TTL_SECONDS, type_fn=float),
        )
