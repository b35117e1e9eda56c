"""In-process LRU cache backed by cachetools."""
import threading
import time
from logging import Logger
from typing import Any, Iterable, Optional

from scitrera_app_framework import Variables, get_logger

from .base import CacheService, CacheServicePluginBase

MEMORYENGINE_CACHE_LRU_MAXSIZE = 'MEMORYENGINE_CACHE_LRU_MAXSIZE'
DEFAULT_MEMORYENGINE_CACHE_LRU_MAXSIZE = 4096

_NEVER = float('inf')


class LRUCacheService(CacheService):
    """
    Bounded in-memory cache.

    Each slot holds ``(value, expires_at)`` on a monotonic clock, so eviction by
    the LRU policy and expiry never drift apart. Expired slots are dropped when
    read or by ``cleanup_expired``. Access is serialized with a lock because
    worker-pool threads share the instance.
    """

    def __init__(
            self,
            v: Variables = None,
            logger: Logger = None,
            maxsize: int = DEFAULT_MEMORYENGINE_CACHE_LRU_MAXSIZE,
            clock=time.monotonic,
    ):
        from cachetools import LRUCache
        self._logger = logger or get_logger(v, name=self.__class__.__name__)
        self._slots: LRUCache = LRUCache(maxsize=maxsize)
        self._maxsize = maxsize
        self._clock = clock
        self._lock = threading.RLock()
        self.hits = 0
        self.misses = 0
        self._logger.info("LRU cache ready (maxsize=%s)", maxsize)

    def _live(self, key: str) -> Optional[tuple[Any, float]]:
        # caller holds the lock
        slot = self._slots.get(key)
        if slot is not None and slot[1] <= self._clock():
            del self._slots[key]
            return None
        return slot

    async def get(self, key: str) -> Optional[Any]:
        with self._lock:
            slot = self._live(key)
            if slot is None:
                self.misses += 1
                return None
            self.hits += 1
            return slot[0]

    async def get_many(self, keys: Iterable[str]) -> dict[str, Any]:
        found = {}
        with self._lock:
            for key in keys:
                slot = self._live(key)
                if slot is None:
                    self.misses += 1
                else:
                    self.hits += 1
                    found[key] = slot[0]
        return found

    async def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> bool:
        expires_at = _NEVER if ttl_seconds is None else self._clock() + ttl_seconds
        with self._lock:
            self._slots[key] = (value, expires_at)
        return True

    async def delete(self, key: str) -> bool:
        with self._lock:
            return self._slots.pop(key, None) is not None

    async def exists(self, key: str) -> bool:
        with self._lock:
            return self._live(key) is not None

    async def clear_prefix(self, prefix: str) -> int:
        with self._lock:
            doomed = [key for key in self._slots if key.startswith(prefix)]
            for key in doomed:
                del self._slots[key]
        if doomed:
            self._logger.debug("cleared %d cache keys under %s", len(doomed), prefix)
        return len(doomed)

    def cleanup_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [key for key, (_, expires_at) in self._slots.items() if expires_at <= now]
            for key in expired:
                del self._slots[key]
        return len(expired)

    def stats(self) -> dict:
        with self._lock:
            lookups = self.hits + self.misses
            return {
                "size": len(self._slots),
                "max_size": self._maxsize,
                "hits": self.hits,
                "misses": self.misses,
                "hit_rate": self.hits / lookups if lookups else 0.0,
            }


class LRUCacheServicePlugin(CacheServicePluginBase):
    PROVIDER_NAME = 'lru'

    def initialize(self, v: Variables, logger: Logger) -> LRUCacheService:
        return LRUCacheService(
            v=v,
            logger=logger,
            maxsize=v.environ(MEMORYENGINE_CACHE_LRU_MAXSIZE, default=DEFAULT_MEMORYENGINE_CACHE_LRU_MAXSIZE,
                              type_fn=int),
        )
