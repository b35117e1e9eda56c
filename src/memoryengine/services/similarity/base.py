"""
Similarity Cache - Base classes.

Memoizes cosine similarity between embedding pairs so that repeated comparisons
during deduplication, relationship building and retrieval are not recomputed.
"""
import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from logging import Logger
from typing import Sequence

from scitrera_app_framework.api import Plugin, Variables, enabled_option_pattern

from ...config import MEMORYENGINE_SIMILARITY_SERVICE, DEFAULT_MEMORYENGINE_SIMILARITY_SERVICE
from .._constants import EXT_SIMILARITY_CACHE

MEMORYENGINE_SIMILARITY_CACHE_MAXSIZE = 'MEMORYENGINE_SIMILARITY_CACHE_MAXSIZE'
DEFAULT_MEMORYENGINE_SIMILARITY_CACHE_MAXSIZE = 10000
MEMORYENGINE_SIMILARITY_CACHE_TTL_SECONDS = 'MEMORYENGINE_SIMILARITY_CACHE_TTL_SECONDS'
DEFAULT_MEMORYENGINE_SIMILARITY_CACHE_TTL_SECONDS = 3600.0
MEMORYENGINE_SIMILARITY_CACHE_CLEANUP_SECONDS = 'MEMORYENGINE_SIMILARITY_CACHE_CLEANUP_SECONDS'
DEFAULT_MEMORYENGINE_SIMILARITY_CACHE_CLEANUP_SECONDS = 1800.0


@dataclass
class CacheEntry:
    """Cached similarity value."""
    similarity: float
    timestamp: float  # monotonic time of insertion, for TTL
    access_count: int = 0


class SimilarityCache(ABC):
    """Interface for the similarity cache."""

    @abstractmethod
    def get_similarity(self, vec_a: Sequence[float], vec_b: Sequence[float]) -> float:
        """Cosine similarity of two vectors, served from cache when possible."""
        pass

    def batch_similarity(self, query: Sequence[float], vectors: Sequence[Sequence[float]]) -> list[float]:
        """Similarity of ``query`` against each vector in order."""
        return [self.get_similarity(query, vec) for vec in vectors]

    @abstractmethod
    def cleanup_expired(self) -> int:
        """Drop expired entries, returning how many were removed."""
        pass

    @abstractmethod
    def clear(self) -> None:
        pass

    @abstractmethod
    def stats(self) -> dict:
        pass

    async def run_cleanup_loop(self, interval_seconds: float, logger: Logger) -> None:
        """Periodic TTL sweep; runs until cancelled."""
        while True:
            await asyncio.sleep(interval_seconds)
            removed = self.cleanup_expired()
            if removed:
                logger.debug("Similarity cache sweep removed %d expired entries", removed)


# noinspection PyAbstractClass
class SimilarityCachePluginBase(Plugin):
    """Base plugin for the similarity cache.

    Starts the periodic expiry sweep once the event loop is running and stops it
    on shutdown.
    """
    PROVIDER_NAME: str = None
    _sweeper: asyncio.Task | None = None

    def name(self) -> str:
        return f"{EXT_SIMILARITY_CACHE}|{self.PROVIDER_NAME}"

    def extension_point_name(self, v: Variables) -> str:
        return EXT_SIMILARITY_CACHE

    def is_enabled(self, v: Variables) -> bool:
        return enabled_option_pattern(self, v, MEMORYENGINE_SIMILARITY_SERVICE, self_attr='PROVIDER_NAME')

    def on_registration(self, v: Variables) -> None:
        v.set_default_value(MEMORYENGINE_SIMILARITY_SERVICE, DEFAULT_MEMORYENGINE_SIMILARITY_SERVICE)
        v.set_default_value(MEMORYENGINE_SIMILARITY_CACHE_MAXSIZE, DEFAULT_MEMORYENGINE_SIMILARITY_CACHE_MAXSIZE)
        v.set_default_value(MEMORYENGINE_SIMILARITY_CACHE_TTL_SECONDS, DEFAULT_MEMORYENGINE_SIMILARITY_CACHE_TTL_SECONDS)
        v.set_default_value(MEMORYENGINE_SIMILARITY_CACHE_CLEANUP_SECONDS,
                            DEFAULT_MEMORYENGINE_SIMILARITY_CACHE_CLEANUP_SECONDS)

    async def async_ready(self, v: Variables, logger: Logger, value: object | None) -> None:
        if isinstance(value, SimilarityCache):
            interval = v.environ(MEMORYENGINE_SIMILARITY_CACHE_CLEANUP_SECONDS,
                                 default=DEFAULT_MEMORYENGINE_SIMILARITY_CACHE_CLEANUP_SECONDS, type_fn=float)
            self._sweeper = asyncio.create_task(value.run_cleanup_loop(interval, logger))
            logger.info("Similarity cache sweep scheduled every %ss", interval)
        return

    async def async_stopping(self, v: Variables, logger: Logger, value: object | None) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        return
