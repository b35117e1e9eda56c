import asyncio
from logging import Logger
from typing import Optional

from scitrera_app_framework import get_logger, Variables

from ...config import (
    MEMORYENGINE_EMBEDDING_CACHE_TTL_SECONDS, DEFAULT_MEMORYENGINE_EMBEDDING_CACHE_TTL_SECONDS,
    MEMORYENGINE_EMBEDDING_TIMEOUT_SECONDS, DEFAULT_MEMORYENGINE_EMBEDDING_TIMEOUT_SECONDS,
    MEMORYENGINE_CIRCUIT_BREAKER_FAILURES, DEFAULT_MEMORYENGINE_CIRCUIT_BREAKER_FAILURES,
    MEMORYENGINE_CIRCUIT_BREAKER_COOLDOWN_SECONDS, DEFAULT_MEMORYENGINE_CIRCUIT_BREAKER_COOLDOWN_SECONDS,
)
from ...utils import CircuitBreaker, CircuitOpenError, cosine_similarity as _cosine_similarity
from ..cache import CacheNamespace, CacheService, EXT_CACHE_SERVICE, cache_key
from .base import EmbeddingProvider, EmbeddingServicePluginBase, EmbeddingUnavailableError, EXT_EMBEDDING_PROVIDER


class EmbeddingService:
    """
    Embedding service that wraps a provider with caching, a timeout and a circuit breaker.

    Results are memoized in the ``emb`` cache namespace per model and text.
    Provider failures of any kind surface as :class:`EmbeddingUnavailableError` so callers can take their
    fallback path; an open circuit fails fast without calling the provider.
    """

    def __init__(
            self,
            v: Variables = None,
            provider: EmbeddingProvider = None,
            cache: Optional[CacheService] = None,
            breaker: Optional[CircuitBreaker] = None,
            timeout_seconds: float = DEFAULT_MEMORYENGINE_EMBEDDING_TIMEOUT_SECONDS,
            cache_ttl_seconds: float = DEFAULT_MEMORYENGINE_EMBEDDING_CACHE_TTL_SECONDS,
    ):
        self.provider = provider
        self.cache = cache
        self.timeout_seconds = timeout_seconds
        self.cache_ttl_seconds = cache_ttl_seconds
        self.logger = get_logger(v, name=self.__class__.__name__)
        self.breaker = breaker or CircuitBreaker('embedding', logger=self.logger)
        self.operations = 0
        self.failures = 0

        self.logger.info(
            "Initialized EmbeddingService with provider: %s, dimensions: %s, timeout: %ss",
            provider.__class__.__name__,
            provider.dimensions,
            timeout_seconds,
        )

    def _cache_key(self, text: str) -> str:
        # vectors from different models are not interchangeable
        return cache_key(CacheNamespace.EMBEDDING, self.provider.identity, text)

    async def _call_provider(self, func, *args):
        try:
            return await self.breaker.call(func, *args, timeout=self.timeout_seconds)
        except CircuitOpenError as e:
            self.failures += 1
            raise EmbeddingUnavailableError(str(e)) from e
        except asyncio.TimeoutError as e:
            self.failures += 1
            self.logger.warning("Embedding provider timed out after %ss", self.timeout_seconds)
            raise EmbeddingUnavailableError(f"embedding timed out after {self.timeout_seconds}s") from e
        except Exception as e:
            self.failures += 1
            self.logger.warning("Embedding provider failed: %s", e)
            raise EmbeddingUnavailableError(str(e)) from e

    async def embed(self, text: str) -> list[float]:
        """Generate embedding with caching.

        Raises:
            ValueError: empty text
            EmbeddingUnavailableError: provider failed, timed out or circuit is open
        """
        if not text or not text.strip():
            raise ValueError("Cannot embed empty text")

        key = self._cache_key(text)
        if self.cache:
            cached = await self.cache.get(key)
            if cached:
                self.logger.debug("Cache hit for embedding: %s", key)
                return cached

        embedding = await self._call_provider(self.provider.embed, text)
        self.operations += 1

        if self.cache:
            await self.cache.set(key, embedding, ttl_seconds=self.cache_ttl_seconds)
            self.logger.debug("Cached embedding: %s", key)

        return embedding

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Generate embeddings for a batch, serving cached entries and fetching the rest in one call."""
        if not texts:
            return []
        if any(not t or not t.strip() for t in texts):
            raise ValueError("Cannot embed empty text")

        keys = [self._cache_key(text) for text in texts]
        cached = await self.cache.get_many(keys) if self.cache else {}
        results: list[Optional[list[float]]] = [cached.get(key) for key in keys]
        missing = [i for i, vector in enumerate(results) if not vector]

        if missing:
            fetched = await self._call_provider(self.provider.embed_batch, [texts[i] for i in missing])
            self.operations += len(missing)
            for i, embedding in zip(missing, fetched):
                results[i] = embedding
            if self.cache:
                await self.cache.set_many({keys[i]: results[i] for i in missing}, ttl_seconds=self.cache_ttl_seconds)

        return results

    @property
    def dimensions(self) -> int:
        return self.provider.dimensions

    def stats(self) -> dict:
        return {
            "operations": self.operations,
            "failures": self.failures,
            "circuit": self.breaker.stats(),
            "cache": self.cache.stats() if self.cache else {},
        }

    @staticmethod
    def cosine_similarity(a: list[float], b: list[float]) -> float:
        """Calculate cosine similarity between two vectors."""
        return _cosine_similarity(a, b)


class EmbeddingServicePlugin(EmbeddingServicePluginBase):
    """Default plugin for embedding service."""
    PROVIDER_NAME = 'default'

    def initialize(self, v: Variables, logger: Logger) -> object | None:
        cache_service = self.get_extension(EXT_CACHE_SERVICE, v)
        embedding_provider: EmbeddingProvider = self.get_extension(EXT_EMBEDDING_PROVIDER, v)
        breaker = CircuitBreaker(
            'embedding',
            failure_threshold=v.environ(MEMORYENGINE_CIRCUIT_BREAKER_FAILURES,
                                        default=DEFAULT_MEMORYENGINE_CIRCUIT_BREAKER_FAILURES, type_fn=int),
            cooldown_seconds=v.environ(MEMORYENGINE_CIRCUIT_BREAKER_COOLDOWN_SECONDS,
                                       default=DEFAULT_MEMORYENGINE_CIRCUIT_BREAKER_COOLDOWN_SECONDS, type_fn=float),
            logger=logger,
        )
        return EmbeddingService(
            v=v,
            provider=embedding_provider,
            cache=cache_service,
            breaker=breaker,
            timeout_seconds=v.environ(MEMORYENGINE_EMBEDDING_TIMEOUT_SECONDS,
                                      default=DEFAULT_MEMORYENGINE_EMBEDDING_TIMEOUT_SECONDS, type_fn=float),
            cache_ttl_seconds=v.environ(MEMORYENGINE_EMBEDDING_CACHE_TTL_SECONDS,
                                        default=DEFAULT_MEMORYENGINE_EMBEDDING_CACHE_TTL_SECONDS, type_fn=float),
        )
