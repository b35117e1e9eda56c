import hashlib
import math
import random
from functools import lru_cache

from logging import Logger

from scitrera_app_framework import Variables as Variables

from ...config import EmbeddingProviderType, MEMORYENGINE_EMBEDDING_DIMENSIONS
from ...utils.text import tokenize

from .base import EmbeddingProvider, EmbeddingProviderPluginBase

DEFAULT_EMBEDDING_DIMENSIONS = 384


@lru_cache(maxsize=8192)
def _token_vector(token: str, dimensions: int) -> tuple[float, ...]:
    seed = int.from_bytes(hashlib.sha256(token.encode()).digest()[:8], byteorder="big")
    rng = random.Random(seed)
    return tuple(rng.gauss(0.0, 1.0) for _ in range(dimensions))


class MockEmbeddingProvider(EmbeddingProvider):
    """
    Deterministic bag-of-words embedding provider for offline use and tests.

    Each content token (stopwords removed, plurals folded) maps to a seeded
    gaussian vector; a text embeds to the L2-normalized sum of its token
    vectors. Texts sharing vocabulary are therefore close, unrelated texts are
    near-orthogonal and identical texts embed identically. Texts with no content
    tokens fall back to a vector seeded by the whole text.

    Not suitable for production - use for testing only.
    """

    def __init__(self, v: Variables = None, dimensions: int = DEFAULT_EMBEDDING_DIMENSIONS):
        super().__init__(v, dimensions, model="bag-of-words")
        self.logger.info("Initialized MockEmbeddingProvider with dimensions=%d", dimensions)

    def vector_for(self, text: str) -> list[float]:
        tokens = tokenize(text) or [text.strip().lower()]
        embedding = [0.0] * self._dimensions
        for token in tokens:
            for i, x in enumerate(_token_vector(token, self._dimensions)):
                embedding[i] += x

        # L2-normalize
        norm = math.sqrt(sum(x * x for x in embedding))
        if norm > 0:
            embedding = [x / norm for x in embedding]

        return embedding

    async def embed_chunk(self, texts: list[str]) -> list[list[float]]:
        return [self.vector_for(text) for text in texts]


class MockEmbeddingProviderPlugin(EmbeddingProviderPluginBase):
    PROVIDER_NAME = EmbeddingProviderType.MOCK

    def initialize(self, v: Variables, logger: Logger) -> MockEmbeddingProvider:
        return MockEmbeddingProvider(
            v=v,
            dimensions=v.environ(MEMORYENGINE_EMBEDDING_DIMENSIONS, default=DEFAULT_EMBEDDING_DIMENSIONS, type_fn=int)
        )
