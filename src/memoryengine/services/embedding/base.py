"""Embedding providers turn text into fixed-width vectors; the service layers caching and a breaker on top."""
from abc import ABC, abstractmethod
from typing import Optional

from scitrera_app_framework.api import Variables, Plugin, enabled_option_pattern
from scitrera_app_framework import get_logger

from ...config import (
    MEMORYENGINE_EMBEDDING_PROVIDER, DEFAULT_MEMORYENGINE_EMBEDDING_PROVIDER,
    MEMORYENGINE_EMBEDDING_SERVICE, DEFAULT_MEMORYENGINE_EMBEDDING_SERVICE,
)
from .._constants import EXT_CACHE_SERVICE, EXT_EMBEDDING_PROVIDER, EXT_EMBEDDING_SERVICE


class EmbeddingUnavailableError(Exception):
    """Raised when an embedding cannot be produced (provider error, timeout or open circuit)."""
    pass


class EmbeddingProvider(ABC):
    """
    Base class for embedding backends.

    Subclasses implement ``embed_chunk`` for at most ``max_batch_size`` texts;
    ``embed_batch`` splits larger inputs and checks that every returned vector
    has the configured width.
    """
    max_batch_size: int = 100

    def __init__(self, v: Variables = None, output_dimensions: Optional[int] = None, model: str = ''):
        self._dimensions = output_dimensions
        self.model = model
        self.logger = get_logger(v, name=self.__class__.__name__)

    @abstractmethod
    async def embed_chunk(self, texts: list[str]) -> list[list[float]]:
        pass

    async def embed(self, text: str) -> list[float]:
        return (await self.embed_batch([text]))[0]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        vectors: list[list[float]] = []
        for start in range(0, len(texts), self.max_batch_size):
            chunk = texts[start:start + self.max_batch_size]
            result = await self.embed_chunk(chunk)
            if len(result) != len(chunk):
                raise ValueError(f"{self.__class__.__name__} returned {len(result)} vectors for {len(chunk)} texts")
            vectors.extend(self._checked(vector) for vector in result)
        return vectors

    def _checked(self, vector) -> list[float]:
        vector = list(vector)
        if self._dimensions and len(vector) != self._dimensions:
            raise ValueError(f"expected {self._dimensions}-dimensional embedding from {self.model or 'provider'}, "
                             f"got {len(vector)}")
        return vector

    @property
    def dimensions(self) -> int:
        return self._dimensions

    @property
    def identity(self) -> str:
        """Model identity used to keep cached vectors of different models apart."""
        return f"{self.__class__.__name__}/{self.model}/{self._dimensions}"


# noinspection PyAbstractClass
class EmbeddingProviderPluginBase(Plugin):
    """Base Plugin Implementation for embedding providers."""
    PROVIDER_NAME: str = ''

    def name(self) -> str:
        return f"{EXT_EMBEDDING_PROVIDER}|{self.PROVIDER_NAME}"

    def extension_point_name(self, v: Variables) -> str:
        return EXT_EMBEDDING_PROVIDER

    def is_enabled(self, v: Variables) -> bool:
        return enabled_option_pattern(self, v, MEMORYENGINE_EMBEDDING_PROVIDER, self_attr='PROVIDER_NAME')

    def on_registration(self, v: Variables) -> None:
        v.set_default_value(MEMORYENGINE_EMBEDDING_PROVIDER, DEFAULT_MEMORYENGINE_EMBEDDING_PROVIDER)


# noinspection PyAbstractClass
class EmbeddingServicePluginBase(Plugin):
    """Base plugin for the embedding service."""
    PROVIDER_NAME: str = None

    def name(self) -> str:
        return f"{EXT_EMBEDDING_SERVICE}|{self.PROVIDER_NAME}"

    def extension_point_name(self, v: Variables) -> str:
        return EXT_EMBEDDING_SERVICE

    def is_enabled(self, v: Variables) -> bool:
        return enabled_option_pattern(self, v, MEMORYENGINE_EMBEDDING_SERVICE, self_attr='PROVIDER_NAME')

    def on_registration(self, v: Variables) -> None:
        v.set_default_value(MEMORYENGINE_EMBEDDING_SERVICE, DEFAULT_MEMORYENGINE_EMBEDDING_SERVICE)

    def get_dependencies(self, v: Variables):
        return (EXT_EMBEDDING_PROVIDER, EXT_CACHE_SERVICE)
