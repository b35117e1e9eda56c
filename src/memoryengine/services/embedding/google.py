"""Gemini embedding provider (google-genai)."""
from logging import Logger
from typing import Optional

from scitrera_app_framework import Variables

from ...config import EmbeddingProviderType, MEMORYENGINE_EMBEDDING_MODEL, MEMORYENGINE_EMBEDDING_DIMENSIONS
from .base import EmbeddingProvider, EmbeddingProviderPluginBase

MEMORYENGINE_EMBEDDING_GOOGLE_API_KEY = 'MEMORYENGINE_EMBEDDING_GOOGLE_API_KEY'

DEFAULT_EMBEDDING_MODEL = 'gemini-embedding-001'
DEFAULT_EMBEDDING_DIMENSIONS = 768

# stored memories and search queries embed with different task types
TASK_DOCUMENT = 'RETRIEVAL_DOCUMENT'


class GoogleEmbeddingProvider(EmbeddingProvider):
    max_batch_size = 100

    def __init__(
            self,
            v: Variables = None,
            api_key: Optional[str] = None,
            model: str = DEFAULT_EMBEDDING_MODEL,
            dimensions: int = DEFAULT_EMBEDDING_DIMENSIONS,
            task_type: str = TASK_DOCUMENT,
    ):
        super().__init__(v, output_dimensions=dimensions, model=model)
        self._api_key = api_key
        self._client = None
        self.task_type = task_type
        self.logger.info("Gemini embeddings: model=%s dimensions=%s", model, dimensions)

    @property
    def client(self):
        if self._client is None:
            from google import genai
            self._client = genai.Client(api_key=self._api_key)
        return self._client

    def embed_config(self):
        from google.genai import types
        return types.EmbedContentConfig(output_dimensionality=self._dimensions, task_type=self.task_type)

    async def embed_chunk(self, texts: list[str]) -> list[list[float]]:
        self.logger.debug("embedding %d texts with %s", len(texts), self.model)
        response = await self.client.aio.models.embed_content(
            model=self.model,
            contents=texts,
            config=self.embed_config(),
        )
        return [item.values for item in response.embeddings]


class GoogleEmbeddingProviderPlugin(EmbeddingProviderPluginBase):
    PROVIDER_NAME = EmbeddingProviderType.GOOGLE

    def initialize(self, v: Variables, logger: Logger) -> GoogleEmbeddingProvider:
        return GoogleEmbeddingProvider(
            v=v,
            api_key=v.environ(MEMORYENGINE_EMBEDDING_GOOGLE_API_KEY, default=None),
            model=v.environ(MEMORYENGINE_EMBEDDING_MODEL, default=DEFAULT_EMBEDDING_MODEL),
            dimensions=v.environ(MEMORYENGINE_EMBEDDING_DIMENSIONS, default=DEFAULT_EMBEDDING_DIMENSIONS, type_fn=int),
        )
