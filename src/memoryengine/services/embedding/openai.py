"""OpenAI (and OpenAI-compatible) embedding provider."""
from logging import Logger
from typing import Optional

from scitrera_app_framework import Variables

from ...config import EmbeddingProviderType, MEMORYENGINE_EMBEDDING_MODEL, MEMORYENGINE_EMBEDDING_DIMENSIONS
from .base import EmbeddingProvider, EmbeddingProviderPluginBase

MEMORYENGINE_EMBEDDING_OPENAI_API_KEY = 'MEMORYENGINE_EMBEDDING_OPENAI_API_KEY'
MEMORYENGINE_EMBEDDING_OPENAI_BASE_URL = 'MEMORYENGINE_EMBEDDING_OPENAI_BASE_URL'

DEFAULT_EMBEDDING_MODEL = 'text-embedding-3-small'
DEFAULT_EMBEDDING_DIMENSIONS = 1536

# text-embedding-3 models accept a `dimensions` request parameter; older and third-party models may not
_SHORTENABLE_PREFIX = 'text-embedding-3'


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """
    Embeddings from the OpenAI API or any server speaking its protocol (vLLM, Ollama, LocalAI)
    when ``base_url`` is set. Retries are left to the service's circuit breaker.
    """
    max_batch_size = 2048

    def __init__(
            self,
            v: Variables = None,
            api_key: Optional[str] = None,
            model: str = DEFAULT_EMBEDDING_MODEL,
            base_url: Optional[str] = None,
            dimensions: int = DEFAULT_EMBEDDING_DIMENSIONS,
    ):
        super().__init__(v, output_dimensions=dimensions, model=model)
        self._api_key = api_key
        self._base_url = base_url
        self._client = None
        self.logger.info("OpenAI embeddings: model=%s dimensions=%s base_url=%s", model, dimensions, base_url)

    @property
    def client(self):
        if self._client is None:
            import openai
            self._client = openai.AsyncOpenAI(api_key=self._api_key, base_url=self._base_url, max_retries=0)
        return self._client

    def request_kwargs(self, texts: list[str]) -> dict:
        kwargs = {'model': self.model, 'input': texts}
        if self._base_url is None and self.model.startswith(_SHORTENABLE_PREFIX):
            kwargs['dimensions'] = self._dimensions
        return kwargs

    async def embed_chunk(self, texts: list[str]) -> list[list[float]]:
        self.logger.debug("embedding %d texts with %s", len(texts), self.model)
        response = await self.client.embeddings.create(**self.request_kwargs(texts))
        # the API documents `index` ordering; sort instead of trusting response order
        return [item.embedding for item in sorted(response.data, key=lambda item: item.index)]


class OpenAIEmbeddingProviderPlugin(EmbeddingProviderPluginBase):
    PROVIDER_NAME = EmbeddingProviderType.OPENAI

    def initialize(self, v: Variables, logger: Logger) -> OpenAIEmbeddingProvider:
        return OpenAIEmbeddingProvider(
            v=v,
            api_key=v.environ(MEMORYENGINE_EMBEDDING_OPENAI_API_KEY, default=None),
            model=v.environ(MEMORYENGINE_EMBEDDING_MODEL, default=DEFAULT_EMBEDDING_MODEL),
            base_url=v.environ(MEMORYENGINE_EMBEDDING_OPENAI_BASE_URL, default=None),
            dimensions=v.environ(MEMORYENGINE_EMBEDDING_DIMENSIONS, default=DEFAULT_EMBEDDING_DIMENSIONS, type_fn=int),
        )
