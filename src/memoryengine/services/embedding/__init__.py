"""Embedding providers and the cached, breaker-guarded embedding service."""
from .base import EmbeddingProvider, EmbeddingUnavailableError, EXT_EMBEDDING_PROVIDER, EXT_EMBEDDING_SERVICE
from .service_default import EmbeddingService

__all__ = (
    'EmbeddingProvider',
    'EmbeddingService',
    'EmbeddingUnavailableError',
    'EXT_EMBEDDING_PROVIDER',
    'EXT_EMBEDDING_SERVICE',
)
