"""Similarity cache package."""
from .base import SimilarityCache, SimilarityCachePluginBase, CacheEntry, EXT_SIMILARITY_CACHE
from .default import DefaultSimilarityCache

__all__ = (
    'SimilarityCache',
    'SimilarityCachePluginBase',
    'DefaultSimilarityCache',
    'CacheEntry',
    'EXT_SIMILARITY_CACHE',
)
