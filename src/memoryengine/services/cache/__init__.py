"""Cache service package."""
from .base import (
    CacheNamespace,
    CacheService,
    CacheServicePluginBase,
    EXT_CACHE_SERVICE,
    cache_key,
)

__all__ = (
    'CacheNamespace',
    'CacheService',
    'CacheServicePluginBase',
    'EXT_CACHE_SERVICE',
    'cache_key',
)
