"""Storage backend package."""
from .base import StorageBackend, StoragePluginBase, EXT_STORAGE_BACKEND

__all__ = (
    'StorageBackend',
    'StoragePluginBase',
    'EXT_STORAGE_BACKEND',
)
