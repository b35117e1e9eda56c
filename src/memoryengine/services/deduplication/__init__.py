"""Deduplication service package."""
from .base import (
    DeduplicationService,
    DeduplicationServicePluginBase,
    DeduplicationAction,
    DeduplicationResult,
    EXT_DEDUPLICATION_SERVICE,
    decide,
)

__all__ = (
    'DeduplicationService',
    'DeduplicationServicePluginBase',
    'DeduplicationAction',
    'DeduplicationResult',
    'decide',
    'EXT_DEDUPLICATION_SERVICE',
)
