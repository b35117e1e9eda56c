"""Extraction service package."""
from .base import (
    ExtractionService,
    ExtractionServicePluginBase,
    EXT_EXTRACTION_SERVICE,
)

__all__ = (
    'ExtractionService',
    'ExtractionServicePluginBase',
    'EXT_EXTRACTION_SERVICE',
)
