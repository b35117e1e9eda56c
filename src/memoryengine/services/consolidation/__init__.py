"""Consolidation service package."""
from .base import (
    ConsolidationService,
    ConsolidationServicePluginBase,
    ConsolidationResult,
    ContradictionPolicy,
    EXT_CONSOLIDATION_SERVICE,
)

__all__ = (
    'ConsolidationService',
    'ConsolidationServicePluginBase',
    'ConsolidationResult',
    'ContradictionPolicy',
    'EXT_CONSOLIDATION_SERVICE',
)
