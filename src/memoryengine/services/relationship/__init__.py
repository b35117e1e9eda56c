"""Relationship graph package."""
from .base import RelationshipService, RelationshipServicePluginBase, EXT_RELATIONSHIP_SERVICE
from .default import negation_signals

__all__ = (
    'RelationshipService',
    'RelationshipServicePluginBase',
    'negation_signals',
    'EXT_RELATIONSHIP_SERVICE',
)
