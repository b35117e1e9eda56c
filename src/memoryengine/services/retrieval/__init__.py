"""Retrieval service package."""
from .base import (
    RetrievalService,
    RetrievalServicePluginBase,
    RetrievalOptions,
    RankingWeights,
    EXT_RETRIEVAL_SERVICE,
)
from .expansion import QueryExpansion, detect_intent, expand_with_vocabulary

__all__ = (
    'RetrievalService',
    'RetrievalServicePluginBase',
    'RetrievalOptions',
    'RankingWeights',
    'QueryExpansion',
    'detect_intent',
    'expand_with_vocabulary',
    'EXT_RETRIEVAL_SERVICE',
)
