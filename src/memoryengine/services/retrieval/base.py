"""
Retrieval Service - Base classes and interfaces.

Contextual retrieval in four stages: query expansion, candidate search,
re-ranking and diversity filtering.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from logging import Logger
from typing import Optional

from scitrera_app_framework.api import Plugin, Variables, enabled_option_pattern

from ...config import MEMORYENGINE_RETRIEVAL_SERVICE, DEFAULT_MEMORYENGINE_RETRIEVAL_SERVICE
from ...models.memory import ConversationMessage, MemoryCategory, RetrievalResult
from .._constants import (
    EXT_CACHE_SERVICE,
    EXT_EMBEDDING_SERVICE,
    EXT_LLM_SERVICE,
    EXT_RETRIEVAL_SERVICE,
    EXT_SIMILARITY_CACHE,
    EXT_STORAGE_BACKEND,
)

MEMORYENGINE_RETRIEVAL_LLM_EXPANSION = 'MEMORYENGINE_RETRIEVAL_LLM_EXPANSION'
DEFAULT_MEMORYENGINE_RETRIEVAL_LLM_EXPANSION = False
MEMORYENGINE_RETRIEVAL_PARALLEL_THRESHOLD = 'MEMORYENGINE_RETRIEVAL_PARALLEL_THRESHOLD'
DEFAULT_MEMORYENGINE_RETRIEVAL_PARALLEL_THRESHOLD = 100
MEMORYENGINE_RETRIEVAL_PARALLEL_WORKERS = 'MEMORYENGINE_RETRIEVAL_PARALLEL_WORKERS'
DEFAULT_MEMORYENGINE_RETRIEVAL_PARALLEL_WORKERS = 4
MEMORYENGINE_RETRIEVAL_CANDIDATE_MULTIPLIER = 'MEMORYENGINE_RETRIEVAL_CANDIDATE_MULTIPLIER'
DEFAULT_MEMORYENGINE_RETRIEVAL_CANDIDATE_MULTIPLIER = 3
MEMORYENGINE_RETRIEVAL_RECENCY_HALF_LIFE_HOURS = 'MEMORYENGINE_RETRIEVAL_RECENCY_HALF_LIFE_HOURS'
DEFAULT_MEMORYENGINE_RETRIEVAL_RECENCY_HALF_LIFE_HOURS = 168.0
MEMORYENGINE_RETRIEVAL_MIN_RELEVANCE = 'MEMORYENGINE_RETRIEVAL_MIN_RELEVANCE'
DEFAULT_MEMORYENGINE_RETRIEVAL_MIN_RELEVANCE = 0.3
MEMORYENGINE_RETRIEVAL_DIVERSITY_THRESHOLD = 'MEMORYENGINE_RETRIEVAL_DIVERSITY_THRESHOLD'
DEFAULT_MEMORYENGINE_RETRIEVAL_DIVERSITY_THRESHOLD = 0.9
MEMORYENGINE_RETRIEVAL_DEFAULT_LIMIT = 'MEMORYENGINE_RETRIEVAL_DEFAULT_LIMIT'
DEFAULT_MEMORYENGINE_RETRIEVAL_DEFAULT_LIMIT = 6

# entries above this importance are always considered as candidates
HIGH_IMPORTANCE_THRESHOLD = 0.8
HIGH_IMPORTANCE_CANDIDATES = 3


@dataclass
class RankingWeights:
    """Weights of the re-ranking score components."""
    semantic: float = 0.55
    recency: float = 0.15
    importance: float = 0.15
    access: float = 0.05
    contextual: float = 0.10
    graph_boost_per_edge: float = 0.05
    graph_boost_cap: float = 0.15
    supersede_penalty: float = 0.5  # multiplier for entries superseded by a newer one


DEFAULT_CATEGORY_SHARES: dict[MemoryCategory, float] = {
    MemoryCategory.PREFERENCE: 0.3,
    MemoryCategory.PERSONAL_INFO: 0.2,
    MemoryCategory.CONTEXT: 0.3,
    MemoryCategory.INSTRUCTION: 0.2,
}


@dataclass
class RetrievalOptions:
    """Tunable retrieval parameters."""
    weights: RankingWeights = field(default_factory=RankingWeights)
    category_shares: dict[MemoryCategory, float] = field(default_factory=lambda: dict(DEFAULT_CATEGORY_SHARES))
    candidate_multiplier: int = DEFAULT_MEMORYENGINE_RETRIEVAL_CANDIDATE_MULTIPLIER
    recency_half_life_hours: float = DEFAULT_MEMORYENGINE_RETRIEVAL_RECENCY_HALF_LIFE_HOURS
    min_relevance: float = DEFAULT_MEMORYENGINE_RETRIEVAL_MIN_RELEVANCE
    diversity_threshold: float = DEFAULT_MEMORYENGINE_RETRIEVAL_DIVERSITY_THRESHOLD
    parallel_threshold: int = DEFAULT_MEMORYENGINE_RETRIEVAL_PARALLEL_THRESHOLD


class RetrievalService(ABC):
    """Interface for contextual memory retrieval."""

    @abstractmethod
    async def retrieve(
            self,
            user_id: str,
            current_message: str,
            conversation_context: Optional[list[ConversationMessage]] = None,
            coaching_mode: Optional[str] = None,
            limit: Optional[int] = None,
    ) -> list[RetrievalResult]:
        """Ranked, diversified memories for the current message.

        Returns at most ``limit`` results sorted by descending relevance. Never
        raises; an empty list is returned when the user has no active memories
        or the pipeline fails.
        """
        pass

    @staticmethod
    def format_for_prompt(results: list[RetrievalResult], limit: int = 4) -> str:
        """Render the top results as bullet lines for prompt assembly."""
        lines = []
        for result in results[:limit]:
            prefix = "[Important] " if result.memory.importance > HIGH_IMPORTANCE_THRESHOLD else ""
            lines.append(f"- {prefix}{result.memory.content}")
        return "\n".join(lines)

    def close(self) -> None:
        """Release worker resources."""
        pass


# noinspection PyAbstractClass
class RetrievalServicePluginBase(Plugin):
    """Base plugin for retrieval service."""
    PROVIDER_NAME: str = None

    def name(self) -> str:
        return f"{EXT_RETRIEVAL_SERVICE}|{self.PROVIDER_NAME}"

    def extension_point_name(self, v: Variables) -> str:
        return EXT_RETRIEVAL_SERVICE

    def is_enabled(self, v: Variables) -> bool:
        return enabled_option_pattern(self, v, MEMORYENGINE_RETRIEVAL_SERVICE, self_attr='PROVIDER_NAME')

    def on_registration(self, v: Variables) -> None:
        v.set_default_value(MEMORYENGINE_RETRIEVAL_SERVICE, DEFAULT_MEMORYENGINE_RETRIEVAL_SERVICE)
        v.set_default_value(MEMORYENGINE_RETRIEVAL_LLM_EXPANSION, DEFAULT_MEMORYENGINE_RETRIEVAL_LLM_EXPANSION)
        v.set_default_value(MEMORYENGINE_RETRIEVAL_DEFAULT_LIMIT, DEFAULT_MEMORYENGINE_RETRIEVAL_DEFAULT_LIMIT)

    def get_dependencies(self, v: Variables):
        return (EXT_STORAGE_BACKEND, EXT_EMBEDDING_SERVICE, EXT_SIMILARITY_CACHE, EXT_CACHE_SERVICE, EXT_LLM_SERVICE)

    async def async_stopping(self, v: Variables, logger: Logger, value: object | None) -> None:
        if isinstance(value, RetrievalService):
            value.close()
        return
