"""Memory Service - result types and plugin base."""
from dataclasses import dataclass, field
from typing import Any, Optional

from scitrera_app_framework.api import Plugin, Variables, enabled_option_pattern

from ...config import MEMORYENGINE_MEMORY_SERVICE, DEFAULT_MEMORYENGINE_MEMORY_SERVICE
from ...models.memory import AtomicFact, MemoryRelationship
from .._constants import (
    EXT_CONSOLIDATION_SERVICE,
    EXT_DEDUPLICATION_SERVICE,
    EXT_EMBEDDING_SERVICE,
    EXT_EXTRACTION_SERVICE,
    EXT_MEMORY_SERVICE,
    EXT_RELATIONSHIP_SERVICE,
    EXT_RETRIEVAL_SERVICE,
    EXT_SIMILARITY_CACHE,
    EXT_STORAGE_BACKEND,
    EXT_TASK_SERVICE,
)
from ..deduplication.base import DeduplicationAction, DeduplicationResult


@dataclass
class ProcessingResult:
    """Outcome of running one message through extraction, deduplication and linking."""
    user_id: str
    facts: list[AtomicFact] = field(default_factory=list)
    decisions: list[DeduplicationResult] = field(default_factory=list)
    relationships: list[MemoryRelationship] = field(default_factory=list)
    error: Optional[str] = None

    def count(self, action: DeduplicationAction) -> int:
        return sum(1 for d in self.decisions if d.action == action)

    @property
    def created(self) -> int:
        return self.count(DeduplicationAction.CREATE)

    @property
    def skipped(self) -> int:
        return self.count(DeduplicationAction.SKIP)

    def summary(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "facts": len(self.facts),
            **{action.value: self.count(action) for action in DeduplicationAction},
            "relationships": len(self.relationships),
            "error": self.error,
        }


@dataclass
class ServiceStats:
    """Engine-wide statistics: task queue, caches and provider call counts."""
    queue_size: int = 0
    processed: int = 0
    failed: int = 0
    retried: int = 0
    rejected: int = 0
    active_workers: int = 0
    max_workers: int = 0
    average_processing_ms: float = 0.0
    uptime_seconds: float = 0.0
    similarity_cache_size: int = 0
    similarity_cache_hit_rate: float = 0.0
    embedding_cache_size: int = 0
    embedding_cache_hit_rate: float = 0.0
    total_similarity_calculations: int = 0
    total_embedding_operations: int = 0
    by_type: dict[str, dict] = field(default_factory=dict)


# noinspection PyAbstractClass
class MemoryServicePluginBase(Plugin):
    """Base plugin for memory service - extensible for custom implementations."""
    PROVIDER_NAME: str = None

    def name(self) -> str:
        return f"{EXT_MEMORY_SERVICE}|{self.PROVIDER_NAME}"

    def extension_point_name(self, v: Variables) -> str:
        return EXT_MEMORY_SERVICE

    def is_enabled(self, v: Variables) -> bool:
        return enabled_option_pattern(self, v, MEMORYENGINE_MEMORY_SERVICE, self_attr='PROVIDER_NAME')

    def on_registration(self, v: Variables) -> None:
        v.set_default_value(MEMORYENGINE_MEMORY_SERVICE, DEFAULT_MEMORYENGINE_MEMORY_SERVICE)

    def get_dependencies(self, v: Variables):
        return (
            EXT_STORAGE_BACKEND,
            EXT_EMBEDDING_SERVICE,
            EXT_SIMILARITY_CACHE,
            EXT_EXTRACTION_SERVICE,
            EXT_DEDUPLICATION_SERVICE,
            EXT_RELATIONSHIP_SERVICE,
            EXT_CONSOLIDATION_SERVICE,
            EXT_RETRIEVAL_SERVICE,
            EXT_TASK_SERVICE,
        )
