"""Relationship Service - Base interface and plugin.

Links each new memory to related memories of the same user and flags
contradictions for consolidation.
"""
from abc import ABC, abstractmethod
from typing import Optional

from scitrera_app_framework.api import Plugin, Variables, enabled_option_pattern

from ...config import MEMORYENGINE_RELATIONSHIP_SERVICE, DEFAULT_MEMORYENGINE_RELATIONSHIP_SERVICE
from ...models.memory import MemoryEntry, MemoryRelationship
from .._constants import (
    EXT_LLM_SERVICE,
    EXT_RELATIONSHIP_SERVICE,
    EXT_SIMILARITY_CACHE,
    EXT_STORAGE_BACKEND,
    EXT_TASK_SERVICE,
)

MEMORYENGINE_RELATIONSHIP_SAMPLE_SIZE = 'MEMORYENGINE_RELATIONSHIP_SAMPLE_SIZE'
DEFAULT_MEMORYENGINE_RELATIONSHIP_SAMPLE_SIZE = 50
MEMORYENGINE_RELATIONSHIP_MAX_LINKS = 'MEMORYENGINE_RELATIONSHIP_MAX_LINKS'
DEFAULT_MEMORYENGINE_RELATIONSHIP_MAX_LINKS = 10
MEMORYENGINE_RELATIONSHIP_MIN_CONFIDENCE = 'MEMORYENGINE_RELATIONSHIP_MIN_CONFIDENCE'
DEFAULT_MEMORYENGINE_RELATIONSHIP_MIN_CONFIDENCE = 0.3
MEMORYENGINE_RELATIONSHIP_SUPPORTS_THRESHOLD = 'MEMORYENGINE_RELATIONSHIP_SUPPORTS_THRESHOLD'
DEFAULT_MEMORYENGINE_RELATIONSHIP_SUPPORTS_THRESHOLD = 0.75
MEMORYENGINE_RELATIONSHIP_RELATED_THRESHOLD = 'MEMORYENGINE_RELATIONSHIP_RELATED_THRESHOLD'
DEFAULT_MEMORYENGINE_RELATIONSHIP_RELATED_THRESHOLD = 0.6


class RelationshipService(ABC):
    """Interface for the relationship graph builder."""

    @abstractmethod
    async def link(self, entry: MemoryEntry, user_id: str) -> list[MemoryRelationship]:
        """Classify and store edges between ``entry`` and the user's sampled memories.

        Contradictions are stored unresolved and queued for consolidation;
        neither side is deleted.
        """
        pass

    @abstractmethod
    async def get_graph(self, user_id: str, memory_id: Optional[str] = None) -> list[MemoryRelationship]:
        """Edges of one memory, or of every memory of the user."""
        pass


# noinspection PyAbstractClass
class RelationshipServicePluginBase(Plugin):
    """Base plugin for relationship service."""
    PROVIDER_NAME: str = None

    def name(self) -> str:
        return f"{EXT_RELATIONSHIP_SERVICE}|{self.PROVIDER_NAME}"

    def extension_point_name(self, v: Variables) -> str:
        return EXT_RELATIONSHIP_SERVICE

    def is_enabled(self, v: Variables) -> bool:
        return enabled_option_pattern(self, v, MEMORYENGINE_RELATIONSHIP_SERVICE, self_attr='PROVIDER_NAME')

    def on_registration(self, v: Variables) -> None:
        v.set_default_value(MEMORYENGINE_RELATIONSHIP_SERVICE, DEFAULT_MEMORYENGINE_RELATIONSHIP_SERVICE)
        v.set_default_value(MEMORYENGINE_RELATIONSHIP_SAMPLE_SIZE, DEFAULT_MEMORYENGINE_RELATIONSHIP_SAMPLE_SIZE)
        v.set_default_value(MEMORYENGINE_RELATIONSHIP_MAX_LINKS, DEFAULT_MEMORYENGINE_RELATIONSHIP_MAX_LINKS)

    def get_dependencies(self, v: Variables):
        return (EXT_STORAGE_BACKEND, EXT_SIMILARITY_CACHE, EXT_LLM_SERVICE, EXT_TASK_SERVICE)
