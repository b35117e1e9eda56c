"""
Deduplication Service - Base classes and protocols.

Decides whether a newly extracted fact is already known (skip), refines a known
memory (update or merge) or is new (create). Uses a quantized semantic hash for
exact matches and cached embedding similarity for near matches.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from scitrera_app_framework.api import Plugin, Variables, enabled_option_pattern

from ...config import MEMORYENGINE_DEDUPLICATION_SERVICE, DEFAULT_MEMORYENGINE_DEDUPLICATION_SERVICE
from ...models.memory import AtomicFact, MemoryEntry
from .._constants import (
    EXT_DEDUPLICATION_SERVICE,
    EXT_EMBEDDING_SERVICE,
    EXT_SIMILARITY_CACHE,
    EXT_STORAGE_BACKEND,
)

# ============================================
# Deduplication Configuration
# ============================================
# Above this similarity the fact is already known (SKIP)
MEMORYENGINE_DEDUPLICATION_SKIP_THRESHOLD = 'MEMORYENGINE_DEDUPLICATION_SKIP_THRESHOLD'
DEFAULT_MEMORYENGINE_DEDUPLICATION_SKIP_THRESHOLD = 0.85

# At or above this similarity the fact refines an existing memory (UPDATE or MERGE)
MEMORYENGINE_DEDUPLICATION_UPDATE_THRESHOLD = 'MEMORYENGINE_DEDUPLICATION_UPDATE_THRESHOLD'
DEFAULT_MEMORYENGINE_DEDUPLICATION_UPDATE_THRESHOLD = 0.70


class DeduplicationAction(str, Enum):
    """Action taken for a candidate fact."""

    SKIP = "skip"       # Already known, no writes
    CREATE = "create"   # New unique memory
    UPDATE = "update"   # Reinforce existing memory (importance, keywords, counts)
    MERGE = "merge"     # Replace existing content with the newer, richer text


@dataclass
class DeduplicationResult:
    """Outcome of resolving one fact."""

    action: DeduplicationAction
    memory: Optional[MemoryEntry] = None  # created, updated or matched entry
    similarity: Optional[float] = None
    reason: str = ""


def decide(
        similarity: float,
        skip_threshold: float = DEFAULT_MEMORYENGINE_DEDUPLICATION_SKIP_THRESHOLD,
        update_threshold: float = DEFAULT_MEMORYENGINE_DEDUPLICATION_UPDATE_THRESHOLD,
) -> DeduplicationAction:
    """Map a similarity score to an action.

    ``> skip`` skips, ``[update, skip]`` updates and anything lower creates.
    Merge is a refinement of update decided from the fact's keywords.
    """
    if similarity > skip_threshold:
        return DeduplicationAction.SKIP
    if similarity >= update_threshold:
        return DeduplicationAction.UPDATE
    return DeduplicationAction.CREATE


class DeduplicationService(ABC):
    """Interface for deduplication service."""

    @abstractmethod
    async def resolve(self, fact: AtomicFact, user_id: str) -> DeduplicationResult:
        """Decide and apply the action for one fact.

        Never raises for embedding provider failures; those fall back to exact
        text matching.
        """
        pass


# noinspection PyAbstractClass
class DeduplicationServicePluginBase(Plugin):
    """Base plugin for deduplication service - extensible for custom implementations."""
    PROVIDER_NAME: str = None

    def name(self) -> str:
        return f"{EXT_DEDUPLICATION_SERVICE}|{self.PROVIDER_NAME}"

    def extension_point_name(self, v: Variables) -> str:
        return EXT_DEDUPLICATION_SERVICE

    def is_enabled(self, v: Variables) -> bool:
        return enabled_option_pattern(self, v, MEMORYENGINE_DEDUPLICATION_SERVICE, self_attr='PROVIDER_NAME')

    def on_registration(self, v: Variables) -> None:
        v.set_default_value(MEMORYENGINE_DEDUPLICATION_SERVICE, DEFAULT_MEMORYENGINE_DEDUPLICATION_SERVICE)
        v.set_default_value(MEMORYENGINE_DEDUPLICATION_SKIP_THRESHOLD, DEFAULT_MEMORYENGINE_DEDUPLICATION_SKIP_THRESHOLD)
        v.set_default_value(MEMORYENGINE_DEDUPLICATION_UPDATE_THRESHOLD,
                            DEFAULT_MEMORYENGINE_DEDUPLICATION_UPDATE_THRESHOLD)

    def get_dependencies(self, v: Variables):
        return (EXT_STORAGE_BACKEND, EXT_EMBEDDING_SERVICE, EXT_SIMILARITY_CACHE)
