"""Storage backend interface: the memory and relationship repository."""
from abc import ABC, abstractmethod
from logging import Logger
from typing import Iterable, Optional

from scitrera_app_framework import get_logger
from scitrera_app_framework.api import Plugin, Variables, enabled_option_pattern

from ...config import MEMORYENGINE_STORAGE_BACKEND, DEFAULT_MEMORYENGINE_STORAGE_BACKEND
from ...models.memory import MemoryEntry, MemoryRelationship, RelationshipType
from .._constants import EXT_STORAGE_BACKEND


class StorageBackend(ABC):
    """
    Abstract base class for storage backends.

    Entries are only ever soft-deleted by the engine (``is_active=False``); hard
    deletes exist for explicit administrative use. There is no vector index:
    similarity is computed by the engine over ``list_memories`` results.
    """

    def __init__(self, v: Variables = None):
        self.logger = get_logger(v, name=self.__class__.__name__)

    @abstractmethod
    async def connect(self) -> None:
        """Initialize storage connection."""
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        """Close storage connection."""
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """Check if storage is healthy."""
        pass

    # ========== Memory Operations ==========

    @abstractmethod
    async def create_memory(self, entry: MemoryEntry) -> MemoryEntry:
        """Persist a new memory entry."""
        pass

    @abstractmethod
    async def get_memory(self, memory_id: str) -> Optional[MemoryEntry]:
        """Get a memory by ID regardless of active state."""
        pass

    @abstractmethod
    async def update_memory(self, memory_id: str, **updates) -> Optional[MemoryEntry]:
        """Update memory fields; returns the updated entry or None if not found."""
        pass

    @abstractmethod
    async def delete_memory(self, memory_id: str, hard: bool = False) -> bool:
        """Soft delete (deactivate) or hard delete a memory."""
        pass

    @abstractmethod
    async def list_memories(
            self,
            user_id: str,
            active_only: bool = True,
            limit: Optional[int] = None,
    ) -> list[MemoryEntry]:
        """All memories of a user, oldest first."""
        pass

    @abstractmethod
    async def find_by_semantic_hash(self, user_id: str, semantic_hash: str) -> list[MemoryEntry]:
        """Active memories of a user with an exactly matching semantic hash."""
        pass

    @abstractmethod
    async def find_by_content(self, user_id: str, content: str) -> Optional[MemoryEntry]:
        """Active memory whose content matches case-insensitively."""
        pass

    @abstractmethod
    async def record_access(self, memory_ids: Iterable[str]) -> None:
        """Increment access counts and refresh last_accessed."""
        pass

    @abstractmethod
    async def list_user_ids(self) -> list[str]:
        """Users that own at least one memory."""
        pass

    # ========== Relationship Operations ==========

    @abstractmethod
    async def create_relationship(self, relationship: MemoryRelationship) -> MemoryRelationship:
        """Store an edge; an existing (from_id, to_id, type) edge is returned unchanged."""
        pass

    @abstractmethod
    async def get_relationships(
            self,
            memory_ids: Iterable[str],
            types: Optional[Iterable[RelationshipType]] = None,
    ) -> list[MemoryRelationship]:
        """Edges with either endpoint in ``memory_ids``."""
        pass

    @abstractmethod
    async def get_user_relationships(
            self,
            user_id: str,
            types: Optional[Iterable[RelationshipType]] = None,
    ) -> list[MemoryRelationship]:
        """All edges owned by a user."""
        pass

    @abstractmethod
    async def update_relationship(self, relationship_id: str, **updates) -> Optional[MemoryRelationship]:
        """Update relationship fields (confidence, metadata)."""
        pass


# noinspection PyAbstractClass
class StoragePluginBase(Plugin):
    PROVIDER_NAME: str = None

    def name(self) -> str:
        return f"{EXT_STORAGE_BACKEND}|{self.PROVIDER_NAME}"

    def extension_point_name(self, v: Variables) -> str:
        return EXT_STORAGE_BACKEND

    def is_enabled(self, v: Variables) -> bool:
        return enabled_option_pattern(self, v, MEMORYENGINE_STORAGE_BACKEND, self_attr='PROVIDER_NAME')

    def on_registration(self, v: Variables) -> None:
        v.set_default_value(MEMORYENGINE_STORAGE_BACKEND, DEFAULT_MEMORYENGINE_STORAGE_BACKEND)

    async def async_ready(self, v: Variables, logger: Logger, value: object | None) -> None:
        if isinstance(value, StorageBackend):
            try:
                await value.connect()
                logger.info("Storage backend '%s' connected successfully.", self.PROVIDER_NAME)
            except Exception as e:
                logger.error("Error connecting storage backend '%s': %s", self.PROVIDER_NAME, e)
                raise
        return

    async def async_stopping(self, v: Variables, logger: Logger, value: object | None) -> None:
        if isinstance(value, StorageBackend):
            try:
                await value.disconnect()
                logger.info("Storage backend '%s' disconnected successfully.", self.PROVIDER_NAME)
            except Exception as e:
                logger.error("Error disconnecting storage backend '%s': %s", self.PROVIDER_NAME, e)
        return
