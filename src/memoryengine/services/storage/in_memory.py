"""
In-memory storage backend for testing.

Stores all entries and edges in dictionaries; data is lost on restart.
Returned models are copies so callers cannot mutate stored state.
"""
from logging import Logger
from typing import Iterable, Optional

from scitrera_app_framework import Variables

from .base import StorageBackend, StoragePluginBase
from ...models.memory import MemoryEntry, MemoryRelationship, RelationshipType
from ...utils import utc_now


class MemoryStorageBackend(StorageBackend):
    """In-memory storage backend."""

    def __init__(self, v: Variables = None):
        super().__init__(v)
        self._memories: dict[str, MemoryEntry] = {}
        self._relationships: dict[str, MemoryRelationship] = {}
        self.logger.info("Initialized MemoryStorageBackend")

    async def connect(self) -> None:
        self.logger.info("In-memory storage connected")

    async def disconnect(self) -> None:
        self.logger.info("In-memory storage disconnected")

    async def health_check(self) -> bool:
        return True

    # ========== Memory Operations ==========

    async def create_memory(self, entry: MemoryEntry) -> MemoryEntry:
        if entry.id in self._memories:
            raise ValueError(f"Memory {entry.id} already exists")
        self._memories[entry.id] = entry.model_copy(deep=True)
        self.logger.debug("Created memory %s for user %s", entry.id, entry.user_id)
        return entry.model_copy(deep=True)

    async def get_memory(self, memory_id: str) -> Optional[MemoryEntry]:
        memory = self._memories.get(memory_id)
        return memory.model_copy(deep=True) if memory else None

    async def update_memory(self, memory_id: str, **updates) -> Optional[MemoryEntry]:
        memory = self._memories.get(memory_id)
        if memory is None:
            return None
        # re-validate so field validators apply to updated values
        data = memory.model_dump()
        data.update(updates)
        updated = MemoryEntry.model_validate(data)
        self._memories[memory_id] = updated
        return updated.model_copy(deep=True)

    async def delete_memory(self, memory_id: str, hard: bool = False) -> bool:
        if memory_id not in self._memories:
            return False
        if hard:
            del self._memories[memory_id]
            self._relationships = {
                rid: rel for rid, rel in self._relationships.items()
                if memory_id not in (rel.from_id, rel.to_id)
            }
        else:
            self._memories[memory_id] = self._memories[memory_id].model_copy(update={"is_active": False})
        return True

    async def list_memories(self, user_id: str, active_only: bool = True, limit: Optional[int] = None) -> list[MemoryEntry]:
        memories = [
            m for m in self._memories.values()
            if m.user_id == user_id and (m.is_active or not active_only)
        ]
        memories.sort(key=lambda m: m.created_at)
        if limit is not None:
            memories = memories[:limit]
        return [m.model_copy(deep=True) for m in memories]

    async def find_by_semantic_hash(self, user_id: str, semantic_hash: str) -> list[MemoryEntry]:
        return [
            m.model_copy(deep=True) for m in self._memories.values()
            if m.user_id == user_id and m.is_active and m.semantic_hash == semantic_hash
        ]

    async def find_by_content(self, user_id: str, content: str) -> Optional[MemoryEntry]:
        needle = content.strip().lower()
        for m in self._memories.values():
            if m.user_id == user_id and m.is_active and m.content.lower() == needle:
                return m.model_copy(deep=True)
        return None

    async def record_access(self, memory_ids: Iterable[str]) -> None:
        now = utc_now()
        for memory_id in memory_ids:
            memory = self._memories.get(memory_id)
            if memory is not None:
                self._memories[memory_id] = memory.model_copy(
                    update={"access_count": memory.access_count + 1, "last_accessed": now}
                )

    async def list_user_ids(self) -> list[str]:
        return sorted({m.user_id for m in self._memories.values()})

    # ========== Relationship Operations ==========

    async def create_relationship(self, relationship: MemoryRelationship) -> MemoryRelationship:
        for existing in self._relationships.values():
            if (existing.from_id, existing.to_id, existing.type) == \
                    (relationship.from_id, relationship.to_id, relationship.type):
                return existing.model_copy(deep=True)
        self._relationships[relationship.id] = relationship.model_copy(deep=True)
        return relationship.model_copy(deep=True)

    async def get_relationships(
            self,
            memory_ids: Iterable[str],
            types: Optional[Iterable[RelationshipType]] = None,
    ) -> list[MemoryRelationship]:
        ids = set(memory_ids)
        type_set = set(types) if types else None
        return [
            rel.model_copy(deep=True) for rel in self._relationships.values()
            if (rel.from_id in ids or rel.to_id in ids) and (type_set is None or rel.type in type_set)
        ]

    async def get_user_relationships(
            self,
            user_id: str,
            types: Optional[Iterable[RelationshipType]] = None,
    ) -> list[MemoryRelationship]:
        type_set = set(types) if types else None
        rels = [
            rel for rel in self._relationships.values()
            if rel.user_id == user_id and (type_set is None or rel.type in type_set)
        ]
        rels.sort(key=lambda r: r.created_at)
        return [rel.model_copy(deep=True) for rel in rels]

    async def update_relationship(self, relationship_id: str, **updates) -> Optional[MemoryRelationship]:
        rel = self._relationships.get(relationship_id)
        if rel is None:
            return None
        updated = rel.model_copy(update=updates)
        self._relationships[relationship_id] = updated
        return updated.model_copy(deep=True)


class MemoryStorageBackendPlugin(StoragePluginBase):
    PROVIDER_NAME = 'memory'

    def initialize(self, v: Variables, logger: Logger) -> object | None:
        return MemoryStorageBackend(v=v)
