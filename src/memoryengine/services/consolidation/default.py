"""Default consolidation service implementation."""
from datetime import timedelta
from logging import Logger

import numpy as np
from scitrera_app_framework import get_logger
from scitrera_app_framework.api import Variables

from ...models.memory import MemoryEntry, MemoryRelationship, RelationshipType
from ...utils import ensure_utc, generate_id, utc_now
from ...utils.locking import KeyedAsyncLock
from ..deduplication.base import (
    MEMORYENGINE_DEDUPLICATION_SKIP_THRESHOLD, DEFAULT_MEMORYENGINE_DEDUPLICATION_SKIP_THRESHOLD,
)
from ..storage import EXT_STORAGE_BACKEND, StorageBackend
from .base import (
    ConsolidationService,
    ConsolidationServicePluginBase,
    ConsolidationResult,
    ContradictionPolicy,
    MEMORYENGINE_CONSOLIDATION_CONTRADICTION_POLICY, DEFAULT_MEMORYENGINE_CONSOLIDATION_CONTRADICTION_POLICY,
    MEMORYENGINE_CONSOLIDATION_RETENTION_DAYS, DEFAULT_MEMORYENGINE_CONSOLIDATION_RETENTION_DAYS,
    MEMORYENGINE_CONSOLIDATION_IMPORTANCE_FLOOR, DEFAULT_MEMORYENGINE_CONSOLIDATION_IMPORTANCE_FLOOR,
)


class DefaultConsolidationService(ConsolidationService):
    """Default consolidation implementation using storage backend directly.

    One pass per user at a time; a concurrent request for the same user
    returns immediately with ``skipped=True``.
    """

    def __init__(
            self,
            storage: StorageBackend,
            v: Variables = None,
            policy: ContradictionPolicy = DEFAULT_MEMORYENGINE_CONSOLIDATION_CONTRADICTION_POLICY,
            duplicate_threshold: float = DEFAULT_MEMORYENGINE_DEDUPLICATION_SKIP_THRESHOLD,
            retention_days: int = DEFAULT_MEMORYENGINE_CONSOLIDATION_RETENTION_DAYS,
            importance_floor: float = DEFAULT_MEMORYENGINE_CONSOLIDATION_IMPORTANCE_FLOOR,
    ):
        self._storage = storage
        self.policy = ContradictionPolicy(policy)
        self.duplicate_threshold = duplicate_threshold
        self.retention_days = retention_days
        self.importance_floor = importance_floor
        self._user_locks = KeyedAsyncLock()
        self.logger = get_logger(v, name=self.__class__.__name__)

    async def consolidate_user(self, user_id: str) -> ConsolidationResult:
        if self._user_locks.locked(user_id):
            self.logger.debug("Consolidation already running for user %s, skipping", user_id)
            return ConsolidationResult(user_id=user_id, skipped=True)

        async with self._user_locks.hold(user_id):
            result = ConsolidationResult(user_id=user_id)
            await self._resolve_contradictions(user_id, result)
            await self._merge_near_duplicates(user_id, result)
            await self._expire_stale(user_id, result)

        self.logger.info(
            "Consolidated user %s: %d contradictions resolved, %d flagged, %d merged, %d expired",
            user_id, result.contradictions_resolved, result.contradictions_flagged, result.merged, result.expired
        )
        return result

    async def consolidate_all(self) -> ConsolidationResult:
        total = ConsolidationResult(user_id='*')
        for user_id in await self._storage.list_user_ids():
            total.add(await self.consolidate_user(user_id))
        return total

    # ========== Contradictions ==========

    async def _resolve_contradictions(self, user_id: str, result: ConsolidationResult) -> None:
        edges = await self._storage.get_user_relationships(user_id, [RelationshipType.CONTRADICTS])
        for edge in edges:
            if edge.metadata.get("resolved"):
                continue

            a = await self._storage.get_memory(edge.from_id)
            b = await self._storage.get_memory(edge.to_id)
            if a is None or b is None or not a.is_active or not b.is_active:
                await self._mark_resolved(edge, "obsolete")
                result.contradictions_resolved += 1
                continue

            if self.policy == ContradictionPolicy.MANUAL:
                if not edge.metadata.get("needs_review"):
                    await self._storage.update_relationship(
                        edge.id, metadata={**edge.metadata, "needs_review": True}
                    )
                result.contradictions_flagged += 1
                continue

            newer, older = self._order_by_age(a, b, edge)
            await self._storage.create_relationship(MemoryRelationship(
                id=generate_id("rel"),
                user_id=user_id,
                from_id=newer.id,
                to_id=older.id,
                type=RelationshipType.SUPERSEDES,
                confidence=edge.confidence,
                metadata={"contradiction_id": edge.id},
            ))
            await self._storage.update_memory(
                older.id,
                metadata={**older.metadata, "superseded_by": newer.id, "superseded_at": utc_now().isoformat()},
            )
            await self._mark_resolved(edge, self.policy.value, winner_id=newer.id)
            result.contradictions_resolved += 1
            self.logger.debug("Memory %s supersedes %s", newer.id, older.id)

    @staticmethod
    def _order_by_age(a: MemoryEntry, b: MemoryEntry, edge: MemoryRelationship) -> tuple[MemoryEntry, MemoryEntry]:
        created_a, created_b = ensure_utc(a.created_at), ensure_utc(b.created_at)
        if created_a == created_b:
            newer_id = edge.metadata.get("newer_id")
            return (b, a) if newer_id == b.id else (a, b)
        return (a, b) if created_a > created_b else (b, a)

    async def _mark_resolved(self, edge: MemoryRelationship, resolution: str, winner_id: str = None) -> None:
        metadata = {
            **edge.metadata,
            "resolved": True,
            "resolution": resolution,
            "resolved_at": utc_now().isoformat(),
        }
        if winner_id:
            metadata["winner_id"] = winner_id
        await self._storage.update_relationship(edge.id, metadata=metadata)

    # ========== Near-duplicates ==========

    async def _merge_near_duplicates(self, user_id: str, result: ConsolidationResult) -> None:
        """Fold near-identical entries into the oldest one.

        Superseded entries and pairs joined by a contradicts or supersedes edge
        are never merged, so a similar-sounding contradiction keeps its winner.
        """
        memories = [
            m for m in await self._storage.list_memories(user_id, active_only=True)
            if m.embedding and not m.is_superseded
        ]
        if len(memories) < 2:
            return
        # only compare vectors of the dominant dimension
        dims = max({len(m.embedding) for m in memories}, key=lambda d: sum(len(m.embedding) == d for m in memories))
        memories = [m for m in memories if len(m.embedding) == dims]
        memories.sort(key=lambda m: ensure_utc(m.created_at))

        matrix = np.asarray([m.embedding for m in memories], dtype=np.float64)
        norms = np.linalg.norm(matrix, axis=1)
        norms[norms == 0] = 1.0
        unit = matrix / norms[:, None]
        similarity = unit @ unit.T
        opposed = {
            frozenset((edge.from_id, edge.to_id))
            for edge in await self._storage.get_user_relationships(
                user_id, [RelationshipType.CONTRADICTS, RelationshipType.SUPERSEDES])
        }

        absorbed: set[int] = set()
        for i, keeper in enumerate(memories):
            if i in absorbed:
                continue
            cluster: list[int] = []
            for j in range(i + 1, len(memories)):
                if j in absorbed or similarity[i, j] <= self.duplicate_threshold:
                    continue
                if any(frozenset((memories[j].id, memories[k].id)) in opposed for k in [i] + cluster):
                    continue
                cluster.append(j)
            if not cluster:
                continue
            absorbed.update(cluster)
            duplicates = [memories[j] for j in cluster]
            await self._merge_into(keeper, duplicates)
            result.merged += len(duplicates)

    async def _merge_into(self, keeper: MemoryEntry, duplicates: list[MemoryEntry]) -> None:
        keywords = list(keeper.keywords)
        for dup in duplicates:
            keywords.extend(dup.keywords)
        await self._storage.update_memory(
            keeper.id,
            keywords=keywords,
            importance=max([keeper.importance] + [d.importance for d in duplicates]),
            access_count=keeper.access_count + sum(d.access_count for d in duplicates),
            update_count=keeper.update_count + sum(d.update_count for d in duplicates),
        )
        now = utc_now().isoformat()
        for dup in duplicates:
            await self._storage.update_memory(
                dup.id,
                is_active=False,
                metadata={**dup.metadata, "consolidated_into": keeper.id, "consolidated_at": now},
            )
        self.logger.debug("Merged %d near-duplicate(s) into %s", len(duplicates), keeper.id)

    # ========== Expiry ==========

    async def _expire_stale(self, user_id: str, result: ConsolidationResult) -> None:
        now = utc_now()
        horizon = now - timedelta(days=self.retention_days)
        for memory in await self._storage.list_memories(user_id, active_only=True):
            last_seen = ensure_utc(memory.last_accessed or memory.created_at)
            if last_seen < horizon and memory.importance < self.importance_floor:
                await self._storage.update_memory(
                    memory.id,
                    is_active=False,
                    metadata={**memory.metadata, "expired_at": now.isoformat()},
                )
                result.expired += 1


class DefaultConsolidationServicePlugin(ConsolidationServicePluginBase):
    """Plugin that creates the default consolidation service."""
    PROVIDER_NAME = 'default'

    def initialize(self, v: Variables, logger: Logger) -> ConsolidationService:
        storage: StorageBackend = self.get_extension(EXT_STORAGE_BACKEND, v)
        return DefaultConsolidationService(
            storage=storage,
            v=v,
            policy=v.environ(MEMORYENGINE_CONSOLIDATION_CONTRADICTION_POLICY,
                             default=DEFAULT_MEMORYENGINE_CONSOLIDATION_CONTRADICTION_POLICY.value,
                             type_fn=ContradictionPolicy),
            duplicate_threshold=v.environ(MEMORYENGINE_DEDUPLICATION_SKIP_THRESHOLD,
                                          default=DEFAULT_MEMORYENGINE_DEDUPLICATION_SKIP_THRESHOLD, type_fn=float),
            retention_days=v.environ(MEMORYENGINE_CONSOLIDATION_RETENTION_DAYS,
                                     default=DEFAULT_MEMORYENGINE_CONSOLIDATION_RETENTION_DAYS, type_fn=int),
            importance_floor=v.environ(MEMORYENGINE_CONSOLIDATION_IMPORTANCE_FLOOR,
                                       default=DEFAULT_MEMORYENGINE_CONSOLIDATION_IMPORTANCE_FLOOR, type_fn=float),
        )
