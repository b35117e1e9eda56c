"""
Memory Service - orchestration of the memory pipeline.

Write path: extract facts, resolve each against existing memories, link new
or merged entries into the relationship graph. Read path: contextual
retrieval. Both paths degrade instead of raising so a chat turn never fails
because of memory.
"""
from logging import Logger
from typing import Optional

from scitrera_app_framework import get_logger
from scitrera_app_framework.api import Variables

from ...models.memory import ConversationMessage, MemoryEntry, MemoryRelationship, RetrievalResult
from ...utils import utc_now
from ..consolidation import EXT_CONSOLIDATION_SERVICE, ConsolidationResult, ConsolidationService
from ..deduplication import EXT_DEDUPLICATION_SERVICE, DeduplicationAction, DeduplicationService
from ..embedding import EXT_EMBEDDING_SERVICE, EmbeddingService
from ..extraction import EXT_EXTRACTION_SERVICE, ExtractionService
from ..relationship import EXT_RELATIONSHIP_SERVICE, RelationshipService
from ..retrieval import EXT_RETRIEVAL_SERVICE, RetrievalService
from ..similarity import EXT_SIMILARITY_CACHE, SimilarityCache
from ..storage import EXT_STORAGE_BACKEND, StorageBackend
from ..tasks import (
    EXT_TASK_SERVICE,
    QueueFullError,
    TaskPriority,
    TaskService,
    TaskServiceShutdownError,
    TaskType,
)
from .base import MemoryServicePluginBase, ProcessingResult, ServiceStats

# actions that leave a new or rewritten entry to link into the graph
_LINK_ACTIONS = (DeduplicationAction.CREATE, DeduplicationAction.MERGE)


def context_to_payload(conversation_context: Optional[list[ConversationMessage]]) -> list[dict]:
    return [m.model_dump() for m in conversation_context or []]


def context_from_payload(items: Optional[list]) -> list[ConversationMessage]:
    return [ConversationMessage.model_validate(item) for item in items or []]


class MemoryService:
    """
    Core memory service coordinating the engine's services.

    This service coordinates between:
    - Extraction (atomic facts from a message)
    - Deduplication (skip / create / update / merge)
    - Relationship graph (links and contradiction flags)
    - Retrieval (contextual ranking)
    - Task service (off-path processing)
    """

    def __init__(
            self,
            storage: StorageBackend,
            extraction_service: ExtractionService,
            deduplication_service: DeduplicationService,
            relationship_service: RelationshipService,
            retrieval_service: RetrievalService,
            v: Variables = None,
            consolidation_service: Optional[ConsolidationService] = None,
            task_service: Optional[TaskService] = None,
            embedding_service: Optional[EmbeddingService] = None,
            similarity_cache: Optional[SimilarityCache] = None,
    ):
        self.storage = storage
        self.extraction = extraction_service
        self.deduplication = deduplication_service
        self.relationships = relationship_service
        self.retrieval = retrieval_service
        self.consolidation = consolidation_service
        self.task_service = task_service
        self.embedding = embedding_service
        self.similarity_cache = similarity_cache
        self.logger = get_logger(v, name=self.__class__.__name__)

    # ========== Write path ==========

    async def process_message(
            self,
            user_id: str,
            message: str,
            conversation_context: Optional[list[ConversationMessage]] = None,
            coaching_mode: Optional[str] = None,
            message_id: Optional[str] = None,
            conversation_id: Optional[str] = None,
    ) -> ProcessingResult:
        """Extract, deduplicate and link the facts in one user message.

        Never raises; on failure the partial result carries ``error``.
        """
        result = ProcessingResult(user_id=user_id)
        try:
            result.facts = await self.extraction.extract(
                message,
                conversation_context=conversation_context,
                coaching_mode=coaching_mode,
                message_id=message_id,
                conversation_id=conversation_id,
            )
            for fact in result.facts:
                decision = await self.deduplication.resolve(fact, user_id)
                result.decisions.append(decision)
                self.logger.debug("Fact %r -> %s (%s)", fact.text, decision.action.value, decision.reason)
                if decision.action in _LINK_ACTIONS and decision.memory is not None:
                    result.relationships.extend(await self.relationships.link(decision.memory, user_id))
        except Exception as e:
            self.logger.warning("Memory processing failed for user %s: %s", user_id, e, exc_info=True)
            result.error = str(e)

        if result.facts:
            self.logger.info(
                "Processed message for user %s: %d fact(s), %d created, %d skipped, %d edge(s)",
                user_id, len(result.facts), result.created, result.skipped, len(result.relationships)
            )
        return result

    async def submit_message(
            self,
            user_id: str,
            message: str,
            conversation_context: Optional[list[ConversationMessage]] = None,
            coaching_mode: Optional[str] = None,
            message_id: Optional[str] = None,
            conversation_id: Optional[str] = None,
    ) -> Optional[str]:
        """Queue a message for background processing.

        Returns:
            Task ID, or None when the queue rejected the task
        """
        payload = {
            "user_id": user_id,
            "message": message,
            "conversation_context": context_to_payload(conversation_context),
            "coaching_mode": coaching_mode,
            "message_id": message_id,
            "conversation_id": conversation_id,
        }
        return await self._enqueue(TaskType.MEMORY_PROCESSING, payload, TaskPriority.NORMAL)

    async def _enqueue(self, task_type: TaskType, payload: dict, priority: int) -> Optional[str]:
        if self.task_service is None:
            self.logger.warning("No task service configured, dropping %s task", task_type.value)
            return None
        try:
            return await self.task_service.enqueue_task(task_type.value, payload, priority=priority)
        except (QueueFullError, TaskServiceShutdownError) as e:
            self.logger.warning("Could not queue %s task for user %s: %s", task_type.value, payload.get("user_id"), e)
            return None

    # ========== Read path ==========

    async def retrieve(
            self,
            user_id: str,
            current_message: str,
            conversation_context: Optional[list[ConversationMessage]] = None,
            coaching_mode: Optional[str] = None,
            limit: Optional[int] = None,
    ) -> list[RetrievalResult]:
        """Contextual retrieval; returns an empty list on any failure."""
        try:
            return await self.retrieval.retrieve(
                user_id,
                current_message,
                conversation_context=conversation_context,
                coaching_mode=coaching_mode,
                limit=limit,
            )
        except Exception as e:
            self.logger.warning("Retrieval failed for user %s: %s", user_id, e, exc_info=True)
            return []

    async def submit_retrieval(
            self,
            user_id: str,
            current_message: str,
            conversation_context: Optional[list[ConversationMessage]] = None,
            coaching_mode: Optional[str] = None,
            limit: Optional[int] = None,
    ) -> Optional[str]:
        """Queue a high-priority contextual retrieval; results land in the task result."""
        payload = {
            "user_id": user_id,
            "message": current_message,
            "conversation_context": context_to_payload(conversation_context),
            "coaching_mode": coaching_mode,
            "limit": limit,
        }
        return await self._enqueue(TaskType.CONTEXTUAL_RETRIEVAL, payload, TaskPriority.HIGH)

    def format_for_prompt(self, results: list[RetrievalResult], limit: int = 4) -> str:
        return self.retrieval.format_for_prompt(results, limit=limit)

    # ========== Management ==========

    async def get_memories(self, user_id: str, include_inactive: bool = False) -> list[MemoryEntry]:
        return await self.storage.list_memories(user_id, active_only=not include_inactive)

    async def delete_memory(self, user_id: str, memory_id: str) -> bool:
        """Soft-delete a memory at the user's request."""
        memory = await self.storage.get_memory(memory_id)
        if memory is None or memory.user_id != user_id:
            self.logger.warning("Cannot delete memory %s: not found for user %s", memory_id, user_id)
            return False
        await self.storage.update_memory(
            memory_id,
            is_active=False,
            metadata={**memory.metadata, "deleted_at": utc_now().isoformat()},
        )
        self.logger.info("Memory deactivated: %s", memory_id)
        return True

    async def restore_memory(self, user_id: str, memory_id: str) -> bool:
        """Reactivate a soft-deleted, expired or consolidated memory."""
        memory = await self.storage.get_memory(memory_id)
        if memory is None or memory.user_id != user_id:
            self.logger.warning("Cannot restore memory %s: not found for user %s", memory_id, user_id)
            return False
        metadata = {k: v for k, v in memory.metadata.items()
                    if k not in ("deleted_at", "expired_at", "consolidated_into", "consolidated_at")}
        metadata["restored_at"] = utc_now().isoformat()
        await self.storage.update_memory(memory_id, is_active=True, metadata=metadata)
        self.logger.info("Memory restored: %s", memory_id)
        return True

    async def get_relationships(self, memory_id: str) -> list[MemoryRelationship]:
        return await self.storage.get_relationships([memory_id])

    async def consolidate(self, user_id: Optional[str] = None) -> ConsolidationResult:
        if self.consolidation is None:
            raise RuntimeError("No consolidation service configured")
        if user_id:
            return await self.consolidation.consolidate_user(user_id)
        return await self.consolidation.consolidate_all()

    def get_stats(self) -> ServiceStats:
        stats = ServiceStats()
        if self.task_service is not None:
            task_stats = self.task_service.get_stats()
            for key in ("queue_size", "processed", "failed", "retried", "rejected", "active_workers",
                        "max_workers", "average_processing_ms", "uptime_seconds", "by_type"):
                if key in task_stats:
                    setattr(stats, key, task_stats[key])
        if self.similarity_cache is not None:
            sim = self.similarity_cache.stats()
            stats.similarity_cache_size = sim.get("size", 0)
            stats.similarity_cache_hit_rate = sim.get("hit_rate", 0.0)
            stats.total_similarity_calculations = sim.get("total_calculations", 0)
        if self.embedding is not None:
            emb = self.embedding.stats()
            stats.total_embedding_operations = emb.get("operations", 0)
            stats.embedding_cache_size = emb.get("cache", {}).get("size", 0)
            stats.embedding_cache_hit_rate = emb.get("cache", {}).get("hit_rate", 0.0)
        return stats


class DefaultMemoryServicePlugin(MemoryServicePluginBase):
    """Default memory service plugin."""
    PROVIDER_NAME = 'default'

    def initialize(self, v: Variables, logger: Logger) -> MemoryService:
        return MemoryService(
            storage=self.get_extension(EXT_STORAGE_BACKEND, v),
            extraction_service=self.get_extension(EXT_EXTRACTION_SERVICE, v),
            deduplication_service=self.get_extension(EXT_DEDUPLICATION_SERVICE, v),
            relationship_service=self.get_extension(EXT_RELATIONSHIP_SERVICE, v),
            retrieval_service=self.get_extension(EXT_RETRIEVAL_SERVICE, v),
            consolidation_service=self.get_extension(EXT_CONSOLIDATION_SERVICE, v),
            task_service=self.get_extension(EXT_TASK_SERVICE, v),
            embedding_service=self.get_extension(EXT_EMBEDDING_SERVICE, v),
            similarity_cache=self.get_extension(EXT_SIMILARITY_CACHE, v),
            v=v,
        )
