"""Task handlers for off-path memory processing, contextual retrieval and similarity batches."""
from ..similarity import EXT_SIMILARITY_CACHE, SimilarityCache
from ..storage import EXT_STORAGE_BACKEND, StorageBackend
from ..tasks import TaskHandlerPlugin, TaskType
from .base import EXT_MEMORY_SERVICE
from .default import MemoryService, context_from_payload


class MemoryProcessingTaskHandler(TaskHandlerPlugin):
    """Runs a queued message through extraction, deduplication and linking."""

    TASK_TYPE = TaskType.MEMORY_PROCESSING

    async def handle(self, payload: dict) -> dict:
        memory_service: MemoryService = self.get_extension(EXT_MEMORY_SERVICE, self._v)
        result = await memory_service.process_message(
            payload['user_id'],
            payload['message'],
            conversation_context=context_from_payload(payload.get('conversation_context')),
            coaching_mode=payload.get('coaching_mode'),
            message_id=payload.get('message_id'),
            conversation_id=payload.get('conversation_id'),
        )
        if result.error:
            # surface to the worker so the task is retried
            raise RuntimeError(result.error)
        return result.summary()


class ContextualRetrievalTaskHandler(TaskHandlerPlugin):
    """Runs contextual retrieval ahead of a chat turn; results are the task result."""

    TASK_TYPE = TaskType.CONTEXTUAL_RETRIEVAL

    async def handle(self, payload: dict) -> list[dict]:
        memory_service: MemoryService = self.get_extension(EXT_MEMORY_SERVICE, self._v)
        results = await memory_service.retrieve(
            payload['user_id'],
            payload['message'],
            conversation_context=context_from_payload(payload.get('conversation_context')),
            coaching_mode=payload.get('coaching_mode'),
            limit=payload.get('limit'),
        )
        return [
            {
                "memory_id": r.memory.id,
                "content": r.memory.content,
                "category": r.memory.category.value,
                "relevance_score": r.relevance_score,
                "retrieval_reason": r.retrieval_reason.value,
            }
            for r in results
        ]


class SimilarityTaskHandler(TaskHandlerPlugin):
    """
    Batch cosine similarity through the similarity cache.

    Payload is either ``{"query": [...], "vectors": [[...], ...]}`` or
    ``{"memory_id": ..., "top_k": 10}`` to rank one memory against the rest of
    its owner's active memories.
    """

    TASK_TYPE = TaskType.SIMILARITY

    async def handle(self, payload: dict):
        similarity_cache: SimilarityCache = self.get_extension(EXT_SIMILARITY_CACHE, self._v)

        if 'query' in payload:
            return similarity_cache.batch_similarity(payload['query'], payload.get('vectors') or [])

        storage: StorageBackend = self.get_extension(EXT_STORAGE_BACKEND, self._v)
        memory = await storage.get_memory(payload['memory_id'])
        if memory is None or not memory.embedding:
            return []
        others = [
            m for m in await storage.list_memories(memory.user_id, active_only=True)
            if m.id != memory.id and m.embedding
        ]
        scores = similarity_cache.batch_similarity(memory.embedding, [m.embedding for m in others])
        ranked = sorted(zip(others, scores), key=lambda pair: pair[1], reverse=True)
        return [
            {"memory_id": m.id, "similarity": score}
            for m, score in ranked[:int(payload.get('top_k', 10))]
        ]
