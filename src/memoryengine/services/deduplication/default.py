"""
Default Deduplication Service implementation.

Checks in order:
1. Exact semantic hash match confirmed by cosine similarity
2. Best cached similarity against the user's active memories
3. Exact (case-insensitive) text match against entries stored without an embedding;
   a match gets the new embedding backfilled
"""
from logging import Logger
from typing import Optional

from scitrera_app_framework import get_logger
from scitrera_app_framework.api import Variables

from ...models.memory import AtomicFact, MemoryEntry
from ...utils import (
    compute_semantic_hash,
    compute_text_semantic_hash,
    generate_id,
    utc_now,
)
from ...utils.locking import KeyedAsyncLock
from ..embedding import EXT_EMBEDDING_SERVICE, EmbeddingService, EmbeddingUnavailableError
from ..similarity import EXT_SIMILARITY_CACHE, SimilarityCache
from ..storage import EXT_STORAGE_BACKEND, StorageBackend
from .base import (
    DeduplicationService,
    DeduplicationServicePluginBase,
    DeduplicationAction,
    DeduplicationResult,
    decide,
    MEMORYENGINE_DEDUPLICATION_SKIP_THRESHOLD,
    DEFAULT_MEMORYENGINE_DEDUPLICATION_SKIP_THRESHOLD,
    MEMORYENGINE_DEDUPLICATION_UPDATE_THRESHOLD,
    DEFAULT_MEMORYENGINE_DEDUPLICATION_UPDATE_THRESHOLD,
)


class DefaultDeduplicationService(DeduplicationService):
    """Default deduplication service implementation.

    Decide-and-apply runs under a per-user lock so two concurrent copies of the
    same fact cannot both create an entry.
    """

    def __init__(
            self,
            storage: StorageBackend,
            embedding_service: EmbeddingService,
            similarity_cache: SimilarityCache,
            v: Variables = None,
            skip_threshold: float = DEFAULT_MEMORYENGINE_DEDUPLICATION_SKIP_THRESHOLD,
            update_threshold: float = DEFAULT_MEMORYENGINE_DEDUPLICATION_UPDATE_THRESHOLD,
    ):
        if not 0.0 <= update_threshold <= skip_threshold <= 1.0:
            raise ValueError(
                f"Invalid deduplication thresholds: update={update_threshold}, skip={skip_threshold}"
            )
        self.storage = storage
        self.embedding_service = embedding_service
        self.similarity_cache = similarity_cache
        self.skip_threshold = skip_threshold
        self.update_threshold = update_threshold
        self._user_locks = KeyedAsyncLock()
        self.logger = get_logger(v, name=self.__class__.__name__)

        self.logger.info(
            "Initialized DefaultDeduplicationService with thresholds: skip=%.2f, update=%.2f",
            self.skip_threshold, self.update_threshold
        )

    async def resolve(self, fact: AtomicFact, user_id: str) -> DeduplicationResult:
        async with self._user_locks.hold(user_id):
            try:
                embedding = await self.embedding_service.embed(fact.text)
            except EmbeddingUnavailableError as e:
                self.logger.warning("Embedding unavailable, deduplicating by text: %s", e)
                return await self._resolve_by_text(fact, user_id)

            semantic_hash = compute_semantic_hash(embedding)
            stored_without_embedding = await self._find_unembedded(user_id, fact.text)
            if stored_without_embedding is not None:
                backfilled = await self.storage.update_memory(
                    stored_without_embedding.id, embedding=embedding, semantic_hash=semantic_hash,
                )
                self.logger.debug("Backfilled embedding for %s", backfilled.id)
                return DeduplicationResult(
                    action=DeduplicationAction.SKIP,
                    memory=backfilled,
                    similarity=1.0,
                    reason="Exact text duplicate stored while embeddings were unavailable",
                )

            match, similarity = await self._best_match(user_id, embedding, semantic_hash)

            action = decide(similarity, self.skip_threshold, self.update_threshold) if match else (
                DeduplicationAction.CREATE)

            if action == DeduplicationAction.SKIP:
                self.logger.debug("Skipping known fact (similarity %.3f to %s)", similarity, match.id)
                return DeduplicationResult(
                    action=action,
                    memory=match,
                    similarity=similarity,
                    reason=f"Already known (similarity: {similarity:.3f})",
                )

            if action == DeduplicationAction.UPDATE:
                new_keywords = set(fact.keywords) - set(match.keywords)
                if new_keywords:
                    merged = await self._merge(match, fact, embedding, semantic_hash)
                    self.logger.debug("Merged fact into %s (similarity %.3f, new keywords %s)",
                                      match.id, similarity, sorted(new_keywords))
                    return DeduplicationResult(
                        action=DeduplicationAction.MERGE,
                        memory=merged,
                        similarity=similarity,
                        reason=f"Refines existing memory with new detail (similarity: {similarity:.3f})",
                    )
                updated = await self._update(match, fact)
                self.logger.debug("Updated %s (similarity %.3f)", match.id, similarity)
                return DeduplicationResult(
                    action=action,
                    memory=updated,
                    similarity=similarity,
                    reason=f"Reinforces existing memory (similarity: {similarity:.3f})",
                )

            created = await self._create(fact, user_id, embedding, semantic_hash)
            return DeduplicationResult(
                action=DeduplicationAction.CREATE,
                memory=created,
                similarity=similarity if match else None,
                reason="New unique memory",
            )

    async def _best_match(
            self,
            user_id: str,
            embedding: list[float],
            semantic_hash: str,
    ) -> tuple[Optional[MemoryEntry], float]:
        """Most similar active memory, trying exact hash matches first."""
        for candidate in await self.storage.find_by_semantic_hash(user_id, semantic_hash):
            if candidate.embedding and len(candidate.embedding) == len(embedding):
                similarity = self.similarity_cache.get_similarity(embedding, candidate.embedding)
                if similarity > self.skip_threshold:
                    return candidate, similarity

        best, best_similarity = None, 0.0
        for memory in await self.storage.list_memories(user_id, active_only=True):
            if not memory.embedding or len(memory.embedding) != len(embedding):
                continue
            similarity = self.similarity_cache.get_similarity(embedding, memory.embedding)
            if best is None or similarity > best_similarity:
                best, best_similarity = memory, similarity
        return best, best_similarity

    async def _find_unembedded(self, user_id: str, text: str) -> Optional[MemoryEntry]:
        existing = await self.storage.find_by_content(user_id, text)
        return existing if existing is not None and not existing.embedding else None

    async def _resolve_by_text(self, fact: AtomicFact, user_id: str) -> DeduplicationResult:
        existing = await self.storage.find_by_content(user_id, fact.text)
        if existing:
            return DeduplicationResult(
                action=DeduplicationAction.SKIP,
                memory=existing,
                similarity=1.0,
                reason="Exact text duplicate (embedding unavailable)",
            )
        created = await self._create(fact, user_id, None, compute_text_semantic_hash(fact.text))
        return DeduplicationResult(
            action=DeduplicationAction.CREATE,
            memory=created,
            reason="New memory stored without embedding",
        )

    async def _create(
            self,
            fact: AtomicFact,
            user_id: str,
            embedding: Optional[list[float]],
            semantic_hash: str,
    ) -> MemoryEntry:
        now = utc_now()
        entry = MemoryEntry(
            id=generate_id("mem"),
            user_id=user_id,
            content=fact.text,
            category=fact.category,
            importance=fact.importance,
            keywords=fact.keywords,
            embedding=embedding,
            semantic_hash=semantic_hash,
            created_at=now,
            last_accessed=now,
            metadata={
                "confidence": fact.confidence,
                "explicit": fact.explicit,
                "source_message_id": fact.source_message_id,
                "source_conversation_id": fact.source_conversation_id,
            },
        )
        created = await self.storage.create_memory(entry)
        self.logger.debug("Created memory %s for user %s", created.id, user_id)
        return created

    async def _update(self, existing: MemoryEntry, fact: AtomicFact) -> MemoryEntry:
        return await self.storage.update_memory(
            existing.id,
            keywords=existing.keywords + fact.keywords,
            importance=max(existing.importance, fact.importance),
            update_count=existing.update_count + 1,
            last_accessed=utc_now(),
        )

    async def _merge(
            self,
            existing: MemoryEntry,
            fact: AtomicFact,
            embedding: list[float],
            semantic_hash: str,
    ) -> MemoryEntry:
        """Newer text becomes the content; the previous text is kept as provenance."""
        metadata = dict(existing.metadata)
        provenance = list(metadata.get("provenance", []))
        provenance.append({
            "content": existing.content,
            "source_message_id": existing.metadata.get("source_message_id"),
            "source_conversation_id": existing.metadata.get("source_conversation_id"),
            "replaced_at": utc_now().isoformat(),
        })
        metadata.update(
            provenance=provenance,
            source_message_id=fact.source_message_id,
            source_conversation_id=fact.source_conversation_id,
        )
        return await self.storage.update_memory(
            existing.id,
            content=fact.text,
            embedding=embedding,
            semantic_hash=semantic_hash,
            keywords=existing.keywords + fact.keywords,
            importance=max(existing.importance, fact.importance),
            update_count=existing.update_count + 1,
            last_accessed=utc_now(),
            metadata=metadata,
        )


class DefaultDeduplicationServicePlugin(DeduplicationServicePluginBase):
    """Default deduplication service plugin."""
    PROVIDER_NAME = 'default'

    def initialize(self, v: Variables, logger: Logger) -> DeduplicationService:
        storage: StorageBackend = self.get_extension(EXT_STORAGE_BACKEND, v)
        embedding_service: EmbeddingService = self.get_extension(EXT_EMBEDDING_SERVICE, v)
        similarity_cache: SimilarityCache = self.get_extension(EXT_SIMILARITY_CACHE, v)

        return DefaultDeduplicationService(
            storage=storage,
            embedding_service=embedding_service,
            similarity_cache=similarity_cache,
            v=v,
            skip_threshold=v.environ(MEMORYENGINE_DEDUPLICATION_SKIP_THRESHOLD,
                                     default=DEFAULT_MEMORYENGINE_DEDUPLICATION_SKIP_THRESHOLD, type_fn=float),
            update_threshold=v.environ(MEMORYENGINE_DEDUPLICATION_UPDATE_THRESHOLD,
                                       default=DEFAULT_MEMORYENGINE_DEDUPLICATION_UPDATE_THRESHOLD, type_fn=float),
        )
