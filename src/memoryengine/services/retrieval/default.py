"""
Default Retrieval Service implementation.

Pipeline:
1. Expand the message (vocabulary, coaching mode, recent topics, optional LLM)
2. Score every active memory against the expanded query embedding and keep a
   candidate pool, plus the most recent high-importance memories
3. Re-rank candidates on semantic, recency, importance, access, contextual and
   graph signals
4. Drop near-duplicates and enforce per-category caps
"""
import asyncio
import math
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from logging import Logger
from typing import Optional

import numpy as np
from scitrera_app_framework import get_logger, ext_parse_bool
from scitrera_app_framework.api import Variables

from ...models.memory import (
    ConversationMessage,
    MemoryEntry,
    RelationshipType,
    RetrievalReason,
    RetrievalResult,
)
from ...utils import age_hours, cosine_similarity_matrix, ensure_utc, keyword_overlap, tokenize
from ..cache import EXT_CACHE_SERVICE, CacheService
from ..embedding import EXT_EMBEDDING_SERVICE, EmbeddingService, EmbeddingUnavailableError
from ..llm import EXT_LLM_SERVICE, LLMService
from ..similarity import EXT_SIMILARITY_CACHE, SimilarityCache
from ..storage import EXT_STORAGE_BACKEND, StorageBackend
from .base import (
    RetrievalService,
    RetrievalServicePluginBase,
    RetrievalOptions,
    RankingWeights,
    HIGH_IMPORTANCE_THRESHOLD,
    HIGH_IMPORTANCE_CANDIDATES,
    MEMORYENGINE_RETRIEVAL_LLM_EXPANSION, DEFAULT_MEMORYENGINE_RETRIEVAL_LLM_EXPANSION,
    MEMORYENGINE_RETRIEVAL_PARALLEL_THRESHOLD, DEFAULT_MEMORYENGINE_RETRIEVAL_PARALLEL_THRESHOLD,
    MEMORYENGINE_RETRIEVAL_PARALLEL_WORKERS, DEFAULT_MEMORYENGINE_RETRIEVAL_PARALLEL_WORKERS,
    MEMORYENGINE_RETRIEVAL_CANDIDATE_MULTIPLIER, DEFAULT_MEMORYENGINE_RETRIEVAL_CANDIDATE_MULTIPLIER,
    MEMORYENGINE_RETRIEVAL_RECENCY_HALF_LIFE_HOURS, DEFAULT_MEMORYENGINE_RETRIEVAL_RECENCY_HALF_LIFE_HOURS,
    MEMORYENGINE_RETRIEVAL_MIN_RELEVANCE, DEFAULT_MEMORYENGINE_RETRIEVAL_MIN_RELEVANCE,
    MEMORYENGINE_RETRIEVAL_DIVERSITY_THRESHOLD, DEFAULT_MEMORYENGINE_RETRIEVAL_DIVERSITY_THRESHOLD,
    MEMORYENGINE_RETRIEVAL_DEFAULT_LIMIT, DEFAULT_MEMORYENGINE_RETRIEVAL_DEFAULT_LIMIT,
)
from .expansion import (
    COACHING_MODE_KEYWORDS,
    EXPANSION_SYSTEM_PROMPT,
    EXPANSION_USER_PROMPT,
    INTENT_KEYWORDS,
    QUERY_EXPANSION_CACHE_TTL_SECONDS,
    QueryExpansion,
    expand_with_vocabulary,
    expansion_cache_key,
    merge_llm_expansion,
    parse_expansion_response,
)

EXPANSION_PROFILE = "expansion"

# access counts saturate at this many reads
ACCESS_SATURATION = 100

# reason thresholds, checked in order
SEMANTIC_REASON_THRESHOLD = 0.3
CONTEXTUAL_REASON_THRESHOLD = 0.7
TEMPORAL_REASON_THRESHOLD = 0.8


def contextual_relevance(memory: MemoryEntry, expansion: QueryExpansion) -> float:
    """Relevance of a memory to the conversation state, 0.5 baseline."""
    content = memory.content.lower()
    score = 0.5

    mode_keywords = COACHING_MODE_KEYWORDS.get(expansion.coaching_mode or "", ())
    if any(k in content for k in mode_keywords) or (expansion.coaching_mode and
                                                    expansion.coaching_mode in memory.category.value):
        score += 0.2

    if any(topic in content for topic in expansion.recent_topics):
        score += 0.2

    intent_keywords = INTENT_KEYWORDS.get(expansion.intent, ())
    if any(k in content for k in intent_keywords):
        score += 0.3

    return min(1.0, score)


def access_score(access_count: int) -> float:
    """Log-scaled access frequency in [0, 1]."""
    return min(1.0, math.log1p(access_count) / math.log1p(ACCESS_SATURATION))


def recency_score(memory: MemoryEntry, half_life_hours: float) -> float:
    """Exponential decay on age; 1.0 for a brand new memory, 0.5 after one half-life."""
    return 0.5 ** (age_hours(memory.created_at) / half_life_hours)


def choose_reason(
        semantic: float,
        recency: float,
        contextual: float,
        graph_boost: float,
        importance: float,
        weights: RankingWeights,
) -> RetrievalReason:
    """Dominant reason a memory was selected."""
    if graph_boost > 0 and graph_boost >= weights.semantic * semantic:
        return RetrievalReason.GRAPH_CONNECTION
    if semantic > SEMANTIC_REASON_THRESHOLD:
        return RetrievalReason.SEMANTIC_MATCH
    if importance > HIGH_IMPORTANCE_THRESHOLD:
        return RetrievalReason.HIGH_IMPORTANCE
    if contextual > CONTEXTUAL_REASON_THRESHOLD:
        return RetrievalReason.CONTEXTUAL_RELEVANCE
    if recency > TEMPORAL_REASON_THRESHOLD:
        return RetrievalReason.TEMPORAL_RELEVANCE
    return RetrievalReason.GENERAL_RELEVANCE


class DefaultRetrievalService(RetrievalService):
    """Four-stage contextual retrieval.

    Candidate search over more than ``parallel_threshold`` vectors is split into
    chunks evaluated on a thread pool; the pool is created lazily and released
    by :meth:`close`.
    """

    def __init__(
            self,
            storage: StorageBackend,
            embedding_service: EmbeddingService,
            similarity_cache: SimilarityCache,
            cache: Optional[CacheService] = None,
            llm_service: Optional[LLMService] = None,
            v: Variables = None,
            options: Optional[RetrievalOptions] = None,
            llm_expansion: bool = DEFAULT_MEMORYENGINE_RETRIEVAL_LLM_EXPANSION,
            default_limit: int = DEFAULT_MEMORYENGINE_RETRIEVAL_DEFAULT_LIMIT,
            max_workers: int = DEFAULT_MEMORYENGINE_RETRIEVAL_PARALLEL_WORKERS,
    ):
        self.storage = storage
        self.embedding_service = embedding_service
        self.similarity_cache = similarity_cache
        self.cache = cache
        self.llm_service = llm_service
        self.options = options or RetrievalOptions()
        self.llm_expansion = llm_expansion
        self.default_limit = default_limit
        self.max_workers = max(1, max_workers)
        self._executor: Optional[ThreadPoolExecutor] = None
        self.logger = get_logger(v, name=self.__class__.__name__)

        self.logger.info(
            "Initialized DefaultRetrievalService (limit=%d, min_relevance=%.2f, llm_expansion=%s)",
            self.default_limit, self.options.min_relevance, self.llm_expansion
        )

    async def retrieve(
            self,
            user_id: str,
            current_message: str,
            conversation_context: Optional[list[ConversationMessage]] = None,
            coaching_mode: Optional[str] = None,
            limit: Optional[int] = None,
    ) -> list[RetrievalResult]:
        limit = self.default_limit if limit is None else limit
        if limit <= 0 or not current_message or not current_message.strip():
            return []
        try:
            return await self._retrieve(user_id, current_message, conversation_context, coaching_mode, limit)
        except Exception as e:
            self.logger.warning("Retrieval failed for user %s: %s", user_id, e, exc_info=True)
            return []

    async def _retrieve(
            self,
            user_id: str,
            current_message: str,
            conversation_context: Optional[list[ConversationMessage]],
            coaching_mode: Optional[str],
            limit: int,
    ) -> list[RetrievalResult]:
        memories = await self.storage.list_memories(user_id, active_only=True)
        if not memories:
            return []

        expansion = await self.expand_query(current_message, conversation_context, coaching_mode)

        query_embedding: Optional[list[float]] = None
        try:
            query_embedding = await self.embedding_service.embed(expansion.expanded_text)
        except (EmbeddingUnavailableError, ValueError) as e:
            self.logger.warning("Query embedding unavailable, falling back to keyword scoring: %s", e)

        semantic, fallback_ids = await self._semantic_scores(memories, query_embedding, expansion)
        candidates = self._select_candidates(memories, semantic, limit)
        ranked = await self._rank(candidates, semantic, fallback_ids, expansion)
        ranked = [r for r in ranked if r.relevance_score >= self.options.min_relevance]
        selected = self._diversify(ranked, limit)

        if selected:
            try:
                await self.storage.record_access([r.memory.id for r in selected])
            except Exception as e:
                self.logger.warning("Could not record access for user %s: %s", user_id, e)
        self.logger.debug(
            "Retrieved %d of %d memories for user %s (%d candidates, intent=%s)",
            len(selected), len(memories), user_id, len(candidates), expansion.intent
        )
        return selected

    # ========== Stage 1: expansion ==========

    async def expand_query(
            self,
            message: str,
            conversation_context: Optional[list[ConversationMessage]] = None,
            coaching_mode: Optional[str] = None,
    ) -> QueryExpansion:
        """Vocabulary expansion, enriched by a cached model expansion when enabled."""
        expansion = expand_with_vocabulary(message, conversation_context, coaching_mode)
        if not self.llm_expansion or self.llm_service is None or not self.llm_service.is_available(EXPANSION_PROFILE):
            return expansion

        key = expansion_cache_key(message, coaching_mode)
        data = await self.cache.get(key) if self.cache is not None else None
        if data is None:
            try:
                raw = await self.llm_service.synthesize(
                    prompt=EXPANSION_USER_PROMPT.format(
                        query=message,
                        mode=coaching_mode or "general",
                        topics=", ".join(expansion.recent_topics) or "none",
                    ),
                    system=EXPANSION_SYSTEM_PROMPT,
                    temperature=0.2,
                    max_tokens=300,
                    profile=EXPANSION_PROFILE,
                    json_output=True,
                )
                data = parse_expansion_response(raw)
            except Exception as e:
                self.logger.warning("Query expansion failed, using vocabulary only: %s", e)
                return expansion
            if self.cache is not None:
                await self.cache.set(key, data, ttl_seconds=QUERY_EXPANSION_CACHE_TTL_SECONDS)
        return merge_llm_expansion(expansion, data)

    # ========== Stage 2: candidate search ==========

    async def _semantic_scores(
            self,
            memories: list[MemoryEntry],
            query_embedding: Optional[list[float]],
            expansion: QueryExpansion,
    ) -> tuple[dict[str, float], set[str]]:
        scores: dict[str, float] = {}
        fallback_ids: set[str] = set()

        with_vectors: list[MemoryEntry] = []
        query_tokens = expansion.query_tokens
        for memory in memories:
            if query_embedding is not None and memory.embedding and len(memory.embedding) == len(query_embedding):
                with_vectors.append(memory)
            else:
                scores[memory.id] = keyword_overlap(query_tokens, memory.keywords or tokenize(memory.content))
                fallback_ids.add(memory.id)

        if with_vectors:
            similarities = await self.vector_scores(query_embedding, [m.embedding for m in with_vectors])
            for memory, similarity in zip(with_vectors, similarities):
                scores[memory.id] = max(0.0, min(1.0, float(similarity)))
        return scores, fallback_ids

    async def vector_scores(self, query: list[float], vectors: list[list[float]]) -> np.ndarray:
        """Cosine similarity of ``query`` against each vector, in order."""
        matrix = np.asarray(vectors, dtype=np.float64)
        if len(vectors) <= self.options.parallel_threshold:
            return cosine_similarity_matrix(query, matrix)

        loop = asyncio.get_running_loop()
        executor = self._get_executor()
        chunks = np.array_split(matrix, self.max_workers)
        parts = await asyncio.gather(*(
            loop.run_in_executor(executor, cosine_similarity_matrix, query, chunk) for chunk in chunks
        ))
        return np.concatenate(parts)

    def _get_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="retrieval")
        return self._executor

    def _select_candidates(
            self,
            memories: list[MemoryEntry],
            semantic: dict[str, float],
            limit: int,
    ) -> list[MemoryEntry]:
        pool_size = limit * self.options.candidate_multiplier
        ordered = sorted(memories, key=lambda m: semantic.get(m.id, 0.0), reverse=True)
        candidates = {m.id: m for m in ordered[:pool_size]}

        important = sorted(
            (m for m in memories if m.importance > HIGH_IMPORTANCE_THRESHOLD and m.id not in candidates),
            key=lambda m: ensure_utc(m.created_at),
            reverse=True,
        )
        for memory in important[:HIGH_IMPORTANCE_CANDIDATES]:
            candidates[memory.id] = memory
        return list(candidates.values())

    # ========== Stage 3: re-ranking ==========

    async def _rank(
            self,
            candidates: list[MemoryEntry],
            semantic: dict[str, float],
            fallback_ids: set[str],
            expansion: QueryExpansion,
    ) -> list[RetrievalResult]:
        weights = self.options.weights
        boosts = await self._graph_boosts({m.id for m in candidates})

        results = []
        for memory in candidates:
            sem = semantic.get(memory.id, 0.0)
            rec = recency_score(memory, self.options.recency_half_life_hours)
            ctx = contextual_relevance(memory, expansion)
            boost = boosts.get(memory.id, 0.0)

            score = (
                    weights.semantic * sem
                    + weights.recency * rec
                    + weights.importance * memory.importance
                    + weights.access * access_score(memory.access_count)
                    + weights.contextual * ctx
                    + boost
            )
            if memory.is_superseded:
                score *= weights.supersede_penalty

            if memory.id in fallback_ids:
                reason = RetrievalReason.FALLBACK_TEXT_MATCH
            else:
                reason = choose_reason(sem, rec, ctx, boost, memory.importance, weights)

            results.append(RetrievalResult(
                memory=memory,
                relevance_score=min(1.0, score),
                retrieval_reason=reason,
                semantic_score=sem,
                recency_score=rec,
                contextual_score=ctx,
                graph_boost=boost,
            ))

        results.sort(key=lambda r: r.relevance_score, reverse=True)
        return results

    async def _graph_boosts(self, candidate_ids: set[str]) -> dict[str, float]:
        """Boost for supports/elaborates edges between candidates."""
        if len(candidate_ids) < 2:
            return {}
        weights = self.options.weights
        edges = await self.storage.get_relationships(
            candidate_ids, [RelationshipType.SUPPORTS, RelationshipType.ELABORATES]
        )
        boosts: defaultdict[str, float] = defaultdict(float)
        for edge in edges:
            if edge.from_id in candidate_ids and edge.to_id in candidate_ids:
                boosts[edge.from_id] += weights.graph_boost_per_edge * edge.confidence
                boosts[edge.to_id] += weights.graph_boost_per_edge * edge.confidence
        return {k: min(weights.graph_boost_cap, v) for k, v in boosts.items()}

    # ========== Stage 4: diversity ==========

    def _category_caps(self, limit: int) -> dict:
        return {
            category: max(1, math.ceil(limit * share))
            for category, share in self.options.category_shares.items()
        }

    def _diversify(self, ranked: list[RetrievalResult], limit: int) -> list[RetrievalResult]:
        caps = self._category_caps(limit)
        per_category: defaultdict = defaultdict(int)
        selected: list[RetrievalResult] = []

        for result in ranked:
            if len(selected) >= limit:
                break
            memory = result.memory
            if per_category[memory.category] >= caps.get(memory.category, limit):
                continue
            if memory.embedding and any(
                    s.memory.embedding
                    and self.similarity_cache.get_similarity(memory.embedding, s.memory.embedding)
                    > self.options.diversity_threshold
                    for s in selected
            ):
                continue
            selected.append(result)
            per_category[memory.category] += 1
        return selected

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None


class DefaultRetrievalServicePlugin(RetrievalServicePluginBase):
    """Plugin that creates the default retrieval service."""
    PROVIDER_NAME = 'default'

    def initialize(self, v: Variables, logger: Logger) -> RetrievalService:
        options = RetrievalOptions(
            candidate_multiplier=v.environ(MEMORYENGINE_RETRIEVAL_CANDIDATE_MULTIPLIER,
                                           default=DEFAULT_MEMORYENGINE_RETRIEVAL_CANDIDATE_MULTIPLIER, type_fn=int),
            recency_half_life_hours=v.environ(MEMORYENGINE_RETRIEVAL_RECENCY_HALF_LIFE_HOURS,
                                              default=DEFAULT_MEMORYENGINE_RETRIEVAL_RECENCY_HALF_LIFE_HOURS,
                                              type_fn=float),
            min_relevance=v.environ(MEMORYENGINE_RETRIEVAL_MIN_RELEVANCE,
                                    default=DEFAULT_MEMORYENGINE_RETRIEVAL_MIN_RELEVANCE, type_fn=float),
            diversity_threshold=v.environ(MEMORYENGINE_RETRIEVAL_DIVERSITY_THRESHOLD,
                                          default=DEFAULT_MEMORYENGINE_RETRIEVAL_DIVERSITY_THRESHOLD, type_fn=float),
            parallel_threshold=v.environ(MEMORYENGINE_RETRIEVAL_PARALLEL_THRESHOLD,
                                         default=DEFAULT_MEMORYENGINE_RETRIEVAL_PARALLEL_THRESHOLD, type_fn=int),
        )
        return DefaultRetrievalService(
            storage=self.get_extension(EXT_STORAGE_BACKEND, v),
            embedding_service=self.get_extension(EXT_EMBEDDING_SERVICE, v),
            similarity_cache=self.get_extension(EXT_SIMILARITY_CACHE, v),
            cache=self.get_extension(EXT_CACHE_SERVICE, v),
            llm_service=self.get_extension(EXT_LLM_SERVICE, v),
            v=v,
            options=options,
            llm_expansion=v.environ(MEMORYENGINE_RETRIEVAL_LLM_EXPANSION,
                                    default=DEFAULT_MEMORYENGINE_RETRIEVAL_LLM_EXPANSION, type_fn=ext_parse_bool),
            default_limit=v.environ(MEMORYENGINE_RETRIEVAL_DEFAULT_LIMIT,
                                    default=DEFAULT_MEMORYENGINE_RETRIEVAL_DEFAULT_LIMIT, type_fn=int),
            max_workers=v.environ(MEMORYENGINE_RETRIEVAL_PARALLEL_WORKERS,
                                  default=DEFAULT_MEMORYENGINE_RETRIEVAL_PARALLEL_WORKERS, type_fn=int),
        )
