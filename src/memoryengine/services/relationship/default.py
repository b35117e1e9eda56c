"""Default relationship graph builder."""
import json
import re
from logging import Logger
from typing import Optional

from scitrera_app_framework import get_logger
from scitrera_app_framework.api import Variables

from ...models.memory import MemoryCategory, MemoryEntry, MemoryRelationship, RelationshipType
from ...utils import age_hours, generate_id, tokenize, utc_now, word_overlap_ratio
from ..llm import EXT_LLM_SERVICE, LLMService
from ..similarity import EXT_SIMILARITY_CACHE, SimilarityCache
from ..storage import EXT_STORAGE_BACKEND, StorageBackend
from ..tasks import EXT_TASK_SERVICE, TaskPriority, TaskService, TaskType, QueueFullError, TaskServiceShutdownError
from .base import (
    RelationshipService,
    RelationshipServicePluginBase,
    MEMORYENGINE_RELATIONSHIP_SAMPLE_SIZE, DEFAULT_MEMORYENGINE_RELATIONSHIP_SAMPLE_SIZE,
    MEMORYENGINE_RELATIONSHIP_MAX_LINKS, DEFAULT_MEMORYENGINE_RELATIONSHIP_MAX_LINKS,
    MEMORYENGINE_RELATIONSHIP_MIN_CONFIDENCE, DEFAULT_MEMORYENGINE_RELATIONSHIP_MIN_CONFIDENCE,
    MEMORYENGINE_RELATIONSHIP_SUPPORTS_THRESHOLD, DEFAULT_MEMORYENGINE_RELATIONSHIP_SUPPORTS_THRESHOLD,
    MEMORYENGINE_RELATIONSHIP_RELATED_THRESHOLD, DEFAULT_MEMORYENGINE_RELATIONSHIP_RELATED_THRESHOLD,
)

# Opposing phrasings. A pair signals a contradiction when one text uses the
# first term (and not the second) and the other text uses the second term.
NEGATION_PAIRS = [
    ("want", "don't want"), ("want", "do not want"),
    ("like", "don't like"), ("like", "hate"), ("like", "dislike"),
    ("love", "hate"), ("enjoy", "hate"), ("prefer", "avoid"),
    ("can", "can't"), ("can", "cannot"), ("can", "can not"),
    ("can eat", "allergic"), ("can eat", "can't eat"), ("can eat", "cannot eat"),
    ("allergic", "not allergic"), ("allergic", "no longer allergic"),
    ("eat", "don't eat"), ("eat", "avoid"),
    ("do", "don't"), ("have", "don't have"),
    ("increase", "decrease"), ("gain", "lose"), ("more", "less"),
    ("always", "never"), ("start", "stop"), ("started", "stopped"),
    ("is", "is not"), ("is", "isn't"),
]

_TERM_PATTERNS: dict[str, re.Pattern] = {}

CONTRADICTION_SYSTEM_PROMPT = """You compare two statements a user made about themselves and decide whether they contradict each other (both cannot be true at the same time).

Respond with JSON only:
{"contradicts": true|false, "confidence": 0.0-1.0}"""

CONTRADICTION_USER_PROMPT = """Statement A: {a}
Statement B: {b}"""


def _term_pattern(term: str) -> re.Pattern:
    pattern = _TERM_PATTERNS.get(term)
    if pattern is None:
        # apostrophes count as word characters so "can" does not match "can't"
        pattern = _TERM_PATTERNS[term] = re.compile(rf"(?<![\w']){re.escape(term)}(?![\w'])")
    return pattern


def _has(text: str, term: str) -> bool:
    return _term_pattern(term).search(text) is not None


def negation_signals(text_a: str, text_b: str) -> list[tuple[str, str]]:
    """Opposing term pairs found between two texts, in either direction."""
    lower_a = text_a.lower().replace("’", "'")
    lower_b = text_b.lower().replace("’", "'")
    found = []
    for pos, neg in NEGATION_PAIRS:
        forward = _has(lower_a, pos) and not _has(lower_a, neg) and _has(lower_b, neg)
        backward = _has(lower_b, pos) and not _has(lower_b, neg) and _has(lower_a, neg)
        if forward or backward:
            found.append((pos, neg))
    return found


def _topic_terms(entry: MemoryEntry) -> set[str]:
    return set(entry.keywords) | set(tokenize(entry.content))


class DefaultRelationshipService(RelationshipService):
    """Relationship builder over a bounded, importance and recency ranked sample.

    Classification order: contradicts, elaborates, supports, related.
    """

    def __init__(
            self,
            storage: StorageBackend,
            similarity_cache: SimilarityCache,
            llm_service: Optional[LLMService] = None,
            task_service: Optional[TaskService] = None,
            v: Variables = None,
            sample_size: int = DEFAULT_MEMORYENGINE_RELATIONSHIP_SAMPLE_SIZE,
            max_links: int = DEFAULT_MEMORYENGINE_RELATIONSHIP_MAX_LINKS,
            min_confidence: float = DEFAULT_MEMORYENGINE_RELATIONSHIP_MIN_CONFIDENCE,
            supports_threshold: float = DEFAULT_MEMORYENGINE_RELATIONSHIP_SUPPORTS_THRESHOLD,
            related_threshold: float = DEFAULT_MEMORYENGINE_RELATIONSHIP_RELATED_THRESHOLD,
    ):
        self.storage = storage
        self.similarity_cache = similarity_cache
        self.llm_service = llm_service
        self.task_service = task_service
        self.sample_size = sample_size
        self.max_links = max_links
        self.min_confidence = min_confidence
        self.supports_threshold = supports_threshold
        self.related_threshold = related_threshold
        self.logger = get_logger(v, name=self.__class__.__name__)

    async def link(self, entry: MemoryEntry, user_id: str) -> list[MemoryRelationship]:
        sample = await self._sample(entry, user_id)
        proposals: list[MemoryRelationship] = []
        for other in sample:
            relationship = await self._classify(entry, other, user_id)
            if relationship is not None and relationship.confidence > self.min_confidence:
                proposals.append(relationship)

        proposals.sort(key=lambda r: r.confidence, reverse=True)
        stored = []
        for relationship in proposals[:self.max_links]:
            stored.append(await self.storage.create_relationship(relationship))
            if relationship.type == RelationshipType.CONTRADICTS:
                await self._enqueue_consolidation(user_id, relationship)

        if stored:
            self.logger.debug("Linked %s to %d memories (%s)", entry.id, len(stored),
                              ", ".join(r.type.value for r in stored))
        return stored

    async def get_graph(self, user_id: str, memory_id: Optional[str] = None) -> list[MemoryRelationship]:
        if memory_id is None:
            return await self.storage.get_user_relationships(user_id)
        return [r for r in await self.storage.get_relationships([memory_id]) if r.user_id == user_id]

    async def _sample(self, entry: MemoryEntry, user_id: str) -> list[MemoryEntry]:
        now = utc_now()
        others = [m for m in await self.storage.list_memories(user_id, active_only=True) if m.id != entry.id]

        def rank(m: MemoryEntry) -> float:
            recency = 0.5 ** (age_hours(m.last_accessed or m.created_at, now) / 168.0)
            return 0.5 * m.importance + 0.5 * recency

        others.sort(key=rank, reverse=True)
        return others[:self.sample_size]

    def _similarity(self, a: MemoryEntry, b: MemoryEntry) -> float:
        if not a.embedding or not b.embedding or len(a.embedding) != len(b.embedding):
            return 0.0
        return self.similarity_cache.get_similarity(a.embedding, b.embedding)

    async def _classify(self, entry: MemoryEntry, other: MemoryEntry, user_id: str) -> Optional[MemoryRelationship]:
        similarity = self._similarity(entry, other)
        terms_new, terms_other = _topic_terms(entry), _topic_terms(other)
        shared = terms_new & terms_other
        topical = bool(shared) or similarity >= self.related_threshold

        # 1. contradicts
        if topical:
            signals = [f"{pos}/{neg}" for pos, neg in negation_signals(entry.content, other.content)]
            verdict = await self._llm_contradiction(entry, other) if self._wants_llm_check(entry, other) else None
            if verdict is not None:
                # a model verdict overrides the lexical signals
                signals = signals + ["llm"] if verdict[0] else []
            if signals:
                overlap = len(shared) / max(1, min(len(terms_new), len(terms_other)))
                confidence = min(0.95, 0.5 + 0.15 * (len(signals) - 1) + 0.3 * overlap)
                if verdict is not None:
                    confidence = max(confidence, min(0.95, verdict[1]))
                from_id, to_id = sorted((entry.id, other.id))
                return MemoryRelationship(
                    id=generate_id("rel"),
                    user_id=user_id,
                    from_id=from_id,
                    to_id=to_id,
                    type=RelationshipType.CONTRADICTS,
                    confidence=confidence,
                    metadata={
                        "newer_id": entry.id,
                        "older_id": other.id,
                        "signals": signals,
                        "resolved": False,
                    },
                )

        # 2. elaborates
        if other.keywords and len(entry.keywords) > len(other.keywords):
            coverage = len(set(other.keywords) & set(entry.keywords)) / len(other.keywords)
            if coverage >= 0.8:
                return self._edge(entry, other, user_id, RelationshipType.ELABORATES,
                                  min(0.9, 0.5 * coverage + 0.5 * max(similarity, 0.0)))

        # 3. supports
        if entry.category == other.category:
            overlap_score = word_overlap_ratio(entry.content, other.content) * 0.8
            if overlap_score > 0.5 or similarity > self.supports_threshold:
                return self._edge(entry, other, user_id, RelationshipType.SUPPORTS, max(overlap_score, similarity))

        # 4. related
        if similarity > self.related_threshold:
            return self._edge(entry, other, user_id, RelationshipType.RELATED, similarity)
        return None

    @staticmethod
    def _edge(entry: MemoryEntry, other: MemoryEntry, user_id: str, rel_type: RelationshipType,
              confidence: float) -> MemoryRelationship:
        return MemoryRelationship(
            id=generate_id("rel"),
            user_id=user_id,
            from_id=entry.id,
            to_id=other.id,
            type=rel_type,
            confidence=max(0.0, min(1.0, confidence)),
        )

    def _wants_llm_check(self, entry: MemoryEntry, other: MemoryEntry) -> bool:
        return (
            self.llm_service is not None
            and MemoryCategory.PERSONAL_INFO in (entry.category, other.category)
            and self.llm_service.is_available("contradiction")
        )

    async def _llm_contradiction(self, entry: MemoryEntry, other: MemoryEntry) -> Optional[tuple[bool, float]]:
        """(contradicts, confidence) from the ``contradiction`` profile, or None on any failure."""
        try:
            raw = await self.llm_service.synthesize(
                CONTRADICTION_USER_PROMPT.format(a=other.content, b=entry.content),
                system=CONTRADICTION_SYSTEM_PROMPT,
                max_tokens=64,
                temperature=0.0,
                profile="contradiction",
                json_output=True,
            )
            start, end = raw.find("{"), raw.rfind("}")
            if start < 0 or end <= start:
                raise ValueError("no JSON object in response")
            data = json.loads(raw[start:end + 1])
            return bool(data.get("contradicts")), float(data.get("confidence", 0.7))
        except Exception as e:
            self.logger.warning("LLM contradiction check failed: %s", e)
            return None

    async def _enqueue_consolidation(self, user_id: str, relationship: MemoryRelationship) -> None:
        if self.task_service is None:
            return
        try:
            task_id = await self.task_service.enqueue_task(
                TaskType.CONSOLIDATION.value,
                {"user_id": user_id, "memory_ids": [relationship.from_id, relationship.to_id]},
                priority=TaskPriority.LOW,
            )
            self.logger.info("Contradiction %s <-> %s queued for consolidation (task %s)",
                             relationship.from_id, relationship.to_id, task_id)
        except (QueueFullError, TaskServiceShutdownError) as e:
            self.logger.warning("Could not queue consolidation for user %s: %s", user_id, e)


class DefaultRelationshipServicePlugin(RelationshipServicePluginBase):
    """Plugin that creates the default relationship service."""
    PROVIDER_NAME = 'default'

    def initialize(self, v: Variables, logger: Logger) -> RelationshipService:
        return DefaultRelationshipService(
            storage=self.get_extension(EXT_STORAGE_BACKEND, v),
            similarity_cache=self.get_extension(EXT_SIMILARITY_CACHE, v),
            llm_service=self.get_extension(EXT_LLM_SERVICE, v),
            task_service=self.get_extension(EXT_TASK_SERVICE, v),
            v=v,
            sample_size=v.environ(MEMORYENGINE_RELATIONSHIP_SAMPLE_SIZE,
                                  default=DEFAULT_MEMORYENGINE_RELATIONSHIP_SAMPLE_SIZE, type_fn=int),
            max_links=v.environ(MEMORYENGINE_RELATIONSHIP_MAX_LINKS,
                                default=DEFAULT_MEMORYENGINE_RELATIONSHIP_MAX_LINKS, type_fn=int),
            min_confidence=v.environ(MEMORYENGINE_RELATIONSHIP_MIN_CONFIDENCE,
                                     default=DEFAULT_MEMORYENGINE_RELATIONSHIP_MIN_CONFIDENCE, type_fn=float),
            supports_threshold=v.environ(MEMORYENGINE_RELATIONSHIP_SUPPORTS_THRESHOLD,
                                         default=DEFAULT_MEMORYENGINE_RELATIONSHIP_SUPPORTS_THRESHOLD, type_fn=float),
            related_threshold=v.environ(MEMORYENGINE_RELATIONSHIP_RELATED_THRESHOLD,
                                        default=DEFAULT_MEMORYENGINE_RELATIONSHIP_RELATED_THRESHOLD, type_fn=float),
        )
