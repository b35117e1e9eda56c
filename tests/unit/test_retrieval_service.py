"""Unit tests for DefaultRetrievalService and query expansion."""
import itertools
from datetime import timedelta

import numpy as np
import pytest
import pytest_asyncio

from memoryengine.models.memory import (
    ConversationMessage, MemoryCategory, MemoryRelationship, RelationshipType, RetrievalReason, RetrievalResult,
)
from memoryengine.services.embedding import EmbeddingService, EmbeddingUnavailableError
from memoryengine.services.embedding.mock import MockEmbeddingProvider
from memoryengine.services.retrieval import RetrievalOptions, RetrievalService
from memoryengine.services.retrieval.default import DefaultRetrievalService
from memoryengine.services.retrieval.expansion import (
    detect_intent, expand_with_vocabulary, merge_llm_expansion, parse_expansion_response,
)
from memoryengine.services.similarity.default import DefaultSimilarityCache
from memoryengine.services.storage.in_memory import MemoryStorageBackend
from memoryengine.utils import generate_id, utc_now

DIMS = 32
CATEGORIES = list(MemoryCategory)


class FixedQueryEmbedding:
    """Embedding stand-in that returns one preset query vector (or fails)."""

    def __init__(self, vector: list[float] = None, fail: bool = False):
        self.vector = vector
        self.fail = fail

    async def embed(self, text: str) -> list[float]:
        if self.fail:
            raise EmbeddingUnavailableError("provider down")
        return self.vector


def _random_vectors(n: int, seed: int = 7) -> np.ndarray:
    rng = np.random.default_rng(seed)
    vectors = rng.normal(size=(n, DIMS))
    return vectors / np.linalg.norm(vectors, axis=1, keepdims=True)


async def _bulk_insert(storage, make_entry, user_id: str, n: int, **kwargs) -> list:
    entries = []
    categories = itertools.cycle(CATEGORIES)
    for i, vector in enumerate(_random_vectors(n)):
        entries.append(await storage.create_memory(make_entry(
            user_id, f"memory number {i}", embedding=vector.tolist(), category=next(categories), **kwargs)))
    return entries


@pytest.fixture
def storage():
    return MemoryStorageBackend()


@pytest_asyncio.fixture
async def mock_embeddings():
    return EmbeddingService(provider=MockEmbeddingProvider(dimensions=384))


class TestQueryExpansion:

    def test_vocabulary_neighbours(self):
        expansion = expand_with_vocabulary("What can't I eat?")

        assert expansion.terms == ["eat"]
        assert "allergic" in expansion.synonyms
        assert expansion.intent == "question"
        assert "allergic" in expansion.expanded_text

    def test_mode_terms_only_with_mode(self):
        assert expand_with_vocabulary("Plan my week").related_concepts == []
        assert expand_with_vocabulary("Plan my week", coaching_mode="fitness").related_concepts

    def test_recent_topics_from_context(self):
        context = [ConversationMessage(role="user", content="My knee hurts after squats")]

        expansion = expand_with_vocabulary("Any tips?", context)

        assert "knee" in expansion.recent_topics

    @pytest.mark.parametrize("message, intent", [
        ("My goal is to lose weight", "goal_setting"),
        ("Any advice on stretching", "advice_seeking"),
        ("Is this ok?", "question"),
        ("Morning", "general"),
    ])
    def test_detect_intent(self, message, intent):
        assert detect_intent(message) == intent

    def test_parse_and_merge_llm_expansion(self):
        data = parse_expansion_response('```json\n{"synonyms": ["nuts"], "relatedConcepts": ["epipen"]}\n```')
        merged = merge_llm_expansion(expand_with_vocabulary("What can't I eat?"), data)

        assert "nuts" in merged.synonyms
        assert "epipen" in merged.related_concepts

    def test_parse_rejects_garbage(self):
        with pytest.raises(ValueError):
            parse_expansion_response("no json here")


class TestRetrieve:

    @pytest.mark.asyncio
    async def test_allergy_found_for_food_question(self, storage, mock_embeddings, make_entry, user_id):
        async def add(content, **kwargs):
            entry = make_entry(user_id, content, embedding=await mock_embeddings.embed(content), **kwargs)
            return await storage.create_memory(entry)

        peanut = await add("I'm allergic to peanuts", category=MemoryCategory.PERSONAL_INFO, importance=0.9,
                           keywords=["allergic", "peanut"])
        await add("I prefer morning workouts", category=MemoryCategory.PREFERENCE)
        await add("I have a home gym with dumbbells")
        await add("I work night shifts")
        service = DefaultRetrievalService(storage, mock_embeddings, DefaultSimilarityCache())

        results = await service.retrieve(user_id, "What can't I eat?")

        assert results
        assert results[0].memory.id == peanut.id
        assert all(r.relevance_score >= 0.3 for r in results)
        assert (await storage.get_memory(peanut.id)).access_count == 1

    @pytest.mark.parametrize("count", [0, 1, 10, 10_000])
    @pytest.mark.asyncio
    async def test_result_count_bounded(self, storage, make_entry, user_id, count):
        await _bulk_insert(storage, make_entry, user_id, count, importance=0.9)
        query = _random_vectors(1, seed=99)[0].tolist()
        service = DefaultRetrievalService(storage, FixedQueryEmbedding(query), DefaultSimilarityCache(),
                                          options=RetrievalOptions(
                                              parallel_threshold=100,
                                              category_shares={c: 1.0 for c in MemoryCategory},
                                          ),
                                          max_workers=4)

        results = await service.retrieve(user_id, "what should I focus on", limit=10)
        service.close()

        assert len(results) <= min(10, count)
        if count >= 10:
            assert len(results) == 10
        assert [r.relevance_score for r in results] == sorted((r.relevance_score for r in results), reverse=True)

    @pytest.mark.asyncio
    async def test_parallel_path_matches_inline(self):
        query = _random_vectors(1, seed=1)[0].tolist()
        vectors = _random_vectors(500).tolist()
        inline = DefaultRetrievalService(MemoryStorageBackend(), FixedQueryEmbedding(query), DefaultSimilarityCache(),
                                         options=RetrievalOptions(parallel_threshold=10_000))
        parallel = DefaultRetrievalService(MemoryStorageBackend(), FixedQueryEmbedding(query),
                                           DefaultSimilarityCache(),
                                           options=RetrievalOptions(parallel_threshold=10), max_workers=3)

        expected = await inline.vector_scores(query, vectors)
        actual = await parallel.vector_scores(query, vectors)
        parallel.close()

        np.testing.assert_allclose(actual, expected)

    @pytest.mark.asyncio
    async def test_category_cap(self, storage, make_entry, user_id):
        for vector in _random_vectors(5):
            await storage.create_memory(make_entry(user_id, "personal fact", embedding=vector.tolist(),
                                                   category=MemoryCategory.PERSONAL_INFO, importance=0.9))
        service = DefaultRetrievalService(storage, FixedQueryEmbedding(_random_vectors(1, 3)[0].tolist()),
                                          DefaultSimilarityCache())

        results = await service.retrieve(user_id, "tell me something", limit=4)

        # personal_info share is 0.2 -> ceil(4 * 0.2) == 1
        assert len(results) == 1

    @pytest.mark.asyncio
    async def test_near_duplicates_collapsed(self, storage, make_entry, user_id):
        vector = _random_vectors(1, seed=5)[0].tolist()
        for _ in range(3):
            await storage.create_memory(make_entry(user_id, "same fact", embedding=vector,
                                                   category=MemoryCategory.CONTEXT, importance=0.9))
        service = DefaultRetrievalService(storage, FixedQueryEmbedding(vector), DefaultSimilarityCache())

        results = await service.retrieve(user_id, "same fact", limit=6)

        assert len(results) == 1

    @pytest.mark.asyncio
    async def test_empty_inputs(self, storage, make_entry, user_id):
        service = DefaultRetrievalService(storage, FixedQueryEmbedding([1.0] * DIMS), DefaultSimilarityCache())

        assert await service.retrieve(user_id, "anything") == []

    @pytest.mark.asyncio
    async def test_access_recording_failure_keeps_results(self, make_entry, user_id):
        class ReadOnlyStorage(MemoryStorageBackend):
            async def record_access(self, memory_ids):
                raise RuntimeError("attempt to write a readonly database")

        storage = ReadOnlyStorage()
        vector = _random_vectors(1, seed=5)[0].tolist()
        entry = await storage.create_memory(make_entry(user_id, "I run marathons", embedding=vector, importance=0.9))
        service = DefaultRetrievalService(storage, FixedQueryEmbedding(vector), DefaultSimilarityCache())

        results = await service.retrieve(user_id, "running")

        assert [r.memory.id for r in results] == [entry.id]
        assert (await storage.get_memory(entry.id)).access_count == 0
        await _bulk_insert(storage, make_entry, user_id, 3, importance=0.9)
        assert await service.retrieve(user_id, "   ") == []
        assert await service.retrieve(user_id, "anything", limit=0) == []

    @pytest.mark.asyncio
    async def test_keyword_fallback_when_embedding_fails(self, storage, make_entry, user_id):
        peanut = await storage.create_memory(make_entry(
            user_id, "I'm allergic to peanuts", category=MemoryCategory.PERSONAL_INFO, importance=0.9,
            keywords=["allergic", "peanut"], embedding=[0.1] * DIMS))
        service = DefaultRetrievalService(storage, FixedQueryEmbedding(fail=True), DefaultSimilarityCache())

        results = await service.retrieve(user_id, "What can't I eat?")

        assert [r.memory.id for r in results] == [peanut.id]
        assert results[0].retrieval_reason == RetrievalReason.FALLBACK_TEXT_MATCH
        assert results[0].semantic_score == pytest.approx(0.5)

    @pytest.mark.asyncio
    async def test_superseded_entries_penalised(self, storage, make_entry, user_id):
        vector = _random_vectors(2, seed=11)
        old = await storage.create_memory(make_entry(
            user_id, "old fact", embedding=vector[0].tolist(), importance=0.9,
            created_at=utc_now() - timedelta(hours=1), metadata={"superseded_by": "mem_new"}))
        new = await storage.create_memory(make_entry(
            user_id, "new fact", embedding=vector[1].tolist(), importance=0.9, category=MemoryCategory.PREFERENCE))
        query = (vector[0] + vector[1]).tolist()
        service = DefaultRetrievalService(storage, FixedQueryEmbedding(query), DefaultSimilarityCache(),
                                          options=RetrievalOptions(min_relevance=0.0))

        results = {r.memory.id: r for r in await service.retrieve(user_id, "fact")}

        assert results[new.id].relevance_score > results[old.id].relevance_score

    @pytest.mark.asyncio
    async def test_graph_boost(self, storage, make_entry, user_id):
        vectors = _random_vectors(2, seed=21)
        a = await storage.create_memory(make_entry(user_id, "fact a", embedding=vectors[0].tolist(), importance=0.9))
        b = await storage.create_memory(make_entry(user_id, "fact b", embedding=vectors[1].tolist(), importance=0.9,
                                                   category=MemoryCategory.PREFERENCE))
        await storage.create_relationship(MemoryRelationship(
            id=generate_id("rel"), user_id=user_id, from_id=b.id, to_id=a.id,
            type=RelationshipType.SUPPORTS, confidence=1.0))
        service = DefaultRetrievalService(storage, FixedQueryEmbedding(vectors[0].tolist()), DefaultSimilarityCache(),
                                          options=RetrievalOptions(min_relevance=0.0))

        results = {r.memory.id: r for r in await service.retrieve(user_id, "fact")}

        assert results[a.id].graph_boost == pytest.approx(0.05)
        assert results[b.id].graph_boost == pytest.approx(0.05)

    @pytest.mark.asyncio
    async def test_storage_failure_returns_empty(self, user_id):
        class BrokenStorage(MemoryStorageBackend):
            async def list_memories(self, *args, **kwargs):
                raise RuntimeError("database is locked")

        service = DefaultRetrievalService(BrokenStorage(), FixedQueryEmbedding([1.0] * DIMS), DefaultSimilarityCache())

        assert await service.retrieve(user_id, "anything") == []


class TestFormatForPrompt:

    def test_format(self, make_entry, user_id):
        results = [
            RetrievalResult(memory=make_entry(user_id, "I'm allergic to peanuts", importance=0.9),
                            relevance_score=0.8, retrieval_reason=RetrievalReason.SEMANTIC_MATCH),
            RetrievalResult(memory=make_entry(user_id, "I work night shifts", importance=0.5),
                            relevance_score=0.5, retrieval_reason=RetrievalReason.GENERAL_RELEVANCE),
        ]

        text = RetrievalService.format_for_prompt(results)

        assert "I'm allergic to peanuts" in text
        assert "I work night shifts" in text
        assert text.index("peanuts") < text.index("night shifts")

    def test_empty(self):
        assert RetrievalService.format_for_prompt([]) == ""
