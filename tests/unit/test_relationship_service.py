"""Unit tests for DefaultRelationshipService."""
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from memoryengine.models.memory import MemoryCategory, RelationshipType
from memoryengine.services.relationship.default import DefaultRelationshipService, negation_signals
from memoryengine.services.similarity.default import DefaultSimilarityCache
from memoryengine.services.storage.in_memory import MemoryStorageBackend
from memoryengine.services.tasks import TaskPriority, TaskType
from memoryengine.utils import utc_now


@pytest.fixture
def task_service():
    service = MagicMock()
    service.enqueue_task = AsyncMock(return_value="task_1")
    return service


@pytest.fixture
def storage():
    return MemoryStorageBackend()


@pytest.fixture
def relationship_service(storage, task_service):
    return DefaultRelationshipService(storage, DefaultSimilarityCache(), llm_service=None, task_service=task_service)


class TestNegationSignals:

    def test_can_eat_versus_allergic(self):
        assert ("can eat", "allergic") in negation_signals("I can eat peanuts now", "I'm allergic to peanuts")

    def test_contraction_not_matched_as_positive(self):
        # "can't" must not count as "can"
        assert negation_signals("I can't swim", "I can't swim") == []

    def test_both_directions(self):
        assert ("like", "hate") in negation_signals("I hate running", "I like running")


class TestLink:

    @pytest.mark.asyncio
    async def test_contradiction_edge_and_consolidation_queued(
            self, relationship_service, storage, task_service, make_entry, user_id):
        older = await storage.create_memory(make_entry(
            user_id, "I'm allergic to peanuts", category=MemoryCategory.PERSONAL_INFO,
            keywords=["allergic", "peanut"], created_at=utc_now() - timedelta(days=1)))
        newer = await storage.create_memory(make_entry(
            user_id, "I can eat peanuts now", category=MemoryCategory.PERSONAL_INFO, keywords=["eat", "peanut"]))

        edges = await relationship_service.link(newer, user_id)

        assert len(edges) == 1
        edge = edges[0]
        assert edge.type == RelationshipType.CONTRADICTS
        assert (edge.from_id, edge.to_id) == tuple(sorted((older.id, newer.id)))
        assert edge.metadata["newer_id"] == newer.id
        assert edge.metadata["resolved"] is False

        task_service.enqueue_task.assert_awaited_once()
        args, kwargs = task_service.enqueue_task.await_args
        assert args[0] == TaskType.CONSOLIDATION
        assert args[1]["user_id"] == user_id
        assert kwargs["priority"] == TaskPriority.LOW

    @pytest.mark.asyncio
    async def test_elaborates(self, relationship_service, storage, make_entry, user_id):
        base = await storage.create_memory(make_entry(
            user_id, "I prefer morning workouts", category=MemoryCategory.PREFERENCE,
            keywords=["prefer", "morning", "workout"]))
        detail = await storage.create_memory(make_entry(
            user_id, "I prefer morning workouts outdoors", category=MemoryCategory.PREFERENCE,
            keywords=["prefer", "morning", "workout", "outdoor"]))

        edges = await relationship_service.link(detail, user_id)

        assert [(e.type, e.from_id, e.to_id) for e in edges] == [(RelationshipType.ELABORATES, detail.id, base.id)]

    @pytest.mark.asyncio
    async def test_supports(self, relationship_service, storage, make_entry, user_id):
        await storage.create_memory(make_entry(
            user_id, "I enjoy swimming laps", category=MemoryCategory.PREFERENCE, keywords=["enjoy", "swimming"]))
        entry = await storage.create_memory(make_entry(
            user_id, "I enjoy swimming in the pool", category=MemoryCategory.PREFERENCE,
            keywords=["swimming", "pool"]))

        edges = await relationship_service.link(entry, user_id)

        assert [e.type for e in edges] == [RelationshipType.SUPPORTS]

    @pytest.mark.asyncio
    async def test_unrelated_and_other_users_not_linked(
            self, relationship_service, storage, task_service, make_entry, user_id):
        await storage.create_memory(make_entry(user_id, "I work night shifts", keywords=["work", "night", "shift"]))
        await storage.create_memory(make_entry("someone_else", "I'm allergic to peanuts",
                                               category=MemoryCategory.PERSONAL_INFO))
        entry = await storage.create_memory(make_entry(user_id, "I can eat peanuts now", keywords=["eat", "peanut"]))

        assert await relationship_service.link(entry, user_id) == []
        task_service.enqueue_task.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_max_links(self, storage, make_entry, user_id):
        service = DefaultRelationshipService(storage, DefaultSimilarityCache(), max_links=2)
        for i in range(4):
            await storage.create_memory(make_entry(user_id, f"I enjoy swimming laps {i}",
                                                   category=MemoryCategory.PREFERENCE))
        entry = await storage.create_memory(make_entry(user_id, "I enjoy swimming laps",
                                                       category=MemoryCategory.PREFERENCE))

        edges = await service.link(entry, user_id)

        assert len(edges) == 2

    @pytest.mark.asyncio
    async def test_llm_verdict_overrides_lexical_signals(self, storage, make_entry, user_id):
        llm = MagicMock()
        llm.is_available.return_value = True
        llm.synthesize = AsyncMock(return_value='{"contradicts": false, "confidence": 0.9}')
        service = DefaultRelationshipService(storage, DefaultSimilarityCache(), llm_service=llm)

        await storage.create_memory(make_entry(user_id, "I'm allergic to peanuts",
                                               category=MemoryCategory.PERSONAL_INFO, keywords=["allergic", "peanut"]))
        entry = await storage.create_memory(make_entry(user_id, "I can eat peanuts now",
                                                       category=MemoryCategory.PERSONAL_INFO, keywords=["eat", "peanut"]))

        edges = await service.link(entry, user_id)

        assert all(e.type != RelationshipType.CONTRADICTS for e in edges)
        assert llm.synthesize.await_args.kwargs["profile"] == "contradiction"

    @pytest.mark.asyncio
    async def test_get_graph(self, relationship_service, storage, make_entry, user_id):
        await storage.create_memory(make_entry(user_id, "I enjoy swimming laps", category=MemoryCategory.PREFERENCE))
        entry = await storage.create_memory(make_entry(user_id, "I enjoy swimming laps daily",
                                                       category=MemoryCategory.PREFERENCE))
        edges = await relationship_service.link(entry, user_id)

        assert [e.id for e in await relationship_service.get_graph(user_id)] == [e.id for e in edges]
        assert [e.id for e in await relationship_service.get_graph(user_id, entry.id)] == [e.id for e in edges]
