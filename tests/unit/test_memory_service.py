"""
End-to-end tests for MemoryService through the configured framework.

Storage is the session SQLite database, embeddings are the mock provider and
background tasks are drained inline with ``run_pending()``.
"""
import pytest

from memoryengine.models.memory import ConversationMessage, RelationshipType
from memoryengine.services.deduplication import DeduplicationAction
from memoryengine.services.tasks import TaskStatus, TaskType


async def _process(memory_service, user_id, message, **kwargs):
    result = await memory_service.process_message(user_id, message, **kwargs)
    assert result.error is None
    return result


class TestWritePath:

    @pytest.mark.asyncio
    async def test_explicit_request_creates_memory(self, memory_service, user_id):
        result = await _process(memory_service, user_id, "Please remember that I'm allergic to peanuts",
                                message_id="msg_1", conversation_id="conv_1")

        assert result.created == 1
        memory = result.decisions[0].memory
        assert "peanuts" in memory.content
        assert memory.embedding
        assert memory.metadata.get("source_message_id") == "msg_1"

        stored = await memory_service.get_memories(user_id)
        assert [m.id for m in stored] == [memory.id]

    @pytest.mark.asyncio
    async def test_repeat_is_skipped(self, memory_service, user_id):
        await _process(memory_service, user_id, "Please remember that I'm allergic to peanuts")

        again = await _process(memory_service, user_id, "Please remember that I'm allergic to peanuts")

        assert again.skipped == 1
        assert again.created == 0
        assert len(await memory_service.get_memories(user_id)) == 1

    @pytest.mark.asyncio
    async def test_small_talk_stores_nothing(self, memory_service, user_id):
        result = await _process(memory_service, user_id, "Thanks!")

        assert result.facts == []
        assert await memory_service.get_memories(user_id) == []

    @pytest.mark.asyncio
    async def test_contradiction_is_consolidated(self, memory_service, task_service, storage_backend, user_id):
        first = await _process(memory_service, user_id, "Please remember that I'm allergic to peanuts")
        older = first.decisions[0].memory

        second = await _process(memory_service, user_id, "Actually, I can eat peanuts now")

        assert second.created == 1
        newer = second.decisions[0].memory
        contradictions = [r for r in second.relationships if r.type == RelationshipType.CONTRADICTS]
        assert len(contradictions) == 1
        assert {contradictions[0].from_id, contradictions[0].to_id} == {older.id, newer.id}

        queued = task_service.list_tasks(task_type=TaskType.CONSOLIDATION.value, status=TaskStatus.PENDING)
        assert any(t.payload.get("user_id") == user_id for t in queued)

        await task_service.run_pending()

        supersedes = await storage_backend.get_user_relationships(user_id, [RelationshipType.SUPERSEDES])
        assert [(r.from_id, r.to_id) for r in supersedes] == [(newer.id, older.id)]
        assert (await storage_backend.get_memory(older.id)).metadata["superseded_by"] == newer.id

        results = await memory_service.retrieve(user_id, "What can't I eat?")
        scores = {r.memory.id: r.relevance_score for r in results}
        assert newer.id in scores
        if older.id in scores:
            assert scores[newer.id] > scores[older.id]


class TestReadPath:

    @pytest.mark.asyncio
    async def test_allergy_retrieved_for_food_question(self, memory_service, user_id):
        await _process(memory_service, user_id, "Please remember that I'm allergic to peanuts")
        await _process(memory_service, user_id, "I prefer morning workouts")

        results = await memory_service.retrieve(
            user_id, "What can't I eat?",
            conversation_context=[ConversationMessage(role="assistant", content="Let's plan your meals.")],
            coaching_mode="nutrition",
        )

        assert results
        assert "peanuts" in results[0].memory.content
        prompt = memory_service.format_for_prompt(results)
        assert "peanuts" in prompt

    @pytest.mark.asyncio
    async def test_unknown_user_gets_nothing(self, memory_service, user_id):
        assert await memory_service.retrieve(user_id, "What can't I eat?") == []


class TestBackgroundTasks:

    @pytest.mark.asyncio
    async def test_submit_message_processed_by_worker(self, memory_service, task_service, user_id):
        task_id = await memory_service.submit_message(user_id, "Please remember that I'm allergic to peanuts")

        assert task_id is not None
        await task_service.run_pending()

        task = task_service.get_task(task_id)
        assert task.status == TaskStatus.COMPLETED
        assert task.result["create"] == 1
        assert len(await memory_service.get_memories(user_id)) == 1

    @pytest.mark.asyncio
    async def test_submit_retrieval_returns_results(self, memory_service, task_service, user_id):
        await _process(memory_service, user_id, "Please remember that I'm allergic to peanuts")

        task_id = await memory_service.submit_retrieval(user_id, "What can't I eat?")
        await task_service.run_pending()

        rows = task_service.get_task(task_id).result
        assert rows
        assert "peanuts" in rows[0]["content"]

    @pytest.mark.asyncio
    async def test_similarity_task_ranks_user_memories(self, memory_service, task_service, user_id):
        first = await _process(memory_service, user_id, "Please remember that I'm allergic to peanuts")
        await _process(memory_service, user_id, "I work night shifts")

        task_id = await task_service.enqueue_task(
            TaskType.SIMILARITY.value, {"memory_id": first.decisions[0].memory.id, "top_k": 5})
        await task_service.run_pending()

        ranked = task_service.get_task(task_id).result
        assert len(ranked) == 1
        assert -1.0 <= ranked[0]["similarity"] <= 1.0

    @pytest.mark.asyncio
    async def test_similarity_task_with_raw_vectors(self, task_service):
        task_id = await task_service.enqueue_task(
            TaskType.SIMILARITY.value, {"query": [1.0, 0.0], "vectors": [[1.0, 0.0], [0.0, 1.0]]})
        await task_service.run_pending()

        assert task_service.get_task(task_id).result == pytest.approx([1.0, 0.0])


class TestManagement:

    @pytest.mark.asyncio
    async def test_delete_and_restore(self, memory_service, user_id):
        result = await _process(memory_service, user_id, "Please remember that I'm allergic to peanuts")
        memory_id = result.decisions[0].memory.id

        assert await memory_service.delete_memory(user_id, memory_id) is True
        assert await memory_service.get_memories(user_id) == []
        inactive = await memory_service.get_memories(user_id, include_inactive=True)
        assert "deleted_at" in inactive[0].metadata

        assert await memory_service.restore_memory(user_id, memory_id) is True
        restored = await memory_service.get_memories(user_id)
        assert [m.id for m in restored] == [memory_id]
        assert "deleted_at" not in restored[0].metadata

    @pytest.mark.asyncio
    async def test_delete_other_users_memory_refused(self, memory_service, user_id):
        result = await _process(memory_service, user_id, "Please remember that I'm allergic to peanuts")

        assert await memory_service.delete_memory("someone_else", result.decisions[0].memory.id) is False
        assert len(await memory_service.get_memories(user_id)) == 1

    @pytest.mark.asyncio
    async def test_consolidate_user(self, memory_service, user_id):
        await _process(memory_service, user_id, "Please remember that I'm allergic to peanuts")

        result = await memory_service.consolidate(user_id)

        assert result.skipped is False
        assert result.contradictions_resolved == 0

    @pytest.mark.asyncio
    async def test_stats(self, memory_service, user_id):
        await _process(memory_service, user_id, "Please remember that I'm allergic to peanuts")

        stats = memory_service.get_stats()

        assert stats.total_embedding_operations > 0
        assert stats.max_workers >= 1
