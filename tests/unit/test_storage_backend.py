"""Unit tests for the storage backends (in-memory and SQLite)."""
import pytest
import pytest_asyncio

from memoryengine.models.memory import MemoryCategory, MemoryRelationship, RelationshipType
from memoryengine.services.storage.in_memory import MemoryStorageBackend
from memoryengine.services.storage.sqlite import SQLiteStorageBackend
from memoryengine.utils import generate_id


@pytest_asyncio.fixture(params=["memory", "sqlite"])
async def backend(request, tmp_path):
    if request.param == "memory":
        storage = MemoryStorageBackend()
    else:
        storage = SQLiteStorageBackend(db_path=str(tmp_path / "memories.db"))
    await storage.connect()
    yield storage
    await storage.disconnect()


def _edge(user_id: str, from_id: str, to_id: str, rel_type=RelationshipType.SUPPORTS) -> MemoryRelationship:
    return MemoryRelationship(
        id=generate_id("rel"), user_id=user_id, from_id=from_id, to_id=to_id, type=rel_type, confidence=0.8,
    )


class TestMemoryOperations:

    @pytest.mark.asyncio
    async def test_create_and_get(self, backend, make_entry, user_id):
        entry = make_entry(user_id, "I'm allergic to peanuts", category=MemoryCategory.PERSONAL_INFO,
                           importance=0.9, keywords=["Allergic", "peanut", "allergic"],
                           embedding=[0.1, 0.2, 0.3])
        await backend.create_memory(entry)

        loaded = await backend.get_memory(entry.id)

        assert loaded is not None
        assert loaded.content == "I'm allergic to peanuts"
        assert loaded.category == MemoryCategory.PERSONAL_INFO
        assert loaded.keywords == ["allergic", "peanut"]
        assert loaded.embedding == pytest.approx([0.1, 0.2, 0.3])

    @pytest.mark.asyncio
    async def test_get_missing(self, backend):
        assert await backend.get_memory("mem_missing") is None

    @pytest.mark.asyncio
    async def test_update(self, backend, make_entry, user_id):
        entry = await backend.create_memory(make_entry(user_id, "Trains on Mondays"))

        updated = await backend.update_memory(entry.id, content="Trains on Mondays and Thursdays",
                                              update_count=2, metadata={"merged": True})

        assert updated.content == "Trains on Mondays and Thursdays"
        assert updated.update_count == 2
        assert updated.metadata == {"merged": True}
        assert await backend.update_memory("mem_missing", update_count=3) is None

    @pytest.mark.asyncio
    async def test_soft_delete_keeps_entry(self, backend, make_entry, user_id):
        entry = await backend.create_memory(make_entry(user_id, "Owns a kettlebell"))

        assert await backend.delete_memory(entry.id) is True

        assert await backend.list_memories(user_id) == []
        inactive = await backend.list_memories(user_id, active_only=False)
        assert [m.id for m in inactive] == [entry.id]
        assert inactive[0].is_active is False

    @pytest.mark.asyncio
    async def test_hard_delete(self, backend, make_entry, user_id):
        entry = await backend.create_memory(make_entry(user_id, "Owns a kettlebell"))

        assert await backend.delete_memory(entry.id, hard=True) is True
        assert await backend.get_memory(entry.id) is None
        assert await backend.delete_memory(entry.id, hard=True) is False

    @pytest.mark.asyncio
    async def test_list_scoped_to_user(self, backend, make_entry, user_id):
        await backend.create_memory(make_entry(user_id, "Mine"))
        await backend.create_memory(make_entry("someone_else", "Theirs"))

        memories = await backend.list_memories(user_id)

        assert [m.content for m in memories] == ["Mine"]
        assert user_id in await backend.list_user_ids()

    @pytest.mark.asyncio
    async def test_find_by_semantic_hash_and_content(self, backend, make_entry, user_id):
        entry = await backend.create_memory(make_entry(user_id, "Prefers morning workouts", semantic_hash="1|2|3"))

        by_hash = await backend.find_by_semantic_hash(user_id, "1|2|3")
        by_content = await backend.find_by_content(user_id, "  prefers MORNING workouts ")

        assert [m.id for m in by_hash] == [entry.id]
        assert by_content is not None and by_content.id == entry.id
        assert await backend.find_by_semantic_hash("someone_else", "1|2|3") == []

    @pytest.mark.asyncio
    async def test_record_access(self, backend, make_entry, user_id):
        entry = await backend.create_memory(make_entry(user_id, "Likes oatmeal"))

        await backend.record_access([entry.id])
        await backend.record_access([entry.id])

        loaded = await backend.get_memory(entry.id)
        assert loaded.access_count == 2
        assert loaded.last_accessed >= entry.last_accessed


class TestRelationshipOperations:

    @pytest.mark.asyncio
    async def test_create_is_idempotent(self, backend, make_entry, user_id):
        a = await backend.create_memory(make_entry(user_id, "Runs 5k"))
        b = await backend.create_memory(make_entry(user_id, "Runs 5k every Sunday"))

        first = await backend.create_relationship(_edge(user_id, b.id, a.id))
        second = await backend.create_relationship(_edge(user_id, b.id, a.id))

        assert second.id == first.id
        assert len(await backend.get_user_relationships(user_id)) == 1

    @pytest.mark.asyncio
    async def test_query_by_memory_and_type(self, backend, make_entry, user_id):
        a = await backend.create_memory(make_entry(user_id, "A fact"))
        b = await backend.create_memory(make_entry(user_id, "B fact"))
        c = await backend.create_memory(make_entry(user_id, "C fact"))
        await backend.create_relationship(_edge(user_id, a.id, b.id, RelationshipType.SUPPORTS))
        await backend.create_relationship(_edge(user_id, b.id, c.id, RelationshipType.CONTRADICTS))

        touching_b = await backend.get_relationships([b.id])
        contradictions = await backend.get_user_relationships(user_id, types=[RelationshipType.CONTRADICTS])

        assert len(touching_b) == 2
        assert [(r.from_id, r.to_id) for r in contradictions] == [(b.id, c.id)]
        assert await backend.get_relationships([]) == []

    @pytest.mark.asyncio
    async def test_update_relationship_metadata(self, backend, make_entry, user_id):
        a = await backend.create_memory(make_entry(user_id, "A fact"))
        b = await backend.create_memory(make_entry(user_id, "B fact"))
        rel = await backend.create_relationship(_edge(user_id, a.id, b.id, RelationshipType.CONTRADICTS))

        updated = await backend.update_relationship(rel.id, metadata={"resolved": True})

        assert updated.metadata == {"resolved": True}

    def test_self_edge_rejected(self, user_id):
        with pytest.raises(ValueError):
            _edge(user_id, "mem_1", "mem_1")
