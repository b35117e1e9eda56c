"""Unit tests for core memory models."""
import pytest
from pydantic import ValidationError

from memoryengine.models.memory import (
    MemoryCategory, MemoryEntry, MemoryRelationship, RelationshipType, normalize_keywords,
)


class TestMemoryEntry:

    def test_defaults(self):
        entry = MemoryEntry(id="mem_1", user_id="user_1", content="  I prefer morning workouts  ")

        assert entry.content == "I prefer morning workouts"
        assert entry.category == MemoryCategory.CONTEXT
        assert entry.importance == 0.5
        assert entry.update_count == 1
        assert entry.is_active
        assert entry.embedding is None
        assert not entry.is_superseded

    def test_blank_content_rejected(self):
        with pytest.raises(ValidationError):
            MemoryEntry(id="mem_1", user_id="user_1", content="   ")

    @pytest.mark.parametrize("importance", [-0.1, 1.1])
    def test_importance_bounds(self, importance):
        with pytest.raises(ValidationError):
            MemoryEntry(id="mem_1", user_id="user_1", content="fact", importance=importance)

    def test_keywords_normalized(self):
        entry = MemoryEntry(id="mem_1", user_id="user_1", content="fact", keywords=["Peanut", "peanut ", "", "Eat"])

        assert entry.keywords == ["peanut", "eat"]

    def test_superseded_flag(self):
        entry = MemoryEntry(id="mem_1", user_id="user_1", content="fact", metadata={"superseded_by": "mem_2"})

        assert entry.is_superseded

    def test_normalize_keywords_keeps_order(self):
        assert normalize_keywords(["b", "A", "a", "c"]) == ["b", "a", "c"]


class TestMemoryRelationship:

    def test_self_edge_rejected(self):
        with pytest.raises(ValidationError):
            MemoryRelationship(id="rel_1", user_id="user_1", from_id="mem_1", to_id="mem_1",
                               type=RelationshipType.SUPPORTS)

    def test_confidence_bounds(self):
        with pytest.raises(ValidationError):
            MemoryRelationship(id="rel_1", user_id="user_1", from_id="mem_1", to_id="mem_2",
                               type=RelationshipType.RELATED, confidence=1.5)

    def test_type_from_string(self):
        edge = MemoryRelationship(id="rel_1", user_id="user_1", from_id="mem_1", to_id="mem_2", type="contradicts")

        assert edge.type == RelationshipType.CONTRADICTS
