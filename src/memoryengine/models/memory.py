"""
Memory domain models for the memory engine.

Defines memory categories, atomic facts, stored memory entries, the relationship
graph edges between entries and retrieval results.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


class MemoryCategory(str, Enum):
    """What a memory is about."""

    PREFERENCE = "preference"  # likes, dislikes, preferred styles
    PERSONAL_INFO = "personal_info"  # health, identity, constraints, goals
    CONTEXT = "context"  # situational facts (schedule, equipment, circumstances)
    INSTRUCTION = "instruction"  # how the assistant should behave


class RelationshipType(str, Enum):
    """Typed edge between two memory entries."""

    SUPPORTS = "supports"  # consistent information that reinforces the other entry
    CONTRADICTS = "contradicts"  # incompatible facts; resolved by consolidation
    ELABORATES = "elaborates"  # adds detail to the other entry
    SUPERSEDES = "supersedes"  # replaces the other entry (newer wins)
    RELATED = "related"  # topical neighbours


def normalize_keywords(keywords: list[str]) -> list[str]:
    """Lowercase keywords and drop duplicates while keeping first-seen order."""
    seen: dict[str, None] = {}
    for kw in keywords:
        kw = kw.lower().strip()
        if kw:
            seen.setdefault(kw, None)
    return list(seen)


class ConversationMessage(BaseModel):
    """One prior turn of the conversation, used as extraction and retrieval context."""

    role: str = Field("user", description="Speaker role (user or assistant)")
    content: str = Field(..., description="Message text")


class MemoryEntry(BaseModel):
    """A stored fact about a user.

    Inactive entries are excluded from retrieval but remain stored for audit and
    undo; the engine never hard-deletes entries on its own.
    """

    model_config = {"from_attributes": True}

    # Identity
    id: str = Field(..., description="Unique memory identifier")
    user_id: str = Field(..., description="User this memory belongs to")

    # Content
    content: str = Field(..., description="The fact text")
    category: MemoryCategory = Field(MemoryCategory.CONTEXT, description="Memory category")
    importance: float = Field(0.5, ge=0.0, le=1.0, description="Importance (0.0-1.0)")
    keywords: list[str] = Field(default_factory=list, description="Salient keywords, ordered and de-duplicated")

    # Similarity
    embedding: Optional[list[float]] = Field(None, description="Vector embedding, absent when embedding failed")
    semantic_hash: Optional[str] = Field(None, description="Quantized embedding fingerprint (or text hash)")

    # Lifecycle & access tracking
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    last_accessed: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    access_count: int = Field(0, ge=0)
    update_count: int = Field(1, ge=1)
    is_active: bool = Field(True)

    metadata: dict[str, Any] = Field(default_factory=dict, description="Provenance, confidence, consolidation markers")

    @field_validator("content")
    @classmethod
    def content_not_empty(cls, v: str) -> str:
        """Validate that content is not empty."""
        if not v or not v.strip():
            raise ValueError("Memory content cannot be empty")
        return v.strip()

    @field_validator("keywords")
    @classmethod
    def validate_keywords(cls, v: list[str]) -> list[str]:
        return normalize_keywords(v)

    @property
    def is_superseded(self) -> bool:
        return bool(self.metadata.get("superseded_by"))


class MemoryRelationship(BaseModel):
    """Typed, directed edge between two memory entries of the same user.

    ``contradicts`` edges are stored once per pair with ``from_id < to_id``;
    ``supersedes`` edges point from the winning entry to the superseded one.
    """

    model_config = {"from_attributes": True}

    id: str = Field(..., description="Unique relationship identifier")
    user_id: str = Field(..., description="Owner of both endpoints")
    from_id: str = Field(..., description="Source memory ID")
    to_id: str = Field(..., description="Target memory ID")
    type: RelationshipType = Field(..., description="Relationship type")
    confidence: float = Field(0.5, ge=0.0, le=1.0)
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @model_validator(mode="after")
    def validate_endpoints(self) -> "MemoryRelationship":
        """Reject self-edges."""
        if self.from_id == self.to_id:
            raise ValueError("Relationship cannot connect a memory to itself")
        return self


@dataclass
class AtomicFact:
    """A single self-contained assertion extracted from a message."""

    text: str
    category: MemoryCategory
    confidence: float
    source_message_id: Optional[str] = None
    source_conversation_id: Optional[str] = None
    importance: float = 0.5
    keywords: list[str] = field(default_factory=list)
    explicit: bool = False  # created by an explicit "remember this" request


class RetrievalReason(str, Enum):
    """Dominant reason a memory was returned."""

    SEMANTIC_MATCH = "semantic_match"
    GRAPH_CONNECTION = "graph_connection"
    HIGH_IMPORTANCE = "high_importance"
    TEMPORAL_RELEVANCE = "temporal_relevance"
    CONTEXTUAL_RELEVANCE = "contextual_relevance"
    GENERAL_RELEVANCE = "general_relevance"
    FALLBACK_TEXT_MATCH = "fallback_text_match"


@dataclass
class RetrievalResult:
    """A memory returned by contextual retrieval with its score breakdown."""

    memory: MemoryEntry
    relevance_score: float
    retrieval_reason: RetrievalReason
    semantic_score: float = 0.0
    recency_score: float = 0.0
    contextual_score: float = 0.0
    graph_boost: float = 0.0
