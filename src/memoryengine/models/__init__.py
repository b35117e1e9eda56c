"""Domain models for the memory engine."""
from .memory import (
    MemoryCategory,
    RelationshipType,
    ConversationMessage,
    MemoryEntry,
    MemoryRelationship,
    AtomicFact,
    RetrievalReason,
    RetrievalResult,
)
from .llm import LLMRole, LLMMessage, LLMRequest, LLMResponse

__all__ = [
    "MemoryCategory",
    "RelationshipType",
    "ConversationMessage",
    "MemoryEntry",
    "MemoryRelationship",
    "AtomicFact",
    "RetrievalReason",
    "RetrievalResult",
    "LLMRole",
    "LLMMessage",
    "LLMRequest",
    "LLMResponse",
]
