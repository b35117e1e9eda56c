"""Shared utilities for memory engine services."""

from .hashing import compute_content_hash, compute_semantic_hash, compute_text_semantic_hash, vector_pair_key
from .ids import generate_id
from .datetime import utc_now, parse_datetime_utc, ensure_utc, age_hours
from .vector_math import cosine_similarity, cosine_similarity_matrix
from .text import tokenize, extract_keywords, word_overlap_ratio, keyword_overlap
from .circuit_breaker import CircuitBreaker, CircuitOpenError, CircuitState

__all__ = [
    "compute_content_hash",
    "compute_semantic_hash",
    "compute_text_semantic_hash",
    "vector_pair_key",
    "generate_id",
    "utc_now",
    "parse_datetime_utc",
    "ensure_utc",
    "age_hours",
    "cosine_similarity",
    "cosine_similarity_matrix",
    "tokenize",
    "extract_keywords",
    "word_overlap_ratio",
    "keyword_overlap",
    "CircuitBreaker",
    "CircuitOpenError",
    "CircuitState",
]
