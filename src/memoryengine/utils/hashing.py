"""Content and embedding hashing utilities for deduplication and caching."""

from hashlib import md5, sha256
from typing import Sequence

# number of leading embedding dimensions used for fingerprints
FINGERPRINT_DIMENSIONS = 10
SEMANTIC_HASH_LENGTH = 64


def compute_content_hash(content: str) -> str:
    """Compute SHA-256 hash of normalized content.

    Content is lowercased and stripped so that trivially different spellings of
    the same text share a hash.

    Args:
        content: The text content to hash

    Returns:
        Hexadecimal SHA-256 hash string
    """
    return sha256(content.strip().lower().encode()).hexdigest()


def compute_semantic_hash(embedding: Sequence[float]) -> str:
    """Quantized fingerprint of an embedding.

    The first ten dimensions are scaled by 1000, rounded and joined with ``|``;
    the result is truncated to 64 characters. Identical texts embed to identical
    vectors and therefore identical hashes, which gives deduplication an exact
    match pre-filter before the full similarity scan.
    """
    parts = [str(round(x * 1000)) for x in embedding[:FINGERPRINT_DIMENSIONS]]
    return "|".join(parts)[:SEMANTIC_HASH_LENGTH]


def compute_text_semantic_hash(content: str) -> str:
    """Fallback semantic hash for entries stored without an embedding."""
    return f"text:{compute_content_hash(content)}"[:SEMANTIC_HASH_LENGTH]


def vector_fingerprint(embedding: Sequence[float]) -> str:
    """MD5 of the first ten dimensions formatted to three decimals."""
    head = "|".join("%.3f" % x for x in embedding[:FINGERPRINT_DIMENSIONS])
    return md5(head.encode()).hexdigest()


def vector_pair_key(vec_a: Sequence[float], vec_b: Sequence[float]) -> str:
    """Order-independent cache key for a pair of vectors."""
    fa, fb = vector_fingerprint(vec_a), vector_fingerprint(vec_b)
    if fa > fb:
        fa, fb = fb, fa
    return f"{fa}:{fb}"
