"""Cosine similarity on embeddings, single pair and one-against-many."""
from typing import Sequence

import numpy as np


def cosine_similarity(vec1: Sequence[float], vec2: Sequence[float]) -> float:
    """Cosine in [-1, 1]; mismatched widths and zero vectors score 0.0."""
    if len(vec1) != len(vec2):
        return 0.0
    return float(cosine_similarity_matrix(vec1, np.asarray([vec2], dtype=np.float64))[0])


def cosine_similarity_matrix(query: Sequence[float], matrix: np.ndarray) -> np.ndarray:
    """Cosine similarity of ``query`` against every row of ``matrix``.

    Zero-norm rows score 0.0.
    """
    q = np.asarray(query, dtype=np.float64)
    q_norm = np.linalg.norm(q)
    if matrix.size == 0 or q_norm == 0:
        return np.zeros(matrix.shape[0], dtype=np.float64)
    row_norms = np.linalg.norm(matrix, axis=1)
    dots = matrix @ q
    with np.errstate(divide='ignore', invalid='ignore'):
        scores = np.where(row_norms > 0, dots / (row_norms * q_norm), 0.0)
    return scores
