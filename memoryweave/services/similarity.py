"""
Vector math for memory retrieval.

Embeddings are stored as plain JSON arrays, so similarity is computed in
process. ``SimilarityIndex`` is the seam for swapping the brute-force scan for
an approximate nearest-neighbour index without touching search callers.
"""

from __future__ import annotations

from typing import Dict, Mapping, Optional, Protocol, Sequence

import numpy as np

from memoryweave.errors import DimensionMismatchError, EmptyInputError
from memoryweave.services.memory_shared import logger


def _as_array(vector: Sequence[float]) -> np.ndarray:
    return np.asarray(vector, dtype=np.float64).reshape(-1)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine of the angle between ``a`` and ``b``; 0.0 if either is all zeros."""
    va = _as_array(a)
    vb = _as_array(b)
    if va.shape[0] != vb.shape[0]:
        raise DimensionMismatchError(va.shape[0], vb.shape[0])
    norm_a = float(np.linalg.norm(va))
    norm_b = float(np.linalg.norm(vb))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    value = float(np.dot(va, vb) / (norm_a * norm_b))
    # Rounding can push parallel vectors a hair past 1.
    return max(-1.0, min(1.0, value))


def centroid(vectors: Sequence[Sequence[float]]) -> list[float]:
    """Element-wise mean of equal-length vectors."""
    if len(vectors) == 0:
        raise EmptyInputError("cannot compute centroid of an empty vector set")
    expected = len(vectors[0])
    for vector in vectors[1:]:
        if len(vector) != expected:
            raise DimensionMismatchError(expected, len(vector))
    matrix = np.asarray(vectors, dtype=np.float64)
    return matrix.mean(axis=0).tolist()


class SimilarityIndex(Protocol):
    def score(
        self,
        query_vector: Sequence[float],
        candidates: Mapping[str, Sequence[float]],
    ) -> Dict[str, float]:
        ...


class BruteForceIndex:
    """Scores every candidate with a single matrix product."""

    def score(
        self,
        query_vector: Sequence[float],
        candidates: Mapping[str, Sequence[float]],
    ) -> Dict[str, float]:
        query = _as_array(query_vector)
        dim = query.shape[0]
        ids = []
        rows = []
        for memory_id, vector in candidates.items():
            if vector is None:
                continue
            if len(vector) != dim:
                logger.warning(
                    "similarity_dimension_skip",
                    extra={"memory_id": memory_id, "expected": dim, "actual": len(vector)},
                )
                continue
            ids.append(memory_id)
            rows.append(vector)
        if not ids:
            return {}
        matrix = np.asarray(rows, dtype=np.float64)
        query_norm = float(np.linalg.norm(query))
        if query_norm == 0.0:
            return {memory_id: 0.0 for memory_id in ids}
        row_norms = np.linalg.norm(matrix, axis=1)
        dots = matrix @ query
        with np.errstate(divide="ignore", invalid="ignore"):
            scores = np.where(row_norms > 0, dots / (row_norms * query_norm), 0.0)
        scores = np.clip(scores, -1.0, 1.0)
        return {memory_id: float(value) for memory_id, value in zip(ids, scores)}


def pairwise_similarity(vectors: Sequence[Sequence[float]]) -> Optional[np.ndarray]:
    """Cosine similarity matrix for equal-length vectors, None for no input."""
    if len(vectors) == 0:
        return None
    expected = len(vectors[0])
    for vector in vectors[1:]:
        if len(vector) != expected:
            raise DimensionMismatchError(expected, len(vector))
    matrix = np.asarray(vectors, dtype=np.float64)
    norms = np.linalg.norm(matrix, axis=1)
    safe = np.where(norms > 0, norms, 1.0)
    unit = matrix / safe[:, None]
    sims = unit @ unit.T
    zero_rows = norms == 0
    sims[zero_rows, :] = 0.0
    sims[:, zero_rows] = 0.0
    return np.clip(sims, -1.0, 1.0)
