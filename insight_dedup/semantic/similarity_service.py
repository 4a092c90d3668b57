"""
Semantic Similarity Service - Cosine similarity between insight embeddings.

Pure, stateless numpy code with no I/O. The Cluster Builder uses it for two
questions:

- Which existing unique insight (if any) is this raw insight closest to?
- Which insights in the current batch are neighbours of each other?

Batches are a few hundred insights, so the full pairwise matrix is computed
in one vectorized step. An approximate-nearest-neighbour index can replace
``SemanticSimilarityService`` as long as it answers the same two questions.

References:
- Cosine similarity: measures angle between vectors (higher = more similar)
"""
from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

import numpy as np
from loguru import logger


class SimilarityError(ValueError):
    """Vectors cannot be compared (dimension mismatch, empty, zero or non-finite vector)."""


@dataclass
class SimilarityMatch:
    """The closest candidate to a vector and its similarity score."""

    candidate_id: Any
    similarity_score: float

    def passes(self, threshold: float) -> bool:
        return self.similarity_score >= threshold


def _as_vector(value: Sequence[float] | np.ndarray) -> np.ndarray:
    vector = np.asarray(value, dtype=np.float64)
    if vector.ndim != 1 or vector.size == 0:
        raise SimilarityError(f"Expected a non-empty 1-D vector, got shape {vector.shape}")
    if not np.all(np.isfinite(vector)):
        raise SimilarityError("Vector contains NaN or infinite values")
    return vector


def cosine_similarity(
    emb1: Sequence[float] | np.ndarray,
    emb2: Sequence[float] | np.ndarray,
) -> float:
    """
    Calculate cosine similarity between two embeddings.

    Args:
        emb1: First embedding vector.
        emb2: Second embedding vector.

    Returns:
        Cosine similarity score between -1 and 1.

    Raises:
        SimilarityError: On dimension mismatch, a zero-magnitude vector, or
            NaN/inf components.
    """
    v1 = _as_vector(emb1)
    v2 = _as_vector(emb2)

    if v1.shape != v2.shape:
        raise SimilarityError(f"Dimension mismatch: {v1.shape[0]} vs {v2.shape[0]}")

    norm1 = np.linalg.norm(v1)
    norm2 = np.linalg.norm(v2)
    if norm1 == 0 or norm2 == 0:
        raise SimilarityError("Cannot compare a zero-magnitude vector")

    score = float(np.dot(v1, v2) / (norm1 * norm2))
    # Float error can push identical vectors slightly past 1.0
    return max(-1.0, min(1.0, score))


def cosine_distance(emb1: Sequence[float] | np.ndarray, emb2: Sequence[float] | np.ndarray) -> float:
    """Cosine distance (1 - similarity), between 0 and 2."""
    return 1.0 - cosine_similarity(emb1, emb2)


def normalize_rows(matrix: np.ndarray) -> np.ndarray:
    """Scale every row to unit length, rejecting zero or non-finite rows."""
    if matrix.ndim != 2 or matrix.shape[0] == 0 or matrix.shape[1] == 0:
        raise SimilarityError(f"Expected a non-empty 2-D matrix, got shape {matrix.shape}")
    if not np.all(np.isfinite(matrix)):
        raise SimilarityError("Matrix contains NaN or infinite values")

    norms = np.linalg.norm(matrix, axis=1)
    if np.any(norms == 0):
        raise SimilarityError("Cannot compare a zero-magnitude vector")
    return matrix / norms[:, np.newaxis]


def similarity_matrix(vectors: Sequence[np.ndarray]) -> np.ndarray:
    """
    Pairwise cosine similarity for a batch of equal-length vectors.

    Returns:
        Symmetric (n, n) matrix with ones on the diagonal.
    """
    if not vectors:
        return np.zeros((0, 0))

    dims = {len(v) for v in vectors}
    if len(dims) != 1:
        raise SimilarityError(f"Dimension mismatch in batch: {sorted(dims)}")

    unit = normalize_rows(np.vstack([_as_vector(v) for v in vectors]))
    matrix = np.clip(unit @ unit.T, -1.0, 1.0)
    np.fill_diagonal(matrix, 1.0)
    return matrix


class SemanticSimilarityService:
    """
    Candidate search used by the Cluster Builder.

    Example:
        >>> service = SemanticSimilarityService()
        >>> match = service.best_existing_match(vec, [(unique_id, canonical_vec)])
        >>> if match and match.passes(0.9):
        ...     print(f"merge into {match.candidate_id} ({match.similarity_score:.2f})")
    """

    def best_existing_match(
        self,
        vector: np.ndarray,
        candidates: Sequence[tuple[Any, np.ndarray]],
    ) -> SimilarityMatch | None:
        """
        Find the candidate with the highest similarity to ``vector``.

        Ties on score are broken by the lower candidate id so results are
        deterministic. Candidates with an incompatible vector are skipped.

        Args:
            vector: Embedding to match.
            candidates: (id, embedding) pairs, e.g. unique insights with their
                canonical embedding.

        Returns:
            Best SimilarityMatch, or None when there are no comparable candidates.
        """
        best: SimilarityMatch | None = None

        for candidate_id, candidate_vector in candidates:
            try:
                score = cosine_similarity(vector, candidate_vector)
            except SimilarityError as e:
                logger.debug(f"Skipping candidate {candidate_id}: {e}")
                continue

            if (
                best is None
                or score > best.similarity_score
                or (score == best.similarity_score and candidate_id < best.candidate_id)
            ):
                best = SimilarityMatch(candidate_id=candidate_id, similarity_score=score)

        return best

    def neighbors(
        self,
        matrix: np.ndarray,
        index: int,
        among: Sequence[int],
        threshold: float,
    ) -> list[int]:
        """
        Indices from ``among`` whose similarity to ``index`` reaches ``threshold``.

        Order of ``among`` is preserved.
        """
        return [j for j in among if j != index and matrix[index, j] >= threshold]

    def mean_similarity(self, matrix: np.ndarray, index: int, group: Sequence[int]) -> float:
        """Mean similarity of ``index`` to the other members of ``group``."""
        others = [j for j in group if j != index]
        if not others:
            return 1.0
        return float(np.mean(matrix[index, others]))
