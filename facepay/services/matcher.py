"""
Embedding matcher for face verification.

Similarity is derived from Euclidean distance as ``max(0, 1 - distance)``.
The score is not normalized by dimensionality, so the threshold has to be
calibrated against the embedding model's distance scale.
"""

import logging
from typing import Optional, Sequence

import numpy as np

from facepay.exceptions import DimensionMismatchError, InputError
from facepay.models.internal_models import EmbeddingVector, MatchResult

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 0.6


def _as_vector(embedding, name: str) -> np.ndarray:
    if embedding is None:
        raise InputError(f"{name} embedding is required for comparison")
    if isinstance(embedding, EmbeddingVector):
        embedding = embedding.vector

    vector = np.asarray(embedding, dtype=np.float64)
    if vector.ndim != 1 or vector.shape[0] == 0:
        raise InputError(f"{name} embedding must be a non-empty one-dimensional vector")
    if not np.isfinite(vector).all():
        raise InputError(f"{name} embedding contains non-finite values")
    return vector


class EmbeddingMatcher:
    """Stateless comparison of face embeddings against a threshold."""

    def __init__(self, threshold: float = DEFAULT_THRESHOLD):
        """
        Initialize the matcher.

        Args:
            threshold: Minimum similarity accepted as a match

        Raises:
            ValueError: If threshold is outside [0, 1]
        """
        if not 0.0 <= threshold <= 1.0:
            raise ValueError(f"Threshold must be between 0.0 and 1.0, got: {threshold}")
        self.threshold = threshold

    def similarity_from_distance(self, distance: float) -> float:
        return max(0.0, 1.0 - distance)

    def is_match(self, similarity: float) -> bool:
        return similarity >= self.threshold

    def compare(self, embedding1, embedding2) -> MatchResult:
        """
        Compare two embeddings.

        Args:
            embedding1: First embedding (EmbeddingVector or sequence of floats)
            embedding2: Second embedding

        Returns:
            MatchResult with distance, similarity and match decision

        Raises:
            InputError: If either embedding is missing or empty
            DimensionMismatchError: If the embeddings differ in length
        """
        a = _as_vector(embedding1, "First")
        b = _as_vector(embedding2, "Second")

        if a.shape != b.shape:
            raise DimensionMismatchError(f"Embedding dimensions don't match: {a.shape[0]} vs {b.shape[0]}")

        distance = float(np.linalg.norm(a - b))
        similarity = self.similarity_from_distance(distance)

        logger.debug(f"Compared embeddings: distance={distance:.4f}, similarity={similarity:.4f}")
        return MatchResult(
            distance=distance,
            similarity=similarity,
            is_match=self.is_match(similarity),
            threshold=self.threshold,
            best_embedding_id=embedding2.id if isinstance(embedding2, EmbeddingVector) else None,
        )

    def closest(self, probe, candidates: Sequence[EmbeddingVector]) -> Optional[MatchResult]:
        """
        Find the closest candidate regardless of threshold.

        Distances are computed in one batch. The first candidate with the
        strictly greatest similarity wins ties.

        Returns:
            MatchResult for the closest candidate, or None if there are no candidates
        """
        if not candidates:
            return None

        p = _as_vector(probe, "Probe")
        vectors = [_as_vector(c, "Candidate") for c in candidates]
        for vector in vectors:
            if vector.shape != p.shape:
                raise DimensionMismatchError(
                    f"Embedding dimensions don't match: {p.shape[0]} vs {vector.shape[0]}"
                )

        matrix = np.vstack(vectors)
        distances = np.linalg.norm(matrix - p, axis=1)
        similarities = np.maximum(0.0, 1.0 - distances)

        # argmax returns the first index among equal maxima
        best_index = int(np.argmax(similarities))
        best = candidates[best_index]
        similarity = float(similarities[best_index])

        return MatchResult(
            distance=float(distances[best_index]),
            similarity=similarity,
            is_match=self.is_match(similarity),
            threshold=self.threshold,
            best_embedding_id=best.id if isinstance(best, EmbeddingVector) else None,
        )

    def find_best_match(self, probe, candidates: Sequence[EmbeddingVector]) -> Optional[MatchResult]:
        """
        Find the best matching candidate for a probe embedding.

        Args:
            probe: Probe embedding
            candidates: Enrolled embeddings to search

        Returns:
            MatchResult of the best candidate, or None if there are no
            candidates or the best similarity is below the threshold
        """
        best = self.closest(probe, candidates)
        if best is None:
            logger.debug("No candidates to match against")
            return None

        if not best.is_match:
            logger.debug(f"Best candidate below threshold: similarity={best.similarity:.4f}, threshold={self.threshold}")
            return None

        return best

