"""
Tests for the embedding matcher.
"""

from datetime import datetime

import numpy as np
import pytest

from facepay.exceptions import DimensionMismatchError, InputError
from facepay.models.internal_models import EmbeddingVector
from facepay.services.matcher import DEFAULT_THRESHOLD, EmbeddingMatcher

from conftest import unit_vector


def enrolled(vector, embedding_id: str) -> EmbeddingVector:
    return EmbeddingVector(
        vector=np.asarray(vector, dtype=np.float64),
        detector_confidence=0.99,
        enrolled_at=datetime(2024, 1, 1),
        user_id="user-1",
        id=embedding_id,
    )


class TestEmbeddingMatcher:
    """Test cases for EmbeddingMatcher."""

    @pytest.fixture
    def matcher(self):
        return EmbeddingMatcher()

    def test_default_threshold(self, matcher):
        assert matcher.threshold == DEFAULT_THRESHOLD == 0.6

    @pytest.mark.parametrize("threshold", [-0.1, 1.5])
    def test_invalid_threshold(self, threshold):
        with pytest.raises(ValueError):
            EmbeddingMatcher(threshold)

    def test_compare_is_symmetric(self, matcher, rng):
        a, b = rng.standard_normal(128), rng.standard_normal(128)

        forward = matcher.compare(a, b)
        backward = matcher.compare(b, a)

        assert forward.distance == pytest.approx(backward.distance)
        assert forward.similarity == pytest.approx(backward.similarity)

    def test_self_match(self, matcher, rng):
        vector = unit_vector(rng)

        result = matcher.compare(vector, vector)

        assert result.distance == 0.0
        assert result.similarity == 1.0
        assert result.is_match is True

    def test_similarity_floors_at_zero(self, matcher):
        result = matcher.compare([0.0, 0.0], [3.0, 4.0])

        assert result.distance == pytest.approx(5.0)
        assert result.similarity == 0.0
        assert result.is_match is False

    def test_threshold_boundary_is_inclusive(self, matcher):
        assert matcher.is_match(0.6) is True
        assert matcher.is_match(0.5999999) is False

        at_threshold = matcher.compare([0.0], [0.4])
        assert at_threshold.similarity == 0.6
        assert at_threshold.is_match is True

        just_below = matcher.compare([0.0], [0.40000001])
        assert just_below.is_match is False

    def test_dimension_mismatch(self, matcher):
        with pytest.raises(DimensionMismatchError):
            matcher.compare([0.1, 0.2, 0.3], [0.1, 0.2])

    def test_dimension_mismatch_is_input_error(self, matcher):
        with pytest.raises(InputError):
            matcher.compare([0.1], [0.1, 0.2])

    @pytest.mark.parametrize("bad", [None, [], [[0.1, 0.2]], [float("nan")]])
    def test_invalid_embeddings(self, matcher, bad):
        with pytest.raises(InputError):
            matcher.compare(bad, [0.1])

    def test_compare_reports_embedding_id(self, matcher):
        result = matcher.compare([0.1, 0.2], enrolled([0.1, 0.2], "emb-1"))
        assert result.best_embedding_id == "emb-1"


class TestFindBestMatch:
    """Tests for searching a reference set."""

    @pytest.fixture
    def matcher(self):
        return EmbeddingMatcher(threshold=0.6)

    def test_empty_candidates(self, matcher, rng):
        assert matcher.find_best_match(unit_vector(rng), []) is None
        assert matcher.closest(unit_vector(rng), []) is None

    def test_never_returns_below_threshold(self, matcher, rng):
        candidates = [enrolled(unit_vector(rng), f"emb-{i}") for i in range(3)]

        assert matcher.find_best_match(unit_vector(rng), candidates) is None

        closest = matcher.closest(unit_vector(rng), candidates)
        assert closest is not None
        assert closest.is_match is False

    def test_picks_closest_candidate(self, matcher):
        candidates = [
            enrolled([0.5, 0.0], "far"),
            enrolled([0.1, 0.0], "near"),
            enrolled([0.3, 0.0], "middle"),
        ]

        result = matcher.find_best_match([0.0, 0.0], candidates)

        assert result.best_embedding_id == "near"
        assert result.similarity == pytest.approx(0.9)

    def test_ties_keep_first_candidate(self, matcher):
        candidates = [enrolled([0.1, 0.0], "first"), enrolled([0.0, 0.1], "second")]

        result = matcher.find_best_match([0.0, 0.0], candidates)

        assert result.best_embedding_id == "first"

    def test_candidate_dimension_mismatch(self, matcher):
        with pytest.raises(DimensionMismatchError):
            matcher.find_best_match([0.0, 0.0], [enrolled([0.0, 0.0, 0.0], "emb-1")])

    def test_noisy_capture_matches_and_different_face_does_not(self, matcher, rng):
        enrolled_face = unit_vector(rng)
        references = [enrolled(enrolled_face, "emb-1"), enrolled(unit_vector(rng), "emb-2")]

        noisy_capture = enrolled_face + rng.normal(0.0, 0.01, enrolled_face.shape)
        match = matcher.find_best_match(noisy_capture, references)

        assert match is not None
        assert match.best_embedding_id == "emb-1"
        assert match.similarity >= 0.6

        stranger = unit_vector(rng)
        assert matcher.find_best_match(stranger, references) is None
