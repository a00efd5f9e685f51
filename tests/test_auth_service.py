"""
Tests for the face authentication service.
"""

from datetime import datetime
from unittest.mock import patch

import numpy as np
import pytest

from facepay.exceptions import (
    InputError,
    InvalidImageError,
    MultipleFacesDetectedError,
    NoFaceDetectedError,
    QualityRejected,
    UserNotFoundError,
)
from facepay.models.internal_models import BoundingBox, EmbeddingVector, FaceExtraction, User
from facepay.services.auth_service import FaceAuthenticationService, get_auth_service
from facepay.services.matcher import EmbeddingMatcher

from conftest import StubExtractor, make_image, unit_vector


def enroll_vector(db, vector, user_id="user-1", embedding_id="emb-1"):
    embedding = EmbeddingVector(
        vector=vector,
        detector_confidence=0.97,
        enrolled_at=datetime(2024, 1, 1),
        user_id=user_id,
        id=embedding_id,
    )
    db.face_embeddings.embeddings.setdefault(user_id, []).append(embedding)
    return embedding


class TestFaceAuthenticationService:
    """Test cases for FaceAuthenticationService."""

    @pytest.fixture
    def face_vector(self, rng):
        return unit_vector(rng)

    @pytest.fixture
    def extractor(self, face_vector, centered_box):
        return StubExtractor(FaceExtraction(embedding=face_vector, detector_confidence=0.95, bounding_box=centered_box))

    @pytest.fixture
    def auth_service(self, db, extractor):
        return FaceAuthenticationService(
            db_manager=db,
            extractor=extractor,
            matcher=EmbeddingMatcher(0.6),
            max_embeddings=2
        )

    @pytest.fixture
    def sharp_image(self):
        return make_image()

    class TestQualityValidation:
        """Tests for quality validation."""

        @pytest.mark.asyncio
        async def test_acceptable_image(self, auth_service, sharp_image):
            verdict = await auth_service.validate_face_quality(sharp_image)

            assert verdict.is_detected is True
            assert verdict.is_acceptable is True

        @pytest.mark.asyncio
        async def test_blurry_image(self, auth_service):
            verdict = await auth_service.validate_face_quality(make_image(square=0))

            assert verdict.blur.is_good is False
            assert verdict.is_acceptable is False

        @pytest.mark.asyncio
        async def test_multiple_faces_reported_in_verdict(self, auth_service, extractor, sharp_image):
            extractor.error = MultipleFacesDetectedError("Multiple faces detected")

            verdict = await auth_service.validate_face_quality(sharp_image)

            assert verdict.is_detected is False
            assert verdict.is_acceptable is False
            assert verdict.error == "Multiple faces detected"

        @pytest.mark.asyncio
        async def test_invalid_image(self, auth_service, extractor):
            with pytest.raises(InvalidImageError):
                await auth_service.validate_face_quality(b"not an image")

            assert extractor.calls == 0

    class TestEnrollment:
        """Tests for face enrollment."""

        @pytest.mark.asyncio
        async def test_enroll_face_success(self, auth_service, db, active_user, sharp_image, face_vector):
            embedding, count = await auth_service.enroll_face(active_user.id, sharp_image)

            assert count == 1
            assert embedding.user_id == active_user.id
            np.testing.assert_allclose(embedding.vector, face_vector)
            assert db.face_embeddings.embeddings[active_user.id] == [embedding]

        @pytest.mark.asyncio
        async def test_enroll_rejects_poor_quality(self, auth_service, db, active_user):
            with pytest.raises(QualityRejected) as exc_info:
                await auth_service.enroll_face(active_user.id, make_image(level=20, square=0))

            assert exc_info.value.verdict.brightness.is_good is False
            assert active_user.id not in db.face_embeddings.embeddings

        @pytest.mark.asyncio
        async def test_enroll_rejects_off_center_face(self, auth_service, extractor, active_user, sharp_image, face_vector):
            extractor.result = FaceExtraction(
                embedding=face_vector,
                detector_confidence=0.95,
                bounding_box=BoundingBox(x=0.0, y=0.0, width=100.0, height=100.0)
            )

            with pytest.raises(QualityRejected) as exc_info:
                await auth_service.enroll_face(active_user.id, sharp_image)

            assert exc_info.value.verdict.is_centered is False

        @pytest.mark.asyncio
        async def test_enroll_rejects_no_face(self, auth_service, extractor, active_user, sharp_image):
            extractor.error = NoFaceDetectedError("No faces detected in the image")

            with pytest.raises(QualityRejected) as exc_info:
                await auth_service.enroll_face(active_user.id, sharp_image)

            assert exc_info.value.verdict.is_detected is False

        @pytest.mark.asyncio
        async def test_enroll_respects_cap(self, auth_service, active_user, sharp_image):
            await auth_service.enroll_face(active_user.id, sharp_image)
            await auth_service.enroll_face(active_user.id, sharp_image)

            with pytest.raises(InputError, match="Enrollment limit"):
                await auth_service.enroll_face(active_user.id, sharp_image)

        @pytest.mark.asyncio
        async def test_enroll_unknown_user(self, auth_service, sharp_image):
            with pytest.raises(UserNotFoundError):
                await auth_service.enroll_face("nobody", sharp_image)

        @pytest.mark.asyncio
        async def test_remove_face(self, auth_service, db, active_user, face_vector):
            enroll_vector(db, face_vector, embedding_id="emb-1")
            enroll_vector(db, face_vector, embedding_id="emb-2")

            remaining = await auth_service.remove_face(active_user.id, "emb-1")

            assert [e.id for e in remaining] == ["emb-2"]
            assert [e.id for e in db.face_embeddings.embeddings[active_user.id]] == ["emb-2"]

        @pytest.mark.asyncio
        async def test_remove_unknown_face(self, auth_service, active_user):
            with pytest.raises(InputError):
                await auth_service.remove_face(active_user.id, "missing")

    class TestVerification:
        """Tests for face verification."""

        @pytest.mark.asyncio
        async def test_verify_matching_face(self, auth_service, db, active_user, face_vector, sharp_image):
            enroll_vector(db, face_vector)

            match, confidence = await auth_service.verify_face(active_user.id, sharp_image)

            assert match.is_match is True
            assert match.best_embedding_id == "emb-1"
            assert match.distance == pytest.approx(0.0)
            assert confidence == 0.95

        @pytest.mark.asyncio
        async def test_verify_different_face(self, auth_service, db, active_user, rng, sharp_image):
            enroll_vector(db, unit_vector(rng))

            match, _ = await auth_service.verify_face(active_user.id, sharp_image)

            assert match.is_match is False

        @pytest.mark.asyncio
        async def test_verify_without_enrollment(self, auth_service, active_user, sharp_image):
            with pytest.raises(InputError, match="no enrolled faces"):
                await auth_service.verify_face(active_user.id, sharp_image)

        @pytest.mark.asyncio
        async def test_verify_inactive_user(self, auth_service, db, sharp_image):
            db.users.add(User(id="user-2", email="off@example.com", full_name="Off", is_active=False))

            with pytest.raises(UserNotFoundError):
                await auth_service.verify_face("user-2", sharp_image)

        @pytest.mark.asyncio
        async def test_verify_propagates_detection_errors(self, auth_service, db, extractor, active_user, face_vector, sharp_image):
            enroll_vector(db, face_vector)
            extractor.error = NoFaceDetectedError("No faces detected in the image")

            with pytest.raises(NoFaceDetectedError):
                await auth_service.verify_face(active_user.id, sharp_image)


class TestGlobalAuthService:
    """Tests for global auth service instance."""

    def test_get_auth_service_singleton(self):
        with patch('facepay.services.auth_service._auth_service', None), \
                patch('facepay.services.auth_service.DatabaseManager'), \
                patch('facepay.services.auth_service.get_face_extractor'):
            service1 = get_auth_service()
            service2 = get_auth_service()

            assert service1 is service2
