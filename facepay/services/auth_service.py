"""
Face authentication service for quality validation, enrollment and verification.

This module provides the core business logic for:
- Judging whether a captured image is suitable for enrollment
- Enrolling face embeddings into a user's reference set
- Verifying a live capture against the enrolled reference set
"""

import logging
from datetime import datetime
from typing import Optional, Tuple

from facepay.clients.supabase_client import DatabaseManager
from facepay.config import settings
from facepay.exceptions import (
    InputError,
    MultipleFacesDetectedError,
    NoFaceDetectedError,
    QualityRejected,
    UserNotFoundError,
)
from facepay.models.internal_models import (
    EmbeddingVector,
    FaceExtraction,
    MatchResult,
    QualityVerdict,
    ReferenceSet,
    User,
)
from facepay.services.embedding_service import FaceExtractor, get_face_extractor
from facepay.services.matcher import EmbeddingMatcher
from facepay.services.quality_gate import QualityGate
from facepay.utils.image_utils import compute_image_statistics, preprocess_image

logger = logging.getLogger(__name__)


class FaceAuthenticationService:
    """
    Orchestrates image preprocessing, feature extraction, quality gating,
    matching and embedding storage.

    The extractor is injected so the service never reaches for a model
    on its own; tests pass a stub.
    """

    def __init__(
        self,
        db_manager: Optional[DatabaseManager] = None,
        extractor: Optional[FaceExtractor] = None,
        matcher: Optional[EmbeddingMatcher] = None,
        quality_gate: Optional[QualityGate] = None,
        max_embeddings: Optional[int] = None
    ):
        """
        Initialize the face authentication service.

        Args:
            db_manager: Database manager instance. If None, creates a new one.
            extractor: Face extractor. If None, uses the global InsightFace extractor.
            matcher: Embedding matcher. If None, one is built from settings.
            quality_gate: Quality gate for enrollment images.
            max_embeddings: Cap on enrolled embeddings per user.
        """
        self.db = db_manager or DatabaseManager()
        self.extractor = extractor or get_face_extractor()
        self.matcher = matcher or EmbeddingMatcher(settings.face_match_threshold)
        self.quality_gate = quality_gate or QualityGate()
        self.max_embeddings = max_embeddings or settings.max_face_embeddings

        logger.info(f"Face authentication service initialized with match threshold: {self.matcher.threshold}")

    def _analyze(self, image_bytes: bytes) -> Tuple[Optional[FaceExtraction], QualityVerdict]:
        """Preprocess, extract and classify a capture."""
        frame = preprocess_image(image_bytes)
        statistics = compute_image_statistics(frame)

        try:
            extraction = self.extractor.extract(frame)
        except (NoFaceDetectedError, MultipleFacesDetectedError) as e:
            logger.info(f"Face detection rejected capture: {e}")
            return None, self.quality_gate.evaluate(None, None, None, detection_error=str(e))

        verdict = self.quality_gate.evaluate(
            extraction.bounding_box,
            extraction.detector_confidence,
            statistics,
        )
        return extraction, verdict

    async def validate_face_quality(self, image_bytes: bytes) -> QualityVerdict:
        """
        Judge whether an image is suitable for enrollment.

        Detection failures are reported inside the verdict rather than raised.

        Raises:
            InvalidImageError: If the image cannot be decoded
            ModelUnavailableError: If the face model cannot run
        """
        _, verdict = self._analyze(image_bytes)
        return verdict

    async def _get_active_user(self, user_id: str) -> User:
        user = await self.db.users.get_user_by_id(user_id)
        if user is None:
            raise UserNotFoundError(f"User {user_id} not found")
        if not user.is_active:
            raise UserNotFoundError(f"User {user_id} is not active")
        return user

    async def enroll_face(self, user_id: str, image_bytes: bytes) -> Tuple[EmbeddingVector, int]:
        """
        Enroll a face for a user.

        Workflow:
        1. Preprocess the image and extract a single face
        2. Reject captures that fail the quality gate
        3. Add the embedding to the user's reference set and store it

        Args:
            user_id: Owner of the new embedding
            image_bytes: Raw enrollment image

        Returns:
            Tuple of (stored embedding, size of the reference set after enrollment)

        Raises:
            UserNotFoundError: If the user does not exist or is inactive
            QualityRejected: If the capture fails the quality gate
            InputError: If the enrollment cap is reached
        """
        logger.info(f"Starting face enrollment for user {user_id}")
        await self._get_active_user(user_id)

        extraction, verdict = self._analyze(image_bytes)
        if extraction is None or not verdict.is_acceptable:
            logger.warning(f"Enrollment image rejected for user {user_id}: {verdict}")
            raise QualityRejected(verdict.error or "Image quality is not acceptable for enrollment", verdict=verdict)

        embedding = EmbeddingVector(
            vector=extraction.embedding,
            detector_confidence=extraction.detector_confidence,
            enrolled_at=datetime.utcnow(),
            user_id=user_id,
        )

        references = await self.db.face_embeddings.get_reference_set(user_id)
        updated = references.add(embedding, self.max_embeddings)
        await self.db.face_embeddings.add_embedding(embedding)

        logger.info(f"Enrolled face {embedding.id} for user {user_id} ({len(updated)}/{self.max_embeddings})")
        return embedding, len(updated)

    async def remove_face(self, user_id: str, embedding_id: str) -> ReferenceSet:
        """
        Remove one enrolled embedding.

        Returns:
            The reference set without the removed embedding

        Raises:
            InputError: If the embedding is not enrolled for the user
        """
        references = await self.db.face_embeddings.get_reference_set(user_id)
        updated = references.remove(embedding_id)

        if not await self.db.face_embeddings.delete_embedding(user_id, embedding_id):
            raise InputError(f"Face embedding {embedding_id} is not enrolled")

        logger.info(f"Removed face {embedding_id} for user {user_id}; {len(updated)} remain")
        return updated

    async def verify_face(self, user_id: str, image_bytes: bytes) -> Tuple[MatchResult, float]:
        """
        Compare a live capture with the user's enrolled faces.

        A below-threshold result is returned, not raised; callers decide
        what a non-match means.

        Returns:
            Tuple of (match result for the closest enrolled face, detector confidence)

        Raises:
            UserNotFoundError: If the user does not exist or is inactive
            InputError: If the user has no enrolled faces, or the capture has no single face
        """
        logger.info(f"Starting face verification for user {user_id}")
        user = await self._get_active_user(user_id)
        if not user.face_recognition_enabled:
            raise InputError(f"Face recognition is disabled for user {user_id}")

        references = await self.db.face_embeddings.get_reference_set(user_id)
        if not len(references):
            raise InputError(f"User {user_id} has no enrolled faces")

        frame = preprocess_image(image_bytes)
        extraction = self.extractor.extract(frame)

        match = self.matcher.closest(extraction.embedding, references.embeddings)

        logger.info(
            f"Face comparison for user {user_id}: similarity={match.similarity:.4f}, "
            f"threshold={match.threshold}, match={match.is_match}"
        )
        return match, extraction.detector_confidence


# Global service instance
_auth_service: Optional[FaceAuthenticationService] = None


def get_auth_service() -> FaceAuthenticationService:
    """
    Get the global face authentication service instance.

    Returns:
        FaceAuthenticationService: The global service instance
    """
    global _auth_service
    if _auth_service is None:
        _auth_service = FaceAuthenticationService()
    return _auth_service
