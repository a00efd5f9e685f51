"""
Face API endpoints for quality validation, enrollment and verification.
"""

import time

import structlog
from fastapi import APIRouter, Depends, Request

from facepay.api.errors import get_correlation_id, to_http_exception
from facepay.models.api_models import (
    EnrollmentResponse,
    FaceImageRequest,
    FaceVerificationRequest,
    FaceVerificationResponse,
    QualityResponse,
)
from facepay.observability import (
    record_enrollment_metrics,
    record_verification_metrics,
    trace_function,
)
from facepay.services.auth_service import FaceAuthenticationService, get_auth_service

logger = structlog.get_logger()
router = APIRouter(prefix="/api/v1/face", tags=["face"])


@router.post("/validate", response_model=QualityResponse)
@trace_function("face_validation_endpoint")
async def validate_face(
    request: FaceImageRequest,
    http_request: Request,
    auth_service: FaceAuthenticationService = Depends(get_auth_service)
) -> QualityResponse:
    """
    Judge whether an image is suitable for enrollment.

    Detection failures (no face, several faces) come back inside the
    verdict with ``isDetected`` false rather than as an error.
    """
    correlation_id = get_correlation_id(http_request)

    try:
        verdict = await auth_service.validate_face_quality(request.image_bytes())
    except Exception as e:
        raise to_http_exception(e, correlation_id, "face validation")

    logger.info(
        "Face quality evaluated",
        acceptable=verdict.is_acceptable,
        detected=verdict.is_detected,
        correlation_id=correlation_id
    )
    return QualityResponse.from_verdict(verdict)


@router.post("/verify", response_model=FaceVerificationResponse)
@trace_function("face_verification_endpoint")
async def verify_face(
    request: FaceVerificationRequest,
    http_request: Request,
    auth_service: FaceAuthenticationService = Depends(get_auth_service)
) -> FaceVerificationResponse:
    """
    Compare a live capture with the user's enrolled faces.

    A below-threshold result is a normal response with ``verified`` false.
    """
    correlation_id = get_correlation_id(http_request)
    start_time = time.time()

    logger.info("Verification request received", user_id=request.userId, correlation_id=correlation_id)

    try:
        match, _ = await auth_service.verify_face(request.userId, request.image_bytes())
    except Exception as e:
        record_verification_metrics(False, time.time() - start_time, None, request.userId)
        raise to_http_exception(e, correlation_id, "face verification")

    record_verification_metrics(match.is_match, time.time() - start_time, match.similarity, request.userId)
    logger.info(
        "Verification completed",
        user_id=request.userId,
        verified=match.is_match,
        similarity=match.similarity,
        correlation_id=correlation_id
    )
    return FaceVerificationResponse.from_match(match)


@router.post("/enroll", response_model=EnrollmentResponse, status_code=201)
@trace_function("face_enrollment_endpoint")
async def enroll_face(
    request: FaceVerificationRequest,
    http_request: Request,
    auth_service: FaceAuthenticationService = Depends(get_auth_service)
) -> EnrollmentResponse:
    """
    Enroll a face for a user.

    Images that fail the quality gate are rejected with 422 and the
    verdict's sub-scores.
    """
    correlation_id = get_correlation_id(http_request)
    start_time = time.time()

    logger.info("Enrollment request received", user_id=request.userId, correlation_id=correlation_id)

    try:
        embedding, count = await auth_service.enroll_face(request.userId, request.image_bytes())
    except Exception as e:
        record_enrollment_metrics(False, time.time() - start_time, request.userId)
        raise to_http_exception(e, correlation_id, "face enrollment")

    record_enrollment_metrics(True, time.time() - start_time, request.userId)
    logger.info(
        "Enrollment completed successfully",
        user_id=request.userId,
        embedding_id=embedding.id,
        correlation_id=correlation_id
    )
    return EnrollmentResponse(status="enrolled", embeddingId=embedding.id, faceEmbeddingsCount=count)


@router.delete("/{user_id}/embeddings/{embedding_id}", response_model=EnrollmentResponse)
async def remove_face(
    user_id: str,
    embedding_id: str,
    http_request: Request,
    auth_service: FaceAuthenticationService = Depends(get_auth_service)
) -> EnrollmentResponse:
    """Remove one enrolled face from a user's reference set."""
    correlation_id = get_correlation_id(http_request)

    try:
        remaining = await auth_service.remove_face(user_id, embedding_id)
    except Exception as e:
        raise to_http_exception(e, correlation_id, "face removal")

    logger.info("Face removed", user_id=user_id, embedding_id=embedding_id, correlation_id=correlation_id)
    return EnrollmentResponse(status="removed", embeddingId=embedding_id, faceEmbeddingsCount=len(remaining))
