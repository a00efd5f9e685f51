"""Data models for the FacePay authorization engine."""

from .api_models import (
    FaceImageRequest,
    FaceVerificationRequest,
    FaceVerificationResponse,
    EnrollmentResponse,
    QualityResponse,
    FacePaymentRequest,
    FacePaymentResponse,
    ConfirmPaymentRequest,
    RefundRequest,
    PaymentResponse,
    PaymentHistoryResponse,
    ErrorResponse
)
from .internal_models import (
    AuthorizationResult,
    BiometricEvidence,
    BoundingBox,
    CheckResult,
    EmbeddingVector,
    FaceExtraction,
    GatewayEvent,
    GatewayIntent,
    GatewayRefund,
    ImageStatistics,
    MatchResult,
    PaymentRecord,
    PaymentStatus,
    QualityVerdict,
    ReferenceSet,
    User
)

__all__ = [
    "FaceImageRequest",
    "FaceVerificationRequest",
    "FaceVerificationResponse",
    "EnrollmentResponse",
    "QualityResponse",
    "FacePaymentRequest",
    "FacePaymentResponse",
    "ConfirmPaymentRequest",
    "RefundRequest",
    "PaymentResponse",
    "PaymentHistoryResponse",
    "ErrorResponse",
    "AuthorizationResult",
    "BiometricEvidence",
    "BoundingBox",
    "CheckResult",
    "EmbeddingVector",
    "FaceExtraction",
    "GatewayEvent",
    "GatewayIntent",
    "GatewayRefund",
    "ImageStatistics",
    "MatchResult",
    "PaymentRecord",
    "PaymentStatus",
    "QualityVerdict",
    "ReferenceSet",
    "User"
]
