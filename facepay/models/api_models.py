"""Pydantic models for API requests and responses."""

import base64
import binascii
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .internal_models import (
    CheckResult,
    GatewayPaymentMethod,
    MatchResult,
    PaymentRecord,
    PaymentStats,
    QualityVerdict,
)


class FaceImageRequest(BaseModel):
    """Request carrying a base64-encoded face image."""

    imageBase64: str = Field(..., min_length=1, description="Base64-encoded JPEG, PNG or WebP image")

    @field_validator('imageBase64')
    @classmethod
    def validate_image_base64(cls, v):
        """Validate that the image payload is decodable base64."""
        try:
            base64.b64decode(v, validate=True)
        except (binascii.Error, ValueError):
            raise ValueError('imageBase64 must be valid base64')
        return v

    def image_bytes(self) -> bytes:
        return base64.b64decode(self.imageBase64)


class FaceVerificationRequest(FaceImageRequest):
    """Request model for face verification and enrollment endpoints."""

    userId: str = Field(..., min_length=1, description="Identifier of the user the face must belong to")


class CheckResponse(BaseModel):
    value: float
    isGood: bool
    message: str

    @classmethod
    def from_check(cls, check: Optional[CheckResult]) -> Optional["CheckResponse"]:
        if check is None:
            return None
        return cls(value=check.value, isGood=check.is_good, message=check.message)


class QualityResponse(BaseModel):
    """Response model for the face quality endpoint."""

    isDetected: bool
    isAcceptable: bool
    confidence: Optional[float] = None
    isHighQuality: bool = False
    isCentered: bool = False
    faceArea: Optional[float] = None
    brightness: Optional[CheckResponse] = None
    blur: Optional[CheckResponse] = None
    error: Optional[str] = None

    @classmethod
    def from_verdict(cls, verdict: QualityVerdict) -> "QualityResponse":
        return cls(
            isDetected=verdict.is_detected,
            isAcceptable=verdict.is_acceptable,
            confidence=verdict.confidence,
            isHighQuality=verdict.is_high_quality,
            isCentered=verdict.is_centered,
            faceArea=verdict.face_area,
            brightness=CheckResponse.from_check(verdict.brightness),
            blur=CheckResponse.from_check(verdict.blur),
            error=verdict.error
        )


class FaceVerificationResponse(BaseModel):
    """Response model for face verification."""

    verified: bool = Field(..., description="Whether the face matched the enrolled reference set")
    similarity: float = Field(..., ge=0.0, le=1.0)
    distance: float = Field(..., ge=0.0)
    threshold: float = Field(..., ge=0.0, le=1.0)
    embeddingId: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "verified": True,
            "similarity": 0.71,
            "distance": 0.29,
            "threshold": 0.6,
            "embeddingId": "5b7c0b0e-8f0c-4a1e-9d59-0f0c6c2f8f15"
        }
    })

    @classmethod
    def from_match(cls, match: MatchResult) -> "FaceVerificationResponse":
        return cls(
            verified=match.is_match,
            similarity=match.similarity,
            distance=match.distance,
            threshold=match.threshold,
            embeddingId=match.best_embedding_id
        )


class EnrollmentResponse(BaseModel):
    """Response model for face enrollment and removal."""

    status: str
    embeddingId: Optional[str] = None
    faceEmbeddingsCount: int = Field(..., ge=0)


class FacePaymentRequest(FaceVerificationRequest):
    """Request model for the biometric payment endpoint."""

    amount: Decimal = Field(..., gt=0, description="Amount in major currency units, e.g. 25.50")
    currency: str = Field("usd", min_length=3, max_length=3)
    description: str = Field(..., min_length=1, max_length=500)

    @field_validator('currency')
    @classmethod
    def normalize_currency(cls, v):
        return v.lower()

    @field_validator('description')
    @classmethod
    def strip_description(cls, v):
        v = v.strip()
        if not v:
            raise ValueError('Description is required')
        return v


class PaymentResponse(BaseModel):
    """Public view of a payment record."""

    id: str
    userId: str
    amount: int = Field(..., description="Amount in minor currency units")
    currency: str
    status: str
    description: str
    gatewayIntentId: str
    faceConfidence: float
    faceDistance: float
    thresholdUsed: float
    failureReason: Optional[str] = None
    refundReason: Optional[str] = None
    createdAt: datetime
    processedAt: Optional[datetime] = None
    refundedAt: Optional[datetime] = None

    @classmethod
    def from_record(cls, record: PaymentRecord) -> "PaymentResponse":
        return cls(
            id=record.id,
            userId=record.user_id,
            amount=record.amount_minor_units,
            currency=record.currency,
            status=record.status.value,
            description=record.description,
            gatewayIntentId=record.gateway_intent_id,
            faceConfidence=record.evidence.confidence,
            faceDistance=record.evidence.distance,
            thresholdUsed=record.evidence.threshold_used,
            failureReason=record.failure_reason,
            refundReason=record.refund_reason,
            createdAt=record.created_at,
            processedAt=record.processed_at,
            refundedAt=record.refunded_at
        )


class FacePaymentResponse(BaseModel):
    """Response model for the biometric payment endpoint."""

    payment: PaymentResponse
    clientSecret: Optional[str] = None
    faceVerification: FaceVerificationResponse


class ConfirmPaymentRequest(BaseModel):
    """Request model for payment confirmation."""

    paymentIntentId: str = Field(..., min_length=1)
    paymentMethodId: Optional[str] = None


class RefundRequest(BaseModel):
    """Request model for refunds."""

    reason: str = Field("User requested refund", max_length=500)


class PaymentHistoryResponse(BaseModel):
    payments: List[PaymentResponse]
    total: int
    limit: int
    offset: int
    hasMore: bool


class PaymentStatsResponse(BaseModel):
    """Per-period payment counts; totals are succeeded amounts in minor units."""

    period: str
    since: datetime
    totalPayments: int
    succeeded: int
    failed: int
    pending: int
    refunded: int
    totalsByCurrency: Dict[str, int]

    @classmethod
    def from_stats(cls, stats: PaymentStats) -> "PaymentStatsResponse":
        return cls(
            period=stats.period,
            since=stats.since,
            totalPayments=stats.total_payments,
            succeeded=stats.succeeded,
            failed=stats.failed,
            pending=stats.pending,
            refunded=stats.refunded,
            totalsByCurrency=stats.totals_by_currency
        )


class SetupIntentRequest(BaseModel):
    userId: str = Field(..., min_length=1)


class SetupIntentResponse(BaseModel):
    id: str
    clientSecret: Optional[str] = None


class AttachPaymentMethodRequest(BaseModel):
    """Request model for saving a card confirmed through a setup intent."""

    userId: str = Field(..., min_length=1)
    paymentMethodId: str = Field(..., min_length=1)


class CardResponse(BaseModel):
    brand: Optional[str] = None
    last4: Optional[str] = None
    expMonth: Optional[int] = None
    expYear: Optional[int] = None


class PaymentMethodResponse(BaseModel):
    id: str
    type: str
    card: Optional[CardResponse] = None
    isDefault: bool = False

    @classmethod
    def from_gateway(cls, method: GatewayPaymentMethod) -> "PaymentMethodResponse":
        card = None
        if method.type == "card":
            card = CardResponse(
                brand=method.brand,
                last4=method.last4,
                expMonth=method.exp_month,
                expYear=method.exp_year
            )
        return cls(id=method.id, type=method.type, card=card, isDefault=method.is_default)


class PaymentMethodsResponse(BaseModel):
    paymentMethods: List[PaymentMethodResponse]


class ErrorResponse(BaseModel):
    """Standard error response model."""

    error: str = Field(..., description="Error type or category")
    message: str = Field(..., description="Human-readable error message")
    correlation_id: str = Field(..., description="Request correlation ID for tracing")
    timestamp: datetime = Field(..., description="Error timestamp")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "error": "InputError",
            "message": "Invalid request format",
            "correlation_id": "req_123456789",
            "timestamp": "2024-01-01T12:00:00Z"
        }
    })
