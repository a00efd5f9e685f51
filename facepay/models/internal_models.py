"""Internal data models for the FacePay authorization engine."""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple
from uuid import uuid4

import numpy as np

from facepay.exceptions import InputError


@dataclass(frozen=True, eq=False)
class EmbeddingVector:
    """Face embedding produced by the feature extractor and owned by one user."""

    vector: np.ndarray
    detector_confidence: float
    enrolled_at: datetime
    user_id: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid4()))

    def __post_init__(self):
        """Freeze the vector and validate the detector confidence."""
        vector = np.array(self.vector, dtype=np.float64)
        if vector.ndim != 1:
            raise InputError(f"Embedding must be one-dimensional, got shape {vector.shape}")
        vector.setflags(write=False)
        object.__setattr__(self, "vector", vector)

        if not 0.0 <= self.detector_confidence <= 1.0:
            raise InputError(f"Detector confidence must be between 0.0 and 1.0, got {self.detector_confidence}")

    @property
    def dimension(self) -> int:
        return int(self.vector.shape[0])


@dataclass(frozen=True)
class ReferenceSet:
    """A user's enrolled embeddings. Mutations return a new set."""

    embeddings: Tuple[EmbeddingVector, ...] = ()

    def __len__(self) -> int:
        return len(self.embeddings)

    def __iter__(self):
        return iter(self.embeddings)

    def add(self, embedding: EmbeddingVector, max_size: int) -> "ReferenceSet":
        if len(self.embeddings) >= max_size:
            raise InputError(f"Enrollment limit reached ({max_size} faces)")
        if self.embeddings and embedding.dimension != self.embeddings[0].dimension:
            raise InputError(
                f"Embedding dimension {embedding.dimension} does not match enrolled "
                f"dimension {self.embeddings[0].dimension}"
            )
        return ReferenceSet(self.embeddings + (embedding,))

    def remove(self, embedding_id: str) -> "ReferenceSet":
        remaining = tuple(e for e in self.embeddings if e.id != embedding_id)
        if len(remaining) == len(self.embeddings):
            raise InputError(f"Face embedding {embedding_id} is not enrolled")
        return ReferenceSet(remaining)


@dataclass
class User:
    """Internal user model; only the fields the payment path reads."""

    id: str
    email: str
    full_name: str
    phone: Optional[str] = None
    is_active: bool = True
    face_recognition_enabled: bool = True
    gateway_customer_id: Optional[str] = None
    default_payment_method_id: Optional[str] = None


@dataclass(frozen=True)
class BoundingBox:
    """Face bounding region in pixel coordinates."""

    x: float
    y: float
    width: float
    height: float

    @property
    def area(self) -> float:
        return self.width * self.height

    @property
    def center(self) -> Tuple[float, float]:
        return self.x + self.width / 2, self.y + self.height / 2


@dataclass(frozen=True, eq=False)
class FaceExtraction:
    """Output of the feature extractor for a single detected face."""

    embedding: np.ndarray
    detector_confidence: float
    bounding_box: BoundingBox


@dataclass(frozen=True)
class ImageStatistics:
    """Frame size and pixel statistics used by the quality gate."""

    width: int
    height: int
    brightness: float
    sharpness: float


@dataclass(frozen=True)
class CheckResult:
    """Single quality sub-check."""

    value: float
    is_good: bool
    message: str


@dataclass(frozen=True)
class QualityVerdict:
    """Structured acceptability verdict for an enrollment image."""

    is_detected: bool
    is_acceptable: bool
    confidence: Optional[float] = None
    is_high_quality: bool = False
    is_centered: bool = False
    face_area: Optional[float] = None
    brightness: Optional[CheckResult] = None
    blur: Optional[CheckResult] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class MatchResult:
    """Outcome of comparing a probe embedding with enrolled embeddings."""

    distance: float
    similarity: float
    is_match: bool
    threshold: float
    best_embedding_id: Optional[str] = None


@dataclass(frozen=True)
class BiometricEvidence:
    """Match scalars copied into a payment record for audit."""

    confidence: float
    distance: float
    threshold_used: float
    is_match: bool = True

    @classmethod
    def from_match(cls, match: MatchResult, detector_confidence: float) -> "BiometricEvidence":
        return cls(
            confidence=detector_confidence,
            distance=match.distance,
            threshold_used=match.threshold,
            is_match=match.is_match,
        )


class PaymentStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"


@dataclass(frozen=True)
class PaymentRecord:
    """Durable record of one biometric-gated payment attempt."""

    id: str
    user_id: str
    amount_minor_units: int
    currency: str
    status: PaymentStatus
    evidence: BiometricEvidence
    gateway_intent_id: str
    gateway_customer_id: str
    created_at: datetime
    description: str = ""
    failure_reason: Optional[str] = None
    failure_code: Optional[str] = None
    refund_reason: Optional[str] = None
    processed_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None

    def __post_init__(self):
        """Validate amount and status invariants."""
        if self.amount_minor_units < 1:
            raise InputError(f"Amount must be at least 1 minor unit, got {self.amount_minor_units}")
        if self.status == PaymentStatus.SUCCEEDED and (self.processed_at is None or self.failure_reason):
            raise ValueError("Succeeded payments require processed_at and no failure_reason")
        if self.status == PaymentStatus.REFUNDED and (self.processed_at is None or self.refunded_at is None):
            raise ValueError("Refunded payments require processed_at and refunded_at")
        if self.status == PaymentStatus.FAILED and not self.failure_reason:
            raise ValueError("Failed payments require a failure_reason")

    def evolve(self, **changes: Any) -> "PaymentRecord":
        return replace(self, **changes)


@dataclass(frozen=True)
class GatewayIntent:
    """Subset of a gateway payment intent that the engine reads."""

    id: str
    status: str
    amount: int
    currency: str
    client_secret: Optional[str] = None
    customer_id: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)
    failure_message: Optional[str] = None
    failure_code: Optional[str] = None
    # From the latest charge, when the gateway expanded it
    refunded: bool = False
    amount_refunded: int = 0


@dataclass(frozen=True)
class GatewayRefund:
    id: str
    status: str
    amount: Optional[int] = None


@dataclass(frozen=True)
class GatewaySetupIntent:
    id: str
    client_secret: Optional[str]
    status: str


@dataclass(frozen=True)
class GatewayPaymentMethod:
    """Saved card as listed by the gateway."""

    id: str
    type: str
    brand: Optional[str] = None
    last4: Optional[str] = None
    exp_month: Optional[int] = None
    exp_year: Optional[int] = None
    is_default: bool = False


@dataclass(frozen=True)
class PaymentStats:
    """
    Aggregate of a user's payments created within a period.

    Totals are succeeded amounts in minor units per currency; refunded
    payments are counted but excluded from the totals.
    """

    period: str
    since: datetime
    total_payments: int = 0
    succeeded: int = 0
    failed: int = 0
    pending: int = 0
    refunded: int = 0
    totals_by_currency: Dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class GatewayEvent:
    """Gateway-originated event delivered at least once."""

    id: str
    type: str
    object_id: Optional[str]
    payload: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_stripe(cls, event: Dict[str, Any]) -> "GatewayEvent":
        """Build from a Stripe event; refunds reference their charge's payment intent."""
        obj = event.get("data", {}).get("object", {}) or {}
        event_type = event.get("type", "unknown")
        if event_type.startswith("charge."):
            object_id = obj.get("payment_intent")
        else:
            object_id = obj.get("id")
        return cls(
            id=event.get("id", "unknown"),
            type=event_type,
            object_id=object_id,
            payload=dict(obj),
        )


@dataclass(frozen=True)
class AuthorizationResult:
    """Record created by an authorization plus the secret the client confirms with."""

    payment: PaymentRecord
    client_secret: Optional[str]
    match: Optional[MatchResult] = None
