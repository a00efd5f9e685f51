"""Exception hierarchy shared by the matching, payment and reconciliation layers."""

from typing import Any, Optional


class FacePayError(Exception):
    """Base exception for FacePay errors."""
    pass


class InputError(FacePayError):
    """Raised when a request cannot be processed because its input is invalid."""
    pass


class DimensionMismatchError(InputError):
    """Raised when two embeddings do not share the same non-zero dimensionality."""
    pass


class InvalidImageError(InputError):
    """Raised when image bytes are missing or cannot be decoded."""
    pass


class UserNotFoundError(InputError):
    """Raised when the referenced user does not exist or is inactive."""
    pass


class PaymentNotFoundError(InputError):
    """Raised when the referenced payment record does not exist."""
    pass


class FeatureExtractionError(FacePayError):
    """Base exception for failures reported by the face feature extractor."""
    pass


class NoFaceDetectedError(FeatureExtractionError, InputError):
    """Raised when no face is found in the submitted image."""
    pass


class MultipleFacesDetectedError(FeatureExtractionError, InputError):
    """Raised when more than one face is found in the submitted image."""
    pass


class ModelUnavailableError(FeatureExtractionError):
    """Raised when the face model cannot be loaded or run."""
    pass


class NoMatchError(FacePayError):
    """Raised when a face was compared but did not match the enrolled reference set."""

    def __init__(self, message: str, similarity: Optional[float] = None, threshold: Optional[float] = None):
        super().__init__(message)
        self.similarity = similarity
        self.threshold = threshold


class QualityRejected(FacePayError):
    """Raised when an enrollment image fails the quality gate."""

    def __init__(self, message: str, verdict: Any = None):
        super().__init__(message)
        self.verdict = verdict


class GatewayError(FacePayError):
    """Raised when a call to the payment gateway fails."""

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code


class InvalidStateError(FacePayError):
    """Raised when a payment transition is not allowed from the record's current status."""
    pass


class ReconciliationConflict(FacePayError):
    """Raised internally when a gateway event cannot be applied to a local record."""
    pass


class ReconciliationDeferred(FacePayError):
    """Raised when a gateway event arrived before the state it depends on; the gateway must redeliver it."""
    pass


class PersistenceError(FacePayError):
    """Raised when the backing store fails."""
    pass
