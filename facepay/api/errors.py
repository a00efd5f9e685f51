"""
Translation of engine exceptions into HTTP errors.
"""

from datetime import datetime
from typing import Any, Dict, Optional

import structlog
from fastapi import HTTPException, Request

from facepay.exceptions import (
    FacePayError,
    GatewayError,
    InputError,
    InvalidStateError,
    ModelUnavailableError,
    NoMatchError,
    PaymentNotFoundError,
    PersistenceError,
    QualityRejected,
    ReconciliationDeferred,
    UserNotFoundError,
)
from facepay.models.api_models import ErrorResponse, QualityResponse

logger = structlog.get_logger()

# Most specific first; NoFaceDetected and MultipleFacesDetected fall through to InputError
STATUS_CODES = (
    (UserNotFoundError, 404),
    (PaymentNotFoundError, 404),
    (InputError, 400),
    (NoMatchError, 401),
    (QualityRejected, 422),
    (InvalidStateError, 409),
    (GatewayError, 502),
    (ModelUnavailableError, 503),
    (ReconciliationDeferred, 503),
    (PersistenceError, 500),
)


def get_correlation_id(http_request: Request) -> str:
    return http_request.headers.get("X-Call-ID", "unknown")


def status_code_for(error: Exception) -> int:
    for error_type, status_code in STATUS_CODES:
        if isinstance(error, error_type):
            return status_code
    return 500


def error_detail(error_type: str, message: str, correlation_id: str, **extra: Any) -> Dict[str, Any]:
    detail = ErrorResponse(
        error=error_type,
        message=message,
        correlation_id=correlation_id,
        timestamp=datetime.utcnow()
    ).model_dump(mode="json")
    detail.update(extra)
    return detail


def to_http_exception(error: Exception, correlation_id: str, operation: Optional[str] = None) -> HTTPException:
    """
    Build the HTTPException for an engine error.

    Server-side failures get a generic message so that store and gateway
    internals are not echoed to the client.
    """
    status_code = status_code_for(error)
    extra: Dict[str, Any] = {}

    if isinstance(error, FacePayError) and status_code < 500:
        error_type = type(error).__name__
        message = str(error)
    elif isinstance(error, GatewayError):
        error_type = "GatewayError"
        message = "Payment gateway request failed"
        if error.code:
            extra["code"] = error.code
    elif isinstance(error, ModelUnavailableError):
        error_type = "ModelUnavailableError"
        message = "Face recognition model is unavailable"
    elif isinstance(error, ReconciliationDeferred):
        error_type = "ReconciliationDeferred"
        message = "Event cannot be applied yet; retry later"
    else:
        error_type = "InternalServerError"
        message = f"An unexpected error occurred during {operation}" if operation else "An unexpected error occurred"

    if isinstance(error, NoMatchError) and error.similarity is not None:
        extra["similarity"] = error.similarity
        extra["threshold"] = error.threshold

    if isinstance(error, QualityRejected) and error.verdict is not None:
        extra["quality"] = QualityResponse.from_verdict(error.verdict).model_dump()

    log = logger.error if status_code >= 500 else logger.warning
    log(
        "Request failed",
        operation=operation,
        error_type=type(error).__name__,
        error=str(error),
        status_code=status_code,
        correlation_id=correlation_id
    )

    return HTTPException(
        status_code=status_code,
        detail=error_detail(error_type, message, correlation_id, **extra)
    )
