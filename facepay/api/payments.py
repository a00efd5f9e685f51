"""
Payment API endpoints for biometric-gated payments, confirmation, refunds,
history, statistics and saved payment methods.
"""

from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Query, Request

from facepay.api.errors import get_correlation_id, to_http_exception
from facepay.models.api_models import (
    AttachPaymentMethodRequest,
    ConfirmPaymentRequest,
    FacePaymentRequest,
    FacePaymentResponse,
    FaceVerificationResponse,
    PaymentHistoryResponse,
    PaymentMethodResponse,
    PaymentMethodsResponse,
    PaymentResponse,
    PaymentStatsResponse,
    RefundRequest,
    SetupIntentRequest,
    SetupIntentResponse,
)
from facepay.observability import record_payment_metrics, trace_function
from facepay.services.payment_service import PaymentService, get_payment_service

logger = structlog.get_logger()
router = APIRouter(prefix="/api/v1/payments", tags=["payments"])


@router.post("/face-payment", response_model=FacePaymentResponse, status_code=201)
@trace_function("face_payment_endpoint")
async def create_face_payment(
    request: FacePaymentRequest,
    http_request: Request,
    payment_service: PaymentService = Depends(get_payment_service)
) -> FacePaymentResponse:
    """
    Verify the user's face and, on a match, open a pending payment.

    A face that does not match returns 401 and creates no payment record.

    Returns:
        The pending payment, the client secret to confirm it with, and
        the verification scores
    """
    correlation_id = get_correlation_id(http_request)

    logger.info(
        "Face payment request received",
        user_id=request.userId,
        amount=str(request.amount),
        currency=request.currency,
        correlation_id=correlation_id
    )

    try:
        result = await payment_service.authorize_payment(
            user_id=request.userId,
            amount=request.amount,
            currency=request.currency,
            image_bytes=request.image_bytes(),
            description=request.description
        )
    except Exception as e:
        record_payment_metrics("authorize", type(e).__name__, request.currency)
        raise to_http_exception(e, correlation_id, "payment authorization")

    record_payment_metrics("authorize", result.payment.status.value, result.payment.currency)
    logger.info(
        "Face payment authorized",
        payment_id=result.payment.id,
        intent_id=result.payment.gateway_intent_id,
        correlation_id=correlation_id
    )

    return FacePaymentResponse(
        payment=PaymentResponse.from_record(result.payment),
        clientSecret=result.client_secret,
        faceVerification=FaceVerificationResponse.from_match(result.match)
    )


@router.post("/confirm", response_model=PaymentResponse)
@trace_function("payment_confirmation_endpoint")
async def confirm_payment(
    request: ConfirmPaymentRequest,
    http_request: Request,
    payment_service: PaymentService = Depends(get_payment_service)
) -> PaymentResponse:
    """Submit a payment method against a pending payment's intent."""
    correlation_id = get_correlation_id(http_request)

    try:
        record = await payment_service.confirm_payment(request.paymentIntentId, request.paymentMethodId)
    except Exception as e:
        record_payment_metrics("confirm", type(e).__name__)
        raise to_http_exception(e, correlation_id, "payment confirmation")

    record_payment_metrics("confirm", record.status.value, record.currency)
    logger.info("Payment confirmed", payment_id=record.id, status=record.status.value, correlation_id=correlation_id)
    return PaymentResponse.from_record(record)


@router.post("/{payment_id}/refund", response_model=PaymentResponse)
@trace_function("payment_refund_endpoint")
async def refund_payment(
    payment_id: str,
    http_request: Request,
    request: Optional[RefundRequest] = None,
    payment_service: PaymentService = Depends(get_payment_service)
) -> PaymentResponse:
    """Refund a succeeded payment."""
    correlation_id = get_correlation_id(http_request)

    try:
        record = await payment_service.refund_payment(payment_id, request.reason if request else None)
    except Exception as e:
        record_payment_metrics("refund", type(e).__name__)
        raise to_http_exception(e, correlation_id, "refund")

    record_payment_metrics("refund", record.status.value, record.currency)
    logger.info("Payment refunded", payment_id=record.id, correlation_id=correlation_id)
    return PaymentResponse.from_record(record)


@router.get("/history/{user_id}", response_model=PaymentHistoryResponse)
async def get_payment_history(
    user_id: str,
    http_request: Request,
    limit: int = Query(10, ge=1, le=100),
    offset: int = Query(0, ge=0),
    payment_service: PaymentService = Depends(get_payment_service)
) -> PaymentHistoryResponse:
    """Get a page of a user's payments, newest first."""
    correlation_id = get_correlation_id(http_request)

    try:
        payments, total = await payment_service.get_payment_history(user_id, limit, offset)
    except Exception as e:
        raise to_http_exception(e, correlation_id, "payment history retrieval")

    return PaymentHistoryResponse(
        payments=[PaymentResponse.from_record(p) for p in payments],
        total=total,
        limit=limit,
        offset=offset,
        hasMore=offset + len(payments) < total
    )


@router.get("/stats/{user_id}", response_model=PaymentStatsResponse)
async def get_payment_stats(
    user_id: str,
    http_request: Request,
    period: str = Query("30d", pattern="^(7d|30d|90d|1y)$"),
    payment_service: PaymentService = Depends(get_payment_service)
) -> PaymentStatsResponse:
    """Summarize a user's payments over the trailing period."""
    correlation_id = get_correlation_id(http_request)

    try:
        stats = await payment_service.get_payment_stats(user_id, period)
    except Exception as e:
        raise to_http_exception(e, correlation_id, "payment stats retrieval")

    return PaymentStatsResponse.from_stats(stats)


@router.post("/setup-intent", response_model=SetupIntentResponse, status_code=201)
@trace_function("setup_intent_endpoint")
async def create_setup_intent(
    request: SetupIntentRequest,
    http_request: Request,
    payment_service: PaymentService = Depends(get_payment_service)
) -> SetupIntentResponse:
    """Open a setup intent the client confirms to save a card."""
    correlation_id = get_correlation_id(http_request)

    try:
        setup_intent = await payment_service.create_setup_intent(request.userId)
    except Exception as e:
        raise to_http_exception(e, correlation_id, "setup intent creation")

    logger.info("Setup intent created", user_id=request.userId, setup_intent_id=setup_intent.id, correlation_id=correlation_id)
    return SetupIntentResponse(id=setup_intent.id, clientSecret=setup_intent.client_secret)


@router.post("/methods", response_model=PaymentMethodResponse)
@trace_function("attach_payment_method_endpoint")
async def attach_payment_method(
    request: AttachPaymentMethodRequest,
    http_request: Request,
    payment_service: PaymentService = Depends(get_payment_service)
) -> PaymentMethodResponse:
    """Save a card on the user's customer as the default payment method."""
    correlation_id = get_correlation_id(http_request)

    try:
        method = await payment_service.attach_payment_method(request.userId, request.paymentMethodId)
    except Exception as e:
        raise to_http_exception(e, correlation_id, "payment method attachment")

    logger.info("Payment method attached", user_id=request.userId, payment_method_id=method.id, correlation_id=correlation_id)
    return PaymentMethodResponse.from_gateway(method)


@router.get("/methods/{user_id}", response_model=PaymentMethodsResponse)
async def get_payment_methods(
    user_id: str,
    http_request: Request,
    payment_service: PaymentService = Depends(get_payment_service)
) -> PaymentMethodsResponse:
    """List the user's saved cards; empty until a customer exists."""
    correlation_id = get_correlation_id(http_request)

    try:
        methods = await payment_service.get_payment_methods(user_id)
    except Exception as e:
        raise to_http_exception(e, correlation_id, "payment method listing")

    return PaymentMethodsResponse(paymentMethods=[PaymentMethodResponse.from_gateway(m) for m in methods])
