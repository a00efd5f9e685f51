"""
Stripe webhook handler for payment reconciliation.
"""

from datetime import datetime

import structlog
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from facepay.api.errors import get_correlation_id, to_http_exception
from facepay.observability import record_reconciliation_metrics, trace_function
from facepay.services.payment_service import PaymentService, get_payment_service

logger = structlog.get_logger()
router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])


@router.post("/stripe")
@trace_function("stripe_webhook")
async def handle_stripe_webhook(
    request: Request,
    payment_service: PaymentService = Depends(get_payment_service)
) -> JSONResponse:
    """
    Handle a Stripe event.

    The signature is verified against the raw body before anything is
    parsed. Events that cannot be applied are logged and still
    acknowledged; store failures and events that arrived ahead of the
    state they depend on return an error so that Stripe redelivers.
    """
    correlation_id = get_correlation_id(request)
    payload = await request.body()
    signature = request.headers.get("Stripe-Signature", "")

    try:
        event = payment_service.gateway.construct_event(payload, signature)
    except Exception as e:
        record_reconciliation_metrics("unknown", "rejected")
        raise to_http_exception(e, correlation_id, "webhook verification")

    logger.info("Received Stripe webhook", event_id=event.id, event_type=event.type, correlation_id=correlation_id)

    try:
        await payment_service.handle_gateway_event(event)
    except Exception as e:
        record_reconciliation_metrics(event.type, "error")
        raise to_http_exception(e, correlation_id, "webhook processing")

    record_reconciliation_metrics(event.type, "processed")
    return JSONResponse(
        status_code=200,
        content={
            "received": True,
            "eventId": event.id,
            "timestamp": datetime.utcnow().isoformat()
        }
    )
