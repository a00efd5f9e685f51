"""
Stripe client for the payment gateway.

The Stripe SDK is synchronous; every call runs in a worker thread under a
bounded timeout so the event loop is never blocked on the network.
Only read operations are retried. Create operations carry a deterministic
idempotency key so that a caller-level retry cannot double charge.
"""

import asyncio
import calendar
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import stripe

from facepay.config import settings
from facepay.exceptions import GatewayError, InputError
from facepay.models.internal_models import (
    GatewayEvent,
    GatewayIntent,
    GatewayPaymentMethod,
    GatewayRefund,
    GatewaySetupIntent,
    User,
)

logger = logging.getLogger(__name__)

SOURCE_TAG = "facepay"


def intent_idempotency_key(attempt_id: str) -> str:
    return f"facepay-intent-{attempt_id}"


def refund_idempotency_key(payment_id: str) -> str:
    return f"facepay-refund-{payment_id}"


def customer_idempotency_key(user_id: str) -> str:
    return f"facepay-customer-{user_id}"


def _to_intent(obj: Any) -> GatewayIntent:
    last_error = obj.get("last_payment_error") or {}
    customer = obj.get("customer")
    if customer is not None and not isinstance(customer, str):
        customer = customer.get("id")
    # latest_charge is an id unless the request expanded it
    charge = obj.get("latest_charge")
    if charge is None or isinstance(charge, str):
        charge = {}
    return GatewayIntent(
        id=obj["id"],
        status=obj.get("status", "unknown"),
        amount=int(obj.get("amount") or 0),
        currency=obj.get("currency", ""),
        client_secret=obj.get("client_secret"),
        customer_id=customer,
        metadata=dict(obj.get("metadata") or {}),
        failure_message=last_error.get("message"),
        failure_code=last_error.get("code"),
        refunded=bool(charge.get("refunded")),
        amount_refunded=int(charge.get("amount_refunded") or 0),
    )


def _to_payment_method(obj: Any, default_id: Optional[str] = None) -> GatewayPaymentMethod:
    card = obj.get("card")
    return GatewayPaymentMethod(
        id=obj["id"],
        type=obj.get("type", "card"),
        brand=card.get("brand") if card else None,
        last4=card.get("last4") if card else None,
        exp_month=card.get("exp_month") if card else None,
        exp_year=card.get("exp_year") if card else None,
        is_default=obj["id"] == default_id,
    )


class StripeGateway:
    """Async facade over the Stripe payment intents, customers, payment methods and refunds APIs."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        base_delay: float = 0.5
    ):
        self._api_key = api_key if api_key is not None else settings.stripe_secret_key
        self._webhook_secret = webhook_secret if webhook_secret is not None else settings.stripe_webhook_secret
        self.timeout = timeout if timeout is not None else settings.gateway_timeout
        self.max_retries = max_retries if max_retries is not None else settings.gateway_max_retries
        self.base_delay = base_delay

        if self.timeout <= 0:
            raise ValueError(f"Gateway timeout must be positive, got {self.timeout}")
        if self.max_retries < 1:
            raise ValueError(f"Gateway max retries must be at least 1, got {self.max_retries}")

    async def _call(self, operation: str, func: Callable, *args, **kwargs) -> Any:
        """Run one SDK call in a thread with a timeout, translating errors."""
        if not self._api_key:
            raise GatewayError("Stripe secret key is not configured", code="not_configured")

        try:
            return await asyncio.wait_for(
                asyncio.to_thread(func, *args, api_key=self._api_key, **kwargs),
                timeout=self.timeout
            )
        except asyncio.TimeoutError:
            logger.error(f"Stripe {operation} timed out after {self.timeout}s")
            raise GatewayError(f"Gateway {operation} timed out after {self.timeout}s", code="timeout")
        except stripe.StripeError as e:
            logger.error(f"Stripe {operation} failed: {e}")
            raise GatewayError(f"Gateway {operation} failed: {e.user_message or e}", code=e.code)

    async def _retry_read(self, operation: str, func: Callable, *args, **kwargs) -> Any:
        """Retry a read operation with exponential backoff."""
        last_exception = None

        for attempt in range(self.max_retries):
            try:
                return await self._call(operation, func, *args, **kwargs)
            except GatewayError as e:
                last_exception = e
                if attempt < self.max_retries - 1:
                    delay = self.base_delay * (2 ** attempt)
                    logger.warning(f"Stripe {operation} failed (attempt {attempt + 1}/{self.max_retries}), retrying in {delay}s: {e}")
                    await asyncio.sleep(delay)
                else:
                    logger.error(f"Stripe {operation} failed after {self.max_retries} attempts: {e}")

        raise last_exception

    async def create_customer(self, user: User) -> str:
        """
        Create a gateway customer for a user.

        Callers must check the stored mapping first; the idempotency key
        only protects against a retry of the same request.

        Returns:
            Gateway customer id
        """
        customer = await self._call(
            "customer creation",
            stripe.Customer.create,
            email=user.email,
            name=user.full_name,
            phone=user.phone,
            metadata={"userId": user.id, "source": SOURCE_TAG},
            idempotency_key=customer_idempotency_key(user.id)
        )
        logger.info(f"Created gateway customer {customer['id']} for user {user.id}")
        return customer["id"]

    async def create_intent(
        self,
        amount_minor: int,
        currency: str,
        customer_id: str,
        metadata: Dict[str, str],
        idempotency_key: str
    ) -> GatewayIntent:
        """Open a payment intent tagged with correlation metadata."""
        intent = await self._call(
            "intent creation",
            stripe.PaymentIntent.create,
            amount=amount_minor,
            currency=currency.lower(),
            customer=customer_id,
            automatic_payment_methods={"enabled": True},
            metadata={
                **metadata,
                "source": SOURCE_TAG,
                "timestamp": datetime.utcnow().isoformat()
            },
            idempotency_key=idempotency_key
        )
        logger.info(f"Created payment intent {intent['id']} for {amount_minor} {currency}")
        return _to_intent(intent)

    async def confirm_intent(self, intent_id: str, payment_method_id: Optional[str] = None) -> GatewayIntent:
        """Submit a payment method against an intent and return the resulting intent."""
        params = {}
        if payment_method_id:
            params["payment_method"] = payment_method_id

        intent = await self._call("intent confirmation", stripe.PaymentIntent.confirm, intent_id, **params)
        logger.info(f"Confirmed payment intent {intent_id}: status={intent.get('status')}")
        return _to_intent(intent)

    async def create_refund(self, intent_id: str, payment_id: str, reason: str) -> GatewayRefund:
        refund = await self._call(
            "refund creation",
            stripe.Refund.create,
            payment_intent=intent_id,
            reason="requested_by_customer",
            metadata={
                "reason": reason,
                "refundedBy": SOURCE_TAG,
                "originalPaymentId": payment_id
            },
            idempotency_key=refund_idempotency_key(payment_id)
        )
        logger.info(f"Created refund {refund['id']} for payment intent {intent_id}")
        return GatewayRefund(id=refund["id"], status=refund.get("status", "unknown"), amount=refund.get("amount"))

    async def create_setup_intent(self, customer_id: str, user_id: str) -> GatewaySetupIntent:
        """Open a setup intent so the client can save a card for later face payments."""
        setup_intent = await self._call(
            "setup intent creation",
            stripe.SetupIntent.create,
            customer=customer_id,
            payment_method_types=["card"],
            metadata={"userId": user_id, "purpose": "facepay_payment_method", "source": SOURCE_TAG}
        )
        logger.info(f"Created setup intent {setup_intent['id']} for customer {customer_id}")
        return GatewaySetupIntent(
            id=setup_intent["id"],
            client_secret=setup_intent.get("client_secret"),
            status=setup_intent.get("status", "unknown")
        )

    async def attach_payment_method(self, payment_method_id: str, customer_id: str) -> GatewayPaymentMethod:
        """Attach a payment method to a customer and make it the invoice default."""
        payment_method = await self._call(
            "payment method attachment",
            stripe.PaymentMethod.attach,
            payment_method_id,
            customer=customer_id
        )
        await self._call(
            "default payment method update",
            stripe.Customer.modify,
            customer_id,
            invoice_settings={"default_payment_method": payment_method_id}
        )
        logger.info(f"Attached payment method {payment_method_id} to customer {customer_id}")
        return _to_payment_method(payment_method, default_id=payment_method_id)

    async def list_payment_methods(
        self,
        customer_id: str,
        default_payment_method_id: Optional[str] = None
    ) -> List[GatewayPaymentMethod]:
        result = await self._retry_read(
            "payment method listing", stripe.PaymentMethod.list, customer=customer_id, type="card"
        )
        return [_to_payment_method(pm, default_payment_method_id) for pm in result["data"]]

    async def retrieve_intent(self, intent_id: str) -> GatewayIntent:
        intent = await self._retry_read(
            "intent retrieval", stripe.PaymentIntent.retrieve, intent_id, expand=["latest_charge"]
        )
        return _to_intent(intent)

    async def search_tagged_intents(self, created_after: Optional[datetime] = None, limit: int = 100) -> List[GatewayIntent]:
        """
        Find intents created by this service, newest first.

        Args:
            created_after: Only return intents created after this instant
            limit: Maximum number of intents to return
        """
        query = f"metadata['source']:'{SOURCE_TAG}'"
        if created_after is not None:
            # Naive datetimes are UTC throughout the service
            query += f" AND created>{calendar.timegm(created_after.utctimetuple())}"

        def search(api_key: str) -> List[Any]:
            result = stripe.PaymentIntent.search(
                query=query, limit=min(limit, 100), expand=["data.latest_charge"], api_key=api_key
            )
            intents = []
            for intent in result.auto_paging_iter():
                intents.append(intent)
                if len(intents) >= limit:
                    break
            return intents

        intents = await self._retry_read("intent search", search)
        return [_to_intent(intent) for intent in intents]

    def construct_event(self, payload: bytes, signature: str) -> GatewayEvent:
        """
        Verify a webhook signature and parse the event.

        Raises:
            InputError: If the payload or signature is invalid
        """
        if not self._webhook_secret:
            raise GatewayError("Stripe webhook secret is not configured", code="not_configured")

        try:
            event = stripe.Webhook.construct_event(payload, signature, self._webhook_secret)
        except stripe.SignatureVerificationError as e:
            logger.warning(f"Invalid webhook signature: {e}")
            raise InputError("Invalid webhook signature")
        except ValueError as e:
            logger.warning(f"Invalid webhook payload: {e}")
            raise InputError("Invalid webhook payload")

        return GatewayEvent.from_stripe(event)
