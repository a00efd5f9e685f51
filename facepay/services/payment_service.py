"""
Payment service for biometric-gated payment authorization.

This module provides the core business logic for:
- Converting decimal amounts into gateway minor units
- Opening a gateway payment intent once a face match has been established
- Confirming, refunding and listing payment records
- Saved payment methods and per-period payment statistics
- Delegating gateway events and polling to the reconciliation listener
"""

import logging
from collections import Counter
from dataclasses import replace
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Dict, Iterable, List, Optional, Tuple, Union
from uuid import uuid4

from facepay.clients.stripe_client import StripeGateway, intent_idempotency_key
from facepay.clients.supabase_client import DatabaseManager
from facepay.config import settings
from facepay.exceptions import (
    InputError,
    InvalidStateError,
    NoMatchError,
    PaymentNotFoundError,
    PersistenceError,
    UserNotFoundError,
)
from facepay.models.internal_models import (
    AuthorizationResult,
    BiometricEvidence,
    GatewayEvent,
    GatewayPaymentMethod,
    GatewaySetupIntent,
    PaymentRecord,
    PaymentStats,
    PaymentStatus,
    User,
)
from facepay.services.reconciliation import ReconciliationListener, status_from_intent
from facepay.services.state_machine import PaymentStateMachine

logger = logging.getLogger(__name__)

# Currencies the gateway charges in whole units
ZERO_DECIMAL_CURRENCIES = frozenset({
    "bif", "clp", "djf", "gnf", "jpy", "kmf", "krw", "mga",
    "pyg", "rwf", "ugx", "vnd", "vuv", "xaf", "xof", "xpf",
})

MAX_HISTORY_PAGE = 100

STATS_PERIODS = {"7d": 7, "30d": 30, "90d": 90, "1y": 365}


def to_minor_units(
    amount: Union[Decimal, str, int, float],
    currency: str,
    supported_currencies: Optional[Iterable[str]] = None
) -> int:
    """
    Convert a decimal amount into the currency's minor units.

    Args:
        amount: Amount in major units, e.g. ``Decimal("25.50")``
        currency: ISO currency code, any case
        supported_currencies: Allowed currencies. Defaults to settings.

    Returns:
        Integer amount in minor units (2550 for 25.50 usd, 1000 for 1000 jpy)

    Raises:
        InputError: If the currency is unsupported, the amount is not positive,
            or it has more precision than the currency allows
    """
    currency = (currency or "").lower()
    supported = supported_currencies if supported_currencies is not None else settings.supported_currencies
    if currency not in supported:
        raise InputError(f"Unsupported currency: {currency or '<empty>'}")

    try:
        value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    except InvalidOperation:
        raise InputError(f"Invalid amount: {amount}")

    if not value.is_finite() or value <= 0:
        raise InputError(f"Amount must be positive, got {amount}")

    exponent = 0 if currency in ZERO_DECIMAL_CURRENCIES else 2
    minor = value.scaleb(exponent)
    if minor != minor.to_integral_value():
        raise InputError(f"Amount {amount} has more than {exponent} decimal places for {currency}")

    return int(minor)


class PaymentAuthorizer:
    """
    Opens a gateway payment intent for an already established face match
    and records the pending attempt.

    Matching is never re-run here; the caller passes the evidence.
    """

    def __init__(self, db_manager: DatabaseManager, gateway: StripeGateway, clock=datetime.utcnow):
        self.db = db_manager
        self.gateway = gateway
        self.clock = clock

    async def ensure_customer(self, user: User) -> str:
        """
        Return the user's gateway customer, creating it at most once.

        The stored mapping is checked first. A concurrent authorization
        that stores its mapping first wins; the loser re-reads it.
        """
        if user.gateway_customer_id:
            return user.gateway_customer_id

        customer_id = await self.gateway.create_customer(user)
        if await self.db.users.set_gateway_customer_id(user.id, customer_id):
            return customer_id

        current = await self.db.users.get_user_by_id(user.id)
        if current is None or not current.gateway_customer_id:
            raise PersistenceError(f"Gateway customer mapping for user {user.id} could not be stored")

        logger.info(f"Using gateway customer {current.gateway_customer_id} stored concurrently for user {user.id}")
        return current.gateway_customer_id

    async def authorize(
        self,
        user_id: str,
        amount: Union[Decimal, str, int, float],
        currency: str,
        evidence: BiometricEvidence,
        description: str = "",
        attempt_id: Optional[str] = None
    ) -> AuthorizationResult:
        """
        Authorize a payment for a matched user.

        Workflow:
        1. Check the user, the amount and the match evidence
        2. Ensure the user's gateway customer exists
        3. Create the gateway intent, keyed on the attempt id
        4. Persist the pending record under the attempt id

        Args:
            user_id: Paying user
            amount: Amount in major units
            currency: ISO currency code
            evidence: Match scalars from face verification
            description: Free-text description for the gateway and history
            attempt_id: Caller-supplied attempt id; generated if omitted

        Returns:
            AuthorizationResult with the pending record and client secret

        Raises:
            InputError: If the amount or currency is invalid
            UserNotFoundError: If the user does not exist or is inactive
            NoMatchError: If the evidence is not a match
            GatewayError: If the gateway rejects customer or intent creation
            PersistenceError: If the record cannot be stored
        """
        amount_minor = to_minor_units(amount, currency)
        currency = currency.lower()

        user = await self.db.users.get_user_by_id(user_id)
        if user is None:
            raise UserNotFoundError(f"User {user_id} not found")
        if not user.is_active:
            raise UserNotFoundError(f"User {user_id} is not active")

        if not evidence.is_match:
            raise NoMatchError("Face verification did not match", threshold=evidence.threshold_used)

        attempt_id = attempt_id or str(uuid4())
        logger.info(f"Authorizing payment {attempt_id} for user {user_id}: {amount_minor} {currency}")

        customer_id = await self.ensure_customer(user)

        intent = await self.gateway.create_intent(
            amount_minor,
            currency,
            customer_id,
            metadata={
                "userId": user_id,
                "description": description,
                "faceConfidence": str(evidence.confidence),
                "faceDistance": str(evidence.distance),
                "faceThreshold": str(evidence.threshold_used),
                "attempt_id": attempt_id,
            },
            idempotency_key=intent_idempotency_key(attempt_id)
        )

        record = PaymentRecord(
            id=attempt_id,
            user_id=user_id,
            amount_minor_units=amount_minor,
            currency=currency,
            status=PaymentStatus.PENDING,
            evidence=evidence,
            gateway_intent_id=intent.id,
            gateway_customer_id=customer_id,
            description=description,
            created_at=self.clock(),
        )

        try:
            await self.db.payments.create_payment(record)
        except PersistenceError:
            logger.error(
                f"Payment intent {intent.id} for attempt {attempt_id} has no local record; "
                f"the orphan sweep will adopt it"
            )
            raise

        logger.info(f"Payment {attempt_id} pending on intent {intent.id}")
        return AuthorizationResult(payment=record, client_secret=intent.client_secret)


class PaymentService:
    """
    Facade over authorization, the state machine and reconciliation.

    Face verification is delegated to the face authentication service so
    that a failed match never reaches the gateway.
    """

    def __init__(
        self,
        db_manager: Optional[DatabaseManager] = None,
        gateway: Optional[StripeGateway] = None,
        auth_service=None,
        clock=datetime.utcnow
    ):
        """
        Initialize payment service.

        Args:
            db_manager: Database manager instance. If None, creates a new one.
            gateway: Stripe gateway. If None, one is built from settings.
            auth_service: Face authentication service. If None, uses the global one.
            clock: Callable returning the current time
        """
        self.db = db_manager or DatabaseManager()
        self.gateway = gateway or StripeGateway()
        if auth_service is None:
            from facepay.services.auth_service import get_auth_service
            auth_service = get_auth_service()
        self.auth_service = auth_service
        self.clock = clock

        self.state_machine = PaymentStateMachine(self.db.payments, clock=clock)
        self.authorizer = PaymentAuthorizer(self.db, self.gateway, clock=clock)
        self.listener = ReconciliationListener(self.db.payments, self.gateway, self.state_machine)

    async def authorize_payment(
        self,
        user_id: str,
        amount: Union[Decimal, str, int, float],
        currency: str,
        image_bytes: bytes,
        description: str = ""
    ) -> AuthorizationResult:
        """
        Verify the user's face and authorize a payment on a match.

        Raises:
            InputError: If the amount, currency or image is invalid
            NoMatchError: If the face does not match; no record is created
        """
        # Reject malformed amounts before running the face model
        to_minor_units(amount, currency)

        match, detector_confidence = await self.auth_service.verify_face(user_id, image_bytes)
        if not match.is_match:
            logger.info(f"Payment for user {user_id} refused: face similarity {match.similarity:.4f} below {match.threshold}")
            raise NoMatchError(
                "Face verification failed",
                similarity=match.similarity,
                threshold=match.threshold
            )

        evidence = BiometricEvidence.from_match(match, detector_confidence)
        result = await self.authorizer.authorize(user_id, amount, currency, evidence, description)
        return replace(result, match=match)

    async def confirm_payment(self, intent_id: str, payment_method_id: Optional[str] = None) -> PaymentRecord:
        """
        Submit a payment method against an intent and copy the resulting status.

        Statuses still in flight at the gateway leave the record pending;
        the webhook or a poll settles it later.

        Raises:
            PaymentNotFoundError: If no record is bound to the intent
            InvalidStateError: If the record is not pending
        """
        record = await self.db.payments.get_payment_by_intent_id(intent_id)
        if record is None:
            raise PaymentNotFoundError(f"No payment for intent {intent_id}")
        if record.status != PaymentStatus.PENDING:
            raise InvalidStateError(f"Payment {record.id} is {record.status.value}; only pending payments can be confirmed")

        intent = await self.gateway.confirm_intent(intent_id, payment_method_id)
        target = status_from_intent(intent)
        if target is None:
            logger.info(f"Payment {record.id} confirmation left intent {intent_id} in {intent.status}")
            return record

        details = {}
        if target == PaymentStatus.FAILED:
            details = {"failure_reason": intent.failure_message, "failure_code": intent.failure_code}

        current, applied = await self.state_machine.transition(record, target, **details)
        if not applied and current.status != target:
            logger.warning(
                f"Payment {record.id} confirmation returned {target.value} "
                f"but record is already {current.status.value}"
            )
        return current

    async def refund_payment(self, payment_id: str, reason: Optional[str] = None) -> PaymentRecord:
        """
        Refund a succeeded payment.

        Raises:
            PaymentNotFoundError: If the payment does not exist
            InvalidStateError: If the payment is not succeeded
        """
        record = await self.db.payments.get_payment_by_id(payment_id)
        if record is None:
            raise PaymentNotFoundError(f"Payment {payment_id} not found")
        if record.status != PaymentStatus.SUCCEEDED:
            raise InvalidStateError(f"Payment {payment_id} is {record.status.value}; only succeeded payments can be refunded")

        reason = reason or "User requested refund"
        refund = await self.gateway.create_refund(record.gateway_intent_id, record.id, reason)
        logger.info(f"Gateway refund {refund.id} for payment {payment_id}: {refund.status}")

        current, applied = await self.state_machine.transition(record, PaymentStatus.REFUNDED, refund_reason=reason)
        if not applied and current.status != PaymentStatus.REFUNDED:
            raise InvalidStateError(f"Payment {payment_id} moved to {current.status.value} during refund")
        return current

    async def get_payment_history(self, user_id: str, limit: int = 10, offset: int = 0) -> Tuple[List[PaymentRecord], int]:
        """
        Get a page of a user's payments, newest first.

        Returns:
            Tuple of (payments, total count)
        """
        if not 1 <= limit <= MAX_HISTORY_PAGE:
            raise InputError(f"Limit must be between 1 and {MAX_HISTORY_PAGE}")
        if offset < 0:
            raise InputError("Offset must not be negative")

        payments, total = await self.db.payments.list_payments_by_user(user_id, limit, offset)
        logger.info(f"Retrieved {len(payments)} of {total} payments for user {user_id}")
        return payments, total

    async def get_payment_stats(self, user_id: str, period: str = "30d") -> PaymentStats:
        """
        Summarize a user's payments created within a trailing period.

        Args:
            user_id: User whose payments are summarized
            period: One of ``7d``, ``30d``, ``90d`` or ``1y``

        Raises:
            InputError: If the period is not recognized
        """
        days = STATS_PERIODS.get(period)
        if days is None:
            raise InputError(f"Period must be one of {', '.join(STATS_PERIODS)}, got {period}")

        since = self.clock() - timedelta(days=days)
        payments = await self.db.payments.list_payments_since(user_id, since)

        counts = Counter(payment.status for payment in payments)
        totals: Dict[str, int] = {}
        for payment in payments:
            if payment.status == PaymentStatus.SUCCEEDED:
                totals[payment.currency] = totals.get(payment.currency, 0) + payment.amount_minor_units

        logger.info(f"Computed {period} payment stats for user {user_id} over {len(payments)} payments")
        return PaymentStats(
            period=period,
            since=since,
            total_payments=len(payments),
            succeeded=counts[PaymentStatus.SUCCEEDED],
            failed=counts[PaymentStatus.FAILED],
            pending=counts[PaymentStatus.PENDING],
            refunded=counts[PaymentStatus.REFUNDED],
            totals_by_currency=totals,
        )

    async def create_setup_intent(self, user_id: str) -> GatewaySetupIntent:
        """Open a gateway setup intent for saving a card, creating the customer if needed."""
        user = await self._get_active_user(user_id)
        customer_id = await self.authorizer.ensure_customer(user)
        return await self.gateway.create_setup_intent(customer_id, user_id)

    async def attach_payment_method(self, user_id: str, payment_method_id: str) -> GatewayPaymentMethod:
        """
        Attach a saved card to the user's customer and make it the default.

        Raises:
            InvalidStateError: If the user has no gateway customer yet
        """
        user = await self._get_active_user(user_id)
        if not user.gateway_customer_id:
            raise InvalidStateError(f"User {user_id} has no gateway customer; create a setup intent first")

        payment_method = await self.gateway.attach_payment_method(payment_method_id, user.gateway_customer_id)
        await self.db.users.set_default_payment_method(user_id, payment_method_id)
        return payment_method

    async def get_payment_methods(self, user_id: str) -> List[GatewayPaymentMethod]:
        user = await self._get_active_user(user_id)
        if not user.gateway_customer_id:
            return []
        return await self.gateway.list_payment_methods(user.gateway_customer_id, user.default_payment_method_id)

    async def _get_active_user(self, user_id: str) -> User:
        user = await self.db.users.get_user_by_id(user_id)
        if user is None:
            raise UserNotFoundError(f"User {user_id} not found")
        if not user.is_active:
            raise UserNotFoundError(f"User {user_id} is not active")
        return user

    async def handle_gateway_event(self, event: GatewayEvent) -> None:
        await self.listener.handle_event(event)

    async def reconcile_payment(self, payment_id: str) -> PaymentRecord:
        return await self.listener.reconcile_payment(payment_id)

    async def sweep_orphaned_intents(self, lookback: timedelta = timedelta(days=1)) -> int:
        return await self.listener.sweep_orphaned_intents(lookback)


# Global service instance
_payment_service: Optional[PaymentService] = None


def get_payment_service() -> PaymentService:
    """
    Get the global payment service instance.

    Returns:
        PaymentService: The global payment service instance
    """
    global _payment_service
    if _payment_service is None:
        _payment_service = PaymentService()
    return _payment_service
