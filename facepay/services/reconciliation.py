"""
Reconciliation of gateway-originated payment events.

Events arrive at least once, out of order across types, and possibly
late. Applying an event to a record that already reached the event's
status is a no-op. Events that cannot be applied are logged as
conflicts and never raised to the caller. A refund observed while the
record is still pending settles the success first; a refund of a charge
that was never paid is deferred so the gateway redelivers it.

Partial refunds are not modelled: a charge.refunded event whose charge
is not fully refunded leaves a succeeded record succeeded.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from facepay.exceptions import PaymentNotFoundError, ReconciliationConflict, ReconciliationDeferred
from facepay.models.internal_models import (
    BiometricEvidence,
    GatewayEvent,
    GatewayIntent,
    PaymentRecord,
    PaymentStatus,
)
from facepay.services.state_machine import PaymentStateMachine, can_transition

logger = logging.getLogger(__name__)

PAYMENT_SUCCEEDED = "payment_intent.succeeded"
PAYMENT_FAILED = "payment_intent.payment_failed"
CHARGE_REFUNDED = "charge.refunded"

# Statuses an event is satisfied by; a record already in one of them needs no change
SATISFIED_BY: Dict[PaymentStatus, frozenset] = {
    PaymentStatus.SUCCEEDED: frozenset({PaymentStatus.SUCCEEDED, PaymentStatus.REFUNDED}),
    PaymentStatus.FAILED: frozenset({PaymentStatus.FAILED}),
    PaymentStatus.REFUNDED: frozenset({PaymentStatus.REFUNDED}),
}


def status_from_intent(intent: GatewayIntent) -> Optional[PaymentStatus]:
    """
    Map a gateway intent status onto a local status.

    Returns:
        The local status the intent implies, or None while it is still in flight
    """
    if intent.status == "succeeded":
        return PaymentStatus.SUCCEEDED
    if intent.status == "canceled":
        return PaymentStatus.FAILED
    if intent.status == "requires_payment_method" and (intent.failure_message or intent.failure_code):
        return PaymentStatus.FAILED
    return None


def polled_status(intent: GatewayIntent) -> Optional[PaymentStatus]:
    """Like status_from_intent, but a fully refunded charge implies REFUNDED."""
    target = status_from_intent(intent)
    if target == PaymentStatus.SUCCEEDED and intent.refunded:
        return PaymentStatus.REFUNDED
    return target


def details_from_intent(intent: GatewayIntent, target: PaymentStatus) -> Dict[str, Optional[str]]:
    if target == PaymentStatus.FAILED:
        return {"failure_reason": intent.failure_message, "failure_code": intent.failure_code}
    if target == PaymentStatus.REFUNDED:
        return {"refund_reason": "Refunded at gateway"}
    return {}


def charge_was_paid(charge: Dict[str, Any]) -> bool:
    return bool(charge.get("paid")) or charge.get("status") == "succeeded"


class ReconciliationListener:
    """Applies gateway events and polled gateway state to payment records."""

    def __init__(self, payments, gateway, state_machine: Optional[PaymentStateMachine] = None):
        self.payments = payments
        self.gateway = gateway
        self.state_machine = state_machine or PaymentStateMachine(payments)
        self._handlers: Dict[str, Callable[[GatewayEvent], Awaitable[None]]] = {
            PAYMENT_SUCCEEDED: self._handle_payment_succeeded,
            PAYMENT_FAILED: self._handle_payment_failed,
            CHARGE_REFUNDED: self._handle_charge_refunded,
        }

    async def handle_event(self, event: GatewayEvent) -> None:
        """
        Apply one gateway event.

        Unknown event types and conflicts are logged and swallowed;
        persistence failures and deferred events propagate so the
        gateway redelivers.
        """
        handler = self._handlers.get(event.type)
        if handler is None:
            logger.info(f"Ignoring unhandled gateway event type: {event.type} ({event.id})")
            return

        try:
            await handler(event)
        except ReconciliationConflict as e:
            logger.warning(f"Reconciliation conflict for event {event.id} ({event.type}): {e}")

    async def _handle_payment_succeeded(self, event: GatewayEvent) -> None:
        record = await self._find_record(event)
        await self._apply(record, PaymentStatus.SUCCEEDED, event.id)

    async def _handle_payment_failed(self, event: GatewayEvent) -> None:
        record = await self._find_record(event)
        error = event.payload.get("last_payment_error") or {}
        await self._apply(
            record,
            PaymentStatus.FAILED,
            event.id,
            failure_reason=error.get("message") or "Payment failed",
            failure_code=error.get("code") or "unknown",
        )

    async def _handle_charge_refunded(self, event: GatewayEvent) -> None:
        record = await self._find_record(event)
        charge = event.payload

        if record.status == PaymentStatus.PENDING and not charge_was_paid(charge):
            raise ReconciliationDeferred(
                f"Refund event {event.id} for payment {record.id} arrived before the charge was paid"
            )

        if not charge.get("refunded"):
            logger.info(
                f"Partial refund of {charge.get('amount_refunded', 0)} on payment {record.id} "
                f"({event.id}); partial refunds are not tracked"
            )
            if record.status == PaymentStatus.PENDING:
                await self._apply(record, PaymentStatus.SUCCEEDED, event.id)
            return

        await self._apply(record, PaymentStatus.REFUNDED, event.id, refund_reason="Refunded at gateway")

    async def _find_record(self, event: GatewayEvent) -> PaymentRecord:
        if not event.object_id:
            raise ReconciliationConflict("Event does not reference a payment intent")

        record = await self.payments.get_payment_by_intent_id(event.object_id)
        if record is None:
            raise ReconciliationConflict(f"No payment record for intent {event.object_id}")
        return record

    async def _apply(self, record: PaymentRecord, target: PaymentStatus, source: str, **details) -> PaymentRecord:
        """Apply a transition idempotently, re-checking after a lost race."""
        if record.status in SATISFIED_BY[target]:
            logger.info(f"Payment {record.id} already {record.status.value}; {source} is a no-op")
            return record

        # The gateway only refunds paid charges, so the success was missed
        if target == PaymentStatus.REFUNDED and record.status == PaymentStatus.PENDING:
            logger.info(f"Payment {record.id} refunded before its success was seen; settling success first")
            record = await self._apply(record, PaymentStatus.SUCCEEDED, source)
            if record.status in SATISFIED_BY[target]:
                return record

        if not can_transition(record.status, target):
            raise ReconciliationConflict(
                f"Payment {record.id} is {record.status.value}; cannot apply {target.value}"
            )

        current, applied = await self.state_machine.transition(record, target, **details)
        if applied or current.status in SATISFIED_BY[target]:
            return current

        # Status moved between read and write; retry once from the fresh state
        if can_transition(current.status, target):
            current, _ = await self.state_machine.transition(current, target, **details)
            return current

        raise ReconciliationConflict(
            f"Payment {record.id} moved to {current.status.value}; cannot apply {target.value}"
        )

    async def reconcile_payment(self, payment_id: str) -> PaymentRecord:
        """
        Poll the gateway for a record's intent and apply the implied status.

        Raises:
            PaymentNotFoundError: If the payment does not exist
            GatewayError: If the gateway cannot be read after retries
        """
        record = await self.payments.get_payment_by_id(payment_id)
        if record is None:
            raise PaymentNotFoundError(f"Payment {payment_id} not found")

        intent = await self.gateway.retrieve_intent(record.gateway_intent_id)
        target = polled_status(intent)
        if target is None:
            logger.info(f"Payment {payment_id} intent still {intent.status}; nothing to reconcile")
            return record

        try:
            return await self._apply(record, target, f"poll:{intent.id}", **details_from_intent(intent, target))
        except ReconciliationConflict as e:
            logger.warning(f"Reconciliation conflict while polling payment {payment_id}: {e}")
            return await self.payments.get_payment_by_id(payment_id)

    async def sweep_orphaned_intents(self, lookback: timedelta = timedelta(days=1)) -> int:
        """
        Adopt gateway intents that have no local record.

        An intent is orphaned when authorization created it but the local
        record was never written. Its metadata carries everything needed
        to rebuild the record under the original attempt id.

        Returns:
            Number of records adopted
        """
        created_after = datetime.now(timezone.utc) - lookback
        intents = await self.gateway.search_tagged_intents(created_after=created_after)

        adopted = 0
        for intent in intents:
            attempt_id = intent.metadata.get("attempt_id")
            if not attempt_id:
                continue

            if await self.payments.get_payment_by_id(attempt_id) is not None:
                continue

            try:
                record = self._record_from_intent(attempt_id, intent)
            except (KeyError, ValueError) as e:
                logger.error(f"Cannot rebuild payment from intent {intent.id}: {e}")
                continue

            if await self.payments.adopt_payment(record):
                adopted += 1
                logger.warning(f"Adopted orphaned intent {intent.id} as payment {attempt_id} ({record.status.value})")

        logger.info(f"Orphan sweep checked {len(intents)} intents, adopted {adopted}")
        return adopted

    def _record_from_intent(self, attempt_id: str, intent: GatewayIntent) -> PaymentRecord:
        metadata = intent.metadata
        now = datetime.utcnow()
        record = PaymentRecord(
            id=attempt_id,
            user_id=metadata["userId"],
            amount_minor_units=intent.amount,
            currency=intent.currency,
            status=PaymentStatus.PENDING,
            evidence=BiometricEvidence(
                confidence=float(metadata["faceConfidence"]),
                distance=float(metadata["faceDistance"]),
                threshold_used=float(metadata["faceThreshold"]),
            ),
            gateway_intent_id=intent.id,
            gateway_customer_id=intent.customer_id or "",
            description=metadata.get("description", ""),
            created_at=now,
        )

        target = polled_status(intent)
        if target == PaymentStatus.REFUNDED:
            record = self.state_machine.build(record, PaymentStatus.SUCCEEDED)
        if target is not None:
            record = self.state_machine.build(record, target, **details_from_intent(intent, target))
        return record
