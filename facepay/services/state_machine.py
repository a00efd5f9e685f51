"""
Payment record state machine.

Allowed transitions::

    pending   -> succeeded | failed
    succeeded -> refunded

Every write is a conditional update keyed on the record id and the status
the transition was computed from. A writer that lost a race gets the
current record back and decides what that means; nothing blocks.
"""

import logging
from datetime import datetime
from typing import Dict, FrozenSet, Optional, Tuple

from facepay.exceptions import InvalidStateError, PaymentNotFoundError
from facepay.models.internal_models import PaymentRecord, PaymentStatus

logger = logging.getLogger(__name__)

TRANSITIONS: Dict[PaymentStatus, FrozenSet[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.SUCCEEDED, PaymentStatus.FAILED}),
    PaymentStatus.SUCCEEDED: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
}


def can_transition(current: PaymentStatus, target: PaymentStatus) -> bool:
    return target in TRANSITIONS[current]


class PaymentStateMachine:
    """Applies status transitions to payment records through a conditional store."""

    def __init__(self, payments, clock=datetime.utcnow):
        """
        Args:
            payments: Payment repository providing ``update_if_status`` and ``get_payment_by_id``
            clock: Callable returning the current time
        """
        self.payments = payments
        self.clock = clock

    def build(
        self,
        record: PaymentRecord,
        target: PaymentStatus,
        failure_reason: Optional[str] = None,
        failure_code: Optional[str] = None,
        refund_reason: Optional[str] = None
    ) -> PaymentRecord:
        """
        Compute the record after a transition without storing it.

        Raises:
            InvalidStateError: If the transition is not allowed
        """
        if not can_transition(record.status, target):
            raise InvalidStateError(
                f"Payment {record.id} cannot move from {record.status.value} to {target.value}"
            )

        now = self.clock()
        if target == PaymentStatus.SUCCEEDED:
            return record.evolve(status=target, processed_at=now, failure_reason=None, failure_code=None)
        if target == PaymentStatus.FAILED:
            return record.evolve(
                status=target,
                failure_reason=failure_reason or "Payment failed",
                failure_code=failure_code or "unknown",
            )
        return record.evolve(
            status=target,
            refunded_at=now,
            refund_reason=refund_reason or "User requested refund",
        )

    async def transition(
        self,
        record: PaymentRecord,
        target: PaymentStatus,
        **details: Optional[str]
    ) -> Tuple[PaymentRecord, bool]:
        """
        Move a record to ``target`` if its stored status still matches.

        Args:
            record: Record as last read by the caller
            target: Desired status
            **details: failure_reason, failure_code or refund_reason

        Returns:
            Tuple of (current record, applied). When ``applied`` is False the
            stored status had already moved on and the returned record is the
            freshly read one.

        Raises:
            InvalidStateError: If the transition is not allowed from ``record.status``
            PaymentNotFoundError: If the record vanished from the store
        """
        updated = self.build(record, target, **details)
        stored = await self.payments.update_if_status(updated, expected=record.status)

        if stored is not None:
            logger.info(f"Payment {record.id} moved {record.status.value} -> {target.value}")
            return stored, True

        current = await self.payments.get_payment_by_id(record.id)
        if current is None:
            raise PaymentNotFoundError(f"Payment {record.id} not found")

        logger.info(
            f"Payment {record.id} transition to {target.value} lost a race: "
            f"status is already {current.status.value}"
        )
        return current, False
