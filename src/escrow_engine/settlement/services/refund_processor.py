"""Refund Processor - compensating refunds against escrowed or released payments.

Refunds never exceed the un-disbursed balance (gross minus portions
already committed to payouts). A full refund that cannot reverse
committed portions records the gap as a shortfall and flags the payment
for manual reconciliation.
"""

from __future__ import annotations

import logging
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.orm import Session

from escrow_engine.calculators.fees import split_remaining
from escrow_engine.calculators.money import format_minor_units, require_minor_units
from escrow_engine.errors import (
    InsufficientBalance,
    InvalidAmount,
    InvalidTransition,
    RefundNotPermitted,
)
from escrow_engine.models import EscrowRefund
from escrow_engine.settlement.clock import Clock
from escrow_engine.settlement.config import RefundPolicy
from escrow_engine.settlement.services.ledger_service import EscrowLedger
from escrow_engine.settlement.services.state_machine import PaymentStateMachine
from escrow_engine.settlement.types import (
    Actor,
    EntryType,
    PaymentState,
    RefundStatus,
    RefundTrigger,
    RefundType,
)

logger = logging.getLogger(__name__)


def auto_refund_key(condition: str, event_ref: str) -> str:
    """Idempotency key for an automatic refund, derived from its triggering event."""
    return f"refund:auto:{condition}:{event_ref}"


class RefundProcessor:
    def __init__(self, session: Session, ledger: EscrowLedger, policy: RefundPolicy, clock: Clock):
        self.session = session
        self.ledger = ledger
        self.policy = policy
        self.clock = clock

    def refund(
        self,
        payment_id: UUID,
        *,
        refund_type: RefundType,
        trigger: RefundTrigger,
        reason: str,
        actor: Actor,
        amount: int | None = None,
        idempotency_key: str | None = None,
        condition: str | None = None,
        dispute_id: UUID | None = None,
    ) -> tuple[EscrowRefund, bool]:
        """Record a refund on the payment's ledger.

        Returns:
            (refund, is_new). A repeated idempotency key returns the first refund.

        Raises:
            RefundNotPermitted: Automatic refund for a condition the policy
                does not allow, or without an event-derived key.
            InvalidAmount: Partial refund amount missing or not positive.
            InsufficientBalance: Amount exceeds the un-disbursed balance.
            InvalidTransition: Payment status does not accept this refund, or the
                payment is disputed and ``dispute_id`` is not given.
        """
        if trigger == RefundTrigger.AUTO:
            if condition not in self.policy.auto_conditions:
                raise RefundNotPermitted(
                    f"Automatic refund not allowed for condition {condition!r}",
                    condition=condition,
                )
            if not idempotency_key:
                raise RefundNotPermitted("Automatic refunds need a key derived from the triggering event")

        key = idempotency_key or f"refund:{payment_id}:{uuid4()}"
        existing = self.get_by_key(key)
        if existing is not None:
            logger.debug("Refund %s replayed for key %s", existing.refund_id, key)
            return existing, False

        state = self.ledger.current_state(payment_id)
        entry_type = EntryType.FULL_REFUND if refund_type == RefundType.FULL else EntryType.PARTIAL_REFUND
        if not PaymentStateMachine.can_append(state.status, entry_type):
            raise InvalidTransition(state.status.value, entry_type.value)

        refund_id = uuid4()
        if refund_type == RefundType.PARTIAL:
            if amount is None:
                raise InvalidAmount("partial refund needs an amount")
            amount = require_minor_units(amount)
            if amount <= 0:
                raise InvalidAmount(f"refund amount must be positive, got {amount}")
            if amount > state.undisbursed_balance:
                raise InsufficientBalance(amount, state.undisbursed_balance)
            payload = self._partial_payload(state, amount)
            shortfall = 0
        else:
            amount = state.undisbursed_balance
            shortfall = state.worker_committed + state.agency_committed
            payload = {"shortfall_amount": shortfall}

        payload.update({"refund_id": str(refund_id), "reason": reason, "trigger": trigger.value})
        if condition:
            payload["condition"] = condition
        if dispute_id:
            payload["dispute_id"] = str(dispute_id)

        result = self.ledger.append(
            payment_id,
            entry_type,
            idempotency_key=f"ledger:{key}",
            actor=actor,
            amount_delta=-amount,
            payload=payload,
        )
        if not result.is_new:
            return self.get_by_key(key), False

        now = self.clock.now()
        refund = EscrowRefund(
            refund_id=refund_id,
            payment_id=payment_id,
            amount=amount,
            refund_type=refund_type.value,
            trigger=trigger.value,
            condition=condition,
            status=RefundStatus.COMPLETED.value,
            reason=reason,
            shortfall_amount=shortfall,
            idempotency_key=key,
            created_by=actor.actor_id,
            created_at=now,
            completed_at=now,
        )
        self.session.add(refund)
        self.session.flush()

        logger.info(
            "%s refund %s of %s on payment %s (%s): %s",
            refund_type.value.capitalize(),
            refund_id,
            format_minor_units(amount, state.currency),
            payment_id,
            trigger.value,
            reason,
        )
        if shortfall:
            logger.warning(
                "Payment %s refunded with shortfall %s already committed to payouts",
                payment_id,
                format_minor_units(shortfall, state.currency),
            )
        return refund, True

    @staticmethod
    def _partial_payload(state: PaymentState, amount: int) -> dict[str, object]:
        split = split_remaining(
            state.gross_amount - amount,
            state.platform_fee_rate,
            state.agency_commission_rate,
            state.urgent_bonus_rate,
            worker_floor=state.worker_committed,
            agency_floor=state.agency_committed,
        )
        return split.to_dict()

    def get_by_key(self, idempotency_key: str) -> EscrowRefund | None:
        return self.session.execute(
            select(EscrowRefund).where(EscrowRefund.idempotency_key == idempotency_key)
        ).scalar_one_or_none()

    def for_payment(self, payment_id: UUID) -> list[EscrowRefund]:
        return list(
            self.session.execute(
                select(EscrowRefund)
                .where(EscrowRefund.payment_id == payment_id)
                .order_by(EscrowRefund.created_at)
            ).scalars()
        )
