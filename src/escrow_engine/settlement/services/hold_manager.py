"""Escrow hold manager.

Owns the escrow window of each payment: scheduling auto-release, holds
and unholds, and deciding release eligibility. All writes go through
the ledger.
"""

from __future__ import annotations

import logging
from datetime import datetime
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from escrow_engine.models import EscrowPayment
from escrow_engine.settlement.clock import Clock
from escrow_engine.settlement.config import HoldPolicy
from escrow_engine.settlement.services.ledger_service import EscrowLedger
from escrow_engine.settlement.types import Actor, AppendResult, EntryType, PaymentState, PaymentStatus

logger = logging.getLogger(__name__)


class HoldManager:
    def __init__(self, session: Session, ledger: EscrowLedger, policy: HoldPolicy, clock: Clock):
        self.session = session
        self.ledger = ledger
        self.policy = policy
        self.clock = clock

    def hold(
        self,
        payment_id: UUID,
        reason: str,
        actor: Actor,
        idempotency_key: str | None = None,
    ) -> AppendResult:
        """Flag a payment so it is skipped by auto-release.

        The unused part of the hold window is remembered for unhold.
        """
        key = idempotency_key or self._next_key(payment_id, "hold")
        result = self.ledger.append(
            payment_id,
            EntryType.HOLD,
            idempotency_key=key,
            actor=actor,
            payload={"reason": reason},
        )
        if result.is_new:
            logger.info(
                "Payment %s held by %s (%ss of hold window left): %s",
                payment_id,
                actor.actor_id,
                result.state.hold_remaining_seconds,
                reason,
            )
        return result

    def unhold(self, payment_id: UUID, actor: Actor, idempotency_key: str | None = None) -> AppendResult:
        """Clear a hold; release is rescheduled at now + remaining window."""
        key = idempotency_key or self._next_key(payment_id, "unhold")
        result = self.ledger.append(payment_id, EntryType.UNHOLD, idempotency_key=key, actor=actor)
        if result.is_new:
            logger.info(
                "Payment %s unheld by %s, release rescheduled for %s",
                payment_id,
                actor.actor_id,
                result.state.scheduled_release_at,
            )
        return result

    def release(
        self,
        payment_id: UUID,
        actor: Actor,
        *,
        override: bool = False,
        dispute_id: UUID | None = None,
        idempotency_key: str | None = None,
    ) -> AppendResult:
        """Release escrow. A payment is only ever released once."""
        payload: dict[str, object] = {"override": override}
        if dispute_id is not None:
            payload["dispute_id"] = str(dispute_id)
        return self.ledger.append(
            payment_id,
            EntryType.RELEASE,
            idempotency_key=idempotency_key or f"{payment_id}:release",
            actor=actor,
            payload=payload,
        )

    def list_due(self, as_of: datetime | None = None, limit: int | None = None) -> list[PaymentState]:
        """Unflagged in-escrow payments whose hold window has ended."""
        as_of = as_of or self.clock.now()
        query = (
            select(EscrowPayment)
            .where(
                EscrowPayment.status == PaymentStatus.IN_ESCROW.value,
                EscrowPayment.is_flagged.is_(False),
                EscrowPayment.scheduled_release_at <= as_of,
            )
            .order_by(EscrowPayment.scheduled_release_at, EscrowPayment.payment_id)
        )
        if limit is not None:
            query = query.limit(limit)
        return [PaymentState.from_row(row) for row in self.session.execute(query).scalars()]

    def _next_key(self, payment_id: UUID, action: str) -> str:
        # Scoped to the ledger position: each hold/unhold cycle gets its own key.
        state = self.ledger.current_state(payment_id)
        return f"{payment_id}:{action}:{state.last_sequence}"
