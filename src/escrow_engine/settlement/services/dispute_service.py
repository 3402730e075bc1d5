"""Dispute state machine and SLA tracking.

Allowed transitions:
- open → under_review / escalated / resolved
- under_review → awaiting_response / escalated / resolved
- awaiting_response → under_review / escalated / resolved
- escalated → resolved

The SLA deadline is fixed when the dispute opens. Escalation raises the
priority and escalation level for routing but never moves the deadline.
Once a breach is observed it is stamped on the row and never un-reported.
"""

from __future__ import annotations

import logging
from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.orm import Session

from escrow_engine.errors import (
    AlreadyResolved,
    DisputeNotFound,
    InvalidTransition,
    NoActiveDispute,
)
from escrow_engine.models import EscrowDispute
from escrow_engine.settlement.clock import Clock
from escrow_engine.settlement.config import DisputePolicy
from escrow_engine.settlement.services.ledger_service import EscrowLedger
from escrow_engine.settlement.types import (
    Actor,
    DisputeOutcome,
    DisputePriority,
    DisputeStatus,
    EntryType,
    SlaReport,
    SlaStatus,
)

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = [s.value for s in DisputeStatus if s != DisputeStatus.RESOLVED]


class DisputeStateMachine:
    """Valid dispute status transitions."""

    VALID_TRANSITIONS: dict[str, list[str]] = {
        DisputeStatus.OPEN: [DisputeStatus.UNDER_REVIEW, DisputeStatus.ESCALATED, DisputeStatus.RESOLVED],
        DisputeStatus.UNDER_REVIEW: [
            DisputeStatus.AWAITING_RESPONSE,
            DisputeStatus.ESCALATED,
            DisputeStatus.RESOLVED,
        ],
        DisputeStatus.AWAITING_RESPONSE: [
            DisputeStatus.UNDER_REVIEW,
            DisputeStatus.ESCALATED,
            DisputeStatus.RESOLVED,
        ],
        DisputeStatus.ESCALATED: [DisputeStatus.RESOLVED],
        DisputeStatus.RESOLVED: [],  # Terminal state
    }

    @classmethod
    def can_transition(cls, from_status: str, to_status: str) -> bool:
        return to_status in cls.VALID_TRANSITIONS.get(DisputeStatus(from_status), [])

    @classmethod
    def validate_transition(cls, from_status: str, to_status: str) -> None:
        if from_status == DisputeStatus.RESOLVED:
            raise NoActiveDispute(f"Dispute already resolved; cannot move to {to_status}")
        if not cls.can_transition(from_status, to_status):
            raise InvalidTransition(from_status, to_status)

    @classmethod
    def get_next_statuses(cls, current_status: str) -> list[str]:
        return [s.value for s in cls.VALID_TRANSITIONS.get(DisputeStatus(current_status), [])]


def compute_sla_status(dispute: EscrowDispute, now: datetime, policy: DisputePolicy) -> SlaStatus:
    """SLA status as of ``now``. Derived, not stored."""
    if dispute.sla_breached_at is not None:
        return SlaStatus.BREACHED
    if dispute.status == DisputeStatus.RESOLVED.value:
        if dispute.resolved_at is not None and dispute.resolved_at >= dispute.sla_deadline:
            return SlaStatus.BREACHED
        return SlaStatus.MET
    if now >= dispute.sla_deadline:
        return SlaStatus.BREACHED
    # the window fixed at open; escalation raises priority but not the clock
    window = dispute.sla_deadline - dispute.opened_at
    if now >= dispute.sla_deadline - policy.warning_margin(window):
        return SlaStatus.AT_RISK
    return SlaStatus.ON_TRACK


class DisputeService:
    def __init__(self, session: Session, ledger: EscrowLedger, policy: DisputePolicy, clock: Clock):
        self.session = session
        self.ledger = ledger
        self.policy = policy
        self.clock = clock

    def open(
        self,
        payment_id: UUID,
        reason: str,
        actor: Actor,
        *,
        worker_id: str | None = None,
        business_id: str | None = None,
        priority: str | None = None,
        idempotency_key: str | None = None,
    ) -> tuple[EscrowDispute, bool]:
        """Open a dispute and move the payment to disputed.

        Returns:
            (dispute, is_new)

        Raises:
            InvalidTransition: The payment already has an active dispute or
                is not in escrow.
        """
        if idempotency_key:
            prior = self.ledger.find_by_key(idempotency_key)
            if prior is not None:
                return self.get(UUID(prior.payload_json["dispute_id"])), False

        active = self.active_for_payment(payment_id)
        if active is not None:
            raise InvalidTransition(
                "disputed", EntryType.DISPUTE_OPEN.value, f"payment already has active dispute {active.dispute_id}"
            )

        level = DisputePriority(priority or self.policy.default_priority)
        dispute_id = uuid4()
        key = idempotency_key or f"{payment_id}:dispute_open:{dispute_id}"
        result = self.ledger.append(
            payment_id,
            EntryType.DISPUTE_OPEN,
            idempotency_key=key,
            actor=actor,
            payload={"dispute_id": str(dispute_id), "reason": reason, "priority": level.value},
        )
        if not result.is_new:
            return self.get(UUID(self.ledger.find_by_key(key).payload_json["dispute_id"])), False

        opened_at = self.clock.now()
        state = result.state
        dispute = EscrowDispute(
            dispute_id=dispute_id,
            payment_id=payment_id,
            worker_id=worker_id or state.worker_id,
            business_id=business_id or state.business_id,
            reason=reason,
            priority=level.value,
            status=DisputeStatus.OPEN.value,
            opened_at=opened_at,
            sla_deadline=opened_at + self.policy.sla_window(level.value),
            escalation_level=0,
            opened_by=actor.actor_id,
        )
        self.session.add(dispute)
        self.session.flush()
        logger.info(
            "Dispute %s opened on payment %s (priority=%s, sla_deadline=%s)",
            dispute_id,
            payment_id,
            level.value,
            dispute.sla_deadline.isoformat(),
        )
        return dispute, True

    def advance(self, dispute_id: UUID, to_status: str, actor: Actor, notes: str | None = None) -> EscrowDispute:
        """Move a dispute along its review workflow.

        Resolution and escalation have their own commands.
        """
        dispute = self.get(dispute_id, for_update=True)
        target = DisputeStatus(to_status)
        if dispute.status == DisputeStatus.RESOLVED.value:
            raise NoActiveDispute(f"Dispute {dispute_id} is resolved", dispute_id=dispute_id)
        if target == DisputeStatus.RESOLVED:
            raise InvalidTransition(dispute.status, target.value, "disputes close through resolve")
        if target == DisputeStatus.ESCALATED:
            raise InvalidTransition(dispute.status, target.value, "disputes escalate through escalate")
        DisputeStateMachine.validate_transition(dispute.status, target.value)
        dispute.status = target.value
        if notes:
            dispute.resolution_notes = notes
        self.session.flush()
        logger.info("Dispute %s -> %s by %s", dispute_id, target.value, actor.actor_id)
        return dispute

    def escalate(self, dispute_id: UUID, actor: Actor, reason: str | None = None) -> EscrowDispute:
        """One-way escalation; the SLA deadline is left untouched."""
        dispute = self.get(dispute_id, for_update=True)
        if dispute.status == DisputeStatus.ESCALATED.value:
            raise InvalidTransition(dispute.status, "escalate", "dispute is already escalated")
        DisputeStateMachine.validate_transition(dispute.status, DisputeStatus.ESCALATED.value)

        dispute.status = DisputeStatus.ESCALATED.value
        dispute.escalation_level += 1
        dispute.priority = DisputePriority(dispute.priority).raised().value
        dispute.escalated_at = self.clock.now()
        if reason:
            dispute.resolution_notes = reason
        self.session.flush()
        logger.warning(
            "Dispute %s escalated to level %d (priority=%s) by %s",
            dispute_id,
            dispute.escalation_level,
            dispute.priority,
            actor.actor_id,
        )
        return dispute

    def mark_resolved(
        self,
        dispute_id: UUID,
        outcome: DisputeOutcome,
        actor: Actor,
        notes: str | None = None,
    ) -> EscrowDispute:
        """Close the dispute record. Money movement is the caller's job."""
        dispute = self.get(dispute_id, for_update=True)
        self.check_resolvable(dispute)
        now = self.clock.now()
        if now >= dispute.sla_deadline and dispute.sla_breached_at is None:
            dispute.sla_breached_at = dispute.sla_deadline
        dispute.status = DisputeStatus.RESOLVED.value
        dispute.outcome = outcome.value
        dispute.resolved_at = now
        dispute.resolved_by = actor.actor_id
        if notes:
            dispute.resolution_notes = notes
        self.session.flush()
        logger.info("Dispute %s resolved as %s by %s", dispute_id, outcome.value, actor.actor_id)
        return dispute

    @staticmethod
    def check_resolvable(dispute: EscrowDispute) -> None:
        if dispute.status == DisputeStatus.RESOLVED.value:
            raise AlreadyResolved(f"Dispute {dispute.dispute_id} is already resolved", dispute_id=dispute.dispute_id)

    # ------------------------------------------------------------------
    # SLA
    # ------------------------------------------------------------------

    def sla_status(self, dispute_id: UUID) -> SlaReport:
        dispute = self.get(dispute_id)
        now = self.clock.now()
        status = compute_sla_status(dispute, now, self.policy)
        if status == SlaStatus.BREACHED and dispute.sla_breached_at is None:
            dispute.sla_breached_at = dispute.sla_deadline
            self.session.flush()
        return SlaReport(
            dispute_id=dispute.dispute_id,
            status=status,
            deadline=dispute.sla_deadline,
            remaining_seconds=max(int((dispute.sla_deadline - now).total_seconds()), 0),
            breached_at=dispute.sla_breached_at,
        )

    def flag_breaches(self, as_of: datetime | None = None) -> list[EscrowDispute]:
        """Stamp active disputes past their deadline. Returns the newly breached."""
        as_of = as_of or self.clock.now()
        overdue = self.session.execute(
            select(EscrowDispute)
            .where(
                EscrowDispute.status.in_(ACTIVE_STATUSES),
                EscrowDispute.sla_breached_at.is_(None),
                EscrowDispute.sla_deadline <= as_of,
            )
            .order_by(EscrowDispute.sla_deadline)
        ).scalars().all()
        for dispute in overdue:
            dispute.sla_breached_at = dispute.sla_deadline
            logger.warning(
                "Dispute %s on payment %s breached its SLA (deadline %s)",
                dispute.dispute_id,
                dispute.payment_id,
                dispute.sla_deadline.isoformat(),
            )
        if overdue:
            self.session.flush()
        return list(overdue)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, dispute_id: UUID, for_update: bool = False) -> EscrowDispute:
        query = select(EscrowDispute).where(EscrowDispute.dispute_id == dispute_id)
        if for_update:
            query = query.with_for_update()
        dispute = self.session.execute(query).scalar_one_or_none()
        if dispute is None:
            raise DisputeNotFound(f"Dispute {dispute_id} not found", dispute_id=dispute_id)
        return dispute

    def active_for_payment(self, payment_id: UUID) -> EscrowDispute | None:
        return self.session.execute(
            select(EscrowDispute).where(
                EscrowDispute.payment_id == payment_id,
                EscrowDispute.status.in_(ACTIVE_STATUSES),
            )
        ).scalar_one_or_none()

    def for_payment(self, payment_id: UUID) -> EscrowDispute:
        """Active dispute for a payment, else its most recent one."""
        active = self.active_for_payment(payment_id)
        if active is not None:
            return active
        latest = self.session.execute(
            select(EscrowDispute)
            .where(EscrowDispute.payment_id == payment_id)
            .order_by(EscrowDispute.opened_at.desc())
            .limit(1)
        ).scalar_one_or_none()
        if latest is None:
            raise DisputeNotFound(f"No dispute for payment {payment_id}", payment_id=payment_id)
        return latest
