"""Read-side queries for admin views and exports."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from escrow_engine.models import EscrowDispute, EscrowPayment, EscrowPayout
from escrow_engine.settlement.clock import Clock
from escrow_engine.settlement.config import PayoutPolicy
from escrow_engine.settlement.services.dispute_service import ACTIVE_STATUSES
from escrow_engine.settlement.services.projection import REFUND_SHORTFALL
from escrow_engine.settlement.types import (
    FinanceSummary,
    PaymentState,
    PaymentStatus,
    PayoutStatus,
    RecipientType,
)

HELD = (PaymentStatus.IN_ESCROW.value, PaymentStatus.DISPUTED.value)
RELEASED = (PaymentStatus.RELEASED.value, PaymentStatus.PAID_OUT.value)


class ReportingService:
    def __init__(self, session: Session, clock: Clock):
        self.session = session
        self.clock = clock

    def list_payments(
        self,
        *,
        status: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        recipient_type: str | None = None,
        recipient_id: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[PaymentState]:
        """Payments filtered by status, escrow-start date range and recipient."""
        query = select(EscrowPayment)
        if status:
            query = query.where(EscrowPayment.status == PaymentStatus(status).value)
        if start:
            query = query.where(EscrowPayment.escrow_started_at >= start)
        if end:
            query = query.where(EscrowPayment.escrow_started_at < end)
        if recipient_type:
            if RecipientType(recipient_type) == RecipientType.AGENCY:
                query = query.where(EscrowPayment.agency_id.is_not(None))
                if recipient_id:
                    query = query.where(EscrowPayment.agency_id == recipient_id)
            elif recipient_id:
                query = query.where(EscrowPayment.worker_id == recipient_id)
        query = query.order_by(EscrowPayment.escrow_started_at, EscrowPayment.payment_id)
        query = query.limit(limit).offset(offset)
        return [PaymentState.from_row(row) for row in self.session.execute(query).scalars()]

    def finance_summary(self, start: datetime | None = None, end: datetime | None = None) -> FinanceSummary:
        """Totals for commissions, platform revenue and refunds over a date range."""
        query = select(
            EscrowPayment.status,
            func.count(),
            func.coalesce(func.sum(EscrowPayment.original_amount), 0),
            func.coalesce(func.sum(EscrowPayment.gross_amount), 0),
            func.coalesce(func.sum(EscrowPayment.platform_fee), 0),
            func.coalesce(func.sum(EscrowPayment.agency_commission), 0),
            func.coalesce(func.sum(EscrowPayment.refunded_amount), 0),
            func.coalesce(func.sum(EscrowPayment.worker_paid + EscrowPayment.agency_paid), 0),
            func.coalesce(func.sum(EscrowPayment.shortfall_amount), 0),
        ).group_by(EscrowPayment.status)
        if start:
            query = query.where(EscrowPayment.escrow_started_at >= start)
        if end:
            query = query.where(EscrowPayment.escrow_started_at < end)

        totals: dict[str, int] = {
            "payment_count": 0,
            "total_gross": 0,
            "total_escrowed": 0,
            "total_released": 0,
            "total_paid_out": 0,
            "platform_revenue": 0,
            "agency_commissions": 0,
            "total_refunded": 0,
            "total_shortfall": 0,
        }
        status_counts: dict[str, int] = {s.value: 0 for s in PaymentStatus}
        for status, count, original, gross, fee, commission, refunded, paid, shortfall in self.session.execute(query):
            status_counts[status] = int(count)
            totals["payment_count"] += int(count)
            totals["total_gross"] += int(original)
            totals["total_refunded"] += int(refunded)
            totals["total_paid_out"] += int(paid)
            totals["total_shortfall"] += int(shortfall)
            if status in HELD:
                totals["total_escrowed"] += int(gross)
            if status in RELEASED:
                totals["total_released"] += int(gross)
                totals["platform_revenue"] += int(fee)
                totals["agency_commissions"] += int(commission)

        return FinanceSummary(
            start=start,
            end=end,
            disputed_count=status_counts[PaymentStatus.DISPUTED.value],
            status_counts=status_counts,
            **totals,
        )

    def alerts(self, payout_policy: PayoutPolicy) -> dict[str, list[dict[str, Any]]]:
        """Items that need an operator: breached SLAs, dead payouts, refund shortfalls."""
        now = self.clock.now()
        breached = self.session.execute(
            select(EscrowDispute)
            .where(
                EscrowDispute.status.in_(ACTIVE_STATUSES),
                or_(EscrowDispute.sla_breached_at.is_not(None), EscrowDispute.sla_deadline <= now),
            )
            .order_by(EscrowDispute.sla_deadline)
        ).scalars()
        dead_payouts = self.session.execute(
            select(EscrowPayout)
            .where(
                EscrowPayout.status == PayoutStatus.FAILED.value,
                or_(
                    EscrowPayout.next_retry_at.is_(None),
                    EscrowPayout.attempt_count >= payout_policy.max_attempts,
                ),
            )
            .order_by(EscrowPayout.last_attempt_at)
        ).scalars()
        shortfalls = self.session.execute(
            select(EscrowPayment)
            .where(EscrowPayment.flagged_reason == REFUND_SHORTFALL)
            .order_by(EscrowPayment.refunded_at)
        ).scalars()

        return {
            "sla_breaches": [
                {
                    "dispute_id": str(d.dispute_id),
                    "payment_id": str(d.payment_id),
                    "priority": d.priority,
                    "status": d.status,
                    "sla_deadline": d.sla_deadline.isoformat(),
                }
                for d in breached
            ],
            "failed_payouts": [
                {
                    "payout_id": str(p.payout_id),
                    "recipient_type": p.recipient_type,
                    "recipient_id": p.recipient_id,
                    "amount": p.amount,
                    "attempt_count": p.attempt_count,
                    "error_kind": p.last_error_kind,
                    "message": p.last_error_message,
                }
                for p in dead_payouts
            ],
            "refund_shortfalls": [
                {"payment_id": str(p.payment_id), "shortfall_amount": p.shortfall_amount}
                for p in shortfalls
            ],
        }
