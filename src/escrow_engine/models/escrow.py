"""Escrow and settlement models.

Covers the settlement sub-ledger for completed shift payments:
- Payments (derived current-state rows)
- Ledger entries (append-only, source of truth)
- Disputes
- Refunds
- Payouts, payout items and payout attempts

Workers, businesses and agencies belong to the external identity
subsystem and are referenced by opaque ids only.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CHAR,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from escrow_engine.models.base import Base


class EscrowPayment(Base):
    """Current state of one shift payment, derived from its ledger entries.

    Never written directly: the ledger projects every appended entry onto
    this row.
    """

    __tablename__ = "escrow_payment"

    payment_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    shift_ref: Mapped[str] = mapped_column(Text, nullable=False)
    worker_id: Mapped[str] = mapped_column(Text, nullable=False)
    business_id: Mapped[str] = mapped_column(Text, nullable=False)
    agency_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    currency: Mapped[str] = mapped_column(CHAR(3), nullable=False, default="USD")

    # Rates are kept as decimal strings; money columns are integer minor units.
    platform_fee_rate: Mapped[str] = mapped_column(String(20), nullable=False)
    agency_commission_rate: Mapped[str] = mapped_column(String(20), nullable=False)
    urgent_bonus_rate: Mapped[str] = mapped_column(String(20), nullable=False, default="0")

    original_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    gross_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    worker_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    platform_fee: Mapped[int] = mapped_column(BigInteger, nullable=False)
    agency_commission: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    refunded_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    worker_committed: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    agency_committed: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    worker_paid: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    agency_paid: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    shortfall_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    status: Mapped[str] = mapped_column(Text, nullable=False)
    is_flagged: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    flagged_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    escrow_started_at: Mapped[datetime] = mapped_column(nullable=False)
    scheduled_release_at: Mapped[datetime | None] = mapped_column(nullable=True)
    hold_remaining_seconds: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    released_at: Mapped[datetime | None] = mapped_column(nullable=True)
    paid_out_at: Mapped[datetime | None] = mapped_column(nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(nullable=True)

    last_sequence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_entry_at: Mapped[datetime] = mapped_column(nullable=False)
    created_at: Mapped[datetime] = mapped_column(nullable=False, server_default=func.now())

    __table_args__ = (
        CheckConstraint(
            "status IN ('in_escrow', 'released', 'paid_out', 'refunded', 'disputed')",
            name="escrow_payment_status_ck",
        ),
        CheckConstraint(
            "worker_amount + platform_fee + agency_commission = gross_amount",
            name="escrow_payment_split_ck",
        ),
        CheckConstraint(
            "worker_amount >= 0 AND platform_fee >= 0 AND agency_commission >= 0",
            name="escrow_payment_nonnegative_ck",
        ),
        UniqueConstraint("shift_ref", name="escrow_payment_shift_uq"),
        Index("escrow_payment_due", "status", "is_flagged", "scheduled_release_at"),
        Index("escrow_payment_by_worker", "worker_id"),
        Index("escrow_payment_by_agency", "agency_id"),
    )

    entries: Mapped[list["EscrowLedgerEntry"]] = relationship(
        "EscrowLedgerEntry",
        back_populates="payment",
        order_by="EscrowLedgerEntry.sequence",
    )


class EscrowLedgerEntry(Base):
    """Append-only record of state-affecting actions on a payment.

    Rows are never updated or deleted; corrections are new entries.
    """

    __tablename__ = "escrow_ledger_entry"

    entry_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    payment_id: Mapped[UUID] = mapped_column(
        ForeignKey("escrow_payment.payment_id"), nullable=False
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    entry_type: Mapped[str] = mapped_column(Text, nullable=False)
    amount_delta: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    actor_id: Mapped[str] = mapped_column(Text, nullable=False)
    actor_type: Mapped[str] = mapped_column(Text, nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(nullable=False)
    idempotency_key: Mapped[str] = mapped_column(Text, nullable=False)
    payload_json: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(nullable=False, server_default=func.now())

    __table_args__ = (
        CheckConstraint(
            """entry_type IN (
                'open', 'hold', 'unhold', 'release', 'dispute_open',
                'commission_adjust', 'partial_refund', 'full_refund',
                'payout_attempt', 'payout_success', 'payout_failure'
            )""",
            name="escrow_ledger_entry_type_ck",
        ),
        UniqueConstraint("idempotency_key", name="escrow_ledger_entry_idem_uq"),
        UniqueConstraint("payment_id", "sequence", name="escrow_ledger_entry_seq_uq"),
        Index("escrow_ledger_entry_by_type", "entry_type", "occurred_at"),
    )

    payment: Mapped["EscrowPayment"] = relationship("EscrowPayment", back_populates="entries")


class EscrowDispute(Base):
    """Dispute opened against a payment. Retained after resolution."""

    __tablename__ = "escrow_dispute"

    dispute_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    payment_id: Mapped[UUID] = mapped_column(
        ForeignKey("escrow_payment.payment_id"), nullable=False
    )
    worker_id: Mapped[str] = mapped_column(Text, nullable=False)
    business_id: Mapped[str] = mapped_column(Text, nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    priority: Mapped[str] = mapped_column(Text, nullable=False, default="high")
    status: Mapped[str] = mapped_column(Text, nullable=False, default="open")
    opened_at: Mapped[datetime] = mapped_column(nullable=False)
    sla_deadline: Mapped[datetime] = mapped_column(nullable=False)
    sla_breached_at: Mapped[datetime | None] = mapped_column(nullable=True)
    escalation_level: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    escalated_at: Mapped[datetime | None] = mapped_column(nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(nullable=True)
    outcome: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolution_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    opened_by: Mapped[str] = mapped_column(Text, nullable=False)
    resolved_by: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('open', 'under_review', 'awaiting_response', 'resolved', 'escalated')",
            name="escrow_dispute_status_ck",
        ),
        CheckConstraint(
            "priority IN ('low', 'medium', 'high', 'urgent')",
            name="escrow_dispute_priority_ck",
        ),
        Index("escrow_dispute_by_payment", "payment_id", "status"),
        Index("escrow_dispute_sla", "status", "sla_deadline"),
    )


class EscrowRefund(Base):
    """Compensating refund transaction against a payment."""

    __tablename__ = "escrow_refund"

    refund_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    payment_id: Mapped[UUID] = mapped_column(
        ForeignKey("escrow_payment.payment_id"), nullable=False
    )
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    refund_type: Mapped[str] = mapped_column(Text, nullable=False)
    trigger: Mapped[str] = mapped_column(Text, nullable=False)
    condition: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="pending")
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    shortfall_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    idempotency_key: Mapped[str] = mapped_column(Text, nullable=False)
    created_by: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    __table_args__ = (
        CheckConstraint("refund_type IN ('full', 'partial')", name="escrow_refund_type_ck"),
        CheckConstraint("trigger IN ('auto', 'manual')", name="escrow_refund_trigger_ck"),
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="escrow_refund_status_ck",
        ),
        CheckConstraint("amount >= 0", name="escrow_refund_amount_ck"),
        UniqueConstraint("idempotency_key", name="escrow_refund_idem_uq"),
        Index("escrow_refund_by_payment", "payment_id"),
    )


class EscrowPayout(Base):
    """Disbursement to a single recipient, aggregating payment portions."""

    __tablename__ = "escrow_payout"

    payout_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    recipient_type: Mapped[str] = mapped_column(Text, nullable=False)
    recipient_id: Mapped[str] = mapped_column(Text, nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(CHAR(3), nullable=False, default="USD")
    method: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="pending")
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(nullable=False)
    initiated_at: Mapped[datetime | None] = mapped_column(nullable=True)
    last_attempt_at: Mapped[datetime | None] = mapped_column(nullable=True)
    next_retry_at: Mapped[datetime | None] = mapped_column(nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    last_error_kind: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    provider_request_id: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint("recipient_type IN ('worker', 'agency')", name="escrow_payout_recipient_ck"),
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="escrow_payout_status_ck",
        ),
        CheckConstraint("amount >= 0", name="escrow_payout_amount_ck"),
        Index("escrow_payout_by_recipient", "recipient_type", "recipient_id", "status"),
        Index("escrow_payout_by_status", "status", "next_retry_at"),
    )

    items: Mapped[list["EscrowPayoutItem"]] = relationship(
        "EscrowPayoutItem", back_populates="payout"
    )
    attempts: Mapped[list["EscrowPayoutAttempt"]] = relationship(
        "EscrowPayoutAttempt",
        back_populates="payout",
        order_by="EscrowPayoutAttempt.attempt_number",
    )


class EscrowPayoutItem(Base):
    """One payment portion (worker or agency) carried by a payout."""

    __tablename__ = "escrow_payout_item"

    payout_item_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    payout_id: Mapped[UUID] = mapped_column(
        ForeignKey("escrow_payout.payout_id"), nullable=False
    )
    payment_id: Mapped[UUID] = mapped_column(
        ForeignKey("escrow_payment.payment_id"), nullable=False
    )
    portion: Mapped[str] = mapped_column(Text, nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)

    __table_args__ = (
        CheckConstraint("portion IN ('worker', 'agency')", name="escrow_payout_item_portion_ck"),
        CheckConstraint("amount > 0", name="escrow_payout_item_amount_ck"),
        UniqueConstraint("payment_id", "portion", name="escrow_payout_item_uq"),
    )

    payout: Mapped["EscrowPayout"] = relationship("EscrowPayout", back_populates="items")


class EscrowPayoutAttempt(Base):
    """A single submission of a payout to the payment rail."""

    __tablename__ = "escrow_payout_attempt"

    attempt_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    payout_id: Mapped[UUID] = mapped_column(
        ForeignKey("escrow_payout.payout_id"), nullable=False
    )
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False)
    started_at: Mapped[datetime] = mapped_column(nullable=False)
    finished_at: Mapped[datetime | None] = mapped_column(nullable=True)
    outcome: Mapped[str] = mapped_column(Text, nullable=False, default="processing")
    error_kind: Mapped[str | None] = mapped_column(Text, nullable=True)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    provider_request_id: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "outcome IN ('processing', 'completed', 'failed')",
            name="escrow_payout_attempt_outcome_ck",
        ),
        UniqueConstraint("payout_id", "attempt_number", name="escrow_payout_attempt_uq"),
    )

    payout: Mapped["EscrowPayout"] = relationship("EscrowPayout", back_populates="attempts")
