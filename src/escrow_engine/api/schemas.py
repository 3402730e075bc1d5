"""Pydantic schemas for API request/response models."""

from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class ErrorResponse(BaseModel):
    """Schema for error responses."""

    detail: str
    code: str


# ============================================================================
# Payment schemas
# ============================================================================


class PaymentCreate(BaseModel):
    """Schema for opening escrow on a completed shift."""

    shift_ref: str = Field(min_length=1)
    worker_id: str = Field(min_length=1)
    business_id: str = Field(min_length=1)
    gross_amount: int = Field(gt=0, description="Gross shift value in minor units")
    agency_id: str | None = None
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    platform_fee_rate: Decimal | None = Field(default=None, ge=0, le=1)
    agency_commission_rate: Decimal | None = Field(default=None, ge=0, le=1)
    urgent: bool = False
    short_hold: bool = False


class PaymentResponse(BaseModel):
    """Schema for payment response."""

    model_config = ConfigDict(from_attributes=True)

    payment_id: UUID
    shift_ref: str
    worker_id: str
    business_id: str
    agency_id: str | None = None
    currency: str
    status: str
    original_amount: int
    gross_amount: int
    worker_amount: int
    platform_fee: int
    agency_commission: int
    refunded_amount: int
    worker_paid: int
    agency_paid: int
    shortfall_amount: int
    is_flagged: bool
    flagged_reason: str | None = None
    escrow_started_at: datetime
    scheduled_release_at: datetime | None = None
    released_at: datetime | None = None
    paid_out_at: datetime | None = None
    refunded_at: datetime | None = None


class PaymentListResponse(BaseModel):
    """Schema for listing payments."""

    items: list[PaymentResponse]
    total: int
    limit: int
    offset: int


class HoldRequest(BaseModel):
    reason: str = Field(min_length=1)
    idempotency_key: str | None = None


class ReleaseRequest(BaseModel):
    override: bool = False
    idempotency_key: str | None = None


class CommissionAdjustRequest(BaseModel):
    agency_commission_rate: Decimal = Field(ge=0, le=1)
    reason: str = ""


class RefundRequest(BaseModel):
    """Schema for a refund request.

    Automatic refunds carry the policy condition and the triggering event's
    reference; manual refunds need an admin actor.
    """

    refund_type: str = Field(pattern="^(full|partial)$")
    trigger: str = Field(default="manual", pattern="^(auto|manual)$")
    reason: str = Field(min_length=1)
    amount: int | None = Field(default=None, gt=0)
    condition: str | None = None
    event_ref: str | None = None
    idempotency_key: str | None = None


class RefundResponse(BaseModel):
    """Schema for refund response."""

    model_config = ConfigDict(from_attributes=True)

    refund_id: UUID
    payment_id: UUID
    amount: int
    refund_type: str
    trigger: str
    condition: str | None = None
    status: str
    reason: str
    shortfall_amount: int
    created_at: datetime
    completed_at: datetime | None = None


class LedgerEntryResponse(BaseModel):
    """Schema for a ledger entry."""

    model_config = ConfigDict(from_attributes=True)

    entry_id: UUID
    sequence: int
    entry_type: str
    amount_delta: int
    actor_id: str
    actor_type: str
    occurred_at: datetime
    idempotency_key: str
    payload_json: dict[str, Any]


class ReplayResponse(BaseModel):
    """Replayed state next to the stored row, with any drift."""

    payment: PaymentResponse
    entries: list[LedgerEntryResponse]
    discrepancies: dict[str, list[Any]]


class ReconciliationResponse(BaseModel):
    drifted: dict[str, dict[str, list[Any]]]


class BatchResponse(BaseModel):
    action: str
    summary: str
    succeeded: int
    failed: int
    results: list[dict[str, Any]]


# ============================================================================
# Dispute schemas
# ============================================================================


class DisputeCreate(BaseModel):
    payment_id: UUID
    reason: str = Field(min_length=1)
    worker_id: str | None = None
    business_id: str | None = None
    priority: str | None = Field(default=None, pattern="^(low|medium|high|urgent)$")
    idempotency_key: str | None = None


class DisputeResponse(BaseModel):
    """Schema for dispute response."""

    model_config = ConfigDict(from_attributes=True)

    dispute_id: UUID
    payment_id: UUID
    worker_id: str
    business_id: str
    reason: str
    priority: str
    status: str
    opened_at: datetime
    sla_deadline: datetime
    sla_breached_at: datetime | None = None
    escalation_level: int
    escalated_at: datetime | None = None
    resolved_at: datetime | None = None
    outcome: str | None = None
    resolution_notes: str | None = None


class DisputeAdvanceRequest(BaseModel):
    status: str = Field(pattern="^(open|under_review|awaiting_response)$")
    notes: str | None = None


class EscalateRequest(BaseModel):
    reason: str | None = None


class ResolveRequest(BaseModel):
    outcome: str = Field(pattern="^(upheld|rejected|split)$")
    notes: str | None = None
    refund_amount: int | None = Field(default=None, gt=0)


class SlaResponse(BaseModel):
    dispute_id: UUID
    status: str
    deadline: datetime
    remaining_seconds: int
    breached_at: datetime | None = None


# ============================================================================
# Payout schemas
# ============================================================================


class PayoutResponse(BaseModel):
    """Schema for payout response."""

    model_config = ConfigDict(from_attributes=True)

    payout_id: UUID
    recipient_type: str
    recipient_id: str
    amount: int
    currency: str
    status: str
    attempt_count: int
    created_at: datetime
    last_attempt_at: datetime | None = None
    next_retry_at: datetime | None = None
    completed_at: datetime | None = None
    last_error_kind: str | None = None
    last_error_message: str | None = None


class PayoutListResponse(BaseModel):
    items: list[PayoutResponse]
    total: int


class PayoutResultResponse(BaseModel):
    """Outcome of a dispatch or retry."""

    payout_id: UUID
    status: str
    amount: int
    attempt_count: int
    error_kind: str | None = None
    message: str | None = None
    next_retry_at: datetime | None = None


class DispatchToRecipientRequest(BaseModel):
    recipient_type: str = Field(pattern="^(worker|agency)$")
    recipient_id: str = Field(min_length=1)
    amount: int | None = Field(default=None, gt=0)


# ============================================================================
# Report schemas
# ============================================================================


class FinanceSummaryResponse(BaseModel):
    start: datetime | None = None
    end: datetime | None = None
    payment_count: int
    total_gross: int
    total_escrowed: int
    total_released: int
    total_paid_out: int
    platform_revenue: int
    agency_commissions: int
    total_refunded: int
    total_shortfall: int
    disputed_count: int
    status_counts: dict[str, int]


class AlertsResponse(BaseModel):
    sla_breaches: list[dict[str, Any]]
    failed_payouts: list[dict[str, Any]]
    refund_shortfalls: list[dict[str, Any]]
