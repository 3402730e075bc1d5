"""Settlement domain types.

Closed enumerations for every status the engine tracks, plus the value
objects that cross the command/query boundary. Money is always integer
minor units.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any
from uuid import UUID

if TYPE_CHECKING:
    from escrow_engine.errors import EscrowError
    from escrow_engine.models import EscrowPayment


class PaymentStatus(str, Enum):
    IN_ESCROW = "in_escrow"
    RELEASED = "released"
    PAID_OUT = "paid_out"
    REFUNDED = "refunded"
    DISPUTED = "disputed"


class EntryType(str, Enum):
    """Ledger entry types. One per state-affecting action."""

    OPEN = "open"
    HOLD = "hold"
    UNHOLD = "unhold"
    RELEASE = "release"
    DISPUTE_OPEN = "dispute_open"
    COMMISSION_ADJUST = "commission_adjust"
    PARTIAL_REFUND = "partial_refund"
    FULL_REFUND = "full_refund"
    PAYOUT_ATTEMPT = "payout_attempt"
    PAYOUT_SUCCESS = "payout_success"
    PAYOUT_FAILURE = "payout_failure"


class DisputeStatus(str, Enum):
    OPEN = "open"
    UNDER_REVIEW = "under_review"
    AWAITING_RESPONSE = "awaiting_response"
    ESCALATED = "escalated"
    RESOLVED = "resolved"


class DisputePriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"

    def raised(self) -> DisputePriority:
        """Next priority up; urgent stays urgent."""
        order = list(DisputePriority)
        return order[min(order.index(self) + 1, len(order) - 1)]


class DisputeOutcome(str, Enum):
    UPHELD = "upheld"  # business wins: refund
    REJECTED = "rejected"  # worker wins: release
    SPLIT = "split"  # partial refund, remainder released


class SlaStatus(str, Enum):
    """Derived at read time, never stored."""

    ON_TRACK = "on_track"
    AT_RISK = "at_risk"
    BREACHED = "breached"
    MET = "met"


class RefundType(str, Enum):
    FULL = "full"
    PARTIAL = "partial"


class RefundTrigger(str, Enum):
    AUTO = "auto"
    MANUAL = "manual"


class RefundStatus(str, Enum):
    """Stored refund status.

    Refunds only move ledger balances, so the processor writes every refund
    ``completed`` with its entry. The other members are kept for a
    processor-backed refund path.
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class AutoRefundCondition(str, Enum):
    WORKER_NO_SHOW = "worker_no_show"
    CANCELLED_72H_NOTICE = "cancelled_72h_notice"


class PayoutStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class RecipientType(str, Enum):
    WORKER = "worker"
    AGENCY = "agency"


class ActorType(str, Enum):
    SYSTEM = "system"
    ADMIN = "admin"
    SCHEDULER = "scheduler"


@dataclass(frozen=True)
class Actor:
    """Who is issuing a command. Passed explicitly, never read from ambient state."""

    actor_id: str
    actor_type: ActorType = ActorType.SYSTEM

    @property
    def is_admin(self) -> bool:
        return self.actor_type == ActorType.ADMIN

    @classmethod
    def system(cls) -> Actor:
        return cls("system", ActorType.SYSTEM)

    @classmethod
    def scheduler(cls) -> Actor:
        return cls("scheduler", ActorType.SCHEDULER)

    @classmethod
    def admin(cls, actor_id: str) -> Actor:
        return cls(actor_id, ActorType.ADMIN)


@dataclass(frozen=True)
class ShiftPaymentInfo:
    """Completed shift handed over by the shift subsystem.

    Rates left as None fall back to the engine's fee schedule. An agency
    rate only applies when ``agency_id`` is set.
    """

    shift_ref: str
    worker_id: str
    business_id: str
    gross_amount: int
    agency_id: str | None = None
    currency: str | None = None
    platform_fee_rate: Any = None
    agency_commission_rate: Any = None
    urgent: bool = False
    short_hold: bool = False


@dataclass(frozen=True)
class PaymentState:
    """Immutable snapshot of a payment, as projected from its ledger."""

    payment_id: UUID
    shift_ref: str
    worker_id: str
    business_id: str
    agency_id: str | None
    currency: str
    platform_fee_rate: str
    agency_commission_rate: str
    urgent_bonus_rate: str
    original_amount: int
    gross_amount: int
    worker_amount: int
    platform_fee: int
    agency_commission: int
    refunded_amount: int
    worker_committed: int
    agency_committed: int
    worker_paid: int
    agency_paid: int
    shortfall_amount: int
    status: PaymentStatus
    is_flagged: bool
    flagged_reason: str | None
    escrow_started_at: datetime
    scheduled_release_at: datetime | None
    hold_remaining_seconds: int | None
    released_at: datetime | None
    paid_out_at: datetime | None
    refunded_at: datetime | None
    last_sequence: int
    last_entry_at: datetime

    @property
    def undisbursed_balance(self) -> int:
        """Gross not yet committed to any payout."""
        return self.gross_amount - self.worker_committed - self.agency_committed

    @property
    def worker_uncommitted(self) -> int:
        return self.worker_amount - self.worker_committed

    @property
    def agency_uncommitted(self) -> int:
        return self.agency_commission - self.agency_committed

    def is_due(self, now: datetime) -> bool:
        return (
            self.status == PaymentStatus.IN_ESCROW
            and not self.is_flagged
            and self.scheduled_release_at is not None
            and self.scheduled_release_at <= now
        )

    @classmethod
    def from_row(cls, row: EscrowPayment) -> PaymentState:
        return cls(
            **{name: getattr(row, name) for name in cls.__dataclass_fields__ if name != "status"},
            status=PaymentStatus(row.status),
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["payment_id"] = str(self.payment_id)
        data["status"] = self.status.value
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = value.isoformat()
        return data


@dataclass(frozen=True)
class AppendResult:
    """Result of a ledger append.

    Always check ``is_new``: a duplicate idempotency key returns the
    existing entry and the payment's current state without applying anything.
    """

    entry_id: UUID
    is_new: bool
    entry_type: str
    state: PaymentState

    @property
    def was_duplicate(self) -> bool:
        return not self.is_new


@dataclass
class CommandResult:
    """Outcome of a single command, suitable for batch reporting."""

    target_id: str
    ok: bool
    state: PaymentState | None = None
    error_kind: str | None = None
    reason: str | None = None
    replayed: bool = False

    @classmethod
    def success(cls, target_id: Any, state: PaymentState | None = None, replayed: bool = False) -> CommandResult:
        return cls(target_id=str(target_id), ok=True, state=state, replayed=replayed)

    @classmethod
    def failure(cls, target_id: Any, error: EscrowError) -> CommandResult:
        return cls(target_id=str(target_id), ok=False, error_kind=error.kind, reason=error.reason)

    def to_dict(self) -> dict[str, Any]:
        return {
            "target_id": self.target_id,
            "ok": self.ok,
            "status": self.state.status.value if self.state else None,
            "error_kind": self.error_kind,
            "reason": self.reason,
            "replayed": self.replayed,
        }


@dataclass
class BatchResult:
    """Per-item results of a batch command. Partial success is normal."""

    action: str
    results: list[CommandResult] = field(default_factory=list)

    @property
    def succeeded(self) -> list[CommandResult]:
        return [r for r in self.results if r.ok]

    @property
    def failed(self) -> list[CommandResult]:
        return [r for r in self.results if not r.ok]

    def summary(self) -> str:
        """Human-readable line, e.g. ``"3 released, 1 failed: insufficient_balance"``."""
        text = f"{len(self.succeeded)} {self.action}"
        if self.failed:
            kinds: dict[str, int] = {}
            for r in self.failed:
                kinds[r.error_kind or "error"] = kinds.get(r.error_kind or "error", 0) + 1
            detail = ", ".join(k if n == 1 else f"{k} x{n}" for k, n in sorted(kinds.items()))
            text += f", {len(self.failed)} failed: {detail}"
        return text

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action,
            "summary": self.summary(),
            "succeeded": len(self.succeeded),
            "failed": len(self.failed),
            "results": [r.to_dict() for r in self.results],
        }


@dataclass(frozen=True)
class PayoutResult:
    """Outcome of a dispatch or retry."""

    payout_id: UUID
    status: PayoutStatus
    amount: int
    attempt_count: int
    error_kind: str | None = None
    message: str | None = None
    next_retry_at: datetime | None = None

    @property
    def ok(self) -> bool:
        return self.status == PayoutStatus.COMPLETED

    def to_dict(self) -> dict[str, Any]:
        return {
            "payout_id": str(self.payout_id),
            "status": self.status.value,
            "amount": self.amount,
            "attempt_count": self.attempt_count,
            "error_kind": self.error_kind,
            "message": self.message,
            "next_retry_at": self.next_retry_at.isoformat() if self.next_retry_at else None,
        }


@dataclass(frozen=True)
class SlaReport:
    dispute_id: UUID
    status: SlaStatus
    deadline: datetime
    remaining_seconds: int
    breached_at: datetime | None = None


@dataclass(frozen=True)
class FinanceSummary:
    """Totals for admin reporting over a date range, in minor units."""

    start: datetime | None
    end: datetime | None
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
    status_counts: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["start"] = self.start.isoformat() if self.start else None
        data["end"] = self.end.isoformat() if self.end else None
        return data
