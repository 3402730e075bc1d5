"""Ledger projection.

``apply_entry`` is the single reducer from (state, entry) to the next
state. The ledger runs it on every append and replay runs it over the
full history, so the derived payment row and a replay always agree.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Iterable, Protocol
from uuid import UUID

from escrow_engine.settlement.types import EntryType, PaymentState, PaymentStatus, RecipientType

REFUND_SHORTFALL = "refund_shortfall"


class LedgerRecord(Protocol):
    """Anything shaped like an escrow ledger entry."""

    payment_id: UUID
    sequence: int
    entry_type: str
    amount_delta: int
    occurred_at: datetime
    payload_json: dict[str, Any]


def _open(entry: LedgerRecord) -> PaymentState:
    p = entry.payload_json
    return PaymentState(
        payment_id=entry.payment_id,
        shift_ref=p["shift_ref"],
        worker_id=p["worker_id"],
        business_id=p["business_id"],
        agency_id=p.get("agency_id"),
        currency=p["currency"],
        platform_fee_rate=p["platform_fee_rate"],
        agency_commission_rate=p["agency_commission_rate"],
        urgent_bonus_rate=p.get("urgent_bonus_rate", "0"),
        original_amount=entry.amount_delta,
        gross_amount=entry.amount_delta,
        worker_amount=p["worker_amount"],
        platform_fee=p["platform_fee"],
        agency_commission=p["agency_commission"],
        refunded_amount=0,
        worker_committed=0,
        agency_committed=0,
        worker_paid=0,
        agency_paid=0,
        shortfall_amount=0,
        status=PaymentStatus.IN_ESCROW,
        is_flagged=False,
        flagged_reason=None,
        escrow_started_at=entry.occurred_at,
        scheduled_release_at=entry.occurred_at + timedelta(seconds=p["hold_seconds"]),
        hold_remaining_seconds=None,
        released_at=None,
        paid_out_at=None,
        refunded_at=None,
        last_sequence=entry.sequence,
        last_entry_at=entry.occurred_at,
    )


def _settle(state: PaymentState, at: datetime) -> PaymentState:
    """Move a fully disbursed released payment to paid_out."""
    if (
        state.status == PaymentStatus.RELEASED
        and state.worker_paid == state.worker_amount
        and state.agency_paid == state.agency_commission
    ):
        return replace(state, status=PaymentStatus.PAID_OUT, paid_out_at=at)
    return state


def _resplit(state: PaymentState, p: dict[str, Any], **changes: Any) -> PaymentState:
    return replace(
        state,
        worker_amount=p["worker_amount"],
        platform_fee=p["platform_fee"],
        agency_commission=p["agency_commission"],
        **changes,
    )


def apply_entry(state: PaymentState | None, entry: LedgerRecord) -> PaymentState:
    """Fold one ledger entry into a payment state."""
    entry_type = EntryType(entry.entry_type)
    at = entry.occurred_at
    p = entry.payload_json or {}

    if entry_type == EntryType.OPEN:
        if state is not None:
            raise ValueError(f"payment {entry.payment_id} opened twice")
        return _open(entry)

    if state is None:
        raise ValueError(f"{entry_type.value} entry before open for payment {entry.payment_id}")

    state = replace(state, last_sequence=entry.sequence, last_entry_at=at)

    if entry_type == EntryType.HOLD:
        remaining = 0
        if state.scheduled_release_at is not None:
            remaining = max(int((state.scheduled_release_at - at).total_seconds()), 0)
        return replace(
            state,
            is_flagged=True,
            flagged_reason=p.get("reason"),
            hold_remaining_seconds=remaining,
        )

    if entry_type == EntryType.UNHOLD:
        remaining = state.hold_remaining_seconds or 0
        return replace(
            state,
            is_flagged=False,
            flagged_reason=None,
            hold_remaining_seconds=None,
            scheduled_release_at=at + timedelta(seconds=remaining),
        )

    if entry_type == EntryType.RELEASE:
        released = replace(
            state,
            status=PaymentStatus.RELEASED,
            released_at=at,
            is_flagged=False,
            flagged_reason=None,
            hold_remaining_seconds=None,
        )
        return _settle(released, at)

    if entry_type == EntryType.DISPUTE_OPEN:
        return replace(state, status=PaymentStatus.DISPUTED)

    if entry_type == EntryType.COMMISSION_ADJUST:
        return _resplit(state, p, agency_commission_rate=p["agency_commission_rate"])

    if entry_type == EntryType.PARTIAL_REFUND:
        amount = -entry.amount_delta
        refunded = _resplit(
            state,
            p,
            gross_amount=state.gross_amount - amount,
            refunded_amount=state.refunded_amount + amount,
        )
        return _settle(refunded, at)

    if entry_type == EntryType.FULL_REFUND:
        amount = -entry.amount_delta
        shortfall = int(p.get("shortfall_amount", 0))
        return replace(
            state,
            status=PaymentStatus.REFUNDED,
            refunded_at=at,
            gross_amount=state.gross_amount - amount,
            refunded_amount=state.refunded_amount + amount,
            worker_amount=state.worker_committed,
            agency_commission=state.agency_committed,
            platform_fee=state.gross_amount - amount - state.worker_committed - state.agency_committed,
            shortfall_amount=state.shortfall_amount + shortfall,
            is_flagged=shortfall > 0,
            flagged_reason=REFUND_SHORTFALL if shortfall > 0 else None,
            hold_remaining_seconds=None,
        )

    portion = RecipientType(p.get("portion", RecipientType.WORKER.value))

    if entry_type == EntryType.PAYOUT_ATTEMPT:
        commit = int(p.get("commit", 0))
        if portion == RecipientType.WORKER:
            return replace(state, worker_committed=state.worker_committed + commit)
        return replace(state, agency_committed=state.agency_committed + commit)

    if entry_type == EntryType.PAYOUT_SUCCESS:
        amount = int(p.get("amount", 0))
        if portion == RecipientType.WORKER:
            paid = replace(state, worker_paid=state.worker_paid + amount)
        else:
            paid = replace(state, agency_paid=state.agency_paid + amount)
        return _settle(paid, at)

    # payout_failure is recorded for audit only
    return state


def replay_entries(entries: Iterable[LedgerRecord]) -> PaymentState | None:
    """Rebuild a payment's state from its ordered history."""
    state: PaymentState | None = None
    for entry in entries:
        state = apply_entry(state, entry)
    return state


def write_state(row: Any, state: PaymentState) -> None:
    """Copy a projected state onto an EscrowPayment row."""
    for name in PaymentState.__dataclass_fields__:
        value = getattr(state, name)
        setattr(row, name, value.value if name == "status" else value)
