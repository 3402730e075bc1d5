"""Payment state machine with transition validation.

A payment's status decides which ledger entry types may be appended:

- in_escrow → hold / unhold / release / dispute_open / commission_adjust / refunds
- disputed  → release / refunds (dispute resolution only)
- released  → refunds / payout entries
- paid_out  → partial refund of the un-disbursed balance only
- refunded  → payout entries for portions committed before the refund
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from escrow_engine.errors import InsufficientBalance, InvalidAmount, InvalidTransition
from escrow_engine.settlement.types import EntryType, PaymentState, PaymentStatus, RecipientType

PAYOUT_ENTRIES = {EntryType.PAYOUT_ATTEMPT, EntryType.PAYOUT_SUCCESS, EntryType.PAYOUT_FAILURE}
REFUND_ENTRIES = {EntryType.PARTIAL_REFUND, EntryType.FULL_REFUND}


class PaymentStateMachine:
    """Validates ledger appends against a payment's current state."""

    VALID_ENTRIES: dict[PaymentStatus, set[EntryType]] = {
        PaymentStatus.IN_ESCROW: {
            EntryType.HOLD,
            EntryType.UNHOLD,
            EntryType.RELEASE,
            EntryType.DISPUTE_OPEN,
            EntryType.COMMISSION_ADJUST,
            EntryType.PARTIAL_REFUND,
            EntryType.FULL_REFUND,
        },
        PaymentStatus.DISPUTED: {
            EntryType.RELEASE,
            EntryType.PARTIAL_REFUND,
            EntryType.FULL_REFUND,
        },
        PaymentStatus.RELEASED: {
            EntryType.PARTIAL_REFUND,
            EntryType.FULL_REFUND,
            *PAYOUT_ENTRIES,
        },
        PaymentStatus.PAID_OUT: {EntryType.PARTIAL_REFUND},
        PaymentStatus.REFUNDED: set(PAYOUT_ENTRIES),
    }

    @classmethod
    def can_append(cls, status: PaymentStatus, entry_type: EntryType) -> bool:
        return entry_type in cls.VALID_ENTRIES.get(status, set())

    @classmethod
    def validate(
        cls,
        state: PaymentState,
        entry_type: EntryType,
        *,
        amount_delta: int = 0,
        payload: dict[str, Any] | None = None,
        now: datetime,
    ) -> None:
        """Raise if ``entry_type`` cannot be appended to ``state`` at ``now``."""
        payload = payload or {}
        status = state.status

        if entry_type == EntryType.OPEN:
            raise InvalidTransition(status.value, entry_type.value, "payment already open")

        if not cls.can_append(status, entry_type):
            raise InvalidTransition(status.value, entry_type.value)

        if entry_type == EntryType.HOLD and state.is_flagged:
            raise InvalidTransition(status.value, entry_type.value, "payment is already on hold")

        if entry_type == EntryType.UNHOLD and not state.is_flagged:
            raise InvalidTransition(status.value, entry_type.value, "payment is not on hold")

        if entry_type == EntryType.RELEASE:
            cls._validate_release(state, payload, now)

        if entry_type in REFUND_ENTRIES and status == PaymentStatus.DISPUTED and not payload.get("dispute_id"):
            raise InvalidTransition(
                status.value, entry_type.value, "payment has an active dispute; resolve the dispute instead"
            )

        if entry_type == EntryType.PARTIAL_REFUND:
            requested = -amount_delta
            if requested <= 0:
                raise InvalidAmount(f"refund amount must be positive, got {requested}")
            if requested > state.undisbursed_balance:
                raise InsufficientBalance(requested, state.undisbursed_balance)

        if entry_type == EntryType.PAYOUT_ATTEMPT:
            commit = int(payload.get("commit", 0))
            uncommitted = _portion(state, payload, "uncommitted")
            if commit < 0 or commit > uncommitted:
                raise InvalidTransition(
                    status.value, entry_type.value, f"cannot commit {commit}, {uncommitted} uncommitted"
                )

        if entry_type == EntryType.PAYOUT_SUCCESS:
            amount = int(payload.get("amount", 0))
            outstanding = _portion(state, payload, "outstanding")
            if amount <= 0 or amount > outstanding:
                raise InvalidTransition(
                    status.value, entry_type.value, f"cannot settle {amount}, {outstanding} outstanding"
                )

    @staticmethod
    def _validate_release(state: PaymentState, payload: dict[str, Any], now: datetime) -> None:
        if state.status == PaymentStatus.DISPUTED:
            if not payload.get("dispute_id"):
                raise InvalidTransition(
                    state.status.value, "release", "disputed payments release only through dispute resolution"
                )
            return
        if state.is_flagged:
            raise InvalidTransition(state.status.value, "release", "payment is on hold")
        if payload.get("override"):
            return
        if state.scheduled_release_at is None or now < state.scheduled_release_at:
            raise InvalidTransition(
                state.status.value,
                "release",
                f"hold period runs until {state.scheduled_release_at.isoformat() if state.scheduled_release_at else 'unset'}",
            )


def _portion(state: PaymentState, payload: dict[str, Any], which: str) -> int:
    portion = RecipientType(payload.get("portion", RecipientType.WORKER.value))
    if portion == RecipientType.WORKER:
        amount, committed, paid = state.worker_amount, state.worker_committed, state.worker_paid
    else:
        amount, committed, paid = state.agency_commission, state.agency_committed, state.agency_paid
    if which == "uncommitted":
        return amount - committed
    return committed - paid
