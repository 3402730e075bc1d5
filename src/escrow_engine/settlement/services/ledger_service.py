"""Escrow Ledger Service - append-only, event-sourced payment history.

Provides idempotent, transactional appends with:
- Idempotency via a globally unique idempotency_key
- Transition validation against the payment state machine
- Projection of every entry onto the derived escrow_payment row
- Replay and reconciliation of the row against its history
"""

from __future__ import annotations

import logging
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from escrow_engine.errors import InvalidTransition, LedgerUnavailable, PaymentNotFound
from escrow_engine.models import EscrowLedgerEntry, EscrowPayment
from escrow_engine.settlement.clock import Clock, SystemClock
from escrow_engine.settlement.services.projection import apply_entry, replay_entries, write_state
from escrow_engine.settlement.services.state_machine import PaymentStateMachine
from escrow_engine.settlement.types import Actor, AppendResult, EntryType, PaymentState

logger = logging.getLogger(__name__)


class EscrowLedger:
    """Append-only escrow ledger.

    Notes:
    - escrow_ledger_entry rows are never updated or deleted.
    - idempotency_key is unique across the whole ledger.
    - escrow_payment is a cache of the projection and is only written here.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self.session = session
        self.clock = clock or SystemClock()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def open(
        self,
        *,
        gross_amount: int,
        payload: dict[str, Any],
        idempotency_key: str,
        actor: Actor,
        payment_id: UUID | None = None,
    ) -> AppendResult:
        """Create a payment with its opening entry.

        A duplicate idempotency key returns the existing payment unchanged.
        """
        duplicate = self._duplicate(idempotency_key)
        if duplicate is not None:
            return duplicate

        existing = self.session.execute(
            select(EscrowPayment.status).where(EscrowPayment.shift_ref == payload["shift_ref"])
        ).scalar_one_or_none()
        if existing is not None:
            raise InvalidTransition(existing, EntryType.OPEN.value, "shift already has a payment")

        now = self.clock.now()
        entry = EscrowLedgerEntry(
            entry_id=uuid4(),
            payment_id=payment_id or uuid4(),
            sequence=1,
            entry_type=EntryType.OPEN.value,
            amount_delta=gross_amount,
            actor_id=actor.actor_id,
            actor_type=actor.actor_type.value,
            occurred_at=now,
            idempotency_key=idempotency_key,
            payload_json=payload,
        )
        state = apply_entry(None, entry)
        row = EscrowPayment()
        write_state(row, state)
        return self._write(row, entry, state, new_row=True)

    def append(
        self,
        payment_id: UUID,
        entry_type: EntryType,
        *,
        idempotency_key: str,
        actor: Actor,
        amount_delta: int = 0,
        payload: dict[str, Any] | None = None,
    ) -> AppendResult:
        """Append an entry and project it onto the payment row.

        Returns:
            AppendResult. ``is_new=False`` means the key was already used and
            nothing was applied.

        Raises:
            PaymentNotFound: Unknown payment.
            InvalidTransition: Entry not legal from the current state.
            InsufficientBalance: Refund exceeds the un-disbursed balance.
            LedgerUnavailable: Storage failure; nothing was written.
        """
        duplicate = self._duplicate(idempotency_key)
        if duplicate is not None:
            return duplicate

        row = self._load_row(payment_id, for_update=True)
        state = PaymentState.from_row(row)
        now = self.clock.now()
        PaymentStateMachine.validate(
            state, entry_type, amount_delta=amount_delta, payload=payload, now=now
        )

        entry = EscrowLedgerEntry(
            entry_id=uuid4(),
            payment_id=payment_id,
            sequence=state.last_sequence + 1,
            entry_type=entry_type.value,
            amount_delta=amount_delta,
            actor_id=actor.actor_id,
            actor_type=actor.actor_type.value,
            # entries stay ordered even if the clock steps backwards
            occurred_at=max(now, state.last_entry_at),
            idempotency_key=idempotency_key,
            payload_json=payload or {},
        )
        new_state = apply_entry(state, entry)
        return self._write(row, entry, new_state)

    def _write(
        self,
        row: EscrowPayment,
        entry: EscrowLedgerEntry,
        state: PaymentState,
        new_row: bool = False,
    ) -> AppendResult:
        try:
            with self.session.begin_nested():
                if new_row:
                    self.session.add(row)
                    self.session.flush()
                else:
                    write_state(row, state)
                self.session.add(entry)
                self.session.flush()
        except IntegrityError:
            # Lost a race on the idempotency key; the winner's entry stands.
            if not new_row:
                self.session.refresh(row)
            duplicate = self._duplicate(entry.idempotency_key)
            if duplicate is None:
                raise
            return duplicate
        except OperationalError as exc:
            logger.error("Ledger write failed for payment %s: %s", entry.payment_id, exc)
            raise LedgerUnavailable(str(exc.orig), payment_id=entry.payment_id) from exc

        logger.info(
            "Ledger %s #%d for payment %s (delta=%d, status=%s)",
            entry.entry_type,
            entry.sequence,
            entry.payment_id,
            entry.amount_delta,
            state.status.value,
        )
        return AppendResult(entry_id=entry.entry_id, is_new=True, entry_type=entry.entry_type, state=state)

    def _duplicate(self, idempotency_key: str) -> AppendResult | None:
        existing = self.find_by_key(idempotency_key)
        if existing is None:
            return None
        logger.debug("Idempotent replay of %s (%s)", idempotency_key, existing.entry_type)
        return AppendResult(
            entry_id=existing.entry_id,
            is_new=False,
            entry_type=existing.entry_type,
            state=self.current_state(existing.payment_id),
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def find_by_key(self, idempotency_key: str) -> EscrowLedgerEntry | None:
        return self.session.execute(
            select(EscrowLedgerEntry).where(EscrowLedgerEntry.idempotency_key == idempotency_key)
        ).scalar_one_or_none()

    def _load_row(self, payment_id: UUID, for_update: bool = False) -> EscrowPayment:
        query = select(EscrowPayment).where(EscrowPayment.payment_id == payment_id)
        if for_update:
            query = query.with_for_update()
        row = self.session.execute(query).scalar_one_or_none()
        if row is None:
            raise PaymentNotFound(f"Payment {payment_id} not found", payment_id=payment_id)
        return row

    def current_state(self, payment_id: UUID) -> PaymentState:
        """State as cached on the payment row."""
        return PaymentState.from_row(self._load_row(payment_id))

    def entries(self, payment_id: UUID) -> list[EscrowLedgerEntry]:
        return list(
            self.session.execute(
                select(EscrowLedgerEntry)
                .where(EscrowLedgerEntry.payment_id == payment_id)
                .order_by(EscrowLedgerEntry.sequence)
            ).scalars()
        )

    def replay(self, payment_id: UUID) -> PaymentState:
        """State rebuilt from scratch by folding every entry."""
        state = replay_entries(self.entries(payment_id))
        if state is None:
            raise PaymentNotFound(f"Payment {payment_id} has no ledger entries", payment_id=payment_id)
        return state

    def reconcile(self, payment_id: UUID) -> dict[str, tuple[Any, Any]]:
        """Fields where the cached row disagrees with a replay.

        Returns:
            {field: (row_value, replayed_value)}; empty when consistent.
        """
        cached = self.current_state(payment_id)
        replayed = self.replay(payment_id)
        drift = {
            name: (getattr(cached, name), getattr(replayed, name))
            for name in PaymentState.__dataclass_fields__
            if getattr(cached, name) != getattr(replayed, name)
        }
        if drift:
            logger.warning("Payment %s drifted from its ledger: %s", payment_id, sorted(drift))
        return drift

    def reconcile_all(self) -> dict[UUID, dict[str, tuple[Any, Any]]]:
        """Reconcile every payment; only drifted payments appear in the result."""
        payment_ids = self.session.execute(
            select(EscrowPayment.payment_id).order_by(EscrowPayment.created_at)
        ).scalars()
        report = {}
        for payment_id in payment_ids:
            drift = self.reconcile(payment_id)
            if drift:
                report[payment_id] = drift
        return report
