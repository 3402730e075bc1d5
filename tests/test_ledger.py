"""Tests for the append-only escrow ledger."""

from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from conftest import ADMIN, HOLD, START, SYSTEM, shift
from escrow_engine.errors import InvalidAmount, InvalidTransition, LedgerUnavailable, PaymentNotFound
from escrow_engine.models import EscrowLedgerEntry, EscrowPayment
from escrow_engine.settlement.config import EngineConfig, FeeSchedule
from escrow_engine.settlement.coordinator import SettlementCoordinator
from escrow_engine.settlement.types import EntryType, PaymentStatus


def entry_count(db, payment_id=None):
    query = select(func.count()).select_from(EscrowLedgerEntry)
    if payment_id is not None:
        query = query.where(EscrowLedgerEntry.payment_id == payment_id)
    return db.execute(query).scalar()


class TestOpen:
    """Tests for opening escrow."""

    def test_open_creates_payment_and_first_entry(self, coordinator, open_payment, db):
        state = open_payment()

        assert state.status == PaymentStatus.IN_ESCROW
        assert state.gross_amount == 10_000
        assert state.worker_amount == 8_500
        assert state.platform_fee == 1_500
        assert state.escrow_started_at == START
        assert state.scheduled_release_at == START + HOLD
        assert state.last_sequence == 1

        entries = coordinator.entries(state.payment_id)
        assert [e.entry_type for e in entries] == ["open"]
        assert entries[0].amount_delta == 10_000
        assert entries[0].idempotency_key == "open:shift-1"

    def test_reopening_same_shift_returns_existing_payment(self, coordinator, open_payment, db):
        first = open_payment()
        second = open_payment()

        assert second.payment_id == first.payment_id
        assert entry_count(db) == 1

    def test_second_payment_for_shift_rejected(self, coordinator, open_payment):
        open_payment()
        with pytest.raises(InvalidTransition):
            coordinator.ledger.open(
                gross_amount=5_000,
                payload={"shift_ref": "shift-1"},
                idempotency_key="open:other",
                actor=SYSTEM,
            )

    def test_agency_split(self, open_payment):
        state = open_payment(agency_id="agency-1")
        assert state.agency_commission == 1_000
        assert state.worker_amount == 7_500
        assert state.platform_fee == 1_500


class TestAppend:
    """Tests for idempotent appends."""

    def test_duplicate_key_applies_nothing(self, coordinator, open_payment, db):
        state = open_payment()
        ledger = coordinator.ledger

        first = ledger.append(
            state.payment_id, EntryType.HOLD, idempotency_key="hold-1", actor=ADMIN, payload={"reason": "fraud"}
        )
        second = ledger.append(
            state.payment_id, EntryType.HOLD, idempotency_key="hold-1", actor=ADMIN, payload={"reason": "fraud"}
        )

        assert first.is_new
        assert not second.is_new
        assert second.was_duplicate
        assert second.entry_id == first.entry_id
        assert second.state.is_flagged
        assert entry_count(db, state.payment_id) == 2

    def test_idempotency_key_is_global(self, coordinator, open_payment):
        one = open_payment("shift-1")
        two = open_payment("shift-2")
        ledger = coordinator.ledger

        ledger.append(one.payment_id, EntryType.HOLD, idempotency_key="shared", actor=ADMIN, payload={})
        result = ledger.append(two.payment_id, EntryType.HOLD, idempotency_key="shared", actor=ADMIN, payload={})

        assert not result.is_new
        assert result.state.payment_id == one.payment_id
        assert not coordinator.get_payment(two.payment_id).is_flagged

    def test_invalid_transition_writes_nothing(self, coordinator, open_payment, db):
        state = open_payment()
        with pytest.raises(InvalidTransition, match="hold period"):
            coordinator.ledger.append(
                state.payment_id, EntryType.RELEASE, idempotency_key="early", actor=SYSTEM
            )
        assert entry_count(db, state.payment_id) == 1
        assert coordinator.get_payment(state.payment_id).status == PaymentStatus.IN_ESCROW

    def test_second_open_entry_rejected(self, coordinator, open_payment):
        state = open_payment()
        with pytest.raises(InvalidTransition):
            coordinator.ledger.append(state.payment_id, EntryType.OPEN, idempotency_key="again", actor=SYSTEM)

    def test_unknown_payment(self, coordinator):
        with pytest.raises(PaymentNotFound):
            coordinator.ledger.append(uuid4(), EntryType.HOLD, idempotency_key="x", actor=ADMIN)

    def test_sequence_is_gapless(self, coordinator, open_payment, clock):
        state = open_payment()
        coordinator.hold(state.payment_id, "check", ADMIN)
        clock.advance(hours=1)
        coordinator.unhold(state.payment_id, ADMIN)

        entries = coordinator.entries(state.payment_id)
        assert [e.sequence for e in entries] == [1, 2, 3]

    def test_entry_time_never_goes_backwards(self, coordinator, open_payment, clock):
        state = open_payment()
        clock.set(START - timedelta(hours=2))
        coordinator.hold(state.payment_id, "clock skew", ADMIN)

        entries = coordinator.entries(state.payment_id)
        assert entries[1].occurred_at == entries[0].occurred_at

    def test_storage_failure_is_ledger_unavailable(self, coordinator, open_payment, db, monkeypatch):
        state = open_payment()

        def broken_flush(*args, **kwargs):
            raise OperationalError("INSERT INTO escrow_ledger_entry", {}, Exception("database is locked"))

        monkeypatch.setattr(db, "flush", broken_flush)
        with pytest.raises(LedgerUnavailable) as exc_info:
            coordinator.ledger.append(
                state.payment_id, EntryType.HOLD, idempotency_key="h", actor=ADMIN, payload={}
            )
        assert exc_info.value.kind == "ledger_unavailable"


class TestReplay:
    """The stored row is always what replaying the ledger produces."""

    def test_replay_matches_row_through_full_lifecycle(self, coordinator, open_payment, clock):
        state = open_payment(agency_id="agency-1")
        pid = state.payment_id

        coordinator.hold(pid, "timesheet check", ADMIN)
        clock.advance(days=2)
        coordinator.unhold(pid, ADMIN)
        clock.advance(days=7)
        coordinator.release(pid)
        coordinator.dispatch_queued_payouts()

        assert coordinator.get_payment(pid).status == PaymentStatus.PAID_OUT
        assert coordinator.replay(pid) == coordinator.get_payment(pid)
        assert coordinator.reconcile(pid) == {}

    def test_replay_after_partial_refund(self, coordinator, open_payment):
        state = open_payment()
        coordinator.refund(
            state.payment_id,
            refund_type="partial",
            trigger="manual",
            reason="short shift",
            actor=ADMIN,
            amount=2_000,
        )
        assert coordinator.replay(state.payment_id) == coordinator.get_payment(state.payment_id)

    def test_reconcile_reports_drift(self, coordinator, open_payment, db):
        state = open_payment()
        row = db.get(EscrowPayment, state.payment_id)
        row.worker_amount += 1
        db.flush()

        drift = coordinator.reconcile(state.payment_id)
        assert drift == {"worker_amount": (8_501, 8_500)}

    def test_reconcile_all_lists_only_drifted_payments(self, coordinator, open_payment, db):
        clean = open_payment("shift-1")
        drifted = open_payment("shift-2")
        db.get(EscrowPayment, drifted.payment_id).platform_fee = 0
        db.flush()

        report = coordinator.reconcile_all()

        assert clean.payment_id not in report
        assert report[drifted.payment_id] == {"platform_fee": (0, 1_500)}

    def test_replay_unknown_payment(self, coordinator):
        with pytest.raises(PaymentNotFound):
            coordinator.replay(uuid4())


class TestShiftInputs:
    def test_agency_rate_without_agency_rejected(self, coordinator):
        with pytest.raises(InvalidAmount):
            coordinator.open_escrow(shift(agency_commission_rate="0.05"))

    def test_urgent_shift_gets_bonus(self, db, rail, directory, clock):
        config = EngineConfig(fees=FeeSchedule(urgent_bonus_rate=Decimal("0.05")))
        coordinator = SettlementCoordinator(db, config, rail=rail, directory=directory, clock=clock)

        state = coordinator.open_escrow(shift(urgent=True))
        assert state.worker_amount == 9_000
        assert state.platform_fee == 1_000
