"""Tests for the periodic escrow scheduler."""

from datetime import timedelta

import pytest

from conftest import ADMIN, HOLD, START, shift
from escrow_engine.settlement.config import create_default_config
from escrow_engine.settlement.events import EscrowReleased, PayoutCompleted
from escrow_engine.settlement.scheduler import EscrowScheduler
from escrow_engine.settlement.types import EntryType, PaymentStatus


@pytest.fixture
def scheduler(file_factory, rail, directory, clock, emitter, locks):
    return EscrowScheduler(
        file_factory,
        create_default_config(),
        rail=rail,
        directory=directory,
        clock=clock,
        emitter=emitter,
        lock_registry=locks,
        max_workers=1,
    )


class TestRunOnce:
    def test_nothing_to_do(self, scheduler):
        run = scheduler.run_once()
        assert run.recovered == 0
        assert run.released.results == []
        assert run.dispatched.results == []
        assert run.retried.results == []

    def test_releases_and_pays_out_due_payments(self, scheduler, run_command, clock, events):
        first = run_command(lambda c: c.open_escrow(shift("shift-1")))
        second = run_command(lambda c: c.open_escrow(shift("shift-2", worker_id="worker-2")))
        clock.set(START + HOLD)

        run = scheduler.run_once()

        assert run.released.summary() == "2 released"
        assert run.dispatched.summary() == "2 dispatched"
        for state in (first, second):
            payment = run_command(lambda c: c.get_payment(state.payment_id))
            assert payment.status == PaymentStatus.PAID_OUT
        assert len(events.of_type(EscrowReleased)) == 2
        assert len(events.of_type(PayoutCompleted)) == 2

    def test_payment_not_yet_due_is_left_alone(self, scheduler, run_command, clock):
        state = run_command(lambda c: c.open_escrow(shift()))
        clock.set(START + HOLD - timedelta(minutes=1))

        run = scheduler.run_once()

        assert run.released.results == []
        assert run_command(lambda c: c.get_payment(state.payment_id)).status == PaymentStatus.IN_ESCROW

    def test_held_payment_skipped(self, scheduler, run_command, clock):
        state = run_command(lambda c: c.open_escrow(shift()))
        run_command(lambda c: c.hold(state.payment_id, "fraud review", ADMIN))
        clock.set(START + HOLD + timedelta(days=3))

        assert scheduler.run_once().released.results == []

    def test_transient_failure_retried_on_later_run(self, scheduler, run_command, clock, rail):
        run_command(lambda c: c.open_escrow(shift()))
        rail.script("transient")
        clock.set(START + HOLD)

        first = scheduler.run_once()
        assert first.dispatched.failed[0].error_kind == "transient"

        clock.advance(minutes=2)
        assert scheduler.run_once().retried.results == []

        clock.advance(minutes=3)
        later = scheduler.run_once()
        assert later.retried.summary() == "1 retried"
        assert rail.call_count == 2

    def test_reports_sla_breaches(self, scheduler, run_command, clock):
        state = run_command(lambda c: c.open_escrow(shift()))
        run_command(lambda c: c.open_dispute(state.payment_id, "worker left early"))
        clock.advance(hours=49)

        assert scheduler.run_once().sla_breaches == 1
        assert scheduler.run_once().sla_breaches == 0

    def test_below_minimum_payout_waits(self, scheduler, run_command, clock, rail):
        run_command(lambda c: c.open_escrow(shift(gross_amount=100)))
        clock.set(START + HOLD)

        run = scheduler.run_once()

        assert run.released.summary() == "1 released"
        assert run.dispatched.failed[0].error_kind == "below_minimum_threshold"
        assert rail.call_count == 0

    def test_to_dict(self, scheduler, clock):
        data = scheduler.run_once().to_dict()
        assert data["started_at"] == START.isoformat()
        assert data["released"]["action"] == "released"


class TestParallelRelease:
    """Release fan-out over several worker threads."""

    @pytest.fixture
    def pool_scheduler(self, file_factory, rail, directory, clock, emitter, locks):
        return EscrowScheduler(
            file_factory,
            create_default_config(),
            rail=rail,
            directory=directory,
            clock=clock,
            emitter=emitter,
            lock_registry=locks,
            max_workers=4,
        )

    def test_every_due_payment_released_once(self, pool_scheduler, run_command, clock, events):
        states = [run_command(lambda c, n=n: c.open_escrow(shift(f"shift-{n}"))) for n in range(12)]
        clock.set(START + HOLD + timedelta(seconds=1))

        batch = pool_scheduler.release_due()

        assert batch.failed == []
        assert batch.summary() == "12 released"
        for state in states:
            entries = run_command(lambda c: c.entries(state.payment_id))
            assert [e.entry_type for e in entries].count(EntryType.RELEASE.value) == 1
            assert run_command(lambda c: c.get_payment(state.payment_id)).status == PaymentStatus.RELEASED
        assert len(events.of_type(EscrowReleased)) == 12

    def test_future_as_of_capped_at_clock(self, pool_scheduler, run_command, clock):
        due = run_command(lambda c: c.open_escrow(shift("shift-1")))
        clock.advance(days=3)
        later = run_command(lambda c: c.open_escrow(shift("shift-2")))
        clock.set(START + HOLD)

        batch = pool_scheduler.release_due(START + timedelta(days=30))

        assert batch.failed == []
        assert [r.target_id for r in batch.results] == [str(due.payment_id)]
        assert run_command(lambda c: c.get_payment(later.payment_id)).status == PaymentStatus.IN_ESCROW


class TestSchedulerSetup:
    def test_needs_a_worker(self, file_factory, rail, directory):
        with pytest.raises(ValueError):
            EscrowScheduler(file_factory, rail=rail, directory=directory, max_workers=0)
