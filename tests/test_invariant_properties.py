"""Property-based tests for escrow invariants.

These tests use hypothesis to generate random sequences of escrow
operations against a real coordinator and verify after every step that
the stored payment still matches its ledger and that no money appears
or disappears.
"""

from __future__ import annotations

from hypothesis import HealthCheck, settings
from hypothesis import strategies as st
from hypothesis.stateful import RuleBasedStateMachine, initialize, invariant, rule
from sqlalchemy import create_engine, func, select
from sqlalchemy.pool import StaticPool

from conftest import ADMIN, AGENCY, START, SYSTEM, shift
from escrow_engine.database import enable_sqlite_savepoints, make_session_factory
from escrow_engine.errors import EscrowError
from escrow_engine.models import Base, EscrowPayout, EscrowPayoutItem, EscrowRefund
from escrow_engine.settlement.clock import FixedClock
from escrow_engine.settlement.config import create_default_config
from escrow_engine.settlement.coordinator import SettlementCoordinator
from escrow_engine.settlement.providers import InMemoryRecipientDirectory, StubPayoutRail
from escrow_engine.settlement.services import PaymentLockRegistry
from escrow_engine.settlement.types import PaymentStatus


class EscrowLedgerMachine(RuleBasedStateMachine):
    """
    Stateful property test for one payment.

    Commands that the state machine rejects are part of the exploration;
    only the invariants decide pass or fail.
    """

    def __init__(self):
        super().__init__()
        self.engine = create_engine(
            "sqlite://",
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
        enable_sqlite_savepoints(self.engine)
        Base.metadata.create_all(self.engine)
        self.session = make_session_factory(self.engine)()
        self.clock = FixedClock(START)
        self.rail = StubPayoutRail()
        directory = InMemoryRecipientDirectory()
        directory.register("worker", "worker-1")
        directory.register("agency", AGENCY)
        self.coordinator = SettlementCoordinator(
            self.session,
            create_default_config(),
            rail=self.rail,
            directory=directory,
            clock=self.clock,
            lock_registry=PaymentLockRegistry(),
        )
        self.payment_id = None

    def teardown(self):
        self.session.close()
        self.engine.dispose()

    def _try(self, command, *args, **kwargs):
        try:
            command(*args, **kwargs)
        except EscrowError:
            pass

    @initialize(gross=st.integers(min_value=100, max_value=50_000), with_agency=st.booleans())
    def open_payment(self, gross, with_agency):
        state = self.coordinator.open_escrow(shift(gross_amount=gross, agency_id=AGENCY if with_agency else None))
        self.payment_id = state.payment_id

    @rule(hours=st.integers(min_value=1, max_value=100))
    def advance_time(self, hours):
        self.clock.advance(hours=hours)

    @rule()
    def hold(self):
        self._try(self.coordinator.hold, self.payment_id, "review", ADMIN)

    @rule()
    def unhold(self):
        self._try(self.coordinator.unhold, self.payment_id, ADMIN)

    @rule(override=st.booleans())
    def release(self, override):
        self._try(self.coordinator.release, self.payment_id, ADMIN, override=override)

    @rule()
    def release_due(self):
        self.coordinator.release_all_due()

    @rule()
    def open_dispute(self):
        self._try(self.coordinator.open_dispute, self.payment_id, "complaint")

    @rule(
        outcome=st.sampled_from(["upheld", "rejected", "split"]),
        amount=st.integers(min_value=1, max_value=60_000),
    )
    def resolve(self, outcome, amount):
        try:
            dispute = self.coordinator.get_dispute(self.payment_id)
        except EscrowError:
            return
        self._try(self.coordinator.resolve, dispute.dispute_id, outcome, ADMIN, refund_amount=amount)

    @rule(amount=st.integers(min_value=1, max_value=60_000))
    def partial_refund(self, amount):
        self._try(
            self.coordinator.refund,
            self.payment_id,
            refund_type="partial",
            trigger="manual",
            reason="adjustment",
            actor=ADMIN,
            amount=amount,
        )

    @rule(event_no=st.integers(min_value=1, max_value=3))
    def auto_full_refund(self, event_no):
        self._try(
            self.coordinator.refund,
            self.payment_id,
            refund_type="full",
            trigger="auto",
            reason="no show",
            actor=SYSTEM,
            condition="worker_no_show",
            event_ref=f"attendance:{event_no}",
        )

    @rule(outcome=st.sampled_from(["accept", "reject", "transient", "timeout"]))
    def dispatch(self, outcome):
        self.rail.default = outcome
        self.coordinator.dispatch_queued_payouts()
        self.coordinator.retry_due_payouts()

    @rule()
    def retry_failed(self):
        self.rail.default = "accept"
        self.coordinator.retry_all_failed_payouts(ADMIN)

    @invariant()
    def row_matches_replay(self):
        if self.payment_id is None:
            return
        assert self.coordinator.replay(self.payment_id) == self.coordinator.get_payment(self.payment_id)

    @invariant()
    def money_is_conserved(self):
        if self.payment_id is None:
            return
        state = self.coordinator.get_payment(self.payment_id)
        assert state.worker_amount + state.platform_fee + state.agency_commission == state.gross_amount
        assert state.gross_amount + state.refunded_amount == state.original_amount
        assert state.gross_amount >= 0
        assert 0 <= state.worker_paid <= state.worker_committed <= state.worker_amount
        assert 0 <= state.agency_paid <= state.agency_committed <= state.agency_commission

    @invariant()
    def refund_rows_match_ledger(self):
        if self.payment_id is None:
            return
        refunded = self.session.execute(
            select(func.coalesce(func.sum(EscrowRefund.amount), 0)).where(
                EscrowRefund.payment_id == self.payment_id
            )
        ).scalar()
        assert refunded == self.coordinator.get_payment(self.payment_id).refunded_amount

    @invariant()
    def payouts_match_their_items(self):
        for payout in self.session.execute(select(EscrowPayout)).scalars():
            items = self.session.execute(
                select(func.coalesce(func.sum(EscrowPayoutItem.amount), 0)).where(
                    EscrowPayoutItem.payout_id == payout.payout_id
                )
            ).scalar()
            assert payout.amount == items

    @invariant()
    def paid_out_means_fully_paid(self):
        if self.payment_id is None:
            return
        state = self.coordinator.get_payment(self.payment_id)
        if state.status == PaymentStatus.PAID_OUT:
            assert state.worker_paid == state.worker_amount
            assert state.agency_paid == state.agency_commission


EscrowLedgerMachine.TestCase.settings = settings(
    max_examples=30,
    stateful_step_count=25,
    deadline=None,
    suppress_health_check=[HealthCheck.too_slow],
)
TestEscrowLedgerStateMachine = EscrowLedgerMachine.TestCase
