"""Tests for full and partial refunds."""

from uuid import uuid4

import pytest

from conftest import ADMIN, SYSTEM
from escrow_engine.errors import (
    InsufficientBalance,
    InvalidAmount,
    InvalidTransition,
    NotAuthorized,
    PaymentNotFound,
    RefundNotPermitted,
)
from escrow_engine.settlement.events import RefundCompleted, RefundShortfallFlagged
from escrow_engine.settlement.services.projection import REFUND_SHORTFALL
from escrow_engine.settlement.services.refund_processor import auto_refund_key
from escrow_engine.settlement.types import PaymentStatus, RefundStatus


def manual_refund(coordinator, payment_id, refund_type="partial", amount=None, **kwargs):
    return coordinator.refund(
        payment_id,
        refund_type=refund_type,
        trigger="manual",
        reason="business complaint",
        actor=ADMIN,
        amount=amount,
        **kwargs,
    )


class TestPartialRefund:
    def test_partial_refund_in_escrow_resplits(self, coordinator, open_payment, events):
        state = open_payment()

        refund = manual_refund(coordinator, state.payment_id, amount=2_000)

        assert refund.amount == 2_000
        assert refund.status == "completed"
        payment = coordinator.get_payment(state.payment_id)
        assert payment.status == PaymentStatus.IN_ESCROW
        assert payment.gross_amount == 8_000
        assert payment.original_amount == 10_000
        assert payment.refunded_amount == 2_000
        assert payment.worker_amount == 6_800
        assert payment.platform_fee == 1_200
        assert events.of_type(RefundCompleted)[0].amount == 2_000

    def test_partial_refund_shrinks_queued_payout(self, coordinator, released_payment):
        state = released_payment()
        assert coordinator.list_payouts()[0].amount == 8_500

        manual_refund(coordinator, state.payment_id, amount=2_000)

        assert coordinator.list_payouts()[0].amount == 6_800

    def test_refund_over_balance_rejected(self, coordinator, open_payment):
        state = open_payment()
        with pytest.raises(InsufficientBalance) as exc_info:
            manual_refund(coordinator, state.payment_id, amount=10_001)
        assert exc_info.value.available == 10_000
        assert coordinator.get_payment(state.payment_id).refunded_amount == 0

    def test_partial_refund_needs_amount(self, coordinator, open_payment):
        state = open_payment()
        with pytest.raises(InvalidAmount):
            manual_refund(coordinator, state.payment_id)

    def test_partial_refund_after_payout_limited_to_fee(self, coordinator, released_payment):
        state = released_payment()
        coordinator.dispatch_queued_payouts()
        assert coordinator.get_payment(state.payment_id).status == PaymentStatus.PAID_OUT

        with pytest.raises(InsufficientBalance):
            manual_refund(coordinator, state.payment_id, amount=2_000)

        manual_refund(coordinator, state.payment_id, amount=1_000)
        payment = coordinator.get_payment(state.payment_id)
        assert payment.status == PaymentStatus.PAID_OUT
        assert payment.worker_amount == 8_500
        assert payment.platform_fee == 500

    def test_repeated_key_refunds_once(self, coordinator, open_payment):
        state = open_payment()
        first = manual_refund(coordinator, state.payment_id, amount=500, idempotency_key="crm-991")
        second = manual_refund(coordinator, state.payment_id, amount=500, idempotency_key="crm-991")

        assert second.refund_id == first.refund_id
        assert coordinator.get_payment(state.payment_id).refunded_amount == 500

    def test_refunds_listed_oldest_first(self, coordinator, open_payment, clock):
        state = open_payment()
        first = manual_refund(coordinator, state.payment_id, amount=500)
        clock.advance(minutes=5)
        second = manual_refund(coordinator, state.payment_id, amount=700)

        refunds = coordinator.list_refunds(state.payment_id)

        assert [r.refund_id for r in refunds] == [first.refund_id, second.refund_id]
        assert [r.amount for r in refunds] == [500, 700]

    def test_refund_completes_with_its_entry(self, coordinator, open_payment, clock):
        state = open_payment()
        clock.advance(hours=2)

        refund = manual_refund(coordinator, state.payment_id, amount=300)

        assert refund.status == RefundStatus.COMPLETED.value
        assert refund.created_at == refund.completed_at == clock.now()
        assert coordinator.get_payment(state.payment_id).refunded_amount == 300

    def test_refund_list_for_unknown_payment(self, coordinator):
        with pytest.raises(PaymentNotFound):
            coordinator.list_refunds(uuid4())


class TestFullRefund:
    def test_full_refund_in_escrow(self, coordinator, open_payment):
        state = open_payment()

        refund = manual_refund(coordinator, state.payment_id, refund_type="full")

        assert refund.amount == 10_000
        assert refund.shortfall_amount == 0
        payment = coordinator.get_payment(state.payment_id)
        assert payment.status == PaymentStatus.REFUNDED
        assert payment.gross_amount == 0
        assert not payment.is_flagged

    def test_full_refund_drops_unsent_payouts(self, coordinator, released_payment):
        state = released_payment(agency_id="agency-1")
        assert len(coordinator.list_payouts()) == 2

        manual_refund(coordinator, state.payment_id, refund_type="full")

        assert coordinator.list_payouts() == []

    def test_committed_portion_becomes_shortfall(self, coordinator, released_payment, rail, events):
        state = released_payment()
        rail.script("transient")
        coordinator.dispatch_queued_payouts()

        refund = manual_refund(coordinator, state.payment_id, refund_type="full")

        assert refund.amount == 1_500
        assert refund.shortfall_amount == 8_500
        payment = coordinator.get_payment(state.payment_id)
        assert payment.status == PaymentStatus.REFUNDED
        assert payment.is_flagged
        assert payment.flagged_reason == REFUND_SHORTFALL
        assert payment.shortfall_amount == 8_500
        assert events.of_type(RefundShortfallFlagged)[0].shortfall_amount == 8_500
        assert coordinator.alerts()["refund_shortfalls"] == [
            {"payment_id": str(state.payment_id), "shortfall_amount": 8_500}
        ]

    def test_refunded_payment_cannot_be_refunded_again(self, coordinator, open_payment):
        state = open_payment()
        manual_refund(coordinator, state.payment_id, refund_type="full")
        with pytest.raises(InvalidTransition):
            manual_refund(coordinator, state.payment_id, refund_type="full")


class TestRefundAuthorization:
    def test_manual_refund_needs_admin(self, coordinator, open_payment):
        state = open_payment()
        with pytest.raises(NotAuthorized):
            coordinator.refund(
                state.payment_id, refund_type="full", trigger="manual", reason="x", actor=SYSTEM
            )

    def test_auto_refund_for_no_show(self, coordinator, open_payment):
        state = open_payment()
        kwargs = dict(
            refund_type="full",
            trigger="auto",
            reason="worker did not show",
            actor=SYSTEM,
            condition="worker_no_show",
            event_ref="attendance:shift-1",
        )

        first = coordinator.refund(state.payment_id, **kwargs)
        second = coordinator.refund(state.payment_id, **kwargs)

        assert second.refund_id == first.refund_id
        assert first.idempotency_key == auto_refund_key("worker_no_show", "attendance:shift-1")
        assert first.trigger == "auto"
        assert first.condition == "worker_no_show"

    def test_auto_refund_needs_allowed_condition(self, coordinator, open_payment):
        state = open_payment()
        with pytest.raises(RefundNotPermitted):
            coordinator.refund(
                state.payment_id,
                refund_type="full",
                trigger="auto",
                reason="x",
                actor=SYSTEM,
                condition="business_changed_mind",
                event_ref="evt-1",
            )

    def test_auto_refund_needs_event_reference(self, coordinator, open_payment):
        state = open_payment()
        with pytest.raises(RefundNotPermitted):
            coordinator.refund(
                state.payment_id,
                refund_type="full",
                trigger="auto",
                reason="x",
                actor=SYSTEM,
                condition="worker_no_show",
            )
