"""Tests for the stub payout rail and in-memory recipient directory."""

import pytest

from escrow_engine.settlement.providers import InMemoryRecipientDirectory, StubPayoutRail

INSTRUCTION = {"payout_id": "p-1", "amount": 8_500, "currency": "USD"}


class TestStubPayoutRail:
    def test_accepts_by_default(self):
        rail = StubPayoutRail()
        result = rail.submit(INSTRUCTION, timeout_seconds=30)
        assert result.accepted
        assert result.provider_request_id.startswith("STUB-")
        assert rail.submissions[0]["timeout_seconds"] == 30

    def test_script_runs_in_order_then_default(self):
        rail = StubPayoutRail(script=["transient", "reject"])

        transient = rail.submit(INSTRUCTION, timeout_seconds=1)
        rejected = rail.submit(INSTRUCTION, timeout_seconds=1)
        accepted = rail.submit(INSTRUCTION, timeout_seconds=1)

        assert not transient.accepted and transient.retryable
        assert not rejected.accepted and not rejected.retryable
        assert accepted.accepted
        assert [s["outcome"] for s in rail.submissions] == ["transient", "reject", "accept"]
        assert rail.call_count == 3

    def test_network_failures_raise(self):
        rail = StubPayoutRail()
        rail.script("timeout", "connection_error")
        with pytest.raises(TimeoutError):
            rail.submit(INSTRUCTION, timeout_seconds=5)
        with pytest.raises(ConnectionError):
            rail.submit(INSTRUCTION, timeout_seconds=5)
        assert rail.call_count == 2

    def test_unknown_outcome_rejected(self):
        with pytest.raises(ValueError):
            StubPayoutRail(default="maybe")
        with pytest.raises(ValueError):
            StubPayoutRail().script("later")


class TestInMemoryRecipientDirectory:
    def test_register_and_lookup(self):
        directory = InMemoryRecipientDirectory()
        method = directory.register("worker", "worker-9", method="instant_card")

        assert directory.payout_method("worker", "worker-9") == method
        assert method.account_token == "tok_worker_worker-9"
        assert directory.payout_method("agency", "worker-9") is None

    def test_remove(self):
        directory = InMemoryRecipientDirectory()
        directory.register("agency", "agency-1")
        directory.remove("agency", "agency-1")
        directory.remove("agency", "never-registered")
        assert directory.payout_method("agency", "agency-1") is None
