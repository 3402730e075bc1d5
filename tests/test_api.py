"""API endpoint tests.

Tests the FastAPI endpoints against an in-memory database.
"""

from datetime import timedelta
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from conftest import AGENCY, BUSINESS, HOLD, START, WORKER
from escrow_engine.api.app import create_app

ADMIN_HEADERS = {"X-Actor-Id": "ops-7", "X-Actor-Role": "admin"}
SYSTEM_HEADERS = {"X-Actor-Id": "shift-service"}


@pytest.fixture
def client(session_factory, config, rail, directory, clock, emitter) -> TestClient:
    app = create_app(
        session_factory,
        config=config,
        rail=rail,
        directory=directory,
        clock=clock,
        emitter=emitter,
    )
    return TestClient(app)


@pytest.fixture
def payment(client) -> dict:
    """A payment opened through the API."""
    response = client.post(
        "/api/v1/payments",
        headers=SYSTEM_HEADERS,
        json={
            "shift_ref": "shift-1",
            "worker_id": WORKER,
            "business_id": BUSINESS,
            "gross_amount": 10_000,
        },
    )
    assert response.status_code == 201, response.text
    return response.json()


class TestHealthEndpoints:
    """Test health check endpoints."""

    def test_health_check(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["database"] == "healthy"

    def test_health_reports_pending_alerts(self, client, payment, clock):
        clock.set(START + HOLD + timedelta(minutes=1))
        data = client.get("/health").json()
        assert data["status"] == "attention"
        assert data["alerts"] == ["INFO: 1 payments waiting for auto-release"]

    def test_readiness_and_liveness(self, client):
        assert client.get("/ready").json() == {"status": "ready"}
        assert client.get("/live").json() == {"status": "alive"}


class TestPaymentEndpoints:
    def test_open_escrow(self, payment):
        assert payment["status"] == "in_escrow"
        assert payment["worker_amount"] == 8_500
        assert payment["platform_fee"] == 1_500
        assert payment["scheduled_release_at"].startswith((START + HOLD).date().isoformat())

    def test_open_same_shift_returns_existing(self, client, payment):
        response = client.post(
            "/api/v1/payments",
            headers=SYSTEM_HEADERS,
            json={"shift_ref": "shift-1", "worker_id": WORKER, "business_id": BUSINESS, "gross_amount": 10_000},
        )
        assert response.status_code == 201
        assert response.json()["payment_id"] == payment["payment_id"]

    def test_actor_header_required(self, client):
        response = client.post(
            "/api/v1/payments",
            json={"shift_ref": "s", "worker_id": WORKER, "business_id": BUSINESS, "gross_amount": 100},
        )
        assert response.status_code == 400
        assert "X-Actor-Id" in response.json()["detail"]

    def test_unknown_role_rejected(self, client, payment):
        response = client.post(
            f"/api/v1/payments/{payment['payment_id']}/hold",
            headers={"X-Actor-Id": "x", "X-Actor-Role": "superuser"},
            json={"reason": "check"},
        )
        assert response.status_code == 400

    def test_invalid_amount_is_validation_error(self, client):
        response = client.post(
            "/api/v1/payments",
            headers=SYSTEM_HEADERS,
            json={"shift_ref": "s", "worker_id": WORKER, "business_id": BUSINESS, "gross_amount": 0},
        )
        assert response.status_code == 422

    def test_agency_rate_without_agency(self, client):
        response = client.post(
            "/api/v1/payments",
            headers=SYSTEM_HEADERS,
            json={
                "shift_ref": "s",
                "worker_id": WORKER,
                "business_id": BUSINESS,
                "gross_amount": 1_000,
                "agency_commission_rate": "0.1",
            },
        )
        assert response.status_code == 422
        assert response.json()["code"] == "invalid_amount"

    def test_get_unknown_payment(self, client):
        response = client.get(f"/api/v1/payments/{uuid4()}")
        assert response.status_code == 404
        assert response.json()["code"] == "not_found"

    def test_hold_needs_admin(self, client, payment):
        response = client.post(
            f"/api/v1/payments/{payment['payment_id']}/hold",
            headers=SYSTEM_HEADERS,
            json={"reason": "check"},
        )
        assert response.status_code == 403
        assert response.json()["code"] == "not_authorized"

    def test_hold_and_unhold(self, client, payment):
        url = f"/api/v1/payments/{payment['payment_id']}"
        held = client.post(f"{url}/hold", headers=ADMIN_HEADERS, json={"reason": "timesheet check"})
        assert held.status_code == 200
        assert held.json()["is_flagged"] is True

        unheld = client.post(f"{url}/unhold", headers=ADMIN_HEADERS)
        assert unheld.json()["is_flagged"] is False

    def test_early_release_conflicts(self, client, payment):
        response = client.post(f"/api/v1/payments/{payment['payment_id']}/release", headers=SYSTEM_HEADERS)
        assert response.status_code == 409
        assert response.json()["code"] == "invalid_transition"

    def test_admin_override_release(self, client, payment):
        response = client.post(
            f"/api/v1/payments/{payment['payment_id']}/release",
            headers=ADMIN_HEADERS,
            json={"override": True},
        )
        assert response.status_code == 200
        assert response.json()["status"] == "released"

    def test_release_due(self, client, payment, clock):
        clock.set(START + HOLD)
        response = client.post("/api/v1/payments/release-due", headers={"X-Actor-Id": "cron", "X-Actor-Role": "scheduler"})
        assert response.status_code == 200
        assert response.json()["summary"] == "1 released"

    def test_list_payments(self, client, payment):
        response = client.get("/api/v1/payments", params={"status": "in_escrow"})
        assert response.json()["total"] == 1
        assert client.get("/api/v1/payments", params={"status": "released"}).json()["total"] == 0

    def test_partial_refund(self, client, payment):
        response = client.post(
            f"/api/v1/payments/{payment['payment_id']}/refunds",
            headers=ADMIN_HEADERS,
            json={"refund_type": "partial", "reason": "short shift", "amount": 2_000},
        )
        assert response.status_code == 201, response.text
        assert response.json()["amount"] == 2_000
        assert client.get(f"/api/v1/payments/{payment['payment_id']}").json()["worker_amount"] == 6_800

    def test_refund_over_balance(self, client, payment):
        response = client.post(
            f"/api/v1/payments/{payment['payment_id']}/refunds",
            headers=ADMIN_HEADERS,
            json={"refund_type": "partial", "reason": "x", "amount": 50_000},
        )
        assert response.status_code == 422
        assert response.json()["code"] == "insufficient_balance"

    def test_list_refunds(self, client, payment):
        url = f"/api/v1/payments/{payment['payment_id']}"
        assert client.get(f"{url}/refunds").json() == []
        client.post(
            f"{url}/refunds",
            headers=ADMIN_HEADERS,
            json={"refund_type": "partial", "reason": "short shift", "amount": 1_500},
        )

        refunds = client.get(f"{url}/refunds").json()

        assert [(r["amount"], r["refund_type"], r["status"]) for r in refunds] == [(1_500, "partial", "completed")]

    def test_list_refunds_unknown_payment(self, client):
        response = client.get("/api/v1/payments/00000000-0000-0000-0000-000000000000/refunds")
        assert response.status_code == 404

    def test_commission_adjust(self, client):
        created = client.post(
            "/api/v1/payments",
            headers=SYSTEM_HEADERS,
            json={
                "shift_ref": "shift-a",
                "worker_id": WORKER,
                "business_id": BUSINESS,
                "gross_amount": 10_000,
                "agency_id": AGENCY,
            },
        ).json()

        response = client.post(
            f"/api/v1/payments/{created['payment_id']}/commission",
            headers=ADMIN_HEADERS,
            json={"agency_commission_rate": "0.05", "reason": "renegotiated"},
        )
        assert response.status_code == 200, response.text
        assert response.json()["agency_commission"] == 500
        assert response.json()["worker_amount"] == 8_000

    def test_replay(self, client, payment):
        response = client.get(f"/api/v1/payments/{payment['payment_id']}/replay")
        data = response.json()
        assert data["payment"]["payment_id"] == payment["payment_id"]
        assert data["payment"]["worker_amount"] == payment["worker_amount"]
        assert [e["entry_type"] for e in data["entries"]] == ["open"]
        assert data["discrepancies"] == {}


class TestDisputeEndpoints:
    @pytest.fixture
    def dispute(self, client, payment) -> dict:
        response = client.post(
            "/api/v1/disputes",
            headers=SYSTEM_HEADERS,
            json={"payment_id": payment["payment_id"], "reason": "worker left early"},
        )
        assert response.status_code == 201, response.text
        return response.json()

    def test_open(self, client, dispute, payment):
        assert dispute["status"] == "open"
        assert dispute["priority"] == "high"
        assert client.get(f"/api/v1/payments/{payment['payment_id']}").json()["status"] == "disputed"
        assert client.get(f"/api/v1/disputes/payment/{payment['payment_id']}").json()["dispute_id"] == dispute[
            "dispute_id"
        ]

    def test_direct_refund_while_disputed(self, client, dispute, payment):
        response = client.post(
            f"/api/v1/payments/{payment['payment_id']}/refunds",
            headers=ADMIN_HEADERS,
            json={"refund_type": "full", "reason": "goodwill"},
        )
        assert response.status_code == 409
        assert response.json()["code"] == "invalid_transition"

    def test_second_dispute_conflicts(self, client, dispute, payment):
        response = client.post(
            "/api/v1/disputes",
            headers=SYSTEM_HEADERS,
            json={"payment_id": payment["payment_id"], "reason": "again"},
        )
        assert response.status_code == 409

    def test_sla(self, client, dispute, clock):
        clock.advance(hours=49)
        response = client.get(f"/api/v1/disputes/{dispute['dispute_id']}/sla")
        assert response.json()["status"] == "breached"
        assert response.json()["remaining_seconds"] == 0

    def test_advance_and_escalate(self, client, dispute):
        url = f"/api/v1/disputes/{dispute['dispute_id']}"
        assert client.post(f"{url}/advance", headers=ADMIN_HEADERS, json={"status": "under_review"}).json()[
            "status"
        ] == "under_review"

        escalated = client.post(f"{url}/escalate", headers=ADMIN_HEADERS, json={"reason": "chargeback threat"})
        assert escalated.json()["priority"] == "urgent"
        assert escalated.json()["sla_deadline"] == dispute["sla_deadline"]

        again = client.post(f"{url}/escalate", headers=ADMIN_HEADERS)
        assert again.status_code == 409

    def test_resolve_rejected(self, client, dispute, payment):
        response = client.post(
            f"/api/v1/disputes/{dispute['dispute_id']}/resolve",
            headers=ADMIN_HEADERS,
            json={"outcome": "rejected", "notes": "timesheet confirmed"},
        )
        assert response.status_code == 200
        assert response.json()["outcome"] == "rejected"
        assert client.get(f"/api/v1/payments/{payment['payment_id']}").json()["status"] == "released"

        twice = client.post(
            f"/api/v1/disputes/{dispute['dispute_id']}/resolve",
            headers=ADMIN_HEADERS,
            json={"outcome": "upheld"},
        )
        assert twice.status_code == 409
        assert twice.json()["code"] == "already_resolved"

    def test_split_without_amount(self, client, dispute):
        response = client.post(
            f"/api/v1/disputes/{dispute['dispute_id']}/resolve",
            headers=ADMIN_HEADERS,
            json={"outcome": "split"},
        )
        assert response.status_code == 422
        assert response.json()["code"] == "invalid_amount"


class TestPayoutEndpoints:
    @pytest.fixture
    def released(self, client, payment, clock) -> dict:
        clock.set(START + HOLD)
        client.post("/api/v1/payments/release-due", headers=SYSTEM_HEADERS)
        return payment

    def test_list_and_dispatch(self, client, released, rail):
        payouts = client.get("/api/v1/payouts", params={"status": "pending"}).json()
        assert payouts["total"] == 1
        payout = payouts["items"][0]
        assert payout["amount"] == 8_500

        response = client.post(f"/api/v1/payouts/{payout['payout_id']}/dispatch", headers=SYSTEM_HEADERS)

        assert response.status_code == 200
        assert response.json()["status"] == "completed"
        assert rail.call_count == 1
        assert client.get(f"/api/v1/payments/{released['payment_id']}").json()["status"] == "paid_out"

        again = client.post(f"/api/v1/payouts/{payout['payout_id']}/dispatch", headers=SYSTEM_HEADERS)
        assert again.status_code == 409
        assert again.json()["code"] == "already_completed"

    def test_dispatch_to_recipient(self, client, released):
        response = client.post(
            "/api/v1/payouts/dispatch",
            headers=SYSTEM_HEADERS,
            json={"recipient_type": "worker", "recipient_id": WORKER, "amount": 8_500},
        )
        assert response.json()["status"] == "completed"

    def test_retry_after_transient_failure(self, client, released, rail, clock):
        rail.script("transient")
        payout_id = client.get("/api/v1/payouts").json()["items"][0]["payout_id"]

        failed = client.post(f"/api/v1/payouts/{payout_id}/dispatch", headers=SYSTEM_HEADERS).json()
        assert failed["status"] == "failed"
        assert failed["error_kind"] == "transient"
        assert failed["next_retry_at"] is not None

        forbidden = client.post(f"/api/v1/payouts/{payout_id}/retry", headers=SYSTEM_HEADERS)
        assert forbidden.status_code == 403

        retried = client.post(f"/api/v1/payouts/{payout_id}/retry", headers=ADMIN_HEADERS)
        assert retried.json()["status"] == "completed"
        assert retried.json()["attempt_count"] == 2

    def test_retries_exhausted_conflicts(self, client, released, rail):
        rail.default = "transient"
        payout_id = client.get("/api/v1/payouts").json()["items"][0]["payout_id"]
        client.post(f"/api/v1/payouts/{payout_id}/dispatch", headers=SYSTEM_HEADERS)
        client.post(f"/api/v1/payouts/{payout_id}/retry", headers=ADMIN_HEADERS)
        client.post(f"/api/v1/payouts/{payout_id}/retry", headers=ADMIN_HEADERS)

        response = client.post(f"/api/v1/payouts/{payout_id}/retry", headers=ADMIN_HEADERS)

        assert response.status_code == 409
        assert response.json()["code"] == "retries_exhausted"
        bulk = client.post("/api/v1/payouts/retry-failed", headers=ADMIN_HEADERS).json()
        assert bulk["failed"] == 1


class TestReportEndpoints:
    def test_finance_summary(self, client, payment):
        data = client.get("/api/v1/reports/finance-summary").json()
        assert data["payment_count"] == 1
        assert data["total_gross"] == 10_000
        assert data["status_counts"]["in_escrow"] == 1

    def test_due_for_release(self, client, payment, clock):
        assert client.get("/api/v1/reports/due-for-release").json()["total"] == 0
        clock.set(START + HOLD + timedelta(minutes=1))
        assert client.get("/api/v1/reports/due-for-release").json()["total"] == 1

    def test_alerts_empty(self, client):
        assert client.get("/api/v1/reports/alerts").json() == {
            "sla_breaches": [],
            "failed_payouts": [],
            "refund_shortfalls": [],
        }

    def test_reconciliation_clean(self, client, payment):
        assert client.get("/api/v1/reports/reconciliation").json() == {"drifted": {}}
