"""Admin reporting endpoints."""

from fastapi import APIRouter
from pydantic import AwareDatetime

from escrow_engine.api.dependencies import Coordinator
from escrow_engine.api.routes.payments import plain_value, to_response
from escrow_engine.api.schemas import (
    AlertsResponse,
    FinanceSummaryResponse,
    PaymentListResponse,
    ReconciliationResponse,
)

router = APIRouter(prefix="/reports", tags=["reports"])


@router.get("/finance-summary", response_model=FinanceSummaryResponse)
def finance_summary(
    coordinator: Coordinator,
    start: AwareDatetime | None = None,
    end: AwareDatetime | None = None,
) -> FinanceSummaryResponse:
    """Commissions, platform revenue and refunds for payments escrowed in [start, end)."""
    return FinanceSummaryResponse.model_validate(coordinator.finance_summary(start, end).to_dict())


@router.get("/due-for-release", response_model=PaymentListResponse)
def due_for_release(
    coordinator: Coordinator,
    as_of: AwareDatetime | None = None,
) -> PaymentListResponse:
    states = coordinator.list_due_for_release(as_of)
    return PaymentListResponse(
        items=[to_response(s) for s in states],
        total=len(states),
        limit=len(states),
        offset=0,
    )


@router.get("/alerts", response_model=AlertsResponse)
def alerts(coordinator: Coordinator) -> AlertsResponse:
    """Breached SLAs, payouts needing manual action and refund shortfalls."""
    return AlertsResponse(**coordinator.alerts())


@router.get("/reconciliation", response_model=ReconciliationResponse)
def reconciliation(coordinator: Coordinator) -> ReconciliationResponse:
    """Payments whose stored row disagrees with a replay of their ledger."""
    report = coordinator.reconcile_all()
    return ReconciliationResponse(
        drifted={
            str(payment_id): {name: [plain_value(row), plain_value(replayed)] for name, (row, replayed) in drift.items()}
            for payment_id, drift in report.items()
        }
    )
