"""Payment API endpoints."""

from datetime import datetime
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Path, Query, status
from pydantic import AwareDatetime

from escrow_engine.api.dependencies import Coordinator, CurrentActor, DbSession
from escrow_engine.api.schemas import (
    BatchResponse,
    CommissionAdjustRequest,
    ErrorResponse,
    HoldRequest,
    LedgerEntryResponse,
    PaymentCreate,
    PaymentListResponse,
    PaymentResponse,
    RefundRequest,
    RefundResponse,
    ReleaseRequest,
    ReplayResponse,
)
from escrow_engine.settlement.types import PaymentState, ShiftPaymentInfo

router = APIRouter(prefix="/payments", tags=["payments"])


def to_response(state: PaymentState) -> PaymentResponse:
    return PaymentResponse.model_validate(state.to_dict())


# ============================================================================
# Escrow lifecycle
# ============================================================================


@router.post(
    "",
    response_model=PaymentResponse,
    status_code=status.HTTP_201_CREATED,
    responses={409: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
)
def open_escrow(
    db: DbSession,
    coordinator: Coordinator,
    actor: CurrentActor,
    payload: PaymentCreate,
) -> PaymentResponse:
    """Open escrow for a completed shift. Reposting the same shift returns the existing payment."""
    state = coordinator.open_escrow(ShiftPaymentInfo(**payload.model_dump()), actor)
    db.commit()
    return to_response(state)


@router.get("", response_model=PaymentListResponse)
def list_payments(
    coordinator: Coordinator,
    status_filter: Annotated[
        str | None, Query(alias="status", pattern="^(in_escrow|released|paid_out|refunded|disputed)$")
    ] = None,
    start: AwareDatetime | None = None,
    end: AwareDatetime | None = None,
    recipient_type: Annotated[str | None, Query(pattern="^(worker|agency)$")] = None,
    recipient_id: str | None = None,
    limit: Annotated[int, Query(ge=1, le=500)] = 100,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> PaymentListResponse:
    """List payments filtered by status, date range and recipient."""
    states = coordinator.list_payments(
        status=status_filter,
        start=start,
        end=end,
        recipient_type=recipient_type,
        recipient_id=recipient_id,
        limit=limit,
        offset=offset,
    )
    return PaymentListResponse(
        items=[to_response(s) for s in states],
        total=len(states),
        limit=limit,
        offset=offset,
    )


@router.post(
    "/release-due",
    response_model=BatchResponse,
)
def release_due(
    db: DbSession,
    coordinator: Coordinator,
    actor: CurrentActor,
    as_of: AwareDatetime | None = None,
) -> BatchResponse:
    """Release every unflagged payment past its hold window."""
    batch = coordinator.release_all_due(as_of, actor)
    db.commit()
    return BatchResponse(**batch.to_dict())


@router.get(
    "/{payment_id}",
    response_model=PaymentResponse,
    responses={404: {"model": ErrorResponse}},
)
def get_payment(
    coordinator: Coordinator,
    payment_id: Annotated[UUID, Path()],
) -> PaymentResponse:
    return to_response(coordinator.get_payment(payment_id))


@router.post(
    "/{payment_id}/hold",
    response_model=PaymentResponse,
    responses={403: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
def hold_payment(
    db: DbSession,
    coordinator: Coordinator,
    actor: CurrentActor,
    payment_id: Annotated[UUID, Path()],
    payload: HoldRequest,
) -> PaymentResponse:
    """Flag a payment so auto-release skips it."""
    state = coordinator.hold(payment_id, payload.reason, actor, payload.idempotency_key)
    db.commit()
    return to_response(state)


@router.post(
    "/{payment_id}/unhold",
    response_model=PaymentResponse,
    responses={403: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
def unhold_payment(
    db: DbSession,
    coordinator: Coordinator,
    actor: CurrentActor,
    payment_id: Annotated[UUID, Path()],
) -> PaymentResponse:
    state = coordinator.unhold(payment_id, actor)
    db.commit()
    return to_response(state)


@router.post(
    "/{payment_id}/release",
    response_model=PaymentResponse,
    responses={403: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
def release_payment(
    db: DbSession,
    coordinator: Coordinator,
    actor: CurrentActor,
    payment_id: Annotated[UUID, Path()],
    payload: ReleaseRequest | None = None,
) -> PaymentResponse:
    """Release escrow. Early release needs ``override`` and an admin actor."""
    payload = payload or ReleaseRequest()
    state = coordinator.release(
        payment_id,
        actor,
        override=payload.override,
        idempotency_key=payload.idempotency_key,
    )
    db.commit()
    return to_response(state)


@router.post(
    "/{payment_id}/commission",
    response_model=PaymentResponse,
    responses={403: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
def adjust_commission(
    db: DbSession,
    coordinator: Coordinator,
    actor: CurrentActor,
    payment_id: Annotated[UUID, Path()],
    payload: CommissionAdjustRequest,
) -> PaymentResponse:
    state = coordinator.adjust_commission(payment_id, payload.agency_commission_rate, actor, payload.reason)
    db.commit()
    return to_response(state)


# ============================================================================
# Refunds
# ============================================================================


@router.post(
    "/{payment_id}/refunds",
    response_model=RefundResponse,
    status_code=status.HTTP_201_CREATED,
    responses={403: {"model": ErrorResponse}, 409: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
)
def refund_payment(
    db: DbSession,
    coordinator: Coordinator,
    actor: CurrentActor,
    payment_id: Annotated[UUID, Path()],
    payload: RefundRequest,
) -> RefundResponse:
    """Refund a payment in full or in part."""
    refund = coordinator.refund(
        payment_id,
        refund_type=payload.refund_type,
        trigger=payload.trigger,
        reason=payload.reason,
        actor=actor,
        amount=payload.amount,
        idempotency_key=payload.idempotency_key,
        condition=payload.condition,
        event_ref=payload.event_ref,
    )
    db.commit()
    return RefundResponse.model_validate(refund)


@router.get(
    "/{payment_id}/refunds",
    response_model=list[RefundResponse],
    responses={404: {"model": ErrorResponse}},
)
def list_refunds(
    coordinator: Coordinator,
    payment_id: Annotated[UUID, Path()],
) -> list[RefundResponse]:
    return [RefundResponse.model_validate(r) for r in coordinator.list_refunds(payment_id)]


# ============================================================================
# Audit
# ============================================================================


@router.get(
    "/{payment_id}/replay",
    response_model=ReplayResponse,
    responses={404: {"model": ErrorResponse}},
)
def replay_payment(
    coordinator: Coordinator,
    payment_id: Annotated[UUID, Path()],
) -> ReplayResponse:
    """Rebuild the payment from its ledger and report any drift from the stored row."""
    state = coordinator.replay(payment_id)
    drift = coordinator.reconcile(payment_id)
    return ReplayResponse(
        payment=to_response(state),
        entries=[LedgerEntryResponse.model_validate(e) for e in coordinator.entries(payment_id)],
        discrepancies={name: [plain_value(row), plain_value(replayed)] for name, (row, replayed) in drift.items()},
    )


def plain_value(value: object) -> object:
    if isinstance(value, datetime):
        return value.isoformat()
    if hasattr(value, "value"):
        return value.value
    return value
