"""Payout API endpoints."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Path, Query

from escrow_engine.api.dependencies import Coordinator, CurrentActor, DbSession
from escrow_engine.api.schemas import (
    BatchResponse,
    DispatchToRecipientRequest,
    ErrorResponse,
    PayoutListResponse,
    PayoutResponse,
    PayoutResultResponse,
)
from escrow_engine.settlement.types import PayoutResult

router = APIRouter(prefix="/payouts", tags=["payouts"])


def to_result(result: PayoutResult) -> PayoutResultResponse:
    return PayoutResultResponse.model_validate(result.to_dict())


@router.get("", response_model=PayoutListResponse)
def list_payouts(
    coordinator: Coordinator,
    status_filter: Annotated[
        str | None, Query(alias="status", pattern="^(pending|processing|completed|failed)$")
    ] = None,
    recipient_type: Annotated[str | None, Query(pattern="^(worker|agency)$")] = None,
    recipient_id: str | None = None,
) -> PayoutListResponse:
    payouts = coordinator.list_payouts(
        status=status_filter,
        recipient_type=recipient_type,
        recipient_id=recipient_id,
    )
    return PayoutListResponse(
        items=[PayoutResponse.model_validate(p) for p in payouts],
        total=len(payouts),
    )


@router.post(
    "/dispatch",
    response_model=PayoutResultResponse,
    responses={404: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
)
def dispatch_to_recipient(
    db: DbSession,
    coordinator: Coordinator,
    actor: CurrentActor,
    payload: DispatchToRecipientRequest,
) -> PayoutResultResponse:
    """Dispatch the aggregated pending payout for one recipient."""
    result = coordinator.dispatch_payout_to(
        payload.recipient_type,
        payload.recipient_id,
        payload.amount,
        actor,
    )
    db.commit()
    return to_result(result)


@router.post(
    "/retry-failed",
    response_model=BatchResponse,
    responses={403: {"model": ErrorResponse}},
)
def retry_failed(
    db: DbSession,
    coordinator: Coordinator,
    actor: CurrentActor,
) -> BatchResponse:
    """Retry every failed payout. Exhausted payouts come back as failures."""
    batch = coordinator.retry_all_failed_payouts(actor)
    db.commit()
    return BatchResponse(**batch.to_dict())


@router.get(
    "/{payout_id}",
    response_model=PayoutResponse,
    responses={404: {"model": ErrorResponse}},
)
def get_payout(
    coordinator: Coordinator,
    payout_id: Annotated[UUID, Path()],
) -> PayoutResponse:
    return PayoutResponse.model_validate(coordinator.get_payout(payout_id))


@router.post(
    "/{payout_id}/dispatch",
    response_model=PayoutResultResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
def dispatch_payout(
    db: DbSession,
    coordinator: Coordinator,
    actor: CurrentActor,
    payout_id: Annotated[UUID, Path()],
) -> PayoutResultResponse:
    result = coordinator.dispatch_payout(payout_id, actor)
    db.commit()
    return to_result(result)


@router.post(
    "/{payout_id}/retry",
    response_model=PayoutResultResponse,
    responses={403: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
def retry_payout(
    db: DbSession,
    coordinator: Coordinator,
    actor: CurrentActor,
    payout_id: Annotated[UUID, Path()],
) -> PayoutResultResponse:
    """Retry a failed payout. Rejected once the attempt ceiling is reached."""
    result = coordinator.retry_payout(payout_id, actor)
    db.commit()
    return to_result(result)
