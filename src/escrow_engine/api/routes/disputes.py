"""Dispute API endpoints."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Path, status

from escrow_engine.api.dependencies import Coordinator, CurrentActor, DbSession
from escrow_engine.api.schemas import (
    DisputeAdvanceRequest,
    DisputeCreate,
    DisputeResponse,
    ErrorResponse,
    EscalateRequest,
    ResolveRequest,
    SlaResponse,
)

router = APIRouter(prefix="/disputes", tags=["disputes"])


@router.post(
    "",
    response_model=DisputeResponse,
    status_code=status.HTTP_201_CREATED,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
def open_dispute(
    db: DbSession,
    coordinator: Coordinator,
    actor: CurrentActor,
    payload: DisputeCreate,
) -> DisputeResponse:
    """Open a dispute; the payment leaves the auto-release path."""
    dispute = coordinator.open_dispute(
        payload.payment_id,
        payload.reason,
        actor,
        worker_id=payload.worker_id,
        business_id=payload.business_id,
        priority=payload.priority,
        idempotency_key=payload.idempotency_key,
    )
    db.commit()
    return DisputeResponse.model_validate(dispute)


@router.get(
    "/payment/{payment_id}",
    response_model=DisputeResponse,
    responses={404: {"model": ErrorResponse}},
)
def get_dispute_for_payment(
    coordinator: Coordinator,
    payment_id: Annotated[UUID, Path()],
) -> DisputeResponse:
    """Active dispute for a payment, or its most recent one."""
    return DisputeResponse.model_validate(coordinator.get_dispute(payment_id))


@router.get(
    "/{dispute_id}",
    response_model=DisputeResponse,
    responses={404: {"model": ErrorResponse}},
)
def get_dispute(
    coordinator: Coordinator,
    dispute_id: Annotated[UUID, Path()],
) -> DisputeResponse:
    return DisputeResponse.model_validate(coordinator.get_dispute_by_id(dispute_id))


@router.post(
    "/{dispute_id}/advance",
    response_model=DisputeResponse,
    responses={403: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
def advance_dispute(
    db: DbSession,
    coordinator: Coordinator,
    actor: CurrentActor,
    dispute_id: Annotated[UUID, Path()],
    payload: DisputeAdvanceRequest,
) -> DisputeResponse:
    dispute = coordinator.advance_dispute(dispute_id, payload.status, actor, payload.notes)
    db.commit()
    return DisputeResponse.model_validate(dispute)


@router.post(
    "/{dispute_id}/escalate",
    response_model=DisputeResponse,
    responses={403: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
def escalate_dispute(
    db: DbSession,
    coordinator: Coordinator,
    actor: CurrentActor,
    dispute_id: Annotated[UUID, Path()],
    payload: EscalateRequest | None = None,
) -> DisputeResponse:
    """Escalate a dispute. Raises priority; the SLA deadline stays where it was."""
    dispute = coordinator.escalate(dispute_id, actor, payload.reason if payload else None)
    db.commit()
    return DisputeResponse.model_validate(dispute)


@router.post(
    "/{dispute_id}/resolve",
    response_model=DisputeResponse,
    responses={403: {"model": ErrorResponse}, 409: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
)
def resolve_dispute(
    db: DbSession,
    coordinator: Coordinator,
    actor: CurrentActor,
    dispute_id: Annotated[UUID, Path()],
    payload: ResolveRequest,
) -> DisputeResponse:
    """Resolve a dispute and move the money: refund, release, or both."""
    dispute = coordinator.resolve(
        dispute_id,
        payload.outcome,
        actor,
        notes=payload.notes,
        refund_amount=payload.refund_amount,
    )
    db.commit()
    return DisputeResponse.model_validate(dispute)


@router.get(
    "/{dispute_id}/sla",
    response_model=SlaResponse,
    responses={404: {"model": ErrorResponse}},
)
def dispute_sla(
    db: DbSession,
    coordinator: Coordinator,
    dispute_id: Annotated[UUID, Path()],
) -> SlaResponse:
    report = coordinator.sla_status(dispute_id)
    # a breach observed here is recorded
    db.commit()
    return SlaResponse(
        dispute_id=report.dispute_id,
        status=report.status.value,
        deadline=report.deadline,
        remaining_seconds=report.remaining_seconds,
        breached_at=report.breached_at,
    )
