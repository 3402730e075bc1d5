"""Health, readiness and liveness endpoints."""

import logging
from datetime import datetime

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from escrow_engine.api.dependencies import DbSession
from escrow_engine.models import EscrowPayment
from escrow_engine.settlement.metrics import generate_health_summary

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    """Database reachability plus the operator alerts of the escrow book."""

    status: str
    timestamp: datetime
    database: str
    alerts: list[str] = []


@router.get("/health", response_model=HealthResponse)
def health_check(request: Request, db: DbSession) -> HealthResponse:
    """healthy, attention (operator alerts pending) or degraded (database down)."""
    clock = request.app.state.clock
    config = request.app.state.engine_config
    try:
        summary = generate_health_summary(db, clock, config.payouts, config.disputes)
    except SQLAlchemyError as e:
        logger.warning("Health check could not read the escrow tables: %s", e)
        return HealthResponse(status="degraded", timestamp=clock.now(), database="unhealthy")

    return HealthResponse(
        status="attention" if summary.alerts else "healthy",
        timestamp=clock.now(),
        database="healthy",
        alerts=summary.alerts,
    )


@router.get("/ready")
def readiness_check(db: DbSession) -> JSONResponse:
    """Ready once the escrow schema answers queries."""
    try:
        db.execute(select(func.count()).select_from(EscrowPayment)).scalar()
    except SQLAlchemyError:
        logger.warning("Escrow schema not ready")
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content={"status": "not_ready"})
    return JSONResponse(content={"status": "ready"})


@router.get("/live", status_code=status.HTTP_200_OK)
def liveness_check() -> dict[str, str]:
    return {"status": "alive"}
