"""API routes."""

from escrow_engine.api.routes.disputes import router as disputes_router
from escrow_engine.api.routes.health import router as health_router
from escrow_engine.api.routes.payments import router as payments_router
from escrow_engine.api.routes.payouts import router as payouts_router
from escrow_engine.api.routes.reports import router as reports_router

__all__ = ["payments_router", "disputes_router", "payouts_router", "reports_router", "health_router"]
