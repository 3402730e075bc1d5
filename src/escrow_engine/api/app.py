"""FastAPI application factory."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session, sessionmaker

from escrow_engine.api.routes import (
    disputes_router,
    health_router,
    payments_router,
    payouts_router,
    reports_router,
)
from escrow_engine.config import get_settings
from escrow_engine.database import init_db
from escrow_engine.errors import EscrowError
from escrow_engine.logging_config import configure_logging
from escrow_engine.settlement.clock import Clock, SystemClock
from escrow_engine.settlement.config import EngineConfig
from escrow_engine.settlement.events import EventEmitter
from escrow_engine.settlement.providers import InMemoryRecipientDirectory, StubPayoutRail
from escrow_engine.settlement.providers.base import PayoutRail, RecipientDirectory

logger = logging.getLogger(__name__)

# EscrowError.kind -> HTTP status
ERROR_STATUS = {
    "not_found": status.HTTP_404_NOT_FOUND,
    "not_authorized": status.HTTP_403_FORBIDDEN,
    "invalid_transition": status.HTTP_409_CONFLICT,
    "already_resolved": status.HTTP_409_CONFLICT,
    "no_active_dispute": status.HTTP_409_CONFLICT,
    "already_completed": status.HTTP_409_CONFLICT,
    "retries_exhausted": status.HTTP_409_CONFLICT,
    "invalid_amount": 422,
    "insufficient_balance": 422,
    "refund_not_permitted": 422,
    "below_minimum_threshold": 422,
    "recipient_unconfigured": 422,
    "ledger_unavailable": status.HTTP_503_SERVICE_UNAVAILABLE,
}


def create_app(
    session_factory: sessionmaker[Session] | None = None,
    *,
    config: EngineConfig | None = None,
    rail: PayoutRail | None = None,
    directory: RecipientDirectory | None = None,
    clock: Clock | None = None,
    emitter: EventEmitter | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Without a session factory the database from settings is initialized at
    startup. The stub rail and in-memory directory are development defaults.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan handler."""
        if getattr(app.state, "session_factory", None) is None:
            _, app.state.session_factory = init_db()
        yield

    settings = get_settings()
    configure_logging(settings.log_level)

    app = FastAPI(
        title="Escrow Engine API",
        description="Marketplace escrow, dispute and payout settlement",
        version=settings.engine_version,
        lifespan=lifespan,
    )
    app.state.session_factory = session_factory
    app.state.engine_config = config or settings.engine_config()
    app.state.rail = rail or StubPayoutRail()
    app.state.directory = directory or InMemoryRecipientDirectory()
    app.state.clock = clock or SystemClock()
    app.state.emitter = emitter or EventEmitter()

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Exception handlers
    @app.exception_handler(EscrowError)
    async def escrow_error_handler(request: Request, exc: EscrowError) -> JSONResponse:
        """Map domain errors to HTTP status by kind."""
        code = ERROR_STATUS.get(exc.kind, status.HTTP_400_BAD_REQUEST)
        if code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.reason)
        return JSONResponse(status_code=code, content={"detail": exc.reason, "code": exc.kind})

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle unexpected exceptions."""
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "detail": "An unexpected error occurred",
                "code": "INTERNAL_ERROR",
            },
        )

    # Include routers
    app.include_router(health_router)
    app.include_router(payments_router, prefix="/api/v1")
    app.include_router(disputes_router, prefix="/api/v1")
    app.include_router(payouts_router, prefix="/api/v1")
    app.include_router(reports_router, prefix="/api/v1")

    return app


# Default app instance for uvicorn
app = create_app()
