"""FastAPI dependencies for dependency injection."""

from collections.abc import Iterator
from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.orm import Session

from escrow_engine.settlement.coordinator import SettlementCoordinator
from escrow_engine.settlement.types import Actor, ActorType


def get_db_session(request: Request) -> Iterator[Session]:
    """Get database session dependency. Routes commit explicitly."""
    session = request.app.state.session_factory()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def get_actor(
    x_actor_id: Annotated[str | None, Header()] = None,
    x_actor_role: Annotated[str | None, Header()] = None,
) -> Actor:
    """Extract the acting user from headers."""
    if not x_actor_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Actor-Id header is required",
        )
    try:
        actor_type = ActorType(x_actor_role or ActorType.SYSTEM.value)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid X-Actor-Role (expected system, admin or scheduler)",
        )
    return Actor(actor_id=x_actor_id, actor_type=actor_type)


DbSession = Annotated[Session, Depends(get_db_session)]
CurrentActor = Annotated[Actor, Depends(get_actor)]


def get_coordinator(request: Request, db: DbSession) -> SettlementCoordinator:
    state = request.app.state
    return SettlementCoordinator(
        db,
        state.engine_config,
        rail=state.rail,
        directory=state.directory,
        clock=state.clock,
        emitter=state.emitter,
    )


# Type aliases for cleaner dependency injection
Coordinator = Annotated[SettlementCoordinator, Depends(get_coordinator)]
