"""Pytest fixtures for escrow engine tests."""

from __future__ import annotations

from collections.abc import Generator
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from escrow_engine.database import enable_sqlite_savepoints, get_engine, make_session_factory
from escrow_engine.models import Base
from escrow_engine.settlement.clock import FixedClock
from escrow_engine.settlement.config import EngineConfig, create_default_config
from escrow_engine.settlement.coordinator import SettlementCoordinator
from escrow_engine.settlement.events import EventCollector, EventEmitter
from escrow_engine.settlement.providers import InMemoryRecipientDirectory, StubPayoutRail
from escrow_engine.settlement.services import PaymentLockRegistry
from escrow_engine.settlement.types import Actor, PaymentState, ShiftPaymentInfo

# Monday morning; every test starts here
START = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)
HOLD = timedelta(days=7)

WORKER = "worker-1"
BUSINESS = "business-1"
AGENCY = "agency-1"

ADMIN = Actor.admin("ops-7")
SYSTEM = Actor.system()


@pytest.fixture
def engine():
    """In-memory SQLite shared by every session of one test."""
    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    enable_sqlite_savepoints(engine)
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine) -> sessionmaker[Session]:
    return make_session_factory(engine)


@pytest.fixture
def db(session_factory) -> Generator[Session, None, None]:
    """Database session for tests."""
    session = session_factory()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(START)


@pytest.fixture
def config() -> EngineConfig:
    return create_default_config()


@pytest.fixture
def rail() -> StubPayoutRail:
    return StubPayoutRail()


@pytest.fixture
def directory() -> InMemoryRecipientDirectory:
    """Directory with payout methods for the usual worker and agency."""
    directory = InMemoryRecipientDirectory()
    directory.register("worker", WORKER)
    directory.register("worker", "worker-2")
    directory.register("agency", AGENCY)
    return directory


@pytest.fixture
def events() -> EventCollector:
    return EventCollector()


@pytest.fixture
def emitter(events) -> EventEmitter:
    emitter = EventEmitter()
    emitter.on_all(events)
    return emitter


@pytest.fixture
def coordinator(db, config, rail, directory, clock, emitter) -> SettlementCoordinator:
    return SettlementCoordinator(
        db,
        config,
        rail=rail,
        directory=directory,
        clock=clock,
        emitter=emitter,
        lock_registry=PaymentLockRegistry(),
    )


def shift(shift_ref: str = "shift-1", gross_amount: int = 10_000, **overrides: Any) -> ShiftPaymentInfo:
    """Completed shift for the usual worker and business."""
    values: dict[str, Any] = {
        "shift_ref": shift_ref,
        "worker_id": WORKER,
        "business_id": BUSINESS,
        "gross_amount": gross_amount,
    }
    values.update(overrides)
    return ShiftPaymentInfo(**values)


@pytest.fixture
def open_payment(coordinator):
    """Factory that opens escrow and returns the payment state."""

    def _open(shift_ref: str = "shift-1", gross_amount: int = 10_000, **overrides: Any) -> PaymentState:
        return coordinator.open_escrow(shift(shift_ref, gross_amount, **overrides))

    return _open


@pytest.fixture
def released_payment(coordinator, open_payment, clock):
    """Factory for a payment whose hold window passed and that was released."""

    def _released(shift_ref: str = "shift-1", gross_amount: int = 10_000, **overrides: Any) -> PaymentState:
        state = open_payment(shift_ref, gross_amount, **overrides)
        if clock.now() < state.scheduled_release_at:
            clock.set(state.scheduled_release_at)
        return coordinator.release(state.payment_id)

    return _released


@pytest.fixture
def file_factory(tmp_path) -> Generator[sessionmaker[Session], None, None]:
    """Session factory over a file database so every unit gets its own connection."""
    engine = get_engine(f"sqlite:///{tmp_path / 'escrow.db'}")
    Base.metadata.create_all(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def locks() -> PaymentLockRegistry:
    return PaymentLockRegistry()


@pytest.fixture
def run_command(file_factory, config, rail, directory, clock, emitter, locks):
    """Run one coordinator command in its own committed session."""

    def run(work):
        with file_factory() as session:
            coordinator = SettlementCoordinator(
                session,
                config,
                rail=rail,
                directory=directory,
                clock=clock,
                emitter=emitter,
                lock_registry=locks,
            )
            result = work(coordinator)
            session.commit()
            return result

    return run
