"""Database connection and session management."""

from __future__ import annotations

from contextlib import contextmanager
from typing import TYPE_CHECKING, Iterator

from sqlalchemy import create_engine, event, text
from sqlalchemy.orm import Session, sessionmaker

from escrow_engine.config import get_settings
from escrow_engine.models import Base

if TYPE_CHECKING:
    from sqlalchemy.engine import Engine


def get_engine(database_url: str | None = None) -> Engine:
    """Create database engine."""
    url = database_url or get_settings().database_url
    if url.startswith("sqlite"):
        engine = create_engine(
            url,
            echo=False,
            connect_args={"check_same_thread": False, "timeout": 30},
        )
        enable_sqlite_savepoints(engine)
        return engine
    return create_engine(
        url,
        echo=False,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
    )


def enable_sqlite_savepoints(engine: Engine) -> None:
    """Let SQLAlchemy own BEGIN on pysqlite so SAVEPOINT nests correctly.

    Transactions start with BEGIN IMMEDIATE: the write lock is taken up
    front, so concurrent writers queue on the busy timeout instead of
    failing when a deferred reader tries to upgrade.
    """

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


# Global engine and session factory
_engine: Engine | None = None
_session_factory: sessionmaker[Session] | None = None


def init_db(database_url: str | None = None) -> tuple[Engine, sessionmaker[Session]]:
    """Initialize database engine, session factory and schema."""
    global _engine, _session_factory
    if _engine is None:
        _engine = get_engine(database_url)
        Base.metadata.create_all(_engine)
        _session_factory = make_session_factory(_engine)
    assert _session_factory is not None
    return _engine, _session_factory


def make_session_factory(engine: Engine) -> sessionmaker[Session]:
    """Session factory bound to an engine."""
    return sessionmaker(engine, expire_on_commit=False, autoflush=False)


@contextmanager
def get_session() -> Iterator[Session]:
    """Get a database session that commits on success."""
    _, factory = init_db()
    with factory() as session:
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise


def acquire_payment_xact_lock(session: Session, payment_key: str) -> None:
    """Take a transaction-scoped advisory lock for a payment (PostgreSQL only).

    Released automatically at commit/rollback. SQLite needs none: its
    BEGIN IMMEDIATE transactions are already serialized.
    """
    bind = session.get_bind()
    if bind.dialect.name != "postgresql":
        return
    session.execute(
        text("SELECT pg_advisory_xact_lock(hashtext(:key))"),
        {"key": payment_key},
    )
