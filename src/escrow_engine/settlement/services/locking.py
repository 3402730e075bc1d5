"""Per-payment mutual exclusion.

On PostgreSQL, three layers, outermost first:
1. In-process lock per payment id (serializes threads of one worker).
2. PostgreSQL transaction advisory lock (serializes workers across processes).
3. SELECT ... FOR UPDATE on the payment row, taken by the ledger.

On SQLite every transaction starts with BEGIN IMMEDIATE, which already
serializes all writers across threads and processes, so the lock is just
the database write lock, and no thread waits on the database while
holding a payment lock.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy.orm import Session

from escrow_engine.database import acquire_payment_xact_lock

logger = logging.getLogger(__name__)


class PaymentLockRegistry:
    """Hands out one reentrant lock per key."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}

    def lock_for(self, key: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    def __len__(self) -> int:
        return len(self._locks)


_registry = PaymentLockRegistry()


def get_lock_registry() -> PaymentLockRegistry:
    return _registry


@contextmanager
def payment_lock(
    session: Session,
    key: object,
    registry: PaymentLockRegistry | None = None,
) -> Iterator[None]:
    """Hold every lock layer for ``key`` for the duration of the block."""
    name = str(key)
    if session.get_bind().dialect.name == "sqlite":
        session.connection()
        logger.debug("Holding database write lock for %s", name)
        yield
        return
    lock = (registry or _registry).lock_for(name)
    with lock:
        acquire_payment_xact_lock(session, f"escrow:{name}")
        logger.debug("Acquired payment lock %s", name)
        yield
