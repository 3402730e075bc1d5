"""Periodic escrow jobs.

One ``run_once`` pass does, in order:
1. Recover payouts stuck in processing
2. Release every payment whose hold window has passed
3. Record SLA breaches on active disputes
4. Dispatch queued payouts
5. Retry transient payout failures whose backoff has elapsed

Every unit of work gets its own session and commits on its own, so one
bad payment or payout never rolls back the rest of the run.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, TypeVar
from uuid import UUID

from sqlalchemy.orm import Session, sessionmaker

from escrow_engine.errors import EscrowError
from escrow_engine.settlement.clock import Clock, SystemClock
from escrow_engine.settlement.config import EngineConfig, create_default_config
from escrow_engine.settlement.coordinator import SettlementCoordinator
from escrow_engine.settlement.events import EventEmitter
from escrow_engine.settlement.providers.base import PayoutRail, RecipientDirectory
from escrow_engine.settlement.services import PaymentLockRegistry
from escrow_engine.settlement.services.locking import get_lock_registry
from escrow_engine.settlement.types import Actor, BatchResult, CommandResult, PayoutStatus

logger = logging.getLogger(__name__)

R = TypeVar("R")


@dataclass
class SchedulerRun:
    """What one scheduler pass did."""

    started_at: datetime
    recovered: int = 0
    released: BatchResult = field(default_factory=lambda: BatchResult(action="released"))
    sla_breaches: int = 0
    dispatched: BatchResult = field(default_factory=lambda: BatchResult(action="dispatched"))
    retried: BatchResult = field(default_factory=lambda: BatchResult(action="retried"))

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "recovered": self.recovered,
            "released": self.released.to_dict(),
            "sla_breaches": self.sla_breaches,
            "dispatched": self.dispatched.to_dict(),
            "retried": self.retried.to_dict(),
        }


class EscrowScheduler:
    """Drives time-based escrow work against a session factory."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        config: EngineConfig | None = None,
        *,
        rail: PayoutRail,
        directory: RecipientDirectory,
        clock: Clock | None = None,
        emitter: EventEmitter | None = None,
        lock_registry: PaymentLockRegistry | None = None,
        max_workers: int = 4,
    ):
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self.session_factory = session_factory
        self.config = config or create_default_config()
        self.rail = rail
        self.directory = directory
        self.clock = clock or SystemClock()
        self.emitter = emitter or EventEmitter()
        self.lock_registry = lock_registry or get_lock_registry()
        self.max_workers = max_workers
        self.actor = Actor.scheduler()

    def _coordinator(self, session: Session, checkpoint: Callable[[], None] | None = None) -> SettlementCoordinator:
        return SettlementCoordinator(
            session,
            self.config,
            rail=self.rail,
            directory=self.directory,
            clock=self.clock,
            emitter=self.emitter,
            lock_registry=self.lock_registry,
            checkpoint=checkpoint,
        )

    def _in_session(self, work: Callable[[SettlementCoordinator], R], checkpoint: bool = False) -> R:
        with self.session_factory() as session:
            try:
                result = work(self._coordinator(session, session.commit if checkpoint else None))
                session.commit()
            except Exception:
                session.rollback()
                raise
        return result

    def run_once(self, as_of: datetime | None = None) -> SchedulerRun:
        as_of = as_of or self.clock.now()
        run = SchedulerRun(started_at=as_of)

        run.recovered = len(self._in_session(lambda c: c.recover_stuck_payouts(as_of, self.actor)))
        run.released = self.release_due(as_of)
        run.sla_breaches = len(self._in_session(lambda c: c.flag_sla_breaches(as_of, self.actor)))
        run.dispatched = self.dispatch_queued()
        run.retried = self.retry_due(as_of)

        logger.info(
            "Scheduler run at %s: %d recovered, %s, %d SLA breaches, %s, %s",
            as_of.isoformat(),
            run.recovered,
            run.released.summary(),
            run.sla_breaches,
            run.dispatched.summary(),
            run.retried.summary(),
        )
        return run

    def release_due(self, as_of: datetime | None = None) -> BatchResult:
        """Release due payments in parallel, one session per payment.

        ``as_of`` later than the clock is capped at the clock: a release is
        validated against the current time, not the selection instant.
        """
        now = self.clock.now()
        as_of = min(as_of, now) if as_of else now
        due = self._in_session(lambda c: [s.payment_id for s in c.list_due_for_release(as_of)])
        batch = BatchResult(action="released")
        if not due:
            return batch
        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="escrow-release") as pool:
            batch.results.extend(pool.map(self._release_one, due))
        return batch

    def _release_one(self, payment_id: UUID) -> CommandResult:
        try:
            return self._in_session(lambda c: c.release_one(payment_id, self.actor))
        except Exception as e:
            logger.exception("Release of %s crashed", payment_id)
            return CommandResult(target_id=str(payment_id), ok=False, error_kind="internal", reason=str(e))

    def dispatch_queued(self) -> BatchResult:
        pending = self._in_session(
            lambda c: [p.payout_id for p in c.list_payouts(status=PayoutStatus.PENDING.value)]
        )
        return self._payout_batch("dispatched", pending, lambda c, pid: c.dispatch_payout(pid, self.actor))

    def retry_due(self, as_of: datetime | None = None) -> BatchResult:
        as_of = as_of or self.clock.now()
        due = self._in_session(lambda c: [p.payout_id for p in c.payouts.due_for_retry(as_of)])
        return self._payout_batch("retried", due, lambda c, pid: c.retry_scheduled_payout(pid, self.actor))

    def _payout_batch(
        self,
        action: str,
        payout_ids: list[UUID],
        run: Callable[[SettlementCoordinator, UUID], Any],
    ) -> BatchResult:
        batch = BatchResult(action=action)
        for payout_id in payout_ids:
            try:
                result = self._in_session(lambda c: run(c, payout_id), checkpoint=True)
            except EscrowError as e:
                batch.results.append(CommandResult.failure(payout_id, e))
                continue
            batch.results.append(
                CommandResult(
                    target_id=str(payout_id),
                    ok=result.ok,
                    error_kind=result.error_kind,
                    reason=result.message,
                )
            )
        if payout_ids:
            logger.info("Scheduler payout batch: %s", batch.summary())
        return batch
