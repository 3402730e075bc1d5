"""Payout Dispatcher - moves released money to workers and agencies.

Lifecycle: pending → processing → completed | failed, and failed →
processing on retry until the attempt ceiling.

Released portions are queued as items on a pending payout per recipient,
so several shifts (or a week of agency commission) leave in one transfer.
The first attempt commits the portions on each payment's ledger; after
that a refund can no longer claw them back.
"""

from __future__ import annotations

import logging
from contextlib import ExitStack
from datetime import datetime
from typing import Callable
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.orm import Session

from escrow_engine.calculators.money import format_minor_units
from escrow_engine.errors import (
    AlreadyCompleted,
    BelowMinimumThreshold,
    EscrowError,
    InvalidAmount,
    InvalidTransition,
    PayoutNotFound,
    RailRejected,
    RecipientUnconfigured,
    RetriesExhausted,
    Transient,
)
from escrow_engine.models import EscrowPayout, EscrowPayoutAttempt, EscrowPayoutItem
from escrow_engine.settlement.clock import Clock
from escrow_engine.settlement.config import PayoutPolicy
from escrow_engine.settlement.providers.base import PayoutRail, RecipientDirectory
from escrow_engine.settlement.services.ledger_service import EscrowLedger
from escrow_engine.settlement.services.locking import PaymentLockRegistry, payment_lock
from escrow_engine.settlement.types import (
    Actor,
    EntryType,
    PaymentState,
    PayoutResult,
    PayoutStatus,
    RecipientType,
)

logger = logging.getLogger(__name__)


class PayoutDispatcher:
    """Queues, submits and retries payouts.

    ``checkpoint`` is called once a payout is marked processing and before
    the rail is called; the scheduler passes ``session.commit`` so a crash
    mid-call leaves a visible processing row for stuck-payout recovery.
    """

    def __init__(
        self,
        session: Session,
        ledger: EscrowLedger,
        rail: PayoutRail,
        directory: RecipientDirectory,
        policy: PayoutPolicy,
        clock: Clock,
        checkpoint: Callable[[], None] | None = None,
        lock_registry: PaymentLockRegistry | None = None,
    ):
        self.session = session
        self.ledger = ledger
        self.rail = rail
        self.directory = directory
        self.policy = policy
        self.clock = clock
        self.checkpoint = checkpoint
        self.lock_registry = lock_registry

    # ------------------------------------------------------------------
    # Queueing
    # ------------------------------------------------------------------

    def queue_release(self, state: PaymentState) -> list[tuple[EscrowPayout, EscrowPayoutItem]]:
        """Queue the uncommitted worker and agency portions of a released payment.

        Safe to call more than once: a portion already queued is skipped.
        """
        portions = [(RecipientType.WORKER, state.worker_id, state.worker_uncommitted)]
        if state.agency_id:
            portions.append((RecipientType.AGENCY, state.agency_id, state.agency_uncommitted))

        queued: list[tuple[EscrowPayout, EscrowPayoutItem]] = []
        for recipient_type, recipient_id, amount in portions:
            if amount <= 0 or self._item(state.payment_id, recipient_type) is not None:
                continue
            payout = self._open_payout(recipient_type, recipient_id, state.currency)
            item = EscrowPayoutItem(
                payout_item_id=uuid4(),
                payout_id=payout.payout_id,
                payment_id=state.payment_id,
                portion=recipient_type.value,
                amount=amount,
            )
            payout.amount += amount
            self.session.add(item)
            queued.append((payout, item))
            logger.info(
                "Queued %s for %s %s on payout %s",
                format_minor_units(amount, state.currency),
                recipient_type.value,
                recipient_id,
                payout.payout_id,
            )
        self.session.flush()
        return queued

    def sync_queued(self, state: PaymentState) -> None:
        """Shrink or drop not-yet-attempted items after a refund changed the split."""
        rows = self.session.execute(
            select(EscrowPayoutItem, EscrowPayout)
            .join(EscrowPayout, EscrowPayout.payout_id == EscrowPayoutItem.payout_id)
            .where(
                EscrowPayoutItem.payment_id == state.payment_id,
                EscrowPayout.attempt_count == 0,
            )
        ).all()
        for item, payout in rows:
            if item.portion == RecipientType.WORKER.value:
                target = state.worker_uncommitted
            else:
                target = state.agency_uncommitted
            if target == item.amount:
                continue
            payout.amount += max(target, 0) - item.amount
            if target <= 0:
                self.session.delete(item)
            else:
                item.amount = target
            logger.info("Payout %s item for payment %s re-queued at %d", payout.payout_id, state.payment_id, max(target, 0))
            self.session.flush()
            if payout.amount == 0 and not self._items(payout):
                self.session.delete(payout)
        self.session.flush()

    def _open_payout(self, recipient_type: RecipientType, recipient_id: str, currency: str) -> EscrowPayout:
        payout = self.session.execute(
            select(EscrowPayout)
            .where(
                EscrowPayout.recipient_type == recipient_type.value,
                EscrowPayout.recipient_id == recipient_id,
                EscrowPayout.currency == currency,
                EscrowPayout.status == PayoutStatus.PENDING.value,
                EscrowPayout.attempt_count == 0,
            )
            .order_by(EscrowPayout.created_at)
            .limit(1)
            .with_for_update()
        ).scalar_one_or_none()
        if payout is not None:
            return payout
        payout = EscrowPayout(
            payout_id=uuid4(),
            recipient_type=recipient_type.value,
            recipient_id=recipient_id,
            amount=0,
            currency=currency,
            status=PayoutStatus.PENDING.value,
            attempt_count=0,
            created_at=self.clock.now(),
        )
        self.session.add(payout)
        self.session.flush()
        return payout

    # ------------------------------------------------------------------
    # Dispatch and retry
    # ------------------------------------------------------------------

    def dispatch(self, payout_id: UUID, actor: Actor) -> PayoutResult:
        """Submit a pending payout for the first time.

        Raises:
            AlreadyCompleted: Payout already completed.
            InvalidTransition: Payout is processing or failed (use retry).
        """
        payout = self.get(payout_id, for_update=True)
        if payout.status == PayoutStatus.COMPLETED.value:
            raise AlreadyCompleted(f"Payout {payout_id} already completed", payout_id=payout_id)
        if payout.status != PayoutStatus.PENDING.value:
            raise InvalidTransition(payout.status, "dispatch")
        return self._attempt(payout, actor)

    def dispatch_for_recipient(
        self,
        recipient_type: str,
        recipient_id: str,
        actor: Actor,
        amount: int | None = None,
    ) -> PayoutResult:
        """Dispatch the pending payout aggregated for one recipient."""
        payout = self.session.execute(
            select(EscrowPayout)
            .where(
                EscrowPayout.recipient_type == RecipientType(recipient_type).value,
                EscrowPayout.recipient_id == recipient_id,
                EscrowPayout.status == PayoutStatus.PENDING.value,
            )
            .order_by(EscrowPayout.created_at)
            .limit(1)
        ).scalar_one_or_none()
        if payout is None:
            raise PayoutNotFound(f"No pending payout for {recipient_type} {recipient_id}")
        if amount is not None and amount != payout.amount:
            raise InvalidAmount(
                f"Pending payout for {recipient_type} {recipient_id} is {payout.amount}, not {amount}",
                payout_id=payout.payout_id,
            )
        return self.dispatch(payout.payout_id, actor)

    def retry(self, payout_id: UUID, actor: Actor) -> PayoutResult:
        """Re-submit a failed payout.

        Raises:
            AlreadyCompleted: Payout already completed.
            RetriesExhausted: Attempt ceiling reached; no attempt is made.
            InvalidTransition: Payout is not in failed status.
        """
        payout = self.get(payout_id, for_update=True)
        if payout.status == PayoutStatus.COMPLETED.value:
            raise AlreadyCompleted(f"Payout {payout_id} already completed", payout_id=payout_id)
        if payout.status != PayoutStatus.FAILED.value:
            raise InvalidTransition(payout.status, "retry")
        if payout.attempt_count >= self.policy.max_attempts:
            raise RetriesExhausted(
                f"Payout {payout_id} used {payout.attempt_count} of {self.policy.max_attempts} attempts",
                payout_id=payout_id,
                attempt_count=payout.attempt_count,
            )
        return self._attempt(payout, actor)

    def _attempt(self, payout: EscrowPayout, actor: Actor) -> PayoutResult:
        method = self.directory.payout_method(payout.recipient_type, payout.recipient_id)
        if method is None:
            return self._not_sent(
                payout,
                RecipientUnconfigured(f"{payout.recipient_type} {payout.recipient_id} has no payout method on file"),
            )
        if payout.attempt_count == 0 and payout.amount < self.policy.minimum_payout_amount:
            return self._not_sent(
                payout,
                BelowMinimumThreshold(
                    f"{format_minor_units(payout.amount, payout.currency)} is below the "
                    f"{format_minor_units(self.policy.minimum_payout_amount, payout.currency)} payout floor"
                ),
            )

        items = self._items(payout)
        with ExitStack() as locks:
            for payment_id in sorted({item.payment_id for item in items}, key=str):
                locks.enter_context(payment_lock(self.session, payment_id, self.lock_registry))
            attempt = self._start_attempt(payout, items, method.method, actor)

        if self.checkpoint is not None:
            self.checkpoint()

        instruction = {
            "payout_id": str(payout.payout_id),
            "idempotency_key": f"payout:{payout.payout_id}:attempt:{attempt.attempt_number}",
            "amount": payout.amount,
            "currency": payout.currency,
            "recipient_type": payout.recipient_type,
            "recipient_id": payout.recipient_id,
            "method": method.method,
            "account_token": method.account_token,
        }
        error: EscrowError | None = None
        provider_request_id = None
        try:
            submitted = self.rail.submit(instruction, timeout_seconds=self.policy.rail_timeout_seconds)
            provider_request_id = submitted.provider_request_id
            if not submitted.accepted:
                if submitted.retryable:
                    error = Transient(submitted.message or "rail asked to retry")
                else:
                    error = RailRejected(submitted.message or "rail declined payout")
        except (TimeoutError, ConnectionError) as exc:
            error = Transient(f"{type(exc).__name__}: {exc}")

        with ExitStack() as locks:
            for payment_id in sorted({item.payment_id for item in items}, key=str):
                locks.enter_context(payment_lock(self.session, payment_id, self.lock_registry))
            return self._finish(payout, attempt, items, error, provider_request_id, actor)

    def _not_sent(self, payout: EscrowPayout, error: EscrowError) -> PayoutResult:
        payout.last_error_kind = error.kind
        payout.last_error_message = error.reason
        self.session.flush()
        logger.warning("Payout %s not sent (%s): %s", payout.payout_id, error.kind, error.reason)
        return self._result(payout, error)

    def _start_attempt(
        self,
        payout: EscrowPayout,
        items: list[EscrowPayoutItem],
        method: str,
        actor: Actor,
    ) -> EscrowPayoutAttempt:
        now = self.clock.now()
        payout.attempt_count += 1
        number = payout.attempt_count
        payout.status = PayoutStatus.PROCESSING.value
        payout.method = method
        payout.initiated_at = payout.initiated_at or now
        payout.last_attempt_at = now
        payout.next_retry_at = None

        attempt = EscrowPayoutAttempt(
            attempt_id=uuid4(),
            payout_id=payout.payout_id,
            attempt_number=number,
            started_at=now,
            outcome=PayoutStatus.PROCESSING.value,
        )
        self.session.add(attempt)

        for item in items:
            self.ledger.append(
                item.payment_id,
                EntryType.PAYOUT_ATTEMPT,
                idempotency_key=f"payout:{payout.payout_id}:{item.payment_id}:{item.portion}:attempt:{number}",
                actor=actor,
                payload={
                    "payout_id": str(payout.payout_id),
                    "portion": item.portion,
                    "amount": item.amount,
                    "commit": item.amount if number == 1 else 0,
                    "attempt": number,
                },
            )
        self.session.flush()
        logger.info(
            "Payout %s attempt %d/%d: %s to %s %s",
            payout.payout_id,
            number,
            self.policy.max_attempts,
            format_minor_units(payout.amount, payout.currency),
            payout.recipient_type,
            payout.recipient_id,
        )
        return attempt

    def _finish(
        self,
        payout: EscrowPayout,
        attempt: EscrowPayoutAttempt,
        items: list[EscrowPayoutItem],
        error: EscrowError | None,
        provider_request_id: str | None,
        actor: Actor,
    ) -> PayoutResult:
        now = self.clock.now()
        attempt.finished_at = now
        attempt.provider_request_id = provider_request_id
        payout.provider_request_id = provider_request_id or payout.provider_request_id

        if error is None:
            payout.status = PayoutStatus.COMPLETED.value
            payout.completed_at = now
            payout.last_error_kind = None
            payout.last_error_message = None
            attempt.outcome = PayoutStatus.COMPLETED.value
            for item in items:
                self.ledger.append(
                    item.payment_id,
                    EntryType.PAYOUT_SUCCESS,
                    idempotency_key=f"payout:{payout.payout_id}:{item.payment_id}:{item.portion}:success",
                    actor=actor,
                    payload={"payout_id": str(payout.payout_id), "portion": item.portion, "amount": item.amount},
                )
            logger.info("Payout %s completed on attempt %d", payout.payout_id, payout.attempt_count)
        else:
            payout.status = PayoutStatus.FAILED.value
            payout.last_error_kind = error.kind
            payout.last_error_message = error.reason
            attempt.outcome = PayoutStatus.FAILED.value
            attempt.error_kind = error.kind
            attempt.message = error.reason
            if isinstance(error, Transient) and payout.attempt_count < self.policy.max_attempts:
                payout.next_retry_at = now + self.policy.backoff_delay(payout.attempt_count)
            else:
                payout.next_retry_at = None
            for item in items:
                self.ledger.append(
                    item.payment_id,
                    EntryType.PAYOUT_FAILURE,
                    idempotency_key=(
                        f"payout:{payout.payout_id}:{item.payment_id}:{item.portion}"
                        f":failure:{attempt.attempt_number}"
                    ),
                    actor=actor,
                    payload={
                        "payout_id": str(payout.payout_id),
                        "portion": item.portion,
                        "error_kind": error.kind,
                        "attempt": attempt.attempt_number,
                    },
                )
            logger.warning(
                "Payout %s attempt %d failed (%s): %s; next retry %s",
                payout.payout_id,
                attempt.attempt_number,
                error.kind,
                error.reason,
                payout.next_retry_at.isoformat() if payout.next_retry_at else "manual",
            )

        self.session.flush()
        return self._result(payout, error)

    def recover_stuck(self, actor: Actor, as_of: datetime | None = None) -> list[PayoutResult]:
        """Fail payouts left in processing past the timeout so they can be retried."""
        as_of = as_of or self.clock.now()
        cutoff = as_of - self.policy.processing_timeout
        stuck = self.session.execute(
            select(EscrowPayout).where(
                EscrowPayout.status == PayoutStatus.PROCESSING.value,
                EscrowPayout.last_attempt_at <= cutoff,
            )
        ).scalars().all()

        results = []
        for payout in stuck:
            attempt = self.session.execute(
                select(EscrowPayoutAttempt)
                .where(EscrowPayoutAttempt.payout_id == payout.payout_id)
                .order_by(EscrowPayoutAttempt.attempt_number.desc())
                .limit(1)
            ).scalar_one()
            logger.warning("Payout %s stuck in processing since %s", payout.payout_id, payout.last_attempt_at)
            results.append(
                self._finish(
                    payout,
                    attempt,
                    self._items(payout),
                    Transient("no rail response before processing timeout"),
                    None,
                    actor,
                )
            )
        return results

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, payout_id: UUID, for_update: bool = False) -> EscrowPayout:
        query = select(EscrowPayout).where(EscrowPayout.payout_id == payout_id)
        if for_update:
            query = query.with_for_update()
        payout = self.session.execute(query).scalar_one_or_none()
        if payout is None:
            raise PayoutNotFound(f"Payout {payout_id} not found", payout_id=payout_id)
        return payout

    def _items(self, payout: EscrowPayout) -> list[EscrowPayoutItem]:
        return list(
            self.session.execute(
                select(EscrowPayoutItem)
                .where(EscrowPayoutItem.payout_id == payout.payout_id)
                .order_by(EscrowPayoutItem.payment_id, EscrowPayoutItem.portion)
            ).scalars()
        )

    def _item(self, payment_id: UUID, portion: RecipientType) -> EscrowPayoutItem | None:
        return self.session.execute(
            select(EscrowPayoutItem).where(
                EscrowPayoutItem.payment_id == payment_id,
                EscrowPayoutItem.portion == portion.value,
            )
        ).scalar_one_or_none()

    def list_payouts(
        self,
        status: str | None = None,
        recipient_type: str | None = None,
        recipient_id: str | None = None,
    ) -> list[EscrowPayout]:
        query = select(EscrowPayout).order_by(EscrowPayout.created_at)
        if status:
            query = query.where(EscrowPayout.status == PayoutStatus(status).value)
        if recipient_type:
            query = query.where(EscrowPayout.recipient_type == RecipientType(recipient_type).value)
        if recipient_id:
            query = query.where(EscrowPayout.recipient_id == recipient_id)
        return list(self.session.execute(query).scalars())

    def due_for_retry(self, as_of: datetime | None = None) -> list[EscrowPayout]:
        """Failed transient payouts whose backoff has elapsed."""
        as_of = as_of or self.clock.now()
        return list(
            self.session.execute(
                select(EscrowPayout)
                .where(
                    EscrowPayout.status == PayoutStatus.FAILED.value,
                    EscrowPayout.next_retry_at.is_not(None),
                    EscrowPayout.next_retry_at <= as_of,
                    EscrowPayout.attempt_count < self.policy.max_attempts,
                )
                .order_by(EscrowPayout.next_retry_at)
            ).scalars()
        )

    def _result(self, payout: EscrowPayout, error: EscrowError | None = None) -> PayoutResult:
        return PayoutResult(
            payout_id=payout.payout_id,
            status=PayoutStatus(payout.status),
            amount=payout.amount,
            attempt_count=payout.attempt_count,
            error_kind=error.kind if error else None,
            message=error.reason if error else None,
            next_retry_at=payout.next_retry_at,
        )
