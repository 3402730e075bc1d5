"""Settlement Coordinator - single integration path for escrow operations.

Usage:
    coordinator = SettlementCoordinator(session, config, rail=rail, directory=directory)

    # Completed shift enters escrow
    state = coordinator.open_escrow(ShiftPaymentInfo(...))

    # Scheduler releases everything past its hold window
    batch = coordinator.release_all_due()

    # Admin resolves a dispute in the worker's favour
    coordinator.resolve(dispute_id, "rejected", actor=Actor.admin("ops-7"))

The coordinator:
- Wires services together correctly
- Serializes every mutation of a payment behind its lock
- Runs each command in a savepoint so a failure leaves no partial state
- Emits domain events only after the command succeeded
- Checks the actor on privileged commands

The caller owns the outer transaction and commits.
"""

from __future__ import annotations

import logging
from contextlib import ExitStack, contextmanager
from datetime import datetime
from typing import Any, Callable, Iterator
from uuid import UUID

from sqlalchemy.orm import Session

from escrow_engine.calculators.fees import compute_split
from escrow_engine.calculators.money import format_minor_units, to_rate
from escrow_engine.errors import EscrowError, InvalidAmount, NotAuthorized
from escrow_engine.models import EscrowDispute, EscrowLedgerEntry, EscrowPayout, EscrowRefund
from escrow_engine.settlement.clock import Clock, SystemClock
from escrow_engine.settlement.config import EngineConfig, create_default_config
from escrow_engine.settlement.events import (
    DisputeEscalated,
    DisputeOpened,
    DisputeResolved,
    DisputeSlaBreached,
    EscrowHeld,
    EscrowOpened,
    EscrowReleased,
    EscrowUnheld,
    EventEmitter,
    EventMetadata,
    PayoutCompleted,
    PayoutFailed,
    PayoutQueued,
    RefundCompleted,
    RefundShortfallFlagged,
)
from escrow_engine.settlement.providers.base import PayoutRail, RecipientDirectory
from escrow_engine.settlement.services import (
    DisputeService,
    EscrowLedger,
    HoldManager,
    PaymentLockRegistry,
    PayoutDispatcher,
    RefundProcessor,
    ReportingService,
    auto_refund_key,
    payment_lock,
)
from escrow_engine.settlement.types import (
    Actor,
    AppendResult,
    BatchResult,
    CommandResult,
    DisputeOutcome,
    EntryType,
    FinanceSummary,
    PaymentState,
    PayoutResult,
    PayoutStatus,
    RefundTrigger,
    RefundType,
    ShiftPaymentInfo,
    SlaReport,
)

logger = logging.getLogger(__name__)


class SettlementCoordinator:
    """Facade over the escrow ledger and its services."""

    def __init__(
        self,
        session: Session,
        config: EngineConfig | None = None,
        *,
        rail: PayoutRail,
        directory: RecipientDirectory,
        clock: Clock | None = None,
        emitter: EventEmitter | None = None,
        lock_registry: PaymentLockRegistry | None = None,
        checkpoint: Callable[[], None] | None = None,
    ):
        self.session = session
        self.config = config or create_default_config()
        self.clock = clock or SystemClock()
        self.emitter = emitter or EventEmitter()
        self.lock_registry = lock_registry
        self.checkpoint = checkpoint

        self.ledger = EscrowLedger(session, self.clock)
        self.holds = HoldManager(session, self.ledger, self.config.holds, self.clock)
        self.disputes = DisputeService(session, self.ledger, self.config.disputes, self.clock)
        self.refunds = RefundProcessor(session, self.ledger, self.config.refunds, self.clock)
        self.payouts = PayoutDispatcher(
            session,
            self.ledger,
            rail,
            directory,
            self.config.payouts,
            self.clock,
            checkpoint=checkpoint,
            lock_registry=lock_registry,
        )
        self.reports = ReportingService(session, self.clock)

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    @contextmanager
    def _unit(self, lock_key: object | None = None, savepoint: bool = True) -> Iterator[None]:
        """One command: events batched, payment locked, writes in a savepoint."""
        with self.emitter.batch(), ExitStack() as stack:
            if lock_key is not None:
                stack.enter_context(payment_lock(self.session, lock_key, self.lock_registry))
            if savepoint:
                stack.enter_context(self.session.begin_nested())
            yield

    def _meta(self, actor: Actor) -> EventMetadata:
        return EventMetadata.create(
            timestamp=self.clock.now(),
            actor_id=actor.actor_id,
            actor_type=actor.actor_type.value,
        )

    @staticmethod
    def _require_admin(actor: Actor, action: str) -> None:
        if not actor.is_admin:
            raise NotAuthorized(f"{action} requires an admin actor", actor_id=actor.actor_id)

    # ------------------------------------------------------------------
    # Escrow commands
    # ------------------------------------------------------------------

    def open_escrow(self, info: ShiftPaymentInfo, actor: Actor | None = None) -> PaymentState:
        """Compute the split for a completed shift and open escrow.

        Idempotent per shift: reopening the same shift returns the existing payment.
        """
        actor = actor or Actor.system()
        fees = self.config.fees
        fee_rate = to_rate(
            fees.platform_fee_rate if info.platform_fee_rate is None else info.platform_fee_rate,
            "platform_fee_rate",
        )
        if info.agency_id:
            commission_rate = to_rate(
                fees.default_agency_commission_rate
                if info.agency_commission_rate is None
                else info.agency_commission_rate,
                "agency_commission_rate",
            )
        else:
            commission_rate = to_rate(info.agency_commission_rate, "agency_commission_rate")
            if commission_rate:
                raise InvalidAmount("agency commission rate given without an agency")
        bonus_rate = to_rate(fees.urgent_bonus_rate if info.urgent else None, "urgent_bonus_rate")
        split = compute_split(info.gross_amount, fee_rate, commission_rate, bonus_rate)

        payload: dict[str, Any] = {
            "shift_ref": info.shift_ref,
            "worker_id": info.worker_id,
            "business_id": info.business_id,
            "agency_id": info.agency_id,
            "currency": info.currency or self.config.currency,
            "platform_fee_rate": str(fee_rate),
            "agency_commission_rate": str(commission_rate),
            "urgent_bonus_rate": str(bonus_rate),
            "hold_seconds": int(self.config.holds.period_for(info.short_hold).total_seconds()),
            **split.to_dict(),
        }
        with self._unit():
            result = self.ledger.open(
                gross_amount=info.gross_amount,
                payload=payload,
                idempotency_key=f"open:{info.shift_ref}",
                actor=actor,
            )
            state = result.state
            if result.is_new:
                logger.info(
                    "Escrow opened for shift %s: %s (worker %d, fee %d, agency %d), release at %s",
                    info.shift_ref,
                    format_minor_units(info.gross_amount, state.currency),
                    split.worker_amount,
                    split.platform_fee,
                    split.agency_commission,
                    state.scheduled_release_at.isoformat() if state.scheduled_release_at else None,
                )
                self.emitter.emit(
                    EscrowOpened(
                        metadata=self._meta(actor),
                        payment_id=state.payment_id,
                        shift_ref=state.shift_ref,
                        gross_amount=state.gross_amount,
                        worker_amount=state.worker_amount,
                        platform_fee=state.platform_fee,
                        agency_commission=state.agency_commission,
                        scheduled_release_at=state.scheduled_release_at,
                    )
                )
        return state

    def hold(self, payment_id: UUID, reason: str, actor: Actor, idempotency_key: str | None = None) -> PaymentState:
        self._require_admin(actor, "hold")
        with self._unit(payment_id):
            result = self.holds.hold(payment_id, reason, actor, idempotency_key)
            if result.is_new:
                self.emitter.emit(EscrowHeld(metadata=self._meta(actor), payment_id=payment_id, reason=reason))
        return result.state

    def unhold(self, payment_id: UUID, actor: Actor, idempotency_key: str | None = None) -> PaymentState:
        self._require_admin(actor, "unhold")
        with self._unit(payment_id):
            result = self.holds.unhold(payment_id, actor, idempotency_key)
            if result.is_new:
                self.emitter.emit(
                    EscrowUnheld(
                        metadata=self._meta(actor),
                        payment_id=payment_id,
                        scheduled_release_at=result.state.scheduled_release_at,
                    )
                )
        return result.state

    def release(
        self,
        payment_id: UUID,
        actor: Actor | None = None,
        *,
        override: bool = False,
        idempotency_key: str | None = None,
    ) -> PaymentState:
        """Release escrow once the hold window has passed, or early with an admin override."""
        actor = actor or Actor.system()
        if override:
            self._require_admin(actor, "release override")
        with self._unit(payment_id):
            result = self._release(payment_id, actor, override=override, idempotency_key=idempotency_key)
        return result.state

    def _release(
        self,
        payment_id: UUID,
        actor: Actor,
        *,
        override: bool = False,
        dispute_id: UUID | None = None,
        idempotency_key: str | None = None,
    ) -> AppendResult:
        result = self.holds.release(
            payment_id, actor, override=override, dispute_id=dispute_id, idempotency_key=idempotency_key
        )
        if not result.is_new:
            return result
        state = result.state
        queued = self.payouts.queue_release(state)
        logger.info(
            "Payment %s released (%s), %d payout item(s) queued",
            payment_id,
            "override" if override else "dispute" if dispute_id else "scheduled",
            len(queued),
        )
        self.emitter.emit(
            EscrowReleased(
                metadata=self._meta(actor),
                payment_id=payment_id,
                worker_amount=state.worker_amount,
                agency_commission=state.agency_commission,
                override=override,
            )
        )
        for payout, item in queued:
            self.emitter.emit(
                PayoutQueued(
                    metadata=self._meta(actor),
                    payout_id=payout.payout_id,
                    payment_id=payment_id,
                    recipient_type=payout.recipient_type,
                    recipient_id=payout.recipient_id,
                    amount=item.amount,
                )
            )
        return result

    def release_all_due(self, as_of: datetime | None = None, actor: Actor | None = None) -> BatchResult:
        """Release every unflagged in-escrow payment past its window, one at a time.

        A failure on one payment never blocks or rolls back the others. An
        ``as_of`` later than the clock is capped at the clock.
        """
        actor = actor or Actor.scheduler()
        now = self.clock.now()
        as_of = min(as_of, now) if as_of else now
        batch = BatchResult(action="released")
        for due in self.holds.list_due(as_of):
            batch.results.append(self.release_one(due.payment_id, actor))
        logger.info("Release run: %s", batch.summary())
        return batch

    def release_one(self, payment_id: UUID, actor: Actor) -> CommandResult:
        try:
            with self._unit(payment_id):
                result = self._release(payment_id, actor)
        except EscrowError as e:
            logger.warning("Release of %s failed: %s", payment_id, e.reason)
            return CommandResult.failure(payment_id, e)
        return CommandResult.success(payment_id, result.state, replayed=not result.is_new)

    def adjust_commission(
        self,
        payment_id: UUID,
        agency_commission_rate: Any,
        actor: Actor,
        reason: str = "",
    ) -> PaymentState:
        """Change the agency commission of a payment still in escrow via a ledger entry."""
        self._require_admin(actor, "commission adjustment")
        with self._unit(payment_id):
            state = self.ledger.current_state(payment_id)
            rate = to_rate(agency_commission_rate, "agency_commission_rate")
            if rate and not state.agency_id:
                raise InvalidAmount("payment has no agency to pay commission to")
            split = compute_split(
                state.gross_amount, state.platform_fee_rate, rate, state.urgent_bonus_rate
            )
            result = self.ledger.append(
                payment_id,
                EntryType.COMMISSION_ADJUST,
                idempotency_key=f"{payment_id}:commission_adjust:{state.last_sequence}",
                actor=actor,
                payload={"agency_commission_rate": str(rate), "reason": reason, **split.to_dict()},
            )
        return result.state

    # ------------------------------------------------------------------
    # Disputes
    # ------------------------------------------------------------------

    def open_dispute(
        self,
        payment_id: UUID,
        reason: str,
        actor: Actor | None = None,
        *,
        worker_id: str | None = None,
        business_id: str | None = None,
        priority: str | None = None,
        idempotency_key: str | None = None,
    ) -> EscrowDispute:
        actor = actor or Actor.system()
        with self._unit(payment_id):
            dispute, is_new = self.disputes.open(
                payment_id,
                reason,
                actor,
                worker_id=worker_id,
                business_id=business_id,
                priority=priority,
                idempotency_key=idempotency_key,
            )
            if is_new:
                self.emitter.emit(
                    DisputeOpened(
                        metadata=self._meta(actor),
                        dispute_id=dispute.dispute_id,
                        payment_id=payment_id,
                        priority=dispute.priority,
                        sla_deadline=dispute.sla_deadline,
                    )
                )
        return dispute

    def advance_dispute(
        self, dispute_id: UUID, to_status: str, actor: Actor, notes: str | None = None
    ) -> EscrowDispute:
        self._require_admin(actor, "dispute review")
        with self._unit():
            return self.disputes.advance(dispute_id, to_status, actor, notes)

    def escalate(self, dispute_id: UUID, actor: Actor, reason: str | None = None) -> EscrowDispute:
        self._require_admin(actor, "escalation")
        with self._unit():
            dispute = self.disputes.escalate(dispute_id, actor, reason)
            self.emitter.emit(
                DisputeEscalated(
                    metadata=self._meta(actor),
                    dispute_id=dispute_id,
                    escalation_level=dispute.escalation_level,
                    priority=dispute.priority,
                )
            )
        return dispute

    def resolve(
        self,
        dispute_id: UUID,
        outcome: DisputeOutcome | str,
        actor: Actor,
        *,
        notes: str | None = None,
        refund_amount: int | None = None,
    ) -> EscrowDispute:
        """Resolve a dispute and move the money.

        - upheld: full refund to the business
        - rejected: escrow released to the worker
        - split: partial refund of ``refund_amount``, remainder released
        """
        self._require_admin(actor, "dispute resolution")
        outcome = DisputeOutcome(outcome)
        dispute = self.disputes.get(dispute_id)
        self.disputes.check_resolvable(dispute)
        payment_id = dispute.payment_id

        with self._unit(payment_id):
            refund_key = f"dispute:{dispute_id}:refund"
            if outcome == DisputeOutcome.UPHELD:
                self._refund(
                    payment_id,
                    refund_type=RefundType.FULL,
                    trigger=RefundTrigger.MANUAL,
                    reason=f"dispute {dispute_id} upheld",
                    actor=actor,
                    idempotency_key=refund_key,
                    dispute_id=dispute_id,
                )
            else:
                if outcome == DisputeOutcome.SPLIT:
                    if not refund_amount:
                        raise InvalidAmount("split resolution needs a refund amount")
                    self._refund(
                        payment_id,
                        refund_type=RefundType.PARTIAL,
                        trigger=RefundTrigger.MANUAL,
                        reason=f"dispute {dispute_id} split",
                        actor=actor,
                        amount=refund_amount,
                        idempotency_key=refund_key,
                        dispute_id=dispute_id,
                    )
                self._release(payment_id, actor, dispute_id=dispute_id)
            dispute = self.disputes.mark_resolved(dispute_id, outcome, actor, notes)
            self.emitter.emit(
                DisputeResolved(
                    metadata=self._meta(actor),
                    dispute_id=dispute_id,
                    payment_id=payment_id,
                    outcome=outcome.value,
                )
            )
        return dispute

    def flag_sla_breaches(self, as_of: datetime | None = None, actor: Actor | None = None) -> list[EscrowDispute]:
        """Record SLA breaches on active disputes and alert on each new one."""
        actor = actor or Actor.scheduler()
        with self._unit():
            breached = self.disputes.flag_breaches(as_of)
            for dispute in breached:
                self.emitter.emit(
                    DisputeSlaBreached(
                        metadata=self._meta(actor),
                        dispute_id=dispute.dispute_id,
                        payment_id=dispute.payment_id,
                        sla_deadline=dispute.sla_deadline,
                    )
                )
        return breached

    # ------------------------------------------------------------------
    # Refunds
    # ------------------------------------------------------------------

    def refund(
        self,
        payment_id: UUID,
        *,
        refund_type: RefundType | str,
        trigger: RefundTrigger | str,
        reason: str,
        actor: Actor,
        amount: int | None = None,
        idempotency_key: str | None = None,
        condition: str | None = None,
        event_ref: str | None = None,
    ) -> EscrowRefund:
        """Refund a payment.

        Manual refunds need an admin. Automatic refunds need a policy
        condition and the triggering event's reference, from which the
        idempotency key is derived so a replayed event cannot refund twice.
        """
        refund_type = RefundType(refund_type)
        trigger = RefundTrigger(trigger)
        if trigger == RefundTrigger.MANUAL:
            self._require_admin(actor, "manual refund")
        elif event_ref:
            idempotency_key = auto_refund_key(condition or "", event_ref)

        with self._unit(payment_id):
            return self._refund(
                payment_id,
                refund_type=refund_type,
                trigger=trigger,
                reason=reason,
                actor=actor,
                amount=amount,
                idempotency_key=idempotency_key,
                condition=condition,
            )

    def _refund(self, payment_id: UUID, *, actor: Actor, **kwargs: Any) -> EscrowRefund:
        refund, is_new = self.refunds.refund(payment_id, actor=actor, **kwargs)
        if not is_new:
            return refund
        self.payouts.sync_queued(self.ledger.current_state(payment_id))
        self.emitter.emit(
            RefundCompleted(
                metadata=self._meta(actor),
                refund_id=refund.refund_id,
                payment_id=payment_id,
                amount=refund.amount,
                refund_type=refund.refund_type,
                trigger=refund.trigger,
            )
        )
        if refund.shortfall_amount:
            self.emitter.emit(
                RefundShortfallFlagged(
                    metadata=self._meta(actor),
                    refund_id=refund.refund_id,
                    payment_id=payment_id,
                    shortfall_amount=refund.shortfall_amount,
                )
            )
        return refund

    # ------------------------------------------------------------------
    # Payouts
    # ------------------------------------------------------------------

    def dispatch_payout(self, payout_id: UUID, actor: Actor | None = None) -> PayoutResult:
        actor = actor or Actor.system()
        with self._unit(f"payout:{payout_id}", savepoint=self.checkpoint is None):
            result = self.payouts.dispatch(payout_id, actor)
            self._emit_payout(result, actor)
        return result

    def dispatch_payout_to(
        self,
        recipient_type: str,
        recipient_id: str,
        amount: int | None = None,
        actor: Actor | None = None,
    ) -> PayoutResult:
        """Dispatch the aggregated pending payout for one recipient."""
        actor = actor or Actor.system()
        with self._unit(f"recipient:{recipient_type}:{recipient_id}", savepoint=self.checkpoint is None):
            result = self.payouts.dispatch_for_recipient(recipient_type, recipient_id, actor, amount)
            self._emit_payout(result, actor)
        return result

    def retry_payout(self, payout_id: UUID, actor: Actor) -> PayoutResult:
        self._require_admin(actor, "payout retry")
        return self.retry_scheduled_payout(payout_id, actor)

    def retry_scheduled_payout(self, payout_id: UUID, actor: Actor) -> PayoutResult:
        """Retry without the admin check, for the scheduler's backoff-driven retries."""
        with self._unit(f"payout:{payout_id}", savepoint=self.checkpoint is None):
            result = self.payouts.retry(payout_id, actor)
            self._emit_payout(result, actor)
        return result

    def retry_all_failed_payouts(self, actor: Actor) -> BatchResult:
        """Retry every failed payout; exhausted ones come back as rejections."""
        self._require_admin(actor, "payout retry")
        failed = self.payouts.list_payouts(status=PayoutStatus.FAILED.value)
        return self._payout_batch(
            "retried", [p.payout_id for p in failed], lambda pid: self.retry_scheduled_payout(pid, actor)
        )

    def retry_due_payouts(self, as_of: datetime | None = None, actor: Actor | None = None) -> BatchResult:
        """Automatic retry of transient failures whose backoff has elapsed."""
        actor = actor or Actor.scheduler()
        due = self.payouts.due_for_retry(as_of)
        return self._payout_batch(
            "retried", [p.payout_id for p in due], lambda pid: self.retry_scheduled_payout(pid, actor)
        )

    def dispatch_queued_payouts(self, actor: Actor | None = None) -> BatchResult:
        actor = actor or Actor.scheduler()
        pending = self.payouts.list_payouts(status=PayoutStatus.PENDING.value)
        return self._payout_batch(
            "dispatched", [p.payout_id for p in pending], lambda pid: self.dispatch_payout(pid, actor)
        )

    def recover_stuck_payouts(self, as_of: datetime | None = None, actor: Actor | None = None) -> list[PayoutResult]:
        actor = actor or Actor.scheduler()
        with self._unit():
            results = self.payouts.recover_stuck(actor, as_of)
            for result in results:
                self._emit_payout(result, actor)
        return results

    def _payout_batch(
        self, action: str, payout_ids: list[UUID], run: Callable[[UUID], PayoutResult]
    ) -> BatchResult:
        batch = BatchResult(action=action)
        for payout_id in payout_ids:
            try:
                result = run(payout_id)
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
        logger.info("Payout batch: %s", batch.summary())
        return batch

    def _emit_payout(self, result: PayoutResult, actor: Actor) -> None:
        if result.status == PayoutStatus.COMPLETED:
            self.emitter.emit(
                PayoutCompleted(
                    metadata=self._meta(actor),
                    payout_id=result.payout_id,
                    amount=result.amount,
                    attempt_count=result.attempt_count,
                )
            )
        elif result.status == PayoutStatus.FAILED:
            self.emitter.emit(
                PayoutFailed(
                    metadata=self._meta(actor),
                    payout_id=result.payout_id,
                    error_kind=result.error_kind or "unknown",
                    message=result.message or "",
                    attempt_count=result.attempt_count,
                    retryable=result.next_retry_at is not None,
                )
            )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_payment(self, payment_id: UUID) -> PaymentState:
        return self.ledger.current_state(payment_id)

    def list_payments(self, **filters: Any) -> list[PaymentState]:
        return self.reports.list_payments(**filters)

    def list_refunds(self, payment_id: UUID) -> list[EscrowRefund]:
        self.ledger.current_state(payment_id)
        return self.refunds.for_payment(payment_id)

    def get_dispute(self, payment_id: UUID) -> EscrowDispute:
        """Active dispute for a payment, else its latest one."""
        return self.disputes.for_payment(payment_id)

    def get_dispute_by_id(self, dispute_id: UUID) -> EscrowDispute:
        return self.disputes.get(dispute_id)

    def sla_status(self, dispute_id: UUID) -> SlaReport:
        return self.disputes.sla_status(dispute_id)

    def list_due_for_release(self, as_of: datetime | None = None) -> list[PaymentState]:
        return self.holds.list_due(as_of)

    def finance_summary(self, start: datetime | None = None, end: datetime | None = None) -> FinanceSummary:
        return self.reports.finance_summary(start, end)

    def alerts(self) -> dict[str, list[dict[str, Any]]]:
        return self.reports.alerts(self.config.payouts)

    def get_payout(self, payout_id: UUID) -> EscrowPayout:
        return self.payouts.get(payout_id)

    def list_payouts(self, **filters: Any) -> list[EscrowPayout]:
        return self.payouts.list_payouts(**filters)

    def entries(self, payment_id: UUID) -> list[EscrowLedgerEntry]:
        return self.ledger.entries(payment_id)

    def replay(self, payment_id: UUID) -> PaymentState:
        return self.ledger.replay(payment_id)

    def reconcile(self, payment_id: UUID) -> dict[str, tuple[Any, Any]]:
        return self.ledger.reconcile(payment_id)

    def reconcile_all(self) -> dict[UUID, dict[str, tuple[Any, Any]]]:
        return self.ledger.reconcile_all()
