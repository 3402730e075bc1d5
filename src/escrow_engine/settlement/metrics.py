"""Escrow Observability Metrics.

Metric Categories:
- Escrow metrics: payments by status, money held in escrow, due releases
- Dispute metrics: active disputes, SLA breaches
- Payout metrics: payouts by status, stuck and exhausted payouts
- Ledger metrics: entry counts

Usage:
    collector = MetricsCollector(session, clock)
    metrics = collector.collect_all()

    # For Prometheus export
    print(metrics.to_prometheus())

    # For JSON export
    print(metrics.to_json())
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, fields
from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from escrow_engine.models import EscrowDispute, EscrowLedgerEntry, EscrowPayment, EscrowPayout
from escrow_engine.settlement.clock import Clock
from escrow_engine.settlement.config import DisputePolicy, PayoutPolicy
from escrow_engine.settlement.services.dispute_service import ACTIVE_STATUSES, compute_sla_status
from escrow_engine.settlement.services.projection import REFUND_SHORTFALL
from escrow_engine.settlement.types import PaymentStatus, PayoutStatus, SlaStatus


@dataclass
class Counter:
    """A counter metric (monotonically increasing)."""

    name: str
    value: int
    labels: dict[str, str] = field(default_factory=dict)
    help_text: str = ""


@dataclass
class Gauge:
    """A gauge metric (can go up or down)."""

    name: str
    value: int | float
    labels: dict[str, str] = field(default_factory=dict)
    help_text: str = ""


@dataclass
class EscrowMetrics:
    """Collection of all escrow metrics."""

    payments_by_status: list[Gauge]
    escrow_balance: Gauge
    payments_due_for_release: Gauge
    flagged_payments: Gauge

    disputes_active: Gauge
    disputes_at_risk: Gauge
    disputes_sla_breached: Gauge

    payouts_by_status: list[Gauge]
    payouts_stuck: Gauge
    payouts_exhausted: Gauge
    refund_shortfalls: Gauge

    ledger_entries_total: Counter

    collected_at: datetime

    def _metrics(self) -> list[Counter | Gauge]:
        out: list[Counter | Gauge] = []
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, list):
                out.extend(value)
            elif isinstance(value, (Counter, Gauge)):
                out.append(value)
        return out

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"collected_at": self.collected_at.isoformat()}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, list):
                result[f.name] = [_metric_to_dict(m) for m in value]
            elif isinstance(value, (Counter, Gauge)):
                result[f.name] = _metric_to_dict(value)
        return result

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)

    def to_prometheus(self) -> str:
        """Convert to Prometheus text format."""
        lines: list[str] = []
        seen: set[str] = set()
        for metric in self._metrics():
            if metric.name not in seen:
                seen.add(metric.name)
                if metric.help_text:
                    lines.append(f"# HELP {metric.name} {metric.help_text}")
                metric_type = "counter" if isinstance(metric, Counter) else "gauge"
                lines.append(f"# TYPE {metric.name} {metric_type}")
            labels = ""
            if metric.labels:
                labels = "{" + ",".join(f'{k}="{v}"' for k, v in metric.labels.items()) + "}"
            lines.append(f"{metric.name}{labels} {metric.value}")
        return "\n".join(lines)


def _metric_to_dict(metric: Counter | Gauge) -> dict[str, Any]:
    return {"name": metric.name, "value": metric.value, "labels": metric.labels, "help": metric.help_text}


class MetricsCollector:
    """Collects metrics from database."""

    def __init__(
        self,
        session: Session,
        clock: Clock,
        payout_policy: PayoutPolicy | None = None,
        dispute_policy: DisputePolicy | None = None,
    ) -> None:
        self._session = session
        self._clock = clock
        self._payout_policy = payout_policy or PayoutPolicy()
        self._dispute_policy = dispute_policy or DisputePolicy()

    def collect_all(self, now: datetime | None = None) -> EscrowMetrics:
        now = now or self._clock.now()
        return EscrowMetrics(
            payments_by_status=self._payments_by_status(),
            escrow_balance=self._escrow_balance(),
            payments_due_for_release=self._due_for_release(now),
            flagged_payments=self._count(
                select(func.count()).select_from(EscrowPayment).where(EscrowPayment.is_flagged.is_(True)),
                "escrow_flagged_payments",
                "Payments on hold or flagged for reconciliation",
            ),
            disputes_active=self._count(
                select(func.count())
                .select_from(EscrowDispute)
                .where(EscrowDispute.status.in_(ACTIVE_STATUSES)),
                "escrow_disputes_active",
                "Disputes not yet resolved",
            ),
            disputes_at_risk=self._disputes_at_risk(now),
            disputes_sla_breached=self._count(
                select(func.count())
                .select_from(EscrowDispute)
                .where(EscrowDispute.status.in_(ACTIVE_STATUSES), EscrowDispute.sla_deadline <= now),
                "escrow_disputes_sla_breached",
                "Active disputes past their SLA deadline (ALERT if > 0)",
            ),
            payouts_by_status=self._payouts_by_status(),
            payouts_stuck=self._count(
                select(func.count())
                .select_from(EscrowPayout)
                .where(
                    EscrowPayout.status == PayoutStatus.PROCESSING.value,
                    EscrowPayout.last_attempt_at <= now - self._payout_policy.processing_timeout,
                ),
                "escrow_payouts_stuck",
                "Payouts processing longer than the timeout",
            ),
            payouts_exhausted=self._count(
                select(func.count())
                .select_from(EscrowPayout)
                .where(
                    EscrowPayout.status == PayoutStatus.FAILED.value,
                    EscrowPayout.attempt_count >= self._payout_policy.max_attempts,
                ),
                "escrow_payouts_exhausted",
                "Failed payouts that need manual action",
            ),
            refund_shortfalls=self._count(
                select(func.count())
                .select_from(EscrowPayment)
                .where(EscrowPayment.flagged_reason == REFUND_SHORTFALL),
                "escrow_refund_shortfalls",
                "Refunded payments flagged for manual reconciliation",
            ),
            ledger_entries_total=Counter(
                name="escrow_ledger_entries_total",
                value=self._session.execute(select(func.count()).select_from(EscrowLedgerEntry)).scalar() or 0,
                help_text="Total escrow ledger entries",
            ),
            collected_at=now,
        )

    def _count(self, query: Any, name: str, help_text: str) -> Gauge:
        return Gauge(name=name, value=self._session.execute(query).scalar() or 0, help_text=help_text)

    def _payments_by_status(self) -> list[Gauge]:
        counts = dict(
            self._session.execute(
                select(EscrowPayment.status, func.count()).group_by(EscrowPayment.status)
            ).all()
        )
        return [
            Gauge(
                name="escrow_payments",
                value=int(counts.get(status.value, 0)),
                labels={"status": status.value},
                help_text="Payments by status",
            )
            for status in PaymentStatus
        ]

    def _escrow_balance(self) -> Gauge:
        total = self._session.execute(
            select(func.coalesce(func.sum(EscrowPayment.gross_amount), 0)).where(
                EscrowPayment.status.in_([PaymentStatus.IN_ESCROW.value, PaymentStatus.DISPUTED.value])
            )
        ).scalar()
        return Gauge(
            name="escrow_balance_minor_units",
            value=int(total or 0),
            help_text="Money currently held in escrow or dispute",
        )

    def _due_for_release(self, now: datetime) -> Gauge:
        return self._count(
            select(func.count())
            .select_from(EscrowPayment)
            .where(
                EscrowPayment.status == PaymentStatus.IN_ESCROW.value,
                EscrowPayment.is_flagged.is_(False),
                EscrowPayment.scheduled_release_at <= now,
            ),
            "escrow_payments_due_for_release",
            "Unflagged payments past their hold window",
        )

    def _disputes_at_risk(self, now: datetime) -> Gauge:
        active = self._session.execute(
            select(EscrowDispute).where(
                EscrowDispute.status.in_(ACTIVE_STATUSES),
                EscrowDispute.sla_deadline > now,
            )
        ).scalars()
        at_risk = sum(
            1 for d in active if compute_sla_status(d, now, self._dispute_policy) == SlaStatus.AT_RISK
        )
        return Gauge(
            name="escrow_disputes_at_risk",
            value=at_risk,
            help_text="Active disputes inside the SLA warning margin",
        )

    def _payouts_by_status(self) -> list[Gauge]:
        counts = dict(
            self._session.execute(
                select(EscrowPayout.status, func.count()).group_by(EscrowPayout.status)
            ).all()
        )
        return [
            Gauge(
                name="escrow_payouts",
                value=int(counts.get(status.value, 0)),
                labels={"status": status.value},
                help_text="Payouts by status",
            )
            for status in PayoutStatus
        ]


@dataclass
class HealthSummary:
    """Health summary for operators."""

    collected_at: str
    escrow_balance: int
    due_for_release: int
    sla_breaches: int
    stuck_payouts: int
    exhausted_payouts: int
    refund_shortfalls: int
    alerts: list[str]


def generate_health_summary(
    session: Session,
    clock: Clock,
    payout_policy: PayoutPolicy | None = None,
    dispute_policy: DisputePolicy | None = None,
) -> HealthSummary:
    metrics = MetricsCollector(session, clock, payout_policy, dispute_policy).collect_all()

    alerts = []
    if metrics.disputes_sla_breached.value > 0:
        alerts.append(f"CRITICAL: {metrics.disputes_sla_breached.value} disputes breached their SLA")
    if metrics.payouts_exhausted.value > 0:
        alerts.append(f"WARNING: {metrics.payouts_exhausted.value} payouts exhausted their retries")
    if metrics.refund_shortfalls.value > 0:
        alerts.append(f"WARNING: {metrics.refund_shortfalls.value} refunds left a shortfall to reconcile")
    if metrics.payouts_stuck.value > 0:
        alerts.append(f"WARNING: {metrics.payouts_stuck.value} payouts stuck in processing")
    if metrics.payments_due_for_release.value > 0:
        alerts.append(f"INFO: {metrics.payments_due_for_release.value} payments waiting for auto-release")

    return HealthSummary(
        collected_at=metrics.collected_at.isoformat(),
        escrow_balance=int(metrics.escrow_balance.value),
        due_for_release=int(metrics.payments_due_for_release.value),
        sla_breaches=int(metrics.disputes_sla_breached.value),
        stuck_payouts=int(metrics.payouts_stuck.value),
        exhausted_payouts=int(metrics.payouts_exhausted.value),
        refund_shortfalls=int(metrics.refund_shortfalls.value),
        alerts=alerts,
    )
