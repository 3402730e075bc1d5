"""Escrow Engine Command Line Interface.

Provides operational tools for:
- Schema creation
- Running the scheduler (once or on an interval)
- Releasing due payments
- Retrying payouts
- Ledger replay of a payment
- Reconciliation of every payment against its ledger
- Finance summary
- Metrics emission

Usage:
    python -m escrow_engine.cli init-db
    python -m escrow_engine.cli run-scheduler --interval 60
    python -m escrow_engine.cli release-due --as-of 2026-01-08T00:00:00Z
    python -m escrow_engine.cli retry-payouts --all-failed --admin-id ops-7
    python -m escrow_engine.cli replay --payment-id X
    python -m escrow_engine.cli reconcile
    python -m escrow_engine.cli summary --start 2026-01-01T00:00:00Z
    python -m escrow_engine.cli metrics --format prometheus
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from datetime import datetime, timezone
from typing import Any, Callable
from uuid import UUID

from sqlalchemy.orm import Session, sessionmaker

from escrow_engine.config import get_settings
from escrow_engine.database import init_db
from escrow_engine.errors import EscrowError
from escrow_engine.logging_config import configure_logging
from escrow_engine.models import Base
from escrow_engine.settlement.clock import Clock, SystemClock
from escrow_engine.settlement.config import EngineConfig, validate_production_config
from escrow_engine.settlement.coordinator import SettlementCoordinator
from escrow_engine.settlement.metrics import MetricsCollector, generate_health_summary
from escrow_engine.settlement.providers import InMemoryRecipientDirectory, StubPayoutRail
from escrow_engine.settlement.providers.base import PayoutRail, RecipientDirectory
from escrow_engine.settlement.scheduler import EscrowScheduler
from escrow_engine.settlement.types import Actor

logger = logging.getLogger(__name__)


def parse_datetime(s: str) -> datetime:
    """Parse ISO datetime string. Naive values are taken as UTC."""
    value = datetime.fromisoformat(s.replace("Z", "+00:00"))
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def parse_uuid(s: str) -> UUID:
    """Parse UUID string."""
    return UUID(s)


class EscrowCli:
    """Escrow Engine Command Line Interface.

    The stub rail and in-memory directory are used unless a deployment
    passes real adapters in.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session] | None = None,
        *,
        config: EngineConfig | None = None,
        rail: PayoutRail | None = None,
        directory: RecipientDirectory | None = None,
        clock: Clock | None = None,
        out: Any = None,
    ) -> None:
        self.parser = self._build_parser()
        self._session_factory = session_factory
        self.config = config or get_settings().engine_config()
        self.rail = rail or StubPayoutRail()
        self.directory = directory or InMemoryRecipientDirectory()
        self.clock = clock or SystemClock()
        self.out = out or sys.stdout

    def _build_parser(self) -> argparse.ArgumentParser:
        """Build argument parser."""
        parser = argparse.ArgumentParser(
            prog="python -m escrow_engine.cli",
            description="Escrow engine operational tools",
        )
        parser.add_argument("--database-url", help="Override DATABASE_URL")
        parser.add_argument("--log-level", help="Override LOG_LEVEL")
        subparsers = parser.add_subparsers(dest="command", help="Commands")

        subparsers.add_parser("init-db", help="Create the escrow tables")

        scheduler = subparsers.add_parser("run-scheduler", help="Run the periodic escrow jobs")
        scheduler.add_argument(
            "--interval",
            type=float,
            help="Seconds between runs (default: SCHEDULER_INTERVAL_SECONDS or 60)",
        )
        scheduler.add_argument("--once", action="store_true", help="Run a single pass and exit")
        scheduler.add_argument(
            "--workers",
            type=int,
            help="Parallel release workers (default: SCHEDULER_WORKERS or 4)",
        )

        release = subparsers.add_parser("release-due", help="Release payments past their hold window")
        release.add_argument("--as-of", type=parse_datetime, help="Release as of this time (ISO format)")

        retry = subparsers.add_parser("retry-payouts", help="Retry failed payouts")
        retry.add_argument(
            "--all-failed",
            action="store_true",
            help="Retry every failed payout, not just those whose backoff elapsed (admin)",
        )
        retry.add_argument("--admin-id", help="Admin actor id, required with --all-failed")

        replay = subparsers.add_parser("replay", help="Replay a payment's ledger and reconcile it")
        replay.add_argument("--payment-id", type=parse_uuid, required=True, help="Payment to replay")
        replay.add_argument("--entries", action="store_true", help="Also print every ledger entry")

        subparsers.add_parser("reconcile", help="Compare every payment row with its replayed ledger")

        summary = subparsers.add_parser("summary", help="Finance summary over a date range")
        summary.add_argument("--start", type=parse_datetime, help="Range start (ISO format)")
        summary.add_argument("--end", type=parse_datetime, help="Range end, exclusive (ISO format)")

        metrics = subparsers.add_parser("metrics", help="Emit operator metrics")
        metrics.add_argument(
            "--format",
            choices=["prometheus", "json", "health"],
            default="prometheus",
            help="Output format (default: prometheus)",
        )

        return parser

    def run(self, args: list[str] | None = None) -> int:
        """Run CLI with arguments."""
        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help()
            return 1

        configure_logging(parsed.log_level or get_settings().log_level)
        if parsed.database_url:
            _, self._session_factory = init_db(parsed.database_url)

        commands: dict[str, Callable[[argparse.Namespace], int]] = {
            "init-db": self._cmd_init_db,
            "run-scheduler": self._cmd_run_scheduler,
            "release-due": self._cmd_release_due,
            "retry-payouts": self._cmd_retry_payouts,
            "replay": self._cmd_replay,
            "reconcile": self._cmd_reconcile,
            "summary": self._cmd_summary,
            "metrics": self._cmd_metrics,
        }

        try:
            return commands[parsed.command](parsed)
        except EscrowError as e:
            print(f"ERROR [{e.kind}]: {e.reason}", file=sys.stderr)
            return 1

    # ------------------------------------------------------------------

    @property
    def session_factory(self) -> sessionmaker[Session]:
        if self._session_factory is None:
            _, self._session_factory = init_db()
        return self._session_factory

    def _print(self, text: str = "") -> None:
        print(text, file=self.out)

    def _print_json(self, data: Any) -> None:
        self._print(json.dumps(data, indent=2, default=str))

    def _with_coordinator(self, work: Callable[[SettlementCoordinator], Any]) -> Any:
        with self.session_factory() as session:
            try:
                result = work(
                    SettlementCoordinator(
                        session,
                        self.config,
                        rail=self.rail,
                        directory=self.directory,
                        clock=self.clock,
                    )
                )
                session.commit()
            except Exception:
                session.rollback()
                raise
        return result

    def _scheduler(self, workers: int | None = None) -> EscrowScheduler:
        return EscrowScheduler(
            self.session_factory,
            self.config,
            rail=self.rail,
            directory=self.directory,
            clock=self.clock,
            max_workers=workers or get_settings().scheduler_workers,
        )

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def _cmd_init_db(self, args: argparse.Namespace) -> int:
        """Create tables and report config warnings."""
        with self.session_factory() as session:
            Base.metadata.create_all(session.get_bind())
        self._print("Escrow tables ready.")
        for issue in validate_production_config(self.config):
            self._print(issue)
        return 0

    def _cmd_run_scheduler(self, args: argparse.Namespace) -> int:
        scheduler = self._scheduler(args.workers)
        while True:
            run = scheduler.run_once()
            self._print_json(run.to_dict())
            if args.once:
                return 0
            time.sleep(args.interval or get_settings().scheduler_interval_seconds)

    def _cmd_release_due(self, args: argparse.Namespace) -> int:
        batch = self._scheduler().release_due(args.as_of)
        self._print(batch.summary())
        for result in batch.failed:
            self._print(f"  {result.target_id}: {result.error_kind} {result.reason}")
        return 0 if not batch.failed else 2

    def _cmd_retry_payouts(self, args: argparse.Namespace) -> int:
        if args.all_failed:
            if not args.admin_id:
                print("ERROR: --all-failed needs --admin-id", file=sys.stderr)
                return 1
            actor = Actor.admin(args.admin_id)
            batch = self._with_coordinator(lambda c: c.retry_all_failed_payouts(actor))
        else:
            batch = self._scheduler().retry_due()
        self._print(batch.summary())
        for result in batch.failed:
            self._print(f"  {result.target_id}: {result.error_kind} {result.reason}")
        return 0

    def _cmd_replay(self, args: argparse.Namespace) -> int:
        """Replay a payment and compare it with its stored row."""

        def replay(c: SettlementCoordinator) -> tuple[Any, dict[str, Any], list[Any]]:
            entries = c.entries(args.payment_id) if args.entries else []
            return c.replay(args.payment_id), c.reconcile(args.payment_id), entries

        state, drift, entries = self._with_coordinator(replay)

        self._print(f"Payment {state.payment_id} ({state.status.value})")
        self._print("=" * 60)
        for key in ("gross_amount", "worker_amount", "platform_fee", "agency_commission", "refunded_amount"):
            self._print(f"  {key:20} {getattr(state, key)}")
        for entry in entries:
            self._print(
                f"  #{entry.sequence:<3} {entry.entry_type:16} {entry.amount_delta:>10} "
                f"{entry.occurred_at.isoformat()} by {entry.actor_id}"
            )
        self._print("=" * 60)
        if not drift:
            self._print("Ledger and stored row agree.")
            return 0
        self._print(f"{len(drift)} field(s) differ (stored vs replayed):")
        for name, (stored, replayed) in drift.items():
            self._print(f"  - {name}: {stored} != {replayed}")
        return 2

    def _cmd_reconcile(self, args: argparse.Namespace) -> int:
        report = self._with_coordinator(lambda c: c.reconcile_all())
        if not report:
            self._print("All payments agree with their ledgers.")
            return 0
        self._print(f"{len(report)} payment(s) drifted:")
        for payment_id, drift in report.items():
            fields = ", ".join(f"{name}: {stored} != {replayed}" for name, (stored, replayed) in drift.items())
            self._print(f"  {payment_id}: {fields}")
        return 2

    def _cmd_summary(self, args: argparse.Namespace) -> int:
        summary = self._with_coordinator(lambda c: c.finance_summary(args.start, args.end))
        self._print_json(summary.to_dict())
        return 0

    def _cmd_metrics(self, args: argparse.Namespace) -> int:
        """Emit metrics."""
        with self.session_factory() as session:
            if args.format == "health":
                health = generate_health_summary(session, self.clock, self.config.payouts, self.config.disputes)
                self._print_json(health.__dict__)
                return 0 if not health.alerts else 2
            metrics = MetricsCollector(session, self.clock, self.config.payouts, self.config.disputes).collect_all()
        if args.format == "json":
            self._print(metrics.to_json())
        else:
            self._print(metrics.to_prometheus())
        return 0


def main() -> int:
    """CLI entry point."""
    cli = EscrowCli()
    return cli.run()


if __name__ == "__main__":
    sys.exit(main())
