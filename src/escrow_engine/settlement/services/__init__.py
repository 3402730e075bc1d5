"""Settlement services."""

from escrow_engine.settlement.services.dispute_service import (
    DisputeService,
    DisputeStateMachine,
    compute_sla_status,
)
from escrow_engine.settlement.services.hold_manager import HoldManager
from escrow_engine.settlement.services.ledger_service import EscrowLedger
from escrow_engine.settlement.services.locking import PaymentLockRegistry, payment_lock
from escrow_engine.settlement.services.payout_dispatcher import PayoutDispatcher
from escrow_engine.settlement.services.projection import apply_entry, replay_entries
from escrow_engine.settlement.services.refund_processor import RefundProcessor, auto_refund_key
from escrow_engine.settlement.services.reporting import ReportingService
from escrow_engine.settlement.services.state_machine import PaymentStateMachine

__all__ = [
    "EscrowLedger",
    "PaymentStateMachine",
    "apply_entry",
    "replay_entries",
    "HoldManager",
    "DisputeService",
    "DisputeStateMachine",
    "compute_sla_status",
    "RefundProcessor",
    "auto_refund_key",
    "PayoutDispatcher",
    "ReportingService",
    "PaymentLockRegistry",
    "payment_lock",
]
