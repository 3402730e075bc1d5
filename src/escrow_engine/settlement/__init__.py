"""Escrow settlement package.

This package contains:
- The settlement coordinator (single entry point for commands and queries)
- Ledger, hold, dispute, refund and payout services
- Payout rail and recipient directory adapters
- Policy configuration
- Domain events
- The periodic scheduler and operator metrics
"""

from escrow_engine.settlement.clock import Clock, FixedClock, SystemClock
from escrow_engine.settlement.config import (
    DisputePolicy,
    EngineConfig,
    FeeSchedule,
    HoldPolicy,
    PayoutPolicy,
    RefundPolicy,
    create_default_config,
    validate_production_config,
)
from escrow_engine.settlement.coordinator import SettlementCoordinator
from escrow_engine.settlement.events import DomainEvent, EventCategory, EventCollector, EventEmitter
from escrow_engine.settlement.metrics import EscrowMetrics, MetricsCollector, generate_health_summary
from escrow_engine.settlement.providers import (
    InMemoryRecipientDirectory,
    PayoutMethod,
    PayoutRail,
    RailSubmitResult,
    RecipientDirectory,
    StubPayoutRail,
)
from escrow_engine.settlement.scheduler import EscrowScheduler, SchedulerRun
from escrow_engine.settlement.types import (
    Actor,
    ActorType,
    AppendResult,
    AutoRefundCondition,
    BatchResult,
    CommandResult,
    DisputeOutcome,
    DisputePriority,
    DisputeStatus,
    EntryType,
    FinanceSummary,
    PaymentState,
    PaymentStatus,
    PayoutResult,
    PayoutStatus,
    RecipientType,
    RefundTrigger,
    RefundType,
    ShiftPaymentInfo,
    SlaReport,
    SlaStatus,
)

__all__ = [
    # Coordinator
    "SettlementCoordinator",
    "EscrowScheduler",
    "SchedulerRun",
    # Clock
    "Clock",
    "SystemClock",
    "FixedClock",
    # Config
    "EngineConfig",
    "FeeSchedule",
    "HoldPolicy",
    "DisputePolicy",
    "RefundPolicy",
    "PayoutPolicy",
    "create_default_config",
    "validate_production_config",
    # Types
    "Actor",
    "ActorType",
    "ShiftPaymentInfo",
    "PaymentState",
    "PaymentStatus",
    "EntryType",
    "AppendResult",
    "CommandResult",
    "BatchResult",
    "DisputeStatus",
    "DisputePriority",
    "DisputeOutcome",
    "SlaStatus",
    "SlaReport",
    "RefundType",
    "RefundTrigger",
    "AutoRefundCondition",
    "PayoutStatus",
    "PayoutResult",
    "RecipientType",
    "FinanceSummary",
    # Providers
    "PayoutRail",
    "RecipientDirectory",
    "RailSubmitResult",
    "PayoutMethod",
    "StubPayoutRail",
    "InMemoryRecipientDirectory",
    # Events
    "DomainEvent",
    "EventCategory",
    "EventEmitter",
    "EventCollector",
    # Metrics
    "EscrowMetrics",
    "MetricsCollector",
    "generate_health_summary",
]
