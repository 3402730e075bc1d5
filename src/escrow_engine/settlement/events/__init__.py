"""Escrow domain events package.

This package provides:
- Typed domain events for escrow, dispute, refund and payout operations
- Event emitter for publishing events to handlers
"""

from escrow_engine.settlement.events.emitter import EventBatch, EventCollector, EventEmitter
from escrow_engine.settlement.events.types import (
    # Base
    DomainEvent,
    EventCategory,
    EventMetadata,
    # Escrow Events
    EscrowHeld,
    EscrowOpened,
    EscrowReleased,
    EscrowUnheld,
    # Dispute Events
    DisputeEscalated,
    DisputeOpened,
    DisputeResolved,
    DisputeSlaBreached,
    # Refund Events
    RefundCompleted,
    RefundShortfallFlagged,
    # Payout Events
    PayoutCompleted,
    PayoutFailed,
    PayoutQueued,
)

__all__ = [
    "DomainEvent",
    "EventCategory",
    "EventMetadata",
    "EventEmitter",
    "EventBatch",
    "EventCollector",
    "EscrowOpened",
    "EscrowHeld",
    "EscrowUnheld",
    "EscrowReleased",
    "DisputeOpened",
    "DisputeEscalated",
    "DisputeResolved",
    "DisputeSlaBreached",
    "RefundCompleted",
    "RefundShortfallFlagged",
    "PayoutQueued",
    "PayoutCompleted",
    "PayoutFailed",
]
