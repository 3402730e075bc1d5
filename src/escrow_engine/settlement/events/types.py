"""Domain event types for escrow operations.

All events are:
- Immutable (frozen dataclasses)
- Typed with explicit payloads
- Traceable via metadata
- Serializable for logging and notification handlers

Money fields are integer minor units.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4


class EventCategory(str, Enum):
    """Event categories for routing and filtering."""

    ESCROW = "escrow"
    DISPUTE = "dispute"
    REFUND = "refund"
    PAYOUT = "payout"


@dataclass(frozen=True)
class EventMetadata:
    """Metadata attached to every domain event."""

    event_id: UUID
    timestamp: datetime
    correlation_id: UUID
    actor_id: str
    actor_type: str  # 'system', 'admin', 'scheduler'
    source_service: str = "escrow"
    version: int = 1

    @classmethod
    def create(
        cls,
        timestamp: datetime,
        actor_id: str = "system",
        actor_type: str = "system",
        correlation_id: UUID | None = None,
    ) -> EventMetadata:
        """Create metadata with auto-generated ids. Time comes from the caller's clock."""
        return cls(
            event_id=uuid4(),
            timestamp=timestamp,
            correlation_id=correlation_id or uuid4(),
            actor_id=actor_id,
            actor_type=actor_type,
        )


@dataclass(frozen=True)
class DomainEvent:
    """Base class for all escrow domain events."""

    metadata: EventMetadata

    @property
    def event_type(self) -> str:
        """Event type name for routing."""
        return self.__class__.__name__

    @property
    def category(self) -> EventCategory:
        """Event category for filtering."""
        raise NotImplementedError("Subclasses must define category")

    def to_dict(self) -> dict[str, Any]:
        data = _serialize(asdict(self))
        data["event_type"] = self.event_type
        data["category"] = self.category.value
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


def _serialize(obj: Any) -> Any:
    if isinstance(obj, dict):
        return {k: _serialize(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_serialize(v) for v in obj]
    if isinstance(obj, UUID):
        return str(obj)
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, Enum):
        return obj.value
    return obj


# =============================================================================
# Escrow Events
# =============================================================================


@dataclass(frozen=True)
class EscrowOpened(DomainEvent):
    """Funds for a completed shift entered escrow."""

    payment_id: UUID
    shift_ref: str
    gross_amount: int
    worker_amount: int
    platform_fee: int
    agency_commission: int
    scheduled_release_at: datetime

    @property
    def category(self) -> EventCategory:
        return EventCategory.ESCROW


@dataclass(frozen=True)
class EscrowHeld(DomainEvent):
    payment_id: UUID
    reason: str

    @property
    def category(self) -> EventCategory:
        return EventCategory.ESCROW


@dataclass(frozen=True)
class EscrowUnheld(DomainEvent):
    payment_id: UUID
    scheduled_release_at: datetime

    @property
    def category(self) -> EventCategory:
        return EventCategory.ESCROW


@dataclass(frozen=True)
class EscrowReleased(DomainEvent):
    """Escrow released; worker and agency portions queued for payout."""

    payment_id: UUID
    worker_amount: int
    agency_commission: int
    override: bool

    @property
    def category(self) -> EventCategory:
        return EventCategory.ESCROW


# =============================================================================
# Dispute Events
# =============================================================================


@dataclass(frozen=True)
class DisputeOpened(DomainEvent):
    dispute_id: UUID
    payment_id: UUID
    priority: str
    sla_deadline: datetime

    @property
    def category(self) -> EventCategory:
        return EventCategory.DISPUTE


@dataclass(frozen=True)
class DisputeEscalated(DomainEvent):
    dispute_id: UUID
    escalation_level: int
    priority: str

    @property
    def category(self) -> EventCategory:
        return EventCategory.DISPUTE


@dataclass(frozen=True)
class DisputeResolved(DomainEvent):
    dispute_id: UUID
    payment_id: UUID
    outcome: str

    @property
    def category(self) -> EventCategory:
        return EventCategory.DISPUTE


@dataclass(frozen=True)
class DisputeSlaBreached(DomainEvent):
    """Dispute passed its SLA deadline while still active. Operator alert."""

    dispute_id: UUID
    payment_id: UUID
    sla_deadline: datetime

    @property
    def category(self) -> EventCategory:
        return EventCategory.DISPUTE


# =============================================================================
# Refund Events
# =============================================================================


@dataclass(frozen=True)
class RefundCompleted(DomainEvent):
    refund_id: UUID
    payment_id: UUID
    amount: int
    refund_type: str
    trigger: str

    @property
    def category(self) -> EventCategory:
        return EventCategory.REFUND


@dataclass(frozen=True)
class RefundShortfallFlagged(DomainEvent):
    """Full refund could not reverse portions already committed to payouts."""

    refund_id: UUID
    payment_id: UUID
    shortfall_amount: int

    @property
    def category(self) -> EventCategory:
        return EventCategory.REFUND


# =============================================================================
# Payout Events
# =============================================================================


@dataclass(frozen=True)
class PayoutQueued(DomainEvent):
    payout_id: UUID
    payment_id: UUID
    recipient_type: str
    recipient_id: str
    amount: int

    @property
    def category(self) -> EventCategory:
        return EventCategory.PAYOUT


@dataclass(frozen=True)
class PayoutCompleted(DomainEvent):
    payout_id: UUID
    amount: int
    attempt_count: int

    @property
    def category(self) -> EventCategory:
        return EventCategory.PAYOUT


@dataclass(frozen=True)
class PayoutFailed(DomainEvent):
    payout_id: UUID
    error_kind: str
    message: str
    attempt_count: int
    retryable: bool

    @property
    def category(self) -> EventCategory:
        return EventCategory.PAYOUT
