"""SQLAlchemy ORM models."""

from escrow_engine.models.base import Base, UTCDateTime
from escrow_engine.models.escrow import (
    EscrowDispute,
    EscrowLedgerEntry,
    EscrowPayment,
    EscrowPayout,
    EscrowPayoutAttempt,
    EscrowPayoutItem,
    EscrowRefund,
)

__all__ = [
    "Base",
    "UTCDateTime",
    "EscrowPayment",
    "EscrowLedgerEntry",
    "EscrowDispute",
    "EscrowRefund",
    "EscrowPayout",
    "EscrowPayoutItem",
    "EscrowPayoutAttempt",
]
