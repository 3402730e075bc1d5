"""Payout rail and recipient directory adapters."""

from escrow_engine.settlement.providers.base import (
    PayoutMethod,
    PayoutRail,
    RailSubmitResult,
    RecipientDirectory,
)
from escrow_engine.settlement.providers.stub import InMemoryRecipientDirectory, StubPayoutRail

__all__ = [
    "PayoutMethod",
    "PayoutRail",
    "RailSubmitResult",
    "RecipientDirectory",
    "InMemoryRecipientDirectory",
    "StubPayoutRail",
]
