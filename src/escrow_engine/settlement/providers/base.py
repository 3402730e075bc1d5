"""Base protocols and types for payout collaborators.

The dispatcher talks to two external systems through these protocols:
- PayoutRail: the payment processor that actually moves money
- RecipientDirectory: the identity subsystem that knows payout methods
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol


@dataclass(frozen=True)
class RailSubmitResult:
    """Result of submitting a payout to a rail."""

    provider_request_id: str
    accepted: bool
    message: str = ""
    retryable: bool = False  # only meaningful when accepted is False


@dataclass(frozen=True)
class PayoutMethod:
    """Where a recipient's money goes. Account details stay tokenized."""

    method: str  # 'bank_transfer', 'instant_card', ...
    account_token: str
    details: dict[str, Any] = field(default_factory=dict)


class PayoutRail(Protocol):
    """Protocol for payout rail adapters.

    Implementations must honor ``timeout_seconds`` and may raise
    TimeoutError or ConnectionError; both are treated as transient.
    """

    provider_name: str

    def submit(self, instruction: dict[str, Any], timeout_seconds: float) -> RailSubmitResult:
        """Submit a payout instruction.

        Args:
            instruction: Payout details including:
                - payout_id: str
                - idempotency_key: str (stable across retries of one attempt)
                - amount: int minor units
                - currency: str
                - recipient_type: 'worker' | 'agency'
                - recipient_id: str
                - method: str
                - account_token: str
            timeout_seconds: Upper bound on the call.
        """
        ...


class RecipientDirectory(Protocol):
    """Read-only view of recipient payout configuration."""

    def payout_method(self, recipient_type: str, recipient_id: str) -> PayoutMethod | None:
        """Configured payout method, or None when the recipient has none."""
        ...
