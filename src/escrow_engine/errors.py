"""Error taxonomy for the escrow engine.

Every error carries a stable ``kind`` string. API responses, batch results
and operator alerts key off ``kind``, never off the class name.
"""

from __future__ import annotations

from typing import Any


class EscrowError(Exception):
    """Base class for all domain errors raised by the engine."""

    kind = "escrow_error"

    def __init__(self, reason: str | None = None, **context: Any):
        self.reason = reason or self.__class__.__name__
        self.context = context
        super().__init__(self.reason)

    def to_dict(self) -> dict[str, Any]:
        """Structured form used by command results and the API."""
        return {"kind": self.kind, "reason": self.reason, **{k: str(v) for k, v in self.context.items()}}


class InvalidAmount(EscrowError):
    """Amount or rate outside the accepted range."""

    kind = "invalid_amount"


class InvalidTransition(EscrowError):
    """Requested action is not legal from the current status."""

    kind = "invalid_transition"

    def __init__(self, from_status: str, action: str, reason: str | None = None):
        self.from_status = from_status
        self.action = action
        msg = f"Invalid transition '{action}' from '{from_status}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg, from_status=from_status, action=action)


class AlreadyResolved(EscrowError):
    """Dispute has already been resolved."""

    kind = "already_resolved"


class NoActiveDispute(EscrowError):
    """No active dispute exists for the target."""

    kind = "no_active_dispute"


class InsufficientBalance(EscrowError):
    """Refund exceeds the un-disbursed balance of the payment."""

    kind = "insufficient_balance"

    def __init__(self, requested: int, available: int):
        self.requested = requested
        self.available = available
        super().__init__(
            f"Requested {requested} exceeds un-disbursed balance {available}",
            requested=requested,
            available=available,
        )


class RecipientUnconfigured(EscrowError):
    """Recipient has no payout method on file."""

    kind = "recipient_unconfigured"


class RailRejected(EscrowError):
    """The external payment rail declined the payout."""

    kind = "rail_rejected"


class Transient(EscrowError):
    """Network error or timeout talking to the rail; retryable."""

    kind = "transient"


class BelowMinimumThreshold(EscrowError):
    """Payout amount is below the configured floor; it stays queued."""

    kind = "below_minimum_threshold"


class AlreadyCompleted(EscrowError):
    """Payout is closed to further attempts."""

    kind = "already_completed"


class RetriesExhausted(AlreadyCompleted):
    """Payout reached the attempt ceiling and needs manual intervention."""

    kind = "retries_exhausted"


class NotFound(EscrowError):
    """Referenced record does not exist."""

    kind = "not_found"


class PaymentNotFound(NotFound):
    pass


class DisputeNotFound(NotFound):
    pass


class PayoutNotFound(NotFound):
    pass


class NotAuthorized(EscrowError):
    """Privileged command issued without an admin actor."""

    kind = "not_authorized"


class RefundNotPermitted(EscrowError):
    """Automatic refund requested for a condition the policy does not allow."""

    kind = "refund_not_permitted"


class LedgerUnavailable(EscrowError):
    """Storage failure while writing the ledger; command aborted."""

    kind = "ledger_unavailable"
