"""Stub payout rail and in-memory directory for local development and testing.

Replace with a real processor adapter and the identity service for production.
"""

from __future__ import annotations

import logging
import uuid
from collections import deque
from typing import Any

from escrow_engine.settlement.providers.base import PayoutMethod, RailSubmitResult

logger = logging.getLogger(__name__)

OUTCOMES = ("accept", "reject", "transient", "timeout", "connection_error")


class StubPayoutRail:
    """Scriptable payout rail.

    Outcomes are consumed in order from the script; once it runs dry every
    submission gets ``default``. Outcomes:

    - accept: payout accepted
    - reject: declined, not retryable
    - transient: declined, retryable
    - timeout: raises TimeoutError
    - connection_error: raises ConnectionError
    """

    provider_name = "stub_rail"

    def __init__(self, default: str = "accept", script: list[str] | None = None):
        if default not in OUTCOMES:
            raise ValueError(f"Unknown outcome {default!r}")
        self.default = default
        self._script: deque[str] = deque()
        self.submissions: list[dict[str, Any]] = []
        self.script(*(script or []))

    def script(self, *outcomes: str) -> None:
        """Queue outcomes for the next submissions."""
        for outcome in outcomes:
            if outcome not in OUTCOMES:
                raise ValueError(f"Unknown outcome {outcome!r}")
            self._script.append(outcome)

    def submit(self, instruction: dict[str, Any], timeout_seconds: float) -> RailSubmitResult:
        outcome = self._script.popleft() if self._script else self.default
        self.submissions.append({**instruction, "outcome": outcome, "timeout_seconds": timeout_seconds})
        logger.debug("Stub rail %s for payout %s", outcome, instruction.get("payout_id"))

        if outcome == "timeout":
            raise TimeoutError(f"stub rail timed out after {timeout_seconds}s")
        if outcome == "connection_error":
            raise ConnectionError("stub rail unreachable")

        request_id = f"STUB-{uuid.uuid4().hex[:12].upper()}"
        if outcome == "accept":
            return RailSubmitResult(provider_request_id=request_id, accepted=True, message="stub accepted")
        if outcome == "transient":
            return RailSubmitResult(
                provider_request_id=request_id,
                accepted=False,
                message="processor temporarily unavailable",
                retryable=True,
            )
        return RailSubmitResult(
            provider_request_id=request_id,
            accepted=False,
            message="account closed",
            retryable=False,
        )

    @property
    def call_count(self) -> int:
        return len(self.submissions)


class InMemoryRecipientDirectory:
    """Recipient payout methods kept in a dict."""

    def __init__(self) -> None:
        self._methods: dict[tuple[str, str], PayoutMethod] = {}

    def register(
        self,
        recipient_type: str,
        recipient_id: str,
        method: str = "bank_transfer",
        account_token: str | None = None,
    ) -> PayoutMethod:
        payout_method = PayoutMethod(
            method=method,
            account_token=account_token or f"tok_{recipient_type}_{recipient_id}",
        )
        self._methods[(recipient_type, recipient_id)] = payout_method
        return payout_method

    def remove(self, recipient_type: str, recipient_id: str) -> None:
        self._methods.pop((recipient_type, recipient_id), None)

    def payout_method(self, recipient_type: str, recipient_id: str) -> PayoutMethod | None:
        return self._methods.get((recipient_type, recipient_id))
