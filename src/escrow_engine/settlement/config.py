"""Settlement policy configuration.

Explicit configuration for the escrow engine. No hidden defaults that move
money at unexpected times.

Pattern:
    coordinator = SettlementCoordinator(
        session=session,
        config=EngineConfig(
            fees=FeeSchedule(platform_fee_rate=Decimal("0.15")),
            holds=HoldPolicy(hold_period=timedelta(days=7)),
            disputes=DisputePolicy(),
            refunds=RefundPolicy(),
            payouts=PayoutPolicy(max_attempts=3),
        ),
        rail=rail,
        directory=directory,
    )

Rules:
    1. No env vars here. Environment settings live in escrow_engine.config.
    2. No globals. Each coordinator instance has its own config.
    3. Immutable after creation (frozen dataclasses).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal

from escrow_engine.calculators.money import to_rate
from escrow_engine.errors import InvalidAmount

PRIORITIES = ("low", "medium", "high", "urgent")


@dataclass(frozen=True)
class FeeSchedule:
    """
    Fee configuration applied when escrow opens.

    Attributes:
        platform_fee_rate: Platform's share of gross. Default 0.15.
        default_agency_commission_rate: Agency share when an agency is
            attached and the caller supplies no explicit rate. Default 0.10.
        urgent_bonus_rate: Share of gross moved from the platform fee to the
            worker on urgent shifts. Default 0.
    """

    platform_fee_rate: Decimal = Decimal("0.15")
    default_agency_commission_rate: Decimal = Decimal("0.10")
    urgent_bonus_rate: Decimal = Decimal("0")

    def __post_init__(self) -> None:
        """Validate configuration."""
        try:
            fee = to_rate(self.platform_fee_rate, "platform_fee_rate")
            commission = to_rate(self.default_agency_commission_rate, "default_agency_commission_rate")
            to_rate(self.urgent_bonus_rate, "urgent_bonus_rate")
        except InvalidAmount as e:
            raise ValueError(e.reason) from e
        if fee + commission > 1:
            raise ValueError("platform_fee_rate + default_agency_commission_rate cannot exceed 1")


@dataclass(frozen=True)
class HoldPolicy:
    """
    Escrow hold window.

    Attributes:
        hold_period: Time between escrow start and auto-release. Default 7 days.
        short_hold_period: Optional shorter window callers may request for
            trusted businesses. Must not exceed hold_period.
    """

    hold_period: timedelta = timedelta(days=7)
    short_hold_period: timedelta | None = None

    def __post_init__(self) -> None:
        """Validate configuration."""
        if self.hold_period <= timedelta(0):
            raise ValueError("hold_period must be positive")
        if self.hold_period > timedelta(days=30):
            raise ValueError("hold_period cannot exceed 30 days")
        if self.short_hold_period is not None:
            if self.short_hold_period <= timedelta(0):
                raise ValueError("short_hold_period must be positive")
            if self.short_hold_period > self.hold_period:
                raise ValueError("short_hold_period cannot exceed hold_period")

    def period_for(self, short: bool = False) -> timedelta:
        """Hold window to apply for a new escrow."""
        if short and self.short_hold_period is not None:
            return self.short_hold_period
        return self.hold_period


def _default_sla_windows() -> dict[str, timedelta]:
    return {
        "low": timedelta(hours=120),
        "medium": timedelta(hours=120),
        "high": timedelta(hours=48),
        "urgent": timedelta(hours=24),
    }


@dataclass(frozen=True)
class DisputePolicy:
    """
    Dispute SLA configuration.

    Attributes:
        sla_windows: SLA window per priority.
        default_priority: Priority used when the caller gives none. Default "high" (48h).
        warning_percent: Percent of the window after which the SLA is at risk.
            Default 80, so the warning margin is the last 20% of the window.
    """

    sla_windows: dict[str, timedelta] = field(default_factory=_default_sla_windows)
    default_priority: str = "high"
    warning_percent: int = 80

    def __post_init__(self) -> None:
        """Validate configuration."""
        missing = [p for p in PRIORITIES if p not in self.sla_windows]
        if missing:
            raise ValueError(f"sla_windows missing priorities: {missing}")
        if any(w <= timedelta(0) for w in self.sla_windows.values()):
            raise ValueError("sla windows must be positive")
        if self.default_priority not in PRIORITIES:
            raise ValueError(f"default_priority must be one of {PRIORITIES}")
        if not 1 <= self.warning_percent <= 99:
            raise ValueError("warning_percent must be between 1 and 99")

    def sla_window(self, priority: str | None = None) -> timedelta:
        return self.sla_windows[priority or self.default_priority]

    def warning_margin(self, window: timedelta) -> timedelta:
        """Tail of ``window`` during which a dispute counts as at risk."""
        return window * (100 - self.warning_percent) / 100


@dataclass(frozen=True)
class RefundPolicy:
    """
    Refund configuration.

    Attributes:
        auto_conditions: Triggering conditions that may produce an automatic
            refund without an admin.
    """

    auto_conditions: frozenset[str] = frozenset({"worker_no_show", "cancelled_72h_notice"})


@dataclass(frozen=True)
class PayoutPolicy:
    """
    Payout dispatch configuration.

    Attributes:
        max_attempts: Rail attempts per payout before manual action is needed.
        minimum_payout_amount: Payouts below this many minor units stay queued.
        backoff_base: Delay before the first automatic retry of a transient failure.
        backoff_max: Cap on the exponential retry delay.
        rail_timeout_seconds: Timeout handed to the rail for each submission.
        processing_timeout: A payout stuck in processing longer than this is
            treated as a transient failure.
    """

    max_attempts: int = 3
    minimum_payout_amount: int = 100
    backoff_base: timedelta = timedelta(minutes=5)
    backoff_max: timedelta = timedelta(hours=6)
    rail_timeout_seconds: int = 30
    processing_timeout: timedelta = timedelta(minutes=15)

    def __post_init__(self) -> None:
        """Validate configuration."""
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.max_attempts > 20:
            raise ValueError("max_attempts cannot exceed 20")
        if self.minimum_payout_amount < 0:
            raise ValueError("minimum_payout_amount cannot be negative")
        if self.backoff_base <= timedelta(0) or self.backoff_max < self.backoff_base:
            raise ValueError("backoff_base must be positive and not exceed backoff_max")
        if self.rail_timeout_seconds < 1:
            raise ValueError("rail_timeout_seconds must be at least 1")
        if self.processing_timeout <= timedelta(0):
            raise ValueError("processing_timeout must be positive")

    def backoff_delay(self, attempt_count: int) -> timedelta:
        """Delay before retrying after ``attempt_count`` failed attempts."""
        delay = self.backoff_base * (2 ** max(attempt_count - 1, 0))
        return min(delay, self.backoff_max)


@dataclass(frozen=True)
class EngineConfig:
    """
    Complete settlement configuration.

    Attributes:
        fees: Fee schedule.
        holds: Escrow hold policy.
        disputes: Dispute SLA policy.
        refunds: Refund policy.
        payouts: Payout policy.
        currency: ISO currency for new payments.
    """

    fees: FeeSchedule = field(default_factory=FeeSchedule)
    holds: HoldPolicy = field(default_factory=HoldPolicy)
    disputes: DisputePolicy = field(default_factory=DisputePolicy)
    refunds: RefundPolicy = field(default_factory=RefundPolicy)
    payouts: PayoutPolicy = field(default_factory=PayoutPolicy)
    currency: str = "USD"

    def __post_init__(self) -> None:
        """Validate configuration."""
        if len(self.currency) != 3 or not self.currency.isupper():
            raise ValueError("currency must be a 3-letter upper-case ISO code")


# =============================================================================
# Configuration Builders (Optional Convenience)
# =============================================================================


def create_default_config() -> EngineConfig:
    """
    Default configuration: 15% platform fee, 10% agency commission,
    7-day hold, 48h dispute SLA, 3 payout attempts.
    """
    return EngineConfig()


def validate_production_config(config: EngineConfig) -> list[str]:
    """
    Check that a configuration is safe for production.

    Returns a list of warnings. Empty list = safe.
    """
    issues: list[str] = []

    if config.holds.hold_period < timedelta(days=1):
        issues.append("WARNING: hold_period under 1 day leaves little time to raise disputes")

    if config.fees.platform_fee_rate == 0:
        issues.append("WARNING: platform_fee_rate is 0; no platform revenue is retained")

    if config.payouts.minimum_payout_amount == 0:
        issues.append("WARNING: minimum_payout_amount is 0; every cent triggers a rail call")

    if config.payouts.max_attempts > 10:
        issues.append("WARNING: max_attempts above 10 delays surfacing failed payouts")

    if config.disputes.sla_window("urgent") > config.disputes.sla_window("low"):
        issues.append("WARNING: urgent disputes have a longer SLA than low priority ones")

    return issues
