"""Fee and commission split calculation.

Rounding policy: platform fee and agency commission are floored to whole
minor units and the remainder goes to the worker, so the three parts
always sum to the gross amount.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from escrow_engine.calculators.money import floor_share, require_minor_units, to_rate
from escrow_engine.errors import InvalidAmount


@dataclass(frozen=True)
class Split:
    """Division of a gross amount between worker, platform and agency."""

    worker_amount: int
    platform_fee: int
    agency_commission: int

    @property
    def total(self) -> int:
        return self.worker_amount + self.platform_fee + self.agency_commission

    def to_dict(self) -> dict[str, int]:
        return {
            "worker_amount": self.worker_amount,
            "platform_fee": self.platform_fee,
            "agency_commission": self.agency_commission,
        }


def compute_split(
    gross_amount: int,
    platform_fee_rate: Decimal | str | int,
    agency_commission_rate: Decimal | str | int,
    urgent_bonus_rate: Decimal | str | int | None = None,
) -> Split:
    """Split a gross shift amount.

    The urgent bonus is carved out of the platform fee and paid to the
    worker; it never exceeds the fee itself.

    Raises:
        InvalidAmount: gross is not positive, a rate is outside [0, 1],
            or fee and commission rates together exceed 1.
    """
    gross = require_minor_units(gross_amount, "gross_amount")
    if gross <= 0:
        raise InvalidAmount(f"gross_amount must be positive, got {gross}")

    fee_rate = to_rate(platform_fee_rate, "platform_fee_rate")
    commission_rate = to_rate(agency_commission_rate, "agency_commission_rate")
    bonus_rate = to_rate(urgent_bonus_rate, "urgent_bonus_rate")

    if fee_rate + commission_rate > 1:
        raise InvalidAmount(
            f"platform_fee_rate + agency_commission_rate exceeds 1 ({fee_rate + commission_rate})"
        )

    platform_fee = floor_share(gross, fee_rate)
    agency_commission = floor_share(gross, commission_rate)
    bonus = min(floor_share(gross, bonus_rate), platform_fee)
    platform_fee -= bonus

    worker_amount = gross - platform_fee - agency_commission
    return Split(
        worker_amount=worker_amount,
        platform_fee=platform_fee,
        agency_commission=agency_commission,
    )


def split_remaining(
    remaining_gross: int,
    platform_fee_rate: Decimal | str | int,
    agency_commission_rate: Decimal | str | int,
    urgent_bonus_rate: Decimal | str | int | None = None,
    *,
    worker_floor: int = 0,
    agency_floor: int = 0,
) -> Split:
    """Re-split a payment's gross after a partial refund.

    ``worker_floor`` and ``agency_floor`` are the portions already committed
    to payouts; they cannot shrink. Any deficit is taken from the platform
    fee first. Zero gross yields an all-zero split.
    """
    if remaining_gross < worker_floor + agency_floor:
        raise InvalidAmount(
            f"remaining gross {remaining_gross} is below committed payouts "
            f"{worker_floor + agency_floor}"
        )
    if remaining_gross == 0:
        return Split(0, 0, 0)

    base = compute_split(remaining_gross, platform_fee_rate, agency_commission_rate, urgent_bonus_rate)
    worker = max(base.worker_amount, worker_floor)
    agency = max(base.agency_commission, agency_floor)
    fee = remaining_gross - worker - agency

    if fee < 0:
        deficit = -fee
        fee = 0
        take = min(deficit, worker - worker_floor)
        worker -= take
        deficit -= take
        agency -= deficit

    return Split(worker_amount=worker, platform_fee=fee, agency_commission=agency)
