"""Integer minor-unit money helpers.

Money is always an ``int`` count of minor currency units (cents). Rates
are ``Decimal`` fractions in ``[0, 1]``. Floats are rejected outright.
"""

from __future__ import annotations

from decimal import ROUND_FLOOR, Decimal, InvalidOperation

from escrow_engine.errors import InvalidAmount

ZERO_RATE = Decimal("0")
ONE = Decimal("1")


def require_minor_units(amount: object, name: str = "amount") -> int:
    """Validate that ``amount`` is an integer count of minor units."""
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmount(f"{name} must be an integer number of minor units, got {amount!r}")
    return amount


def to_rate(value: object, name: str = "rate") -> Decimal:
    """Parse a rate into a ``Decimal`` in ``[0, 1]``.

    Accepts ``Decimal``, ``int`` and decimal strings such as ``"0.15"``.
    """
    if value is None:
        return ZERO_RATE
    if isinstance(value, (float, bool)):
        raise InvalidAmount(f"{name} must be a Decimal or decimal string, not {type(value).__name__}")
    if isinstance(value, Decimal):
        rate = value
    elif isinstance(value, (int, str)):
        try:
            rate = Decimal(str(value).strip())
        except InvalidOperation:
            raise InvalidAmount(f"{name} is not a decimal number: {value!r}") from None
    else:
        raise InvalidAmount(f"Unsupported {name} type: {type(value).__name__}")

    if not rate.is_finite() or rate < ZERO_RATE or rate > ONE:
        raise InvalidAmount(f"{name} must be within [0, 1], got {rate}")
    return rate


def floor_share(amount: int, rate: Decimal) -> int:
    """``floor(amount * rate)`` computed exactly."""
    return int((Decimal(amount) * rate).to_integral_value(rounding=ROUND_FLOOR))


def format_minor_units(amount: int, currency: str = "USD") -> str:
    """Human-readable amount for log lines, e.g. ``"75.00 USD"``."""
    sign = "-" if amount < 0 else ""
    whole, cents = divmod(abs(amount), 100)
    return f"{sign}{whole}.{cents:02d} {currency}"
