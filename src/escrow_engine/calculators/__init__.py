"""Money and fee calculation."""

from escrow_engine.calculators.fees import Split, compute_split, split_remaining
from escrow_engine.calculators.money import floor_share, require_minor_units, to_rate

__all__ = [
    "Split",
    "compute_split",
    "split_remaining",
    "floor_share",
    "require_minor_units",
    "to_rate",
]
