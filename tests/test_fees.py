"""Tests for the fee split calculators and money helpers."""

from decimal import Decimal

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from escrow_engine.calculators.fees import compute_split, split_remaining
from escrow_engine.calculators.money import floor_share, format_minor_units, require_minor_units, to_rate
from escrow_engine.errors import InvalidAmount

rates = st.integers(min_value=0, max_value=100).map(lambda n: Decimal(n) / 100)
amounts = st.integers(min_value=1, max_value=10**12)


class TestComputeSplit:
    """Tests for splitting a gross shift amount."""

    def test_default_marketplace_split(self):
        """15% platform fee and 10% agency commission on $100.00."""
        split = compute_split(10_000, Decimal("0.15"), Decimal("0.10"))
        assert split.platform_fee == 1_500
        assert split.agency_commission == 1_000
        assert split.worker_amount == 7_500
        assert split.total == 10_000

    def test_no_agency(self):
        split = compute_split(10_000, "0.15", "0")
        assert split.agency_commission == 0
        assert split.worker_amount == 8_500

    def test_fractional_cents_go_to_worker(self):
        """Fee and commission are floored; the worker gets the remainder."""
        split = compute_split(999, "0.15", "0.10")
        assert split.platform_fee == 149
        assert split.agency_commission == 99
        assert split.worker_amount == 751

    def test_urgent_bonus_comes_out_of_platform_fee(self):
        split = compute_split(10_000, "0.15", "0.10", "0.05")
        assert split.platform_fee == 1_000
        assert split.worker_amount == 8_000
        assert split.agency_commission == 1_000

    def test_urgent_bonus_capped_at_platform_fee(self):
        split = compute_split(10_000, "0.05", "0", "0.20")
        assert split.platform_fee == 0
        assert split.worker_amount == 10_000

    @pytest.mark.parametrize("gross", [0, -100])
    def test_non_positive_gross_rejected(self, gross):
        with pytest.raises(InvalidAmount):
            compute_split(gross, "0.15", "0.10")

    def test_float_gross_rejected(self):
        with pytest.raises(InvalidAmount):
            compute_split(100.0, "0.15", "0.10")

    def test_rates_over_one_rejected(self):
        with pytest.raises(InvalidAmount, match="exceeds 1"):
            compute_split(10_000, "0.60", "0.50")

    @given(gross=amounts, fee=rates, commission=rates, bonus=rates)
    @settings(max_examples=300)
    def test_parts_always_sum_to_gross(self, gross, fee, commission, bonus):
        """No minor unit is ever created or lost by the split."""
        if fee + commission > 1:
            with pytest.raises(InvalidAmount):
                compute_split(gross, fee, commission, bonus)
            return
        split = compute_split(gross, fee, commission, bonus)
        assert split.total == gross
        assert split.worker_amount >= 0
        assert split.platform_fee >= 0
        assert split.agency_commission >= 0


class TestSplitRemaining:
    """Tests for re-splitting after a partial refund."""

    def test_resplit_at_original_rates(self):
        split = split_remaining(8_000, "0.15", "0")
        assert split.platform_fee == 1_200
        assert split.worker_amount == 6_800

    def test_zero_remaining(self):
        split = split_remaining(0, "0.15", "0.10")
        assert split.total == 0

    def test_committed_worker_portion_is_kept(self):
        """A worker portion already sent to the rail cannot shrink."""
        split = split_remaining(8_000, "0.15", "0", worker_floor=7_500)
        assert split.worker_amount == 7_500
        assert split.platform_fee == 500

    def test_below_committed_rejected(self):
        with pytest.raises(InvalidAmount):
            split_remaining(5_000, "0.15", "0.10", worker_floor=4_000, agency_floor=2_000)

    @given(
        remaining=st.integers(min_value=0, max_value=10**9),
        worker_share=st.floats(min_value=0, max_value=1),
        agency_share=st.floats(min_value=0, max_value=1),
        fee=st.integers(min_value=0, max_value=50).map(lambda n: Decimal(n) / 100),
        commission=st.integers(min_value=0, max_value=50).map(lambda n: Decimal(n) / 100),
    )
    @settings(max_examples=300)
    def test_floors_and_conservation(self, remaining, worker_share, agency_share, fee, commission):
        worker_floor = int(remaining * worker_share)
        agency_floor = int((remaining - worker_floor) * agency_share)
        split = split_remaining(
            remaining, fee, commission, worker_floor=worker_floor, agency_floor=agency_floor
        )
        assert split.total == remaining
        assert split.worker_amount >= worker_floor
        assert split.agency_commission >= agency_floor
        assert split.platform_fee >= 0


class TestMoneyHelpers:
    def test_to_rate_accepts_strings_and_decimals(self):
        assert to_rate("0.15") == Decimal("0.15")
        assert to_rate(Decimal("0.1")) == Decimal("0.1")
        assert to_rate(0) == Decimal("0")
        assert to_rate(None) == Decimal("0")

    @pytest.mark.parametrize("value", [0.15, True, "-0.1", "1.5", "abc", "NaN"])
    def test_to_rate_rejects(self, value):
        with pytest.raises(InvalidAmount):
            to_rate(value)

    def test_require_minor_units(self):
        assert require_minor_units(5) == 5
        with pytest.raises(InvalidAmount):
            require_minor_units(False)

    def test_floor_share_is_exact(self):
        assert floor_share(333, Decimal("0.15")) == 49
        assert floor_share(10**15 + 1, Decimal("0.5")) == 5 * 10**14

    def test_format_minor_units(self):
        assert format_minor_units(7_500) == "75.00 USD"
        assert format_minor_units(-5, "EUR") == "-0.05 EUR"
