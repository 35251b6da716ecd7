"""
test_fixed_point.py - Unit tests for WAD arithmetic

Tests:
- Quantization to 18 places in both rounding directions
- precise_mul / precise_div rounding and zero division
- Integer WAD encoding
- Normalization to native asset decimals
"""

import pytest
from decimal import Decimal
from hypothesis import given, settings
from hypothesis import strategies as st

from levindex.fixed_point import (
    WAD_QUANTUM,
    to_wad, to_wad_ceil,
    precise_mul, precise_mul_ceil, precise_div, precise_div_ceil,
    to_native, is_dust,
)


class TestQuantization:

    def test_to_wad_truncates(self):
        assert to_wad(Decimal("1.0000000000000000009")) == Decimal("1.000000000000000000")

    def test_to_wad_ceil_rounds_up(self):
        assert to_wad_ceil(Decimal("1.0000000000000000001")) == Decimal("1.000000000000000001")

    def test_float_goes_through_str(self):
        assert to_wad(0.1) == Decimal("0.1")

    def test_negative_truncates_toward_zero(self):
        assert to_wad(Decimal("-1.0000000000000000009")) == Decimal("-1")


class TestPreciseMath:

    def test_mul(self):
        assert precise_mul("0.1", "0.2") == Decimal("0.02")

    def test_div_rounding(self):
        assert precise_div(1, 3) == Decimal("0.333333333333333333")
        assert precise_div_ceil(1, 3) == Decimal("0.333333333333333334")

    def test_mul_ceil(self):
        assert precise_mul_ceil(Decimal("0.333333333333333333"), 3) == Decimal("0.999999999999999999")
        assert precise_mul_ceil(Decimal("1e-18"), Decimal("0.5")) == Decimal("1e-18")

    def test_div_by_zero(self):
        with pytest.raises(ZeroDivisionError):
            precise_div(1, 0)
        with pytest.raises(ZeroDivisionError):
            precise_div_ceil(1, 0)

    @given(
        st.decimals(min_value=0, max_value=10**6, places=18, allow_nan=False, allow_infinity=False),
        st.decimals(min_value=0, max_value=10**6, places=18, allow_nan=False, allow_infinity=False),
    )
    @settings(max_examples=100)
    def test_mul_never_overstates(self, a, b):
        """PROPERTY: precise_mul is within one WAD quantum below the exact product."""
        result = precise_mul(a, b)
        exact = a * b
        assert result <= exact
        assert exact - result < WAD_QUANTUM


class TestNative:

    def test_usdc_six_decimals(self, ledger):
        assert to_native(ledger, "USDC", Decimal("1.2345678")) == Decimal("1.234567")
        assert to_native(ledger, "USDC", Decimal("1.2345671"), round_up=True) == Decimal("1.234568")

    def test_wbtc_eight_decimals(self, ledger):
        assert to_native(ledger, "WBTC", Decimal("0.123456789")) == Decimal("0.12345678")

    def test_exact_amount_unchanged(self, ledger):
        assert to_native(ledger, "USDC", Decimal("5"), round_up=True) == Decimal("5")

    def test_is_dust(self):
        assert is_dust(Decimal("1e-13"), Decimal("1e-12"))
        assert is_dust(Decimal("-1e-13"), Decimal("1e-12"))
        assert not is_dust(Decimal("1e-11"), Decimal("1e-12"))
