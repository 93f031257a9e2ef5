"""
Money conversion: Decimal coercion, half-up rounding, storage and display forms.
"""
from decimal import Decimal

import pytest

import core
from core.financial_precision import (
    FinancialPrecisionError, format_amount, round_financial, to_decimal, to_float
)


class TestConversion:

    @pytest.mark.parametrize("value, expected", [
        (0.1, Decimal("0.1")),
        (10, Decimal("10")),
        (" 12.345 ", Decimal("12.345")),
        (None, Decimal("0")),
    ])
    def test_to_decimal(self, value, expected):
        assert to_decimal(value) == expected

    @pytest.mark.parametrize("value", [True, "abc", [1]])
    def test_rejects_non_numbers(self, value):
        with pytest.raises(FinancialPrecisionError):
            to_decimal(value)


class TestRounding:

    def test_half_up(self):
        assert round_financial("2.345") == Decimal("2.35")
        assert round_financial(Decimal("-2.345")) == Decimal("-2.35")

    def test_storage_and_display(self):
        assert to_float(Decimal("1361.025")) == 1361.03
        assert format_amount(35.4) == "35.40"

    def test_package_exports_only_conversion_helpers(self):
        exported = {name for name in core.__all__ if name in vars(core.financial_precision)}
        assert exported == {"to_decimal", "round_financial", "to_float", "format_amount", "FinancialPrecisionError"}
