"""
Test suite for currency module

Tests Money, amount formatting and Decimal coercion of report inputs.
"""

import pytest
from decimal import Decimal

from core_reporting.currency import (
    Money, Currency, format_amount, decimal_from_string, to_decimal, validate_decimal_precision
)


class TestMoney:
    """Test Money class operations"""

    def test_rounds_to_currency_precision(self):
        assert Money(Decimal("100.555"), Currency.TZS).amount == Decimal("100.56")
        assert Money("100.5", Currency.TZS).amount == Decimal("100.50")

    def test_arithmetic(self):
        a = Money(Decimal("100.50"), Currency.TZS)
        b = Money(Decimal("50.25"), Currency.TZS)
        assert (a + b).amount == Decimal("150.75")
        assert (a - b).amount == Decimal("50.25")
        assert (b * Decimal("2")).amount == Decimal("100.50")
        assert (-a).amount == Decimal("-100.50")
        assert abs(-a) == a

    def test_mixed_currency_rejected(self):
        with pytest.raises(ValueError, match="Cannot add"):
            Money(Decimal("1"), Currency.TZS) + Money(Decimal("1"), Currency.USD)
        with pytest.raises(ValueError, match="Cannot compare"):
            Money(Decimal("1"), Currency.TZS) < Money(Decimal("1"), Currency.USD)

    def test_comparisons_and_sign(self):
        zero = Money.zero(Currency.TZS)
        one = Money(Decimal("1"), Currency.TZS)
        assert zero.is_zero()
        assert one.is_positive()
        assert (-one).is_negative()
        assert one > zero
        assert zero < one
        assert one != Decimal("1")

    def test_hashable(self):
        assert len({Money("1.00", Currency.TZS), Money("1", Currency.TZS)}) == 1

    def test_to_string(self):
        assert Money(Decimal("1500000"), Currency.TZS).to_string() == "TZS 1,500,000.00"


class TestFormatting:
    """Test report amount formatting"""

    def test_format_amount(self):
        assert format_amount(Decimal("651600000")) == "TZS 651,600,000.00"
        assert format_amount(Decimal("-100000"), Currency.USD) == "USD -100,000.00"


class TestDecimalParsing:
    """Test conversion of raw inputs"""

    @pytest.mark.parametrize("text,expected", [
        ("1500000", Decimal("1500000")),
        ("TZS 1,500,000.00", Decimal("1500000.00")),
        ("1,500,000", Decimal("1500000")),
        ("2,500", Decimal("2500")),
        ("-25000", Decimal("-25000")),
    ])
    def test_decimal_from_string(self, text, expected):
        assert decimal_from_string(text) == expected

    def test_invalid_strings(self):
        with pytest.raises(ValueError):
            decimal_from_string("")
        with pytest.raises(ValueError, match="Cannot convert"):
            decimal_from_string("abc")

    @pytest.mark.parametrize("text", ["1,50", "100,5", "1,5000"])
    def test_ambiguous_comma_rejected(self, text):
        """Test a lone comma not followed by a three-digit group is refused"""
        with pytest.raises(ValueError, match="Ambiguous"):
            decimal_from_string(text)
        with pytest.raises(ValueError, match="Ambiguous"):
            to_decimal(text)

    def test_to_decimal(self):
        assert to_decimal(Decimal("1.5")) == Decimal("1.5")
        assert to_decimal(7) == Decimal("7")
        assert to_decimal(0.1) == Decimal("0.1")
        assert to_decimal("2,000") == Decimal("2000")
        assert to_decimal(None) == Decimal("0")

    def test_to_decimal_rejects_other_types(self):
        with pytest.raises(ValueError, match="Boolean"):
            to_decimal(True)
        with pytest.raises(ValueError):
            to_decimal([1])

    def test_validate_decimal_precision(self):
        assert validate_decimal_precision(Decimal("493.150684"), Currency.TZS) == Decimal("493.15")
        assert validate_decimal_precision(Decimal("328.767"), Currency.TZS) == Decimal("328.77")
