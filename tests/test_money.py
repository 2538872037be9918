"""Tests for fixed-point money arithmetic."""

from decimal import Decimal
from fractions import Fraction

import pytest
from pydantic import ValidationError

from split_ledger.exceptions import CurrencyMismatchError
from split_ledger.money import (
    Money,
    allocate,
    allocate_minor_units,
    currency_exponent,
    multiply_by_ratio,
    to_minor_units,
)


class TestMinorUnits:
    """Test conversion from major units."""

    def test_two_decimal_currency(self):
        assert to_minor_units(Decimal("12.34"), "USD") == 1234

    def test_half_rounds_up(self):
        assert to_minor_units(Decimal("12.345"), "USD") == 1235
        assert to_minor_units(Decimal("-12.345"), "USD") == -1235

    def test_zero_and_three_decimal_currencies(self):
        assert currency_exponent("JPY") == 0
        assert currency_exponent("kwd") == 3
        assert to_minor_units(Decimal("1500"), "JPY") == 1500
        assert to_minor_units(Decimal("1.234"), "KWD") == 1234


class TestMoney:
    """Test the Money value type."""

    def test_parse(self):
        money = Money.parse("90.00")
        assert money.amount == 9000
        assert money.currency == "USD"

    def test_parse_rejects_float(self):
        with pytest.raises(TypeError):
            Money.parse(0.1)

    def test_amount_must_be_an_integer(self):
        with pytest.raises(ValidationError):
            Money(amount=1.5, currency="USD")

    def test_currency_is_normalized(self):
        assert Money(amount=1, currency="eur").currency == "EUR"
        with pytest.raises(ValidationError):
            Money(amount=1, currency="EURO")

    def test_arithmetic(self):
        assert (Money(amount=150) + Money(amount=50)).amount == 200
        assert (Money(amount=150) - Money(amount=200)).amount == -50
        assert abs(Money(amount=-7)).amount == 7
        assert (-Money(amount=7)).amount == -7

    def test_currency_mismatch(self):
        with pytest.raises(CurrencyMismatchError):
            Money(amount=1, currency="USD") + Money(amount=1, currency="EUR")

    def test_display(self):
        assert str(Money(amount=123450)) == "1,234.50 USD"
        assert str(Money(amount=1500, currency="JPY")) == "1,500 JPY"


class TestMultiplyByRatio:
    """Test exact ratio scaling."""

    def test_rounds_half_away_from_zero(self):
        assert multiply_by_ratio(Money(amount=5), 1, 2).amount == 3
        assert multiply_by_ratio(Money(amount=-5), 1, 2).amount == -3

    def test_exact_rational_product(self):
        assert multiply_by_ratio(Money(amount=1000), 1, 3).amount == 333
        scaled = multiply_by_ratio(Money(amount=1000), Decimal("33.33"), 100)
        assert scaled.amount == 333

    def test_zero_denominator(self):
        with pytest.raises(ValueError):
            multiply_by_ratio(Money(amount=1), 1, 0)

    def test_float_ratio_rejected(self):
        with pytest.raises(TypeError):
            multiply_by_ratio(Money(amount=1), 0.5, 1)


class TestAllocate:
    """Test largest-remainder allocation."""

    def test_equal_thirds(self):
        """100 cents in three gives the extra cent to the first part."""
        assert allocate_minor_units(100, [1, 1, 1]) == [34, 33, 33]

    def test_largest_remainder_wins(self):
        assert allocate_minor_units(1000, [1, 2, 3]) == [167, 333, 500]

    def test_ties_go_to_earlier_weight(self):
        assert allocate_minor_units(5, [1, 1]) == [3, 2]
        assert allocate_minor_units(1, [1, 1, 1]) == [1, 0, 0]

    def test_negative_total(self):
        assert allocate_minor_units(-100, [1, 1, 1]) == [-34, -33, -33]

    def test_decimal_and_fraction_weights(self):
        parts = allocate_minor_units(10000, [Decimal("33.33"), Fraction(1, 3), 0])
        assert sum(parts) == 10000
        assert parts[2] == 0

    def test_sum_is_always_exact(self):
        for total in (1, 7, 99, 1001, 123457):
            for weights in ([1], [1, 1], [3, 5, 7], [Decimal("12.5"), 1, 2, 0]):
                assert sum(allocate_minor_units(total, weights)) == total

    def test_invalid_weights(self):
        with pytest.raises(ValueError):
            allocate_minor_units(100, [])
        with pytest.raises(ValueError):
            allocate_minor_units(100, [0, 0])
        with pytest.raises(ValueError):
            allocate_minor_units(100, [2, -1])

    def test_allocate_money(self):
        parts = allocate(Money(amount=100, currency="EUR"), [1, 1, 1])
        assert [p.amount for p in parts] == [34, 33, 33]
        assert {p.currency for p in parts} == {"EUR"}
        assert Money(amount=10).allocate([1, 1]) == [Money(amount=5), Money(amount=5)]
