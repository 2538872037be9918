"""Fixed-point money arithmetic in integer minor units.

Amounts are never held as binary floats. A Money value is an integer count of
the currency's smallest unit (cents for USD, yen for JPY) plus the ISO code,
and all arithmetic stays in minor units until display.
"""

import math
from collections.abc import Sequence
from decimal import ROUND_HALF_UP, Decimal
from fractions import Fraction

from pydantic import BaseModel, ConfigDict, StrictInt, field_validator

from .exceptions import CurrencyMismatchError

# ISO 4217 currencies whose minor unit is not 1/100
ZERO_DECIMAL_CURRENCIES = frozenset(
    "BIF CLP DJF GNF ISK JPY KMF KRW PYG RWF UGX VND VUV XAF XOF XPF".split()
)
THREE_DECIMAL_CURRENCIES = frozenset({"BHD", "IQD", "JOD", "KWD", "LYD", "OMR", "TND"})

Weight = int | Decimal | Fraction


def currency_exponent(currency: str) -> int:
    """Number of decimal places in the currency's minor unit."""
    code = currency.upper()
    if code in ZERO_DECIMAL_CURRENCIES:
        return 0
    if code in THREE_DECIMAL_CURRENCIES:
        return 3
    return 2


def to_minor_units(amount: Decimal, currency: str) -> int:
    """
    Convert a Decimal major-unit amount to integer minor units.
    Uses ROUND_HALF_UP for consistency.

    Args:
        amount: Amount in major units (e.g. dollars)
        currency: ISO currency code

    Returns:
        Amount in minor units (integer)
    """
    scaled = amount.scaleb(currency_exponent(currency))
    return int(scaled.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _as_fraction(value: Weight) -> Fraction:
    if isinstance(value, bool) or not isinstance(value, (int, Decimal, Fraction)):
        raise TypeError(f"Expected int or Decimal, got {type(value).__name__}")
    return Fraction(value)


def _round_half_up(value: Fraction) -> int:
    """Round to the nearest integer, halves away from zero."""
    magnitude = math.floor(abs(value) + Fraction(1, 2))
    return -magnitude if value < 0 else magnitude


class Money(BaseModel):
    """An exact amount of money in minor units."""

    model_config = ConfigDict(frozen=True)

    amount: StrictInt
    currency: str = "USD"

    @field_validator("currency")
    @classmethod
    def _normalize_currency(cls, value: str) -> str:
        code = value.strip().upper()
        if len(code) != 3 or not code.isalpha():
            raise ValueError(f"Invalid ISO currency code: {value!r}")
        return code

    @classmethod
    def zero(cls, currency: str = "USD") -> "Money":
        return cls(amount=0, currency=currency)

    @classmethod
    def parse(cls, value: str | Decimal | int, currency: str = "USD") -> "Money":
        """Build Money from a major-unit amount such as "12.34"."""
        if isinstance(value, float):
            raise TypeError("Refusing to parse a float amount; pass a str or Decimal")
        minor = to_minor_units(Decimal(str(value)), currency)
        return cls(amount=minor, currency=currency)

    def to_decimal(self) -> Decimal:
        """Amount in major units."""
        return Decimal(self.amount).scaleb(-currency_exponent(self.currency))

    def is_zero(self) -> bool:
        return self.amount == 0

    def allocate(self, weights: Sequence[Weight]) -> list["Money"]:
        return allocate(self, weights)

    def __add__(self, other: "Money") -> "Money":
        return add(self, other)

    def __sub__(self, other: "Money") -> "Money":
        return subtract(self, other)

    def __neg__(self) -> "Money":
        return Money(amount=-self.amount, currency=self.currency)

    def __abs__(self) -> "Money":
        return Money(amount=abs(self.amount), currency=self.currency)

    def __str__(self) -> str:
        return f"{self.to_decimal():,} {self.currency}"


def _check_currency(left: Money, right: Money) -> None:
    if left.currency != right.currency:
        raise CurrencyMismatchError(left.currency, right.currency)


def add(left: Money, right: Money) -> Money:
    _check_currency(left, right)
    return Money(amount=left.amount + right.amount, currency=left.currency)


def subtract(left: Money, right: Money) -> Money:
    _check_currency(left, right)
    return Money(amount=left.amount - right.amount, currency=left.currency)


def multiply_by_ratio(amount: Money, numerator: Weight, denominator: Weight) -> Money:
    """
    Scale an amount by numerator/denominator, rounding half away from zero.

    The product is computed with exact rational arithmetic, so only the final
    rounding step can lose a fraction of a minor unit.
    """
    denom = _as_fraction(denominator)
    if denom == 0:
        raise ValueError("Ratio denominator must not be zero")
    exact = Fraction(amount.amount) * _as_fraction(numerator) / denom
    return Money(amount=_round_half_up(exact), currency=amount.currency)


def allocate_minor_units(total: int, weights: Sequence[Weight]) -> list[int]:
    """
    Split an integer total proportionally to weights without losing a unit.

    Steps:
    1. Compute each exact proportional share as a fraction
    2. Take the floor of every share
    3. Hand the leftover units, one each, to the shares with the largest
       fractional remainder (ties go to the earlier weight)

    Args:
        total: Amount in minor units
        weights: Non-negative weights, at least one positive

    Returns:
        List of minor-unit amounts in input order, summing exactly to total

    Raises:
        ValueError: If weights are empty, negative or sum to zero
    """
    if not weights:
        raise ValueError("At least one weight is required")
    if total < 0:
        return [-part for part in allocate_minor_units(-total, weights)]

    parts = [_as_fraction(w) for w in weights]
    if any(part < 0 for part in parts):
        raise ValueError("Weights must not be negative")
    weight_sum = sum(parts, Fraction(0))
    if weight_sum <= 0:
        raise ValueError("Weights must sum to a positive value")

    exact = [total * part / weight_sum for part in parts]
    floors = [math.floor(share) for share in exact]
    remainder = total - sum(floors)

    by_remainder = sorted(range(len(exact)), key=lambda i: (-(exact[i] - floors[i]), i))
    for index in by_remainder[:remainder]:
        floors[index] += 1

    return floors


def allocate(amount: Money, weights: Sequence[Weight]) -> list[Money]:
    """Allocate Money proportionally to weights; the parts sum to amount exactly."""
    return [
        Money(amount=part, currency=amount.currency)
        for part in allocate_minor_units(amount.amount, weights)
    ]
