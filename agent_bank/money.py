"""
Money Module

Fixed-point currency amounts with cent precision. All balances, transfer
amounts, interest and penalties go through this type. NEVER uses float for
monetary values.
"""

from decimal import Decimal, ROUND_HALF_UP, getcontext
from dataclasses import dataclass
from typing import Union
import re

from .errors import InvalidAmount

# High precision for intermediate interest math
getcontext().prec = 28

CENT = Decimal('0.01')

# Optional sign and dollar sign, digits with optional comma grouping, optional fraction
AMOUNT_PATTERN = re.compile(r'^([+-]?)\$?\s*(\d{1,3}(?:,\d{3})+|\d+)(\.\d+)?$')

Numeric = Union['Money', Decimal, int, float, str]


def quantize_cents(value: Decimal) -> Decimal:
    """Round a Decimal half-up to two decimal places"""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def to_decimal(value) -> Decimal:
    """Convert int/float/str/Decimal to Decimal without binary float drift"""
    if isinstance(value, Money):
        return value.amount
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise ValueError("Boolean is not a numeric amount")
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    if isinstance(value, str):
        return decimal_from_string(value)
    raise ValueError(f"Cannot convert {type(value).__name__} to Decimal")


@dataclass(frozen=True)
class Money:
    """
    Immutable money representation rounded to cents.
    Comparisons and arithmetic only mix Money with Money.
    """
    amount: Decimal

    def __post_init__(self):
        if not isinstance(self.amount, Decimal):
            object.__setattr__(self, 'amount', to_decimal(self.amount))

        if not self.amount.is_finite():
            raise ValueError("Money amount must be finite")

        object.__setattr__(self, 'amount', quantize_cents(self.amount))

    @classmethod
    def zero(cls) -> 'Money':
        return cls(Decimal('0'))

    @classmethod
    def of(cls, value: Numeric) -> 'Money':
        """Build Money from any supported numeric input"""
        if isinstance(value, Money):
            return value
        return cls(to_decimal(value))

    @classmethod
    def parse(cls, value) -> 'Money':
        """Parse caller-supplied input, raising InvalidAmount on garbage"""
        try:
            return cls.of(value)
        except (ValueError, TypeError):
            raise InvalidAmount("Amount must be a valid number")

    def __add__(self, other: 'Money') -> 'Money':
        if not isinstance(other, Money):
            return NotImplemented
        return Money(self.amount + other.amount)

    def __sub__(self, other: 'Money') -> 'Money':
        if not isinstance(other, Money):
            return NotImplemented
        return Money(self.amount - other.amount)

    def __mul__(self, multiplier: Decimal) -> 'Money':
        if not isinstance(multiplier, Decimal):
            multiplier = to_decimal(multiplier)
        return Money(self.amount * multiplier)

    def __truediv__(self, divisor: Decimal) -> 'Money':
        if not isinstance(divisor, Decimal):
            divisor = to_decimal(divisor)
        return Money(self.amount / divisor)

    def __neg__(self) -> 'Money':
        return Money(-self.amount)

    def __abs__(self) -> 'Money':
        return Money(abs(self.amount))

    def __lt__(self, other: 'Money') -> bool:
        return self.amount < other.amount

    def __le__(self, other: 'Money') -> bool:
        return self.amount <= other.amount

    def __gt__(self, other: 'Money') -> bool:
        return self.amount > other.amount

    def __ge__(self, other: 'Money') -> bool:
        return self.amount >= other.amount

    def is_zero(self) -> bool:
        """Check if amount is exactly zero"""
        return self.amount == Decimal('0')

    def is_positive(self) -> bool:
        """Check if amount is positive"""
        return self.amount > Decimal('0')

    def is_negative(self) -> bool:
        """Check if amount is negative"""
        return self.amount < Decimal('0')

    def min(self, other: 'Money') -> 'Money':
        return self if self <= other else other

    def to_float(self) -> float:
        """Numeric representation for response payloads"""
        return float(self.amount)

    def to_string(self) -> str:
        """Format for display"""
        return f"${self.amount:,.2f}"

    def __str__(self) -> str:
        return str(self.amount)


def decimal_from_string(value: str) -> Decimal:
    """
    Safely convert string to Decimal, handling common formats

    Args:
        value: String representation of number, optionally with a
            leading dollar sign and comma thousands separators.
            Exponents, decimal commas and stray characters are rejected

    Returns:
        Decimal value

    Raises:
        ValueError: If string cannot be converted to valid Decimal
    """
    if not value or not isinstance(value, str):
        raise ValueError("Value must be a non-empty string")

    match = AMOUNT_PATTERN.match(value.strip())
    if match is None:
        raise ValueError(f"Cannot convert '{value}' to Decimal")

    sign, whole, fraction = match.groups()
    return Decimal(sign + whole.replace(',', '') + (fraction or ''))
