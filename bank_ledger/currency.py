"""
Money and Currency Module

Handles ISO 4217 currency codes and fixed-point Decimal amounts for all
balance math. NEVER uses float for monetary values.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP, getcontext
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .errors import InvalidAmount

# Set global decimal context for financial precision
getcontext().prec = 28  # High precision for financial calculations

# Integer digits allowed in any Money value (balances included). Keeps sums of
# two in-range values exact under the 28-digit context.
MAX_MONEY_DIGITS = 18

# Integer digits allowed in a single caller-supplied amount
MAX_AMOUNT_DIGITS = 15


class Currency(Enum):
    """ISO 4217 Currency Codes with precision info"""
    USD = ("USD", 2)  # US Dollar, 2 decimal places
    EUR = ("EUR", 2)  # Euro, 2 decimal places
    GBP = ("GBP", 2)  # British Pound, 2 decimal places
    NGN = ("NGN", 2)  # Nigerian Naira, 2 decimal places
    JPY = ("JPY", 0)  # Japanese Yen, 0 decimal places

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @property
    def unit(self) -> Decimal:
        """Smallest representable amount, e.g. 0.01 for USD"""
        return Decimal('0.1') ** self.precision


@dataclass(frozen=True)
class Money:
    """
    Immutable money representation with currency and proper precision.
    All monetary values MUST use this class or raw Decimal.
    """
    amount: Decimal
    currency: Currency

    def __post_init__(self):
        if isinstance(self.amount, float):
            raise TypeError("Money amounts must not be floats")
        if not isinstance(self.amount, Decimal):
            object.__setattr__(self, 'amount', Decimal(str(self.amount)))

        if not self.amount.is_finite() or self.amount.adjusted() >= MAX_MONEY_DIGITS:
            raise InvalidAmount(
                f"{self.currency.code} amount exceeds {MAX_MONEY_DIGITS} integer digits",
                amount=str(self.amount)
            )

        # Round to currency precision
        try:
            rounded = self.amount.quantize(self.currency.unit, rounding=ROUND_HALF_UP)
        except InvalidOperation:
            raise InvalidAmount(f"{self.currency.code} amount out of range", amount=str(self.amount))
        object.__setattr__(self, 'amount', rounded)

    @classmethod
    def zero(cls, currency: Currency) -> 'Money':
        return cls(Decimal('0'), currency)

    def _check_currency(self, other: 'Money', verb: str) -> None:
        if self.currency != other.currency:
            raise ValueError(f"Cannot {verb} {self.currency.code} and {other.currency.code}")

    def __add__(self, other: 'Money') -> 'Money':
        self._check_currency(other, "add")
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: 'Money') -> 'Money':
        self._check_currency(other, "subtract")
        return Money(self.amount - other.amount, self.currency)

    def __neg__(self) -> 'Money':
        return Money(-self.amount, self.currency)

    def __eq__(self, other) -> bool:
        if not isinstance(other, Money):
            return False
        return self.amount == other.amount and self.currency == other.currency

    def __hash__(self) -> int:
        return hash((self.amount, self.currency))

    def __lt__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.amount < other.amount

    def __le__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.amount <= other.amount

    def __gt__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.amount > other.amount

    def __ge__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
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

    def to_string(self) -> str:
        """Format for display"""
        if self.currency.precision == 0:
            return f"{self.currency.code} {self.amount:,.0f}"
        return f"{self.currency.code} {self.amount:,.{self.currency.precision}f}"


def parse_amount(value: Any, currency: Currency) -> Money:
    """
    Validate a caller-supplied amount and convert it to Money.

    Accepts Decimal, int, decimal strings and Money in the same currency.
    The amount must be strictly positive and must not carry more fractional
    digits than the currency allows; it is never rounded into range.

    Raises:
        InvalidAmount: On floats, malformed input, non-positive values, wrong scale
            or more than MAX_AMOUNT_DIGITS integer digits
    """
    if isinstance(value, Money):
        if value.currency != currency:
            raise InvalidAmount(
                f"Amount currency {value.currency.code} does not match {currency.code}",
                amount=value.to_string()
            )
        amount = value.amount
    elif isinstance(value, (bool, float)):
        raise InvalidAmount("Amount must be a Decimal, integer or decimal string", amount=value)
    elif isinstance(value, int):
        amount = Decimal(value)
    elif isinstance(value, Decimal):
        amount = value
    elif isinstance(value, str):
        try:
            amount = Decimal(value.strip())
        except InvalidOperation:
            raise InvalidAmount(f"Cannot convert '{value}' to a decimal amount", amount=value)
    else:
        raise InvalidAmount(f"Unsupported amount type {type(value).__name__}", amount=value)

    if not amount.is_finite():
        raise InvalidAmount("Amount must be a finite number", amount=value)

    if amount <= 0:
        raise InvalidAmount("Amount must be positive", amount=value)

    if amount.adjusted() >= MAX_AMOUNT_DIGITS:
        raise InvalidAmount(
            f"Amount exceeds {MAX_AMOUNT_DIGITS} integer digits", amount=value
        )

    try:
        scaled = amount.quantize(currency.unit)
    except InvalidOperation:
        raise InvalidAmount("Amount is too large", amount=value)

    if scaled != amount:
        raise InvalidAmount(
            f"Amount has more than {currency.precision} fractional digits for {currency.code}",
            amount=value
        )

    return Money(scaled, currency)

