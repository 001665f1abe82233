"""
Money Module

Exact fixed-point money for all loan arithmetic. Amounts are Decimal and are
never rounded implicitly: rounding happens only when a schedule row, a penalty
or an installment figure is produced, via Money.quantize(). NEVER uses float.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Union
import re

from .errors import InvalidTermError

# High precision context so intermediate annuity factors stay exact to the cent
getcontext().prec = 28


class Currency(Enum):
    """ISO 4217 currency codes with minor-unit precision (never below 2)"""
    USD = ("USD", 2)
    EUR = ("EUR", 2)
    GBP = ("GBP", 2)
    KES = ("KES", 2)  # Kenyan Shilling
    ZMW = ("ZMW", 2)  # Zambian Kwacha
    NGN = ("NGN", 2)  # Nigerian Naira
    GHS = ("GHS", 2)  # Ghanaian Cedi
    INR = ("INR", 2)
    KWD = ("KWD", 3)  # Kuwaiti Dinar, 3 decimal places

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @property
    def minor_unit(self) -> Decimal:
        """Smallest representable amount, e.g. 0.01"""
        return Decimal(1).scaleb(-self.precision)


Number = Union[Decimal, int, str]


def to_decimal(value: Number) -> Decimal:
    """Convert int/str/Decimal to Decimal without passing through float"""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        raise TypeError("float is not accepted for monetary values, use Decimal or str")
    return Decimal(str(value))


def round_half_up(value: Decimal, precision: int = 2) -> Decimal:
    """Round a Decimal half-up to the given number of fractional digits"""
    return value.quantize(Decimal(1).scaleb(-precision), rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class Money:
    """
    Immutable money value. The amount is kept exact; call quantize() to round
    to the currency's minor unit.
    """
    amount: Decimal
    currency: Currency

    def __post_init__(self):
        if not isinstance(self.amount, Decimal):
            object.__setattr__(self, 'amount', to_decimal(self.amount))

    @classmethod
    def zero(cls, currency: Currency) -> 'Money':
        return cls(Decimal('0'), currency)

    @classmethod
    def of(cls, amount: Number, currency: Currency) -> 'Money':
        """Build Money from an int/str/Decimal amount"""
        return cls(to_decimal(amount), currency)

    def _check_currency(self, other: 'Money', verb: str) -> None:
        if not isinstance(other, Money):
            raise TypeError(f"Cannot {verb} Money and {type(other).__name__}")
        if self.currency != other.currency:
            raise ValueError(f"Cannot {verb} {self.currency.code} and {other.currency.code}")

    def __add__(self, other: 'Money') -> 'Money':
        self._check_currency(other, "add")
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: 'Money') -> 'Money':
        self._check_currency(other, "subtract")
        return Money(self.amount - other.amount, self.currency)

    def __mul__(self, multiplier: Number) -> 'Money':
        return Money(self.amount * to_decimal(multiplier), self.currency)

    __rmul__ = __mul__

    def __truediv__(self, divisor: Number) -> 'Money':
        divisor = to_decimal(divisor)
        if divisor == 0:
            raise InvalidTermError("Cannot divide money by zero")
        return Money(self.amount / divisor, self.currency)

    def __neg__(self) -> 'Money':
        return Money(-self.amount, self.currency)

    def __abs__(self) -> 'Money':
        return Money(abs(self.amount), self.currency)

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

    def quantize(self) -> 'Money':
        """Round half-up to the currency's minor unit"""
        return Money(round_half_up(self.amount, self.currency.precision), self.currency)

    def is_quantized(self) -> bool:
        """True when the amount has no digits finer than the minor unit"""
        return self.amount == round_half_up(self.amount, self.currency.precision)

    def is_zero(self) -> bool:
        return self.amount == Decimal('0')

    def is_positive(self) -> bool:
        return self.amount > Decimal('0')

    def is_negative(self) -> bool:
        return self.amount < Decimal('0')

    def min(self, other: 'Money') -> 'Money':
        """Smaller of two amounts in the same currency"""
        return self if self <= other else other

    def to_string(self) -> str:
        """Format for display"""
        return f"{self.currency.code} {self.amount:,.{self.currency.precision}f}"

    def __str__(self) -> str:
        return self.to_string()


def sum_money(values: Iterable[Money], currency: Currency) -> Money:
    """Sum an iterable of Money, returning zero for an empty iterable"""
    total = Money.zero(currency)
    for value in values:
        total = total + value
    return total


def decimal_from_string(value: str) -> Decimal:
    """
    Safely convert a user-entered string to Decimal, handling common formats

    Args:
        value: String representation of number, e.g. "1,234.50" or "K 1 000"

    Returns:
        Decimal value

    Raises:
        ValueError: If the string cannot be converted to a valid Decimal
    """
    if not value or not isinstance(value, str):
        raise ValueError("Value must be a non-empty string")

    # Remove currency symbols and whitespace
    clean_value = re.sub(r'[^\d.,\-+]', '', value.strip())

    if ',' in clean_value and '.' in clean_value:
        # Both present: comma is the thousands separator
        clean_value = clean_value.replace(',', '')
    elif ',' in clean_value and clean_value.count(',') == 1:
        whole, fraction = clean_value.split(',')
        if len(fraction) == 3:
            clean_value = whole + fraction  # 1,000
        else:
            clean_value = f"{whole}.{fraction}"  # 12,5
    elif ',' in clean_value:
        clean_value = clean_value.replace(',', '')

    try:
        result = Decimal(clean_value)
    except InvalidOperation:
        raise ValueError(f"Cannot convert '{value}' to Decimal")
    if not result.is_finite():
        raise ValueError(f"Cannot convert '{value}' to Decimal")
    return result
