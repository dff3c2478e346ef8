"""
Amount Handling Module

Exact fixed-point amounts for the ledger. Balances and transaction amounts are
Decimals with two decimal places. NEVER uses float for monetary values.
"""

from decimal import Decimal, InvalidOperation, getcontext
from typing import Union
import re

from .errors import InvalidArgument

# Set global decimal context for financial precision
getcontext().prec = 28

SCALE = 2
QUANTUM = Decimal('0.01')
ZERO = Decimal('0.00')

AmountLike = Union[Decimal, int, str]

# Optional sign and currency symbol around the number, whitespace at the edges
_AMOUNT_PATTERN = re.compile(r'^\s*(?P<sign>[+-])?\s*[$€£]?\s*(?P<number>\S+?)\s*$')
_THOUSANDS_PATTERN = re.compile(r'^\d{1,3}(,\d{3})+(\.\d+)?$')
_DECIMAL_COMMA_PATTERN = re.compile(r'^\d+,\d{1,2}$')


def decimal_from_string(value: str) -> Decimal:
    """
    Convert a user-supplied string to Decimal, handling common formats

    Args:
        value: String representation of number ("1,250.50", "$40", "12,5")

    Returns:
        Decimal value

    Raises:
        InvalidArgument: If string cannot be converted to valid Decimal
    """
    if not value or not isinstance(value, str):
        raise InvalidArgument("Amount must be a non-empty string")

    match = _AMOUNT_PATTERN.match(value)
    if not match:
        raise InvalidArgument(f"Cannot convert '{value}' to an amount")
    sign, number = match.group('sign') or '', match.group('number')

    if _THOUSANDS_PATTERN.match(number):
        number = number.replace(',', '')
    elif _DECIMAL_COMMA_PATTERN.match(number):
        number = number.replace(',', '.')
    elif ',' in number:
        raise InvalidArgument(f"Cannot convert '{value}' to an amount")

    try:
        result = Decimal(sign + number)
    except InvalidOperation:
        raise InvalidArgument(f"Cannot convert '{value}' to an amount")
    if not result.is_finite():
        raise InvalidArgument(f"Amount must be finite, got '{value}'")
    return result


def to_amount(value: AmountLike) -> Decimal:
    """
    Normalize an amount to a two decimal place Decimal

    Floats and bools are refused outright. Values carrying more than two
    decimal places are refused instead of being rounded, so no caller ever
    moves a different sum than the one it asked for.
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise InvalidArgument(f"Amount must be an exact decimal, got {type(value).__name__}")

    if isinstance(value, str):
        value = decimal_from_string(value)
    elif isinstance(value, int):
        value = Decimal(value)
    elif not isinstance(value, Decimal):
        raise InvalidArgument(f"Unsupported amount type: {type(value).__name__}")

    if not value.is_finite():
        raise InvalidArgument(f"Amount must be finite, got {value}")

    try:
        quantized = value.quantize(QUANTUM)
    except InvalidOperation:
        raise InvalidArgument(f"Amount {value} is out of range")
    if quantized != value:
        raise InvalidArgument(f"Amount {value} has more than {SCALE} decimal places")
    return quantized


def to_positive_amount(value: AmountLike) -> Decimal:
    """Normalize an amount and require it to be strictly positive"""
    amount = to_amount(value)
    if amount <= ZERO:
        raise InvalidArgument(f"Amount must be positive, got {amount}")
    return amount


def format_amount(amount: Decimal) -> str:
    """Format for display"""
    return f"{amount:,.{SCALE}f}"
