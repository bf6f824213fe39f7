"""
Money Helpers

Monetary amounts are plain Decimals held at cent precision. NEVER uses float
for monetary values.

Rounding policy: ROUND_HALF_UP at 2 decimal places, applied everywhere a
monetary value is derived (payment, interest, principal). Provision amounts
are the exact product of balance and rate and are not rounded.
"""

from decimal import Decimal, ROUND_HALF_UP, getcontext
from typing import Union

# High precision for intermediate annuity factors
getcontext().prec = 28

CENT = Decimal('0.01')
ZERO = Decimal('0.00')

Amount = Union[Decimal, int, str]


def to_decimal(value: Amount) -> Decimal:
    """Convert to Decimal without passing through float"""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        raise TypeError("Monetary values must not be floats")
    return Decimal(str(value))


def round_money(value: Amount) -> Decimal:
    """Round to cents with the engine-wide ROUND_HALF_UP policy"""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def format_money(value: Decimal) -> str:
    """Format for logs and notification payloads"""
    return f"{round_money(value):,.2f}"
