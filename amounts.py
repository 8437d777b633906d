"""
Exact amount arithmetic for the ledger.

All amounts are integers in the chain's smallest unit (wei). They are handled as
Decimal inside WEI_CONTEXT, which raises instead of rounding, and stored as plain
decimal strings.
"""
from decimal import (
    Context,
    Decimal,
    DivisionByZero,
    Inexact,
    InvalidOperation,
    Overflow,
    Rounded,
)

# a product of two uint256 values has at most 155 digits
WEI_CONTEXT = Context(prec=160, traps=[InvalidOperation, DivisionByZero, Overflow, Inexact, Rounded])

ZERO = Decimal(0)


def to_amount(value) -> Decimal:
    """Parse an int, decimal string or 0x-prefixed hex quantity."""
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, str):
        s = value.strip()
        if s.lower().startswith("0x"):
            return Decimal(int(s, 16)) if len(s) > 2 else ZERO
        return Decimal(s)
    raise TypeError(f"Unsupported amount type: {type(value).__name__}")


def format_amount(value) -> str:
    # '{:f}' avoids exponent notation, e.g. Decimal('5E+18')
    return f"{to_amount(value):f}"
