# app/services/billing_math.py
from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

TWOPLACES = Decimal("0.01")
ZERO = Decimal("0.00")


def D(x) -> Decimal:
    """Safe Decimal conversion (never Decimal -= float)."""
    if x is None:
        return Decimal("0")
    if isinstance(x, Decimal):
        return x
    try:
        return Decimal(str(x))  # str() avoids float binary issues
    except (InvalidOperation, ValueError):
        return Decimal("0")


def money(x) -> Decimal:
    """Money rounding to 2 decimals."""
    return D(x).quantize(TWOPLACES, rounding=ROUND_HALF_UP)


def money_or_none(x):
    return None if x is None else money(x)


def percent_of(base, rate) -> Decimal:
    base = D(base)
    rate = D(rate)
    if base <= 0 or rate <= 0:
        return ZERO
    return money(base * rate / Decimal("100"))
