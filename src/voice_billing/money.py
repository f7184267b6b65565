from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Union

Number = Union[int, float, Decimal, str]

# Balances keep sub-cent precision; PayPal amounts are rounded to cents.
_BALANCE_QUANT = Decimal("0.000001")
_CENTS = Decimal("0.01")


def to_decimal(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    # str() first so 0.07 becomes Decimal("0.07") rather than its binary expansion
    return Decimal(str(value))


def quantize_balance(value: Number) -> Decimal:
    return to_decimal(value).quantize(_BALANCE_QUANT, rounding=ROUND_HALF_UP)


def money(value: Number) -> float:
    """Normalise an amount to the float stored on documents."""
    return float(quantize_balance(value))


def multiply(rate: Number, quantity: Number) -> float:
    return money(to_decimal(rate) * to_decimal(quantity))


def subtract(left: Number, right: Number) -> float:
    return money(to_decimal(left) - to_decimal(right))


def add(left: Number, right: Number) -> float:
    return money(to_decimal(left) + to_decimal(right))


def format_usd(value: Number) -> str:
    """Two-decimal string, as PayPal expects and as shown to users."""
    return str(to_decimal(value).quantize(_CENTS, rounding=ROUND_HALF_UP))
