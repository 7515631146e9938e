"""
Decimal money helpers.

Every amount the engine produces is quantized to the currency's minor unit
with ROUND_HALF_UP, so sums of already-rounded values are exact.
"""

from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

ZERO = Decimal("0")
HUNDRED = Decimal("100")

UNIT_PRICE_EXP = Decimal("0.000001")
QUANTITY_EXP = Decimal("0.0001")

# ISO 4217 currencies without a minor unit
ZERO_DECIMAL_CURRENCIES = {"JPY", "KRW", "CLP", "ISK", "VND", "UGX", "XAF", "XOF"}


def to_decimal(value) -> Decimal:
    """Coerce int/float/str/Decimal to Decimal (floats go through str)."""
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    return Decimal(value)


def optional_decimal(value) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    return to_decimal(value)


def currency_exponent(currency: str) -> Decimal:
    if currency and currency.upper() in ZERO_DECIMAL_CURRENCIES:
        return Decimal("1")
    return Decimal("0.01")


def money(value, currency: str = "") -> Decimal:
    """Quantize an amount to the currency's minor unit."""
    return to_decimal(value).quantize(currency_exponent(currency), ROUND_HALF_UP)


def unit_price(value) -> Decimal:
    return to_decimal(value).quantize(UNIT_PRICE_EXP, ROUND_HALF_UP)


def percent_of(amount: Decimal, pct: Decimal, currency: str = "") -> Decimal:
    """amount × pct / 100, rounded to the minor unit."""
    return money(amount * to_decimal(pct) / HUNDRED, currency)
