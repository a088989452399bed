"""Helpers for working with currency amounts stored as integer minor units."""
from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP
from typing import Any

_DECIMAL_2_PLACES = Decimal("0.01")
_CENTS = Decimal(100)
_BASIS_POINTS = Decimal(10000)


def to_money(value: Any) -> Decimal:
    """Convert *value* to a :class:`~decimal.Decimal` rounded to two places."""
    if isinstance(value, Decimal):
        quantized = value
    else:
        quantized = Decimal(str(value))
    return quantized.quantize(_DECIMAL_2_PLACES, rounding=ROUND_HALF_UP)


def cents_to_money(cents: int | None) -> Decimal:
    if cents is None:
        return Decimal("0.00")
    return to_money(Decimal(cents) / _CENTS)


def fmt_cents(cents: int | None) -> str:
    """Two-decimal display string, e.g. 1050 -> "10.50"."""
    return str(cents_to_money(cents))


def percent_of(cents: int, percent: Any) -> int:
    """*percent* % of *cents*, rounded half-up to the nearest minor unit."""
    raw = Decimal(cents) * Decimal(str(percent)) / _CENTS
    return int(raw.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def basis_points_of(cents: int, bps: int) -> int:
    """*bps* basis points of *cents* (1000 bps = 10%), rounded half-up."""
    raw = Decimal(cents) * Decimal(bps) / _BASIS_POINTS
    return int(raw.quantize(Decimal(1), rounding=ROUND_HALF_UP))
