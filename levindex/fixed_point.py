"""
fixed_point.py - WAD fixed-point arithmetic on Decimal

Every amount and per-share unit inside the index core carries 18 fractional
digits (WAD precision), whatever the native decimals of the asset behind it.
Values cross into the lending pool and swap venues only after to_native()
has cut them to the asset's own precision.

Rounding policy:
    - precise_mul / precise_div round toward zero (ROUND_DOWN), so a
      computed claim never exceeds what the ledger holds
    - *_ceil variants round away from zero and are used for amounts the
      index must collect (issue cost, exact-output swap inputs)
"""

from __future__ import annotations
from decimal import Decimal, ROUND_DOWN, ROUND_UP
from typing import Union

from .core import LedgerView


WAD_PLACES = 18
WAD_QUANTUM = Decimal(10) ** -WAD_PLACES
ZERO = Decimal("0")
ONE = Decimal("1")

Number = Union[Decimal, int, float, str]


def to_decimal(value: Number) -> Decimal:
    """Convert an int, float or str to Decimal via its string form."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def to_wad(value: Number) -> Decimal:
    """Quantize a value to WAD precision, rounding toward zero."""
    return to_decimal(value).quantize(WAD_QUANTUM, rounding=ROUND_DOWN)


def to_wad_ceil(value: Number) -> Decimal:
    """Quantize a value to WAD precision, rounding away from zero."""
    return to_decimal(value).quantize(WAD_QUANTUM, rounding=ROUND_UP)


def precise_mul(a: Number, b: Number) -> Decimal:
    """a * b at WAD precision, rounded toward zero."""
    return to_wad(to_decimal(a) * to_decimal(b))


def precise_mul_ceil(a: Number, b: Number) -> Decimal:
    """a * b at WAD precision, rounded away from zero."""
    return to_wad_ceil(to_decimal(a) * to_decimal(b))


def precise_div(a: Number, b: Number) -> Decimal:
    """
    a / b at WAD precision, rounded toward zero.

    Raises:
        ZeroDivisionError: If b is zero
    """
    divisor = to_decimal(b)
    if divisor == 0:
        raise ZeroDivisionError("precise_div by zero")
    return to_wad(to_decimal(a) / divisor)


def precise_div_ceil(a: Number, b: Number) -> Decimal:
    """a / b at WAD precision, rounded away from zero."""
    divisor = to_decimal(b)
    if divisor == 0:
        raise ZeroDivisionError("precise_div_ceil by zero")
    return to_wad_ceil(to_decimal(a) / divisor)


def to_native(view: LedgerView, asset: str, amount: Number, round_up: bool = False) -> Decimal:
    """
    Normalize a WAD amount to an asset's native decimals.

    Args:
        view: Ledger view holding the asset's unit definition
        asset: Asset symbol
        amount: WAD amount
        round_up: Round away from zero instead of truncating

    Returns:
        The amount quantized to the asset's decimal_places.
    """
    unit = view.get_unit(asset)
    value = to_decimal(amount)
    if unit.decimal_places is None:
        return to_wad_ceil(value) if round_up else to_wad(value)
    quantizer = Decimal(10) ** -unit.decimal_places
    return value.quantize(quantizer, rounding=ROUND_UP if round_up else ROUND_DOWN)


def is_dust(value: Decimal, epsilon: Decimal) -> bool:
    """True if |value| <= epsilon."""
    return abs(value) <= epsilon
