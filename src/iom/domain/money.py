from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP
from typing import Union

CENT = Decimal("0.01")

Amount = Union[Decimal, int, float, str]


def to_money(value: Amount) -> Decimal:
    """Round to the smallest currency unit, half-up.

    Floats go through ``str`` so 0.1 stays 0.1 instead of its binary expansion.
    """
    if isinstance(value, float):
        value = str(value)
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def to_cents(value: Amount) -> int:
    return int(to_money(value) * 100)


def from_cents(cents: int | None) -> Decimal | None:
    if cents is None:
        return None
    return (Decimal(int(cents)) / 100).quantize(CENT)


def weighted_average_cost(old_stock: int, old_cost: Decimal, qty: int, unit_cost: Decimal) -> Decimal:
    """
    new_cost = (old_stock*old_cost + qty*unit_cost) / (old_stock+qty)

    Falls back to unit_cost when nothing is on hand afterwards.
    """
    total_qty = int(old_stock) + int(qty)
    if total_qty == 0:
        return to_money(unit_cost)
    value = (Decimal(int(old_stock)) * Decimal(old_cost) + Decimal(int(qty)) * Decimal(unit_cost)) / Decimal(total_qty)
    return to_money(value)
