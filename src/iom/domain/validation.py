from __future__ import annotations

from decimal import Decimal, InvalidOperation

from iom.domain.errors import ValidationError
from iom.domain.money import Amount, to_money


def parse_quantity(value, label: str = "Quantity") -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{label} must be an integer.")
    try:
        qty = int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{label} must be an integer.") from exc
    if qty != value and not isinstance(value, str):
        raise ValidationError(f"{label} must be an integer.")
    if qty <= 0:
        raise ValidationError(f"{label} must be >= 1.")
    return qty


def parse_amount(value: Amount, label: str = "Amount") -> Decimal:
    """Non-negative money value rounded to cents."""
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{label} is required.")
    try:
        amount = to_money(value)
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise ValidationError(f"{label} is not a valid amount: {value!r}") from exc
    if amount < 0:
        raise ValidationError(f"{label} must be >= 0.")
    return amount


def parse_sku(value) -> str:
    sku = str(value or "").strip()
    if not sku:
        raise ValidationError("SKU is required.")
    return sku
