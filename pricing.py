"""Order pricing: subtotal and total derived from line items.

Amounts are summed as Decimal and rounded to cents so totals never pick up
binary float noise (0.1 + 0.2 style). Unit and option prices are the
snapshots carried on the items; the catalog is never consulted here.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional

from errors import ValidationError
from schemas import OrderItem

CENT = Decimal("0.01")


@dataclass(frozen=True)
class Pricing:
    subtotal: float
    total: float


def _money(value, field: str) -> Decimal:
    amount = Decimal(str(value))
    if amount < 0:
        raise ValidationError(f"{field} must not be negative", fields=[field])
    return amount


def _line_total(item: OrderItem, index: int = 0) -> Decimal:
    if not isinstance(item.quantity, int) or item.quantity < 1:
        raise ValidationError("quantity must be a positive integer", fields=[f"items.{index}.quantity"])
    unit = _money(item.unit_price, f"items.{index}.unit_price")
    extras = sum(
        (_money(opt.price, f"items.{index}.options.{j}.price") for j, opt in enumerate(item.options)),
        Decimal(0),
    )
    return item.quantity * (unit + extras)


def line_total(item: OrderItem) -> float:
    """quantity x (unit price + sum of option prices)."""
    return float(_line_total(item).quantize(CENT, rounding=ROUND_HALF_UP))


def price_order(items: Iterable[OrderItem], delivery_fee: Optional[float] = 0) -> Pricing:
    subtotal = sum((_line_total(item, i) for i, item in enumerate(items)), Decimal(0))
    fee = _money(delivery_fee or 0, "delivery_fee")
    subtotal = subtotal.quantize(CENT, rounding=ROUND_HALF_UP)
    total = (subtotal + fee).quantize(CENT, rounding=ROUND_HALF_UP)
    return Pricing(subtotal=float(subtotal), total=float(total))
