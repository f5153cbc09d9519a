"""
Tiered unit pricing and order totals.

Tiers are evaluated in the order they are stored and the first matching range
wins. A schedule such as ``[{1, None, 10}, {50, None, 8}]`` therefore never
reaches the second tier; wholesalers are expected to store the narrower
ranges first.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Mapping

from errors import BelowMinimumOrder, InsufficientStock

HUNDRED = Decimal("100")


@dataclass(frozen=True)
class Totals:
    subtotal: Decimal
    tax: Decimal
    total: Decimal


def _dec(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if hasattr(value, "to_decimal"):
        return value.to_decimal()
    return Decimal(str(value))


def _field(product: Any, name: str, default: Any = None) -> Any:
    if isinstance(product, Mapping):
        return product.get(name, default)
    return getattr(product, name, default)


def unit_price_for(product: Any, quantity: int) -> Decimal:
    for tier in _field(product, "pricing_tiers") or []:
        min_quantity = _field(tier, "min_quantity")
        max_quantity = _field(tier, "max_quantity")
        if quantity >= min_quantity and (max_quantity is None or quantity <= max_quantity):
            return _dec(_field(tier, "price_per_unit"))
    return _dec(_field(product, "base_price"))


def compute_totals(unit_price: Any, quantity: int, tax_percentage: Any) -> Totals:
    """Exact decimal arithmetic throughout; no rounding is applied."""
    subtotal = _dec(unit_price) * quantity
    tax = subtotal * _dec(tax_percentage) / HUNDRED
    return Totals(subtotal=subtotal, tax=tax, total=subtotal + tax)


def validate_quantity(product: Any, quantity: int) -> None:
    moq = _field(product, "moq", 1)
    stock = _field(product, "stock_quantity", 0)
    if quantity < moq:
        raise BelowMinimumOrder(f"Minimum order quantity is {moq}", moq=moq)
    if quantity > stock:
        raise InsufficientStock(f"Only {stock} units available", available=stock)


def quote(product: Any, quantity: int) -> Dict[str, Any]:
    validate_quantity(product, quantity)
    unit_price = unit_price_for(product, quantity)
    gst_percentage = _dec(_field(product, "gst_percentage", 0))
    totals = compute_totals(unit_price, quantity, gst_percentage)
    return {
        "unit_price": unit_price,
        "quantity": quantity,
        "subtotal": totals.subtotal,
        "gst_percentage": gst_percentage,
        "gst_amount": totals.tax,
        "total": totals.total,
    }
