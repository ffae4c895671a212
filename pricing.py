from typing import Iterable, NamedTuple

import config


class Totals(NamedTuple):
    subtotal: float
    shipping_cost: float
    total: float
    discount: float = 0.0


def unit_price_after_discount(price: float, discount: float) -> float:
    return price - (price * discount) / 100


def line_total(price: float, discount: float, quantity: int) -> float:
    return round(unit_price_after_discount(price, discount) * quantity, 2)


def subtotal_of(items: Iterable) -> float:
    """Items are anything with ``price``, ``discount`` and ``quantity`` attributes."""
    return round(sum(line_total(i.price, i.discount, i.quantity) for i in items), 2)


def shipping_for(subtotal: float) -> float:
    return 0.0 if subtotal >= config.FREE_SHIPPING_THRESHOLD else config.SHIPPING_FEE


def calculate_totals(items: Iterable, discount: float = 0.0) -> Totals:
    """Shipping is charged on the amount left after an order-level discount."""
    subtotal = subtotal_of(items)
    discount = round(min(discount, subtotal), 2)
    after_discount = round(subtotal - discount, 2)
    shipping = shipping_for(after_discount)
    return Totals(subtotal, shipping, round(after_discount + shipping, 2), discount)


def discount_value(kind: str, amount: float, subtotal: float) -> float:
    if kind == "percentage":
        value = subtotal * amount / 100
    else:
        value = amount
    return round(min(value, subtotal), 2)


def to_minor_units(amount: float) -> int:
    return int(round(amount * 100))
