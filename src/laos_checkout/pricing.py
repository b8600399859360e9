"""Order total calculation.

All arithmetic stays in ``Decimal``. Each field of the summary is rounded to
cents on its own from the unrounded intermediate values, so ``total`` can
differ by one cent from the sum of the rounded parts.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional, Tuple, Union

from .exceptions import InvalidOrderValueError
from .models import CartLine, OrderSummary

CENTS = Decimal("0.01")
ZERO = Decimal("0")

Number = Union[Decimal, int, str]


@dataclass(frozen=True)
class PricingRules:
    """Tax, shipping and order-value bounds."""
    tax_rate: Decimal = Decimal("0.15")
    free_shipping_threshold: Decimal = Decimal("200.00")
    shipping_fee: Decimal = Decimal("20.00")
    min_order_value: Decimal = Decimal("10.00")
    max_order_value: Decimal = Decimal("100000.00")

    @classmethod
    def from_settings(cls, settings) -> "PricingRules":
        return cls(
            tax_rate=settings.tax_rate,
            free_shipping_threshold=settings.free_shipping_threshold,
            shipping_fee=settings.shipping_fee,
            min_order_value=settings.min_order_value,
            max_order_value=settings.max_order_value,
        )


DEFAULT_RULES = PricingRules()


def to_cents(amount: Decimal) -> Decimal:
    """Round a monetary amount to two decimal places, half up."""
    return amount.quantize(CENTS, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Decimal) -> int:
    """Convert an amount to integer minor units (centavos)."""
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def line_total(unit_price: Number, quantity: int) -> Decimal:
    return Decimal(unit_price) * quantity


def calculate_order_summary(
    lines: Iterable[Tuple[Number, int]],
    rules: Optional[PricingRules] = None,
) -> OrderSummary:
    """
    Compute subtotal, tax, shipping, discount and total for priced lines.

    Args:
        lines: ``(unit_price, quantity)`` pairs. Prices must be non-negative
            and quantities positive.
        rules: Rates and bounds; defaults to the standard checkout rules.

    Returns:
        OrderSummary with every field rounded to cents.

    Raises:
        InvalidOrderValueError: If the rounded total is outside
            ``[min_order_value, max_order_value]`` (both inclusive).
        ValueError: If a line has a negative price or non-positive quantity.
    """
    rules = rules or DEFAULT_RULES

    subtotal = ZERO
    for unit_price, quantity in lines:
        price = Decimal(unit_price)
        if price < 0:
            raise ValueError(f"unit price must be non-negative, got {price}")
        if quantity <= 0:
            raise ValueError(f"quantity must be positive, got {quantity}")
        subtotal += line_total(price, quantity)

    tax = subtotal * rules.tax_rate
    shipping = ZERO if subtotal >= rules.free_shipping_threshold else rules.shipping_fee
    discount = ZERO  # coupons are not applied
    total = subtotal + tax + shipping - discount

    summary = OrderSummary(
        subtotal=to_cents(subtotal),
        tax=to_cents(tax),
        shipping=to_cents(shipping),
        discount=to_cents(discount),
        total=to_cents(total),
    )

    if summary.total < rules.min_order_value or summary.total > rules.max_order_value:
        raise InvalidOrderValueError(
            summary.total,
            rules.min_order_value,
            rules.max_order_value,
        )

    return summary


def summarize_cart(
    cart_items: Iterable[CartLine],
    rules: Optional[PricingRules] = None,
) -> OrderSummary:
    """Price cart lines using their product snapshots."""
    return calculate_order_summary(
        ((item.product.price, item.quantity) for item in cart_items),
        rules,
    )
