"""
Order pricing. Pure functions: same items, mode and discounts always give the
same Totals, and total == subtotal + delivery_fee + taxes - discounts exactly.
"""
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable

from hmarket.errors import ValidationError
from hmarket.models import DeliveryMode, ItemDraft, OrderItem, Totals

CENT = Decimal("0.01")

DEFAULT_DELIVERY_FEES: dict[DeliveryMode, Decimal] = {
    DeliveryMode.PLANNED: Decimal("3.99"),
    DeliveryMode.EXPRESS: Decimal("5.99"),
    DeliveryMode.OUTSIDE_IDF: Decimal("8.99"),
}

# VAT applied at checkout. The order model of the legacy shop used 5.5 %.
DEFAULT_TAX_RATE = Decimal("0.20")


def to_cents(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def price_items(items: Iterable[ItemDraft]) -> list[OrderItem]:
    """Validate checkout items and attach their line totals."""
    priced = []
    for item in items:
        if item.quantity <= 0:
            raise ValidationError(f"quantity must be positive for {item.product_ref}")
        if item.unit_price < 0:
            raise ValidationError(f"unit price must not be negative for {item.product_ref}")
        priced.append(
            OrderItem(
                product_ref=item.product_ref,
                title=item.title,
                unit_price=item.unit_price,
                quantity=item.quantity,
                line_total=to_cents(item.unit_price * item.quantity),
            )
        )
    if not priced:
        raise ValidationError("an order needs at least one item")
    return priced


def compute(
    items: Iterable[ItemDraft],
    delivery_mode: DeliveryMode,
    discounts: Decimal | int = 0,
    *,
    fees: dict[DeliveryMode, Decimal] | None = None,
    tax_rate: Decimal = DEFAULT_TAX_RATE,
) -> Totals:
    """Totals for a checkout. Raises ValidationError on empty items or bad quantities."""
    discounts = Decimal(discounts)
    if discounts < 0:
        raise ValidationError("discounts must not be negative")
    fees = fees or DEFAULT_DELIVERY_FEES
    try:
        delivery_fee = to_cents(Decimal(fees[DeliveryMode(delivery_mode)]))
    except (KeyError, ValueError):
        raise ValidationError(f"unknown delivery mode: {delivery_mode}")

    priced = price_items(items)
    subtotal = to_cents(sum((item.unit_price * item.quantity for item in priced), Decimal(0)))
    taxes = to_cents(subtotal * tax_rate)
    gross = subtotal + delivery_fee + taxes
    # Discounts larger than the bill are capped so the total clamps at zero.
    discounts = min(to_cents(discounts), gross)
    total = gross - discounts
    return Totals(
        subtotal=subtotal,
        delivery_fee=delivery_fee,
        taxes=taxes,
        discounts=discounts,
        total=total,
    )
