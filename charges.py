"""
Charge calculation for a single shop's share of a cart.

Pure functions only: nothing here touches the database. ``calculate_totals``
takes already-resolved products and the shop whose policy applies, and
returns the breakdown that checkout persists onto the order.
"""

from collections import namedtuple
from decimal import Decimal, ROUND_HALF_UP

from errors import InvalidCartError

CENT = Decimal("0.01")

ChargeBreakdown = namedtuple(
    "ChargeBreakdown",
    ["subtotal", "shipping_cost", "gst_amount", "convenience_amount", "discount", "total"],
)


def money(value):
    if value is None:
        return Decimal("0.00")
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def breakdown_to_dict(breakdown):
    return {key: str(value) for key, value in breakdown._asdict().items()}


def validate_lines(lines, shop):
    """Reject carts the shop cannot sell: empty, inactive shop, foreign,
    unpublished or out of stock products, non-positive quantities."""
    if not lines:
        raise InvalidCartError("Cart is empty")
    if not shop.is_active:
        raise InvalidCartError("Shop is not accepting orders", shop_id=shop.id)
    for product, quantity in lines:
        if quantity is None or quantity <= 0:
            raise InvalidCartError("Quantity must be at least 1", product_id=product.id)
        if product.shop_id != shop.id:
            raise InvalidCartError(
                "Product does not belong to this shop", product_id=product.id, shop_id=shop.id
            )
        if not product.is_published:
            raise InvalidCartError("Product is not available", product_id=product.id)
        if product.stock is None or product.stock <= 0:
            raise InvalidCartError("Product is out of stock", product_id=product.id)


def shipping_for(subtotal, shop):
    threshold = shop.free_shipping_above
    if threshold is not None and subtotal >= money(threshold):
        return money(0)
    return money(shop.shipping_charge)


def calculate_totals(lines, shop, discount=None):
    """Compute the charge breakdown for ``lines`` under ``shop``'s policy.

    ``lines`` is a sequence of ``(product, quantity)`` pairs. GST is charged on
    the pre-discount subtotal. The discount is capped at the gross amount so
    the total never goes negative and always equals
    ``subtotal - discount + shipping + gst + convenience``.
    """
    validate_lines(lines, shop)

    subtotal = money(sum((money(product.price) * quantity for product, quantity in lines), Decimal("0")))
    shipping_cost = shipping_for(subtotal, shop)

    gst_amount = money(0)
    if shop.charge_gst:
        gst_amount = money(subtotal * Decimal(str(shop.gst_percentage or 0)) / 100)

    convenience_amount = money(0)
    if shop.charge_convenience:
        convenience_amount = money(shop.convenience_charge)

    discount = money(discount)
    if discount < 0:
        raise InvalidCartError("Discount cannot be negative", discount=str(discount))
    gross = subtotal + shipping_cost + gst_amount + convenience_amount
    discount = min(discount, gross)

    total = gross - discount
    return ChargeBreakdown(
        subtotal=subtotal,
        shipping_cost=shipping_cost,
        gst_amount=gst_amount,
        convenience_amount=convenience_amount,
        discount=discount,
        total=total,
    )
