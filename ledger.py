"""
Order creation.

Checkout turns a cart into one order per shop. Everything a checkout writes
(order headers, line item snapshots, stock decrements) is committed together
or rolled back together.
"""

import secrets
from collections import OrderedDict

from flask import current_app

from charges import calculate_totals
from errors import InsufficientStockError, InvalidCartError, OrderNumberCollisionError
from models import db, Order, OrderItem, OrderStatus, PaymentMethod, PaymentStatus, Product, utcnow
from notifications import notify
from schemas import parse_address, parse_cart

ORDER_NUMBER_MAX_ATTEMPTS = 5

PAYMENT_NOTES = {
    PaymentMethod.COD: "Cash on Delivery",
    PaymentMethod.UPI: "UPI Payment",
    PaymentMethod.BANK_TRANSFER: "Bank Transfer",
}


def generate_order_number():
    return f"ORD-{utcnow():%Y%m%d}-{secrets.token_hex(3).upper()}"


def next_order_number():
    for _ in range(ORDER_NUMBER_MAX_ATTEMPTS):
        candidate = generate_order_number()
        if db.session.query(Order.id).filter_by(order_number=candidate).first() is None:
            return candidate
    raise OrderNumberCollisionError(
        "Could not allocate a unique order number", attempts=ORDER_NUMBER_MAX_ATTEMPTS
    )


def resolve_cart(cart_items):
    """Load the products in ``cart_items`` and group them per shop.

    Returns an ordered mapping ``shop -> [(product, quantity), ...]``; repeated
    lines for the same product are merged.
    """
    lines = parse_cart(cart_items)

    quantities = OrderedDict()
    for line in lines:
        quantities[line.product_id] = quantities.get(line.product_id, 0) + line.quantity

    products = {p.id: p for p in Product.query.filter(Product.id.in_(list(quantities))).all()}
    missing = [pid for pid in quantities if pid not in products]
    if missing:
        raise InvalidCartError("Unknown products in cart", product_ids=missing)

    by_shop = OrderedDict()
    for product_id, quantity in quantities.items():
        product = products[product_id]
        by_shop.setdefault(product.shop, []).append((product, quantity))
    return by_shop


def quote(cart_items, discounts=None):
    """Charge breakdown per shop for a cart, without placing anything."""
    discounts = discounts or {}
    return [
        (shop, calculate_totals(lines, shop, discounts.get(shop.id)))
        for shop, lines in resolve_cart(cart_items).items()
    ]


def checkout(customer_id, cart_items, shipping_address, payment_method,
             transaction_id=None, discounts=None):
    """Place one order per shop represented in the cart. Returns the orders."""
    discounts = discounts or {}
    return _place_orders(
        customer_id, cart_items, shipping_address, payment_method, transaction_id,
        discount_for=lambda shop: discounts.get(shop.id),
        single_shop=False,
    )


def create_order(customer_id, cart_items, shipping_address, payment_method,
                 transaction_id=None, discount=None):
    """Place a single order. The cart must hold products of one shop only."""
    orders = _place_orders(
        customer_id, cart_items, shipping_address, payment_method, transaction_id,
        discount_for=lambda shop: discount,
        single_shop=True,
    )
    return orders[0]


def _place_orders(customer_id, cart_items, shipping_address, payment_method,
                  transaction_id, discount_for, single_shop):
    if not customer_id:
        raise InvalidCartError("Missing customer")
    if payment_method not in PaymentMethod.ALL:
        raise InvalidCartError(
            "Unsupported payment method", payment_method=payment_method, allowed=list(PaymentMethod.ALL)
        )
    address = parse_address(shipping_address)

    try:
        by_shop = resolve_cart(cart_items)
        if single_shop and len(by_shop) > 1:
            raise InvalidCartError(
                "Cart spans several shops, use checkout", shop_ids=[shop.id for shop in by_shop]
            )
        orders = [
            _build_order(customer_id, shop, lines, address, payment_method, transaction_id,
                         discount_for(shop))
            for shop, lines in by_shop.items()
        ]
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    for order in orders:
        current_app.logger.info(
            "Placed order %s for customer %s at shop %s, total %s (%s)",
            order.order_number, customer_id, order.shop_id, order.total, payment_method,
        )
        notify(
            order.shop.seller_id,
            "New order received",
            f"Order #{order.order_number} was placed for {order.total}.",
            type="order",
            link=f"/seller/orders/{order.id}",
        )
    return orders


def _build_order(customer_id, shop, lines, address, payment_method, transaction_id, discount):
    if not shop.accepts(payment_method):
        raise InvalidCartError(
            "Shop does not accept this payment method", shop_id=shop.id, payment_method=payment_method
        )

    breakdown = calculate_totals(lines, shop, discount)

    for product, quantity in lines:
        _take_stock(product, quantity)

    order = Order(
        order_number=next_order_number(),
        customer_id=str(customer_id),
        shop_id=shop.id,
        status=OrderStatus.PENDING,
        payment_status=PaymentStatus.PENDING,
        payment_method=payment_method,
        subtotal=breakdown.subtotal,
        shipping_cost=breakdown.shipping_cost,
        gst_amount=breakdown.gst_amount,
        convenience_fee=breakdown.convenience_amount,
        discount=breakdown.discount,
        total=breakdown.total,
        shipping_address=address.model_dump(),
        notes=_payment_notes(payment_method, transaction_id),
    )
    order.items = [
        OrderItem(
            product_id=product.id,
            product_name=product.name,
            product_image=product.image,
            quantity=quantity,
            price=product.price,
        )
        for product, quantity in lines
    ]
    db.session.add(order)
    db.session.flush()
    return order


def _take_stock(product, quantity):
    updated = (
        Product.query
        .filter(Product.id == product.id, Product.stock >= quantity)
        .update({Product.stock: Product.stock - quantity}, synchronize_session=False)
    )
    if updated != 1:
        raise InsufficientStockError(
            "Not enough stock", product_id=product.id, requested=quantity, available=product.stock
        )


def restock(order):
    """Give an order's quantities back to products that still exist."""
    for item in order.items:
        if item.product_id is None:
            continue
        Product.query.filter(Product.id == item.product_id).update(
            {Product.stock: Product.stock + item.quantity}, synchronize_session=False
        )


def _payment_notes(payment_method, transaction_id):
    note = PAYMENT_NOTES[payment_method]
    if transaction_id and payment_method != PaymentMethod.COD:
        note = f"{note} - Txn: {transaction_id.strip()}"
    return note
