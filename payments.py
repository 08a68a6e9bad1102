"""
Payment verification for off-platform (UPI / bank transfer) orders.

A seller checks the transaction reference the customer left in the order
notes and confirms payment and acceptance in one step.
"""

from flask import current_app

from errors import AlreadyProcessedError, IllegalTransitionError
from lifecycle import Role, check_actor, compare_and_set, load_order
from models import db, OrderStatus, PaymentStatus, utcnow
from notifications import notify

RESOLVED = (PaymentStatus.PAID, PaymentStatus.REFUNDED)


def confirm_payment(order_id, actor):
    """Mark a pending non-COD order paid and confirmed in the same update."""
    order = load_order(order_id, lock=True)
    context = {
        "order_id": order.id,
        "current_status": order.status,
        "payment_status": order.payment_status,
    }
    try:
        if actor.role not in (Role.SELLER, Role.ADMIN):
            raise IllegalTransitionError("Only the seller or an admin can confirm payment",
                                         order_id=order.id, role=actor.role)
        check_actor(order, actor)
        if order.payment_status in RESOLVED:
            raise AlreadyProcessedError(f"Payment is already {order.payment_status}", **context)
        if order.is_cod:
            raise IllegalTransitionError("Cash on Delivery orders are paid on delivery", **context)
        if order.status != OrderStatus.PENDING:
            raise IllegalTransitionError(
                "Payment can only be confirmed on a pending order",
                required_status=OrderStatus.PENDING, **context
            )

        compare_and_set(order.id, order.status, order.payment_status, {
            "payment_status": PaymentStatus.PAID,
            "status": OrderStatus.CONFIRMED,
            "updated_at": utcnow(),
        })
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    current_app.logger.info("Payment confirmed for order %s by %s %s", order.order_number, actor.role, actor.id)
    notify(
        order.customer_id,
        "Payment received",
        f"Payment for order #{order.order_number} was verified and your order is confirmed.",
        type="success",
        link=f"/orders/{order.id}",
    )
    return load_order(order_id)


def refund_order(order_id, actor):
    """Mark the payment of a cancelled or returned order as refunded."""
    order = load_order(order_id, lock=True)
    context = {
        "order_id": order.id,
        "current_status": order.status,
        "payment_status": order.payment_status,
    }
    try:
        if actor.role != Role.ADMIN:
            raise IllegalTransitionError("Only an admin can refund an order", role=actor.role, **context)
        if order.payment_status == PaymentStatus.REFUNDED:
            raise AlreadyProcessedError("Payment is already refunded", **context)
        if order.payment_status != PaymentStatus.PAID:
            raise IllegalTransitionError("Only paid orders can be refunded", **context)
        if order.status not in OrderStatus.TERMINAL:
            raise IllegalTransitionError(
                "Order must be cancelled or returned before refunding",
                required_status=list(OrderStatus.TERMINAL), **context
            )

        now = utcnow()
        compare_and_set(order.id, order.status, order.payment_status, {
            "payment_status": PaymentStatus.REFUNDED,
            "updated_at": now,
        })
        for request in order.return_requests:
            if request.status == "requested":
                request.status = PaymentStatus.REFUNDED
                request.refund_status = PaymentStatus.REFUNDED
                request.processed_at = now
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    current_app.logger.info("Refunded order %s (%s)", order.order_number, order.total)
    notify(
        order.customer_id,
        "Refund processed",
        f"The payment for order #{order.order_number} has been refunded.",
        type="info",
        link=f"/orders/{order.id}",
    )
    return load_order(order_id)
