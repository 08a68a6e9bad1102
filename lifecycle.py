"""
Order status transitions.

Every transition goes through ``transition_order``: the transition table
decides which actor may move an order between two statuses, the payment gate
and return window are checked against a fresh read of the order, and the
write itself is a compare-and-set on ``status``/``payment_status`` so that
two racing writers cannot both win.
"""

from collections import namedtuple
from datetime import timedelta

from flask import current_app

from errors import ConcurrentModificationError, IllegalTransitionError, OrderNotFoundError
from ledger import restock
from models import db, Order, OrderStatus, PaymentStatus, ReturnRequest, utcnow
from notifications import notify

S = OrderStatus


class Role:
    CUSTOMER = "customer"
    SELLER = "seller"
    ADMIN = "admin"
    SYSTEM = "system"

    ALL = (CUSTOMER, SELLER, ADMIN, SYSTEM)


Actor = namedtuple("Actor", ["id", "role"])

SYSTEM_ACTOR = Actor(None, Role.SYSTEM)

TRANSITIONS = {
    (S.PENDING, S.CONFIRMED): {Role.SELLER, Role.ADMIN, Role.SYSTEM},
    (S.PENDING, S.CANCELLED): {Role.CUSTOMER, Role.SELLER, Role.ADMIN},
    (S.CONFIRMED, S.PACKED): {Role.SELLER},
    (S.CONFIRMED, S.CANCELLED): {Role.SELLER, Role.ADMIN},
    (S.PACKED, S.SHIPPED): {Role.SELLER},
    (S.SHIPPED, S.OUT_FOR_DELIVERY): {Role.SELLER, Role.ADMIN},
    (S.OUT_FOR_DELIVERY, S.DELIVERED): {Role.SELLER, Role.ADMIN},
    (S.DELIVERED, S.RETURNED): {Role.CUSTOMER, Role.ADMIN},
}

# admin escape hatch: any order that is not yet terminal
ADMIN_CANCELLABLE = S.HAPPY_PATH

MESSAGES = {
    S.CONFIRMED: ("Order confirmed", "Your order #{number} has been confirmed by the seller."),
    S.PACKED: ("Order packed", "Your order #{number} has been packed."),
    S.SHIPPED: ("Order shipped", "Your order #{number} is on its way."),
    S.OUT_FOR_DELIVERY: ("Out for delivery", "Your order #{number} is out for delivery."),
    S.DELIVERED: ("Order delivered", "Your order #{number} has been delivered."),
    S.CANCELLED: ("Order cancelled", "Your order #{number} has been cancelled."),
    S.RETURNED: ("Order returned", "Your order #{number} has been marked as returned."),
}


def allowed_roles(current, target):
    roles = set(TRANSITIONS.get((current, target), ()))
    if target == S.CANCELLED and current in ADMIN_CANCELLABLE:
        roles.add(Role.ADMIN)
    return roles


def load_order(order_id, lock=False):
    # always re-read: the status check must see the committed row
    order = db.session.get(Order, order_id, populate_existing=True, with_for_update=lock)
    if order is None:
        raise OrderNotFoundError("Order not found", order_id=order_id)
    return order


def check_actor(order, actor):
    """Customers act on their own orders, sellers on their shop's orders."""
    if actor.role not in Role.ALL:
        raise IllegalTransitionError("Unknown actor role", role=actor.role)
    if actor.role == Role.CUSTOMER and str(actor.id) != order.customer_id:
        raise IllegalTransitionError("Order belongs to another customer", order_id=order.id)
    if actor.role == Role.SELLER and str(actor.id) != order.shop.seller_id:
        raise IllegalTransitionError("Order belongs to another shop", order_id=order.id)


def check_transition(order, target, actor, now=None):
    """Raise ``IllegalTransitionError`` unless ``actor`` may move ``order`` to ``target``."""
    current = order.status
    context = {"order_id": order.id, "current_status": current, "target_status": target, "role": actor.role}

    if target not in S.ALL:
        raise IllegalTransitionError("Unknown order status", **context)
    if current in S.TERMINAL:
        raise IllegalTransitionError(f"Order is already {current}", **context)

    roles = allowed_roles(current, target)
    if not roles:
        raise IllegalTransitionError(f"Cannot move order from {current} to {target}", **context)
    if actor.role not in roles:
        raise IllegalTransitionError(
            f"A {actor.role} cannot move order from {current} to {target}",
            allowed_roles=sorted(roles), **context
        )
    check_actor(order, actor)

    if target == S.CONFIRMED and not order.is_cod and order.payment_status != PaymentStatus.PAID:
        raise IllegalTransitionError(
            "Payment must be verified before the order can be confirmed",
            payment_status=order.payment_status, required_payment_status=PaymentStatus.PAID, **context
        )

    if target == S.RETURNED and actor.role == Role.CUSTOMER:
        window = current_app.config.get("RETURN_WINDOW_DAYS") or 0
        now = now or utcnow()
        if window and order.delivered_at and now > order.delivered_at + timedelta(days=window):
            raise IllegalTransitionError(
                "Return window has closed", return_window_days=window,
                delivered_at=order.delivered_at.isoformat(), **context
            )


def compare_and_set(order_id, expected_status, expected_payment_status, values):
    """Apply ``values`` only if the row still has the statuses we read."""
    updated = (
        Order.query
        .filter_by(id=order_id, status=expected_status, payment_status=expected_payment_status)
        .update(values, synchronize_session=False)
    )
    if updated != 1:
        raise ConcurrentModificationError(
            "Order was modified concurrently, reload and retry",
            order_id=order_id, expected_status=expected_status,
        )


def transition_order(order_id, target, actor, reason=None, tracking_id=None):
    """Move an order to ``target`` on behalf of ``actor`` and notify the other party."""
    order = load_order(order_id, lock=True)
    current = order.status
    try:
        if target == S.RETURNED and actor.role == Role.CUSTOMER:
            raise IllegalTransitionError(
                "Customers return orders through a return request",
                order_id=order.id, current_status=current, target_status=target, role=actor.role,
            )
        check_transition(order, target, actor)

        now = utcnow()
        values = {"status": target, "updated_at": now}
        if target == S.SHIPPED:
            tracking_id = (tracking_id or order.tracking_id or "").strip()
            if tracking_id:
                values["tracking_id"] = tracking_id
            else:
                current_app.logger.warning("Order %s shipped without a tracking id", order.order_number)
        elif target == S.DELIVERED:
            values["delivered_at"] = now
            if order.is_cod and order.payment_status == PaymentStatus.PENDING:
                values["payment_status"] = PaymentStatus.PAID
        elif target == S.CANCELLED:
            values.update(_cancellation_fields(order, actor, reason, now))

        compare_and_set(order.id, current, order.payment_status, values)
        if target == S.CANCELLED and current_app.config.get("RESTOCK_ON_CANCEL"):
            restock(order)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    current_app.logger.info(
        "Order %s moved %s -> %s by %s %s", order.order_number, current, target, actor.role, actor.id or ""
    )
    _announce(order, target, actor, reason)
    return load_order(order_id)


def request_return(order_id, actor, reason, description=None):
    """Record a customer's return request and mark the delivered order returned."""
    if not reason or not reason.strip():
        raise IllegalTransitionError("A return reason is required", order_id=order_id)
    if actor.role != Role.CUSTOMER:
        raise IllegalTransitionError("Only the customer can request a return", order_id=order_id, role=actor.role)
    order = load_order(order_id, lock=True)

    try:
        check_transition(order, S.RETURNED, actor)
        db.session.add(ReturnRequest(
            order_id=order.id,
            user_id=str(actor.id),
            reason=reason.strip(),
            description=description,
            refund_amount=order.total,
        ))
        compare_and_set(order.id, S.DELIVERED, order.payment_status, {"status": S.RETURNED, "updated_at": utcnow()})
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    current_app.logger.info("Return requested for order %s by customer %s", order.order_number, actor.id)
    _announce(order, S.RETURNED, actor, reason)
    return load_order(order_id)


def _cancellation_fields(order, actor, reason, now):
    fields = {"cancelled_at": now, "cancelled_by": actor.role}
    if actor.role == Role.CUSTOMER:
        fields["customer_cancel_reason"] = reason or "Cancelled by customer"
    elif actor.role == Role.SELLER and order.status == S.PENDING:
        fields["decline_reason"] = reason or "Declined by seller"
        fields["declined_at"] = now
    return fields


def _announce(order, target, actor, reason=None):
    """Customer-triggered changes go to the seller; everything else to the customer."""
    number = order.order_number
    if actor.role == Role.CUSTOMER:
        if target == S.CANCELLED:
            title, message = "Order cancelled by customer", f"Order #{number} was cancelled by the customer."
        else:
            title, message = "Return requested", f"The customer requested a return for order #{number}."
        if reason:
            message = f"{message} Reason: {reason}"
        notify(order.shop.seller_id, title, message, type="warning", link=f"/seller/orders/{order.id}")
        return

    title, template = MESSAGES[target]
    message = template.format(number=number)
    if target == S.CANCELLED and reason:
        message = f"{message} Reason: {reason}"
    kind = "warning" if target in S.TERMINAL else "order"
    notify(order.customer_id, title, message, type=kind, link=f"/orders/{order.id}")
