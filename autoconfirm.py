"""
Auto-confirmation sweep.

Shops may opt in to having pending orders confirmed without a human once
``auto_confirm_hours`` have passed. Unpaid UPI / bank transfer orders are never
picked up: their money has to be verified by the seller first.
"""

from collections import namedtuple
from datetime import timedelta

from flask import current_app
from sqlalchemy import or_

from errors import OrderError
from lifecycle import SYSTEM_ACTOR, transition_order
from models import db, Order, OrderStatus, PaymentMethod, PaymentStatus, Shop, utcnow

SweepResult = namedtuple("SweepResult", ["confirmed_count", "skipped_count"])


def due_orders(now=None):
    """Pending orders of opted-in shops whose confirmation window has passed."""
    now = now or utcnow()
    rows = (
        db.session.query(Order.id, Order.created_at, Shop.auto_confirm_hours)
        .join(Shop, Order.shop_id == Shop.id)
        .filter(Order.status == OrderStatus.PENDING, Shop.auto_confirm_orders.is_(True))
        .order_by(Order.created_at)
        .all()
    )
    return [order_id for order_id, created_at, hours in rows
            if created_at + timedelta(hours=hours) <= now]


def run_auto_confirm_sweep(now=None):
    """Confirm every due order that passes the payment gate.

    Each order is confirmed in its own transaction; a failure is logged and
    counted as skipped without stopping the sweep.
    """
    due = due_orders(now)
    if not due:
        return SweepResult(0, 0)

    eligible = {
        order_id for (order_id,) in
        db.session.query(Order.id)
        .filter(Order.id.in_(due))
        .filter(or_(Order.payment_method == PaymentMethod.COD, Order.payment_status == PaymentStatus.PAID))
        .all()
    }

    confirmed = skipped = 0
    for order_id in due:
        if order_id not in eligible:
            current_app.logger.debug("Order %s awaits payment verification, not auto-confirming", order_id)
            skipped += 1
            continue
        try:
            transition_order(order_id, OrderStatus.CONFIRMED, SYSTEM_ACTOR)
            confirmed += 1
        except OrderError as e:
            db.session.rollback()
            current_app.logger.warning("Auto-confirm skipped order %s: %s", order_id, e)
            skipped += 1
        except Exception as e:
            db.session.rollback()
            current_app.logger.error("Auto-confirm failed for order %s: %s", order_id, e)
            skipped += 1

    current_app.logger.info("Auto-confirm sweep finished: confirmed=%s skipped=%s", confirmed, skipped)
    return SweepResult(confirmed, skipped)
