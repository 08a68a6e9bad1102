from datetime import datetime, timezone
from decimal import Decimal

from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import event, inspect
from sqlalchemy.orm import validates

from errors import LedgerInvariantError

db = SQLAlchemy()


def utcnow():
    # naive UTC, SQLite drops tzinfo on DateTime columns
    return datetime.now(timezone.utc).replace(tzinfo=None)


class OrderStatus:
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PACKED = "packed"
    SHIPPED = "shipped"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    RETURNED = "returned"

    HAPPY_PATH = (PENDING, CONFIRMED, PACKED, SHIPPED, OUT_FOR_DELIVERY, DELIVERED)
    TERMINAL = (CANCELLED, RETURNED)
    ALL = HAPPY_PATH + TERMINAL


class PaymentStatus:
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"

    ALL = (PENDING, PAID, FAILED, REFUNDED)


class PaymentMethod:
    COD = "cod"
    UPI = "upi"
    BANK_TRANSFER = "bank_transfer"

    ALL = (COD, UPI, BANK_TRANSFER)


class Shop(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    seller_id = db.Column(db.String(64), nullable=False, index=True)
    shop_name = db.Column(db.String(120), nullable=False)
    shop_slug = db.Column(db.String(120), unique=True, nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    is_verified = db.Column(db.Boolean, default=False, nullable=False)

    # payment acceptance
    accepts_cod = db.Column(db.Boolean, default=True, nullable=False)
    upi_id = db.Column(db.String(100))
    bank_account_name = db.Column(db.String(120))
    bank_account_number = db.Column(db.String(40))
    bank_ifsc = db.Column(db.String(20))
    payment_instructions = db.Column(db.Text)

    # charge policy
    shipping_charge = db.Column(db.Numeric(12, 2), default=Decimal("0"), nullable=False)
    free_shipping_above = db.Column(db.Numeric(12, 2))
    charge_gst = db.Column(db.Boolean, default=False, nullable=False)
    gst_percentage = db.Column(db.Numeric(5, 2), default=Decimal("0"), nullable=False)
    charge_convenience = db.Column(db.Boolean, default=False, nullable=False)
    convenience_charge = db.Column(db.Numeric(12, 2), default=Decimal("0"), nullable=False)

    # automation policy
    auto_confirm_orders = db.Column(db.Boolean, default=False, nullable=False)
    auto_confirm_hours = db.Column(db.Integer, default=24, nullable=False)

    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        db.CheckConstraint("auto_confirm_hours BETWEEN 1 AND 168", name="ck_shop_auto_confirm_hours"),
    )

    @validates("auto_confirm_hours")
    def validate_auto_confirm_hours(self, key, value):
        if value is None or not 1 <= int(value) <= 168:
            raise ValueError("auto_confirm_hours must be between 1 and 168")
        return int(value)

    def accepts(self, payment_method):
        if payment_method == PaymentMethod.COD:
            return bool(self.accepts_cod)
        if payment_method == PaymentMethod.UPI:
            return bool(self.upi_id)
        if payment_method == PaymentMethod.BANK_TRANSFER:
            return bool(self.bank_account_number and self.bank_ifsc)
        return False


class Product(db.Model):
    """Catalog row as seen by checkout: price, stock and seller attribution."""

    id = db.Column(db.Integer, primary_key=True)
    shop_id = db.Column(db.Integer, db.ForeignKey("shop.id"), nullable=False, index=True)
    name = db.Column(db.String(200), nullable=False)
    price = db.Column(db.Numeric(12, 2), nullable=False)
    stock = db.Column(db.Integer, default=0, nullable=False)
    image = db.Column(db.String(500))
    is_published = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)

    shop = db.relationship("Shop", backref=db.backref("products", lazy=True))


class Order(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    order_number = db.Column(db.String(32), unique=True, nullable=False)
    customer_id = db.Column(db.String(64), nullable=False, index=True)
    shop_id = db.Column(db.Integer, db.ForeignKey("shop.id"), nullable=False, index=True)

    status = db.Column(db.String(20), default=OrderStatus.PENDING, nullable=False, index=True)
    payment_status = db.Column(db.String(20), default=PaymentStatus.PENDING, nullable=False)
    payment_method = db.Column(db.String(20), nullable=False)

    # charge breakdown, persisted at checkout and never re-derived
    subtotal = db.Column(db.Numeric(12, 2), nullable=False)
    shipping_cost = db.Column(db.Numeric(12, 2), default=Decimal("0"), nullable=False)
    gst_amount = db.Column(db.Numeric(12, 2), default=Decimal("0"), nullable=False)
    convenience_fee = db.Column(db.Numeric(12, 2), default=Decimal("0"), nullable=False)
    discount = db.Column(db.Numeric(12, 2), default=Decimal("0"), nullable=False)
    total = db.Column(db.Numeric(12, 2), nullable=False)

    shipping_address = db.Column(db.JSON, nullable=False)
    notes = db.Column(db.Text)
    tracking_id = db.Column(db.String(100))

    cancelled_at = db.Column(db.DateTime)
    cancelled_by = db.Column(db.String(20))
    customer_cancel_reason = db.Column(db.Text)
    decline_reason = db.Column(db.Text)
    declined_at = db.Column(db.DateTime)
    delivered_at = db.Column(db.DateTime)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    shop = db.relationship("Shop", backref=db.backref("orders", lazy=True))
    items = db.relationship("OrderItem", backref="order", lazy=True, order_by="OrderItem.id")

    @property
    def is_cod(self):
        return self.payment_method == PaymentMethod.COD

    def expected_total(self):
        return (
            Decimal(self.subtotal)
            - Decimal(self.discount or 0)
            + Decimal(self.shipping_cost or 0)
            + Decimal(self.gst_amount or 0)
            + Decimal(self.convenience_fee or 0)
        )

    def to_dict(self, with_items=True):
        data = {
            "id": self.id,
            "order_number": self.order_number,
            "customer_id": self.customer_id,
            "shop_id": self.shop_id,
            "status": self.status,
            "payment_status": self.payment_status,
            "payment_method": self.payment_method,
            "subtotal": str(self.subtotal),
            "shipping_cost": str(self.shipping_cost),
            "gst_amount": str(self.gst_amount),
            "convenience_fee": str(self.convenience_fee),
            "discount": str(self.discount),
            "total": str(self.total),
            "shipping_address": self.shipping_address,
            "notes": self.notes,
            "tracking_id": self.tracking_id,
            "cancelled_at": _isoformat(self.cancelled_at),
            "cancelled_by": self.cancelled_by,
            "customer_cancel_reason": self.customer_cancel_reason,
            "decline_reason": self.decline_reason,
            "declined_at": _isoformat(self.declined_at),
            "delivered_at": _isoformat(self.delivered_at),
            "created_at": _isoformat(self.created_at),
            "updated_at": _isoformat(self.updated_at),
        }
        if with_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class OrderItem(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("order.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("product.id", ondelete="SET NULL"), nullable=True)
    product_name = db.Column(db.String(200), nullable=False)  # snapshot
    product_image = db.Column(db.String(500))  # snapshot
    quantity = db.Column(db.Integer, nullable=False)
    price = db.Column(db.Numeric(12, 2), nullable=False)  # unit price at purchase time
    created_at = db.Column(db.DateTime, default=utcnow)

    __table_args__ = (db.CheckConstraint("quantity >= 1", name="ck_order_item_quantity"),)

    @property
    def line_total(self):
        return Decimal(self.price) * self.quantity

    def to_dict(self):
        return {
            "id": self.id,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "product_image": self.product_image,
            "quantity": self.quantity,
            "price": str(self.price),
            "line_total": str(self.line_total),
        }


class ReturnRequest(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("order.id"), nullable=False, index=True)
    user_id = db.Column(db.String(64), nullable=False)
    reason = db.Column(db.Text, nullable=False)
    description = db.Column(db.Text)
    status = db.Column(db.String(20), default="requested", nullable=False)
    refund_amount = db.Column(db.Numeric(12, 2))
    refund_status = db.Column(db.String(20))
    processed_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utcnow)

    order = db.relationship("Order", backref=db.backref("return_requests", lazy=True, order_by="ReturnRequest.id"))

    def to_dict(self):
        return {
            "id": self.id,
            "order_id": self.order_id,
            "user_id": self.user_id,
            "reason": self.reason,
            "description": self.description,
            "status": self.status,
            "refund_amount": str(self.refund_amount) if self.refund_amount is not None else None,
            "refund_status": self.refund_status,
            "processed_at": _isoformat(self.processed_at),
            "created_at": _isoformat(self.created_at),
        }


class Notification(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(64), nullable=False, index=True)
    title = db.Column(db.String(200), nullable=False)
    message = db.Column(db.Text, nullable=False)
    type = db.Column(db.String(20), default="info", nullable=False)
    link = db.Column(db.String(300))
    is_read = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "title": self.title,
            "message": self.message,
            "type": self.type,
            "link": self.link,
            "is_read": self.is_read,
            "created_at": _isoformat(self.created_at),
        }


def _isoformat(value):
    return value.isoformat() if value else None


@event.listens_for(Order, "before_insert")
@event.listens_for(Order, "before_update")
def check_order_total(mapper, connection, target):
    total = Decimal(target.total)
    if total < 0 or total != target.expected_total():
        raise LedgerInvariantError(
            "Order total does not match its charge breakdown",
            order_number=target.order_number,
            total=str(total),
            expected=str(target.expected_total()),
        )


SNAPSHOT_FIELDS = ("product_name", "product_image", "quantity", "price")


@event.listens_for(OrderItem, "before_update")
def freeze_order_item(mapper, connection, target):
    state = inspect(target)
    changed = [name for name in SNAPSHOT_FIELDS if state.attrs[name].history.has_changes()]
    if changed:
        raise LedgerInvariantError(
            "Order line items are immutable once placed",
            order_item_id=target.id,
            fields=changed,
        )
