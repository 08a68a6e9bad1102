import os
import time
from decimal import Decimal, InvalidOperation

import click
from flask import Blueprint, Flask, current_app, jsonify, request
from flask.cli import with_appcontext
from flask_cors import CORS
from flask_migrate import Migrate

from autoconfirm import run_auto_confirm_sweep
from charges import breakdown_to_dict
from errors import InvalidCartError, OrderError
from ledger import checkout, quote
from lifecycle import Actor, Role, load_order, request_return, transition_order
from models import db, Notification, Order, Shop
from payments import confirm_payment, refund_order


def _env_flag(name, default="false"):
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes", "on")


def create_app(test_config=None):
    app = Flask(__name__)
    app.config['SQLALCHEMY_DATABASE_URI'] = os.environ.get('DATABASE_URI', 'sqlite:///storefront.db')
    app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
    app.config['NOTIFY_WEBHOOK_URL'] = os.environ.get('NOTIFY_WEBHOOK_URL')
    app.config['NOTIFY_TIMEOUT'] = float(os.environ.get('NOTIFY_TIMEOUT', 10))
    app.config['RESTOCK_ON_CANCEL'] = _env_flag('RESTOCK_ON_CANCEL')
    app.config['RETURN_WINDOW_DAYS'] = int(os.environ.get('RETURN_WINDOW_DAYS', 7))
    app.config['LOG_LEVEL'] = os.environ.get('LOG_LEVEL', 'INFO')
    if test_config:
        app.config.update(test_config)

    app.logger.setLevel(app.config['LOG_LEVEL'])

    db.init_app(app)
    Migrate(app, db)
    CORS(app, supports_credentials=True)

    app.register_blueprint(api)
    app.register_error_handler(OrderError, handle_order_error)
    app.cli.add_command(auto_confirm_command)
    return app


def handle_order_error(error):
    current_app.logger.info("Rejected %s: %s %s", request.path, error.message, error.context)
    return jsonify(error.to_dict()), error.status_code


def current_actor():
    """Identity is resolved upstream; the role arrives already verified."""
    role = (request.headers.get("X-User-Role") or "").strip().lower()
    user_id = (request.headers.get("X-User-Id") or "").strip()
    if role not in (Role.CUSTOMER, Role.SELLER, Role.ADMIN) or not user_id:
        return None
    return Actor(user_id, role)


def _unauthorized():
    return jsonify({"error": "Missing or invalid X-User-Id / X-User-Role headers"}), 401


def _parse_discounts(raw):
    discounts = {}
    for shop_id, amount in (raw or {}).items():
        try:
            discounts[int(shop_id)] = Decimal(str(amount))
        except (ValueError, InvalidOperation):
            raise InvalidCartError("Invalid discount", shop_id=shop_id, discount=amount)
    return discounts


# ===========================
# Endpoints
# ===========================

api = Blueprint("api", __name__, url_prefix="/api")


@api.route('/cart/totals', methods=['POST'])
def cart_totals():
    """Charge breakdown per shop for the posted cart; nothing is persisted."""
    data = request.get_json(force=True) or {}
    quotes = quote(data.get("items"), _parse_discounts(data.get("discounts")))
    return jsonify({
        "shops": [
            {"shop_id": shop.id, "shop_name": shop.shop_name, **breakdown_to_dict(breakdown)}
            for shop, breakdown in quotes
        ]
    }), 200


@api.route('/orders', methods=['POST'])
def place_orders():
    """
    Checkout. Expects items, shipping_address, payment_method and optionally
    transaction_id (UPI / bank reference) and per-shop discounts.
    Returns one order per shop in the cart.
    """
    actor = current_actor()
    if actor is None or actor.role != Role.CUSTOMER:
        return _unauthorized()

    data = request.get_json(force=True) or {}
    orders = checkout(
        actor.id,
        data.get("items"),
        data.get("shipping_address"),
        (data.get("payment_method") or "").strip().lower(),
        transaction_id=data.get("transaction_id"),
        discounts=_parse_discounts(data.get("discounts")),
    )
    return jsonify({"orders": [order.to_dict() for order in orders]}), 201


@api.route('/orders', methods=['GET'])
def list_orders():
    actor = current_actor()
    if actor is None:
        return _unauthorized()

    query = Order.query
    if actor.role == Role.CUSTOMER:
        query = query.filter(Order.customer_id == actor.id)
    elif actor.role == Role.SELLER:
        query = query.join(Shop, Order.shop_id == Shop.id).filter(Shop.seller_id == actor.id)
    if request.args.get("status"):
        query = query.filter(Order.status == request.args["status"])
    if request.args.get("payment_status"):
        query = query.filter(Order.payment_status == request.args["payment_status"])

    orders = query.order_by(Order.created_at.desc()).all()
    return jsonify([order.to_dict() for order in orders]), 200


@api.route('/orders/<int:order_id>', methods=['GET'])
def get_order(order_id):
    actor = current_actor()
    if actor is None:
        return _unauthorized()

    order = load_order(order_id)
    if (actor.role == Role.CUSTOMER and order.customer_id != actor.id) or \
            (actor.role == Role.SELLER and order.shop.seller_id != actor.id):
        return jsonify({"error": "Order not found.", "code": "order_not_found"}), 404
    return jsonify(order.to_dict()), 200


@api.route('/orders/<int:order_id>/status', methods=['POST'])
def change_status(order_id):
    actor = current_actor()
    if actor is None:
        return _unauthorized()

    data = request.get_json(force=True) or {}
    status = data.get("status")
    if not status:
        return jsonify({"error": "Missing status"}), 400

    order = transition_order(
        order_id, status, actor,
        reason=data.get("reason"),
        tracking_id=data.get("tracking_id"),
    )
    return jsonify(order.to_dict()), 200


@api.route('/orders/<int:order_id>/confirm-payment', methods=['POST'])
def confirm_order_payment(order_id):
    """Seller verified the customer's transfer: order becomes paid and confirmed."""
    actor = current_actor()
    if actor is None:
        return _unauthorized()

    order = confirm_payment(order_id, actor)
    return jsonify({"message": "Payment confirmed. Order accepted.", "order": order.to_dict()}), 200


@api.route('/orders/<int:order_id>/returns', methods=['POST'])
def create_return(order_id):
    actor = current_actor()
    if actor is None:
        return _unauthorized()

    data = request.get_json(force=True) or {}
    order = request_return(order_id, actor, data.get("reason"), data.get("description"))
    return jsonify({
        "order": order.to_dict(),
        "return_request": order.return_requests[-1].to_dict(),
    }), 201


@api.route('/orders/<int:order_id>/refund', methods=['POST'])
def refund(order_id):
    actor = current_actor()
    if actor is None:
        return _unauthorized()

    order = refund_order(order_id, actor)
    return jsonify(order.to_dict()), 200


@api.route('/admin/auto-confirm', methods=['POST'])
def admin_auto_confirm():
    actor = current_actor()
    if actor is None or actor.role != Role.ADMIN:
        return _unauthorized()

    result = run_auto_confirm_sweep()
    return jsonify(result._asdict()), 200


@api.route('/notifications', methods=['GET'])
def list_notifications():
    actor = current_actor()
    if actor is None:
        return _unauthorized()

    notifications = (
        Notification.query
        .filter_by(user_id=actor.id)
        .order_by(Notification.created_at.desc(), Notification.id.desc())
        .all()
    )
    return jsonify([n.to_dict() for n in notifications]), 200


@click.command("auto-confirm")
@click.option("--every", type=int, default=0, help="Repeat the sweep every N seconds instead of running once.")
@with_appcontext
def auto_confirm_command(every):
    """Confirm pending orders whose shop auto-confirm window has passed."""
    while True:
        result = run_auto_confirm_sweep()
        click.echo(f"confirmed={result.confirmed_count} skipped={result.skipped_count}")
        if every <= 0:
            break
        time.sleep(every)


app = create_app()

if __name__ == "__main__":
    app.run(host="0.0.0.0", port=int(os.environ.get("PORT", 5000)), debug=True)
