import itertools
from datetime import timedelta
from decimal import Decimal

import pytest

from app import create_app
from ledger import create_order
from lifecycle import Actor, Role
from models import db, Order, PaymentMethod, Product, Shop, utcnow

ADDRESS = {
    "full_name": "Asha Verma",
    "phone": "9876543210",
    "address_line1": "12 MG Road, Flat 4B",
    "address_line2": None,
    "city": "Pune",
    "state": "Maharashtra",
    "pincode": "411001",
}

CUSTOMER = Actor("cust-1", Role.CUSTOMER)
OTHER_CUSTOMER = Actor("cust-2", Role.CUSTOMER)
ADMIN = Actor("admin-1", Role.ADMIN)


@pytest.fixture
def app():
    app = create_app({
        "TESTING": True,
        "SQLALCHEMY_DATABASE_URI": "sqlite://",
        "NOTIFY_WEBHOOK_URL": None,
        "RESTOCK_ON_CANCEL": False,
        "RETURN_WINDOW_DAYS": 7,
    })
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_shop(app):
    counter = itertools.count(1)

    def _make(**overrides):
        n = next(counter)
        fields = dict(
            seller_id=f"seller-{n}",
            shop_name=f"Shop {n}",
            shop_slug=f"shop-{n}",
            is_active=True,
            is_verified=True,
            accepts_cod=True,
            upi_id=f"shop{n}@upi",
            shipping_charge=Decimal("50"),
            free_shipping_above=Decimal("500"),
        )
        fields.update(overrides)
        shop = Shop(**fields)
        db.session.add(shop)
        db.session.commit()
        return shop

    return _make


@pytest.fixture
def make_product(app):
    counter = itertools.count(1)

    def _make(shop, **overrides):
        n = next(counter)
        fields = dict(
            shop_id=shop.id,
            name=f"Handloom Scarf {n}",
            price=Decimal("200"),
            stock=10,
            image=f"https://cdn.example.com/p{n}.jpg",
            is_published=True,
        )
        fields.update(overrides)
        product = Product(**fields)
        db.session.add(product)
        db.session.commit()
        return product

    return _make


@pytest.fixture
def shop(make_shop):
    return make_shop()


@pytest.fixture
def seller(shop):
    return Actor(shop.seller_id, Role.SELLER)


@pytest.fixture
def product(make_product, shop):
    return make_product(shop)


@pytest.fixture
def place(app):
    """Place a single-shop order for ``CUSTOMER``."""

    def _place(*lines, method=PaymentMethod.COD, customer=CUSTOMER, **kwargs):
        items = [{"product_id": p.id, "quantity": q} for p, q in lines]
        return create_order(customer.id, items, ADDRESS, method, **kwargs)

    return _place


def age_order(order_id, hours):
    order = db.session.get(Order, order_id)
    order.created_at = utcnow() - timedelta(hours=hours)
    db.session.commit()
