import logging

import pytest

import autoconfirm
from autoconfirm import due_orders, run_auto_confirm_sweep
from conftest import CUSTOMER, age_order
from errors import ConcurrentModificationError
from lifecycle import transition_order
from models import db, Notification, Order, OrderStatus as S, PaymentMethod, PaymentStatus, Shop


@pytest.fixture
def auto_shop(make_shop):
    return make_shop(auto_confirm_orders=True, auto_confirm_hours=24)


def status_of(order):
    return db.session.get(Order, order.id).status


def test_due_cod_order_is_confirmed_once(place, make_product, auto_shop):
    order = place((make_product(auto_shop), 1))
    age_order(order.id, 25)

    result = run_auto_confirm_sweep()

    assert result.confirmed_count == 1
    assert result.skipped_count == 0
    assert status_of(order) == S.CONFIRMED
    [note] = Notification.query.filter_by(user_id=CUSTOMER.id).all()
    assert note.title == "Order confirmed"

    again = run_auto_confirm_sweep()
    assert again.confirmed_count == 0
    assert Notification.query.filter_by(user_id=CUSTOMER.id).count() == 1


def test_young_orders_are_left_alone(place, make_product, auto_shop):
    order = place((make_product(auto_shop), 1))
    age_order(order.id, 23)

    assert run_auto_confirm_sweep() == (0, 0)
    assert status_of(order) == S.PENDING


def test_threshold_follows_each_shop(place, make_product, make_shop):
    quick = make_shop(auto_confirm_orders=True, auto_confirm_hours=2)
    slow = make_shop(auto_confirm_orders=True, auto_confirm_hours=48)
    a = place((make_product(quick), 1))
    b = place((make_product(slow), 1))
    age_order(a.id, 3)
    age_order(b.id, 3)

    assert due_orders() == [a.id]


def test_shops_without_auto_confirm_are_ignored(place, product):
    order = place((product, 1))
    age_order(order.id, 500)

    assert run_auto_confirm_sweep() == (0, 0)
    assert status_of(order) == S.PENDING


def test_unpaid_prepaid_orders_are_skipped(place, make_product, auto_shop):
    order = place((make_product(auto_shop), 1), method=PaymentMethod.UPI, transaction_id="412345678901")
    age_order(order.id, 100)

    result = run_auto_confirm_sweep()

    assert result.confirmed_count == 0
    assert result.skipped_count == 1
    assert status_of(order) == S.PENDING


def test_paid_prepaid_orders_are_confirmed(place, make_product, auto_shop):
    order = place((make_product(auto_shop), 1), method=PaymentMethod.UPI)
    paid = db.session.get(Order, order.id)
    paid.payment_status = PaymentStatus.PAID
    db.session.commit()
    age_order(order.id, 30)

    assert run_auto_confirm_sweep().confirmed_count == 1
    assert status_of(order) == S.CONFIRMED


def test_cancelled_orders_are_not_revived(place, make_product, auto_shop):
    order = place((make_product(auto_shop), 1))
    age_order(order.id, 30)
    transition_order(order.id, S.CANCELLED, CUSTOMER)

    assert run_auto_confirm_sweep() == (0, 0)
    assert status_of(order) == S.CANCELLED


def test_one_failure_does_not_stop_the_sweep(place, make_product, auto_shop, monkeypatch):
    first = place((make_product(auto_shop), 1))
    second = place((make_product(auto_shop), 1))
    age_order(first.id, 30)
    age_order(second.id, 26)

    real_transition = autoconfirm.transition_order

    def flaky(order_id, target, actor, **kwargs):
        if order_id == first.id:
            raise ConcurrentModificationError("lost race", order_id=order_id)
        return real_transition(order_id, target, actor, **kwargs)

    monkeypatch.setattr(autoconfirm, "transition_order", flaky)

    result = run_auto_confirm_sweep()

    assert result == (1, 1)
    assert status_of(first) == S.PENDING
    assert status_of(second) == S.CONFIRMED


def test_unexpected_error_is_logged_and_skipped(place, make_product, auto_shop, monkeypatch, caplog):
    first = place((make_product(auto_shop), 1))
    second = place((make_product(auto_shop), 1))
    age_order(first.id, 30)
    age_order(second.id, 26)

    real_transition = autoconfirm.transition_order

    def broken(order_id, target, actor, **kwargs):
        if order_id == first.id:
            raise RuntimeError("notification sink exploded")
        return real_transition(order_id, target, actor, **kwargs)

    monkeypatch.setattr(autoconfirm, "transition_order", broken)

    with caplog.at_level(logging.ERROR):
        result = run_auto_confirm_sweep()

    assert result == (1, 1)
    assert status_of(second) == S.CONFIRMED
    assert "notification sink exploded" in caplog.text


def test_auto_confirm_hours_must_be_in_range(app):
    with pytest.raises(ValueError):
        Shop(seller_id="s", shop_name="s", shop_slug="s", auto_confirm_hours=0)
    with pytest.raises(ValueError):
        Shop(seller_id="s", shop_name="s", shop_slug="s", auto_confirm_hours=169)
    assert Shop(seller_id="s", shop_name="s", shop_slug="s", auto_confirm_hours=168).auto_confirm_hours == 168


def test_cli_runs_one_sweep(app, place, make_product, auto_shop):
    order = place((make_product(auto_shop), 1))
    age_order(order.id, 25)

    result = app.test_cli_runner().invoke(args=["auto-confirm"])

    assert result.exit_code == 0
    assert "confirmed=1 skipped=0" in result.output
    assert status_of(order) == S.CONFIRMED
