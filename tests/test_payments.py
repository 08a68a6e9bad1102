import pytest

from conftest import ADMIN, CUSTOMER
from errors import AlreadyProcessedError, IllegalTransitionError
from lifecycle import Actor, Role, request_return, transition_order
from models import db, Notification, Order, OrderStatus as S, PaymentMethod, PaymentStatus, ReturnRequest
from payments import confirm_payment, refund_order


@pytest.fixture
def upi_order(place, product):
    return place((product, 1), method=PaymentMethod.UPI, transaction_id="412345678901")


def test_confirm_payment_marks_paid_and_confirmed(upi_order, seller):
    order = confirm_payment(upi_order.id, seller)

    assert order.payment_status == PaymentStatus.PAID
    assert order.status == S.CONFIRMED
    [note] = Notification.query.filter_by(user_id=CUSTOMER.id).all()
    assert note.title == "Payment received"

    with pytest.raises(AlreadyProcessedError) as exc:
        confirm_payment(upi_order.id, seller)
    assert exc.value.context["payment_status"] == PaymentStatus.PAID


def test_admin_can_confirm_payment(upi_order):
    assert confirm_payment(upi_order.id, ADMIN).status == S.CONFIRMED


def test_only_owning_seller_or_admin_confirms(upi_order, make_shop):
    with pytest.raises(IllegalTransitionError):
        confirm_payment(upi_order.id, CUSTOMER)
    with pytest.raises(IllegalTransitionError):
        confirm_payment(upi_order.id, Actor(make_shop().seller_id, Role.SELLER))
    assert db.session.get(Order, upi_order.id).payment_status == PaymentStatus.PENDING


def test_payment_state_is_not_revealed_to_outsiders(upi_order, seller, make_shop):
    confirm_payment(upi_order.id, seller)

    for outsider in (CUSTOMER, Actor(make_shop().seller_id, Role.SELLER)):
        with pytest.raises(IllegalTransitionError) as exc:
            confirm_payment(upi_order.id, outsider)
        assert "payment_status" not in exc.value.context


def test_cod_orders_are_not_paid_upfront(place, product, seller):
    order = place((product, 1))
    with pytest.raises(IllegalTransitionError):
        confirm_payment(order.id, seller)


def test_cancelled_order_payment_cannot_be_confirmed(upi_order, seller):
    transition_order(upi_order.id, S.CANCELLED, CUSTOMER)
    with pytest.raises(IllegalTransitionError):
        confirm_payment(upi_order.id, seller)


def test_failed_payment_can_be_verified_later(upi_order, seller):
    order = db.session.get(Order, upi_order.id)
    order.payment_status = PaymentStatus.FAILED
    db.session.commit()

    assert confirm_payment(upi_order.id, seller).payment_status == PaymentStatus.PAID


def test_refund_after_return(upi_order, seller):
    confirm_payment(upi_order.id, seller)
    for target in (S.PACKED, S.SHIPPED, S.OUT_FOR_DELIVERY, S.DELIVERED):
        transition_order(upi_order.id, target, seller, tracking_id="AWB9")
    request_return(upi_order.id, CUSTOMER, "Item not as described")

    order = refund_order(upi_order.id, ADMIN)

    assert order.payment_status == PaymentStatus.REFUNDED
    assert order.status == S.RETURNED
    [req] = ReturnRequest.query.filter_by(order_id=order.id).all()
    assert req.status == PaymentStatus.REFUNDED
    assert req.refund_status == PaymentStatus.REFUNDED
    assert req.processed_at is not None

    with pytest.raises(AlreadyProcessedError):
        refund_order(upi_order.id, ADMIN)
    with pytest.raises(AlreadyProcessedError):
        confirm_payment(upi_order.id, seller)


def test_refund_preconditions(upi_order, seller):
    with pytest.raises(IllegalTransitionError):
        refund_order(upi_order.id, seller)

    confirm_payment(upi_order.id, seller)
    with pytest.raises(IllegalTransitionError):
        refund_order(upi_order.id, ADMIN)

    transition_order(upi_order.id, S.CANCELLED, ADMIN)
    assert refund_order(upi_order.id, ADMIN).payment_status == PaymentStatus.REFUNDED


def test_unpaid_cancelled_order_has_nothing_to_refund(upi_order):
    transition_order(upi_order.id, S.CANCELLED, CUSTOMER)
    with pytest.raises(IllegalTransitionError):
        refund_order(upi_order.id, ADMIN)
