import pytest
from sqlalchemy.orm import Session

from storefront.core.exceptions import ConflictError
from storefront.models.discount import Discount
from storefront.models.order import FulfillmentStatus, Order, PaymentMethod, PaymentStatus
from storefront.models.order_status_history import OrderStatusHistory
from storefront.models.payment import Payment, PaymentRecordStatus
from storefront.models.product import Product, ProductVariant
from storefront.models.user import User, UserRole
from storefront.services.order_ledger import (
    OrderLedger,
    OrderLine,
    can_transition_fulfillment,
    can_transition_payment,
)

ADDRESS = {
    "recipient_name": "Nguyen Van An",
    "recipient_phone": "0901234567",
    "province_city": "Ho Chi Minh",
    "district": "Quan 1",
    "ward": "Ben Nghe",
    "street_address": "12 Le Loi",
}

GUEST = {"full_name": "Nguyen Van An", "email": "An.Nguyen@Gmail.com", "phone": "0901234567"}


def _create_admin(db: Session) -> User:
    admin = User(email="admin@storefront.vn", full_name="Admin", role=UserRole.ADMIN)
    db.add(admin)
    db.commit()
    db.refresh(admin)
    return admin


def _create_order(
    db: Session,
    method: PaymentMethod = PaymentMethod.MOMO,
    discount: Discount = None,
    discount_amount: int = 0,
) -> Order:
    product = Product(name="Santal Noir", slug=f"santal-noir-{method.value}-{db.query(Order).count()}")
    db.add(product)
    db.flush()
    variant = ProductVariant(product_id=product.id, volume_ml=50, price=500000, stock_quantity=5)
    db.add(variant)
    db.flush()

    order = OrderLedger(db).create_order(
        lines=[OrderLine(variant.id, product.name, 50, 2, 500000)],
        payment_method=method,
        address=ADDRESS,
        subtotal_amount=1000000,
        shipping_fee=30000,
        discount=discount,
        discount_amount=discount_amount,
        guest=GUEST,
    )
    db.commit()
    db.refresh(order)
    return order


def _history(db: Session, order_id: int, axis: str) -> list:
    rows = (
        db.query(OrderStatusHistory)
        .filter(OrderStatusHistory.order_id == order_id, OrderStatusHistory.axis == axis)
        .order_by(OrderStatusHistory.id)
        .all()
    )
    return [(row.old_status, row.new_status) for row in rows]


def test_transition_tables_reject_illegal_edges():
    assert not can_transition_fulfillment(FulfillmentStatus.DELIVERED, FulfillmentStatus.SHIPPING)
    assert not can_transition_fulfillment(FulfillmentStatus.CANCELLED, FulfillmentStatus.PROCESSING)
    assert not can_transition_payment(PaymentStatus.FAILED, PaymentStatus.PAID)
    assert not can_transition_payment(PaymentStatus.REFUNDED, PaymentStatus.PAID)
    assert can_transition_payment(PaymentStatus.PENDING, PaymentStatus.PAID)
    assert can_transition_fulfillment(FulfillmentStatus.SHIPPING, FulfillmentStatus.DELIVERY_FAILED)


def test_create_order_freezes_totals(db_session: Session):
    discount = Discount(code="WELCOME50K", discount_amount=50000, remaining_uses=1)
    db_session.add(discount)
    db_session.commit()

    order = _create_order(db_session, PaymentMethod.COD, discount=discount, discount_amount=50000)

    assert order.total_amount == 1000000 - 50000 + 30000
    assert order.discount_code == "WELCOME50K"
    assert order.guest_email == "an.nguyen@gmail.com"
    assert order.payment_status == PaymentStatus.PENDING
    assert order.fulfillment_status == FulfillmentStatus.PROCESSING
    assert len(order.access_token) >= 43
    assert [(p.payment_method, p.status) for p in order.payments] == [
        (PaymentMethod.COD, PaymentRecordStatus.PENDING)
    ]
    db_session.refresh(discount)
    assert discount.remaining_uses == 0


def test_payment_transition_is_compare_and_set(db_session: Session):
    order = _create_order(db_session)
    ledger = OrderLedger(db_session)

    ledger.transition_payment(order, PaymentStatus.PENDING, PaymentStatus.PAID, source="webhook")
    with pytest.raises(ConflictError):
        ledger.transition_payment(order, PaymentStatus.PENDING, PaymentStatus.PAID, source="poll")
    db_session.commit()

    assert order.payment_status == PaymentStatus.PAID
    assert _history(db_session, order.id, "payment") == [(None, "Pending"), ("Pending", "Paid")]


def test_failed_to_paid_is_rejected(db_session: Session):
    order = _create_order(db_session)
    ledger = OrderLedger(db_session)
    ledger.transition_payment(order, PaymentStatus.PENDING, PaymentStatus.FAILED, source="webhook")
    db_session.commit()

    with pytest.raises(ConflictError):
        ledger.transition_payment(order, PaymentStatus.FAILED, PaymentStatus.PAID, source="webhook")

    db_session.refresh(order)
    assert order.payment_status == PaymentStatus.FAILED


def test_delivered_to_shipping_is_rejected(db_session: Session):
    admin = _create_admin(db_session)
    order = _create_order(db_session, PaymentMethod.COD)
    ledger = OrderLedger(db_session)
    ledger.update_fulfillment(order.id, FulfillmentStatus.SHIPPING, admin)
    ledger.update_fulfillment(order.id, FulfillmentStatus.DELIVERED, admin)

    with pytest.raises(ConflictError):
        ledger.update_fulfillment(order.id, FulfillmentStatus.SHIPPING, admin)

    db_session.refresh(order)
    assert order.fulfillment_status == FulfillmentStatus.DELIVERED
    assert _history(db_session, order.id, "fulfillment") == [
        ("PROCESSING", "SHIPPING"),
        ("SHIPPING", "DELIVERED"),
    ]


def test_cancelled_to_processing_is_rejected(db_session: Session):
    order = _create_order(db_session)
    ledger = OrderLedger(db_session)
    ledger.cancel(order, "Changed my mind", source="guest")

    with pytest.raises(ConflictError):
        ledger.transition_fulfillment(
            order, FulfillmentStatus.CANCELLED, FulfillmentStatus.PROCESSING, source="admin"
        )

    db_session.refresh(order)
    assert order.fulfillment_status == FulfillmentStatus.CANCELLED
    assert order.cancellation_reason == "Changed my mind"


def test_unpaid_online_order_cannot_ship(db_session: Session):
    admin = _create_admin(db_session)
    order = _create_order(db_session, PaymentMethod.MOMO)

    with pytest.raises(ConflictError):
        OrderLedger(db_session).update_fulfillment(order.id, FulfillmentStatus.SHIPPING, admin)


def test_paid_online_order_cannot_be_cancelled_by_customer(db_session: Session):
    order = _create_order(db_session, PaymentMethod.MOMO)
    ledger = OrderLedger(db_session)
    ledger.transition_payment(order, PaymentStatus.PENDING, PaymentStatus.PAID, source="webhook")
    db_session.commit()

    with pytest.raises(ConflictError):
        ledger.cancel(order, "Too slow", source="guest")


def test_change_payment_method_reopens_failed_order(db_session: Session):
    order = _create_order(db_session, PaymentMethod.MOMO)
    ledger = OrderLedger(db_session)
    ledger.transition_payment(order, PaymentStatus.PENDING, PaymentStatus.FAILED, source="webhook")
    db_session.commit()

    order = ledger.change_payment_method(order, PaymentMethod.COD, source="guest")

    assert order.payment_status == PaymentStatus.PENDING
    assert order.payment_method == PaymentMethod.COD
    cod_rows = db_session.query(Payment).filter(Payment.order_id == order.id).all()
    assert [(p.payment_method, p.status) for p in cod_rows] == [(PaymentMethod.COD, PaymentRecordStatus.PENDING)]
    assert _history(db_session, order.id, "payment")[-1] == ("Failed", "Pending")


def test_change_payment_method_refused_after_payment(db_session: Session):
    order = _create_order(db_session, PaymentMethod.MOMO)
    ledger = OrderLedger(db_session)
    ledger.transition_payment(order, PaymentStatus.PENDING, PaymentStatus.PAID, source="webhook")
    db_session.commit()

    with pytest.raises(ConflictError):
        ledger.change_payment_method(order, PaymentMethod.COD, source="guest")


def test_switching_cod_to_momo_retires_cod_row(db_session: Session):
    order = _create_order(db_session, PaymentMethod.COD)

    OrderLedger(db_session).change_payment_method(order, PaymentMethod.MOMO, source="guest")

    cod_row = db_session.query(Payment).filter(Payment.order_id == order.id).one()
    assert cod_row.status == PaymentRecordStatus.FAILED
    assert order.payment_method == PaymentMethod.MOMO


def test_confirm_cod_payment_and_refund(db_session: Session):
    admin = _create_admin(db_session)
    order = _create_order(db_session, PaymentMethod.COD)
    ledger = OrderLedger(db_session)

    order = ledger.confirm_cod_payment(order.id, admin)
    assert order.payment_status == PaymentStatus.PAID
    payment = db_session.query(Payment).filter(Payment.order_id == order.id).one()
    assert payment.status == PaymentRecordStatus.COMPLETED
    assert payment.paid_at is not None

    order = ledger.refund(order.id, admin, notes="Returned unopened")
    assert order.payment_status == PaymentStatus.REFUNDED
    db_session.refresh(payment)
    assert payment.status == PaymentRecordStatus.REFUNDED

    with pytest.raises(ConflictError):
        ledger.refund(order.id, admin)


def test_confirm_cod_payment_refused_for_online_order(db_session: Session):
    admin = _create_admin(db_session)
    order = _create_order(db_session, PaymentMethod.MOMO)

    with pytest.raises(ConflictError):
        OrderLedger(db_session).confirm_cod_payment(order.id, admin)
