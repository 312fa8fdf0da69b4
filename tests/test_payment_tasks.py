from datetime import datetime, timedelta

import requests
from sqlalchemy.orm import Session

from storefront.models.order import Order, PaymentMethod, PaymentStatus
from storefront.models.payment import Payment, PaymentIncident, PaymentRecordStatus
from storefront.models.product import Product, ProductVariant
from storefront.services.momo_gateway import QUERY_PATH
from storefront.services.order_ledger import OrderLedger, OrderLine
from storefront.services.payment_service import PaymentService
from storefront.services.webhook_reconciler import PaymentReconciler
from storefront.tasks.payment_tasks import reconcile_stale_attempts

ADDRESS = {
    "recipient_name": "Hoang Gia Bao",
    "recipient_phone": "0944444444",
    "province_city": "Hai Phong",
    "district": "Le Chan",
    "ward": "An Bien",
    "street_address": "9 Tran Phu",
}


def _order_with_attempt(db: Session, gateway, minutes_ago: int) -> Payment:
    product = Product(name="Ambre Nuit", slug=f"ambre-nuit-{db.query(Order).count()}")
    db.add(product)
    db.flush()
    variant = ProductVariant(product_id=product.id, volume_ml=75, price=800000, stock_quantity=4)
    db.add(variant)
    db.flush()
    order = OrderLedger(db).create_order(
        lines=[OrderLine(variant.id, product.name, 75, 1, 800000)],
        payment_method=PaymentMethod.MOMO,
        address=ADDRESS,
        subtotal_amount=800000,
        shipping_fee=30000,
        guest={"full_name": "Hoang Gia Bao", "email": "bao.hoang@gmail.com", "phone": "0944444444"},
    )
    db.commit()

    link = PaymentService(db, gateway).start_payment(order, source="guest")
    attempt = db.query(Payment).filter(Payment.gateway_order_id == link.gateway_order_id).one()
    attempt.created_at = datetime.utcnow() - timedelta(minutes=minutes_ago)
    db.commit()
    return attempt


def test_stale_attempt_is_settled_from_gateway_status(db_session: Session, gateway, gateway_http):
    stale = _order_with_attempt(db_session, gateway, minutes_ago=30)
    fresh = _order_with_attempt(db_session, gateway, minutes_ago=1)
    gateway_http.query_result_code = 0

    summary = reconcile_stale_attempts(db_session, gateway, older_than_minutes=15)

    assert summary == {"applied": 1}
    db_session.refresh(stale)
    db_session.refresh(fresh)
    assert stale.status == PaymentRecordStatus.COMPLETED
    assert stale.order.payment_status == PaymentStatus.PAID
    assert fresh.status == PaymentRecordStatus.PENDING


def test_still_processing_attempt_is_left_pending(db_session: Session, gateway, gateway_http):
    stale = _order_with_attempt(db_session, gateway, minutes_ago=30)

    summary = reconcile_stale_attempts(db_session, gateway, older_than_minutes=15)

    assert summary == {"in_progress": 1}
    db_session.refresh(stale)
    assert stale.status == PaymentRecordStatus.PENDING


def test_gateway_outage_is_counted_not_raised(db_session: Session, gateway, gateway_http):
    _order_with_attempt(db_session, gateway, minutes_ago=30)
    _order_with_attempt(db_session, gateway, minutes_ago=30)
    gateway_http.query_result_code = 0
    gateway_http.replies.append(requests.ConnectionError("gateway down"))

    summary = reconcile_stale_attempts(db_session, gateway, older_than_minutes=15)

    assert summary == {"errors": 1, "applied": 1}


def _gateway_queries(gateway_http) -> int:
    return sum(1 for url, _ in gateway_http.calls if url.endswith(QUERY_PATH))


def test_capture_on_cancelled_order_is_queried_once(db_session: Session, gateway, gateway_http):
    attempt = _order_with_attempt(db_session, gateway, minutes_ago=30)
    OrderLedger(db_session).cancel(attempt.order, "Changed my mind", source="guest")
    gateway_http.query_result_code = 0

    runs = [reconcile_stale_attempts(db_session, gateway, older_than_minutes=15) for _ in range(3)]

    assert runs == [{"incident": 1}, {}, {}]
    assert _gateway_queries(gateway_http) == 1
    db_session.refresh(attempt)
    assert attempt.status == PaymentRecordStatus.UNDER_REVIEW
    assert attempt.transaction_id == "4100000001"
    assert attempt.order.payment_status == PaymentStatus.PENDING
    assert db_session.query(PaymentIncident).one().kind == "capture_on_closed_order"


def test_amount_mismatch_is_parked_for_review(db_session: Session, gateway, gateway_http):
    attempt = _order_with_attempt(db_session, gateway, minutes_ago=30)
    gateway_http.created[attempt.gateway_order_id] = 999999
    gateway_http.query_result_code = 0

    runs = [reconcile_stale_attempts(db_session, gateway, older_than_minutes=15) for _ in range(3)]

    assert runs == [{"errors": 1}, {}, {}]
    assert _gateway_queries(gateway_http) == 1
    db_session.refresh(attempt)
    assert attempt.status == PaymentRecordStatus.UNDER_REVIEW
    assert attempt.transaction_id is None
    assert attempt.order.payment_status == PaymentStatus.PENDING
    assert db_session.query(PaymentIncident).one().kind == "amount_mismatch"


def test_parked_attempts_do_not_crowd_out_newer_ones(db_session: Session, gateway, gateway_http):
    parked = _order_with_attempt(db_session, gateway, minutes_ago=40)
    OrderLedger(db_session).cancel(parked.order, "Changed my mind", source="guest")
    gateway_http.query_result_code = 0
    reconcile_stale_attempts(db_session, gateway, older_than_minutes=15)
    lost_callback = _order_with_attempt(db_session, gateway, minutes_ago=30)
    gateway_http.next_trans_id = 4100000002

    reconciler = PaymentReconciler(db_session, gateway)
    assert [a.id for a in reconciler.stale_attempts(15, limit=1)] == [lost_callback.id]
    assert reconcile_stale_attempts(db_session, gateway, older_than_minutes=15) == {"applied": 1}
