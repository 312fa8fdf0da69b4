import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from storefront.core.exceptions import AccessDenied, NotFoundError
from storefront.core.security import create_access_token
from storefront.models.order import Order, PaymentMethod
from storefront.models.product import Product, ProductVariant
from storefront.models.user import User
from storefront.services.access_token_service import issue_access_token, resolve_order, send_lookup_token
from storefront.services.order_ledger import OrderLedger, OrderLine

ADDRESS = {
    "recipient_name": "Pham Minh Duc",
    "recipient_phone": "0933333333",
    "province_city": "Can Tho",
    "district": "Ninh Kieu",
    "ward": "Tan An",
    "street_address": "1 Hai Ba Trung",
}


def _create_user(db: Session, email: str) -> User:
    user = User(email=email, full_name="Token Test User")
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def _create_order(db: Session, user: User = None, guest_email: str = "duc.pham@gmail.com") -> Order:
    product = Product(name="Iris Poudre", slug=f"iris-poudre-{db.query(Order).count()}")
    db.add(product)
    db.flush()
    variant = ProductVariant(product_id=product.id, volume_ml=30, price=300000, stock_quantity=3)
    db.add(variant)
    db.flush()
    order = OrderLedger(db).create_order(
        lines=[OrderLine(variant.id, product.name, 30, 1, 300000)],
        payment_method=PaymentMethod.COD,
        address=ADDRESS,
        subtotal_amount=300000,
        shipping_fee=30000,
        user=user,
        guest=None if user else {"full_name": "Pham Minh Duc", "email": guest_email, "phone": "0933333333"},
    )
    db.commit()
    db.refresh(order)
    return order


def test_issued_tokens_are_unique_and_url_safe():
    tokens = {issue_access_token() for _ in range(50)}

    assert len(tokens) == 50
    assert all(len(token) == 43 and "/" not in token and "+" not in token for token in tokens)


def test_resolve_order_by_token_or_owner(db_session: Session):
    owner = _create_user(db_session, "owner@gmail.com")
    stranger = _create_user(db_session, "stranger@gmail.com")
    guest_order = _create_order(db_session)
    owned_order = _create_order(db_session, user=owner)

    assert resolve_order(db_session, token=guest_order.access_token).id == guest_order.id
    assert resolve_order(db_session, order_id=guest_order.id, token=guest_order.access_token).id == guest_order.id
    assert resolve_order(db_session, order_id=owned_order.id, user=owner).id == owned_order.id

    with pytest.raises(AccessDenied):
        resolve_order(db_session, order_id=guest_order.id)
    with pytest.raises(AccessDenied):
        resolve_order(db_session, order_id=owned_order.id, user=stranger)
    with pytest.raises(AccessDenied):
        resolve_order(db_session, order_id=owned_order.id, token=guest_order.access_token)
    with pytest.raises(NotFoundError):
        resolve_order(db_session, token=issue_access_token())


def test_lookup_token_sent_to_matching_email(db_session: Session, queued_emails):
    order = _create_order(db_session)

    send_lookup_token(db_session, "  Duc.Pham@Gmail.com ", order_id=order.id)

    assert queued_emails["access_token"].calls == [(order.id, "duc.pham@gmail.com")]


def test_lookup_token_refused_for_other_email(db_session: Session, queued_emails):
    order = _create_order(db_session)

    with pytest.raises(AccessDenied):
        send_lookup_token(db_session, "someone.else@gmail.com", order_id=order.id)

    assert queued_emails["access_token"].calls == []


def test_first_email_binding_requires_token(db_session: Session, queued_emails):
    order = _create_order(db_session)
    order.guest_email = None
    db_session.commit()

    with pytest.raises(AccessDenied):
        send_lookup_token(db_session, "duc.pham@gmail.com", order_id=order.id)

    send_lookup_token(db_session, "Duc.Pham@gmail.com", token=order.access_token)

    db_session.refresh(order)
    assert order.guest_email == "duc.pham@gmail.com"
    assert queued_emails["access_token"].calls == [(order.id, "duc.pham@gmail.com")]


def test_lookup_token_refused_for_owned_order(db_session: Session):
    owner = _create_user(db_session, "owner@gmail.com")
    order = _create_order(db_session, user=owner)

    with pytest.raises(AccessDenied):
        send_lookup_token(db_session, "owner@gmail.com", token=order.access_token)


def test_guest_order_endpoints(client: TestClient, db_session: Session, queued_emails):
    order = _create_order(db_session)

    lookup = client.get("/api/v1/orders/lookup", params={"token": order.access_token})
    assert lookup.status_code == 200
    assert lookup.json()["data"]["id"] == order.id
    assert lookup.json()["data"]["total_amount"] == 330000

    assert client.get(f"/api/v1/orders/{order.id}").status_code == 403
    assert client.get(f"/api/v1/orders/{order.id}", params={"token": order.access_token}).status_code == 200

    sent = client.post("/api/v1/orders/lookup-token", json={"email": "duc.pham@gmail.com", "order_id": order.id})
    assert sent.status_code == 200
    assert queued_emails["access_token"].calls == [(order.id, "duc.pham@gmail.com")]

    missing = client.post("/api/v1/orders/lookup-token", json={"email": "duc.pham@gmail.com"})
    assert missing.status_code == 422


def test_owner_reads_order_with_bearer_token(client: TestClient, db_session: Session):
    owner = _create_user(db_session, "owner@gmail.com")
    order = _create_order(db_session, user=owner)
    auth = {"Authorization": f"Bearer {create_access_token({'sub': str(owner.id)})}"}

    response = client.get(f"/api/v1/orders/{order.id}", headers=auth)

    assert response.status_code == 200
    assert response.json()["data"]["payment_method"] == "cod"
