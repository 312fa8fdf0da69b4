import os
import tempfile
from collections.abc import Generator
from typing import Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

os.environ["ENVIRONMENT"] = "development"
os.environ.setdefault("DATABASE_URL", "sqlite:///./storefront_test.db")
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-storefront-checkout-suite")
os.environ.setdefault("MOMO_PARTNER_CODE", "MOMOTEST")
os.environ.setdefault("MOMO_ACCESS_KEY", "test-access-key")
os.environ.setdefault("MOMO_SECRET_KEY", "test-secret-key")

import storefront.db.base  # noqa: E402,F401
from storefront.api.deps import get_payment_gateway  # noqa: E402
from storefront.db.base_class import Base  # noqa: E402
from storefront.db.session import get_db  # noqa: E402
from storefront.main import app  # noqa: E402
from storefront.services.momo_gateway import (  # noqa: E402
    CALLBACK_SIGNATURE_FIELDS,
    CREATE_PATH,
    QUERY_PATH,
    GatewayConfig,
    MomoGateway,
    callback_signature_fields,
    sign,
)
from storefront.schemas.payment import GatewayResult  # noqa: E402
from storefront.tasks import email_tasks  # noqa: E402

GATEWAY_CONFIG = GatewayConfig(
    partner_code="MOMOTEST",
    access_key="test-access-key",
    secret_key="test-secret-key",
    endpoint="https://test-payment.momo.vn",
    redirect_url="http://localhost:3000/xac-nhan-don-hang",
    ipn_url="http://localhost:8000/api/v1/checkout/payment/callback",
)


class FakeGatewayResponse:
    def __init__(self, body, status_code: int = 200):
        self.body = body
        self.status_code = status_code

    def json(self):
        if isinstance(self.body, Exception):
            raise self.body
        return self.body


class FakeGatewayHttp:
    """Stands in for ``requests.Session``; answers like the MoMo sandbox.

    ``replies`` is consumed first (responses or exceptions to raise); after
    that create requests succeed and queries report ``query_result_code``.
    """

    def __init__(self):
        self.calls = []
        self.replies = []
        self.created = {}
        self.query_result_code = 1000
        self.next_trans_id = 4100000001

    def post(self, url, json=None, timeout=None):
        self.calls.append((url, json))
        if self.replies:
            reply = self.replies.pop(0)
            if isinstance(reply, Exception):
                raise reply
            return reply

        if url.endswith(CREATE_PATH):
            self.created[json["orderId"]] = json["amount"]
            return FakeGatewayResponse(
                {
                    "partnerCode": json["partnerCode"],
                    "orderId": json["orderId"],
                    "requestId": json["requestId"],
                    "amount": json["amount"],
                    "responseTime": 1700000000000,
                    "message": "Successful.",
                    "resultCode": 0,
                    "payUrl": f"https://test-payment.momo.vn/v2/gateway/pay?t={json['orderId']}",
                    "deeplink": f"momo://app?action=payWithApp&orderId={json['orderId']}",
                    "qrCodeUrl": f"https://test-payment.momo.vn/qr/{json['orderId']}",
                }
            )

        if url.endswith(QUERY_PATH):
            captured = self.query_result_code == 0
            return FakeGatewayResponse(
                {
                    "partnerCode": json["partnerCode"],
                    "orderId": json["orderId"],
                    "requestId": json["requestId"],
                    "amount": self.created.get(json["orderId"], 0),
                    "orderInfo": "",
                    "orderType": "momo_wallet",
                    "transId": self.next_trans_id if captured else 0,
                    "resultCode": self.query_result_code,
                    "message": "Successful." if captured else "Transaction is being processed.",
                    "payType": "qr",
                    "responseTime": 1700000000500,
                    "extraData": "",
                }
            )

        return FakeGatewayResponse({}, status_code=404)


class TaskRecorder:
    def __init__(self):
        self.calls = []

    def delay(self, *args):
        self.calls.append(args)


def build_callback(
    gateway_order_id: str,
    amount: int,
    result_code: int = 0,
    trans_id: Optional[int] = 4100000001,
    config: GatewayConfig = GATEWAY_CONFIG,
) -> dict:
    """An IPN body signed with the test partner's secret key."""
    result = GatewayResult(
        partnerCode=config.partner_code,
        orderId=gateway_order_id,
        requestId=f"req-{gateway_order_id}",
        amount=amount,
        orderInfo="Payment for order",
        orderType="momo_wallet",
        transId=trans_id if result_code == 0 else 0,
        resultCode=result_code,
        message="Successful." if result_code == 0 else "Transaction denied by user.",
        payType="qr",
        responseTime=1700000000000,
        extraData="",
    )
    fields = callback_signature_fields(result, config.access_key)
    body = {key: value for key, value in fields.items() if key != "accessKey"}
    body["signature"] = sign(fields, CALLBACK_SIGNATURE_FIELDS, config.secret_key)
    return body


@pytest.fixture(autouse=True)
def queued_emails(monkeypatch) -> dict:
    confirmation = TaskRecorder()
    access_token = TaskRecorder()
    monkeypatch.setattr(email_tasks, "send_order_confirmation", confirmation)
    monkeypatch.setattr(email_tasks, "send_order_access_token", access_token)
    return {"confirmation": confirmation, "access_token": access_token}


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    db_file = tempfile.NamedTemporaryFile(suffix=".db", delete=False)
    db_file.close()

    engine = create_engine(
        f"sqlite:///{db_file.name}",
        connect_args={"check_same_thread": False},
    )
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()
        os.unlink(db_file.name)


@pytest.fixture()
def gateway_http() -> FakeGatewayHttp:
    return FakeGatewayHttp()


@pytest.fixture()
def gateway(gateway_http: FakeGatewayHttp) -> MomoGateway:
    return MomoGateway(GATEWAY_CONFIG, http=gateway_http)


@pytest.fixture()
def client(db_session: Session, gateway: MomoGateway) -> Generator[TestClient, None, None]:
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    app.state.limiter.reset()
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
