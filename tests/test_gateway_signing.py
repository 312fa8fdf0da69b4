import hashlib
import hmac

import pytest
import requests

from storefront.core.exceptions import GatewayError, NetworkError, SignatureMismatch
from storefront.services.momo_gateway import (
    CREATE_PATH,
    CREATE_SIGNATURE_FIELDS,
    QUERY_PATH,
    QUERY_SIGNATURE_FIELDS,
    build_raw_signature,
    parse_callback,
    sign,
)
from tests.conftest import GATEWAY_CONFIG, FakeGatewayResponse, build_callback

CREATE_FIELDS = {
    "accessKey": "F8BBA842ECF85",
    "amount": 1030000,
    "extraData": "",
    "ipnUrl": "https://shop.example.vn/api/v1/checkout/payment/callback",
    "orderId": "42-9f1c2ab07d3e",
    "orderInfo": "Payment for order #42",
    "partnerCode": "MOMO",
    "redirectUrl": "https://shop.example.vn/xac-nhan-don-hang",
    "requestId": "6c2f4a64-2b8e-4bd2-9d3a-0b1f6b0c9a11",
    "requestType": "captureWallet",
}


def test_raw_signature_follows_gateway_field_order():
    shuffled = dict(reversed(list(CREATE_FIELDS.items())))

    raw = build_raw_signature(shuffled, CREATE_SIGNATURE_FIELDS)

    assert raw == (
        "accessKey=F8BBA842ECF85&amount=1030000&extraData="
        "&ipnUrl=https://shop.example.vn/api/v1/checkout/payment/callback"
        "&orderId=42-9f1c2ab07d3e&orderInfo=Payment for order #42&partnerCode=MOMO"
        "&redirectUrl=https://shop.example.vn/xac-nhan-don-hang"
        "&requestId=6c2f4a64-2b8e-4bd2-9d3a-0b1f6b0c9a11&requestType=captureWallet"
    )


def test_signature_is_hmac_sha256_hex_of_raw_string():
    raw = build_raw_signature(CREATE_FIELDS, CREATE_SIGNATURE_FIELDS)
    expected = hmac.new(b"K951B6PE1waDMi640xX08PD3vg6EkVlz", raw.encode(), hashlib.sha256).hexdigest()

    assert sign(CREATE_FIELDS, CREATE_SIGNATURE_FIELDS, "K951B6PE1waDMi640xX08PD3vg6EkVlz") == expected
    assert sign(CREATE_FIELDS, CREATE_SIGNATURE_FIELDS, "K951B6PE1waDMi640xX08PD3vg6EkVlz") == expected


@pytest.mark.parametrize("field", ["amount", "orderId", "requestId", "extraData"])
def test_changing_one_field_changes_signature(field):
    secret = "K951B6PE1waDMi640xX08PD3vg6EkVlz"
    changed = dict(CREATE_FIELDS)
    changed[field] = f"{changed[field]}1"

    assert sign(changed, CREATE_SIGNATURE_FIELDS, secret) != sign(CREATE_FIELDS, CREATE_SIGNATURE_FIELDS, secret)


def test_missing_field_is_never_signed():
    incomplete = dict(CREATE_FIELDS)
    incomplete.pop("ipnUrl")

    with pytest.raises(KeyError):
        build_raw_signature(incomplete, CREATE_SIGNATURE_FIELDS)


def test_none_and_bool_values_are_formatted_like_the_gateway():
    raw = build_raw_signature({"a": None, "b": True, "c": False, "d": 0}, ("a", "b", "c", "d"))

    assert raw == "a=&b=true&c=false&d=0"


def test_create_request_body_is_signed_without_access_key(gateway):
    body = gateway.build_create_request(
        gateway_order_id="7-abc123",
        request_id="req-7",
        amount=250000,
        order_info="Payment for order #7",
    )

    assert "accessKey" not in body
    assert body["lang"] == "vi"
    assert body["autoCapture"] is True
    signed_fields = dict(body, accessKey=GATEWAY_CONFIG.access_key)
    assert body["signature"] == sign(signed_fields, CREATE_SIGNATURE_FIELDS, GATEWAY_CONFIG.secret_key)


def test_create_payment_returns_link(gateway, gateway_http):
    link = gateway.create_payment(
        gateway_order_id="7-abc123",
        request_id="req-7",
        amount=250000,
        order_info="Payment for order #7",
    )

    url, body = gateway_http.calls[0]
    assert url == f"{GATEWAY_CONFIG.endpoint}{CREATE_PATH}"
    assert body["orderId"] == "7-abc123"
    assert link.gateway_order_id == "7-abc123"
    assert link.pay_url.startswith("https://test-payment.momo.vn/")
    assert link.deeplink.startswith("momo://")


def test_create_payment_rejected_by_gateway_raises_gateway_error(gateway, gateway_http):
    gateway_http.replies.append(
        FakeGatewayResponse({"orderId": "7-abc123", "resultCode": 22, "message": "Amount out of range"})
    )

    with pytest.raises(GatewayError) as exc_info:
        gateway.create_payment(gateway_order_id="7-abc123", request_id="req-7", amount=250000, order_info="x")

    assert exc_info.value.result_code == 22
    assert exc_info.value.status_code == 502


@pytest.mark.parametrize(
    "failure",
    [requests.Timeout("read timed out"), requests.ConnectionError("connection refused")],
)
def test_transport_failures_raise_network_error(gateway, gateway_http, failure):
    gateway_http.replies.append(failure)

    with pytest.raises(NetworkError):
        gateway.create_payment(gateway_order_id="7-abc123", request_id="req-7", amount=250000, order_info="x")


def test_unparseable_reply_maps_on_http_status(gateway, gateway_http):
    gateway_http.replies.append(FakeGatewayResponse(ValueError("not json"), status_code=503))
    with pytest.raises(NetworkError):
        gateway.create_payment(gateway_order_id="7-a", request_id="req-a", amount=250000, order_info="x")

    gateway_http.replies.append(FakeGatewayResponse(ValueError("not json"), status_code=400))
    with pytest.raises(GatewayError):
        gateway.create_payment(gateway_order_id="7-b", request_id="req-b", amount=250000, order_info="x")


def test_query_payment_signs_query_fields(gateway, gateway_http):
    gateway_http.created["7-abc123"] = 250000
    gateway_http.query_result_code = 0

    result, raw = gateway.query_payment("7-abc123")

    url, body = gateway_http.calls[0]
    assert url == f"{GATEWAY_CONFIG.endpoint}{QUERY_PATH}"
    signed_fields = dict(body, accessKey=GATEWAY_CONFIG.access_key)
    assert body["signature"] == sign(signed_fields, QUERY_SIGNATURE_FIELDS, GATEWAY_CONFIG.secret_key)
    assert result.order_id == "7-abc123"
    assert result.amount == 250000
    assert result.transaction_id == str(gateway_http.next_trans_id)
    assert raw["resultCode"] == 0


def test_parse_callback_accepts_valid_signature():
    callback = parse_callback(build_callback("7-abc123", 250000), GATEWAY_CONFIG)

    assert callback.order_id == "7-abc123"
    assert callback.amount == 250000
    assert callback.transaction_id == "4100000001"


def test_parse_callback_rejects_tampered_amount():
    payload = build_callback("7-abc123", 250000)
    payload["amount"] = 1000

    with pytest.raises(SignatureMismatch):
        parse_callback(payload, GATEWAY_CONFIG)


def test_parse_callback_rejects_other_partner():
    payload = build_callback("7-abc123", 250000)
    payload["partnerCode"] = "SOMEONEELSE"

    with pytest.raises(SignatureMismatch):
        parse_callback(payload, GATEWAY_CONFIG)


def test_parse_callback_rejects_body_without_signature():
    payload = build_callback("7-abc123", 250000)
    payload.pop("signature")

    with pytest.raises(SignatureMismatch):
        parse_callback(payload, GATEWAY_CONFIG)
