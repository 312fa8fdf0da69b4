"""MoMo wallet gateway client.

Builds the signed ``create`` and ``query`` requests and verifies IPN callbacks.
The raw signature is ``key=value`` pairs joined with ``&`` in the exact field
order MoMo documents for each message type, hashed with HMAC-SHA256 using the
partner secret key. Any deviation (order, separator, value formatting) makes
MoMo reject the request with a signature error, so the orders below are
constants and must not be sorted or rebuilt from dict iteration.

This module never reads or writes the database.
"""
import hashlib
import hmac
import uuid
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Sequence

import requests
import structlog
from pydantic import ValidationError as PydanticValidationError

from storefront.core.exceptions import GatewayError, NetworkError, SignatureMismatch
from storefront.schemas.payment import (
    CreatePaymentReply,
    GatewayResult,
    PaymentCallback,
    PaymentLink,
    ResultKind,
)

logger = structlog.get_logger()

CREATE_SIGNATURE_FIELDS = (
    "accessKey",
    "amount",
    "extraData",
    "ipnUrl",
    "orderId",
    "orderInfo",
    "partnerCode",
    "redirectUrl",
    "requestId",
    "requestType",
)

CALLBACK_SIGNATURE_FIELDS = (
    "accessKey",
    "amount",
    "extraData",
    "message",
    "orderId",
    "orderInfo",
    "orderType",
    "partnerCode",
    "payType",
    "requestId",
    "responseTime",
    "resultCode",
    "transId",
)

QUERY_SIGNATURE_FIELDS = (
    "accessKey",
    "orderId",
    "partnerCode",
    "requestId",
)

CREATE_PATH = "/v2/gateway/api/create"
QUERY_PATH = "/v2/gateway/api/query"


def _format_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def build_raw_signature(fields: Mapping[str, Any], field_order: Sequence[str]) -> str:
    """Join ``fields`` as ``k1=v1&k2=v2`` following ``field_order``.

    A missing key raises ``KeyError``: an incomplete outbound field set is a
    programming error and must never be signed.
    """
    return "&".join(f"{key}={_format_value(fields[key])}" for key in field_order)


def sign(fields: Mapping[str, Any], field_order: Sequence[str], secret_key: str) -> str:
    raw_signature = build_raw_signature(fields, field_order)
    return hmac.new(
        secret_key.encode("utf-8"),
        raw_signature.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


@dataclass(frozen=True)
class GatewayConfig:
    partner_code: str
    access_key: str
    secret_key: str
    endpoint: str
    request_type: str = "captureWallet"
    lang: str = "vi"
    redirect_url: str = ""
    ipn_url: str = ""
    timeout: float = 30.0

    @classmethod
    def from_settings(cls, settings) -> "GatewayConfig":
        return cls(
            partner_code=settings.MOMO_PARTNER_CODE,
            access_key=settings.MOMO_ACCESS_KEY,
            secret_key=settings.MOMO_SECRET_KEY,
            endpoint=settings.MOMO_ENDPOINT,
            request_type=settings.MOMO_REQUEST_TYPE,
            lang=settings.MOMO_LANG,
            redirect_url=settings.MOMO_REDIRECT_URL,
            ipn_url=settings.MOMO_IPN_URL,
            timeout=settings.MOMO_TIMEOUT_SECONDS,
        )


def callback_signature_fields(callback: GatewayResult, access_key: str) -> dict:
    return {
        "accessKey": access_key,
        "amount": callback.amount,
        "extraData": callback.extra_data,
        "message": callback.message,
        "orderId": callback.order_id,
        "orderInfo": callback.order_info,
        "orderType": callback.order_type,
        "partnerCode": callback.partner_code,
        "payType": callback.pay_type,
        "requestId": callback.request_id,
        "responseTime": callback.response_time,
        "resultCode": callback.result_code,
        "transId": callback.trans_id,
    }


def verify_callback_signature(callback: PaymentCallback, config: GatewayConfig) -> bool:
    expected = sign(
        callback_signature_fields(callback, config.access_key),
        CALLBACK_SIGNATURE_FIELDS,
        config.secret_key,
    )
    return hmac.compare_digest(expected, callback.signature)


def parse_callback(payload: Mapping[str, Any], config: GatewayConfig) -> PaymentCallback:
    """Parse an IPN body and check its signature; raises ``SignatureMismatch``.

    A body that does not even carry the signed fields is treated the same as a
    bad signature: it cannot have come from the gateway.
    """
    try:
        callback = PaymentCallback.model_validate(payload)
    except PydanticValidationError as exc:
        raise SignatureMismatch(
            "Malformed payment callback",
            gateway_order_id=payload.get("orderId") if isinstance(payload, Mapping) else None,
            errors=exc.errors(include_url=False),
        ) from exc

    if callback.partner_code != config.partner_code:
        raise SignatureMismatch(
            "Payment callback partner code mismatch",
            gateway_order_id=callback.order_id,
        )

    if not verify_callback_signature(callback, config):
        raise SignatureMismatch(
            "Invalid payment callback signature",
            gateway_order_id=callback.order_id,
            transaction_id=callback.transaction_id,
        )
    return callback


def new_request_id() -> str:
    return str(uuid.uuid4())


def new_gateway_order_id(order_id: int) -> str:
    """Per-attempt gateway order id; MoMo rejects a reused ``orderId``."""
    return f"{order_id}-{uuid.uuid4().hex[:12]}"


class MomoGateway:
    """Synchronous client for the MoMo v2 payment API.

    ``http`` is any object with a ``requests.Session``-compatible ``post``;
    tests inject a stub.
    """

    def __init__(self, config: GatewayConfig, http: Optional[requests.Session] = None):
        self.config = config
        self.http = http or requests.Session()

    def _post(self, path: str, body: dict) -> dict:
        url = f"{self.config.endpoint}{path}"
        try:
            response = self.http.post(url, json=body, timeout=self.config.timeout)
        except requests.Timeout as exc:
            logger.warning("gateway_timeout", url=url, order_id=body.get("orderId"))
            raise NetworkError(
                "Payment gateway did not respond in time, please retry",
                gateway_order_id=body.get("orderId"),
            ) from exc
        except requests.RequestException as exc:
            logger.warning("gateway_transport_error", url=url, order_id=body.get("orderId"), error=str(exc))
            raise NetworkError(
                "Payment gateway is unreachable, please retry",
                gateway_order_id=body.get("orderId"),
            ) from exc

        try:
            data = response.json()
        except ValueError as exc:
            if response.status_code >= 500:
                raise NetworkError(
                    "Payment gateway is temporarily unavailable, please retry",
                    gateway_order_id=body.get("orderId"),
                    http_status=response.status_code,
                ) from exc
            logger.error("gateway_unparseable_response", url=url, http_status=response.status_code)
            raise GatewayError(
                "Payment could not be started",
                gateway_order_id=body.get("orderId"),
                http_status=response.status_code,
            ) from exc

        if not isinstance(data, dict):
            raise GatewayError("Payment could not be started", gateway_order_id=body.get("orderId"))
        return data

    def build_create_request(
        self,
        *,
        gateway_order_id: str,
        request_id: str,
        amount: int,
        order_info: str,
        extra_data: str = "",
    ) -> dict:
        body = {
            "partnerCode": self.config.partner_code,
            "accessKey": self.config.access_key,
            "requestId": request_id,
            "amount": amount,
            "orderId": gateway_order_id,
            "orderInfo": order_info,
            "redirectUrl": self.config.redirect_url,
            "ipnUrl": self.config.ipn_url,
            "extraData": extra_data,
            "requestType": self.config.request_type,
        }
        body["signature"] = sign(body, CREATE_SIGNATURE_FIELDS, self.config.secret_key)
        # accessKey only participates in the signature; it is not part of the v2 body
        body.pop("accessKey")
        body["lang"] = self.config.lang
        body["autoCapture"] = True
        return body

    def create_payment(
        self,
        *,
        gateway_order_id: str,
        request_id: str,
        amount: int,
        order_info: str,
        extra_data: str = "",
    ) -> PaymentLink:
        body = self.build_create_request(
            gateway_order_id=gateway_order_id,
            request_id=request_id,
            amount=amount,
            order_info=order_info,
            extra_data=extra_data,
        )
        data = self._post(CREATE_PATH, body)

        try:
            reply = CreatePaymentReply.model_validate(data)
        except PydanticValidationError as exc:
            logger.error("gateway_create_reply_invalid", gateway_order_id=gateway_order_id, body=data)
            raise GatewayError("Payment could not be started", gateway_order_id=gateway_order_id) from exc

        if reply.kind != ResultKind.SUCCESS or not reply.pay_url:
            logger.error(
                "gateway_request_failed",
                gateway_order_id=gateway_order_id,
                result_code=reply.result_code,
                gateway_message=reply.message,
            )
            raise GatewayError(
                "Payment could not be started",
                result_code=reply.result_code,
                gateway_message=reply.message,
                gateway_order_id=gateway_order_id,
            )

        logger.info(
            "gateway_payment_created",
            gateway_order_id=gateway_order_id,
            request_id=request_id,
            amount=amount,
        )
        return PaymentLink(
            gateway_order_id=gateway_order_id,
            request_id=request_id,
            pay_url=reply.pay_url,
            deeplink=reply.deeplink,
            qr_code_url=reply.qr_code_url,
        )

    def query_payment(self, gateway_order_id: str) -> tuple[GatewayResult, dict]:
        """Ask the gateway for the current state of one payment attempt.

        Returns the parsed result and the raw body (kept for audit).
        """
        body = {
            "partnerCode": self.config.partner_code,
            "accessKey": self.config.access_key,
            "requestId": new_request_id(),
            "orderId": gateway_order_id,
        }
        body["signature"] = sign(body, QUERY_SIGNATURE_FIELDS, self.config.secret_key)
        body.pop("accessKey")
        body["lang"] = self.config.lang

        data = self._post(QUERY_PATH, body)
        try:
            result = GatewayResult.model_validate(data)
        except PydanticValidationError as exc:
            logger.error("gateway_query_reply_invalid", gateway_order_id=gateway_order_id, body=data)
            raise GatewayError("Payment status could not be retrieved", gateway_order_id=gateway_order_id) from exc
        return result, data
