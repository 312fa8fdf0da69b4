from pydantic import BaseModel, ConfigDict, Field
from typing import Optional
import enum


# MoMo result codes that mean "not finished yet" rather than failed.
IN_PROGRESS_RESULT_CODES = frozenset({1000, 7000, 7002})


class ResultKind(str, enum.Enum):
    SUCCESS = "success"
    IN_PROGRESS = "in_progress"
    FAILURE = "failure"


def classify_result_code(result_code: int) -> ResultKind:
    if result_code == 0:
        return ResultKind.SUCCESS
    if result_code in IN_PROGRESS_RESULT_CODES:
        return ResultKind.IN_PROGRESS
    return ResultKind.FAILURE


class _GatewayBody(BaseModel):
    # Unknown gateway fields are dropped here; the raw dict is kept for audit only.
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class CreatePaymentReply(_GatewayBody):
    partner_code: str = Field("", alias="partnerCode")
    order_id: str = Field("", alias="orderId")
    request_id: str = Field("", alias="requestId")
    amount: Optional[int] = None
    response_time: Optional[int] = Field(None, alias="responseTime")
    message: str = ""
    result_code: int = Field(..., alias="resultCode")
    pay_url: Optional[str] = Field(None, alias="payUrl")
    deeplink: Optional[str] = None
    qr_code_url: Optional[str] = Field(None, alias="qrCodeUrl")

    @property
    def kind(self) -> ResultKind:
        return classify_result_code(self.result_code)


class GatewayResult(_GatewayBody):
    """Payment outcome as reported by the gateway (IPN callback or status query)."""

    partner_code: str = Field(..., alias="partnerCode")
    order_id: str = Field(..., alias="orderId")
    request_id: str = Field(..., alias="requestId")
    amount: int
    order_info: str = Field("", alias="orderInfo")
    order_type: str = Field("", alias="orderType")
    trans_id: Optional[int] = Field(None, alias="transId")
    result_code: int = Field(..., alias="resultCode")
    message: str = ""
    pay_type: str = Field("", alias="payType")
    response_time: Optional[int] = Field(None, alias="responseTime")
    extra_data: str = Field("", alias="extraData")

    @property
    def kind(self) -> ResultKind:
        return classify_result_code(self.result_code)

    @property
    def transaction_id(self) -> Optional[str]:
        # MoMo sends transId = 0 for attempts that never reached a wallet transaction
        if not self.trans_id:
            return None
        return str(self.trans_id)


class PaymentCallback(GatewayResult):
    signature: str


class PaymentLink(BaseModel):
    gateway_order_id: str
    request_id: str
    pay_url: str
    deeplink: Optional[str] = None
    qr_code_url: Optional[str] = None


class StartPaymentRequest(BaseModel):
    order_id: int = Field(..., gt=0)
    token: Optional[str] = Field(None, max_length=64)


class PaymentStatusRequest(BaseModel):
    order_id: int = Field(..., gt=0)
    token: Optional[str] = Field(None, max_length=64)
