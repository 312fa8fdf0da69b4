from typing import List, Optional
from datetime import datetime

from pydantic import BaseModel, EmailStr, Field, model_validator

from storefront.models.order import FulfillmentStatus, PaymentMethod, PaymentStatus


class OrderItemResponse(BaseModel):
    id: int
    variant_id: int
    product_name: str
    variant_volume_ml: int
    quantity: int
    unit_price_at_order: int
    line_total: int

    class Config:
        from_attributes = True


class OrderResponse(BaseModel):
    id: int
    payment_method: PaymentMethod
    payment_status: PaymentStatus
    order_status_id: int
    recipient_name: str
    recipient_phone: str
    province_city: str
    district: str
    ward: str
    street_address: str
    delivery_notes: Optional[str] = None
    subtotal_amount: int
    discount_amount: int
    discount_code: Optional[str] = None
    shipping_fee: int
    total_amount: int
    cancellation_reason: Optional[str] = None
    items: List[OrderItemResponse]
    created_at: datetime

    class Config:
        from_attributes = True


class CheckoutCompleteResponse(BaseModel):
    order: OrderResponse
    # Only returned to guests; owners resolve their orders by identity
    access_token: Optional[str] = None
    created: bool = True


class FulfillmentStatusUpdate(BaseModel):
    status: FulfillmentStatus
    notes: Optional[str] = Field(None, max_length=500)


class CancelOrderRequest(BaseModel):
    reason: str = Field(..., min_length=3, max_length=500)
    token: Optional[str] = Field(None, max_length=64)


class ChangePaymentMethodRequest(BaseModel):
    payment_method: PaymentMethod
    token: Optional[str] = Field(None, max_length=64)


class LookupTokenRequest(BaseModel):
    email: EmailStr
    token: Optional[str] = Field(None, max_length=64)
    order_id: Optional[int] = Field(None, gt=0)

    @model_validator(mode="after")
    def require_token_or_order_id(self):
        if not self.token and self.order_id is None:
            raise ValueError("Either token or order_id is required")
        return self
