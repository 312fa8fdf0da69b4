from typing import List, Optional
import enum
import uuid

import bleach
from pydantic import BaseModel, EmailStr, Field, field_validator

from storefront.models.order import PaymentMethod


class CheckoutState(str, enum.Enum):
    CART = "cart"
    ADDRESS = "address"
    PAYMENT = "payment"
    REVIEW = "review"
    COMPLETE = "complete"
    CANCELLED = "cancelled"


def _clean_text(value: Optional[str]) -> Optional[str]:
    if value is None:
        return value
    return bleach.clean(value, tags=[], attributes={}, strip=True).strip()


class ShippingAddress(BaseModel):
    recipient_name: str = Field("", max_length=100)
    recipient_phone: str = Field("", max_length=20)
    province_city: str = Field("", max_length=100)
    district: str = Field("", max_length=100)
    ward: str = Field("", max_length=100)
    street_address: str = Field("", max_length=255)

    @field_validator("*")
    @classmethod
    def strip_fields(cls, value: str) -> str:
        return _clean_text(value) or ""

    def missing_fields(self) -> List[str]:
        return [name for name, value in self.model_dump().items() if not value]


class GuestContact(BaseModel):
    full_name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    phone: str = Field(..., min_length=8, max_length=20)


class CheckoutDraft(BaseModel):
    """Everything the client has entered so far; re-validated on every request."""

    address: Optional[ShippingAddress] = None
    guest: Optional[GuestContact] = None
    payment_method: Optional[PaymentMethod] = None
    discount_code: Optional[str] = Field(None, max_length=50)
    delivery_notes: Optional[str] = None

    @field_validator("discount_code")
    @classmethod
    def normalize_code(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        return value.strip().upper() or None

    @field_validator("delivery_notes")
    @classmethod
    def validate_notes(cls, value: Optional[str]) -> Optional[str]:
        sanitized = _clean_text(value)
        if sanitized and len(sanitized) > 500:
            raise ValueError("Notes too long (max 500 chars)")
        return sanitized or None


class AdvanceRequest(BaseModel):
    draft: CheckoutDraft
    target: CheckoutState


class CompleteRequest(BaseModel):
    draft: CheckoutDraft
    idempotency_key: str = Field(..., min_length=36, max_length=64)

    @field_validator("idempotency_key")
    @classmethod
    def validate_idempotency_key(cls, value: str) -> str:
        return str(uuid.UUID(value))


class CheckoutQuote(BaseModel):
    subtotal_amount: int
    discount_amount: int
    discount_code: Optional[str] = None
    shipping_fee: int
    total_amount: int


class CheckoutStep(BaseModel):
    state: CheckoutState
    quote: Optional[CheckoutQuote] = None
