from pydantic import BaseModel, Field
from typing import List


class CartItemCreate(BaseModel):
    variant_id: int = Field(..., gt=0)
    quantity: int = Field(default=1, ge=1, le=99)


class CartItemUpdate(BaseModel):
    # 0 removes the line
    quantity: int = Field(..., ge=0, le=99)


class CartItemResponse(BaseModel):
    id: int
    product_id: int
    variant_id: int
    product_name: str
    volume_label: str
    quantity: int
    unit_price: int
    line_total: int

    class Config:
        from_attributes = True


class CartResponse(BaseModel):
    id: int
    items: List[CartItemResponse]
    total_quantity: int
    total_amount: int

    class Config:
        from_attributes = True
