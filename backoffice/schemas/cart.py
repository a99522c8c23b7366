from pydantic import BaseModel, Field
from typing import Optional
from decimal import Decimal


class CartItemCreate(BaseModel):
    product_id: int
    variant_id: int


class ApplyDiscountRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=50)


class ApplyCreditsRequest(BaseModel):
    amount: Decimal = Field(..., ge=0)


class CartQuery(BaseModel):
    credits_requested: Optional[Decimal] = Field(None, ge=0)
