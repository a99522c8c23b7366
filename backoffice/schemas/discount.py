from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import datetime
from decimal import Decimal
from backoffice.models.discount import DiscountStatus, DiscountValueType


class DiscountCreate(BaseModel):
    code: str = Field(..., min_length=1, max_length=50)
    title: str = Field(..., min_length=1, max_length=200)
    value_type: DiscountValueType
    value: Decimal = Field(..., gt=0)
    status: DiscountStatus = DiscountStatus.ACTIVE
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    minimum_amount: Optional[Decimal] = Field(None, ge=0)
    usage_limit: Optional[int] = Field(None, gt=0)
    usage_limit_per_customer: Optional[int] = Field(None, gt=0)


class DiscountUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=200)
    value_type: Optional[DiscountValueType] = None
    value: Optional[Decimal] = Field(None, gt=0)
    status: Optional[DiscountStatus] = None
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    minimum_amount: Optional[Decimal] = Field(None, ge=0)
    usage_limit: Optional[int] = Field(None, gt=0)
    usage_limit_per_customer: Optional[int] = Field(None, gt=0)


class DiscountResponse(BaseModel):
    id: int
    code: str
    title: str
    value_type: DiscountValueType
    value: Decimal
    status: DiscountStatus
    effective_status: Optional[str] = None
    starts_at: datetime
    ends_at: Optional[datetime]
    minimum_amount: Optional[Decimal]
    usage_limit: Optional[int]
    usage_count: int
    usage_limit_per_customer: Optional[int]
    created_at: datetime

    class Config:
        from_attributes = True


class DiscountValidateRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=50)
    cart_subtotal: Decimal = Field(..., ge=0)


class DiscountValidateResponse(BaseModel):
    valid: bool
    code: str
    amount: Decimal
    reason: Optional[str] = None
    error: Optional[str] = None


class DiscountListResponse(BaseModel):
    items: List[DiscountResponse]
