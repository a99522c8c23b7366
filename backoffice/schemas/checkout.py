from pydantic import BaseModel, Field, model_validator
from typing import List, Optional
from datetime import datetime
from decimal import Decimal
from backoffice.models.checkout import CheckoutState
from backoffice.models.order import OrderStatus


class CheckoutPrepareRequest(BaseModel):
    credits_requested: Optional[Decimal] = Field(None, ge=0)
    idempotency_key: Optional[str] = Field(None, max_length=64)


class CheckoutSessionResponse(BaseModel):
    id: str
    state: CheckoutState
    credits_only: bool
    client_secret: Optional[str]
    publishable_key: Optional[str] = None
    currency: str
    subtotal: Decimal
    tax: Decimal
    shipping: Decimal
    discount_amount: Decimal
    discount_code: Optional[str]
    credits_applied: Decimal
    total: Decimal
    expires_at: Optional[datetime]

    class Config:
        from_attributes = True


class CheckoutCompleteRequest(BaseModel):
    session_id: Optional[str] = None
    payment_reference: Optional[str] = None  # Provider intent id
    payment_id: Optional[str] = None
    signature: Optional[str] = None
    credits_only: bool = False

    @model_validator(mode="after")
    def require_reference(self):
        if not self.credits_only and not (self.payment_reference or self.session_id):
            raise ValueError("payment_reference or session_id is required for paid checkouts")
        return self


class OrderItemResponse(BaseModel):
    id: int
    product_id: int
    variant_id: int
    product_title: str
    variant_data: dict
    quantity: int
    unit_price: Decimal

    class Config:
        from_attributes = True


class OrderResponse(BaseModel):
    id: int
    order_number: str
    customer_name: str
    customer_email: str
    payment_method: str
    payment_reference: str
    subtotal: Decimal
    tax_amount: Decimal
    shipping_amount: Decimal
    discount_amount: Decimal
    discount_code: Optional[str]
    credits_applied: Decimal
    total_amount: Decimal
    status: OrderStatus
    created_at: datetime
    items: List[OrderItemResponse]

    class Config:
        from_attributes = True
