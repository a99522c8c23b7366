from pydantic import BaseModel, Field
from typing import Optional


class CustomerPaymentProfileResponse(BaseModel):
    payment_customer_ref: str


class AttachPaymentMethodRequest(BaseModel):
    token_id: str = Field(..., min_length=1, max_length=100)


class SavedPaymentMethodResponse(BaseModel):
    id: int
    provider: str
    token_id: str
    method: Optional[str]
    last4: Optional[str]

    class Config:
        from_attributes = True
