from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime
from decimal import Decimal
from backoffice.models.credit import CreditTransactionType


class CreditBalanceResponse(BaseModel):
    balance: Decimal
    total_earned: Decimal
    total_spent: Decimal


class CreditIssueRequest(BaseModel):
    customer_id: int
    amount: Decimal = Field(..., gt=0)
    description: str = Field(..., min_length=1, max_length=500)
    expires_at: Optional[datetime] = None


class CreditAdjustRequest(BaseModel):
    customer_id: int
    amount: Decimal  # Signed
    description: str = Field(..., min_length=1, max_length=500)
    allow_negative: bool = False


class CreditApplicationRequest(BaseModel):
    amount: Decimal
    cart_total: Decimal


class CreditTransactionResponse(BaseModel):
    id: int
    customer_id: int
    transaction_type: CreditTransactionType
    amount: Decimal
    balance_after: Decimal
    description: Optional[str]
    reference_type: Optional[str]
    reference_id: Optional[str]
    actor_id: Optional[str]
    expires_at: Optional[datetime]
    created_at: datetime

    class Config:
        from_attributes = True
