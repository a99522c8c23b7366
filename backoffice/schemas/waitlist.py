from pydantic import BaseModel
from datetime import datetime
from typing import Optional
from backoffice.models.waitlist import WaitlistStatus


class WaitlistJoinRequest(BaseModel):
    product_id: int
    variant_id: int


class WaitlistEntryResponse(BaseModel):
    id: int
    product_id: int
    variant_id: int
    status: WaitlistStatus
    source: str
    authorized_at: Optional[datetime]
    created_at: datetime

    class Config:
        from_attributes = True
