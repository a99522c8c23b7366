from pydantic import BaseModel
from datetime import datetime
from decimal import Decimal
from typing import List


class FavoriteCreate(BaseModel):
    product_id: int


class FavoriteResponse(BaseModel):
    id: int
    product_id: int
    product_title: str
    product_price: Decimal
    created_at: datetime


class FavoriteListResponse(BaseModel):
    items: List[FavoriteResponse]
    total: int
