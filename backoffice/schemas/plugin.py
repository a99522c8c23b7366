from pydantic import BaseModel, Field
from typing import List
from datetime import datetime
from backoffice.models.plugin import PluginStatus


class PluginCreate(BaseModel):
    slug: str = Field(..., min_length=1, max_length=100, pattern=r"^[a-z0-9][a-z0-9_-]*$")
    name: str = Field(..., min_length=1, max_length=200)
    webhook_url: str = Field(..., max_length=500)
    events: List[str] = Field(..., min_length=1)


class PluginResponse(BaseModel):
    id: int
    slug: str
    name: str
    webhook_url: str
    events: List[str]
    status: PluginStatus
    created_at: datetime

    class Config:
        from_attributes = True


class PluginCreatedResponse(PluginResponse):
    secret: str


class FeatureFlagUpdate(BaseModel):
    enabled: bool
    rollout_percentage: int = Field(100, ge=0, le=100)
