from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime


class ShopResponse(BaseModel):
    id: str
    shop_domain: str
    name: Optional[str]
    is_active: bool
    has_access_token: bool
    created_at: datetime

    class Config:
        from_attributes = True


class AccessTokenUpdate(BaseModel):
    access_token: str = Field(min_length=1)
