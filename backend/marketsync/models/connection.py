from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, List
from datetime import datetime

from marketsync.models_sqlalchemy.models import MarketplaceKind, ConnectionStatus


class ConnectionSettings(BaseModel):
    auto_sync: bool = True
    sync_inventory: bool = True
    sync_prices: bool = True
    sync_orders: bool = True

    class Config:
        extra = "forbid"


class ConnectionSettingsUpdate(BaseModel):
    auto_sync: Optional[bool] = None
    sync_inventory: Optional[bool] = None
    sync_prices: Optional[bool] = None
    sync_orders: Optional[bool] = None

    class Config:
        extra = "forbid"


class ConnectionCreate(BaseModel):
    marketplace: MarketplaceKind
    marketplace_account_id: Optional[str] = None
    credentials: Dict[str, Any] = Field(default_factory=dict)
    settings: ConnectionSettings = Field(default_factory=ConnectionSettings)
    sales_channel_id: Optional[str] = None


class ConnectionUpdate(BaseModel):
    """Partial update; credentials and settings are merged field by field."""

    credentials: Optional[Dict[str, Any]] = None
    settings: Optional[ConnectionSettingsUpdate] = None
    sales_channel_id: Optional[str] = None


class ConnectionResponse(BaseModel):
    id: str
    shop_id: str
    marketplace: MarketplaceKind
    marketplace_account_id: Optional[str]
    settings: ConnectionSettings
    status: ConnectionStatus
    last_sync_at: Optional[datetime]
    error_message: Optional[str]
    consecutive_failures: int
    auto_sync_suspended: bool
    is_active: bool
    sales_channel_id: Optional[str]
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class ConnectionTestResponse(BaseModel):
    success: bool
    message: str
    connection: ConnectionResponse


class ConnectionSyncRequest(BaseModel):
    sync_type: str = Field(default="all", pattern="^(all|products|inventory|prices|orders)$")


class SupportedMarketplace(BaseModel):
    id: str
    name: str
    description: str
    features: List[str]
    required_credentials: List[str]
    available: bool
