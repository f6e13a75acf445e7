from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, List
from datetime import datetime

from marketsync.models_sqlalchemy.models import ChannelType, TenantRole
from marketsync.models.catalog import PricingOverrides, PricingStrategy, ProductCatalogResponse


class PermissionSet(BaseModel):
    can_manage_products: bool = False
    can_manage_orders: bool = False
    can_manage_settings: bool = False
    can_view_reports: bool = True

    class Config:
        extra = "forbid"


class PermissionOverrides(BaseModel):
    can_manage_products: Optional[bool] = None
    can_manage_orders: Optional[bool] = None
    can_manage_settings: Optional[bool] = None
    can_view_reports: Optional[bool] = None

    class Config:
        extra = "forbid"


class ChannelConfiguration(BaseModel):
    pricing_rules: Dict[str, Any] = Field(default_factory=dict)
    inventory_settings: Dict[str, Any] = Field(default_factory=dict)
    fulfillment_settings: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        extra = "forbid"


class SalesChannelCreate(BaseModel):
    name: str = Field(min_length=1)
    description: Optional[str] = None
    channel_type: ChannelType = ChannelType.custom
    configuration: ChannelConfiguration = Field(default_factory=ChannelConfiguration)
    priority: int = 0


class SalesChannelUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    channel_type: Optional[ChannelType] = None
    configuration: Optional[Dict[str, Dict[str, Any]]] = None
    priority: Optional[int] = None
    is_active: Optional[bool] = None


class SalesChannelResponse(BaseModel):
    id: str
    shop_id: str
    name: str
    description: Optional[str]
    channel_type: ChannelType
    configuration: ChannelConfiguration
    priority: int
    is_active: bool
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class CatalogLinkCreate(BaseModel):
    catalog_id: str
    overrides: PricingOverrides = Field(default_factory=PricingOverrides)
    priority: int = 0


class CatalogLinkUpdate(BaseModel):
    overrides: Optional[PricingOverrides] = None
    priority: Optional[int] = None
    is_active: Optional[bool] = None


class CatalogLinkResponse(BaseModel):
    id: str
    channel_id: str
    catalog_id: str
    overrides: PricingOverrides
    priority: int
    is_active: bool

    class Config:
        from_attributes = True


class TenantLinkCreate(BaseModel):
    shop_id: str
    role: TenantRole = TenantRole.viewer
    permissions: Optional[PermissionOverrides] = None
    settings: Dict[str, Any] = Field(default_factory=dict)


class TenantLinkUpdate(BaseModel):
    role: Optional[TenantRole] = None
    permissions: Optional[PermissionOverrides] = None
    settings: Optional[Dict[str, Any]] = None
    is_active: Optional[bool] = None


class TenantLinkResponse(BaseModel):
    id: str
    shop_id: str
    channel_id: str
    role: TenantRole
    permissions: Optional[PermissionOverrides]
    settings: Dict[str, Any]
    is_active: bool

    class Config:
        from_attributes = True


class EffectiveCatalogResponse(BaseModel):
    catalog: ProductCatalogResponse
    link_id: str
    link_priority: int
    pricing_strategy: PricingStrategy


class SalesChannelDetailResponse(SalesChannelResponse):
    catalog_links: List[CatalogLinkResponse] = Field(default_factory=list)
    tenant_links: List[TenantLinkResponse] = Field(default_factory=list)
