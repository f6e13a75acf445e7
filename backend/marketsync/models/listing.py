from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, List
from decimal import Decimal
from datetime import datetime

from marketsync.models_sqlalchemy.models import ListingStatus, SyncStatus


class ListingCreate(BaseModel):
    connection_id: str
    source_product_id: str
    source_variant_id: Optional[str] = None
    title: Optional[str] = None
    price: Optional[Decimal] = Field(default=None, ge=0)
    compare_at_price: Optional[Decimal] = Field(default=None, ge=0)
    inventory: Optional[int] = Field(default=None, ge=0)


class ListingUpdate(BaseModel):
    title: Optional[str] = None
    price: Optional[Decimal] = Field(default=None, ge=0)
    compare_at_price: Optional[Decimal] = Field(default=None, ge=0)
    inventory: Optional[int] = Field(default=None, ge=0)
    status: Optional[ListingStatus] = None
    metadata: Optional[Dict[str, Any]] = None


class ListingResponse(BaseModel):
    id: str
    shop_id: str
    connection_id: str
    source_product_id: str
    source_variant_id: Optional[str]
    marketplace_listing_id: Optional[str]
    marketplace_sku: Optional[str]
    title: Optional[str]
    price: Optional[Decimal]
    compare_at_price: Optional[Decimal]
    inventory: int
    status: ListingStatus
    sync_status: SyncStatus
    last_sync_at: Optional[datetime]
    error_message: Optional[str]
    retry_count: int
    next_retry_at: Optional[datetime]
    metadata: Dict[str, Any] = Field(default_factory=dict, validation_alias="extra")
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class ListingPageResponse(BaseModel):
    listings: List[ListingResponse]
    total: int
    page: int
    limit: int


class BulkSyncRequest(BaseModel):
    listing_ids: List[str] = Field(min_length=1)


class ListingSyncResult(BaseModel):
    listing_id: str
    success: bool
    sync_status: Optional[SyncStatus] = None
    status: Optional[ListingStatus] = None
    error: Optional[str] = None
    next_retry_at: Optional[datetime] = None
    skipped: bool = False


class BulkSyncResponse(BaseModel):
    results: List[ListingSyncResult]
    succeeded: int
    failed: int
