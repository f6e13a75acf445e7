from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, List
from decimal import Decimal
from datetime import datetime

from marketsync.models_sqlalchemy.models import OrderSource, OrderStatus, SyncStatus


class Address(BaseModel):
    name: Optional[str] = None
    address1: Optional[str] = None
    address2: Optional[str] = None
    city: Optional[str] = None
    province: Optional[str] = None
    country: Optional[str] = None
    zip: Optional[str] = None
    phone: Optional[str] = None


class LineItem(BaseModel):
    title: Optional[str] = None
    quantity: int = 0
    sku: Optional[str] = None
    price: Optional[Decimal] = None


class NormalizedOrder(BaseModel):
    """Marketplace-agnostic order produced by an adapter's order transform."""

    marketplace_order_id: str
    order_number: Optional[str] = None
    source: OrderSource
    status: OrderStatus = OrderStatus.pending
    financial_status: Optional[str] = None
    fulfillment_status: Optional[str] = None
    currency: str = "USD"
    subtotal: Optional[Decimal] = None
    total_tax: Decimal = Decimal("0")
    total_shipping: Decimal = Decimal("0")
    total_discount: Decimal = Decimal("0")
    total: Decimal = Decimal("0")
    customer_email: Optional[str] = None
    customer_name: Optional[str] = None
    shipping_address: Optional[Address] = None
    billing_address: Optional[Address] = None
    line_items: List[LineItem] = Field(default_factory=list)
    ordered_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class OrderResponse(BaseModel):
    id: str
    shop_id: str
    connection_id: Optional[str]
    source_order_id: Optional[str]
    marketplace_order_id: Optional[str]
    order_number: Optional[str]
    source: OrderSource
    status: OrderStatus
    financial_status: Optional[str]
    fulfillment_status: Optional[str]
    currency: str
    subtotal: Optional[Decimal]
    total_tax: Decimal
    total_shipping: Decimal
    total_discount: Decimal
    total: Decimal
    customer_email: Optional[str]
    customer_name: Optional[str]
    shipping_address: Optional[Dict[str, Any]]
    billing_address: Optional[Dict[str, Any]]
    line_items: List[LineItem]
    tracking_number: Optional[str]
    tracking_url: Optional[str]
    carrier: Optional[str]
    sync_status: SyncStatus
    last_sync_at: Optional[datetime]
    error_message: Optional[str]
    metadata: Dict[str, Any] = Field(default_factory=dict, validation_alias="extra")
    ordered_at: Optional[datetime]
    last_event_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class OrderPageResponse(BaseModel):
    orders: List[OrderResponse]
    total: int
    page: int
    limit: int


class OrderImportRequest(BaseModel):
    connection_id: str
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


class OrderImportResponse(BaseModel):
    connection_id: str
    marketplace: str
    fetched: int
    created: int
    updated: int
    skipped: int


class FulfillRequest(BaseModel):
    tracking_number: str = Field(min_length=1)
    tracking_url: Optional[str] = None
    carrier: Optional[str] = None


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class RefundBody(BaseModel):
    amount: Optional[Decimal] = Field(default=None, ge=0)
    reason: Optional[str] = None
    comment: Optional[str] = None
