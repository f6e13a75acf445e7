from sqlalchemy import (
    Column, Integer, String, DateTime, Text, ForeignKey, Enum, Boolean, Index,
    Numeric, UniqueConstraint, JSON,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import enum
import uuid

from . import Base


JSONType = JSON().with_variant(JSONB(), "postgresql")


def _uuid() -> str:
    return str(uuid.uuid4())


def _enum(enum_cls):
    return Enum(
        enum_cls,
        native_enum=False,
        length=32,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )


class MarketplaceKind(str, enum.Enum):
    amazon = "amazon"
    ebay = "ebay"
    walmart = "walmart"
    target = "target"
    etsy = "etsy"
    other = "other"


class ConnectionStatus(str, enum.Enum):
    pending = "pending"
    active = "active"
    inactive = "inactive"
    error = "error"


class ListingStatus(str, enum.Enum):
    draft = "draft"
    pending = "pending"
    active = "active"
    inactive = "inactive"
    error = "error"


class SyncStatus(str, enum.Enum):
    not_synced = "not_synced"
    pending = "pending"
    synced = "synced"
    error = "error"


class OrderSource(str, enum.Enum):
    shopify = "shopify"
    amazon = "amazon"
    ebay = "ebay"
    walmart = "walmart"
    target = "target"
    etsy = "etsy"
    other = "other"


class OrderStatus(str, enum.Enum):
    pending = "pending"
    processing = "processing"
    shipped = "shipped"
    delivered = "delivered"
    cancelled = "cancelled"
    refunded = "refunded"


class CatalogType(str, enum.Enum):
    standard = "standard"
    seasonal = "seasonal"
    promotional = "promotional"
    custom = "custom"


class ChannelType(str, enum.Enum):
    marketplace = "marketplace"
    retail = "retail"
    wholesale = "wholesale"
    b2b = "b2b"
    custom = "custom"


class TenantRole(str, enum.Enum):
    owner = "owner"
    manager = "manager"
    viewer = "viewer"


class Shop(Base):
    """Tenant. Owns connections, listings, orders, catalogs and channels."""

    __tablename__ = "shops"

    id = Column(String(36), primary_key=True, default=_uuid)
    shop_domain = Column(String(255), nullable=False, unique=True, index=True)
    name = Column(String(255), nullable=True)
    # Admin API token, encrypted like connection credentials.
    access_token = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    uninstalled_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    @property
    def has_access_token(self) -> bool:
        return bool(self.access_token)


class SourceProduct(Base):
    """Local cache of primary-platform product attributes.

    Catalog filters are evaluated against this table only, never against the
    remote platform.
    """

    __tablename__ = "source_products"
    __table_args__ = (
        UniqueConstraint("shop_id", "external_id", name="uq_source_products_shop_external"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    shop_id = Column(String(36), ForeignKey("shops.id", ondelete="CASCADE"), nullable=False, index=True)
    external_id = Column(String(64), nullable=False)

    title = Column(String(512), nullable=False)
    description = Column(Text, nullable=True)
    handle = Column(String(255), nullable=True)
    vendor = Column(String(255), nullable=True)
    product_type = Column(String(255), nullable=True)
    status = Column(String(32), nullable=True)

    tags = Column(JSONType, nullable=False, default=list)
    collections = Column(JSONType, nullable=False, default=list)
    # [{id, sku, price, compare_at_price, inventory_quantity}]
    variants = Column(JSONType, nullable=False, default=list)
    images = Column(JSONType, nullable=False, default=list)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())


class SyncTrackingMixin:
    """Columns shared by every record the sync state machine drives."""

    sync_status = Column(_enum(SyncStatus), nullable=False, default=SyncStatus.not_synced)
    last_sync_at = Column(DateTime(timezone=True), nullable=True)
    error_message = Column(Text, nullable=True)

    retry_count = Column(Integer, nullable=False, default=0)
    next_retry_at = Column(DateTime(timezone=True), nullable=True)

    # Per-record lease held for the duration of one remote call.
    lease_token = Column(String(36), nullable=True)
    lease_expires_at = Column(DateTime(timezone=True), nullable=True)


class SalesChannel(Base):
    __tablename__ = "sales_channels"

    id = Column(String(36), primary_key=True, default=_uuid)
    shop_id = Column(String(36), ForeignKey("shops.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    channel_type = Column(_enum(ChannelType), nullable=False, default=ChannelType.custom)
    # {pricing_rules, inventory_settings, fulfillment_settings}
    configuration = Column(JSONType, nullable=False, default=dict)
    is_active = Column(Boolean, nullable=False, default=True)
    # Higher priority channels are synced first
    priority = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    catalog_links = relationship("ChannelCatalogLink", back_populates="channel", cascade="all, delete-orphan")
    tenant_links = relationship("TenantChannelLink", back_populates="channel", cascade="all, delete-orphan")


class MarketplaceConnection(Base):
    __tablename__ = "marketplace_connections"

    id = Column(String(36), primary_key=True, default=_uuid)
    shop_id = Column(String(36), ForeignKey("shops.id", ondelete="CASCADE"), nullable=False, index=True)
    marketplace = Column(_enum(MarketplaceKind), nullable=False)
    marketplace_account_id = Column(String(255), nullable=True)

    # Encrypted JSON bundle (see marketsync.utils.crypto); opaque to the core.
    credentials = Column(Text, nullable=True)
    # {auto_sync, sync_inventory, sync_prices, sync_orders}
    settings = Column(JSONType, nullable=False, default=dict)

    status = Column(_enum(ConnectionStatus), nullable=False, default=ConnectionStatus.pending)
    last_sync_at = Column(DateTime(timezone=True), nullable=True)
    error_message = Column(Text, nullable=True)

    consecutive_failures = Column(Integer, nullable=False, default=0)
    auto_sync_suspended = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)

    sales_channel_id = Column(String(36), ForeignKey("sales_channels.id", ondelete="SET NULL"), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    sales_channel = relationship("SalesChannel")
    listings = relationship("ProductListing", back_populates="connection")


# One connection per (tenant, marketplace, account); a NULL account id counts as "".
Index(
    "uq_marketplace_connections_tenant_account",
    MarketplaceConnection.shop_id,
    MarketplaceConnection.marketplace,
    func.coalesce(MarketplaceConnection.marketplace_account_id, ""),
    unique=True,
)


class ProductListing(SyncTrackingMixin, Base):
    __tablename__ = "product_listings"
    __table_args__ = (
        UniqueConstraint("connection_id", "marketplace_listing_id", name="uq_product_listings_connection_listing"),
        Index("ix_product_listings_shop_product", "shop_id", "source_product_id"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    shop_id = Column(String(36), ForeignKey("shops.id", ondelete="CASCADE"), nullable=False, index=True)
    connection_id = Column(
        String(36), ForeignKey("marketplace_connections.id", ondelete="CASCADE"), nullable=False, index=True
    )

    source_product_id = Column(String(64), nullable=False)
    source_variant_id = Column(String(64), nullable=True)
    marketplace_listing_id = Column(String(255), nullable=True)
    marketplace_sku = Column(String(255), nullable=True)

    title = Column(String(512), nullable=True)
    price = Column(Numeric(10, 2), nullable=True)
    compare_at_price = Column(Numeric(10, 2), nullable=True)
    inventory = Column(Integer, nullable=False, default=0)

    status = Column(_enum(ListingStatus), nullable=False, default=ListingStatus.draft)
    extra = Column("metadata", JSONType, nullable=False, default=dict)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    connection = relationship("MarketplaceConnection", back_populates="listings")


class Order(SyncTrackingMixin, Base):
    """Orders from the primary platform and from marketplaces. Never deleted."""

    __tablename__ = "orders"
    __table_args__ = (
        Index("ix_orders_shop_source_order", "shop_id", "source_order_id"),
        Index("ix_orders_connection_marketplace_order", "connection_id", "marketplace_order_id"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    shop_id = Column(String(36), ForeignKey("shops.id", ondelete="CASCADE"), nullable=False, index=True)
    connection_id = Column(
        String(36), ForeignKey("marketplace_connections.id", ondelete="SET NULL"), nullable=True, index=True
    )

    source_order_id = Column(String(64), nullable=True)
    marketplace_order_id = Column(String(128), nullable=True)
    order_number = Column(String(64), nullable=True)
    source = Column(_enum(OrderSource), nullable=False, default=OrderSource.shopify)

    status = Column(_enum(OrderStatus), nullable=False, default=OrderStatus.pending)
    financial_status = Column(String(64), nullable=True)
    fulfillment_status = Column(String(64), nullable=True)

    currency = Column(String(3), nullable=False, default="USD")
    subtotal = Column(Numeric(10, 2), nullable=True)
    total_tax = Column(Numeric(10, 2), nullable=False, default=0)
    total_shipping = Column(Numeric(10, 2), nullable=False, default=0)
    total_discount = Column(Numeric(10, 2), nullable=False, default=0)
    total = Column(Numeric(10, 2), nullable=False, default=0)

    customer_email = Column(String(255), nullable=True)
    customer_name = Column(String(255), nullable=True)
    shipping_address = Column(JSONType, nullable=True)
    billing_address = Column(JSONType, nullable=True)
    # Ordered [{title, quantity, sku, price}]
    line_items = Column(JSONType, nullable=False, default=list)

    tracking_number = Column(String(128), nullable=True)
    tracking_url = Column(String(512), nullable=True)
    carrier = Column(String(64), nullable=True)

    extra = Column("metadata", JSONType, nullable=False, default=dict)
    ordered_at = Column(DateTime(timezone=True), nullable=True)
    # Timestamp of the newest event applied; older events are discarded.
    last_event_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    connection = relationship("MarketplaceConnection")


class ProductCatalog(Base):
    __tablename__ = "product_catalogs"

    id = Column(String(36), primary_key=True, default=_uuid)
    shop_id = Column(String(36), ForeignKey("shops.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    catalog_type = Column(_enum(CatalogType), nullable=False, default=CatalogType.standard)
    # {collections, tags, vendor}
    filters = Column(JSONType, nullable=False, default=dict)
    # {markup_type, markup_value, rounding_rule}
    pricing_strategy = Column(JSONType, nullable=False, default=dict)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    channel_links = relationship("ChannelCatalogLink", back_populates="catalog", cascade="all, delete-orphan")


class ChannelCatalogLink(Base):
    __tablename__ = "channel_catalog_links"
    __table_args__ = (
        UniqueConstraint("channel_id", "catalog_id", name="uq_channel_catalog_links_channel_catalog"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    channel_id = Column(String(36), ForeignKey("sales_channels.id", ondelete="CASCADE"), nullable=False, index=True)
    catalog_id = Column(String(36), ForeignKey("product_catalogs.id", ondelete="CASCADE"), nullable=False, index=True)
    # Partial pricing strategy applied on top of the catalog's own.
    overrides = Column(JSONType, nullable=False, default=dict)
    priority = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    channel = relationship("SalesChannel", back_populates="catalog_links")
    catalog = relationship("ProductCatalog", back_populates="channel_links")


class TenantChannelLink(Base):
    __tablename__ = "tenant_channel_links"
    __table_args__ = (
        UniqueConstraint("shop_id", "channel_id", name="uq_tenant_channel_links_shop_channel"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    shop_id = Column(String(36), ForeignKey("shops.id", ondelete="CASCADE"), nullable=False, index=True)
    channel_id = Column(String(36), ForeignKey("sales_channels.id", ondelete="CASCADE"), nullable=False, index=True)
    role = Column(_enum(TenantRole), nullable=False, default=TenantRole.viewer)
    # Partial permission set; unset fields fall back to role defaults.
    permissions = Column(JSONType, nullable=True)
    settings = Column(JSONType, nullable=False, default=dict)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    channel = relationship("SalesChannel", back_populates="tenant_links")
