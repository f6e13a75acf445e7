"""initial marketsync schema

Revision ID: marketsync_initial_001
Revises:
Create Date: 2026-10-18

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

revision = 'marketsync_initial_001'
down_revision = None
branch_labels = None
depends_on = None

JSONType = sa.JSON().with_variant(JSONB(), "postgresql")


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def _sync_tracking():
    return [
        sa.Column('sync_status', sa.String(32), nullable=False, server_default='not_synced'),
        sa.Column('last_sync_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('next_retry_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('lease_token', sa.String(36), nullable=True),
        sa.Column('lease_expires_at', sa.DateTime(timezone=True), nullable=True),
    ]


def upgrade():
    op.create_table(
        'shops',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('shop_domain', sa.String(255), nullable=False),
        sa.Column('name', sa.String(255), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('uninstalled_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_shops_shop_domain', 'shops', ['shop_domain'], unique=True)

    op.create_table(
        'source_products',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('shop_id', sa.String(36), sa.ForeignKey('shops.id', ondelete='CASCADE'), nullable=False),
        sa.Column('external_id', sa.String(64), nullable=False),
        sa.Column('title', sa.String(512), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('handle', sa.String(255), nullable=True),
        sa.Column('vendor', sa.String(255), nullable=True),
        sa.Column('product_type', sa.String(255), nullable=True),
        sa.Column('status', sa.String(32), nullable=True),
        sa.Column('tags', JSONType, nullable=False),
        sa.Column('collections', JSONType, nullable=False),
        sa.Column('variants', JSONType, nullable=False),
        sa.Column('images', JSONType, nullable=False),
        *_timestamps(),
        sa.UniqueConstraint('shop_id', 'external_id', name='uq_source_products_shop_external'),
    )
    op.create_index('ix_source_products_shop_id', 'source_products', ['shop_id'])

    op.create_table(
        'sales_channels',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('shop_id', sa.String(36), sa.ForeignKey('shops.id', ondelete='CASCADE'), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('channel_type', sa.String(32), nullable=False, server_default='custom'),
        sa.Column('configuration', JSONType, nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('priority', sa.Integer(), nullable=False, server_default='0'),
        *_timestamps(),
    )
    op.create_index('ix_sales_channels_shop_id', 'sales_channels', ['shop_id'])

    op.create_table(
        'marketplace_connections',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('shop_id', sa.String(36), sa.ForeignKey('shops.id', ondelete='CASCADE'), nullable=False),
        sa.Column('marketplace', sa.String(32), nullable=False),
        sa.Column('marketplace_account_id', sa.String(255), nullable=True),
        sa.Column('credentials', sa.Text(), nullable=True),
        sa.Column('settings', JSONType, nullable=False),
        sa.Column('status', sa.String(32), nullable=False, server_default='pending'),
        sa.Column('last_sync_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('consecutive_failures', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('auto_sync_suspended', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column(
            'sales_channel_id', sa.String(36),
            sa.ForeignKey('sales_channels.id', ondelete='SET NULL'), nullable=True,
        ),
        *_timestamps(),
    )
    op.create_index('ix_marketplace_connections_shop_id', 'marketplace_connections', ['shop_id'])
    op.create_index(
        'uq_marketplace_connections_tenant_account',
        'marketplace_connections',
        ['shop_id', 'marketplace', sa.text("coalesce(marketplace_account_id, '')")],
        unique=True,
    )

    op.create_table(
        'product_listings',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('shop_id', sa.String(36), sa.ForeignKey('shops.id', ondelete='CASCADE'), nullable=False),
        sa.Column(
            'connection_id', sa.String(36),
            sa.ForeignKey('marketplace_connections.id', ondelete='CASCADE'), nullable=False,
        ),
        sa.Column('source_product_id', sa.String(64), nullable=False),
        sa.Column('source_variant_id', sa.String(64), nullable=True),
        sa.Column('marketplace_listing_id', sa.String(255), nullable=True),
        sa.Column('marketplace_sku', sa.String(255), nullable=True),
        sa.Column('title', sa.String(512), nullable=True),
        sa.Column('price', sa.Numeric(10, 2), nullable=True),
        sa.Column('compare_at_price', sa.Numeric(10, 2), nullable=True),
        sa.Column('inventory', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('status', sa.String(32), nullable=False, server_default='draft'),
        sa.Column('metadata', JSONType, nullable=False),
        *_sync_tracking(),
        *_timestamps(),
        sa.UniqueConstraint('connection_id', 'marketplace_listing_id', name='uq_product_listings_connection_listing'),
    )
    op.create_index('ix_product_listings_shop_id', 'product_listings', ['shop_id'])
    op.create_index('ix_product_listings_connection_id', 'product_listings', ['connection_id'])
    op.create_index('ix_product_listings_shop_product', 'product_listings', ['shop_id', 'source_product_id'])

    op.create_table(
        'orders',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('shop_id', sa.String(36), sa.ForeignKey('shops.id', ondelete='CASCADE'), nullable=False),
        sa.Column(
            'connection_id', sa.String(36),
            sa.ForeignKey('marketplace_connections.id', ondelete='SET NULL'), nullable=True,
        ),
        sa.Column('source_order_id', sa.String(64), nullable=True),
        sa.Column('marketplace_order_id', sa.String(128), nullable=True),
        sa.Column('order_number', sa.String(64), nullable=True),
        sa.Column('source', sa.String(32), nullable=False, server_default='shopify'),
        sa.Column('status', sa.String(32), nullable=False, server_default='pending'),
        sa.Column('financial_status', sa.String(64), nullable=True),
        sa.Column('fulfillment_status', sa.String(64), nullable=True),
        sa.Column('currency', sa.String(3), nullable=False, server_default='USD'),
        sa.Column('subtotal', sa.Numeric(10, 2), nullable=True),
        sa.Column('total_tax', sa.Numeric(10, 2), nullable=False, server_default='0'),
        sa.Column('total_shipping', sa.Numeric(10, 2), nullable=False, server_default='0'),
        sa.Column('total_discount', sa.Numeric(10, 2), nullable=False, server_default='0'),
        sa.Column('total', sa.Numeric(10, 2), nullable=False, server_default='0'),
        sa.Column('customer_email', sa.String(255), nullable=True),
        sa.Column('customer_name', sa.String(255), nullable=True),
        sa.Column('shipping_address', JSONType, nullable=True),
        sa.Column('billing_address', JSONType, nullable=True),
        sa.Column('line_items', JSONType, nullable=False),
        sa.Column('tracking_number', sa.String(128), nullable=True),
        sa.Column('tracking_url', sa.String(512), nullable=True),
        sa.Column('carrier', sa.String(64), nullable=True),
        sa.Column('metadata', JSONType, nullable=False),
        sa.Column('ordered_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_event_at', sa.DateTime(timezone=True), nullable=True),
        *_sync_tracking(),
        *_timestamps(),
    )
    op.create_index('ix_orders_shop_id', 'orders', ['shop_id'])
    op.create_index('ix_orders_connection_id', 'orders', ['connection_id'])
    op.create_index('ix_orders_shop_source_order', 'orders', ['shop_id', 'source_order_id'])
    op.create_index('ix_orders_connection_marketplace_order', 'orders', ['connection_id', 'marketplace_order_id'])

    op.create_table(
        'product_catalogs',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('shop_id', sa.String(36), sa.ForeignKey('shops.id', ondelete='CASCADE'), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('catalog_type', sa.String(32), nullable=False, server_default='standard'),
        sa.Column('filters', JSONType, nullable=False),
        sa.Column('pricing_strategy', JSONType, nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )
    op.create_index('ix_product_catalogs_shop_id', 'product_catalogs', ['shop_id'])

    op.create_table(
        'channel_catalog_links',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column(
            'channel_id', sa.String(36),
            sa.ForeignKey('sales_channels.id', ondelete='CASCADE'), nullable=False,
        ),
        sa.Column(
            'catalog_id', sa.String(36),
            sa.ForeignKey('product_catalogs.id', ondelete='CASCADE'), nullable=False,
        ),
        sa.Column('overrides', JSONType, nullable=False),
        sa.Column('priority', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.UniqueConstraint('channel_id', 'catalog_id', name='uq_channel_catalog_links_channel_catalog'),
    )
    op.create_index('ix_channel_catalog_links_channel_id', 'channel_catalog_links', ['channel_id'])
    op.create_index('ix_channel_catalog_links_catalog_id', 'channel_catalog_links', ['catalog_id'])

    op.create_table(
        'tenant_channel_links',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('shop_id', sa.String(36), sa.ForeignKey('shops.id', ondelete='CASCADE'), nullable=False),
        sa.Column(
            'channel_id', sa.String(36),
            sa.ForeignKey('sales_channels.id', ondelete='CASCADE'), nullable=False,
        ),
        sa.Column('role', sa.String(32), nullable=False, server_default='viewer'),
        sa.Column('permissions', JSONType, nullable=True),
        sa.Column('settings', JSONType, nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.UniqueConstraint('shop_id', 'channel_id', name='uq_tenant_channel_links_shop_channel'),
    )
    op.create_index('ix_tenant_channel_links_shop_id', 'tenant_channel_links', ['shop_id'])
    op.create_index('ix_tenant_channel_links_channel_id', 'tenant_channel_links', ['channel_id'])


def downgrade():
    op.drop_table('tenant_channel_links')
    op.drop_table('channel_catalog_links')
    op.drop_table('product_catalogs')
    op.drop_table('orders')
    op.drop_table('product_listings')
    op.drop_table('marketplace_connections')
    op.drop_table('sales_channels')
    op.drop_table('source_products')
    op.drop_table('shops')
