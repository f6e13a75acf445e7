from datetime import timedelta

import pytest

from marketsync.errors import TransientRemoteError, ValidationError
from marketsync.models_sqlalchemy.models import (
    ChannelCatalogLink,
    ConnectionStatus,
    ListingStatus,
    ProductCatalog,
    SalesChannel,
    SyncStatus,
)
from marketsync.services import connection_sync
from marketsync.services.connection_sync import order_by_channel_priority, sync_connection
from marketsync.services.listing_sync import listing_sync_service
from marketsync.services.order_service import order_service
from marketsync.utils.timeutil import utc_now
from marketsync.workers.sync_scheduler import eligible_connections, run_sync_scheduler_once

from conftest import FakeAdapter, make_connection, make_listing, make_product, make_shop


@pytest.fixture
def fake(monkeypatch):
    adapter = FakeAdapter()
    monkeypatch.setattr(listing_sync_service, "adapter_factory", lambda connection: adapter)
    monkeypatch.setattr(order_service, "adapter_factory", lambda connection: adapter)
    return adapter


def _channel_with_catalogs(db, shop):
    channel = SalesChannel(shop_id=shop.id, name="Main", configuration={}, priority=1)
    premium = ProductCatalog(shop_id=shop.id, name="Premium", filters={"tags": ["premium"]}, pricing_strategy={})
    everything = ProductCatalog(shop_id=shop.id, name="Everything", filters={}, pricing_strategy={})
    db.add_all([channel, premium, everything])
    db.commit()
    db.add_all([
        ChannelCatalogLink(channel_id=channel.id, catalog_id=premium.id, priority=5, overrides={}),
        ChannelCatalogLink(channel_id=channel.id, catalog_id=everything.id, priority=1, overrides={}),
    ])
    db.commit()
    return channel


def test_listings_start_in_catalog_priority_order(db):
    shop = make_shop(db)
    channel = _channel_with_catalogs(db, shop)
    connection = make_connection(db, shop, sales_channel_id=channel.id)
    make_product(db, shop, "1")
    make_product(db, shop, "2", tags=["premium"])
    plain = make_listing(db, shop, connection, "1")
    premium = make_listing(db, shop, connection, "2")
    db.refresh(connection)

    ordered = order_by_channel_priority(db, connection, [plain, premium])

    assert [listing.id for listing in ordered] == [premium.id, plain.id]


@pytest.mark.asyncio
async def test_full_connection_sync_pushes_listings_and_imports_orders(db, fake):
    shop = make_shop(db)
    connection = make_connection(db, shop)
    make_product(db, shop, "1")
    listing = make_listing(db, shop, connection, "1")

    summary = await sync_connection(db, shop.id, connection.id, "all")

    assert summary["listings"] == {"total": 1, "succeeded": 1, "failed": 0, "skipped": 0}
    assert summary["orders"]["fetched"] == 0
    assert fake.calls_named("create_listing") == [("create_listing", "SKU-1")]
    assert len(fake.calls_named("list_orders")) == 1
    db.refresh(listing)
    assert listing.marketplace_listing_id == "REMOTE-SKU-1"
    db.refresh(connection)
    assert connection.last_sync_at is not None


@pytest.mark.asyncio
async def test_order_import_failure_is_reported_not_raised_in_full_sync(db, fake, monkeypatch):
    shop = make_shop(db)
    connection = make_connection(db, shop)

    async def unavailable(*args, **kwargs):
        raise TransientRemoteError("Service Unavailable")

    monkeypatch.setattr(connection_sync.order_service, "import_orders", unavailable)

    summary = await sync_connection(db, shop.id, connection.id, "all")
    assert summary["orders"] == {"error": "Service Unavailable"}

    with pytest.raises(TransientRemoteError):
        await sync_connection(db, shop.id, connection.id, "orders")


@pytest.mark.asyncio
async def test_connection_sync_rejects_unknown_type_and_pending_connection(db, fake):
    shop = make_shop(db)
    connection = make_connection(db, shop)
    pending = make_connection(db, shop, account_id="B", status=ConnectionStatus.pending)

    with pytest.raises(ValidationError):
        await sync_connection(db, shop.id, connection.id, "everything")
    with pytest.raises(ValidationError):
        await sync_connection(db, shop.id, pending.id, "all")


def test_scheduler_only_picks_connections_allowing_auto_sync(db):
    shop = make_shop(db)
    low = SalesChannel(shop_id=shop.id, name="Low", configuration={}, priority=1)
    high = SalesChannel(shop_id=shop.id, name="High", configuration={}, priority=10)
    db.add_all([low, high])
    db.commit()

    unlinked = make_connection(db, shop, account_id="A")
    on_low = make_connection(db, shop, account_id="B", sales_channel_id=low.id)
    on_high = make_connection(db, shop, account_id="C", sales_channel_id=high.id)
    make_connection(db, shop, account_id="D", settings={"auto_sync": False})
    suspended = make_connection(db, shop, account_id="E")
    suspended.auto_sync_suspended = True
    make_connection(db, shop, account_id="F", status=ConnectionStatus.error)
    db.commit()

    assert [c.id for c in eligible_connections(db)] == [on_high.id, on_low.id, unlinked.id]


@pytest.mark.asyncio
async def test_scheduler_pass_resyncs_stale_and_skips_backed_off_listings(db, fake):
    shop = make_shop(db)
    connection = make_connection(db, shop)
    make_product(db, shop, "1")
    make_product(db, shop, "2")
    stale = make_listing(
        db, shop, connection, "1",
        marketplace_listing_id="REMOTE-1",
        status=ListingStatus.active,
        sync_status=SyncStatus.synced,
    )
    stale.last_sync_at = utc_now() - timedelta(days=2)
    backed_off = make_listing(db, shop, connection, "2", sync_status=SyncStatus.pending)
    backed_off.next_retry_at = utc_now() + timedelta(hours=1)
    db.commit()

    summary = await run_sync_scheduler_once(db)

    assert summary["connections"] == 1
    assert summary["failed"] == 0
    result = summary["results"][0]
    assert result["requeued"] == 1
    assert result["listings"]["succeeded"] == 1
    assert fake.calls_named("update_inventory") == [("update_inventory", "REMOTE-1")]
    assert fake.calls_named("create_listing") == []
    db.refresh(stale)
    db.refresh(backed_off)
    assert stale.sync_status == SyncStatus.synced
    assert backed_off.sync_status == SyncStatus.pending
