import asyncio

import pytest

from marketsync.config import settings
from marketsync.errors import NonRetryableRemoteError, SyncInProgressError, TransientRemoteError
from marketsync.models_sqlalchemy.models import ConnectionStatus, ListingStatus, SyncStatus
from marketsync.services.connection_service import ConnectionService
from marketsync.services.listing_sync import ListingSyncService

from conftest import FakeAdapter, make_connection, make_listing, make_product, make_shop


def _setup(db, count=1):
    shop = make_shop(db)
    connection = make_connection(db, shop)
    listings = []
    for i in range(1, count + 1):
        make_product(db, shop, str(i))
        listings.append(make_listing(db, shop, connection, str(i)))
    return shop, connection, listings


def _service(fake, policy):
    return ListingSyncService(adapter_factory=lambda connection: fake, policy=policy)


@pytest.mark.asyncio
async def test_concurrent_syncs_of_one_listing_call_the_marketplace_once(db, policy):
    shop, connection, (listing,) = _setup(db)
    fake = FakeAdapter(delay=0.01)
    service = _service(fake, policy)

    results = await asyncio.gather(
        service.sync_listing(db, listing.id),
        service.sync_listing(db, listing.id),
        return_exceptions=True,
    )

    assert len(fake.calls_named("create_listing")) == 1
    errors = [r for r in results if isinstance(r, Exception)]
    assert len(errors) == 1
    assert isinstance(errors[0], SyncInProgressError)

    db.refresh(listing)
    assert listing.sync_status == SyncStatus.synced
    assert listing.status == ListingStatus.active
    assert listing.marketplace_listing_id == "REMOTE-SKU-1"
    assert listing.lease_token is None


@pytest.mark.asyncio
async def test_bulk_sync_isolates_a_rejected_item(db, policy):
    shop, connection, listings = _setup(db, count=5)
    fake = FakeAdapter()
    fake.failures["SKU-3"] = NonRetryableRemoteError("Brand 'Acme' is not approved for this category")
    service = _service(fake, policy)
    ids = [listing.id for listing in listings]

    results = await service.bulk_sync(db, ids)

    assert [r.listing_id for r in results] == ids
    assert [r.success for r in results] == [True, True, False, True, True]
    assert results[2].error == "Brand 'Acme' is not approved for this category"

    for listing in listings:
        db.refresh(listing)
    assert listings[2].sync_status == SyncStatus.error
    assert listings[2].status == ListingStatus.error
    assert listings[2].error_message == "Brand 'Acme' is not approved for this category"
    assert all(l.sync_status == SyncStatus.synced for i, l in enumerate(listings) if i != 2)
    db.refresh(connection)
    assert connection.status == ConnectionStatus.active


@pytest.mark.asyncio
async def test_three_failures_suspend_automatic_sync_until_a_good_test(db, policy):
    shop, connection, listings = _setup(db, count=4)
    fake = FakeAdapter()
    for sku in ("SKU-1", "SKU-2", "SKU-3"):
        fake.failures[sku] = NonRetryableRemoteError("Rejected")
    service = _service(fake, policy)

    for listing in listings[:3]:
        result = await service.sync_listing(db, listing.id)
        assert result.success is False

    db.refresh(connection)
    assert connection.status == ConnectionStatus.error
    assert connection.auto_sync_suspended is True
    assert connection.consecutive_failures == settings.CONNECTION_ERROR_THRESHOLD

    skipped = await service.sync_listing(db, listings[3].id, triggered_by="scheduler")
    assert skipped.skipped is True
    assert fake.calls_named("create_listing") == [("create_listing", "SKU-1"), ("create_listing", "SKU-2"), ("create_listing", "SKU-3")]

    connection_service = ConnectionService(adapter_factory=lambda c: fake)
    connection, test_result = await connection_service.test_connection(db, shop.id, connection.id)
    assert test_result.success is True
    assert connection.status == ConnectionStatus.active
    assert connection.auto_sync_suspended is False
    assert connection.consecutive_failures == 0

    resumed = await service.sync_listing(db, listings[3].id, triggered_by="scheduler")
    assert resumed.success is True


@pytest.mark.asyncio
async def test_transient_failure_is_rescheduled(db, policy):
    shop, connection, (listing,) = _setup(db)
    fake = FakeAdapter()
    fake.failures["SKU-1"] = TransientRemoteError("Request throttled")
    service = _service(fake, policy)

    result = await service.sync_listing(db, listing.id)

    assert result.success is False
    assert result.sync_status == SyncStatus.pending
    assert result.next_retry_at is not None
    db.refresh(listing)
    assert listing.retry_count == 1
    assert listing.error_message == "Request throttled"
    assert listing.lease_token is None
    db.refresh(connection)
    assert connection.consecutive_failures == 0


@pytest.mark.asyncio
async def test_adapter_timeout_counts_as_transient(db, policy, monkeypatch):
    monkeypatch.setattr(settings, "ADAPTER_TIMEOUT_SECONDS", 0.01)
    shop, connection, (listing,) = _setup(db)
    fake = FakeAdapter(delay=1)
    service = _service(fake, policy)

    result = await service.sync_listing(db, listing.id)

    assert result.sync_status == SyncStatus.pending
    assert "timed out" in result.error
    db.refresh(listing)
    assert listing.retry_count == 1


@pytest.mark.asyncio
async def test_withdrawn_listing_is_deleted_remotely(db, policy):
    shop, connection, (listing,) = _setup(db)
    listing.marketplace_listing_id = "REMOTE-1"
    listing.status = ListingStatus.inactive
    listing.sync_status = SyncStatus.pending
    db.commit()
    fake = FakeAdapter()

    result = await _service(fake, policy).sync_listing(db, listing.id)

    assert result.success is True
    assert fake.calls == [("delete_listing", "REMOTE-1")]
    db.refresh(listing)
    assert listing.status == ListingStatus.inactive
    assert listing.sync_status == SyncStatus.synced


@pytest.mark.asyncio
async def test_inventory_scope_only_pushes_quantity(db, policy):
    shop, connection, (listing,) = _setup(db)
    listing.marketplace_listing_id = "REMOTE-1"
    listing.status = ListingStatus.active
    listing.sync_status = SyncStatus.synced
    db.commit()
    fake = FakeAdapter()

    result = await _service(fake, policy).sync_listing(db, listing.id, scope="inventory")

    assert result.success is True
    assert fake.calls == [("update_inventory", "REMOTE-1")]


@pytest.mark.asyncio
async def test_pricing_error_blocks_publishing(db, policy):
    shop, connection, (listing,) = _setup(db)
    listing.extra = {"pricing_error": "Pricing strategy produced a negative price"}
    db.commit()
    fake = FakeAdapter()

    result = await _service(fake, policy).sync_listing(db, listing.id)

    assert result.success is False
    assert result.error == "Pricing strategy produced a negative price"
    assert fake.calls == []
    db.refresh(connection)
    assert connection.consecutive_failures == 0


@pytest.mark.asyncio
async def test_cancelled_bulk_sync_reports_unstarted_items(db, policy):
    shop, connection, listings = _setup(db, count=3)
    fake = FakeAdapter()
    cancel = asyncio.Event()
    cancel.set()

    results = await _service(fake, policy).bulk_sync(db, [l.id for l in listings], cancel_event=cancel)

    assert [r.error for r in results] == ["cancelled"] * 3
    assert all(r.skipped for r in results)
    assert fake.calls == []


@pytest.mark.asyncio
async def test_sync_requires_an_active_connection(db, policy):
    shop = make_shop(db)
    connection = make_connection(db, shop, status=ConnectionStatus.pending)
    make_product(db, shop, "1")
    listing = make_listing(db, shop, connection, "1")
    fake = FakeAdapter()

    results = await _service(fake, policy).bulk_sync(db, [listing.id])

    assert results[0].success is False
    assert results[0].error == "Connection is not active"
    assert fake.calls == []


def test_manual_retry_moves_error_back_to_pending(db, policy):
    shop, connection, (listing,) = _setup(db)
    listing.sync_status = SyncStatus.error
    listing.error_message = "Rejected"
    listing.retry_count = 2
    db.commit()

    requeued = ListingSyncService(policy=policy).requeue_listing(db, shop.id, listing.id)

    assert requeued.sync_status == SyncStatus.pending
    assert requeued.error_message is None
    assert requeued.retry_count == 0


@pytest.mark.asyncio
async def test_oversold_listing_is_not_published(db, policy):
    shop = make_shop(db)
    connection = make_connection(db, shop)
    make_product(db, shop, "7", inventory=-2)
    listing = make_listing(db, shop, connection, "7", inventory=-2)
    fake = FakeAdapter()

    result = await _service(fake, policy).sync_listing(db, listing.id)

    assert result.success is False
    assert result.error == "Quantity must not be negative, got -2"
    assert fake.calls_named("create_listing") == []
    db.refresh(listing)
    assert listing.sync_status == SyncStatus.error
    assert listing.marketplace_listing_id is None
    db.refresh(connection)
    assert connection.consecutive_failures == 0
    assert connection.status == ConnectionStatus.active
