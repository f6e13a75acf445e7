from decimal import Decimal

import pytest

from marketsync.adapters.types import OrderPage, PageInfo
from marketsync.errors import (
    InvalidTransitionError,
    NonRetryableRemoteError,
    TransientRemoteError,
    ValidationError,
)
from marketsync.models.order import CancelRequest, FulfillRequest, NormalizedOrder, RefundBody
from marketsync.models_sqlalchemy.models import Order, OrderSource, OrderStatus, SyncStatus
from marketsync.services.order_service import OrderService
from marketsync.services.webhook_events import derive_order_status, webhook_processor

from conftest import FakeAdapter, make_connection, make_shop


def _shopify_order(updated_at, **overrides):
    payload = {
        "id": 450789469,
        "order_number": 1001,
        "email": "buyer@example.com",
        "financial_status": "paid",
        "fulfillment_status": None,
        "currency": "USD",
        "subtotal_price": "40.00",
        "total_tax": "3.20",
        "total_discounts": "0.00",
        "total_price": "43.20",
        "customer": {"first_name": "Ada", "last_name": "Lovelace"},
        "line_items": [{"title": "Mug", "quantity": 2, "sku": "MUG-1", "price": "20.00"}],
        "created_at": "2024-05-01T10:00:00Z",
        "updated_at": updated_at,
    }
    payload.update(overrides)
    return payload


def test_derive_order_status_signals():
    assert derive_order_status({"cancelled_at": "2024-01-01", "financial_status": "paid"}) == OrderStatus.cancelled
    assert derive_order_status({"fulfillment_status": "fulfilled"}) == OrderStatus.shipped
    assert derive_order_status({"financial_status": "refunded"}) == OrderStatus.refunded
    assert derive_order_status({"financial_status": "paid"}) == OrderStatus.processing
    assert derive_order_status({"financial_status": "pending"}) == OrderStatus.pending


def test_stale_order_event_is_discarded(db):
    shop = make_shop(db)

    created = webhook_processor.handle(db, shop.shop_domain, "orders/create", _shopify_order("2024-05-01T10:05:00Z"))
    assert created["status"] == "created"

    newer = webhook_processor.handle(
        db, shop.shop_domain, "orders/updated",
        _shopify_order("2024-05-01T11:00:00Z", fulfillment_status="fulfilled"),
    )
    assert newer["status"] == "updated"

    stale = webhook_processor.handle(
        db, shop.shop_domain, "orders/updated",
        _shopify_order("2024-05-01T10:30:00Z", financial_status="pending"),
    )
    assert stale["status"] == "stale"

    order = db.query(Order).filter(Order.source_order_id == "450789469").one()
    assert order.status == OrderStatus.shipped
    assert order.financial_status == "paid"
    assert order.total == Decimal("43.20")
    assert order.customer_name == "Ada Lovelace"
    assert order.sync_status == SyncStatus.synced


def test_fulfilled_event_for_unknown_order_is_ignored(db):
    shop = make_shop(db)
    result = webhook_processor.handle(db, shop.shop_domain, "orders/fulfilled", _shopify_order("2024-05-01T10:05:00Z"))
    assert result == {"status": "ignored", "reason": "unknown order"}
    assert db.query(Order).count() == 0


def test_unknown_topic_is_rejected(db):
    shop = make_shop(db)
    with pytest.raises(ValidationError):
        webhook_processor.handle(db, shop.shop_domain, "carts/create", {})


def _normalized(order_id="AMZ-1", status=OrderStatus.processing, updated_at="2024-05-01T12:00:00Z", total="25.00"):
    return NormalizedOrder(
        marketplace_order_id=order_id,
        order_number=order_id,
        source=OrderSource.amazon,
        status=status,
        total=Decimal(total),
        ordered_at="2024-05-01T09:00:00Z",
        updated_at=updated_at,
        metadata={"line_item_ids": ["L1"]},
    )


@pytest.mark.asyncio
async def test_import_orders_follows_cursor_and_skips_stale_updates(db):
    shop = make_shop(db)
    connection = make_connection(db, shop)
    fake = FakeAdapter()
    fake.order_pages = [
        OrderPage(orders=[_normalized("AMZ-1"), _normalized("AMZ-2")], page_info=PageInfo(has_next_page=True, cursor="page-2")),
        OrderPage(orders=[_normalized("AMZ-3")], page_info=PageInfo(has_next_page=False)),
    ]
    service = OrderService(adapter_factory=lambda c: fake)

    first = await service.import_orders(db, shop.id, connection.id)
    assert (first.fetched, first.created, first.updated, first.skipped) == (3, 3, 0, 0)
    assert fake.calls_named("list_orders") == [("list_orders", None), ("list_orders", "page-2")]

    fake.order_pages = [
        OrderPage(
            orders=[
                _normalized("AMZ-1", status=OrderStatus.shipped, updated_at="2024-05-01T13:00:00Z"),
                _normalized("AMZ-2", status=OrderStatus.cancelled, updated_at="2024-05-01T11:00:00Z"),
            ],
            page_info=PageInfo(has_next_page=False),
        ),
    ]
    second = await service.import_orders(db, shop.id, connection.id)
    assert (second.updated, second.skipped) == (1, 1)

    statuses = {o.marketplace_order_id: o.status for o in db.query(Order).all()}
    assert statuses == {"AMZ-1": OrderStatus.shipped, "AMZ-2": OrderStatus.processing, "AMZ-3": OrderStatus.processing}


async def _imported_order(db, fake):
    shop = make_shop(db)
    connection = make_connection(db, shop)
    fake.order_pages = [OrderPage(orders=[_normalized("AMZ-9")], page_info=PageInfo(has_next_page=False))]
    service = OrderService(adapter_factory=lambda c: fake)
    await service.import_orders(db, shop.id, connection.id)
    order = db.query(Order).filter(Order.marketplace_order_id == "AMZ-9").one()
    return shop, service, order


@pytest.mark.asyncio
async def test_fulfill_pushes_shipment_to_marketplace(db):
    fake = FakeAdapter()
    shop, service, order = await _imported_order(db, fake)

    fulfilled = await service.fulfill_order(db, shop.id, order.id, FulfillRequest(tracking_number="1Z999", carrier="UPS"))

    assert fake.calls_named("ship_order") == [("ship_order", "AMZ-9")]
    assert fulfilled.status == OrderStatus.shipped
    assert fulfilled.tracking_number == "1Z999"
    assert fulfilled.sync_status == SyncStatus.synced
    assert fulfilled.lease_token is None

    with pytest.raises(InvalidTransitionError):
        await service.cancel_order(db, shop.id, order.id, CancelRequest(reason="too late"))


@pytest.mark.asyncio
async def test_rejected_cancel_records_the_error_and_keeps_status(db):
    fake = FakeAdapter()
    shop, service, order = await _imported_order(db, fake)
    fake.failures["AMZ-9"] = NonRetryableRemoteError("Order has already shipped")

    with pytest.raises(NonRetryableRemoteError):
        await service.cancel_order(db, shop.id, order.id, CancelRequest(reason="buyer asked"))

    db.refresh(order)
    assert order.status == OrderStatus.processing
    assert order.sync_status == SyncStatus.error
    assert order.error_message == "Order has already shipped"


@pytest.mark.asyncio
async def test_partial_then_full_refund(db):
    fake = FakeAdapter()
    shop, service, order = await _imported_order(db, fake)

    with pytest.raises(ValidationError):
        await service.refund_order(db, shop.id, order.id, RefundBody(amount=Decimal("99.00")))

    partial = await service.refund_order(db, shop.id, order.id, RefundBody(amount=Decimal("5.00"), reason="damaged"))
    assert partial.status == OrderStatus.processing
    assert partial.financial_status == "partially_refunded"

    full = await service.refund_order(db, shop.id, order.id, RefundBody())
    assert full.status == OrderStatus.refunded
    assert len(full.extra["refunds"]) == 2


@pytest.mark.asyncio
async def test_throttled_fulfil_is_final_until_called_again(db):
    fake = FakeAdapter()
    shop, service, order = await _imported_order(db, fake)
    fake.failures["AMZ-9"] = TransientRemoteError("Request throttled", retry_after=60)
    request = FulfillRequest(tracking_number="1Z999", carrier="UPS")

    with pytest.raises(TransientRemoteError):
        await service.fulfill_order(db, shop.id, order.id, request)

    db.refresh(order)
    assert order.sync_status == SyncStatus.error
    assert order.next_retry_at is None
    assert order.error_message == "Request throttled"
    assert order.status == OrderStatus.processing
    assert order.lease_token is None

    del fake.failures["AMZ-9"]
    fulfilled = await service.fulfill_order(db, shop.id, order.id, request)
    assert fulfilled.status == OrderStatus.shipped
    assert fulfilled.sync_status == SyncStatus.synced
    assert fake.calls_named("ship_order") == [("ship_order", "AMZ-9"), ("ship_order", "AMZ-9")]
