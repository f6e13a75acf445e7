import asyncio
import os
from decimal import Decimal
from typing import Any, Dict, List, Optional

# Point the application engine at a throwaway database before marketsync is imported.
os.environ.setdefault("DATABASE_URL", "sqlite://")

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from marketsync.adapters.types import (
    ConnectionTestResult,
    ListingPage,
    MarketplaceListing,
    OrderPage,
    PageInfo,
    require_non_negative_quantity,
    require_publishable,
)
from marketsync.models_sqlalchemy import Base
from marketsync.models_sqlalchemy.models import (
    ConnectionStatus,
    ListingStatus,
    MarketplaceConnection,
    MarketplaceKind,
    ProductListing,
    Shop,
    SourceProduct,
    SyncStatus,
)
from marketsync.services.sync_state import RetryPolicy
from marketsync.utils.crypto import encrypt_credentials


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(bind=engine, autocommit=False, autoflush=False)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def policy():
    return RetryPolicy(base_seconds=30, max_seconds=3600, max_retries=5)


class FakeAdapter:
    """In-memory marketplace used by service tests.

    ``failures`` maps a SKU (or order id) to the exception the next call for it
    raises; ``delay`` makes every call yield to the event loop first.
    """

    marketplace = "amazon"

    def __init__(self, delay: float = 0.0):
        self.calls: List[tuple] = []
        self.failures: Dict[str, Exception] = {}
        self.delay = delay
        self.test_result = ConnectionTestResult(success=True, message="Connection successful")
        self.order_pages: List[OrderPage] = []

    async def _hit(self, name: str, key: Any) -> None:
        self.calls.append((name, key))
        await asyncio.sleep(self.delay)
        error = self.failures.get(str(key))
        if error is not None:
            raise error

    def calls_named(self, name: str) -> List[tuple]:
        return [call for call in self.calls if call[0] == name]

    async def test_connection(self):
        self.calls.append(("test_connection", None))
        return self.test_result

    async def list_listings(self, options):
        return ListingPage(listings=[], page_info=PageInfo(has_next_page=False))

    async def create_listing(self, product):
        require_publishable(product)
        await self._hit("create_listing", product.sku)
        return MarketplaceListing(listing_id=f"REMOTE-{product.sku}", sku=product.sku, status="active")

    async def update_listing(self, listing_id, updates):
        await self._hit("update_listing", listing_id)
        return {"listing_id": listing_id, **updates}

    async def delete_listing(self, listing_id):
        await self._hit("delete_listing", listing_id)
        return True

    async def update_inventory(self, listing_id, quantity):
        require_non_negative_quantity(quantity)
        await self._hit("update_inventory", listing_id)
        return {"listing_id": listing_id, "quantity": quantity}

    async def update_price(self, listing_id, price):
        await self._hit("update_price", listing_id)
        return {"listing_id": listing_id, "price": str(price)}

    async def list_orders(self, query):
        self.calls.append(("list_orders", query.cursor))
        if self.order_pages:
            return self.order_pages.pop(0)
        return OrderPage(orders=[], page_info=PageInfo(has_next_page=False))

    async def acknowledge_order(self, order_id):
        await self._hit("acknowledge_order", order_id)
        return {"success": True}

    async def ship_order(self, order_id, shipment):
        await self._hit("ship_order", order_id)
        return {"success": True}

    async def cancel_order(self, order_id, reason):
        await self._hit("cancel_order", order_id)
        return {"success": True}

    async def refund_order(self, order_id, refund):
        await self._hit("refund_order", order_id)
        return {"success": True}

    def transform_product_to_marketplace(self, product):
        return {"sku": product.sku, "title": product.title}

    def transform_order_from_marketplace(self, payload):
        raise NotImplementedError


class Recorder:
    """MockTransport handler answering from a ``(method, path) -> response`` table."""

    def __init__(self, routes):
        self.routes = routes
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get((request.method, request.url.path))
        if route is None:
            return httpx.Response(404, json={"message": f"no route for {request.method} {request.url.path}"})
        if callable(route):
            return route(request)
        return route

    def paths(self, method=None):
        return [r.url.path for r in self.requests if method is None or r.method == method]


@pytest.fixture
def fake_adapter():
    return FakeAdapter()


def make_shop(db, domain: str = "demo.myshopify.com") -> Shop:
    shop = Shop(shop_domain=domain, name=domain.split(".")[0])
    db.add(shop)
    db.commit()
    return shop


def make_connection(
    db,
    shop: Shop,
    *,
    marketplace: MarketplaceKind = MarketplaceKind.amazon,
    status: ConnectionStatus = ConnectionStatus.active,
    settings: Optional[Dict[str, Any]] = None,
    sales_channel_id: Optional[str] = None,
    account_id: Optional[str] = None,
) -> MarketplaceConnection:
    connection = MarketplaceConnection(
        shop_id=shop.id,
        marketplace=marketplace,
        marketplace_account_id=account_id,
        credentials=encrypt_credentials({
            "seller_id": "SELLER1",
            "refresh_token": "Atzr|token",
            "client_id": "client",
            "client_secret": "secret",
        }),
        settings=settings or {"auto_sync": True, "sync_inventory": True, "sync_prices": True, "sync_orders": True},
        status=status,
        sales_channel_id=sales_channel_id,
    )
    db.add(connection)
    db.commit()
    return connection


def make_product(
    db,
    shop: Shop,
    external_id: str,
    *,
    price: str = "20.00",
    title: Optional[str] = None,
    tags: Optional[List[str]] = None,
    collections: Optional[List[str]] = None,
    vendor: Optional[str] = None,
    inventory: int = 5,
) -> SourceProduct:
    product = SourceProduct(
        shop_id=shop.id,
        external_id=external_id,
        title=title or f"Product {external_id}",
        vendor=vendor,
        status="active",
        tags=tags or [],
        collections=collections or [],
        variants=[{
            "id": f"{external_id}01",
            "sku": f"SKU-{external_id}",
            "price": price,
            "compare_at_price": None,
            "inventory_quantity": inventory,
            "inventory_item_id": f"INV-{external_id}",
        }],
        images=[],
    )
    db.add(product)
    db.commit()
    return product


def make_listing(
    db,
    shop: Shop,
    connection: MarketplaceConnection,
    product_id: str,
    *,
    price: str = "20.00",
    inventory: int = 5,
    marketplace_listing_id: Optional[str] = None,
    status: ListingStatus = ListingStatus.draft,
    sync_status: SyncStatus = SyncStatus.not_synced,
) -> ProductListing:
    listing = ProductListing(
        shop_id=shop.id,
        connection_id=connection.id,
        source_product_id=product_id,
        title=f"Product {product_id}",
        price=Decimal(price),
        inventory=inventory,
        marketplace_listing_id=marketplace_listing_id,
        marketplace_sku=marketplace_listing_id,
        status=status,
        sync_status=sync_status,
        extra={},
    )
    db.add(listing)
    db.commit()
    return listing
