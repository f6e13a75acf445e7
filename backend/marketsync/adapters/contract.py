from __future__ import annotations

from typing import Any, Dict, Protocol, runtime_checkable

from marketsync.adapters.types import (
    ConnectionTestResult,
    ListingPage,
    MarketplaceListing,
    OrderPage,
    OrderQuery,
    PageOptions,
    ProductSnapshot,
    RefundRequest,
    ShipmentRequest,
)
from marketsync.models.order import NormalizedOrder


@runtime_checkable
class MarketplaceAdapter(Protocol):
    """Capability set every marketplace integration provides.

    Implementations are plain classes (no shared base) built from a
    connection's decrypted credentials. Remote failures surface as
    ``AuthError``, ``TransientRemoteError`` or ``NonRetryableRemoteError``;
    bad input (negative price or quantity) as ``ValidationError`` before any
    I/O. ``create_listing`` is not idempotent; callers hold the per-listing
    sync lease around it.
    """

    marketplace: str

    async def test_connection(self) -> ConnectionTestResult: ...

    async def list_listings(self, options: PageOptions) -> ListingPage: ...

    async def create_listing(self, product: ProductSnapshot) -> MarketplaceListing: ...

    async def update_listing(self, listing_id: str, updates: Dict[str, Any]) -> Dict[str, Any]: ...

    async def delete_listing(self, listing_id: str) -> bool: ...

    async def update_inventory(self, listing_id: str, quantity: int) -> Dict[str, Any]: ...

    async def update_price(self, listing_id: str, price) -> Dict[str, Any]: ...

    async def list_orders(self, query: OrderQuery) -> OrderPage: ...

    async def acknowledge_order(self, order_id: str) -> Dict[str, Any]: ...

    async def ship_order(self, order_id: str, shipment: ShipmentRequest) -> Dict[str, Any]: ...

    async def cancel_order(self, order_id: str, reason: str) -> Dict[str, Any]: ...

    async def refund_order(self, order_id: str, refund: RefundRequest) -> Dict[str, Any]: ...

    def transform_product_to_marketplace(self, product: ProductSnapshot) -> Dict[str, Any]: ...

    def transform_order_from_marketplace(self, payload: Dict[str, Any]) -> NormalizedOrder: ...
