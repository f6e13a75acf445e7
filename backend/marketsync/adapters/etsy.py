"""Etsy Open API v3 adapter.

Requests carry the app keystring in ``x-api-key`` plus the shop's OAuth
bearer token. Listings and receipts page by offset. Etsy has no order
acknowledgement, and cancellations/refunds are only possible from the Etsy
shop manager.
"""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

import httpx

from marketsync.adapters.http import MarketplaceHttpClient
from marketsync.adapters.types import (
    ConnectionTestResult,
    ListingPage,
    MarketplaceListing,
    OrderPage,
    OrderQuery,
    PageInfo,
    PageOptions,
    ProductSnapshot,
    RefundRequest,
    ShipmentRequest,
    format_price,
    require_non_negative_price,
    require_non_negative_quantity,
    require_order_id,
    require_publishable,
)
from marketsync.config import settings
from marketsync.errors import AuthError, NonRetryableRemoteError
from marketsync.models.order import Address, LineItem, NormalizedOrder
from marketsync.models_sqlalchemy.models import OrderSource, OrderStatus


API_PREFIX = "/v3/application"

ORDER_STATUS_MAP = {
    "open": OrderStatus.pending,
    "unpaid": OrderStatus.pending,
    "payment processing": OrderStatus.pending,
    "paid": OrderStatus.processing,
    "partially refunded": OrderStatus.processing,
    "completed": OrderStatus.shipped,
    "canceled": OrderStatus.cancelled,
    "fully refunded": OrderStatus.refunded,
}

CARRIER_MAP = {
    "USPS": "usps",
    "UPS": "ups",
    "FedEx": "fedex",
    "FEDEX": "fedex",
    "DHL": "dhl",
}


def etsy_money(value: Any) -> Decimal:
    """Etsy money is ``{"amount": 1999, "divisor": 100}``."""
    if not isinstance(value, dict) or value.get("amount") is None:
        return Decimal("0")
    divisor = value.get("divisor") or 1
    return (Decimal(str(value["amount"])) / Decimal(str(divisor))).quantize(Decimal("0.01"))


def _epoch(dt: datetime) -> int:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp())


def _from_epoch(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _offset(cursor: Optional[str]) -> int:
    try:
        return max(int(cursor), 0) if cursor else 0
    except ValueError:
        return 0


class EtsyAdapter:
    marketplace = "etsy"

    def __init__(
        self,
        credentials: Dict[str, Any],
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.credentials = credentials
        self.shop_id = credentials.get("shop_id")
        self.http = MarketplaceHttpClient(
            self.marketplace,
            credentials.get("api_base_url") or settings.ETSY_API_BASE_URL,
            transport=transport,
        )

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        access_token = self.credentials.get("access_token")
        if not access_token:
            raise AuthError("Etsy access token is missing", marketplace=self.marketplace)
        headers = {
            "x-api-key": self.credentials.get("api_key", ""),
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        return await self.http.request(method, f"{API_PREFIX}{path}", headers=headers, **kwargs)

    async def _rewrite_offerings(self, listing_id: str, *, quantity=None, price=None) -> Dict[str, Any]:
        inventory = await self._request("GET", f"/listings/{listing_id}/inventory") or {}
        products = []
        for product in inventory.get("products") or []:
            offerings = []
            for offering in product.get("offerings") or []:
                offerings.append({
                    "price": float(price) if price is not None else float(etsy_money(offering.get("price"))),
                    "quantity": quantity if quantity is not None else offering.get("quantity", 0),
                    "is_enabled": offering.get("is_enabled", True),
                })
            products.append({
                "sku": product.get("sku"),
                "property_values": product.get("property_values") or [],
                "offerings": offerings,
            })
        body = {"products": products}
        for key in ("price_on_property", "quantity_on_property", "sku_on_property"):
            if key in inventory:
                body[key] = inventory[key]
        return await self._request("PUT", f"/listings/{listing_id}/inventory", json=body) or {}

    async def test_connection(self) -> ConnectionTestResult:
        try:
            await self._request("GET", f"/shops/{self.shop_id}")
        except (AuthError, NonRetryableRemoteError) as exc:
            return ConnectionTestResult(success=False, message=exc.message)
        return ConnectionTestResult(success=True, message="Connection successful")

    async def list_listings(self, options: PageOptions) -> ListingPage:
        offset = _offset(options.cursor)
        response = await self._request(
            "GET",
            f"/shops/{self.shop_id}/listings",
            params={"limit": options.limit, "offset": offset},
        ) or {}
        total = int(response.get("count") or 0)
        next_offset = offset + options.limit
        has_next = next_offset < total
        return ListingPage(
            listings=response.get("results") or [],
            page_info=PageInfo(
                has_next_page=has_next,
                cursor=str(next_offset) if has_next else None,
                total=total,
            ),
        )

    async def create_listing(self, product: ProductSnapshot) -> MarketplaceListing:
        payload = self.transform_product_to_marketplace(product)
        response = await self._request("POST", f"/shops/{self.shop_id}/listings", json=payload) or {}
        listing_id = response.get("listing_id")
        if listing_id is None:
            raise NonRetryableRemoteError("Etsy did not return a listing_id", marketplace=self.marketplace)
        return MarketplaceListing(
            listing_id=str(listing_id),
            sku=product.sku,
            status="active" if response.get("state") == "active" else "draft",
            raw=response,
        )

    async def update_listing(self, listing_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
        response = await self._request(
            "PATCH",
            f"/shops/{self.shop_id}/listings/{listing_id}",
            json=updates,
        )
        return response or {"listing_id": listing_id}

    async def delete_listing(self, listing_id: str) -> bool:
        await self._request("DELETE", f"/listings/{listing_id}")
        return True

    async def update_inventory(self, listing_id: str, quantity: int) -> Dict[str, Any]:
        quantity = require_non_negative_quantity(quantity)
        await self._rewrite_offerings(listing_id, quantity=quantity)
        return {"listing_id": listing_id, "quantity": quantity}

    async def update_price(self, listing_id: str, price) -> Dict[str, Any]:
        price = require_non_negative_price(price)
        await self._rewrite_offerings(listing_id, price=price)
        return {"listing_id": listing_id, "price": format_price(price)}

    async def list_orders(self, query: OrderQuery) -> OrderPage:
        offset = _offset(query.cursor)
        params: Dict[str, Any] = {"limit": query.limit, "offset": offset}
        if query.created_after:
            params["min_created"] = _epoch(query.created_after)
        if query.created_before:
            params["max_created"] = _epoch(query.created_before)

        response = await self._request("GET", f"/shops/{self.shop_id}/receipts", params=params) or {}
        total = int(response.get("count") or 0)
        next_offset = offset + query.limit
        has_next = next_offset < total
        return OrderPage(
            orders=[self.transform_order_from_marketplace(r) for r in response.get("results") or []],
            page_info=PageInfo(
                has_next_page=has_next,
                cursor=str(next_offset) if has_next else None,
                total=total,
            ),
        )

    async def acknowledge_order(self, order_id: str) -> Dict[str, Any]:
        return {"success": True, "order_id": order_id}

    async def ship_order(self, order_id: str, shipment: ShipmentRequest) -> Dict[str, Any]:
        response = await self._request(
            "POST",
            f"/shops/{self.shop_id}/receipts/{order_id}/tracking",
            json={
                "tracking_code": shipment.tracking_number,
                "carrier_name": self.map_carrier(shipment.carrier),
                "send_bcc": False,
            },
        )
        return response or {"success": True, "order_id": order_id}

    async def cancel_order(self, order_id: str, reason: str) -> Dict[str, Any]:
        raise NonRetryableRemoteError(
            "Cancellations must be processed through the Etsy shop manager",
            marketplace=self.marketplace,
        )

    async def refund_order(self, order_id: str, refund: RefundRequest) -> Dict[str, Any]:
        raise NonRetryableRemoteError(
            "Refunds must be processed through the Etsy shop manager",
            marketplace=self.marketplace,
        )

    def transform_product_to_marketplace(self, product: ProductSnapshot) -> Dict[str, Any]:
        quantity, price = require_publishable(product)
        return {
            "quantity": quantity,
            "title": product.title[:140],
            "description": product.description or product.title,
            "price": float(price),
            "who_made": self.credentials.get("who_made", "i_did"),
            "when_made": self.credentials.get("when_made", "made_to_order"),
            "taxonomy_id": int(self.credentials.get("taxonomy_id", 1)),
            "tags": [tag[:20] for tag in product.tags[:13]],
            "skus": [product.sku] if product.sku else [],
            "type": "physical",
        }

    def transform_order_from_marketplace(self, payload: Dict[str, Any]) -> NormalizedOrder:
        receipt_id = require_order_id(payload, "receipt_id", self.marketplace)
        grandtotal = payload.get("grandtotal") or {}
        line_items: List[LineItem] = [
            LineItem(
                title=transaction.get("title"),
                quantity=int(transaction.get("quantity") or 0),
                sku=transaction.get("sku"),
                price=etsy_money(transaction.get("price")),
            )
            for transaction in payload.get("transactions") or []
        ]
        status_value = (payload.get("status") or "").lower()
        status = self.map_order_status(status_value)
        if status == OrderStatus.processing and payload.get("is_shipped"):
            status = OrderStatus.shipped

        return NormalizedOrder(
            marketplace_order_id=receipt_id,
            order_number=receipt_id,
            source=OrderSource.etsy,
            status=status,
            financial_status="paid" if payload.get("is_paid") else "pending",
            fulfillment_status="shipped" if payload.get("is_shipped") else None,
            currency=grandtotal.get("currency_code") or "USD",
            subtotal=etsy_money(payload.get("subtotal")),
            total_tax=etsy_money(payload.get("total_tax_cost")),
            total_shipping=etsy_money(payload.get("total_shipping_cost")),
            total_discount=etsy_money(payload.get("discount_amt")),
            total=etsy_money(grandtotal),
            customer_email=payload.get("buyer_email"),
            customer_name=payload.get("name"),
            shipping_address=Address(
                name=payload.get("name"),
                address1=payload.get("first_line"),
                address2=payload.get("second_line"),
                city=payload.get("city"),
                province=payload.get("state"),
                country=payload.get("country_iso"),
                zip=payload.get("zip"),
            ) if payload.get("first_line") else None,
            line_items=line_items,
            ordered_at=_from_epoch(payload.get("create_timestamp")),
            updated_at=_from_epoch(payload.get("update_timestamp")),
            metadata={
                "buyer_user_id": payload.get("buyer_user_id"),
                "marketplace_status": payload.get("status"),
            },
        )

    @staticmethod
    def map_order_status(status: Optional[str]) -> OrderStatus:
        return ORDER_STATUS_MAP.get((status or "").lower(), OrderStatus.pending)

    @staticmethod
    def map_carrier(carrier: Optional[str]) -> str:
        return CARRIER_MAP.get(carrier or "", "OTHER")
