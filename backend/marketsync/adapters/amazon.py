"""Amazon Selling Partner API adapter.

Auth is a Login-with-Amazon refresh-token grant; the access token is cached
until shortly before expiry. Listings are keyed by seller SKU and paged with
SP-API ``nextToken`` values.
"""
from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx

from marketsync.adapters.http import CachedToken, MarketplaceHttpClient
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
    require_non_negative_price,
    require_non_negative_quantity,
    require_order_id,
    require_publishable,
    to_decimal,
)
from marketsync.config import settings
from marketsync.errors import AuthError, NonRetryableRemoteError
from marketsync.models.order import Address, LineItem, NormalizedOrder
from marketsync.models_sqlalchemy.models import OrderSource, OrderStatus


LISTINGS_PATH = "/listings/2021-08-01/items"

ORDER_STATUS_MAP = {
    "PendingAvailability": OrderStatus.pending,
    "Pending": OrderStatus.pending,
    "Unshipped": OrderStatus.processing,
    "PartiallyShipped": OrderStatus.processing,
    "InvoiceUnconfirmed": OrderStatus.processing,
    "Shipped": OrderStatus.shipped,
    "Canceled": OrderStatus.cancelled,
    "Unfulfillable": OrderStatus.cancelled,
}

CARRIER_MAP = {
    "USPS": "USPS",
    "UPS": "UPS",
    "FedEx": "FEDEX",
    "FEDEX": "FEDEX",
    "DHL": "DHL",
}


def _iso(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


class AmazonAdapter:
    marketplace = "amazon"

    def __init__(
        self,
        credentials: Dict[str, Any],
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.credentials = credentials
        self.seller_id = credentials.get("seller_id")
        self.marketplace_id = credentials.get("marketplace_id") or settings.AMAZON_DEFAULT_MARKETPLACE_ID
        self.token_url = settings.AMAZON_TOKEN_URL
        self.http = MarketplaceHttpClient(
            self.marketplace,
            credentials.get("api_base_url") or settings.AMAZON_API_BASE_URL,
            transport=transport,
        )
        self._token: Optional[CachedToken] = None

    async def _access_token(self) -> str:
        if self._token and self._token.is_valid():
            return self._token.value

        try:
            body = await self.http.request(
                "POST",
                "/auth/o2/token",
                url=self.token_url,
                data={
                    "grant_type": "refresh_token",
                    "refresh_token": self.credentials.get("refresh_token", ""),
                    "client_id": self.credentials.get("client_id", ""),
                    "client_secret": self.credentials.get("client_secret", ""),
                },
            )
        except NonRetryableRemoteError as exc:
            # invalid_grant and friends come back as 400
            raise AuthError(exc.message, status_code=exc.status_code, marketplace=self.marketplace) from exc
        token = (body or {}).get("access_token")
        if not token:
            raise AuthError("Login with Amazon did not return an access token", marketplace=self.marketplace)
        self._token = CachedToken(token, time.time() + int(body.get("expires_in", 3600)))
        return token

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        headers = {
            "x-amz-access-token": await self._access_token(),
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        return await self.http.request(method, path, headers=headers, **kwargs)

    def _item_path(self, sku: str) -> str:
        return f"{LISTINGS_PATH}/{self.seller_id}/{sku}"

    async def _patch_attributes(self, sku: str, attributes: Dict[str, Any]) -> Dict[str, Any]:
        patches = [
            {"op": "replace", "path": f"/attributes/{key}", "value": value}
            for key, value in attributes.items()
        ]
        response = await self._request(
            "PATCH",
            self._item_path(sku),
            params={"marketplaceIds": self.marketplace_id},
            json={"productType": "PRODUCT", "patches": patches},
        )
        self._raise_for_submission(response)
        return response or {}

    def _raise_for_submission(self, response: Optional[Dict[str, Any]]) -> None:
        # The Listings API answers 200 with status=INVALID for rejected content.
        if not response or response.get("status") != "INVALID":
            return
        issues = response.get("issues") or []
        message = "; ".join(i.get("message", "") for i in issues if isinstance(i, dict)) or "Listing submission rejected"
        raise NonRetryableRemoteError(message, status_code=200, marketplace=self.marketplace)

    async def test_connection(self) -> ConnectionTestResult:
        try:
            await self._request("GET", "/sellers/v1/marketplaceParticipations")
        except (AuthError, NonRetryableRemoteError) as exc:
            return ConnectionTestResult(success=False, message=exc.message)
        return ConnectionTestResult(success=True, message="Connection successful")

    async def list_listings(self, options: PageOptions) -> ListingPage:
        params = {"marketplaceIds": self.marketplace_id, "pageSize": options.limit}
        if options.cursor:
            params["pageToken"] = options.cursor

        response = await self._request("GET", f"{LISTINGS_PATH}/{self.seller_id}", params=params) or {}
        next_token = (response.get("pagination") or {}).get("nextToken") or response.get("nextToken")
        return ListingPage(
            listings=response.get("items") or [],
            page_info=PageInfo(
                has_next_page=bool(next_token),
                cursor=next_token,
                total=response.get("numberOfResults"),
            ),
        )

    async def create_listing(self, product: ProductSnapshot) -> MarketplaceListing:
        payload = self.transform_product_to_marketplace(product)
        sku = payload.pop("sku")
        response = await self._request(
            "PUT",
            self._item_path(sku),
            params={"marketplaceIds": self.marketplace_id},
            json=payload,
        )
        self._raise_for_submission(response)
        response = response or {}
        return MarketplaceListing(
            listing_id=sku,
            sku=sku,
            status="pending" if response.get("status") == "ACCEPTED" else "active",
            raw=response,
        )

    async def update_listing(self, listing_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
        attributes: Dict[str, Any] = {}
        for key, value in updates.items():
            if key == "title":
                attributes["item_name"] = [{"value": value, "marketplace_id": self.marketplace_id}]
            elif key == "description":
                attributes["product_description"] = [{"value": value, "marketplace_id": self.marketplace_id}]
            else:
                attributes[key] = value
        return await self._patch_attributes(listing_id, attributes)

    async def delete_listing(self, listing_id: str) -> bool:
        await self._request(
            "DELETE",
            self._item_path(listing_id),
            params={"marketplaceIds": self.marketplace_id},
        )
        return True

    async def update_inventory(self, listing_id: str, quantity: int) -> Dict[str, Any]:
        quantity = require_non_negative_quantity(quantity)
        await self._patch_attributes(
            listing_id,
            {"fulfillment_availability": [{"fulfillment_channel_code": "DEFAULT", "quantity": quantity}]},
        )
        return {"sku": listing_id, "quantity": quantity}

    async def update_price(self, listing_id: str, price) -> Dict[str, Any]:
        price = require_non_negative_price(price)
        await self._patch_attributes(listing_id, {"purchasable_offer": [self._offer(price)]})
        return {"sku": listing_id, "price": str(price)}

    async def list_orders(self, query: OrderQuery) -> OrderPage:
        params: Dict[str, Any] = {"MarketplaceIds": self.marketplace_id, "MaxResultsPerPage": query.limit}
        if query.cursor:
            params["NextToken"] = query.cursor
        else:
            if query.created_after:
                params["CreatedAfter"] = _iso(query.created_after)
            if query.created_before:
                params["CreatedBefore"] = _iso(query.created_before)

        response = await self._request("GET", "/orders/v0/orders", params=params) or {}
        payload = response.get("payload", response)
        next_token = payload.get("NextToken")
        return OrderPage(
            orders=[self.transform_order_from_marketplace(o) for o in payload.get("Orders") or []],
            page_info=PageInfo(has_next_page=bool(next_token), cursor=next_token),
        )

    async def acknowledge_order(self, order_id: str) -> Dict[str, Any]:
        # Amazon orders are acknowledged automatically
        return {"success": True, "order_id": order_id}

    async def ship_order(self, order_id: str, shipment: ShipmentRequest) -> Dict[str, Any]:
        shipped_at = shipment.shipped_at or datetime.now(timezone.utc)
        body = {
            "marketplaceId": self.marketplace_id,
            "packageDetail": {
                "packageReferenceId": "1",
                "carrierCode": self.map_carrier(shipment.carrier),
                "trackingNumber": shipment.tracking_number,
                "shipDate": _iso(shipped_at),
                "orderItems": [
                    {"orderItemId": item.get("line_id"), "quantity": item.get("quantity", 1)}
                    for item in shipment.line_items
                ],
            },
        }
        response = await self._request("POST", f"/orders/v0/orders/{order_id}/shipmentConfirmation", json=body)
        return response or {"success": True, "order_id": order_id}

    async def cancel_order(self, order_id: str, reason: str) -> Dict[str, Any]:
        response = await self._request(
            "POST",
            f"/orders/v0/orders/{order_id}/cancel",
            json={"cancellationReasonCode": reason or "NoInventory"},
        )
        return response or {"success": True, "order_id": order_id}

    async def refund_order(self, order_id: str, refund: RefundRequest) -> Dict[str, Any]:
        raise NonRetryableRemoteError(
            "Refunds must be processed through Amazon Seller Central",
            marketplace=self.marketplace,
        )

    def _offer(self, price) -> Dict[str, Any]:
        return {
            "marketplace_id": self.marketplace_id,
            "currency": "USD",
            "our_price": [{"schedule": [{"value_with_tax": float(price)}]}],
        }

    def transform_product_to_marketplace(self, product: ProductSnapshot) -> Dict[str, Any]:
        quantity, price = require_publishable(product)
        vendor = product.vendor or "Generic"
        return {
            "sku": product.sku or product.handle,
            "productType": "PRODUCT",
            "requirements": "LISTING",
            "attributes": {
                "item_name": [{"value": product.title, "marketplace_id": self.marketplace_id}],
                "brand": [{"value": vendor}],
                "bullet_point": [{"value": tag} for tag in product.tags[:5]],
                "manufacturer": [{"value": vendor}],
                "item_type_keyword": [{"value": product.product_type or "general"}],
                "purchasable_offer": [self._offer(price)],
                "fulfillment_availability": [
                    {"fulfillment_channel_code": "DEFAULT", "quantity": quantity}
                ],
            },
        }

    def transform_order_from_marketplace(self, payload: Dict[str, Any]) -> NormalizedOrder:
        order_id = require_order_id(payload, "AmazonOrderId", self.marketplace)
        buyer = payload.get("BuyerInfo") or {}
        order_total = payload.get("OrderTotal") or {}
        address = payload.get("ShippingAddress")
        line_items: List[LineItem] = []
        for item in payload.get("OrderItems") or []:
            line_items.append(
                LineItem(
                    title=item.get("Title"),
                    quantity=int(item.get("QuantityOrdered") or 0),
                    sku=item.get("SellerSKU"),
                    price=to_decimal((item.get("ItemPrice") or {}).get("Amount"), default=None),
                )
            )

        return NormalizedOrder(
            marketplace_order_id=order_id,
            order_number=order_id,
            source=OrderSource.amazon,
            status=self.map_order_status(payload.get("OrderStatus")),
            financial_status="paid" if payload.get("PaymentMethod") else "pending",
            fulfillment_status="fulfilled" if payload.get("FulfillmentChannel") == "AFN" else None,
            currency=order_total.get("CurrencyCode") or "USD",
            total=to_decimal(order_total.get("Amount")),
            customer_email=buyer.get("BuyerEmail"),
            customer_name=buyer.get("BuyerName"),
            shipping_address=Address(
                name=address.get("Name"),
                address1=address.get("AddressLine1"),
                address2=address.get("AddressLine2"),
                city=address.get("City"),
                province=address.get("StateOrRegion"),
                country=address.get("CountryCode"),
                zip=address.get("PostalCode"),
            ) if address else None,
            line_items=line_items,
            ordered_at=payload.get("PurchaseDate"),
            updated_at=payload.get("LastUpdateDate"),
            metadata={
                "fulfillment_channel": payload.get("FulfillmentChannel"),
                "ship_service_level": payload.get("ShipServiceLevel"),
                "is_prime": payload.get("IsPrime"),
                "marketplace_status": payload.get("OrderStatus"),
            },
        )

    @staticmethod
    def map_order_status(status: Optional[str]) -> OrderStatus:
        return ORDER_STATUS_MAP.get(status, OrderStatus.pending)

    @staticmethod
    def map_carrier(carrier: Optional[str]) -> str:
        return CARRIER_MAP.get(carrier or "", "OTHER")
