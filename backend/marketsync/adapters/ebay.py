"""eBay Sell APIs adapter (Inventory + Fulfillment).

A listing is an inventory item (keyed by SKU) plus one published offer; the
SKU is the listing id used by every other operation. Paging is offset-based;
the opaque cursor carries the next offset.
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
    format_price,
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


INVENTORY_PATH = "/sell/inventory/v1"
FULFILLMENT_PATH = "/sell/fulfillment/v1"
OAUTH_SCOPES = " ".join([
    "https://api.ebay.com/oauth/api_scope/sell.inventory",
    "https://api.ebay.com/oauth/api_scope/sell.fulfillment",
])

ORDER_STATUS_MAP = {
    "NOT_STARTED": OrderStatus.pending,
    "IN_PROGRESS": OrderStatus.processing,
    "FULFILLED": OrderStatus.shipped,
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
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.000Z")


def _offset(cursor: Optional[str]) -> int:
    try:
        return max(int(cursor), 0) if cursor else 0
    except ValueError:
        return 0


class EbayAdapter:
    marketplace = "ebay"

    def __init__(
        self,
        credentials: Dict[str, Any],
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.credentials = credentials
        sandbox = credentials.get("sandbox")
        if sandbox is None:
            base_url = settings.ebay_api_base_url
        else:
            base_url = "https://api.sandbox.ebay.com" if sandbox else "https://api.ebay.com"
        self.marketplace_id = credentials.get("marketplace_id") or settings.EBAY_MARKETPLACE_ID
        self.http = MarketplaceHttpClient(self.marketplace, base_url, transport=transport)
        self._token: Optional[CachedToken] = None

    async def _access_token(self) -> str:
        if self._token and self._token.is_valid():
            return self._token.value

        try:
            body = await self.http.request(
                "POST",
                "/identity/v1/oauth2/token",
                data={
                    "grant_type": "refresh_token",
                    "refresh_token": self.credentials.get("refresh_token", ""),
                    "scope": OAUTH_SCOPES,
                },
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                auth=httpx.BasicAuth(
                    self.credentials.get("client_id", ""),
                    self.credentials.get("client_secret", ""),
                ),
            )
        except NonRetryableRemoteError as exc:
            raise AuthError(exc.message, status_code=exc.status_code, marketplace=self.marketplace) from exc

        token = (body or {}).get("access_token")
        if not token:
            raise AuthError("eBay did not return an access token", marketplace=self.marketplace)
        self._token = CachedToken(token, time.time() + int(body.get("expires_in", 7200)))
        return token

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        headers = {
            "Authorization": f"Bearer {await self._access_token()}",
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Content-Language": "en-US",
        }
        return await self.http.request(method, path, headers=headers, **kwargs)

    async def _offers_for_sku(self, sku: str) -> List[Dict[str, Any]]:
        response = await self._request("GET", f"{INVENTORY_PATH}/offer", params={"sku": sku}) or {}
        return response.get("offers") or []

    async def test_connection(self) -> ConnectionTestResult:
        try:
            await self._request("GET", f"{INVENTORY_PATH}/inventory_item", params={"limit": 1})
        except (AuthError, NonRetryableRemoteError) as exc:
            return ConnectionTestResult(success=False, message=exc.message)
        return ConnectionTestResult(success=True, message="Connection successful")

    async def list_listings(self, options: PageOptions) -> ListingPage:
        offset = _offset(options.cursor)
        response = await self._request(
            "GET",
            f"{INVENTORY_PATH}/inventory_item",
            params={"limit": options.limit, "offset": offset},
        ) or {}
        total = int(response.get("total") or 0)
        next_offset = offset + options.limit
        has_next = next_offset < total
        return ListingPage(
            listings=response.get("inventoryItems") or [],
            page_info=PageInfo(
                has_next_page=has_next,
                cursor=str(next_offset) if has_next else None,
                total=total,
            ),
        )

    async def create_listing(self, product: ProductSnapshot) -> MarketplaceListing:
        inventory_item = self.transform_product_to_marketplace(product)
        sku = inventory_item.pop("sku")

        await self._request("PUT", f"{INVENTORY_PATH}/inventory_item/{sku}", json=inventory_item)

        offer = {
            "sku": sku,
            "marketplaceId": self.marketplace_id,
            "format": "FIXED_PRICE",
            "listingDescription": product.description or product.title,
            "availableQuantity": inventory_item["availability"]["shipToLocationAvailability"]["quantity"],
            "pricingSummary": {"price": {"value": format_price(product.price), "currency": "USD"}},
            "listingPolicies": {
                "fulfillmentPolicyId": self.credentials.get("fulfillment_policy_id"),
                "paymentPolicyId": self.credentials.get("payment_policy_id"),
                "returnPolicyId": self.credentials.get("return_policy_id"),
            },
        }
        if self.credentials.get("merchant_location_key"):
            offer["merchantLocationKey"] = self.credentials["merchant_location_key"]
        if self.credentials.get("category_id"):
            offer["categoryId"] = self.credentials["category_id"]

        offer_response = await self._request("POST", f"{INVENTORY_PATH}/offer", json=offer) or {}
        offer_id = offer_response.get("offerId")
        if not offer_id:
            raise NonRetryableRemoteError("eBay did not return an offerId", marketplace=self.marketplace)

        publish_response = await self._request("POST", f"{INVENTORY_PATH}/offer/{offer_id}/publish") or {}
        return MarketplaceListing(
            listing_id=sku,
            sku=sku,
            status="active",
            raw={"offer_id": offer_id, "ebay_listing_id": publish_response.get("listingId")},
        )

    async def update_listing(self, listing_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
        current = await self._request("GET", f"{INVENTORY_PATH}/inventory_item/{listing_id}") or {}
        product = dict(current.get("product") or {})
        for key in ("title", "description"):
            if key in updates:
                product[key] = updates[key]
        merged = {**current, **{k: v for k, v in updates.items() if k not in ("title", "description")}}
        merged["product"] = product
        merged.pop("sku", None)
        await self._request("PUT", f"{INVENTORY_PATH}/inventory_item/{listing_id}", json=merged)
        return merged

    async def delete_listing(self, listing_id: str) -> bool:
        for offer in await self._offers_for_sku(listing_id):
            offer_id = offer.get("offerId")
            if offer.get("status") == "PUBLISHED":
                await self._request("POST", f"{INVENTORY_PATH}/offer/{offer_id}/withdraw")
            await self._request("DELETE", f"{INVENTORY_PATH}/offer/{offer_id}")
        await self._request("DELETE", f"{INVENTORY_PATH}/inventory_item/{listing_id}")
        return True

    async def update_inventory(self, listing_id: str, quantity: int) -> Dict[str, Any]:
        quantity = require_non_negative_quantity(quantity)
        current = await self._request("GET", f"{INVENTORY_PATH}/inventory_item/{listing_id}") or {}
        current.pop("sku", None)
        current["availability"] = {"shipToLocationAvailability": {"quantity": quantity}}
        await self._request("PUT", f"{INVENTORY_PATH}/inventory_item/{listing_id}", json=current)
        return {"sku": listing_id, "quantity": quantity}

    async def update_price(self, listing_id: str, price) -> Dict[str, Any]:
        price = require_non_negative_price(price)
        for offer in await self._offers_for_sku(listing_id):
            pricing = dict(offer.get("pricingSummary") or {})
            pricing["price"] = {**(pricing.get("price") or {"currency": "USD"}), "value": format_price(price)}
            offer["pricingSummary"] = pricing
            await self._request("PUT", f"{INVENTORY_PATH}/offer/{offer['offerId']}", json=offer)
        return {"sku": listing_id, "price": format_price(price)}

    async def list_orders(self, query: OrderQuery) -> OrderPage:
        offset = _offset(query.cursor)
        params: Dict[str, Any] = {"limit": query.limit, "offset": offset}
        if query.created_after or query.created_before:
            start = _iso(query.created_after) if query.created_after else ""
            end = _iso(query.created_before) if query.created_before else ""
            params["filter"] = f"creationdate:[{start}..{end}]"

        response = await self._request("GET", f"{FULFILLMENT_PATH}/order", params=params) or {}
        total = int(response.get("total") or 0)
        next_offset = offset + query.limit
        has_next = next_offset < total
        return OrderPage(
            orders=[self.transform_order_from_marketplace(o) for o in response.get("orders") or []],
            page_info=PageInfo(
                has_next_page=has_next,
                cursor=str(next_offset) if has_next else None,
                total=total,
            ),
        )

    async def acknowledge_order(self, order_id: str) -> Dict[str, Any]:
        # eBay orders don't require explicit acknowledgment
        return {"success": True, "order_id": order_id}

    async def ship_order(self, order_id: str, shipment: ShipmentRequest) -> Dict[str, Any]:
        shipped_at = shipment.shipped_at or datetime.now(timezone.utc)
        response = await self._request(
            "POST",
            f"{FULFILLMENT_PATH}/order/{order_id}/shipping_fulfillment",
            json={
                "lineItems": [
                    {"lineItemId": item.get("line_id"), "quantity": item.get("quantity", 1)}
                    for item in shipment.line_items
                ],
                "shippedDate": _iso(shipped_at),
                "shippingCarrierCode": self.map_carrier(shipment.carrier),
                "trackingNumber": shipment.tracking_number,
            },
        )
        return response or {"success": True, "order_id": order_id}

    async def cancel_order(self, order_id: str, reason: str) -> Dict[str, Any]:
        response = await self._request(
            "POST",
            "/post-order/v2/cancellation",
            json={"legacyOrderId": order_id, "cancelReason": reason or "OUT_OF_STOCK_OR_CANNOT_FULFILL"},
        )
        return response or {"success": True, "order_id": order_id}

    async def refund_order(self, order_id: str, refund: RefundRequest) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "reasonForRefund": refund.reason or "OTHER",
            "comment": refund.comment,
        }
        if refund.items:
            body["refundItems"] = refund.items
        if refund.amount is not None:
            body["orderLevelRefundAmount"] = {
                "value": format_price(require_non_negative_price(refund.amount)),
                "currency": refund.currency,
            }
        response = await self._request("POST", f"{FULFILLMENT_PATH}/order/{order_id}/issue_refund", json=body)
        return response or {"success": True, "order_id": order_id}

    def transform_product_to_marketplace(self, product: ProductSnapshot) -> Dict[str, Any]:
        quantity, _ = require_publishable(product)
        return {
            "sku": product.sku or product.handle,
            "product": {
                "title": product.title,
                "description": product.description or product.title,
                "aspects": {"Brand": [product.vendor or "Unbranded"]},
                "imageUrls": list(product.images),
            },
            "condition": "NEW",
            "availability": {
                "shipToLocationAvailability": {"quantity": quantity}
            },
        }

    def transform_order_from_marketplace(self, payload: Dict[str, Any]) -> NormalizedOrder:
        order_id = require_order_id(payload, "orderId", self.marketplace)
        buyer = payload.get("buyer") or {}
        registration = buyer.get("buyerRegistrationAddress") or {}
        instructions = (payload.get("fulfillmentStartInstructions") or [{}])[0] or {}
        ship_to = ((instructions.get("shippingStep") or {}).get("shipTo") or {})
        contact_address = ship_to.get("contactAddress") or {}
        pricing = payload.get("pricingSummary") or {}

        def amount(key: str):
            return to_decimal((pricing.get(key) or {}).get("value"))

        return NormalizedOrder(
            marketplace_order_id=order_id,
            order_number=order_id,
            source=OrderSource.ebay,
            status=self.map_order_status(payload),
            financial_status="paid" if payload.get("orderPaymentStatus") == "PAID" else "pending",
            fulfillment_status=payload.get("orderFulfillmentStatus"),
            currency=(pricing.get("total") or {}).get("currency") or "USD",
            total=amount("total"),
            subtotal=amount("priceSubtotal"),
            total_tax=amount("tax"),
            total_shipping=amount("deliveryCost"),
            total_discount=abs(amount("priceDiscount")),
            customer_email=registration.get("email"),
            customer_name=(registration.get("fullName") or "").strip() or None,
            shipping_address=Address(
                name=ship_to.get("fullName"),
                address1=contact_address.get("addressLine1"),
                address2=contact_address.get("addressLine2"),
                city=contact_address.get("city"),
                province=contact_address.get("stateOrProvince"),
                country=contact_address.get("countryCode"),
                zip=contact_address.get("postalCode"),
            ),
            line_items=[
                LineItem(
                    title=item.get("title"),
                    quantity=int(item.get("quantity") or 0),
                    sku=item.get("sku"),
                    price=to_decimal((item.get("lineItemCost") or {}).get("value"), default=None),
                )
                for item in payload.get("lineItems") or []
            ],
            ordered_at=payload.get("creationDate"),
            updated_at=payload.get("lastModifiedDate"),
            metadata={
                "legacy_order_id": payload.get("legacyOrderId"),
                "sales_record_reference": payload.get("salesRecordReference"),
                "line_item_ids": [item.get("lineItemId") for item in payload.get("lineItems") or []],
                "marketplace_status": payload.get("orderFulfillmentStatus"),
            },
        )

    @staticmethod
    def map_order_status(payload: Dict[str, Any]) -> OrderStatus:
        if payload.get("orderPaymentStatus") == "FULLY_REFUNDED":
            return OrderStatus.refunded
        if (payload.get("cancelStatus") or {}).get("cancelState") == "CANCELED":
            return OrderStatus.cancelled
        return ORDER_STATUS_MAP.get(payload.get("orderFulfillmentStatus"), OrderStatus.pending)

    @staticmethod
    def map_carrier(carrier: Optional[str]) -> str:
        return CARRIER_MAP.get(carrier or "", "OTHER")
