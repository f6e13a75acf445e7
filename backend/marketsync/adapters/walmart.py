"""Walmart Marketplace API adapter.

Walmart issues short-lived client-credentials tokens; every call also carries
``WM_SVC.NAME`` and a fresh ``WM_QOS.CORRELATION_ID``. Item writes go through
the asynchronous ``MP_ITEM`` feed, so ``create_listing`` returns a pending
listing keyed by SKU together with the feed id.
"""
from __future__ import annotations

import time
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

import httpx

from marketsync.adapters.http import CachedToken, MarketplaceHttpClient, first_error_message
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


ORDER_STATUS_MAP = {
    "Created": OrderStatus.pending,
    "Acknowledged": OrderStatus.processing,
    "Shipped": OrderStatus.shipped,
    "Delivered": OrderStatus.delivered,
    "Cancelled": OrderStatus.cancelled,
    "Refund": OrderStatus.refunded,
}

CARRIER_MAP = {
    "USPS": "USPS",
    "UPS": "UPS",
    "FedEx": "FedEx",
    "FEDEX": "FedEx",
    "DHL": "DHL",
    "OnTrac": "OnTrac",
}


def extract_walmart_error(body: Any) -> Optional[str]:
    """Walmart nests errors as ``{"errors": {"error": [...]}}`` on most endpoints."""
    if isinstance(body, dict):
        errors = body.get("errors")
        if isinstance(errors, dict):
            errors = errors.get("error")
        if isinstance(errors, list) and errors and isinstance(errors[0], dict):
            first = errors[0]
            return first.get("description") or first.get("info") or first.get("code")
    return first_error_message(body)


def _epoch_ms(dt: datetime) -> int:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


def _from_epoch_ms(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    if isinstance(value, str) and not value.isdigit():
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    return value if isinstance(value, list) else [value]


class WalmartAdapter:
    marketplace = "walmart"

    def __init__(
        self,
        credentials: Dict[str, Any],
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.credentials = credentials
        self.service_name = credentials.get("service_name") or settings.WALMART_SERVICE_NAME
        self.http = MarketplaceHttpClient(
            self.marketplace,
            credentials.get("api_base_url") or settings.WALMART_API_BASE_URL,
            extract_message=extract_walmart_error,
            transport=transport,
        )
        self._token: Optional[CachedToken] = None

    def _base_headers(self) -> Dict[str, str]:
        return {
            "WM_SVC.NAME": self.service_name,
            "WM_QOS.CORRELATION_ID": str(uuid.uuid4()),
            "Accept": "application/json",
        }

    async def _access_token(self) -> str:
        if self._token and self._token.is_valid():
            return self._token.value

        headers = self._base_headers()
        headers["Content-Type"] = "application/x-www-form-urlencoded"
        try:
            body = await self.http.request(
                "POST",
                "/v3/token",
                headers=headers,
                data={"grant_type": "client_credentials"},
                auth=httpx.BasicAuth(
                    self.credentials.get("client_id", ""),
                    self.credentials.get("client_secret", ""),
                ),
            )
        except NonRetryableRemoteError as exc:
            raise AuthError(exc.message, status_code=exc.status_code, marketplace=self.marketplace) from exc

        token = (body or {}).get("access_token")
        if not token:
            raise AuthError("Walmart did not return an access token", marketplace=self.marketplace)
        self._token = CachedToken(token, time.time() + int(body.get("expires_in", 900)))
        return token

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        headers = self._base_headers()
        headers["WM_SEC.ACCESS_TOKEN"] = await self._access_token()
        headers["Content-Type"] = "application/json"
        return await self.http.request(method, path, headers=headers, **kwargs)

    async def _submit_item_feed(self, items: List[Dict[str, Any]]) -> Optional[str]:
        response = await self._request(
            "POST",
            "/v3/feeds",
            params={"feedType": "MP_ITEM"},
            json={
                "MPItemFeedHeader": {"version": "4.2", "locale": "en", "sellingChannel": "marketplace"},
                "MPItem": items,
            },
        ) or {}
        return response.get("feedId")

    async def _get_order(self, order_id: str) -> Dict[str, Any]:
        response = await self._request("GET", f"/v3/orders/{order_id}") or {}
        return response.get("order") or response

    async def test_connection(self) -> ConnectionTestResult:
        try:
            await self._request("GET", "/v3/items", params={"limit": 1})
        except (AuthError, NonRetryableRemoteError) as exc:
            return ConnectionTestResult(success=False, message=exc.message)
        return ConnectionTestResult(success=True, message="Connection successful")

    async def list_listings(self, options: PageOptions) -> ListingPage:
        params = {"limit": options.limit, "nextCursor": options.cursor or "*"}
        response = await self._request("GET", "/v3/items", params=params) or {}
        next_cursor = response.get("nextCursor")
        return ListingPage(
            listings=response.get("ItemResponse") or [],
            page_info=PageInfo(
                has_next_page=bool(next_cursor),
                cursor=next_cursor,
                total=response.get("totalItems"),
            ),
        )

    async def create_listing(self, product: ProductSnapshot) -> MarketplaceListing:
        item = self.transform_product_to_marketplace(product)
        sku = item["Orderable"]["sku"]
        feed_id = await self._submit_item_feed([item])
        return MarketplaceListing(listing_id=sku, sku=sku, status="pending", raw={"feed_id": feed_id})

    async def update_listing(self, listing_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
        orderable: Dict[str, Any] = {"sku": listing_id}
        visible: Dict[str, Any] = {}
        if "title" in updates:
            orderable["productName"] = updates["title"]
        if "description" in updates:
            visible["shortDescription"] = updates["description"]
        for key, value in updates.items():
            if key not in ("title", "description"):
                orderable[key] = value
        item: Dict[str, Any] = {"Orderable": orderable}
        if visible:
            item["Visible"] = {"Product": visible}
        feed_id = await self._submit_item_feed([item])
        return {"sku": listing_id, "feed_id": feed_id}

    async def delete_listing(self, listing_id: str) -> bool:
        await self._request("DELETE", f"/v3/items/{listing_id}")
        return True

    async def update_inventory(self, listing_id: str, quantity: int) -> Dict[str, Any]:
        quantity = require_non_negative_quantity(quantity)
        response = await self._request(
            "PUT",
            "/v3/inventory",
            params={"sku": listing_id},
            json={"sku": listing_id, "quantity": {"unit": "EACH", "amount": quantity}},
        )
        return response or {"sku": listing_id, "quantity": quantity}

    async def update_price(self, listing_id: str, price) -> Dict[str, Any]:
        price = require_non_negative_price(price)
        response = await self._request(
            "PUT",
            "/v3/price",
            json={
                "sku": listing_id,
                "pricing": [{
                    "currentPriceType": "BASE",
                    "currentPrice": {"currency": "USD", "amount": float(price)},
                }],
            },
        )
        return response or {"sku": listing_id, "price": format_price(price)}

    async def list_orders(self, query: OrderQuery) -> OrderPage:
        if query.cursor:
            # nextCursor is a ready-made query string ("?limit=...&nextCursor=...")
            response = await self._request("GET", f"/v3/orders{query.cursor}")
        else:
            params: Dict[str, Any] = {"limit": query.limit}
            if query.created_after:
                params["createdStartDate"] = _epoch_ms(query.created_after)
            if query.created_before:
                params["createdEndDate"] = _epoch_ms(query.created_before)
            response = await self._request("GET", "/v3/orders", params=params)

        listing = (response or {}).get("list") or {}
        meta = listing.get("meta") or {}
        elements = (listing.get("elements") or {}).get("order") or []
        next_cursor = meta.get("nextCursor")
        return OrderPage(
            orders=[self.transform_order_from_marketplace(o) for o in elements],
            page_info=PageInfo(
                has_next_page=bool(next_cursor),
                cursor=next_cursor,
                total=meta.get("totalCount"),
            ),
        )

    async def acknowledge_order(self, order_id: str) -> Dict[str, Any]:
        response = await self._request("POST", f"/v3/orders/{order_id}/acknowledge")
        return response or {"success": True, "order_id": order_id}

    async def ship_order(self, order_id: str, shipment: ShipmentRequest) -> Dict[str, Any]:
        lines = shipment.line_items
        if not lines:
            lines = [
                {"line_id": line.get("lineNumber"), "quantity": self._line_quantity(line)}
                for line in self._order_lines(await self._get_order(order_id))
            ]
        shipped_at = _epoch_ms(shipment.shipped_at or datetime.now(timezone.utc))
        carrier = self.map_carrier(shipment.carrier)
        carrier_name = {"carrier": carrier} if carrier != "OTHER" else {"otherCarrier": shipment.carrier or "Other"}

        body = {
            "orderShipment": {
                "orderLines": {
                    "orderLine": [
                        {
                            "lineNumber": str(line.get("line_id")),
                            "orderLineStatuses": {
                                "orderLineStatus": [{
                                    "status": "Shipped",
                                    "statusQuantity": {
                                        "unitOfMeasurement": "EACH",
                                        "amount": str(line.get("quantity", 1)),
                                    },
                                    "trackingInfo": {
                                        "shipDateTime": shipped_at,
                                        "carrierName": carrier_name,
                                        "methodCode": "Standard",
                                        "trackingNumber": shipment.tracking_number,
                                        "trackingURL": shipment.tracking_url,
                                    },
                                }]
                            },
                        }
                        for line in lines
                    ]
                }
            }
        }
        response = await self._request("POST", f"/v3/orders/{order_id}/shipping", json=body)
        return response or {"success": True, "order_id": order_id}

    async def cancel_order(self, order_id: str, reason: str) -> Dict[str, Any]:
        order = await self._get_order(order_id)
        body = {
            "orderCancellation": {
                "orderLines": {
                    "orderLine": [
                        {
                            "lineNumber": line.get("lineNumber"),
                            "orderLineStatuses": {
                                "orderLineStatus": [{
                                    "status": "Cancelled",
                                    "cancellationReason": reason or "CANCEL_BY_SELLER",
                                    "statusQuantity": {
                                        "unitOfMeasurement": "EACH",
                                        "amount": str(self._line_quantity(line)),
                                    },
                                }]
                            },
                        }
                        for line in self._order_lines(order)
                    ]
                }
            }
        }
        response = await self._request("POST", f"/v3/orders/{order_id}/cancel", json=body)
        return response or {"success": True, "order_id": order_id}

    async def refund_order(self, order_id: str, refund: RefundRequest) -> Dict[str, Any]:
        items = refund.items
        if not items:
            order_lines = self._order_lines(await self._get_order(order_id))
            if refund.amount is not None and order_lines:
                items = [{"line_id": order_lines[0].get("lineNumber"), "amount": refund.amount}]
            else:
                items = [
                    {"line_id": line.get("lineNumber"), "amount": self._line_charges(line)[0]}
                    for line in order_lines
                ]

        body = {
            "orderRefund": {
                "purchaseOrderId": order_id,
                "orderLines": {
                    "orderLine": [
                        {
                            "lineNumber": str(item.get("line_id")),
                            "refunds": {
                                "refund": [{
                                    "refundComments": refund.comment or "",
                                    "refundCharges": {
                                        "refundCharge": [{
                                            "refundReason": refund.reason or "CustomerChangedMind",
                                            "charge": {
                                                "chargeType": "PRODUCT",
                                                "chargeName": "Item Price",
                                                "chargeAmount": {
                                                    "currency": refund.currency,
                                                    "amount": -float(require_non_negative_price(item.get("amount"))),
                                                },
                                            },
                                        }]
                                    },
                                }]
                            },
                        }
                        for item in items
                    ]
                },
            }
        }
        response = await self._request("POST", f"/v3/orders/{order_id}/refund", json=body)
        return response or {"success": True, "order_id": order_id}

    @staticmethod
    def _order_lines(order: Dict[str, Any]) -> List[Dict[str, Any]]:
        return _as_list((order.get("orderLines") or {}).get("orderLine"))

    @staticmethod
    def _line_quantity(line: Dict[str, Any]) -> int:
        return int(to_decimal((line.get("orderLineQuantity") or {}).get("amount"), default=Decimal("1")))

    @staticmethod
    def _line_charges(line: Dict[str, Any]) -> tuple:
        """Return (product, shipping, tax) totals for one order line."""
        product = shipping = tax = Decimal("0")
        for charge in _as_list((line.get("charges") or {}).get("charge")):
            amount = to_decimal((charge.get("chargeAmount") or {}).get("amount"))
            tax += to_decimal(((charge.get("tax") or {}).get("taxAmount") or {}).get("amount"))
            if charge.get("chargeType") == "SHIPPING":
                shipping += amount
            else:
                product += amount
        return product, shipping, tax

    def transform_product_to_marketplace(self, product: ProductSnapshot) -> Dict[str, Any]:
        _, price = require_publishable(product)
        sku = product.sku or product.handle
        return {
            "Orderable": {
                "sku": sku,
                "productIdentifiers": {"productIdType": "SKU", "productId": sku},
                "productName": product.title,
                "brand": product.vendor or "Unbranded",
                "price": float(price),
                "ShippingWeight": 1,
            },
            "Visible": {
                "Product": {
                    "shortDescription": product.description or product.title,
                    "mainImageUrl": product.images[0] if product.images else None,
                    "productSecondaryImageURL": list(product.images[1:]),
                    "keyFeatures": list(product.tags[:5]),
                }
            },
        }

    def transform_order_from_marketplace(self, payload: Dict[str, Any]) -> NormalizedOrder:
        purchase_order_id = require_order_id(payload, "purchaseOrderId", self.marketplace)
        shipping_info = payload.get("shippingInfo") or {}
        postal = shipping_info.get("postalAddress") or {}
        lines = self._order_lines(payload)

        subtotal = total_shipping = total_tax = Decimal("0")
        currency = "USD"
        line_items: List[LineItem] = []
        statuses: List[str] = []
        for line in lines:
            product, shipping, tax = self._line_charges(line)
            subtotal += product
            total_shipping += shipping
            total_tax += tax
            for charge in _as_list((line.get("charges") or {}).get("charge")):
                currency = (charge.get("chargeAmount") or {}).get("currency") or currency
            statuses.extend(
                status.get("status")
                for status in _as_list((line.get("orderLineStatuses") or {}).get("orderLineStatus"))
            )
            item = line.get("item") or {}
            line_items.append(
                LineItem(
                    title=item.get("productName"),
                    quantity=self._line_quantity(line),
                    sku=item.get("sku"),
                    price=product,
                )
            )

        status_value = statuses[0] if statuses else None
        return NormalizedOrder(
            marketplace_order_id=purchase_order_id,
            order_number=payload.get("customerOrderId"),
            source=OrderSource.walmart,
            status=self.map_order_status(status_value),
            financial_status="paid",
            fulfillment_status=status_value,
            currency=currency,
            subtotal=subtotal,
            total_tax=total_tax,
            total_shipping=total_shipping,
            total=subtotal + total_tax + total_shipping,
            customer_email=payload.get("customerEmailId"),
            customer_name=postal.get("name"),
            shipping_address=Address(
                name=postal.get("name"),
                address1=postal.get("address1"),
                address2=postal.get("address2"),
                city=postal.get("city"),
                province=postal.get("state"),
                country=postal.get("country"),
                zip=postal.get("postalCode"),
                phone=shipping_info.get("phone"),
            ) if postal else None,
            line_items=line_items,
            ordered_at=_from_epoch_ms(payload.get("orderDate")),
            metadata={
                "ship_method": shipping_info.get("methodCode"),
                "line_numbers": [line.get("lineNumber") for line in lines],
                "marketplace_status": status_value,
            },
        )

    @staticmethod
    def map_order_status(status: Optional[str]) -> OrderStatus:
        return ORDER_STATUS_MAP.get(status, OrderStatus.pending)

    @staticmethod
    def map_carrier(carrier: Optional[str]) -> str:
        return CARRIER_MAP.get(carrier or "", "OTHER")
