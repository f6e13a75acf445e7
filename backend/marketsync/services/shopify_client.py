"""Shopify Admin REST client for the shop side of the hub.

Products are paged with ``since_id`` (ascending ids), which needs no Link
header parsing. Errors go through the same translation as the marketplace
adapters; Shopify reports them as ``{"errors": ...}`` where the value is a
string, a list, or a ``field -> [messages]`` mapping.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional

import httpx

from marketsync.adapters.http import MarketplaceHttpClient, first_error_message
from marketsync.config import settings
from marketsync.errors import NonRetryableRemoteError, ValidationError
from marketsync.models_sqlalchemy.models import Shop
from marketsync.utils.crypto import decrypt


SHOPIFY = "shopify"

# Fulfillment orders that can still take a fulfillment.
_FULFILLABLE_STATUSES = ("open", "in_progress")


def shopify_error_message(body: Any) -> Optional[str]:
    if not isinstance(body, dict):
        return None
    errors = body.get("errors")
    if isinstance(errors, str) and errors:
        return errors
    if isinstance(errors, dict) and errors:
        parts = []
        for field, messages in errors.items():
            if isinstance(messages, list):
                messages = ", ".join(str(m) for m in messages)
            parts.append(f"{field} {messages}")
        return "; ".join(parts)
    if isinstance(errors, list) and errors and all(isinstance(e, str) for e in errors):
        return "; ".join(errors)
    return first_error_message(body)


class ShopifyClient:

    def __init__(
        self,
        shop_domain: str,
        access_token: str,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.shop_domain = shop_domain
        self.access_token = access_token
        self.http = MarketplaceHttpClient(
            SHOPIFY,
            f"https://{shop_domain}/admin/api/{settings.SHOPIFY_API_VERSION}",
            extract_message=shopify_error_message,
            transport=transport,
        )

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        headers = {
            "X-Shopify-Access-Token": self.access_token,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        return await self.http.request(method, path, headers=headers, **kwargs) or {}

    async def list_products(self, *, limit: int = 250, since_id: Optional[str] = None) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {"limit": limit}
        if since_id is not None:
            params["since_id"] = since_id
        body = await self._request("GET", "/products.json", params=params)
        return body.get("products") or []

    async def get_product(self, product_id: str) -> Dict[str, Any]:
        body = await self._request("GET", f"/products/{product_id}.json")
        product = body.get("product")
        if not isinstance(product, dict) or product.get("id") is None:
            raise NonRetryableRemoteError(
                f"Shopify returned no product for {product_id}",
                code="malformed_product",
                marketplace=SHOPIFY,
            )
        return product

    async def create_fulfillment(
        self,
        order_id: str,
        *,
        tracking_number: Optional[str] = None,
        tracking_url: Optional[str] = None,
        carrier: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Fulfil every open fulfillment order of ``order_id`` with one tracking number."""
        body = await self._request("GET", f"/orders/{order_id}/fulfillment_orders.json")
        open_orders = [
            fo for fo in body.get("fulfillment_orders") or []
            if fo.get("status") in _FULFILLABLE_STATUSES
        ]
        if not open_orders:
            raise NonRetryableRemoteError(
                f"No open fulfillment order found for Shopify order {order_id}",
                code="no_open_fulfillment",
                marketplace=SHOPIFY,
            )

        tracking_info = {"number": tracking_number, "url": tracking_url, "company": carrier}
        payload = {
            "fulfillment": {
                "line_items_by_fulfillment_order": [{"fulfillment_order_id": fo["id"]} for fo in open_orders],
                "tracking_info": {k: v for k, v in tracking_info.items() if v is not None},
                "notify_customer": False,
            }
        }
        created = await self._request("POST", "/fulfillments.json", json=payload)
        return created.get("fulfillment") or {}


def shopify_client_for(shop: Shop) -> Optional[ShopifyClient]:
    """Client for ``shop``, or ``None`` when no access token has been stored."""
    if not shop.access_token:
        return None
    try:
        token = decrypt(shop.access_token)
    except ValueError as exc:
        raise ValidationError(f"Stored Shopify access token is unreadable: {exc}") from exc
    return ShopifyClient(shop.shop_domain, token)
