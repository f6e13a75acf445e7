"""Marketplace kind -> adapter factory.

Connections never pick an adapter class themselves; they go through
:func:`get_adapter`, which decrypts the stored credential bundle, checks the
required keys and builds the adapter registered for the connection's kind.
"""
from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional

import httpx

from marketsync.adapters.amazon import AmazonAdapter
from marketsync.adapters.contract import MarketplaceAdapter
from marketsync.adapters.ebay import EbayAdapter
from marketsync.adapters.etsy import EtsyAdapter
from marketsync.adapters.walmart import WalmartAdapter
from marketsync.errors import ValidationError
from marketsync.models_sqlalchemy.models import MarketplaceConnection, MarketplaceKind
from marketsync.utils.crypto import decrypt_credentials


AdapterFactory = Callable[..., MarketplaceAdapter]


SUPPORTED_MARKETPLACES: List[Dict[str, Any]] = [
    {
        "id": MarketplaceKind.amazon.value,
        "name": "Amazon",
        "description": "Sell on Amazon marketplace",
        "features": ["products", "orders", "inventory", "fulfillment"],
        "required_credentials": ["seller_id", "refresh_token", "client_id", "client_secret"],
    },
    {
        "id": MarketplaceKind.ebay.value,
        "name": "eBay",
        "description": "Sell on eBay marketplace",
        "features": ["products", "orders", "inventory", "fulfillment", "refunds"],
        "required_credentials": ["client_id", "client_secret", "refresh_token"],
    },
    {
        "id": MarketplaceKind.walmart.value,
        "name": "Walmart",
        "description": "Sell on Walmart marketplace",
        "features": ["products", "orders", "inventory", "fulfillment", "refunds"],
        "required_credentials": ["client_id", "client_secret"],
    },
    {
        "id": MarketplaceKind.target.value,
        "name": "Target Plus",
        "description": "Sell on Target Plus marketplace",
        "features": ["products", "orders", "inventory"],
        "required_credentials": ["api_key", "api_secret"],
    },
    {
        "id": MarketplaceKind.etsy.value,
        "name": "Etsy",
        "description": "Sell on Etsy marketplace",
        "features": ["products", "orders", "inventory", "fulfillment"],
        "required_credentials": ["api_key", "access_token", "shop_id"],
    },
]

_REQUIRED_CREDENTIALS = {m["id"]: m["required_credentials"] for m in SUPPORTED_MARKETPLACES}
_DISPLAY_NAMES = {m["id"]: m["name"] for m in SUPPORTED_MARKETPLACES}


class AdapterRegistry:
    def __init__(self):
        self._factories: Dict[str, AdapterFactory] = {}

    def register(self, kind, factory: AdapterFactory) -> None:
        key = MarketplaceKind(kind).value
        if key in self._factories:
            raise ValueError(f"Adapter already registered for {key}")
        self._factories[key] = factory

    def get(self, kind) -> AdapterFactory:
        key = kind.value if isinstance(kind, MarketplaceKind) else str(kind)
        factory = self._factories.get(key)
        if factory is None:
            name = _DISPLAY_NAMES.get(key)
            if name:
                raise ValidationError(f"{name} integration not yet supported", code="unsupported_marketplace")
            raise ValidationError(f"Unknown marketplace: {key}", code="unsupported_marketplace")
        return factory

    def supported(self) -> List[str]:
        return sorted(self._factories)

    def create(
        self,
        connection: MarketplaceConnection,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> MarketplaceAdapter:
        factory = self.get(connection.marketplace)
        try:
            credentials = decrypt_credentials(connection.credentials)
        except ValueError as exc:
            raise ValidationError(f"Stored credentials are unreadable: {exc}") from exc

        missing = missing_credentials(connection.marketplace, credentials)
        if missing:
            raise ValidationError(f"Missing required credentials: {', '.join(missing)}")

        if transport is not None:
            return factory(credentials, transport=transport)
        return factory(credentials)


def missing_credentials(kind, credentials: Dict[str, Any]) -> List[str]:
    key = MarketplaceKind(kind).value
    return [name for name in _REQUIRED_CREDENTIALS.get(key, []) if not credentials.get(name)]


def supported_marketplaces() -> List[Dict[str, Any]]:
    available = set(registry.supported())
    return [{**meta, "available": meta["id"] in available} for meta in SUPPORTED_MARKETPLACES]


registry = AdapterRegistry()
registry.register(MarketplaceKind.amazon, AmazonAdapter)
registry.register(MarketplaceKind.ebay, EbayAdapter)
registry.register(MarketplaceKind.walmart, WalmartAdapter)
registry.register(MarketplaceKind.etsy, EtsyAdapter)


def get_adapter(connection: MarketplaceConnection) -> MarketplaceAdapter:
    return registry.create(connection)
