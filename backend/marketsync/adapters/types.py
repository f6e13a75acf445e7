"""Value types crossing the adapter boundary."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple

from marketsync.errors import NonRetryableRemoteError, ValidationError


@dataclass
class ConnectionTestResult:
    success: bool
    message: str


@dataclass
class PageOptions:
    """Continuation for paged reads.

    ``cursor`` is whatever the previous page returned in ``PageInfo.cursor``;
    callers never interpret it.
    """

    cursor: Optional[str] = None
    limit: int = 50


@dataclass
class PageInfo:
    has_next_page: bool
    cursor: Optional[str] = None
    total: Optional[int] = None


@dataclass
class ListingPage:
    listings: List[Dict[str, Any]]
    page_info: PageInfo


@dataclass
class OrderQuery:
    created_after: Optional[datetime] = None
    created_before: Optional[datetime] = None
    cursor: Optional[str] = None
    limit: int = 50


@dataclass
class OrderPage:
    orders: list  # List[NormalizedOrder]
    page_info: PageInfo


@dataclass
class ProductSnapshot:
    """Everything an adapter needs to publish one product variant."""

    source_product_id: str
    title: str
    sku: str
    price: Decimal
    inventory_quantity: int = 0
    description: Optional[str] = None
    vendor: Optional[str] = None
    product_type: Optional[str] = None
    handle: Optional[str] = None
    source_variant_id: Optional[str] = None
    compare_at_price: Optional[Decimal] = None
    tags: List[str] = field(default_factory=list)
    images: List[str] = field(default_factory=list)


@dataclass
class MarketplaceListing:
    listing_id: str
    sku: Optional[str] = None
    status: str = "active"
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ShipmentRequest:
    tracking_number: str
    carrier: Optional[str] = None
    tracking_url: Optional[str] = None
    # Marketplace line references, e.g. [{"line_id": "...", "quantity": 1}]
    line_items: List[Dict[str, Any]] = field(default_factory=list)
    shipped_at: Optional[datetime] = None


@dataclass
class RefundRequest:
    amount: Optional[Decimal] = None
    reason: Optional[str] = None
    comment: Optional[str] = None
    items: List[Dict[str, Any]] = field(default_factory=list)
    currency: str = "USD"


def to_decimal(value: Any, default: Optional[Decimal] = Decimal("0")) -> Optional[Decimal]:
    if value is None or value == "":
        return default
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return default


def require_non_negative_quantity(quantity: int) -> int:
    if quantity is None or int(quantity) != quantity:
        raise ValidationError(f"Quantity must be a whole number, got {quantity!r}")
    if quantity < 0:
        raise ValidationError(f"Quantity must not be negative, got {quantity}")
    return int(quantity)


def require_non_negative_price(price: Any) -> Decimal:
    value = to_decimal(price, default=None)
    if value is None:
        raise ValidationError(f"Price must be a number, got {price!r}")
    if value < 0:
        raise ValidationError(f"Price must not be negative, got {value}")
    return value


def format_price(price: Decimal) -> str:
    return str(price.quantize(Decimal("0.01")))


def require_publishable(product: ProductSnapshot) -> Tuple[int, Decimal]:
    """Validated ``(quantity, price)`` of a snapshot about to be published."""
    return require_non_negative_quantity(product.inventory_quantity), require_non_negative_price(product.price)


def require_order_id(payload: Any, key: str, marketplace: str) -> str:
    """``payload[key]`` as a string; a marketplace order without its id is a rejected payload."""
    value = payload.get(key) if isinstance(payload, dict) else None
    if value is None or value == "":
        keys = sorted(payload) if isinstance(payload, dict) else type(payload).__name__
        raise NonRetryableRemoteError(
            f"{marketplace} order payload has no {key} (keys: {keys})",
            code="malformed_order",
            marketplace=marketplace,
        )
    return str(value)
