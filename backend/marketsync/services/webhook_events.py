"""Primary-platform webhook events.

Each topic handler receives the decoded payload and the receiving shop. Order
events go through the stale-event guard keyed on the payload's
``updated_at`` (falling back to receipt time); product and inventory events
refresh the product cache and push affected listings back to pending.
"""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from marketsync.errors import ValidationError
from marketsync.models_sqlalchemy.models import (
    ListingStatus,
    Order,
    OrderSource,
    OrderStatus,
    Shop,
    SyncStatus,
)
from marketsync.services import sync_state
from marketsync.services.listing_service import listing_service
from marketsync.services.product_cache import product_cache
from marketsync.utils.logger import logger
from marketsync.utils.timeutil import parse_timestamp, utc_now


def derive_order_status(payload: Dict[str, Any]) -> OrderStatus:
    if payload.get("cancelled_at"):
        return OrderStatus.cancelled
    if payload.get("fulfillment_status") == "fulfilled":
        return OrderStatus.shipped
    if payload.get("financial_status") == "refunded":
        return OrderStatus.refunded
    if payload.get("financial_status") == "paid":
        return OrderStatus.processing
    return OrderStatus.pending


def _amount(value) -> Decimal:
    if value in (None, ""):
        return Decimal("0")
    return Decimal(str(value))


def _address(raw: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not raw:
        return None
    return {
        "name": raw.get("name"),
        "address1": raw.get("address1"),
        "address2": raw.get("address2"),
        "city": raw.get("city"),
        "province": raw.get("province"),
        "country": raw.get("country"),
        "zip": raw.get("zip"),
        "phone": raw.get("phone"),
    }


def _customer_name(payload: Dict[str, Any]) -> Optional[str]:
    customer = payload.get("customer") or {}
    name = f"{customer.get('first_name') or ''} {customer.get('last_name') or ''}".strip()
    return name or None


class WebhookEventProcessor:

    def __init__(self):
        self.handlers: Dict[str, Callable[[Session, Shop, Dict[str, Any], datetime], Dict[str, Any]]] = {
            "orders/create": self.order_created,
            "orders/updated": self.order_updated,
            "orders/fulfilled": self.order_fulfilled,
            "orders/cancelled": self.order_cancelled,
            "products/update": self.product_updated,
            "products/delete": self.product_deleted,
            "inventory/update": self.inventory_updated,
            "app/uninstalled": self.app_uninstalled,
        }

    def handle(
        self,
        db: Session,
        shop_domain: str,
        topic: str,
        payload: Dict[str, Any],
        received_at: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        handler = self.handlers.get(topic)
        if handler is None:
            raise ValidationError(f"Unsupported webhook topic: {topic}")

        shop = db.query(Shop).filter(Shop.shop_domain == shop_domain).first()
        if shop is None:
            logger.warning(f"Webhook {topic} for unknown shop {shop_domain}; ignoring")
            return {"status": "ignored", "reason": "unknown shop"}

        logger.info(f"Webhook {topic} for shop={shop_domain} id={payload.get('id')}")
        return handler(db, shop, payload, received_at or utc_now())

    def _find_order(self, db: Session, shop: Shop, payload: Dict[str, Any]) -> Optional[Order]:
        return (
            db.query(Order)
            .filter(Order.shop_id == shop.id, Order.source_order_id == str(payload["id"]))
            .first()
        )

    def _event_time(self, payload: Dict[str, Any], received_at: datetime) -> datetime:
        return parse_timestamp(payload.get("updated_at")) or received_at

    def _apply_order_payload(self, order: Order, payload: Dict[str, Any]) -> None:
        shipping = (payload.get("total_shipping_price_set") or {}).get("shop_money") or {}
        order.order_number = str(payload.get("order_number") or payload.get("name") or "") or None
        order.source = OrderSource.shopify
        order.status = derive_order_status(payload)
        order.financial_status = payload.get("financial_status")
        order.fulfillment_status = payload.get("fulfillment_status")
        order.currency = payload.get("currency") or "USD"
        order.subtotal = _amount(payload.get("subtotal_price"))
        order.total_tax = _amount(payload.get("total_tax"))
        order.total_shipping = _amount(shipping.get("amount"))
        order.total_discount = _amount(payload.get("total_discounts"))
        order.total = _amount(payload.get("total_price"))
        order.customer_email = payload.get("email")
        order.customer_name = _customer_name(payload)
        order.shipping_address = _address(payload.get("shipping_address"))
        order.billing_address = _address(payload.get("billing_address"))
        order.line_items = [
            {
                "title": item.get("title"),
                "quantity": int(item.get("quantity") or 0),
                "sku": item.get("sku"),
                "price": str(item["price"]) if item.get("price") is not None else None,
            }
            for item in payload.get("line_items") or []
        ]
        order.ordered_at = parse_timestamp(payload.get("created_at"))

    def _apply_guarded(
        self,
        db: Session,
        shop: Shop,
        payload: Dict[str, Any],
        received_at: datetime,
        mutate: Callable[[Order], None],
        *,
        create_missing: bool,
    ) -> Dict[str, Any]:
        event_at = self._event_time(payload, received_at)
        order = self._find_order(db, shop, payload)

        if order is None:
            if not create_missing:
                return {"status": "ignored", "reason": "unknown order"}
            order = Order(shop_id=shop.id, source_order_id=str(payload["id"]), extra={})
            mutate(order)
            order.sync_status = SyncStatus.synced
            order.last_sync_at = utc_now()
            order.last_event_at = event_at
            db.add(order)
            db.commit()
            return {"status": "created", "order_id": order.id}

        if not sync_state.should_apply_event(order.last_event_at, event_at):
            logger.info(
                f"Discarding stale event for order id={order.id}: "
                f"event_at={event_at.isoformat()} last_event_at={order.last_event_at}"
            )
            return {"status": "stale", "order_id": order.id}

        mutate(order)
        order.last_event_at = event_at
        order.last_sync_at = utc_now()
        db.commit()
        return {"status": "updated", "order_id": order.id}

    def order_created(self, db: Session, shop: Shop, payload: Dict[str, Any], received_at: datetime) -> Dict[str, Any]:
        return self._apply_guarded(db, shop, payload, received_at, lambda o: self._apply_order_payload(o, payload), create_missing=True)

    def order_updated(self, db: Session, shop: Shop, payload: Dict[str, Any], received_at: datetime) -> Dict[str, Any]:
        return self._apply_guarded(db, shop, payload, received_at, lambda o: self._apply_order_payload(o, payload), create_missing=True)

    def order_fulfilled(self, db: Session, shop: Shop, payload: Dict[str, Any], received_at: datetime) -> Dict[str, Any]:
        def mutate(order: Order) -> None:
            fulfillment = (payload.get("fulfillments") or [{}])[0] or {}
            order.status = OrderStatus.shipped
            order.fulfillment_status = "fulfilled"
            order.tracking_number = fulfillment.get("tracking_number")
            order.tracking_url = fulfillment.get("tracking_url")
            order.carrier = fulfillment.get("tracking_company")

        return self._apply_guarded(db, shop, payload, received_at, mutate, create_missing=False)

    def order_cancelled(self, db: Session, shop: Shop, payload: Dict[str, Any], received_at: datetime) -> Dict[str, Any]:
        def mutate(order: Order) -> None:
            order.status = OrderStatus.cancelled
            order.financial_status = payload.get("financial_status", order.financial_status)
            order.extra = {**(order.extra or {}), "cancel_reason": payload.get("cancel_reason")}

        return self._apply_guarded(db, shop, payload, received_at, mutate, create_missing=False)

    def product_updated(self, db: Session, shop: Shop, payload: Dict[str, Any], received_at: datetime) -> Dict[str, Any]:
        product = product_cache.upsert_product(db, shop.id, payload)
        requeued = listing_service.refresh_product_listings(db, shop.id, product)
        db.commit()
        return {"status": "updated", "product_id": product.external_id, "listings_requeued": requeued}

    def product_deleted(self, db: Session, shop: Shop, payload: Dict[str, Any], received_at: datetime) -> Dict[str, Any]:
        external_id = str(payload["id"])
        product_cache.mark_deleted(db, shop.id, external_id)
        withdrawn = 0
        for listing in listing_service.listings_for_product(db, shop.id, external_id):
            if listing.status == ListingStatus.inactive:
                continue
            # The next sync withdraws the remote copy.
            listing.status = ListingStatus.inactive
            sync_state.requeue(listing)
            withdrawn += 1
        db.commit()
        return {"status": "updated", "product_id": external_id, "listings_withdrawn": withdrawn}

    def inventory_updated(self, db: Session, shop: Shop, payload: Dict[str, Any], received_at: datetime) -> Dict[str, Any]:
        inventory_item_id = payload.get("inventory_item_id")
        if inventory_item_id is None or payload.get("available") is None:
            raise ValidationError("inventory_item_id and available are required")
        # Oversold items report negative stock; it is stored as reported and
        # the next sync rejects publishing it until stock is back.
        quantity = int(payload["available"])

        requeued = 0
        for product, variant in product_cache.set_inventory(db, shop.id, str(inventory_item_id), quantity):
            for listing in listing_service.listings_for_product(db, shop.id, product.external_id):
                matches_variant = listing.source_variant_id in (None, variant.get("id"))
                if not matches_variant or listing.status == ListingStatus.inactive or listing.inventory == quantity:
                    continue
                listing.inventory = quantity
                if listing.sync_status in (SyncStatus.synced, SyncStatus.error):
                    sync_state.requeue(listing)
                    requeued += 1
        db.commit()
        return {"status": "updated", "inventory_item_id": str(inventory_item_id), "listings_requeued": requeued}

    def app_uninstalled(self, db: Session, shop: Shop, payload: Dict[str, Any], received_at: datetime) -> Dict[str, Any]:
        shop.is_active = False
        shop.uninstalled_at = received_at
        db.commit()
        return {"status": "uninstalled", "shop_domain": shop.shop_domain}


webhook_processor = WebhookEventProcessor()
