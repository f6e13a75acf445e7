"""Orders: marketplace import, remote fulfilment actions and stats.

Marketplace actions (ship / cancel / refund) on an order hold the order's
sync lease for the duration of the adapter call, exactly like listing syncs.
Orders coming from the primary platform carry no connection; fulfilling one
pushes the fulfillment to Shopify when the shop has an access token, and
their cancellations and refunds are local only.
"""
from __future__ import annotations

import asyncio
from datetime import datetime
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from marketsync.adapters.registry import get_adapter
from marketsync.adapters.types import OrderQuery, RefundRequest, ShipmentRequest
from marketsync.config import settings
from marketsync.errors import (
    InvalidTransitionError,
    MarketsyncError,
    NotFoundError,
    TransientRemoteError,
    ValidationError,
)
from marketsync.models.order import (
    CancelRequest,
    FulfillRequest,
    NormalizedOrder,
    OrderImportResponse,
    RefundBody,
)
from marketsync.models_sqlalchemy.models import (
    ConnectionStatus,
    MarketplaceConnection,
    Order,
    OrderSource,
    OrderStatus,
    Shop,
    SyncStatus,
)
from marketsync.services import leases, sync_state
from marketsync.services.shopify_client import shopify_client_for
from marketsync.utils.logger import logger
from marketsync.utils.timeutil import to_utc, utc_now


MAX_IMPORT_PAGES = 50

# Statuses an order may be in for each local action.
_FULFILLABLE = {OrderStatus.pending, OrderStatus.processing}
_CANCELLABLE = {OrderStatus.pending, OrderStatus.processing}
_REFUNDABLE = {OrderStatus.processing, OrderStatus.shipped, OrderStatus.delivered}


def _money(value) -> Optional[Decimal]:
    return Decimal(str(value)) if value is not None else None


def apply_normalized_order(order: Order, normalized: NormalizedOrder) -> None:
    order.marketplace_order_id = normalized.marketplace_order_id
    order.order_number = normalized.order_number
    order.source = normalized.source
    order.status = normalized.status
    order.financial_status = normalized.financial_status
    order.fulfillment_status = normalized.fulfillment_status
    order.currency = normalized.currency
    order.subtotal = _money(normalized.subtotal)
    order.total_tax = _money(normalized.total_tax)
    order.total_shipping = _money(normalized.total_shipping)
    order.total_discount = _money(normalized.total_discount)
    order.total = _money(normalized.total)
    order.customer_email = normalized.customer_email
    order.customer_name = normalized.customer_name
    order.shipping_address = normalized.shipping_address.model_dump() if normalized.shipping_address else None
    order.billing_address = normalized.billing_address.model_dump() if normalized.billing_address else None
    order.line_items = [item.model_dump(mode="json") for item in normalized.line_items]
    order.ordered_at = normalized.ordered_at
    order.extra = {**(order.extra or {}), **normalized.metadata}


class OrderService:

    def __init__(self, adapter_factory=get_adapter, shopify_factory=shopify_client_for):
        self.adapter_factory = adapter_factory
        self.shopify_factory = shopify_factory

    def list_orders(
        self,
        db: Session,
        shop_id: str,
        *,
        status: Optional[OrderStatus] = None,
        source: Optional[OrderSource] = None,
        connection_id: Optional[str] = None,
        page: int = 1,
        limit: int = 50,
    ) -> Tuple[List[Order], int]:
        query = db.query(Order).filter(Order.shop_id == shop_id)
        if status is not None:
            query = query.filter(Order.status == status)
        if source is not None:
            query = query.filter(Order.source == source)
        if connection_id is not None:
            query = query.filter(Order.connection_id == connection_id)
        total = query.count()
        orders = (
            query.order_by(Order.ordered_at.desc(), Order.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return orders, total

    def get_order(self, db: Session, shop_id: str, order_id: str) -> Order:
        order = db.query(Order).filter(Order.id == order_id, Order.shop_id == shop_id).first()
        if order is None:
            raise NotFoundError("Order not found")
        return order

    def upsert_marketplace_order(
        self,
        db: Session,
        connection: MarketplaceConnection,
        normalized: NormalizedOrder,
        *,
        event_at: Optional[datetime] = None,
    ) -> str:
        """Insert or update one imported order; returns created/updated/skipped.

        Does not commit.
        """
        event_at = to_utc(event_at or normalized.updated_at or normalized.ordered_at) or utc_now()
        order = (
            db.query(Order)
            .filter(
                Order.connection_id == connection.id,
                Order.marketplace_order_id == normalized.marketplace_order_id,
            )
            .first()
        )
        if order is None:
            order = Order(shop_id=connection.shop_id, connection_id=connection.id)
            apply_normalized_order(order, normalized)
            # Imported from the marketplace, so local and remote agree.
            order.sync_status = SyncStatus.synced
            order.last_sync_at = utc_now()
            order.last_event_at = event_at
            db.add(order)
            return "created"

        if not sync_state.should_apply_event(order.last_event_at, event_at):
            return "skipped"
        if sync_state.lease_is_live(order):
            # A local action is mid-flight; the next import picks the change up.
            return "skipped"
        apply_normalized_order(order, normalized)
        order.last_event_at = event_at
        return "updated"

    async def import_orders(
        self,
        db: Session,
        shop_id: str,
        connection_id: str,
        *,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> OrderImportResponse:
        connection = (
            db.query(MarketplaceConnection)
            .filter(MarketplaceConnection.id == connection_id, MarketplaceConnection.shop_id == shop_id)
            .first()
        )
        if connection is None:
            raise NotFoundError("Connection not found")
        if not connection.is_active or connection.status != ConnectionStatus.active:
            raise ValidationError("Connection is not active")

        adapter = self.adapter_factory(connection)
        counts = {"created": 0, "updated": 0, "skipped": 0}
        fetched = 0
        cursor: Optional[str] = None

        for _ in range(MAX_IMPORT_PAGES):
            query = OrderQuery(created_after=start_date, created_before=end_date, cursor=cursor)
            try:
                page = await asyncio.wait_for(adapter.list_orders(query), settings.ADAPTER_TIMEOUT_SECONDS)
            except asyncio.TimeoutError as exc:
                raise TransientRemoteError(
                    "list_orders timed out", marketplace=connection.marketplace.value
                ) from exc

            for normalized in page.orders:
                fetched += 1
                counts[self.upsert_marketplace_order(db, connection, normalized)] += 1
            db.commit()

            if not page.page_info.has_next_page or not page.page_info.cursor:
                break
            cursor = page.page_info.cursor
        else:
            logger.warning(f"Order import for connection={connection_id} stopped after {MAX_IMPORT_PAGES} pages")

        connection.last_sync_at = utc_now()
        db.commit()
        logger.info(
            f"Imported orders connection={connection_id} fetched={fetched} "
            f"created={counts['created']} updated={counts['updated']} skipped={counts['skipped']}"
        )
        return OrderImportResponse(
            connection_id=connection.id,
            marketplace=connection.marketplace.value,
            fetched=fetched,
            **counts,
        )

    def _adapter_for(self, order: Order):
        connection = order.connection
        if connection is None or not connection.is_active:
            raise ValidationError("Order's marketplace connection is no longer active")
        return self.adapter_factory(connection)

    async def _remote_action(
        self,
        db: Session,
        order: Order,
        call: Callable[[], Awaitable[Any]],
        description: str,
    ) -> None:
        """Run one adapter call for ``order`` under its lease and record the outcome.

        Failures are recorded on the order as final ``error`` and re-raised;
        nothing retries an order action in the background, so a retryable
        failure is repeated by calling the action again.
        """
        order, token = leases.acquire_lease(db, Order, order.id)
        try:
            await asyncio.wait_for(call(), settings.ADAPTER_TIMEOUT_SECONDS)
        except asyncio.TimeoutError as exc:
            error = TransientRemoteError(f"{description} timed out", marketplace=order.source.value)
            sync_state.record_failure(order, error, retry=False)
            sync_state.release_lease(order, token)
            db.commit()
            raise error from exc
        except MarketsyncError as exc:
            sync_state.record_failure(order, exc, retry=False)
            sync_state.release_lease(order, token)
            db.commit()
            logger.warning(f"Order id={order.id} {description} failed: {exc.message}")
            raise

        sync_state.record_success(order)
        sync_state.release_lease(order, token)
        db.commit()

    async def _push_shopify_fulfillment(self, db: Session, order: Order, data: FulfillRequest) -> None:
        shop = db.query(Shop).filter(Shop.id == order.shop_id).first()
        client = self.shopify_factory(shop) if shop is not None else None
        if client is None:
            logger.warning(f"Order id={order.id} fulfilled locally only; shop has no Shopify access token")
            return
        shopify_order_id = order.source_order_id
        await self._remote_action(
            db,
            order,
            lambda: client.create_fulfillment(
                shopify_order_id,
                tracking_number=data.tracking_number,
                tracking_url=data.tracking_url,
                carrier=data.carrier,
            ),
            "create_fulfillment",
        )

    async def fulfill_order(self, db: Session, shop_id: str, order_id: str, data: FulfillRequest) -> Order:
        order = self.get_order(db, shop_id, order_id)
        if order.status not in _FULFILLABLE:
            raise InvalidTransitionError(f"Cannot fulfill an order that is {order.status.value}")

        if order.connection_id and order.marketplace_order_id:
            shipment = ShipmentRequest(
                tracking_number=data.tracking_number,
                carrier=data.carrier,
                tracking_url=data.tracking_url,
                line_items=[
                    {"line_id": line_id, "quantity": 1}
                    for line_id in (order.extra or {}).get("line_item_ids") or []
                ],
            )
            adapter = self._adapter_for(order)
            marketplace_order_id = order.marketplace_order_id
            await self._remote_action(
                db, order, lambda: adapter.ship_order(marketplace_order_id, shipment), "ship_order"
            )
        elif order.source == OrderSource.shopify and order.source_order_id:
            await self._push_shopify_fulfillment(db, order, data)

        order.tracking_number = data.tracking_number
        order.tracking_url = data.tracking_url
        order.carrier = data.carrier
        order.status = OrderStatus.shipped
        order.fulfillment_status = "fulfilled"
        db.commit()
        db.refresh(order)
        logger.info(f"Fulfilled order id={order.id} tracking={data.tracking_number}")
        return order

    async def cancel_order(self, db: Session, shop_id: str, order_id: str, data: CancelRequest) -> Order:
        order = self.get_order(db, shop_id, order_id)
        if order.status not in _CANCELLABLE:
            raise InvalidTransitionError(f"Cannot cancel an order that is {order.status.value}")

        if order.connection_id and order.marketplace_order_id:
            adapter = self._adapter_for(order)
            marketplace_order_id = order.marketplace_order_id
            await self._remote_action(
                db, order, lambda: adapter.cancel_order(marketplace_order_id, data.reason or ""), "cancel_order"
            )

        order.status = OrderStatus.cancelled
        order.extra = {**(order.extra or {}), "cancel_reason": data.reason}
        db.commit()
        db.refresh(order)
        logger.info(f"Cancelled order id={order.id}")
        return order

    async def refund_order(self, db: Session, shop_id: str, order_id: str, data: RefundBody) -> Order:
        order = self.get_order(db, shop_id, order_id)
        if order.status not in _REFUNDABLE:
            raise InvalidTransitionError(f"Cannot refund an order that is {order.status.value}")
        if data.amount is not None and order.total is not None and data.amount > Decimal(str(order.total)):
            raise ValidationError("Refund amount exceeds the order total")

        if order.connection_id and order.marketplace_order_id:
            refund = RefundRequest(
                amount=data.amount,
                reason=data.reason,
                comment=data.comment,
                currency=order.currency or "USD",
            )
            adapter = self._adapter_for(order)
            marketplace_order_id = order.marketplace_order_id
            await self._remote_action(
                db, order, lambda: adapter.refund_order(marketplace_order_id, refund), "refund_order"
            )

        full_refund = data.amount is None or data.amount == Decimal(str(order.total))
        if full_refund:
            order.status = OrderStatus.refunded
        order.financial_status = "refunded" if full_refund else "partially_refunded"
        refunds = list((order.extra or {}).get("refunds") or [])
        refunds.append({
            "amount": str(data.amount) if data.amount is not None else None,
            "reason": data.reason,
            "at": utc_now().isoformat(),
        })
        order.extra = {**(order.extra or {}), "refunds": refunds}
        db.commit()
        db.refresh(order)
        logger.info(f"Refunded order id={order.id} amount={data.amount}")
        return order

    def stats_summary(self, db: Session, shop_id: str) -> Dict[str, Any]:
        by_status = (
            db.query(Order.status, func.count(Order.id))
            .filter(Order.shop_id == shop_id)
            .group_by(Order.status)
            .all()
        )
        by_source = (
            db.query(Order.source, func.count(Order.id), func.coalesce(func.sum(Order.total), 0))
            .filter(Order.shop_id == shop_id)
            .group_by(Order.source)
            .all()
        )
        total_orders = sum(count for _, count in by_status)
        total_revenue = sum((Decimal(str(revenue)) for _, _, revenue in by_source), Decimal("0"))
        return {
            "total_orders": total_orders,
            "total_revenue": str(total_revenue.quantize(Decimal("0.01"))),
            "by_status": {status.value: count for status, count in by_status},
            "by_source": [
                {
                    "source": source.value,
                    "order_count": count,
                    "revenue": str(Decimal(str(revenue)).quantize(Decimal("0.01"))),
                }
                for source, count, revenue in by_source
            ],
        }


order_service = OrderService()
