"""Connection-wide sync runs (manual ``/sync`` requests and scheduler passes).

Listings of a connection linked to a sales channel are started in the order
of the channel's effective catalogs: listings whose product is selected by a
higher-priority catalog go first.
"""
from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from marketsync.errors import MarketsyncError, ValidationError
from marketsync.models_sqlalchemy.models import (
    ConnectionStatus,
    ListingStatus,
    MarketplaceConnection,
    ProductListing,
    SourceProduct,
    SyncStatus,
)
from marketsync.services import sync_state
from marketsync.services.catalog_resolver import matches
from marketsync.services.channel_composer import resolve_effective_catalogs
from marketsync.services.connection_service import connection_service
from marketsync.services.listing_sync import listing_sync_service
from marketsync.services.order_service import order_service
from marketsync.utils.logger import logger
from marketsync.utils.timeutil import utc_now


SYNC_TYPE_SCOPES = {
    "all": "full",
    "products": "full",
    "inventory": "inventory",
    "prices": "prices",
}


def order_by_channel_priority(
    db: Session,
    connection: MarketplaceConnection,
    listings: List[ProductListing],
) -> List[ProductListing]:
    channel = connection.sales_channel
    if channel is None or not listings:
        return list(listings)
    effective = resolve_effective_catalogs(channel)
    if not effective:
        return list(listings)

    external_ids = {listing.source_product_id for listing in listings}
    products = {
        p.external_id: p
        for p in db.query(SourceProduct).filter(
            SourceProduct.shop_id == connection.shop_id,
            SourceProduct.external_id.in_(external_ids),
        )
    }

    def rank(listing: ProductListing) -> int:
        product = products.get(listing.source_product_id)
        if product is not None:
            for index, entry in enumerate(effective):
                if matches(product, entry.catalog.filters):
                    return index
        return len(effective)

    return sorted(listings, key=rank)


def _summarize(results) -> Dict[str, int]:
    return {
        "total": len(results),
        "succeeded": sum(1 for r in results if r.success),
        "failed": sum(1 for r in results if not r.success and not r.skipped),
        "skipped": sum(1 for r in results if r.skipped),
    }


def _listings_for(db: Session, connection: MarketplaceConnection, sync_type: str) -> List[ProductListing]:
    query = db.query(ProductListing).filter(ProductListing.connection_id == connection.id)
    if sync_type in ("inventory", "prices"):
        query = query.filter(
            ProductListing.marketplace_listing_id.isnot(None),
            ProductListing.status == ListingStatus.active,
        )
    else:
        # Withdrawn listings that are already synced have nothing left to do.
        query = query.filter(
            (ProductListing.status != ListingStatus.inactive)
            | (ProductListing.sync_status != SyncStatus.synced)
        )
    return query.order_by(ProductListing.created_at.asc()).all()


async def sync_connection(
    db: Session,
    shop_id: str,
    connection_id: str,
    sync_type: str = "all",
    *,
    cancel_event: Optional[asyncio.Event] = None,
) -> Dict[str, Any]:
    """Manual connection sync: push listings and/or import orders."""
    if sync_type not in SYNC_TYPE_SCOPES and sync_type != "orders":
        raise ValidationError(f"Unknown sync type: {sync_type}")
    connection = connection_service.get_connection(db, shop_id, connection_id)
    if not connection.is_active or connection.status != ConnectionStatus.active:
        raise ValidationError("Connection is not active")

    orders_since = connection.last_sync_at
    summary: Dict[str, Any] = {"connection_id": connection.id, "sync_type": sync_type}

    if sync_type in SYNC_TYPE_SCOPES:
        listings = order_by_channel_priority(db, connection, _listings_for(db, connection, sync_type))
        results = await listing_sync_service.bulk_sync(
            db,
            [listing.id for listing in listings],
            shop_id=shop_id,
            scope=SYNC_TYPE_SCOPES[sync_type],
            cancel_event=cancel_event,
        )
        summary["listings"] = _summarize(results)

    if sync_type in ("all", "orders") and (connection.settings or {}).get("sync_orders", True):
        try:
            imported = await order_service.import_orders(db, shop_id, connection.id, start_date=orders_since)
            summary["orders"] = imported.model_dump()
        except MarketsyncError as exc:
            if sync_type == "orders":
                raise
            logger.warning(f"Order import failed during full sync of connection={connection.id}: {exc.message}")
            summary["orders"] = {"error": exc.message}

    connection.last_sync_at = utc_now()
    db.commit()
    return summary


async def scheduled_sync(
    db: Session,
    connection: MarketplaceConnection,
    *,
    batch_size: int,
    policy: Optional[sync_state.RetryPolicy] = None,
) -> Dict[str, Any]:
    """One scheduler pass over one connection."""
    policy = policy or sync_state.RetryPolicy.from_settings()
    now = utc_now()
    orders_since = connection.last_sync_at

    requeued = 0
    synced = (
        db.query(ProductListing)
        .filter(
            ProductListing.connection_id == connection.id,
            ProductListing.sync_status == SyncStatus.synced,
            ProductListing.status != ListingStatus.inactive,
        )
        .all()
    )
    for listing in synced:
        if sync_state.needs_resync(listing, policy, now) and sync_state.requeue(listing):
            requeued += 1
    db.commit()

    pending = (
        db.query(ProductListing)
        .filter(
            ProductListing.connection_id == connection.id,
            ProductListing.sync_status == SyncStatus.pending,
        )
        .order_by(ProductListing.next_retry_at.asc(), ProductListing.created_at.asc())
        .all()
    )
    due = [listing for listing in pending if sync_state.is_due(listing, now)][:batch_size]
    due = order_by_channel_priority(db, connection, due)

    summary: Dict[str, Any] = {"connection_id": connection.id, "requeued": requeued}
    results = await listing_sync_service.bulk_sync(
        db, [listing.id for listing in due], triggered_by="scheduler"
    )
    summary["listings"] = _summarize(results)

    # A pass may have suspended the connection.
    db.refresh(connection)
    if (
        not connection.auto_sync_suspended
        and connection.status == ConnectionStatus.active
        and (connection.settings or {}).get("sync_orders", True)
    ):
        imported = await order_service.import_orders(
            db, connection.shop_id, connection.id, start_date=orders_since
        )
        summary["orders"] = imported.model_dump()
    return summary
