"""Drives one listing (or a batch of listings) through a remote sync.

Per listing: take the lease (row lock + commit), decide the remote action,
run each adapter call under ``ADAPTER_TIMEOUT_SECONDS``, record the outcome
through :mod:`sync_state`, feed it into the connection's failure counter and
release the lease. All session changes are committed before every await, so
concurrent tasks sharing one session never observe half-applied state.
"""
from __future__ import annotations

import asyncio
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from marketsync.adapters.contract import MarketplaceAdapter
from marketsync.adapters.registry import get_adapter
from marketsync.adapters.types import ProductSnapshot
from marketsync.config import settings
from marketsync.errors import (
    MarketsyncError,
    NotFoundError,
    RemoteError,
    TransientRemoteError,
    ValidationError,
)
from marketsync.models.listing import ListingSyncResult
from marketsync.models_sqlalchemy.models import (
    ConnectionStatus,
    ListingStatus,
    MarketplaceConnection,
    ProductListing,
)
from marketsync.services import leases, sync_state
from marketsync.services.connection_service import connection_service
from marketsync.services.product_cache import find_variant, product_cache
from marketsync.utils.logger import logger


SYNC_SCOPES = ("full", "inventory", "prices")

_REMOTE_STATUS = {
    "active": ListingStatus.active,
    "pending": ListingStatus.pending,
    "draft": ListingStatus.pending,
    "inactive": ListingStatus.inactive,
}


def build_snapshot(db: Session, listing: ProductListing) -> ProductSnapshot:
    """Listing snapshot enriched with the cached product's attributes."""
    product = product_cache.get_product(db, listing.shop_id, listing.source_product_id)
    variant = find_variant(product, listing.source_variant_id) if product else None
    sku = listing.marketplace_sku or (variant or {}).get("sku") or f"{listing.source_product_id}-{listing.source_variant_id or 'default'}"
    return ProductSnapshot(
        source_product_id=listing.source_product_id,
        source_variant_id=listing.source_variant_id,
        title=listing.title or (product.title if product else listing.source_product_id),
        sku=sku,
        price=Decimal(str(listing.price if listing.price is not None else "0")),
        compare_at_price=listing.compare_at_price,
        inventory_quantity=listing.inventory or 0,
        description=product.description if product else None,
        vendor=product.vendor if product else None,
        product_type=product.product_type if product else None,
        handle=product.handle if product else None,
        tags=list(product.tags or []) if product else [],
        images=list(product.images or []) if product else [],
    )


class ListingSyncService:

    def __init__(
        self,
        adapter_factory: Callable[[MarketplaceConnection], MarketplaceAdapter] = get_adapter,
        policy: Optional[sync_state.RetryPolicy] = None,
    ):
        self.adapter_factory = adapter_factory
        self.policy = policy

    async def _call(self, coro: Awaitable[Any], description: str) -> Any:
        try:
            return await asyncio.wait_for(coro, settings.ADAPTER_TIMEOUT_SECONDS)
        except asyncio.TimeoutError as exc:
            raise TransientRemoteError(
                f"{description} timed out after {settings.ADAPTER_TIMEOUT_SECONDS}s"
            ) from exc

    def _load(self, db: Session, listing_id: str, shop_id: Optional[str]) -> ProductListing:
        query = db.query(ProductListing).filter(ProductListing.id == listing_id)
        if shop_id is not None:
            query = query.filter(ProductListing.shop_id == shop_id)
        listing = query.first()
        if listing is None:
            raise NotFoundError(f"Listing {listing_id} not found")
        return listing

    def _result(self, listing: ProductListing, *, success: bool, error: Optional[str] = None, skipped: bool = False) -> ListingSyncResult:
        return ListingSyncResult(
            listing_id=listing.id,
            success=success,
            sync_status=listing.sync_status,
            status=listing.status,
            error=error,
            next_retry_at=listing.next_retry_at,
            skipped=skipped,
        )

    async def _perform(
        self,
        adapter: MarketplaceAdapter,
        db: Session,
        listing: ProductListing,
        connection: MarketplaceConnection,
        scope: str,
    ) -> Dict[str, Any]:
        """Run the remote calls for ``listing``; returns the column updates to apply."""
        conn_settings = connection.settings or {}
        listing_id = listing.marketplace_listing_id

        if listing.status == ListingStatus.inactive:
            if listing_id:
                await self._call(adapter.delete_listing(listing_id), "delete_listing")
            return {"status": ListingStatus.inactive}

        if not listing_id:
            snapshot = build_snapshot(db, listing)
            created = await self._call(adapter.create_listing(snapshot), "create_listing")
            return {
                "marketplace_listing_id": created.listing_id,
                "marketplace_sku": created.sku or snapshot.sku,
                "status": _REMOTE_STATUS.get(created.status, ListingStatus.active),
                "remote": created.raw,
            }

        if scope == "full":
            updates = {"title": listing.title} if listing.title else {}
            if updates:
                await self._call(adapter.update_listing(listing_id, updates), "update_listing")
        if scope in ("full", "inventory") and conn_settings.get("sync_inventory", True):
            await self._call(adapter.update_inventory(listing_id, listing.inventory or 0), "update_inventory")
        if scope in ("full", "prices") and conn_settings.get("sync_prices", True) and listing.price is not None:
            await self._call(adapter.update_price(listing_id, listing.price), "update_price")
        return {"status": ListingStatus.active}

    async def sync_listing(
        self,
        db: Session,
        listing_id: str,
        *,
        shop_id: Optional[str] = None,
        triggered_by: str = "manual",
        scope: str = "full",
    ) -> ListingSyncResult:
        if scope not in SYNC_SCOPES:
            raise ValidationError(f"Unknown sync scope: {scope}")

        listing = self._load(db, listing_id, shop_id)
        connection = listing.connection

        if triggered_by == "scheduler" and (
            connection.auto_sync_suspended or not (connection.settings or {}).get("auto_sync", True)
        ):
            return self._result(listing, success=False, error="Automatic sync suspended for connection", skipped=True)
        if not connection.is_active or connection.status not in (ConnectionStatus.active, ConnectionStatus.error):
            raise ValidationError("Connection is not active")

        listing, token = leases.acquire_lease(db, ProductListing, listing.id)
        if listing.status in (ListingStatus.draft, ListingStatus.error):
            listing.status = ListingStatus.pending
            db.commit()
        try:
            pricing_error = (listing.extra or {}).get("pricing_error")
            if pricing_error:
                raise ValidationError(pricing_error, code="pricing_error")
            adapter = self.adapter_factory(connection)
            changes = await self._perform(adapter, db, listing, connection, scope)
        except Exception as exc:
            return self._record_failure(db, listing, connection, token, exc)

        db.refresh(listing)
        # A product deletion may have withdrawn the listing while we were talking
        # to the marketplace; keep it inactive and queue the withdrawal.
        withdrawn_meanwhile = (
            listing.status == ListingStatus.inactive and changes.get("status") != ListingStatus.inactive
        )
        if withdrawn_meanwhile:
            changes.pop("status", None)
        for key in ("marketplace_listing_id", "marketplace_sku", "status"):
            if key in changes:
                setattr(listing, key, changes[key])
        if changes.get("remote"):
            listing.extra = {**(listing.extra or {}), "remote": changes["remote"]}
        sync_state.record_success(listing)
        if withdrawn_meanwhile:
            sync_state.requeue(listing)
        connection_service.record_sync_outcome(db, connection, success=True)
        sync_state.release_lease(listing, token)
        db.commit()
        logger.info(
            f"Synced listing id={listing.id} connection={connection.id} "
            f"marketplace_listing_id={listing.marketplace_listing_id} triggered_by={triggered_by}"
        )
        return self._result(listing, success=True)

    def _record_failure(
        self,
        db: Session,
        listing: ProductListing,
        connection: MarketplaceConnection,
        token: str,
        exc: Exception,
    ) -> ListingSyncResult:
        if not isinstance(exc, MarketsyncError):
            logger.error(f"Unexpected error syncing listing id={listing.id}: {exc}", exc_info=True)

        outcome = sync_state.record_failure(listing, exc, policy=self.policy)
        if outcome.final:
            listing.status = ListingStatus.error
            if isinstance(exc, RemoteError):
                connection_service.record_sync_outcome(db, connection, success=False, error=exc)
            logger.warning(f"Listing id={listing.id} sync failed: {outcome.error}")
        else:
            logger.info(
                f"Listing id={listing.id} sync will retry at {outcome.next_retry_at.isoformat()}: {outcome.error}"
            )
        sync_state.release_lease(listing, token)
        db.commit()
        return self._result(listing, success=False, error=outcome.error)

    async def bulk_sync(
        self,
        db: Session,
        listing_ids: List[str],
        *,
        shop_id: Optional[str] = None,
        triggered_by: str = "manual",
        scope: str = "full",
        cancel_event: Optional[asyncio.Event] = None,
        concurrency: Optional[int] = None,
    ) -> List[ListingSyncResult]:
        """Sync each listing independently; results come back in input order.

        Setting ``cancel_event`` stops items that have not started yet; they
        report ``cancelled``. Items already talking to a marketplace finish.
        """
        semaphore = asyncio.Semaphore(concurrency or settings.SYNC_BULK_CONCURRENCY)

        async def run_one(listing_id: str) -> ListingSyncResult:
            async with semaphore:
                if cancel_event is not None and cancel_event.is_set():
                    return ListingSyncResult(listing_id=listing_id, success=False, error="cancelled", skipped=True)
                try:
                    return await self.sync_listing(
                        db, listing_id, shop_id=shop_id, triggered_by=triggered_by, scope=scope
                    )
                except MarketsyncError as exc:
                    return ListingSyncResult(listing_id=listing_id, success=False, error=exc.message)

        results = await asyncio.gather(*(run_one(listing_id) for listing_id in listing_ids))
        logger.info(
            f"Bulk sync finished total={len(results)} "
            f"succeeded={sum(1 for r in results if r.success)} triggered_by={triggered_by}"
        )
        return list(results)

    def requeue_listing(self, db: Session, shop_id: str, listing_id: str) -> ProductListing:
        """Manual retry: error (or synced) back to pending."""
        listing = self._load(db, listing_id, shop_id)
        if sync_state.requeue(listing):
            listing.error_message = None
            db.commit()
        return listing


listing_sync_service = ListingSyncService()
