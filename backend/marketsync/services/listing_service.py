"""Local listing records: creation, edits, snapshot refresh and pricing.

A listing's price comes from its connection's sales channel when one is
linked: the first effective catalog (priority order) that selects the
product prices it. Without a channel the source variant price is used as is.
A clamped (negative) channel price is recorded as a pricing error on the
listing and blocks publishing until the strategy is fixed.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from marketsync.errors import ConflictError, NotFoundError, SyncInProgressError, ValidationError
from marketsync.models.listing import ListingCreate, ListingUpdate
from marketsync.models_sqlalchemy.models import (
    ListingStatus,
    MarketplaceConnection,
    ProductListing,
    SourceProduct,
    SyncStatus,
)
from marketsync.services import sync_state
from marketsync.services.catalog_resolver import matches, price_for_channel, source_price
from marketsync.services.channel_composer import resolve_effective_catalogs
from marketsync.services.product_cache import find_variant, product_cache
from marketsync.utils.logger import logger


PRICING_ERROR_MESSAGE = "Pricing strategy of catalog '{catalog}' produced a negative price; clamped to 0.00"

# Changes to these fields mean the marketplace copy is stale.
_SNAPSHOT_FIELDS = ("title", "price", "compare_at_price", "inventory", "status")
# Columns an update may set but never clear.
_REQUIRED_FIELDS = ("inventory", "status")


def channel_price(
    connection: MarketplaceConnection,
    product: SourceProduct,
    variant_id: Optional[str] = None,
) -> Tuple[Optional[Decimal], Optional[str], bool]:
    """Return ``(price, pricing_error, selected)`` for ``product`` on ``connection``.

    ``selected`` is False when the connection's channel has catalogs but none
    of them selects the product.
    """
    base = source_price(product, variant_id)
    channel = connection.sales_channel
    if channel is None or not channel.is_active:
        return base, None, True

    effective = resolve_effective_catalogs(channel)
    if not effective:
        return base, None, True
    priced = price_for_channel(product, effective, variant_id)
    if priced is None:
        # No price at all is not the same as not selected.
        selected = base is None and any(matches(product, e.catalog.filters) for e in effective)
        return base, None, selected
    if priced.result.clamped:
        return priced.result.price, PRICING_ERROR_MESSAGE.format(catalog=priced.effective.catalog.name), True
    return priced.result.price, None, True


def _set_pricing_error(listing: ProductListing, error: Optional[str]) -> None:
    extra = dict(listing.extra or {})
    if error:
        extra["pricing_error"] = error
    else:
        extra.pop("pricing_error", None)
    listing.extra = extra


class ListingService:

    def list_listings(
        self,
        db: Session,
        shop_id: str,
        *,
        connection_id: Optional[str] = None,
        status: Optional[ListingStatus] = None,
        sync_status: Optional[SyncStatus] = None,
        page: int = 1,
        limit: int = 50,
    ) -> Tuple[List[ProductListing], int]:
        query = db.query(ProductListing).filter(ProductListing.shop_id == shop_id)
        if connection_id:
            query = query.filter(ProductListing.connection_id == connection_id)
        if status is not None:
            query = query.filter(ProductListing.status == status)
        if sync_status is not None:
            query = query.filter(ProductListing.sync_status == sync_status)
        total = query.count()
        listings = (
            query.order_by(ProductListing.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return listings, total

    def get_listing(self, db: Session, shop_id: str, listing_id: str) -> ProductListing:
        listing = (
            db.query(ProductListing)
            .filter(ProductListing.id == listing_id, ProductListing.shop_id == shop_id)
            .first()
        )
        if listing is None:
            raise NotFoundError("Listing not found")
        return listing

    def create_listing(self, db: Session, shop_id: str, data: ListingCreate) -> ProductListing:
        """Create a draft listing of a cached product on one connection."""
        connection = (
            db.query(MarketplaceConnection)
            .filter(
                MarketplaceConnection.id == data.connection_id,
                MarketplaceConnection.shop_id == shop_id,
                MarketplaceConnection.is_active == True,  # noqa: E712
            )
            .first()
        )
        if connection is None:
            raise NotFoundError("Connection not found")

        duplicate = (
            db.query(ProductListing.id)
            .filter(
                ProductListing.connection_id == connection.id,
                ProductListing.source_product_id == data.source_product_id,
                ProductListing.source_variant_id.is_(None)
                if data.source_variant_id is None
                else ProductListing.source_variant_id == data.source_variant_id,
            )
            .first()
        )
        if duplicate:
            raise ConflictError("Product is already listed on this connection")

        product = product_cache.get_product(db, shop_id, data.source_product_id)
        if product is None and (data.title is None or data.price is None):
            raise ValidationError("Product is not in the product cache; title and price are required")

        listing = ProductListing(
            shop_id=shop_id,
            connection_id=connection.id,
            source_product_id=data.source_product_id,
            source_variant_id=data.source_variant_id,
            status=ListingStatus.draft,
            sync_status=SyncStatus.not_synced,
            extra={},
        )

        pricing_error = None
        price = data.price
        if product is not None:
            variant = find_variant(product, data.source_variant_id) or {}
            listing.title = data.title or product.title
            listing.inventory = data.inventory if data.inventory is not None else int(variant.get("inventory_quantity") or 0)
            compare_at = data.compare_at_price if data.compare_at_price is not None else variant.get("compare_at_price")
            listing.compare_at_price = Decimal(str(compare_at)) if compare_at is not None else None
            if price is None:
                price, pricing_error, selected = channel_price(connection, product, data.source_variant_id)
                if not selected:
                    raise ValidationError("Product is not selected by any catalog of the connection's sales channel")
        else:
            listing.title = data.title
            listing.inventory = data.inventory or 0
            listing.compare_at_price = data.compare_at_price

        listing.price = price
        _set_pricing_error(listing, pricing_error)
        db.add(listing)
        db.commit()
        db.refresh(listing)
        logger.info(
            f"Created listing id={listing.id} connection={connection.id} product={data.source_product_id} "
            f"price={listing.price} pricing_error={bool(pricing_error)}"
        )
        return listing

    def update_listing(self, db: Session, shop_id: str, listing_id: str, data: ListingUpdate) -> ProductListing:
        listing = self.get_listing(db, shop_id, listing_id)
        if sync_state.lease_is_live(listing):
            raise SyncInProgressError("Listing is being synced; try again shortly")

        fields = data.model_dump(exclude_unset=True)
        metadata = fields.pop("metadata", None)
        cleared = sorted(key for key in _REQUIRED_FIELDS if key in fields and fields[key] is None)
        if cleared:
            raise ValidationError(f"{', '.join(cleared)} cannot be cleared")
        changed = False
        for key, value in fields.items():
            if getattr(listing, key) == value:
                continue
            setattr(listing, key, value)
            changed = changed or key in _SNAPSHOT_FIELDS
            if key == "price":
                # A manual price supersedes the computed one.
                _set_pricing_error(listing, None)
        if metadata:
            listing.extra = {**(listing.extra or {}), **metadata}

        if changed and listing.sync_status in (SyncStatus.synced, SyncStatus.error):
            sync_state.requeue(listing)
        db.commit()
        db.refresh(listing)
        return listing

    def delete_listing(self, db: Session, shop_id: str, listing_id: str) -> Dict[str, Any]:
        """Remove the local record only; the marketplace copy is left alone."""
        listing = self.get_listing(db, shop_id, listing_id)
        if sync_state.lease_is_live(listing):
            raise SyncInProgressError("Listing is being synced; try again shortly")
        db.delete(listing)
        db.commit()
        logger.info(f"Deleted local listing id={listing_id}")
        return {"success": True, "listing_id": listing_id}

    def refresh_from_product(self, db: Session, listing: ProductListing, product: SourceProduct) -> bool:
        """Copy the cached product's current title/price/inventory onto ``listing``.

        Synced or errored listings whose snapshot changed go back to pending.
        Does not commit.
        """
        variant = find_variant(product, listing.source_variant_id) or {}
        price, pricing_error, _ = channel_price(listing.connection, product, listing.source_variant_id)
        snapshot = {
            "title": product.title,
            "inventory": int(variant.get("inventory_quantity") or 0),
        }
        if price is not None:
            snapshot["price"] = price
        if variant.get("compare_at_price") is not None:
            snapshot["compare_at_price"] = Decimal(str(variant["compare_at_price"]))

        changed = False
        for key, value in snapshot.items():
            current = getattr(listing, key)
            if isinstance(value, Decimal) and current is not None:
                same = Decimal(str(current)) == value
            else:
                same = current == value
            if not same:
                setattr(listing, key, value)
                changed = True
        _set_pricing_error(listing, pricing_error)

        if changed and listing.sync_status in (SyncStatus.synced, SyncStatus.error):
            sync_state.requeue(listing)
        return changed

    def listings_for_product(self, db: Session, shop_id: str, product_external_id: str) -> List[ProductListing]:
        return (
            db.query(ProductListing)
            .filter(
                ProductListing.shop_id == shop_id,
                ProductListing.source_product_id == str(product_external_id),
            )
            .all()
        )

    def refresh_product_listings(self, db: Session, shop_id: str, product: SourceProduct) -> int:
        """Refresh every live listing of ``product``; returns how many went back to pending.

        Withdrawn listings and listings mid-sync are left alone. Does not commit.
        """
        requeued = 0
        for listing in self.listings_for_product(db, shop_id, product.external_id):
            if listing.status == ListingStatus.inactive or sync_state.lease_is_live(listing):
                continue
            before = listing.sync_status
            self.refresh_from_product(db, listing, product)
            if before != listing.sync_status:
                requeued += 1
        return requeued


listing_service = ListingService()
