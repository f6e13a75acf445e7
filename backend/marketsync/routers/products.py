from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session
from typing import Any, Dict, Optional

from marketsync.models_sqlalchemy import get_db
from marketsync.models_sqlalchemy.models import ListingStatus, Shop, SyncStatus
from marketsync.models.listing import (
    BulkSyncRequest,
    BulkSyncResponse,
    ListingCreate,
    ListingPageResponse,
    ListingResponse,
    ListingSyncResult,
    ListingUpdate,
)
from marketsync.models.product import ProductImportResponse, ProductPageResponse, SourceProductResponse
from marketsync.services.auth import get_current_shop
from marketsync.services.listing_service import listing_service
from marketsync.services.listing_sync import listing_sync_service
from marketsync.services.product_cache import product_cache
from marketsync.services.shopify_sync import shopify_sync

router = APIRouter(prefix="/api/products", tags=["Products & Listings"])


@router.get("/", response_model=ProductPageResponse)
async def list_products(
    search: Optional[str] = Query(None, description="Match on title or vendor"),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=250),
    shop: Shop = Depends(get_current_shop),
    db: Session = Depends(get_db),
):
    """Products from the local cache of the shop's catalog."""
    products, total = product_cache.list_products(db, shop.id, search=search, page=page, limit=limit)
    return {"products": products, "total": total, "page": page, "limit": limit}


@router.get("/listings/all", response_model=ListingPageResponse)
async def list_listings(
    connection_id: Optional[str] = Query(None),
    listing_status: Optional[ListingStatus] = Query(None, alias="status"),
    sync_status: Optional[SyncStatus] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=250),
    shop: Shop = Depends(get_current_shop),
    db: Session = Depends(get_db),
):
    listings, total = listing_service.list_listings(
        db,
        shop.id,
        connection_id=connection_id,
        status=listing_status,
        sync_status=sync_status,
        page=page,
        limit=limit,
    )
    return {"listings": listings, "total": total, "page": page, "limit": limit}


@router.post("/listings", response_model=ListingResponse, status_code=status.HTTP_201_CREATED)
async def create_listing(
    data: ListingCreate,
    shop: Shop = Depends(get_current_shop),
    db: Session = Depends(get_db),
):
    return listing_service.create_listing(db, shop.id, data)


@router.get("/listings/{listing_id}", response_model=ListingResponse)
async def get_listing(
    listing_id: str,
    shop: Shop = Depends(get_current_shop),
    db: Session = Depends(get_db),
):
    return listing_service.get_listing(db, shop.id, listing_id)


@router.put("/listings/{listing_id}", response_model=ListingResponse)
async def update_listing(
    listing_id: str,
    data: ListingUpdate,
    shop: Shop = Depends(get_current_shop),
    db: Session = Depends(get_db),
):
    return listing_service.update_listing(db, shop.id, listing_id, data)


@router.delete("/listings/{listing_id}")
async def delete_listing(
    listing_id: str,
    shop: Shop = Depends(get_current_shop),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    return listing_service.delete_listing(db, shop.id, listing_id)


@router.post("/listings/bulk-sync", response_model=BulkSyncResponse)
async def bulk_sync_listings(
    data: BulkSyncRequest,
    shop: Shop = Depends(get_current_shop),
    db: Session = Depends(get_db),
):
    results = await listing_sync_service.bulk_sync(db, data.listing_ids, shop_id=shop.id)
    return BulkSyncResponse(
        results=results,
        succeeded=sum(1 for r in results if r.success),
        failed=sum(1 for r in results if not r.success),
    )


@router.post("/listings/{listing_id}/sync", response_model=ListingSyncResult)
async def sync_listing(
    listing_id: str,
    scope: str = Query("full", pattern="^(full|inventory|prices)$"),
    shop: Shop = Depends(get_current_shop),
    db: Session = Depends(get_db),
):
    return await listing_sync_service.sync_listing(db, listing_id, shop_id=shop.id, scope=scope)


@router.post("/listings/{listing_id}/retry", response_model=ListingResponse)
async def retry_listing(
    listing_id: str,
    shop: Shop = Depends(get_current_shop),
    db: Session = Depends(get_db),
):
    """Put a failed listing back in the sync queue."""
    return listing_sync_service.requeue_listing(db, shop.id, listing_id)


@router.post("/import", response_model=ProductImportResponse)
async def import_products(
    shop: Shop = Depends(get_current_shop),
    db: Session = Depends(get_db),
):
    """Backfill the product cache from the shop's Shopify store."""
    return await shopify_sync.import_products(db, shop)


@router.get("/{product_id}", response_model=SourceProductResponse)
async def get_product(
    product_id: str,
    refresh: bool = Query(False, description="Fetch from Shopify even when cached"),
    shop: Shop = Depends(get_current_shop),
    db: Session = Depends(get_db),
):
    return await shopify_sync.get_product(db, shop, product_id, refresh=refresh)
