"""Pulling products from the shop's own Shopify store into the local cache.

Webhooks keep the cache current once a shop is installed; the backfill here
seeds it (and repairs it after missed deliveries). Cached products that the
shop touched go through the same listing refresh as a product webhook.
"""
from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Optional

from sqlalchemy.orm import Session

from marketsync.config import settings
from marketsync.errors import NonRetryableRemoteError, NotFoundError, TransientRemoteError, ValidationError
from marketsync.models.product import ProductImportResponse
from marketsync.models_sqlalchemy.models import Shop, SourceProduct
from marketsync.services.listing_service import listing_service
from marketsync.services.product_cache import product_cache
from marketsync.services.shopify_client import SHOPIFY, ShopifyClient, shopify_client_for
from marketsync.utils.crypto import encrypt
from marketsync.utils.logger import logger


class ShopifySyncService:

    def __init__(self, client_factory=shopify_client_for):
        self.client_factory = client_factory

    def _client(self, shop: Shop) -> ShopifyClient:
        client = self.client_factory(shop)
        if client is None:
            raise ValidationError("Shop has no Shopify access token")
        return client

    async def _call(self, awaitable: Awaitable[Any], description: str) -> Any:
        try:
            return await asyncio.wait_for(awaitable, settings.ADAPTER_TIMEOUT_SECONDS)
        except asyncio.TimeoutError as exc:
            raise TransientRemoteError(f"{description} timed out", marketplace=SHOPIFY) from exc

    def set_access_token(self, db: Session, shop: Shop, access_token: str) -> Shop:
        shop.access_token = encrypt(access_token.strip())
        db.commit()
        db.refresh(shop)
        logger.info(f"Stored Shopify access token for shop {shop.shop_domain}")
        return shop

    async def import_products(self, db: Session, shop: Shop) -> ProductImportResponse:
        client = self._client(shop)
        page_size = settings.SHOPIFY_IMPORT_PAGE_SIZE
        counts = {"created": 0, "updated": 0, "skipped": 0}
        fetched = 0
        requeued = 0
        since_id: Optional[str] = None

        for _ in range(settings.SHOPIFY_MAX_IMPORT_PAGES):
            page = await self._call(client.list_products(limit=page_size, since_id=since_id), "list_products")
            for payload in page:
                fetched += 1
                if payload.get("id") is None:
                    logger.warning(f"Skipping Shopify product without id for shop {shop.shop_domain}")
                    counts["skipped"] += 1
                    continue
                existed = product_cache.get_product(db, shop.id, str(payload["id"])) is not None
                product = product_cache.upsert_product(db, shop.id, payload)
                counts["updated" if existed else "created"] += 1
                requeued += listing_service.refresh_product_listings(db, shop.id, product)
            db.commit()

            ids = [int(p["id"]) for p in page if p.get("id") is not None]
            if len(page) < page_size or not ids:
                break
            since_id = str(max(ids))
        else:
            logger.warning(
                f"Product import for shop {shop.shop_domain} stopped after {settings.SHOPIFY_MAX_IMPORT_PAGES} pages"
            )

        logger.info(
            f"Imported products shop={shop.shop_domain} fetched={fetched} created={counts['created']} "
            f"updated={counts['updated']} listings_requeued={requeued}"
        )
        return ProductImportResponse(fetched=fetched, listings_requeued=requeued, **counts)

    async def get_product(self, db: Session, shop: Shop, product_id: str, *, refresh: bool = False) -> SourceProduct:
        """Cached product, fetched from Shopify when missing or when ``refresh`` is set."""
        cached = product_cache.get_product(db, shop.id, product_id)
        if cached is not None and not refresh:
            return cached

        client = self.client_factory(shop)
        if client is None:
            if refresh:
                raise ValidationError("Shop has no Shopify access token")
            raise NotFoundError("Product not found")

        try:
            payload = await self._call(client.get_product(product_id), "get_product")
        except NonRetryableRemoteError as exc:
            if exc.status_code == 404:
                raise NotFoundError("Product not found") from exc
            raise
        product = product_cache.upsert_product(db, shop.id, payload)
        listing_service.refresh_product_listings(db, shop.id, product)
        db.commit()
        return product


shopify_sync = ShopifySyncService()
