from __future__ import annotations

from typing import Any, Dict, List

from sqlalchemy.orm import Session

from marketsync.errors import NotFoundError
from marketsync.models.catalog import (
    CatalogFilters,
    PricingStrategy,
    ProductCatalogCreate,
    ProductCatalogUpdate,
)
from marketsync.models_sqlalchemy.models import ProductCatalog
from marketsync.services.catalog_resolver import compute_price, eligible_products, source_price
from marketsync.services.product_cache import product_cache
from marketsync.utils.logger import logger


class CatalogService:

    def list_catalogs(self, db: Session, shop_id: str) -> List[ProductCatalog]:
        return (
            db.query(ProductCatalog)
            .filter(ProductCatalog.shop_id == shop_id)
            .order_by(ProductCatalog.name.asc())
            .all()
        )

    def get_catalog(self, db: Session, shop_id: str, catalog_id: str) -> ProductCatalog:
        catalog = (
            db.query(ProductCatalog)
            .filter(ProductCatalog.id == catalog_id, ProductCatalog.shop_id == shop_id)
            .first()
        )
        if catalog is None:
            raise NotFoundError("Catalog not found")
        return catalog

    def create_catalog(self, db: Session, shop_id: str, data: ProductCatalogCreate) -> ProductCatalog:
        catalog = ProductCatalog(
            shop_id=shop_id,
            name=data.name,
            description=data.description,
            catalog_type=data.catalog_type,
            filters=data.filters.model_dump(mode="json"),
            pricing_strategy=data.pricing_strategy.model_dump(mode="json"),
            is_active=True,
        )
        db.add(catalog)
        db.commit()
        db.refresh(catalog)
        logger.info(f"Created catalog id={catalog.id} shop={shop_id} name={catalog.name!r}")
        return catalog

    def update_catalog(self, db: Session, shop_id: str, catalog_id: str, data: ProductCatalogUpdate) -> ProductCatalog:
        """Plain fields are replaced; filters and pricing strategy merge field by field."""
        catalog = self.get_catalog(db, shop_id, catalog_id)

        for key in ("name", "description", "catalog_type", "is_active"):
            value = getattr(data, key)
            if value is not None:
                setattr(catalog, key, value)

        if data.filters is not None:
            current = CatalogFilters(**(catalog.filters or {}))
            patch = data.filters.model_dump(exclude_none=True)
            catalog.filters = current.model_copy(update=patch).model_dump(mode="json")

        if data.pricing_strategy is not None:
            current = PricingStrategy(**(catalog.pricing_strategy or {}))
            patch = data.pricing_strategy.model_dump(exclude_none=True)
            catalog.pricing_strategy = current.model_copy(update=patch).model_dump(mode="json")

        db.commit()
        db.refresh(catalog)
        return catalog

    def delete_catalog(self, db: Session, shop_id: str, catalog_id: str) -> Dict[str, Any]:
        catalog = self.get_catalog(db, shop_id, catalog_id)
        db.delete(catalog)
        db.commit()
        logger.info(f"Deleted catalog id={catalog_id}")
        return {"success": True, "catalog_id": catalog_id}

    def catalog_products(self, db: Session, shop_id: str, catalog_id: str) -> List[Dict[str, Any]]:
        """Cached products the catalog selects, each priced with its strategy."""
        catalog = self.get_catalog(db, shop_id, catalog_id)
        rows = []
        for product in eligible_products(product_cache.all_products(db, shop_id), catalog):
            base = source_price(product)
            price = pricing_error = None
            if base is not None:
                result = compute_price(base, catalog.pricing_strategy)
                price = result.price
                if result.clamped:
                    pricing_error = "Pricing strategy produced a negative price; clamped to 0.00"
            rows.append({
                "product_id": product.id,
                "external_id": product.external_id,
                "title": product.title,
                "source_price": base,
                "price": price,
                "pricing_error": pricing_error,
            })
        return rows


catalog_service = CatalogService()
