"""Local cache of primary-platform products.

Webhooks keep it current; catalog filters and listing snapshots read from it
so that neither ever needs a round trip to the platform.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import or_
from sqlalchemy.orm import Session

from marketsync.models_sqlalchemy.models import SourceProduct
from marketsync.utils.logger import logger


def _split_tags(tags: Any) -> List[str]:
    if tags is None:
        return []
    if isinstance(tags, str):
        return [t.strip() for t in tags.split(",") if t.strip()]
    return [str(t).strip() for t in tags if str(t).strip()]


def _variant(raw: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": str(raw.get("id")) if raw.get("id") is not None else None,
        "sku": raw.get("sku"),
        "price": str(raw["price"]) if raw.get("price") not in (None, "") else None,
        "compare_at_price": str(raw["compare_at_price"]) if raw.get("compare_at_price") not in (None, "") else None,
        "inventory_quantity": int(raw.get("inventory_quantity") or 0),
        "inventory_item_id": str(raw["inventory_item_id"]) if raw.get("inventory_item_id") is not None else None,
    }


class ProductCacheService:

    def get_product(self, db: Session, shop_id: str, external_id: str) -> Optional[SourceProduct]:
        return (
            db.query(SourceProduct)
            .filter(SourceProduct.shop_id == shop_id, SourceProduct.external_id == str(external_id))
            .first()
        )

    def list_products(
        self,
        db: Session,
        shop_id: str,
        *,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 50,
    ) -> Tuple[List[SourceProduct], int]:
        query = db.query(SourceProduct).filter(
            SourceProduct.shop_id == shop_id,
            or_(SourceProduct.status.is_(None), SourceProduct.status != "deleted"),
        )
        if search:
            like = f"%{search}%"
            query = query.filter(or_(SourceProduct.title.ilike(like), SourceProduct.vendor.ilike(like)))
        total = query.count()
        items = (
            query.order_by(SourceProduct.title.asc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return items, total

    def all_products(self, db: Session, shop_id: str) -> List[SourceProduct]:
        return (
            db.query(SourceProduct)
            .filter(
                SourceProduct.shop_id == shop_id,
                or_(SourceProduct.status.is_(None), SourceProduct.status != "deleted"),
            )
            .order_by(SourceProduct.title.asc())
            .all()
        )

    def upsert_product(self, db: Session, shop_id: str, payload: Dict[str, Any]) -> SourceProduct:
        """Insert or refresh one product from a platform product payload.

        ``collections`` are not part of product payloads; when absent the
        cached value is kept.
        """
        external_id = str(payload["id"])
        product = self.get_product(db, shop_id, external_id)
        if product is None:
            product = SourceProduct(shop_id=shop_id, external_id=external_id, collections=[])
            db.add(product)

        product.title = payload.get("title") or product.title or ""
        product.description = payload.get("body_html", product.description)
        product.handle = payload.get("handle", product.handle)
        product.vendor = payload.get("vendor", product.vendor)
        product.product_type = payload.get("product_type", product.product_type)
        product.status = payload.get("status", product.status) or "active"
        product.tags = _split_tags(payload.get("tags"))
        if "collections" in payload:
            product.collections = [str(c) for c in payload.get("collections") or []]
        product.variants = [_variant(v) for v in payload.get("variants") or []]
        product.images = [img.get("src") for img in payload.get("images") or [] if img.get("src")]

        db.commit()
        db.refresh(product)
        logger.info(f"Cached product shop={shop_id} external_id={external_id} variants={len(product.variants)}")
        return product

    def mark_deleted(self, db: Session, shop_id: str, external_id: str) -> Optional[SourceProduct]:
        product = self.get_product(db, shop_id, external_id)
        if product is None:
            return None
        product.status = "deleted"
        db.commit()
        return product

    def set_inventory(
        self,
        db: Session,
        shop_id: str,
        inventory_item_id: str,
        quantity: int,
    ) -> List[Tuple[SourceProduct, Dict[str, Any]]]:
        """Update the cached quantity of every variant backed by ``inventory_item_id``."""
        touched = []
        for product in self.all_products(db, shop_id):
            variants = [dict(v) for v in product.variants or []]
            changed = False
            for variant in variants:
                if variant.get("inventory_item_id") == str(inventory_item_id):
                    variant["inventory_quantity"] = int(quantity)
                    touched.append((product, variant))
                    changed = True
            if changed:
                # JSON columns only notice reassignment
                product.variants = variants
        db.commit()
        return touched


def find_variant(product: SourceProduct, variant_id: Optional[str]) -> Optional[Dict[str, Any]]:
    variants = product.variants or []
    if variant_id is not None:
        for variant in variants:
            if variant.get("id") == str(variant_id):
                return variant
    return variants[0] if variants else None


product_cache = ProductCacheService()
