from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session
from typing import Any, Dict, List

from marketsync.models_sqlalchemy import get_db
from marketsync.models_sqlalchemy.models import Shop
from marketsync.models.catalog import (
    CatalogProductResponse,
    ProductCatalogCreate,
    ProductCatalogResponse,
    ProductCatalogUpdate,
)
from marketsync.services.auth import get_current_shop
from marketsync.services.catalog_service import catalog_service

router = APIRouter(prefix="/api/product-catalogs", tags=["Product Catalogs"])


@router.get("/", response_model=List[ProductCatalogResponse])
async def list_catalogs(
    shop: Shop = Depends(get_current_shop),
    db: Session = Depends(get_db),
):
    return catalog_service.list_catalogs(db, shop.id)


@router.post("/", response_model=ProductCatalogResponse, status_code=status.HTTP_201_CREATED)
async def create_catalog(
    data: ProductCatalogCreate,
    shop: Shop = Depends(get_current_shop),
    db: Session = Depends(get_db),
):
    return catalog_service.create_catalog(db, shop.id, data)


@router.get("/{catalog_id}", response_model=ProductCatalogResponse)
async def get_catalog(
    catalog_id: str,
    shop: Shop = Depends(get_current_shop),
    db: Session = Depends(get_db),
):
    return catalog_service.get_catalog(db, shop.id, catalog_id)


@router.put("/{catalog_id}", response_model=ProductCatalogResponse)
async def update_catalog(
    catalog_id: str,
    data: ProductCatalogUpdate,
    shop: Shop = Depends(get_current_shop),
    db: Session = Depends(get_db),
):
    """Partial update; filters and pricing strategy are merged field by field."""
    return catalog_service.update_catalog(db, shop.id, catalog_id, data)


@router.delete("/{catalog_id}")
async def delete_catalog(
    catalog_id: str,
    shop: Shop = Depends(get_current_shop),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    return catalog_service.delete_catalog(db, shop.id, catalog_id)


@router.get("/{catalog_id}/products", response_model=List[CatalogProductResponse])
async def get_catalog_products(
    catalog_id: str,
    shop: Shop = Depends(get_current_shop),
    db: Session = Depends(get_db),
):
    return catalog_service.catalog_products(db, shop.id, catalog_id)
