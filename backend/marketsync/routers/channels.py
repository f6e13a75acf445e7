from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session
from typing import Any, Dict, List

from marketsync.models_sqlalchemy import get_db
from marketsync.models_sqlalchemy.models import Shop
from marketsync.models.channel import (
    CatalogLinkCreate,
    CatalogLinkResponse,
    CatalogLinkUpdate,
    EffectiveCatalogResponse,
    PermissionSet,
    SalesChannelCreate,
    SalesChannelDetailResponse,
    SalesChannelResponse,
    SalesChannelUpdate,
    TenantLinkCreate,
    TenantLinkResponse,
    TenantLinkUpdate,
)
from marketsync.services.auth import get_current_shop
from marketsync.services.channel_service import channel_service

router = APIRouter(prefix="/api/sales-channels", tags=["Sales Channels"])


@router.get("/", response_model=List[SalesChannelResponse])
async def list_channels(
    shop: Shop = Depends(get_current_shop),
    db: Session = Depends(get_db),
):
    return channel_service.list_channels(db, shop.id)


@router.post("/", response_model=SalesChannelResponse, status_code=status.HTTP_201_CREATED)
async def create_channel(
    data: SalesChannelCreate,
    shop: Shop = Depends(get_current_shop),
    db: Session = Depends(get_db),
):
    return channel_service.create_channel(db, shop.id, data)


@router.get("/{channel_id}", response_model=SalesChannelDetailResponse)
async def get_channel(
    channel_id: str,
    shop: Shop = Depends(get_current_shop),
    db: Session = Depends(get_db),
):
    return channel_service.get_channel(db, shop.id, channel_id)


@router.put("/{channel_id}", response_model=SalesChannelResponse)
async def update_channel(
    channel_id: str,
    data: SalesChannelUpdate,
    shop: Shop = Depends(get_current_shop),
    db: Session = Depends(get_db),
):
    return channel_service.update_channel(db, shop.id, channel_id, data)


@router.delete("/{channel_id}")
async def delete_channel(
    channel_id: str,
    shop: Shop = Depends(get_current_shop),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    return channel_service.delete_channel(db, shop.id, channel_id)


@router.get("/{channel_id}/effective-catalogs", response_model=List[EffectiveCatalogResponse])
async def get_effective_catalogs(
    channel_id: str,
    shop: Shop = Depends(get_current_shop),
    db: Session = Depends(get_db),
):
    """Active linked catalogs in priority order, with link overrides applied."""
    return [
        EffectiveCatalogResponse(
            catalog=entry.catalog,
            link_id=entry.link.id,
            link_priority=entry.link.priority,
            pricing_strategy=entry.pricing_strategy,
        )
        for entry in channel_service.effective_catalogs(db, shop.id, channel_id)
    ]


@router.post("/{channel_id}/catalogs", response_model=CatalogLinkResponse, status_code=status.HTTP_201_CREATED)
async def add_catalog_link(
    channel_id: str,
    data: CatalogLinkCreate,
    shop: Shop = Depends(get_current_shop),
    db: Session = Depends(get_db),
):
    return channel_service.add_catalog_link(db, shop.id, channel_id, data)


@router.put("/{channel_id}/catalogs/{catalog_id}", response_model=CatalogLinkResponse)
async def update_catalog_link(
    channel_id: str,
    catalog_id: str,
    data: CatalogLinkUpdate,
    shop: Shop = Depends(get_current_shop),
    db: Session = Depends(get_db),
):
    return channel_service.update_catalog_link(db, shop.id, channel_id, catalog_id, data)


@router.delete("/{channel_id}/catalogs/{catalog_id}")
async def remove_catalog_link(
    channel_id: str,
    catalog_id: str,
    shop: Shop = Depends(get_current_shop),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    return channel_service.remove_catalog_link(db, shop.id, channel_id, catalog_id)


@router.post("/{channel_id}/tenants", response_model=TenantLinkResponse, status_code=status.HTTP_201_CREATED)
async def add_tenant_link(
    channel_id: str,
    data: TenantLinkCreate,
    shop: Shop = Depends(get_current_shop),
    db: Session = Depends(get_db),
):
    return channel_service.add_tenant_link(db, shop.id, channel_id, data)


@router.put("/{channel_id}/tenants/{tenant_id}", response_model=TenantLinkResponse)
async def update_tenant_link(
    channel_id: str,
    tenant_id: str,
    data: TenantLinkUpdate,
    shop: Shop = Depends(get_current_shop),
    db: Session = Depends(get_db),
):
    return channel_service.update_tenant_link(db, shop.id, channel_id, tenant_id, data)


@router.delete("/{channel_id}/tenants/{tenant_id}")
async def remove_tenant_link(
    channel_id: str,
    tenant_id: str,
    shop: Shop = Depends(get_current_shop),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    return channel_service.remove_tenant_link(db, shop.id, channel_id, tenant_id)


@router.get("/{channel_id}/tenants/{tenant_id}/permissions", response_model=PermissionSet)
async def get_tenant_permissions(
    channel_id: str,
    tenant_id: str,
    shop: Shop = Depends(get_current_shop),
    db: Session = Depends(get_db),
):
    return channel_service.tenant_permissions(db, shop.id, channel_id, tenant_id)
