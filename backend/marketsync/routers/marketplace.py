from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session
from typing import Any, Dict, List

from marketsync.models_sqlalchemy import get_db
from marketsync.models_sqlalchemy.models import Shop
from marketsync.models.connection import (
    ConnectionCreate,
    ConnectionResponse,
    ConnectionSyncRequest,
    ConnectionTestResponse,
    ConnectionUpdate,
    SupportedMarketplace,
)
from marketsync.adapters.registry import supported_marketplaces
from marketsync.services.auth import get_current_shop
from marketsync.services.connection_service import connection_service
from marketsync.services.connection_sync import sync_connection
from marketsync.utils.logger import logger

router = APIRouter(prefix="/api/marketplace", tags=["Marketplace Connections"])


def _with_stats(db: Session, connection) -> Dict[str, Any]:
    payload = ConnectionResponse.model_validate(connection).model_dump(mode="json")
    payload.update(connection_service.connection_stats(db, connection.id))
    return payload


@router.get("/connections")
async def list_connections(
    include_inactive: bool = Query(False, description="Include deactivated connections"),
    shop: Shop = Depends(get_current_shop),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    connections = connection_service.list_connections(db, shop.id, include_inactive=include_inactive)
    return {"connections": [_with_stats(db, c) for c in connections]}


@router.get("/connections/{connection_id}")
async def get_connection(
    connection_id: str,
    shop: Shop = Depends(get_current_shop),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    connection = connection_service.get_connection(db, shop.id, connection_id)
    return _with_stats(db, connection)


@router.post("/connections", response_model=ConnectionResponse, status_code=status.HTTP_201_CREATED)
async def create_connection(
    data: ConnectionCreate,
    shop: Shop = Depends(get_current_shop),
    db: Session = Depends(get_db),
):
    return connection_service.create_connection(db, shop.id, data)


@router.put("/connections/{connection_id}", response_model=ConnectionResponse)
async def update_connection(
    connection_id: str,
    data: ConnectionUpdate,
    shop: Shop = Depends(get_current_shop),
    db: Session = Depends(get_db),
):
    return connection_service.update_connection(db, shop.id, connection_id, data)


@router.delete("/connections/{connection_id}")
async def delete_connection(
    connection_id: str,
    shop: Shop = Depends(get_current_shop),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    """Deactivate a connection; its orders are kept."""
    return connection_service.deactivate_connection(db, shop.id, connection_id)


@router.post("/connections/{connection_id}/test", response_model=ConnectionTestResponse)
async def test_connection(
    connection_id: str,
    shop: Shop = Depends(get_current_shop),
    db: Session = Depends(get_db),
):
    connection, result = await connection_service.test_connection(db, shop.id, connection_id)
    return ConnectionTestResponse(success=result.success, message=result.message, connection=connection)


@router.post("/connections/{connection_id}/activate", response_model=ConnectionTestResponse)
async def activate_connection(
    connection_id: str,
    shop: Shop = Depends(get_current_shop),
    db: Session = Depends(get_db),
):
    connection, result = await connection_service.activate_connection(db, shop.id, connection_id)
    return ConnectionTestResponse(success=result.success, message=result.message, connection=connection)


@router.post("/connections/{connection_id}/sync")
async def sync_connection_now(
    connection_id: str,
    data: ConnectionSyncRequest = ConnectionSyncRequest(),
    shop: Shop = Depends(get_current_shop),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    logger.info(f"Manual {data.sync_type} sync requested for connection={connection_id} shop={shop.shop_domain}")
    return await sync_connection(db, shop.id, connection_id, data.sync_type)


@router.get("/supported", response_model=List[SupportedMarketplace])
async def get_supported_marketplaces():
    return supported_marketplaces()


@router.get("/dashboard")
async def get_dashboard(
    shop: Shop = Depends(get_current_shop),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    return connection_service.dashboard(db, shop.id)
