from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from typing import Any, Dict, Optional

from marketsync.models_sqlalchemy import get_db
from marketsync.models_sqlalchemy.models import OrderSource, OrderStatus, Shop
from marketsync.models.order import (
    CancelRequest,
    FulfillRequest,
    OrderImportRequest,
    OrderImportResponse,
    OrderPageResponse,
    OrderResponse,
    RefundBody,
)
from marketsync.services.auth import get_current_shop
from marketsync.services.order_service import order_service

router = APIRouter(prefix="/api/orders", tags=["Orders"])


@router.get("/", response_model=OrderPageResponse)
async def list_orders(
    order_status: Optional[OrderStatus] = Query(None, alias="status"),
    source: Optional[OrderSource] = Query(None),
    connection_id: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=250),
    shop: Shop = Depends(get_current_shop),
    db: Session = Depends(get_db),
):
    orders, total = order_service.list_orders(
        db,
        shop.id,
        status=order_status,
        source=source,
        connection_id=connection_id,
        page=page,
        limit=limit,
    )
    return {"orders": orders, "total": total, "page": page, "limit": limit}


@router.get("/stats/summary")
async def order_stats(
    shop: Shop = Depends(get_current_shop),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    return order_service.stats_summary(db, shop.id)


@router.post("/import", response_model=OrderImportResponse)
async def import_orders(
    data: OrderImportRequest,
    shop: Shop = Depends(get_current_shop),
    db: Session = Depends(get_db),
):
    """Pull orders from one marketplace connection into the local store."""
    return await order_service.import_orders(
        db, shop.id, data.connection_id, start_date=data.start_date, end_date=data.end_date
    )


@router.get("/{order_id}", response_model=OrderResponse)
async def get_order(
    order_id: str,
    shop: Shop = Depends(get_current_shop),
    db: Session = Depends(get_db),
):
    return order_service.get_order(db, shop.id, order_id)


@router.put("/{order_id}/fulfill", response_model=OrderResponse)
async def fulfill_order(
    order_id: str,
    data: FulfillRequest,
    shop: Shop = Depends(get_current_shop),
    db: Session = Depends(get_db),
):
    return await order_service.fulfill_order(db, shop.id, order_id, data)


@router.put("/{order_id}/cancel", response_model=OrderResponse)
async def cancel_order(
    order_id: str,
    data: CancelRequest = CancelRequest(),
    shop: Shop = Depends(get_current_shop),
    db: Session = Depends(get_db),
):
    return await order_service.cancel_order(db, shop.id, order_id, data)


@router.put("/{order_id}/refund", response_model=OrderResponse)
async def refund_order(
    order_id: str,
    data: RefundBody = RefundBody(),
    shop: Shop = Depends(get_current_shop),
    db: Session = Depends(get_db),
):
    return await order_service.refund_order(db, shop.id, order_id, data)
