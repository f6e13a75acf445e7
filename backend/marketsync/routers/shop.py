from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from marketsync.models_sqlalchemy import get_db
from marketsync.models_sqlalchemy.models import Shop
from marketsync.models.shop import AccessTokenUpdate, ShopResponse
from marketsync.services.auth import get_current_shop
from marketsync.services.shopify_sync import shopify_sync

router = APIRouter(prefix="/api/shop", tags=["Shop"])


@router.get("/", response_model=ShopResponse)
async def get_shop(shop: Shop = Depends(get_current_shop)):
    return shop


@router.put("/access-token", response_model=ShopResponse)
async def set_access_token(
    data: AccessTokenUpdate,
    shop: Shop = Depends(get_current_shop),
    db: Session = Depends(get_db),
):
    """Store the Admin API token used for product backfill and fulfilment push."""
    return shopify_sync.set_access_token(db, shop, data.access_token)
