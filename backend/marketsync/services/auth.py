from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from marketsync.models_sqlalchemy import get_db
from marketsync.models_sqlalchemy.models import Shop
from marketsync.utils.logger import logger


def normalize_shop_domain(shop_domain: str) -> str:
    return shop_domain.strip().lower()


def get_or_create_shop(db: Session, shop_domain: str) -> Shop:
    domain = normalize_shop_domain(shop_domain)
    shop = db.query(Shop).filter(Shop.shop_domain == domain).first()
    if shop is None:
        shop = Shop(shop_domain=domain, name=domain.split(".")[0])
        db.add(shop)
        db.commit()
        db.refresh(shop)
        logger.info(f"Registered shop {domain} id={shop.id}")
    return shop


async def get_current_shop(
    x_shop_domain: Optional[str] = Header(None),
    db: Session = Depends(get_db),
) -> Shop:
    """Resolve the tenant from the ``X-Shop-Domain`` header."""
    if not x_shop_domain or not x_shop_domain.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-Shop-Domain header",
        )
    shop = get_or_create_shop(db, x_shop_domain)
    if not shop.is_active:
        logger.warning(f"Request for uninstalled shop {shop.shop_domain}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Shop is inactive",
        )
    return shop
