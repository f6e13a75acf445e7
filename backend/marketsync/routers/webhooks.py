import base64
import hashlib
import hmac
import json
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from sqlalchemy.orm import Session

from marketsync.config import settings
from marketsync.models_sqlalchemy import get_db
from marketsync.services.auth import normalize_shop_domain
from marketsync.services.webhook_events import webhook_processor
from marketsync.utils.logger import logger

router = APIRouter(prefix="/api/webhooks", tags=["Webhooks"])


def verify_webhook_hmac(raw_body: bytes, signature: Optional[str], secret: str) -> bool:
    if not signature:
        return False
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).digest()
    expected = base64.b64encode(digest).decode("ascii")
    return hmac.compare_digest(expected, signature.strip())


@router.post("/{resource}/{action}")
async def receive_webhook(
    resource: str,
    action: str,
    request: Request,
    x_shopify_shop_domain: Optional[str] = Header(None),
    x_shop_domain: Optional[str] = Header(None),
    x_shopify_hmac_sha256: Optional[str] = Header(None),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    """Platform webhook delivery; the topic is the two path segments, e.g. ``orders/create``."""
    topic = f"{resource}/{action}"
    raw_body = await request.body()

    if settings.SHOPIFY_WEBHOOK_SECRET and not verify_webhook_hmac(
        raw_body, x_shopify_hmac_sha256, settings.SHOPIFY_WEBHOOK_SECRET
    ):
        logger.warning(f"Rejected webhook {topic}: bad HMAC signature")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook signature")

    shop_domain = x_shopify_shop_domain or x_shop_domain
    if not shop_domain:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing shop domain header")

    try:
        payload = json.loads(raw_body or b"{}")
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Webhook body is not valid JSON")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Webhook body must be a JSON object")

    return webhook_processor.handle(db, normalize_shop_domain(shop_domain), topic, payload)
