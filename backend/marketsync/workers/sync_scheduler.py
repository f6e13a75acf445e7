"""
Sync Scheduler

Periodic pass over every connection that allows automatic sync:

- synced listings older than RESYNC_INTERVAL_MINUTES go back to pending
- pending listings whose retry time has come are synced (triggered_by="scheduler")
- marketplace orders created since the last sync are imported

Connections attached to higher-priority sales channels are processed first.
"""
import asyncio
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from marketsync.config import settings
from marketsync.models_sqlalchemy import SessionLocal
from marketsync.models_sqlalchemy.models import ConnectionStatus, MarketplaceConnection, SalesChannel
from marketsync.services.connection_sync import scheduled_sync
from marketsync.utils.logger import logger


def eligible_connections(db: Session) -> List[MarketplaceConnection]:
    connections = (
        db.query(MarketplaceConnection)
        .outerjoin(SalesChannel, MarketplaceConnection.sales_channel_id == SalesChannel.id)
        .filter(
            MarketplaceConnection.is_active == True,  # noqa: E712
            MarketplaceConnection.auto_sync_suspended == False,  # noqa: E712
            MarketplaceConnection.status == ConnectionStatus.active,
        )
        .order_by(SalesChannel.priority.desc().nullslast(), MarketplaceConnection.created_at.asc())
        .all()
    )
    return [c for c in connections if (c.settings or {}).get("auto_sync", True)]


async def run_sync_scheduler_once(db: Session, batch_size: Optional[int] = None) -> Dict[str, Any]:
    """One scheduler pass; a failing connection does not stop the others."""
    batch_size = batch_size or settings.SCHEDULER_BATCH_SIZE
    summary: Dict[str, Any] = {"connections": 0, "failed": 0, "results": []}

    for connection in eligible_connections(db):
        summary["connections"] += 1
        try:
            result = await scheduled_sync(db, connection, batch_size=batch_size)
            summary["results"].append(result)
        except Exception as e:
            db.rollback()
            summary["failed"] += 1
            logger.error(f"[sync-scheduler] connection={connection.id} failed: {e}", exc_info=True)

    logger.info(
        f"[sync-scheduler] pass finished connections={summary['connections']} failed={summary['failed']}"
    )
    return summary


async def run_sync_scheduler_loop(interval_seconds: Optional[int] = None) -> None:
    interval_seconds = interval_seconds or settings.SCHEDULER_INTERVAL_SECONDS
    logger.info(f"[sync-scheduler] started (interval={interval_seconds} seconds)")

    while True:
        db = SessionLocal()
        try:
            await run_sync_scheduler_once(db)
        except Exception as e:
            logger.error(f"[sync-scheduler] pass failed: {e}", exc_info=True)
        finally:
            db.close()
        await asyncio.sleep(interval_seconds)
