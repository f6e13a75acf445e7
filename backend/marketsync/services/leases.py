from __future__ import annotations

from datetime import datetime
from typing import Optional, Tuple

from sqlalchemy.orm import Session

from marketsync.config import settings
from marketsync.errors import NotFoundError
from marketsync.services import sync_state
from marketsync.utils.logger import logger
from marketsync.utils.timeutil import utc_now


def lease_duration_seconds() -> float:
    return settings.ADAPTER_TIMEOUT_SECONDS + settings.LEASE_GRACE_SECONDS


def acquire_lease(
    db: Session,
    model,
    record_id: str,
    *,
    now: Optional[datetime] = None,
) -> Tuple[object, str]:
    """Lock the record row, move it to pending and stamp a lease.

    The row lock serializes concurrent acquirers; the commit makes the lease
    visible before any remote call is made. Raises ``SyncInProgressError``
    when another holder's lease is still live.
    """

    record = (
        db.query(model)
        .filter(model.id == record_id)
        .with_for_update()
        .populate_existing()
        .first()
    )
    if record is None:
        db.rollback()
        raise NotFoundError(f"{model.__name__} {record_id} not found")

    try:
        token = sync_state.begin_sync(record, lease_seconds=lease_duration_seconds(), now=now or utc_now())
    except Exception:
        db.rollback()
        raise
    db.commit()
    logger.info(f"Acquired sync lease {model.__tablename__}={record_id} token={token}")
    return record, token


def release_lease(db: Session, record, token: str) -> None:
    sync_state.release_lease(record, token)
    db.commit()
