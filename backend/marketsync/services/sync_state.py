"""Sync state machine for listings and orders.

Everything here is pure: functions inspect and mutate a record that carries
the ``SyncTrackingMixin`` columns but never touch the session. Callers
(``leases``, ``listing_sync``, ``order_service``) own loading and committing.

    not_synced -> pending -> synced | error
    error      -> pending          (manual retry)
    synced     -> pending          (source changed / re-sync interval elapsed)
    pending    -> pending          (retryable failure, re-queued with backoff)
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from marketsync.config import settings
from marketsync.errors import InvalidTransitionError, SyncInProgressError
from marketsync.models_sqlalchemy.models import SyncStatus
from marketsync.utils.timeutil import to_utc, utc_now


ALLOWED_TRANSITIONS = {
    SyncStatus.not_synced: {SyncStatus.pending},
    SyncStatus.pending: {SyncStatus.pending, SyncStatus.synced, SyncStatus.error},
    SyncStatus.synced: {SyncStatus.pending},
    SyncStatus.error: {SyncStatus.pending},
}


@dataclass(frozen=True)
class RetryPolicy:
    base_seconds: int = 30
    max_seconds: int = 3600
    max_retries: int = 5
    resync_interval: timedelta = timedelta(hours=6)

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            base_seconds=settings.SYNC_RETRY_BASE_SECONDS,
            max_seconds=settings.SYNC_RETRY_MAX_SECONDS,
            max_retries=settings.SYNC_MAX_RETRIES,
            resync_interval=timedelta(minutes=settings.RESYNC_INTERVAL_MINUTES),
        )


@dataclass
class SyncOutcome:
    sync_status: SyncStatus
    final: bool
    error: Optional[str] = None
    next_retry_at: Optional[datetime] = None


def _status(record) -> SyncStatus:
    return SyncStatus(record.sync_status or SyncStatus.not_synced)


def check_transition(current, target) -> None:
    current, target = SyncStatus(current), SyncStatus(target)
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransitionError(f"Cannot move sync status from {current.value} to {target.value}")


def lease_is_live(record, now: Optional[datetime] = None) -> bool:
    expires = to_utc(record.lease_expires_at)
    return bool(record.lease_token) and expires is not None and expires > (now or utc_now())


def backoff_delay(retry_count: int, policy: RetryPolicy) -> timedelta:
    """``min(base * 2**(n-1), cap)`` for the n-th consecutive retryable failure."""
    exponent = max(retry_count - 1, 0)
    seconds = min(policy.base_seconds * (2 ** exponent), policy.max_seconds)
    return timedelta(seconds=seconds)


def begin_sync(record, *, lease_seconds: float, now: Optional[datetime] = None) -> str:
    """Move ``record`` to pending and take its lease; returns the lease token."""
    now = now or utc_now()
    if _status(record) == SyncStatus.pending and lease_is_live(record, now):
        raise SyncInProgressError("A sync is already in progress for this record")
    check_transition(_status(record), SyncStatus.pending)

    token = str(uuid.uuid4())
    record.sync_status = SyncStatus.pending
    record.lease_token = token
    record.lease_expires_at = now + timedelta(seconds=lease_seconds)
    return token


def release_lease(record, token: Optional[str] = None) -> None:
    if token is not None and record.lease_token != token:
        return
    record.lease_token = None
    record.lease_expires_at = None


def record_success(record, now: Optional[datetime] = None) -> SyncOutcome:
    check_transition(_status(record), SyncStatus.synced)
    record.sync_status = SyncStatus.synced
    record.last_sync_at = now or utc_now()
    record.error_message = None
    record.retry_count = 0
    record.next_retry_at = None
    return SyncOutcome(sync_status=SyncStatus.synced, final=True)


def record_failure(
    record,
    error: Exception,
    *,
    policy: Optional[RetryPolicy] = None,
    now: Optional[datetime] = None,
    retry: bool = True,
) -> SyncOutcome:
    """Apply a failed attempt.

    Retryable errors keep the record pending and schedule the next attempt
    until ``max_retries`` is exceeded. Anything else is final: error status,
    remote message kept verbatim, ``last_sync_at`` untouched.

    ``retry=False`` is for records no worker picks up again; every failure
    is then final.
    """
    policy = policy or RetryPolicy.from_settings()
    now = now or utc_now()
    message = getattr(error, "message", None) or str(error) or error.__class__.__name__

    if retry and getattr(error, "retryable", False):
        retry_count = (record.retry_count or 0) + 1
        record.retry_count = retry_count
        if retry_count <= policy.max_retries:
            check_transition(_status(record), SyncStatus.pending)
            delay = backoff_delay(retry_count, policy)
            retry_after = getattr(error, "retry_after", None)
            if retry_after:
                delay = max(delay, timedelta(seconds=retry_after))
            record.sync_status = SyncStatus.pending
            record.error_message = message
            record.next_retry_at = now + delay
            return SyncOutcome(
                sync_status=SyncStatus.pending,
                final=False,
                error=message,
                next_retry_at=record.next_retry_at,
            )
        message = f"{message} (gave up after {policy.max_retries} retries)"

    check_transition(_status(record), SyncStatus.error)
    record.sync_status = SyncStatus.error
    record.error_message = message
    record.next_retry_at = None
    return SyncOutcome(sync_status=SyncStatus.error, final=True, error=message)


def requeue(record) -> bool:
    """Queue a fresh sync after a source change or a manual retry.

    Returns False when the record is already pending (nothing to do).
    """
    current = _status(record)
    if current == SyncStatus.pending:
        return False
    check_transition(current, SyncStatus.pending)
    record.sync_status = SyncStatus.pending
    record.retry_count = 0
    record.next_retry_at = None
    return True


def is_due(record, now: Optional[datetime] = None) -> bool:
    """A pending record is due when its backoff has elapsed and nobody holds it."""
    now = now or utc_now()
    if _status(record) != SyncStatus.pending or lease_is_live(record, now):
        return False
    next_retry_at = to_utc(record.next_retry_at)
    return next_retry_at is None or next_retry_at <= now


def needs_resync(record, policy: Optional[RetryPolicy] = None, now: Optional[datetime] = None) -> bool:
    policy = policy or RetryPolicy.from_settings()
    if _status(record) != SyncStatus.synced:
        return False
    last = to_utc(record.last_sync_at)
    return last is None or last <= (now or utc_now()) - policy.resync_interval


def should_apply_event(last_event_at: Optional[datetime], event_at: Optional[datetime]) -> bool:
    """Order events strictly older than the last applied one are stale."""
    if last_event_at is None or event_at is None:
        return True
    return to_utc(event_at) >= to_utc(last_event_at)
