from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from marketsync.errors import (
    InvalidTransitionError,
    NonRetryableRemoteError,
    SyncInProgressError,
    TransientRemoteError,
)
from marketsync.models_sqlalchemy.models import SyncStatus
from marketsync.services import sync_state
from marketsync.services.sync_state import RetryPolicy


NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _record(status=SyncStatus.not_synced, **kwargs):
    fields = {
        "sync_status": status,
        "last_sync_at": None,
        "error_message": None,
        "retry_count": 0,
        "next_retry_at": None,
        "lease_token": None,
        "lease_expires_at": None,
    }
    fields.update(kwargs)
    return SimpleNamespace(**fields)


def test_backoff_doubles_and_caps():
    policy = RetryPolicy(base_seconds=30, max_seconds=100, max_retries=5)
    assert sync_state.backoff_delay(1, policy) == timedelta(seconds=30)
    assert sync_state.backoff_delay(2, policy) == timedelta(seconds=60)
    assert sync_state.backoff_delay(3, policy) == timedelta(seconds=100)


def test_begin_sync_takes_lease_and_blocks_second_holder():
    record = _record()
    token = sync_state.begin_sync(record, lease_seconds=60, now=NOW)
    assert record.sync_status == SyncStatus.pending
    assert record.lease_token == token

    with pytest.raises(SyncInProgressError):
        sync_state.begin_sync(record, lease_seconds=60, now=NOW + timedelta(seconds=10))

    # An expired lease can be taken over.
    second = sync_state.begin_sync(record, lease_seconds=60, now=NOW + timedelta(seconds=61))
    assert second != token


def test_release_lease_ignores_foreign_token():
    record = _record()
    token = sync_state.begin_sync(record, lease_seconds=60, now=NOW)
    sync_state.release_lease(record, "someone-else")
    assert record.lease_token == token
    sync_state.release_lease(record, token)
    assert record.lease_token is None and record.lease_expires_at is None


def test_success_clears_error_state(policy):
    record = _record(SyncStatus.pending, retry_count=2, error_message="boom", next_retry_at=NOW)
    outcome = sync_state.record_success(record, now=NOW)
    assert outcome.sync_status == SyncStatus.synced
    assert record.last_sync_at == NOW
    assert record.error_message is None
    assert record.retry_count == 0
    assert record.next_retry_at is None


def test_transient_failure_stays_pending_with_backoff(policy):
    record = _record(SyncStatus.pending)
    outcome = sync_state.record_failure(record, TransientRemoteError("throttled"), policy=policy, now=NOW)
    assert outcome.final is False
    assert record.sync_status == SyncStatus.pending
    assert record.retry_count == 1
    assert record.next_retry_at == NOW + timedelta(seconds=30)
    assert record.error_message == "throttled"


def test_retry_after_extends_backoff(policy):
    record = _record(SyncStatus.pending)
    sync_state.record_failure(record, TransientRemoteError("slow down", retry_after=300), policy=policy, now=NOW)
    assert record.next_retry_at == NOW + timedelta(seconds=300)


def test_transient_failures_give_up_after_max_retries():
    policy = RetryPolicy(base_seconds=1, max_seconds=10, max_retries=2)
    record = _record(SyncStatus.pending)
    sync_state.record_failure(record, TransientRemoteError("503"), policy=policy, now=NOW)
    sync_state.record_failure(record, TransientRemoteError("503"), policy=policy, now=NOW)
    outcome = sync_state.record_failure(record, TransientRemoteError("503"), policy=policy, now=NOW)
    assert outcome.final is True
    assert record.sync_status == SyncStatus.error
    assert record.error_message == "503 (gave up after 2 retries)"


def test_transient_failure_is_final_without_retry(policy):
    record = _record(SyncStatus.pending)
    outcome = sync_state.record_failure(record, TransientRemoteError("throttled"), policy=policy, now=NOW, retry=False)
    assert outcome.final is True
    assert record.sync_status == SyncStatus.error
    assert record.retry_count == 0
    assert record.next_retry_at is None
    assert record.error_message == "throttled"


def test_non_retryable_failure_keeps_remote_message_verbatim(policy):
    last = datetime(2024, 4, 1, tzinfo=timezone.utc)
    record = _record(SyncStatus.pending, last_sync_at=last)
    message = "The SKU 'ABC' has an invalid brand value."
    outcome = sync_state.record_failure(record, NonRetryableRemoteError(message), policy=policy, now=NOW)
    assert outcome.final is True
    assert record.sync_status == SyncStatus.error
    assert record.error_message == message
    assert record.last_sync_at == last


def test_transitions_are_checked():
    with pytest.raises(InvalidTransitionError):
        sync_state.record_success(_record(SyncStatus.not_synced))
    with pytest.raises(InvalidTransitionError):
        sync_state.check_transition(SyncStatus.synced, SyncStatus.error)


def test_requeue():
    errored = _record(SyncStatus.error, retry_count=3)
    assert sync_state.requeue(errored) is True
    assert errored.sync_status == SyncStatus.pending
    assert errored.retry_count == 0
    assert sync_state.requeue(errored) is False


def test_is_due_respects_backoff_and_lease():
    record = _record(SyncStatus.pending, next_retry_at=NOW + timedelta(minutes=1))
    assert not sync_state.is_due(record, NOW)
    assert sync_state.is_due(record, NOW + timedelta(minutes=2))

    leased = _record(SyncStatus.pending, lease_token="t", lease_expires_at=NOW + timedelta(minutes=1))
    assert not sync_state.is_due(leased, NOW)
    assert not sync_state.is_due(_record(SyncStatus.synced), NOW)


def test_needs_resync_after_interval():
    policy = RetryPolicy(resync_interval=timedelta(hours=6))
    fresh = _record(SyncStatus.synced, last_sync_at=NOW - timedelta(hours=1))
    stale = _record(SyncStatus.synced, last_sync_at=NOW - timedelta(hours=7))
    assert not sync_state.needs_resync(fresh, policy, NOW)
    assert sync_state.needs_resync(stale, policy, NOW)


def test_stale_events_are_rejected():
    assert sync_state.should_apply_event(None, NOW)
    assert sync_state.should_apply_event(NOW, NOW)
    assert sync_state.should_apply_event(NOW, NOW + timedelta(seconds=1))
    assert not sync_state.should_apply_event(NOW, NOW - timedelta(seconds=1))
    # naive values from SQLite compare as UTC
    assert not sync_state.should_apply_event(NOW.replace(tzinfo=None), NOW - timedelta(seconds=1))
