"""Error taxonomy shared by adapters, services and the HTTP layer.

Each error carries a short machine ``code`` and the human message. Remote
errors additionally say whether the sync state machine may retry them; the
message of a remote error is the marketplace's own text, kept verbatim so
operators can diagnose rejections.
"""
from __future__ import annotations

from typing import Optional


class MarketsyncError(Exception):
    code = "error"

    def __init__(self, message: str, *, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    def __str__(self) -> str:
        return self.message


class ValidationError(MarketsyncError):
    code = "validation_error"


class NotFoundError(MarketsyncError):
    code = "not_found"


class ConflictError(MarketsyncError):
    code = "conflict"


class SyncInProgressError(ConflictError):
    code = "sync_in_progress"


class InvalidTransitionError(ConflictError):
    code = "invalid_transition"


class RemoteError(MarketsyncError):
    """Failure reported by (or while talking to) a marketplace."""

    code = "remote_error"
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        marketplace: Optional[str] = None,
    ):
        super().__init__(message, code=code)
        self.status_code = status_code
        self.marketplace = marketplace


class AuthError(RemoteError):
    code = "auth_error"


class TransientRemoteError(RemoteError):
    code = "transient_remote_error"
    retryable = True

    def __init__(self, message: str, *, retry_after: Optional[float] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class NonRetryableRemoteError(RemoteError):
    code = "remote_rejected"


# HTTP status per error kind; the most specific class in the MRO wins.
ERROR_STATUS_CODES = {
    ValidationError: 422,
    NotFoundError: 404,
    ConflictError: 409,
    AuthError: 401,
    NonRetryableRemoteError: 502,
    TransientRemoteError: 503,
    RemoteError: 502,
    MarketsyncError: 500,
}


def http_status_for(exc: MarketsyncError) -> int:
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS_CODES:
            return ERROR_STATUS_CODES[cls]
    return 500
