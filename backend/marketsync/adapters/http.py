"""HTTP plumbing shared by the marketplace adapters.

Adapters compose a :class:`MarketplaceHttpClient` rather than inheriting from
a base class. The client owns error translation: transport failures, 429 and
5xx become ``TransientRemoteError``; 401/403 become ``AuthError``; any other
4xx becomes ``NonRetryableRemoteError`` carrying the marketplace's own
message.
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import httpx

from marketsync.errors import AuthError, NonRetryableRemoteError, TransientRemoteError
from marketsync.utils.logger import call_logger, logger


ErrorExtractor = Callable[[Any], Optional[str]]


@dataclass
class CachedToken:
    value: str
    expires_at: float

    def is_valid(self, skew_seconds: int = 60) -> bool:
        return time.time() < self.expires_at - skew_seconds


def first_error_message(body: Any) -> Optional[str]:
    """Pull ``errors[0].message`` (eBay, Amazon SP-API style) out of a body."""
    if not isinstance(body, dict):
        return None
    errors = body.get("errors")
    if isinstance(errors, list) and errors:
        first = errors[0]
        if isinstance(first, dict):
            return first.get("message") or first.get("longMessage") or first.get("description")
    for key in ("error_description", "message", "error"):
        value = body.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def _parse_retry_after(resp: httpx.Response) -> Optional[float]:
    raw = resp.headers.get("Retry-After")
    if not raw:
        return None
    try:
        return float(raw)
    except ValueError:
        return None


def raise_for_remote_status(
    marketplace: str,
    resp: httpx.Response,
    extract_message: ErrorExtractor = first_error_message,
) -> None:
    if resp.status_code < 400:
        return

    try:
        body = resp.json()
    except ValueError:
        body = None
    message = extract_message(body) if body is not None else None
    if not message:
        message = resp.text or f"HTTP {resp.status_code}"

    if resp.status_code in (401, 403):
        raise AuthError(message, status_code=resp.status_code, marketplace=marketplace)
    if resp.status_code == 429 or resp.status_code >= 500:
        raise TransientRemoteError(
            message,
            status_code=resp.status_code,
            marketplace=marketplace,
            retry_after=_parse_retry_after(resp),
        )
    raise NonRetryableRemoteError(message, status_code=resp.status_code, marketplace=marketplace)


class MarketplaceHttpClient:
    def __init__(
        self,
        marketplace: str,
        base_url: str,
        *,
        extract_message: ErrorExtractor = first_error_message,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 20.0,
    ):
        self.marketplace = marketplace
        self.base_url = base_url.rstrip("/")
        self.extract_message = extract_message
        self.transport = transport
        self.timeout = timeout

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout, connect=5.0),
            transport=self.transport,
        )

    async def request(
        self,
        method: str,
        path: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
        data: Optional[Dict[str, Any]] = None,
        auth: Optional[httpx.Auth] = None,
        url: Optional[str] = None,
    ) -> Any:
        """Send one request and return the decoded JSON body (``None`` if empty)."""

        target = url or f"{self.base_url}{path}"
        request_kwargs: Dict[str, Any] = {"headers": headers, "params": params}
        if json is not None:
            request_kwargs["json"] = json
        if data is not None:
            request_kwargs["data"] = data
        if auth is not None:
            request_kwargs["auth"] = auth

        started = time.time()
        try:
            async with self._client() as client:
                resp = await client.request(method, target, **request_kwargs)
        except httpx.TimeoutException as exc:
            call_logger.log_call(self.marketplace, f"{method} {path}", status="error", error=f"timeout: {exc}")
            raise TransientRemoteError(
                f"{self.marketplace} request timed out: {method} {path}",
                marketplace=self.marketplace,
            ) from exc
        except httpx.TransportError as exc:
            call_logger.log_call(self.marketplace, f"{method} {path}", status="error", error=str(exc))
            raise TransientRemoteError(
                f"{self.marketplace} transport error: {exc}",
                marketplace=self.marketplace,
            ) from exc

        duration_ms = int((time.time() - started) * 1000)
        call_logger.log_call(
            self.marketplace,
            f"{method} {path} -> {resp.status_code} ({duration_ms}ms)",
            request_data=dict(headers or {}),
            status="error" if resp.status_code >= 400 else "success",
            error=resp.text[:500] if resp.status_code >= 400 else None,
        )

        raise_for_remote_status(self.marketplace, resp, self.extract_message)

        if resp.status_code == 204 or not resp.content:
            return None
        try:
            return resp.json()
        except ValueError:
            logger.warning(f"{self.marketplace} returned a non-JSON body for {method} {path} status={resp.status_code}")
            return {"raw": resp.text}
