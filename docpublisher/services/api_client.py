"""HTTP adapter for Microsoft Graph operations."""
from __future__ import annotations

import asyncio
import email.utils
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx

from ..errors import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    PublishError,
    RemoteApiError,
    ThrottlingError,
    TransientNetworkError,
)
from ..protocols import ITokenProvider
from .retry import CircuitBreaker, RetryPolicy, build_retrying

logger = logging.getLogger(__name__)

GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
DEFAULT_TIMEOUT = 60.0
THROTTLE_STATUSES = {429, 503}


def encode_drive_path(path: str) -> str:
    """Percent-encode a drive-relative path, keeping separators."""
    return quote(path.strip("/"), safe="/")


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return max(0.0, float(int(value)))
    except ValueError:
        pass
    try:
        dt = email.utils.parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return max(0.0, (dt - datetime.now(timezone.utc)).total_seconds())


def _error_detail(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text.strip() or response.reason_phrase
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str):
            return payload.get("error_description") or error
    return str(payload)


def error_from_response(method: str, url: str, response: httpx.Response) -> PublishError:
    """Map an unsuccessful response onto the error taxonomy."""
    status = response.status_code
    detail = _error_detail(response)
    message = f"{method} {url} failed with {status}: {detail}"
    context = {"method": method, "url": url}

    if status in (401, 403):
        return AuthenticationError(message, status_code=status, context=context)
    if status == 404:
        return NotFoundError(message, status_code=status, context=context)
    if status == 409:
        return ConflictError(message, status_code=status, context=context)
    if status in THROTTLE_STATUSES:
        return ThrottlingError(
            message,
            retry_after=_parse_retry_after(response.headers.get("Retry-After")),
            status_code=status,
            context=context,
        )
    if status >= 500:
        return TransientNetworkError(message, status_code=status, context=context)
    return RemoteApiError(message, status_code=status, context=context)


class GraphClient:
    """
    HTTP client adapter for Graph calls.

    Every authenticated request fetches the current token from the token
    provider. A 401 triggers exactly one invalidate-refresh-retry; transient
    and throttling failures are retried by the retry policy.
    """

    def __init__(
        self,
        token_provider: ITokenProvider,
        base_url: str = GRAPH_BASE_URL,
        timeout: float = DEFAULT_TIMEOUT,
        retry_policy: Optional[RetryPolicy] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._tokens = token_provider
        self._base_url = base_url
        self._timeout = timeout
        self._retry_policy = retry_policy or RetryPolicy()
        self._breaker = circuit_breaker or CircuitBreaker()
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self):
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            transport=self._transport,
            headers={"Accept": "application/json"},
        )
        return self

    async def __aexit__(self, *args):
        if self._client:
            await self._client.aclose()
            self._client = None

    async def request(
        self,
        method: str,
        url: str,
        *,
        json: Any = None,
        content: Optional[bytes] = None,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, str]] = None,
        authenticated: bool = True,
    ) -> httpx.Response:
        if not self._client:
            raise RuntimeError("GraphClient not initialized. Use 'async with' context.")

        async for attempt in build_retrying(self._retry_policy):
            with attempt:
                return await self._send(
                    method,
                    url,
                    json=json,
                    content=content,
                    headers=headers,
                    params=params,
                    authenticated=authenticated,
                )
        raise RuntimeError(f"Failed to {method} {url}")  # pragma: no cover

    async def get_json(self, url: str, params: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        response = await self.request("GET", url, params=params)
        return response.json()

    async def _send(self, method: str, url: str, *, authenticated: bool, **kwargs) -> httpx.Response:
        await self._wait_for_circuit()

        if authenticated:
            response = await self._send_with_token(method, url, **kwargs)
        else:
            response = await self._transmit(method, url, None, **kwargs)

        if response.is_success:
            self._breaker.record_success()
            return response

        error = error_from_response(method, url, response)
        if isinstance(error, ThrottlingError):
            self._breaker.record_throttle()
        raise error

    async def _wait_for_circuit(self) -> None:
        remaining = self._breaker.remaining_cooldown()
        while remaining > 0:
            logger.info(f"Circuit breaker open, waiting {remaining:.1f}s before the next request")
            await asyncio.sleep(remaining)
            remaining = self._breaker.remaining_cooldown()

    async def _send_with_token(self, method: str, url: str, **kwargs) -> httpx.Response:
        token = await self._tokens.get_valid_access_token()
        response = await self._transmit(method, url, token, **kwargs)
        if response.status_code != 401:
            return response

        logger.info(f"{method} {url} returned 401, refreshing token and retrying once")
        await self._tokens.invalidate(token)
        token = await self._tokens.get_valid_access_token()
        return await self._transmit(method, url, token, **kwargs)

    async def _transmit(
        self,
        method: str,
        url: str,
        token: Optional[str],
        *,
        json: Any = None,
        content: Optional[bytes] = None,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        request_headers = dict(headers or {})
        if token:
            request_headers["Authorization"] = f"Bearer {token}"
        try:
            return await self._client.request(
                method,
                url,
                json=json,
                content=content,
                headers=request_headers,
                params=params,
            )
        except httpx.TimeoutException as exc:
            raise TransientNetworkError(f"Timeout on {method} {url}: {exc}") from exc
        except httpx.TransportError as exc:
            raise TransientNetworkError(f"Network error on {method} {url}: {exc}") from exc
