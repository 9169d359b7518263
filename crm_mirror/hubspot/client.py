"""HubSpot CRM API client with a uniform retry policy.

Only the read endpoints the mirror needs are wrapped: paginated object
lists, filtered object search, and property metadata. Every call goes
through ``request_with_retry`` at the call site so the caller picks the
label that shows up in retry warnings.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, TypeVar

import httpx
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential

logger = logging.getLogger(__name__)

HUBSPOT_API_BASE = "https://api.hubapi.com"
DEFAULT_TIMEOUT_SECONDS = 30.0
RATE_LIMIT_REMAINING_HEADER = "X-HubSpot-RateLimit-Remaining"

RETRIABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})
# Connection reset, DNS failure, aborted connection, and elapsed timeouts.
NETWORK_ERRORS = (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError)
BACKOFF_BASE_SECONDS = 0.5

T = TypeVar("T")


class HubSpotError(Exception):
    """Base exception for HubSpot API errors."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response: dict | None = None,
        url: str | None = None,
        status_text: str | None = None,
    ):
        self.message = message
        self.status_code = status_code
        self.response = response
        self.url = url
        self.status_text = status_text
        super().__init__(self.message)


class HubSpotAuthError(HubSpotError):
    """Missing, invalid or under-scoped token."""

    pass


class HubSpotRateLimitError(HubSpotError):
    """Rate limit exceeded."""

    pass


def is_retriable(exc: BaseException) -> bool:
    """Return True for network faults and throttling/server-side HTTP statuses."""
    if isinstance(exc, NETWORK_ERRORS):
        return True
    if isinstance(exc, HubSpotError):
        return exc.status_code in RETRIABLE_STATUS_CODES
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in RETRIABLE_STATUS_CODES
    return False


def failure_code(exc: BaseException | None) -> str:
    """Short code for an outbound failure: ``HTTP 503`` or the httpx error name."""
    if exc is None:
        return "unknown"
    status = getattr(exc, "status_code", None)
    if status is None and isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
    if status is not None:
        return f"HTTP {status}"
    return type(exc).__name__


def _log_retry(label: str, max_retries: int) -> Callable[[RetryCallState], None]:
    def before_sleep(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0
        logger.warning(
            "%s failed (%s); retrying in %dms (retry %d/%d)",
            label,
            failure_code(exc),
            int(delay * 1000),
            retry_state.attempt_number,
            max_retries,
        )

    return before_sleep


async def request_with_retry(
    request_fn: Callable[[], Awaitable[T]],
    label: str,
    max_retries: int = 3,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Await ``request_fn`` and retry retriable failures with exponential backoff.

    Backoff doubles from 500ms (500, 1000, 2000 for three retries). Anything
    that is not retriable propagates on the first failure without sleeping;
    once retries are exhausted the last error is re-raised.
    """
    retrying = AsyncRetrying(
        retry=retry_if_exception(is_retriable),
        stop=stop_after_attempt(max_retries + 1),
        wait=wait_exponential(multiplier=BACKOFF_BASE_SECONDS),
        before_sleep=_log_retry(label, max_retries),
        sleep=sleep,
        reraise=True,
    )
    async for attempt in retrying:
        with attempt:
            result = await request_fn()
    return result


@dataclass
class Page:
    """One page of a paginated list or search response."""

    results: list[dict[str, Any]] = field(default_factory=list)
    next_after: str | None = None
    rate_limit_remaining: int | None = None

    @classmethod
    def from_response(cls, response: httpx.Response) -> "Page":
        data = response.json() if response.content else {}
        results = data.get("results") or []
        paging = data.get("paging") or {}
        next_after = (paging.get("next") or {}).get("after")

        remaining: int | None = None
        raw_remaining = response.headers.get(RATE_LIMIT_REMAINING_HEADER)
        if raw_remaining is not None:
            try:
                remaining = int(raw_remaining)
            except ValueError:
                remaining = None

        return cls(
            results=[r for r in results if isinstance(r, dict)],
            next_after=str(next_after) if next_after else None,
            rate_limit_remaining=remaining,
        )


def _error_from_response(response: httpx.Response) -> HubSpotError:
    body: dict | None = None
    if response.content:
        try:
            parsed = response.json()
            body = parsed if isinstance(parsed, dict) else None
        except ValueError:
            body = None

    message = (body or {}).get("message") or f"API error: {response.status_code}"
    kwargs = {
        "status_code": response.status_code,
        "response": body,
        "url": str(response.request.url),
        "status_text": response.reason_phrase,
    }
    if response.status_code in (401, 403):
        return HubSpotAuthError(message, **kwargs)
    if response.status_code == 429:
        return HubSpotRateLimitError(message, **kwargs)
    return HubSpotError(message, **kwargs)


class HubSpotClient:
    """HubSpot CRM v3 client.

    Usage:
        async with HubSpotClient(token) as hs:
            page = await hs.list_objects("contacts", limit=100)
    """

    def __init__(
        self,
        token: str | None,
        base_url: str = HUBSPOT_API_BASE,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        if not token:
            raise HubSpotAuthError("HubSpot access token not set", 401)

        self.base_url = base_url
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers={
                "Authorization": f"Bearer {token}",
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        await self.close()

    async def close(self):
        """Close the HTTP client."""
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        params: dict | None = None,
        json: dict | None = None,
    ) -> httpx.Response:
        response = await self._client.request(method=method, url=path, params=params, json=json)
        if response.status_code >= 400:
            raise _error_from_response(response)
        return response

    async def list_objects(
        self,
        object_type: str,
        *,
        limit: int = 100,
        after: str | None = None,
        properties: str | list[str] | None = None,
        associations: str | None = None,
    ) -> Page:
        """List one page of CRM objects (contacts, deals, ...)."""
        params: dict[str, Any] = {"limit": limit}
        if after:
            params["after"] = after
        if properties:
            params["properties"] = properties if isinstance(properties, str) else ",".join(properties)
        if associations:
            params["associations"] = associations
        response = await self._request("GET", f"/crm/v3/objects/{object_type}", params=params)
        return Page.from_response(response)

    async def search_objects(
        self,
        object_type: str,
        *,
        filter_groups: list[dict[str, Any]],
        properties: list[str] | None = None,
        limit: int = 100,
        after: str | None = None,
    ) -> Page:
        """Run one page of a filtered search."""
        body: dict[str, Any] = {
            "filterGroups": filter_groups,
            "properties": properties or [],
            "limit": limit,
        }
        if after:
            body["after"] = after
        response = await self._request("POST", f"/crm/v3/objects/{object_type}/search", json=body)
        return Page.from_response(response)

    async def list_properties(self, object_type: str) -> list[dict[str, Any]]:
        """Return property definitions currently defined for an object type."""
        response = await self._request("GET", f"/crm/v3/properties/{object_type}")
        data = response.json() if response.content else {}
        return [p for p in data.get("results") or [] if isinstance(p, dict)]
