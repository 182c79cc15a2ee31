"""
Async HTTP client for mission sources.

One ``HttpClient`` per source, built on ``httpx.AsyncClient``. It owns
the per-request concerns: base URL joining, default JSON headers, auth
(static headers or an OAuth2 flow), the circuit breaker and rate limiter
checks, and retrying what is worth retrying.

Retry policy:
    - 429: wait ``Retry-After`` (or the backoff delay) and try again; when a
      rate limiter is attached and now reports the source as limited, the
      limiter does the waiting before the next attempt
    - 5xx, transport errors and timeouts: backoff, up to ``max_attempts`` attempts
    - other 4xx: fail immediately with ``HttpError``

Every attempt passes the source's circuit breaker first, so an open circuit
never reaches the limiter or the network. Each response and transport
error is recorded against the breaker, retries included.

Example:
    >>> async with HttpClient("https://api.example.com", source="example") as client:
    ...     response = await client.request(HttpRequest("GET", "/users", query={"page": "1"}))
    ...     response.data
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import httpx

from missionspine.core.errors import HttpError, NetworkError
from missionspine.core.errors import TimeoutError as RequestTimeoutError
from missionspine.core.logging import get_logger
from missionspine.execution.circuit_breaker import CircuitBreakerRegistry
from missionspine.execution.rate_limit import AdaptiveRateLimiter
from missionspine.execution.retry import RetryConfig, backoff_for
from missionspine.orchestration.auth import OAuth2Auth
from missionspine.orchestration.mission import AuthConfig, AuthType

logger = get_logger(__name__)

DEFAULT_HEADERS = {
    "Content-Type": "application/json",
    "Accept": "application/json",
}


@dataclass
class HttpRequest:
    method: str
    path: str
    query: dict[str, str] | None = None
    body: Any = None
    headers: dict[str, str] = field(default_factory=dict)


@dataclass
class HttpResponse:
    status: int
    headers: dict[str, str]
    data: Any


def _parse_body(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


def _retry_after_seconds(response: httpx.Response) -> float | None:
    value = response.headers.get("retry-after")
    if value is None:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None


class HttpClient:
    """Retrying JSON client bound to one source.

    Args:
        base_url: Prefix for every request path
        source: Source name used as the rate limiter key
        headers: Extra default headers
        auth: Credentials added to every request (``oauth2`` refreshes its token)
        rate_limiter: Shared limiter consulted before each attempt
        circuit_breakers: Breaker registry checked and updated on each attempt
        timeout: Per-request timeout in seconds
        max_attempts: Attempts when the request carries no retry config
        transport: Optional httpx transport (tests, proxies)
        sleep: Async sleep used between attempts
    """

    def __init__(
        self,
        base_url: str,
        *,
        source: str = "default",
        headers: dict[str, str] | None = None,
        auth: AuthConfig | None = None,
        rate_limiter: AdaptiveRateLimiter | None = None,
        circuit_breakers: CircuitBreakerRegistry | None = None,
        timeout: float = 30.0,
        max_attempts: int = 3,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.base_url = base_url.rstrip("/")
        self.source = source
        self.auth = auth
        self.rate_limiter = rate_limiter
        self.circuit_breakers = circuit_breakers
        self.max_attempts = max_attempts
        self._sleep = sleep

        default_headers = {**DEFAULT_HEADERS, **(headers or {})}
        if auth is not None:
            default_headers.update(auth.headers())

        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=default_headers,
            timeout=timeout,
            transport=transport,
            auth=OAuth2Auth(auth) if auth is not None and auth.type == AuthType.OAUTH2 else None,
        )

    async def __aenter__(self) -> HttpClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    def _url(self, path: str) -> str:
        return path if path.startswith("/") else f"/{path}"

    async def request(self, req: HttpRequest, retry: RetryConfig | None = None) -> HttpResponse:
        """Send ``req``, retrying per ``retry`` (or the client default).

        Raises:
            HttpError: Final response was 4xx/5xx
            NetworkError: Transport failed on every attempt
            TimeoutError: The last attempt timed out
            CircuitOpenError: The source's circuit is open
            RateLimitError: The rate limiter refused to wait
        """
        strategy = backoff_for(retry) if retry is not None else backoff_for(
            RetryConfig(max_attempts=self.max_attempts)
        )
        max_attempts = max(strategy.max_attempts, 1)
        url = self._url(req.path)
        last_error: Exception | None = None

        for attempt in range(1, max_attempts + 1):
            if self.circuit_breakers is not None:
                self.circuit_breakers.ensure_can_proceed(self.source)
            if self.rate_limiter is not None:
                await self.rate_limiter.wait_for_capacity(self.source)

            try:
                response = await self._client.request(
                    req.method.upper(),
                    url,
                    params=req.query or None,
                    json=req.body,
                    headers=req.headers or None,
                )
            except httpx.TransportError as e:
                if self.circuit_breakers is not None:
                    self.circuit_breakers.record_failure(self.source, is_network_error=True)
                if isinstance(e, httpx.TimeoutException):
                    last_error = RequestTimeoutError(f"Timed out on {req.method} {url}: {e}", cause=e)
                else:
                    last_error = NetworkError(f"Network error on {req.method} {url}: {e}", cause=e)
                if attempt < max_attempts:
                    delay = strategy.next_delay(attempt)
                    logger.warning("http.retry", source=self.source, reason=str(e), attempt=attempt, delay=delay)
                    await self._sleep(delay)
                    continue
                raise last_error from e

            status = response.status_code
            if self.circuit_breakers is not None:
                if status >= 400:
                    self.circuit_breakers.record_failure(self.source, status_code=status)
                else:
                    self.circuit_breakers.record_success(self.source)
            if self.rate_limiter is not None:
                self.rate_limiter.record_response(self.source, dict(response.headers))

            data = _parse_body(response)

            if status == 429 and attempt < max_attempts:
                limited = self.rate_limiter is not None and not self.rate_limiter.can_proceed(self.source)
                if not limited:
                    delay = _retry_after_seconds(response)
                    if delay is None:
                        delay = strategy.next_delay(attempt)
                    logger.warning("http.rate_limited", source=self.source, path=url, delay=delay)
                    await self._sleep(delay)
                continue

            if status >= 500 and attempt < max_attempts:
                delay = strategy.next_delay(attempt)
                logger.warning("http.retry", source=self.source, status=status, attempt=attempt, delay=delay)
                await self._sleep(delay)
                continue

            if status >= 400:
                raise HttpError(status, f"HTTP {status} on {req.method} {url}", body=data)

            return HttpResponse(status=status, headers=dict(response.headers), data=data)

        # the last attempt always returns or raises above
        raise last_error or HttpError(0, f"No attempt made for {req.method} {url}")


__all__ = [
    "DEFAULT_HEADERS",
    "HttpRequest",
    "HttpResponse",
    "HttpClient",
]
