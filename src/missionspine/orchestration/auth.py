"""
OAuth2 bearer auth for mission sources.

``OAuth2Auth`` is an ``httpx.Auth`` flow bound to one source's
``httpx.AsyncClient``. It attaches the current access token to each request
and fetches a new one through the token endpoint when the token is missing,
about to expire, or rejected with a 401. Token requests are sent by the same
client, so they share its transport.

Grants:
    - ``refresh_token`` when a refresh token is known
    - ``client_credentials`` when only a client id (and secret) is configured

Concurrent requests on one source refresh at most once: the refresh runs
under a lock and is skipped when another request already replaced the token.

Example:
    >>> auth = OAuth2Auth(AuthConfig(
    ...     type=AuthType.OAUTH2,
    ...     token="access",
    ...     refresh_token="refresh",
    ...     token_endpoint="https://auth.example.com/oauth/token",
    ...     client_id="mission",
    ... ))
    >>> client = httpx.AsyncClient(auth=auth)
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncGenerator, Callable, Generator
from typing import Any

import httpx

from missionspine.core.errors import ConfigError, HttpError
from missionspine.core.logging import get_logger
from missionspine.orchestration.mission import AuthConfig

logger = get_logger(__name__)


class OAuth2Auth(httpx.Auth):
    """Access-token auth with refresh, for ``httpx.AsyncClient`` only."""

    requires_response_body = True

    def __init__(self, config: AuthConfig, *, clock: Callable[[], float] = time.time):
        if not config.token and not config.token_endpoint:
            raise ConfigError("OAuth2 auth needs an access token or a token_endpoint")
        self.config = config
        self.access_token = config.token
        self.refresh_token = config.refresh_token
        self.expires_at: float | None = None
        self._clock = clock
        self._lock = asyncio.Lock()

    @property
    def can_refresh(self) -> bool:
        return bool(self.config.token_endpoint) and bool(self.refresh_token or self.config.client_id)

    def needs_refresh(self) -> bool:
        """True without a token, or within ``refresh_buffer`` of expiry."""
        if not self.access_token:
            return True
        if self.expires_at is None:
            return False
        return self.expires_at - self._clock() < self.config.refresh_buffer

    def build_refresh_request(self) -> httpx.Request:
        if not self.config.token_endpoint:
            raise ConfigError("OAuth2 auth has no token_endpoint to refresh from")

        if self.refresh_token:
            form = {"grant_type": "refresh_token", "refresh_token": self.refresh_token}
        elif self.config.client_id:
            form = {"grant_type": "client_credentials"}
        else:
            raise ConfigError("OAuth2 auth needs a refresh token or client credentials")

        if self.config.client_id:
            form["client_id"] = self.config.client_id
        if self.config.client_secret:
            form["client_secret"] = self.config.client_secret
        if self.config.scope:
            form["scope"] = self.config.scope

        return httpx.Request(
            "POST",
            self.config.token_endpoint,
            data=form,
            headers={"Accept": "application/json"},
        )

    def update_tokens(self, response: httpx.Response) -> None:
        """Take the new tokens from a token endpoint response.

        Raises:
            HttpError: The endpoint refused or answered without ``access_token``
        """
        status = response.status_code
        if status >= 400:
            raise HttpError(status, f"Token refresh failed: {status} {response.text}", body=response.text)

        try:
            payload: Any = response.json()
        except ValueError as e:
            raise HttpError(status, "Token endpoint returned invalid JSON", body=response.text) from e

        token = payload.get("access_token") if isinstance(payload, dict) else None
        if not token:
            raise HttpError(status, "Token endpoint response has no access_token", body=payload)

        self.access_token = token
        # keep the old refresh token unless the server rotated it
        self.refresh_token = payload.get("refresh_token") or self.refresh_token
        expires_in = payload.get("expires_in")
        self.expires_at = self._clock() + float(expires_in) if expires_in else None
        logger.info("oauth2.token_refreshed", endpoint=self.config.token_endpoint, expires_in=expires_in)

    def _authorize(self, request: httpx.Request) -> None:
        request.headers["Authorization"] = f"Bearer {self.access_token}"

    def sync_auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        raise RuntimeError("OAuth2Auth requires httpx.AsyncClient")

    async def async_auth_flow(self, request: httpx.Request) -> AsyncGenerator[httpx.Request, httpx.Response]:
        if self.needs_refresh():
            async with self._lock:
                if self.needs_refresh():
                    token_response = yield self.build_refresh_request()
                    self.update_tokens(token_response)

        self._authorize(request)
        response = yield request

        if response.status_code == 401 and self.can_refresh:
            rejected = self.access_token
            async with self._lock:
                if self.access_token == rejected:
                    logger.info("oauth2.token_rejected", url=str(request.url))
                    token_response = yield self.build_refresh_request()
                    self.update_tokens(token_response)
            self._authorize(request)
            yield request


__all__ = ["OAuth2Auth"]
