"""
In-process webhook registry.

A ``wait`` step registers a webhook, hands its URL to the outside world
(usually in a request body sent by an earlier fetch), and blocks until the
expected number of callbacks arrive or the timeout passes. The registry is
the part of that exchange the engine owns; whatever HTTP server receives
the callbacks calls ``deliver()``.

Architecture:
    ::

        wait step ──register()──▶ WebhookRegistration(id, path, url, expires_at)
                  ──wait_for_events(id, timeout_ms)──┐
                                                     │ asyncio.Event per registration
        HTTP server ──deliver(path, body)──▶ event appended, waiter woken
                                                     │
                  ◀── WaitResult(success, events, timed_out) ┘
        wait step ──unregister(id)

Tags:
    webhooks, callbacks, asyncio, wait-step
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from missionspine.core.logging import get_logger
from missionspine.core.timestamps import to_iso8601, utc_now

logger = get_logger(__name__)

DEFAULT_TIMEOUT_MS = 300_000


@dataclass(frozen=True)
class WebhookRegistrationRequest:
    execution_id: str
    path: str | None = None
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    expected_events: int = 1


@dataclass
class WebhookRegistration:
    """A pending webhook endpoint."""

    id: str
    execution_id: str
    path: str
    url: str
    created_at: datetime
    expires_at: datetime
    expected_events: int = 1
    received_events: int = 0

    @property
    def is_expired(self) -> bool:
        return utc_now() >= self.expires_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "execution_id": self.execution_id,
            "path": self.path,
            "url": self.url,
            "created_at": to_iso8601(self.created_at),
            "expires_at": to_iso8601(self.expires_at),
            "expected_events": self.expected_events,
            "received_events": self.received_events,
        }


@dataclass
class WebhookEvent:
    """One received callback."""

    id: str
    registration_id: str
    body: Any
    method: str = "POST"
    headers: dict[str, str] = field(default_factory=dict)
    query: dict[str, str] = field(default_factory=dict)
    received_at: datetime = field(default_factory=utc_now)


@dataclass
class WaitResult:
    success: bool
    events: list[WebhookEvent] = field(default_factory=list)
    error: str | None = None
    timed_out: bool = False


class WebhookRegistry:
    """Registrations and received events, held in memory.

    Args:
        base_url: Prefix for registration URLs (``<base_url><path>``)
    """

    def __init__(self, base_url: str = "http://localhost:3000"):
        self.base_url = base_url.rstrip("/")
        self._registrations: dict[str, WebhookRegistration] = {}
        self._events: dict[str, list[WebhookEvent]] = {}
        self._signals: dict[str, asyncio.Event] = {}

    def register(self, request: WebhookRegistrationRequest) -> WebhookRegistration:
        registration_id = uuid.uuid4().hex
        path = request.path or f"/webhook/{request.execution_id}/{registration_id}"
        if not path.startswith("/"):
            path = f"/{path}"
        now = utc_now()
        registration = WebhookRegistration(
            id=registration_id,
            execution_id=request.execution_id,
            path=path,
            url=f"{self.base_url}{path}",
            created_at=now,
            expires_at=now + timedelta(milliseconds=request.timeout_ms),
            expected_events=request.expected_events,
        )
        self._registrations[registration_id] = registration
        self._events[registration_id] = []
        self._signals[registration_id] = asyncio.Event()
        logger.info("webhook.registered", path=path, expires_at=to_iso8601(registration.expires_at))
        return registration

    def get(self, registration_id: str) -> WebhookRegistration | None:
        return self._registrations.get(registration_id)

    def find_by_path(self, path: str) -> WebhookRegistration | None:
        for registration in self._registrations.values():
            if registration.path == path:
                return registration
        return None

    def list_registrations(self) -> list[WebhookRegistration]:
        return list(self._registrations.values())

    def deliver(
        self,
        path_or_id: str,
        body: Any,
        *,
        method: str = "POST",
        headers: dict[str, str] | None = None,
        query: dict[str, str] | None = None,
    ) -> WebhookEvent | None:
        """Record an incoming callback; ``None`` when unknown or expired."""
        registration = self._registrations.get(path_or_id) or self.find_by_path(path_or_id)
        if registration is None or registration.is_expired:
            logger.warning("webhook.rejected", target=path_or_id)
            return None

        event = WebhookEvent(
            id=uuid.uuid4().hex,
            registration_id=registration.id,
            body=body,
            method=method,
            headers=dict(headers or {}),
            query=dict(query or {}),
        )
        self._events[registration.id].append(event)
        registration.received_events += 1
        if registration.received_events >= registration.expected_events:
            self._signals[registration.id].set()
        logger.info("webhook.received", path=registration.path, received=registration.received_events)
        return event

    async def wait_for_events(self, registration_id: str, timeout_ms: int | None = None) -> WaitResult:
        """Block until the expected event count arrives or ``timeout_ms`` passes."""
        registration = self._registrations.get(registration_id)
        if registration is None:
            return WaitResult(success=False, error=f"Registration not found: {registration_id}")

        events = self._events[registration_id]
        if len(events) >= registration.expected_events:
            return WaitResult(success=True, events=list(events))

        if timeout_ms is None:
            timeout = max((registration.expires_at - utc_now()).total_seconds(), 0.0)
        else:
            timeout = timeout_ms / 1000

        try:
            await asyncio.wait_for(self._signals[registration_id].wait(), timeout=timeout)
        except asyncio.TimeoutError:
            events = self._events.get(registration_id, [])
            return WaitResult(
                success=len(events) >= registration.expected_events,
                events=list(events),
                timed_out=True,
            )
        return WaitResult(success=True, events=list(self._events.get(registration_id, [])))

    def unregister(self, registration_id: str) -> None:
        self._registrations.pop(registration_id, None)
        self._events.pop(registration_id, None)
        signal = self._signals.pop(registration_id, None)
        if signal is not None:
            # wake any waiter so it does not sit out its timeout
            signal.set()
        logger.debug("webhook.unregistered", registration_id=registration_id)

    def cleanup_expired(self) -> int:
        expired = [r.id for r in self._registrations.values() if r.is_expired]
        for registration_id in expired:
            self.unregister(registration_id)
        return len(expired)

    def reset(self) -> None:
        for registration_id in list(self._registrations):
            self.unregister(registration_id)
