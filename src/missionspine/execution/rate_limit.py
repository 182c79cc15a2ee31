"""Rate Limiting: adaptive, header-driven backpressure per API source.

Manifesto:
APIs announce their budget in response headers (``X-RateLimit-*``,
``RateLimit-*``, ``Retry-After``). Rather than guessing a fixed rate up
front, the limiter learns the budget from every response and makes the
next request wait, slow down, or fail depending on the source's strategy.

ARCHITECTURE
────────────
::

    HttpClient ──▶ wait_for_capacity(source, endpoint)
                        │
                        ├── can_proceed? ── yes ── throttle? sleep(delay)
                        │
                        └── no ── strategy
                                   ├── fail     → RateLimitError
                                   ├── pause    → sleep until retry-after / reset
                                   └── throttle → same wait, then spaced requests

    response ──▶ record_response(source, headers)
                        └── parse_rate_limit_headers → RateLimitState

    State is keyed by ``source`` or ``source:endpoint`` and lives on the
    limiter instance; ``reset()`` clears it.

STRATEGIES
──────────
- ``pause``: block the calling fetch until the window clears.
- ``throttle``: as pause, and additionally space requests evenly over the
  remaining budget (or ``fallback_rpm`` when no headers were seen).
- ``fail``: raise ``RateLimitError`` instead of waiting.

Related modules:
    circuit_breaker.py - fail-fast on sustained failures
    retry.py           - backoff on transient failures

Example::

    limiter = AdaptiveRateLimiter()
    limiter.configure("github", RateLimitConfig(strategy=RateLimitStrategy.THROTTLE))
    await limiter.wait_for_capacity("github")
    response = await send()
    limiter.record_response("github", response.headers)

Tags:
    execution, rate-limit, throttle, backpressure, retry-after

Doc-Types:
    api-reference
"""

from __future__ import annotations

import asyncio
import math
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Any

from missionspine.core.errors import RateLimitError, RateLimitTimeoutError
from missionspine.core.logging import get_logger

logger = get_logger(__name__)

FALLBACK_WAIT_SECONDS = 60.0
WAITING_NOTIFY_INTERVAL = 10.0


class RateLimitStrategy(str, Enum):
    """What to do when a source is out of budget."""

    PAUSE = "pause"
    THROTTLE = "throttle"
    FAIL = "fail"


@dataclass(frozen=True)
class RateLimitConfig:
    """Per-source limiter configuration.

    Attributes:
        strategy: pause, throttle or fail
        max_wait: Longest wait (seconds) before giving up
        notify_at: Seconds of waiting before ``on_waiting`` starts firing
        fallback_rpm: Request budget per minute when no headers were seen
    """

    strategy: RateLimitStrategy = RateLimitStrategy.PAUSE
    max_wait: float = 300.0
    notify_at: float = 10.0
    fallback_rpm: int = 60


@dataclass(frozen=True)
class RateLimitInfo:
    """Budget information parsed from one response.

    ``reset_at`` is epoch seconds; ``retry_after`` is a relative delay in seconds.
    """

    remaining: int | None = None
    limit: int | None = None
    reset_at: float | None = None
    retry_after: float | None = None


@dataclass
class RateLimitState:
    """Observed budget for one key (epoch seconds throughout)."""

    remaining: int | None = None
    limit: int | None = None
    reset_at: float | None = None
    retry_after: float | None = None
    last_request_at: float | None = None


@dataclass(frozen=True)
class RateLimitEvent:
    """Payload handed to limiter callbacks."""

    source: str
    endpoint: str | None
    strategy: RateLimitStrategy
    wait_seconds: int = 0
    remaining: int | None = None
    reset_at: float | None = None
    elapsed_seconds: int = 0
    waited_seconds: int = 0


RateLimitCallback = Callable[[RateLimitEvent], Any]


@dataclass
class RateLimitCallbacks:
    """Hooks fired on entering a wait, while waiting, and on resume."""

    on_rate_limited: RateLimitCallback | None = None
    on_waiting: RateLimitCallback | None = None
    on_resumed: RateLimitCallback | None = None


@dataclass
class RateLimitStatus:
    """Point-in-time view of one key."""

    is_limited: bool
    remaining: int | None = None
    limit: int | None = None
    reset_at: float | None = None
    reset_in_seconds: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_limited": self.is_limited,
            "remaining": self.remaining,
            "limit": self.limit,
            "reset_at": self.reset_at,
            "reset_in_seconds": self.reset_in_seconds,
        }


class AdaptiveRateLimiter:
    """Header-driven rate limiter keyed per ``source[:endpoint]``.

    Args:
        default_config: Config for sources without their own
        callbacks: Wait/progress hooks
        clock: Wall-clock seconds (reset headers are epoch based)
        sleep: Async sleep used for every wait
    """

    def __init__(
        self,
        default_config: RateLimitConfig | None = None,
        callbacks: RateLimitCallbacks | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.default_config = default_config or RateLimitConfig()
        self.callbacks = callbacks or RateLimitCallbacks()
        self._clock = clock
        self._sleep = sleep
        self._configs: dict[str, RateLimitConfig] = {}
        self._state: dict[str, RateLimitState] = {}

    @staticmethod
    def make_key(source: str, endpoint: str | None = None) -> str:
        return f"{source}:{endpoint}" if endpoint else source

    def configure(self, source: str, config: RateLimitConfig) -> None:
        self._configs[source] = config

    def get_config(self, source: str) -> RateLimitConfig:
        return self._configs.get(source, self.default_config)

    def get_state(self, source: str, endpoint: str | None = None) -> RateLimitState | None:
        return self._state.get(self.make_key(source, endpoint))

    def can_proceed(self, source: str, endpoint: str | None = None) -> bool:
        key = self.make_key(source, endpoint)
        state = self._state.get(key)
        if state is None:
            return True

        now = self._clock()
        if state.retry_after is not None and state.retry_after > now:
            return False

        if state.reset_at is not None and state.reset_at <= now:
            del self._state[key]
            return True

        if state.remaining is not None and state.remaining <= 0:
            return False

        return True

    async def wait_for_capacity(self, source: str, endpoint: str | None = None) -> None:
        """Block (or raise) until ``source`` may send another request.

        Raises:
            RateLimitError: Strategy is ``fail`` and the source is limited
            RateLimitTimeoutError: The required wait exceeds ``max_wait``
        """
        config = self.get_config(source)

        if self.can_proceed(source, endpoint):
            if config.strategy == RateLimitStrategy.THROTTLE:
                delay = self.get_throttle_delay(source, endpoint)
                if delay > 0:
                    await self._sleep(delay)
            return

        state = self._state.get(self.make_key(source, endpoint)) or RateLimitState()
        now = self._clock()
        if state.retry_after is not None:
            wait_until = state.retry_after
        elif state.reset_at is not None:
            wait_until = state.reset_at
        else:
            wait_until = now + FALLBACK_WAIT_SECONDS

        total_wait = math.ceil(wait_until - now)

        if config.strategy == RateLimitStrategy.FAIL:
            message = f"Rate limited on {source}"
            if total_wait > 0:
                message += f" - resets in {total_wait}s"
            raise RateLimitError(message, source=source, retry_after=max(total_wait, 0))

        if total_wait > config.max_wait:
            raise RateLimitTimeoutError(
                f"Rate limit timeout: waited 0s (max: {config.max_wait:g}s) for {source}",
                source=source,
                retry_after=total_wait,
            )

        event = RateLimitEvent(
            source=source,
            endpoint=endpoint,
            strategy=config.strategy,
            wait_seconds=total_wait,
            remaining=state.remaining,
            reset_at=state.reset_at,
        )
        logger.warning("rate_limit.wait", source=source, endpoint=endpoint, wait_seconds=total_wait)
        if self.callbacks.on_rate_limited is not None:
            self.callbacks.on_rate_limited(event)

        started = self._clock()
        last_notify = 0
        while not self.can_proceed(source, endpoint):
            elapsed = math.floor(self._clock() - started)
            if elapsed >= config.max_wait:
                raise RateLimitTimeoutError(
                    f"Rate limit timeout: waited {elapsed}s (max: {config.max_wait:g}s) for {source}",
                    source=source,
                )

            if elapsed >= config.notify_at and elapsed - last_notify >= WAITING_NOTIFY_INTERVAL:
                last_notify = elapsed
                if self.callbacks.on_waiting is not None:
                    self.callbacks.on_waiting(replace(
                        event,
                        elapsed_seconds=elapsed,
                        wait_seconds=max(0, total_wait - elapsed),
                    ))

            remaining = wait_until - self._clock()
            await self._sleep(min(max(remaining, 1.0), 5.0))

        waited = math.floor(self._clock() - started)
        logger.info("rate_limit.resumed", source=source, endpoint=endpoint, waited_seconds=waited)
        if self.callbacks.on_resumed is not None:
            self.callbacks.on_resumed(replace(event, waited_seconds=waited, wait_seconds=0))

    def get_throttle_delay(self, source: str, endpoint: str | None = None) -> float:
        """Seconds to wait before the next request under the throttle strategy."""
        config = self.get_config(source)
        if config.strategy != RateLimitStrategy.THROTTLE:
            return 0.0
        state = self._state.get(self.make_key(source, endpoint))
        if state is None:
            return 0.0

        now = self._clock()
        if (
            state.remaining is not None
            and state.remaining > 0
            and state.reset_at is not None
            and state.reset_at > now
        ):
            interval = (state.reset_at - now) / state.remaining
            if state.last_request_at is not None:
                return max(0.0, interval - (now - state.last_request_at))
            return interval

        interval = 60.0 / config.fallback_rpm
        if state.last_request_at is not None:
            return max(0.0, interval - (now - state.last_request_at))
        return 0.0

    def record_response(
        self,
        source: str,
        headers: Mapping[str, str] | RateLimitInfo,
        endpoint: str | None = None,
    ) -> RateLimitInfo:
        """Fold one response's budget headers into the key's state."""
        info = headers if isinstance(headers, RateLimitInfo) else parse_rate_limit_headers(
            headers, now=self._clock()
        )
        key = self.make_key(source, endpoint)
        now = self._clock()
        state = self._state.setdefault(key, RateLimitState())

        if info.remaining is not None:
            state.remaining = info.remaining
        if info.limit is not None:
            state.limit = info.limit
        if info.reset_at is not None:
            state.reset_at = info.reset_at
        if info.retry_after is not None:
            state.retry_after = now + info.retry_after
        state.last_request_at = now
        return info

    def get_status(self, source: str, endpoint: str | None = None) -> RateLimitStatus:
        state = self._state.get(self.make_key(source, endpoint))
        if state is None:
            return RateLimitStatus(is_limited=False)

        now = self._clock()
        retry_pending = state.retry_after is not None and state.retry_after > now
        budget_spent = (
            state.remaining is not None
            and state.remaining <= 0
            and state.reset_at is not None
            and state.reset_at > now
        )
        is_limited = retry_pending or budget_spent

        reset_in = None
        if is_limited and state.reset_at is not None:
            reset_in = math.ceil(state.reset_at - now)
        elif is_limited and state.retry_after is not None:
            reset_in = math.ceil(state.retry_after - now)

        return RateLimitStatus(
            is_limited=is_limited,
            remaining=state.remaining,
            limit=state.limit,
            reset_at=state.reset_at,
            reset_in_seconds=reset_in,
        )

    def reset(self, source: str | None = None) -> None:
        """Forget observed budgets for ``source`` (all keys), or everything."""
        if source is None:
            self._state.clear()
            return
        for key in [k for k in self._state if k == source or k.startswith(f"{source}:")]:
            del self._state[key]


# ── Header parsing ──────────────────────────────────────────────────────

_REMAINING_HEADERS = ("x-ratelimit-remaining", "ratelimit-remaining", "x-rate-limit-remaining")
_LIMIT_HEADERS = ("x-ratelimit-limit", "ratelimit-limit", "x-rate-limit-limit")
_RESET_HEADERS = ("x-ratelimit-reset", "ratelimit-reset", "x-rate-limit-reset")


def _find_header(headers: dict[str, str], candidates: tuple[str, ...]) -> str | None:
    for candidate in candidates:
        if candidate in headers:
            return headers[candidate]
    return None


def _parse_int(value: str) -> int | None:
    try:
        return int(value.strip().split(".")[0])
    except (ValueError, AttributeError):
        return None


def _parse_date(value: str) -> datetime | None:
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        parsed = None
    if parsed is None:
        try:
            parsed = datetime.fromisoformat(value.strip())
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def parse_rate_limit_headers(headers: Mapping[str, str], now: float | None = None) -> RateLimitInfo:
    """Parse budget headers from a response.

    Supports ``X-RateLimit-*``, ``RateLimit-*`` and ``X-Rate-Limit-*``
    (remaining, limit, reset) plus ``Retry-After``. A reset value may be unix
    seconds, unix milliseconds or a date; ``Retry-After`` may be seconds or an
    HTTP date.
    """
    now = time.time() if now is None else now
    normalized = {str(k).lower(): str(v) for k, v in headers.items()}

    remaining = limit = None
    reset_at = retry_after = None

    raw = _find_header(normalized, _REMAINING_HEADERS)
    if raw is not None:
        remaining = _parse_int(raw)

    raw = _find_header(normalized, _LIMIT_HEADERS)
    if raw is not None:
        limit = _parse_int(raw)

    raw = _find_header(normalized, _RESET_HEADERS)
    if raw is not None:
        as_number = _parse_int(raw)
        if as_number is not None:
            reset_at = as_number / 1000 if as_number > 1_000_000_000_000 else float(as_number)
        else:
            parsed = _parse_date(raw)
            if parsed is not None:
                reset_at = parsed.timestamp()

    raw = normalized.get("retry-after")
    if raw:
        as_number = _parse_int(raw)
        if as_number is not None:
            retry_after = float(as_number)
        else:
            parsed = _parse_date(raw)
            if parsed is not None:
                retry_after = float(math.ceil(parsed.timestamp() - now))

    return RateLimitInfo(remaining=remaining, limit=limit, reset_at=reset_at, retry_after=retry_after)


__all__ = [
    "RateLimitStrategy",
    "RateLimitConfig",
    "RateLimitInfo",
    "RateLimitState",
    "RateLimitEvent",
    "RateLimitCallbacks",
    "RateLimitStatus",
    "AdaptiveRateLimiter",
    "parse_rate_limit_headers",
]
