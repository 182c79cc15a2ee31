"""Circuit breaker pattern for API sources.

Prevents hammering a failing upstream by failing fast once a source has
produced too many counted failures inside a rolling window.

States:
    CLOSED: Normal operation, requests pass through
    OPEN: Failing fast, requests rejected without touching the network
    HALF_OPEN: Reset timeout elapsed, trial requests allowed

Breakers are keyed by ``source`` or ``source:endpoint`` and configured per
source through ``CircuitBreakerRegistry.configure``. The registry is an
explicit object owned by the executor; there is no module-level default.

Example:
    >>> from missionspine.execution.circuit_breaker import CircuitBreakerRegistry
    >>>
    >>> breakers = CircuitBreakerRegistry()
    >>> breakers.ensure_can_proceed("github")      # raises CircuitOpenError when open
    >>> try:
    ...     response = await client.request(req)
    ...     breakers.record_success("github")
    ... except HttpError as e:
    ...     breakers.record_failure("github", status_code=e.status)
    ...     raise
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from missionspine.core.errors import CircuitOpenError
from missionspine.core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_FAILURE_STATUS_CODES = frozenset({500, 501, 502, 503, 504})


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"      # Normal operation
    OPEN = "open"          # Rejecting requests
    HALF_OPEN = "half_open"  # Testing recovery


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Per-source breaker configuration.

    Attributes:
        failure_threshold: Counted failures within the window that open the circuit
        reset_timeout: Seconds to stay open before allowing a trial request
        success_threshold: Half-open successes needed to close
        failure_window: Seconds a failure stays in the rolling window
        failure_status_codes: HTTP statuses that count as failures
        count_network_errors: Whether transport errors count as failures
    """

    failure_threshold: int = 5
    reset_timeout: float = 30.0
    success_threshold: int = 2
    failure_window: float = 60.0
    failure_status_codes: frozenset[int] = DEFAULT_FAILURE_STATUS_CODES
    count_network_errors: bool = True


@dataclass(frozen=True)
class CircuitEvent:
    """Payload handed to breaker callbacks."""

    source: str
    endpoint: str | None
    state: CircuitState
    previous_state: CircuitState | None = None
    failures: int = 0
    reason: str | None = None
    next_attempt_in: float | None = None


CircuitCallback = Callable[[CircuitEvent], Any]


@dataclass
class CircuitBreakerCallbacks:
    """Optional hooks fired on breaker transitions."""

    on_open: CircuitCallback | None = None
    on_half_open: CircuitCallback | None = None
    on_close: CircuitCallback | None = None
    on_rejected: CircuitCallback | None = None


@dataclass
class CircuitStatus:
    """Point-in-time view of one breaker."""

    key: str
    state: CircuitState
    failures: int
    successes: int
    last_failure_at: float | None
    next_attempt_at: float | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "state": self.state.value,
            "failures": self.failures,
            "successes": self.successes,
            "last_failure_at": self.last_failure_at,
            "next_attempt_at": self.next_attempt_at,
        }


@dataclass
class CircuitBreaker:
    """Breaker state for one ``source[:endpoint]`` key.

    Time is read from ``clock`` (monotonic seconds) so tests can drive the
    reset timeout without sleeping.
    """

    source: str
    endpoint: str | None = None
    config: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    callbacks: CircuitBreakerCallbacks = field(default_factory=CircuitBreakerCallbacks)
    clock: Callable[[], float] = time.monotonic

    _state: CircuitState = field(default=CircuitState.CLOSED, init=False)
    _failure_times: list[float] = field(default_factory=list, init=False)
    _successes: int = field(default=0, init=False)
    _last_failure_at: float | None = field(default=None, init=False)
    _opened_at: float | None = field(default=None, init=False)

    @property
    def key(self) -> str:
        return f"{self.source}:{self.endpoint}" if self.endpoint else self.source

    @property
    def state(self) -> CircuitState:
        """Current state, after applying a due open → half-open transition."""
        self._check_state_transition()
        return self._state

    @property
    def failures(self) -> int:
        return len(self._failure_times)

    @property
    def next_attempt_at(self) -> float | None:
        if self._state != CircuitState.OPEN or self._opened_at is None:
            return None
        return self._opened_at + self.config.reset_timeout

    def _check_state_transition(self) -> None:
        if self._state == CircuitState.OPEN and self._opened_at is not None:
            if self.clock() - self._opened_at >= self.config.reset_timeout:
                self._transition_to(CircuitState.HALF_OPEN, "Reset timeout elapsed")

    def _prune(self, now: float) -> None:
        cutoff = now - self.config.failure_window
        self._failure_times = [t for t in self._failure_times if t > cutoff]

    def _transition_to(self, new_state: CircuitState, reason: str) -> None:
        previous = self._state
        if previous == new_state:
            return
        self._state = new_state

        if new_state == CircuitState.OPEN:
            self._opened_at = self.clock()
            self._successes = 0
            callback = self.callbacks.on_open
        elif new_state == CircuitState.HALF_OPEN:
            self._successes = 0
            callback = self.callbacks.on_half_open
        else:
            self._failure_times.clear()
            self._successes = 0
            self._opened_at = None
            callback = self.callbacks.on_close

        logger.info(
            "circuit.transition",
            key=self.key,
            previous_state=previous.value,
            state=new_state.value,
            failures=self.failures,
            reason=reason,
        )
        if callback is not None:
            callback(CircuitEvent(
                source=self.source,
                endpoint=self.endpoint,
                state=new_state,
                previous_state=previous,
                failures=self.failures,
                reason=reason,
            ))

    def can_proceed(self) -> bool:
        """True unless the circuit is open and the reset timeout is still running."""
        return self.state != CircuitState.OPEN

    def ensure_can_proceed(self) -> None:
        """Raise ``CircuitOpenError`` if the request must be rejected.

        Raises:
            CircuitOpenError: Circuit is open; carries ``next_attempt_in``
        """
        if self.can_proceed():
            return

        next_attempt_at = self.next_attempt_at or self.clock()
        next_attempt_in = max(0.0, next_attempt_at - self.clock())
        if self.callbacks.on_rejected is not None:
            self.callbacks.on_rejected(CircuitEvent(
                source=self.source,
                endpoint=self.endpoint,
                state=self._state,
                failures=self.failures,
                reason="Circuit open",
                next_attempt_in=next_attempt_in,
            ))
        raise CircuitOpenError(
            f"Circuit breaker open for {self.key}. Next attempt in {round(next_attempt_in)}s",
            source=self.source,
            next_attempt_in=next_attempt_in,
        )

    def record_success(self) -> None:
        state = self.state
        if state == CircuitState.HALF_OPEN:
            self._successes += 1
            if self._successes >= self.config.success_threshold:
                self._transition_to(CircuitState.CLOSED, "Recovery confirmed")
        elif state == CircuitState.CLOSED:
            self._prune(self.clock())

    def is_counted_failure(self, status_code: int | None = None, is_network_error: bool = False) -> bool:
        if is_network_error:
            return self.config.count_network_errors
        return status_code is not None and status_code in self.config.failure_status_codes

    def record_failure(self, status_code: int | None = None, is_network_error: bool = False) -> None:
        """Record a failed request; failures outside the configured set are ignored."""
        if not self.is_counted_failure(status_code, is_network_error):
            return

        now = self.clock()
        self._last_failure_at = now
        state = self.state

        if state == CircuitState.HALF_OPEN:
            self._failure_times.append(now)
            self._transition_to(CircuitState.OPEN, "Failure during recovery attempt")
        elif state == CircuitState.CLOSED:
            self._prune(now)
            self._failure_times.append(now)
            if len(self._failure_times) >= self.config.failure_threshold:
                window_ms = round(self.config.failure_window * 1000)
                self._transition_to(
                    CircuitState.OPEN,
                    f"{len(self._failure_times)} failures in {window_ms}ms window",
                )

    def reset(self) -> None:
        """Force the breaker closed and forget recorded failures."""
        self._transition_to(CircuitState.CLOSED, "Manual reset")
        self._failure_times.clear()
        self._last_failure_at = None

    def status(self) -> CircuitStatus:
        state = self.state
        return CircuitStatus(
            key=self.key,
            state=state,
            failures=self.failures,
            successes=self._successes,
            last_failure_at=self._last_failure_at,
            next_attempt_at=self.next_attempt_at,
        )


class CircuitBreakerRegistry:
    """Registry of breakers keyed by ``source[:endpoint]``.

    Per-source configuration set through ``configure`` applies to every
    breaker created for that source afterwards (including endpoint keys).
    """

    def __init__(
        self,
        default_config: CircuitBreakerConfig | None = None,
        callbacks: CircuitBreakerCallbacks | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.default_config = default_config or CircuitBreakerConfig()
        self.callbacks = callbacks or CircuitBreakerCallbacks()
        self.clock = clock
        self._configs: dict[str, CircuitBreakerConfig] = {}
        self._breakers: dict[str, CircuitBreaker] = {}

    @staticmethod
    def make_key(source: str, endpoint: str | None = None) -> str:
        return f"{source}:{endpoint}" if endpoint else source

    def configure(self, source: str, config: CircuitBreakerConfig) -> None:
        """Set the config used for ``source``; existing breakers adopt it."""
        self._configs[source] = config
        for breaker in self._breakers.values():
            if breaker.source == source:
                breaker.config = config

    def get_or_create(self, source: str, endpoint: str | None = None) -> CircuitBreaker:
        key = self.make_key(source, endpoint)
        if key not in self._breakers:
            self._breakers[key] = CircuitBreaker(
                source=source,
                endpoint=endpoint,
                config=self._configs.get(source, self.default_config),
                callbacks=self.callbacks,
                clock=self.clock,
            )
        return self._breakers[key]

    def get_state(self, source: str, endpoint: str | None = None) -> CircuitState:
        return self.get_or_create(source, endpoint).state

    def can_proceed(self, source: str, endpoint: str | None = None) -> bool:
        return self.get_or_create(source, endpoint).can_proceed()

    def ensure_can_proceed(self, source: str, endpoint: str | None = None) -> None:
        self.get_or_create(source, endpoint).ensure_can_proceed()

    def record_success(self, source: str, endpoint: str | None = None) -> None:
        self.get_or_create(source, endpoint).record_success()

    def record_failure(
        self,
        source: str,
        endpoint: str | None = None,
        *,
        status_code: int | None = None,
        is_network_error: bool = False,
    ) -> None:
        self.get_or_create(source, endpoint).record_failure(status_code, is_network_error)

    def get_status(self, source: str, endpoint: str | None = None) -> CircuitStatus:
        return self.get_or_create(source, endpoint).status()

    def get_all_statuses(self) -> dict[str, CircuitStatus]:
        return {key: breaker.status() for key, breaker in self._breakers.items()}

    def reset(self, source: str | None = None, endpoint: str | None = None) -> None:
        """Reset one breaker, or drop every breaker when no source is given."""
        if source is None:
            self._breakers.clear()
            return
        breaker = self._breakers.get(self.make_key(source, endpoint))
        if breaker is not None:
            breaker.reset()


__all__ = [
    "CircuitState",
    "CircuitBreakerConfig",
    "CircuitEvent",
    "CircuitBreakerCallbacks",
    "CircuitStatus",
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "CircuitOpenError",
]
