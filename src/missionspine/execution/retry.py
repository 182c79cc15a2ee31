"""Retry backoff strategies for HTTP requests and retried actions.

A fetch step's ``retry`` block and a match arm's ``retry`` directive both
carry a ``RetryConfig``; ``backoff_for`` turns it into a strategy that
answers two questions: how long to wait before attempt *n*, and whether
attempt *n* is still allowed.

Example:
    >>> from missionspine.execution.retry import RetryConfig, backoff_for
    >>>
    >>> strategy = backoff_for(RetryConfig(max_attempts=5, backoff="exponential"))
    >>> for attempt in range(1, 5):
    ...     print(f"before attempt {attempt + 1}: wait {strategy.next_delay(attempt):.2f}s")
"""

from __future__ import annotations

import random
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any


class BackoffKind(str, Enum):
    EXPONENTIAL = "exponential"
    LINEAR = "linear"
    CONSTANT = "constant"


@dataclass(frozen=True)
class RetryConfig:
    """Declarative retry settings (delays in seconds).

    ``max_attempts`` counts the first try, so 3 means one try plus two retries.
    """

    max_attempts: int = 3
    backoff: BackoffKind = BackoffKind.EXPONENTIAL
    initial_delay: float = 1.0
    max_delay: float = 30.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_attempts": self.max_attempts,
            "backoff": self.backoff.value,
            "initial_delay": self.initial_delay,
            "max_delay": self.max_delay,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RetryConfig:
        return cls(
            max_attempts=data.get("max_attempts", 3),
            backoff=BackoffKind(data.get("backoff", "exponential")),
            initial_delay=data.get("initial_delay", 1.0),
            max_delay=data.get("max_delay", 30.0),
        )


class RetryStrategy(ABC):
    """Abstract base for retry strategies."""

    max_attempts: int

    @abstractmethod
    def base_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1 = first retry), without jitter."""
        ...

    def next_delay(self, attempt: int) -> float:
        """Delay in seconds before retry number ``attempt``."""
        return self.base_delay(attempt)

    def should_retry(self, attempt: int) -> bool:
        """True while ``attempt`` (attempts made so far) is below ``max_attempts``."""
        return attempt < self.max_attempts


@dataclass
class ExponentialBackoff(RetryStrategy):
    """Exponential backoff with jitter.

    Delay = min(initial_delay * 2 ** (attempt - 1), max_delay) ± jitter

    Attributes:
        max_attempts: Total attempts including the first
        initial_delay: Delay before the first retry
        max_delay: Cap on any single delay
        jitter_range: Jitter as a fraction of the delay (0.1 = ±10%)
    """

    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    jitter_range: float = 0.1

    def base_delay(self, attempt: int) -> float:
        return min(self.initial_delay * (2 ** max(attempt - 1, 0)), self.max_delay)

    def next_delay(self, attempt: int) -> float:
        delay = self.base_delay(attempt)
        if self.jitter_range:
            jitter_amount = delay * self.jitter_range
            delay += random.uniform(-jitter_amount, jitter_amount)
        return max(0.0, delay)


@dataclass
class LinearBackoff(RetryStrategy):
    """Linear backoff: initial_delay * attempt, capped."""

    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0

    def base_delay(self, attempt: int) -> float:
        return min(self.initial_delay * max(attempt, 1), self.max_delay)


@dataclass
class ConstantBackoff(RetryStrategy):
    """Constant delay between retries."""

    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0

    def base_delay(self, attempt: int) -> float:
        return min(self.initial_delay, self.max_delay)


@dataclass
class NoRetry(RetryStrategy):
    """Single attempt, no retries."""

    max_attempts: int = 1

    def base_delay(self, attempt: int) -> float:
        return 0.0


def backoff_for(config: RetryConfig | None) -> RetryStrategy:
    """Build the strategy described by ``config`` (``None`` → exponential defaults)."""
    if config is None:
        return ExponentialBackoff()
    match config.backoff:
        case BackoffKind.EXPONENTIAL:
            return ExponentialBackoff(config.max_attempts, config.initial_delay, config.max_delay)
        case BackoffKind.LINEAR:
            return LinearBackoff(config.max_attempts, config.initial_delay, config.max_delay)
        case BackoffKind.CONSTANT:
            return ConstantBackoff(config.max_attempts, config.initial_delay, config.max_delay)


__all__ = [
    "BackoffKind",
    "RetryConfig",
    "RetryStrategy",
    "ExponentialBackoff",
    "LinearBackoff",
    "ConstantBackoff",
    "NoRetry",
    "backoff_for",
]
