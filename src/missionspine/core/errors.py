"""
Structured error types for mission-spine.

Provides a typed hierarchy of errors with metadata for retry decisions,
categorization and root cause analysis through error chaining.

Every failure the engine can produce is a MissionError subclass carrying:
- **Category:** What kind of error (network, validation, config, etc.)
- **Retryable:** Whether the operation can be retried automatically
- **Retry-after:** How long to wait before retrying
- **Context:** Mission, action, step, source, URL and custom fields
- **Cause:** Chained underlying exception

Control flow (skip, retry, jump, queue) is NOT represented here. Those are
returned as ``FlowResult`` values from ``missionspine.orchestration.flow``
and never raised.

Architecture:
    ::

        ┌─────────────────────────────────────────────────────────────────┐
        │                       MissionError                               │
        │  (category, retryable, retry_after, context, cause)             │
        ├─────────────────────────────────────────────────────────────────┤
        │                                                                  │
        │  TransientError    HttpError         ValidationError            │
        │  (retryable=True)  (SOURCE)          (VALIDATION)               │
        │       │                                                          │
        │  NetworkError      ConfigError       StorageError               │
        │  TimeoutError      (CONFIG)          (STORAGE)                  │
        │  RateLimitError                                                  │
        │   └ RateLimitTimeoutError                                        │
        │  CircuitOpenError                                                │
        │                                                                  │
        │  ExecutionError    EvaluationError                               │
        │  (EXECUTION)       (EXECUTION)                                   │
        │       │                                                          │
        │  StepError  NoMatchError  AbortError  StageError  FlowError     │
        └─────────────────────────────────────────────────────────────────┘

Examples:
    >>> error = RateLimitError("Rate limited by github", retry_after=30)
    >>> error.retryable
    True
    >>> error.with_context(source_name="github").context.source_name
    'github'

Tags:
    error-handling, exception-hierarchy, retry-logic, error-context

Doc-Types:
    - API Reference
    - Error Handling Guide
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Standard error categories for classification and routing."""

    # Infrastructure errors (usually transient)
    NETWORK = "NETWORK"
    STORAGE = "STORAGE"

    # Source/data errors
    SOURCE = "SOURCE"
    VALIDATION = "VALIDATION"

    # Configuration errors (never retryable)
    CONFIG = "CONFIG"

    # Engine errors
    EXECUTION = "EXECUTION"

    INTERNAL = "INTERNAL"


@dataclass
class ErrorContext:
    """
    Structured metadata attached to an error.

    Typed fields cover what the engine knows at the point of failure;
    anything else lands in ``metadata``. ``to_dict()`` drops unset fields.

    Attributes:
        mission: Mission name
        execution_id: Execution identifier (``exec_...``)
        action: Action being executed
        step: Step kind (``fetch``, ``store``, ...)
        stage_index: Pipeline stage index
        source_name: API source name
        url: URL that was being accessed
        http_status: HTTP status code if applicable
        metadata: Additional key-value pairs
    """

    mission: str | None = None
    execution_id: str | None = None
    action: str | None = None
    step: str | None = None
    stage_index: int | None = None

    source_name: str | None = None
    url: str | None = None
    http_status: int | None = None

    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["mission", "execution_id", "action", "step", "stage_index",
                    "source_name", "url", "http_status"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class MissionError(Exception):
    """
    Base exception for all mission-spine errors.

    Subclasses set ``default_category`` and ``default_retryable`` so that
    call sites only pass what differs from the default.

    Examples:
        >>> error = MissionError("Something went wrong")
        >>> error.category
        <ErrorCategory.INTERNAL: 'INTERNAL'>
        >>> error.to_dict()["retryable"]
        False
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        retry_after: float | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.retry_after = retry_after
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> MissionError:
        """
        Add context to this error (fluent API).

        Usage:
            raise StepError("Store not found: users").with_context(
                action="sync_users", step="store"
            )
        """
        for key, value in kwargs.items():
            if hasattr(self.context, key) and key != "metadata":
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result: dict[str, Any] = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        if self.retry_after is not None:
            result["retry_after"] = self.retry_after
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# TRANSIENT ERRORS (Usually Retryable)
# =============================================================================


class TransientError(MissionError):
    """
    Temporary error that may succeed on retry.

    Network timeouts, rate limiting and an open circuit are transient: the
    same request, issued again after a delay, has a reasonable chance of
    succeeding.
    """

    default_category = ErrorCategory.NETWORK
    default_retryable = True


class NetworkError(TransientError):
    """Connection-level failure (DNS, refused, reset)."""


class TimeoutError(TransientError):
    """Operation timed out."""


class RateLimitError(TransientError):
    """Rate limit exceeded for a source."""

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        *,
        source: str | None = None,
        retry_after: float | None = None,
        **kwargs: Any,
    ):
        super().__init__(message, retry_after=retry_after, **kwargs)
        self.source = source
        if source is not None:
            self.context.source_name = source


class RateLimitTimeoutError(RateLimitError):
    """Required rate-limit wait exceeds the configured maximum."""


class CircuitOpenError(TransientError):
    """Raised when a circuit is open and the request was never attempted."""

    def __init__(
        self,
        message: str = "Circuit breaker is open",
        *,
        source: str | None = None,
        next_attempt_in: float | None = None,
        **kwargs: Any,
    ):
        super().__init__(message, retry_after=next_attempt_in, **kwargs)
        self.source = source
        self.next_attempt_in = next_attempt_in
        if source is not None:
            self.context.source_name = source


# =============================================================================
# SOURCE ERRORS
# =============================================================================


class HttpError(MissionError):
    """
    Non-success HTTP response from a source.

    Retryable for 429 and 5xx; client errors are permanent.
    """

    default_category = ErrorCategory.SOURCE

    def __init__(self, status: int, message: str | None = None, *, body: Any = None, **kwargs: Any):
        kwargs.setdefault("retryable", status == 429 or status >= 500)
        super().__init__(message or f"HTTP {status}", **kwargs)
        self.status = status
        self.body = body
        self.context.http_status = status


# =============================================================================
# VALIDATION / CONFIG / STORAGE
# =============================================================================


class ValidationError(MissionError):
    """
    Validation constraint failure.

    Never retryable - data must be fixed.
    """

    default_category = ErrorCategory.VALIDATION


class ConfigError(MissionError):
    """Mission or executor configuration is invalid."""

    default_category = ErrorCategory.CONFIG


class StorageError(MissionError):
    """Store adapter or state persistence failure."""

    default_category = ErrorCategory.STORAGE


# =============================================================================
# EXECUTION ERRORS
# =============================================================================


class ExecutionError(MissionError):
    """Pipeline execution error."""

    default_category = ErrorCategory.EXECUTION


class StepError(ExecutionError):
    """A step could not run (missing store, non-iterable collection, ...)."""


class NoMatchError(ExecutionError):
    """A match step found no arm for the value."""

    def __init__(self, value: Any = None, message: str = "No matching schema found for response"):
        super().__init__(message)
        self.value = value


class AbortError(ExecutionError):
    """A match arm requested that the action fail."""

    def __init__(self, message: str | None = None):
        super().__init__(message or "Execution aborted")


class StageError(ExecutionError):
    """A pipeline stage failed; carries the failing action names."""

    def __init__(self, message: str, *, actions: list[str] | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.actions = actions or []


class FlowError(ExecutionError):
    """A flow result could not be honoured (unknown jump target, cycle)."""


class EvaluationError(MissionError):
    """Expression could not be evaluated."""

    default_category = ErrorCategory.EXECUTION


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================

_RETRYABLE_PATTERN = re.compile(
    r"timeout|timed out|network|rate limit|circuit breaker|\b429\b|\b502\b|\b503\b",
    re.IGNORECASE,
)


def is_retryable_message(message: str) -> bool:
    """Guess retry eligibility from an error message."""
    return bool(_RETRYABLE_PATTERN.search(message or ""))


def is_retryable(error: BaseException) -> bool:
    """Check if an error is retryable."""
    if isinstance(error, MissionError):
        return error.retryable
    if isinstance(error, (ConnectionError, OSError)):
        return True
    return is_retryable_message(str(error))


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "MissionError",
    "TransientError",
    "NetworkError",
    "TimeoutError",
    "RateLimitError",
    "RateLimitTimeoutError",
    "CircuitOpenError",
    "HttpError",
    "ValidationError",
    "ConfigError",
    "StorageError",
    "ExecutionError",
    "StepError",
    "NoMatchError",
    "AbortError",
    "StageError",
    "FlowError",
    "EvaluationError",
    "is_retryable",
    "is_retryable_message",
]
