"""Core primitives: errors, logging, settings and timestamps."""

from missionspine.core.errors import (
    AbortError,
    CircuitOpenError,
    ConfigError,
    ErrorCategory,
    ErrorContext,
    EvaluationError,
    ExecutionError,
    FlowError,
    HttpError,
    MissionError,
    NetworkError,
    NoMatchError,
    RateLimitError,
    RateLimitTimeoutError,
    StageError,
    StepError,
    StorageError,
    TransientError,
    ValidationError,
    is_retryable,
)
from missionspine.core.logging import LogContext, configure_logging, get_logger
from missionspine.core.settings import MissionSettings, get_settings, reset_settings
from missionspine.core.timestamps import from_iso8601, generate_execution_id, to_iso8601, utc_now

__all__ = [
    "AbortError",
    "CircuitOpenError",
    "ConfigError",
    "ErrorCategory",
    "ErrorContext",
    "EvaluationError",
    "ExecutionError",
    "FlowError",
    "HttpError",
    "MissionError",
    "NetworkError",
    "NoMatchError",
    "RateLimitError",
    "RateLimitTimeoutError",
    "StageError",
    "StepError",
    "StorageError",
    "TransientError",
    "ValidationError",
    "is_retryable",
    "LogContext",
    "configure_logging",
    "get_logger",
    "MissionSettings",
    "get_settings",
    "reset_settings",
    "from_iso8601",
    "generate_execution_id",
    "to_iso8601",
    "utc_now",
]
