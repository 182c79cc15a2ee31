"""Mission execution: durable state, events and resilience.

ARCHITECTURE
────────────
::

    ExecutionState (what ran, what failed, where to resume)
      ├── ExecutionStore      ─ file / memory persistence
      └── find_resume_point   ─ first stage not completed or skipped
      │
    EventEmitter (mission/stage/step/fetch events → subscribers)
      │
    Resilience layer, shared per source
      ├── RetryStrategy       ─ exponential / linear / constant backoff
      ├── CircuitBreaker      ─ fail-fast on a failing source
      └── AdaptiveRateLimiter ─ honours X-RateLimit-* and Retry-After
"""

from missionspine.execution.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerCallbacks,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitEvent,
    CircuitState,
)
from missionspine.execution.events import (
    EventEmitter,
    EventType,
    MissionEvent,
    ProgressCallbacks,
    log_events,
)
from missionspine.execution.rate_limit import (
    AdaptiveRateLimiter,
    RateLimitCallbacks,
    RateLimitConfig,
    RateLimitEvent,
    RateLimitStrategy,
    parse_rate_limit_headers,
)
from missionspine.execution.retry import RetryConfig, backoff_for
from missionspine.execution.state import (
    Checkpoint,
    ExecutionState,
    ExecutionStatus,
    StageState,
    StageStatus,
    can_resume,
    create_execution_state,
    find_resume_point,
    get_execution_summary,
    get_progress,
)
from missionspine.execution.store import ExecutionStore, FileExecutionStore, MemoryExecutionStore

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerCallbacks",
    "CircuitBreakerConfig",
    "CircuitBreakerRegistry",
    "CircuitEvent",
    "CircuitState",
    "EventEmitter",
    "EventType",
    "MissionEvent",
    "ProgressCallbacks",
    "log_events",
    "AdaptiveRateLimiter",
    "RateLimitCallbacks",
    "RateLimitConfig",
    "RateLimitEvent",
    "RateLimitStrategy",
    "parse_rate_limit_headers",
    "RetryConfig",
    "backoff_for",
    "Checkpoint",
    "ExecutionState",
    "ExecutionStatus",
    "StageState",
    "StageStatus",
    "can_resume",
    "create_execution_state",
    "find_resume_point",
    "get_execution_summary",
    "get_progress",
    "ExecutionStore",
    "FileExecutionStore",
    "MemoryExecutionStore",
]
