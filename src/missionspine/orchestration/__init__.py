"""
Mission orchestration: the parsed mission model and the engine that runs it.

ARCHITECTURE
────────────
::

    Mission (sources, stores, schemas, transforms, actions, pipeline)
      │
      ▼
    MissionExecutor.execute()
      ├── stage loop (sequential | parallel, guard conditions, resume)
      ├── run_action ─ flow results: continue / skip / retry / jump / queue / abort
      └── StepHandlers ─ fetch, for, map, validate, store, match, let, apply, wait
            ├── FetchOrchestrator ─ target, since, pagination, circuit breaker
            ├── HttpClient        ─ httpx, rate limiter, retries
            └── evaluate()        ─ expression trees against an ExecutionScope
"""

from missionspine.orchestration.executor import (
    ExecutionResult,
    ExecutorConfig,
    MissionExecutor,
)
from missionspine.orchestration.flow import (
    Abort,
    Continue,
    FlowResult,
    Jump,
    Queue,
    Retry,
    Skip,
)
from missionspine.orchestration.mission import (
    ActionDefinition,
    AuthConfig,
    AuthType,
    Mission,
    Operation,
    SchemaDefinition,
    SourceDefinition,
    Stage,
    StaticOperationResolver,
    StoreDefinition,
    TransformDefinition,
    TransformVariant,
)
from missionspine.orchestration.scope import ExecutionScope, MissionResources
from missionspine.orchestration.step_handlers import ErrorRecord

__all__ = [
    "ExecutionResult",
    "ExecutorConfig",
    "MissionExecutor",
    "Abort",
    "Continue",
    "FlowResult",
    "Jump",
    "Queue",
    "Retry",
    "Skip",
    "ActionDefinition",
    "AuthConfig",
    "AuthType",
    "Mission",
    "Operation",
    "SchemaDefinition",
    "SourceDefinition",
    "Stage",
    "StaticOperationResolver",
    "StoreDefinition",
    "TransformDefinition",
    "TransformVariant",
    "ExecutionScope",
    "MissionResources",
    "ErrorRecord",
]
