"""
Action steps.

``Step`` is a closed union: the executor dispatches on it with an
exhaustive ``match``, so adding a kind here means adding a handler there.

    fetch     HTTP request (optionally paginated / incremental)
    for       iterate a store, variable or expression
    map       reshape a value into a new dict
    validate  check constraints (error or warning)
    store     write records into a store
    match     branch on schema + guard, optionally with a flow directive
    let       bind a variable
    apply     run a named transform
    wait      block on webhook callbacks
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from missionspine.execution.retry import RetryConfig
from missionspine.orchestration.expressions import Expression
from missionspine.orchestration.flow import FlowDirective
from missionspine.sync.checkpoints import SinceFormat


# =============================================================================
# OPTION TYPES
# =============================================================================


class PaginationType(str, Enum):
    OFFSET = "offset"
    PAGE = "page"
    CURSOR = "cursor"


@dataclass(frozen=True)
class PaginationConfig:
    """How to walk pages.

    ``cursor_path`` and ``items_path`` are dotted paths into the response.
    Without ``items_path`` the first list-valued field is used.
    """

    type: PaginationType
    param: str
    page_size: int = 100
    cursor_path: str | None = None
    items_path: str | None = None


class SinceType(str, Enum):
    LAST_SYNC = "last_sync"
    EXPRESSION = "expression"


@dataclass(frozen=True)
class SinceConfig:
    type: SinceType = SinceType.LAST_SYNC
    param: str = "since"
    format: SinceFormat = SinceFormat.ISO
    key: str | None = None
    expression: Expression | None = None
    update_from: str | None = None


@dataclass(frozen=True)
class OperationRef:
    source: str
    operation_id: str


@dataclass(frozen=True)
class FieldMapping:
    field: str
    expression: Expression


@dataclass(frozen=True)
class StoreOptions:
    key: Expression | None = None
    partial: bool = False
    upsert: bool = False


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


@dataclass(frozen=True)
class ValidationConstraint:
    condition: Expression
    message: str | None = None
    severity: Severity = Severity.ERROR
    field: str | None = None


@dataclass(frozen=True)
class MatchArm:
    """``schema`` is a schema name or ``_``; exactly one of flow/steps is usually set."""

    schema: str
    guard: Expression | None = None
    flow: FlowDirective | None = None
    steps: tuple[Step, ...] = ()


# =============================================================================
# STEPS
# =============================================================================


@dataclass(frozen=True)
class FetchStep:
    method: str | None = None
    path: str | Expression | None = None
    operation: OperationRef | None = None
    source: str | None = None
    query: dict[str, Expression] = field(default_factory=dict)
    body: Expression | None = None
    headers: dict[str, Expression] = field(default_factory=dict)
    paginate: PaginationConfig | None = None
    until: Expression | None = None
    retry: RetryConfig | None = None
    since: SinceConfig | None = None
    kind = "fetch"


@dataclass(frozen=True)
class ForStep:
    variable: str
    collection: Expression
    steps: tuple[Step, ...] = ()
    where: Expression | None = None
    kind = "for"


@dataclass(frozen=True)
class MapStep:
    source: Expression
    mappings: tuple[FieldMapping, ...] = ()
    target_schema: str | None = None
    kind = "map"


@dataclass(frozen=True)
class ValidateStep:
    target: Expression
    constraints: tuple[ValidationConstraint, ...] = ()
    kind = "validate"


@dataclass(frozen=True)
class StoreStep:
    source: Expression
    target: str
    options: StoreOptions = field(default_factory=StoreOptions)
    kind = "store"


@dataclass(frozen=True)
class MatchStep:
    arms: tuple[MatchArm, ...]
    target: Expression | None = None
    kind = "match"


@dataclass(frozen=True)
class LetStep:
    name: str
    value: Expression
    kind = "let"


@dataclass(frozen=True)
class ApplyStep:
    transform: str
    source: Expression | None = None
    as_var: str | None = None
    kind = "apply"


@dataclass(frozen=True)
class WaitStep:
    path: str | None = None
    timeout_ms: int | None = None
    expected_events: int = 1
    filter: Expression | None = None
    retry_on_timeout: bool = False
    store_to: str | None = None
    store_key: Expression | None = None
    kind = "wait"


Step = (
    FetchStep | ForStep | MapStep | ValidateStep | StoreStep
    | MatchStep | LetStep | ApplyStep | WaitStep
)


def step_kind(step: Any) -> str:
    return getattr(step, "kind", type(step).__name__)


__all__ = [
    "PaginationType",
    "PaginationConfig",
    "SinceType",
    "SinceConfig",
    "OperationRef",
    "FieldMapping",
    "StoreOptions",
    "Severity",
    "ValidationConstraint",
    "MatchArm",
    "FetchStep",
    "ForStep",
    "MapStep",
    "ValidateStep",
    "StoreStep",
    "MatchStep",
    "LetStep",
    "ApplyStep",
    "WaitStep",
    "Step",
    "step_kind",
]
