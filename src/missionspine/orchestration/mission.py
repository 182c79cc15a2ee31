"""
Mission object graph.

A ``Mission`` is the fully resolved pipeline definition handed over by the
parser: named sources, stores, schemas, transforms, actions and the ordered
list of stages. Everything here is frozen; the executor reads a mission but
never changes it.

Manifesto:
    Missions are data, not code. The executor walks this graph; nothing in
    it knows how to run itself. Keeping the graph immutable means a run can
    share it across parallel actions without copying.

Architecture:
    ::

        Mission
          ├── sources:    SourceDefinition(base_url, auth, rate_limit, circuit_breaker, operations)
          ├── stores:     StoreDefinition(store_type, target)
          ├── schemas:    SchemaDefinition(fields: FieldDefinition(name, FieldType, optional))
          ├── transforms: TransformDefinition(variants: TransformVariant)
          ├── actions:    ActionDefinition(steps: Step union)
          └── pipeline:   Stage(actions, condition)

Tags:
    mission, pipeline, definition, immutable
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol

from missionspine.execution.circuit_breaker import CircuitBreakerConfig
from missionspine.execution.rate_limit import RateLimitConfig

if TYPE_CHECKING:
    from missionspine.orchestration.expressions import Expression
    from missionspine.orchestration.steps import FieldMapping, Step


# =============================================================================
# SOURCES
# =============================================================================


class AuthType(str, Enum):
    NONE = "none"
    BEARER = "bearer"
    API_KEY = "api_key"
    OAUTH2 = "oauth2"


@dataclass(frozen=True)
class AuthConfig:
    """Credentials attached to every request of a source.

    ``header`` names the header for ``api_key`` auth (default ``X-API-Key``).
    For ``oauth2``, ``token`` is the current access token (optional when
    client credentials are given) and ``refresh_buffer`` is how many seconds
    before expiry a token is refreshed.
    """

    type: AuthType = AuthType.NONE
    token: str | None = None
    header: str | None = None
    refresh_token: str | None = None
    token_endpoint: str | None = None
    client_id: str | None = None
    client_secret: str | None = None
    scope: str | None = None
    refresh_buffer: float = 300.0

    def headers(self) -> dict[str, str]:
        if not self.token:
            return {}
        match self.type:
            case AuthType.BEARER:
                return {"Authorization": f"Bearer {self.token}"}
            case AuthType.API_KEY:
                return {self.header or "X-API-Key": self.token}
            case _:
                return {}


@dataclass(frozen=True)
class Operation:
    method: str
    path: str
    parameters: tuple[str, ...] = ()


class OperationResolver(Protocol):
    """Per-source operation lookup, normally backed by an OpenAPI document."""

    @property
    def base_url(self) -> str | None: ...

    def get_operation(self, operation_id: str) -> Operation | None: ...


@dataclass
class StaticOperationResolver:
    """Operation table held in memory."""

    operations: dict[str, Operation] = field(default_factory=dict)
    base_url: str | None = None

    def get_operation(self, operation_id: str) -> Operation | None:
        return self.operations.get(operation_id)


@dataclass(frozen=True)
class SourceDefinition:
    name: str
    base_url: str | None = None
    headers: dict[str, str] = field(default_factory=dict)
    auth: AuthConfig | None = None
    rate_limit: RateLimitConfig | None = None
    circuit_breaker: CircuitBreakerConfig | None = None
    operations: OperationResolver | None = None

    def resolved_base_url(self) -> str | None:
        if self.base_url:
            return self.base_url
        if self.operations is not None:
            return self.operations.base_url
        return None


# =============================================================================
# STORES / SCHEMAS / TRANSFORMS
# =============================================================================


@dataclass(frozen=True)
class StoreDefinition:
    name: str
    store_type: str = "memory"  # memory | file | nosql | sql
    target: str | None = None

    @property
    def target_name(self) -> str:
        return self.target or self.name


class FieldKind(str, Enum):
    PRIMITIVE = "primitive"
    COLLECTION = "collection"
    REFERENCE = "reference"
    UNION = "union"
    GENERATOR = "generator"
    EXPRESSION = "expression"
    RANGE = "range"
    TUPLE = "tuple"


@dataclass(frozen=True)
class FieldType:
    name: str = "any"
    kind: FieldKind = FieldKind.PRIMITIVE


@dataclass(frozen=True)
class FieldDefinition:
    name: str
    type: FieldType = field(default_factory=FieldType)
    optional: bool = False


@dataclass(frozen=True)
class SchemaDefinition:
    name: str
    fields: tuple[FieldDefinition, ...] = ()


@dataclass(frozen=True)
class TransformVariant:
    mappings: tuple[FieldMapping, ...] = ()
    source_schema: str | None = None
    target_schema: str | None = None
    guard: Expression | None = None


@dataclass(frozen=True)
class TransformDefinition:
    name: str
    variants: tuple[TransformVariant, ...] = ()


# =============================================================================
# ACTIONS / PIPELINE
# =============================================================================


@dataclass(frozen=True)
class ActionDefinition:
    name: str
    steps: tuple[Step, ...] = ()


@dataclass(frozen=True)
class Stage:
    """One pipeline entry: a single action, or several run concurrently."""

    actions: tuple[str, ...]
    condition: Expression | None = None

    @property
    def is_parallel(self) -> bool:
        return len(self.actions) > 1

    @property
    def name(self) -> str:
        if self.is_parallel:
            return f"[{', '.join(self.actions)}]"
        return self.actions[0]


@dataclass(frozen=True)
class Mission:
    name: str
    sources: tuple[SourceDefinition, ...] = ()
    stores: tuple[StoreDefinition, ...] = ()
    schemas: tuple[SchemaDefinition, ...] = ()
    transforms: tuple[TransformDefinition, ...] = ()
    actions: tuple[ActionDefinition, ...] = ()
    pipeline: tuple[Stage, ...] = ()
    metadata: dict[str, Any] = field(default_factory=dict)

    def get_action(self, name: str) -> ActionDefinition | None:
        return next((a for a in self.actions if a.name == name), None)

    def get_schema(self, name: str) -> SchemaDefinition | None:
        return next((s for s in self.schemas if s.name == name), None)

    def get_transform(self, name: str) -> TransformDefinition | None:
        return next((t for t in self.transforms if t.name == name), None)

    def get_store(self, name: str) -> StoreDefinition | None:
        return next((s for s in self.stores if s.name == name), None)

    def get_source(self, name: str) -> SourceDefinition | None:
        return next((s for s in self.sources if s.name == name), None)

    @property
    def schema_map(self) -> dict[str, SchemaDefinition]:
        return {s.name: s for s in self.schemas}


__all__ = [
    "AuthType",
    "AuthConfig",
    "Operation",
    "OperationResolver",
    "StaticOperationResolver",
    "SourceDefinition",
    "StoreDefinition",
    "FieldKind",
    "FieldType",
    "FieldDefinition",
    "SchemaDefinition",
    "TransformVariant",
    "TransformDefinition",
    "ActionDefinition",
    "Stage",
    "Mission",
]
