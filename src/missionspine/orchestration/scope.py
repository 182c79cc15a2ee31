"""
Execution scope: the explicit context every step runs in.

A scope holds variable bindings, the "current response" (the last fetch or
map result), and a link to its parent. Lookups fall through to the parent,
bindings never do: ``set`` always writes to the scope it is called on, so a
child can shadow a parent variable without changing it.

Mission-level resources (HTTP clients, store adapters, the mission
definition itself) live on a shared ``MissionResources`` object that every
scope of a run points at. They are handles, not copies.

Architecture:
    ::

        root scope (guard conditions, run-wide lets)
          ├── action scope A   (parallel stage, isolated response/variables)
          │     └── item scope (for-loop body, loop variable bound)
          └── action scope B

    Scopes are passed as arguments through the executor, handlers and
    evaluator; nothing swaps a shared "current context" field.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from missionspine.orchestration.http import HttpClient
    from missionspine.orchestration.mission import Mission
    from missionspine.stores.base import StoreAdapter


@dataclass
class MissionResources:
    """Shared, read-only handles for one run."""

    mission: Mission
    sources: dict[str, HttpClient] = field(default_factory=dict)
    stores: dict[str, StoreAdapter] = field(default_factory=dict)


_UNSET: Any = object()


class ExecutionScope:
    """Variable bindings plus the current response, chained to a parent."""

    def __init__(
        self,
        resources: MissionResources,
        parent: ExecutionScope | None = None,
        variables: dict[str, Any] | None = None,
    ):
        self.resources = resources
        self.parent = parent
        self.variables: dict[str, Any] = dict(variables or {})
        self._response: Any = _UNSET

    @property
    def mission(self) -> Mission:
        return self.resources.mission

    @property
    def stores(self) -> dict[str, StoreAdapter]:
        return self.resources.stores

    @property
    def sources(self) -> dict[str, HttpClient]:
        return self.resources.sources

    @property
    def response(self) -> Any:
        """The nearest response set on this scope or an ancestor."""
        scope: ExecutionScope | None = self
        while scope is not None:
            if scope._response is not _UNSET:
                return scope._response
            scope = scope.parent
        return None

    @response.setter
    def response(self, value: Any) -> None:
        self._response = value

    def child(self, **bindings: Any) -> ExecutionScope:
        return ExecutionScope(self.resources, parent=self, variables=bindings)

    def has(self, name: str) -> bool:
        scope: ExecutionScope | None = self
        while scope is not None:
            if name in scope.variables:
                return True
            scope = scope.parent
        return False

    def get(self, name: str, default: Any = None) -> Any:
        scope: ExecutionScope | None = self
        while scope is not None:
            if name in scope.variables:
                return scope.variables[name]
            scope = scope.parent
        return default

    def set(self, name: str, value: Any) -> None:
        self.variables[name] = value

    def snapshot(self) -> dict[str, Any]:
        """Flattened bindings visible from this scope (inner wins)."""
        chain = []
        scope: ExecutionScope | None = self
        while scope is not None:
            chain.append(scope.variables)
            scope = scope.parent
        merged: dict[str, Any] = {}
        for variables in reversed(chain):
            merged.update(variables)
        return merged

    def __repr__(self) -> str:
        depth = 0
        scope = self.parent
        while scope is not None:
            depth += 1
            scope = scope.parent
        return f"ExecutionScope(depth={depth}, variables={sorted(self.variables)})"
