"""
Expression nodes and the evaluator.

Missions arrive already parsed; conditions, mappings, keys and filters are
trees of the node types below. ``evaluate(expr, scope, current)`` walks a
tree against an ``ExecutionScope`` and an optional *current* value (the
item being filtered, mapped or keyed).

Identifier lookup order:
    1. field of ``current`` (when it is a mapping)
    2. variable in the scope chain (inner scopes shadow outer ones)
    3. the keyword ``response``
    4. field of the scope's response

Qualified names (``a.b.c``) walk from ``current`` (or the response) and fall
back to the variable named by the first part when the walk hits a
non-mapping. Missing paths evaluate to ``None``.

Examples:
    >>> evaluate(BinaryOp(">", Identifier("total"), Literal(100)), scope, {"total": 250})
    True
    >>> interpolate_path("/users/{user.id}/orders", scope)
    '/users/42/orders'
"""

from __future__ import annotations

import math
import operator
import os
import random
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from missionspine.core.errors import EvaluationError
from missionspine.core.timestamps import utc_now
from missionspine.orchestration.scope import ExecutionScope

WILDCARD = "_"

MISSING: Any = object()


# ── Nodes ───────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class Identifier:
    name: str


@dataclass(frozen=True)
class QualifiedName:
    parts: tuple[str, ...]

    @classmethod
    def of(cls, dotted: str) -> QualifiedName:
        return cls(tuple(dotted.split(".")))


@dataclass(frozen=True)
class BinaryOp:
    operator: str
    left: Expression
    right: Expression


@dataclass(frozen=True)
class LogicalOp:
    operator: str  # "and" | "or"
    left: Expression
    right: Expression


@dataclass(frozen=True)
class Not:
    operand: Expression


@dataclass(frozen=True)
class UnaryOp:
    operator: str  # "-" | "+"
    operand: Expression


@dataclass(frozen=True)
class Ternary:
    condition: Expression
    consequent: Expression
    alternate: Expression


@dataclass(frozen=True)
class Call:
    callee: str
    arguments: tuple[Expression, ...] = ()


@dataclass(frozen=True)
class MatchArm:
    pattern: Expression
    result: Expression


@dataclass(frozen=True)
class MatchExpr:
    value: Expression
    arms: tuple[MatchArm, ...]


@dataclass(frozen=True)
class AnyOf:
    collection: Expression
    condition: Expression | None = None


@dataclass(frozen=True)
class ObjectLiteral:
    fields: tuple[tuple[str, Expression], ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class ListLiteral:
    items: tuple[Expression, ...] = ()


Expression = (
    Literal | Identifier | QualifiedName | BinaryOp | LogicalOp | Not | UnaryOp
    | Ternary | Call | MatchExpr | AnyOf | ObjectLiteral | ListLiteral
)


# ── Built-ins ───────────────────────────────────────────────────────────


def _length(value: Any = None) -> int:
    if isinstance(value, (list, tuple, str, dict)):
        return len(value)
    return 0


def _sum(values: Any = None) -> float:
    if not isinstance(values, (list, tuple)):
        return 0
    return sum(v for v in values if isinstance(v, (int, float)) and not isinstance(v, bool))


def _first(values: Any = None) -> Any:
    return values[0] if isinstance(values, (list, tuple)) and values else None


def _last(values: Any = None) -> Any:
    return values[-1] if isinstance(values, (list, tuple)) and values else None


def _round(value: Any, digits: int | None = None) -> Any:
    if digits is None:
        # half-up, matching what API consumers expect from "round"
        return math.floor(value + 0.5)
    return round(value, digits)


def _env(name: str, default: Any = None) -> Any:
    return os.environ.get(name, default)


def _now() -> Any:
    return utc_now()


BUILTINS: dict[str, Callable[..., Any]] = {
    "length": _length,
    "count": _length,
    "sum": _sum,
    "first": _first,
    "last": _last,
    "round": _round,
    "floor": math.floor,
    "ceil": math.ceil,
    "min": lambda *a: min(a[0]) if len(a) == 1 else min(a),
    "max": lambda *a: max(a[0]) if len(a) == 1 else max(a),
    "now": _now,
    "env": _env,
}

_BINARY: dict[str, Callable[[Any, Any], Any]] = {
    "+": operator.add,
    "-": operator.sub,
    "*": operator.mul,
    "/": operator.truediv,
    "%": operator.mod,
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    ">": operator.gt,
    "<=": operator.le,
    ">=": operator.ge,
}


# ── Evaluation ──────────────────────────────────────────────────────────


def _field(obj: Any, name: str) -> Any:
    if isinstance(obj, Mapping):
        return obj.get(name, MISSING)
    return MISSING


def _lookup_identifier(name: str, scope: ExecutionScope, current: Any) -> Any:
    value = _field(current, name)
    if value is not MISSING:
        return value
    if scope.has(name):
        return scope.get(name)
    if name == "response":
        return scope.response
    value = _field(scope.response, name)
    return None if value is MISSING else value


def _walk(value: Any, parts: tuple[str, ...]) -> Any:
    for part in parts:
        if not isinstance(value, Mapping):
            return None
        value = value.get(part)
    return value


def _lookup_qualified(parts: tuple[str, ...], scope: ExecutionScope, current: Any) -> Any:
    root = current if current is not MISSING and current is not None else scope.response
    value = root
    for index, part in enumerate(parts):
        if isinstance(value, Mapping):
            value = value.get(part)
            continue
        if index == 0 and parts[0] == "response":
            return _walk(scope.response, parts[1:])
        return _walk(scope.get(parts[0]), parts[1:])
    if value is None and scope.has(parts[0]):
        return _walk(scope.get(parts[0]), parts[1:])
    return value


def evaluate(
    expr: Expression,
    scope: ExecutionScope,
    current: Any = MISSING,
    *,
    rng: random.Random | None = None,
) -> Any:
    """Evaluate ``expr`` against ``scope`` with an optional current value."""
    match expr:
        case Literal(value=value):
            return value

        case Identifier(name=name):
            return _lookup_identifier(name, scope, current)

        case QualifiedName(parts=parts):
            return _lookup_qualified(parts, scope, current)

        case BinaryOp(operator=op, left=left, right=right):
            fn = _BINARY.get(op)
            if fn is None:
                raise EvaluationError(f"Unknown operator: {op}")
            lhs = evaluate(left, scope, current, rng=rng)
            rhs = evaluate(right, scope, current, rng=rng)
            try:
                return fn(lhs, rhs)
            except (TypeError, ZeroDivisionError) as e:
                raise EvaluationError(f"Cannot evaluate {lhs!r} {op} {rhs!r}", cause=e) from e

        case LogicalOp(operator="and", left=left, right=right):
            return bool(evaluate(left, scope, current, rng=rng)) and bool(
                evaluate(right, scope, current, rng=rng)
            )

        case LogicalOp(operator="or", left=left, right=right):
            return bool(evaluate(left, scope, current, rng=rng)) or bool(
                evaluate(right, scope, current, rng=rng)
            )

        case Not(operand=operand):
            return not evaluate(operand, scope, current, rng=rng)

        case UnaryOp(operator=op, operand=operand):
            value = evaluate(operand, scope, current, rng=rng)
            if op == "-":
                return -value
            return value

        case Ternary(condition=condition, consequent=consequent, alternate=alternate):
            if evaluate(condition, scope, current, rng=rng):
                return evaluate(consequent, scope, current, rng=rng)
            return evaluate(alternate, scope, current, rng=rng)

        case MatchExpr(value=subject, arms=arms):
            value = evaluate(subject, scope, current, rng=rng)
            for arm in arms:
                if arm.pattern == Identifier(WILDCARD):
                    return evaluate(arm.result, scope, current, rng=rng)
                if value == evaluate(arm.pattern, scope, current, rng=rng):
                    return evaluate(arm.result, scope, current, rng=rng)
            return None

        case Call(callee=callee, arguments=arguments):
            fn = BUILTINS.get(callee)
            if fn is None:
                raise EvaluationError(f"Unknown function: {callee}")
            args = [evaluate(a, scope, current, rng=rng) for a in arguments]
            try:
                return fn(*args)
            except (TypeError, ValueError) as e:
                raise EvaluationError(f"{callee}() failed: {e}", cause=e) from e

        case AnyOf(collection=collection, condition=condition):
            items = evaluate(collection, scope, current, rng=rng)
            if not isinstance(items, list):
                return None
            if condition is not None:
                for item in items:
                    if evaluate(condition, scope, item, rng=rng):
                        return item
                return None
            if not items:
                return None
            return (rng or random).choice(items)

        case ObjectLiteral(fields=fields):
            return {name: evaluate(value, scope, current, rng=rng) for name, value in fields}

        case ListLiteral(items=items):
            return [evaluate(item, scope, current, rng=rng) for item in items]

        case _:
            raise EvaluationError(f"Cannot evaluate expression type: {type(expr).__name__}")


def evaluate_to_string(expr: Expression, scope: ExecutionScope, current: Any = MISSING) -> str:
    value = evaluate(expr, scope, current)
    return "" if value is None else str(value)


_PLACEHOLDER = re.compile(r"\{([^}]+)\}")


def interpolate_path(path: str, scope: ExecutionScope, current: Any = MISSING) -> str:
    """Replace ``{name}`` / ``{a.b}`` placeholders with bound values."""

    def replace(match: re.Match[str]) -> str:
        parts = match.group(1).strip().split(".")
        value = current if current is not MISSING else None
        for part in parts:
            if isinstance(value, Mapping):
                value = value.get(part)
            else:
                value = scope.get(part)
        return "" if value is None else str(value)

    return _PLACEHOLDER.sub(replace, path)


__all__ = [
    "Literal",
    "Identifier",
    "QualifiedName",
    "BinaryOp",
    "LogicalOp",
    "Not",
    "UnaryOp",
    "Ternary",
    "Call",
    "MatchArm",
    "MatchExpr",
    "AnyOf",
    "ObjectLiteral",
    "ListLiteral",
    "Expression",
    "MISSING",
    "WILDCARD",
    "BUILTINS",
    "evaluate",
    "evaluate_to_string",
    "interpolate_path",
]
