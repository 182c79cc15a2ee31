"""Tests for expression evaluation against an execution scope."""

import random

import pytest

from missionspine.core.errors import EvaluationError
from missionspine.orchestration.expressions import (
    AnyOf,
    BinaryOp,
    Call,
    Identifier,
    ListLiteral,
    Literal,
    LogicalOp,
    MatchArm,
    MatchExpr,
    Not,
    ObjectLiteral,
    QualifiedName,
    Ternary,
    UnaryOp,
    evaluate,
    evaluate_to_string,
    interpolate_path,
)
from missionspine.orchestration.mission import Mission
from missionspine.orchestration.scope import ExecutionScope, MissionResources


@pytest.fixture
def scope():
    root = ExecutionScope(MissionResources(mission=Mission(name="m")))
    root.set("limit", 100)
    root.set("user", {"id": 42, "profile": {"name": "ada"}})
    return root


class TestLookup:
    def test_current_value_wins(self, scope):
        """Fields of the current value shadow scope variables."""
        assert evaluate(Identifier("limit"), scope, {"limit": 5}) == 5
        assert evaluate(Identifier("limit"), scope) == 100

    def test_response_fields(self, scope):
        """Unbound identifiers fall back to the current response."""
        scope.response = {"total": 7}
        assert evaluate(Identifier("total"), scope) == 7
        assert evaluate(Identifier("response"), scope) == {"total": 7}
        assert evaluate(Identifier("missing"), scope) is None

    def test_qualified_names(self, scope):
        """Dotted names walk the current value, then variables."""
        assert evaluate(QualifiedName.of("a.b"), scope, {"a": {"b": 1}}) == 1
        assert evaluate(QualifiedName.of("user.profile.name"), scope) == "ada"
        assert evaluate(QualifiedName.of("user.nope.name"), scope) is None

    def test_child_scope_shadows(self, scope):
        """Child bindings shadow the parent without changing it."""
        child = scope.child(limit=1)
        assert evaluate(Identifier("limit"), child) == 1
        assert evaluate(Identifier("limit"), scope) == 100


class TestOperators:
    @pytest.mark.parametrize(
        "op,left,right,expected",
        [
            ("+", 2, 3, 5),
            ("-", 2, 3, -1),
            ("*", 2, 3, 6),
            ("/", 3, 2, 1.5),
            ("%", 7, 3, 1),
            ("==", "a", "a", True),
            ("!=", 1, 2, True),
            ("<", 1, 2, True),
            (">=", 2, 2, True),
        ],
    )
    def test_binary(self, scope, op, left, right, expected):
        """Binary operators apply to evaluated operands."""
        assert evaluate(BinaryOp(op, Literal(left), Literal(right)), scope) == expected

    def test_type_error_is_evaluation_error(self, scope):
        """Incompatible operands raise EvaluationError."""
        with pytest.raises(EvaluationError):
            evaluate(BinaryOp("<", Literal("a"), Literal(1)), scope)
        with pytest.raises(EvaluationError):
            evaluate(BinaryOp("/", Literal(1), Literal(0)), scope)

    def test_logic_and_ternary(self, scope):
        """and/or/not and the ternary operator."""
        assert evaluate(LogicalOp("and", Literal(1), Literal(0)), scope) is False
        assert evaluate(LogicalOp("or", Literal(0), Literal("x")), scope) is True
        assert evaluate(Not(Literal(None)), scope) is True
        assert evaluate(UnaryOp("-", Literal(3)), scope) == -3
        expr = Ternary(BinaryOp(">", Identifier("limit"), Literal(10)), Literal("big"), Literal("small"))
        assert evaluate(expr, scope) == "big"


class TestCallsAndLiterals:
    def test_builtins(self, scope):
        """Built-in functions operate on evaluated arguments."""
        items = ListLiteral((Literal(1), Literal(2), Literal(3)))
        assert evaluate(Call("length", (items,)), scope) == 3
        assert evaluate(Call("sum", (items,)), scope) == 6
        assert evaluate(Call("first", (items,)), scope) == 1
        assert evaluate(Call("max", (items,)), scope) == 3
        assert evaluate(Call("round", (Literal(2.5),)), scope) == 3

    def test_unknown_function(self, scope):
        """Calling an unknown function is an evaluation error."""
        with pytest.raises(EvaluationError, match="Unknown function"):
            evaluate(Call("explode"), scope)

    def test_object_literal(self, scope):
        """Object literals build dicts from evaluated fields."""
        expr = ObjectLiteral((("id", QualifiedName.of("user.id")), ("kind", Literal("user"))))
        assert evaluate(expr, scope) == {"id": 42, "kind": "user"}

    def test_match_expression(self, scope):
        """The first equal arm wins; ``_`` matches anything."""
        expr = MatchExpr(
            Identifier("status"),
            (
                MatchArm(Literal("open"), Literal(1)),
                MatchArm(Identifier("_"), Literal(0)),
            ),
        )
        assert evaluate(expr, scope, {"status": "open"}) == 1
        assert evaluate(expr, scope, {"status": "closed"}) == 0

    def test_any_of(self, scope):
        """AnyOf returns the first item passing the condition, or a random one."""
        items = [{"n": 1}, {"n": 5}, {"n": 9}]
        scope.set("items", items)
        pick = AnyOf(Identifier("items"), BinaryOp(">", Identifier("n"), Literal(4)))
        assert evaluate(pick, scope) == {"n": 5}
        assert evaluate(AnyOf(Identifier("items")), scope, rng=random.Random(0)) in items
        assert evaluate(AnyOf(Literal([])), scope) is None


class TestInterpolation:
    def test_placeholders(self, scope):
        """Placeholders resolve from variables and nested fields."""
        assert interpolate_path("/users/{user.id}/orders?limit={limit}", scope) == "/users/42/orders?limit=100"

    def test_missing_placeholder_is_empty(self, scope):
        """Unbound placeholders render as empty strings."""
        assert interpolate_path("/items/{nothing}", scope) == "/items/"

    def test_evaluate_to_string(self, scope):
        """None renders as the empty string."""
        assert evaluate_to_string(Identifier("nothing"), scope) == ""
        assert evaluate_to_string(Identifier("limit"), scope) == "100"
