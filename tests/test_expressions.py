from __future__ import annotations

from dataclasses import dataclass

import allure
import pytest

from matrix_core.errors import ExpressionError
from matrix_core.expressions import (
    Comparison,
    ComparisonOp,
    Literal,
    Logical,
    LogicalOp,
    Not,
    Variable,
    evaluate_condition,
    parse,
    resolve,
)
from matrix_core.queue.models import TaskStatus

pytestmark = [
    allure.epic("Workflow Engine"),
    allure.feature("Restricted Conditions"),
]

RESULTS = {
    "build": {"success": True, "result": {"artifacts": 3, "tag": "v1.2"}, "error": None},
    "tests": {"success": False, "result": None, "error": "2 failed"},
    "items": [{"name": "first"}, {"name": "second"}],
}


def test_parse_builds_tagged_ast_with_precedence() -> None:
    expression = parse("!a.ok || b > 2 && c == 'x'")

    assert expression == Logical(
        LogicalOp.OR,
        Not(Variable(("a", "ok"))),
        Logical(
            LogicalOp.AND,
            Comparison(ComparisonOp.GT, Variable(("b",)), Literal(2)),
            Comparison(ComparisonOp.EQ, Variable(("c",)), Literal("x")),
        ),
    )


@pytest.mark.parametrize(
    ("source", "expected"),
    [
        ("build.success", True),
        ("build.success == true", True),
        ("tests.success", False),
        ("!tests.success", True),
        ("not tests.success and build.success", True),
        ("build.result.artifacts >= 3", True),
        ("build.result.artifacts > 3", False),
        ("${build.result.tag} == 'v1.2'", True),
        ('tests.error != "2 failed"', False),
        ("items.1.name == 'second'", True),
        ("items.5.name == null", True),
        ("missing.path == null", True),
        ("missing.path", False),
        ("(build.success || tests.success) && tests.error", True),
        ("build.result.artifacts == '3'", True),
        ("build.result.artifacts < '10'", True),
        ("true", True),
        ("false or 0", False),
        ("-1 < 0", True),
        ("2.5 > 2", True),
    ],
)
def test_evaluate_condition_over_step_results(source: str, expected: bool) -> None:
    assert evaluate_condition(source, RESULTS) is expected


def test_incompatible_ordering_comparisons_are_false() -> None:
    assert evaluate_condition("build.result > 1", RESULTS) is False
    assert evaluate_condition("tests.result < 'a'", RESULTS) is False
    assert evaluate_condition("build.result.tag >= 1", RESULTS) is False


@pytest.mark.parametrize(
    "source",
    ["", "a ==", "(a == 1", "a b", "a = 1", "1 +", "'unterminated", "== 2"],
)
def test_invalid_syntax_raises_expression_error(source: str) -> None:
    with pytest.raises(ExpressionError):
        parse(source)


def test_resolve_walks_attributes_but_not_private_names() -> None:
    @dataclass
    class Execution:
        status: TaskStatus
        _secret: str = "hidden"

    variables = {"execution": Execution(status=TaskStatus.COMPLETED)}

    assert resolve(("execution", "status"), variables) == "completed"
    assert resolve(("execution", "_secret"), variables) is None
    assert resolve(("execution", "status", "upper"), variables) is None
    assert evaluate_condition("execution.status == 'completed'", variables) is True


def test_evaluation_has_no_side_effects() -> None:
    variables = {"a": {"b": 1}}

    evaluate_condition("a.b == 1 && a.c == null", variables)

    assert variables == {"a": {"b": 1}}
