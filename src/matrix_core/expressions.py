"""Restricted condition expressions for workflow and tool-call conditions.

Expressions are parsed into a small tagged AST and interpreted by a pure
evaluator. Nothing supplied by a caller is ever executed as code.

Grammar::

    expr       := or_expr
    or_expr    := and_expr (("||" | "or") and_expr)*
    and_expr   := not_expr (("&&" | "and") not_expr)*
    not_expr   := ("!" | "not") not_expr | comparison
    comparison := operand (("==" | "!=" | "<" | "<=" | ">" | ">=") operand)?
    operand    := literal | variable | "(" expr ")"
    variable   := name ("." name)* | "${" name ("." name)* "}"
"""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any

from matrix_core.errors import ExpressionError


class ComparisonOp(str, Enum):
    EQ = "=="
    NE = "!="
    LT = "<"
    LE = "<="
    GT = ">"
    GE = ">="


class LogicalOp(str, Enum):
    AND = "and"
    OR = "or"


@dataclass(frozen=True, slots=True)
class Literal:
    value: Any


@dataclass(frozen=True, slots=True)
class Variable:
    path: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class Comparison:
    op: ComparisonOp
    left: Expression
    right: Expression


@dataclass(frozen=True, slots=True)
class Logical:
    op: LogicalOp
    left: Expression
    right: Expression


@dataclass(frozen=True, slots=True)
class Not:
    operand: Expression


Expression = Literal | Variable | Comparison | Logical | Not

_TOKEN_PATTERN = re.compile(
    r"""
    \s*(?:
        (?P<number>-?\d+(?:\.\d+)?)
      | (?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
      | (?P<template>\$\{\s*[A-Za-z_][\w.]*\s*\})
      | (?P<op>==|!=|<=|>=|&&|\|\||[<>!()])
      | (?P<name>[A-Za-z_][\w]*(?:\.\w+)*)
    )
    """,
    re.VERBOSE,
)
_KEYWORD_LITERALS = {"true": True, "false": False, "null": None, "none": None}
_WORD_OPERATORS = {"and": "&&", "or": "||", "not": "!"}
_ESCAPE_PATTERN = re.compile(r"\\(.)")


@dataclass(frozen=True, slots=True)
class _Token:
    kind: str
    value: Any
    position: int


def _tokenize(source: str) -> list[_Token]:
    tokens: list[_Token] = []
    position = 0
    stripped_end = len(source.rstrip())
    while position < stripped_end:
        match = _TOKEN_PATTERN.match(source, position)
        if match is None or match.end() == position:
            raise ExpressionError(f"Unexpected character at {position}: {source[position:]!r}")
        kind = match.lastgroup or ""
        text = match.group(kind)
        start = match.start(kind)
        if kind == "number":
            tokens.append(_Token("literal", float(text) if "." in text else int(text), start))
        elif kind == "string":
            tokens.append(_Token("literal", _ESCAPE_PATTERN.sub(r"\1", text[1:-1]), start))
        elif kind == "template":
            tokens.append(_Token("variable", tuple(text[2:-1].strip().split(".")), start))
        elif kind == "op":
            tokens.append(_Token("op", text, start))
        else:
            lowered = text.lower()
            if lowered in _KEYWORD_LITERALS:
                tokens.append(_Token("literal", _KEYWORD_LITERALS[lowered], start))
            elif lowered in _WORD_OPERATORS:
                tokens.append(_Token("op", _WORD_OPERATORS[lowered], start))
            else:
                tokens.append(_Token("variable", tuple(text.split(".")), start))
        position = match.end()
    return tokens


class _Parser:
    def __init__(self, source: str) -> None:
        self.source = source
        self.tokens = _tokenize(source)
        self.index = 0

    def parse(self) -> Expression:
        if not self.tokens:
            raise ExpressionError("Empty expression")
        expression = self._or()
        if self.index != len(self.tokens):
            token = self.tokens[self.index]
            raise ExpressionError(f"Unexpected token {token.value!r} at {token.position}")
        return expression

    def _peek_op(self, *values: str) -> str | None:
        if self.index < len(self.tokens):
            token = self.tokens[self.index]
            if token.kind == "op" and token.value in values:
                return token.value
        return None

    def _or(self) -> Expression:
        node = self._and()
        while self._peek_op("||"):
            self.index += 1
            node = Logical(LogicalOp.OR, node, self._and())
        return node

    def _and(self) -> Expression:
        node = self._not()
        while self._peek_op("&&"):
            self.index += 1
            node = Logical(LogicalOp.AND, node, self._not())
        return node

    def _not(self) -> Expression:
        if self._peek_op("!"):
            self.index += 1
            return Not(self._not())
        return self._comparison()

    def _comparison(self) -> Expression:
        left = self._operand()
        op = self._peek_op(*(item.value for item in ComparisonOp))
        if op is None:
            return left
        self.index += 1
        return Comparison(ComparisonOp(op), left, self._operand())

    def _operand(self) -> Expression:
        if self.index >= len(self.tokens):
            raise ExpressionError(f"Unexpected end of expression: {self.source!r}")
        token = self.tokens[self.index]
        if token.kind == "literal":
            self.index += 1
            return Literal(token.value)
        if token.kind == "variable":
            self.index += 1
            return Variable(token.value)
        if token.value == "(":
            self.index += 1
            node = self._or()
            if not self._peek_op(")"):
                raise ExpressionError(f"Missing ')' in expression: {self.source!r}")
            self.index += 1
            return node
        raise ExpressionError(f"Unexpected token {token.value!r} at {token.position}")


def parse(source: str) -> Expression:
    """Parse expression text; raises ``ExpressionError`` on invalid syntax."""

    return _Parser(source).parse()


def resolve(path: Sequence[str], variables: Any) -> Any:
    """Walk a dotted path through mappings, sequences and attributes."""

    current = variables
    for segment in path:
        if current is None:
            return None
        if isinstance(current, Mapping):
            current = current.get(segment)
        elif isinstance(current, Sequence) and not isinstance(current, str | bytes):
            if not segment.isdigit() or int(segment) >= len(current):
                return None
            current = current[int(segment)]
        elif segment.startswith("_") or isinstance(current, str | bytes | int | float):
            return None
        else:
            current = getattr(current, segment, None)
    if isinstance(current, Enum):
        return current.value
    return current


def evaluate(expression: Expression, variables: Any) -> Any:
    """Interpret an AST node against ``variables``; no side effects."""

    if isinstance(expression, Literal):
        return expression.value
    if isinstance(expression, Variable):
        return resolve(expression.path, variables)
    if isinstance(expression, Not):
        return not _truthy(evaluate(expression.operand, variables))
    if isinstance(expression, Logical):
        left = _truthy(evaluate(expression.left, variables))
        if expression.op is LogicalOp.AND:
            return left and _truthy(evaluate(expression.right, variables))
        return left or _truthy(evaluate(expression.right, variables))
    if isinstance(expression, Comparison):
        return _compare(
            expression.op,
            evaluate(expression.left, variables),
            evaluate(expression.right, variables),
        )
    raise ExpressionError(f"Unsupported expression node: {expression!r}")


def evaluate_condition(source: str, variables: Any) -> bool:
    """Parse and evaluate ``source`` as a boolean condition."""

    return _truthy(evaluate(parse(source), variables))


def _truthy(value: Any) -> bool:
    return bool(value)


def _compare(op: ComparisonOp, left: Any, right: Any) -> bool:
    if op is ComparisonOp.EQ:
        return _loose_equal(left, right)
    if op is ComparisonOp.NE:
        return not _loose_equal(left, right)
    left, right = _coerce_pair(left, right)
    try:
        if op is ComparisonOp.LT:
            return left < right
        if op is ComparisonOp.LE:
            return left <= right
        if op is ComparisonOp.GT:
            return left > right
        return left >= right
    except TypeError:
        return False


def _loose_equal(left: Any, right: Any) -> bool:
    left, right = _coerce_pair(left, right)
    return left == right


def _coerce_pair(left: Any, right: Any) -> tuple[Any, Any]:
    # Numeric strings compare as numbers against numbers.
    if _is_number(left) and isinstance(right, str):
        return left, _as_number(right, fallback=right)
    if isinstance(left, str) and _is_number(right):
        return _as_number(left, fallback=left), right
    return left, right


def _is_number(value: Any) -> bool:
    return isinstance(value, int | float) and not isinstance(value, bool)


def _as_number(value: str, *, fallback: Any) -> Any:
    try:
        return float(value)
    except ValueError:
        return fallback
