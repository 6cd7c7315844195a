"""Condition expressions — a small recursive-descent parser and evaluator.

Node and edge conditions are written in a deliberately tiny grammar: path
lookups, literals, comparisons and boolean connectives. There are no function
calls, assignments or loops.

GRAMMAR
───────
::

    expression  := or_expr
    or_expr     := and_expr ( ("||" | "or") and_expr )*
    and_expr    := not_expr ( ("&&" | "and") not_expr )*
    not_expr    := ("!" | "not") not_expr | comparison
    comparison  := operand ( ("==" | "!=" | "<" | "<=" | ">" | ">=") operand )?
    operand     := literal | reference | "(" expression ")"
    literal     := 'text' | "text" | number | true | false | null
    reference   := "${" identifier ("." identifier)* "}"

SEMANTICS
─────────
- References resolve against the context map (``parameters``, ``variables``,
  and one entry per finished node holding its output plus ``status``/``error``).
- ``==``/``!=`` compare across kinds; ints and floats compare numerically,
  other mismatched kinds are simply unequal.
- Ordering operators need two numbers, two strings or two timestamps.
- An operand used as a boolean must be a bool.

Failures (syntax, unresolved path, type mismatch) raise
``ConditionEvaluationError`` inside the evaluator. :meth:`ConditionEvaluator.evaluate`
fails closed: it logs the error and answers ``False``.

Example::

    evaluator = ConditionEvaluator()
    evaluator.evaluate(
        "${check.rows} > 0 && ${parameters.mode} == 'full'",
        {"check": {"rows": 12}, "parameters": {"mode": "full"}},
    )  # True
"""

from __future__ import annotations

import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from functools import lru_cache
from typing import Any

from spindle.core.errors import ConditionEvaluationError
from spindle.core.logging import get_logger
from spindle.core.values import NULL, Value, ValueKind
from spindle.orchestration.graph import SUPPORTED_GRAMMARS
from spindle.orchestration.references import lookup_path

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Token:
    kind: str
    text: str
    position: int


_TOKEN_SPEC = [
    ("WS", r"\s+"),
    ("REF", r"\$\{\s*[A-Za-z_][\w-]*(?:\.[\w-]+)*\s*\}"),
    ("NUMBER", r"-?\d+(?:\.\d+)?(?:[eE][+-]?\d+)?"),
    ("STRING", r"'(?:\\.|[^'\\])*'|\"(?:\\.|[^\"\\])*\""),
    ("OP", r"==|!=|<=|>=|<|>"),
    ("AND", r"&&"),
    ("OR", r"\|\|"),
    ("NOT", r"!"),
    ("LPAREN", r"\("),
    ("RPAREN", r"\)"),
    ("WORD", r"[A-Za-z_]\w*"),
]
_TOKEN_RE = re.compile("|".join(f"(?P<{name}>{pattern})" for name, pattern in _TOKEN_SPEC))
_KEYWORDS = {"and": "AND", "or": "OR", "not": "NOT", "true": "TRUE", "false": "FALSE", "null": "NULL"}
_ESCAPES = {"n": "\n", "t": "\t", "\\": "\\", "'": "'", '"': '"'}


def tokenize(expression: str) -> list[Token]:
    tokens: list[Token] = []
    position = 0
    while position < len(expression):
        match = _TOKEN_RE.match(expression, position)
        if match is None:
            raise ConditionEvaluationError(
                f"Unexpected character {expression[position]!r} at position {position}",
                expression=expression,
            )
        kind = match.lastgroup or ""
        text = match.group()
        if kind == "WORD":
            kind = _KEYWORDS.get(text.lower(), "")
            if not kind:
                raise ConditionEvaluationError(
                    f"Unknown identifier {text!r} at position {position} (use ${{...}} for lookups)",
                    expression=expression,
                )
        if kind != "WS":
            tokens.append(Token(kind, text, position))
        position = match.end()
    tokens.append(Token("EOF", "", len(expression)))
    return tokens


# ---------------------------------------------------------------------------
# AST
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Literal:
    value: Value


@dataclass(frozen=True)
class Reference:
    path: str


@dataclass(frozen=True)
class Not:
    operand: Expr


@dataclass(frozen=True)
class Logical:
    op: str  # "and" | "or"
    left: Expr
    right: Expr


@dataclass(frozen=True)
class Comparison:
    op: str
    left: Expr
    right: Expr


Expr = Literal | Reference | Not | Logical | Comparison


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

class _Parser:
    def __init__(self, expression: str):
        self.expression = expression
        self.tokens = tokenize(expression)
        self.index = 0

    def peek(self) -> Token:
        return self.tokens[self.index]

    def advance(self) -> Token:
        token = self.tokens[self.index]
        self.index += 1
        return token

    def error(self, message: str) -> ConditionEvaluationError:
        token = self.peek()
        return ConditionEvaluationError(
            f"{message} at position {token.position}", expression=self.expression
        )

    def parse(self) -> Expr:
        if self.peek().kind == "EOF":
            raise self.error("Empty expression")
        node = self.parse_or()
        if self.peek().kind != "EOF":
            raise self.error(f"Unexpected token {self.peek().text!r}")
        return node

    def parse_or(self) -> Expr:
        node = self.parse_and()
        while self.peek().kind == "OR":
            self.advance()
            node = Logical("or", node, self.parse_and())
        return node

    def parse_and(self) -> Expr:
        node = self.parse_not()
        while self.peek().kind == "AND":
            self.advance()
            node = Logical("and", node, self.parse_not())
        return node

    def parse_not(self) -> Expr:
        if self.peek().kind == "NOT":
            self.advance()
            return Not(self.parse_not())
        return self.parse_comparison()

    def parse_comparison(self) -> Expr:
        left = self.parse_operand()
        if self.peek().kind == "OP":
            op = self.advance().text
            right = self.parse_operand()
            return Comparison(op, left, right)
        return left

    def parse_operand(self) -> Expr:
        token = self.advance()
        if token.kind == "LPAREN":
            node = self.parse_or()
            if self.peek().kind != "RPAREN":
                raise self.error("Expected ')'")
            self.advance()
            return node
        if token.kind == "REF":
            return Reference(token.text[2:-1].strip())
        if token.kind == "NUMBER":
            text = token.text
            number: int | float = float(text) if any(c in text for c in ".eE") else int(text)
            return Literal(Value.of(number))
        if token.kind == "STRING":
            return Literal(Value.of(_unquote(token.text)))
        if token.kind == "TRUE":
            return Literal(Value.of(True))
        if token.kind == "FALSE":
            return Literal(Value.of(False))
        if token.kind == "NULL":
            return Literal(NULL)
        self.index -= 1
        if token.kind == "EOF":
            raise self.error("Unexpected end of expression")
        raise self.error(f"Unexpected token {token.text!r}")


def _unquote(text: str) -> str:
    body = text[1:-1]
    return re.sub(r"\\(.)", lambda m: _ESCAPES.get(m.group(1), m.group(1)), body)


@lru_cache(maxsize=512)
def parse_condition(expression: str) -> Expr:
    """Parse an expression into its AST (cached).

    Raises:
        ConditionEvaluationError: On any syntax error, including nesting
            deeper than the interpreter stack allows.
    """
    try:
        return _Parser(expression).parse()
    except RecursionError:
        raise ConditionEvaluationError(
            "Expression is nested too deeply", expression=expression
        ) from None


def referenced_paths(expr: Expr) -> list[str]:
    """Every reference path used in an AST, in source order."""
    if isinstance(expr, Reference):
        return [expr.path]
    if isinstance(expr, Not):
        return referenced_paths(expr.operand)
    if isinstance(expr, (Logical, Comparison)):
        return referenced_paths(expr.left) + referenced_paths(expr.right)
    return []


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------

def _as_context(context: Mapping[str, Any], expression: str) -> dict[str, Value]:
    try:
        return {str(key): Value.of(value) for key, value in context.items()}
    except TypeError as exc:
        raise ConditionEvaluationError(
            f"Unsupported context value: {exc}", expression=expression
        ) from exc


class _Interpreter:
    def __init__(self, expression: str, context: Mapping[str, Value]):
        self.expression = expression
        self.context = context

    def fail(self, message: str) -> ConditionEvaluationError:
        return ConditionEvaluationError(message, expression=self.expression)

    def value(self, expr: Expr) -> Value:
        if isinstance(expr, Literal):
            return expr.value
        if isinstance(expr, Reference):
            resolved = lookup_path(self.context, expr.path)
            if resolved is None:
                raise self.fail(f"Unresolved reference '${{{expr.path}}}'")
            return resolved
        return Value.of(self.truth(expr))

    def truth(self, expr: Expr) -> bool:
        if isinstance(expr, Not):
            return not self.truth(expr.operand)
        if isinstance(expr, Logical):
            if expr.op == "and":
                return self.truth(expr.left) and self.truth(expr.right)
            return self.truth(expr.left) or self.truth(expr.right)
        if isinstance(expr, Comparison):
            return self.compare(expr.op, self.value(expr.left), self.value(expr.right))
        result = self.value(expr)
        if result.kind != ValueKind.BOOL:
            raise self.fail(f"Expected a boolean, got {result.kind.value}")
        return result.data

    def compare(self, op: str, left: Value, right: Value) -> bool:
        if op in ("==", "!="):
            equal = _equal(left, right)
            return equal if op == "==" else not equal

        if left.is_numeric and right.is_numeric:
            a, b = left.data, right.data
        elif left.kind == right.kind and left.kind in (ValueKind.STRING, ValueKind.TIMESTAMP):
            a, b = left.data, right.data
        else:
            raise self.fail(
                f"Cannot order {left.kind.value} and {right.kind.value} with '{op}'"
            )
        if op == "<":
            return a < b
        if op == "<=":
            return a <= b
        if op == ">":
            return a > b
        return a >= b


def _equal(left: Value, right: Value) -> bool:
    if left.is_numeric and right.is_numeric:
        return float(left.data) == float(right.data)
    if left.kind != right.kind:
        return False
    return left.data == right.data


class ConditionEvaluator:
    """Evaluates condition expressions against a reference context.

    ``evaluate`` never raises for a bad expression or context: it returns
    ``False`` and reports the error through the logger and the optional
    ``on_error`` callback.
    """

    def evaluate(
        self,
        expression: str,
        context: Mapping[str, Any],
        *,
        grammar: str = "simple",
        on_error: Callable[[ConditionEvaluationError], None] | None = None,
    ) -> bool:
        try:
            return self.evaluate_strict(expression, context, grammar=grammar)
        except ConditionEvaluationError as exc:
            logger.warning(
                "condition.evaluation_failed",
                expression=expression,
                error=exc.message,
            )
            if on_error is not None:
                on_error(exc)
            return False

    def evaluate_strict(
        self,
        expression: str,
        context: Mapping[str, Any],
        *,
        grammar: str = "simple",
    ) -> bool:
        """Like :meth:`evaluate` but raises ``ConditionEvaluationError``."""
        if grammar not in SUPPORTED_GRAMMARS:
            raise ConditionEvaluationError(
                f"Unsupported condition grammar: {grammar!r}", expression=expression
            )
        expr = parse_condition(expression)
        interpreter = _Interpreter(expression, _as_context(context, expression))
        try:
            return interpreter.truth(expr)
        except RecursionError:
            raise interpreter.fail("Expression is nested too deeply") from None

    def check(self, expression: str, *, grammar: str = "simple") -> str | None:
        """Syntax-check only; returns the error message or ``None``."""
        if grammar not in SUPPORTED_GRAMMARS:
            return f"Unsupported condition grammar: {grammar!r}"
        try:
            parse_condition(expression)
        except ConditionEvaluationError as exc:
            return exc.message
        return None
