"""Condition expressions for stages, jobs and steps.

Supports the Azure Pipelines expression subset used by deployment
pipelines:

    succeeded(), failed(), succeededOrFailed(), always(), canceled()
    eq, ne, lt, le, gt, ge, and, or, not, xor
    startsWith, endsWith, contains, in, notIn
    variables['Build.SourceBranch'], variables.name
    dependencies.Build.result, dependencies['Build'].result
    'string' literals ('' escapes a quote), numbers, true, false, null

String comparisons are case-insensitive, as in Azure Pipelines.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable

from .pipeline import Status

logger = logging.getLogger(__name__)

DEFAULT_CONDITION = "succeeded()"

TOKEN_PATTERN = re.compile(
    r"""
    (?P<ws>\s+)
    |(?P<string>'(?:[^']|'')*')
    |(?P<number>-?\d+(?:\.\d+)?)
    |(?P<ident>[A-Za-z_][A-Za-z0-9_\-]*)
    |(?P<punct>[()\[\],.])
    """,
    re.VERBOSE,
)


class ConditionError(Exception):
    """Raised when a condition cannot be parsed or evaluated."""

    pass


@dataclass
class ConditionContext:
    """What a condition can see when it is evaluated.

    Attributes:
        dependencies: Result of each dependency. For steps this holds the
            job status so far under the key "job".
        variables: Variables visible at this scope.
        canceled: Whether the run has been canceled.
    """

    dependencies: dict[str, Status] = field(default_factory=dict)
    variables: dict[str, str] = field(default_factory=dict)
    canceled: bool = False


# =============================================================================
# Tokenizer
# =============================================================================


@dataclass
class Token:
    kind: str
    value: str
    position: int


def tokenize(expression: str) -> list[Token]:
    tokens: list[Token] = []
    position = 0
    while position < len(expression):
        match = TOKEN_PATTERN.match(expression, position)
        if match is None:
            raise ConditionError(
                f"Unexpected character {expression[position]!r} at position {position} "
                f"in condition: {expression}"
            )
        kind = match.lastgroup or ""
        if kind != "ws":
            tokens.append(Token(kind=kind, value=match.group(), position=position))
        position = match.end()
    return tokens


# =============================================================================
# Syntax tree
# =============================================================================


@dataclass
class Literal:
    value: Any


@dataclass
class Lookup:
    """`variables[...]` or `dependencies.<name>.result`."""

    root: str
    path: list[str]


@dataclass
class Call:
    name: str
    args: list[Any]


class _Parser:
    def __init__(self, expression: str) -> None:
        self._expression = expression
        self._tokens = tokenize(expression)
        self._index = 0

    def _peek(self) -> Token | None:
        return self._tokens[self._index] if self._index < len(self._tokens) else None

    def _next(self) -> Token:
        token = self._peek()
        if token is None:
            raise ConditionError(f"Unexpected end of condition: {self._expression}")
        self._index += 1
        return token

    def _expect(self, value: str) -> None:
        token = self._next()
        if token.value != value:
            raise ConditionError(
                f"Expected {value!r} at position {token.position}, got {token.value!r} "
                f"in condition: {self._expression}"
            )

    def parse(self) -> Any:
        node = self._expression_node()
        token = self._peek()
        if token is not None:
            raise ConditionError(
                f"Unexpected {token.value!r} at position {token.position} "
                f"in condition: {self._expression}"
            )
        return node

    def _expression_node(self) -> Any:
        token = self._next()

        if token.kind == "string":
            return Literal(token.value[1:-1].replace("''", "'"))
        if token.kind == "number":
            return Literal(float(token.value) if "." in token.value else int(token.value))
        if token.kind != "ident":
            raise ConditionError(
                f"Unexpected {token.value!r} at position {token.position} "
                f"in condition: {self._expression}"
            )

        lowered = token.value.lower()
        if lowered in ("true", "false"):
            return Literal(lowered == "true")
        if lowered == "null":
            return Literal(None)

        following = self._peek()
        if following is not None and following.value == "(":
            return self._call(token)
        if lowered in ("variables", "dependencies"):
            return Lookup(root=lowered, path=self._path())
        raise ConditionError(f"Unknown name {token.value!r} in condition: {self._expression}")

    def _call(self, function: Token) -> Call:
        name = function.value.lower()
        if name not in FUNCTIONS:
            raise ConditionError(
                f"Unknown function {function.value!r} in condition: {self._expression}"
            )
        self._expect("(")
        args: list[Any] = []
        following = self._peek()
        if following is not None and following.value == ")":
            self._next()
        else:
            while True:
                args.append(self._expression_node())
                token = self._next()
                if token.value == ")":
                    break
                if token.value != ",":
                    raise ConditionError(
                        f"Expected ',' or ')' at position {token.position} "
                        f"in condition: {self._expression}"
                    )

        min_args, max_args = FUNCTIONS[name][1], FUNCTIONS[name][2]
        if len(args) < min_args or (max_args is not None and len(args) > max_args):
            raise ConditionError(
                f"Wrong number of arguments to {function.value}(): "
                f"got {len(args)} in condition: {self._expression}"
            )
        return Call(name=name, args=args)

    def _path(self) -> list[str]:
        path: list[str] = []
        while True:
            token = self._peek()
            if token is None or token.value not in (".", "["):
                return path
            self._next()
            if token.value == ".":
                part = self._next()
                if part.kind not in ("ident", "number"):
                    raise ConditionError(
                        f"Expected a property name at position {part.position} "
                        f"in condition: {self._expression}"
                    )
                # Dotted variable names such as variables.Build.SourceBranch
                path.append(part.value)
            else:
                part = self._next()
                if part.kind != "string":
                    raise ConditionError(
                        f"Expected a quoted index at position {part.position} "
                        f"in condition: {self._expression}"
                    )
                path.append(part.value[1:-1].replace("''", "'"))
                self._expect("]")


# =============================================================================
# Evaluation
# =============================================================================


def _to_string(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "True" if value else "False"
    if isinstance(value, Status):
        return value.value
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    if isinstance(value, (int, float)):
        return value != 0
    return _to_string(value) != ""


def _to_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(_to_string(value).strip())
    except ValueError:
        return None


def _equal(left: Any, right: Any) -> bool:
    # The right side is converted to the type of the left, as Azure does
    if isinstance(left, bool):
        return left == _to_bool(right)
    if isinstance(left, (int, float)):
        number = _to_number(right)
        return number is not None and float(left) == number
    return _to_string(left).lower() == _to_string(right).lower()


def _compare(left: Any, right: Any) -> int:
    left_number, right_number = _to_number(left), _to_number(right)
    if left_number is not None and right_number is not None:
        return (left_number > right_number) - (left_number < right_number)
    a, b = _to_string(left).lower(), _to_string(right).lower()
    return (a > b) - (a < b)


def _selected(context: ConditionContext, names: list[Any]) -> list[Status]:
    if not names:
        return list(context.dependencies.values())
    selected = []
    for name in names:
        key = _to_string(name)
        if key not in context.dependencies:
            raise ConditionError(f"'{key}' is not a dependency")
        selected.append(context.dependencies[key])
    return selected


def _succeeded(context: ConditionContext, names: list[Any]) -> bool:
    if context.canceled:
        return False
    return all(status.is_success for status in _selected(context, names))


def _failed(context: ConditionContext, names: list[Any]) -> bool:
    if context.canceled:
        return False
    return any(status == Status.FAILED for status in _selected(context, names))


def _succeeded_or_failed(context: ConditionContext, names: list[Any]) -> bool:
    if context.canceled:
        return False
    return all(
        status.is_success or status == Status.FAILED for status in _selected(context, names)
    )


# name -> (implementation, min args, max args)
FUNCTIONS: dict[str, tuple[Callable[..., Any], int, int | None]] = {
    "succeeded": (_succeeded, 0, None),
    "failed": (_failed, 0, None),
    "succeededorfailed": (_succeeded_or_failed, 0, None),
    "always": (lambda context, names: True, 0, 0),
    "canceled": (lambda context, names: context.canceled, 0, 0),
    "eq": (lambda a, b: _equal(a, b), 2, 2),
    "ne": (lambda a, b: not _equal(a, b), 2, 2),
    "lt": (lambda a, b: _compare(a, b) < 0, 2, 2),
    "le": (lambda a, b: _compare(a, b) <= 0, 2, 2),
    "gt": (lambda a, b: _compare(a, b) > 0, 2, 2),
    "ge": (lambda a, b: _compare(a, b) >= 0, 2, 2),
    "and": (None, 2, None),  # type: ignore[dict-item]
    "or": (None, 2, None),  # type: ignore[dict-item]
    "xor": (lambda a, b: _to_bool(a) != _to_bool(b), 2, 2),
    "not": (lambda a: not _to_bool(a), 1, 1),
    "startswith": (lambda a, b: _to_string(a).lower().startswith(_to_string(b).lower()), 2, 2),
    "endswith": (lambda a, b: _to_string(a).lower().endswith(_to_string(b).lower()), 2, 2),
    "contains": (lambda a, b: _to_string(b).lower() in _to_string(a).lower(), 2, 2),
    "in": (lambda a, *rest: any(_equal(a, r) for r in rest), 1, None),
    "notin": (lambda a, *rest: not any(_equal(a, r) for r in rest), 1, None),
}

STATUS_FUNCTIONS = {"succeeded", "failed", "succeededorfailed", "always", "canceled"}


def _evaluate(node: Any, context: ConditionContext) -> Any:
    if isinstance(node, Literal):
        return node.value

    if isinstance(node, Lookup):
        return _lookup(node, context)

    if node.name in STATUS_FUNCTIONS:
        names = [_evaluate(arg, context) for arg in node.args]
        return FUNCTIONS[node.name][0](context, names)

    # Short-circuit like the service
    if node.name == "and":
        return all(_to_bool(_evaluate(arg, context)) for arg in node.args)
    if node.name == "or":
        return any(_to_bool(_evaluate(arg, context)) for arg in node.args)

    args = [_evaluate(arg, context) for arg in node.args]
    return FUNCTIONS[node.name][0](*args)


def _lookup(node: Lookup, context: ConditionContext) -> Any:
    if not node.path:
        raise ConditionError(f"'{node.root}' needs a property")

    if node.root == "variables":
        name = ".".join(node.path).lower()
        for key, value in context.variables.items():
            if key.lower() == name:
                return value
        # Undefined variables evaluate to null
        return None

    # dependencies.<name>.result
    dependency = node.path[0]
    status = context.dependencies.get(dependency)
    if status is None:
        for key, value in context.dependencies.items():
            if key.lower() == dependency.lower():
                status = value
                break
    if status is None:
        return None
    if len(node.path) == 1:
        return status.value
    if len(node.path) == 2 and node.path[1].lower() == "result":
        return status.value
    # Output variables are not supported
    return None


# =============================================================================
# Public API
# =============================================================================


@dataclass
class Condition:
    """A parsed condition expression."""

    expression: str
    root: Any

    def evaluate(self, context: ConditionContext) -> bool:
        result = _to_bool(_evaluate(self.root, context))
        logger.debug(
            "Evaluated condition",
            extra={"condition": self.expression, "result": result},
        )
        return result


def parse_condition(expression: str) -> Condition:
    """Parse a condition expression.

    Raises:
        ConditionError: If the expression is malformed or calls an
            unknown function.
    """
    if not expression or not expression.strip():
        raise ConditionError("Condition is empty")
    return Condition(expression=expression, root=_Parser(expression).parse())


def evaluate_condition(expression: str | None, context: ConditionContext) -> bool:
    """Parse and evaluate a condition; None means `succeeded()`."""
    return parse_condition(expression or DEFAULT_CONDITION).evaluate(context)
