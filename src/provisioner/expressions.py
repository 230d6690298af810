"""Interpolation expressions and references between resources.

Configuration values may embed `${...}` interpolations. Two expression
forms are supported:

- `var.<name>`: an input variable
- `<type>.<name>.<attribute>`: an attribute of another resource

References are what give the resource graph its implicit edges: a virtual
network whose `resource_group_name` is `${azurerm_resource_group.main.name}`
depends on that resource group.

A string that is exactly one interpolation keeps the referenced value's
type, so `"${var.address_space}"` resolves to a list. Attributes that are
only known once a resource exists resolve to UNKNOWN during planning.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

# `$${` escapes a literal `${`
INTERPOLATION_PATTERN = re.compile(r"\$\$\{|\$\{([^}]*)\}")
REFERENCE_PATTERN = re.compile(
    r"^\s*([A-Za-z_][A-Za-z0-9_-]*(?:\.[A-Za-z_][A-Za-z0-9_-]*)+)\s*$"
)

VARIABLE_PREFIX = "var"


class ExpressionError(Exception):
    """Raised when an expression cannot be parsed or resolved."""

    pass


class _Unknown:
    """Placeholder for values that are only known after apply."""

    _instance: _Unknown | None = None

    def __new__(cls) -> _Unknown:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "(known after apply)"

    def __str__(self) -> str:
        return "(known after apply)"

    def __bool__(self) -> bool:
        return False


UNKNOWN = _Unknown()


@dataclass(frozen=True)
class Reference:
    """A parsed `var.x` or `type.name.attr` reference."""

    parts: tuple[str, ...]

    @property
    def is_variable(self) -> bool:
        return self.parts[0] == VARIABLE_PREFIX

    @property
    def variable_name(self) -> str:
        if not self.is_variable:
            raise ExpressionError(f"{self} is not a variable reference")
        return self.parts[1]

    @property
    def address(self) -> str:
        """Resource address (`type.name`) for resource references."""
        if self.is_variable:
            raise ExpressionError(f"{self} is not a resource reference")
        return f"{self.parts[0]}.{self.parts[1]}"

    @property
    def attribute(self) -> str:
        if self.is_variable:
            raise ExpressionError(f"{self} is not a resource reference")
        return self.parts[2]

    def __str__(self) -> str:
        return ".".join(self.parts)


def parse_reference(expression: str) -> Reference:
    """Parse the body of a `${...}` interpolation.

    Raises:
        ExpressionError: If the expression is not a supported reference.
    """
    match = REFERENCE_PATTERN.match(expression)
    if match is None:
        raise ExpressionError(f"Unsupported expression: ${{{expression}}}")

    parts = tuple(match.group(1).split("."))
    if parts[0] == VARIABLE_PREFIX:
        if len(parts) != 2:
            raise ExpressionError(f"Variable references take the form var.<name>: {expression}")
    elif len(parts) != 3:
        raise ExpressionError(
            f"Resource references take the form <type>.<name>.<attribute>: {expression}"
        )
    return Reference(parts=parts)


def _references_in_string(value: str) -> list[Reference]:
    refs = []
    for match in INTERPOLATION_PATTERN.finditer(value):
        if match.group(1) is not None:
            refs.append(parse_reference(match.group(1)))
    return refs


def find_references(value: Any) -> list[Reference]:
    """Collect every reference in a (possibly nested) configuration value.

    Returns:
        References in first-seen order, without duplicates.
    """
    found: list[Reference] = []

    def walk(node: Any) -> None:
        if isinstance(node, str):
            for ref in _references_in_string(node):
                if ref not in found:
                    found.append(ref)
        elif isinstance(node, Mapping):
            for item in node.values():
                walk(item)
        elif isinstance(node, (list, tuple)):
            for item in node:
                walk(item)

    walk(value)
    return found


def contains_unknown(value: Any) -> bool:
    """Check whether a resolved value still holds UNKNOWN anywhere."""
    if value is UNKNOWN:
        return True
    if isinstance(value, Mapping):
        return any(contains_unknown(v) for v in value.values())
    if isinstance(value, (list, tuple)):
        return any(contains_unknown(v) for v in value)
    return False


@dataclass
class EvaluationScope:
    """Values visible to expressions.

    Attributes:
        variables: Resolved input variable values.
        resources: Known attributes per resource address. An address that is
            absent resolves to UNKNOWN when allow_unknown is set.
        allow_unknown: Planning tolerates UNKNOWN; apply does not.
    """

    variables: Mapping[str, Any]
    resources: Mapping[str, Mapping[str, Any]]
    allow_unknown: bool = True

    def lookup(self, ref: Reference) -> Any:
        if ref.is_variable:
            if ref.variable_name not in self.variables:
                raise ExpressionError(f"Reference to undeclared input variable: {ref}")
            return self.variables[ref.variable_name]

        attributes = self.resources.get(ref.address)
        if attributes is None:
            if self.allow_unknown:
                return UNKNOWN
            raise ExpressionError(f"Resource {ref.address} has no known attributes")

        if ref.attribute not in attributes:
            if self.allow_unknown:
                return UNKNOWN
            raise ExpressionError(f"Resource {ref.address} has no attribute '{ref.attribute}'")
        return attributes[ref.attribute]


def _resolve_string(value: str, scope: EvaluationScope) -> Any:
    matches = list(INTERPOLATION_PATTERN.finditer(value))
    if not matches:
        return value

    # A lone interpolation keeps the referenced value's type
    if len(matches) == 1 and matches[0].group(1) is not None and matches[0].group(0) == value:
        return scope.lookup(parse_reference(matches[0].group(1)))

    pieces: list[str] = []
    position = 0
    for match in matches:
        pieces.append(value[position : match.start()])
        position = match.end()
        if match.group(1) is None:
            pieces.append("${")
            continue
        resolved = scope.lookup(parse_reference(match.group(1)))
        if resolved is UNKNOWN:
            return UNKNOWN
        if isinstance(resolved, (list, dict)):
            raise ExpressionError(
                f"Cannot interpolate a {type(resolved).__name__} into a string: {value}"
            )
        if isinstance(resolved, bool):
            resolved = "true" if resolved else "false"
        pieces.append(str(resolved))
    pieces.append(value[position:])
    return "".join(pieces)


def resolve(value: Any, scope: EvaluationScope) -> Any:
    """Substitute every interpolation in a (possibly nested) value.

    Raises:
        ExpressionError: On malformed expressions, undeclared variables, or
            unknown resource attributes when the scope forbids UNKNOWN.
    """
    if isinstance(value, str):
        return _resolve_string(value, scope)
    if isinstance(value, Mapping):
        return {key: resolve(item, scope) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [resolve(item, scope) for item in value]
    return value
