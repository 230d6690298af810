"""Planning: compare configuration with state and decide what to change.

For each configured resource, in dependency order:

- not in state: CREATE
- a force-new argument differs (e.g. a name): REPLACE, delete then create
- any other argument differs: UPDATE in place
- otherwise: NO_OP

Resources in state that are no longer configured are planned for DELETE.
In destroy mode every resource in state is planned for DELETE.

A plan remembers the lineage and serial of the state it was computed
against. A saved plan can only be applied to that exact state.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from .config import MAX_PLAN_FILE_SIZE_BYTES
from .config_loader import read_bounded_file
from .dependency import DependencyError, DependencyGraph, build_resource_graph
from .expressions import (
    UNKNOWN,
    EvaluationScope,
    ExpressionError,
    contains_unknown,
    find_references,
    resolve,
)
from .models import Configuration, ResourceBlock, get_resource_schema, validate_arguments
from .providers import Provider
from .state import State

logger = logging.getLogger(__name__)

PLAN_FORMAT_VERSION = 1
UNKNOWN_MARKER = "__unknown__"


class PlanError(Exception):
    """Raised when a plan cannot be computed."""

    pass


class StalePlanError(PlanError):
    """Raised when a saved plan no longer matches the current state."""

    pass


class Action(str, Enum):
    """Planned action for one resource."""

    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    DELETE = "delete"
    NO_OP = "no-op"


@dataclass
class ResourceChange:
    """The planned change for one resource.

    Attributes:
        before: Attributes recorded in state, None when creating.
        after: Planned arguments, possibly holding UNKNOWN. None when deleting.
        config: Unresolved arguments, re-resolved at apply time.
        dependencies: Addresses this resource depends on.
        replace_reasons: Why a REPLACE was planned.
    """

    address: str
    type: str
    name: str
    action: Action
    before: dict[str, Any] | None = None
    after: dict[str, Any] | None = None
    config: dict[str, Any] = field(default_factory=dict)
    dependencies: list[str] = field(default_factory=list)
    replace_reasons: list[str] = field(default_factory=list)

    @property
    def changed_attributes(self) -> list[str]:
        before = self.before or {}
        after = self.after or {}
        keys = set(before) | set(after) if self.action != Action.DELETE else set(before)
        return sorted(
            k
            for k in keys
            if k != "id" and (after.get(k) is UNKNOWN or before.get(k) != after.get(k))
        )


@dataclass
class Plan:
    """A set of resource changes computed against one state."""

    changes: list[ResourceChange]
    lineage: str
    serial: int
    variables: dict[str, Any] = field(default_factory=dict)
    outputs: dict[str, Any] = field(default_factory=dict)
    output_config: dict[str, Any] = field(default_factory=dict)
    sensitive_outputs: list[str] = field(default_factory=list)
    destroy: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def count(self, *actions: Action) -> int:
        return sum(1 for change in self.changes if change.action in actions)

    @property
    def add_count(self) -> int:
        return self.count(Action.CREATE, Action.REPLACE)

    @property
    def change_count(self) -> int:
        return self.count(Action.UPDATE)

    @property
    def destroy_count(self) -> int:
        return self.count(Action.DELETE, Action.REPLACE)

    @property
    def has_changes(self) -> bool:
        return any(change.action != Action.NO_OP for change in self.changes)

    @property
    def significant_changes(self) -> list[ResourceChange]:
        return [change for change in self.changes if change.action != Action.NO_OP]

    def summary(self) -> str:
        if self.destroy:
            return f"Plan: 0 to add, 0 to change, {self.destroy_count} to destroy."
        return (
            f"Plan: {self.add_count} to add, {self.change_count} to change, "
            f"{self.destroy_count} to destroy."
        )

    def check_current(self, state: State) -> None:
        """Verify this plan was computed against `state`.

        Raises:
            StalePlanError: If lineage or serial differ.
        """
        if state.lineage != self.lineage:
            raise StalePlanError(
                "Saved plan is for a different state: "
                f"lineage {self.lineage} does not match {state.lineage}"
            )
        if state.serial != self.serial:
            raise StalePlanError(
                "Saved plan is stale: state changed since the plan was created "
                f"(serial {self.serial}, current {state.serial})"
            )

    def to_dict(self) -> dict[str, Any]:
        return {
            "format_version": PLAN_FORMAT_VERSION,
            "created_at": self.created_at.isoformat(),
            "lineage": self.lineage,
            "serial": self.serial,
            "destroy": self.destroy,
            "variables": self.variables,
            "outputs": _encode(self.outputs),
            "output_config": self.output_config,
            "sensitive_outputs": list(self.sensitive_outputs),
            "changes": [
                {
                    "address": c.address,
                    "type": c.type,
                    "name": c.name,
                    "action": c.action.value,
                    "before": c.before,
                    "after": _encode(c.after),
                    "config": c.config,
                    "dependencies": c.dependencies,
                    "replace_reasons": c.replace_reasons,
                }
                for c in self.changes
            ],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Plan:
        """Rebuild a plan from its serialized form.

        Raises:
            PlanError: If the data is not a valid plan.
        """
        if data.get("format_version") != PLAN_FORMAT_VERSION:
            raise PlanError(f"Unsupported plan format version: {data.get('format_version')}")
        try:
            changes = [
                ResourceChange(
                    address=c["address"],
                    type=c["type"],
                    name=c["name"],
                    action=Action(c["action"]),
                    before=c.get("before"),
                    after=_decode(c.get("after")),
                    config=c.get("config") or {},
                    dependencies=list(c.get("dependencies") or []),
                    replace_reasons=list(c.get("replace_reasons") or []),
                )
                for c in data["changes"]
            ]
            return cls(
                changes=changes,
                lineage=data["lineage"],
                serial=int(data["serial"]),
                variables=dict(data.get("variables") or {}),
                outputs=_decode(data.get("outputs") or {}),
                output_config=dict(data.get("output_config") or {}),
                sensitive_outputs=list(data.get("sensitive_outputs") or []),
                destroy=bool(data.get("destroy", False)),
                created_at=datetime.fromisoformat(data["created_at"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise PlanError(f"Invalid plan data: {e}") from e

    def save(self, path: Path) -> None:
        try:
            path.write_text(json.dumps(self.to_dict(), indent=2) + "\n", encoding="utf-8")
        except OSError as e:
            raise PlanError(f"Failed to write plan file {path}: {e}") from e
        logger.info(
            "Saved plan", extra={"path": str(path), "changes": len(self.significant_changes)}
        )

    @classmethod
    def load(cls, path: Path) -> Plan:
        content = read_bounded_file(path, MAX_PLAN_FILE_SIZE_BYTES, PlanError)
        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise PlanError(f"Plan file {path} is not a valid plan: {e}") from e
        if not isinstance(data, dict):
            raise PlanError(f"Plan file {path} is not a valid plan")
        return cls.from_dict(data)


def _encode(value: Any) -> Any:
    if value is UNKNOWN:
        return {UNKNOWN_MARKER: True}
    if isinstance(value, dict):
        return {k: _encode(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_encode(v) for v in value]
    return value


def _decode(value: Any) -> Any:
    if isinstance(value, dict):
        if value == {UNKNOWN_MARKER: True}:
            return UNKNOWN
        return {k: _decode(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_decode(v) for v in value]
    return value


# =============================================================================
# Planner
# =============================================================================


async def refresh_state(state: State, provider: Provider) -> State:
    """Read every resource in state back from the provider.

    Resources deleted out of band are dropped, so the next plan recreates
    them.
    """
    refreshed = state.model_copy(deep=True)
    for entry in list(refreshed.resources):
        current = await provider.read(entry.type, dict(entry.attributes))
        if current is None:
            logger.warning(
                "Resource no longer exists, removing from state",
                extra={"address": entry.address},
            )
            refreshed.remove_resource(entry.address)
        else:
            refreshed.set_resource(entry.type, entry.name, current, entry.dependencies)
    return refreshed


def evaluate_outputs(
    expressions: dict[str, Any],
    variables: dict[str, Any],
    resources: dict[str, dict[str, Any]],
    allow_unknown: bool,
) -> dict[str, Any]:
    """Evaluate output values against known resource attributes.

    Raises:
        PlanError: If an output cannot be evaluated.
    """
    scope = EvaluationScope(variables=variables, resources=resources, allow_unknown=allow_unknown)
    values: dict[str, Any] = {}
    for name, expression in expressions.items():
        try:
            values[name] = resolve(expression, scope)
        except ExpressionError as e:
            raise PlanError(f"output.{name}: {e}") from e
    return values


class Planner:
    """Computes plans for a configuration against state."""

    def __init__(self, provider: Provider | None = None) -> None:
        """Initialize planner.

        Args:
            provider: Used to refresh state. Without one, plans use state as
                recorded.
        """
        self._provider = provider

    async def plan(
        self,
        configuration: Configuration,
        state: State,
        variables: dict[str, Any],
        refresh: bool = True,
        destroy: bool = False,
    ) -> Plan:
        """Compute a plan.

        Raises:
            PlanError: If references do not resolve, arguments are invalid or
                a protected resource would be destroyed.
        """
        try:
            graph = build_resource_graph(configuration)
        except DependencyError as e:
            raise PlanError(str(e)) from e

        prior_state = state
        if refresh and self._provider is not None and not state.is_empty:
            prior_state = await refresh_state(state, self._provider)

        if destroy:
            changes = self._plan_destroy(configuration, prior_state)
            plan = Plan(
                changes=changes,
                lineage=state.lineage,
                serial=state.serial,
                variables=variables,
                destroy=True,
            )
        else:
            changes, planned = self._plan_apply(configuration, graph, prior_state, variables)
            output_config = {name: output.value for name, output in configuration.outputs.items()}
            plan = Plan(
                changes=changes,
                lineage=state.lineage,
                serial=state.serial,
                variables=variables,
                outputs=evaluate_outputs(output_config, variables, planned, allow_unknown=True),
                output_config=output_config,
                sensitive_outputs=sorted(
                    name for name, output in configuration.outputs.items() if output.sensitive
                ),
            )

        self._check_prevent_destroy(configuration, plan)

        logger.info(
            "Plan computed",
            extra={
                "add": plan.add_count,
                "change": plan.change_count,
                "destroy": plan.destroy_count,
                "destroy_mode": destroy,
                "refreshed": prior_state is not state,
            },
        )
        return plan

    def _plan_apply(
        self,
        configuration: Configuration,
        graph: DependencyGraph,
        state: State,
        variables: dict[str, Any],
    ) -> tuple[list[ResourceChange], dict[str, dict[str, Any]]]:
        changes: list[ResourceChange] = []
        planned: dict[str, dict[str, Any]] = {}
        actions: dict[str, Action] = {}

        for address in graph.topological_sort():
            block = configuration.resources[address]
            prior = state.attributes(address)
            after = self._planned_arguments(block, variables, planned)
            dependencies = list(graph.nodes[address].depends_on)

            if prior is None:
                action = Action.CREATE
                reasons: list[str] = []
            else:
                action, reasons = self._compare(block, prior, after, actions)

            actions[address] = action
            match action:
                case Action.NO_OP:
                    planned[address] = prior or {}
                case Action.UPDATE:
                    planned[address] = {**(prior or {}), **after}
                case _:
                    planned[address] = {**after, "id": UNKNOWN}

            changes.append(
                ResourceChange(
                    address=address,
                    type=block.type,
                    name=block.name,
                    action=action,
                    before=prior,
                    after=after,
                    config=block.arguments,
                    dependencies=dependencies,
                    replace_reasons=reasons,
                )
            )

        # Resources removed from configuration
        for address in state.addresses():
            if address in configuration.resources:
                continue
            entry = state.get(address)
            changes.append(
                ResourceChange(
                    address=address,
                    type=entry.type,
                    name=entry.name,
                    action=Action.DELETE,
                    before=dict(entry.attributes),
                    dependencies=list(entry.dependencies),
                )
            )

        return changes, planned

    def _planned_arguments(
        self,
        block: ResourceBlock,
        variables: dict[str, Any],
        planned: dict[str, dict[str, Any]],
    ) -> dict[str, Any]:
        scope = EvaluationScope(variables=variables, resources=planned, allow_unknown=True)
        try:
            resolved = resolve(block.arguments, scope)
        except ExpressionError as e:
            raise PlanError(f"{block.address}: {e}") from e

        try:
            return validate_arguments(block.type, resolved)
        except ValidationError as e:
            details = "; ".join(
                f"{'.'.join(str(x) for x in err['loc'])}: {err['msg']}" for err in e.errors()
            )
            raise PlanError(f"{block.address}: invalid arguments: {details}") from e

    def _compare(
        self,
        block: ResourceBlock,
        prior: dict[str, Any],
        after: dict[str, Any],
        actions: dict[str, Action],
    ) -> tuple[Action, list[str]]:
        schema = get_resource_schema(block.type)
        reasons: list[str] = []
        changed = False

        for name, value in after.items():
            if value is not UNKNOWN and not contains_unknown(value) and prior.get(name) == value:
                continue
            changed = True
            if name in schema.force_new:
                if value is UNKNOWN:
                    reasons.append(f"{name} will change to a value known after apply")
                else:
                    reasons.append(f"{name} changes from {prior.get(name)!r} to {value!r}")

        # Deleting a parent deletes everything it contains
        for name in sorted(schema.force_new):
            for ref in find_references(block.arguments.get(name)):
                if not ref.is_variable and actions.get(ref.address) == Action.REPLACE:
                    reasons.append(f"{name} refers to {ref.address}, which is replaced")
                    changed = True

        if reasons:
            return Action.REPLACE, reasons
        if changed:
            return Action.UPDATE, []
        return Action.NO_OP, []

    def _plan_destroy(self, configuration: Configuration, state: State) -> list[ResourceChange]:
        changes = []
        for entry in state.resources:
            block = configuration.resources.get(entry.address)
            changes.append(
                ResourceChange(
                    address=entry.address,
                    type=entry.type,
                    name=entry.name,
                    action=Action.DELETE,
                    before=dict(entry.attributes),
                    dependencies=list(entry.dependencies),
                    config=block.arguments if block is not None else {},
                )
            )
        return changes

    def _check_prevent_destroy(self, configuration: Configuration, plan: Plan) -> None:
        for change in plan.changes:
            if change.action not in (Action.DELETE, Action.REPLACE):
                continue
            block = configuration.resources.get(change.address)
            if block is not None and block.prevent_destroy:
                outcome = "replaced" if change.action == Action.REPLACE else "destroyed"
                raise PlanError(
                    f"{change.address} has lifecycle.prevent_destroy set, but the plan "
                    f"calls for it to be {outcome}"
                )


# =============================================================================
# Rendering
# =============================================================================


_SYMBOLS = {
    Action.CREATE: "+",
    Action.UPDATE: "~",
    Action.REPLACE: "-/+",
    Action.DELETE: "-",
}

_VERBS = {
    Action.CREATE: "will be created",
    Action.UPDATE: "will be updated in-place",
    Action.REPLACE: "must be replaced",
    Action.DELETE: "will be destroyed",
}


def _render_value(value: Any) -> str:
    if value is UNKNOWN:
        return "(known after apply)"
    if contains_unknown(value):
        return json.dumps(_encode(value)).replace(
            json.dumps({UNKNOWN_MARKER: True}), "(known after apply)"
        )
    return json.dumps(value)


def render_plan(plan: Plan) -> str:
    """Render a plan as human-readable text."""
    lines: list[str] = []
    for change in plan.significant_changes:
        symbol = _SYMBOLS[change.action]
        lines.append(f"  # {change.address} {_VERBS[change.action]}")
        for reason in change.replace_reasons:
            lines.append(f"  # ({reason})")
        lines.append(f'  {symbol} resource "{change.type}" "{change.name}" {{')

        if change.action == Action.DELETE:
            for key, value in sorted((change.before or {}).items()):
                lines.append(f"      - {key} = {_render_value(value)}")
        elif change.action == Action.CREATE:
            for key, value in sorted((change.after or {}).items()):
                lines.append(f"      + {key} = {_render_value(value)}")
            lines.append("      + id = (known after apply)")
        else:
            before = change.before or {}
            for key in change.changed_attributes:
                after_value = (change.after or {}).get(key)
                old, new = _render_value(before.get(key)), _render_value(after_value)
                lines.append(f"      ~ {key} = {old} -> {new}")
        lines.append("    }")
        lines.append("")

    if not plan.has_changes:
        lines.append("No changes. Your infrastructure matches the configuration.")
    else:
        lines.append(plan.summary())
    return "\n".join(lines)
