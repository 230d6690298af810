"""Apply planned changes to Azure and record the results in state.

The executor holds the state lock for the whole run:

1. Verify the plan still matches state (lineage and serial)
2. Delete resources in reverse dependency order, including the old copy
   of every replaced resource
3. Create and update resources in dependency order, re-resolving their
   arguments against what has actually been applied so `id`s are concrete
4. Persist state after every successful resource operation

A failure stops the run. Everything applied before it is already in state,
so the next plan picks up where this one stopped.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from pydantic import ValidationError

from .config import DEFAULT_LOCK_TIMEOUT_SECONDS, DEFAULT_MAX_CHANGES_PER_APPLY
from .dependency import DependencyGraph
from .expressions import EvaluationScope, ExpressionError, resolve
from .models import validate_arguments
from .planner import Action, Plan, PlanError, ResourceChange, evaluate_outputs
from .provenance import ApplyProvenance, ProvenanceLogger, get_provenance_logger
from .providers import Provider, ProviderError
from .state import State, StateBackend, StateError, state_lock

logger = logging.getLogger(__name__)


class ApplyError(Exception):
    """Raised when a plan cannot be applied at all."""

    pass


@dataclass
class ApplyResult:
    """Result of applying a plan."""

    operation: str = "apply"
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    applied: list[str] = field(default_factory=list)
    failed: str | None = None
    skipped: list[str] = field(default_factory=list)
    outputs: dict[str, Any] = field(default_factory=dict)
    state_serial: int = 0
    error: Exception | None = None

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        return self.error is None

    def summary(self, plan: Plan) -> str:
        """Terraform-style completion line."""
        added = sum(
            1
            for c in plan.changes
            if c.address in self.applied and c.action in (Action.CREATE, Action.REPLACE)
        )
        changed = sum(
            1 for c in plan.changes if c.address in self.applied and c.action == Action.UPDATE
        )
        destroyed = sum(
            1
            for c in plan.changes
            if c.address in self.applied and c.action in (Action.DELETE, Action.REPLACE)
        )
        if plan.destroy:
            return f"Destroy complete! Resources: {destroyed} destroyed."
        return (
            f"Apply complete! Resources: {added} added, {changed} changed, "
            f"{destroyed} destroyed."
        )


def _execution_order(changes: list[ResourceChange]) -> DependencyGraph:
    graph = DependencyGraph()
    addresses = {change.address for change in changes}
    for change in changes:
        graph.add_node(change.address, [d for d in change.dependencies if d in addresses])
    return graph


def _stop(
    result: ApplyResult, steps: list[tuple[str, ResourceChange]], index: int, error: Exception
) -> None:
    result.failed = steps[index][1].address
    result.error = error
    result.skipped = [c.address for _, c in steps[index + 1 :]]


class Executor:
    """Applies plans through a provider, persisting state as it goes."""

    def __init__(
        self,
        backend: StateBackend,
        provider: Provider,
        max_changes: int = DEFAULT_MAX_CHANGES_PER_APPLY,
        lock_timeout_seconds: int = DEFAULT_LOCK_TIMEOUT_SECONDS,
        provenance_logger: ProvenanceLogger | None = None,
    ) -> None:
        self._backend = backend
        self._provider = provider
        self._max_changes = max_changes
        self._lock_timeout_seconds = lock_timeout_seconds
        self._provenance = provenance_logger or get_provenance_logger()

    async def apply(
        self, plan: Plan, working_dir: str = "", lock_id: str | None = None
    ) -> ApplyResult:
        """Apply a plan.

        Args:
            plan: Plan to apply.
            working_dir: Recorded in the provenance record.
            lock_id: Lock already held by the caller. When None, the executor
                acquires and releases the lock itself.

        Raises:
            ApplyError: If the plan exceeds the change limit.
            StalePlanError: If state changed since the plan was computed.
            StateLockError: If the lock cannot be acquired.
            StateError: If state cannot be read. Write failures during the run
                are returned in the result instead.
        """
        significant = plan.significant_changes
        if len(significant) > self._max_changes:
            raise ApplyError(
                f"Plan has {len(significant)} changes, more than the limit of "
                f"{self._max_changes} per apply (AZPROV_MAX_CHANGES)"
            )

        operation = "destroy" if plan.destroy else "apply"
        if lock_id is not None:
            return await self._apply_locked(plan, lock_id, operation, working_dir)

        with state_lock(
            self._backend, f"Operation{operation.capitalize()}", self._lock_timeout_seconds
        ) as acquired:
            return await self._apply_locked(plan, acquired, operation, working_dir)

    async def _apply_locked(
        self, plan: Plan, lock_id: str, operation: str, working_dir: str
    ) -> ApplyResult:
        result = ApplyResult(operation=operation)
        provenance = self._provenance.create_provenance(
            operation=operation, working_dir=working_dir, backend=self._backend.describe()
        )
        provenance.change_summary.add_count = plan.add_count
        provenance.change_summary.change_count = plan.change_count
        provenance.change_summary.destroy_count = plan.destroy_count
        provenance.change_summary.no_op_count = plan.count(Action.NO_OP)

        started = time.monotonic()
        state: State | None = None
        try:
            state = self._backend.read()
            plan.check_current(state)
            await self._apply_changes(plan, state, lock_id, result, provenance)

            if result.error is None:
                try:
                    self._finish_outputs(plan, state)
                    self._backend.write(state, lock_id)
                except (PlanError, StateError) as e:
                    result.error = e

            result.outputs = {name: value.value for name, value in state.outputs.items()}
            result.state_serial = state.serial
        except Exception as e:
            # Recorded in the provenance record, then propagated
            result.error = e
            raise
        finally:
            result.end_time = datetime.now(UTC)
            self._log_provenance(provenance, result, state, started)
        return result

    async def _apply_changes(
        self,
        plan: Plan,
        state: State,
        lock_id: str,
        result: ApplyResult,
        provenance: ApplyProvenance,
    ) -> None:
        graph = _execution_order(plan.changes)
        by_address = {change.address: change for change in plan.changes}
        deletes = [
            by_address[a]
            for a in graph.reverse_order()
            if by_address[a].action in (Action.DELETE, Action.REPLACE)
        ]
        writes = [
            by_address[a]
            for a in graph.topological_sort()
            if by_address[a].action in (Action.CREATE, Action.UPDATE, Action.REPLACE)
        ]

        steps: list[tuple[str, ResourceChange]] = [("delete", c) for c in deletes]
        steps += [("write", c) for c in writes]

        for index, (phase, change) in enumerate(steps):
            try:
                if phase == "delete":
                    await self._delete(change, state)
                else:
                    await self._write(change, plan, state)
            except (ProviderError, PlanError, ExpressionError, ValidationError) as e:
                logger.error(
                    "Resource operation failed",
                    extra={
                        "address": change.address,
                        "action": change.action.value,
                        "error": str(e),
                    },
                )
                _stop(result, steps, index, e)
                return

            try:
                self._backend.write(state, lock_id)
            except StateError as e:
                # The change reached Azure but is missing from persisted state
                logger.error(
                    "Failed to persist state",
                    extra={
                        "address": change.address,
                        "action": change.action.value,
                        "error": str(e),
                    },
                )
                _stop(result, steps, index, e)
                return

            # A replaced resource counts once, after its create
            if phase == "write" or change.action == Action.DELETE:
                result.applied.append(change.address)
            self._provenance.log_change_detail(
                provenance,
                address=change.address,
                action="delete" if phase == "delete" else change.action.value,
                resource_id=(state.attributes(change.address) or change.before or {}).get("id"),
            )

    async def _delete(self, change: ResourceChange, state: State) -> None:
        logger.info(
            "Destroying resource",
            extra={"address": change.address, "replace": change.action == Action.REPLACE},
        )
        await self._provider.delete(change.type, dict(change.before or {}))
        state.remove_resource(change.address)

    async def _write(self, change: ResourceChange, plan: Plan, state: State) -> None:
        scope = EvaluationScope(
            variables=plan.variables, resources=state.all_attributes(), allow_unknown=False
        )
        arguments = validate_arguments(change.type, resolve(change.config, scope))

        logger.info(
            "Applying resource", extra={"address": change.address, "action": change.action.value}
        )
        if change.action == Action.UPDATE:
            attributes = await self._provider.update(
                change.type, dict(change.before or {}), arguments
            )
        else:
            attributes = await self._provider.create(change.type, arguments)

        state.set_resource(change.type, change.name, attributes, change.dependencies)

    def _finish_outputs(self, plan: Plan, state: State) -> None:
        if plan.destroy:
            state.outputs = {}
            return
        values = evaluate_outputs(
            plan.output_config, plan.variables, state.all_attributes(), allow_unknown=False
        )
        state.set_outputs(values, sensitive=set(plan.sensitive_outputs))

    def _log_provenance(
        self,
        provenance: ApplyProvenance,
        result: ApplyResult,
        state: State | None,
        started: float,
    ) -> None:
        provenance.changes_applied = len(result.applied)
        provenance.changes_failed = 1 if result.failed else 0
        if state is not None:
            provenance.state_lineage = state.lineage
            provenance.state_serial = state.serial
        provenance.duration_seconds = time.monotonic() - started
        if result.error is not None:
            provenance.error = str(result.error)
            provenance.error_type = type(result.error).__name__
        self._provenance.log_provenance(provenance)
