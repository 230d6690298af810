"""Workspace commands: init, validate, plan, apply, destroy and friends.

A workspace is a working directory holding configuration files. `init`
resolves the state backend and records it in `.terraform/terraform.tfstate`;
every command that touches state requires that record.
"""

from __future__ import annotations

import hashlib
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from .blob_backend import AzureBlobBackend
from .config import BACKEND_RECORD_FILENAME, DEFAULT_PLAN_FILENAME, Config
from .config_loader import (
    ConfigLoadError,
    format_validation_error,
    load_configuration,
    load_variable_file,
    parse_var_assignments,
    resolve_variables,
)
from .dependency import DependencyError, build_resource_graph
from .executor import ApplyResult, Executor
from .models import AzureRmBackendBlock, Configuration, LocalBackendBlock
from .planner import Plan, Planner
from .providers import AzureProvider, Provider
from .security import get_managed_identity_credential
from .state import LocalBackend, StateBackend, state_lock

logger = logging.getLogger(__name__)

BACKEND_RECORD_VERSION = 3

# Local state, plans and variable files must never be committed
GITIGNORE_ENTRIES: tuple[str, ...] = (
    ".terraform/",
    "*.tfstate",
    "*.tfstate.*",
    "*.tfvars",
    "*.tfvars.json",
    "crash.log",
    "crash.*.log",
    "override.tf",
    "override.tf.json",
    "*_override.tf",
    "*_override.tf.json",
    DEFAULT_PLAN_FILENAME,
    "*.tfplan",
)
GITIGNORE_HEADER = "# Local state, plans and secrets"

INIT_REQUIRED_MESSAGE = 'Backend initialization required, please run "init"'


class WorkspaceError(Exception):
    """Raised when a workspace command cannot run."""

    pass


@dataclass
class Diagnostic:
    """A validation finding."""

    severity: str
    summary: str
    detail: str = ""

    def __str__(self) -> str:
        text = f"{self.severity.capitalize()}: {self.summary}"
        return f"{text}\n\n{self.detail}" if self.detail else text


@dataclass
class ValidationResult:
    """Outcome of `validate`."""

    diagnostics: list[Diagnostic] = field(default_factory=list)
    resource_count: int = 0

    @property
    def valid(self) -> bool:
        return not any(d.severity == "error" for d in self.diagnostics)


@dataclass
class BackendRecord:
    """The backend chosen at init time."""

    type: str
    config: dict[str, Any]

    @property
    def hash(self) -> str:
        canonical = json.dumps({"type": self.type, "config": self.config}, sort_keys=True)
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": BACKEND_RECORD_VERSION,
            "backend": {"type": self.type, "config": self.config, "hash": self.hash},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BackendRecord:
        backend = data["backend"]
        return cls(type=backend["type"], config=dict(backend.get("config") or {}))


def parse_backend_config(items: list[str]) -> dict[str, Any]:
    """Parse `-backend-config` values: `key=value` pairs or settings files.

    Raises:
        WorkspaceError: If an item is neither.
    """
    settings: dict[str, Any] = {}
    for item in items:
        if "=" in item:
            key, _, value = item.partition("=")
            key = key.strip()
            if not key:
                raise WorkspaceError(f"Invalid -backend-config value: {item}")
            settings[key] = value.strip().strip('"')
            continue

        path = Path(item)
        if not path.is_file():
            raise WorkspaceError(f"-backend-config must be key=value or a file: {item}")
        try:
            settings.update(load_variable_file(path))
        except ConfigLoadError as e:
            raise WorkspaceError(str(e)) from e
    return settings


def ensure_gitignore(working_dir: Path) -> list[str]:
    """Append missing exclusion entries to `.gitignore`.

    Returns:
        The entries that were added.
    """
    path = working_dir / ".gitignore"
    existing = path.read_text(encoding="utf-8") if path.exists() else ""
    present = {line.strip() for line in existing.splitlines()}
    missing = [entry for entry in GITIGNORE_ENTRIES if entry not in present]
    if not missing:
        return []

    lines = []
    if existing and not existing.endswith("\n"):
        lines.append("")
    if GITIGNORE_HEADER not in present:
        lines.append(GITIGNORE_HEADER)
    lines.extend(missing)
    with path.open("a", encoding="utf-8") as handle:
        handle.write("\n".join(lines) + "\n")
    return missing


BackendFactory = Callable[[BackendRecord, Config], StateBackend]
ProviderFactory = Callable[[Configuration, Config], Provider]
ConfirmCallback = Callable[[Plan], Awaitable[bool] | bool]


def default_backend_factory(record: BackendRecord, config: Config) -> StateBackend:
    """Build the state backend named by a backend record."""
    if record.type == "local":
        settings = LocalBackendBlock.model_validate(record.config)
        path = Path(settings.path)
        return LocalBackend(path if path.is_absolute() else config.working_dir / path)

    settings = AzureRmBackendBlock.model_validate(record.config)
    credential = get_managed_identity_credential(config.client_id)
    return AzureBlobBackend(settings, credential=credential)


def default_provider_factory(configuration: Configuration, config: Config) -> Provider:
    """Build the Azure provider for a configuration."""
    subscription_id = (
        configuration.provider.subscription_id if configuration.provider else None
    ) or config.subscription_id
    return AzureProvider(
        subscription_id=subscription_id or "",
        client_id=config.client_id,
        timeout_seconds=config.operation_timeout_seconds,
    )


class Workspace:
    """Commands operating on one working directory."""

    def __init__(
        self,
        config: Config,
        backend_factory: BackendFactory = default_backend_factory,
        provider_factory: ProviderFactory = default_provider_factory,
    ) -> None:
        self.config = config
        self._backend_factory = backend_factory
        self._provider_factory = provider_factory

    @property
    def working_dir(self) -> Path:
        return self.config.working_dir

    @property
    def record_path(self) -> Path:
        return self.config.data_dir / BACKEND_RECORD_FILENAME

    # -------------------------------------------------------------------------
    # init / validate
    # -------------------------------------------------------------------------

    def init(self, backend_config: dict[str, Any] | None = None) -> BackendRecord:
        """Resolve the backend, verify it is reachable and record it.

        Raises:
            WorkspaceError: If configuration is invalid or the backend is
                incomplete or unreachable.
        """
        configuration = self._load()
        overrides = dict(backend_config or {})

        backend_type = configuration.backend_type
        settings = {**configuration.backend_settings, **overrides}
        try:
            if backend_type == "azurerm":
                block = AzureRmBackendBlock.model_validate(settings)
                missing = block.missing_fields()
                if missing:
                    raise WorkspaceError(
                        f"azurerm backend is missing required settings {missing}; "
                        "set them in the backend block or pass -backend-config key=value"
                    )
                settings = block.model_dump(exclude_none=True)
            else:
                settings = LocalBackendBlock.model_validate(settings).model_dump()
        except ValidationError as e:
            raise WorkspaceError(
                f"Invalid {backend_type} backend configuration:\n{format_validation_error(e)}"
            ) from e

        record = BackendRecord(type=backend_type, config=settings)
        backend = self._backend_factory(record, self.config)
        # Fails early on unreachable storage or a corrupt state
        backend.read()

        self.config.data_dir.mkdir(parents=True, exist_ok=True)
        self.record_path.write_text(json.dumps(record.to_dict(), indent=2) + "\n", encoding="utf-8")
        added = ensure_gitignore(self.working_dir)

        logger.info(
            "Initialized backend",
            extra={
                "backend": backend_type,
                "location": backend.describe(),
                "gitignore_added": added,
            },
        )
        return record

    def validate(self) -> ValidationResult:
        """Check configuration without touching the backend or Azure."""
        result = ValidationResult()
        try:
            configuration = load_configuration(self.working_dir)
        except ConfigLoadError as e:
            result.diagnostics.append(Diagnostic("error", "Invalid configuration", str(e)))
            return result

        result.resource_count = len(configuration.resources)
        try:
            build_resource_graph(configuration)
        except DependencyError as e:
            result.diagnostics.append(Diagnostic("error", "Invalid reference", str(e)))

        for name, variable in configuration.variables.items():
            if variable.description is None:
                result.diagnostics.append(
                    Diagnostic("warning", f"Variable '{name}' has no description")
                )
        return result

    # -------------------------------------------------------------------------
    # plan / apply / destroy
    # -------------------------------------------------------------------------

    async def plan(
        self,
        var_files: list[Path] | None = None,
        var_assignments: list[str] | None = None,
        destroy: bool = False,
        refresh: bool = True,
        out: Path | None = None,
    ) -> Plan:
        """Compute a plan, optionally saving it to `out`.

        Raises:
            WorkspaceError: If the workspace is not initialized or invalid.
            PlanError: If the plan cannot be computed.
        """
        configuration, variables = self._prepare(var_files, var_assignments)
        backend = self._backend(configuration)
        provider = self._provider_factory(configuration, self.config)

        with state_lock(backend, "OperationTypePlan", self.config.lock_timeout_seconds):
            state = backend.read()
            plan = await Planner(provider).plan(
                configuration, state, variables, refresh=refresh, destroy=destroy
            )

        if out is not None:
            plan.save(out if out.is_absolute() else self.working_dir / out)
        return plan

    async def apply(
        self,
        plan_file: Path | None = None,
        var_files: list[Path] | None = None,
        var_assignments: list[str] | None = None,
        confirm: ConfirmCallback | None = None,
        refresh: bool = True,
        destroy: bool = False,
    ) -> tuple[Plan, ApplyResult | None]:
        """Apply a saved plan, or plan and apply in one locked operation.

        Args:
            plan_file: Saved plan to apply. No confirmation is asked for.
            confirm: Called with the plan before applying; a falsy answer
                cancels. None applies without asking.

        Returns:
            The plan, and the apply result (None when nothing changed or
            the apply was cancelled).

        Raises:
            WorkspaceError: If not initialized or the apply was cancelled.
            PlanError, StalePlanError, ApplyError, StateLockError
        """
        if plan_file is not None:
            if var_assignments or var_files:
                raise WorkspaceError("Variables cannot be set when applying a saved plan")
            configuration = self._load()
            backend = self._backend(configuration)
            path = plan_file if plan_file.is_absolute() else self.working_dir / plan_file
            plan = Plan.load(path)
            executor = self._executor(configuration, backend)
            return plan, await executor.apply(plan, working_dir=str(self.working_dir))

        configuration, variables = self._prepare(var_files, var_assignments)
        backend = self._backend(configuration)
        provider = self._provider_factory(configuration, self.config)
        operation = "OperationTypeDestroy" if destroy else "OperationTypeApply"

        with state_lock(backend, operation, self.config.lock_timeout_seconds) as lock_id:
            state = backend.read()
            plan = await Planner(provider).plan(
                configuration, state, variables, refresh=refresh, destroy=destroy
            )
            if not plan.has_changes:
                logger.info("No changes to apply")
                return plan, None

            if confirm is not None:
                answer = confirm(plan)
                if not isinstance(answer, bool):
                    answer = await answer
                if not answer:
                    raise WorkspaceError("Apply cancelled")

            executor = Executor(
                backend,
                provider,
                max_changes=self.config.max_changes_per_apply,
                lock_timeout_seconds=self.config.lock_timeout_seconds,
            )
            result = await executor.apply(plan, working_dir=str(self.working_dir), lock_id=lock_id)
        return plan, result

    async def destroy(
        self,
        var_files: list[Path] | None = None,
        var_assignments: list[str] | None = None,
        confirm: ConfirmCallback | None = None,
    ) -> tuple[Plan, ApplyResult | None]:
        """Destroy every resource in state."""
        return await self.apply(
            var_files=var_files, var_assignments=var_assignments, confirm=confirm, destroy=True
        )

    # -------------------------------------------------------------------------
    # state inspection
    # -------------------------------------------------------------------------

    def output(self) -> dict[str, Any]:
        """Output values recorded in state."""
        configuration = self._load()
        state = self._backend(configuration).read()
        return {name: value.value for name, value in state.outputs.items()}

    def sensitive_outputs(self) -> set[str]:
        configuration = self._load()
        state = self._backend(configuration).read()
        return {name for name, value in state.outputs.items() if value.sensitive}

    def state_list(self) -> list[str]:
        """Addresses of every resource in state."""
        configuration = self._load()
        return self._backend(configuration).read().addresses()

    def force_unlock(self, lock_id: str) -> None:
        """Release a stuck state lock by ID."""
        configuration = self._load()
        self._backend(configuration).force_unlock(lock_id)

    # -------------------------------------------------------------------------
    # helpers
    # -------------------------------------------------------------------------

    def _load(self) -> Configuration:
        try:
            return load_configuration(self.working_dir)
        except ConfigLoadError as e:
            raise WorkspaceError(str(e)) from e

    def _prepare(
        self, var_files: list[Path] | None, var_assignments: list[str] | None
    ) -> tuple[Configuration, dict[str, Any]]:
        configuration = self._load()
        try:
            variables = resolve_variables(
                configuration,
                self.working_dir,
                var_files=[p if p.is_absolute() else self.working_dir / p for p in var_files or []],
                cli_values=parse_var_assignments(var_assignments or []),
            )
        except ConfigLoadError as e:
            raise WorkspaceError(str(e)) from e
        return configuration, variables

    def _record(self) -> BackendRecord:
        if not self.record_path.exists():
            raise WorkspaceError(INIT_REQUIRED_MESSAGE)
        try:
            return BackendRecord.from_dict(json.loads(self.record_path.read_text(encoding="utf-8")))
        except (OSError, json.JSONDecodeError, KeyError, TypeError) as e:
            raise WorkspaceError(f"{INIT_REQUIRED_MESSAGE} (backend record unreadable: {e})") from e

    def _backend(self, configuration: Configuration) -> StateBackend:
        record = self._record()
        if record.type != configuration.backend_type:
            raise WorkspaceError(
                f"Backend configuration changed from {record.type} to "
                f"{configuration.backend_type}. {INIT_REQUIRED_MESSAGE}"
            )
        # Settings in configuration must still match what init recorded
        for key, value in configuration.backend_settings.items():
            if value is not None and record.config.get(key) != value:
                raise WorkspaceError(
                    f"Backend setting '{key}' changed since init. {INIT_REQUIRED_MESSAGE}"
                )
        return self._backend_factory(record, self.config)

    def _executor(self, configuration: Configuration, backend: StateBackend) -> Executor:
        return Executor(
            backend,
            self._provider_factory(configuration, self.config),
            max_changes=self.config.max_changes_per_apply,
            lock_timeout_seconds=self.config.lock_timeout_seconds,
        )
