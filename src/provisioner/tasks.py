"""Pipeline task implementations.

Tasks are looked up by `Name@Major`. Each handler receives the step's
inputs (macros already expanded) and a TaskContext, and either returns a
TaskOutcome or raises TaskError to fail the step.

The Terraform task runs the in-process workspace rather than a Terraform
binary; the installer task only records the requested version.
"""

from __future__ import annotations

import asyncio
import dataclasses
import functools
import logging
import math
import os
import re
import shlex
import subprocess
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .approval import ApprovalGate, ApprovalGateError, ApprovalStatus, TimeoutAction
from .config import Config, ConfigurationError
from .executor import ApplyError
from .planner import PlanError, render_plan
from .providers import ProviderError
from .state import StateError
from .workspace import Workspace, WorkspaceError, parse_backend_config

logger = logging.getLogger(__name__)

VALID_TERRAFORM_VERSION_PATTERN = r"^v?\d+\.\d+\.\d+(-[0-9A-Za-z.]+)?$"
VALID_TIMEOUT_PATTERN = r"^(\d+)([sm]?)$"

TERRAFORM_COMMANDS = ("init", "validate", "plan", "apply", "destroy", "custom")
CUSTOM_COMMANDS = ("output", "state list")
INIT_BACKEND_INPUTS = (
    "backendServiceArm",
    "backendAzureRmResourceGroupName",
    "backendAzureRmStorageAccountName",
    "backendAzureRmContainerName",
    "backendAzureRmKey",
)

# Flags accepted for compatibility that have no effect here
IGNORED_FLAGS = ("-input", "-no-color", "-compact-warnings", "-lock", "-upgrade", "-reconfigure")

# Shared run state keys
RUN_STATE_PLAN = "last_plan"
RUN_STATE_RISK = "last_plan_risk"
RUN_STATE_TERRAFORM_VERSION = "terraform_version"


class TaskError(Exception):
    """Raised when a task fails; the step is marked Failed."""

    pass


@dataclass
class TaskContext:
    """Everything a task can see while it runs."""

    config: Config
    variables: dict[str, str] = field(default_factory=dict)
    env: dict[str, str] = field(default_factory=dict)
    approval_gate: ApprovalGate | None = None
    workspace_factory: Callable[[Config], Workspace] = Workspace
    agentless: bool = False
    stage_name: str = ""
    job_name: str = ""
    step_name: str = ""
    run_id: str = ""
    # Shared by every step of a run, e.g. the last plan for risk assessment
    run_state: dict[str, Any] = field(default_factory=dict)
    timeout_seconds: float | None = None

    @property
    def working_dir(self) -> Path:
        return self.config.working_dir

    def resolve_path(self, value: str | None) -> Path:
        if not value:
            return self.working_dir
        path = Path(value)
        return path if path.is_absolute() else self.working_dir / path


@dataclass
class TaskOutcome:
    """Messages a task reports for its step."""

    messages: list[str] = field(default_factory=list)


TaskHandler = Callable[[TaskContext, dict[str, Any]], Awaitable[TaskOutcome]]

TASK_REGISTRY: dict[str, TaskHandler] = {}


def register_task(*refs: str) -> Callable[[TaskHandler], TaskHandler]:
    """Register a handler under one or more `Name@Major` references."""

    def decorator(handler: TaskHandler) -> TaskHandler:
        for ref in refs:
            TASK_REGISTRY[normalize_task_ref(ref)] = handler
        return handler

    return decorator


def normalize_task_ref(ref: str) -> str:
    """`TerraformTask@5.1.0` and `terraformtask@5` both become `terraformtask@5`."""
    name, _, version = ref.partition("@")
    major = version.split(".", 1)[0]
    return f"{name.strip().lower()}@{major.strip()}"


def get_task(ref: str) -> TaskHandler:
    """Look up the handler for a task reference.

    Raises:
        TaskError: If no handler is registered for the reference.
    """
    handler = TASK_REGISTRY.get(normalize_task_ref(ref))
    if handler is None:
        known = sorted(TASK_REGISTRY)
        raise TaskError(f"Unknown task '{ref}'. Available tasks: {known}")
    return handler


def _required(inputs: dict[str, Any], name: str, task: str) -> str:
    value = inputs.get(name)
    if value is None or str(value).strip() == "":
        raise TaskError(f"{task}: input '{name}' is required")
    return str(value).strip()


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("true", "1", "yes")


# =============================================================================
# commandOptions
# =============================================================================


@dataclass
class CommandOptions:
    """Terraform flags passed through `commandOptions`."""

    out: str | None = None
    plan_file: str | None = None
    auto_approve: bool = False
    destroy: bool = False
    refresh: bool = True
    var_assignments: list[str] = field(default_factory=list)
    var_files: list[str] = field(default_factory=list)
    backend_config: list[str] = field(default_factory=list)
    lock_timeout_seconds: int | None = None


def parse_lock_timeout(value: str) -> int:
    """Parse Terraform durations such as `30s`, `5m` or `0`."""
    match = re.match(VALID_TIMEOUT_PATTERN, value.strip())
    if match is None:
        raise TaskError(f"Invalid -lock-timeout value: {value}")
    amount = int(match.group(1))
    return amount * 60 if match.group(2) == "m" else amount


def parse_command_options(text: str | None) -> CommandOptions:
    """Parse a commandOptions string.

    Raises:
        TaskError: On unknown flags, missing flag values or more than one
            plan file.
    """
    options = CommandOptions()
    try:
        args = shlex.split(text or "")
    except ValueError as e:
        raise TaskError(f"Invalid commandOptions: {e}") from e

    index = 0

    def value_of(flag: str, inline: str | None) -> str:
        nonlocal index
        if inline is not None:
            return inline
        if index + 1 >= len(args):
            raise TaskError(f"Flag {flag} needs a value")
        index += 1
        return args[index]

    while index < len(args):
        arg = args[index]
        flag, eq, inline = arg.partition("=")
        inline_value = inline if eq else None
        # Terraform accepts both -flag and --flag
        if flag.startswith("--"):
            flag = flag[1:]

        if not flag.startswith("-"):
            if options.plan_file is not None:
                raise TaskError(
                    f"Only one plan file may be given, got '{options.plan_file}' and '{arg}'"
                )
            options.plan_file = arg
        elif flag == "-out":
            options.out = value_of(flag, inline_value)
        elif flag == "-auto-approve":
            options.auto_approve = inline_value is None or _as_bool(inline_value)
        elif flag == "-destroy":
            options.destroy = inline_value is None or _as_bool(inline_value)
        elif flag == "-refresh":
            options.refresh = inline_value is None or _as_bool(inline_value)
        elif flag == "-var":
            options.var_assignments.append(value_of(flag, inline_value))
        elif flag == "-var-file":
            options.var_files.append(value_of(flag, inline_value))
        elif flag == "-backend-config":
            options.backend_config.append(value_of(flag, inline_value))
        elif flag == "-lock-timeout":
            options.lock_timeout_seconds = parse_lock_timeout(value_of(flag, inline_value))
        elif flag in IGNORED_FLAGS:
            logger.debug("Ignoring flag", extra={"flag": arg})
        else:
            raise TaskError(f"Unsupported option in commandOptions: {arg}")
        index += 1

    return options


# =============================================================================
# TerraformInstaller@1
# =============================================================================


@register_task("TerraformInstaller@1", "TerraformInstaller@0")
async def terraform_installer(context: TaskContext, inputs: dict[str, Any]) -> TaskOutcome:
    version = str(inputs.get("terraformVersion") or "latest").strip()
    if version.lower() != "latest" and not re.match(VALID_TERRAFORM_VERSION_PATTERN, version):
        raise TaskError(
            "TerraformInstaller: terraformVersion must be 'latest' or a semantic version: "
            f"{version}"
        )
    context.run_state[RUN_STATE_TERRAFORM_VERSION] = version
    logger.info("Terraform version selected", extra={"version": version})
    return TaskOutcome(messages=[f"Using built-in engine for Terraform {version}"])


# =============================================================================
# TerraformTask@5
# =============================================================================


WORKSPACE_ERRORS: tuple[type[Exception], ...] = (
    WorkspaceError,
    PlanError,
    ApplyError,
    StateError,
    ProviderError,
    ConfigurationError,
)


@register_task("TerraformTask@5", "TerraformTaskV4@4")
async def terraform_task(context: TaskContext, inputs: dict[str, Any]) -> TaskOutcome:
    provider = str(inputs.get("provider") or "azurerm").strip().lower()
    if provider != "azurerm":
        raise TaskError(f"TerraformTask: only the azurerm provider is supported, got '{provider}'")

    command = _required(inputs, "command", "TerraformTask").lower()
    if command not in TERRAFORM_COMMANDS:
        raise TaskError(
            f"TerraformTask: command must be one of {list(TERRAFORM_COMMANDS)}: {command}"
        )

    if command in ("plan", "apply", "destroy"):
        _required(inputs, "environmentServiceNameAzureRM", "TerraformTask")

    options = parse_command_options(inputs.get("commandOptions"))
    working_dir = context.resolve_path(inputs.get("workingDirectory"))
    if not working_dir.is_dir():
        raise TaskError(f"TerraformTask: working directory does not exist: {working_dir}")

    try:
        config = context.config.with_working_dir(working_dir)
        if options.lock_timeout_seconds is not None:
            config = dataclasses.replace(config, lock_timeout_seconds=options.lock_timeout_seconds)
        workspace = context.workspace_factory(config)

        logger.info(
            "Running Terraform command",
            extra={
                "command": command,
                "working_dir": str(working_dir),
                "stage": context.stage_name,
            },
        )
        if command == "init":
            return _terraform_init(workspace, inputs, options)
        if command == "validate":
            return _terraform_validate(workspace)
        if command == "plan":
            return await _terraform_plan(context, workspace, options)
        if command in ("apply", "destroy"):
            return await _terraform_apply(context, workspace, options, destroy=command == "destroy")
        return _terraform_custom(workspace, inputs)
    except WORKSPACE_ERRORS as e:
        raise TaskError(f"terraform {command} failed: {e}") from e


def _terraform_init(
    workspace: Workspace, inputs: dict[str, Any], options: CommandOptions
) -> TaskOutcome:
    values = {name: _required(inputs, name, "TerraformTask init") for name in INIT_BACKEND_INPUTS}
    backend_config: dict[str, Any] = {
        "resource_group_name": values["backendAzureRmResourceGroupName"],
        "storage_account_name": values["backendAzureRmStorageAccountName"],
        "container_name": values["backendAzureRmContainerName"],
        "key": values["backendAzureRmKey"],
    }
    backend_config.update(parse_backend_config(options.backend_config))

    record = workspace.init(backend_config)
    logger.info(
        "Backend initialized",
        extra={"service_connection": values["backendServiceArm"], "backend": record.type},
    )
    return TaskOutcome(messages=["Terraform has been successfully initialized!"])


def _terraform_validate(workspace: Workspace) -> TaskOutcome:
    result = workspace.validate()
    messages = [str(d) for d in result.diagnostics]
    if not result.valid:
        raise TaskError("Configuration is invalid:\n" + "\n".join(messages))
    return TaskOutcome(messages=messages + ["Success! The configuration is valid."])


async def _terraform_plan(
    context: TaskContext, workspace: Workspace, options: CommandOptions
) -> TaskOutcome:
    plan = await workspace.plan(
        var_files=[Path(p) for p in options.var_files],
        var_assignments=options.var_assignments,
        destroy=options.destroy,
        refresh=options.refresh,
        out=Path(options.out) if options.out else None,
    )
    context.run_state[RUN_STATE_PLAN] = plan
    if context.approval_gate is not None:
        context.run_state[RUN_STATE_RISK] = context.approval_gate.assessor.assess_plan(plan)
    return TaskOutcome(messages=[render_plan(plan)])


async def _terraform_apply(
    context: TaskContext, workspace: Workspace, options: CommandOptions, destroy: bool
) -> TaskOutcome:
    # Pipelines cannot answer prompts
    if options.plan_file is None and not options.auto_approve:
        raise TaskError(
            "TerraformTask: apply and destroy need -auto-approve or a saved plan file "
            "in commandOptions"
        )
    if options.plan_file is not None and destroy:
        raise TaskError("TerraformTask: destroy does not accept a plan file")

    if options.plan_file is not None:
        plan, result = await workspace.apply(plan_file=Path(options.plan_file))
    else:
        plan, result = await workspace.apply(
            var_files=[Path(p) for p in options.var_files],
            var_assignments=options.var_assignments,
            refresh=options.refresh,
            destroy=destroy or options.destroy,
        )

    if result is None:
        return TaskOutcome(messages=["No changes. Your infrastructure matches the configuration."])
    if not result.success:
        raise TaskError(
            f"Error applying {result.failed or 'plan'}: {result.error}. "
            f"{len(result.applied)} change(s) were applied before the failure"
        )
    context.run_state.pop(RUN_STATE_PLAN, None)
    return TaskOutcome(messages=[result.summary(plan)])


def _terraform_custom(workspace: Workspace, inputs: dict[str, Any]) -> TaskOutcome:
    custom = " ".join(_required(inputs, "customCommand", "TerraformTask custom").split()).lower()
    if custom not in CUSTOM_COMMANDS:
        raise TaskError(
            f"TerraformTask: customCommand must be one of {list(CUSTOM_COMMANDS)}: {custom}"
        )
    if custom == "state list":
        return TaskOutcome(messages=workspace.state_list())

    outputs = workspace.output()
    sensitive = workspace.sensitive_outputs()
    return TaskOutcome(
        messages=[
            f"{name} = {'<sensitive>' if name in sensitive else value!r}"
            for name, value in sorted(outputs.items())
        ]
    )


# =============================================================================
# ManualValidation@0
# =============================================================================


def approval_request_id(context: TaskContext) -> str:
    parts = [context.run_id or "run", context.stage_name, context.job_name, context.step_name]
    return re.sub(r"[^A-Za-z0-9_.-]", "_", ".".join(p for p in parts if p))


@register_task("ManualValidation@0", "ManualValidation@1")
async def manual_validation(context: TaskContext, inputs: dict[str, Any]) -> TaskOutcome:
    if not context.agentless:
        raise TaskError("ManualValidation can only run in an agentless job (pool: server)")
    if context.approval_gate is None:
        raise TaskError("ManualValidation: no approval gate is configured")

    raw_on_timeout = str(inputs.get("onTimeout") or TimeoutAction.REJECT.value).strip().lower()
    try:
        on_timeout = TimeoutAction(raw_on_timeout)
    except ValueError as e:
        raise TaskError(
            f"ManualValidation: onTimeout must be 'reject' or 'resume': {raw_on_timeout}"
        ) from e

    notify = inputs.get("notifyUsers") or []
    if isinstance(notify, str):
        notify = [u.strip() for u in re.split(r"[,\n]", notify) if u.strip()]

    gate = context.approval_gate
    risk = context.run_state.get(RUN_STATE_RISK)
    if risk is not None and gate.auto_approves(risk):
        logger.info("Approval not required", extra={"step": context.step_name})
        return TaskOutcome(messages=["Approval skipped: the last plan deletes nothing"])

    request_id = approval_request_id(context)
    timeout = context.timeout_seconds or None

    try:
        gate.create_request(
            request_id=request_id,
            subject=f"{context.stage_name} / {context.job_name}",
            instructions=str(inputs.get("instructions") or ""),
            notify_users=list(notify),
            risk_assessment=risk,
            timeout_seconds=math.ceil(timeout) if timeout else None,
        )
        request = await gate.wait_for_decision(
            request_id, timeout_seconds=timeout, on_timeout=on_timeout
        )
    except asyncio.CancelledError:
        pending = gate.check_approval(request_id)
        if pending is not None and not pending.is_decided:
            gate.reject(request_id, "system", "Run canceled")
        raise
    except ApprovalGateError as e:
        raise TaskError(f"ManualValidation: {e}") from e

    if request.status == ApprovalStatus.APPROVED:
        return TaskOutcome(messages=[f"Approved by {request.decided_by}"])
    if request.status == ApprovalStatus.EXPIRED:
        raise TaskError(f"Manual validation timed out (request {request_id})")
    raise TaskError(
        f"Manual validation rejected by {request.decided_by}"
        + (f": {request.comment}" if request.comment else "")
    )


# =============================================================================
# Scripts
# =============================================================================


def variables_as_env(variables: dict[str, str]) -> dict[str, str]:
    """Pipeline variables as agent environment variables.

    `Build.SourceBranch` becomes `BUILD_SOURCEBRANCH`.
    """
    return {re.sub(r"[^A-Za-z0-9_]", "_", name).upper(): value for name, value in variables.items()}


def _run_script(
    args: list[str], cwd: Path, env: dict[str, str], timeout: float | None
) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        args,
        cwd=cwd,
        env=env,
        capture_output=True,
        text=True,
        timeout=timeout,
        check=False,
    )


async def _execute_script(
    context: TaskContext, args: list[str], working_directory: str | None, fail_on_stderr: bool
) -> TaskOutcome:
    if context.agentless:
        raise TaskError("Scripts cannot run in an agentless job (pool: server)")

    cwd = context.resolve_path(working_directory)
    env = {**os.environ, **variables_as_env(context.variables), **context.env}

    logger.info("Running script", extra={"step": context.step_name, "cwd": str(cwd)})
    loop = asyncio.get_running_loop()
    try:
        result = await loop.run_in_executor(
            None, functools.partial(_run_script, args, cwd, env, context.timeout_seconds)
        )
    except subprocess.TimeoutExpired as e:
        raise TaskError(f"Script timed out after {e.timeout} seconds") from e
    except OSError as e:
        raise TaskError(f"Script could not be started: {e}") from e

    messages = result.stdout.splitlines()
    stderr = result.stderr.splitlines()
    for line in stderr:
        logger.warning("Script stderr", extra={"step": context.step_name, "line": line})

    if result.returncode != 0:
        raise TaskError(
            f"Script failed with exit code {result.returncode}"
            + (f": {stderr[-1]}" if stderr else "")
        )
    if fail_on_stderr and stderr:
        raise TaskError(f"Script wrote to stderr: {stderr[0]}")
    return TaskOutcome(messages=messages + stderr)


@register_task("CmdLine@2")
async def command_line(context: TaskContext, inputs: dict[str, Any]) -> TaskOutcome:
    script = _required(inputs, "script", "CmdLine")
    return await _execute_script(
        context,
        ["bash", "--noprofile", "--norc", "-e", "-c", script],
        inputs.get("workingDirectory"),
        _as_bool(inputs.get("failOnStderr", False)),
    )


@register_task("Bash@3")
async def bash(context: TaskContext, inputs: dict[str, Any]) -> TaskOutcome:
    target_type = str(inputs.get("targetType") or "filePath").strip().lower()
    if target_type == "inline":
        args = ["bash", "--noprofile", "--norc", "-c", _required(inputs, "script", "Bash")]
    elif target_type == "filepath":
        file_path = context.resolve_path(_required(inputs, "filePath", "Bash"))
        args = ["bash", "--noprofile", "--norc", str(file_path)]
        args += shlex.split(str(inputs.get("arguments") or ""))
    else:
        raise TaskError(f"Bash: targetType must be 'inline' or 'filePath': {target_type}")

    return await _execute_script(
        context, args, inputs.get("workingDirectory"), _as_bool(inputs.get("failOnStderr", False))
    )


@register_task("Checkout@1")
async def checkout(context: TaskContext, inputs: dict[str, Any]) -> TaskOutcome:
    repository = str(inputs.get("repository") or "self")
    if repository == "none":
        return TaskOutcome(messages=["Checkout skipped"])
    # Sources are already present in the working directory
    return TaskOutcome(messages=[f"Using sources in {context.working_dir}"])
