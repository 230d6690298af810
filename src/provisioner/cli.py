"""Azure Provisioner CLI (azprov).

Terraform-style workflow over the in-process engine, plus the pipeline
runner.

Usage:
    azprov init -backend-config=key=prod.tfstate
    azprov plan -out=tfplan
    azprov apply tfplan
    azprov destroy -auto-approve
    azprov output -json
    azprov state list
    azprov pipeline run azure-pipelines.yml --branch main
    azprov pipeline approve <request-id> --comment "looks good"
"""

from __future__ import annotations

import asyncio
import dataclasses
import getpass
import json
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import click

from .approval import ApprovalConfig, ApprovalGate, ApprovalGateError, ConfidenceLevel, RiskAssessor
from .config import DEFAULT_PIPELINE_FILE, Config, ConfigurationError, LogFormat
from .executor import ApplyError, ApplyResult
from .main import setup_logging
from .pipeline import PipelineLoadError, load_pipeline
from .planner import Plan, PlanError, render_plan
from .providers import ProviderError
from .runner import PipelineRunner, RunResult
from .security import SecretlessViolationError
from .state import StateError
from .tasks import TaskError, parse_lock_timeout
from .workspace import Workspace, WorkspaceError, parse_backend_config

CLI_VERSION = "0.1.0"
SENSITIVE_PLACEHOLDER = "<sensitive>"

COMMAND_ERRORS: tuple[type[Exception], ...] = (
    WorkspaceError,
    PlanError,
    ApplyError,
    StateError,
    ProviderError,
    ConfigurationError,
    PipelineLoadError,
    ApprovalGateError,
    TaskError,
)


class SecurityViolation(click.ClickException):
    """Credentials found in the environment."""

    exit_code = 2


@contextmanager
def handle_errors() -> Iterator[None]:
    """Report known failures as click errors instead of tracebacks."""
    try:
        yield
    except SecretlessViolationError as e:
        raise SecurityViolation(str(e)) from e
    except COMMAND_ERRORS as e:
        raise click.ClickException(str(e)) from e


@dataclasses.dataclass
class CliState:
    chdir: Path | None = None

    def config(self, lock_timeout: str | None = None) -> Config:
        with handle_errors():
            config = Config.from_env(working_dir=self.chdir)
            if lock_timeout is not None:
                config = dataclasses.replace(
                    config, lock_timeout_seconds=parse_lock_timeout(lock_timeout)
                )
        return config

    def workspace(self, lock_timeout: str | None = None) -> Workspace:
        return Workspace(self.config(lock_timeout))


def _echo_risk(plan: Plan) -> None:
    risk = RiskAssessor(ApprovalConfig.from_env()).assess_plan(plan)
    risky = [a for a in risk.change_assessments if a.confidence == ConfidenceLevel.LOW]
    if not risky:
        return
    click.secho(f"\nWarning: {len(risky)} high-risk change(s):", fg="yellow", bold=True)
    for assessment in risky:
        reasons = "; ".join(assessment.risk_reasons)
        click.secho(f"  - {assessment.address}: {reasons}", fg="yellow")


def _prompt_confirmation(plan: Plan) -> bool:
    click.echo(render_plan(plan))
    _echo_risk(plan)
    if plan.destroy:
        click.echo("\nDo you really want to destroy all resources?")
    else:
        click.echo("\nDo you want to perform these actions?")
    click.echo("  Only 'yes' will be accepted to approve.\n")
    answer = click.prompt("  Enter a value", default="", show_default=False)
    return answer.strip() == "yes"


def _show_plan(plan: Plan) -> bool:
    click.echo(render_plan(plan))
    _echo_risk(plan)
    return True


def _format_value(value: Any) -> str:
    return json.dumps(value) if not isinstance(value, str) else f'"{value}"'


def _echo_apply_result(
    plan: Plan, result: ApplyResult | None, outputs: dict[str, Any], sensitive: set[str]
) -> None:
    if result is None:
        click.secho("\nNo changes. Your infrastructure matches the configuration.", fg="green")
        return
    if not result.success:
        if result.applied:
            click.echo(f"\n{len(result.applied)} change(s) were applied before the error:")
            for address in result.applied:
                click.echo(f"  {address}")
        raise click.ClickException(
            f"applying {result.failed}: {result.error}" if result.failed else str(result.error)
        )

    click.secho(f"\n{result.summary(plan)}", fg="green", bold=True)
    if outputs and not plan.destroy:
        click.echo("\nOutputs:\n")
        for name in sorted(outputs):
            shown = SENSITIVE_PLACEHOLDER if name in sensitive else _format_value(outputs[name])
            click.echo(f"{name} = {shown}")


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version=CLI_VERSION, prog_name="azprov")
@click.option(
    "-chdir",
    "chdir",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    help="Switch to a different working directory before running the command",
)
@click.option(
    "--log-level",
    envvar="AZPROV_LOG_LEVEL",
    default="WARNING",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Log level for diagnostics on stderr",
)
@click.option(
    "--log-format",
    envvar="AZPROV_LOG_FORMAT",
    default=LogFormat.TEXT.value,
    type=click.Choice([f.value for f in LogFormat], case_sensitive=False),
    help="Log format",
)
@click.pass_context
def cli(ctx: click.Context, chdir: Path | None, log_level: str, log_format: str) -> None:
    """Azure Provisioner CLI (azprov).

    Plans and applies resource groups, virtual networks and subnets from
    JSON or YAML configuration, with state in Azure Blob Storage.

    \b
    Quick Start:
        azprov init        # Configure the state backend
        azprov plan        # Show what would change
        azprov apply       # Apply after confirmation
    """
    setup_logging(log_level, LogFormat(log_format.lower()))
    ctx.obj = CliState(chdir=chdir)


# =============================================================================
# Workflow Commands
# =============================================================================


@cli.command()
@click.option(
    "-backend-config",
    "backend_config",
    multiple=True,
    help="Backend setting as key=value, or a file of settings",
)
@click.pass_obj
def init(state: CliState, backend_config: tuple[str, ...]) -> None:
    """Initialize the state backend for this working directory."""
    workspace = state.workspace()
    with handle_errors():
        settings = parse_backend_config(list(backend_config))
        record = workspace.init(settings)
    click.echo(f'Successfully configured the backend "{record.type}"!')
    click.secho("Initialization complete!", fg="green", bold=True)


@cli.command()
@click.pass_obj
def validate(state: CliState) -> None:
    """Check configuration without touching state or Azure."""
    workspace = state.workspace()
    with handle_errors():
        result = workspace.validate()
    for diagnostic in result.diagnostics:
        click.secho(str(diagnostic), fg="red" if diagnostic.severity == "error" else "yellow")
    if not result.valid:
        raise click.ClickException("The configuration is invalid.")
    click.secho("Success! The configuration is valid.", fg="green")


@cli.command()
@click.option("-var", "variables", multiple=True, help="Set a variable: name=value")
@click.option(
    "-var-file", "var_files", multiple=True, type=click.Path(path_type=Path), help="Variable file"
)
@click.option("-out", "out", type=click.Path(path_type=Path), help="Save the plan to this file")
@click.option("-destroy", "destroy", is_flag=True, help="Plan to destroy all resources")
@click.option(
    "-refresh", "refresh", type=click.BOOL, default=True, help="Refresh state before planning"
)
@click.option("-lock-timeout", "lock_timeout", default=None, help="Retry the state lock, e.g. 30s")
@click.pass_obj
def plan(
    state: CliState,
    variables: tuple[str, ...],
    var_files: tuple[Path, ...],
    out: Path | None,
    destroy: bool,
    refresh: bool,
    lock_timeout: str | None,
) -> None:
    """Show the changes needed to match the configuration."""
    workspace = state.workspace(lock_timeout)
    with handle_errors():
        result = asyncio.run(
            workspace.plan(
                var_files=list(var_files),
                var_assignments=list(variables),
                destroy=destroy,
                refresh=refresh,
                out=out,
            )
        )
    click.echo(render_plan(result))
    _echo_risk(result)
    if out is not None:
        click.echo(f"\nSaved the plan to: {out}\n")
        click.echo(f'To perform exactly these actions, run:\n    azprov apply "{out}"')


@cli.command()
@click.argument(
    "plan_file", required=False, type=click.Path(exists=True, dir_okay=False, path_type=Path)
)
@click.option("-auto-approve", "auto_approve", is_flag=True, help="Skip interactive approval")
@click.option("-var", "variables", multiple=True, help="Set a variable: name=value")
@click.option(
    "-var-file", "var_files", multiple=True, type=click.Path(path_type=Path), help="Variable file"
)
@click.option(
    "-refresh", "refresh", type=click.BOOL, default=True, help="Refresh state before planning"
)
@click.option("-lock-timeout", "lock_timeout", default=None, help="Retry the state lock, e.g. 30s")
@click.pass_obj
def apply(
    state: CliState,
    plan_file: Path | None,
    auto_approve: bool,
    variables: tuple[str, ...],
    var_files: tuple[Path, ...],
    refresh: bool,
    lock_timeout: str | None,
) -> None:
    """Apply a saved plan, or plan and apply after confirmation."""
    workspace = state.workspace(lock_timeout)
    confirm = _show_plan if auto_approve else _prompt_confirmation
    with handle_errors():
        if plan_file is not None:
            planned, result = asyncio.run(workspace.apply(plan_file=plan_file))
        else:
            planned, result = asyncio.run(
                workspace.apply(
                    var_files=list(var_files),
                    var_assignments=list(variables),
                    confirm=confirm,
                    refresh=refresh,
                )
            )
        outputs = workspace.output() if result is not None and result.success else {}
        sensitive = workspace.sensitive_outputs() if outputs else set()
    _echo_apply_result(planned, result, outputs, sensitive)


@cli.command()
@click.option("-auto-approve", "auto_approve", is_flag=True, help="Skip interactive approval")
@click.option("-var", "variables", multiple=True, help="Set a variable: name=value")
@click.option(
    "-var-file", "var_files", multiple=True, type=click.Path(path_type=Path), help="Variable file"
)
@click.option("-lock-timeout", "lock_timeout", default=None, help="Retry the state lock, e.g. 30s")
@click.pass_obj
def destroy(
    state: CliState,
    auto_approve: bool,
    variables: tuple[str, ...],
    var_files: tuple[Path, ...],
    lock_timeout: str | None,
) -> None:
    """Destroy every resource recorded in state."""
    workspace = state.workspace(lock_timeout)
    confirm = _show_plan if auto_approve else _prompt_confirmation
    with handle_errors():
        planned, result = asyncio.run(
            workspace.destroy(
                var_files=list(var_files), var_assignments=list(variables), confirm=confirm
            )
        )
    _echo_apply_result(planned, result, {}, set())


@cli.command()
@click.argument("name", required=False)
@click.option("-json", "as_json", is_flag=True, help="Print outputs as JSON")
@click.option("-raw", "raw", is_flag=True, help="Print a single string output without quotes")
@click.pass_obj
def output(state: CliState, name: str | None, as_json: bool, raw: bool) -> None:
    """Show output values from state."""
    workspace = state.workspace()
    with handle_errors():
        outputs = workspace.output()
        sensitive = workspace.sensitive_outputs()

    if name is not None:
        if name not in outputs:
            raise click.ClickException(f'Output "{name}" not found')
        value = outputs[name]
        if raw:
            if isinstance(value, (dict, list)):
                raise click.ClickException("-raw only supports string, number and bool outputs")
            click.echo(value if not isinstance(value, bool) else str(value).lower())
        else:
            click.echo(json.dumps(value, indent=2) if as_json else _format_value(value))
        return

    if as_json:
        click.echo(
            json.dumps(
                {n: {"sensitive": n in sensitive, "value": v} for n, v in outputs.items()},
                indent=2,
                sort_keys=True,
            )
        )
        return
    for key in sorted(outputs):
        shown = SENSITIVE_PLACEHOLDER if key in sensitive else _format_value(outputs[key])
        click.echo(f"{key} = {shown}")


@cli.command("force-unlock")
@click.argument("lock_id")
@click.option("-force", "force", is_flag=True, help="Do not ask for confirmation")
@click.pass_obj
def force_unlock(state: CliState, lock_id: str, force: bool) -> None:
    """Release a stuck state lock by ID."""
    if not force:
        click.confirm(
            "Do you really want to force-unlock? Unlocking while another process "
            "holds the lock can corrupt state",
            abort=True,
        )
    workspace = state.workspace()
    with handle_errors():
        workspace.force_unlock(lock_id)
    click.secho("The state has been successfully unlocked!", fg="green")


@cli.group("state")
def state_group() -> None:
    """Inspect state."""
    pass


@state_group.command("list")
@click.pass_obj
def state_list(state: CliState) -> None:
    """List resource addresses in state."""
    workspace = state.workspace()
    with handle_errors():
        addresses = workspace.state_list()
    for address in addresses:
        click.echo(address)


# =============================================================================
# Pipeline Commands
# =============================================================================


def _approval_gate(config: Config, approvals_dir: Path | None) -> ApprovalGate:
    store_dir = approvals_dir or config.approvals_dir
    return ApprovalGate(ApprovalConfig.from_env(), store_dir=store_dir)


STATUS_COLORS = {
    "Succeeded": "green",
    "SucceededWithIssues": "yellow",
    "Failed": "red",
    "Canceled": "red",
    "Skipped": "bright_black",
}


def _echo_run(result: RunResult) -> None:
    click.echo(f"Run {result.run_id} on {result.branch}")
    if result.reason:
        click.echo(f"  {result.reason}")
    for stage in result.stages:
        click.secho(
            f"  Stage {stage.display_name}: {stage.status.value}",
            fg=STATUS_COLORS[stage.status.value],
        )
        if stage.error:
            click.echo(f"    {stage.error}")
        for job in stage.jobs:
            click.secho(
                f"    Job {job.display_name}: {job.status.value}",
                fg=STATUS_COLORS[job.status.value],
            )
            if job.error:
                click.echo(f"      {job.error}")
            for step in job.steps:
                click.echo(f"      {step.display_name}: {step.status.value}")
                if step.error:
                    click.secho(f"        {step.error}", fg="red")
    click.secho(f"Result: {result.status.value}", fg=STATUS_COLORS[result.status.value], bold=True)


@cli.group()
@click.option(
    "--approvals-dir",
    envvar="AZPROV_APPROVALS_DIR",
    type=click.Path(file_okay=False, path_type=Path),
    help="Directory where approval requests are stored",
)
@click.pass_context
def pipeline(ctx: click.Context, approvals_dir: Path | None) -> None:
    """Validate and run pipelines, and decide approvals."""
    ctx.meta["approvals_dir"] = approvals_dir


@pipeline.command("validate")
@click.argument("file", default=DEFAULT_PIPELINE_FILE, type=click.Path(path_type=Path))
@click.pass_obj
def pipeline_validate(state: CliState, file: Path) -> None:
    """Check a pipeline definition."""
    config = state.config()
    path = file if file.is_absolute() else config.working_dir / file
    with handle_errors():
        definition = load_pipeline(path)
    jobs = sum(len(s.jobs) for s in definition.stages)
    click.secho(f"Pipeline is valid: {len(definition.stages)} stage(s), {jobs} job(s)", fg="green")


@pipeline.command("run")
@click.argument("file", default=DEFAULT_PIPELINE_FILE, type=click.Path(path_type=Path))
@click.option("--branch", "-b", default="main", envvar="BUILD_SOURCEBRANCH", help="Source branch")
@click.option("--manual", is_flag=True, help="Queue manually, ignoring the trigger")
@click.option("--var", "variables", multiple=True, help="Queue-time variable: name=value")
@click.option("--json", "as_json", is_flag=True, help="Print the run result as JSON")
@click.pass_context
def pipeline_run(
    ctx: click.Context,
    file: Path,
    branch: str,
    manual: bool,
    variables: tuple[str, ...],
    as_json: bool,
) -> None:
    """Run a pipeline in this working directory."""
    state: CliState = ctx.obj
    config = state.config()
    path = file if file.is_absolute() else config.working_dir / file

    queue_variables: dict[str, str] = {}
    for item in variables:
        name, sep, value = item.partition("=")
        if not sep or not name:
            raise click.BadParameter(f"expected name=value, got {item!r}", param_hint="--var")
        queue_variables[name] = value

    with handle_errors():
        definition = load_pipeline(path)
        gate = _approval_gate(config, ctx.meta.get("approvals_dir"))
        runner = PipelineRunner(config, approval_gate=gate)
        result = asyncio.run(
            runner.run(definition, branch, variables=queue_variables, triggered=not manual)
        )

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
    else:
        _echo_run(result)
    if not result.success:
        raise click.ClickException(f"Run finished with status {result.status.value}")


def _require_store(ctx: click.Context, state: CliState) -> ApprovalGate:
    config = state.config()
    approvals_dir = ctx.meta.get("approvals_dir") or config.approvals_dir
    if approvals_dir is None:
        raise click.ClickException(
            "Set --approvals-dir or AZPROV_APPROVALS_DIR to decide approvals"
        )
    return _approval_gate(config, approvals_dir)


@pipeline.command("approvals")
@click.pass_context
def pipeline_approvals(ctx: click.Context) -> None:
    """List approval requests."""
    gate = _require_store(ctx, ctx.obj)
    with handle_errors():
        requests = gate.list_requests()
    if not requests:
        click.echo("No approval requests.")
        return
    for request in requests:
        click.echo(f"{request.request_id}  {request.status.value:<9}  {request.subject}")


@pipeline.command("approve")
@click.argument("request_id")
@click.option("--by", "decided_by", default=getpass.getuser, help="Approver name")
@click.option("--comment", default="", help="Comment recorded with the approval")
@click.pass_context
def pipeline_approve(ctx: click.Context, request_id: str, decided_by: str, comment: str) -> None:
    """Approve a pending manual validation."""
    gate = _require_store(ctx, ctx.obj)
    with handle_errors():
        gate.approve(request_id, approved_by=decided_by, comment=comment)
    click.secho(f"Approved {request_id}", fg="green")


@pipeline.command("reject")
@click.argument("request_id")
@click.option("--by", "decided_by", default=getpass.getuser, help="Reviewer name")
@click.option("--reason", required=True, help="Why the request is rejected")
@click.pass_context
def pipeline_reject(ctx: click.Context, request_id: str, decided_by: str, reason: str) -> None:
    """Reject a pending manual validation."""
    gate = _require_store(ctx, ctx.obj)
    with handle_errors():
        gate.reject(request_id, rejected_by=decided_by, reason=reason)
    click.secho(f"Rejected {request_id}", fg="yellow")


# =============================================================================
# Entry Point
# =============================================================================


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
