"""Tests for pipeline task implementations."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from pathlib import Path

import pytest

from azure_mock import MockAzureContext
from provisioner.approval import ApprovalConfig, ApprovalGate, ApprovalStatus
from provisioner.config import Config
from provisioner.planner import Plan
from provisioner.providers import AzureProvider
from provisioner.tasks import (
    RUN_STATE_PLAN,
    RUN_STATE_RISK,
    RUN_STATE_TERRAFORM_VERSION,
    TaskContext,
    TaskError,
    TaskOutcome,
    get_task,
    normalize_task_ref,
    parse_command_options,
    parse_lock_timeout,
    variables_as_env,
)
from provisioner.workspace import Workspace

SERVICE_CONNECTION = {"environmentServiceNameAzureRM": "sc-prod"}


@pytest.fixture
def context(config: Config, provider: AzureProvider) -> TaskContext:
    """Task context whose workspaces use the in-memory provider."""
    return TaskContext(
        config=config,
        workspace_factory=lambda cfg: Workspace(cfg, provider_factory=lambda c, x: provider),
        stage_name="CD",
        job_name="Deploy",
        step_name="step1",
        run_id="run1",
    )


@pytest.fixture
def initialized(
    context: TaskContext, network_document: dict, write_config: Callable[..., Path]
) -> TaskContext:
    write_config(network_document)
    context.workspace_factory(context.config).init()
    return context


async def run_task(ref: str, context: TaskContext, **inputs: object) -> TaskOutcome:
    return await get_task(ref)(context, dict(inputs))


class TestRegistry:
    """Tests for task lookup."""

    def test_normalize(self) -> None:
        """Test task references are case-insensitive and keep only the major version."""
        assert normalize_task_ref("TerraformTask@5.1.0") == "terraformtask@5"
        assert normalize_task_ref(" Bash@3 ") == "bash@3"

    def test_known_tasks(self) -> None:
        """Test that every supported task is registered."""
        for ref in (
            "TerraformInstaller@1",
            "TerraformTask@5",
            "TerraformTaskV4@4",
            "ManualValidation@0",
            "CmdLine@2",
            "Bash@3",
            "Checkout@1",
        ):
            assert get_task(ref) is not None

    def test_unknown_task(self) -> None:
        """Test that unknown tasks fail with the list of known ones."""
        with pytest.raises(TaskError) as exc_info:
            get_task("AzureCLI@2")

        assert "Unknown task 'AzureCLI@2'" in str(exc_info.value)
        assert "bash@3" in str(exc_info.value)


class TestCommandOptions:
    """Tests for commandOptions parsing."""

    def test_flags(self) -> None:
        """Test the supported Terraform flags."""
        options = parse_command_options(
            "-out=tfplan -var 'location=west europe' --var-file=prod.tfvars.json "
            "-refresh=false -lock-timeout=2m -input=false -no-color"
        )

        assert options.out == "tfplan"
        assert options.var_assignments == ["location=west europe"]
        assert options.var_files == ["prod.tfvars.json"]
        assert options.refresh is False
        assert options.lock_timeout_seconds == 120

    def test_plan_file_and_auto_approve(self) -> None:
        """Test a positional plan file and boolean flags."""
        options = parse_command_options("-auto-approve tfplan")

        assert options.auto_approve is True
        assert options.plan_file == "tfplan"

    def test_unsupported_flag(self) -> None:
        """Test that unknown flags are rejected."""
        with pytest.raises(TaskError) as exc_info:
            parse_command_options("-target=azurerm_subnet.app")

        assert "Unsupported option" in str(exc_info.value)

    def test_missing_value(self) -> None:
        """Test that a flag at the end without a value fails."""
        with pytest.raises(TaskError) as exc_info:
            parse_command_options("-var")

        assert "needs a value" in str(exc_info.value)

    def test_two_plan_files(self) -> None:
        """Test that only one plan file can be given."""
        with pytest.raises(TaskError):
            parse_command_options("a.tfplan b.tfplan")

    def test_unbalanced_quotes(self) -> None:
        """Test shell quoting errors."""
        with pytest.raises(TaskError):
            parse_command_options("-var 'location=x")

    def test_lock_timeout(self) -> None:
        """Test lock timeout durations."""
        assert parse_lock_timeout("0") == 0
        assert parse_lock_timeout("30s") == 30
        assert parse_lock_timeout("5m") == 300

        with pytest.raises(TaskError):
            parse_lock_timeout("1h")


class TestTerraformInstaller:
    """Tests for TerraformInstaller@1."""

    @pytest.mark.asyncio
    async def test_records_version(self, context: TaskContext) -> None:
        """Test that the requested version is recorded for the run."""
        outcome = await run_task("TerraformInstaller@1", context, terraformVersion="1.9.5")

        assert context.run_state[RUN_STATE_TERRAFORM_VERSION] == "1.9.5"
        assert "1.9.5" in outcome.messages[0]

    @pytest.mark.asyncio
    async def test_invalid_version(self, context: TaskContext) -> None:
        """Test that versions must be semantic."""
        with pytest.raises(TaskError):
            await run_task("TerraformInstaller@1", context, terraformVersion="1.x")


class TestTerraformTask:
    """Tests for TerraformTask@5."""

    @pytest.mark.asyncio
    async def test_validate(
        self, context: TaskContext, network_document: dict, write_config: Callable[..., Path]
    ) -> None:
        """Test validate reports success."""
        write_config(network_document)

        outcome = await run_task("TerraformTask@5", context, command="validate")

        assert outcome.messages[-1] == "Success! The configuration is valid."

    @pytest.mark.asyncio
    async def test_validate_invalid(
        self, context: TaskContext, network_document: dict, write_config: Callable[..., Path]
    ) -> None:
        """Test validate fails the step on errors."""
        network_document["output"]["bad"] = {"value": "${azurerm_subnet.missing.id}"}
        write_config(network_document)

        with pytest.raises(TaskError) as exc_info:
            await run_task("TerraformTask@5", context, command="validate")

        assert "Configuration is invalid" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_plan_records_risk(self, initialized: TaskContext) -> None:
        """Test that plan output and risk assessment are kept for later steps."""
        initialized.approval_gate = ApprovalGate(ApprovalConfig())

        outcome = await run_task(
            "TerraformTask@5", initialized, command="plan", **SERVICE_CONNECTION
        )

        assert "Plan: 3 to add, 0 to change, 0 to destroy." in outcome.messages[0]
        assert initialized.run_state[RUN_STATE_PLAN].has_changes
        assert not initialized.run_state[RUN_STATE_RISK].requires_approval

    @pytest.mark.asyncio
    async def test_plan_requires_service_connection(self, initialized: TaskContext) -> None:
        """Test that plan needs environmentServiceNameAzureRM."""
        with pytest.raises(TaskError) as exc_info:
            await run_task("TerraformTask@5", initialized, command="plan")

        assert "environmentServiceNameAzureRM" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_apply_requires_auto_approve(self, initialized: TaskContext) -> None:
        """Test that pipelines cannot apply without -auto-approve or a plan file."""
        with pytest.raises(TaskError) as exc_info:
            await run_task("TerraformTask@5", initialized, command="apply", **SERVICE_CONNECTION)

        assert "-auto-approve" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_apply_then_outputs(self, initialized: TaskContext) -> None:
        """Test apply followed by the output and state list custom commands."""
        outcome = await run_task(
            "TerraformTask@5",
            initialized,
            command="apply",
            commandOptions="-auto-approve",
            **SERVICE_CONNECTION,
        )
        assert outcome.messages == ["Apply complete! Resources: 3 added, 0 changed, 0 destroyed."]

        outputs = await run_task(
            "TerraformTask@5", initialized, command="custom", customCommand="output"
        )
        assert outputs.messages[1] == "vnet_name = 'vnet-main'"
        assert outputs.messages[0].startswith("subnet_id = ")

        listing = await run_task(
            "TerraformTask@5", initialized, command="custom", customCommand="state  list"
        )
        assert len(listing.messages) == 3

    @pytest.mark.asyncio
    async def test_plan_file_round_trip(self, initialized: TaskContext) -> None:
        """Test plan -out in one step and applying it in the next."""
        await run_task(
            "TerraformTask@5",
            initialized,
            command="plan",
            commandOptions="-out=tfplan",
            **SERVICE_CONNECTION,
        )

        outcome = await run_task(
            "TerraformTask@5",
            initialized,
            command="apply",
            commandOptions="tfplan",
            **SERVICE_CONNECTION,
        )

        assert outcome.messages[0].startswith("Apply complete!")
        assert RUN_STATE_PLAN not in initialized.run_state

    @pytest.mark.asyncio
    async def test_no_changes(self, initialized: TaskContext) -> None:
        """Test applying a converged configuration."""
        for _ in range(2):
            outcome = await run_task(
                "TerraformTask@5",
                initialized,
                command="apply",
                commandOptions="-auto-approve",
                **SERVICE_CONNECTION,
            )

        assert outcome.messages[0].startswith("No changes.")

    @pytest.mark.asyncio
    async def test_destroy_rejects_plan_file(self, initialized: TaskContext) -> None:
        """Test that destroy does not take a plan file."""
        with pytest.raises(TaskError):
            await run_task(
                "TerraformTask@5",
                initialized,
                command="destroy",
                commandOptions="tfplan",
                **SERVICE_CONNECTION,
            )

    @pytest.mark.asyncio
    async def test_workspace_errors_fail_the_step(self, context: TaskContext) -> None:
        """Test that workspace errors are reported as task failures."""
        with pytest.raises(TaskError) as exc_info:
            await run_task("TerraformTask@5", context, command="output")

        assert "command must be one of" in str(exc_info.value)

        with pytest.raises(TaskError) as exc_info:
            await run_task("TerraformTask@5", context, command="plan", **SERVICE_CONNECTION)

        assert "terraform plan failed" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_missing_working_directory(self, context: TaskContext) -> None:
        """Test that the working directory must exist."""
        with pytest.raises(TaskError) as exc_info:
            await run_task(
                "TerraformTask@5", context, command="validate", workingDirectory="missing"
            )

        assert "working directory does not exist" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_unsupported_provider(self, context: TaskContext) -> None:
        """Test that only azurerm is supported."""
        with pytest.raises(TaskError):
            await run_task("TerraformTask@5", context, provider="aws", command="validate")

    @pytest.mark.asyncio
    async def test_init_remote_backend(
        self,
        config: Config,
        network_document: dict,
        write_config: Callable[..., Path],
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Test init with the backend inputs of the Azure DevOps task."""
        for name in ("AZURE_CLIENT_SECRET", "ARM_CLIENT_SECRET", "ARM_ACCESS_KEY"):
            monkeypatch.delenv(name, raising=False)
        network_document["terraform"] = {"backend": {"azurerm": {}}}
        write_config(network_document)
        context = TaskContext(config=config)

        with MockAzureContext() as azure:
            outcome = await run_task(
                "TerraformTask@5",
                context,
                command="init",
                backendServiceArm="sc-state",
                backendAzureRmResourceGroupName="rg-tfstate",
                backendAzureRmStorageAccountName="sttfstate",
                backendAzureRmContainerName="tfstate",
                backendAzureRmKey="network.terraform.tfstate",
            )

        assert outcome.messages == ["Terraform has been successfully initialized!"]
        assert azure.credentials
        record = json.loads(Workspace(config).record_path.read_text())
        assert record["backend"]["config"]["key"] == "network.terraform.tfstate"

    @pytest.mark.asyncio
    async def test_init_requires_backend_inputs(self, initialized: TaskContext) -> None:
        """Test that init needs every backend input."""
        with pytest.raises(TaskError) as exc_info:
            await run_task("TerraformTask@5", initialized, command="init")

        assert "backendServiceArm" in str(exc_info.value)


class TestManualValidation:
    """Tests for ManualValidation@0."""

    @pytest.fixture
    def gate(self) -> ApprovalGate:
        return ApprovalGate(ApprovalConfig(), poll_interval_seconds=0.01)

    @pytest.fixture
    def agentless(self, context: TaskContext, gate: ApprovalGate) -> TaskContext:
        context.agentless = True
        context.approval_gate = gate
        context.job_name = "Approve"
        context.timeout_seconds = 5
        return context

    async def decide(self, gate: ApprovalGate, approve: bool) -> None:
        while not gate.list_requests():
            await asyncio.sleep(0.01)
        request_id = gate.list_requests()[0].request_id
        if approve:
            gate.approve(request_id, "alice")
        else:
            gate.reject(request_id, "bob", "not today")

    @pytest.mark.asyncio
    async def test_approved(self, agentless: TaskContext, gate: ApprovalGate) -> None:
        """Test that an approval lets the step succeed."""
        decider = asyncio.create_task(self.decide(gate, approve=True))

        outcome = await run_task(
            "ManualValidation@0", agentless, notifyUsers="ops@example.com, dev@example.com"
        )
        await decider

        assert outcome.messages == ["Approved by alice"]
        request = gate.list_requests()[0]
        assert request.request_id == "run1.CD.Approve.step1"
        assert request.notify_users == ["ops@example.com", "dev@example.com"]

    @pytest.mark.asyncio
    async def test_rejected(self, agentless: TaskContext, gate: ApprovalGate) -> None:
        """Test that a rejection fails the step with the reason."""
        decider = asyncio.create_task(self.decide(gate, approve=False))

        with pytest.raises(TaskError) as exc_info:
            await run_task("ManualValidation@0", agentless)
        await decider

        assert str(exc_info.value) == "Manual validation rejected by bob: not today"

    @pytest.mark.asyncio
    async def test_timeout_resume(self, agentless: TaskContext, gate: ApprovalGate) -> None:
        """Test onTimeout resume."""
        agentless.timeout_seconds = 0.05

        outcome = await run_task("ManualValidation@0", agentless, onTimeout="resume")

        assert outcome.messages == ["Approved by system"]

    @pytest.mark.asyncio
    async def test_timeout_reject(self, agentless: TaskContext, gate: ApprovalGate) -> None:
        """Test that the default timeout action fails the step."""
        agentless.timeout_seconds = 0.05

        with pytest.raises(TaskError) as exc_info:
            await run_task("ManualValidation@0", agentless)

        assert "timed out" in str(exc_info.value)
        assert gate.list_requests()[0].status == ApprovalStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_risk_assessment_attached(
        self, agentless: TaskContext, gate: ApprovalGate
    ) -> None:
        """Test that the last plan's assessment travels with the request."""
        agentless.run_state[RUN_STATE_RISK] = gate.assessor.assess_plan(
            Plan(changes=[], lineage="lineage", serial=0)
        )
        agentless.timeout_seconds = 0.05

        await run_task("ManualValidation@0", agentless, onTimeout="resume")

        assert gate.list_requests()[0].risk_assessment is not None

    @pytest.mark.asyncio
    async def test_auto_approved_without_deletes(self, agentless: TaskContext) -> None:
        """Test that auto-approval skips the wait when the plan deletes nothing."""
        gate = ApprovalGate(ApprovalConfig(auto_approve_if_no_delete=True))
        agentless.approval_gate = gate
        agentless.run_state[RUN_STATE_RISK] = gate.assessor.assess_plan(
            Plan(changes=[], lineage="lineage", serial=0)
        )

        outcome = await run_task("ManualValidation@0", agentless)

        assert outcome.messages == ["Approval skipped: the last plan deletes nothing"]
        assert gate.list_requests() == []

    @pytest.mark.asyncio
    async def test_requires_agentless_job(self, context: TaskContext, gate: ApprovalGate) -> None:
        """Test that approvals only run in server jobs."""
        context.approval_gate = gate

        with pytest.raises(TaskError) as exc_info:
            await run_task("ManualValidation@0", context)

        assert "agentless" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_invalid_on_timeout(self, agentless: TaskContext) -> None:
        """Test that onTimeout must be reject or resume."""
        with pytest.raises(TaskError):
            await run_task("ManualValidation@0", agentless, onTimeout="wait")


class TestScripts:
    """Tests for CmdLine@2, Bash@3 and Checkout@1."""

    def test_variables_as_env(self) -> None:
        """Test variable names become environment variable names."""
        assert variables_as_env({"Build.SourceBranch": "refs/heads/main", "env": "prod"}) == {
            "BUILD_SOURCEBRANCH": "refs/heads/main",
            "ENV": "prod",
        }

    @pytest.mark.asyncio
    async def test_script_sees_variables(self, context: TaskContext) -> None:
        """Test that scripts see pipeline variables and step env."""
        context.variables = {"env": "prod"}
        context.env = {"EXTRA": "1"}

        outcome = await run_task("CmdLine@2", context, script='echo "$ENV-$EXTRA"; pwd')

        assert outcome.messages[0] == "prod-1"
        assert Path(outcome.messages[1]).resolve() == context.working_dir.resolve()

    @pytest.mark.asyncio
    async def test_script_failure(self, context: TaskContext) -> None:
        """Test that a non-zero exit code fails the step."""
        with pytest.raises(TaskError) as exc_info:
            await run_task("CmdLine@2", context, script="echo broken >&2; exit 3")

        assert str(exc_info.value) == "Script failed with exit code 3: broken"

    @pytest.mark.asyncio
    async def test_fail_on_stderr(self, context: TaskContext) -> None:
        """Test failOnStderr."""
        with pytest.raises(TaskError):
            await run_task(
                "Bash@3", context, targetType="inline", script="echo warn >&2", failOnStderr="true"
            )

    @pytest.mark.asyncio
    async def test_bash_file(self, context: TaskContext, tmp_path: Path) -> None:
        """Test running a script file with arguments."""
        (tmp_path / "deploy.sh").write_text('echo "args: $1 $2"\n')

        outcome = await run_task("Bash@3", context, filePath="deploy.sh", arguments="a 'b c'")

        assert outcome.messages == ["args: a b c"]

    @pytest.mark.asyncio
    async def test_script_timeout(self, context: TaskContext) -> None:
        """Test that scripts are stopped after the timeout."""
        context.timeout_seconds = 0.2

        with pytest.raises(TaskError) as exc_info:
            await run_task("CmdLine@2", context, script="sleep 5")

        assert "timed out" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_scripts_need_an_agent(self, context: TaskContext) -> None:
        """Test that scripts cannot run in agentless jobs."""
        context.agentless = True

        with pytest.raises(TaskError):
            await run_task("CmdLine@2", context, script="echo hi")

    @pytest.mark.asyncio
    async def test_checkout(self, context: TaskContext) -> None:
        """Test checkout uses the sources in place."""
        outcome = await run_task("Checkout@1", context, repository="self")
        skipped = await run_task("Checkout@1", context, repository="none")

        assert outcome.messages == [f"Using sources in {context.working_dir}"]
        assert skipped.messages == ["Checkout skipped"]
