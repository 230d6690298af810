"""Run a pipeline: stages, then jobs, then steps, one at a time.

Ordering follows `dependsOn`; anything whose condition evaluates false is
Skipped. A failing step fails its job unless it sets continueOnError,
and a failed job fails its stage. The run result is the worst stage
result.
"""

from __future__ import annotations

import asyncio
import logging
import re
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from .approval import ApprovalGate
from .conditions import ConditionContext, ConditionError, evaluate_condition
from .config import Config
from .dependency import DependencyGraph
from .pipeline import Job, Pipeline, Stage, Status, Step, expand_macros, worst_status
from .tasks import TaskContext, TaskError, TaskOutcome, get_task
from .workspace import Workspace

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(UTC)


def _duration(start: datetime | None, end: datetime | None) -> float:
    if start is None or end is None:
        return 0.0
    return (end - start).total_seconds()


# =============================================================================
# Results
# =============================================================================


@dataclass
class StepResult:
    name: str
    display_name: str
    status: Status = Status.SKIPPED
    messages: list[str] = field(default_factory=list)
    error: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None

    @property
    def duration_seconds(self) -> float:
        return _duration(self.start_time, self.end_time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "displayName": self.display_name,
            "status": self.status.value,
            "error": self.error,
            "durationSeconds": round(self.duration_seconds, 3),
        }


@dataclass
class JobResult:
    name: str
    display_name: str
    status: Status = Status.SKIPPED
    steps: list[StepResult] = field(default_factory=list)
    error: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None

    @property
    def duration_seconds(self) -> float:
        return _duration(self.start_time, self.end_time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "displayName": self.display_name,
            "status": self.status.value,
            "error": self.error,
            "durationSeconds": round(self.duration_seconds, 3),
            "steps": [s.to_dict() for s in self.steps],
        }


@dataclass
class StageResult:
    name: str
    display_name: str
    status: Status = Status.SKIPPED
    jobs: list[JobResult] = field(default_factory=list)
    error: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None

    @property
    def duration_seconds(self) -> float:
        return _duration(self.start_time, self.end_time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "displayName": self.display_name,
            "status": self.status.value,
            "error": self.error,
            "durationSeconds": round(self.duration_seconds, 3),
            "jobs": [j.to_dict() for j in self.jobs],
        }


@dataclass
class RunResult:
    run_id: str
    branch: str
    pipeline_name: str | None = None
    status: Status = Status.SKIPPED
    stages: list[StageResult] = field(default_factory=list)
    reason: str | None = None
    start_time: datetime = field(default_factory=_now)
    end_time: datetime | None = None

    @property
    def duration_seconds(self) -> float:
        return _duration(self.start_time, self.end_time)

    @property
    def success(self) -> bool:
        return self.status in (Status.SUCCEEDED, Status.SUCCEEDED_WITH_ISSUES, Status.SKIPPED)

    def stage(self, name: str) -> StageResult:
        for stage in self.stages:
            if stage.name == name:
                return stage
        raise KeyError(name)

    def to_dict(self) -> dict[str, Any]:
        return {
            "runId": self.run_id,
            "pipeline": self.pipeline_name,
            "branch": self.branch,
            "status": self.status.value,
            "reason": self.reason,
            "durationSeconds": round(self.duration_seconds, 3),
            "stages": [s.to_dict() for s in self.stages],
        }


def predefined_variables(branch: str, config: Config, run_id: str) -> dict[str, str]:
    """Variables the agent defines for every run."""
    source_branch = branch if branch.startswith("refs/") else f"refs/heads/{branch}"
    return {
        "Build.SourceBranch": source_branch,
        "Build.SourceBranchName": source_branch.rsplit("/", 1)[-1],
        "Build.BuildId": run_id,
        "System.DefaultWorkingDirectory": str(config.working_dir),
        "Agent.JobStatus": Status.SUCCEEDED.value,
    }


def _ordered(names: list[str], dependencies: Callable[[str], list[str]]) -> list[str]:
    graph = DependencyGraph()
    for name in names:
        graph.add_node(name, dependencies(name))
    return graph.topological_sort(key=names.index)


# =============================================================================
# Runner
# =============================================================================


class PipelineRunner:
    """Runs pipelines sequentially against one working directory."""

    def __init__(
        self,
        config: Config,
        approval_gate: ApprovalGate | None = None,
        workspace_factory: Callable[[Config], Workspace] = Workspace,
        run_id: str | None = None,
    ) -> None:
        self._config = config
        self._approval_gate = approval_gate
        self._workspace_factory = workspace_factory
        self._run_id = run_id or uuid.uuid4().hex[:12]
        self._canceled = False
        self._current_step: asyncio.Future[TaskOutcome] | None = None
        self._run_state: dict[str, Any] = {}

    @property
    def run_id(self) -> str:
        return self._run_id

    def cancel(self) -> None:
        """Cancel the run.

        The step in progress is interrupted and marked Canceled; afterwards
        only steps with always() or canceled() still run.
        """
        self._canceled = True
        if self._current_step is not None and not self._current_step.done():
            self._current_step.cancel()

    async def run(
        self,
        pipeline: Pipeline,
        branch: str,
        variables: dict[str, str] | None = None,
        triggered: bool = True,
    ) -> RunResult:
        """Run a pipeline.

        Args:
            pipeline: Parsed pipeline definition.
            branch: Source branch, e.g. `main` or `refs/heads/main`.
            variables: Variables set at queue time.
            triggered: True for CI runs, which honour the trigger; False for
                manually queued runs.
        """
        result = RunResult(run_id=self._run_id, branch=branch, pipeline_name=pipeline.name)

        if triggered and not pipeline.trigger.matches(branch):
            result.reason = f"Branch '{branch}' does not match the pipeline trigger"
            result.end_time = _now()
            logger.info("Run skipped", extra={"run_id": self._run_id, "branch": branch})
            return result

        run_variables = {
            **pipeline.variables,
            **(variables or {}),
            **predefined_variables(branch, self._config, self._run_id),
        }
        logger.info(
            "Run started",
            extra={"run_id": self._run_id, "pipeline": pipeline.name, "branch": branch},
        )

        names = [s.stage for s in pipeline.stages]
        order = _ordered(names, lambda n: pipeline.stage_dependencies(pipeline.get_stage(n)))
        by_name: dict[str, StageResult] = {}
        for name in order:
            stage = pipeline.get_stage(name)
            dependencies = {d: by_name[d].status for d in pipeline.stage_dependencies(stage)}
            by_name[name] = await self._run_stage(stage, dependencies, run_variables)

        # Report stages in declaration order
        result.stages = [by_name[name] for name in names]
        result.status = worst_status([s.status for s in result.stages])
        if self._canceled and result.status in (Status.SUCCEEDED, Status.SKIPPED):
            result.status = Status.CANCELED
        result.end_time = _now()

        logger.info(
            "Run finished",
            extra={
                "run_id": self._run_id,
                "status": result.status.value,
                "duration_seconds": round(result.duration_seconds, 3),
            },
        )
        return result

    async def _run_stage(
        self, stage: Stage, dependencies: dict[str, Status], run_variables: dict[str, str]
    ) -> StageResult:
        result = StageResult(name=stage.stage, display_name=stage.label)
        variables = {**run_variables, **stage.variables, "System.StageName": stage.stage}

        try:
            run = evaluate_condition(
                stage.condition,
                ConditionContext(
                    dependencies=dependencies, variables=variables, canceled=self._canceled
                ),
            )
        except ConditionError as e:
            result.status = Status.FAILED
            result.error = str(e)
            logger.error("Stage condition failed", extra={"stage": stage.stage, "error": str(e)})
            return result

        if not run:
            result.jobs = [JobResult(name=j.job, display_name=j.label) for j in stage.jobs]
            logger.info("Stage skipped", extra={"stage": stage.stage, "condition": stage.condition})
            return result

        result.start_time = _now()
        logger.info("Stage started", extra={"stage": stage.stage})

        names = [j.job for j in stage.jobs]
        jobs = {j.job: j for j in stage.jobs}
        by_name: dict[str, JobResult] = {}
        for name in _ordered(names, lambda n: jobs[n].depends_on):
            job = jobs[name]
            job_dependencies = {d: by_name[d].status for d in job.depends_on}
            by_name[name] = await self._run_job(stage, job, job_dependencies, variables)

        result.jobs = [by_name[name] for name in names]
        result.status = worst_status([j.status for j in result.jobs])
        result.end_time = _now()
        logger.info(
            "Stage finished",
            extra={"stage": stage.stage, "status": result.status.value},
        )
        return result

    async def _run_job(
        self,
        stage: Stage,
        job: Job,
        dependencies: dict[str, Status],
        stage_variables: dict[str, str],
    ) -> JobResult:
        result = JobResult(name=job.job, display_name=job.label)
        result.steps = [
            StepResult(name=step.name or f"step{index}", display_name=step.label)
            for index, step in enumerate(job.steps, start=1)
        ]
        variables = {**stage_variables, **job.variables, "System.JobName": job.job}

        try:
            run = evaluate_condition(
                job.condition,
                ConditionContext(
                    dependencies=dependencies, variables=variables, canceled=self._canceled
                ),
            )
        except ConditionError as e:
            result.status = Status.FAILED
            result.error = str(e)
            logger.error("Job condition failed", extra={"job": job.job, "error": str(e)})
            return result

        if not run:
            logger.info("Job skipped", extra={"stage": stage.stage, "job": job.job})
            return result

        result.start_time = _now()
        logger.info("Job started", extra={"stage": stage.stage, "job": job.job})

        # Agentless tasks enforce the job timeout themselves, e.g. onTimeout for approvals
        timeout = None if job.agentless else job.timeout_in_minutes * 60 or None
        try:
            status = await asyncio.wait_for(
                self._run_steps(stage, job, result, variables), timeout=timeout
            )
        except asyncio.TimeoutError:
            status = Status.CANCELED
            result.error = f"Job timed out after {job.timeout_in_minutes} minutes"
            for step in result.steps:
                if step.start_time is not None and step.end_time is None:
                    step.status = Status.CANCELED
                    step.end_time = _now()
            logger.error("Job timed out", extra={"stage": stage.stage, "job": job.job})

        if status == Status.FAILED and job.continue_on_error:
            status = Status.SUCCEEDED_WITH_ISSUES
        result.status = status
        result.end_time = _now()
        logger.info(
            "Job finished",
            extra={"stage": stage.stage, "job": job.job, "status": status.value},
        )
        return result

    async def _run_steps(
        self, stage: Stage, job: Job, result: JobResult, variables: dict[str, str]
    ) -> Status:
        job_status = Status.SUCCEEDED
        for index, step in enumerate(job.steps):
            step_result = result.steps[index]
            variables["Agent.JobStatus"] = job_status.value

            if not step.enabled:
                continue

            try:
                run = evaluate_condition(
                    step.condition,
                    ConditionContext(
                        dependencies={"job": job_status},
                        variables=variables,
                        canceled=self._canceled,
                    ),
                )
            except ConditionError as e:
                step_result.status = Status.FAILED
                step_result.error = str(e)
                job_status = Status.FAILED
                continue

            if not run:
                continue

            step_result.status = await self._run_step(stage, job, step, step_result, variables)
            job_status = worst_status([job_status, step_result.status])
        return job_status

    async def _run_step(
        self,
        stage: Stage,
        job: Job,
        step: Step,
        result: StepResult,
        variables: dict[str, str],
    ) -> Status:
        result.start_time = _now()
        logger.info(
            "Step started",
            extra={"stage": stage.stage, "job": job.job, "step": result.display_name},
        )

        step_timeout = step.timeout_in_minutes * 60 or None
        job_timeout = job.timeout_in_minutes * 60 or None
        context = TaskContext(
            config=self._config,
            variables=dict(variables),
            env=expand_macros(step.env, variables),
            approval_gate=self._approval_gate,
            workspace_factory=self._workspace_factory,
            agentless=job.agentless,
            stage_name=stage.stage,
            job_name=job.job,
            step_name=re.sub(r"[^A-Za-z0-9_.-]", "_", result.name),
            run_id=self._run_id,
            run_state=self._run_state,
            timeout_seconds=step_timeout or job_timeout,
        )

        status = Status.SUCCEEDED
        try:
            handler = get_task(step.task_ref)
            self._current_step = asyncio.ensure_future(
                handler(context, expand_macros(step.task_inputs, variables))
            )
            outcome = await asyncio.wait_for(
                self._current_step, timeout=None if job.agentless else step_timeout
            )
            result.messages = outcome.messages
        except TaskError as e:
            result.error = str(e)
            status = Status.FAILED
        except asyncio.TimeoutError:
            result.error = f"Step timed out after {step.timeout_in_minutes} minutes"
            status = Status.FAILED
        except asyncio.CancelledError:
            # Only absorb cancellation requested through cancel()
            current = asyncio.current_task()
            if not self._canceled or (current is not None and current.cancelling()):
                raise
            result.error = "Step canceled"
            status = Status.CANCELED
        finally:
            self._current_step = None

        where = {"stage": stage.stage, "job": job.job, "step": result.display_name}
        if status == Status.FAILED:
            logger.error("Step failed", extra={**where, "error": result.error})
            if step.continue_on_error:
                status = Status.SUCCEEDED_WITH_ISSUES

        for message in result.messages:
            logger.info(message, extra=where)

        result.end_time = _now()
        logger.info(
            "Step finished",
            extra={"step": result.display_name, "status": status.value},
        )
        return status
