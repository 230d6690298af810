"""Pipeline definitions in the Azure Pipelines YAML format.

The supported subset:

```yaml
trigger:
  branches:
    include: [main]
variables:
  tfWorkingDir: infra
stages:
  - stage: CI
    jobs:
      - job: Validate
        steps:
          - task: TerraformInstaller@1
            inputs:
              terraformVersion: latest
          - task: TerraformTask@5
            inputs:
              provider: azurerm
              command: validate
  - stage: CD
    dependsOn: CI
    condition: and(succeeded(), eq(variables['Build.SourceBranch'], 'refs/heads/main'))
    jobs:
      - job: Approve
        pool: server
        steps:
          - task: ManualValidation@0
```

Top-level `jobs` or `steps` without `stages` are wrapped in one implicit
stage (and job), as Azure Pipelines does.
"""

from __future__ import annotations

import fnmatch
import logging
import re
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .config import MAX_PIPELINE_FILE_SIZE_BYTES
from .config_loader import format_validation_error, read_bounded_file

logger = logging.getLogger(__name__)

MACRO_PATTERN = re.compile(r"\$\(([A-Za-z0-9_.\-]+)\)")
BRANCH_REF_PREFIX = "refs/heads/"
IMPLICIT_STAGE_NAME = "__default"
IMPLICIT_JOB_NAME = "__default"
AGENTLESS_POOL = "server"
DEFAULT_JOB_TIMEOUT_MINUTES = 60


class PipelineLoadError(Exception):
    """Raised when a pipeline definition cannot be loaded or is invalid."""

    pass


class Status(str, Enum):
    """Result of a step, job, stage or run."""

    SUCCEEDED = "Succeeded"
    SUCCEEDED_WITH_ISSUES = "SucceededWithIssues"
    FAILED = "Failed"
    CANCELED = "Canceled"
    SKIPPED = "Skipped"

    @property
    def is_success(self) -> bool:
        return self in (Status.SUCCEEDED, Status.SUCCEEDED_WITH_ISSUES)


# Worst first
STATUS_SEVERITY: dict[Status, int] = {
    Status.FAILED: 4,
    Status.CANCELED: 3,
    Status.SUCCEEDED_WITH_ISSUES: 2,
    Status.SUCCEEDED: 1,
    Status.SKIPPED: 0,
}


def worst_status(statuses: list[Status]) -> Status:
    """Combine results: the most severe wins; all skipped stays skipped."""
    if not statuses:
        return Status.SUCCEEDED
    return max(statuses, key=lambda s: STATUS_SEVERITY[s])


def expand_macros(value: Any, variables: dict[str, str]) -> Any:
    """Substitute `$(name)` macros. Unknown macros are left untouched."""
    lookup = {k.lower(): v for k, v in variables.items()}

    def replace(match: re.Match[str]) -> str:
        name = match.group(1).lower()
        return str(lookup[name]) if name in lookup else match.group(0)

    if isinstance(value, str):
        return MACRO_PATTERN.sub(replace, value)
    if isinstance(value, dict):
        return {k: expand_macros(v, variables) for k, v in value.items()}
    if isinstance(value, list):
        return [expand_macros(v, variables) for v in value]
    return value


def _as_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return [str(v) for v in value]


def _parse_variables(value: Any) -> dict[str, str]:
    """Variables as a mapping, or as a list of `{name, value}` entries."""
    if value is None:
        return {}
    if isinstance(value, dict):
        return {str(k): "" if v is None else _stringify(v) for k, v in value.items()}
    if isinstance(value, list):
        result: dict[str, str] = {}
        for entry in value:
            if not isinstance(entry, dict):
                raise ValueError(f"variable entries must be mappings: {entry!r}")
            if "group" in entry or "template" in entry:
                raise ValueError(
                    "variable groups and templates are not supported; declare variables inline"
                )
            if "name" not in entry:
                raise ValueError(f"variable entry is missing 'name': {entry!r}")
            result[str(entry["name"])] = _stringify(entry.get("value", ""))
        return result
    raise ValueError("variables must be a mapping or a list")


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


# =============================================================================
# Trigger
# =============================================================================


class Trigger(BaseModel):
    """CI trigger: which branches start a run."""

    enabled: bool = True
    include: list[str] = Field(default_factory=lambda: ["*"])
    exclude: list[str] = Field(default_factory=list)

    @classmethod
    def parse(cls, value: Any) -> Trigger:
        # Absent trigger means every branch
        if value is None:
            return cls()
        if isinstance(value, str):
            if value.lower() == "none":
                return cls(enabled=False, include=[])
            return cls(include=[value])
        if isinstance(value, list):
            return cls(include=_as_list(value))
        if isinstance(value, dict):
            branches = value.get("branches")
            if branches is None:
                return cls()
            if isinstance(branches, list):
                return cls(include=_as_list(branches))
            if not isinstance(branches, dict):
                raise ValueError("trigger.branches must be a list or a mapping")
            return cls(
                include=_as_list(branches.get("include")) or ["*"],
                exclude=_as_list(branches.get("exclude")),
            )
        raise ValueError(f"unsupported trigger: {value!r}")

    @staticmethod
    def _normalize(branch: str) -> str:
        return branch[len(BRANCH_REF_PREFIX) :] if branch.startswith(BRANCH_REF_PREFIX) else branch

    def matches(self, branch: str) -> bool:
        """Whether a push to `branch` triggers the pipeline."""
        if not self.enabled:
            return False
        name = self._normalize(branch)

        def match(pattern: str) -> bool:
            return fnmatch.fnmatchcase(name, self._normalize(pattern))

        if any(match(p) for p in self.exclude):
            return False
        return any(match(p) for p in self.include)


# =============================================================================
# Steps, Jobs, Stages
# =============================================================================


class Step(BaseModel):
    """One step: a task, or a `script`/`bash`/`checkout` shorthand."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    task: str | None = None
    script: str | None = None
    bash: str | None = None
    checkout: str | None = None
    name: str | None = None
    display_name: str | None = Field(None, alias="displayName")
    inputs: dict[str, Any] = Field(default_factory=dict)
    condition: str | None = None
    continue_on_error: bool = Field(False, alias="continueOnError")
    enabled: bool = True
    timeout_in_minutes: int = Field(0, ge=0, alias="timeoutInMinutes")
    env: dict[str, str] = Field(default_factory=dict)
    working_directory: str | None = Field(None, alias="workingDirectory")

    @model_validator(mode="after")
    def validate_kind(self) -> Step:
        kinds = [k for k in ("task", "script", "bash", "checkout") if getattr(self, k) is not None]
        if len(kinds) != 1:
            raise ValueError("a step needs exactly one of task, script, bash or checkout")
        if self.task is not None and "@" not in self.task:
            raise ValueError(f"task reference must be Name@Version: {self.task}")
        return self

    @field_validator("env", mode="before")
    @classmethod
    def stringify_env(cls, v: Any) -> Any:
        if isinstance(v, dict):
            return {str(k): _stringify(val) for k, val in v.items()}
        return v

    @property
    def task_ref(self) -> str:
        """Registry key for the handler running this step."""
        if self.task is not None:
            return self.task
        if self.script is not None:
            return "CmdLine@2"
        if self.bash is not None:
            return "Bash@3"
        return "Checkout@1"

    @property
    def task_inputs(self) -> dict[str, Any]:
        if self.script is not None:
            return {"script": self.script, "workingDirectory": self.working_directory}
        if self.bash is not None:
            return {
                "targetType": "inline",
                "script": self.bash,
                "workingDirectory": self.working_directory,
            }
        if self.checkout is not None:
            return {"repository": self.checkout}
        return dict(self.inputs)

    @property
    def label(self) -> str:
        return self.display_name or self.name or self.task or self.task_ref


class Pool(BaseModel):
    model_config = {"extra": "ignore", "populate_by_name": True}

    name: str | None = None
    vm_image: str | None = Field(None, alias="vmImage")

    @property
    def agentless(self) -> bool:
        return (self.name or "").lower() == AGENTLESS_POOL


def _parse_pool(value: Any) -> Any:
    if isinstance(value, str):
        return {"name": value}
    return value


class Job(BaseModel):
    model_config = {"extra": "forbid", "populate_by_name": True}

    job: str
    display_name: str | None = Field(None, alias="displayName")
    pool: Pool | None = None
    depends_on: list[str] = Field(default_factory=list, alias="dependsOn")
    condition: str | None = None
    timeout_in_minutes: int = Field(DEFAULT_JOB_TIMEOUT_MINUTES, ge=0, alias="timeoutInMinutes")
    continue_on_error: bool = Field(False, alias="continueOnError")
    variables: dict[str, str] = Field(default_factory=dict)
    steps: list[Step] = Field(min_length=1)

    @field_validator("pool", mode="before")
    @classmethod
    def parse_pool(cls, v: Any) -> Any:
        return _parse_pool(v)

    @field_validator("depends_on", mode="before")
    @classmethod
    def parse_depends_on(cls, v: Any) -> list[str]:
        return _as_list(v)

    @field_validator("variables", mode="before")
    @classmethod
    def parse_variables(cls, v: Any) -> dict[str, str]:
        return _parse_variables(v)

    @property
    def label(self) -> str:
        return self.display_name or self.job

    @property
    def agentless(self) -> bool:
        return self.pool is not None and self.pool.agentless


class Stage(BaseModel):
    model_config = {"extra": "forbid", "populate_by_name": True}

    stage: str
    display_name: str | None = Field(None, alias="displayName")
    # None means "the previous stage"; [] means no dependencies
    depends_on: list[str] | None = Field(None, alias="dependsOn")
    condition: str | None = None
    pool: Pool | None = None
    variables: dict[str, str] = Field(default_factory=dict)
    jobs: list[Job] = Field(min_length=1)

    @field_validator("pool", mode="before")
    @classmethod
    def parse_pool(cls, v: Any) -> Any:
        return _parse_pool(v)

    @field_validator("depends_on", mode="before")
    @classmethod
    def parse_depends_on(cls, v: Any) -> list[str] | None:
        return None if v is None else _as_list(v)

    @field_validator("variables", mode="before")
    @classmethod
    def parse_variables(cls, v: Any) -> dict[str, str]:
        return _parse_variables(v)

    @property
    def label(self) -> str:
        return self.display_name or self.stage


class Pipeline(BaseModel):
    """A parsed pipeline definition."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    name: str | None = None
    trigger: Trigger = Field(default_factory=Trigger)
    pr: Any = None
    variables: dict[str, str] = Field(default_factory=dict)
    pool: Pool | None = None
    stages: list[Stage] = Field(min_length=1)

    @field_validator("pool", mode="before")
    @classmethod
    def parse_pool(cls, v: Any) -> Any:
        return _parse_pool(v)

    @model_validator(mode="before")
    @classmethod
    def normalize(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            raise ValueError("pipeline must be a mapping")
        data = dict(data)

        data["trigger"] = Trigger.parse(data.get("trigger"))

        # Implicit stage and job, as in Azure Pipelines
        if "stages" not in data:
            if "jobs" in data:
                data["stages"] = [{"stage": IMPLICIT_STAGE_NAME, "jobs": data.pop("jobs")}]
            elif "steps" in data:
                job = {"job": IMPLICIT_JOB_NAME, "steps": data.pop("steps")}
                data["stages"] = [{"stage": IMPLICIT_STAGE_NAME, "jobs": [job]}]
        return data

    @field_validator("variables", mode="before")
    @classmethod
    def parse_variables(cls, v: Any) -> dict[str, str]:
        return _parse_variables(v)

    @model_validator(mode="after")
    def validate_names(self) -> Pipeline:
        stage_names = [s.stage for s in self.stages]
        duplicates = sorted({n for n in stage_names if stage_names.count(n) > 1})
        if duplicates:
            raise ValueError(f"duplicate stage names: {duplicates}")

        for stage in self.stages:
            for dep in stage.depends_on or []:
                if dep not in stage_names:
                    raise ValueError(f"stage '{stage.stage}' depends on unknown stage '{dep}'")

            job_names = [j.job for j in stage.jobs]
            duplicates = sorted({n for n in job_names if job_names.count(n) > 1})
            if duplicates:
                raise ValueError(f"duplicate job names in stage '{stage.stage}': {duplicates}")
            for job in stage.jobs:
                for dep in job.depends_on:
                    if dep not in job_names:
                        raise ValueError(
                            f"job '{job.job}' in stage '{stage.stage}' "
                            f"depends on unknown job '{dep}'"
                        )
        return self

    def stage_dependencies(self, stage: Stage) -> list[str]:
        """Resolved dependencies: an omitted dependsOn means the previous stage."""
        if stage.depends_on is not None:
            return list(stage.depends_on)
        index = self.stages.index(stage)
        return [self.stages[index - 1].stage] if index > 0 else []

    def get_stage(self, name: str) -> Stage:
        for stage in self.stages:
            if stage.stage == name:
                return stage
        raise KeyError(name)


# =============================================================================
# Loading
# =============================================================================


def parse_pipeline(content: str, source: str) -> Pipeline:
    """Parse and validate pipeline YAML.

    Raises:
        PipelineLoadError: If the YAML is malformed or fails validation.
    """
    # Imported here: conditions needs Status from this module
    from .conditions import ConditionError, parse_condition
    from .dependency import CyclicDependencyError, DependencyGraph

    try:
        data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise PipelineLoadError(f"Invalid YAML in {source}: {e}") from e

    if data is None:
        raise PipelineLoadError(f"Pipeline file is empty: {source}")

    try:
        pipeline = Pipeline.model_validate(data)
    except ValidationError as e:
        raise PipelineLoadError(
            f"Validation failed for {source}:\n{format_validation_error(e)}"
        ) from e

    # Conditions and ordering are checked up front, like the service does
    try:
        for stage in pipeline.stages:
            if stage.condition:
                parse_condition(stage.condition)
            for job in stage.jobs:
                if job.condition:
                    parse_condition(job.condition)
                for step in job.steps:
                    if step.condition:
                        parse_condition(step.condition)
    except ConditionError as e:
        raise PipelineLoadError(f"Invalid condition in {source}: {e}") from e

    graph = DependencyGraph()
    for stage in pipeline.stages:
        graph.add_node(stage.stage, pipeline.stage_dependencies(stage))
    try:
        graph.validate()
        for stage in pipeline.stages:
            jobs = DependencyGraph()
            for job in stage.jobs:
                jobs.add_node(job.job, job.depends_on)
            jobs.validate()
    except CyclicDependencyError as e:
        raise PipelineLoadError(f"Invalid dependencies in {source}: {e}") from e

    logger.debug(
        "Loaded pipeline",
        extra={"source": source, "stages": [s.stage for s in pipeline.stages]},
    )
    return pipeline


def load_pipeline(path: Path) -> Pipeline:
    """Load a pipeline definition from a YAML file.

    Raises:
        PipelineLoadError: If the file cannot be read or is invalid.
    """
    content = read_bounded_file(path, MAX_PIPELINE_FILE_SIZE_BYTES, PipelineLoadError)
    return parse_pipeline(content, str(path))
