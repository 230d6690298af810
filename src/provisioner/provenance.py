"""Provenance tracking for apply and destroy runs.

Each run that changes infrastructure emits one structured record that
answers:
- "What changed, and when?"
- "Who ran it, from which commit?"
- "Which state serial did it produce?"

Records go to the structured logger, so in a pipeline they end up next to
the task output and in whatever log sink the agent forwards to.
"""

from __future__ import annotations

import getpass
import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

# Version is set at build time or falls back to dev
PROVISIONER_VERSION = os.environ.get("AZPROV_VERSION", "dev")


@dataclass
class ChangeProvenanceSummary:
    """Counts of planned and applied changes."""

    add_count: int = 0
    change_count: int = 0
    destroy_count: int = 0
    no_op_count: int = 0

    @property
    def total_significant(self) -> int:
        return self.add_count + self.change_count + self.destroy_count


@dataclass
class ApplyProvenance:
    """Provenance record for one apply or destroy run."""

    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    # Identity
    operation: str = "apply"
    who: str = ""
    provisioner_version: str = PROVISIONER_VERSION

    # Source of truth
    git_commit_sha: str = ""
    git_branch: str = ""
    git_repo: str = ""
    pipeline_run_id: str = ""

    # Target
    working_dir: str = ""
    backend: str = ""
    state_lineage: str = ""
    state_serial: int = 0

    # Outcome
    changes_applied: int = 0
    changes_failed: int = 0
    change_summary: ChangeProvenanceSummary = field(default_factory=ChangeProvenanceSummary)
    duration_seconds: float = 0.0

    error: str | None = None
    error_type: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result = asdict(self)
        result["timestamp"] = self.timestamp.isoformat()
        return result


class ProvenanceLogger:
    """Logs provenance records for audit."""

    def __init__(self) -> None:
        # Azure Pipelines exposes these as predefined variables
        self._git_commit_sha = os.environ.get("GIT_COMMIT_SHA") or os.environ.get(
            "BUILD_SOURCEVERSION", ""
        )
        self._git_branch = os.environ.get("GIT_BRANCH") or os.environ.get(
            "BUILD_SOURCEBRANCH", ""
        )
        self._git_repo = os.environ.get("GIT_REPO") or os.environ.get(
            "BUILD_REPOSITORY_URI", ""
        )
        self._run_id = os.environ.get("BUILD_BUILDID", "")
        self._who = os.environ.get("BUILD_REQUESTEDFOR") or getpass.getuser()

    def create_provenance(self, operation: str, working_dir: str, backend: str) -> ApplyProvenance:
        """Create a provenance record for a run about to start."""
        return ApplyProvenance(
            operation=operation,
            who=self._who,
            git_commit_sha=self._git_commit_sha,
            git_branch=self._git_branch,
            git_repo=self._git_repo,
            pipeline_run_id=self._run_id,
            working_dir=working_dir,
            backend=backend,
        )

    def log_provenance(self, provenance: ApplyProvenance) -> None:
        """Log a completed provenance record."""
        log_level = logging.ERROR if provenance.error else logging.INFO

        logger.log(
            log_level,
            "Apply provenance",
            extra={
                "provenance": provenance.to_dict(),
                # Flatten key fields for easier querying
                "operation": provenance.operation,
                "changes_applied": provenance.changes_applied,
                "changes_failed": provenance.changes_failed,
                "state_serial": provenance.state_serial,
                "git_commit": provenance.git_commit_sha,
                "duration_seconds": provenance.duration_seconds,
            },
        )

    def log_change_detail(
        self,
        provenance: ApplyProvenance,
        address: str,
        action: str,
        resource_id: str | None = None,
    ) -> None:
        """Log one applied resource change."""
        logger.info(
            "Resource change",
            extra={
                "operation": provenance.operation,
                "git_commit": provenance.git_commit_sha,
                "address": address,
                "action": action,
                "resource_id": resource_id,
            },
        )


_provenance_logger: ProvenanceLogger | None = None


def get_provenance_logger() -> ProvenanceLogger:
    """Get the global provenance logger instance."""
    global _provenance_logger
    if _provenance_logger is None:
        _provenance_logger = ProvenanceLogger()
    return _provenance_logger
