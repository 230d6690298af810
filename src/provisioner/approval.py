"""Risk scoring and approval gates for infrastructure changes.

This module implements the approval workflow behind the gated CD stage:
1. Confidence scoring per planned change (high/medium/low)
2. Risky resource type and action detection
3. Approval requests with expiry, optionally persisted to a directory so
   that a different process (`azprov pipeline approve`) can decide them
4. Waiting for a decision with reject-or-resume timeout behaviour

DESIGN PHILOSOPHY:
- High-risk changes MUST require explicit approval
- Timeouts prevent stale approvals from being used
- Audit trail for all approval decisions
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import tempfile
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any

from .planner import Action, Plan
from .providers import AZURE_RESOURCE_TYPES

logger = logging.getLogger(__name__)


class ConfidenceLevel(str, Enum):
    """Confidence level for a planned change.

    HIGH: Clear, additive changes. Safe to auto-apply.
    MEDIUM: Some uncertainty. Review recommended.
    LOW: Destructive changes or risky types. Requires approval.
    """

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ApprovalStatus(str, Enum):
    """Status of an approval request."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"


class TimeoutAction(str, Enum):
    """What a pending approval turns into when it times out."""

    REJECT = "reject"
    RESUME = "resume"


# Deleting a resource group deletes everything inside it
HIGH_RISK_RESOURCE_TYPES: set[str] = {
    "Microsoft.Resources/resourceGroups",
}

# Resource types with medium risk - require approval for destructive actions
MEDIUM_RISK_RESOURCE_TYPES: set[str] = {
    "Microsoft.Network/virtualNetworks",
    "Microsoft.Network/virtualNetworks/subnets",
}

# Actions that elevate risk
HIGH_RISK_ACTIONS: set[Action] = {Action.DELETE, Action.REPLACE}

DEFAULT_APPROVAL_TIMEOUT_SECONDS = 3600  # 1 hour
MAX_APPROVAL_TIMEOUT_SECONDS = 86400  # 24 hours
DEFAULT_POLL_INTERVAL_SECONDS = 5

VALID_REQUEST_ID_PATTERN = r"^[A-Za-z0-9_][A-Za-z0-9_.-]*$"


class ApprovalGateError(Exception):
    """Raised when approval is required but not granted, or a request is invalid."""

    pass


@dataclass
class ChangeRiskAssessment:
    """Risk assessment for a single change."""

    address: str
    resource_type: str
    action: Action
    confidence: ConfidenceLevel
    requires_approval: bool
    risk_reasons: list[str] = field(default_factory=list)


@dataclass
class PlanRiskAssessment:
    """Aggregated risk assessment for a plan."""

    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    overall_confidence: ConfidenceLevel = ConfidenceLevel.HIGH
    requires_approval: bool = False
    change_assessments: list[ChangeRiskAssessment] = field(default_factory=list)
    high_risk_count: int = 0
    medium_risk_count: int = 0
    low_risk_count: int = 0

    @property
    def total_changes(self) -> int:
        return len(self.change_assessments)

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "overall_confidence": self.overall_confidence.value,
            "requires_approval": self.requires_approval,
            "total_changes": self.total_changes,
            "high_risk_count": self.high_risk_count,
            "medium_risk_count": self.medium_risk_count,
            "low_risk_count": self.low_risk_count,
            "high_risk_resources": [
                ca.address
                for ca in self.change_assessments
                if ca.confidence == ConfidenceLevel.LOW
            ][:10],  # Cap for logging
        }


@dataclass(frozen=True)
class ApprovalConfig:
    """Configuration for approval gates."""

    require_approval_for_high_risk: bool = True
    additional_high_risk_types: frozenset[str] = field(default_factory=frozenset)
    excluded_risk_types: frozenset[str] = field(default_factory=frozenset)
    auto_approve_if_no_delete: bool = False
    approval_timeout_seconds: int = DEFAULT_APPROVAL_TIMEOUT_SECONDS

    @classmethod
    def from_env(cls) -> ApprovalConfig:
        """Load approval configuration from environment.

        Environment Variables:
            AZPROV_REQUIRE_APPROVAL_FOR_HIGH_RISK: Enable approval gates (default: true)
            AZPROV_ADDITIONAL_HIGH_RISK_TYPES: Comma-separated Azure resource types
            AZPROV_EXCLUDED_RISK_TYPES: Comma-separated types to exclude
            AZPROV_AUTO_APPROVE_IF_NO_DELETE: Skip approval when no resource is deleted
                outright (default: false)
            AZPROV_APPROVAL_TIMEOUT: Approval timeout in seconds (default: 3600)
        """

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        def get_frozenset(key: str) -> frozenset[str]:
            value = os.environ.get(key, "")
            if not value:
                return frozenset()
            return frozenset(item.strip() for item in value.split(",") if item.strip())

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError:
                return default

        return cls(
            require_approval_for_high_risk=get_bool("AZPROV_REQUIRE_APPROVAL_FOR_HIGH_RISK", True),
            additional_high_risk_types=get_frozenset("AZPROV_ADDITIONAL_HIGH_RISK_TYPES"),
            excluded_risk_types=get_frozenset("AZPROV_EXCLUDED_RISK_TYPES"),
            auto_approve_if_no_delete=get_bool("AZPROV_AUTO_APPROVE_IF_NO_DELETE", False),
            approval_timeout_seconds=get_int(
                "AZPROV_APPROVAL_TIMEOUT", DEFAULT_APPROVAL_TIMEOUT_SECONDS
            ),
        )


class RiskAssessor:
    """Assesses risk of planned changes and determines approval requirements."""

    def __init__(self, config: ApprovalConfig | None = None) -> None:
        self._config = config or ApprovalConfig.from_env()

        self._high_risk_types = (
            HIGH_RISK_RESOURCE_TYPES | set(self._config.additional_high_risk_types)
        ) - set(self._config.excluded_risk_types)

        self._medium_risk_types = MEDIUM_RISK_RESOURCE_TYPES - set(
            self._config.excluded_risk_types
        )

    def assess_change(
        self, address: str, resource_type: str, action: Action
    ) -> ChangeRiskAssessment:
        """Assess risk of a single change.

        Args:
            address: Resource address (e.g. azurerm_subnet.app).
            resource_type: Azure resource type (e.g. Microsoft.Network/virtualNetworks).
            action: Planned action.
        """
        risk_reasons: list[str] = []
        confidence = ConfidenceLevel.HIGH
        requires_approval = False
        destructive = action in HIGH_RISK_ACTIONS

        # High-risk types only matter when something is destroyed or replaced
        if resource_type in self._high_risk_types and action != Action.CREATE:
            confidence = ConfidenceLevel.LOW if destructive else ConfidenceLevel.MEDIUM
            requires_approval = destructive
            risk_reasons.append(f"High-risk resource type: {resource_type}")

        if destructive:
            if confidence != ConfidenceLevel.LOW:
                confidence = ConfidenceLevel.MEDIUM
            if resource_type in self._medium_risk_types:
                requires_approval = True
            risk_reasons.append(f"Risky action: {action.value}")

        if resource_type in self._medium_risk_types and confidence == ConfidenceLevel.HIGH:
            if action == Action.UPDATE:
                confidence = ConfidenceLevel.MEDIUM
                risk_reasons.append(f"Medium-risk resource type: {resource_type}")

        return ChangeRiskAssessment(
            address=address,
            resource_type=resource_type,
            action=action,
            confidence=confidence,
            requires_approval=requires_approval and self._config.require_approval_for_high_risk,
            risk_reasons=risk_reasons,
        )

    def assess_plan(self, plan: Plan) -> PlanRiskAssessment:
        """Assess risk of every significant change in a plan."""
        assessment = PlanRiskAssessment()

        has_delete = False
        for change in plan.significant_changes:
            change_assessment = self.assess_change(
                address=change.address,
                resource_type=AZURE_RESOURCE_TYPES.get(change.type, change.type),
                action=change.action,
            )
            assessment.change_assessments.append(change_assessment)

            match change_assessment.confidence:
                case ConfidenceLevel.LOW:
                    assessment.high_risk_count += 1
                case ConfidenceLevel.MEDIUM:
                    assessment.medium_risk_count += 1
                case ConfidenceLevel.HIGH:
                    assessment.low_risk_count += 1

            if change_assessment.requires_approval:
                assessment.requires_approval = True

            if change.action == Action.DELETE:
                has_delete = True

        if assessment.high_risk_count > 0:
            assessment.overall_confidence = ConfidenceLevel.LOW
        elif assessment.medium_risk_count > 0:
            assessment.overall_confidence = ConfidenceLevel.MEDIUM
        else:
            assessment.overall_confidence = ConfidenceLevel.HIGH

        if (
            self._config.auto_approve_if_no_delete
            and not has_delete
            and assessment.requires_approval
        ):
            logger.info("Auto-approve enabled and nothing is destroyed - skipping approval")
            assessment.requires_approval = False

        return assessment


# =============================================================================
# Approval Requests
# =============================================================================


@dataclass
class ApprovalRequest:
    """A request for approval before continuing."""

    request_id: str
    subject: str
    instructions: str = ""
    notify_users: list[str] = field(default_factory=list)
    risk_assessment: dict[str, Any] | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    expires_at: datetime | None = None
    timeout_seconds: int = DEFAULT_APPROVAL_TIMEOUT_SECONDS
    status: ApprovalStatus = ApprovalStatus.PENDING
    decided_by: str | None = None
    decided_at: datetime | None = None
    comment: str | None = None

    def __post_init__(self) -> None:
        if self.expires_at is None:
            timeout = min(self.timeout_seconds, MAX_APPROVAL_TIMEOUT_SECONDS)
            self.expires_at = self.created_at + timedelta(seconds=timeout)

    @property
    def is_expired(self) -> bool:
        if self.expires_at is None:
            return False
        return datetime.now(UTC) > self.expires_at

    @property
    def is_decided(self) -> bool:
        return self.status != ApprovalStatus.PENDING

    def check_and_update_expiry(self) -> None:
        if self.status == ApprovalStatus.PENDING and self.is_expired:
            self.status = ApprovalStatus.EXPIRED

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "subject": self.subject,
            "instructions": self.instructions,
            "notify_users": self.notify_users,
            "risk_assessment": self.risk_assessment,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "timeout_seconds": self.timeout_seconds,
            "status": self.status.value,
            "decided_by": self.decided_by,
            "decided_at": self.decided_at.isoformat() if self.decided_at else None,
            "comment": self.comment,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ApprovalRequest:
        def parse_time(value: str | None) -> datetime | None:
            return datetime.fromisoformat(value) if value else None

        return cls(
            request_id=data["request_id"],
            subject=data.get("subject", ""),
            instructions=data.get("instructions", ""),
            notify_users=list(data.get("notify_users") or []),
            risk_assessment=data.get("risk_assessment"),
            created_at=datetime.fromisoformat(data["created_at"]),
            expires_at=parse_time(data.get("expires_at")),
            timeout_seconds=int(data.get("timeout_seconds", DEFAULT_APPROVAL_TIMEOUT_SECONDS)),
            status=ApprovalStatus(data.get("status", ApprovalStatus.PENDING.value)),
            decided_by=data.get("decided_by"),
            decided_at=parse_time(data.get("decided_at")),
            comment=data.get("comment"),
        )


class ApprovalGate:
    """Manages approval requests.

    Requests live in memory and, when `store_dir` is set, in one JSON file
    per request so other processes can list and decide them.
    """

    def __init__(
        self,
        config: ApprovalConfig | None = None,
        store_dir: Path | None = None,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
    ) -> None:
        self._config = config or ApprovalConfig.from_env()
        self._assessor = RiskAssessor(self._config)
        self._store_dir = store_dir
        self._poll_interval_seconds = poll_interval_seconds
        self._requests: dict[str, ApprovalRequest] = {}

    @property
    def assessor(self) -> RiskAssessor:
        return self._assessor

    @property
    def store_dir(self) -> Path | None:
        return self._store_dir

    def create_request(
        self,
        request_id: str,
        subject: str,
        instructions: str = "",
        notify_users: list[str] | None = None,
        risk_assessment: PlanRiskAssessment | None = None,
        timeout_seconds: int | None = None,
    ) -> ApprovalRequest:
        """Create a new pending approval request.

        Raises:
            ApprovalGateError: If the request ID is invalid or already exists.
        """
        self._validate_request_id(request_id)
        if self._load(request_id) is not None:
            raise ApprovalGateError(f"Approval request already exists: {request_id}")

        request = ApprovalRequest(
            request_id=request_id,
            subject=subject,
            instructions=instructions,
            notify_users=list(notify_users or []),
            risk_assessment=risk_assessment.to_dict() if risk_assessment else None,
            timeout_seconds=timeout_seconds or self._config.approval_timeout_seconds,
        )
        self._save(request)

        logger.warning(
            "Approval required",
            extra={
                "request_id": request_id,
                "subject": subject,
                "notify_users": request.notify_users,
                "expires_at": request.expires_at.isoformat() if request.expires_at else None,
            },
        )
        return request

    def check_approval(self, request_id: str) -> ApprovalRequest | None:
        """Current state of a request, re-read from the store if persisted."""
        request = self._load(request_id)
        if request is not None:
            before = request.status
            request.check_and_update_expiry()
            if request.status != before:
                self._save(request)
        return request

    def list_requests(self) -> list[ApprovalRequest]:
        """All known requests, oldest first."""
        ids = set(self._requests)
        if self._store_dir is not None and self._store_dir.is_dir():
            ids.update(path.stem for path in self._store_dir.glob("*.json"))
        requests = [r for r in (self.check_approval(i) for i in ids) if r is not None]
        return sorted(requests, key=lambda r: r.created_at)

    def approve(self, request_id: str, approved_by: str, comment: str = "") -> ApprovalRequest:
        """Approve a pending request.

        Raises:
            ApprovalGateError: If request not found or already decided.
        """
        request = self._pending(request_id)
        request.status = ApprovalStatus.APPROVED
        request.decided_by = approved_by
        request.decided_at = datetime.now(UTC)
        request.comment = comment or None
        self._save(request)

        logger.info(
            "Approval granted",
            extra={"request_id": request_id, "approved_by": approved_by},
        )
        return request

    def reject(self, request_id: str, rejected_by: str, reason: str) -> ApprovalRequest:
        """Reject a pending request.

        Raises:
            ApprovalGateError: If request not found or already decided.
        """
        request = self._pending(request_id)
        request.status = ApprovalStatus.REJECTED
        request.decided_by = rejected_by
        request.decided_at = datetime.now(UTC)
        request.comment = reason
        self._save(request)

        logger.warning(
            "Approval rejected",
            extra={"request_id": request_id, "rejected_by": rejected_by, "reason": reason},
        )
        return request

    async def wait_for_decision(
        self,
        request_id: str,
        timeout_seconds: float | None = None,
        poll_interval_seconds: float | None = None,
        on_timeout: TimeoutAction = TimeoutAction.REJECT,
    ) -> ApprovalRequest:
        """Poll until the request is decided or times out.

        On timeout the request becomes EXPIRED (`reject`) or is approved on
        behalf of the system (`resume`).

        Raises:
            ApprovalGateError: If the request does not exist.
        """
        request = self.check_approval(request_id)
        if request is None:
            raise ApprovalGateError(f"Approval request not found: {request_id}")

        if timeout_seconds is None:
            if request.expires_at is None:
                timeout_seconds = float(request.timeout_seconds)
            else:
                remaining = (request.expires_at - datetime.now(UTC)).total_seconds()
                timeout_seconds = max(0.0, remaining)
        deadline = time.monotonic() + timeout_seconds
        interval = poll_interval_seconds or self._poll_interval_seconds

        while True:
            request = self.check_approval(request_id)
            if request is None:
                raise ApprovalGateError(
                    f"Approval request disappeared while waiting: {request_id}"
                )
            if request.status in (ApprovalStatus.APPROVED, ApprovalStatus.REJECTED):
                return request

            remaining = deadline - time.monotonic()
            if request.status == ApprovalStatus.EXPIRED or remaining <= 0:
                return self._time_out(request, on_timeout)

            await asyncio.sleep(min(interval, remaining))

    def auto_approves(self, assessment: PlanRiskAssessment) -> bool:
        """Whether a manual validation may pass without waiting for a decision."""
        if not self._config.auto_approve_if_no_delete:
            return False
        return not any(ca.action == Action.DELETE for ca in assessment.change_assessments)

    def cleanup_expired(self) -> int:
        """Remove expired requests. Returns the number removed."""
        removed = 0
        for request in self.list_requests():
            if request.status != ApprovalStatus.EXPIRED:
                continue
            self._requests.pop(request.request_id, None)
            if self._store_dir is not None:
                self._path(request.request_id).unlink(missing_ok=True)
            removed += 1
            logger.info(
                "Cleaned up expired approval request", extra={"request_id": request.request_id}
            )
        return removed

    def _time_out(self, request: ApprovalRequest, on_timeout: TimeoutAction) -> ApprovalRequest:
        request.decided_at = datetime.now(UTC)
        if on_timeout == TimeoutAction.RESUME:
            request.status = ApprovalStatus.APPROVED
            request.decided_by = "system"
            request.comment = "Approval timed out; resumed"
        else:
            request.status = ApprovalStatus.EXPIRED
            request.comment = "Approval timed out; rejected"
        self._save(request)

        logger.warning(
            "Approval timed out",
            extra={"request_id": request.request_id, "on_timeout": on_timeout.value},
        )
        return request

    def _pending(self, request_id: str) -> ApprovalRequest:
        request = self.check_approval(request_id)
        if request is None:
            raise ApprovalGateError(f"Approval request not found: {request_id}")
        if request.is_decided:
            raise ApprovalGateError(
                f"Request {request_id} is not pending (status: {request.status.value})"
            )
        return request

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    @staticmethod
    def _validate_request_id(request_id: str) -> None:
        if not re.match(VALID_REQUEST_ID_PATTERN, request_id):
            raise ApprovalGateError(f"Invalid approval request ID: {request_id!r}")

    def _path(self, request_id: str) -> Path:
        if self._store_dir is None:
            raise ApprovalGateError("Approval requests are not persisted: no store directory")
        return self._store_dir / f"{request_id}.json"

    def _load(self, request_id: str) -> ApprovalRequest | None:
        if self._store_dir is None:
            return self._requests.get(request_id)

        self._validate_request_id(request_id)
        path = self._path(request_id)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as e:
            raise ApprovalGateError(f"Failed to read approval request {path}: {e}") from e

        try:
            request = ApprovalRequest.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            raise ApprovalGateError(f"Invalid approval request {path}: {e}") from e
        self._requests[request_id] = request
        return request

    def _save(self, request: ApprovalRequest) -> None:
        self._requests[request.request_id] = request
        if self._store_dir is None:
            return

        try:
            self._store_dir.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                "w", encoding="utf-8", dir=self._store_dir, delete=False, suffix=".tmp"
            ) as handle:
                json.dump(request.to_dict(), handle, indent=2)
                temp_name = handle.name
            os.replace(temp_name, self._path(request.request_id))
        except OSError as e:
            raise ApprovalGateError(
                f"Failed to persist approval request {request.request_id}: {e}"
            ) from e
