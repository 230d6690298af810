"""Configuration management with validation.

Limits are enforced at configuration load time so that a misconfigured
run fails before any state is locked or any Azure API is called.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class LogFormat(str, Enum):
    """Supported log output formats."""

    JSON = "json"
    TEXT = "text"


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_OPERATION_TIMEOUT_SECONDS = 1800
MIN_OPERATION_TIMEOUT_SECONDS = 30
MAX_OPERATION_TIMEOUT_SECONDS = 7200

DEFAULT_LOCK_TIMEOUT_SECONDS = 0
MAX_LOCK_TIMEOUT_SECONDS = 3600
LOCK_RETRY_INTERVAL_SECONDS = 2

MAX_PROVIDER_RETRIES = 3
RETRY_BACKOFF_BASE_SECONDS = 5

DEFAULT_MAX_CHANGES_PER_APPLY = 100
MAX_CHANGES_PER_APPLY_LIMIT = 800  # ARM limit per deployment

# File size limits
MAX_CONFIG_FILE_SIZE_BYTES = 1024 * 1024  # 1MB per configuration file
MAX_STATE_FILE_SIZE_BYTES = 10 * 1024 * 1024  # 10MB state document
MAX_PIPELINE_FILE_SIZE_BYTES = 1024 * 1024  # 1MB pipeline definition
MAX_PLAN_FILE_SIZE_BYTES = 10 * 1024 * 1024

# Azure naming limits
MAX_RESOURCE_NAME_LENGTH = 80
MAX_RESOURCE_GROUP_NAME_LENGTH = 90

# Input validation patterns
VALID_SUBSCRIPTION_ID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
VALID_IDENTIFIER_PATTERN = r"^[A-Za-z_][A-Za-z0-9_-]*$"

# Well-known file and directory names inside a working directory
DATA_DIR_NAME = ".terraform"
BACKEND_RECORD_FILENAME = "terraform.tfstate"
LOCAL_STATE_FILENAME = "terraform.tfstate"
DEFAULT_PLAN_FILENAME = "tfplan"
DEFAULT_PIPELINE_FILE = "azure-pipelines.yml"


@dataclass(frozen=True)
class Config:
    """Runtime configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-apply.
    """

    working_dir: Path = field(default_factory=Path.cwd)

    # Azure context
    subscription_id: str | None = None
    client_id: str | None = None

    # Timing
    operation_timeout_seconds: int = DEFAULT_OPERATION_TIMEOUT_SECONDS
    lock_timeout_seconds: int = DEFAULT_LOCK_TIMEOUT_SECONDS

    # Safety limits
    max_changes_per_apply: int = DEFAULT_MAX_CHANGES_PER_APPLY

    # Approvals persisted here can be decided from another process
    approvals_dir: Path | None = None

    # Pipeline agent
    pipeline_file: str = DEFAULT_PIPELINE_FILE
    manual_run: bool = False

    # Logging
    log_level: str = "INFO"
    log_format: LogFormat = LogFormat.JSON

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.working_dir.exists():
            errors.append(f"Working directory does not exist: {self.working_dir}")
        elif not self.working_dir.is_dir():
            errors.append(f"Working directory is not a directory: {self.working_dir}")

        if self.subscription_id and not re.match(
            VALID_SUBSCRIPTION_ID_PATTERN, self.subscription_id.lower()
        ):
            errors.append(f"ARM_SUBSCRIPTION_ID must be a valid GUID: {self.subscription_id}")

        if not (
            MIN_OPERATION_TIMEOUT_SECONDS
            <= self.operation_timeout_seconds
            <= MAX_OPERATION_TIMEOUT_SECONDS
        ):
            errors.append(
                f"AZPROV_OPERATION_TIMEOUT must be between {MIN_OPERATION_TIMEOUT_SECONDS} "
                f"and {MAX_OPERATION_TIMEOUT_SECONDS} seconds"
            )

        if not 0 <= self.lock_timeout_seconds <= MAX_LOCK_TIMEOUT_SECONDS:
            errors.append(
                f"AZPROV_LOCK_TIMEOUT must be between 0 and {MAX_LOCK_TIMEOUT_SECONDS} seconds"
            )

        if self.max_changes_per_apply < 1:
            errors.append("AZPROV_MAX_CHANGES must be at least 1")
        elif self.max_changes_per_apply > MAX_CHANGES_PER_APPLY_LIMIT:
            errors.append(f"AZPROV_MAX_CHANGES cannot exceed {MAX_CHANGES_PER_APPLY_LIMIT}")

        if not self.pipeline_file.strip():
            errors.append("AZPROV_PIPELINE_FILE must not be empty")

        if self.log_level.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            errors.append(f"AZPROV_LOG_LEVEL is not a valid level: {self.log_level}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def data_dir(self) -> Path:
        """Directory holding the backend record and other local metadata."""
        return self.working_dir / DATA_DIR_NAME

    def with_working_dir(self, working_dir: Path) -> Config:
        """Return a copy of this configuration rooted at another directory."""
        return Config(
            working_dir=working_dir,
            subscription_id=self.subscription_id,
            client_id=self.client_id,
            operation_timeout_seconds=self.operation_timeout_seconds,
            lock_timeout_seconds=self.lock_timeout_seconds,
            max_changes_per_apply=self.max_changes_per_apply,
            approvals_dir=self.approvals_dir,
            pipeline_file=self.pipeline_file,
            manual_run=self.manual_run,
            log_level=self.log_level,
            log_format=self.log_format,
        )

    @classmethod
    def from_env(cls, working_dir: Path | None = None) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            AZPROV_WORKING_DIR: Directory with configuration files (default: cwd)
            ARM_SUBSCRIPTION_ID: Target Azure subscription
            AZURE_CLIENT_ID: Client ID of a user-assigned managed identity
            AZPROV_OPERATION_TIMEOUT: Per-resource operation timeout (default: 1800)
            AZPROV_LOCK_TIMEOUT: Seconds to retry acquiring the state lock (default: 0)
            AZPROV_MAX_CHANGES: Max resource changes per apply (default: 100)
            AZPROV_APPROVALS_DIR: Directory for persisted approval requests
            AZPROV_PIPELINE_FILE: Pipeline run by the agent (default: azure-pipelines.yml)
            AZPROV_MANUAL_RUN: true to ignore the pipeline trigger (default: false)
            AZPROV_LOG_LEVEL: Log level (default: INFO)
            AZPROV_LOG_FORMAT: json or text (default: json)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").strip().lower()
            if not value:
                return default
            if value in ("true", "1", "yes"):
                return True
            if value in ("false", "0", "no"):
                return False
            raise ConfigurationError(f"{key} must be true or false: {value}")

        def get_log_format(value: str | None) -> LogFormat:
            if not value:
                return LogFormat.JSON
            try:
                return LogFormat(value.lower())
            except ValueError as e:
                valid = [f.value for f in LogFormat]
                raise ConfigurationError(
                    f"AZPROV_LOG_FORMAT must be one of {valid}: {value}"
                ) from e

        if working_dir is None:
            env_dir = os.environ.get("AZPROV_WORKING_DIR")
            working_dir = Path(env_dir) if env_dir else Path.cwd()

        approvals_dir = os.environ.get("AZPROV_APPROVALS_DIR")

        return cls(
            working_dir=working_dir,
            subscription_id=os.environ.get("ARM_SUBSCRIPTION_ID") or None,
            client_id=os.environ.get("AZURE_CLIENT_ID") or None,
            operation_timeout_seconds=get_int(
                "AZPROV_OPERATION_TIMEOUT", DEFAULT_OPERATION_TIMEOUT_SECONDS
            ),
            lock_timeout_seconds=get_int("AZPROV_LOCK_TIMEOUT", DEFAULT_LOCK_TIMEOUT_SECONDS),
            max_changes_per_apply=get_int("AZPROV_MAX_CHANGES", DEFAULT_MAX_CHANGES_PER_APPLY),
            approvals_dir=Path(approvals_dir) if approvals_dir else None,
            pipeline_file=os.environ.get("AZPROV_PIPELINE_FILE", DEFAULT_PIPELINE_FILE),
            manual_run=get_bool("AZPROV_MANUAL_RUN", False),
            log_level=os.environ.get("AZPROV_LOG_LEVEL", "INFO"),
            log_format=get_log_format(os.environ.get("AZPROV_LOG_FORMAT")),
        )
