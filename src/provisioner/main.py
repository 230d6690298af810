"""Pipeline agent entry point and logging setup.

SECRETLESS ARCHITECTURE:
Runs authenticate to Azure with managed identities only:
- ALL authentication uses User-Assigned or System-Assigned Managed Identities
- NO service principal secrets, certificates or storage keys are allowed
- A credential found in the environment stops the run with exit code 2

Environment, besides the `AZPROV_*` settings read by `Config.from_env()`:
    BUILD_SOURCEBRANCH: Branch being built (default: refs/heads/main)
    BUILD_BUILDID: Run ID, also used in approval request IDs
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
import sys
from datetime import UTC, datetime
from typing import TextIO

from .approval import ApprovalConfig, ApprovalGate
from .config import Config, ConfigurationError, LogFormat
from .pipeline import PipelineLoadError, load_pipeline
from .runner import PipelineRunner
from .security import SecretlessViolationError, enforce_secretless_architecture

DEFAULT_BRANCH = "refs/heads/main"

# LogRecord attributes that are not structured `extra` fields
RESERVED_RECORD_KEYS = frozenset(
    (
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    )
)

_installed_handler: logging.Handler | None = None


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Add extra fields from the record
        for key, value in record.__dict__.items():
            if key not in RESERVED_RECORD_KEYS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable lines with extra fields appended as key=value."""

    def __init__(self) -> None:
        super().__init__("%(asctime)s %(levelname)-8s %(name)s: %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        extras = [
            f"{key}={value}"
            for key, value in record.__dict__.items()
            if key not in RESERVED_RECORD_KEYS and key != "asctime"
        ]
        return f"{line} {' '.join(extras)}" if extras else line


def setup_logging(
    level: str = "INFO",
    log_format: LogFormat = LogFormat.JSON,
    stream: TextIO | None = None,
) -> None:
    """Configure structured logging.

    Calling this again replaces the handler installed before.

    Args:
        level: Root log level.
        log_format: JSON for pipelines, text for terminals.
        stream: Destination, stderr by default; stdout carries command output.
    """
    global _installed_handler

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(JsonFormatter() if log_format == LogFormat.JSON else TextFormatter())

    root_logger = logging.getLogger()
    if _installed_handler is not None:
        root_logger.removeHandler(_installed_handler)
    root_logger.addHandler(handler)
    root_logger.setLevel(level.upper())
    _installed_handler = handler

    # Reduce noise from Azure SDK
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


async def main() -> int:
    """Run the pipeline named by the environment.

    Returns:
        Exit code: 0 on success, 1 on failure, 2 on a security violation.
    """
    try:
        config = Config.from_env()
    except ConfigurationError as e:
        setup_logging()
        logging.getLogger(__name__).error("Configuration error", extra={"error": str(e)})
        return 1

    setup_logging(config.log_level, config.log_format)
    logger = logging.getLogger(__name__)

    pipeline_path = config.working_dir / config.pipeline_file
    branch = os.environ.get("BUILD_SOURCEBRANCH") or DEFAULT_BRANCH

    try:
        enforce_secretless_architecture()
        pipeline = load_pipeline(pipeline_path)
        gate = ApprovalGate(ApprovalConfig.from_env(), store_dir=config.approvals_dir)
    except SecretlessViolationError as e:
        # SECURITY: Credential detected in environment - fatal security error
        logger.critical(
            "Security violation: credentials detected in environment",
            extra={"error": str(e)},
        )
        return 2
    except PipelineLoadError as e:
        logger.error(
            "Failed to load pipeline",
            extra={"error": str(e), "pipeline": str(pipeline_path)},
        )
        return 1

    runner = PipelineRunner(config, approval_gate=gate, run_id=os.environ.get("BUILD_BUILDID"))

    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        runner.cancel()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    try:
        result = await runner.run(pipeline, branch, triggered=not config.manual_run)
    except SecretlessViolationError as e:
        logger.critical(
            "Security violation: credentials detected in environment",
            extra={"error": str(e)},
        )
        return 2
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return 1

    return 0 if result.success else 1


def run() -> None:
    """Entry point for the pipeline agent."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
