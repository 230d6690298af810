"""Persisted state and the backends that store it.

State records every managed resource with the attributes it had after the
last apply. The document follows the Terraform state v4 layout so existing
tooling can read it:

```json
{
  "version": 4,
  "terraform_version": "1.0.0",
  "serial": 3,
  "lineage": "8a6f...",
  "outputs": {"vnet_id": {"value": "/subscriptions/...", "type": "string"}},
  "resources": [
    {
      "mode": "managed",
      "type": "azurerm_resource_group",
      "name": "main",
      "provider": "provider[\\"registry.terraform.io/hashicorp/azurerm\\"]",
      "instances": [{"schema_version": 0, "attributes": {...}, "dependencies": []}]
    }
  ]
}
```

`serial` increases on every write, `lineage` identifies one state for its
whole life. A state that was never written has no lineage yet; it gets one
on its first write. Writes are only accepted from the holder of the state lock.
"""

from __future__ import annotations

import getpass
import json
import logging
import os
import shutil
import socket
import tempfile
import time
import uuid
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator

from .config import LOCK_RETRY_INTERVAL_SECONDS, MAX_STATE_FILE_SIZE_BYTES
from .config_loader import format_validation_error, read_bounded_file
from .provenance import PROVISIONER_VERSION

logger = logging.getLogger(__name__)

STATE_FORMAT_VERSION = 4
PROVIDER_ADDRESS = 'provider["registry.terraform.io/hashicorp/azurerm"]'


class StateError(Exception):
    """Raised when state cannot be read or written."""

    pass


class StateLockError(StateError):
    """Raised when the state lock cannot be acquired, released or verified.

    Attributes:
        info: Lock currently holding the state, when known.
    """

    def __init__(self, message: str, info: LockInfo | None = None) -> None:
        if info is not None:
            message = f"{message}\n{info.describe()}"
        super().__init__(message)
        self.info = info


# =============================================================================
# State Document
# =============================================================================


class ResourceInstance(BaseModel):
    schema_version: int = 0
    attributes: dict[str, Any] = Field(default_factory=dict)
    dependencies: list[str] = Field(default_factory=list)


class ResourceEntry(BaseModel):
    """A managed resource recorded in state."""

    model_config = {"extra": "ignore"}

    mode: str = "managed"
    type: str
    name: str
    provider: str = PROVIDER_ADDRESS
    instances: list[ResourceInstance] = Field(default_factory=list)

    @property
    def address(self) -> str:
        return f"{self.type}.{self.name}"

    @property
    def attributes(self) -> dict[str, Any]:
        return self.instances[0].attributes if self.instances else {}

    @property
    def dependencies(self) -> list[str]:
        return self.instances[0].dependencies if self.instances else []


class OutputValue(BaseModel):
    value: Any
    type: Any = "string"
    sensitive: bool = False


def _infer_type(value: Any) -> Any:
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, list):
        return ["list", "dynamic"]
    if isinstance(value, dict):
        return ["map", "dynamic"]
    return "string"


class State(BaseModel):
    """A state document."""

    model_config = {"extra": "ignore"}

    version: int = STATE_FORMAT_VERSION
    terraform_version: str = PROVISIONER_VERSION
    serial: int = 0
    lineage: str = ""
    outputs: dict[str, OutputValue] = Field(default_factory=dict)
    resources: list[ResourceEntry] = Field(default_factory=list)

    @field_validator("version")
    @classmethod
    def validate_version(cls, v: int) -> int:
        if v != STATE_FORMAT_VERSION:
            raise ValueError(
                f"unsupported state format version {v}; expected {STATE_FORMAT_VERSION}"
            )
        return v

    @property
    def is_empty(self) -> bool:
        return not self.resources and not self.outputs

    def advance(self) -> None:
        """Prepare for a write: assign a lineage on first write, bump the serial."""
        if not self.lineage:
            self.lineage = str(uuid.uuid4())
        self.serial += 1

    def addresses(self) -> list[str]:
        return sorted(entry.address for entry in self.resources)

    def get(self, address: str) -> ResourceEntry | None:
        for entry in self.resources:
            if entry.address == address:
                return entry
        return None

    def attributes(self, address: str) -> dict[str, Any] | None:
        entry = self.get(address)
        return dict(entry.attributes) if entry is not None else None

    def all_attributes(self) -> dict[str, dict[str, Any]]:
        """Attributes of every resource, keyed by address."""
        return {entry.address: dict(entry.attributes) for entry in self.resources}

    def set_resource(
        self,
        resource_type: str,
        name: str,
        attributes: dict[str, Any],
        dependencies: list[str] | None = None,
    ) -> None:
        """Record (or replace) a resource's attributes."""
        entry = ResourceEntry(
            type=resource_type,
            name=name,
            instances=[
                ResourceInstance(attributes=dict(attributes), dependencies=list(dependencies or []))
            ],
        )
        for index, existing in enumerate(self.resources):
            if existing.address == entry.address:
                self.resources[index] = entry
                return
        self.resources.append(entry)
        self.resources.sort(key=lambda e: e.address)

    def remove_resource(self, address: str) -> bool:
        before = len(self.resources)
        self.resources = [e for e in self.resources if e.address != address]
        return len(self.resources) != before

    def set_outputs(self, values: dict[str, Any], sensitive: set[str] | None = None) -> None:
        sensitive = sensitive or set()
        self.outputs = {
            name: OutputValue(value=value, type=_infer_type(value), sensitive=name in sensitive)
            for name, value in values.items()
        }

    def to_json(self) -> str:
        return json.dumps(self.model_dump(mode="json"), indent=2, sort_keys=False) + "\n"

    @classmethod
    def from_json(cls, content: str, source: str) -> State:
        """Parse a state document; blank content is an empty state.

        Raises:
            StateError: If the content is not a valid state document.
        """
        if not content.strip():
            return cls()
        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise StateError(f"Invalid JSON in state {source}: {e}") from e
        if not isinstance(data, dict):
            raise StateError(f"State {source} must contain a JSON object")
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise StateError(
                f"Invalid state {source}:\n{format_validation_error(e)}"
            ) from e


# =============================================================================
# Locking
# =============================================================================


@dataclass
class LockInfo:
    """Metadata stored with a state lock."""

    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    operation: str = ""
    info: str = ""
    who: str = field(default_factory=lambda: f"{getpass.getuser()}@{socket.gethostname()}")
    version: str = PROVISIONER_VERSION
    created: datetime = field(default_factory=lambda: datetime.now(UTC))
    path: str = ""

    def to_json(self) -> str:
        return json.dumps(
            {
                "ID": self.id,
                "Operation": self.operation,
                "Info": self.info,
                "Who": self.who,
                "Version": self.version,
                "Created": self.created.isoformat(),
                "Path": self.path,
            }
        )

    @classmethod
    def from_json(cls, content: str) -> LockInfo:
        """Parse lock metadata.

        Raises:
            StateError: If the content is not valid lock metadata.
        """
        try:
            data = json.loads(content)
            return cls(
                id=data["ID"],
                operation=data.get("Operation", ""),
                info=data.get("Info", ""),
                who=data.get("Who", ""),
                version=data.get("Version", ""),
                created=datetime.fromisoformat(data["Created"]),
                path=data.get("Path", ""),
            )
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            raise StateError(f"Invalid lock info: {e}") from e

    def describe(self) -> str:
        return (
            "Lock Info:\n"
            f"  ID:        {self.id}\n"
            f"  Path:      {self.path}\n"
            f"  Operation: {self.operation}\n"
            f"  Who:       {self.who}\n"
            f"  Version:   {self.version}\n"
            f"  Created:   {self.created.isoformat()}\n"
            f"  Info:      {self.info}"
        )


class StateBackend(ABC):
    """Storage for a single state document."""

    name: str = ""

    @abstractmethod
    def describe(self) -> str:
        """Human-readable location of the state."""

    @abstractmethod
    def read(self) -> State:
        """Read the current state; a missing state reads as empty."""

    @abstractmethod
    def write(self, state: State, lock_id: str) -> None:
        """Persist state, incrementing its serial.

        Raises:
            StateLockError: If `lock_id` does not hold the lock.
        """

    @abstractmethod
    def lock(self, info: LockInfo) -> str:
        """Acquire the lock, returning its ID.

        Raises:
            StateLockError: If the state is already locked.
        """

    @abstractmethod
    def unlock(self, lock_id: str) -> None:
        """Release a lock held under `lock_id`."""

    @abstractmethod
    def lock_info(self) -> LockInfo | None:
        """The lock currently held, if any."""

    def force_unlock(self, lock_id: str) -> None:
        """Release a lock regardless of who holds it, given its ID.

        Raises:
            StateLockError: If no lock is held or the ID does not match.
        """
        current = self.lock_info()
        if current is None:
            raise StateLockError("State is not locked")
        if current.id != lock_id:
            raise StateLockError(f"Lock ID {lock_id!r} does not match the held lock", current)
        self._break_lock()
        logger.warning(
            "State lock forcibly released",
            extra={"backend": self.name, "lock_id": lock_id, "holder": current.who},
        )

    @abstractmethod
    def _break_lock(self) -> None:
        """Drop the current lock unconditionally."""

    def _verify_lock(self, lock_id: str) -> None:
        current = self.lock_info()
        if current is None:
            raise StateLockError("Refusing to write state: state is not locked")
        if current.id != lock_id:
            raise StateLockError(
                f"Refusing to write state: lock {lock_id!r} is not the held lock", current
            )


def acquire_lock(
    backend: StateBackend,
    info: LockInfo,
    timeout_seconds: float = 0,
    interval_seconds: float = LOCK_RETRY_INTERVAL_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> str:
    """Acquire the state lock, retrying until `timeout_seconds` has passed.

    Raises:
        StateLockError: If the lock is still held by another run at timeout.
    """
    deadline = clock() + timeout_seconds
    attempt = 0
    while True:
        attempt += 1
        try:
            lock_id = backend.lock(info)
        except StateLockError as e:
            remaining = deadline - clock()
            if remaining <= 0:
                raise StateLockError("Error acquiring the state lock", e.info) from e
            logger.info(
                "State locked by another run, retrying",
                extra={"attempt": attempt, "holder": e.info.who if e.info else None},
            )
            sleep(min(interval_seconds, remaining))
            continue

        logger.debug(
            "Acquired state lock",
            extra={"backend": backend.name, "lock_id": lock_id, "operation": info.operation},
        )
        return lock_id


@contextmanager
def state_lock(
    backend: StateBackend,
    operation: str,
    timeout_seconds: float = 0,
    sleep: Callable[[float], None] = time.sleep,
) -> Iterator[str]:
    """Hold the state lock for the duration of the block."""
    info = LockInfo(operation=operation, path=backend.describe())
    lock_id = acquire_lock(backend, info, timeout_seconds, sleep=sleep)
    try:
        yield lock_id
    finally:
        try:
            backend.unlock(lock_id)
        except StateError:
            logger.error(
                "Failed to release state lock",
                extra={"backend": backend.name, "lock_id": lock_id},
                exc_info=True,
            )
            raise


# =============================================================================
# Local Backend
# =============================================================================


class LocalBackend(StateBackend):
    """State in a file on local disk, locked with an exclusive-create lock file."""

    name = "local"

    def __init__(self, path: Path) -> None:
        self.path = path
        self.lock_path = path.with_name(f".{path.name}.lock.info")
        self.backup_path = path.with_name(f"{path.name}.backup")

    def describe(self) -> str:
        return str(self.path)

    def read(self) -> State:
        if not self.path.exists():
            return State()
        content = read_bounded_file(self.path, MAX_STATE_FILE_SIZE_BYTES, StateError)
        return State.from_json(content, str(self.path))

    def write(self, state: State, lock_id: str) -> None:
        self._verify_lock(lock_id)
        state.advance()
        content = state.to_json()

        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            if self.path.exists():
                shutil.copy2(self.path, self.backup_path)
            with tempfile.NamedTemporaryFile(
                "w", encoding="utf-8", dir=self.path.parent, delete=False, suffix=".tmp"
            ) as handle:
                handle.write(content)
                temp_name = handle.name
            os.replace(temp_name, self.path)
        except OSError as e:
            raise StateError(f"Failed to write state {self.path}: {e}") from e

        logger.debug(
            "Wrote state", extra={"path": str(self.path), "serial": state.serial}
        )

    def lock(self, info: LockInfo) -> str:
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with self.lock_path.open("x", encoding="utf-8") as handle:
                handle.write(info.to_json())
        except FileExistsError as e:
            raise StateLockError("State is already locked", self.lock_info()) from e
        except OSError as e:
            raise StateError(f"Failed to create lock file {self.lock_path}: {e}") from e
        return info.id

    def unlock(self, lock_id: str) -> None:
        current = self.lock_info()
        if current is None:
            raise StateLockError("State is not locked")
        if current.id != lock_id:
            raise StateLockError(f"Lock ID {lock_id!r} does not match the held lock", current)
        self._break_lock()

    def lock_info(self) -> LockInfo | None:
        try:
            content = self.lock_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StateError(f"Failed to read lock file {self.lock_path}: {e}") from e
        return LockInfo.from_json(content)

    def _break_lock(self) -> None:
        try:
            self.lock_path.unlink(missing_ok=True)
        except OSError as e:
            raise StateError(f"Failed to remove lock file {self.lock_path}: {e}") from e
