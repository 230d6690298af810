"""Configuration file loading with validation.

SECURITY: All file operations enforce size limits to prevent DoS via large
files. Input validation is performed at the boundary.

Configuration files use Terraform's JSON configuration syntax (`*.tf.json`)
or the same structure written as YAML (`*.tf.yaml`, `*.tf.yml`). Variable
values come from, in increasing precedence:

1. `default` in the variable declaration
2. `TF_VAR_<name>` environment variables
3. `terraform.tfvars.json`, then `*.auto.tfvars.json` in filename order
4. `-var-file` files, in the order given
5. `-var name=value` assignments
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_CONFIG_FILE_SIZE_BYTES
from .models import ConfigDocument, Configuration, DuplicateDeclarationError

logger = logging.getLogger(__name__)

CONFIG_FILE_SUFFIXES = (".tf.json", ".tf.yaml", ".tf.yml")
VARIABLE_FILE_NAME = "terraform.tfvars.json"
AUTO_VARIABLE_FILE_SUFFIX = ".auto.tfvars.json"
ENV_VARIABLE_PREFIX = "TF_VAR_"


class ConfigLoadError(Exception):
    """Raised when configuration loading or validation fails."""

    pass


def read_bounded_file(path: Path, max_bytes: int, error_cls: type[Exception]) -> str:
    """Read a text file after checking its size.

    Raises:
        error_cls: If the file is missing, too large or unreadable.
    """
    if not path.exists():
        raise error_cls(f"File not found: {path}")

    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise error_cls(f"Failed to stat file {path}: {e}") from e

    if file_size > max_bytes:
        raise error_cls(f"File exceeds maximum size of {max_bytes} bytes: {path}")

    try:
        return path.read_text(encoding="utf-8")
    except OSError as e:
        raise error_cls(f"Failed to read file {path}: {e}") from e


def parse_structured(content: str, path: Path, error_cls: type[Exception]) -> Any:
    """Parse JSON or YAML content depending on the file suffix."""
    if path.suffix == ".json":
        try:
            return json.loads(content)
        except json.JSONDecodeError as e:
            raise error_cls(f"Invalid JSON in {path}: {e}") from e
    try:
        return yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise error_cls(f"Invalid YAML in {path}: {e}") from e


def format_validation_error(error: ValidationError) -> str:
    """Format Pydantic validation errors for readability."""
    errors = []
    for detail in error.errors():
        loc = ".".join(str(x) for x in detail["loc"])
        msg = detail["msg"]
        errors.append(f"  - {loc}: {msg}" if loc else f"  - {msg}")
    return "\n".join(errors)


def is_config_file(path: Path) -> bool:
    return path.is_file() and path.name.endswith(CONFIG_FILE_SUFFIXES)


def discover_config_files(working_dir: Path) -> list[Path]:
    """List configuration files in a working directory, sorted by name."""
    return sorted((p for p in working_dir.iterdir() if is_config_file(p)), key=lambda p: p.name)


def load_document(path: Path) -> ConfigDocument:
    """Load and validate a single configuration file.

    Raises:
        ConfigLoadError: If the file cannot be loaded or fails validation.
    """
    content = read_bounded_file(path, MAX_CONFIG_FILE_SIZE_BYTES, ConfigLoadError)
    raw_data = parse_structured(content, path, ConfigLoadError)

    if raw_data is None:
        # Empty file
        return ConfigDocument()

    if not isinstance(raw_data, dict):
        raise ConfigLoadError(f"Configuration file must contain a mapping: {path}")

    # Kubernetes-style wrapper: apiVersion + spec
    if "apiVersion" in raw_data and "spec" in raw_data:
        document_data = raw_data.get("spec", {})
        if not isinstance(document_data, dict):
            raise ConfigLoadError(f"Spec section must be a mapping: {path}")
    else:
        document_data = raw_data

    try:
        document = ConfigDocument.model_validate(document_data)
    except ValidationError as e:
        raise ConfigLoadError(
            f"Validation failed for {path}:\n{format_validation_error(e)}"
        ) from e

    logger.debug("Loaded configuration file", extra={"path": str(path)})
    return document


def load_configuration(working_dir: Path) -> Configuration:
    """Load and merge every configuration file in a working directory.

    Raises:
        ConfigLoadError: If no files exist, a file is invalid, or two files
            declare the same object.
    """
    if not working_dir.is_dir():
        raise ConfigLoadError(f"Working directory does not exist: {working_dir}")

    paths = discover_config_files(working_dir)
    if not paths:
        raise ConfigLoadError(
            f"No configuration files found in {working_dir} "
            f"(expected one of {', '.join('*' + s for s in CONFIG_FILE_SUFFIXES)})"
        )

    documents = [load_document(path) for path in paths]

    try:
        configuration = Configuration.from_documents(documents)
    except DuplicateDeclarationError as e:
        raise ConfigLoadError(str(e)) from e

    logger.info(
        "Loaded configuration",
        extra={
            "working_dir": str(working_dir),
            "files": [p.name for p in paths],
            "resources": len(configuration.resources),
            "variables": len(configuration.variables),
        },
    )
    return configuration


# =============================================================================
# Variable Values
# =============================================================================


def load_variable_file(path: Path) -> dict[str, Any]:
    """Load a JSON or YAML file of variable values.

    Raises:
        ConfigLoadError: If the file is invalid.
    """
    content = read_bounded_file(path, MAX_CONFIG_FILE_SIZE_BYTES, ConfigLoadError)
    data = parse_structured(content, path, ConfigLoadError)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigLoadError(f"Variable file must contain a mapping: {path}")
    return data


def discover_variable_files(working_dir: Path) -> list[Path]:
    """Variable files loaded automatically, in precedence order."""
    files = []
    default_file = working_dir / VARIABLE_FILE_NAME
    if default_file.is_file():
        files.append(default_file)
    files.extend(
        sorted(
            p
            for p in working_dir.iterdir()
            if p.is_file() and p.name.endswith(AUTO_VARIABLE_FILE_SUFFIX)
        )
    )
    return files


def _parse_cli_value(raw: str) -> Any:
    stripped = raw.strip()
    if stripped.startswith(("[", "{")):
        try:
            return json.loads(stripped)
        except json.JSONDecodeError as e:
            raise ConfigLoadError(f"Invalid JSON value: {raw}") from e
    return raw


def parse_var_assignments(assignments: list[str]) -> dict[str, Any]:
    """Parse `name=value` assignments given on the command line.

    Raises:
        ConfigLoadError: If an assignment has no `=`.
    """
    values: dict[str, Any] = {}
    for assignment in assignments:
        name, sep, raw = assignment.partition("=")
        if not sep or not name.strip():
            raise ConfigLoadError(f"Variable assignment must be name=value: {assignment}")
        values[name.strip()] = _parse_cli_value(raw)
    return values


def env_variable_values(environ: Mapping[str, str] | None = None) -> dict[str, Any]:
    """Collect `TF_VAR_<name>` values from the environment."""
    environ = os.environ if environ is None else environ
    return {
        key[len(ENV_VARIABLE_PREFIX) :]: _parse_cli_value(value)
        for key, value in environ.items()
        if key.startswith(ENV_VARIABLE_PREFIX) and len(key) > len(ENV_VARIABLE_PREFIX)
    }


def _coerce(name: str, type_name: str | None, value: Any) -> Any:
    """Convert string input to the declared primitive type."""
    if type_name is None or not isinstance(value, str):
        return value

    match type_name:
        case "number":
            try:
                number = float(value)
            except ValueError as e:
                raise ConfigLoadError(f"Variable '{name}' must be a number: {value}") from e
            return int(number) if number.is_integer() else number
        case "bool":
            lowered = value.lower()
            if lowered not in ("true", "false"):
                raise ConfigLoadError(f"Variable '{name}' must be true or false: {value}")
            return lowered == "true"
        case _ if type_name.startswith(("list", "set", "map", "object")):
            try:
                return json.loads(value)
            except json.JSONDecodeError as e:
                raise ConfigLoadError(
                    f"Variable '{name}' of type {type_name} needs a JSON value: {value}"
                ) from e
        case _:
            return value


def resolve_variables(
    configuration: Configuration,
    working_dir: Path,
    var_files: list[Path] | None = None,
    cli_values: Mapping[str, Any] | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Resolve every declared variable to a value.

    Raises:
        ConfigLoadError: If an assigned variable is undeclared on the command
            line, or a variable without default has no value.
    """
    declared = configuration.variables
    values: dict[str, Any] = {
        name: block.default for name, block in declared.items() if block.has_default
    }

    # Undeclared TF_VAR_ values are silently ignored
    for name, value in env_variable_values(environ).items():
        if name in declared:
            values[name] = _coerce(name, declared[name].type, value)

    file_paths = discover_variable_files(working_dir) + list(var_files or [])
    for path in file_paths:
        for name, value in load_variable_file(path).items():
            if name not in declared:
                logger.warning(
                    "Value for undeclared variable ignored",
                    extra={"variable": name, "path": str(path)},
                )
                continue
            values[name] = value

    for name, value in (cli_values or {}).items():
        if name not in declared:
            raise ConfigLoadError(f"Value for undeclared variable: {name}")
        values[name] = _coerce(name, declared[name].type, value)

    missing = sorted(name for name in declared if name not in values)
    if missing:
        raise ConfigLoadError(f"No value for required variables: {missing}")

    return values
