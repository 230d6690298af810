"""Pydantic models for declarative configuration with validation.

These models provide:
1. Type-safe parsing of JSON/YAML configuration documents
2. Validation at the boundary (fail fast, fail loudly)
3. Per-resource-type argument schemas, including which arguments
   force replacement when they change
"""

from __future__ import annotations

import ipaddress
import re
from dataclasses import dataclass, field
from typing import Annotated, Any

from pydantic import (
    AfterValidator,
    BaseModel,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
    model_validator,
)

from .config import (
    LOCAL_STATE_FILENAME,
    MAX_RESOURCE_GROUP_NAME_LENGTH,
    MAX_RESOURCE_NAME_LENGTH,
    VALID_IDENTIFIER_PATTERN,
)
from .expressions import UNKNOWN, INTERPOLATION_PATTERN

SUPPORTED_BACKENDS = frozenset({"azurerm", "local"})


def normalize_location(value: str) -> str:
    """Normalize an Azure region: "West Europe" and "westeurope" are equal."""
    return value.replace(" ", "").lower()


def _validate_cidr(value: str) -> str:
    if "/" not in value:
        raise ValueError(f"'{value}' must be in CIDR notation (e.g., 10.0.0.0/16)")
    try:
        ipaddress.ip_network(value, strict=True)
    except ValueError as e:
        raise ValueError(f"'{value}' is not a valid CIDR block: {e}") from e
    return value


Cidr = Annotated[str, AfterValidator(_validate_cidr)]
Location = Annotated[str, Field(min_length=1), AfterValidator(normalize_location)]
ResourceName = Annotated[str, Field(min_length=1, max_length=MAX_RESOURCE_NAME_LENGTH)]
ResourceGroupName = Annotated[
    str, Field(min_length=1, max_length=MAX_RESOURCE_GROUP_NAME_LENGTH)
]


def _is_interpolated(value: Any) -> bool:
    return isinstance(value, str) and INTERPOLATION_PATTERN.search(value) is not None


# =============================================================================
# Resource Arguments
# =============================================================================


class ResourceGroupArgs(BaseModel):
    """azurerm_resource_group arguments."""

    model_config = {"extra": "forbid"}

    name: ResourceGroupName
    location: Location
    tags: dict[str, str] = Field(default_factory=dict)


class VirtualNetworkArgs(BaseModel):
    """azurerm_virtual_network arguments."""

    model_config = {"extra": "forbid"}

    name: ResourceName
    address_space: Annotated[list[Cidr], Field(min_length=1)]
    location: Location
    resource_group_name: ResourceGroupName
    tags: dict[str, str] = Field(default_factory=dict)


class SubnetArgs(BaseModel):
    """azurerm_subnet arguments."""

    model_config = {"extra": "forbid"}

    name: ResourceName
    address_prefixes: Annotated[list[Cidr], Field(min_length=1)]
    resource_group_name: ResourceGroupName
    virtual_network_name: ResourceName


@dataclass(frozen=True)
class ResourceSchema:
    """Schema of a resource type.

    Attributes:
        type_name: Configuration type name (e.g. azurerm_subnet).
        args_model: Pydantic model validating resolved arguments.
        force_new: Arguments that cannot change in place. A change plans a
            replacement (delete, then create).
        computed: Attributes only known after the resource exists.
    """

    type_name: str
    args_model: type[BaseModel]
    force_new: frozenset[str]
    computed: frozenset[str] = frozenset({"id"})

    @property
    def argument_names(self) -> frozenset[str]:
        return frozenset(self.args_model.model_fields)

    @property
    def required_arguments(self) -> frozenset[str]:
        return frozenset(
            name for name, info in self.args_model.model_fields.items() if info.is_required()
        )


RESOURCE_SCHEMAS: dict[str, ResourceSchema] = {
    "azurerm_resource_group": ResourceSchema(
        type_name="azurerm_resource_group",
        args_model=ResourceGroupArgs,
        force_new=frozenset({"name", "location"}),
    ),
    "azurerm_virtual_network": ResourceSchema(
        type_name="azurerm_virtual_network",
        args_model=VirtualNetworkArgs,
        force_new=frozenset({"name", "location", "resource_group_name"}),
    ),
    "azurerm_subnet": ResourceSchema(
        type_name="azurerm_subnet",
        args_model=SubnetArgs,
        force_new=frozenset({"name", "resource_group_name", "virtual_network_name"}),
    ),
}


def get_resource_schema(resource_type: str) -> ResourceSchema:
    """Get the schema for a resource type.

    Raises:
        ValueError: If the resource type is not supported.
    """
    schema = RESOURCE_SCHEMAS.get(resource_type)
    if schema is None:
        valid_types = sorted(RESOURCE_SCHEMAS)
        raise ValueError(f"Unsupported resource type '{resource_type}'. Valid types: {valid_types}")
    return schema


def validate_arguments(resource_type: str, values: dict[str, Any]) -> dict[str, Any]:
    """Validate resolved arguments and return them normalized.

    Arguments still UNKNOWN at plan time are passed through unvalidated;
    everything else is checked against the type's argument model.

    Raises:
        ValidationError: If a known argument is invalid.
    """
    schema = get_resource_schema(resource_type)
    model = schema.args_model

    if not any(value is UNKNOWN for value in values.values()):
        return model.model_validate(values).model_dump()

    normalized: dict[str, Any] = {}
    for name, value in values.items():
        if value is UNKNOWN:
            normalized[name] = value
            continue
        info = model.model_fields[name]
        annotation = (
            Annotated[(info.annotation, *info.metadata)] if info.metadata else info.annotation
        )
        normalized[name] = TypeAdapter(annotation).validate_python(value)
    for name, info in model.model_fields.items():
        if name not in normalized and not info.is_required():
            normalized[name] = info.get_default(call_default_factory=True)
    return normalized


# =============================================================================
# Configuration Blocks
# =============================================================================


class VariableBlock(BaseModel):
    """An input variable declaration."""

    model_config = {"extra": "forbid"}

    type: str | None = None
    default: Any = None
    description: str | None = None
    sensitive: bool = False

    @property
    def has_default(self) -> bool:
        return "default" in self.model_fields_set


class OutputBlock(BaseModel):
    """An output value declaration."""

    model_config = {"extra": "forbid"}

    value: Any
    description: str | None = None
    sensitive: bool = False


class LifecycleBlock(BaseModel):
    """Resource lifecycle meta-argument."""

    model_config = {"extra": "forbid"}

    prevent_destroy: bool = False


class ResourceBody(BaseModel):
    """A resource block body: arguments plus meta-arguments."""

    model_config = {"extra": "allow"}

    depends_on: list[str] = Field(default_factory=list)
    lifecycle: LifecycleBlock = Field(default_factory=LifecycleBlock)

    @field_validator("depends_on")
    @classmethod
    def validate_depends_on(cls, v: list[str]) -> list[str]:
        for entry in v:
            parts = entry.split(".")
            if len(parts) != 2 or not all(re.match(VALID_IDENTIFIER_PATTERN, p) for p in parts):
                raise ValueError(f"depends_on entries must be resource addresses: '{entry}'")
        return v

    @property
    def arguments(self) -> dict[str, Any]:
        return dict(self.model_extra or {})


class AzureRmBackendBlock(BaseModel):
    """azurerm backend settings; any field may come from -backend-config."""

    model_config = {"extra": "forbid"}

    resource_group_name: str | None = None
    storage_account_name: str | None = None
    container_name: str | None = None
    key: str | None = None
    subscription_id: str | None = None
    use_azuread_auth: bool = True

    def missing_fields(self) -> list[str]:
        required = ("storage_account_name", "container_name", "key")
        return [name for name in required if not getattr(self, name)]


class LocalBackendBlock(BaseModel):
    """local backend settings."""

    model_config = {"extra": "forbid"}

    path: str = LOCAL_STATE_FILENAME


class TerraformBlock(BaseModel):
    """The `terraform` settings block."""

    model_config = {"extra": "forbid"}

    required_version: str | None = None
    required_providers: dict[str, Any] = Field(default_factory=dict)
    backend: dict[str, dict[str, Any]] = Field(default_factory=dict)

    @field_validator("backend")
    @classmethod
    def validate_backend(cls, v: dict[str, dict[str, Any]]) -> dict[str, dict[str, Any]]:
        if len(v) > 1:
            raise ValueError("only one backend may be configured")
        for name, settings in v.items():
            if name not in SUPPORTED_BACKENDS:
                raise ValueError(
                    f"unsupported backend '{name}'. Valid backends: {sorted(SUPPORTED_BACKENDS)}"
                )
            block = AzureRmBackendBlock if name == "azurerm" else LocalBackendBlock
            block.model_validate(settings or {})
        return v


class ProviderBlock(BaseModel):
    """The `provider.azurerm` block."""

    model_config = {"extra": "forbid"}

    features: dict[str, Any] = Field(default_factory=dict)
    subscription_id: str | None = None
    use_msi: bool = True


class ConfigDocument(BaseModel):
    """One configuration file (Terraform JSON syntax, or the same as YAML)."""

    model_config = {"extra": "forbid"}

    terraform: TerraformBlock | None = None
    provider: dict[str, ProviderBlock] = Field(default_factory=dict)
    variable: dict[str, VariableBlock] = Field(default_factory=dict)
    resource: dict[str, dict[str, ResourceBody]] = Field(default_factory=dict)
    output: dict[str, OutputBlock] = Field(default_factory=dict)

    @field_validator("provider")
    @classmethod
    def validate_provider(cls, v: dict[str, ProviderBlock]) -> dict[str, ProviderBlock]:
        for name in v:
            if name != "azurerm":
                raise ValueError(f"unsupported provider '{name}'. Only azurerm is available")
        return v

    @field_validator("variable", "output")
    @classmethod
    def validate_names(cls, v: dict[str, Any]) -> dict[str, Any]:
        for name in v:
            if not re.match(VALID_IDENTIFIER_PATTERN, name):
                raise ValueError(f"invalid name '{name}'")
        return v

    @model_validator(mode="after")
    def validate_resources(self) -> ConfigDocument:
        for resource_type, blocks in self.resource.items():
            schema = get_resource_schema(resource_type)

            for name, body in blocks.items():
                if not re.match(VALID_IDENTIFIER_PATTERN, name):
                    raise ValueError(f"invalid resource name '{resource_type}.{name}'")

                arguments = body.arguments
                unknown = set(arguments) - schema.argument_names
                if unknown:
                    raise ValueError(
                        f"{resource_type}.{name}: unsupported arguments {sorted(unknown)}"
                    )
                missing = schema.required_arguments - set(arguments)
                if missing:
                    raise ValueError(
                        f"{resource_type}.{name}: missing required arguments {sorted(missing)}"
                    )

                # Literal values are validated now; interpolations after resolution
                literal = {k: v for k, v in arguments.items() if not _contains_interpolation(v)}
                for arg_name, value in literal.items():
                    info = schema.args_model.model_fields[arg_name]
                    annotation = (
                        Annotated[(info.annotation, *info.metadata)]
                        if info.metadata
                        else info.annotation
                    )
                    try:
                        TypeAdapter(annotation).validate_python(value)
                    except ValidationError as e:
                        message = e.errors()[0]["msg"]
                        raise ValueError(
                            f"{resource_type}.{name}.{arg_name}: {message}"
                        ) from e
        return self


def _contains_interpolation(value: Any) -> bool:
    if _is_interpolated(value):
        return True
    if isinstance(value, dict):
        return any(_contains_interpolation(v) for v in value.values())
    if isinstance(value, list):
        return any(_contains_interpolation(v) for v in value)
    return False


# =============================================================================
# Merged Configuration
# =============================================================================


@dataclass
class ResourceBlock:
    """A declared resource, addressed as `<type>.<name>`."""

    type: str
    name: str
    arguments: dict[str, Any]
    depends_on: list[str] = field(default_factory=list)
    prevent_destroy: bool = False

    @property
    def address(self) -> str:
        return f"{self.type}.{self.name}"

    @property
    def schema(self) -> ResourceSchema:
        return get_resource_schema(self.type)


class DuplicateDeclarationError(ValueError):
    """Raised when two files declare the same variable, resource or output."""

    pass


@dataclass
class Configuration:
    """All configuration documents of a working directory, merged."""

    variables: dict[str, VariableBlock] = field(default_factory=dict)
    resources: dict[str, ResourceBlock] = field(default_factory=dict)
    outputs: dict[str, OutputBlock] = field(default_factory=dict)
    terraform: TerraformBlock | None = None
    provider: ProviderBlock | None = None

    @classmethod
    def from_documents(cls, documents: list[ConfigDocument]) -> Configuration:
        """Merge validated documents.

        Raises:
            DuplicateDeclarationError: On duplicate declarations across files.
        """
        config = cls()
        for document in documents:
            for name, variable in document.variable.items():
                if name in config.variables:
                    raise DuplicateDeclarationError(f"Duplicate variable declaration: {name}")
                config.variables[name] = variable

            for resource_type, blocks in document.resource.items():
                for name, body in blocks.items():
                    block = ResourceBlock(
                        type=resource_type,
                        name=name,
                        arguments=body.arguments,
                        depends_on=list(body.depends_on),
                        prevent_destroy=body.lifecycle.prevent_destroy,
                    )
                    if block.address in config.resources:
                        raise DuplicateDeclarationError(
                            f"Duplicate resource declaration: {block.address}"
                        )
                    config.resources[block.address] = block

            for name, output in document.output.items():
                if name in config.outputs:
                    raise DuplicateDeclarationError(f"Duplicate output declaration: {name}")
                config.outputs[name] = output

            if document.terraform is not None:
                if config.terraform is not None:
                    raise DuplicateDeclarationError("Duplicate terraform settings block")
                config.terraform = document.terraform

            if "azurerm" in document.provider:
                if config.provider is not None:
                    raise DuplicateDeclarationError("Duplicate provider configuration: azurerm")
                config.provider = document.provider["azurerm"]

        return config

    @property
    def backend_type(self) -> str:
        """Configured backend type; `local` when no backend block exists."""
        if self.terraform is None or not self.terraform.backend:
            return "local"
        return next(iter(self.terraform.backend))

    @property
    def backend_settings(self) -> dict[str, Any]:
        if self.terraform is None or not self.terraform.backend:
            return {}
        return dict(self.terraform.backend[self.backend_type] or {})
