"""Tests for the Pydantic models."""

import pytest
from pydantic import ValidationError

from provisioner.expressions import UNKNOWN
from provisioner.models import (
    RESOURCE_SCHEMAS,
    AzureRmBackendBlock,
    ConfigDocument,
    Configuration,
    DuplicateDeclarationError,
    ResourceGroupArgs,
    SubnetArgs,
    TerraformBlock,
    VirtualNetworkArgs,
    get_resource_schema,
    normalize_location,
    validate_arguments,
)


class TestResourceArguments:
    """Tests for per-type argument models."""

    def test_resource_group(self) -> None:
        """Test a valid resource group with a display-name location."""
        args = ResourceGroupArgs.model_validate({"name": "rg-test", "location": "West Europe"})

        assert args.location == "westeurope"
        assert args.tags == {}

    def test_virtual_network_invalid_cidr(self) -> None:
        """Test that address spaces must be CIDR blocks."""
        with pytest.raises(ValidationError) as exc_info:
            VirtualNetworkArgs.model_validate(
                {
                    "name": "vnet",
                    "address_space": ["10.0.0.0"],
                    "location": "westeurope",
                    "resource_group_name": "rg",
                }
            )

        assert "CIDR" in str(exc_info.value)

    def test_virtual_network_host_bits_set(self) -> None:
        """Test that CIDR blocks with host bits set are rejected."""
        with pytest.raises(ValidationError):
            VirtualNetworkArgs.model_validate(
                {
                    "name": "vnet",
                    "address_space": ["10.0.0.1/16"],
                    "location": "westeurope",
                    "resource_group_name": "rg",
                }
            )

    def test_subnet_requires_prefixes(self) -> None:
        """Test that a subnet needs at least one prefix."""
        with pytest.raises(ValidationError):
            SubnetArgs.model_validate(
                {
                    "name": "snet",
                    "address_prefixes": [],
                    "resource_group_name": "rg",
                    "virtual_network_name": "vnet",
                }
            )

    def test_extra_argument_forbidden(self) -> None:
        """Test that unknown arguments are rejected."""
        with pytest.raises(ValidationError):
            ResourceGroupArgs.model_validate(
                {"name": "rg", "location": "westeurope", "sku": "Standard"}
            )

    def test_normalize_location(self) -> None:
        """Test region normalization."""
        assert normalize_location("North Europe") == "northeurope"
        assert normalize_location("eastus2") == "eastus2"


class TestResourceSchemas:
    """Tests for the resource schema registry."""

    def test_supported_types(self) -> None:
        """Test the three supported resource types."""
        assert set(RESOURCE_SCHEMAS) == {
            "azurerm_resource_group",
            "azurerm_virtual_network",
            "azurerm_subnet",
        }

    def test_force_new_arguments(self) -> None:
        """Test which arguments force replacement."""
        assert get_resource_schema("azurerm_resource_group").force_new == {"name", "location"}
        assert "address_space" not in get_resource_schema("azurerm_virtual_network").force_new
        assert "address_prefixes" not in get_resource_schema("azurerm_subnet").force_new

    def test_required_arguments(self) -> None:
        """Test that tags are optional."""
        schema = get_resource_schema("azurerm_virtual_network")

        assert "tags" not in schema.required_arguments
        assert "address_space" in schema.required_arguments
        assert schema.computed == {"id"}

    def test_unknown_type(self) -> None:
        """Test that unsupported types raise ValueError."""
        with pytest.raises(ValueError) as exc_info:
            get_resource_schema("azurerm_storage_account")

        assert "Unsupported resource type" in str(exc_info.value)


class TestValidateArguments:
    """Tests for validate_arguments."""

    def test_fully_known(self) -> None:
        """Test that known arguments are validated and defaults filled."""
        result = validate_arguments(
            "azurerm_resource_group", {"name": "rg", "location": "West Europe"}
        )

        assert result == {"name": "rg", "location": "westeurope", "tags": {}}

    def test_unknown_values_pass_through(self) -> None:
        """Test that UNKNOWN arguments skip validation."""
        result = validate_arguments(
            "azurerm_subnet",
            {
                "name": "snet",
                "address_prefixes": ["10.0.1.0/24"],
                "resource_group_name": UNKNOWN,
                "virtual_network_name": "vnet",
            },
        )

        assert result["resource_group_name"] is UNKNOWN
        assert result["address_prefixes"] == ["10.0.1.0/24"]

    def test_known_values_still_validated(self) -> None:
        """Test that known values are checked even when others are UNKNOWN."""
        with pytest.raises(ValidationError):
            validate_arguments(
                "azurerm_subnet",
                {
                    "name": "snet",
                    "address_prefixes": ["not-a-cidr"],
                    "resource_group_name": UNKNOWN,
                    "virtual_network_name": "vnet",
                },
            )


class TestConfigDocument:
    """Tests for ConfigDocument validation."""

    def test_valid_document(self, network_document: dict) -> None:
        """Test parsing the network configuration."""
        document = ConfigDocument.model_validate(network_document)

        body = document.resource["azurerm_virtual_network"]["main"]
        assert body.arguments["address_space"] == ["10.0.0.0/16"]
        assert body.depends_on == []
        assert document.variable["location"].has_default

    def test_unsupported_resource_type(self) -> None:
        """Test that unknown resource types are rejected."""
        with pytest.raises(ValidationError) as exc_info:
            ConfigDocument.model_validate(
                {"resource": {"azurerm_storage_account": {"sa": {"name": "sa"}}}}
            )

        assert "Unsupported resource type" in str(exc_info.value)

    def test_missing_required_argument(self) -> None:
        """Test that missing arguments are reported by name."""
        with pytest.raises(ValidationError) as exc_info:
            ConfigDocument.model_validate(
                {"resource": {"azurerm_resource_group": {"main": {"name": "rg"}}}}
            )

        assert "location" in str(exc_info.value)

    def test_unsupported_argument(self) -> None:
        """Test that unknown arguments are reported."""
        with pytest.raises(ValidationError) as exc_info:
            ConfigDocument.model_validate(
                {
                    "resource": {
                        "azurerm_resource_group": {
                            "main": {"name": "rg", "location": "westeurope", "zone": "1"}
                        }
                    }
                }
            )

        assert "zone" in str(exc_info.value)

    def test_invalid_literal_argument(self) -> None:
        """Test that literal values are validated at load time."""
        with pytest.raises(ValidationError) as exc_info:
            ConfigDocument.model_validate(
                {
                    "resource": {
                        "azurerm_subnet": {
                            "app": {
                                "name": "snet",
                                "address_prefixes": ["10.0.1.0/33"],
                                "resource_group_name": "rg",
                                "virtual_network_name": "vnet",
                            }
                        }
                    }
                }
            )

        assert "azurerm_subnet.app.address_prefixes" in str(exc_info.value)

    def test_interpolated_argument_deferred(self) -> None:
        """Test that interpolated values are not validated at load time."""
        document = ConfigDocument.model_validate(
            {
                "resource": {
                    "azurerm_subnet": {
                        "app": {
                            "name": "snet",
                            "address_prefixes": ["${var.prefix}"],
                            "resource_group_name": "rg",
                            "virtual_network_name": "vnet",
                        }
                    }
                }
            }
        )

        assert "app" in document.resource["azurerm_subnet"]

    def test_invalid_depends_on(self) -> None:
        """Test that depends_on entries must be addresses."""
        with pytest.raises(ValidationError):
            ConfigDocument.model_validate(
                {
                    "resource": {
                        "azurerm_resource_group": {
                            "main": {
                                "name": "rg",
                                "location": "westeurope",
                                "depends_on": ["azurerm_subnet.app.id"],
                            }
                        }
                    }
                }
            )

    def test_unknown_top_level_block(self) -> None:
        """Test that unsupported blocks such as data or module are rejected."""
        with pytest.raises(ValidationError):
            ConfigDocument.model_validate({"module": {"network": {"source": "./network"}}})

    def test_unsupported_provider(self) -> None:
        """Test that only the azurerm provider is accepted."""
        with pytest.raises(ValidationError) as exc_info:
            ConfigDocument.model_validate({"provider": {"aws": {}}})

        assert "azurerm" in str(exc_info.value)


class TestBackendBlocks:
    """Tests for backend settings."""

    def test_single_backend(self) -> None:
        """Test that only one backend may be configured."""
        with pytest.raises(ValidationError):
            TerraformBlock.model_validate({"backend": {"azurerm": {}, "local": {}}})

    def test_unsupported_backend(self) -> None:
        """Test that unknown backends are rejected."""
        with pytest.raises(ValidationError) as exc_info:
            TerraformBlock.model_validate({"backend": {"s3": {"bucket": "b"}}})

        assert "unsupported backend" in str(exc_info.value)

    def test_azurerm_missing_fields(self) -> None:
        """Test reporting of missing azurerm settings."""
        block = AzureRmBackendBlock(storage_account_name="sttfstate")

        assert block.missing_fields() == ["container_name", "key"]
        assert block.use_azuread_auth is True


class TestConfiguration:
    """Tests for merging documents."""

    def test_merge_documents(self, network_document: dict) -> None:
        """Test merging resources and settings from two files."""
        settings = ConfigDocument.model_validate(
            {
                "terraform": {"backend": {"local": {"path": "state.json"}}},
                "provider": {"azurerm": {"features": {}}},
            }
        )
        main = ConfigDocument.model_validate(network_document)

        config = Configuration.from_documents([settings, main])

        assert sorted(config.resources) == [
            "azurerm_resource_group.main",
            "azurerm_subnet.app",
            "azurerm_virtual_network.main",
        ]
        assert config.backend_type == "local"
        assert config.backend_settings == {"path": "state.json"}
        assert config.provider is not None

    def test_default_backend(self, network_document: dict) -> None:
        """Test that configurations without a backend use local state."""
        config = Configuration.from_documents([ConfigDocument.model_validate(network_document)])

        assert config.backend_type == "local"
        assert config.backend_settings == {}

    def test_duplicate_resource(self, network_document: dict) -> None:
        """Test that the same address in two files is rejected."""
        document = ConfigDocument.model_validate(network_document)

        with pytest.raises(DuplicateDeclarationError) as exc_info:
            Configuration.from_documents([document, document])

        assert "Duplicate" in str(exc_info.value)

    def test_prevent_destroy(self) -> None:
        """Test that lifecycle.prevent_destroy is carried to the block."""
        document = ConfigDocument.model_validate(
            {
                "resource": {
                    "azurerm_resource_group": {
                        "main": {
                            "name": "rg",
                            "location": "westeurope",
                            "lifecycle": {"prevent_destroy": True},
                        }
                    }
                }
            }
        )

        config = Configuration.from_documents([document])

        block = config.resources["azurerm_resource_group.main"]
        assert block.prevent_destroy is True
        assert "lifecycle" not in block.arguments
