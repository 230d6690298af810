"""Pytest configuration and fixtures."""

import copy
import json
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for azure_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from azure_mock import MockArmState, MockResourceManagementClient  # noqa: E402
from provisioner.config import Config  # noqa: E402
from provisioner.providers import AzureProvider  # noqa: E402
from provisioner.workspace import Workspace  # noqa: E402

SUBSCRIPTION_ID = "00000000-0000-0000-0000-000000000000"

# Resource group, virtual network and one subnet wired together by references
NETWORK_DOCUMENT: dict[str, Any] = {
    "variable": {
        "location": {
            "type": "string",
            "default": "westeurope",
            "description": "Azure region for all resources",
        },
        "subnet_prefix": {
            "type": "string",
            "default": "10.0.1.0/24",
            "description": "Address prefix of the app subnet",
        },
    },
    "resource": {
        "azurerm_resource_group": {
            "main": {"name": "rg-network", "location": "${var.location}"},
        },
        "azurerm_virtual_network": {
            "main": {
                "name": "vnet-main",
                "address_space": ["10.0.0.0/16"],
                "location": "${azurerm_resource_group.main.location}",
                "resource_group_name": "${azurerm_resource_group.main.name}",
            },
        },
        "azurerm_subnet": {
            "app": {
                "name": "snet-app",
                "address_prefixes": ["${var.subnet_prefix}"],
                "resource_group_name": "${azurerm_resource_group.main.name}",
                "virtual_network_name": "${azurerm_virtual_network.main.name}",
            },
        },
    },
    "output": {
        "vnet_name": {"value": "${azurerm_virtual_network.main.name}"},
        "subnet_id": {"value": "${azurerm_subnet.app.id}", "description": "App subnet"},
    },
}


@pytest.fixture
def network_document() -> dict[str, Any]:
    """A fresh copy of the three-resource network configuration."""
    return copy.deepcopy(NETWORK_DOCUMENT)


@pytest.fixture
def write_config(tmp_path: Path) -> Callable[..., Path]:
    """Write a configuration document into the temporary working directory."""

    def write(document: dict[str, Any], filename: str = "main.tf.json") -> Path:
        path = tmp_path / filename
        path.write_text(json.dumps(document, indent=2), encoding="utf-8")
        return path

    return write


@pytest.fixture
def config(tmp_path: Path) -> Config:
    return Config(working_dir=tmp_path, subscription_id=SUBSCRIPTION_ID)


@pytest.fixture
def arm() -> MockArmState:
    return MockArmState(SUBSCRIPTION_ID)


@pytest.fixture
def provider(arm: MockArmState) -> AzureProvider:
    """Azure provider talking to the in-memory subscription, without backoff."""
    return AzureProvider(
        SUBSCRIPTION_ID,
        client=MockResourceManagementClient(subscription_id=SUBSCRIPTION_ID, state=arm),
        timeout_seconds=30,
        retry_base_seconds=0,
    )


@pytest.fixture
def workspace(config: Config, provider: AzureProvider) -> Workspace:
    """Workspace on local state with the in-memory provider."""
    return Workspace(config, provider_factory=lambda configuration, cfg: provider)
