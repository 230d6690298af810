"""Resource providers: the bridge between planned changes and Azure.

A provider exposes four operations per resource type:

- read: current attributes, or None if the resource no longer exists
- create: create from arguments, returning all attributes including `id`
- update: change updatable arguments in place
- delete: remove the resource

AzureProvider implements them with the Azure Resource Manager SDK. Resource
groups use the dedicated `resource_groups` operations; virtual networks and
subnets go through the generic `resources.*_by_id` operations with pinned
API versions.

SECURITY: Timeouts are enforced on all Azure API calls to prevent indefinite
hangs, and credentials always come from a managed identity.
"""

from __future__ import annotations

import asyncio
import logging
import random
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any

from azure.core.exceptions import HttpResponseError, ResourceNotFoundError
from azure.mgmt.resource.resources import ResourceManagementClient
from azure.mgmt.resource.resources.models import GenericResource, ResourceGroup

from .config import (
    DEFAULT_OPERATION_TIMEOUT_SECONDS,
    MAX_PROVIDER_RETRIES,
    RETRY_BACKOFF_BASE_SECONDS,
)
from .models import normalize_location
from .security import get_managed_identity_credential

logger = logging.getLogger(__name__)

NETWORK_API_VERSION = "2023-09-01"

# Azure resource type behind each configuration type, for risk assessment
AZURE_RESOURCE_TYPES: dict[str, str] = {
    "azurerm_resource_group": "Microsoft.Resources/resourceGroups",
    "azurerm_virtual_network": "Microsoft.Network/virtualNetworks",
    "azurerm_subnet": "Microsoft.Network/virtualNetworks/subnets",
}


class ProviderError(Exception):
    """Raised when a provider operation fails."""

    pass


# =============================================================================
# Resource IDs
# =============================================================================


def resource_group_id(subscription_id: str, name: str) -> str:
    return f"/subscriptions/{subscription_id}/resourceGroups/{name}"


def virtual_network_id(subscription_id: str, resource_group_name: str, name: str) -> str:
    return (
        f"{resource_group_id(subscription_id, resource_group_name)}"
        f"/providers/Microsoft.Network/virtualNetworks/{name}"
    )


def subnet_id(
    subscription_id: str, resource_group_name: str, virtual_network_name: str, name: str
) -> str:
    return (
        f"{virtual_network_id(subscription_id, resource_group_name, virtual_network_name)}"
        f"/subnets/{name}"
    )


class Provider(ABC):
    """Operations on managed resources."""

    @abstractmethod
    async def read(self, resource_type: str, attributes: dict[str, Any]) -> dict[str, Any] | None:
        """Read current attributes of a resource recorded in state."""

    @abstractmethod
    async def create(self, resource_type: str, arguments: dict[str, Any]) -> dict[str, Any]:
        """Create a resource and return its attributes."""

    @abstractmethod
    async def update(
        self, resource_type: str, prior: dict[str, Any], arguments: dict[str, Any]
    ) -> dict[str, Any]:
        """Update a resource in place and return its attributes."""

    @abstractmethod
    async def delete(self, resource_type: str, attributes: dict[str, Any]) -> None:
        """Delete a resource. Deleting a missing resource succeeds."""


class AzureProvider(Provider):
    """Provider backed by the Azure Resource Manager API."""

    def __init__(
        self,
        subscription_id: str,
        client: ResourceManagementClient | Any | None = None,
        client_id: str | None = None,
        timeout_seconds: int = DEFAULT_OPERATION_TIMEOUT_SECONDS,
        retry_base_seconds: float = RETRY_BACKOFF_BASE_SECONDS,
    ) -> None:
        """Initialize the provider.

        Args:
            subscription_id: Target subscription.
            client: Pre-built ARM client (used by tests). Built from the
                managed identity when omitted.
            client_id: Client ID of a user-assigned managed identity.
            timeout_seconds: Timeout per Azure operation.
            retry_base_seconds: Base of the exponential retry backoff.

        Raises:
            SecretlessViolationError: If credential secrets are in the environment.
        """
        if not subscription_id:
            raise ProviderError(
                "No subscription configured: set ARM_SUBSCRIPTION_ID or "
                "provider.azurerm.subscription_id"
            )
        self.subscription_id = subscription_id
        self._timeout_seconds = timeout_seconds
        self._retry_base_seconds = retry_base_seconds

        if client is None:
            credential = get_managed_identity_credential(client_id)
            client = ResourceManagementClient(
                credential=credential, subscription_id=subscription_id
            )
        self._client = client

    # -------------------------------------------------------------------------
    # Provider interface
    # -------------------------------------------------------------------------

    async def read(self, resource_type: str, attributes: dict[str, Any]) -> dict[str, Any] | None:
        match resource_type:
            case "azurerm_resource_group":
                return await self._read_resource_group(attributes["name"])
            case "azurerm_virtual_network":
                return await self._read_virtual_network(
                    attributes["resource_group_name"], attributes["name"]
                )
            case "azurerm_subnet":
                return await self._read_subnet(
                    attributes["resource_group_name"],
                    attributes["virtual_network_name"],
                    attributes["name"],
                )
            case _:
                raise ProviderError(f"Unsupported resource type: {resource_type}")

    async def create(self, resource_type: str, arguments: dict[str, Any]) -> dict[str, Any]:
        return await self._put(resource_type, arguments)

    async def update(
        self, resource_type: str, prior: dict[str, Any], arguments: dict[str, Any]
    ) -> dict[str, Any]:
        # Azure PUT is idempotent; force-new arguments never reach here
        return await self._put(resource_type, arguments)

    async def delete(self, resource_type: str, attributes: dict[str, Any]) -> None:
        match resource_type:
            case "azurerm_resource_group":
                name = attributes["name"]
                await self._call(
                    lambda: self._client.resource_groups.begin_delete(name),
                    f"delete resource group {name}",
                    poll=True,
                    missing_ok=True,
                )
            case "azurerm_virtual_network" | "azurerm_subnet":
                resource_id = attributes.get("id") or self._resource_id(resource_type, attributes)
                await self._call(
                    lambda: self._client.resources.begin_delete_by_id(
                        resource_id, NETWORK_API_VERSION
                    ),
                    f"delete {resource_id}",
                    poll=True,
                    missing_ok=True,
                )
            case _:
                raise ProviderError(f"Unsupported resource type: {resource_type}")

    # -------------------------------------------------------------------------
    # Resource groups
    # -------------------------------------------------------------------------

    async def _read_resource_group(self, name: str) -> dict[str, Any] | None:
        group = await self._call(
            lambda: self._client.resource_groups.get(name),
            f"read resource group {name}",
            missing_ok=True,
        )
        if group is None:
            return None
        return {
            "id": group.id,
            "name": group.name,
            "location": normalize_location(group.location),
            "tags": dict(group.tags or {}),
        }

    # -------------------------------------------------------------------------
    # Virtual networks and subnets
    # -------------------------------------------------------------------------

    async def _get_by_id(self, resource_id: str) -> GenericResource | None:
        return await self._call(
            lambda: self._client.resources.get_by_id(resource_id, NETWORK_API_VERSION),
            f"read {resource_id}",
            missing_ok=True,
        )

    async def _read_virtual_network(
        self, resource_group_name: str, name: str
    ) -> dict[str, Any] | None:
        resource_id = virtual_network_id(self.subscription_id, resource_group_name, name)
        resource = await self._get_by_id(resource_id)
        if resource is None:
            return None
        properties = resource.properties or {}
        return {
            "id": resource.id,
            "name": name,
            "address_space": list(properties.get("addressSpace", {}).get("addressPrefixes", [])),
            "location": normalize_location(resource.location),
            "resource_group_name": resource_group_name,
            "tags": dict(resource.tags or {}),
        }

    async def _read_subnet(
        self, resource_group_name: str, virtual_network_name: str, name: str
    ) -> dict[str, Any] | None:
        resource_id = subnet_id(
            self.subscription_id, resource_group_name, virtual_network_name, name
        )
        resource = await self._get_by_id(resource_id)
        if resource is None:
            return None
        properties = resource.properties or {}
        prefixes = properties.get("addressPrefixes")
        if not prefixes and properties.get("addressPrefix"):
            prefixes = [properties["addressPrefix"]]
        return {
            "id": resource.id,
            "name": name,
            "address_prefixes": list(prefixes or []),
            "resource_group_name": resource_group_name,
            "virtual_network_name": virtual_network_name,
        }

    # -------------------------------------------------------------------------
    # Create or update
    # -------------------------------------------------------------------------

    def _resource_id(self, resource_type: str, arguments: dict[str, Any]) -> str:
        match resource_type:
            case "azurerm_resource_group":
                return resource_group_id(self.subscription_id, arguments["name"])
            case "azurerm_virtual_network":
                return virtual_network_id(
                    self.subscription_id, arguments["resource_group_name"], arguments["name"]
                )
            case "azurerm_subnet":
                return subnet_id(
                    self.subscription_id,
                    arguments["resource_group_name"],
                    arguments["virtual_network_name"],
                    arguments["name"],
                )
            case _:
                raise ProviderError(f"Unsupported resource type: {resource_type}")

    async def _put(self, resource_type: str, arguments: dict[str, Any]) -> dict[str, Any]:
        match resource_type:
            case "azurerm_resource_group":
                name = arguments["name"]
                group = ResourceGroup(location=arguments["location"], tags=arguments.get("tags"))
                await self._call(
                    lambda: self._client.resource_groups.create_or_update(name, group),
                    f"create resource group {name}",
                )
            case "azurerm_virtual_network":
                resource_id = self._resource_id(resource_type, arguments)
                properties: dict[str, Any] = {
                    "addressSpace": {"addressPrefixes": list(arguments["address_space"])}
                }
                # A PUT without subnets would delete subnets managed separately
                existing = await self._get_by_id(resource_id)
                if existing is not None and (existing.properties or {}).get("subnets"):
                    properties["subnets"] = existing.properties["subnets"]
                resource = GenericResource(
                    location=arguments["location"],
                    tags=arguments.get("tags"),
                    properties=properties,
                )
                await self._put_by_id(resource_id, resource)
            case "azurerm_subnet":
                resource_id = self._resource_id(resource_type, arguments)
                resource = GenericResource(
                    properties={"addressPrefixes": list(arguments["address_prefixes"])}
                )
                await self._put_by_id(resource_id, resource)
            case _:
                raise ProviderError(f"Unsupported resource type: {resource_type}")

        attributes = await self.read(resource_type, arguments)
        if attributes is None:
            raise ProviderError(
                f"{self._resource_id(resource_type, arguments)} not found after create"
            )
        logger.info(
            "Resource written",
            extra={"resource_type": resource_type, "resource_id": attributes.get("id")},
        )
        return attributes

    async def _put_by_id(self, resource_id: str, resource: GenericResource) -> None:
        await self._call(
            lambda: self._client.resources.begin_create_or_update_by_id(
                resource_id, NETWORK_API_VERSION, resource
            ),
            f"write {resource_id}",
            poll=True,
        )

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    async def _call(
        self,
        operation: Callable[[], Any],
        description: str,
        poll: bool = False,
        missing_ok: bool = False,
    ) -> Any:
        """Run an SDK call with timeout and retry.

        Args:
            operation: Callable invoking the SDK; returns a poller when `poll`.
            description: Human-readable operation for logs and errors.
            poll: Wait for the returned long-running operation poller.
            missing_ok: Return None instead of failing on 404.

        Raises:
            ProviderError: If the call fails after all retries or times out.
        """

        async def attempt() -> Any:
            return await self._execute_with_timeout(operation, poll)

        try:
            return await self._with_retry(attempt, description)
        except ResourceNotFoundError as e:
            if missing_ok:
                return None
            raise ProviderError(f"Failed to {description}: {e.message}") from e
        except HttpResponseError as e:
            raise ProviderError(f"Failed to {description}: {e.message}") from e
        except TimeoutError as e:
            raise ProviderError(
                f"Timed out after {self._timeout_seconds}s trying to {description}"
            ) from e

    async def _execute_with_timeout(self, operation: Callable[[], Any], poll: bool) -> Any:
        loop = asyncio.get_running_loop()

        async def run() -> Any:
            result = await loop.run_in_executor(None, operation)
            if poll:
                result = await loop.run_in_executor(None, result.result)
            return result

        try:
            return await asyncio.wait_for(run(), timeout=self._timeout_seconds)
        except TimeoutError:
            logger.error(
                "Azure operation timed out", extra={"timeout_seconds": self._timeout_seconds}
            )
            raise

    async def _with_retry(self, attempt: Callable[[], Awaitable[Any]], description: str) -> Any:
        last_error: HttpResponseError | None = None

        for number in range(1, MAX_PROVIDER_RETRIES + 1):
            try:
                return await attempt()
            except ResourceNotFoundError:
                raise
            except HttpResponseError as e:
                last_error = e
                # Client errors other than throttling and conflicts will not succeed on retry
                status = e.status_code or 0
                if 400 <= status < 500 and status not in (409, 429):
                    raise

                if number < MAX_PROVIDER_RETRIES:
                    # Exponential backoff with jitter
                    backoff = self._retry_base_seconds * (2 ** (number - 1))
                    jitter = random.uniform(0, backoff * 0.2)
                    wait_time = backoff + jitter

                    logger.warning(
                        "Azure operation failed, retrying",
                        extra={
                            "operation": description,
                            "attempt": number,
                            "max_attempts": MAX_PROVIDER_RETRIES,
                            "wait_seconds": wait_time,
                            "error": str(e),
                        },
                    )
                    await asyncio.sleep(wait_time)

        assert last_error is not None
        raise last_error
