"""Azure API Mock for Testing.

In-memory implementations of the Azure APIs the provisioner calls, so
plans, applies and pipelines can be tested without Azure connectivity.

Key Features:
- ARM resource groups, virtual networks and subnets with ARM-like cascades
- Blob storage with lease semantics for state locking
- Error injection and latency for retry and timeout scenarios
- Managed Identity simulation

Usage:
    from azure_mock import MockAzureContext

    with MockAzureContext() as azure:
        plan, result = await workspace.apply()
        assert azure.arm.resource_count == 3
"""

from .context import MockAzureContext
from .credential import MockManagedIdentityCredential, create_mock_credential
from .resources import MockArmState, MockResource, MockResourceManagementClient, http_error
from .storage import MockBlob, MockBlobClient, MockBlobLeaseClient, MockBlobServiceClient

__all__ = [
    "MockArmState",
    "MockAzureContext",
    "MockBlob",
    "MockBlobClient",
    "MockBlobLeaseClient",
    "MockBlobServiceClient",
    "MockManagedIdentityCredential",
    "MockResource",
    "MockResourceManagementClient",
    "create_mock_credential",
    "http_error",
]
