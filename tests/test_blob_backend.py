"""Tests for the Azure Storage blob state backend."""

from __future__ import annotations

import base64
import json

import pytest

from azure_mock import MockBlob, MockBlobClient, MockBlobLeaseClient, http_error
from provisioner.blob_backend import LOCK_METADATA_KEY, AzureBlobBackend, account_url
from provisioner.models import AzureRmBackendBlock
from provisioner.state import LockInfo, State, StateError, StateLockError, state_lock


def settings(**overrides: str) -> AzureRmBackendBlock:
    values = {
        "resource_group_name": "rg-tfstate",
        "storage_account_name": "sttfstate",
        "container_name": "tfstate",
        "key": "network.terraform.tfstate",
        **overrides,
    }
    return AzureRmBackendBlock(**values)


@pytest.fixture
def blob() -> MockBlob:
    return MockBlob()


@pytest.fixture
def backend(blob: MockBlob) -> AzureBlobBackend:
    return AzureBlobBackend(
        settings(),
        blob_client=MockBlobClient(blob),
        lease_factory=MockBlobLeaseClient,
    )


class TestAzureBlobBackendSetup:
    """Tests for backend construction."""

    def test_missing_settings(self) -> None:
        """Test that storage account, container and key are required."""
        with pytest.raises(StateError) as exc_info:
            AzureBlobBackend(settings(key=""), blob_client=MockBlobClient())

        assert "key" in str(exc_info.value)

    def test_requires_credential(self) -> None:
        """Test that a credential is needed without a pre-built client."""
        with pytest.raises(StateError) as exc_info:
            AzureBlobBackend(settings())

        assert "credential" in str(exc_info.value)

    def test_describe(self, backend: AzureBlobBackend) -> None:
        """Test the blob location."""
        assert account_url("sttfstate") == "https://sttfstate.blob.core.windows.net"
        assert backend.describe() == (
            "https://sttfstate.blob.core.windows.net/tfstate/network.terraform.tfstate"
        )


class TestAzureBlobBackendState:
    """Tests for reading and writing state."""

    def test_read_missing_blob(self, backend: AzureBlobBackend) -> None:
        """Test that a missing blob reads as empty state."""
        assert backend.read().is_empty

    def test_write_and_read(self, backend: AzureBlobBackend, blob: MockBlob) -> None:
        """Test writing state under the lease."""
        state = State()
        state.set_resource("azurerm_resource_group", "main", {"name": "rg-network"})

        with state_lock(backend, "OperationTypeApply") as lock_id:
            backend.write(state, lock_id)

        stored = backend.read()
        assert stored.serial == 1
        assert stored.addresses() == ["azurerm_resource_group.main"]
        assert blob.lease_id is None
        assert LOCK_METADATA_KEY not in blob.metadata

    def test_write_without_lock(self, backend: AzureBlobBackend) -> None:
        """Test that writes without a held lease are refused."""
        with pytest.raises(StateLockError):
            backend.write(State(), "not-held")

    def test_read_error(self, blob: MockBlob) -> None:
        """Test that storage errors surface as StateError."""

        class FailingClient(MockBlobClient):
            def get_blob_properties(self):
                raise http_error(403, "AuthorizationPermissionMismatch")

        backend = AzureBlobBackend(settings(), blob_client=FailingClient(blob))

        with pytest.raises(StateError) as exc_info:
            backend.read()

        assert "AuthorizationPermissionMismatch" in str(exc_info.value)

    def test_corrupt_blob(self, backend: AzureBlobBackend, blob: MockBlob) -> None:
        """Test that a corrupt state blob raises StateError."""
        blob.data = b"{not json"

        with pytest.raises(StateError):
            backend.read()


class TestAzureBlobBackendLocking:
    """Tests for lease-based locking."""

    def test_lock_creates_blob(self, backend: AzureBlobBackend, blob: MockBlob) -> None:
        """Test that locking a missing state creates an empty blob first."""
        info = LockInfo(operation="OperationTypePlan")

        lock_id = backend.lock(info)

        assert blob.exists
        assert blob.lease_id == lock_id == info.id

    def test_lock_metadata(self, backend: AzureBlobBackend, blob: MockBlob) -> None:
        """Test that lock info is stored base64-encoded in blob metadata."""
        info = LockInfo(operation="OperationTypeApply", who="pipeline@agent")
        backend.lock(info)

        encoded = blob.metadata[LOCK_METADATA_KEY]
        decoded = json.loads(base64.b64decode(encoded))
        assert decoded["ID"] == info.id
        assert decoded["Who"] == "pipeline@agent"

        current = backend.lock_info()
        assert current is not None
        assert current.operation == "OperationTypeApply"

    def test_lock_conflict(self, backend: AzureBlobBackend) -> None:
        """Test that a leased blob cannot be locked again."""
        first = LockInfo(operation="OperationTypeApply", who="alice@agent-1")
        backend.lock(first)

        with pytest.raises(StateLockError) as exc_info:
            backend.lock(LockInfo(operation="OperationTypePlan"))

        assert exc_info.value.info is not None
        assert exc_info.value.info.id == first.id

    def test_write_with_other_lease(self, backend: AzureBlobBackend, blob: MockBlob) -> None:
        """Test that a run without the lease cannot overwrite state."""
        backend.lock(LockInfo())

        with pytest.raises(StateLockError):
            backend.write(State(), "11111111-1111-1111-1111-111111111111")

        assert blob.data == b""

    def test_unlock(self, backend: AzureBlobBackend, blob: MockBlob) -> None:
        """Test releasing the lease and clearing metadata."""
        lock_id = backend.lock(LockInfo())

        backend.unlock(lock_id)

        assert blob.lease_id is None
        assert backend.lock_info() is None

    def test_unlock_wrong_id(self, backend: AzureBlobBackend) -> None:
        """Test that unlocking with another ID fails."""
        backend.lock(LockInfo())

        with pytest.raises(StateLockError):
            backend.unlock("other")

    def test_force_unlock_breaks_lease(self, backend: AzureBlobBackend, blob: MockBlob) -> None:
        """Test force-unlock breaks a lease held by a crashed run."""
        lock_id = backend.lock(LockInfo())

        backend.force_unlock(lock_id)

        assert blob.lease_id is None
        assert LOCK_METADATA_KEY not in blob.metadata

    def test_lease_without_metadata(self, backend: AzureBlobBackend, blob: MockBlob) -> None:
        """Test that a lease without lock metadata reports no lock info."""
        blob.data = b""
        blob.lease_id = "foreign"

        assert backend.lock_info() is None

    def test_state_preserved_across_lock_cycle(
        self, backend: AzureBlobBackend, blob: MockBlob
    ) -> None:
        """Test that locking an existing state keeps its contents."""
        state = State()
        state.set_resource("azurerm_resource_group", "main", {"name": "rg"})
        with state_lock(backend, "OperationTypeApply") as lock_id:
            backend.write(state, lock_id)

        with state_lock(backend, "OperationTypePlan"):
            assert backend.read().addresses() == ["azurerm_resource_group.main"]

        assert backend.read().serial == 1
