"""Remote state in an Azure Storage blob.

The blob is addressed by storage account, container and key, e.g.
`https://sttfstate.blob.core.windows.net/tfstate/network.terraform.tfstate`.

Locking uses an infinite blob lease. The lease ID is the lock ID, and the
lock metadata is stored base64-encoded in the blob's `terraformlockid`
metadata entry so other runs can report who holds the lock.
"""

from __future__ import annotations

import base64
import logging
from typing import Any

from azure.core.credentials import TokenCredential
from azure.core.exceptions import HttpResponseError, ResourceNotFoundError
from azure.storage.blob import BlobClient, BlobLeaseClient, BlobServiceClient

from .config import MAX_STATE_FILE_SIZE_BYTES
from .models import AzureRmBackendBlock
from .state import LockInfo, State, StateBackend, StateError, StateLockError

logger = logging.getLogger(__name__)

LOCK_METADATA_KEY = "terraformlockid"
INFINITE_LEASE = -1

# HTTP status returned when a lease is held or a lease ID does not match
LEASE_CONFLICT_STATUS = 409
LEASE_MISMATCH_STATUS = 412


def account_url(storage_account_name: str) -> str:
    return f"https://{storage_account_name}.blob.core.windows.net"


def _encode_lock(info: LockInfo) -> str:
    return base64.b64encode(info.to_json().encode("utf-8")).decode("ascii")


def _decode_lock(value: str) -> LockInfo:
    try:
        content = base64.b64decode(value.encode("ascii"), validate=True).decode("utf-8")
    except (ValueError, UnicodeDecodeError) as e:
        raise StateError(f"Invalid lock metadata on state blob: {e}") from e
    return LockInfo.from_json(content)


class AzureBlobBackend(StateBackend):
    """State stored as a block blob, locked with a blob lease."""

    name = "azurerm"

    def __init__(
        self,
        settings: AzureRmBackendBlock,
        credential: TokenCredential | None = None,
        blob_client: BlobClient | Any | None = None,
        lease_factory: Any = None,
    ) -> None:
        """Initialize the backend.

        Args:
            settings: Resolved azurerm backend settings.
            credential: Azure AD credential for the storage account. Required
                unless `blob_client` is given.
            blob_client: Pre-built client for the state blob (used by tests).
            lease_factory: Callable building a lease client for the blob.
                Defaults to BlobLeaseClient.

        Raises:
            StateError: If required settings are missing.
        """
        missing = settings.missing_fields()
        if missing:
            raise StateError(f"azurerm backend is missing required settings: {missing}")

        self.settings = settings
        self._lease_factory = lease_factory or BlobLeaseClient

        if blob_client is None:
            if credential is None:
                raise StateError("azurerm backend requires a credential")
            service = BlobServiceClient(
                account_url=account_url(settings.storage_account_name), credential=credential
            )
            blob_client = service.get_blob_client(
                container=settings.container_name, blob=settings.key
            )
        self._blob = blob_client

    def describe(self) -> str:
        s = self.settings
        return f"{account_url(s.storage_account_name)}/{s.container_name}/{s.key}"

    def read(self) -> State:
        try:
            properties = self._blob.get_blob_properties()
        except ResourceNotFoundError:
            return State()
        except HttpResponseError as e:
            raise StateError(f"Failed to read state blob {self.describe()}: {e.message}") from e

        if properties.size > MAX_STATE_FILE_SIZE_BYTES:
            raise StateError(
                f"State blob exceeds maximum size of {MAX_STATE_FILE_SIZE_BYTES} bytes"
            )

        try:
            data = self._blob.download_blob().readall()
        except ResourceNotFoundError:
            return State()
        except HttpResponseError as e:
            raise StateError(f"Failed to read state blob {self.describe()}: {e.message}") from e

        return State.from_json(data.decode("utf-8"), self.describe())

    def write(self, state: State, lock_id: str) -> None:
        self._verify_lock(lock_id)
        state.advance()

        try:
            # upload_blob replaces metadata, so carry the lock entry over
            metadata = dict(self._blob.get_blob_properties().metadata or {})
            self._blob.upload_blob(
                state.to_json().encode("utf-8"),
                overwrite=True,
                metadata=metadata,
                lease=lock_id,
            )
        except HttpResponseError as e:
            if e.status_code == LEASE_MISMATCH_STATUS:
                raise StateLockError(
                    f"Refusing to write state: lease {lock_id!r} is not the held lease",
                    self.lock_info(),
                ) from e
            raise StateError(f"Failed to write state blob {self.describe()}: {e.message}") from e

        logger.debug("Wrote state blob", extra={"blob": self.describe(), "serial": state.serial})

    def lock(self, info: LockInfo) -> str:
        info.path = self.describe()
        self._ensure_blob_exists()

        lease = self._lease_factory(self._blob, lease_id=info.id)
        try:
            lease.acquire(lease_duration=INFINITE_LEASE)
        except HttpResponseError as e:
            if e.status_code == LEASE_CONFLICT_STATUS:
                raise StateLockError("State blob is already locked", self.lock_info()) from e
            raise StateError(f"Failed to lease state blob {self.describe()}: {e.message}") from e

        try:
            metadata = dict(self._blob.get_blob_properties().metadata or {})
            metadata[LOCK_METADATA_KEY] = _encode_lock(info)
            self._blob.set_blob_metadata(metadata=metadata, lease=info.id)
        except HttpResponseError as e:
            lease.release()
            raise StateError(f"Failed to record lock on {self.describe()}: {e.message}") from e

        return info.id

    def unlock(self, lock_id: str) -> None:
        current = self.lock_info()
        if current is None:
            raise StateLockError("State blob is not locked")
        if current.id != lock_id:
            raise StateLockError(f"Lock ID {lock_id!r} does not match the held lock", current)

        try:
            self._clear_lock_metadata(lease=lock_id)
            self._lease_factory(self._blob, lease_id=lock_id).release()
        except HttpResponseError as e:
            raise StateLockError(
                f"Failed to release lease on {self.describe()}: {e.message}"
            ) from e

    def lock_info(self) -> LockInfo | None:
        try:
            properties = self._blob.get_blob_properties()
        except ResourceNotFoundError:
            return None
        except HttpResponseError as e:
            raise StateError(f"Failed to read state blob {self.describe()}: {e.message}") from e

        if properties.lease.state != "leased":
            return None
        value = (properties.metadata or {}).get(LOCK_METADATA_KEY)
        if not value:
            return None
        return _decode_lock(value)

    def _break_lock(self) -> None:
        try:
            self._lease_factory(self._blob).break_lease(lease_break_period=0)
            self._clear_lock_metadata(lease=None)
        except HttpResponseError as e:
            raise StateLockError(f"Failed to break lease on {self.describe()}: {e.message}") from e

    def _clear_lock_metadata(self, lease: str | None) -> None:
        metadata = dict(self._blob.get_blob_properties().metadata or {})
        if LOCK_METADATA_KEY in metadata:
            del metadata[LOCK_METADATA_KEY]
            self._blob.set_blob_metadata(metadata=metadata, lease=lease)

    def _ensure_blob_exists(self) -> None:
        try:
            self._blob.get_blob_properties()
        except ResourceNotFoundError:
            logger.info("Creating empty state blob", extra={"blob": self.describe()})
            try:
                self._blob.upload_blob(b"", overwrite=False)
            except HttpResponseError as e:
                # Another run created it first
                if e.status_code != LEASE_CONFLICT_STATUS:
                    raise StateError(
                        f"Failed to create state blob {self.describe()}: {e.message}"
                    ) from e
        except HttpResponseError as e:
            raise StateError(f"Failed to read state blob {self.describe()}: {e.message}") from e
