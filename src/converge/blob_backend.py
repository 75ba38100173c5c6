"""Azure Blob Storage state backend.

The state document lives in a single block blob. The advisory lock is an
infinite blob lease on that same blob, so a second run cannot write even if
it ignores the lock. Lock holder details travel in blob metadata.

Writes are conditional on the ETag observed at the last read or write
(compare-and-swap): a concurrent writer surfaces as StateConflict instead of
silently overwriting.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from azure.core import MatchConditions
from azure.core.exceptions import (
    AzureError,
    HttpResponseError,
    ResourceExistsError,
    ResourceModifiedError,
    ResourceNotFoundError,
)
from azure.storage.blob import BlobClient, BlobLeaseClient
from pydantic import ValidationError

from .state import LockInfo, StateBackend, StateConflict, StateError

if TYPE_CHECKING:
    from .config import EngineConfig

logger = logging.getLogger(__name__)

LOCK_METADATA_KEY = "convergelock"

# -1 requests a lease that never expires until released or broken
INFINITE_LEASE = -1


class AzureBlobBackend(StateBackend):
    """State persisted in Azure Blob Storage with lease-based locking."""

    def __init__(self, blob: BlobClient) -> None:
        self._blob = blob
        self._lease: BlobLeaseClient | None = None
        self._lock_metadata: dict[str, str] = {}

    @classmethod
    def from_config(cls, config: EngineConfig, credential: Any | None = None) -> AzureBlobBackend:
        """Build a backend for the configured account, container and blob."""
        if credential is None:
            from .azure_provider import get_credential

            credential = get_credential(config.client_id)

        blob = BlobClient(
            account_url=config.state_account_url,
            container_name=config.state_container,
            blob_name=config.state_blob,
            credential=credential,
        )
        return cls(blob)

    def read(self) -> tuple[bytes | None, str | None]:
        try:
            downloader = self._blob.download_blob()
            payload = downloader.readall()
        except ResourceNotFoundError:
            return None, None
        except AzureError as e:
            raise StateError(f"Failed to read state blob {self._blob.blob_name}: {e}") from e
        return payload, downloader.properties.etag

    def write(self, payload: bytes, expected_version: str | None) -> str:
        kwargs: dict[str, Any] = {"overwrite": True, "metadata": dict(self._lock_metadata)}
        if self._lease is not None:
            kwargs["lease"] = self._lease
        if expected_version is not None:
            kwargs["etag"] = expected_version
            kwargs["match_condition"] = MatchConditions.IfNotModified
        else:
            kwargs["overwrite"] = False

        try:
            response = self._blob.upload_blob(payload, **kwargs)
        except (ResourceModifiedError, ResourceExistsError) as e:
            raise StateConflict(
                f"State blob {self._blob.blob_name} changed since it was read"
            ) from e
        except AzureError as e:
            raise StateError(f"Failed to write state blob {self._blob.blob_name}: {e}") from e
        return response["etag"]

    def _ensure_blob(self) -> None:
        # A lease needs an existing blob
        try:
            self._blob.upload_blob(b"", overwrite=False)
        except ResourceExistsError:
            pass

    def try_lock(self, info: LockInfo) -> bool:
        try:
            self._ensure_blob()
            lease = BlobLeaseClient(self._blob)
            lease.acquire(lease_duration=INFINITE_LEASE)
        except HttpResponseError as e:
            if e.status_code == 409:
                return False
            raise StateError(f"Failed to lease state blob {self._blob.blob_name}: {e}") from e
        except AzureError as e:
            raise StateError(f"Failed to lease state blob {self._blob.blob_name}: {e}") from e

        metadata = {LOCK_METADATA_KEY: info.model_dump_json()}
        try:
            self._blob.set_blob_metadata(metadata, lease=lease)
        except AzureError as e:
            lease.release()
            raise StateError(f"Failed to record lock holder: {e}") from e

        self._lease = lease
        self._lock_metadata = metadata
        logger.debug("Leased state blob", extra={"lease_id": lease.id, "lock_id": info.id})
        return True

    def lock_info(self) -> LockInfo | None:
        try:
            properties = self._blob.get_blob_properties()
        except ResourceNotFoundError:
            return None
        except AzureError as e:
            raise StateError(f"Failed to read state blob properties: {e}") from e

        if properties.lease.state != "leased":
            return None
        raw = (properties.metadata or {}).get(LOCK_METADATA_KEY)
        if raw is None:
            return LockInfo(id="unknown", operation="unknown", who="unknown")
        try:
            return LockInfo.model_validate_json(raw)
        except ValidationError:
            return LockInfo(id="unknown", operation="unknown", who="unknown")

    def unlock(self, lock_id: str) -> None:
        if self._lease is None:
            raise StateError("State blob is not leased by this backend")
        holder = LockInfo.model_validate_json(self._lock_metadata[LOCK_METADATA_KEY])
        if holder.id != lock_id:
            raise StateError(f"Lock {lock_id} is not the current lock ({holder.id})")

        lease = self._lease
        try:
            self._blob.set_blob_metadata({}, lease=lease)
            lease.release()
        except AzureError as e:
            raise StateError(f"Failed to release state blob lease: {e}") from e
        finally:
            self._lease = None
            self._lock_metadata = {}

    def force_unlock(self, lock_id: str) -> None:
        holder = self.lock_info()
        if holder is None:
            raise StateError("State blob is not leased")
        if holder.id not in (lock_id, "unknown"):
            raise StateError(f"Lock {lock_id} is not the current lock ({holder.id})")
        try:
            BlobLeaseClient(self._blob).break_lease(lease_break_period=0)
        except AzureError as e:
            raise StateError(f"Failed to break state blob lease: {e}") from e
