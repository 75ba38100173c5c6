"""Recorded state store with advisory locking and atomic writes.

The store is the only owner of recorded state. It is passed explicitly to the
planner and executor, never reached through a global.

LOCKING:
- One advisory lock covers a whole plan+apply cycle, not a single write
- Acquisition polls the backend's non-blocking lock primitive and gives up
  with StateLocked after a configurable timeout
- put/delete refuse to run without the lock

PERSISTENCE:
- The whole document is rewritten on each put/delete
- Backends write atomically (temp file + rename, or conditional blob upload)
- Every write increments ``serial``; ``lineage`` identifies one state history

CONCURRENCY:
- Methods are synchronous and run on the event loop thread, including
  backend I/O such as blob uploads
- Each write is conditional on the version returned by the previous one, so
  writes must stay serial; executor tasks wait on them rather than racing
"""

from __future__ import annotations

import asyncio
import getpass
import hashlib
import json
import logging
import os
import socket
import tempfile
import time
import uuid
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field, ValidationError

from .config import (
    DEFAULT_LOCK_TIMEOUT_SECONDS,
    LOCK_POLL_INTERVAL_SECONDS,
    StateBackendType,
)
from .models import ResourceId

if TYPE_CHECKING:
    from .config import EngineConfig

logger = logging.getLogger(__name__)

STATE_FORMAT_VERSION = 1


class StateError(Exception):
    """Raised when state cannot be read, written or locked."""

    pass


class StateLocked(StateError):
    """Raised when another run holds the state lock."""

    def __init__(self, message: str, holder: LockInfo | None = None) -> None:
        self.holder = holder
        if holder is not None:
            message = (
                f"{message} (held by {holder.who} for '{holder.operation}' "
                f"since {holder.created.isoformat()}, lock id {holder.id})"
            )
        super().__init__(message)


class StateConflict(StateError):
    """Raised when a conditional write finds the stored document changed."""

    pass


def _default_holder() -> str:
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = "unknown"
    return f"{user}@{socket.gethostname()}"


class LockInfo(BaseModel):
    """Description of a lock holder, stored next to the lock."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    operation: str = "apply"
    who: str = Field(default_factory=_default_holder)
    created: datetime = Field(default_factory=lambda: datetime.now(UTC))


class RecordedState(BaseModel):
    """Last-known applied snapshot of one resource."""

    model_config = {"extra": "forbid"}

    kind: str
    name: str
    external_id: str
    attributes: dict[str, Any] = Field(default_factory=dict)

    # Identities this resource depended on when it was last applied
    dependencies: list[str] = Field(default_factory=list)
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def identity(self) -> ResourceId:
        return ResourceId(kind=self.kind, name=self.name)

    @property
    def dependency_ids(self) -> list[ResourceId]:
        return [ResourceId.parse(dep) for dep in self.dependencies]


class StateDocument(BaseModel):
    """Persisted form of the whole state."""

    version: int = STATE_FORMAT_VERSION
    lineage: str = Field(default_factory=lambda: str(uuid.uuid4()))
    serial: int = 0
    resources: dict[str, RecordedState] = Field(default_factory=dict)

    def to_bytes(self) -> bytes:
        data = self.model_dump(mode="json")
        return (json.dumps(data, indent=2, sort_keys=True) + "\n").encode("utf-8")

    @classmethod
    def from_bytes(cls, payload: bytes) -> StateDocument:
        try:
            document = cls.model_validate_json(payload)
        except ValidationError as e:
            raise StateError(f"Recorded state is malformed: {e}") from e
        if document.version != STATE_FORMAT_VERSION:
            raise StateError(f"Unsupported state format version {document.version}")
        for key, entry in document.resources.items():
            if key != str(entry.identity):
                raise StateError(f"State entry '{key}' records identity '{entry.identity}'")
        return document


# =============================================================================
# Backends
# =============================================================================


class StateBackend(ABC):
    """Key-value blob persistence with conditional writes and a lock primitive."""

    @abstractmethod
    def read(self) -> tuple[bytes | None, str | None]:
        """Return (payload, version tag), or (None, None) when nothing is stored."""

    @abstractmethod
    def write(self, payload: bytes, expected_version: str | None) -> str:
        """Atomically replace the payload if the stored version still matches.

        Returns:
            The new version tag.

        Raises:
            StateConflict: If the stored version differs from expected_version.
        """

    @abstractmethod
    def try_lock(self, info: LockInfo) -> bool:
        """Take the lock without waiting. Returns False when already held."""

    @abstractmethod
    def unlock(self, lock_id: str) -> None:
        """Release a lock held under lock_id."""

    @abstractmethod
    def lock_info(self) -> LockInfo | None:
        """Describe the current lock holder, if any."""

    @abstractmethod
    def force_unlock(self, lock_id: str) -> None:
        """Remove a stale lock left behind by a crashed run."""


class LocalFileBackend(StateBackend):
    """JSON state file with an exclusive-create lock file beside it."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._lock_path = self._path.with_name(self._path.name + ".lock")

    @property
    def path(self) -> Path:
        return self._path

    @staticmethod
    def _version(payload: bytes) -> str:
        return hashlib.sha256(payload).hexdigest()

    def read(self) -> tuple[bytes | None, str | None]:
        try:
            payload = self._path.read_bytes()
        except FileNotFoundError:
            return None, None
        except OSError as e:
            raise StateError(f"Failed to read state file {self._path}: {e}") from e
        return payload, self._version(payload)

    def write(self, payload: bytes, expected_version: str | None) -> str:
        _, current = self.read()
        if current != expected_version:
            raise StateConflict(f"State file {self._path} changed since it was read")

        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            dir=self._path.parent, prefix=f".{self._path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "wb") as tmp:
                tmp.write(payload)
                tmp.flush()
                os.fsync(tmp.fileno())
            os.replace(tmp_name, self._path)
        except OSError as e:
            Path(tmp_name).unlink(missing_ok=True)
            raise StateError(f"Failed to write state file {self._path}: {e}") from e
        return self._version(payload)

    def try_lock(self, info: LockInfo) -> bool:
        self._lock_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self._lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        except OSError as e:
            raise StateError(f"Failed to create lock file {self._lock_path}: {e}") from e
        with os.fdopen(fd, "w", encoding="utf-8") as lock_file:
            lock_file.write(info.model_dump_json())
        return True

    def lock_info(self) -> LockInfo | None:
        try:
            content = self._lock_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            return LockInfo.model_validate_json(content)
        except ValidationError:
            # Lock file exists but is unreadable; still counts as held
            return LockInfo(id="unknown", operation="unknown", who="unknown")

    def unlock(self, lock_id: str) -> None:
        holder = self.lock_info()
        if holder is None:
            raise StateError(f"State is not locked: {self._lock_path}")
        if holder.id != lock_id:
            raise StateError(f"Lock {lock_id} is not the current lock ({holder.id})")
        self._lock_path.unlink(missing_ok=True)

    def force_unlock(self, lock_id: str) -> None:
        self.unlock(lock_id)


def create_backend(config: EngineConfig) -> StateBackend:
    """Build the state backend selected by configuration."""
    match config.state_backend:
        case StateBackendType.LOCAL:
            return LocalFileBackend(config.state_path)
        case StateBackendType.AZURE_BLOB:
            from .blob_backend import AzureBlobBackend

            return AzureBlobBackend.from_config(config)
        case _:
            raise StateError(f"Unsupported state backend: {config.state_backend}")


# =============================================================================
# Store
# =============================================================================


class StateStore:
    """Recorded state keyed by resource identity.

    Reads are served from an in-memory copy of the document loaded from the
    backend. Mutations write the full document through to the backend before
    returning. Calls are expected from a single event loop thread.
    """

    def __init__(
        self,
        backend: StateBackend,
        *,
        lock_timeout_seconds: float = DEFAULT_LOCK_TIMEOUT_SECONDS,
        poll_interval_seconds: float = LOCK_POLL_INTERVAL_SECONDS,
    ) -> None:
        self._backend = backend
        self._lock_timeout_seconds = lock_timeout_seconds
        self._poll_interval_seconds = poll_interval_seconds
        self._document: StateDocument | None = None
        self._version: str | None = None
        self._lock: LockInfo | None = None

    @property
    def backend(self) -> StateBackend:
        return self._backend

    @property
    def locked(self) -> bool:
        """Whether this store currently holds the advisory lock."""
        return self._lock is not None

    @property
    def serial(self) -> int:
        return self._load().serial

    @property
    def lineage(self) -> str:
        return self._load().lineage

    def _load(self, *, reload: bool = False) -> StateDocument:
        if self._document is None or reload:
            payload, version = self._backend.read()
            if payload:
                self._document = StateDocument.from_bytes(payload)
            else:
                self._document = StateDocument()
            self._version = version
        return self._document

    async def acquire(self, operation: str = "apply") -> LockInfo:
        """Take the advisory lock, waiting up to the configured timeout.

        Raises:
            StateLocked: If the lock is still held by someone else at the deadline.
        """
        if self._lock is not None:
            raise StateError("State lock is already held by this store")

        info = LockInfo(operation=operation)
        deadline = time.monotonic() + self._lock_timeout_seconds

        while not self._backend.try_lock(info):
            if time.monotonic() >= deadline:
                raise StateLocked("Timed out acquiring state lock", self._backend.lock_info())
            logger.debug(
                "State lock busy, waiting",
                extra={"lock_timeout_seconds": self._lock_timeout_seconds},
            )
            await asyncio.sleep(self._poll_interval_seconds)

        self._lock = info
        try:
            # Another run may have written while we waited
            self._load(reload=True)
        except StateError:
            self._backend.unlock(info.id)
            self._lock = None
            raise

        logger.info(
            "Acquired state lock",
            extra={"lock_id": info.id, "operation": operation, "serial": self.serial},
        )
        return info

    async def release(self) -> None:
        """Release the advisory lock if held."""
        if self._lock is None:
            return
        lock_id = self._lock.id
        self._lock = None
        self._backend.unlock(lock_id)
        logger.info("Released state lock", extra={"lock_id": lock_id})

    @asynccontextmanager
    async def lock(self, operation: str = "apply") -> AsyncIterator[LockInfo]:
        """Hold the advisory lock for the duration of the block."""
        info = await self.acquire(operation)
        try:
            yield info
        finally:
            await self.release()

    def force_unlock(self, lock_id: str) -> None:
        """Remove a lock left behind by another, crashed, run."""
        self._backend.force_unlock(lock_id)
        logger.warning("State lock forcibly removed", extra={"lock_id": lock_id})

    def get(self, identity: ResourceId) -> RecordedState | None:
        entry = self._load().resources.get(str(identity))
        return entry.model_copy(deep=True) if entry is not None else None

    def snapshot_all(self) -> dict[ResourceId, RecordedState]:
        """Copy of every recorded entry keyed by identity."""
        return {
            entry.identity: entry.model_copy(deep=True)
            for entry in self._load().resources.values()
        }

    def put(self, identity: ResourceId, state: RecordedState) -> None:
        """Record the state of one resource, replacing any previous entry."""
        if state.identity != identity:
            raise StateError(f"Cannot record state of {state.identity} under {identity}")
        document = self._mutable_copy()
        document.resources[str(identity)] = state.model_copy(deep=True)
        self._persist(document)
        logger.debug("Recorded resource state", extra={"identity": str(identity)})

    def delete(self, identity: ResourceId) -> None:
        """Forget a resource. Deleting an unknown identity is a no-op."""
        document = self._mutable_copy()
        if document.resources.pop(str(identity), None) is None:
            return
        self._persist(document)
        logger.debug("Removed resource state", extra={"identity": str(identity)})

    def _mutable_copy(self) -> StateDocument:
        if self._lock is None:
            raise StateError("State must be locked before it is modified")
        return self._load().model_copy(deep=True)

    def _persist(self, document: StateDocument) -> None:
        document.serial += 1
        self._version = self._backend.write(document.to_bytes(), self._version)
        self._document = document
