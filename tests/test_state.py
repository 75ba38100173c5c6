"""Tests for the state store and local file backend."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from unittest.mock import patch

import pytest

from converge.config import EngineConfig
from converge.models import ResourceId
from converge.state import (
    LocalFileBackend,
    LockInfo,
    RecordedState,
    StateConflict,
    StateDocument,
    StateError,
    StateLocked,
    StateStore,
    create_backend,
)

RG = ResourceId("resource_group", "rg")
SA = ResourceId("storage_account", "sa")


def entry(identity: ResourceId, **attributes: object) -> RecordedState:
    return RecordedState(
        kind=identity.kind,
        name=identity.name,
        external_id=f"/mock/{identity}",
        attributes=dict(attributes),
    )


class TestLocalFileBackend:
    """Tests for LocalFileBackend."""

    def test_read_missing(self, tmp_path: Path) -> None:
        """Test reading before anything was written."""
        backend = LocalFileBackend(tmp_path / "state.json")
        assert backend.read() == (None, None)

    def test_write_then_read(self, tmp_path: Path) -> None:
        """Test the version tag returned by write matches read."""
        backend = LocalFileBackend(tmp_path / "nested" / "state.json")

        version = backend.write(b"{}", None)

        assert backend.read() == (b"{}", version)

    def test_conditional_write_conflict(self, tmp_path: Path) -> None:
        """Test writes against a stale version are refused."""
        backend = LocalFileBackend(tmp_path / "state.json")
        first = backend.write(b"one", None)
        backend.write(b"two", first)

        with pytest.raises(StateConflict):
            backend.write(b"three", first)
        assert backend.read()[0] == b"two"

    def test_no_temp_files_left(self, tmp_path: Path) -> None:
        """Test atomic writes clean up after themselves."""
        backend = LocalFileBackend(tmp_path / "state.json")
        backend.write(b"payload", None)

        assert [p.name for p in tmp_path.iterdir()] == ["state.json"]

    def test_failed_write_keeps_previous(self, tmp_path: Path) -> None:
        """Test a write interrupted before the rename leaves the old document."""
        backend = LocalFileBackend(tmp_path / "state.json")
        version = backend.write(b"old", None)

        with patch("converge.state.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(StateError, match="disk full"):
                backend.write(b"new", version)

        assert (tmp_path / "state.json").read_bytes() == b"old"
        assert [p.name for p in tmp_path.iterdir()] == ["state.json"]

    def test_lock_is_exclusive(self, tmp_path: Path) -> None:
        """Test a second lock attempt fails while held."""
        backend = LocalFileBackend(tmp_path / "state.json")
        first = LockInfo(operation="apply")

        assert backend.try_lock(first) is True
        assert backend.try_lock(LockInfo(operation="plan")) is False
        assert backend.lock_info() == first

    def test_unlock_checks_id(self, tmp_path: Path) -> None:
        """Test unlocking with the wrong lock id."""
        backend = LocalFileBackend(tmp_path / "state.json")
        info = LockInfo()
        backend.try_lock(info)

        with pytest.raises(StateError, match="is not the current lock"):
            backend.unlock("other")

        backend.unlock(info.id)
        assert backend.lock_info() is None

    def test_unreadable_lock_counts_as_held(self, tmp_path: Path) -> None:
        """Test that garbage in the lock file still blocks."""
        backend = LocalFileBackend(tmp_path / "state.json")
        (tmp_path / "state.json.lock").write_text("garbage")

        assert backend.lock_info().id == "unknown"
        assert backend.try_lock(LockInfo()) is False


class TestStateDocument:
    """Tests for the persisted document format."""

    def test_serialization_is_sorted(self) -> None:
        """Test deterministic serialization."""
        document = StateDocument(lineage="fixed")
        document.resources[str(RG)] = entry(RG, b=1, a=2)

        data = json.loads(document.to_bytes())

        assert list(data) == sorted(data)
        assert list(data["resources"]["resource_group.rg"]["attributes"]) == ["a", "b"]

    def test_rejects_mismatched_key(self) -> None:
        """Test entries must be keyed by their own identity."""
        document = StateDocument()
        document.resources["storage_account.other"] = entry(SA)

        with pytest.raises(StateError, match="records identity"):
            StateDocument.from_bytes(document.to_bytes())

    def test_rejects_future_version(self) -> None:
        """Test unknown format versions are refused."""
        with pytest.raises(StateError, match="Unsupported state format version"):
            StateDocument.from_bytes(StateDocument(version=99).to_bytes())

    def test_rejects_malformed(self) -> None:
        """Test invalid JSON is reported as StateError."""
        with pytest.raises(StateError, match="malformed"):
            StateDocument.from_bytes(b"{not json")


class TestStateStore:
    """Tests for StateStore."""

    @pytest.mark.asyncio
    async def test_put_requires_lock(self, store: StateStore) -> None:
        """Test mutations outside the lock are refused."""
        with pytest.raises(StateError, match="must be locked"):
            store.put(RG, entry(RG))

    @pytest.mark.asyncio
    async def test_put_get_delete(self, store: StateStore, state_path: Path) -> None:
        """Test the basic lifecycle of an entry."""
        async with store.lock():
            store.put(RG, entry(RG, name="rg-demo"))
            assert store.get(RG).attributes == {"name": "rg-demo"}
            store.delete(RG)
            store.delete(RG)  # unknown identity is a no-op

        assert store.get(RG) is None
        assert store.serial == 2
        assert not state_path.with_name(state_path.name + ".lock").exists()

    @pytest.mark.asyncio
    async def test_put_identity_mismatch(self, store: StateStore) -> None:
        """Test recording an entry under the wrong identity."""
        async with store.lock():
            with pytest.raises(StateError, match="Cannot record state"):
                store.put(SA, entry(RG))

    @pytest.mark.asyncio
    async def test_get_returns_copy(self, store: StateStore) -> None:
        """Test callers cannot mutate stored entries."""
        async with store.lock():
            store.put(RG, entry(RG, tags={"a": "1"}))

        store.get(RG).attributes["tags"]["a"] = "changed"
        snapshot = store.snapshot_all()
        snapshot[RG].attributes["tags"]["a"] = "changed"

        assert store.get(RG).attributes["tags"] == {"a": "1"}

    @pytest.mark.asyncio
    async def test_persisted_across_stores(self, store: StateStore, state_path: Path) -> None:
        """Test state survives into a fresh store."""
        async with store.lock():
            store.put(RG, entry(RG))
            store.put(SA, entry(SA))

        reopened = StateStore(LocalFileBackend(state_path))

        assert set(reopened.snapshot_all()) == {RG, SA}
        assert reopened.lineage == store.lineage
        assert reopened.serial == 2

    @pytest.mark.asyncio
    async def test_lock_timeout_reports_holder(self, state_path: Path) -> None:
        """Test StateLocked carries the holder's lock info."""
        first = StateStore(LocalFileBackend(state_path), poll_interval_seconds=0.01)
        second = StateStore(
            LocalFileBackend(state_path), lock_timeout_seconds=0.05, poll_interval_seconds=0.01
        )

        held = await first.acquire("apply")
        with pytest.raises(StateLocked) as exc_info:
            await second.acquire("plan")

        assert exc_info.value.holder == held
        assert held.id in str(exc_info.value)
        await first.release()

    @pytest.mark.asyncio
    async def test_lock_waits_for_release(self, state_path: Path) -> None:
        """Test acquisition succeeds once the holder releases in time."""
        first = StateStore(LocalFileBackend(state_path))
        second = StateStore(
            LocalFileBackend(state_path), lock_timeout_seconds=2.0, poll_interval_seconds=0.01
        )
        await first.acquire()

        async def release_later() -> None:
            await asyncio.sleep(0.05)
            await first.release()

        releaser = asyncio.create_task(release_later())
        info = await second.acquire()
        await releaser

        assert second.locked
        assert info.operation == "apply"
        await second.release()

    @pytest.mark.asyncio
    async def test_acquire_reloads_other_writes(self, state_path: Path) -> None:
        """Test a store sees writes made by another store before it locked."""
        reader = StateStore(LocalFileBackend(state_path))
        assert reader.snapshot_all() == {}

        writer = StateStore(LocalFileBackend(state_path))
        async with writer.lock():
            writer.put(RG, entry(RG))

        async with reader.lock():
            assert reader.get(RG) is not None
            reader.put(SA, entry(SA))

    @pytest.mark.asyncio
    async def test_concurrent_writer_conflict(self, state_path: Path) -> None:
        """Test an out-of-band write surfaces as StateConflict."""
        store = StateStore(LocalFileBackend(state_path))
        async with store.lock():
            store.put(RG, entry(RG))
            state_path.write_bytes(StateDocument().to_bytes())

            with pytest.raises(StateConflict):
                store.put(SA, entry(SA))

    @pytest.mark.asyncio
    async def test_force_unlock(self, store: StateStore, state_path: Path) -> None:
        """Test removing a stale lock left by a crashed run."""
        crashed = LocalFileBackend(state_path)
        stale = LockInfo(operation="apply")
        crashed.try_lock(stale)

        store.force_unlock(stale.id)

        async with store.lock():
            assert store.locked

    def test_release_without_lock_is_noop(self, store: StateStore) -> None:
        """Test releasing when nothing is held."""
        asyncio.run(store.release())
        assert not store.locked


class TestCreateBackend:
    """Tests for backend selection."""

    def test_local(self, tmp_path: Path) -> None:
        """Test the default backend is a local file."""
        backend = create_backend(EngineConfig(state_path=tmp_path / "s.json"))

        assert isinstance(backend, LocalFileBackend)
        assert backend.path == tmp_path / "s.json"
