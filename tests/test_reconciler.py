"""Integration tests for full reconciliation cycles.

These tests run the reconciler end to end against the in-memory provider
and a local state file.
"""

from __future__ import annotations

from dataclasses import replace
from pathlib import Path

import pytest

from converge.config import EngineConfig
from converge.graph import DependencyCycle
from converge.models import Resource, ResourceId, SchemaViolation
from converge.planner import Verb
from converge.provider import PermanentProviderError, TransientProviderError
from converge.reconciler import Reconciler
from converge.state import LocalFileBackend, StateLocked, StateStore
from provider_mock import MockProvider, declare

RG = ResourceId("resource_group", "rg")
SA = ResourceId("storage_account", "sa")
VM = ResourceId("virtual_machine", "vm")


def getting_started() -> list[Resource]:
    return [
        declare("resource_group", "rg", {"name": "rg-demo", "location": "westeurope"}),
        declare(
            "storage_account",
            "sa",
            {
                "name": "stdemo001",
                "resource_group_name": "${resource_group.rg.name}",
                "location": "${resource_group.rg.location}",
            },
        ),
    ]


def with_vm() -> list[Resource]:
    vm = declare(
        "virtual_machine", "vm", {"name": "vm1", "resource_group_name": "${resource_group.rg.name}"}
    )
    return [*getting_started(), vm]


@pytest.fixture
def reconciler(
    provider: MockProvider, store: StateStore, engine_config: EngineConfig
) -> Reconciler:
    return Reconciler(provider, store, engine_config)


class TestReconcile:
    """Tests for apply cycles."""

    @pytest.mark.asyncio
    async def test_getting_started(self, reconciler: Reconciler, store: StateStore) -> None:
        """Test rg + sa from empty state in two waves."""
        result = await reconciler.reconcile(getting_started())

        assert result.success
        assert result.exit_code == 0
        assert [[a.verb for a in wave] for wave in result.plan.waves] == [
            [Verb.CREATE],
            [Verb.CREATE],
        ]
        assert set(store.snapshot_all()) == {RG, SA}
        assert not store.locked

    @pytest.mark.asyncio
    async def test_idempotent(self, reconciler: Reconciler, provider: MockProvider) -> None:
        """Test a second cycle plans and performs no changes."""
        await reconciler.reconcile(getting_started())
        provider.calls.clear()

        result = await reconciler.reconcile(getting_started())

        assert not result.plan.has_changes
        assert provider.operations("create") == []
        assert provider.operations("read") == [("read", "rg-demo"), ("read", "stdemo001")]

    @pytest.mark.asyncio
    async def test_orphan_destroyed(self, reconciler: Reconciler, provider: MockProvider) -> None:
        """Test removing the vm declaration destroys only the vm."""
        await reconciler.reconcile(with_vm())

        result = await reconciler.reconcile(getting_started())

        assert result.plan.summary()["destroy"] == 1
        assert result.report.result_for(VM).verb == Verb.DESTROY
        assert provider.live_names("virtual_machine") == []
        assert provider.live_names("resource_group") == ["rg-demo"]

    @pytest.mark.asyncio
    async def test_partial_failure_result(
        self, reconciler: Reconciler, provider: MockProvider
    ) -> None:
        """Test a failed action fails the cycle without raising."""
        provider.inject("stdemo001", PermanentProviderError)

        result = await reconciler.reconcile(getting_started())

        assert not result.success
        assert result.exit_code == 1
        assert result.to_dict()["report"]["counts"]["failed"] == 1


class TestRefresh:
    """Tests for refreshing recorded state before planning."""

    @pytest.mark.asyncio
    async def test_drift_is_corrected(
        self, reconciler: Reconciler, provider: MockProvider, store: StateStore
    ) -> None:
        """Test out-of-band changes are detected and reverted."""
        await reconciler.reconcile(getting_started())
        provider.drift(store.get(RG).external_id, tags={"owner": "someone"})

        result = await reconciler.reconcile(getting_started())

        assert result.plan.action_for(RG).verb == Verb.UPDATE
        assert provider.live(store.get(RG).external_id)["tags"] == {}

    @pytest.mark.asyncio
    async def test_vanished_resource_recreated(
        self, reconciler: Reconciler, provider: MockProvider, store: StateStore
    ) -> None:
        """Test resources deleted out of band are forgotten and created again."""
        await reconciler.reconcile(getting_started())
        provider.vanish(store.get(SA).external_id)

        result = await reconciler.reconcile(getting_started())

        assert result.vanished == ["storage_account.sa"]
        assert result.plan.action_for(SA).verb == Verb.CREATE
        assert result.success
        assert provider.live_names("storage_account") == ["stdemo001"]

    @pytest.mark.asyncio
    async def test_refresh_disabled(
        self,
        provider: MockProvider,
        store: StateStore,
        engine_config: EngineConfig,
    ) -> None:
        """Test refresh can be turned off."""
        reconciler = Reconciler(provider, store, replace(engine_config, refresh=False))
        await reconciler.reconcile(getting_started())
        provider.drift(store.get(RG).external_id, tags={"owner": "someone"})

        result = await reconciler.reconcile(getting_started())

        assert not result.plan.has_changes
        assert provider.operations("read") == []

    @pytest.mark.asyncio
    async def test_refresh_retries_transient(
        self, reconciler: Reconciler, provider: MockProvider
    ) -> None:
        """Test transient read failures are retried."""
        await reconciler.reconcile(getting_started())
        provider.inject("rg-demo", TransientProviderError, times=1, operations=("read",))

        result = await reconciler.reconcile(getting_started())

        assert result.success
        assert result.refreshed == 2

    @pytest.mark.asyncio
    async def test_refresh_failure_aborts(
        self, reconciler: Reconciler, provider: MockProvider, store: StateStore
    ) -> None:
        """Test a permanent refresh failure aborts before any write."""
        await reconciler.reconcile(getting_started())
        provider.inject("rg-demo", PermanentProviderError, operations=("read",))
        provider.calls.clear()

        with pytest.raises(PermanentProviderError):
            await reconciler.reconcile(with_vm())

        assert provider.operations("create") == []
        assert not store.locked


class TestDryRun:
    """Tests for plan-only cycles."""

    @pytest.mark.asyncio
    async def test_no_writes(
        self, reconciler: Reconciler, provider: MockProvider, state_path: Path
    ) -> None:
        """Test a dry run touches neither the provider nor the state file."""
        result = await reconciler.reconcile(getting_started(), dry_run=True)

        assert result.success
        assert result.report is None
        assert result.plan.summary()["create"] == 2
        assert provider.calls == []
        assert not state_path.exists()

    @pytest.mark.asyncio
    async def test_dry_run_sees_vanished(
        self, reconciler: Reconciler, provider: MockProvider, store: StateStore
    ) -> None:
        """Test a dry run plans against refreshed state but keeps the store as is."""
        await reconciler.reconcile(getting_started())
        provider.vanish(store.get(SA).external_id)
        serial = store.serial

        result = await reconciler.reconcile(getting_started(), dry_run=True)

        assert result.plan.action_for(SA).verb == Verb.CREATE
        assert store.serial == serial
        assert store.get(SA) is not None


class TestPlanningErrors:
    """Tests for errors that abort before execution."""

    @pytest.mark.asyncio
    async def test_cycle_aborts(
        self, reconciler: Reconciler, provider: MockProvider, store: StateStore
    ) -> None:
        """Test cyclic declarations abort with no provider calls."""
        a = declare("resource_group", "a", {"name": "${resource_group.b.name}", "location": "x"})
        b = declare("resource_group", "b", {"name": "${resource_group.a.name}", "location": "x"})

        with pytest.raises(DependencyCycle):
            await reconciler.reconcile([a, b])

        assert provider.calls == []
        assert not store.locked

    @pytest.mark.asyncio
    async def test_undeclared_reference_aborts(self, reconciler: Reconciler) -> None:
        """Test references to undeclared resources abort planning."""
        with pytest.raises(SchemaViolation):
            await reconciler.reconcile(getting_started()[1:])

    @pytest.mark.asyncio
    async def test_state_locked(
        self, reconciler: Reconciler, provider: MockProvider, state_path: Path
    ) -> None:
        """Test a held lock fails the cycle with StateLocked."""
        other = StateStore(LocalFileBackend(state_path))
        await other.acquire("apply")

        with pytest.raises(StateLocked):
            await reconciler.reconcile(getting_started())

        assert provider.calls == []
        await other.release()

    @pytest.mark.asyncio
    async def test_shutdown_cancels(self, reconciler: Reconciler) -> None:
        """Test shutdown before a cycle skips every action."""
        reconciler.shutdown()

        result = await reconciler.reconcile(getting_started())

        assert result.report.cancelled
        assert not result.success
