"""One reconciliation cycle: lock, refresh, plan, apply, unlock.

This module ties the components together:
1. Take the state lock for the whole cycle (fail fast with StateLocked)
2. Refresh: read the live attributes of every recorded resource
3. Plan: diff desired configuration against (refreshed) recorded state
4. Apply: execute the plan wave by wave, recording each success
5. Release the lock, even when planning or execution raised

Planning errors (SchemaViolation, DependencyCycle, refresh failures) abort
the cycle before any provider write. Execution errors are contained in the
run report.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime

from .config import EngineConfig
from .executor import Executor, RunReport
from .models import Resource, ResourceId
from .planner import Plan, Planner
from .provider import Provider, ResourceNotFound, TransientProviderError
from .state import RecordedState, StateStore

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    """Result of a single reconciliation cycle."""

    plan: Plan
    report: RunReport | None = None
    dry_run: bool = False
    refreshed: int = 0
    vanished: list[str] = field(default_factory=list)
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        """A dry run succeeds once planned; otherwise every action must succeed."""
        if self.report is None:
            return self.dry_run
        return self.report.success

    @property
    def exit_code(self) -> int:
        return 0 if self.success else 1

    def to_dict(self) -> dict[str, object]:
        return {
            "success": self.success,
            "dry_run": self.dry_run,
            "refreshed": self.refreshed,
            "vanished": list(self.vanished),
            "duration_seconds": self.duration_seconds,
            "plan": self.plan.to_dict(),
            "report": self.report.to_dict() if self.report is not None else None,
        }


class Reconciler:
    """Runs reconciliation cycles for one provider against one state store.

    The store is passed in rather than looked up, so several reconcilers with
    separate stores can run side by side in one process.
    """

    def __init__(self, provider: Provider, store: StateStore, config: EngineConfig) -> None:
        self._provider = provider
        self._store = store
        self._config = config
        self._planner = Planner(provider.schemas)
        self._executor = Executor(
            provider,
            store,
            max_workers=config.max_workers,
            max_retries=config.max_retries,
            backoff_base_seconds=config.retry_backoff_base_seconds,
            backoff_max_seconds=config.retry_backoff_max_seconds,
        )

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def store(self) -> StateStore:
        return self._store

    def shutdown(self) -> None:
        """Stop after the wave currently executing."""
        self._executor.cancel()

    async def reconcile(
        self, desired: Sequence[Resource], *, dry_run: bool = False
    ) -> ReconcileResult:
        """Run one full cycle under the state lock.

        Args:
            desired: Declared resources, in declaration order.
            dry_run: Plan only; no provider writes and no state writes.

        Raises:
            StateLocked: If another run holds the lock past the timeout.
            SchemaViolation: If the declarations are invalid.
            DependencyCycle: If the declarations depend on each other cyclically.
            ProviderError: If refreshing recorded state fails.
        """
        operation = "plan" if dry_run else "apply"
        logger.info(
            "Starting reconciliation",
            extra={
                "operation": operation,
                "resource_count": len(desired),
                "provider": self._provider.name,
                "refresh": self._config.refresh,
            },
        )

        async with self._store.lock(operation=operation):
            recorded = self._store.snapshot_all()
            refreshed, vanished = 0, []
            if self._config.refresh:
                recorded, refreshed, vanished = await self._refresh(recorded, dry_run=dry_run)

            plan = self._planner.plan(desired, recorded)
            result = ReconcileResult(
                plan=plan, dry_run=dry_run, refreshed=refreshed, vanished=vanished
            )

            if not dry_run:
                result.report = await self._executor.execute(plan)

        result.end_time = datetime.now(UTC)
        logger.info(
            "Reconciliation finished",
            extra={
                "operation": operation,
                "success": result.success,
                "summary": plan.summary(),
                "duration_seconds": result.duration_seconds,
            },
        )
        return result

    async def _refresh(
        self, recorded: dict[ResourceId, RecordedState], *, dry_run: bool
    ) -> tuple[dict[ResourceId, RecordedState], int, list[str]]:
        """Replace recorded attributes with live ones; forget vanished resources.

        A dry run refreshes the returned snapshot only and leaves the store as is.
        """
        loop = asyncio.get_running_loop()
        current: dict[ResourceId, RecordedState] = {}
        vanished: list[str] = []

        for identity, entry in recorded.items():
            read = functools.partial(self._provider.read, entry.kind, entry.external_id)
            try:
                attributes = await self._read_with_retry(loop, read)
            except ResourceNotFound:
                logger.warning(
                    "Recorded resource no longer exists",
                    extra={"identity": str(identity), "external_id": entry.external_id},
                )
                vanished.append(str(identity))
                if not dry_run:
                    self._store.delete(identity)
                continue

            if attributes == entry.attributes:
                current[identity] = entry
                continue

            logger.info("Drift detected during refresh", extra={"identity": str(identity)})
            refreshed_entry = entry.model_copy(
                update={"attributes": attributes, "updated_at": datetime.now(UTC)}
            )
            current[identity] = refreshed_entry
            if not dry_run:
                self._store.put(identity, refreshed_entry)

        return current, len(current), vanished

    async def _read_with_retry(
        self, loop: asyncio.AbstractEventLoop, read: functools.partial[dict]
    ) -> dict:
        attempt = 0
        while True:
            attempt += 1
            try:
                return await loop.run_in_executor(None, read)
            except TransientProviderError as e:
                if attempt > self._config.max_retries:
                    raise
                wait_time = min(
                    self._config.retry_backoff_base_seconds * (2 ** (attempt - 1)),
                    self._config.retry_backoff_max_seconds,
                )
                logger.warning(
                    "Refresh read failed, retrying",
                    extra={"attempt": attempt, "wait_seconds": wait_time, "error": str(e)},
                )
                await asyncio.sleep(wait_time)
