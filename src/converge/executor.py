"""Wave-by-wave plan execution against a provider.

SCHEDULING:
- Waves run strictly one after another; a wave starts only when every
  action of the previous wave has a terminal outcome
- Actions inside a wave run concurrently, bounded by ``max_workers``
- Provider calls run in the default thread pool, so a slow call suspends
  only its own task

FAILURES:
- Transient provider errors are retried with exponential backoff and
  jitter, then escalated to permanent
- A permanent failure fails the action; any action with a failed or
  skipped predecessor is skipped, so only the failing subtree stops
- Nothing is rolled back: every successful step is written to the state
  store immediately, so a re-run sees accurate partial state

CANCELLATION:
``cancel()`` stops new waves from starting. Actions already running finish
and are recorded; a provider call is never interrupted mid-flight.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import random
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, TypeVar

from .config import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_MAX_WORKERS,
    RETRY_BACKOFF_BASE_SECONDS,
    RETRY_BACKOFF_MAX_SECONDS,
)
from .models import Reference, ResourceId, resolve_value
from .planner import Action, Plan, ReplaceOrder, Verb
from .provider import (
    ErrorClass,
    PermanentProviderError,
    Provider,
    ProviderError,
    ResourceNotFound,
    TransientProviderError,
)
from .state import RecordedState, StateError, StateStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Outcome(str, Enum):
    """Terminal outcome of one action."""

    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class ActionResult:
    """Outcome of one planned action."""

    identity: ResourceId
    verb: Verb
    outcome: Outcome
    state: RecordedState | None = None
    error: str | None = None
    error_class: ErrorClass | None = None
    attempts: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "identity": str(self.identity),
            "verb": self.verb.value,
            "outcome": self.outcome.value,
            "external_id": self.state.external_id if self.state is not None else None,
            "error": self.error,
            "error_class": self.error_class.value if self.error_class else None,
            "attempts": self.attempts,
        }


@dataclass
class RunReport:
    """Ordered per-action outcomes of one execution."""

    results: list[ActionResult] = field(default_factory=list)
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    cancelled: bool = False

    @property
    def success(self) -> bool:
        return not self.cancelled and all(r.outcome == Outcome.SUCCESS for r in self.results)

    @property
    def exit_code(self) -> int:
        return 0 if self.success else 1

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    def result_for(self, identity: ResourceId) -> ActionResult | None:
        for result in self.results:
            if result.identity == identity:
                return result
        return None

    def counts(self) -> dict[str, int]:
        counts = {outcome.value: 0 for outcome in Outcome}
        for result in self.results:
            counts[result.outcome.value] += 1
        return counts

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "cancelled": self.cancelled,
            "counts": self.counts(),
            "duration_seconds": self.duration_seconds,
            "results": [result.to_dict() for result in self.results],
        }


class Executor:
    """Applies a plan through a provider, recording progress in the state store."""

    def __init__(
        self,
        provider: Provider,
        store: StateStore,
        *,
        max_workers: int = DEFAULT_MAX_WORKERS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        backoff_base_seconds: float = RETRY_BACKOFF_BASE_SECONDS,
        backoff_max_seconds: float = RETRY_BACKOFF_MAX_SECONDS,
    ) -> None:
        self._provider = provider
        self._store = store
        self._max_workers = max_workers
        self._max_retries = max_retries
        self._backoff_base_seconds = backoff_base_seconds
        self._backoff_max_seconds = backoff_max_seconds
        self._cancel_event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def cancel(self) -> None:
        """Stop starting new waves; running actions complete normally."""
        if not self._cancel_event.is_set():
            logger.warning("Cancellation requested, no further waves will start")
        self._cancel_event.set()

    async def execute(self, plan: Plan) -> RunReport:
        """Execute every wave of the plan and report per-action outcomes."""
        report = RunReport()
        results: dict[ResourceId, ActionResult] = {}
        semaphore = asyncio.Semaphore(self._max_workers)

        for number, wave in enumerate(plan.waves, start=1):
            if self._cancel_event.is_set():
                report.cancelled = True
                for action in wave:
                    results[action.identity] = _skipped(action, "run cancelled")
                continue

            runnable: list[Action] = []
            for action in wave:
                blocked = [
                    p for p in action.predecessors if results[p].outcome != Outcome.SUCCESS
                ]
                if blocked:
                    upstream = results[blocked[0]]
                    results[action.identity] = _skipped(
                        action, f"upstream {upstream.identity} {upstream.outcome.value}"
                    )
                else:
                    runnable.append(action)

            logger.info(
                "Starting wave",
                extra={
                    "wave": number,
                    "actions": len(runnable),
                    "skipped": len(wave) - len(runnable),
                },
            )

            outcomes = await asyncio.gather(
                *(self._run_bounded(semaphore, action, results) for action in runnable)
            )
            for result in outcomes:
                results[result.identity] = result

        report.results = [results[action.identity] for action in plan.actions]
        report.end_time = datetime.now(UTC)

        logger.info(
            "Execution finished",
            extra={
                "counts": report.counts(),
                "cancelled": report.cancelled,
                "duration_seconds": report.duration_seconds,
            },
        )
        return report

    async def _run_bounded(
        self,
        semaphore: asyncio.Semaphore,
        action: Action,
        results: Mapping[ResourceId, ActionResult],
    ) -> ActionResult:
        async with semaphore:
            attempts = [0]
            try:
                state = await self._run(action, results, attempts)
            except (ProviderError, StateError) as e:
                error_class = (
                    e.error_class if isinstance(e, ProviderError) else ErrorClass.PERMANENT
                )
                logger.error(
                    "Action failed",
                    extra={
                        "identity": str(action.identity),
                        "verb": action.verb.value,
                        "error": str(e),
                        "error_type": type(e).__name__,
                    },
                )
                return ActionResult(
                    identity=action.identity,
                    verb=action.verb,
                    outcome=Outcome.FAILED,
                    error=str(e),
                    error_class=error_class,
                    attempts=attempts[0],
                )
            except Exception as e:
                # Unclassified errors fail only this action; siblings still record state
                logger.exception(
                    "Unexpected error during action",
                    extra={"identity": str(action.identity), "verb": action.verb.value},
                )
                return ActionResult(
                    identity=action.identity,
                    verb=action.verb,
                    outcome=Outcome.FAILED,
                    error=f"{type(e).__name__}: {e}",
                    error_class=ErrorClass.PERMANENT,
                    attempts=attempts[0],
                )

            logger.info(
                "Action succeeded",
                extra={"identity": str(action.identity), "verb": action.verb.value},
            )
            return ActionResult(
                identity=action.identity,
                verb=action.verb,
                outcome=Outcome.SUCCESS,
                state=state,
                attempts=attempts[0],
            )

    async def _run(
        self,
        action: Action,
        results: Mapping[ResourceId, ActionResult],
        attempts: list[int],
    ) -> RecordedState | None:
        match action.verb:
            case Verb.NOOP:
                return self._refresh_dependencies(action)
            case Verb.CREATE:
                return await self._create(action, results, attempts)
            case Verb.UPDATE:
                return await self._update(action, results, attempts)
            case Verb.DESTROY:
                await self._destroy(action, attempts)
                return None
            case Verb.REPLACE:
                if action.replace_order == ReplaceOrder.CREATE_BEFORE_DESTROY:
                    old = action.recorded
                    state = await self._create(action, results, attempts)
                    if old is not None:
                        await self._destroy_instance(action, old.external_id, attempts)
                    return state
                await self._destroy(action, attempts)
                return await self._create(action, results, attempts)

    async def _create(
        self,
        action: Action,
        results: Mapping[ResourceId, ActionResult],
        attempts: list[int],
    ) -> RecordedState:
        resource = _require(action.resource, action)
        attributes = self._resolve(action, results)
        external_id, applied = await self._call(
            action, attempts, self._provider.create, resource.kind, attributes
        )
        state = RecordedState(
            kind=resource.kind,
            name=resource.name,
            external_id=external_id,
            attributes=applied,
            dependencies=[str(dep) for dep in resource.dependencies()],
        )
        self._store.put(action.identity, state)
        return state

    async def _update(
        self,
        action: Action,
        results: Mapping[ResourceId, ActionResult],
        attempts: list[int],
    ) -> RecordedState:
        resource = _require(action.resource, action)
        entry = _require(action.recorded, action)
        attributes = self._resolve(action, results)
        applied = await self._call(
            action, attempts, self._provider.update, resource.kind, entry.external_id, attributes
        )
        state = RecordedState(
            kind=resource.kind,
            name=resource.name,
            external_id=entry.external_id,
            attributes=applied,
            dependencies=[str(dep) for dep in resource.dependencies()],
        )
        self._store.put(action.identity, state)
        return state

    def _refresh_dependencies(self, action: Action) -> RecordedState:
        """Keep recorded dependencies current for unchanged resources."""
        resource = _require(action.resource, action)
        entry = _require(action.recorded, action)
        dependencies = [str(dep) for dep in resource.dependencies()]
        if entry.dependencies == dependencies:
            return entry
        state = entry.model_copy(update={"dependencies": dependencies})
        self._store.put(action.identity, state)
        return state

    async def _destroy(self, action: Action, attempts: list[int]) -> None:
        entry = _require(action.recorded, action)
        await self._destroy_instance(action, entry.external_id, attempts)
        self._store.delete(action.identity)

    async def _destroy_instance(
        self, action: Action, external_id: str, attempts: list[int]
    ) -> None:
        try:
            await self._call(
                action, attempts, self._provider.destroy, action.identity.kind, external_id
            )
        except ResourceNotFound:
            logger.warning(
                "Resource already gone, treating destroy as done",
                extra={"identity": str(action.identity), "external_id": external_id},
            )

    def _resolve(
        self, action: Action, results: Mapping[ResourceId, ActionResult]
    ) -> dict[str, Any]:
        """Resolve references against states produced or recorded so far."""
        resource = _require(action.resource, action)

        def lookup(reference: Reference) -> Any:
            result = results.get(reference.target)
            state = result.state if result is not None else self._store.get(reference.target)
            if state is None:
                raise PermanentProviderError(
                    f"{action.identity}: reference {reference} has no recorded state"
                )
            if reference.attribute is None:
                return state.external_id
            if reference.attribute not in state.attributes:
                raise PermanentProviderError(
                    f"{action.identity}: reference {reference} is not set on {reference.target}"
                )
            return state.attributes[reference.attribute]

        return {name: resolve_value(value, lookup) for name, value in resource.attributes.items()}

    async def _call(
        self,
        action: Action,
        attempts: list[int],
        operation: Callable[..., T],
        *args: Any,
    ) -> T:
        """Run a provider call in a worker thread, retrying transient failures.

        Raises:
            PermanentProviderError: On permanent failure or when retries run out.
        """
        loop = asyncio.get_running_loop()
        tries = 0

        while True:
            tries += 1
            attempts[0] += 1
            try:
                return await loop.run_in_executor(None, functools.partial(operation, *args))
            except TransientProviderError as e:
                if tries > self._max_retries:
                    raise PermanentProviderError(
                        f"{operation.__name__} failed after {tries} attempts: {e}"
                    ) from e

                # Exponential backoff with jitter
                backoff = min(
                    self._backoff_base_seconds * (2 ** (tries - 1)), self._backoff_max_seconds
                )
                wait_time = backoff + random.uniform(0, backoff * 0.2)

                logger.warning(
                    "Transient provider error, retrying",
                    extra={
                        "identity": str(action.identity),
                        "operation": operation.__name__,
                        "attempt": tries,
                        "max_retries": self._max_retries,
                        "wait_seconds": wait_time,
                        "error": str(e),
                    },
                )
                await asyncio.sleep(wait_time)


def _skipped(action: Action, reason: str) -> ActionResult:
    logger.info(
        "Action skipped",
        extra={"identity": str(action.identity), "verb": action.verb.value, "reason": reason},
    )
    return ActionResult(
        identity=action.identity,
        verb=action.verb,
        outcome=Outcome.SKIPPED,
        error=reason,
    )


def _require(value: T | None, action: Action) -> T:
    if value is None:
        raise PermanentProviderError(
            f"{action.identity}: plan is missing data for {action.verb.value}"
        )
    return value
