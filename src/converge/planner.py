"""Diff desired configuration against recorded state and order the actions.

VERBS:
- desired only                     -> create
- recorded only                    -> destroy
- both, attributes equal           -> no-op
- both, only mutable attrs changed -> update
- both, an immutable attr changed  -> replace

EQUALITY POLICY (per kind):
- computed attributes are provider-owned and never compared
- case-insensitive attributes are compared case-folded
- a resource's ``ignore_changes`` attributes are never compared
- a reference whose value is only known after apply always counts as changed

References are resolved while walking the graph in topological order, so the
verb of every referenced resource is decided before its dependents:
- no-op target:          values come from recorded state
- update target:         declared values, computed ones from recorded state
- create/replace target: unknown until apply

ORDERING:
Actions form their own graph. Non-destroy actions follow resource
dependencies. A destroyed resource is destroyed only after every resource
that depended on it when last applied has been handled, which destroys
dependents before their dependencies. Waves come from the same Kahn
ordering as the resource graph and keep declaration order within a wave.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .graph import DependencyGraph, build_graph
from .models import (
    UNKNOWN,
    AttributeSpec,
    KindSchema,
    Reference,
    Resource,
    ResourceId,
    SchemaViolation,
    render_value,
    resolve_value,
)
from .state import RecordedState

logger = logging.getLogger(__name__)


class Verb(str, Enum):
    """Action required to converge one resource."""

    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    DESTROY = "destroy"
    NOOP = "no-op"


class ReplaceOrder(str, Enum):
    """Order of the two halves of a replace."""

    DESTROY_BEFORE_CREATE = "destroy-before-create"
    CREATE_BEFORE_DESTROY = "create-before-destroy"


@dataclass(frozen=True)
class Action:
    """One planned step for one resource."""

    identity: ResourceId
    verb: Verb
    predecessors: tuple[ResourceId, ...] = ()

    # Attribute names whose change caused an update or replace
    changed: tuple[str, ...] = ()
    replace_order: ReplaceOrder | None = None

    # Desired declaration (absent for destroy) and recorded entry (absent for create)
    resource: Resource | None = field(default=None, compare=False, repr=False)
    recorded: RecordedState | None = field(default=None, compare=False, repr=False)

    @property
    def before(self) -> dict[str, Any] | None:
        return dict(self.recorded.attributes) if self.recorded is not None else None

    @property
    def after(self) -> dict[str, Any] | None:
        return dict(self.resource.attributes) if self.resource is not None else None

    def to_dict(self) -> dict[str, Any]:
        after = self.after
        return {
            "identity": str(self.identity),
            "verb": self.verb.value,
            "predecessors": [str(p) for p in self.predecessors],
            "changed": list(self.changed),
            "replace_order": self.replace_order.value if self.replace_order else None,
            "before": self.before,
            "after": render_value(after) if after is not None else None,
        }


@dataclass(frozen=True)
class Plan:
    """Waves of actions; actions within one wave share no edge."""

    waves: tuple[tuple[Action, ...], ...] = ()

    @property
    def actions(self) -> list[Action]:
        return [action for wave in self.waves for action in wave]

    @property
    def has_changes(self) -> bool:
        return any(action.verb != Verb.NOOP for action in self.actions)

    def action_for(self, identity: ResourceId) -> Action | None:
        for action in self.actions:
            if action.identity == identity:
                return action
        return None

    def summary(self) -> dict[str, int]:
        counts = {verb.value: 0 for verb in Verb}
        for action in self.actions:
            counts[action.verb.value] += 1
        return counts

    def to_dict(self) -> dict[str, Any]:
        return {
            "summary": self.summary(),
            "waves": [[action.to_dict() for action in wave] for wave in self.waves],
        }

    def to_json(self) -> str:
        """Canonical JSON; identical input always gives identical output."""
        return json.dumps(self.to_dict(), indent=2, sort_keys=True)


@dataclass(frozen=True)
class _Decision:
    verb: Verb
    changed: tuple[str, ...] = ()


class Planner:
    """Builds plans against a provider's kind schemas."""

    def __init__(self, schemas: Mapping[str, KindSchema]) -> None:
        self._schemas = schemas

    def plan(
        self,
        desired: Sequence[Resource],
        recorded: Mapping[ResourceId, RecordedState],
    ) -> Plan:
        """Diff desired against recorded state and order the result.

        Raises:
            SchemaViolation: On invalid declarations.
            DependencyCycle: If resources depend on each other cyclically.
        """
        graph = build_graph(desired, recorded)
        desired_by_id = {resource.identity: resource for resource in desired}
        for resource in desired:
            self._check_references(resource)

        decisions: dict[ResourceId, _Decision] = {}
        planned: dict[ResourceId, dict[str, Any]] = {}

        def lookup(reference: Reference) -> Any:
            return self._resolve(reference, decisions, planned, recorded)

        for identity in graph.topological_order():
            resource = desired_by_id.get(identity)
            entry = recorded.get(identity)

            if resource is None:
                decisions[identity] = _Decision(Verb.DESTROY)
                continue

            schema = self._schema(resource)
            values = {
                name: resolve_value(value, lookup) for name, value in resource.attributes.items()
            }
            planned[identity] = values

            if entry is None:
                decisions[identity] = _Decision(Verb.CREATE)
                continue

            changed = self._changed_attributes(schema, resource, values, entry)
            if not changed:
                decisions[identity] = _Decision(Verb.NOOP)
            elif any(schema.attributes[name].immutable for name in changed):
                decisions[identity] = _Decision(Verb.REPLACE, changed)
            else:
                decisions[identity] = _Decision(Verb.UPDATE, changed)

        action_graph = self._action_graph(graph, decisions, recorded)

        waves: list[tuple[Action, ...]] = []
        for wave in action_graph.waves():
            waves.append(
                tuple(
                    self._action(
                        identity,
                        decisions[identity],
                        tuple(action_graph.predecessors(identity)),
                        desired_by_id.get(identity),
                        recorded.get(identity),
                    )
                    for identity in wave
                )
            )

        plan = Plan(waves=tuple(waves))
        logger.info(
            "Plan computed",
            extra={"summary": plan.summary(), "wave_count": len(plan.waves)},
        )
        return plan

    def _schema(self, resource: Resource) -> KindSchema:
        schema = self._schemas.get(resource.kind)
        if schema is None:
            raise SchemaViolation(f"unknown resource kind '{resource.kind}'", resource.identity)
        return schema

    def _check_references(self, resource: Resource) -> None:
        for reference in resource.references():
            if reference.attribute is None:
                continue
            schema = self._schemas.get(reference.target.kind)
            if schema is None or reference.attribute not in schema.attributes:
                raise SchemaViolation(
                    f"reference {reference} names an unknown attribute", resource.identity
                )

    def _resolve(
        self,
        reference: Reference,
        decisions: Mapping[ResourceId, _Decision],
        planned: Mapping[ResourceId, dict[str, Any]],
        recorded: Mapping[ResourceId, RecordedState],
    ) -> Any:
        target = reference.target
        decision = decisions[target]
        entry = recorded.get(target)
        attribute = reference.attribute

        match decision.verb:
            case Verb.NOOP:
                assert entry is not None
                if attribute is None:
                    return entry.external_id
                return entry.attributes.get(attribute)
            case Verb.UPDATE:
                assert entry is not None
                if attribute is None:
                    return entry.external_id
                if self._schemas[target.kind].attributes[attribute].computed:
                    return entry.attributes.get(attribute)
                return planned[target].get(attribute)
            case Verb.CREATE | Verb.REPLACE:
                return UNKNOWN
            case Verb.DESTROY:
                raise SchemaViolation(f"reference {reference} targets a destroyed resource")

    def _changed_attributes(
        self,
        schema: KindSchema,
        resource: Resource,
        values: Mapping[str, Any],
        entry: RecordedState,
    ) -> tuple[str, ...]:
        ignored = set(resource.lifecycle.ignore_changes)
        changed: list[str] = []
        for name, spec in schema.attributes.items():
            if spec.computed or name in ignored:
                continue
            if not _equal(values.get(name), entry.attributes.get(name), spec):
                changed.append(name)
        return tuple(changed)

    def _action_graph(
        self,
        graph: DependencyGraph,
        decisions: Mapping[ResourceId, _Decision],
        recorded: Mapping[ResourceId, RecordedState],
    ) -> DependencyGraph:
        actions = DependencyGraph()
        for identity in graph.nodes:
            actions.add_node(identity)

        for identity in graph.nodes:
            if decisions[identity].verb == Verb.DESTROY:
                continue
            for predecessor in graph.predecessors(identity):
                actions.add_edge(predecessor, identity)

        # Whatever depended on a destroyed resource is handled before it goes
        for identity in graph.nodes:
            entry = recorded.get(identity)
            if entry is None:
                continue
            for dependency in entry.dependency_ids:
                if dependency == identity or dependency not in decisions:
                    continue
                if decisions[dependency].verb == Verb.DESTROY:
                    actions.add_edge(identity, dependency)

        return actions

    def _action(
        self,
        identity: ResourceId,
        decision: _Decision,
        predecessors: tuple[ResourceId, ...],
        resource: Resource | None,
        entry: RecordedState | None,
    ) -> Action:
        replace_order = None
        if decision.verb == Verb.REPLACE and resource is not None:
            create_first = resource.lifecycle.create_before_destroy
            if create_first is None:
                create_first = self._schema(resource).create_before_destroy
            replace_order = (
                ReplaceOrder.CREATE_BEFORE_DESTROY
                if create_first
                else ReplaceOrder.DESTROY_BEFORE_CREATE
            )

        return Action(
            identity=identity,
            verb=decision.verb,
            predecessors=predecessors,
            changed=decision.changed,
            replace_order=replace_order,
            resource=resource,
            recorded=entry,
        )


def _equal(desired: Any, recorded: Any, spec: AttributeSpec) -> bool:
    if desired is UNKNOWN:
        return False
    if spec.case_insensitive and isinstance(desired, str) and isinstance(recorded, str):
        return desired.casefold() == recorded.casefold()
    return bool(desired == recorded)
