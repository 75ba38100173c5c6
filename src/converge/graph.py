"""Resource dependency graph construction and ordering.

This module implements ordering for a single configuration:
1. Graph construction from declared hints and references between resources
2. Cycle detection (three-colour depth-first search) before any ordering
3. Kahn's algorithm producing waves of mutually independent nodes

DESIGN:
- Nodes live in an arena (list) and edges are sets of node indices, so the
  graph holds no pointers between Resource objects and can be shared
  read-only across worker tasks
- Node insertion order is the tie-break order, which keeps waves stable
  across runs with identical input
- An edge A -> B means "A must be applied before B"
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from enum import Enum
from typing import TYPE_CHECKING, Any

from .models import Resource, ResourceId, SchemaViolation

if TYPE_CHECKING:
    from .state import RecordedState

logger = logging.getLogger(__name__)


class DependencyCycle(Exception):
    """Raised when the dependency graph contains a cycle."""

    def __init__(self, identities: Sequence[ResourceId]) -> None:
        self.identities = list(identities)
        path = " -> ".join(str(identity) for identity in [*self.identities, self.identities[0]])
        super().__init__(f"Circular dependency detected: {path}")


class _Mark(Enum):
    UNVISITED = 0
    IN_PROGRESS = 1
    DONE = 2


class DependencyGraph:
    """Directed graph of resource identities, stored as an index arena."""

    def __init__(self) -> None:
        self._nodes: list[ResourceId] = []
        self._index: dict[ResourceId, int] = {}
        self._successors: list[set[int]] = []
        self._predecessors: list[set[int]] = []

    def __contains__(self, identity: object) -> bool:
        return identity in self._index

    def __len__(self) -> int:
        return len(self._nodes)

    @property
    def nodes(self) -> tuple[ResourceId, ...]:
        """Nodes in insertion order."""
        return tuple(self._nodes)

    def add_node(self, identity: ResourceId) -> int:
        """Add a node if missing and return its index."""
        index = self._index.get(identity)
        if index is None:
            index = len(self._nodes)
            self._nodes.append(identity)
            self._index[identity] = index
            self._successors.append(set())
            self._predecessors.append(set())
        return index

    def add_edge(self, before: ResourceId, after: ResourceId) -> None:
        """Require ``before`` to be handled before ``after``."""
        source = self.add_node(before)
        target = self.add_node(after)
        self._successors[source].add(target)
        self._predecessors[target].add(source)

    def predecessors(self, identity: ResourceId) -> list[ResourceId]:
        return [self._nodes[i] for i in sorted(self._predecessors[self._index[identity]])]

    def successors(self, identity: ResourceId) -> list[ResourceId]:
        return [self._nodes[i] for i in sorted(self._successors[self._index[identity]])]

    def edges(self) -> list[tuple[ResourceId, ResourceId]]:
        return [
            (self._nodes[source], self._nodes[target])
            for source in range(len(self._nodes))
            for target in sorted(self._successors[source])
        ]

    def find_cycle(self) -> list[ResourceId] | None:
        """Return the identities on one cycle, in edge order, or None.

        Iterative DFS with unvisited/in-progress/done marks; a successor that
        is still in progress closes a cycle made of the stack suffix starting
        at that successor.
        """
        marks = [_Mark.UNVISITED] * len(self._nodes)

        for root in range(len(self._nodes)):
            if marks[root] is not _Mark.UNVISITED:
                continue

            marks[root] = _Mark.IN_PROGRESS
            path = [root]
            stack = [iter(sorted(self._successors[root]))]

            while stack:
                successor = next(stack[-1], None)
                if successor is None:
                    marks[path.pop()] = _Mark.DONE
                    stack.pop()
                    continue

                match marks[successor]:
                    case _Mark.IN_PROGRESS:
                        start = path.index(successor)
                        return [self._nodes[i] for i in path[start:]]
                    case _Mark.UNVISITED:
                        marks[successor] = _Mark.IN_PROGRESS
                        path.append(successor)
                        stack.append(iter(sorted(self._successors[successor])))
                    case _Mark.DONE:
                        pass

        return None

    def validate(self) -> None:
        """Check the graph for cycles.

        Raises:
            DependencyCycle: If a cycle is detected.
        """
        cycle = self.find_cycle()
        if cycle is not None:
            raise DependencyCycle(cycle)

    def waves(self) -> list[list[ResourceId]]:
        """Group nodes into waves by repeatedly removing zero in-degree nodes.

        Nodes in one wave share no edge. Each wave is ordered by insertion.

        Raises:
            DependencyCycle: If a cycle is detected.
        """
        self.validate()

        in_degree = [len(preds) for preds in self._predecessors]
        current = [i for i, degree in enumerate(in_degree) if degree == 0]
        result: list[list[ResourceId]] = []

        while current:
            result.append([self._nodes[i] for i in current])
            released: list[int] = []
            for node in current:
                for successor in self._successors[node]:
                    in_degree[successor] -= 1
                    if in_degree[successor] == 0:
                        released.append(successor)
            current = sorted(released)

        return result

    def topological_order(self) -> list[ResourceId]:
        """Nodes with every dependency before its dependents."""
        return [identity for wave in self.waves() for identity in wave]

    def to_dict(self) -> dict[str, Any]:
        """Serializable adjacency form: node list plus index pairs."""
        return {
            "nodes": [str(identity) for identity in self._nodes],
            "edges": [
                [source, target]
                for source in range(len(self._nodes))
                for target in sorted(self._successors[source])
            ],
        }


def build_graph(
    desired: Sequence[Resource],
    recorded: Mapping[ResourceId, RecordedState],
) -> DependencyGraph:
    """Build the validated resource graph for desired and recorded resources.

    Desired resources are added in declaration order, then recorded-only
    resources sorted by identity. Desired edges come from ``depends_on`` hints
    and references; recorded-only resources keep their recorded dependencies.

    Raises:
        SchemaViolation: On duplicate identities or references to undeclared resources.
        DependencyCycle: If the resulting graph has a cycle.
    """
    graph = DependencyGraph()

    for resource in desired:
        if resource.identity in graph:
            raise SchemaViolation("declared more than once", resource.identity)
        graph.add_node(resource.identity)

    declared = set(graph.nodes)
    recorded_only = sorted((i for i in recorded if i not in declared), key=str)
    for identity in recorded_only:
        graph.add_node(identity)

    for resource in desired:
        for dependency in resource.dependencies():
            if dependency not in declared:
                raise SchemaViolation(
                    f"depends on undeclared resource '{dependency}'", resource.identity
                )
            graph.add_edge(dependency, resource.identity)

    for identity in recorded_only:
        for dependency in recorded[identity].dependency_ids:
            if dependency in graph:
                graph.add_edge(dependency, identity)

    graph.validate()

    logger.debug(
        "Built dependency graph",
        extra={
            "desired_count": len(desired),
            "recorded_only_count": len(recorded_only),
            "edge_count": len(graph.edges()),
        },
    )
    return graph
