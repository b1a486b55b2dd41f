"""
Dependency graph primitives.
"""

from __future__ import annotations

import heapq
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from strata.core.exceptions import CycleError
from strata.declaration.expressions import Reference, references


@dataclass
class ResourceNode:
    """A declared resource with schema defaults applied."""

    kind: str
    name: str
    attributes: dict[str, Any] = field(default_factory=dict)
    depends_on: list[str] = field(default_factory=list)
    source: str = ""
    remote_id: str | None = None

    @property
    def address(self) -> str:
        return f"{self.kind}.{self.name}"

    @property
    def references(self) -> list[Reference]:
        return references(self.attributes)


def topological_sort(nodes: Iterable[str], dependencies: Mapping[str, Iterable[str]]) -> list[str]:
    """
    Deterministic topological order (dependencies first).

    Kahn's algorithm; among ready nodes the smallest address goes first.
    Dependencies outside ``nodes`` are ignored.

    Raises:
        CycleError: With one offending cycle
    """
    node_set = set(nodes)
    indegree = {n: 0 for n in node_set}
    dependents: dict[str, list[str]] = {n: [] for n in node_set}
    for node in node_set:
        for dep in set(dependencies.get(node, ())):
            if dep in node_set:
                indegree[node] += 1
                dependents[dep].append(node)

    ready = [n for n, d in indegree.items() if d == 0]
    heapq.heapify(ready)
    order: list[str] = []
    while ready:
        node = heapq.heappop(ready)
        order.append(node)
        for dependent in dependents[node]:
            indegree[dependent] -= 1
            if indegree[dependent] == 0:
                heapq.heappush(ready, dependent)

    if len(order) != len(node_set):
        remaining = sorted(node_set - set(order))
        raise CycleError(find_cycle(remaining, dependencies))
    return order


def find_cycle(nodes: list[str], dependencies: Mapping[str, Iterable[str]]) -> list[str]:
    """Return one cycle among ``nodes`` as a closed path (first == last)."""
    node_set = set(nodes)
    visiting: list[str] = []
    on_path: set[str] = set()
    done: set[str] = set()

    def visit(node: str) -> list[str] | None:
        visiting.append(node)
        on_path.add(node)
        for dep in sorted(set(dependencies.get(node, ())) & node_set):
            if dep in on_path:
                start = visiting.index(dep)
                return visiting[start:] + [dep]
            if dep not in done:
                cycle = visit(dep)
                if cycle:
                    return cycle
        visiting.pop()
        on_path.discard(node)
        done.add(node)
        return None

    for node in nodes:
        if node not in done:
            cycle = visit(node)
            if cycle:
                return cycle
    return list(nodes)


@dataclass
class DependencyGraph:
    """Validated DAG of resource nodes."""

    nodes: dict[str, ResourceNode] = field(default_factory=dict)
    edges: dict[str, set[str]] = field(default_factory=dict)
    order: list[str] = field(default_factory=list)

    def __contains__(self, address: str) -> bool:
        return address in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)

    def get(self, address: str) -> ResourceNode:
        return self.nodes[address]

    def dependencies(self, address: str) -> list[str]:
        """Direct dependencies of a node, sorted."""
        return sorted(self.edges.get(address, set()))

    def dependents(self, address: str) -> list[str]:
        """Nodes that directly depend on ``address``, sorted."""
        return sorted(a for a, deps in self.edges.items() if address in deps)

    def topological_order(self) -> list[str]:
        return list(self.order)

    def reverse_order(self) -> list[str]:
        return list(reversed(self.order))

    def edge_list(self) -> list[tuple[str, str]]:
        """(dependent, dependency) pairs, sorted."""
        return sorted((a, d) for a, deps in self.edges.items() for d in deps)
