"""Reference resolution and evaluation order.

resolve() computes a deterministic topological order over the resource
graph (dependencies first, ties broken by declaration order) and evaluates
Lookup expressions so that optional sub-record fields carry their declared
defaults. References are left in place; evaluate() substitutes them with
known values when a plan is previewed or a node is applied.
"""

import heapq
import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterator, Mapping

from errors import CycleError
from stack_opr.graph import Lookup, Reference, ResourceGraph, ResourceNode
from variables import ConfigSnapshot

logger = logging.getLogger(__name__)


class _Unknown:
    """Placeholder for a value only known after a dependency is applied."""

    def __repr__(self) -> str:
        return '(known after apply)'

    def __str__(self) -> str:
        return '(known after apply)'


UNKNOWN = _Unknown()


@dataclass(frozen=True)
class OrderedPlan:
    """Resource nodes in evaluation order.

    Attributes:
        nodes: Present nodes, dependencies before dependents
        snapshot: The configuration the graph was built from
    """
    nodes: tuple[ResourceNode, ...]
    snapshot: ConfigSnapshot

    def __iter__(self) -> Iterator[ResourceNode]:
        return iter(self.nodes)

    def __len__(self) -> int:
        return len(self.nodes)

    def __contains__(self, name: object) -> bool:
        return any(n.name == name for n in self.nodes)

    @property
    def names(self) -> list[str]:
        return [n.name for n in self.nodes]

    def get_node(self, name: str) -> ResourceNode:
        """Get a node by name.

        Raises:
            KeyError: If the node is not in the plan
        """
        for node in self.nodes:
            if node.name == name:
                return node
        raise KeyError(name)

    def dependents(self, name: str) -> list[ResourceNode]:
        """Nodes that directly depend on the named node."""
        return [n for n in self.nodes if name in n.depends_on]

    def create_order(self) -> list[ResourceNode]:
        return list(self.nodes)

    def destroy_order(self) -> list[ResourceNode]:
        return list(reversed(self.nodes))


def evaluate_lookups(value: Any) -> Any:
    """Replace Lookup expressions with their value or declared default."""
    if isinstance(value, Lookup):
        return evaluate_lookups(value.evaluate())
    if isinstance(value, Reference):
        return value
    if isinstance(value, Mapping):
        return {k: evaluate_lookups(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [evaluate_lookups(v) for v in value]
    return value


def evaluate(value: Any, lookup: Callable[[Reference], Any]) -> Any:
    """Substitute every Reference in value with lookup(reference)."""
    if isinstance(value, Reference):
        return lookup(value)
    if isinstance(value, Mapping):
        return {k: evaluate(v, lookup) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [evaluate(v, lookup) for v in value]
    return value


def contains_unknown(value: Any) -> bool:
    """True if any part of value is UNKNOWN."""
    if value is UNKNOWN:
        return True
    if isinstance(value, Mapping):
        return any(contains_unknown(v) for v in value.values())
    if isinstance(value, (list, tuple)):
        return any(contains_unknown(v) for v in value)
    return False


def _find_cycle(remaining: dict[str, ResourceNode]) -> list[str]:
    """Return one dependency cycle among nodes that could not be ordered."""
    visiting: list[str] = []
    visited: set[str] = set()

    def _visit(name: str) -> list[str]:
        if name in visiting:
            return visiting[visiting.index(name):] + [name]
        if name in visited:
            return []
        visited.add(name)
        visiting.append(name)
        for dep in sorted(remaining[name].depends_on):
            if dep in remaining:
                cycle = _visit(dep)
                if cycle:
                    return cycle
        visiting.pop()
        return []

    for name in sorted(remaining, key=lambda n: remaining[n].index):
        cycle = _visit(name)
        if cycle:
            return cycle
    return sorted(remaining)


def topological_order(nodes: list[ResourceNode]) -> list[ResourceNode]:
    """Kahn's algorithm with declaration-order tie breaking.

    Raises:
        CycleError: Naming the nodes of one cycle
    """
    by_name = {n.name: n for n in nodes}
    indegree = {n.name: len(n.depends_on & by_name.keys()) for n in nodes}
    dependents: dict[str, list[str]] = {n.name: [] for n in nodes}
    for node in nodes:
        for dep in node.depends_on:
            if dep in dependents:
                dependents[dep].append(node.name)

    ready = [(n.index, n.name) for n in nodes if indegree[n.name] == 0]
    heapq.heapify(ready)

    ordered: list[ResourceNode] = []
    while ready:
        _, name = heapq.heappop(ready)
        ordered.append(by_name[name])
        for child in dependents[name]:
            indegree[child] -= 1
            if indegree[child] == 0:
                heapq.heappush(ready, (by_name[child].index, child))

    if len(ordered) != len(nodes):
        done = {n.name for n in ordered}
        remaining = {name: node for name, node in by_name.items() if name not in done}
        raise CycleError(_find_cycle(remaining))

    return ordered


def resolve(graph: ResourceGraph) -> OrderedPlan:
    """Order the graph and evaluate Lookup defaults.

    Raises:
        CycleError: If the dependency graph is not acyclic
    """
    ordered = topological_order(graph.nodes)
    resolved = tuple(
        ResourceNode(
            name=node.name,
            kind=node.kind,
            attributes=evaluate_lookups(node.attributes),
            depends_on=node.depends_on,
            lifecycle=node.lifecycle,
            index=node.index,
        )
        for node in ordered
    )
    logger.debug(f"Resolved order: {' -> '.join(n.name for n in resolved)}")
    return OrderedPlan(nodes=resolved, snapshot=graph.snapshot)
