"""Resource graph: typed nodes, dependency edges and ordering.

This module implements the structure the reconciler walks:
1. ResourceNode - one concrete unit of desired state
2. ResourceGraph - nodes keyed by stable key, edges as depends_on lists
3. Topological ordering (dependencies first) via Kahn's algorithm
4. Cycle and dangling-edge detection

A cycle or an edge to an unknown node can only come from a builder bug,
never from user input, so both raise GraphConsistencyFault rather than a
validation error.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class GraphConsistencyFault(Exception):
    """Raised when the resource graph violates an internal invariant.

    Fatal and unretryable: a pass must halt rather than apply a graph that
    could not have been built correctly.
    """

    pass


class NodeKind(str, Enum):
    """Kinds of resources a run service spec expands into."""

    SERVICE = "service"
    SERVICE_ACCOUNT = "service_account"
    IAM_BINDING = "iam_binding"
    SECRET_ACCESS = "secret_access"
    PROJECT_ROLE = "project_role"
    DOMAIN_MAPPING = "domain_mapping"


@dataclass
class ResourceNode:
    """A node in the resource graph."""

    kind: NodeKind
    key: str
    payload: dict[str, Any] = field(default_factory=dict)
    depends_on: list[str] = field(default_factory=list)
    # Inclusion predicate, evaluated once when the graph is built
    included: bool = True


def topological_order(dependencies: Mapping[str, Iterable[str]]) -> list[str]:
    """Order keys so every key follows the keys it depends on.

    Dependencies on keys absent from the mapping are ignored. Ties are broken
    by key so the order is deterministic.

    Args:
        dependencies: key -> keys it depends on.

    Returns:
        Keys in execution order (dependencies first).

    Raises:
        GraphConsistencyFault: If a cycle is detected.
    """
    dependents: dict[str, list[str]] = {key: [] for key in dependencies}
    in_degree: dict[str, int] = {key: 0 for key in dependencies}

    for key, deps in dependencies.items():
        for dep in set(deps):
            if dep in dependents:
                dependents[dep].append(key)
                in_degree[key] += 1

    # Kahn's algorithm
    result: list[str] = []
    queue = [key for key, degree in in_degree.items() if degree == 0]

    while queue:
        # Sort for deterministic ordering among nodes with same in_degree
        queue.sort()
        current = queue.pop(0)
        result.append(current)

        for dependent in dependents[current]:
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                queue.append(dependent)

    if len(result) != len(dependencies):
        cycle_nodes = sorted(key for key, degree in in_degree.items() if degree > 0)
        raise GraphConsistencyFault(f"Circular dependency detected involving: {cycle_nodes}")

    return result


@dataclass
class ResourceGraph:
    """Directed acyclic graph of resource nodes."""

    nodes: dict[str, ResourceNode] = field(default_factory=dict)

    def __contains__(self, key: object) -> bool:
        return key in self.nodes

    def __iter__(self) -> Iterator[ResourceNode]:
        return iter(self.nodes.values())

    def __len__(self) -> int:
        return len(self.nodes)

    def add_node(self, node: ResourceNode) -> None:
        """Add a node to the graph.

        Raises:
            GraphConsistencyFault: If a node with the same key exists.
        """
        if node.key in self.nodes:
            raise GraphConsistencyFault(f"Duplicate node key: {node.key}")
        self.nodes[node.key] = node

    def get(self, key: str) -> ResourceNode:
        """Return the node stored under key."""
        return self.nodes[key]

    def keys_of_kind(self, kind: NodeKind) -> list[str]:
        """Keys of every node of the given kind, in insertion order."""
        return [node.key for node in self.nodes.values() if node.kind == kind]

    @property
    def edges(self) -> list[tuple[str, str]]:
        """(node, dependency) pairs."""
        return [(node.key, dep) for node in self.nodes.values() for dep in node.depends_on]

    def dependents(self, key: str) -> list[str]:
        """Keys of nodes that depend directly on key."""
        return [node.key for node in self.nodes.values() if key in node.depends_on]

    def prune_excluded(self) -> list[str]:
        """Drop nodes whose inclusion predicate is false, and edges to them.

        Returns:
            Keys of the dropped nodes.
        """
        dropped = [key for key, node in self.nodes.items() if not node.included]
        for key in dropped:
            del self.nodes[key]
        if dropped:
            for node in self.nodes.values():
                node.depends_on = [dep for dep in node.depends_on if dep not in dropped]
            logger.debug("Pruned excluded nodes", extra={"dropped": dropped})
        return dropped

    def validate(self) -> None:
        """Validate edges and acyclicity.

        Raises:
            GraphConsistencyFault: If an edge targets an unknown node, a node
                depends on itself, or a cycle exists.
        """
        for node in self.nodes.values():
            for dep in node.depends_on:
                if dep == node.key:
                    raise GraphConsistencyFault(f"Node depends on itself: {node.key}")
                if dep not in self.nodes:
                    raise GraphConsistencyFault(
                        f"Node '{node.key}' depends on unknown node '{dep}'"
                    )
        topological_order(self.dependency_map())

    def dependency_map(self) -> dict[str, list[str]]:
        """key -> depends_on for every node."""
        return {key: list(node.depends_on) for key, node in self.nodes.items()}

    def topological_sort(self) -> list[str]:
        """Return keys in dependency order (dependencies first).

        Raises:
            GraphConsistencyFault: If the graph is inconsistent.
        """
        self.validate()
        return topological_order(self.dependency_map())
