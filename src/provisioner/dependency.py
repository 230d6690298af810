"""Dependency ordering and validation.

This module implements dependency management for resources and pipeline
stages:
1. Dependency graph construction from configuration references
2. Topological sorting for execution order
3. Cycle detection to prevent deadlocks
4. Dangling reference detection

Resources depend on each other implicitly through references and
explicitly through `depends_on`:

```json
"azurerm_subnet": {
  "app": {
    "name": "snet-app",
    "resource_group_name": "${azurerm_resource_group.main.name}",
    "virtual_network_name": "${azurerm_virtual_network.main.name}",
    "address_prefixes": ["10.0.1.0/24"]
  }
}
```

Here the subnet depends on both the resource group and the virtual network.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from .expressions import ExpressionError, Reference, find_references
from .models import Configuration, get_resource_schema

logger = logging.getLogger(__name__)


class DependencyError(Exception):
    """Raised when dependency validation fails."""

    pass


class CyclicDependencyError(DependencyError):
    """Raised when a dependency cycle is detected."""

    pass


class DanglingReferenceError(DependencyError):
    """Raised when a reference does not resolve within the configuration."""

    pass


@dataclass
class DependencyNode:
    """A node in the dependency graph."""

    name: str
    depends_on: list[str] = field(default_factory=list)
    # False for nodes only created because something depends on them
    declared: bool = True


@dataclass
class DependencyGraph:
    """Directed acyclic graph of named nodes and their dependencies."""

    nodes: dict[str, DependencyNode] = field(default_factory=dict)

    def add_node(self, name: str, depends_on: list[str] | None = None) -> None:
        """Add a node to the dependency graph.

        Args:
            name: Node name (resource address, stage or job name).
            depends_on: Names this node depends on.
        """
        if name in self.nodes:
            node = self.nodes[name]
            node.declared = True
            for dep in depends_on or []:
                if dep not in node.depends_on:
                    node.depends_on.append(dep)
        else:
            self.nodes[name] = DependencyNode(name=name, depends_on=list(depends_on or []))

        # Ensure all dependencies have nodes (even if not yet declared)
        for dep in depends_on or []:
            if dep not in self.nodes:
                self.nodes[dep] = DependencyNode(name=dep, declared=False)

    def undeclared(self) -> list[str]:
        """Names referenced as dependencies but never declared."""
        return sorted(name for name, node in self.nodes.items() if not node.declared)

    def validate(self) -> None:
        """Validate the dependency graph for cycles.

        Raises:
            CyclicDependencyError: If a cycle is detected.
        """
        # Kahn's algorithm for topological sort / cycle detection
        in_degree: dict[str, int] = {node: 0 for node in self.nodes}
        for node in self.nodes.values():
            for dep in node.depends_on:
                if dep in in_degree:
                    in_degree[dep] += 1

        # Queue nodes with no incoming edges
        queue = [node for node, degree in in_degree.items() if degree == 0]
        processed = 0

        while queue:
            current = queue.pop(0)
            processed += 1

            for dep in self.nodes[current].depends_on:
                if dep in in_degree:
                    in_degree[dep] -= 1
                    if in_degree[dep] == 0:
                        queue.append(dep)

        if processed != len(self.nodes):
            cycle_nodes = sorted(node for node, degree in in_degree.items() if degree > 0)
            raise CyclicDependencyError(f"Circular dependency detected involving: {cycle_nodes}")

    def topological_sort(self, key: Callable[[str], object] | None = None) -> list[str]:
        """Return node names in dependency order (dependencies first).

        Args:
            key: Tie-breaker among nodes that are ready at the same time.
                Defaults to the node name, for deterministic ordering.

        Raises:
            CyclicDependencyError: If a cycle is detected.
        """
        self.validate()
        sort_key = key or (lambda name: name)

        # Build adjacency list (reversed - edges point to dependents)
        dependents: dict[str, list[str]] = {node: [] for node in self.nodes}
        in_degree: dict[str, int] = {node: 0 for node in self.nodes}

        for node in self.nodes.values():
            for dep in node.depends_on:
                if dep in dependents:
                    dependents[dep].append(node.name)
                    in_degree[node.name] += 1

        # Kahn's algorithm
        result: list[str] = []
        queue = [node for node, degree in in_degree.items() if degree == 0]

        while queue:
            queue.sort(key=sort_key)
            current = queue.pop(0)
            result.append(current)

            for dependent in dependents[current]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)

        return result

    def reverse_order(self) -> list[str]:
        """Return node names with dependents first (destroy order)."""
        return list(reversed(self.topological_sort()))

    def get_ready(self, satisfied: set[str]) -> list[str]:
        """Get nodes whose dependencies are all satisfied.

        Args:
            satisfied: Names already completed.

        Returns:
            Sorted names that can run now.
        """
        ready = []
        for node in self.nodes.values():
            if node.name in satisfied:
                continue
            if all(dep in satisfied for dep in node.depends_on):
                ready.append(node.name)
        return sorted(ready)

    def dependents_of(self, name: str) -> set[str]:
        """All nodes that transitively depend on `name`."""
        result: set[str] = set()
        frontier = [name]
        while frontier:
            current = frontier.pop()
            for node in self.nodes.values():
                if current in node.depends_on and node.name not in result:
                    result.add(node.name)
                    frontier.append(node.name)
        return result


def _check_reference(ref: Reference, configuration: Configuration, source: str) -> None:
    if ref.is_variable:
        if ref.variable_name not in configuration.variables:
            raise DanglingReferenceError(
                f"{source}: reference to undeclared input variable '{ref.variable_name}'"
            )
        return

    target = configuration.resources.get(ref.address)
    if target is None:
        raise DanglingReferenceError(f"{source}: reference to undeclared resource '{ref.address}'")

    schema = get_resource_schema(target.type)
    if ref.attribute not in schema.argument_names | schema.computed:
        raise DanglingReferenceError(
            f"{source}: resource '{ref.address}' has no attribute '{ref.attribute}'"
        )


def build_resource_graph(configuration: Configuration) -> DependencyGraph:
    """Build the resource dependency graph of a configuration.

    Raises:
        DanglingReferenceError: If any reference or depends_on entry does not
            resolve within the configuration.
        CyclicDependencyError: If resources depend on each other in a cycle.
        DependencyError: If an expression is malformed.
    """
    graph = DependencyGraph()

    for address, block in configuration.resources.items():
        try:
            references = find_references(block.arguments)
        except ExpressionError as e:
            raise DependencyError(f"{address}: {e}") from e

        depends_on: list[str] = []
        for ref in references:
            _check_reference(ref, configuration, address)
            if not ref.is_variable and ref.address != address:
                if ref.address not in depends_on:
                    depends_on.append(ref.address)
            elif not ref.is_variable:
                raise CyclicDependencyError(f"{address}: resource cannot reference itself")

        for explicit in block.depends_on:
            if explicit not in configuration.resources:
                raise DanglingReferenceError(
                    f"{address}: depends_on references undeclared resource '{explicit}'"
                )
            if explicit not in depends_on:
                depends_on.append(explicit)

        graph.add_node(address, depends_on)

    for name, output in configuration.outputs.items():
        try:
            references = find_references(output.value)
        except ExpressionError as e:
            raise DependencyError(f"output.{name}: {e}") from e
        for ref in references:
            _check_reference(ref, configuration, f"output.{name}")

    graph.validate()

    logger.debug(
        "Built resource graph",
        extra={
            "resources": len(graph.nodes),
            "edges": sum(len(n.depends_on) for n in graph.nodes.values()),
        },
    )
    return graph
