"""
infracore - Configuration Graph Builder

Builds the resource dependency graph from a flattened Configuration.
An edge A -> B means A must be resolved before B. Ordering is deterministic:
ties are broken by declaration order, so the same configuration always yields
the same apply order.
"""

from __future__ import annotations
from typing import Dict, Iterable, List, Optional
import heapq
import logging

from infracore.errors import CycleError, UnresolvedReferenceError
from infracore.models import Configuration, ResourceAddress, ResourceRecord, parse_module_path

logger = logging.getLogger(__name__)


class DependencyGraph:
    """
    Directed acyclic graph of resource addresses.

    Nodes keep their declaration order; ``order`` is the topological order
    computed once at construction.
    """

    def __init__(self, nodes: Iterable[str], dependencies: Dict[str, List[str]]):
        self.nodes: List[str] = list(nodes)
        self._position = {node: i for i, node in enumerate(self.nodes)}
        self._dependencies: Dict[str, List[str]] = {
            node: list(dependencies.get(node, [])) for node in self.nodes
        }
        self._dependents: Dict[str, List[str]] = {node: [] for node in self.nodes}
        for node in self.nodes:
            for dependency in self._dependencies[node]:
                self._dependents[dependency].append(node)
        self.order: List[str] = self._topological_sort()

    def __contains__(self, address: object) -> bool:
        return address in self._position

    def __len__(self) -> int:
        return len(self.nodes)

    def dependencies_of(self, address: str) -> List[str]:
        """Direct dependencies (resolved before the node)."""
        return list(self._dependencies[address])

    def dependents_of(self, address: str) -> List[str]:
        """Direct dependents (resolved after the node)."""
        return list(self._dependents[address])

    def transitive_dependents(self, address: str) -> List[str]:
        """Every node that depends on the address, directly or not, in order."""
        found = set()
        stack = [address]
        while stack:
            for dependent in self._dependents[stack.pop()]:
                if dependent not in found:
                    found.add(dependent)
                    stack.append(dependent)
        return [node for node in self.order if node in found]

    def reverse_order(self) -> List[str]:
        """Order in which nodes must be destroyed."""
        return list(reversed(self.order))

    def edges(self) -> List[tuple]:
        """All (dependency, dependent) pairs."""
        return [(dep, node) for node in self.nodes for dep in self._dependencies[node]]

    def _topological_sort(self) -> List[str]:
        """
        Kahn's algorithm with a min-heap on declaration position.

        Raises:
            CycleError: If the graph contains a cycle
        """
        remaining = {node: len(set(deps)) for node, deps in self._dependencies.items()}
        ready = [self._position[node] for node, count in remaining.items() if count == 0]
        heapq.heapify(ready)

        result: List[str] = []
        while ready:
            node = self.nodes[heapq.heappop(ready)]
            result.append(node)
            for dependent in dict.fromkeys(self._dependents[node]):
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    heapq.heappush(ready, self._position[dependent])

        if len(result) != len(self.nodes):
            raise CycleError(self._find_cycle(set(self.nodes) - set(result)))
        return result

    def _find_cycle(self, candidates: set) -> List[str]:
        """Return one cycle path among nodes left over by the sort."""
        start = min(candidates, key=lambda n: self._position[n])
        path: List[str] = []
        on_path: Dict[str, int] = {}
        node: Optional[str] = start
        while node is not None and node not in on_path:
            on_path[node] = len(path)
            path.append(node)
            node = next(
                (d for d in self._dependencies[node] if d in candidates),
                None,
            )
        if node is None:
            return path
        return path[on_path[node]:] + [node]

    @classmethod
    def from_records(cls, records: Iterable[ResourceRecord]) -> DependencyGraph:
        """
        Build a graph from recorded dependencies.

        Dependencies on addresses no longer recorded are ignored.
        """
        records = list(records)
        addresses = [r.address for r in records]
        known = set(addresses)
        dependencies = {
            r.address: [d for d in dict.fromkeys(r.dependencies) if d in known and d != r.address]
            for r in records
        }
        return cls(addresses, dependencies)


class GraphBuilder:
    """
    Builds a DependencyGraph from a Configuration.

    Responsibilities:
    - Collect references and explicit depends_on entries per resource
    - Expand module-level depends_on to every resource in the module
    - Reject references to undeclared addresses
    - Reject reference cycles
    """

    def __init__(self):
        """Initialize graph builder."""
        self.logger = logging.getLogger(__name__)

    def build(self, config: Configuration) -> DependencyGraph:
        """
        Build the dependency graph.

        Raises:
            UnresolvedReferenceError: If a reference names no declared resource
            CycleError: If references form a cycle
        """
        addresses = [r.address for r in config.resources]
        declared = set(addresses)
        dependencies: Dict[str, List[str]] = {}

        for resource in config.resources:
            deps: List[str] = []
            for reference in resource.references:
                if reference not in declared:
                    raise UnresolvedReferenceError(
                        self._describe_missing(reference, declared),
                        source=resource.address,
                    )
                deps.append(reference)

            for dependency in resource.depends_on:
                deps.extend(self._expand_dependency(dependency, config, declared, resource.address))

            dependencies[resource.address] = list(dict.fromkeys(deps))

        for output in config.outputs:
            for reference in output.references:
                if reference not in declared:
                    raise UnresolvedReferenceError(
                        self._describe_missing(reference, declared),
                        source=f"output {output.name}",
                    )

        graph = DependencyGraph(addresses, dependencies)
        self.logger.info(
            f"Built dependency graph: {len(graph)} nodes, {len(graph.edges())} edges"
        )
        return graph

    def _expand_dependency(
        self,
        dependency: str,
        config: Configuration,
        declared: set,
        source: str,
    ) -> List[str]:
        """Resolve one explicit depends_on entry to resource addresses."""
        try:
            module_path = parse_module_path(dependency)
        except ValueError:
            module_path = None

        if module_path is not None:
            if dependency not in config.modules:
                raise UnresolvedReferenceError(dependency, source=source)
            return [
                r.address
                for r in config.resources
                if r.resource_address.in_module(module_path)
            ]

        if dependency in declared:
            return [dependency]

        # depends_on may name every instance of a counted resource at once
        instances = [
            r.address
            for r in config.resources
            if r.resource_address.resource_key == dependency and r.index is not None
        ]
        if instances:
            return instances
        raise UnresolvedReferenceError(dependency, source=source)

    def _describe_missing(self, reference: str, declared: set) -> str:
        """Hint at the indexed instances when an index is missing."""
        try:
            address = ResourceAddress.parse(reference)
        except ValueError:
            return reference
        if address.index is None:
            indexed = sorted(a for a in declared if a.startswith(f"{reference}["))
            if indexed:
                return f"{reference} (instances: {', '.join(indexed)})"
        return reference
