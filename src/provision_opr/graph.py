"""Graph module for stack-based provisioning.

Builds a dependency DAG from Stack.descriptors, where an edge exists whenever
a descriptor consumes another descriptor's output, and computes traversal
orderings for create (producers first) and destroy (consumers first).
"""

import heapq
import logging
from dataclasses import dataclass, field
from typing import Optional

from descriptor import ResourceDescriptor, Stack
from errors import CycleError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DependencyEdge:
    """consumer needs producer to be provisioned first.

    output is None for ordering-only edges (depends_on, grant principals).
    """
    consumer: str
    producer: str
    output: Optional[str] = None


@dataclass
class GraphNode:
    """A node in the dependency graph.

    Attributes:
        descriptor: The underlying ResourceDescriptor
        index: Declaration order within the stack (tie-breaker)
        producers: Nodes this node depends on
        consumers: Nodes depending on this node
    """
    descriptor: ResourceDescriptor
    index: int
    producers: list['GraphNode'] = field(default_factory=list)
    consumers: list['GraphNode'] = field(default_factory=list)

    @property
    def name(self) -> str:
        return self.descriptor.name

    @property
    def kind(self) -> str:
        return self.descriptor.kind

    @property
    def is_root(self) -> bool:
        return not self.producers

    def __repr__(self) -> str:
        return f"GraphNode({self.name}, kind={self.kind}, index={self.index})"


class DependencyGraph:
    """Dependency DAG built from a Stack's descriptors.

    Provides deterministic traversal for lifecycle operations:
    - create_order(): producers before consumers, ties by declaration order
    - destroy_order(): reverse of create_order
    - levels(): waves of descriptors whose producers are all in earlier waves
    """

    def __init__(self, stack: Stack):
        """Build the graph.

        Raises:
            CycleError: If descriptors depend on each other cyclically
        """
        self.stack = stack
        self._nodes: dict[str, GraphNode] = {}
        self._edges: list[DependencyEdge] = []
        self._build_graph(stack.descriptors)
        self._order = self._topological_order()

    def _build_graph(self, descriptors: list[ResourceDescriptor]) -> None:
        for i, d in enumerate(descriptors):
            self._nodes[d.name] = GraphNode(descriptor=d, index=i)

        for d in descriptors:
            for ref in d.references():
                self._add_edge(DependencyEdge(d.name, ref.producer, ref.output))
            for dep in d.depends_on:
                self._add_edge(DependencyEdge(d.name, dep))
            for grant in d.access:
                # A grant needs the principal's identity before the scope completes
                if grant.principal != d.name:
                    self._add_edge(DependencyEdge(d.name, grant.principal))

    def _add_edge(self, edge: DependencyEdge) -> None:
        if edge in self._edges:
            return
        self._edges.append(edge)
        consumer = self._nodes[edge.consumer]
        producer = self._nodes[edge.producer]
        if producer not in consumer.producers:
            consumer.producers.append(producer)
            producer.consumers.append(consumer)

    def _topological_order(self) -> list[GraphNode]:
        """Kahn's algorithm with a declaration-order heap for stable output."""
        indegree = {name: len(node.producers) for name, node in self._nodes.items()}
        ready = [(node.index, name) for name, node in self._nodes.items() if indegree[name] == 0]
        heapq.heapify(ready)

        ordered: list[GraphNode] = []
        while ready:
            _, name = heapq.heappop(ready)
            node = self._nodes[name]
            ordered.append(node)
            for consumer in node.consumers:
                indegree[consumer.name] -= 1
                if indegree[consumer.name] == 0:
                    heapq.heappush(ready, (consumer.index, consumer.name))

        if len(ordered) < len(self._nodes):
            remaining = {name for name, deg in indegree.items() if deg > 0}
            raise CycleError(self._find_cycle(remaining))

        return ordered

    def _find_cycle(self, remaining: set[str]) -> list[str]:
        """Return one cycle among the unsorted nodes, first node repeated at the end."""
        visited: set[str] = set()

        for start in sorted(remaining, key=lambda n: self._nodes[n].index):
            path: list[str] = []
            on_path: set[str] = set()
            stack = [(start, iter(self._nodes[start].producers))]
            path.append(start)
            on_path.add(start)
            while stack:
                name, producers = stack[-1]
                advanced = False
                for producer in producers:
                    if producer.name not in remaining:
                        continue
                    if producer.name in on_path:
                        cycle = path[path.index(producer.name):]
                        return cycle + [producer.name]
                    if producer.name not in visited:
                        stack.append((producer.name, iter(producer.producers)))
                        path.append(producer.name)
                        on_path.add(producer.name)
                        advanced = True
                        break
                if not advanced:
                    stack.pop()
                    visited.add(name)
                    on_path.discard(path.pop())

        # Every node left after Kahn's algorithm lies on or behind a cycle
        return sorted(remaining)

    @property
    def edges(self) -> list[DependencyEdge]:
        return list(self._edges)

    @property
    def roots(self) -> list[GraphNode]:
        """Nodes with no producers."""
        return [n for n in self._order if n.is_root]

    def get_node(self, name: str) -> GraphNode:
        """Get a GraphNode by descriptor name.

        Raises:
            KeyError: If name not found
        """
        return self._nodes[name]

    def producers_of(self, name: str) -> list[str]:
        return [p.name for p in self._nodes[name].producers]

    def consumers_of(self, name: str) -> list[str]:
        return [c.name for c in self._nodes[name].consumers]

    def create_order(self) -> list[GraphNode]:
        """Return nodes in creation order (producers before consumers)."""
        return list(self._order)

    def destroy_order(self) -> list[GraphNode]:
        """Return nodes in destruction order (consumers before producers)."""
        return list(reversed(self._order))

    def levels(self) -> list[list[GraphNode]]:
        """Group nodes into waves; nodes in one wave are mutually independent."""
        level_of: dict[str, int] = {}
        waves: list[list[GraphNode]] = []
        for node in self._order:
            level = max((level_of[p.name] + 1 for p in node.producers), default=0)
            level_of[node.name] = level
            if level == len(waves):
                waves.append([])
            waves[level].append(node)
        return waves
