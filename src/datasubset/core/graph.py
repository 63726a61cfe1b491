"""
Generic directed graph with adjacency and reverse-adjacency indices.

Nodes can be any hashable value; node identity follows the node type's own
``__eq__``/``__hash__`` (``TableNode`` compares case-insensitively, for
example). Edges are structural values, so two edges between the same pair of
nodes with different data are both kept.
"""

from collections import deque
from collections.abc import Hashable, Iterator
from dataclasses import dataclass
from typing import Generic, TypeVar

from datasubset.exceptions import CycleDetectedError

N = TypeVar("N", bound=Hashable)
E = TypeVar("E", bound=Hashable)


@dataclass(frozen=True)
class GraphEdge(Generic[N, E]):
    """
    A directed edge.

    ``source`` is None only for the synthetic edge that starts a traversal.
    """

    source: N | None
    target: N
    data: E | None = None

    def __str__(self) -> str:
        return f"{self.source} -> {self.target}"


@dataclass(frozen=True)
class GraphStatistics:
    """Summary counts for a graph."""

    node_count: int
    edge_count: int
    root_node_count: int
    leaf_node_count: int
    has_cycles: bool

    def __str__(self) -> str:
        return (
            f"Nodes: {self.node_count}, Edges: {self.edge_count}, "
            f"Roots: {self.root_node_count}, Leaves: {self.leaf_node_count}, "
            f"Cycles: {self.has_cycles}"
        )


class DirectedGraph(Generic[N, E]):
    """
    Directed graph keeping outgoing and incoming edge sets for every node.

    Edge sets are insertion-ordered dicts so iteration order is deterministic.
    Not thread-safe; callers that mutate concurrently must synchronize.
    """

    def __init__(self) -> None:
        self._adjacency: dict[N, dict[GraphEdge[N, E], None]] = {}
        self._reverse_adjacency: dict[N, dict[GraphEdge[N, E], None]] = {}

    @property
    def nodes(self) -> list[N]:
        """All nodes, in insertion order."""
        return list(self._adjacency)

    @property
    def edges(self) -> list[GraphEdge[N, E]]:
        """All edges, grouped by source node."""
        return [edge for outgoing in self._adjacency.values() for edge in outgoing]

    def __len__(self) -> int:
        return len(self._adjacency)

    def __contains__(self, node: object) -> bool:
        return node in self._adjacency

    def __iter__(self) -> Iterator[N]:
        return iter(list(self._adjacency))

    def add_node(self, node: N) -> None:
        """Add a node; does nothing if it is already present."""
        if node not in self._adjacency:
            self._adjacency[node] = {}
            self._reverse_adjacency[node] = {}

    def add_edge(self, source: N, target: N, data: E | None = None) -> None:
        """Add an edge, adding either endpoint first if it is missing."""
        self.add_node(source)
        self.add_node(target)

        edge = GraphEdge(source, target, data)
        self._adjacency[source][edge] = None
        self._reverse_adjacency[target][edge] = None

    def remove_edge(self, source: N, target: N) -> bool:
        """
        Remove the first edge from ``source`` to ``target``.

        Returns:
            True if an edge was removed
        """
        outgoing = self._adjacency.get(source)
        if not outgoing:
            return False

        for edge in outgoing:
            if edge.target == target:
                del outgoing[edge]
                self._reverse_adjacency[target].pop(edge, None)
                return True

        return False

    def remove_node(self, node: N) -> bool:
        """
        Remove a node together with all of its incoming and outgoing edges.

        Returns:
            True if the node existed
        """
        if node not in self._adjacency:
            return False

        for edge in list(self._adjacency[node]):
            self._reverse_adjacency[edge.target].pop(edge, None)

        for edge in list(self._reverse_adjacency[node]):
            if edge.source is not None and edge.source in self._adjacency:
                self._adjacency[edge.source].pop(edge, None)

        del self._adjacency[node]
        del self._reverse_adjacency[node]
        return True

    def get_outgoing_edges(self, node: N) -> list[GraphEdge[N, E]]:
        """Outgoing edges of ``node``; empty for unknown nodes."""
        return list(self._adjacency.get(node, ()))

    def get_incoming_edges(self, node: N) -> list[GraphEdge[N, E]]:
        """Incoming edges of ``node``; empty for unknown nodes."""
        return list(self._reverse_adjacency.get(node, ()))

    def get_successors(self, node: N) -> list[N]:
        return [edge.target for edge in self.get_outgoing_edges(node)]

    def get_predecessors(self, node: N) -> list[N]:
        return [edge.source for edge in self.get_incoming_edges(node) if edge.source is not None]

    def has_edge(self, source: N, target: N) -> bool:
        return any(edge.target == target for edge in self._adjacency.get(source, ()))

    def has_node(self, node: N) -> bool:
        return node in self._adjacency

    def get_root_nodes(self) -> list[N]:
        """Nodes with no incoming edges."""
        return [node for node, incoming in self._reverse_adjacency.items() if not incoming]

    def get_leaf_nodes(self) -> list[N]:
        """Nodes with no outgoing edges."""
        return [node for node, outgoing in self._adjacency.items() if not outgoing]

    def topological_sort(self) -> list[N]:
        """
        Order nodes so that every edge's source comes before its target.

        Uses Kahn's algorithm. Nodes that become ready at the same time keep
        their discovery order.

        Raises:
            CycleDetectedError: If the graph contains a cycle (self-loops included)
        """
        in_degree = {node: len(incoming) for node, incoming in self._reverse_adjacency.items()}
        queue = deque(node for node, degree in in_degree.items() if degree == 0)
        result: list[N] = []

        while queue:
            node = queue.popleft()
            result.append(node)

            for edge in self._adjacency[node]:
                in_degree[edge.target] -= 1
                if in_degree[edge.target] == 0:
                    queue.append(edge.target)

        if len(result) != len(self._adjacency):
            raise CycleDetectedError()

        return result

    def has_cycles(self, consider_self_cycles: bool = True) -> bool:
        """
        Detect cycles with a depth-first search over a recursion stack.

        The search keeps an explicit stack of ``(node, successors)`` frames, so
        long dependency chains do not exhaust the interpreter stack.

        Args:
            consider_self_cycles: Whether an edge from a node to itself counts
        """
        visited: set[N] = set()
        rec_stack: set[N] = set()

        for start in list(self._adjacency):
            if start in visited:
                continue

            visited.add(start)
            rec_stack.add(start)
            frames = [(start, iter(self.get_successors(start)))]

            while frames:
                node, successors = frames[-1]
                for successor in successors:
                    if not consider_self_cycles and successor == node:
                        continue
                    if successor in rec_stack:
                        return True
                    if successor not in visited:
                        visited.add(successor)
                        rec_stack.add(successor)
                        frames.append((successor, iter(self.get_successors(successor))))
                        break
                else:
                    frames.pop()
                    rec_stack.discard(node)

        return False

    def get_strongly_connected_components(self) -> list[list[N]]:
        """
        Find strongly connected components with Tarjan's algorithm.

        Every node belongs to exactly one component; nodes outside any cycle
        form singleton components. Written with an explicit frame stack like
        ``has_cycles``.
        """
        index_counter = 0
        stack: list[N] = []
        on_stack: set[N] = set()
        indices: dict[N, int] = {}
        low_links: dict[N, int] = {}
        components: list[list[N]] = []

        def visit(node: N) -> Iterator[N]:
            nonlocal index_counter
            indices[node] = index_counter
            low_links[node] = index_counter
            index_counter += 1
            stack.append(node)
            on_stack.add(node)
            return iter(self.get_successors(node))

        for start in list(self._adjacency):
            if start in indices:
                continue

            frames = [(start, visit(start))]
            while frames:
                node, successors = frames[-1]
                for successor in successors:
                    if successor not in indices:
                        frames.append((successor, visit(successor)))
                        break
                    if successor in on_stack:
                        low_links[node] = min(low_links[node], indices[successor])
                else:
                    frames.pop()
                    if frames:
                        parent = frames[-1][0]
                        low_links[parent] = min(low_links[parent], low_links[node])

                    if low_links[node] == indices[node]:
                        component: list[N] = []
                        while True:
                            member = stack.pop()
                            on_stack.discard(member)
                            component.append(member)
                            if member == node:
                                break
                        components.append(component)

        return components

    def get_statistics(self) -> GraphStatistics:
        return GraphStatistics(
            node_count=len(self._adjacency),
            edge_count=sum(len(outgoing) for outgoing in self._adjacency.values()),
            root_node_count=len(self.get_root_nodes()),
            leaf_node_count=len(self.get_leaf_nodes()),
            has_cycles=self.has_cycles(consider_self_cycles=False),
        )
