from dataclasses import dataclass, field

from datasubset.core.graph import DirectedGraph, GraphEdge
from datasubset.models import TableDependencyEdge, TableNode


@dataclass
class CycleInfo:
    """Information about a detected cycle."""

    tables: list[TableNode]  # Tables in the cycle
    edges: list[GraphEdge[TableNode, TableDependencyEdge]] = field(default_factory=list)

    @property
    def is_self_reference(self) -> bool:
        return len(self.tables) == 1

    def __str__(self) -> str:
        """Human-readable cycle representation."""
        names = [table.full_name for table in self.tables]
        return " → ".join(names + [names[0]])


def find_dependency_cycles(
    graph: DirectedGraph[TableNode, TableDependencyEdge],
    include_self_references: bool = False,
) -> list[CycleInfo]:
    """
    Report the cycles of a dependency graph.

    Each strongly connected component with more than one table is one cycle.
    Tables with an edge to themselves (e.g. ``employees.manager_id``) are only
    reported when ``include_self_references`` is set.

    Returns:
        Cycles with the edges that run between their tables
    """
    cycles = []
    for component in graph.get_strongly_connected_components():
        members = set(component)
        edges = [
            edge
            for table in component
            for edge in graph.get_outgoing_edges(table)
            if edge.target in members
        ]

        if len(component) > 1:
            # Tarjan pops components in reverse discovery order
            cycles.append(CycleInfo(tables=list(reversed(component)), edges=edges))
        elif include_self_references and edges:
            cycles.append(CycleInfo(tables=component, edges=edges))

    return cycles
