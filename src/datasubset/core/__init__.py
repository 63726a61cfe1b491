from datasubset.core.cycles import CycleInfo, find_dependency_cycles
from datasubset.core.dependency_graph import DatabaseGraph, TableDependencyGraphBuilder
from datasubset.core.engine import ExportStatistics, ExportTraversal
from datasubset.core.graph import DirectedGraph, GraphEdge, GraphStatistics

__all__ = [
    "CycleInfo",
    "DatabaseGraph",
    "DirectedGraph",
    "ExportStatistics",
    "ExportTraversal",
    "GraphEdge",
    "GraphStatistics",
    "TableDependencyGraphBuilder",
    "find_dependency_cycles",
]
