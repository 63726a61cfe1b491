"""
Table dependency graph and the builder that populates it.

Edges point from the dependent table to the table it needs: a foreign key
edge goes child -> parent, an implicit relation edge goes from the table that
declares the relation to the related table.
"""

from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field

from datasubset.adapters.base import DependencyDiscoverer
from datasubset.config import TableConfiguration, TableToIgnore
from datasubset.core.graph import DirectedGraph, GraphEdge
from datasubset.exceptions import CycleDetectedError
from datasubset.logging import get_logger
from datasubset.models import TableDependencyEdge, TableNode

logger = get_logger(__name__)


class DatabaseGraph(DirectedGraph[TableNode, TableDependencyEdge]):
    """
    Directed graph of tables with a case-insensitive lookup by full name.

    Only nodes created through ``get_or_create_node`` are indexed. Nodes added
    with the low-level ``add_node``/``add_edge`` are not visible to
    ``find_table``, and removing a node does not drop it from the index.
    """

    def __init__(self) -> None:
        super().__init__()
        self.nodes_by_name: dict[str, TableNode] = {}

    def get_or_create_node(self, schema: str, table: str) -> TableNode:
        key = f"{schema}.{table}".lower()
        node = self.nodes_by_name.get(key)
        if node is None:
            node = TableNode(schema, table)
            self.nodes_by_name[key] = node
            self.add_node(node)
        return node

    def find_table(self, schema: str, table: str) -> TableNode | None:
        return self.nodes_by_name.get(f"{schema}.{table}".lower())


@dataclass
class GraphSummary:
    """Counts and notable tables of a built graph, for reporting."""

    node_count: int
    edge_count: int
    foreign_key_count: int
    implicit_relation_count: int
    root_tables: list[TableNode] = field(default_factory=list)
    leaf_tables: list[TableNode] = field(default_factory=list)
    tables_without_primary_key: list[TableNode] = field(default_factory=list)
    has_cycles: bool = False


@dataclass
class DependencyTreeLine:
    """One line of a table's dependency tree."""

    depth: int
    table: TableNode
    edge: TableDependencyEdge | None
    already_visited: bool = False


class TableDependencyGraphBuilder:
    """
    Builds a DatabaseGraph from a discoverer plus configured implicit relations.

    Usage:
        builder = TableDependencyGraphBuilder(adapter)
        graph = builder.build_dependency_graph(["public"], table_configs, ignored)
        order = builder.get_tables_in_dependency_order()
    """

    def __init__(self, discoverer: DependencyDiscoverer):
        self.discoverer = discoverer
        self.graph = DatabaseGraph()

    def build_dependency_graph(
        self,
        schemas: Sequence[str],
        table_configurations: Sequence[TableConfiguration] | None = None,
        tables_to_ignore: Sequence[TableToIgnore] | None = None,
    ) -> DatabaseGraph:
        """
        Discover tables, then foreign keys, then apply implicit relations.

        Implicit relations whose target table is not in the graph are skipped.
        """
        ignored = list(tables_to_ignore or [])
        configurations = list(table_configurations or [])

        with logger.timed_operation("dependency_graph_build", schemas=list(schemas)):
            self.discoverer.discover_tables(self.graph, schemas, ignored)
            logger.debug("Tables discovered", table_count=len(self.graph))

            self.discoverer.build_foreign_key_relationships(self.graph, schemas, ignored)
            logger.debug("Foreign keys discovered", edge_count=len(self.graph.edges))

            self._add_implicit_relations(configurations)

        logger.info("Dependency graph built", statistics=str(self.graph.get_statistics()))
        return self.graph

    def _add_implicit_relations(self, configurations: list[TableConfiguration]) -> None:
        by_name: dict[str, list[TableConfiguration]] = {}
        for configuration in configurations:
            by_name.setdefault(configuration.full_name.lower(), []).append(configuration)

        matched: set[str] = set()
        # Snapshot: adding edges must not change the set of nodes visited
        for node in list(self.graph.nodes):
            key = node.full_name.lower()
            if key in by_name:
                matched.add(key)
            for configuration in by_name.get(key, []):
                for relation in configuration.implicit_relations:
                    target = self.graph.find_table(relation.target_schema, relation.target_table)
                    if target is None:
                        logger.debug(
                            "Implicit relation target not found, skipping",
                            table=node.full_name,
                            target=relation.target_full_name,
                        )
                        continue

                    edge = TableDependencyEdge.implicit(
                        source_schema=node.schema,
                        source_table=node.name,
                        column_bindings=relation.column_bindings,
                        where_clause=relation.where_clause,
                    )
                    self.graph.add_edge(node, target, edge)
                    logger.debug(
                        "Implicit relation added",
                        table=node.full_name,
                        target=target.full_name,
                        bindings=", ".join(str(b) for b in relation.column_bindings),
                    )

        for key, unmatched in by_name.items():
            if key not in matched:
                logger.warning(
                    "Table configuration matches no table, skipping",
                    table=unmatched[0].full_name,
                    implicit_relation_count=sum(len(c.implicit_relations) for c in unmatched),
                )

    def get_tables_in_dependency_order(self) -> list[TableNode]:
        """
        Tables in topological order (dependents before their dependencies).

        On a cycle the failure is logged together with the cycles found and
        all tables are returned in graph order instead.
        """
        try:
            return self.graph.topological_sort()
        except CycleDetectedError:
            from datasubset.core.cycles import find_dependency_cycles

            cycles = find_dependency_cycles(self.graph)
            logger.warning(
                "Circular dependencies detected, returning tables in discovery order",
                cycle_count=len(cycles),
            )
            for cycle in cycles:
                logger.warning("Circular dependency", cycle=str(cycle))
            return self.graph.nodes

    def get_root_tables(self) -> list[TableNode]:
        """Tables nothing depends on."""
        return self.graph.get_root_nodes()

    def get_leaf_tables(self) -> list[TableNode]:
        """Tables that depend on nothing."""
        return self.graph.get_leaf_nodes()

    def find_table(self, schema: str, table: str) -> TableNode | None:
        return self.graph.find_table(schema, table)

    def get_all_tables(self) -> list[TableNode]:
        return self.graph.nodes

    def get_dependencies(self, table: TableNode) -> list[TableNode]:
        """Tables ``table`` depends on."""
        return self.graph.get_successors(table)

    def get_dependents(self, table: TableNode) -> list[TableNode]:
        """Tables that depend on ``table``."""
        return self.graph.get_predecessors(table)

    def summarize(self) -> GraphSummary:
        edge_data = [edge.data for edge in self.graph.edges if edge.data is not None]
        statistics = self.graph.get_statistics()
        return GraphSummary(
            node_count=statistics.node_count,
            edge_count=statistics.edge_count,
            foreign_key_count=sum(1 for data in edge_data if data.is_foreign_key),
            implicit_relation_count=sum(1 for data in edge_data if data.is_implicit),
            root_tables=self.get_root_tables(),
            leaf_tables=self.get_leaf_tables(),
            tables_without_primary_key=[n for n in self.graph.nodes if not n.has_primary_key],
            has_cycles=statistics.has_cycles,
        )

    def iter_dependency_tree(self, table: TableNode) -> Iterator[DependencyTreeLine]:
        """
        Walk everything ``table`` depends on, depth first.

        Tables already printed on the current walk are reported once more with
        ``already_visited`` set and not expanded again.
        """
        visited: set[TableNode] = set()
        stack: list[tuple[int, GraphEdge[TableNode, TableDependencyEdge] | None, TableNode]] = [
            (0, None, table)
        ]

        while stack:
            depth, edge, node = stack.pop()
            if node in visited:
                yield DependencyTreeLine(depth, node, edge.data if edge else None, True)
                continue

            visited.add(node)
            yield DependencyTreeLine(depth, node, edge.data if edge else None)

            for outgoing in reversed(self.graph.get_outgoing_edges(node)):
                stack.append((depth + 1, outgoing, outgoing.target))
