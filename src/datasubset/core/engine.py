"""
Dependency-first export traversal.

For every configured root the traversal fetches the matching rows and, per
row, first exports the rows it references through foreign keys, then the row
itself, then the rows reached through its implicit relations. A row identity
key recorded before any recursion guarantees each physical row is exported
at most once per run, which also stops relationship cycles.

The walk keeps an explicit stack of open row streams instead of recursing, so
long reference chains cannot exhaust the interpreter stack. Every stream still
open when the output sequence is closed early, or when a query fails, is
closed before the traversal returns.
"""

import itertools
from collections.abc import Callable, Iterator, Sequence
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from datasubset.adapters.base import RowSource
from datasubset.config import TableExportConfig
from datasubset.constants import NULL_KEY_TOKEN, ROW_KEY_SEPARATOR
from datasubset.core.dependency_graph import DatabaseGraph
from datasubset.core.graph import GraphEdge
from datasubset.exceptions import DuplicateRowError, ExportError
from datasubset.logging import get_logger
from datasubset.models import Row, SelectionCondition, TableDependencyEdge, TableNode
from datasubset.output.base import ItemGenerator

logger = get_logger(__name__)

T = TypeVar("T")

# Type alias for progress callback functions.
#
# Signature: (stage: str, message: str, current: int, total: int) -> None
ProgressCallback = Callable[[str, str, int, int], None]

_EMIT_ROW = object()


@dataclass
class ExportStatistics:
    """Counters for one export run."""

    rows_exported: int = 0
    items_generated: int = 0
    duplicate_rows_skipped: int = 0
    queries_executed: int = 0
    rows_per_table: dict[str, int] = field(default_factory=dict)


@dataclass
class _RelationFrame:
    """Rows of one table being streamed for one incoming edge."""

    edge: GraphEdge[TableNode, TableDependencyEdge]
    condition: SelectionCondition
    rows: Iterator[Row]
    expect_single: bool
    row_count: int = 0


@dataclass
class _RowFrame:
    """A row whose relations are being expanded."""

    node: TableNode
    row: Row
    steps: Iterator[Any]


def _close_rows(rows: Iterator[Row]) -> None:
    close = getattr(rows, "close", None)
    if close is not None:
        close()


class ExportTraversal(Generic[T]):
    """
    Walks the dependency graph from configured roots and yields output items.

    State (the set of exported row keys and the collaborators' caches) is
    reset by every ``export`` call, so one instance must not be shared by
    concurrent exports.

    Usage:
        traversal = ExportTraversal(adapter, InsertStatementGenerator(adapter))
        for statement in traversal.export(config.tables_to_export, graph):
            print(statement)
    """

    def __init__(
        self,
        row_source: RowSource,
        item_generator: ItemGenerator[T],
        progress_callback: ProgressCallback | None = None,
    ):
        self.row_source = row_source
        self.item_generator = item_generator
        self.progress_callback = progress_callback
        self.exported_rows: set[str] = set()
        self.stats = ExportStatistics()
        self._tables_seen: set[TableNode] = set()
        self._tables_without_pk_reported: set[TableNode] = set()

    def init_export(self) -> None:
        """Start a fresh run: forget exported rows and clear collaborator caches."""
        self.row_source.init_export()
        self.item_generator.init_export()
        self.exported_rows.clear()
        self._tables_seen.clear()
        self._tables_without_pk_reported.clear()
        self.stats = ExportStatistics()

    def export(
        self, export_configs: Sequence[TableExportConfig], graph: DatabaseGraph
    ) -> Iterator[T]:
        """
        Lazily produce the output items for ``export_configs``.

        Roots are processed in the given order. A root table missing from
        ``graph`` is skipped with a warning.

        Raises:
            ExportError: If a row source query fails
            DuplicateRowError: If a lookup by a unique key matches several rows
        """
        self.init_export()
        logger.info("Starting export", root_count=len(export_configs))

        for item in self.item_generator.generate_header(export_configs, graph):
            self.stats.items_generated += 1
            yield item

        for index, root in enumerate(export_configs, start=1):
            node = graph.find_table(root.schema, root.table_name)
            if node is None:
                logger.warning(
                    "Export table not found in dependency graph, skipping",
                    table=root.full_name,
                )
                continue

            self._report_progress("export", f"Exporting {root}", index, len(export_configs))

            condition = SelectionCondition(
                where_clause=root.where_clause or None,
                primary_key_values=tuple(
                    (pk.column_name, pk.value) for pk in root.primary_key_values
                ),
            )
            root_logger = logger.with_context(table=node.full_name)
            if condition.is_empty:
                root_logger.info("Export root has no filter, exporting every row")

            rows_before = self.stats.rows_exported
            root_edge: GraphEdge[TableNode, TableDependencyEdge] = GraphEdge(None, node, None)
            yield from self._expand_relation(
                graph, root_edge, condition, self._is_unique_lookup(node, condition)
            )
            root_logger.debug(
                "Export root finished", rows_exported=self.stats.rows_exported - rows_before
            )

        logger.info(
            "Export traversal finished",
            rows_exported=self.stats.rows_exported,
            duplicate_rows_skipped=self.stats.duplicate_rows_skipped,
            queries_executed=self.stats.queries_executed,
        )

    def _expand_relation(
        self,
        graph: DatabaseGraph,
        edge: GraphEdge[TableNode, TableDependencyEdge],
        condition: SelectionCondition,
        expect_single: bool,
    ) -> Iterator[T]:
        stack: list[_RelationFrame | _RowFrame] = [
            self._open_relation(edge, condition, expect_single)
        ]

        try:
            while stack:
                frame = stack[-1]

                if isinstance(frame, _RelationFrame):
                    row = next(frame.rows, None)
                    if row is None:
                        stack.pop()
                        _close_rows(frame.rows)
                        continue

                    frame.row_count += 1
                    if frame.expect_single and frame.row_count > 1:
                        raise DuplicateRowError(
                            frame.edge.target.full_name, str(frame.condition), frame.row_count
                        )

                    node = frame.edge.target
                    key = self.row_identity_key(node, row)
                    if key in self.exported_rows:
                        self.stats.duplicate_rows_skipped += 1
                        continue

                    # Marked before expanding so cycles through relations terminate
                    self.exported_rows.add(key)
                    stack.append(_RowFrame(node, row, self._row_steps(graph, node)))
                    continue

                step = next(frame.steps, None)
                if step is None:
                    stack.pop()
                elif step is _EMIT_ROW:
                    yield from self._emit(frame.node, frame.row)
                else:
                    child_condition = self.parent_condition(step.data, frame.row)
                    if child_condition is not None:
                        stack.append(
                            self._open_relation(step, child_condition, step.data.is_foreign_key)
                        )
        finally:
            for open_frame in reversed(stack):
                if isinstance(open_frame, _RelationFrame):
                    _close_rows(open_frame.rows)

    def _open_relation(
        self,
        edge: GraphEdge[TableNode, TableDependencyEdge],
        condition: SelectionCondition,
        expect_single: bool,
    ) -> _RelationFrame:
        logger.debug(
            "Fetching rows",
            table=edge.target.full_name,
            via=str(edge.data) if edge.data else "root",
            condition=str(condition),
        )
        self.stats.queries_executed += 1
        rows = iter(self.row_source.fetch_rows(edge.target, condition))
        return _RelationFrame(edge, condition, rows, expect_single)

    def _row_steps(self, graph: DatabaseGraph, node: TableNode) -> Iterator[Any]:
        """Foreign key edges, then the row itself, then implicit relation edges."""
        outgoing = [edge for edge in graph.get_outgoing_edges(node) if edge.data is not None]
        return itertools.chain(
            (edge for edge in outgoing if edge.data.is_foreign_key),
            (_EMIT_ROW,),
            (edge for edge in outgoing if edge.data.is_implicit),
        )

    def _emit(self, node: TableNode, row: Row) -> Iterator[T]:
        if node not in self._tables_seen:
            self._tables_seen.add(node)
            metadata = self.item_generator.generate_table_metadata(node, row)
            if metadata is not None:
                self.stats.items_generated += 1
                yield metadata

        item = self.item_generator.generate_item(node, row)
        self.stats.rows_exported += 1
        self.stats.items_generated += 1
        self.stats.rows_per_table[node.full_name] = (
            self.stats.rows_per_table.get(node.full_name, 0) + 1
        )
        yield item

    def parent_condition(
        self, edge_data: TableDependencyEdge, row: Row
    ) -> SelectionCondition | None:
        """
        Selection condition for the rows ``row`` points to through ``edge_data``.

        Returns:
            None when a bound value is NULL, since nothing can match it

        Raises:
            ExportError: If the row lacks a column the edge binds
        """
        parent_values = []
        for column, value in row:
            target_column = edge_data.get_target_column(column)
            if target_column is None:
                continue
            if value is None:
                return None
            parent_values.append((target_column, value))

        if len(parent_values) != len(edge_data.column_bindings):
            bound = ", ".join(b.source_column for b in edge_data.column_bindings)
            raise ExportError(
                f"Row does not contain every column bound by the relation ({bound})",
                table=edge_data.source_full_name,
            )

        return SelectionCondition(
            parent_values=tuple(parent_values),
            where_clause=edge_data.where_clause,
        )

    def row_identity_key(self, node: TableNode, row: Row) -> str:
        """
        Key identifying a physical row: the table name followed by its
        primary key values in row order.

        Tables without a primary key fall back to every value of the row.
        """
        key_columns = {column.lower() for column in node.primary_key_columns}
        values = [value for column, value in row if column.lower() in key_columns]

        if not values:
            if node not in self._tables_without_pk_reported:
                self._tables_without_pk_reported.add(node)
                logger.warning(
                    "Table has no primary key, identifying rows by all of their values",
                    table=node.full_name,
                )
            values = [value for _, value in row]

        key = node.full_name + ROW_KEY_SEPARATOR
        for value in values:
            key += (NULL_KEY_TOKEN if value is None else str(value)) + ROW_KEY_SEPARATOR
        return key

    @staticmethod
    def _is_unique_lookup(node: TableNode, condition: SelectionCondition) -> bool:
        if not node.primary_key_columns:
            return False
        given = {column.lower() for column, _ in condition.primary_key_values}
        return all(column.lower() in given for column in node.primary_key_columns)

    def _report_progress(self, stage: str, message: str, current: int, total: int) -> None:
        if self.progress_callback:
            self.progress_callback(stage, message, current, total)
