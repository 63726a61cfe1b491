import sqlite3
from collections.abc import Iterator, Sequence
from contextlib import closing
from typing import TYPE_CHECKING

from datasubset.adapters.base import DatabaseAdapter, is_ignored
from datasubset.config import DatabaseType, TableToIgnore
from datasubset.constants import SQLITE_SCHEMA
from datasubset.exceptions import ConnectionError, ExportError, SchemaIntrospectionError
from datasubset.logging import get_logger, log_query_execution
from datasubset.models import (
    ColumnBinding,
    ColumnMetadata,
    Row,
    SelectionCondition,
    TableDependencyEdge,
    TableMetadata,
    TableNode,
)
from datasubset.utils.connection import parse_database_url

if TYPE_CHECKING:
    from datasubset.core.dependency_graph import DatabaseGraph

logger = get_logger(__name__)


class SQLiteAdapter(DatabaseAdapter):
    """
    SQLite database adapter.

    SQLite exposes a single schema, ``main``; requests for other schemas
    discover nothing.
    """

    def __init__(self) -> None:
        super().__init__()
        self._conn: sqlite3.Connection | None = None

    def connect(self, url: str) -> None:
        """Open the SQLite database file named by ``url``."""
        config = parse_database_url(url)

        if config.db_type != DatabaseType.SQLITE:
            raise ConnectionError(url, f"Expected SQLite URL, got {config.db_type.value}")

        try:
            # uri=True lets "file:...?mode=ro" style paths through
            self._conn = sqlite3.connect(config.database, uri=config.database.startswith("file:"))
            logger.info("SQLite database opened", database=config.database)
        except sqlite3.Error as e:
            logger.error("SQLite connection failed", error=str(e), exc_info=True)
            raise ConnectionError(url, str(e)) from e

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None
            logger.debug("SQLite database closed")

    def get_placeholder(self) -> str:
        return "?"

    def _table_names(self) -> list[str]:
        with closing(self._conn.cursor()) as cur:
            cur.execute(
                "SELECT name FROM sqlite_master "
                "WHERE type = 'table' AND name NOT LIKE 'sqlite_%' ORDER BY name"
            )
            return [name for (name,) in cur.fetchall()]

    def _table_info(self, table: str) -> list[tuple]:
        with closing(self._conn.cursor()) as cur:
            cur.execute(f"PRAGMA table_info({self.quote_identifier(table)})")
            return cur.fetchall()

    def _primary_key(self, table: str) -> list[str]:
        # table_info rows: (cid, name, type, notnull, dflt_value, pk), pk is 1-based
        key_columns = [(info[5], info[1]) for info in self._table_info(table) if info[5] > 0]
        return [name for _, name in sorted(key_columns)]

    def _covers_main_schema(self, schemas: Sequence[str]) -> bool:
        if any(schema.lower() == SQLITE_SCHEMA for schema in schemas):
            return True
        logger.warning(
            "SQLite databases only expose the 'main' schema", requested=list(schemas)
        )
        return False

    def discover_tables(
        self,
        graph: "DatabaseGraph",
        schemas: Sequence[str],
        tables_to_ignore: Sequence[TableToIgnore],
    ) -> None:
        if not self._covers_main_schema(schemas):
            return

        try:
            added = 0
            for table in self._table_names():
                if is_ignored(tables_to_ignore, SQLITE_SCHEMA, table):
                    logger.debug("Ignoring table", table=f"{SQLITE_SCHEMA}.{table}")
                    continue
                node = graph.get_or_create_node(SQLITE_SCHEMA, table)
                node.primary_key_columns = self._primary_key(table)
                added += 1
        except sqlite3.Error as e:
            logger.error("Table discovery failed", error=str(e), exc_info=True)
            raise SchemaIntrospectionError(str(e)) from e

        logger.info("Tables discovered", table_count=added)

    def build_foreign_key_relationships(
        self,
        graph: "DatabaseGraph",
        schemas: Sequence[str],
        tables_to_ignore: Sequence[TableToIgnore],
    ) -> None:
        """
        Add one edge per foreign key.

        SQLite foreign keys are unnamed, so edges are named
        ``fk_<table>_<id>`` after the key's id in ``PRAGMA foreign_key_list``.
        A key that omits the parent columns references the parent's primary key.
        """
        if not self._covers_main_schema(schemas):
            return

        added = 0
        try:
            for table in self._table_names():
                if is_ignored(tables_to_ignore, SQLITE_SCHEMA, table):
                    continue

                with closing(self._conn.cursor()) as cur:
                    cur.execute(f"PRAGMA foreign_key_list({self.quote_identifier(table)})")
                    # (id, seq, table, from, to, on_update, on_delete, match)
                    fk_rows = sorted(cur.fetchall(), key=lambda r: (r[0], r[1]))

                grouped: dict[int, list[tuple]] = {}
                for fk_row in fk_rows:
                    grouped.setdefault(fk_row[0], []).append(fk_row)

                for fk_id, columns in grouped.items():
                    target_table = columns[0][2]
                    if is_ignored(tables_to_ignore, SQLITE_SCHEMA, target_table):
                        logger.debug(
                            "Skipping foreign key to ignored table",
                            table=table,
                            target=target_table,
                        )
                        continue

                    target_columns = [column[4] for column in columns]
                    if any(column is None for column in target_columns):
                        target_columns = self._primary_key(target_table)

                    bindings = [
                        ColumnBinding(column[3], target_column)
                        for column, target_column in zip(columns, target_columns)
                    ]
                    source = graph.get_or_create_node(SQLITE_SCHEMA, table)
                    target = graph.get_or_create_node(SQLITE_SCHEMA, target_table)
                    edge = TableDependencyEdge.foreign_key(
                        source_schema=SQLITE_SCHEMA,
                        source_table=table,
                        column_bindings=bindings,
                        constraint_name=f"fk_{table}_{fk_id}",
                    )
                    graph.add_edge(source, target, edge)
                    added += 1
        except sqlite3.Error as e:
            logger.error("Foreign key discovery failed", error=str(e), exc_info=True)
            raise SchemaIntrospectionError(str(e)) from e

        logger.info("Foreign keys discovered", fk_count=added)

    def fetch_rows(self, node: TableNode, condition: SelectionCondition) -> Iterator[Row]:
        query, params = self.build_select_query(node, condition)

        try:
            with closing(self._conn.cursor()) as cur:
                cur.execute(query, params)
                columns = [description[0] for description in cur.description]
                row_count = 0
                for record in cur:
                    row_count += 1
                    yield list(zip(columns, record))
                log_query_execution(logger, query, params, row_count)
        except sqlite3.Error as e:
            logger.error("Failed to fetch rows", table=node.full_name, error=str(e), exc_info=True)
            raise ExportError(
                f"Failed to fetch rows from table '{node.full_name}': {e}", table=node.full_name
            ) from e

    def get_table_metadata(self, node: TableNode) -> TableMetadata:
        try:
            columns = tuple(
                ColumnMetadata(info[1], info[2] or "") for info in self._table_info(node.name)
            )
        except sqlite3.Error as e:
            raise SchemaIntrospectionError(str(e)) from e
        return TableMetadata(node.schema, node.name, columns)
