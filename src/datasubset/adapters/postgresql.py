import itertools
import json
import math
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Any
from uuid import UUID

import psycopg2

from datasubset.adapters.base import DatabaseAdapter, is_ignored
from datasubset.config import DatabaseType, TableToIgnore
from datasubset.constants import ROW_CURSOR_PREFIX, ROW_FETCH_SIZE, SYSTEM_SCHEMAS
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

# Server-side cursor names must be unique per connection; row streams nest
_cursor_ids = itertools.count(1)


class PostgreSQLAdapter(DatabaseAdapter):
    """PostgreSQL-specific database adapter."""

    def __init__(self) -> None:
        super().__init__()
        self._conn: Any = None
        self._metadata_cache: dict[str, TableMetadata] = {}

    def connect(self, url: str) -> None:
        """Establish PostgreSQL connection."""
        config = parse_database_url(url)

        if config.db_type != DatabaseType.POSTGRES:
            raise ConnectionError(url, f"Expected PostgreSQL URL, got {config.db_type.value}")

        logger.debug(
            "Connecting to PostgreSQL",
            host=config.host,
            port=config.port,
            database=config.database,
            user=config.user,
        )

        try:
            self._conn = psycopg2.connect(
                host=config.host,
                port=config.port,
                user=config.user,
                password=config.password,
                dbname=config.database,
                **config.options,
            )
            # Use autocommit for reads by default
            self._conn.autocommit = True
            logger.info("PostgreSQL connection established", database=config.database)
        except psycopg2.Error as e:
            logger.error("PostgreSQL connection failed", error=str(e), exc_info=True)
            raise ConnectionError(url, str(e)) from e

    def close(self) -> None:
        """Close PostgreSQL connection."""
        if self._conn:
            self._conn.close()
            self._conn = None
            logger.debug("PostgreSQL connection closed")

    @contextmanager
    def snapshot_transaction(self):
        """
        Read everything inside the block from one REPEATABLE READ snapshot.

        Usage:
            with adapter.snapshot_transaction():
                items = list(traversal.export(roots, graph))
        """
        self._conn.autocommit = False
        with self._conn.cursor() as cur:
            cur.execute("SET TRANSACTION ISOLATION LEVEL REPEATABLE READ READ ONLY")
        try:
            yield
        finally:
            # Read-only, so rollback is fine
            self._conn.rollback()
            self._conn.autocommit = True

    def discover_tables(
        self,
        graph: "DatabaseGraph",
        schemas: Sequence[str],
        tables_to_ignore: Sequence[TableToIgnore],
    ) -> None:
        """Add ordinary and partitioned tables of ``schemas`` with their primary keys."""
        logger.info("Discovering tables", schemas=list(schemas))

        try:
            with self._conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT n.nspname, c.relname
                    FROM pg_class c
                    JOIN pg_namespace n ON n.oid = c.relnamespace
                    WHERE c.relkind IN ('r', 'p')
                      AND NOT c.relispartition
                      AND n.nspname = ANY(%s)
                      AND n.nspname <> ALL(%s)
                    ORDER BY n.nspname, c.relname
                    """,
                    (list(schemas), list(SYSTEM_SCHEMAS)),
                )
                tables = cur.fetchall()

                cur.execute(
                    """
                    SELECT n.nspname, c.relname, a.attname
                    FROM pg_index i
                    JOIN pg_class c ON c.oid = i.indrelid
                    JOIN pg_namespace n ON n.oid = c.relnamespace
                    JOIN pg_attribute a
                        ON a.attrelid = c.oid
                        AND a.attnum = ANY(i.indkey)
                    WHERE i.indisprimary
                      AND n.nspname = ANY(%s)
                    ORDER BY n.nspname, c.relname,
                             array_position(i.indkey::smallint[], a.attnum)
                    """,
                    (list(schemas),),
                )
                pk_rows = cur.fetchall()
        except psycopg2.Error as e:
            logger.error("Table discovery failed", error=str(e), exc_info=True)
            raise SchemaIntrospectionError(str(e)) from e

        primary_keys: dict[tuple[str, str], list[str]] = {}
        for schema, table, column in pk_rows:
            primary_keys.setdefault((schema, table), []).append(column)

        added = 0
        for schema, table in tables:
            if is_ignored(tables_to_ignore, schema, table):
                logger.debug("Ignoring table", table=f"{schema}.{table}")
                continue

            node = graph.get_or_create_node(schema, table)
            node.primary_key_columns = primary_keys.get((schema, table), [])
            added += 1

        logger.info("Tables discovered", table_count=added)

    def build_foreign_key_relationships(
        self,
        graph: "DatabaseGraph",
        schemas: Sequence[str],
        tables_to_ignore: Sequence[TableToIgnore],
    ) -> None:
        """Add one edge per foreign key constraint declared in ``schemas``.

        Uses pg_catalog instead of information_schema to correctly handle
        composite foreign keys. The information_schema approach produces a
        cross product between source and target columns for multi-column FKs.
        """
        try:
            with self._conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT
                        c.conname AS constraint_name,
                        source_ns.nspname AS source_schema,
                        source_cls.relname AS source_table,
                        a_source.attname AS source_column,
                        target_ns.nspname AS target_schema,
                        target_cls.relname AS target_table,
                        a_target.attname AS target_column
                    FROM pg_constraint c
                    JOIN pg_class source_cls ON c.conrelid = source_cls.oid
                    JOIN pg_namespace source_ns ON source_cls.relnamespace = source_ns.oid
                    JOIN pg_class target_cls ON c.confrelid = target_cls.oid
                    JOIN pg_namespace target_ns ON target_cls.relnamespace = target_ns.oid
                    CROSS JOIN LATERAL unnest(c.conkey, c.confkey)
                        WITH ORDINALITY AS u(source_attnum, target_attnum, ord)
                    JOIN pg_attribute a_source
                        ON a_source.attrelid = c.conrelid
                        AND a_source.attnum = u.source_attnum
                    JOIN pg_attribute a_target
                        ON a_target.attrelid = c.confrelid
                        AND a_target.attnum = u.target_attnum
                    WHERE c.contype = 'f'
                      AND NOT source_cls.relispartition
                      AND source_ns.nspname = ANY(%s)
                    ORDER BY source_ns.nspname, source_cls.relname, c.conname, u.ord
                    """,
                    (list(schemas),),
                )
                rows = cur.fetchall()
        except psycopg2.Error as e:
            logger.error("Foreign key discovery failed", error=str(e), exc_info=True)
            raise SchemaIntrospectionError(str(e)) from e

        # Group by constraint for multi-column FKs
        constraints: dict[tuple[str, str, str], dict[str, Any]] = {}
        for row in rows:
            name, source_schema, source_table, source_col = row[:4]
            target_schema, target_table, target_col = row[4:]
            key = (source_schema, source_table, name)
            if key not in constraints:
                constraints[key] = {
                    "target_schema": target_schema,
                    "target_table": target_table,
                    "bindings": [],
                }
            constraints[key]["bindings"].append(ColumnBinding(source_col, target_col))

        added = 0
        for (source_schema, source_table, name), data in constraints.items():
            if is_ignored(tables_to_ignore, source_schema, source_table) or is_ignored(
                tables_to_ignore, data["target_schema"], data["target_table"]
            ):
                logger.debug(
                    "Skipping foreign key of ignored table",
                    constraint=name,
                    table=f"{source_schema}.{source_table}",
                )
                continue

            if graph.find_table(data["target_schema"], data["target_table"]) is None:
                logger.debug(
                    "Foreign key references a table outside the discovered schemas",
                    constraint=name,
                    target=f"{data['target_schema']}.{data['target_table']}",
                )

            source = graph.get_or_create_node(source_schema, source_table)
            target = graph.get_or_create_node(data["target_schema"], data["target_table"])
            edge = TableDependencyEdge.foreign_key(
                source_schema=source_schema,
                source_table=source_table,
                column_bindings=data["bindings"],
                constraint_name=name,
            )
            graph.add_edge(source, target, edge)
            added += 1

        logger.info("Foreign keys discovered", fk_count=added)

    def fetch_rows(self, node: TableNode, condition: SelectionCondition) -> Iterator[Row]:
        """
        Fetch rows of ``node`` matching ``condition``.

        Rows are streamed through a named (server-side) cursor, ``itersize``
        rows per round trip, so a broad root does not load the whole table
        into memory. Outside ``snapshot_transaction`` the connection is in
        autocommit mode and the cursor is declared WITH HOLD.

        Raises:
            InsecureWhereClauseError: If the WHERE clause is not a plain filter
            ExportError: If query execution fails
        """
        query, params = self.build_select_query(node, condition)
        cursor_name = f"{ROW_CURSOR_PREFIX}{next(_cursor_ids)}"

        try:
            with self._conn.cursor(name=cursor_name, withhold=self._conn.autocommit) as cur:
                cur.itersize = ROW_FETCH_SIZE
                cur.execute(query, params)
                columns: list[str] | None = None
                row_count = 0
                for record in cur:
                    # description of a named cursor is only set after the first fetch
                    if columns is None:
                        columns = [description[0] for description in cur.description]
                    row_count += 1
                    yield list(zip(columns, record))
                log_query_execution(logger, query, params, row_count)
        except psycopg2.Error as e:
            logger.error(
                "Failed to fetch rows",
                table=node.full_name,
                error=str(e),
                exc_info=True,
            )
            raise ExportError(
                f"Failed to fetch rows from table '{node.full_name}': {e}", table=node.full_name
            ) from e

    def get_table_metadata(self, node: TableNode) -> TableMetadata:
        key = node.full_name.lower()
        if key in self._metadata_cache:
            return self._metadata_cache[key]

        try:
            with self._conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT a.attname, format_type(a.atttypid, a.atttypmod)
                    FROM pg_attribute a
                    JOIN pg_class c ON c.oid = a.attrelid
                    JOIN pg_namespace n ON n.oid = c.relnamespace
                    WHERE n.nspname = %s
                      AND c.relname = %s
                      AND a.attnum > 0
                      AND NOT a.attisdropped
                    ORDER BY a.attnum
                    """,
                    (node.schema, node.name),
                )
                columns = tuple(
                    ColumnMetadata(name, data_type) for name, data_type in cur.fetchall()
                )
        except psycopg2.Error as e:
            logger.error("Failed to read column metadata", table=node.full_name, exc_info=True)
            raise SchemaIntrospectionError(str(e)) from e

        metadata = TableMetadata(node.schema, node.name, columns)
        self._metadata_cache[key] = metadata
        return metadata

    def format_value(self, value: Any) -> str:
        """Render a value as a PostgreSQL literal, casting types text cannot infer."""
        if isinstance(value, bool) or value is None:
            return super().format_value(value)
        if isinstance(value, float):
            if math.isnan(value):
                return "'NaN'::float8"
            if math.isinf(value):
                return "'Infinity'::float8" if value > 0 else "'-Infinity'::float8"
            return repr(value)
        if isinstance(value, Decimal) and not value.is_finite():
            return f"'{value}'::numeric"
        if isinstance(value, (bytes, bytearray, memoryview)):
            return f"'\\x{bytes(value).hex()}'::bytea"
        if isinstance(value, UUID):
            return f"'{value}'::uuid"
        if isinstance(value, datetime):
            cast = "timestamptz" if value.tzinfo else "timestamp"
            return f"{self.quote_string(value.isoformat())}::{cast}"
        if isinstance(value, date):
            return f"'{value.isoformat()}'::date"
        if isinstance(value, time):
            return f"{self.quote_string(value.isoformat())}::time"
        if isinstance(value, timedelta):
            return f"'{value.total_seconds()} seconds'::interval"
        if isinstance(value, list):
            return self.quote_string(self._array_literal(value))
        if isinstance(value, dict):
            return self.quote_string(json.dumps(value, default=str))
        return super().format_value(value)

    def _array_literal(self, values: list) -> str:
        """Text form of an array, e.g. ``{"a","b",NULL}``."""
        elements = []
        for element in values:
            if element is None:
                elements.append("NULL")
            elif isinstance(element, list):
                elements.append(self._array_literal(element))
            elif isinstance(element, bool):
                elements.append("t" if element else "f")
            elif isinstance(element, (int, float, Decimal)):
                elements.append(str(element))
            else:
                text = element.isoformat() if isinstance(element, (date, time)) else str(element)
                escaped = text.replace("\\", "\\\\").replace('"', '\\"')
                elements.append(f'"{escaped}"')
        return "{" + ",".join(elements) + "}"
