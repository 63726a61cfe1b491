import json
import math
from abc import ABC, abstractmethod
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from datetime import date, datetime, time
from decimal import Decimal
from typing import TYPE_CHECKING, Any
from uuid import UUID

from datasubset.config import TableToIgnore, validate_where_clause
from datasubset.models import Row, SelectionCondition, TableMetadata, TableNode

if TYPE_CHECKING:
    from datasubset.core.dependency_graph import DatabaseGraph


def is_ignored(tables_to_ignore: Sequence[TableToIgnore], schema: str, table: str) -> bool:
    """Whether ``schema.table`` is on the ignore list (case-insensitive)."""
    return any(ignored.matches(schema, table) for ignored in tables_to_ignore)


class DependencyDiscoverer(ABC):
    """
    Populates a dependency graph from a database catalog.

    Both operations must be idempotent: calling them again never creates
    duplicate nodes or edges. Ignored tables are skipped entirely.
    """

    @abstractmethod
    def discover_tables(
        self,
        graph: "DatabaseGraph",
        schemas: Sequence[str],
        tables_to_ignore: Sequence[TableToIgnore],
    ) -> None:
        """
        Add a node for every table in ``schemas`` and set its primary key columns.

        Nodes must be obtained through ``graph.get_or_create_node``.

        Raises:
            SchemaIntrospectionError: If the catalog cannot be read
        """
        pass

    @abstractmethod
    def build_foreign_key_relationships(
        self,
        graph: "DatabaseGraph",
        schemas: Sequence[str],
        tables_to_ignore: Sequence[TableToIgnore],
    ) -> None:
        """
        Add one child -> parent edge per foreign key constraint.

        All columns of a composite key are bound on the same edge.

        Raises:
            SchemaIntrospectionError: If the catalog cannot be read
        """
        pass


class RowSource(ABC):
    """Fetches the rows the export traversal asks for."""

    def init_export(self) -> None:
        """Reset per-export state such as query template caches."""
        pass

    @abstractmethod
    def fetch_rows(self, node: TableNode, condition: SelectionCondition) -> Iterator[Row]:
        """
        Lazily fetch the rows of ``node`` matching ``condition``.

        Any cursor or connection opened for the query must be released when
        the iterator is exhausted, fails or is closed early.

        Raises:
            ExportError: If the query fails
        """
        pass

    @abstractmethod
    def get_table_metadata(self, node: TableNode) -> TableMetadata:
        """Column names and types of ``node``, in table order."""
        pass


class DatabaseAdapter(DependencyDiscoverer, RowSource):
    """
    Base class for database adapters.

    Each adapter implements database-specific logic for:
    - Connection management
    - Table, primary key and foreign key discovery
    - Row fetching for the export traversal
    - SQL literal formatting for INSERT output
    """

    def __init__(self) -> None:
        self._select_templates: dict[tuple, str] = {}

    @abstractmethod
    def connect(self, url: str) -> None:
        """
        Establish database connection.

        Raises:
            ConnectionError: If connection fails
        """
        pass

    @abstractmethod
    def close(self) -> None:
        """Close database connection."""
        pass

    @contextmanager
    def snapshot_transaction(self):
        """
        Context manager for consistent snapshot reads.

        The default does nothing; adapters that support it read the whole
        block from a single snapshot.
        """
        yield

    def __enter__(self):
        """Support using adapter as context manager."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Close connection when exiting context."""
        self.close()
        return False

    def init_export(self) -> None:
        self._select_templates.clear()

    def quote_identifier(self, name: str) -> str:
        """
        Quote an identifier (table or column name) for safe SQL.

        Default implementation uses double quotes (SQL standard).
        """
        return '"' + name.replace('"', '""') + '"'

    def qualified_name(self, node: TableNode) -> str:
        return f"{self.quote_identifier(node.schema)}.{self.quote_identifier(node.name)}"

    def get_placeholder(self) -> str:
        """
        Get the parameter placeholder for this database.

        Default is %s (psycopg2 style).
        """
        return "%s"

    def build_select_query(
        self, node: TableNode, condition: SelectionCondition
    ) -> tuple[str, tuple[Any, ...]]:
        """
        Build a parameterized SELECT for ``node`` under ``condition``.

        Templates are cached per table and condition shape, so repeated lookups
        of the same relation only format the SQL once per export.

        Raises:
            InsecureWhereClauseError: If the WHERE clause is not a plain filter
        """
        key = (
            node.full_name.lower(),
            tuple(column for column, _ in condition.parent_values),
            condition.where_clause,
            tuple(column for column, _ in condition.primary_key_values),
        )
        template = self._select_templates.get(key)
        if template is None:
            validate_where_clause(condition.where_clause)
            placeholder = self.get_placeholder()
            clauses = [
                f"{self.quote_identifier(column)} = {placeholder}"
                for column, _ in condition.parent_values
            ]
            if condition.where_clause:
                where_clause = condition.where_clause
                if placeholder == "%s":
                    # Literal percent signs (LIKE patterns) must not read as placeholders
                    where_clause = where_clause.replace("%", "%%")
                clauses.append(f"({where_clause})")
            clauses.extend(
                f"{self.quote_identifier(column)} = {placeholder}"
                for column, _ in condition.primary_key_values
            )
            template = f"SELECT * FROM {self.qualified_name(node)}"
            if clauses:
                template += " WHERE " + " AND ".join(clauses)
            self._select_templates[key] = template

        params = tuple(value for _, value in condition.parent_values) + tuple(
            value for _, value in condition.primary_key_values
        )
        return template, params

    def format_value(self, value: Any) -> str:
        """
        Render a Python value as a SQL literal.

        The default covers standard SQL; adapters override it for
        database-specific types and casts.
        """
        if value is None:
            return "NULL"
        if isinstance(value, bool):
            return "TRUE" if value else "FALSE"
        if isinstance(value, int):
            return str(value)
        if isinstance(value, float):
            if math.isnan(value) or math.isinf(value):
                return self.quote_string(str(value))
            return repr(value)
        if isinstance(value, Decimal):
            return str(value)
        if isinstance(value, (bytes, bytearray, memoryview)):
            return f"X'{bytes(value).hex()}'"
        if isinstance(value, (datetime, date, time)):
            return self.quote_string(value.isoformat())
        if isinstance(value, UUID):
            return self.quote_string(str(value))
        if isinstance(value, (dict, list)):
            return self.quote_string(json.dumps(value, default=str))
        return self.quote_string(str(value))

    @staticmethod
    def quote_string(value: str) -> str:
        return "'" + value.replace("'", "''") + "'"
