"""Shared pytest fixtures for datasubset tests."""

import sqlite3
from collections.abc import Callable, Iterator, Sequence
from pathlib import Path
from typing import Any

import pytest

from datasubset.adapters.base import DatabaseAdapter, is_ignored
from datasubset.config import (
    ImplicitRelation,
    TableConfiguration,
    TableExportConfig,
    TableToIgnore,
)
from datasubset.core.dependency_graph import DatabaseGraph, TableDependencyGraphBuilder
from datasubset.models import (
    ColumnBinding,
    ColumnMetadata,
    Row,
    SelectionCondition,
    TableDependencyEdge,
    TableMetadata,
    TableNode,
)
from datasubset.output.base import ItemGenerator


class InMemoryAdapter(DatabaseAdapter):
    """
    Adapter over Python dicts for testing without a real database.

    WHERE clauses cannot be evaluated, so every clause a test uses must be
    registered in ``where_predicates`` as a predicate over the row dict.
    """

    def __init__(
        self,
        primary_keys: dict[str, list[str]],
        foreign_keys: list[tuple[str, list[tuple[str, str]], str, str]],
        data: dict[str, list[dict[str, Any]]],
        where_predicates: dict[str, Callable[[dict[str, Any]], bool]] | None = None,
    ):
        super().__init__()
        self.primary_keys = primary_keys
        self.foreign_keys = foreign_keys
        self.data = data
        self.where_predicates = where_predicates or {}
        self.queries: list[tuple[str, SelectionCondition]] = []
        self.open_iterators = 0
        self.init_export_calls = 0
        self._connected = False

    def connect(self, url: str) -> None:
        self._connected = True

    def close(self) -> None:
        self._connected = False

    def init_export(self) -> None:
        super().init_export()
        self.init_export_calls += 1

    def discover_tables(
        self,
        graph: DatabaseGraph,
        schemas: Sequence[str],
        tables_to_ignore: Sequence[TableToIgnore],
    ) -> None:
        for full_name, pk_columns in self.primary_keys.items():
            schema, table = full_name.split(".", 1)
            if schema not in schemas or is_ignored(tables_to_ignore, schema, table):
                continue
            node = graph.get_or_create_node(schema, table)
            node.primary_key_columns = list(pk_columns)

    def build_foreign_key_relationships(
        self,
        graph: DatabaseGraph,
        schemas: Sequence[str],
        tables_to_ignore: Sequence[TableToIgnore],
    ) -> None:
        for source_name, bindings, target_name, constraint_name in self.foreign_keys:
            source_schema, source_table = source_name.split(".", 1)
            target_schema, target_table = target_name.split(".", 1)
            if source_schema not in schemas:
                continue
            if is_ignored(tables_to_ignore, source_schema, source_table) or is_ignored(
                tables_to_ignore, target_schema, target_table
            ):
                continue

            source = graph.get_or_create_node(source_schema, source_table)
            target = graph.get_or_create_node(target_schema, target_table)
            edge = TableDependencyEdge.foreign_key(
                source_schema=source_schema,
                source_table=source_table,
                column_bindings=[ColumnBinding(s, t) for s, t in bindings],
                constraint_name=constraint_name,
            )
            graph.add_edge(source, target, edge)

    def _matches(self, row: dict[str, Any], condition: SelectionCondition) -> bool:
        for column, value in condition.parent_values:
            if row.get(column) != value:
                return False
        if condition.where_clause and not self.where_predicates[condition.where_clause](row):
            return False
        for column, value in condition.primary_key_values:
            if str(row.get(column)) != str(value):
                return False
        return True

    def fetch_rows(self, node: TableNode, condition: SelectionCondition) -> Iterator[Row]:
        self.queries.append((node.full_name, condition))
        self.open_iterators += 1
        try:
            for row in self.data.get(node.full_name, []):
                if self._matches(row, condition):
                    yield list(row.items())
        finally:
            self.open_iterators -= 1

    def get_table_metadata(self, node: TableNode) -> TableMetadata:
        rows = self.data.get(node.full_name, [])
        columns = tuple(ColumnMetadata(name, "text") for name in (rows[0] if rows else {}))
        return TableMetadata(node.schema, node.name, columns)


class RecordingGenerator(ItemGenerator[tuple]):
    """Item generator producing ``(table, row dict)`` tuples."""

    def __init__(self, with_metadata: bool = False):
        self.with_metadata = with_metadata
        self.init_export_calls = 0

    def init_export(self) -> None:
        self.init_export_calls += 1

    def generate_table_metadata(self, node: TableNode, row: Row) -> tuple | None:
        if not self.with_metadata:
            return None
        return ("table", node.full_name)

    def generate_item(self, node: TableNode, row: Row) -> tuple:
        return (node.full_name, dict(row))


SHOP_PRIMARY_KEYS = {
    "public.companies": ["id"],
    "public.users": ["id"],
    "public.products": ["id"],
    "public.orders": ["id"],
    "public.comments": ["id"],
}

SHOP_FOREIGN_KEYS = [
    ("public.users", [("company_id", "id")], "public.companies", "fk_users_company"),
    ("public.products", [("company_id", "id")], "public.companies", "fk_products_company"),
    ("public.orders", [("user_id", "id")], "public.users", "fk_orders_user"),
    ("public.orders", [("product_id", "id")], "public.products", "fk_orders_product"),
]


def shop_data() -> dict[str, list[dict[str, Any]]]:
    return {
        "public.companies": [
            {"id": 1, "name": "Acme"},
            {"id": 2, "name": "Globex"},
        ],
        "public.users": [
            {"id": 1, "company_id": 1, "name": "alice"},
            {"id": 2, "company_id": 2, "name": "bob"},
            {"id": 3, "company_id": None, "name": "carol"},
        ],
        "public.products": [
            {"id": 10, "company_id": 1, "name": "widget"},
            {"id": 11, "company_id": 2, "name": "gadget"},
        ],
        "public.orders": [
            {"id": 100, "user_id": 1, "product_id": 10, "status": "shipped"},
            {"id": 101, "user_id": 2, "product_id": 10, "status": "pending"},
            {"id": 102, "user_id": 1, "product_id": 11, "status": "shipped"},
            {"id": 103, "user_id": 3, "product_id": 11, "status": "pending"},
        ],
        "public.comments": [
            {"id": 1, "subject_type": "order", "subject_id": 100, "body": "fast"},
            {"id": 2, "subject_type": "product", "subject_id": 10, "body": "nice"},
        ],
    }


SHOP_WHERE_PREDICATES = {
    "status = 'shipped'": lambda row: row["status"] == "shipped",
    "subject_type = 'order'": lambda row: row["subject_type"] == "order",
}


@pytest.fixture
def adapter_factory() -> type[InMemoryAdapter]:
    """The in-memory adapter class, for tests that need their own tables."""
    return InMemoryAdapter


@pytest.fixture
def shop_adapter() -> InMemoryAdapter:
    """
    Adapter over a small shop schema.

    companies <- users <- orders -> products -> companies, plus comments
    that orders reach through an implicit relation.
    """
    return InMemoryAdapter(SHOP_PRIMARY_KEYS, SHOP_FOREIGN_KEYS, shop_data(), SHOP_WHERE_PREDICATES)


@pytest.fixture
def order_comments_configuration() -> TableConfiguration:
    """orders -> comments implicit relation restricted to order comments."""
    return TableConfiguration(
        table_name="orders",
        schema="public",
        implicit_relations=[
            ImplicitRelation(
                target_schema="public",
                target_table="comments",
                column_bindings=[ColumnBinding("id", "subject_id")],
                where_clause="subject_type = 'order'",
            )
        ],
    )


@pytest.fixture
def shop_graph(
    shop_adapter: InMemoryAdapter, order_comments_configuration: TableConfiguration
) -> DatabaseGraph:
    """Dependency graph of the shop schema, implicit relation included."""
    builder = TableDependencyGraphBuilder(shop_adapter)
    return builder.build_dependency_graph(["public"], [order_comments_configuration], [])


@pytest.fixture
def recorder() -> RecordingGenerator:
    return RecordingGenerator()


@pytest.fixture
def recorder_factory() -> type[RecordingGenerator]:
    return RecordingGenerator


@pytest.fixture
def order_root() -> Callable[..., TableExportConfig]:
    """Build an export root for public.orders."""

    def make(where_clause: str | None = None, **primary_key: Any) -> TableExportConfig:
        from datasubset.config import PrimaryKeyValue

        return TableExportConfig(
            schema="public",
            table_name="orders",
            where_clause=where_clause,
            primary_key_values=[PrimaryKeyValue(k, str(v)) for k, v in primary_key.items()],
        )

    return make


@pytest.fixture
def sqlite_db_path(tmp_path: Path) -> Path:
    """
    SQLite database file with the two-table example used throughout the docs:
    table2 references table1, whose rows reference nothing.
    """
    path = tmp_path / "subset.db"
    conn = sqlite3.connect(path)
    conn.executescript(
        """
        CREATE TABLE table1 (
            id INTEGER PRIMARY KEY,
            name TEXT NOT NULL
        );

        CREATE TABLE table2 (
            id INTEGER PRIMARY KEY,
            table1_id INTEGER NOT NULL REFERENCES table1(id),
            note TEXT
        );

        CREATE TABLE audit_log (
            event TEXT,
            detail TEXT
        );

        INSERT INTO table1 (id, name) VALUES
            (1, 'Alice'),
            (2, 'Bob'),
            (3, 'Carol');

        INSERT INTO table2 (id, table1_id, note) VALUES
            (10, 1, 'first'),
            (11, 2, 'second'),
            (12, 1, 'it''s third');

        INSERT INTO audit_log (event, detail) VALUES
            ('login', 'alice'),
            ('login', 'alice'),
            ('logout', 'alice');
        """
    )
    conn.commit()
    conn.close()
    return path


@pytest.fixture
def sqlite_url(sqlite_db_path: Path) -> str:
    # Absolute paths need four slashes: sqlite:////tmp/...
    return f"sqlite:///{sqlite_db_path}"
