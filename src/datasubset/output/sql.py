from typing import Any, Protocol

from datasubset.models import Row, TableNode
from datasubset.output.base import ItemGenerator


class SQLDialect(Protocol):
    """Identifier quoting and literal formatting, provided by database adapters."""

    def quote_identifier(self, name: str) -> str: ...

    def qualified_name(self, node: TableNode) -> str: ...

    def format_value(self, value: Any) -> str: ...


class InsertStatementGenerator(ItemGenerator[str]):
    """
    Generates one INSERT statement per exported row.

    The column list of each table is rendered once into a template and
    cached until the next ``init_export``.

    Example output:
        INSERT INTO "public"."users" ("id", "name") VALUES (1, 'Alice');
    """

    def __init__(self, dialect: SQLDialect):
        self.dialect = dialect
        self._insert_templates: dict[str, str] = {}

    def init_export(self) -> None:
        self._insert_templates.clear()

    def generate_item(self, node: TableNode, row: Row) -> str:
        key = node.full_name.lower()
        template = self._insert_templates.get(key)
        if template is None:
            columns = ", ".join(self.dialect.quote_identifier(column) for column, _ in row)
            # Braces in identifiers must survive str.format
            prefix = f"INSERT INTO {self.dialect.qualified_name(node)} ({columns})"
            template = prefix.replace("{", "{{").replace("}", "}}") + " VALUES ({values});"
            self._insert_templates[key] = template

        values = ", ".join(self.dialect.format_value(value) for _, value in row)
        return template.format(values=values)
