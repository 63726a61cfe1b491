import re
import unicodedata
from dataclasses import dataclass, field
from enum import Enum

from datasubset.constants import DEFAULT_SCHEMA
from datasubset.models import ColumnBinding


class DatabaseType(Enum):
    """Database types accepted on the command line."""

    POSTGRES = "postgres"
    SQLSERVER = "sqlserver"
    MYSQL = "mysql"
    SQLITE = "sqlite"


class OutputFormat(Enum):
    """Output format options."""

    INSERT = "insert"  # One INSERT statement per row
    BINARY = "binary"  # MessagePack metadata and row records


# SQL injection prevention: keywords that should never appear in a filter
DANGEROUS_SQL_KEYWORDS = {
    "DROP",
    "DELETE",
    "TRUNCATE",
    "INSERT",
    "UPDATE",
    "ALTER",
    "CREATE",
    "RENAME",
    "GRANT",
    "REVOKE",
    "COMMIT",
    "ROLLBACK",
    "SAVEPOINT",
    "EXECUTE",
    "EXEC",
    "CALL",
    "SHUTDOWN",
    "COPY",
    "LOAD",
    "ATTACH",
    "DETACH",
    "PRAGMA",
    "UNION",
}

DANGEROUS_PG_FUNCTIONS = {
    "pg_sleep",
    "pg_cancel_backend",
    "pg_terminate_backend",
    "pg_read_file",
    "pg_read_binary_file",
    "pg_ls_dir",
    "lo_import",
    "lo_export",
    "dblink",
    "dblink_exec",
}


def validate_where_clause(where_clause: str | None) -> None:
    """
    Reject WHERE clauses that could do more than filter rows.

    Quoted literals are stripped before matching so values such as
    ``status = 'DELETE'`` are accepted.

    Args:
        where_clause: The WHERE clause to validate (without the WHERE keyword)

    Raises:
        InsecureWhereClauseError: If dangerous keywords are detected
    """
    from datasubset.exceptions import InsecureWhereClauseError

    if not where_clause:
        return

    # Fullwidth characters would otherwise slip past the keyword checks
    normalized = unicodedata.normalize("NFKC", where_clause)

    normalized = re.sub(r"'(?:[^']*'')*[^']*'", "''", normalized)
    normalized = re.sub(r'"[^"]*"', '""', normalized)

    if re.search(r"\$\$|\$[a-zA-Z_][a-zA-Z0-9_]*\$", normalized):
        raise InsecureWhereClauseError(where_clause, "dollar quoting ($$)")

    if re.search(r"\bE'", normalized, re.IGNORECASE):
        raise InsecureWhereClauseError(where_clause, "escape string (E'...')")

    if ";" in normalized:
        raise InsecureWhereClauseError(where_clause, ";")

    if "--" in normalized or "/*" in normalized or "*/" in normalized:
        raise InsecureWhereClauseError(where_clause, "comment sequence")

    normalized_upper = normalized.upper()

    for keyword in sorted(DANGEROUS_SQL_KEYWORDS):
        if re.search(r"\b" + re.escape(keyword) + r"\b", normalized_upper):
            raise InsecureWhereClauseError(where_clause, keyword)

    normalized_lower = normalized.lower()
    for func_name in sorted(DANGEROUS_PG_FUNCTIONS):
        if re.search(r"\b" + re.escape(func_name) + r"\s*\(", normalized_lower):
            raise InsecureWhereClauseError(where_clause, func_name + "()")

    if re.search(r"\(\s*SELECT\b", normalized_upper):
        raise InsecureWhereClauseError(where_clause, "subquery (SELECT)")


@dataclass
class PrimaryKeyValue:
    """One column/value pair of an explicit primary key filter."""

    column_name: str
    value: str


@dataclass
class TableExportConfig:
    """
    One export root: a table plus an optional filter.

    A WHERE clause and primary key values may be combined; both must match.
    """

    schema: str
    table_name: str
    where_clause: str | None = None
    primary_key_values: list[PrimaryKeyValue] = field(default_factory=list)

    @property
    def full_name(self) -> str:
        return f"{self.schema}.{self.table_name}"

    @property
    def has_filter(self) -> bool:
        return bool(self.where_clause) or bool(self.primary_key_values)

    def validate(self) -> list[str]:
        errors = []
        if not self.schema:
            errors.append("Export table schema is required")
        if not self.table_name:
            errors.append("Export table name is required")
        for i, pk_value in enumerate(self.primary_key_values):
            if not pk_value.column_name:
                errors.append(
                    f"Primary key value #{i + 1} of {self.full_name} is missing a column name"
                )
        return errors

    def __str__(self) -> str:
        text = self.full_name
        if self.where_clause:
            text += f" WHERE {self.where_clause}"
        if self.primary_key_values:
            pairs = ", ".join(f"{pk.column_name}={pk.value}" for pk in self.primary_key_values)
            text += f" [PK: {pairs}]"
        return text


@dataclass
class ImplicitRelation:
    """A relationship to another table that is not backed by a foreign key."""

    target_schema: str
    target_table: str
    column_bindings: list[ColumnBinding] = field(default_factory=list)
    where_clause: str | None = None

    @property
    def target_full_name(self) -> str:
        return f"{self.target_schema}.{self.target_table}"

    def same_relation(self, other: "ImplicitRelation") -> bool:
        """Whether both describe the same relation, ignoring case."""

        def key(relation: "ImplicitRelation") -> tuple:
            return (
                relation.target_full_name.lower(),
                tuple(
                    (b.source_column.lower(), b.target_column.lower())
                    for b in relation.column_bindings
                ),
                (relation.where_clause or "").strip().lower(),
            )

        return key(self) == key(other)

    def validate(self) -> list[str]:
        errors = []
        if not self.target_schema:
            errors.append("Implicit relation target schema is required")
        if not self.target_table:
            errors.append("Implicit relation target table is required")
        if not self.column_bindings:
            errors.append(
                f"Implicit relation to {self.target_full_name} needs at least one column binding"
            )
        for i, binding in enumerate(self.column_bindings):
            if not binding.source_column or not binding.target_column:
                errors.append(
                    f"Column binding #{i + 1} of relation to {self.target_full_name} "
                    f"needs both a source and a target column"
                )
        return errors


@dataclass
class TableConfiguration:
    """Per-table settings; currently the implicit relations it declares."""

    table_name: str
    schema: str = DEFAULT_SCHEMA
    implicit_relations: list[ImplicitRelation] = field(default_factory=list)

    @property
    def full_name(self) -> str:
        return f"{self.schema}.{self.table_name}"

    def add_implicit_relation(self, relation: ImplicitRelation) -> bool:
        """
        Add a relation unless an equal one is already declared.

        Returns:
            True if the relation was added
        """
        if self.contains_relation(relation):
            return False
        self.implicit_relations.append(relation)
        return True

    def remove_implicit_relation(self, relation: ImplicitRelation) -> bool:
        for existing in self.implicit_relations:
            if existing.same_relation(relation):
                self.implicit_relations.remove(existing)
                return True
        return False

    def contains_relation(self, relation: ImplicitRelation) -> bool:
        return any(existing.same_relation(relation) for existing in self.implicit_relations)

    def get_relations_by_source_column(self, source_column: str) -> list[ImplicitRelation]:
        column = source_column.lower()
        return [
            relation
            for relation in self.implicit_relations
            if any(b.source_column.lower() == column for b in relation.column_bindings)
        ]

    def validate(self) -> list[str]:
        errors = []
        if not self.table_name:
            errors.append("Table configuration name is required")
        if not self.schema:
            errors.append("Table configuration schema is required")
        for relation in self.implicit_relations:
            errors.extend(f"{self.full_name}: {error}" for error in relation.validate())
        return errors


@dataclass
class TableToIgnore:
    """A table excluded from discovery, foreign keys and implicit relations."""

    schema: str
    table_name: str

    @property
    def full_name(self) -> str:
        return f"{self.schema}.{self.table_name}"

    def matches(self, schema: str, table_name: str) -> bool:
        return (
            self.schema.lower() == schema.lower() and self.table_name.lower() == table_name.lower()
        )

    def validate(self) -> list[str]:
        errors = []
        if not self.schema:
            errors.append("Ignored table schema is required")
        if not self.table_name:
            errors.append("Ignored table name is required")
        return errors


@dataclass
class ExportConfig:
    """Everything an export run needs besides the database connection."""

    tables_to_export: list[TableExportConfig] = field(default_factory=list)
    table_configurations: list[TableConfiguration] = field(default_factory=list)
    tables_to_ignore: list[TableToIgnore] = field(default_factory=list)
    schemas: list[str] = field(default_factory=list)
    database_url: str | None = None

    def get_schemas(self) -> list[str]:
        """
        Schemas to discover: the configured ones, or else every schema
        named by an export root, falling back to the default schema.
        """
        if self.schemas:
            return list(self.schemas)
        schemas: list[str] = []
        for table in self.tables_to_export:
            if table.schema and table.schema not in schemas:
                schemas.append(table.schema)
        return schemas or [DEFAULT_SCHEMA]

    def ignored_full_names(self) -> set[str]:
        """Lower-cased full names of ignored tables."""
        return {table.full_name.lower() for table in self.tables_to_ignore}

    def validate(self) -> list[str]:
        """Collect validation errors from every configured entity."""
        errors = []
        if not self.tables_to_export:
            errors.append("At least one table to export is required")
        for table in self.tables_to_export:
            errors.extend(table.validate())
        for table_config in self.table_configurations:
            errors.extend(table_config.validate())
        for ignored in self.tables_to_ignore:
            errors.extend(ignored.validate())
        return errors
