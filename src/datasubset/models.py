from dataclasses import dataclass, field
from enum import Enum
from typing import Any

Row = list[tuple[str, Any]]
"""One fetched row: ordered (column name, value) pairs."""


class TableNode:
    """
    A table in the dependency graph.

    Two nodes are the same table when their full names match ignoring case.
    ``primary_key_columns`` is filled in by discovery once it is known.
    """

    def __init__(self, schema: str, name: str, primary_key_columns: list[str] | None = None):
        self.schema = schema
        self.name = name
        self.primary_key_columns: list[str] = list(primary_key_columns or [])

    @property
    def full_name(self) -> str:
        return f"{self.schema}.{self.name}"

    @property
    def has_primary_key(self) -> bool:
        return bool(self.primary_key_columns)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, TableNode):
            return NotImplemented
        return self.full_name.lower() == other.full_name.lower()

    def __hash__(self) -> int:
        return hash(self.full_name.lower())

    def __repr__(self) -> str:
        return f"TableNode({self.schema!r}, {self.name!r}, {self.primary_key_columns!r})"

    def __str__(self) -> str:
        if self.primary_key_columns:
            return f"{self.full_name} [PK: {', '.join(self.primary_key_columns)}]"
        return f"{self.full_name} [No PK]"


@dataclass(frozen=True)
class ColumnBinding:
    """Join between a column of the edge's source table and one of its target table."""

    source_column: str
    target_column: str

    def __str__(self) -> str:
        return f"{self.source_column} -> {self.target_column}"


class EdgeKind(Enum):
    """Kind of dependency an edge represents."""

    FOREIGN_KEY = "fk"  # Schema-level constraint, child -> parent
    IMPLICIT = "implicit"  # Declared in configuration


@dataclass(frozen=True)
class TableDependencyEdge:
    """
    Data attached to a dependency graph edge.

    Foreign-key edges carry the constraint name; implicit-relation edges may
    carry a WHERE clause that is applied when selecting the target rows.
    ``source_schema``/``source_table`` name the table the edge starts from.
    """

    kind: EdgeKind
    source_schema: str
    source_table: str
    column_bindings: tuple[ColumnBinding, ...]
    constraint_name: str | None = None
    where_clause: str | None = None
    _target_by_source: dict[str, str] = field(
        init=False, repr=False, compare=False, hash=False, default_factory=dict
    )

    def __post_init__(self) -> None:
        object.__setattr__(self, "column_bindings", tuple(self.column_bindings))
        object.__setattr__(
            self,
            "_target_by_source",
            {b.source_column.lower(): b.target_column for b in self.column_bindings},
        )

    @classmethod
    def foreign_key(
        cls,
        source_schema: str,
        source_table: str,
        column_bindings: list[ColumnBinding] | tuple[ColumnBinding, ...],
        constraint_name: str,
    ) -> "TableDependencyEdge":
        return cls(
            kind=EdgeKind.FOREIGN_KEY,
            source_schema=source_schema,
            source_table=source_table,
            column_bindings=tuple(column_bindings),
            constraint_name=constraint_name,
        )

    @classmethod
    def implicit(
        cls,
        source_schema: str,
        source_table: str,
        column_bindings: list[ColumnBinding] | tuple[ColumnBinding, ...],
        where_clause: str | None = None,
    ) -> "TableDependencyEdge":
        return cls(
            kind=EdgeKind.IMPLICIT,
            source_schema=source_schema,
            source_table=source_table,
            column_bindings=tuple(column_bindings),
            where_clause=where_clause or None,
        )

    @property
    def is_foreign_key(self) -> bool:
        return self.kind is EdgeKind.FOREIGN_KEY

    @property
    def is_implicit(self) -> bool:
        return self.kind is EdgeKind.IMPLICIT

    @property
    def source_full_name(self) -> str:
        return f"{self.source_schema}.{self.source_table}"

    def get_target_column(self, source_column: str) -> str | None:
        """Target column bound to ``source_column`` (case-insensitive), if any."""
        return self._target_by_source.get(source_column.lower())

    def describe(self, target: TableNode) -> str:
        """One-line description used in dependency trees."""
        bindings = ", ".join(
            f"{self.source_full_name}.{b.source_column} -> {target.full_name}.{b.target_column}"
            for b in self.column_bindings
        )
        if self.is_foreign_key:
            return f"FK: {bindings} (Constraint: {self.constraint_name})"
        if self.where_clause:
            return f"IMPLICIT: {bindings} WHERE {self.where_clause}"
        return f"IMPLICIT: {bindings}"

    def __str__(self) -> str:
        bindings = ", ".join(str(b) for b in self.column_bindings)
        text = f"{self.source_full_name}: {bindings}"
        if self.where_clause:
            text += f" WHERE {self.where_clause}"
        return text


@dataclass(frozen=True)
class ColumnMetadata:
    """Name and database type of a column, as reported by the row source."""

    name: str
    data_type: str


@dataclass(frozen=True)
class TableMetadata:
    """Column layout of a table, used by binary exports."""

    schema: str
    table: str
    columns: tuple[ColumnMetadata, ...]

    @property
    def full_name(self) -> str:
        return f"{self.schema}.{self.table}"


@dataclass(frozen=True)
class SelectionCondition:
    """
    Which rows of a table to fetch.

    All parts are combined with AND: equality on each parent value (already
    mapped to the target table's column names), the free-form WHERE clause,
    and equality on each explicit primary key value.
    """

    parent_values: tuple[tuple[str, Any], ...] = ()
    where_clause: str | None = None
    primary_key_values: tuple[tuple[str, Any], ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.parent_values and not self.where_clause and not self.primary_key_values

    def __str__(self) -> str:
        parts = [f"{column} = {value!r}" for column, value in self.parent_values]
        if self.where_clause:
            parts.append(f"({self.where_clause})")
        parts.extend(f"{column} = {value!r}" for column, value in self.primary_key_values)
        return " AND ".join(parts) if parts else "all rows"
