"""Tests for configuration entities and WHERE clause validation."""

import pytest

from datasubset.config import (
    ExportConfig,
    ImplicitRelation,
    PrimaryKeyValue,
    TableConfiguration,
    TableExportConfig,
    TableToIgnore,
    validate_where_clause,
)
from datasubset.exceptions import InsecureWhereClauseError
from datasubset.models import ColumnBinding


def relation(where: str | None = None, source: str = "subject_id") -> ImplicitRelation:
    return ImplicitRelation("public", "posts", [ColumnBinding(source, "id")], where)


class TestTableExportConfig:
    """Tests for TableExportConfig."""

    def test_valid(self):
        config = TableExportConfig("public", "orders", "status = 'x'")
        assert config.validate() == []
        assert config.has_filter

    def test_missing_names(self):
        errors = TableExportConfig("", "").validate()
        assert "Export table schema is required" in errors
        assert "Export table name is required" in errors

    def test_primary_key_value_needs_column(self):
        config = TableExportConfig(
            "public", "orders", primary_key_values=[PrimaryKeyValue("", "1")]
        )
        assert len(config.validate()) == 1

    def test_str(self):
        config = TableExportConfig(
            "public", "orders", "total > 5", [PrimaryKeyValue("id", "1")]
        )
        assert str(config) == "public.orders WHERE total > 5 [PK: id=1]"
        assert not TableExportConfig("public", "orders").has_filter


class TestImplicitRelation:
    """Tests for ImplicitRelation."""

    def test_valid(self):
        assert relation().validate() == []

    def test_needs_bindings(self):
        errors = ImplicitRelation("public", "posts").validate()
        assert any("at least one column binding" in e for e in errors)

    def test_binding_needs_both_columns(self):
        errors = ImplicitRelation("public", "posts", [ColumnBinding("a", "")]).validate()
        assert any("needs both a source and a target column" in e for e in errors)

    def test_needs_target(self):
        errors = ImplicitRelation("", "", [ColumnBinding("a", "b")]).validate()
        assert len(errors) == 2

    def test_same_relation_ignores_case(self):
        a = relation("kind = 'post'")
        b = ImplicitRelation(
            "PUBLIC", "Posts", [ColumnBinding("SUBJECT_ID", "ID")], "KIND = 'post'"
        )
        assert a.same_relation(b)
        assert not a.same_relation(relation("kind = 'page'"))


class TestTableConfiguration:
    """Tests for TableConfiguration."""

    def test_add_ignores_equal_relation(self):
        config = TableConfiguration("comments")
        assert config.add_implicit_relation(relation()) is True
        assert config.add_implicit_relation(relation()) is False
        assert len(config.implicit_relations) == 1

    def test_remove(self):
        config = TableConfiguration("comments")
        config.add_implicit_relation(relation())
        assert config.contains_relation(relation())
        assert config.remove_implicit_relation(relation()) is True
        assert config.remove_implicit_relation(relation()) is False
        assert config.implicit_relations == []

    def test_relations_by_source_column(self):
        config = TableConfiguration("comments")
        config.add_implicit_relation(relation(source="subject_id"))
        config.add_implicit_relation(relation(source="parent_id"))
        found = config.get_relations_by_source_column("SUBJECT_ID")
        assert [r.column_bindings[0].source_column for r in found] == ["subject_id"]

    def test_defaults_to_public_schema(self):
        assert TableConfiguration("comments").full_name == "public.comments"

    def test_validate_prefixes_relation_errors(self):
        config = TableConfiguration("comments", implicit_relations=[ImplicitRelation("public", "")])
        errors = config.validate()
        assert errors
        assert all(e.startswith("public.comments: ") for e in errors)


class TestTableToIgnore:
    """Tests for TableToIgnore."""

    def test_matches_ignores_case(self):
        ignored = TableToIgnore("Audit", "Log")
        assert ignored.matches("audit", "log")
        assert not ignored.matches("audit", "logs")

    def test_validate(self):
        assert TableToIgnore("audit", "log").validate() == []
        assert len(TableToIgnore("", "").validate()) == 2


class TestExportConfig:
    """Tests for ExportConfig."""

    def test_requires_a_root(self):
        assert "At least one table to export is required" in ExportConfig().validate()

    def test_aggregates_errors(self):
        config = ExportConfig(
            tables_to_export=[TableExportConfig("", "orders")],
            table_configurations=[TableConfiguration("comments", implicit_relations=[relation()])],
            tables_to_ignore=[TableToIgnore("audit", "")],
        )
        errors = config.validate()
        assert "Export table schema is required" in errors
        assert "Ignored table name is required" in errors
        assert len(errors) == 2

    def test_schemas_default_to_root_schemas(self):
        config = ExportConfig(
            tables_to_export=[
                TableExportConfig("sales", "orders"),
                TableExportConfig("crm", "users"),
                TableExportConfig("sales", "lines"),
            ]
        )
        assert config.get_schemas() == ["sales", "crm"]

    def test_explicit_schemas_win(self):
        config = ExportConfig(
            tables_to_export=[TableExportConfig("sales", "orders")], schemas=["public"]
        )
        assert config.get_schemas() == ["public"]

    def test_fallback_schema(self):
        assert ExportConfig().get_schemas() == ["public"]

    def test_ignored_full_names(self):
        config = ExportConfig(tables_to_ignore=[TableToIgnore("Audit", "Log")])
        assert config.ignored_full_names() == {"audit.log"}


class TestWhereClauseValidation:
    """Tests for validate_where_clause."""

    @pytest.mark.parametrize(
        "clause",
        [
            "status = 'shipped'",
            "created_at > '2024-01-01' AND total >= 10",
            "name LIKE 'a%' OR id IN (1, 2, 3)",
            "status = 'DELETE'",
            "note = 'it''s; fine'",
        ],
    )
    def test_accepts_filters(self, clause):
        validate_where_clause(clause)

    @pytest.mark.parametrize(
        "clause",
        [
            "1=1; DROP TABLE users",
            "id = 1 -- comment",
            "id = 1 /* x */",
            "id IN (SELECT id FROM admins)",
            "pg_sleep(10) IS NULL",
            "id = 1 UNION SELECT password FROM users",
            "$$x$$ = 'a'",
        ],
    )
    def test_rejects_dangerous_clauses(self, clause):
        with pytest.raises(InsecureWhereClauseError):
            validate_where_clause(clause)

    def test_empty_is_allowed(self):
        validate_where_clause(None)
        validate_where_clause("")
