"""Tests for the table dependency graph and its builder."""

import logging

from datasubset.config import ImplicitRelation, TableConfiguration, TableToIgnore
from datasubset.core.dependency_graph import DatabaseGraph, TableDependencyGraphBuilder
from datasubset.models import ColumnBinding, TableDependencyEdge, TableNode


class TestDatabaseGraph:
    """Tests for the DatabaseGraph name index."""

    def test_get_or_create_returns_same_node(self):
        graph = DatabaseGraph()
        first = graph.get_or_create_node("public", "users")
        second = graph.get_or_create_node("PUBLIC", "Users")
        assert first is second
        assert len(graph) == 1

    def test_find_table_ignores_case(self):
        graph = DatabaseGraph()
        node = graph.get_or_create_node("public", "Users")
        assert graph.find_table("Public", "users") is node
        assert graph.find_table("public", "orders") is None

    def test_nodes_added_directly_are_not_indexed(self):
        graph = DatabaseGraph()
        graph.add_node(TableNode("public", "users"))
        assert graph.find_table("public", "users") is None
        assert len(graph) == 1

    def test_removed_nodes_stay_indexed(self):
        graph = DatabaseGraph()
        node = graph.get_or_create_node("public", "users")
        graph.remove_node(node)
        assert graph.find_table("public", "users") is node
        assert not graph.has_node(node)


class TestTableDependencyGraphBuilder:
    """Tests for TableDependencyGraphBuilder."""

    def test_builds_tables_and_foreign_keys(self, shop_adapter):
        builder = TableDependencyGraphBuilder(shop_adapter)
        graph = builder.build_dependency_graph(["public"])

        assert len(graph) == 5
        assert len(graph.edges) == 4
        orders = graph.find_table("public", "orders")
        assert orders.primary_key_columns == ["id"]
        assert [node.name for node in graph.get_successors(orders)] == ["users", "products"]
        assert all(edge.data.is_foreign_key for edge in graph.edges)

    def test_adds_implicit_relations(self, shop_adapter, order_comments_configuration):
        builder = TableDependencyGraphBuilder(shop_adapter)
        graph = builder.build_dependency_graph(["public"], [order_comments_configuration])

        orders = graph.find_table("public", "orders")
        implicit = [e for e in graph.get_outgoing_edges(orders) if e.data.is_implicit]
        assert len(implicit) == 1
        assert implicit[0].target == TableNode("public", "comments")
        assert implicit[0].data.where_clause == "subject_type = 'order'"
        assert implicit[0].data.source_full_name == "public.orders"

    def test_implicit_relation_to_missing_table_is_skipped(self, shop_adapter):
        configuration = TableConfiguration(
            table_name="orders",
            implicit_relations=[
                ImplicitRelation("public", "invoices", [ColumnBinding("id", "order_id")])
            ],
        )
        builder = TableDependencyGraphBuilder(shop_adapter)
        graph = builder.build_dependency_graph(["public"], [configuration])

        assert len(graph) == 5
        assert len(graph.edges) == 4

    def test_configuration_for_unknown_table_is_ignored(self, shop_adapter, caplog):
        configuration = TableConfiguration(
            table_name="missing",
            implicit_relations=[
                ImplicitRelation("public", "users", [ColumnBinding("user_id", "id")])
            ],
        )
        with caplog.at_level(logging.WARNING, logger="datasubset"):
            graph = TableDependencyGraphBuilder(shop_adapter).build_dependency_graph(
                ["public"], [configuration]
            )
        assert graph.find_table("public", "missing") is None
        assert len(graph.edges) == 4

        [record] = [r for r in caplog.records if r.levelno == logging.WARNING]
        assert record.getMessage() == "Table configuration matches no table, skipping"
        assert record.context == {"table": "public.missing", "implicit_relation_count": 1}

    def test_ignored_tables_are_forwarded(self, shop_adapter):
        builder = TableDependencyGraphBuilder(shop_adapter)
        graph = builder.build_dependency_graph(
            ["public"], tables_to_ignore=[TableToIgnore("public", "companies")]
        )

        assert graph.find_table("public", "companies") is None
        assert len(graph) == 4
        assert len(graph.edges) == 2

    def test_schemas_are_forwarded(self, shop_adapter):
        graph = TableDependencyGraphBuilder(shop_adapter).build_dependency_graph(["sales"])
        assert len(graph) == 0

    def test_dependency_order_puts_dependents_first(self, shop_adapter):
        builder = TableDependencyGraphBuilder(shop_adapter)
        builder.build_dependency_graph(["public"])
        order = [node.name for node in builder.get_tables_in_dependency_order()]

        assert order.index("orders") < order.index("users") < order.index("companies")
        assert order.index("products") < order.index("companies")

    def test_dependency_order_with_cycle_returns_all_tables(self, adapter_factory):
        adapter = adapter_factory(
            {"public.a": ["id"], "public.b": ["id"]},
            [
                ("public.a", [("b_id", "id")], "public.b", "fk_a_b"),
                ("public.b", [("a_id", "id")], "public.a", "fk_b_a"),
            ],
            {},
        )
        builder = TableDependencyGraphBuilder(adapter)
        builder.build_dependency_graph(["public"])

        assert builder.get_tables_in_dependency_order() == [
            TableNode("public", "a"),
            TableNode("public", "b"),
        ]

    def test_roots_leaves_and_neighbours(self, shop_adapter):
        builder = TableDependencyGraphBuilder(shop_adapter)
        builder.build_dependency_graph(["public"])
        users = builder.find_table("public", "users")

        assert {n.name for n in builder.get_root_tables()} == {"orders", "comments"}
        assert {n.name for n in builder.get_leaf_tables()} == {"companies", "comments"}
        assert [n.name for n in builder.get_dependencies(users)] == ["companies"]
        assert [n.name for n in builder.get_dependents(users)] == ["orders"]
        assert len(builder.get_all_tables()) == 5

    def test_summarize(self, shop_adapter, order_comments_configuration):
        builder = TableDependencyGraphBuilder(shop_adapter)
        builder.build_dependency_graph(["public"], [order_comments_configuration])
        summary = builder.summarize()

        assert summary.node_count == 5
        assert summary.edge_count == 5
        assert summary.foreign_key_count == 4
        assert summary.implicit_relation_count == 1
        assert summary.tables_without_primary_key == []
        assert summary.has_cycles is False

    def test_dependency_tree(self, shop_adapter):
        builder = TableDependencyGraphBuilder(shop_adapter)
        builder.build_dependency_graph(["public"])
        orders = builder.find_table("public", "orders")

        lines = [
            (line.depth, line.table.name, line.already_visited)
            for line in builder.iter_dependency_tree(orders)
        ]
        assert lines == [
            (0, "orders", False),
            (1, "users", False),
            (2, "companies", False),
            (1, "products", False),
            (2, "companies", True),
        ]

    def test_dependency_tree_lines_carry_edges(self, shop_adapter):
        builder = TableDependencyGraphBuilder(shop_adapter)
        builder.build_dependency_graph(["public"])
        users = builder.find_table("public", "users")

        lines = list(builder.iter_dependency_tree(users))
        assert lines[0].edge is None
        assert isinstance(lines[1].edge, TableDependencyEdge)
        assert lines[1].edge.constraint_name == "fk_users_company"
