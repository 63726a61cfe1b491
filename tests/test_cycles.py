"""Tests for circular dependency reporting."""

from datasubset.core.cycles import CycleInfo, find_dependency_cycles
from datasubset.core.dependency_graph import DatabaseGraph
from datasubset.models import ColumnBinding, TableDependencyEdge, TableNode


def add_fk(graph: DatabaseGraph, source: str, column: str, target: str) -> None:
    source_node = graph.get_or_create_node("public", source)
    target_node = graph.get_or_create_node("public", target)
    edge = TableDependencyEdge.foreign_key(
        "public", source, [ColumnBinding(column, "id")], f"fk_{source}_{column}"
    )
    graph.add_edge(source_node, target_node, edge)


class TestCycleInfo:
    """Tests for CycleInfo."""

    def test_str_closes_the_loop(self):
        cycle = CycleInfo(tables=[TableNode("public", "a"), TableNode("public", "b")])
        assert str(cycle) == "public.a → public.b → public.a"
        assert not cycle.is_self_reference

    def test_self_reference(self):
        cycle = CycleInfo(tables=[TableNode("public", "employees")])
        assert cycle.is_self_reference
        assert str(cycle) == "public.employees → public.employees"


class TestFindDependencyCycles:
    """Tests for find_dependency_cycles."""

    def test_no_cycles(self):
        graph = DatabaseGraph()
        add_fk(graph, "orders", "user_id", "users")
        assert find_dependency_cycles(graph) == []

    def test_two_table_cycle(self):
        graph = DatabaseGraph()
        add_fk(graph, "users", "team_id", "teams")
        add_fk(graph, "teams", "owner_id", "users")
        add_fk(graph, "orders", "user_id", "users")

        cycles = find_dependency_cycles(graph)
        assert len(cycles) == 1
        assert {table.name for table in cycles[0].tables} == {"users", "teams"}
        assert len(cycles[0].edges) == 2
        assert all(edge.source.name != "orders" for edge in cycles[0].edges)

    def test_self_references_are_opt_in(self):
        graph = DatabaseGraph()
        add_fk(graph, "employees", "manager_id", "employees")

        assert find_dependency_cycles(graph) == []

        cycles = find_dependency_cycles(graph, include_self_references=True)
        assert len(cycles) == 1
        assert cycles[0].is_self_reference
        assert cycles[0].edges[0].data.constraint_name == "fk_employees_manager_id"
