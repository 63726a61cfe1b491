#!/usr/bin/env python3
"""Example: Using datasubset as a Python library.

This script exports one order together with the customer, product and
company rows it depends on, plus the comments attached to it through an
implicit relation. Use it as a starting point for automated fixture dumps.

Usage:
    DATABASE_URL=postgres://localhost/myapp python python-api-example.py
    DATABASE_URL=postgres://localhost/myapp ORDER_ID=456 python python-api-example.py
"""

import os
from pathlib import Path

from datasubset.config import (
    ImplicitRelation,
    PrimaryKeyValue,
    TableConfiguration,
    TableExportConfig,
)
from datasubset.core.dependency_graph import TableDependencyGraphBuilder
from datasubset.core.engine import ExportTraversal
from datasubset.models import ColumnBinding
from datasubset.output.sql import InsertStatementGenerator
from datasubset.utils.connection import get_adapter_for_url


def export_order_subset(database_url: str, order_id: int) -> list[str]:
    """Export an order and every row it needs to be loaded elsewhere.

    Args:
        database_url: Database connection URL
        order_id: The order ID to export

    Returns:
        INSERT statements, referenced rows first
    """
    # Comments point at orders through (subject_type, subject_id), not a foreign key
    order_comments = TableConfiguration(
        "orders",
        implicit_relations=[
            ImplicitRelation(
                "public",
                "comments",
                [ColumnBinding("id", "subject_id")],
                "subject_type = 'order'",
            )
        ],
    )
    roots = [
        TableExportConfig(
            "public", "orders", primary_key_values=[PrimaryKeyValue("id", str(order_id))]
        )
    ]

    with get_adapter_for_url(database_url) as adapter:
        adapter.connect(database_url)
        graph = TableDependencyGraphBuilder(adapter).build_dependency_graph(
            ["public"], [order_comments]
        )

        traversal = ExportTraversal(adapter, InsertStatementGenerator(adapter))
        with adapter.snapshot_transaction():
            statements = list(traversal.export(roots, graph))

    # Print summary
    stats = traversal.stats
    print(f"Exported {stats.rows_exported} rows from {len(stats.rows_per_table)} tables:")
    for table, count in stats.rows_per_table.items():
        print(f"  - {table}: {count} rows")

    return statements


def main():
    database_url = os.environ.get("DATABASE_URL")
    if not database_url:
        print("Error: DATABASE_URL environment variable is required")
        print("")
        print("Example:")
        print("  DATABASE_URL=postgres://localhost/myapp python python-api-example.py")
        return

    order_id = int(os.environ.get("ORDER_ID", "123"))
    print(f"Exporting order {order_id}...")
    print("")

    statements = export_order_subset(database_url, order_id)

    output_path = Path(f"order_{order_id}_subset.sql")
    output_path.write_text("\n".join(statements) + "\n")
    print("")
    print(f"Saved to {output_path}")


if __name__ == "__main__":
    main()
