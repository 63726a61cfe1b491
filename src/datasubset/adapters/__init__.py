from datasubset.adapters.base import DatabaseAdapter, DependencyDiscoverer, RowSource
from datasubset.adapters.postgresql import PostgreSQLAdapter
from datasubset.adapters.sqlite import SQLiteAdapter

__all__ = [
    "DatabaseAdapter",
    "DependencyDiscoverer",
    "RowSource",
    "PostgreSQLAdapter",
    "SQLiteAdapter",
]
