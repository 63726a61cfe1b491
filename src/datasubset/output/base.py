from abc import ABC, abstractmethod
from collections.abc import Iterator, Sequence
from typing import TYPE_CHECKING, Generic, TypeVar

from datasubset.config import TableExportConfig
from datasubset.models import Row, TableNode

if TYPE_CHECKING:
    from datasubset.core.dependency_graph import DatabaseGraph

T = TypeVar("T")


class ItemGenerator(ABC, Generic[T]):
    """
    Turns exported rows into output items.

    The export traversal calls ``init_export`` once per run, yields the
    items of ``generate_header`` first, asks for ``generate_table_metadata``
    before the first row of every table, and calls ``generate_item`` once for
    every exported row.
    """

    def init_export(self) -> None:
        """Reset per-export caches."""
        pass

    def generate_header(
        self, export_configs: Sequence[TableExportConfig], graph: "DatabaseGraph"
    ) -> Iterator[T]:
        """Items written before any row. None by default."""
        return iter(())

    def generate_table_metadata(self, node: TableNode, row: Row) -> T | None:
        """Item written before the first row of ``node``, if any."""
        return None

    @abstractmethod
    def generate_item(self, node: TableNode, row: Row) -> T:
        """Output item for one row."""
        pass
