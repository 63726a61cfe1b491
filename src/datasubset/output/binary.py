"""
MessagePack export format.

The stream is a sequence of self-delimiting MessagePack maps, each tagged
with a ``type`` field:

- ``export``: written first; format version, database type and UTC timestamp
- ``table``: written before the first row of a table; its columns and key
- ``row``: one exported row; the table key and the column values in order

Values MessagePack cannot represent natively (dates, decimals, UUIDs, ...)
are written as strings.
"""

import hashlib
from collections.abc import Iterator, Sequence
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Protocol
from uuid import UUID

import msgpack

from datasubset.config import DatabaseType, TableExportConfig
from datasubset.constants import EXPORT_FORMAT_VERSION
from datasubset.models import Row, TableMetadata, TableNode
from datasubset.output.base import ItemGenerator

if TYPE_CHECKING:
    from datasubset.core.dependency_graph import DatabaseGraph


class TableMetadataProvider(Protocol):
    def get_table_metadata(self, node: TableNode) -> TableMetadata: ...


def table_key(node: TableNode) -> int:
    """Stable 32-bit key identifying a table within a binary export."""
    digest = hashlib.sha1(node.full_name.lower().encode("utf-8")).digest()
    return int.from_bytes(digest[:4], "big")


def _encode_value(value: Any) -> Any:
    """Convert values MessagePack cannot serialize."""
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, timedelta):
        return value.total_seconds()
    if isinstance(value, (Decimal, UUID)):
        return str(value)
    if isinstance(value, memoryview):
        return value.tobytes()
    if isinstance(value, bytearray):
        return bytes(value)
    return str(value)


class BinaryExporter(ItemGenerator[bytes]):
    """
    Generates MessagePack records for exported rows.

    Usage:
        exporter = BinaryExporter(adapter, DatabaseType.POSTGRES)
        for record in traversal.export(roots, graph):
            out.write(record)
    """

    def __init__(self, metadata_provider: TableMetadataProvider, db_type: DatabaseType):
        self.metadata_provider = metadata_provider
        self.db_type = db_type

    def _pack(self, record: dict[str, Any]) -> bytes:
        return msgpack.packb(record, default=_encode_value, use_bin_type=True)

    def generate_header(
        self, export_configs: Sequence[TableExportConfig], graph: "DatabaseGraph"
    ) -> Iterator[bytes]:
        yield self._pack(
            {
                "type": "export",
                "version": EXPORT_FORMAT_VERSION,
                "database_type": self.db_type.value,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "roots": [config.full_name for config in export_configs],
            }
        )

    def generate_table_metadata(self, node: TableNode, row: Row) -> bytes:
        metadata = self.metadata_provider.get_table_metadata(node)
        return self._pack(
            {
                "type": "table",
                "table_key": table_key(node),
                "schema": node.schema,
                "table": node.name,
                "primary_key": list(node.primary_key_columns),
                "columns": [
                    {"name": column.name, "data_type": column.data_type}
                    for column in metadata.columns
                ],
            }
        )

    def generate_item(self, node: TableNode, row: Row) -> bytes:
        return self._pack(
            {
                "type": "row",
                "table_key": table_key(node),
                "columns": [column for column, _ in row],
                "values": [value for _, value in row],
            }
        )


def read_records(data: bytes) -> Iterator[dict[str, Any]]:
    """Decode a binary export back into its records."""
    unpacker = msgpack.Unpacker(raw=False)
    unpacker.feed(data)
    yield from unpacker
