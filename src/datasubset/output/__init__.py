from datasubset.output.base import ItemGenerator
from datasubset.output.binary import BinaryExporter
from datasubset.output.sql import InsertStatementGenerator

__all__ = [
    "ItemGenerator",
    "InsertStatementGenerator",
    "BinaryExporter",
]
