"""
datasubset - Export referentially-consistent subsets of a relational database.

Starting from configured root rows, walks foreign keys and declared implicit
relations and emits every required row in an order that is safe to re-insert,
useful for seeding test databases and moving bounded slices of data.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
