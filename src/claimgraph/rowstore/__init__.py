"""Row store gateway implementations."""

from .base import Contains, Equal, Or, Row, RowList, RowQuery, RowStore, strip_transport_fields
from .memory import MemoryRowStore
from .postgres import PostgresRowStore

__all__ = [
    "Contains",
    "Equal",
    "Or",
    "Row",
    "RowList",
    "RowQuery",
    "RowStore",
    "strip_transport_fields",
    "MemoryRowStore",
    "PostgresRowStore",
]
