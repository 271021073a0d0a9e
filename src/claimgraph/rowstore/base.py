"""
Row store gateway abstractions.

The statement store talks to a row-oriented document database through this
contract: CRUD, filtered listing with one-hop relation expansion, and
explicit transaction handles. The backend gives no referential-integrity
cascade; callers enforce it.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Union

# Special ordering/filter keys that address transport fields instead of data.
CREATED_AT = "$createdAt"
UPDATED_AT = "$updatedAt"
ROW_ID = "$id"


@dataclass
class Row:
    """One stored row: transport fields plus the `data` payload."""

    id: str
    table_id: str
    data: dict[str, Any]
    permissions: list[str] = field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None
    # one-hop relation expansion: column -> referenced row (or None if dangling)
    expanded: dict[str, "Row | None"] = field(default_factory=dict)

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)

    def snapshot(self) -> dict[str, Any]:
        """Deep-enough copy of the payload with no transport fields."""
        return strip_transport_fields(self.data)


@dataclass
class RowList:
    rows: list[Row]
    total: int


# --- filters ------------------------------------------------------------


@dataclass(frozen=True)
class Equal:
    field: str
    value: Any


@dataclass(frozen=True)
class Contains:
    """Substring match for strings, membership for lists."""

    field: str
    value: Any


@dataclass(frozen=True)
class Or:
    filters: tuple["Filter", ...]


Filter = Union[Equal, Contains, Or]


@dataclass
class RowQuery:
    """
    Fluent interface for building row listings.

    Example:
        q = (RowQuery()
             .where_equal("subject", entity_id)
             .select("*", "property.*")
             .order_desc("$createdAt")
             .limit(100))
    """

    filters: list[Filter] = field(default_factory=list)
    order_by: str | None = None
    descending: bool = False
    limit_: int = 25
    offset_: int = 0
    select_: tuple[str, ...] = ("*",)

    def where_equal(self, field_name: str, value: Any) -> "RowQuery":
        self.filters.append(Equal(field_name, value))
        return self

    def where_contains(self, field_name: str, value: Any) -> "RowQuery":
        self.filters.append(Contains(field_name, value))
        return self

    def where_any(self, *filters: Filter) -> "RowQuery":
        self.filters.append(Or(tuple(filters)))
        return self

    def order_asc(self, field_name: str) -> "RowQuery":
        self.order_by, self.descending = field_name, False
        return self

    def order_desc(self, field_name: str) -> "RowQuery":
        self.order_by, self.descending = field_name, True
        return self

    def limit(self, n: int) -> "RowQuery":
        if n < 0:
            raise ValueError("limit must be >= 0")
        self.limit_ = n
        return self

    def offset(self, n: int) -> "RowQuery":
        if n < 0:
            raise ValueError("offset must be >= 0")
        self.offset_ = n
        return self

    def select(self, *fields: str) -> "RowQuery":
        self.select_ = tuple(fields) or ("*",)
        return self

    def expansions(self) -> list[str]:
        """Relation columns requested as `column.*`."""
        return [f[:-2] for f in self.select_ if f.endswith(".*")]

    def projection(self) -> list[str] | None:
        """Plain data columns to keep, or None for all of them."""
        cols = [f for f in self.select_ if "." not in f]
        if not cols or "*" in cols:
            return None
        return cols


# --- evaluation helpers (shared by in-process backends and tests) --------


def field_value(row: Row, name: str) -> Any:
    if name == CREATED_AT:
        return row.created_at
    if name == UPDATED_AT:
        return row.updated_at
    if name == ROW_ID:
        return row.id
    return row.data.get(name)


def matches(row: Row, flt: Filter) -> bool:
    if isinstance(flt, Or):
        return any(matches(row, f) for f in flt.filters)
    value = field_value(row, flt.field)
    if isinstance(flt, Equal):
        if isinstance(flt.value, (list, tuple)) and not isinstance(value, (list, tuple)):
            return value in flt.value
        return value == flt.value
    if isinstance(value, str):
        return str(flt.value) in value
    if isinstance(value, (list, tuple)):
        return flt.value in value
    return False


def project(row: Row, columns: list[str] | None) -> Row:
    if columns is None:
        return row
    data = {k: v for k, v in row.data.items() if k in columns}
    return Row(
        id=row.id,
        table_id=row.table_id,
        data=data,
        permissions=row.permissions,
        created_at=row.created_at,
        updated_at=row.updated_at,
        expanded=row.expanded,
    )


TRANSPORT_FIELDS = (
    "$id",
    "$createdAt",
    "$updatedAt",
    "$permissions",
    "$databaseId",
    "$tableId",
    "$collectionId",
    "$sequence",
)


def strip_transport_fields(data: dict[str, Any] | None) -> dict[str, Any] | None:
    """Copy of `data` without id/timestamp/permission/table identifiers."""
    if data is None:
        return None
    out: dict[str, Any] = {}
    for k, v in data.items():
        if k in TRANSPORT_FIELDS:
            continue
        if isinstance(v, dict):
            v = dict(v)
        elif isinstance(v, list):
            v = list(v)
        out[k] = v
    return out


# --- contract -----------------------------------------------------------


class RowStore(ABC):
    """Abstract base class for row store backends.

    `relations` maps table -> {column: referenced table}; it drives the
    `column.*` one-hop expansion in `select`.
    """

    def __init__(self, relations: dict[str, dict[str, str]] | None = None):
        self.relations = relations or {}

    @abstractmethod
    async def get_row(
        self,
        table_id: str,
        row_id: str,
        *,
        select: Iterable[str] = ("*",),
        transaction_id: str | None = None,
    ) -> Row:
        """Return one row or raise RowNotFoundError."""

    @abstractmethod
    async def list_rows(self, table_id: str, query: RowQuery | None = None, *, transaction_id: str | None = None) -> RowList:
        """Filtered, ordered, paginated listing."""

    @abstractmethod
    async def create_row(
        self,
        table_id: str,
        data: dict[str, Any],
        *,
        row_id: str | None = None,
        permissions: list[str] | None = None,
        transaction_id: str | None = None,
    ) -> Row:
        """Insert a row; a generated id is used when `row_id` is None."""

    @abstractmethod
    async def update_row(
        self,
        table_id: str,
        row_id: str,
        data: dict[str, Any] | None = None,
        *,
        permissions: list[str] | None = None,
        replace: bool = False,
        transaction_id: str | None = None,
    ) -> Row:
        """Merge `data` into the row (or replace it); optionally swap permissions."""

    @abstractmethod
    async def delete_row(self, table_id: str, row_id: str, *, transaction_id: str | None = None) -> None:
        """Delete a row or raise RowNotFoundError."""

    @abstractmethod
    async def create_transaction(self) -> str:
        """Open a transaction and return its id."""

    @abstractmethod
    async def update_transaction(self, transaction_id: str, *, commit: bool = False, rollback: bool = False) -> None:
        """Commit or roll back a transaction opened with create_transaction."""

    @abstractmethod
    def savepoint(self, transaction_id: str) -> AbstractAsyncContextManager[None]:
        """
        Nested unit inside an open transaction.

        Writes made in the block are undone if it raises; the transaction
        itself stays open. Blocks on one transaction must not interleave.
        """

    async def close(self) -> None:
        return None

    # Batched variants; backends may override with a single round trip.

    async def create_rows(
        self,
        table_id: str,
        rows: list[dict[str, Any]],
        *,
        permissions: list[str] | None = None,
        transaction_id: str | None = None,
    ) -> list[Row]:
        return [
            await self.create_row(table_id, data, permissions=permissions, transaction_id=transaction_id)
            for data in rows
        ]

    async def update_rows(
        self,
        table_id: str,
        updates: list[tuple[str, dict[str, Any]]],
        *,
        transaction_id: str | None = None,
    ) -> list[Row]:
        return [
            await self.update_row(table_id, row_id, data, transaction_id=transaction_id)
            for row_id, data in updates
        ]

    async def delete_rows(self, table_id: str, row_ids: list[str], *, transaction_id: str | None = None) -> None:
        for row_id in row_ids:
            await self.delete_row(table_id, row_id, transaction_id=transaction_id)

    async def list_all(
        self,
        table_id: str,
        query: RowQuery,
        *,
        page_size: int = 100,
        transaction_id: str | None = None,
    ) -> list[Row]:
        """Exhaust a listing page by page."""
        out: list[Row] = []
        offset = 0
        while True:
            page_query = RowQuery(
                filters=list(query.filters),
                order_by=query.order_by,
                descending=query.descending,
                limit_=page_size,
                offset_=offset,
                select_=query.select_,
            )
            page = await self.list_rows(table_id, page_query, transaction_id=transaction_id)
            out.extend(page.rows)
            offset += len(page.rows)
            if len(page.rows) < page_size or offset >= page.total:
                return out
