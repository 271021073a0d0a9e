"""
In-process row store.

Writes made inside a transaction are staged and only become visible to
other callers on commit; a rollback discards them. Used for tests and
single-process tooling.
"""

from __future__ import annotations

import copy
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, AsyncIterator, Iterable

from claimgraph.errors import RowConflictError, RowNotFoundError, TransactionError

from .base import Row, RowList, RowQuery, RowStore, field_value, matches, project

logger = logging.getLogger(__name__)


@dataclass
class _Staged:
    # (table_id, row_id) -> row, or None for a staged delete
    writes: dict[tuple[str, str], Row | None] = field(default_factory=dict)


def _copy(row: Row) -> Row:
    return Row(
        id=row.id,
        table_id=row.table_id,
        data=copy.deepcopy(row.data),
        permissions=list(row.permissions),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class MemoryRowStore(RowStore):
    def __init__(self, relations: dict[str, dict[str, str]] | None = None):
        super().__init__(relations)
        self._tables: dict[str, dict[str, Row]] = {}
        self._txs: dict[str, _Staged] = {}
        self._last_ts = datetime.now(UTC)

    def _now(self) -> datetime:
        now = datetime.now(UTC)
        if now <= self._last_ts:
            now = self._last_ts + timedelta(microseconds=1)
        self._last_ts = now
        return now

    def _staged(self, transaction_id: str | None) -> _Staged | None:
        if transaction_id is None:
            return None
        tx = self._txs.get(transaction_id)
        if tx is None:
            raise TransactionError(f"unknown or closed transaction {transaction_id!r}")
        return tx

    def _lookup(self, table_id: str, row_id: str, tx: _Staged | None) -> Row | None:
        if tx is not None and (table_id, row_id) in tx.writes:
            return tx.writes[(table_id, row_id)]
        return self._tables.get(table_id, {}).get(row_id)

    def _view(self, table_id: str, tx: _Staged | None) -> list[Row]:
        rows = dict(self._tables.get(table_id, {}))
        if tx is not None:
            for (tbl, rid), staged in tx.writes.items():
                if tbl != table_id:
                    continue
                if staged is None:
                    rows.pop(rid, None)
                else:
                    rows[rid] = staged
        return list(rows.values())

    def _write(self, row: Row | None, table_id: str, row_id: str, tx: _Staged | None) -> None:
        if tx is not None:
            tx.writes[(table_id, row_id)] = row
            return
        table = self._tables.setdefault(table_id, {})
        if row is None:
            table.pop(row_id, None)
        else:
            table[row_id] = row

    def _expand(self, row: Row, columns: Iterable[str], tx: _Staged | None) -> Row:
        rels = self.relations.get(row.table_id, {})
        for col in columns:
            target = rels.get(col)
            ref = row.data.get(col)
            if target is None or not ref:
                row.expanded[col] = None
                continue
            found = self._lookup(target, str(ref), tx)
            row.expanded[col] = _copy(found) if found is not None else None
        return row

    async def get_row(
        self,
        table_id: str,
        row_id: str,
        *,
        select: Iterable[str] = ("*",),
        transaction_id: str | None = None,
    ) -> Row:
        tx = self._staged(transaction_id)
        found = self._lookup(table_id, row_id, tx)
        if found is None:
            raise RowNotFoundError(table_id, row_id)
        q = RowQuery().select(*select)
        return project(self._expand(_copy(found), q.expansions(), tx), q.projection())

    async def list_rows(
        self, table_id: str, query: RowQuery | None = None, *, transaction_id: str | None = None
    ) -> RowList:
        query = query or RowQuery()
        tx = self._staged(transaction_id)
        rows = [r for r in self._view(table_id, tx) if all(matches(r, f) for f in query.filters)]
        if query.order_by:
            key = query.order_by
            present = [r for r in rows if field_value(r, key) is not None]
            missing = [r for r in rows if field_value(r, key) is None]
            present.sort(key=lambda r: field_value(r, key), reverse=query.descending)
            rows = present + missing
        else:
            rows.sort(key=lambda r: r.created_at or datetime.min.replace(tzinfo=UTC))
        total = len(rows)
        page = rows[query.offset_ : query.offset_ + query.limit_]
        expansions = query.expansions()
        projection = query.projection()
        out = [project(self._expand(_copy(r), expansions, tx), projection) for r in page]
        return RowList(rows=out, total=total)

    async def create_row(
        self,
        table_id: str,
        data: dict[str, Any],
        *,
        row_id: str | None = None,
        permissions: list[str] | None = None,
        transaction_id: str | None = None,
    ) -> Row:
        tx = self._staged(transaction_id)
        row_id = row_id or uuid.uuid4().hex[:20]
        if self._lookup(table_id, row_id, tx) is not None:
            raise RowConflictError(table_id, row_id)
        now = self._now()
        row = Row(
            id=row_id,
            table_id=table_id,
            data=copy.deepcopy(data),
            permissions=list(permissions or []),
            created_at=now,
            updated_at=now,
        )
        self._write(row, table_id, row_id, tx)
        return _copy(row)

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
        tx = self._staged(transaction_id)
        existing = self._lookup(table_id, row_id, tx)
        if existing is None:
            raise RowNotFoundError(table_id, row_id)
        if replace:
            new_data = copy.deepcopy(data or {})
        else:
            new_data = {**copy.deepcopy(existing.data), **copy.deepcopy(data or {})}
        row = Row(
            id=row_id,
            table_id=table_id,
            data=new_data,
            permissions=list(permissions) if permissions is not None else list(existing.permissions),
            created_at=existing.created_at,
            updated_at=self._now(),
        )
        self._write(row, table_id, row_id, tx)
        return _copy(row)

    async def delete_row(self, table_id: str, row_id: str, *, transaction_id: str | None = None) -> None:
        tx = self._staged(transaction_id)
        if self._lookup(table_id, row_id, tx) is None:
            raise RowNotFoundError(table_id, row_id)
        self._write(None, table_id, row_id, tx)

    async def create_transaction(self) -> str:
        transaction_id = uuid.uuid4().hex
        self._txs[transaction_id] = _Staged()
        return transaction_id

    async def update_transaction(self, transaction_id: str, *, commit: bool = False, rollback: bool = False) -> None:
        if commit == rollback:
            raise TransactionError("exactly one of commit/rollback must be set")
        tx = self._txs.pop(transaction_id, None)
        if tx is None:
            raise TransactionError(f"unknown or closed transaction {transaction_id!r}")
        if rollback:
            logger.debug("transaction %s rolled back (%d staged writes)", transaction_id, len(tx.writes))
            return
        for (table_id, row_id), row in tx.writes.items():
            self._write(row, table_id, row_id, None)
        logger.debug("transaction %s committed (%d writes)", transaction_id, len(tx.writes))

    @asynccontextmanager
    async def savepoint(self, transaction_id: str) -> AsyncIterator[None]:
        tx = self._staged(transaction_id)
        mark = dict(tx.writes)
        try:
            yield
        except BaseException:
            tx.writes = mark
            raise

    def count(self, table_id: str) -> int:
        return len(self._tables.get(table_id, {}))
