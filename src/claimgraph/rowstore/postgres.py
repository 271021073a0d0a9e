"""
Postgres row store (asyncpg).

All tables share one JSONB-backed relation keyed by (table_id, row_id).
Transactions hold a dedicated pool connection until commit/rollback; every
statement issued under a transaction runs in its own savepoint so a single
failing row does not abort the whole unit. `savepoint` groups several
statements into one nested unit.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Iterable

import asyncpg

from claimgraph.errors import RowConflictError, RowNotFoundError, TransactionError

from .base import CREATED_AT, ROW_ID, UPDATED_AT, Contains, Equal, Filter, Or, Row, RowList, RowQuery, RowStore, project

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS claimgraph_rows (
    table_id    TEXT NOT NULL,
    row_id      TEXT NOT NULL,
    data        JSONB NOT NULL DEFAULT '{}'::jsonb,
    permissions TEXT[] NOT NULL DEFAULT '{}',
    created_at  TIMESTAMPTZ NOT NULL DEFAULT clock_timestamp(),
    updated_at  TIMESTAMPTZ NOT NULL DEFAULT clock_timestamp(),
    PRIMARY KEY (table_id, row_id)
);
CREATE INDEX IF NOT EXISTS idx_claimgraph_rows_created ON claimgraph_rows (table_id, created_at);
CREATE INDEX IF NOT EXISTS idx_claimgraph_rows_data ON claimgraph_rows USING GIN (data jsonb_path_ops);
"""

_COLUMNS = "row_id, table_id, data, permissions, created_at, updated_at"
_SPECIAL = {ROW_ID: "row_id", CREATED_AT: "created_at", UPDATED_AT: "updated_at"}


async def _init_connection(con: asyncpg.Connection) -> None:
    await con.set_type_codec("jsonb", encoder=json.dumps, decoder=json.loads, schema="pg_catalog")


@dataclass
class _Tx:
    con: asyncpg.Connection
    tx: Any
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class _Params:
    def __init__(self, *initial: Any):
        self.values: list[Any] = list(initial)

    def add(self, value: Any) -> str:
        self.values.append(value)
        return f"${len(self.values)}"


def _compile(flt: Filter, p: _Params) -> str:
    if isinstance(flt, Or):
        if not flt.filters:
            return "FALSE"
        return "(" + " OR ".join(_compile(f, p) for f in flt.filters) + ")"

    if isinstance(flt, Equal):
        values = list(flt.value) if isinstance(flt.value, (list, tuple)) else [flt.value]
        parts = []
        for v in values:
            if flt.field in _SPECIAL:
                parts.append(f"{_SPECIAL[flt.field]} = {p.add(v)}")
            elif v is None:
                k = p.add(flt.field)
                parts.append(f"(data -> {k}::text IS NULL OR data -> {k}::text = 'null'::jsonb)")
            else:
                parts.append(f"data -> {p.add(flt.field)}::text = {p.add(v)}::jsonb")
        return "(" + " OR ".join(parts) + ")" if parts else "FALSE"

    if not isinstance(flt, Contains):
        raise TypeError(f"unsupported filter {flt!r}")
    k = p.add(flt.field)
    arr = p.add([flt.value])
    s = p.add(str(flt.value))
    return (
        f"((jsonb_typeof(data -> {k}::text) = 'array' AND data -> {k}::text @> {arr}::jsonb)"
        f" OR (jsonb_typeof(data -> {k}::text) = 'string' AND strpos(data ->> {k}::text, {s}::text) > 0))"
    )


def _to_row(rec: asyncpg.Record) -> Row:
    return Row(
        id=rec["row_id"],
        table_id=rec["table_id"],
        data=dict(rec["data"] or {}),
        permissions=list(rec["permissions"] or []),
        created_at=rec["created_at"],
        updated_at=rec["updated_at"],
    )


@dataclass
class PostgresRowStore(RowStore):
    pool: asyncpg.Pool
    relations: dict[str, dict[str, str]] = field(default_factory=dict)
    _txs: dict[str, _Tx] = field(default_factory=dict, init=False)

    @classmethod
    async def connect(cls, dsn: str, relations: dict[str, dict[str, str]] | None = None) -> "PostgresRowStore":
        pool = await asyncpg.create_pool(dsn=dsn, min_size=1, max_size=10, init=_init_connection)
        return cls(pool=pool, relations=relations or {})

    async def close(self) -> None:
        for transaction_id in list(self._txs):
            logger.warning("closing pool with open transaction %s; rolling back", transaction_id)
            await self.update_transaction(transaction_id, rollback=True)
        await self.pool.close()

    async def ensure_schema(self) -> None:
        async with self.pool.acquire() as con:
            await con.execute(SCHEMA)

    @asynccontextmanager
    async def _conn(self, transaction_id: str | None) -> AsyncIterator[asyncpg.Connection]:
        if transaction_id is None:
            async with self.pool.acquire() as con:
                yield con
            return
        handle = self._txs.get(transaction_id)
        if handle is None:
            raise TransactionError(f"unknown or closed transaction {transaction_id!r}")
        async with handle.lock:
            async with handle.con.transaction():
                yield handle.con

    @asynccontextmanager
    async def savepoint(self, transaction_id: str) -> AsyncIterator[None]:
        handle = self._txs.get(transaction_id)
        if handle is None:
            raise TransactionError(f"unknown or closed transaction {transaction_id!r}")
        async with handle.lock:
            sp = handle.con.transaction()
            await sp.start()
        try:
            yield
        except BaseException:
            async with handle.lock:
                await sp.rollback()
            raise
        async with handle.lock:
            await sp.commit()

    async def _expand(self, con: asyncpg.Connection, rows: list[Row], columns: list[str]) -> None:
        if not rows or not columns:
            return
        rels = self.relations.get(rows[0].table_id, {})
        for col in columns:
            target = rels.get(col)
            ids = sorted({str(r.data[col]) for r in rows if r.data.get(col)})
            found: dict[str, Row] = {}
            if target and ids:
                recs = await con.fetch(
                    f"SELECT {_COLUMNS} FROM claimgraph_rows WHERE table_id=$1 AND row_id = ANY($2::text[])",
                    target,
                    ids,
                )
                found = {rec["row_id"]: _to_row(rec) for rec in recs}
            for r in rows:
                ref = r.data.get(col)
                r.expanded[col] = found.get(str(ref)) if ref else None

    async def get_row(
        self,
        table_id: str,
        row_id: str,
        *,
        select: Iterable[str] = ("*",),
        transaction_id: str | None = None,
    ) -> Row:
        q = RowQuery().select(*select)
        async with self._conn(transaction_id) as con:
            rec = await con.fetchrow(
                f"SELECT {_COLUMNS} FROM claimgraph_rows WHERE table_id=$1 AND row_id=$2",
                table_id,
                row_id,
            )
            if rec is None:
                raise RowNotFoundError(table_id, row_id)
            row = _to_row(rec)
            await self._expand(con, [row], q.expansions())
        return project(row, q.projection())

    async def list_rows(
        self, table_id: str, query: RowQuery | None = None, *, transaction_id: str | None = None
    ) -> RowList:
        query = query or RowQuery()
        p = _Params(table_id)
        where = ["table_id = $1"] + [_compile(f, p) for f in query.filters]
        where_sql = " AND ".join(where)
        count_params = list(p.values)

        if query.order_by in _SPECIAL:
            order_sql = _SPECIAL[query.order_by]
        elif query.order_by:
            order_sql = f"data -> {p.add(query.order_by)}::text"
        else:
            order_sql = "created_at"
        direction = "DESC" if query.descending else "ASC"
        limit = p.add(query.limit_)
        offset = p.add(query.offset_)

        async with self._conn(transaction_id) as con:
            total = await con.fetchval(f"SELECT count(*) FROM claimgraph_rows WHERE {where_sql}", *count_params)
            recs = await con.fetch(
                f"SELECT {_COLUMNS} FROM claimgraph_rows WHERE {where_sql} "
                f"ORDER BY {order_sql} {direction} NULLS LAST, row_id {direction} "
                f"LIMIT {limit} OFFSET {offset}",
                *p.values,
            )
            rows = [_to_row(r) for r in recs]
            await self._expand(con, rows, query.expansions())
        projection = query.projection()
        return RowList(rows=[project(r, projection) for r in rows], total=int(total or 0))

    async def create_row(
        self,
        table_id: str,
        data: dict[str, Any],
        *,
        row_id: str | None = None,
        permissions: list[str] | None = None,
        transaction_id: str | None = None,
    ) -> Row:
        row_id = row_id or uuid.uuid4().hex[:20]
        async with self._conn(transaction_id) as con:
            try:
                rec = await con.fetchrow(
                    f"""
                    INSERT INTO claimgraph_rows(table_id, row_id, data, permissions)
                    VALUES($1, $2, $3::jsonb, $4::text[])
                    RETURNING {_COLUMNS}
                    """,
                    table_id,
                    row_id,
                    data,
                    list(permissions or []),
                )
            except asyncpg.exceptions.UniqueViolationError as e:
                raise RowConflictError(table_id, row_id) from e
        return _to_row(rec)

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
        async with self._conn(transaction_id) as con:
            rec = await con.fetchrow(
                f"""
                UPDATE claimgraph_rows
                SET data = CASE WHEN $3::boolean THEN $4::jsonb ELSE data || $4::jsonb END,
                    permissions = COALESCE($5::text[], permissions),
                    updated_at = clock_timestamp()
                WHERE table_id=$1 AND row_id=$2
                RETURNING {_COLUMNS}
                """,
                table_id,
                row_id,
                replace,
                data or {},
                list(permissions) if permissions is not None else None,
            )
        if rec is None:
            raise RowNotFoundError(table_id, row_id)
        return _to_row(rec)

    async def delete_row(self, table_id: str, row_id: str, *, transaction_id: str | None = None) -> None:
        async with self._conn(transaction_id) as con:
            deleted = await con.fetchval(
                "DELETE FROM claimgraph_rows WHERE table_id=$1 AND row_id=$2 RETURNING row_id",
                table_id,
                row_id,
            )
        if deleted is None:
            raise RowNotFoundError(table_id, row_id)

    async def delete_rows(self, table_id: str, row_ids: list[str], *, transaction_id: str | None = None) -> None:
        async with self._conn(transaction_id) as con:
            deleted = await con.fetch(
                "DELETE FROM claimgraph_rows WHERE table_id=$1 AND row_id = ANY($2::text[]) RETURNING row_id",
                table_id,
                row_ids,
            )
        missing = set(row_ids) - {r["row_id"] for r in deleted}
        if missing:
            raise RowNotFoundError(table_id, sorted(missing)[0])

    async def create_transaction(self) -> str:
        con = await self.pool.acquire()
        tx = con.transaction()
        try:
            await tx.start()
        except Exception:
            await self.pool.release(con)
            raise
        transaction_id = uuid.uuid4().hex
        self._txs[transaction_id] = _Tx(con=con, tx=tx)
        return transaction_id

    async def update_transaction(self, transaction_id: str, *, commit: bool = False, rollback: bool = False) -> None:
        if commit == rollback:
            raise TransactionError("exactly one of commit/rollback must be set")
        handle = self._txs.pop(transaction_id, None)
        if handle is None:
            raise TransactionError(f"unknown or closed transaction {transaction_id!r}")
        try:
            async with handle.lock:
                if commit:
                    await handle.tx.commit()
                else:
                    await handle.tx.rollback()
        finally:
            await self.pool.release(handle.con)
