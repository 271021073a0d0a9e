"""
Cascade planner.

The row store has no referential-integrity cascade, so deletes of an entity
or a claim are planned here: every dependent row is enumerated (and
snapshotted) through read queries first, then the ordered set is deleted
leaves-first inside the caller's transaction.

    planner = CascadePlanner(rowstore, tables)
    delete_set = await planner.plan(tables.entities, entity_id, transaction_id=tx)
    await planner.execute(delete_set, tx)
    await planner.sweep(delete_set, tx)  # right before commit
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from claimgraph.rowstore.base import ROW_ID, Row, RowQuery, RowStore

from .models import TableIds

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlannedDelete:
    table_id: str
    row_id: str
    before: dict[str, Any] | None = None
    permissions: list[str] = field(default_factory=list)

    def change(self) -> dict[str, Any]:
        return {
            "action": "delete",
            "table": self.table_id,
            "rowId": self.row_id,
            "before": self.before,
            "permissions": list(self.permissions),
        }


@dataclass
class DeleteSet:
    """Ordered leaves-first; the root is always the last item."""

    root_table: str
    root_id: str
    items: list[PlannedDelete] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.items)

    def __iter__(self):
        return iter(self.items)

    @property
    def root(self) -> PlannedDelete:
        return self.items[-1]

    def changes(self) -> list[dict[str, Any]]:
        return [item.change() for item in self.items]

    def row_ids(self, table_id: str) -> list[str]:
        return [item.row_id for item in self.items if item.table_id == table_id]


def _planned(row: Row) -> PlannedDelete:
    return PlannedDelete(table_id=row.table_id, row_id=row.id, before=row.snapshot(), permissions=list(row.permissions))


class CascadePlanner:
    def __init__(self, rowstore: RowStore, tables: TableIds, page_size: int = 100):
        self.rowstore = rowstore
        self.tables = tables
        self.page_size = page_size

    async def _children(self, table_id: str, column: str, parent_id: str, transaction_id: str | None) -> list[Row]:
        q = RowQuery().where_equal(column, parent_id).order_asc(ROW_ID)
        return await self.rowstore.list_all(table_id, q, page_size=self.page_size, transaction_id=transaction_id)

    async def _claim_dependents(self, claim_id: str, transaction_id: str | None) -> list[PlannedDelete]:
        refs = await self._children(self.tables.references, "claim", claim_id, transaction_id)
        quals = await self._children(self.tables.qualifiers, "claim", claim_id, transaction_id)
        return [_planned(r) for r in refs] + [_planned(q) for q in quals]

    async def _claim_tree(self, claim: Row, transaction_id: str | None) -> list[PlannedDelete]:
        return await self._claim_dependents(claim.id, transaction_id) + [_planned(claim)]

    async def plan(self, table_id: str, root_id: str, transaction_id: str | None = None) -> DeleteSet:
        """Enumerate the root and all its dependents without deleting anything."""
        root = await self.rowstore.get_row(table_id, root_id, transaction_id=transaction_id)
        delete_set = DeleteSet(root_table=table_id, root_id=root_id)

        if table_id == self.tables.entities:
            for claim in await self._children(self.tables.claims, "subject", root_id, transaction_id):
                delete_set.items.extend(await self._claim_tree(claim, transaction_id))
        elif table_id == self.tables.claims:
            delete_set.items.extend(await self._claim_dependents(root_id, transaction_id))

        delete_set.items.append(_planned(root))
        logger.debug("planned cascade for %s/%s: %d rows", table_id, root_id, len(delete_set))
        return delete_set

    async def execute(self, delete_set: DeleteSet, transaction_id: str) -> None:
        for item in delete_set:
            await self.rowstore.delete_row(item.table_id, item.row_id, transaction_id=transaction_id)

    async def sweep(self, delete_set: DeleteSet, transaction_id: str) -> list[PlannedDelete]:
        """
        Delete dependents that appeared after planning.

        Re-enumerates children of every deleted entity and claim inside the
        transaction, deletes whatever is still there and appends it to the
        set. Returns the stragglers.
        """
        stragglers: list[PlannedDelete] = []
        for entity_id in delete_set.row_ids(self.tables.entities):
            for claim in await self._children(self.tables.claims, "subject", entity_id, transaction_id):
                stragglers.extend(await self._claim_tree(claim, transaction_id))
        for claim_id in delete_set.row_ids(self.tables.claims):
            stragglers.extend(await self._claim_dependents(claim_id, transaction_id))

        for item in stragglers:
            await self.rowstore.delete_row(item.table_id, item.row_id, transaction_id=transaction_id)
        if stragglers:
            logger.warning(
                "cascade for %s/%s swept %d rows created after planning",
                delete_set.root_table,
                delete_set.root_id,
                len(stragglers),
            )
            # keep the root last
            root = delete_set.items.pop()
            delete_set.items.extend(stragglers)
            delete_set.items.append(root)
        return stragglers
