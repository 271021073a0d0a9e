"""
Audit & rollback engine.

Every mutation writes one append-only audit row inside its own transaction.
A rollback inverts a recorded mutation and is itself audited with a new
`rollback` row; review only flips `status`.
"""

from __future__ import annotations

import copy
import logging
from datetime import UTC, datetime
from typing import Any

from claimgraph.errors import MissingSnapshotError, RollbackNotSupportedError, RowNotFoundError, ValidationError
from claimgraph.identity import Identity, IdentityProvider, StaticIdentityProvider
from claimgraph.rowstore.base import CREATED_AT, RowQuery, RowStore, strip_transport_fields

from .cascade import CascadePlanner
from .models import AuditEntry, TableIds
from .permissions import audit_permissions, generate_permissions
from .transactions import Tracked, TransactionOrchestrator

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_APPROVED = "approved"
STATUS_REJECTED = "rejected"

ROLLBACK_ACTION = "rollback"
INVERTIBLE_ACTIONS = frozenset({"create", "update", "updatePermissions", "delete"})


def _snapshot(data: dict[str, Any] | None) -> dict[str, Any] | None:
    return copy.deepcopy(strip_transport_fields(data))


class AuditEngine:
    def __init__(
        self,
        rowstore: RowStore,
        orchestrator: TransactionOrchestrator,
        audit_table_id: str | None,
        identity: IdentityProvider | None = None,
        reviewer_team_id: str | None = None,
        tables: TableIds | None = None,
    ):
        self.rowstore = rowstore
        self.orchestrator = orchestrator
        self.audit_table_id = audit_table_id or None
        self.identity = identity or StaticIdentityProvider(None)
        self.reviewer_team_id = reviewer_team_id
        self.tables = tables or TableIds()
        self.planner = CascadePlanner(rowstore, self.tables)

    @property
    def enabled(self) -> bool:
        return self.audit_table_id is not None

    def _require_table(self) -> str:
        if self.audit_table_id is None:
            raise ValidationError("auditing is not configured")
        return self.audit_table_id

    async def _actor(self) -> Identity | None:
        try:
            return await self.identity.current_identity()
        except Exception as e:
            logger.warning("identity lookup failed, auditing as anonymous: %s", e)
            return None

    async def create_entry(
        self,
        action: str,
        table_id: str,
        row_id: str | None,
        *,
        before: dict[str, Any] | None = None,
        after: dict[str, Any] | None = None,
        status: str = STATUS_PENDING,
        transaction_id: str | None = None,
        changes: list[dict[str, Any]] | None = None,
        note: str | None = None,
        related_audit_id: str | None = None,
        count: int | None = None,
    ) -> AuditEntry | None:
        """Write one audit row; returns None when auditing is off."""
        if self.audit_table_id is None:
            return None
        actor = await self._actor()
        data = {
            "action": action,
            "tableId": table_id,
            "rowId": row_id,
            "before": _snapshot(before),
            "after": _snapshot(after),
            "status": status,
            "transactionId": transaction_id,
            "changes": copy.deepcopy(changes or []),
            "userId": actor.user_id if actor else None,
            "userEmail": actor.email if actor else None,
            "note": note,
            "relatedAuditId": related_audit_id,
            "count": count,
        }
        row = await self.rowstore.create_row(
            self.audit_table_id,
            data,
            permissions=audit_permissions(self.reviewer_team_id, actor.user_id if actor else None),
            transaction_id=transaction_id,
        )
        logger.debug("audit %s %s/%s -> %s", action, table_id, row_id, row.id)
        return AuditEntry.from_row(row)

    # --- reads ------------------------------------------------------------

    async def get_entry(self, entry_id: str) -> AuditEntry:
        row = await self.rowstore.get_row(self._require_table(), entry_id)
        return AuditEntry.from_row(row)

    async def list_entries(
        self,
        *,
        table_id: str | None = None,
        row_id: str | None = None,
        user_id: str | None = None,
        action: str | None = None,
        status: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[AuditEntry], int]:
        q = RowQuery().order_desc(CREATED_AT).limit(limit).offset(offset)
        for column, value in (
            ("tableId", table_id),
            ("rowId", row_id),
            ("userId", user_id),
            ("action", action),
            ("status", status),
        ):
            if value is not None:
                q.where_equal(column, value)
        page = await self.rowstore.list_rows(self._require_table(), q)
        return [AuditEntry.from_row(r) for r in page.rows], page.total

    async def history(self, row_id: str, limit: int = 20) -> list[AuditEntry]:
        entries, _ = await self.list_entries(row_id=row_id, limit=limit)
        return entries

    # --- review -----------------------------------------------------------

    async def _review(self, entry_id: str, status: str, note: str | None) -> AuditEntry:
        table = self._require_table()
        actor = await self._actor()
        row = await self.rowstore.update_row(
            table,
            entry_id,
            {
                "status": status,
                "reviewedAt": datetime.now(UTC).isoformat(),
                "reviewedBy": actor.user_id if actor else None,
                "reviewNote": note,
            },
        )
        logger.info("audit entry %s %s", entry_id, status)
        return AuditEntry.from_row(row)

    async def approve(self, entry_id: str, note: str | None = None) -> AuditEntry:
        return await self._review(entry_id, STATUS_APPROVED, note)

    async def reject(self, entry_id: str, note: str | None = None) -> AuditEntry:
        return await self._review(entry_id, STATUS_REJECTED, note)

    # --- rollback ---------------------------------------------------------

    async def rollback(
        self,
        entry: AuditEntry | str,
        note: str | None = None,
        team_id: str | None = None,
    ) -> AuditEntry | None:
        """
        Invert a recorded mutation in a new transaction.

        Returns the `rollback` audit entry (None when auditing is off). Bulk
        actions and prior rollbacks cannot be inverted.
        """
        if isinstance(entry, str):
            entry = await self.get_entry(entry)
        if entry.action not in INVERTIBLE_ACTIONS:
            raise RollbackNotSupportedError(f"rollback not supported for action {entry.action!r}")
        if entry.action != "create" and entry.before is None:
            raise MissingSnapshotError(f"audit entry {entry.id} has no prior state to restore")

        async def handler(transaction_id: str) -> Tracked:
            if entry.action == "create":
                changes = await self._undo_create(entry, transaction_id)
            elif entry.action == "update":
                await self.rowstore.update_row(
                    entry.table_id, entry.row_id, copy.deepcopy(entry.before), replace=True, transaction_id=transaction_id
                )
                changes = [{"action": "update", "table": entry.table_id, "rowId": entry.row_id}]
            elif entry.action == "updatePermissions":
                await self.rowstore.update_row(
                    entry.table_id,
                    entry.row_id,
                    permissions=list(entry.before.get("permissions") or []),
                    transaction_id=transaction_id,
                )
                changes = [{"action": "updatePermissions", "table": entry.table_id, "rowId": entry.row_id}]
            else:
                changes = await self._undo_delete(entry, team_id, transaction_id)

            audit = await self.create_entry(
                ROLLBACK_ACTION,
                entry.table_id,
                entry.row_id,
                before=entry.after,
                after=entry.before,
                transaction_id=transaction_id,
                changes=changes,
                note=note,
                related_audit_id=entry.id,
            )
            return Tracked(audit, changes)

        out = await self.orchestrator.run(f"rollback:{entry.action}", handler)
        logger.info("rolled back audit entry %s (%s %s/%s)", entry.id, entry.action, entry.table_id, entry.row_id)
        return out

    async def _undo_create(self, entry: AuditEntry, transaction_id: str) -> list[dict[str, Any]]:
        # claims, qualifiers and references added since go with the row
        delete_set = await self.planner.plan(entry.table_id, entry.row_id, transaction_id=transaction_id)
        await self.planner.execute(delete_set, transaction_id)
        await self.planner.sweep(delete_set, transaction_id)
        return delete_set.changes()

    async def _require_parents(
        self,
        table_id: str,
        row_id: str,
        data: dict[str, Any],
        restored: set[tuple[str, str]],
        transaction_id: str,
    ) -> None:
        """Every relation column of a restored row must point at a live row."""
        for column, target in self.tables.relations().get(table_id, {}).items():
            ref = data.get(column)
            if not ref or (target, str(ref)) in restored:
                continue
            try:
                await self.rowstore.get_row(target, str(ref), transaction_id=transaction_id)
            except RowNotFoundError:
                raise ValidationError(
                    f"cannot restore {table_id}/{row_id}: {column} {ref!r} no longer exists in {target!r}"
                ) from None

    async def _undo_delete(
        self, entry: AuditEntry, team_id: str | None, transaction_id: str
    ) -> list[dict[str, Any]]:
        # cascade snapshots are leaves-first; re-create parents first
        restores = [
            (c["table"], c["rowId"], c["before"], c.get("permissions"))
            for c in reversed(entry.changes)
            if c.get("action") == "delete" and c.get("before") is not None
        ]
        if not any((t, r) == (entry.table_id, entry.row_id) for t, r, _, _ in restores):
            restores.insert(0, (entry.table_id, entry.row_id, entry.before, None))

        restored: set[tuple[str, str]] = set()
        for table_id, row_id, before, permissions in restores:
            await self._require_parents(table_id, row_id, before, restored, transaction_id)
            await self.rowstore.create_row(
                table_id,
                copy.deepcopy(before),
                row_id=row_id,
                permissions=list(permissions) if permissions is not None else generate_permissions(team_id),
                transaction_id=transaction_id,
            )
            restored.add((table_id, row_id))
        return [{"action": "create", "table": t, "rowId": r} for t, r, _, _ in restores]
