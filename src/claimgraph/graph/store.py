"""
Statement store API.

Each mutation runs as one orchestrated transaction: read the before state,
apply the row mutation (through the cascade planner for deletes), write one
audit entry, return the mutated record. Oversized literals are offloaded to
object storage before the row is written; uploads are discarded again if
the transaction does not commit.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from claimgraph.errors import ValidationError
from claimgraph.rowstore.base import CREATED_AT, ROW_ID, Contains, Row, RowQuery, RowStore
from claimgraph.values.offload import ValueOffloader

from .audit import AuditEngine
from .cascade import CascadePlanner
from .models import (
    Claim,
    Entity,
    Qualifier,
    Reference,
    TableIds,
    is_relation,
    normalize_value,
    serialize_value,
)
from .permissions import generate_permissions
from .transactions import Tracked, TransactionOrchestrator

logger = logging.getLogger(__name__)

CLAIM_READ_LIMIT = 100
CHILD_READ_LIMIT = 50

_CLAIM_SELECT = ("*", "subject.*", "property.*", "value_relation.*")
_QUALIFIER_SELECT = ("*", "property.*", "value_relation.*")
_REFERENCE_SELECT = ("*", "reference.*")


@dataclass
class BulkError:
    index: int
    row_id: str | None
    error: Exception

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "rowId": self.row_id,
            "error": type(self.error).__name__,
            "message": str(self.error),
        }


@dataclass
class BulkResult:
    results: list[Any] = field(default_factory=list)
    errors: list[BulkError] = field(default_factory=list)


def _item_id(item: Any) -> str | None:
    if isinstance(item, dict):
        return item.get("id") or item.get(ROW_ID)
    return None


class StatementStore:
    def __init__(
        self,
        rowstore: RowStore,
        orchestrator: TransactionOrchestrator,
        audit: AuditEngine,
        offloader: ValueOffloader,
        tables: TableIds | None = None,
        default_team_id: str | None = None,
    ):
        self.rowstore = rowstore
        self.orchestrator = orchestrator
        self.audit = audit
        self.offloader = offloader
        self.registry = offloader.registry
        self.tables = tables or TableIds()
        self.planner = CascadePlanner(rowstore, self.tables)
        self.default_team_id = default_team_id
        self._models: dict[str, Callable[[Row], Any]] = {
            self.tables.entities: Entity.from_row,
            self.tables.claims: Claim.from_row,
            self.tables.qualifiers: Qualifier.from_row,
            self.tables.references: Reference.from_row,
        }

    def _permissions(self, team_id: str | None) -> list[str]:
        return generate_permissions(team_id or self.default_team_id)

    def _model(self, table_id: str) -> Callable[[Row], Any]:
        try:
            return self._models[table_id]
        except KeyError:
            raise ValidationError(f"unknown table {table_id!r}") from None

    # --- payload preparation ---------------------------------------------

    def _entity_payload(self, data: dict[str, Any], *, partial: bool) -> dict[str, Any]:
        payload = {k: data[k] for k in ("label", "description", "aliases") if k in data}
        if "label" in payload and payload["label"] is not None and not isinstance(payload["label"], str):
            raise ValidationError("entity label must be a string")
        if (not partial or "label" in payload) and not (payload.get("label") or "").strip():
            raise ValidationError("entity label is required")
        if "aliases" in payload:
            aliases = payload["aliases"] or []
            if not isinstance(aliases, list) or not all(isinstance(a, str) for a in aliases):
                raise ValidationError("aliases must be a list of strings")
            payload["aliases"] = aliases
        return payload

    async def _value_payload(
        self,
        data: dict[str, Any],
        current: dict[str, Any],
        label: str,
        permissions: list[str],
        uploads: list[dict[str, Any]],
        transaction_id: str,
    ) -> dict[str, Any]:
        """datatype/value_raw/value_relation for claims and qualifiers."""
        datatype = data.get("datatype") or current.get("datatype") or "string"
        out: dict[str, Any] = {"datatype": datatype}
        if is_relation(datatype):
            target = data.get("value_relation", current.get("value_relation"))
            if not target:
                raise ValidationError(f"datatype {datatype!r} requires value_relation")
            await self.rowstore.get_row(self.tables.entities, target, transaction_id=transaction_id)
            out["value_relation"] = target
            out["value_raw"] = None
            return out

        if "value_raw" in data:
            envelope = normalize_value(datatype, data["value_raw"])
            if envelope is not None and "datatype" not in data:
                out["datatype"] = envelope["datatype"]
            stored = await self.offloader.offload(envelope, label=label, permissions=permissions)
            if stored is not envelope:
                uploads.append(stored)
            out["value_raw"] = serialize_value(stored)
        elif "datatype" in data and current.get("value_raw") is not None:
            # retype the existing literal
            envelope = normalize_value(datatype, current["value_raw"])
            out["value_raw"] = serialize_value({"datatype": datatype, "data": envelope["data"]})
        out["value_relation"] = None
        return out

    async def _claim_payload(
        self,
        data: dict[str, Any],
        current: dict[str, Any],
        permissions: list[str],
        uploads: list[dict[str, Any]],
        transaction_id: str,
    ) -> dict[str, Any]:
        subject_id = data.get("subject", current.get("subject"))
        property_id = data.get("property", current.get("property"))
        if not subject_id:
            raise ValidationError("claim subject is required")
        if not property_id:
            raise ValidationError("claim property is required")
        subject = await self.rowstore.get_row(self.tables.entities, subject_id, transaction_id=transaction_id)
        if property_id != current.get("property"):
            await self.rowstore.get_row(self.tables.entities, property_id, transaction_id=transaction_id)
        payload = {"subject": subject_id, "property": property_id}
        if not current or {"datatype", "value_raw", "value_relation"} & data.keys():
            payload.update(
                await self._value_payload(
                    data, current, subject.get("label") or "value", permissions, uploads, transaction_id
                )
            )
        return payload

    async def _qualifier_payload(
        self,
        data: dict[str, Any],
        current: dict[str, Any],
        permissions: list[str],
        uploads: list[dict[str, Any]],
        transaction_id: str,
    ) -> dict[str, Any]:
        claim_id = data.get("claim", current.get("claim"))
        property_id = data.get("property", current.get("property"))
        if not claim_id:
            raise ValidationError("qualifier claim is required")
        if not property_id:
            raise ValidationError("qualifier property is required")
        if claim_id != current.get("claim"):
            await self.rowstore.get_row(self.tables.claims, claim_id, transaction_id=transaction_id)
        prop = await self.rowstore.get_row(self.tables.entities, property_id, transaction_id=transaction_id)
        payload = {"claim": claim_id, "property": property_id}
        if not current or {"datatype", "value_raw", "value_relation"} & data.keys():
            payload.update(
                await self._value_payload(
                    data, current, prop.get("label") or "value", permissions, uploads, transaction_id
                )
            )
        return payload

    async def _reference_payload(self, data: dict[str, Any], current: dict[str, Any], transaction_id: str) -> dict[str, Any]:
        claim_id = data.get("claim", current.get("claim"))
        if not claim_id:
            raise ValidationError("reference claim is required")
        if claim_id != current.get("claim"):
            await self.rowstore.get_row(self.tables.claims, claim_id, transaction_id=transaction_id)
        payload = {"claim": claim_id}
        for key in ("details", "reference"):
            if key in data:
                payload[key] = data[key]
        details = payload.get("details", current.get("details"))
        reference = payload.get("reference", current.get("reference"))
        if not details and not reference:
            raise ValidationError("reference needs details or a referenced entity")
        if reference and reference != current.get("reference"):
            await self.rowstore.get_row(self.tables.entities, reference, transaction_id=transaction_id)
        return payload

    async def _prepare(
        self,
        table_id: str,
        data: dict[str, Any],
        current: dict[str, Any] | None,
        permissions: list[str],
        uploads: list[dict[str, Any]],
        transaction_id: str,
    ) -> dict[str, Any]:
        current = current or {}
        partial = bool(current)
        if not isinstance(data, dict):
            raise ValidationError("row data must be an object")
        if table_id == self.tables.entities:
            return self._entity_payload(data, partial=partial)
        if table_id == self.tables.claims:
            return await self._claim_payload(data, current, permissions, uploads, transaction_id)
        if table_id == self.tables.qualifiers:
            return await self._qualifier_payload(data, current, permissions, uploads, transaction_id)
        if table_id == self.tables.references:
            return await self._reference_payload(data, current, transaction_id)
        raise ValidationError(f"unknown table {table_id!r}")

    async def _run(self, label: str, uploads: list[dict[str, Any]], handler) -> Any:
        try:
            return await self.orchestrator.run(label, handler)
        except BaseException:
            if uploads:
                await self.offloader.discard(uploads)
            raise

    # --- generic mutations ------------------------------------------------

    async def _create_in(
        self, table_id: str, data: dict[str, Any], permissions: list[str], uploads: list, transaction_id: str
    ) -> Row:
        payload = await self._prepare(table_id, data, None, permissions, uploads, transaction_id)
        return await self.rowstore.create_row(
            table_id, payload, row_id=data.get("id"), permissions=permissions, transaction_id=transaction_id
        )

    async def _create(self, label: str, table_id: str, data: dict[str, Any], team_id: str | None) -> Any:
        permissions = self._permissions(team_id)
        uploads: list[dict[str, Any]] = []

        async def handler(transaction_id: str) -> Tracked:
            row = await self._create_in(table_id, data, permissions, uploads, transaction_id)
            await self.audit.create_entry("create", table_id, row.id, after=row.snapshot(), transaction_id=transaction_id)
            return Tracked(self._model(table_id)(row), [{"action": "create", "table": table_id, "rowId": row.id}])

        return await self._run(label, uploads, handler)

    async def _update_in(
        self, table_id: str, row_id: str, data: dict[str, Any], uploads: list, transaction_id: str
    ) -> tuple[Row, Row]:
        before = await self.rowstore.get_row(table_id, row_id, transaction_id=transaction_id)
        payload = await self._prepare(table_id, data, before.data, before.permissions, uploads, transaction_id)
        row = await self.rowstore.update_row(table_id, row_id, payload, transaction_id=transaction_id)
        return before, row

    async def _update(self, label: str, table_id: str, row_id: str, data: dict[str, Any]) -> Any:
        uploads: list[dict[str, Any]] = []

        async def handler(transaction_id: str) -> Tracked:
            before, row = await self._update_in(table_id, row_id, data, uploads, transaction_id)
            await self.audit.create_entry(
                "update",
                table_id,
                row_id,
                before=before.snapshot(),
                after=row.snapshot(),
                transaction_id=transaction_id,
            )
            return Tracked(self._model(table_id)(row), [{"action": "update", "table": table_id, "rowId": row_id}])

        return await self._run(label, uploads, handler)

    async def _update_permissions(
        self, label: str, table_id: str, row_id: str, permissions: list[str] | None, team_id: str | None
    ) -> Any:
        new_permissions = list(permissions) if permissions is not None else self._permissions(team_id)

        async def handler(transaction_id: str) -> Tracked:
            before = await self.rowstore.get_row(table_id, row_id, transaction_id=transaction_id)
            row = await self.rowstore.update_row(
                table_id, row_id, permissions=new_permissions, transaction_id=transaction_id
            )
            await self.audit.create_entry(
                "updatePermissions",
                table_id,
                row_id,
                before={"permissions": list(before.permissions)},
                after={"permissions": list(row.permissions)},
                transaction_id=transaction_id,
            )
            return Tracked(
                self._model(table_id)(row), [{"action": "updatePermissions", "table": table_id, "rowId": row_id}]
            )

        return await self.orchestrator.run(label, handler)

    async def _delete_in(self, table_id: str, row_id: str, transaction_id: str):
        delete_set = await self.planner.plan(table_id, row_id, transaction_id=transaction_id)
        await self.planner.execute(delete_set, transaction_id)
        await self.planner.sweep(delete_set, transaction_id)
        return delete_set

    async def _delete(self, label: str, table_id: str, row_id: str) -> Any:
        self._model(table_id)

        async def handler(transaction_id: str) -> Tracked:
            delete_set = await self._delete_in(table_id, row_id, transaction_id)
            changes = delete_set.changes()
            await self.audit.create_entry(
                "delete",
                table_id,
                row_id,
                before=delete_set.root.before,
                transaction_id=transaction_id,
                changes=changes,
            )
            deleted = Row(id=row_id, table_id=table_id, data=dict(delete_set.root.before or {}))
            return Tracked(self._model(table_id)(deleted), changes)

        return await self.orchestrator.run(label, handler)

    # --- entities ---------------------------------------------------------

    async def create_entity(self, data: dict[str, Any], team_id: str | None = None) -> Entity:
        return await self._create("createEntity", self.tables.entities, data, team_id)

    async def update_entity(self, entity_id: str, data: dict[str, Any]) -> Entity:
        return await self._update("updateEntity", self.tables.entities, entity_id, data)

    async def delete_entity(self, entity_id: str) -> Entity:
        """Deletes the entity, its subject claims and their qualifiers/references."""
        return await self._delete("deleteEntity", self.tables.entities, entity_id)

    async def update_entity_permissions(
        self, entity_id: str, permissions: list[str] | None = None, team_id: str | None = None
    ) -> Entity:
        return await self._update_permissions(
            "updateEntityPermissions", self.tables.entities, entity_id, permissions, team_id
        )

    # --- claims -----------------------------------------------------------

    async def create_claim(self, data: dict[str, Any], team_id: str | None = None) -> Claim:
        return await self._create("createClaim", self.tables.claims, data, team_id)

    async def update_claim(self, claim_id: str, data: dict[str, Any]) -> Claim:
        return await self._update("updateClaim", self.tables.claims, claim_id, data)

    async def delete_claim(self, claim_id: str) -> Claim:
        return await self._delete("deleteClaim", self.tables.claims, claim_id)

    async def update_claim_permissions(
        self, claim_id: str, permissions: list[str] | None = None, team_id: str | None = None
    ) -> Claim:
        return await self._update_permissions(
            "updateClaimPermissions", self.tables.claims, claim_id, permissions, team_id
        )

    # --- qualifiers -------------------------------------------------------

    async def create_qualifier(self, data: dict[str, Any], team_id: str | None = None) -> Qualifier:
        return await self._create("createQualifier", self.tables.qualifiers, data, team_id)

    async def update_qualifier(self, qualifier_id: str, data: dict[str, Any]) -> Qualifier:
        return await self._update("updateQualifier", self.tables.qualifiers, qualifier_id, data)

    async def delete_qualifier(self, qualifier_id: str) -> Qualifier:
        return await self._delete("deleteQualifier", self.tables.qualifiers, qualifier_id)

    async def update_qualifier_permissions(
        self, qualifier_id: str, permissions: list[str] | None = None, team_id: str | None = None
    ) -> Qualifier:
        return await self._update_permissions(
            "updateQualifierPermissions", self.tables.qualifiers, qualifier_id, permissions, team_id
        )

    # --- references -------------------------------------------------------

    async def create_reference(self, data: dict[str, Any], team_id: str | None = None) -> Reference:
        return await self._create("createReference", self.tables.references, data, team_id)

    async def update_reference(self, reference_id: str, data: dict[str, Any]) -> Reference:
        return await self._update("updateReference", self.tables.references, reference_id, data)

    async def delete_reference(self, reference_id: str) -> Reference:
        return await self._delete("deleteReference", self.tables.references, reference_id)

    async def update_reference_permissions(
        self, reference_id: str, permissions: list[str] | None = None, team_id: str | None = None
    ) -> Reference:
        return await self._update_permissions(
            "updateReferencePermissions", self.tables.references, reference_id, permissions, team_id
        )

    # --- bulk -------------------------------------------------------------

    async def _bulk(
        self,
        label: str,
        action: str,
        table_id: str,
        items: list[Any],
        op: Callable[[Any, list, str], Any],
        continue_on_error: bool,
        row_id_of: Callable[[Any], str | None],
    ) -> BulkResult:
        self._model(table_id)
        uploads: list[dict[str, Any]] = []

        async def handler(transaction_id: str) -> Tracked:
            outcome = BulkResult()
            if continue_on_error:
                # one savepoint per item: each item is all-or-nothing
                for index, item in enumerate(items):
                    item_uploads: list[dict[str, Any]] = []
                    try:
                        async with self.rowstore.savepoint(transaction_id):
                            res = await op(item, item_uploads, transaction_id)
                    except Exception as e:
                        logger.info("%s item %d failed: %s", label, index, e)
                        outcome.errors.append(BulkError(index, row_id_of(item), e))
                        if item_uploads:
                            await self.offloader.discard(item_uploads)
                        continue
                    uploads.extend(item_uploads)
                    outcome.results.append(res)
            else:
                for item in items:
                    outcome.results.append(await op(item, uploads, transaction_id))

            changes = [
                {"action": action, "table": table_id, "rowId": getattr(r, "id", None)} for r in outcome.results
            ]
            await self.audit.create_entry(
                f"bulk{action.capitalize()}",
                table_id,
                None,
                after={"results": len(outcome.results), "errors": len(outcome.errors)},
                transaction_id=transaction_id,
                changes=changes,
                count=len(items),
            )
            return Tracked(outcome, changes)

        return await self._run(label, uploads, handler)

    async def create_rows_bulk(
        self,
        table_id: str,
        rows: list[dict[str, Any]],
        team_id: str | None = None,
        *,
        continue_on_error: bool = False,
    ) -> BulkResult:
        permissions = self._permissions(team_id)
        model = self._model(table_id)

        async def op(data: dict[str, Any], uploads: list, transaction_id: str) -> Any:
            return model(await self._create_in(table_id, data, permissions, uploads, transaction_id))

        return await self._bulk(
            "createRowsBulk", "create", table_id, rows, op, continue_on_error, _item_id
        )

    async def update_rows_bulk(
        self,
        table_id: str,
        updates: list[dict[str, Any]],
        *,
        continue_on_error: bool = False,
    ) -> BulkResult:
        """Each update is `{"id": ..., <fields>}`."""
        model = self._model(table_id)

        async def op(data: dict[str, Any], uploads: list, transaction_id: str) -> Any:
            row_id = _item_id(data)
            if not row_id:
                raise ValidationError("bulk update item needs an id")
            fields = {k: v for k, v in data.items() if k not in ("id", ROW_ID)}
            _, row = await self._update_in(table_id, row_id, fields, uploads, transaction_id)
            return model(row)

        return await self._bulk(
            "updateRowsBulk",
            "update",
            table_id,
            updates,
            op,
            continue_on_error,
            _item_id,
        )

    async def delete_rows_bulk(
        self,
        table_id: str,
        row_ids: list[str],
        *,
        continue_on_error: bool = False,
    ) -> BulkResult:
        model = self._model(table_id)

        async def op(row_id: str, uploads: list, transaction_id: str) -> Any:
            delete_set = await self._delete_in(table_id, row_id, transaction_id)
            return model(Row(id=row_id, table_id=table_id, data=dict(delete_set.root.before or {})))

        return await self._bulk(
            "deleteRowsBulk", "delete", table_id, row_ids, op, continue_on_error, lambda row_id: row_id
        )

    # --- reads ------------------------------------------------------------

    async def get_entity(self, entity_id: str, include_claims: bool = False) -> Entity:
        entity = Entity.from_row(await self.rowstore.get_row(self.tables.entities, entity_id))
        if include_claims:
            entity.claims = await self.get_claims_by_subject(entity_id)
        return entity

    async def list_entities(self, limit: int = 25, offset: int = 0) -> tuple[list[Entity], int]:
        q = RowQuery().order_desc(CREATED_AT).limit(limit).offset(offset)
        page = await self.rowstore.list_rows(self.tables.entities, q)
        return [Entity.from_row(r) for r in page.rows], page.total

    async def search_entities(self, term: str, limit: int = 25, offset: int = 0) -> tuple[list[Entity], int]:
        """Substring match on label, description or aliases; newest first."""
        q = (
            RowQuery()
            .where_any(Contains("label", term), Contains("description", term), Contains("aliases", term))
            .order_desc(CREATED_AT)
            .limit(limit)
            .offset(offset)
        )
        page = await self.rowstore.list_rows(self.tables.entities, q)
        return [Entity.from_row(r) for r in page.rows], page.total

    async def _claims_where(self, column: str, value: str) -> list[Claim]:
        q = RowQuery().where_equal(column, value).select(*_CLAIM_SELECT).limit(CLAIM_READ_LIMIT)
        page = await self.rowstore.list_rows(self.tables.claims, q)
        return [Claim.from_row(r) for r in page.rows]

    async def get_claims_by_subject(self, entity_id: str) -> list[Claim]:
        return await self._claims_where("subject", entity_id)

    async def get_claims_by_value_relation(self, entity_id: str) -> list[Claim]:
        return await self._claims_where("value_relation", entity_id)

    async def get_claims_by_property(self, property_id: str) -> list[Claim]:
        return await self._claims_where("property", property_id)

    async def get_qualifiers_by_claim(self, claim_id: str) -> list[Qualifier]:
        q = RowQuery().where_equal("claim", claim_id).select(*_QUALIFIER_SELECT).limit(CHILD_READ_LIMIT)
        page = await self.rowstore.list_rows(self.tables.qualifiers, q)
        return [Qualifier.from_row(r) for r in page.rows]

    async def get_references_by_claim(self, claim_id: str) -> list[Reference]:
        q = RowQuery().where_equal("claim", claim_id).select(*_REFERENCE_SELECT).limit(CHILD_READ_LIMIT)
        page = await self.rowstore.list_rows(self.tables.references, q)
        return [Reference.from_row(r) for r in page.rows]

    async def get_claim(self, claim_id: str) -> Claim:
        row = await self.rowstore.get_row(self.tables.claims, claim_id, select=_CLAIM_SELECT)
        claim = Claim.from_row(row)
        claim.qualifiers_list = await self.get_qualifiers_by_claim(claim_id)
        claim.references_list = await self.get_references_by_claim(claim_id)
        return claim

    async def resolve_value(self, envelope: dict[str, Any] | None) -> dict[str, Any] | None:
        """Inline an offloaded value for display or export."""
        return await self.offloader.resolve(envelope)
