"""
Graph records: entities, claims, qualifiers, references and audit entries.

Rows store literal values as the compact JSON serialization of a value
envelope `{datatype, data}`; the models parse them back to dicts.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from claimgraph.rowstore.base import Row

RELATION_DATATYPES = frozenset({"relation", "entity", "item", "wikibase-item"})


@dataclass(frozen=True)
class TableIds:
    entities: str = "entities"
    claims: str = "claims"
    qualifiers: str = "qualifiers"
    references: str = "references"

    @classmethod
    def from_settings(cls, cfg: Any) -> TableIds:
        return cls(
            entities=cfg.entities_table,
            claims=cfg.claims_table,
            qualifiers=cfg.qualifiers_table,
            references=cfg.references_table,
        )

    def relations(self) -> dict[str, dict[str, str]]:
        """Relation columns per table, for one-hop expansion."""
        return {
            self.claims: {"subject": self.entities, "property": self.entities, "value_relation": self.entities},
            self.qualifiers: {"claim": self.claims, "property": self.entities, "value_relation": self.entities},
            self.references: {"claim": self.claims, "reference": self.entities},
        }


def is_relation(datatype: str | None) -> bool:
    return (datatype or "") in RELATION_DATATYPES


def parse_value_raw(raw: Any) -> dict[str, Any] | None:
    """Stored `value_raw` -> envelope. Non-JSON strings become string values."""
    if raw is None:
        return None
    if isinstance(raw, dict):
        return raw if "datatype" in raw else {"datatype": "string", "data": raw}
    if isinstance(raw, str):
        try:
            parsed = json.loads(raw)
        except ValueError:
            return {"datatype": "string", "data": raw}
        if isinstance(parsed, dict) and "datatype" in parsed:
            return parsed
        return {"datatype": "string", "data": raw}
    return {"datatype": "string", "data": raw}


def serialize_value(envelope: dict[str, Any] | None) -> str | None:
    if envelope is None:
        return None
    return json.dumps(envelope, separators=(",", ":"), ensure_ascii=False)


def normalize_value(datatype: str | None, value_raw: Any) -> dict[str, Any] | None:
    """Wrap a bare literal into an envelope typed by the row's datatype."""
    if value_raw is None:
        return None
    if isinstance(value_raw, dict) and "datatype" in value_raw and "data" in value_raw:
        return {"datatype": value_raw["datatype"] or datatype or "string", "data": value_raw["data"]}
    if isinstance(value_raw, str):
        try:
            parsed = json.loads(value_raw)
        except ValueError:
            parsed = None
        if isinstance(parsed, dict) and "datatype" in parsed and "data" in parsed:
            return normalize_value(datatype, parsed)
    return {"datatype": datatype or "string", "data": value_raw}


def _ts(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


@dataclass
class Entity:
    id: str
    label: str = ""
    description: str | None = None
    aliases: list[str] = field(default_factory=list)
    permissions: list[str] = field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None
    claims: list[Claim] = field(default_factory=list)

    @classmethod
    def from_row(cls, row: Row | None) -> Entity | None:
        if row is None:
            return None
        return cls(
            id=row.id,
            label=row.data.get("label") or "",
            description=row.data.get("description"),
            aliases=list(row.data.get("aliases") or []),
            permissions=list(row.permissions),
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "label": self.label,
            "description": self.description,
            "aliases": list(self.aliases),
            "permissions": list(self.permissions),
            "createdAt": _ts(self.created_at),
            "updatedAt": _ts(self.updated_at),
            "claims": [c.to_dict() for c in self.claims],
        }


@dataclass
class Qualifier:
    id: str
    claim: str
    property: str
    datatype: str = "string"
    value_raw: dict[str, Any] | None = None
    value_relation: str | None = None
    permissions: list[str] = field(default_factory=list)
    created_at: datetime | None = None
    property_entity: Entity | None = None
    value_entity: Entity | None = None

    @classmethod
    def from_row(cls, row: Row) -> Qualifier:
        return cls(
            id=row.id,
            claim=row.data.get("claim"),
            property=row.data.get("property"),
            datatype=row.data.get("datatype") or "string",
            value_raw=parse_value_raw(row.data.get("value_raw")),
            value_relation=row.data.get("value_relation"),
            permissions=list(row.permissions),
            created_at=row.created_at,
            property_entity=Entity.from_row(row.expanded.get("property")),
            value_entity=Entity.from_row(row.expanded.get("value_relation")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "claim": self.claim,
            "property": self.property,
            "datatype": self.datatype,
            "value_raw": self.value_raw,
            "value_relation": self.value_relation,
            "permissions": list(self.permissions),
            "createdAt": _ts(self.created_at),
            "propertyEntity": self.property_entity.to_dict() if self.property_entity else None,
            "valueEntity": self.value_entity.to_dict() if self.value_entity else None,
        }


@dataclass
class Reference:
    id: str
    claim: str
    details: str | None = None
    reference: str | None = None
    permissions: list[str] = field(default_factory=list)
    created_at: datetime | None = None
    reference_entity: Entity | None = None

    @classmethod
    def from_row(cls, row: Row) -> Reference:
        return cls(
            id=row.id,
            claim=row.data.get("claim"),
            details=row.data.get("details"),
            reference=row.data.get("reference"),
            permissions=list(row.permissions),
            created_at=row.created_at,
            reference_entity=Entity.from_row(row.expanded.get("reference")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "claim": self.claim,
            "details": self.details,
            "reference": self.reference,
            "permissions": list(self.permissions),
            "createdAt": _ts(self.created_at),
            "referenceEntity": self.reference_entity.to_dict() if self.reference_entity else None,
        }


@dataclass
class Claim:
    id: str
    subject: str
    property: str
    datatype: str = "string"
    value_raw: dict[str, Any] | None = None
    value_relation: str | None = None
    permissions: list[str] = field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None
    subject_entity: Entity | None = None
    property_entity: Entity | None = None
    value_entity: Entity | None = None
    qualifiers_list: list[Qualifier] = field(default_factory=list)
    references_list: list[Reference] = field(default_factory=list)

    @classmethod
    def from_row(cls, row: Row) -> Claim:
        return cls(
            id=row.id,
            subject=row.data.get("subject"),
            property=row.data.get("property"),
            datatype=row.data.get("datatype") or "string",
            value_raw=parse_value_raw(row.data.get("value_raw")),
            value_relation=row.data.get("value_relation"),
            permissions=list(row.permissions),
            created_at=row.created_at,
            updated_at=row.updated_at,
            subject_entity=Entity.from_row(row.expanded.get("subject")),
            property_entity=Entity.from_row(row.expanded.get("property")),
            value_entity=Entity.from_row(row.expanded.get("value_relation")),
        )

    @property
    def value(self) -> dict[str, Any] | None:
        """The envelope to render: the literal, or the related entity id."""
        if is_relation(self.datatype):
            if self.value_relation is None:
                return None
            return {"datatype": self.datatype, "data": self.value_relation}
        return self.value_raw

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "subject": self.subject,
            "property": self.property,
            "datatype": self.datatype,
            "value_raw": self.value_raw,
            "value_relation": self.value_relation,
            "permissions": list(self.permissions),
            "createdAt": _ts(self.created_at),
            "updatedAt": _ts(self.updated_at),
            "subjectEntity": self.subject_entity.to_dict() if self.subject_entity else None,
            "propertyEntity": self.property_entity.to_dict() if self.property_entity else None,
            "valueEntity": self.value_entity.to_dict() if self.value_entity else None,
            "qualifiersList": [q.to_dict() for q in self.qualifiers_list],
            "referencesList": [r.to_dict() for r in self.references_list],
        }


@dataclass
class AuditEntry:
    """One append-only audit row. Only the review fields ever change."""

    id: str
    action: str
    table_id: str
    row_id: str | None
    before: dict[str, Any] | None = None
    after: dict[str, Any] | None = None
    status: str = "pending"
    transaction_id: str | None = None
    changes: list[dict[str, Any]] = field(default_factory=list)
    user_id: str | None = None
    user_email: str | None = None
    note: str | None = None
    related_audit_id: str | None = None
    count: int | None = None
    reviewed_at: str | None = None
    reviewed_by: str | None = None
    review_note: str | None = None
    created_at: datetime | None = None

    @classmethod
    def from_row(cls, row: Row) -> AuditEntry:
        d = row.data
        return cls(
            id=row.id,
            action=d.get("action"),
            table_id=d.get("tableId"),
            row_id=d.get("rowId"),
            before=d.get("before"),
            after=d.get("after"),
            status=d.get("status") or "pending",
            transaction_id=d.get("transactionId"),
            changes=list(d.get("changes") or []),
            user_id=d.get("userId"),
            user_email=d.get("userEmail"),
            note=d.get("note"),
            related_audit_id=d.get("relatedAuditId"),
            count=d.get("count"),
            reviewed_at=d.get("reviewedAt"),
            reviewed_by=d.get("reviewedBy"),
            review_note=d.get("reviewNote"),
            created_at=row.created_at,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "action": self.action,
            "tableId": self.table_id,
            "rowId": self.row_id,
            "before": self.before,
            "after": self.after,
            "status": self.status,
            "transactionId": self.transaction_id,
            "changes": list(self.changes),
            "userId": self.user_id,
            "userEmail": self.user_email,
            "note": self.note,
            "relatedAuditId": self.related_audit_id,
            "count": self.count,
            "reviewedAt": self.reviewed_at,
            "reviewedBy": self.reviewed_by,
            "reviewNote": self.review_note,
            "createdAt": _ts(self.created_at),
        }
