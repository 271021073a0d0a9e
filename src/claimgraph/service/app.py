import logging
import os
from typing import Any

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from claimgraph import __version__
from claimgraph.errors import ClaimGraphError, RowConflictError, RowNotFoundError, ValidationError
from claimgraph.graph.store import BulkResult, StatementStore

from .auth import require_api_key, team_context

logger = logging.getLogger(__name__)


class EntityIn(BaseModel):
    label: str | None = None
    description: str | None = None
    aliases: list[str] | None = None


class ClaimIn(BaseModel):
    subject: str | None = None
    property: str | None = None
    datatype: str | None = None
    value_raw: Any = None
    value_relation: str | None = None


class QualifierIn(BaseModel):
    claim: str | None = None
    property: str | None = None
    datatype: str | None = None
    value_raw: Any = None
    value_relation: str | None = None


class ReferenceIn(BaseModel):
    claim: str | None = None
    details: str | None = None
    reference: str | None = None


class PermissionsIn(BaseModel):
    permissions: list[str] | None = None
    team_id: str | None = None


class BulkIn(BaseModel):
    rows: list[Any] = Field(default_factory=list)
    continue_on_error: bool = False


class NoteIn(BaseModel):
    note: str | None = None
    team_id: str | None = None


class RenderIn(BaseModel):
    value: dict[str, Any] | None = None
    preview: bool = False


def _status_for(err: ClaimGraphError) -> int:
    if isinstance(err, RowNotFoundError):
        return 404
    if isinstance(err, RowConflictError):
        return 409
    if isinstance(err, ValidationError):
        return 422
    return 500


def _bulk_out(res: BulkResult) -> dict[str, Any]:
    return {
        "results": [r.to_dict() for r in res.results],
        "errors": [e.to_dict() for e in res.errors],
    }


def _crud_router(store: StatementStore, kind: str, prefix: str, model: type[BaseModel]) -> APIRouter:
    """create/update/delete/permissions for one record kind."""
    router = APIRouter(prefix=prefix, dependencies=[Depends(require_api_key)])
    create = getattr(store, f"create_{kind}")
    update = getattr(store, f"update_{kind}")
    delete = getattr(store, f"delete_{kind}")
    update_permissions = getattr(store, f"update_{kind}_permissions")

    @router.post("", status_code=201)
    async def create_record(payload: model, team_id: str | None = Depends(team_context)):
        record = await create(payload.model_dump(exclude_unset=True), team_id=team_id)
        return record.to_dict()

    @router.patch("/{record_id}")
    async def update_record(record_id: str, payload: model):
        record = await update(record_id, payload.model_dump(exclude_unset=True))
        return record.to_dict()

    @router.delete("/{record_id}")
    async def delete_record(record_id: str):
        record = await delete(record_id)
        return {"deleted": record.to_dict()}

    @router.put("/{record_id}/permissions")
    async def set_permissions(record_id: str, payload: PermissionsIn, team_id: str | None = Depends(team_context)):
        record = await update_permissions(record_id, payload.permissions, team_id=payload.team_id or team_id)
        return record.to_dict()

    return router


def create_app(store: StatementStore) -> FastAPI:
    app = FastAPI(title="claimgraph", version=__version__)
    audit = store.audit

    @app.exception_handler(ClaimGraphError)
    async def claimgraph_error(_request: Request, err: ClaimGraphError):
        status = _status_for(err)
        if status == 500:
            logger.error("request failed: %s", err)
        return JSONResponse(status_code=status, content={"error": type(err).__name__, "detail": str(err)})

    @app.get("/health")
    async def health():
        return {"ok": True, "host": os.uname().nodename, "audit": audit.enabled}

    for kind, prefix, model in (
        ("entity", "/v1/entities", EntityIn),
        ("claim", "/v1/claims", ClaimIn),
        ("qualifier", "/v1/qualifiers", QualifierIn),
        ("reference", "/v1/references", ReferenceIn),
    ):
        app.include_router(_crud_router(store, kind, prefix, model))

    # --- reads ---

    @app.get("/v1/entities")
    async def list_entities(q: str | None = None, limit: int = 25, offset: int = 0, _auth: None = Depends(require_api_key)):
        if q:
            entities, total = await store.search_entities(q, limit=limit, offset=offset)
        else:
            entities, total = await store.list_entities(limit=limit, offset=offset)
        return {"total": total, "entities": [e.to_dict() for e in entities]}

    @app.get("/v1/entities/{entity_id}")
    async def get_entity(entity_id: str, include_claims: bool = False, _auth: None = Depends(require_api_key)):
        entity = await store.get_entity(entity_id, include_claims=include_claims)
        return entity.to_dict()

    @app.get("/v1/entities/{entity_id}/claims")
    async def entity_claims(entity_id: str, role: str = "subject", _auth: None = Depends(require_api_key)):
        if role == "value":
            claims = await store.get_claims_by_value_relation(entity_id)
        elif role == "property":
            claims = await store.get_claims_by_property(entity_id)
        else:
            claims = await store.get_claims_by_subject(entity_id)
        return {"claims": [c.to_dict() for c in claims]}

    @app.get("/v1/claims/{claim_id}")
    async def get_claim(claim_id: str, resolve: bool = False, _auth: None = Depends(require_api_key)):
        claim = await store.get_claim(claim_id)
        if resolve:
            claim.value_raw = await store.resolve_value(claim.value_raw)
        out = claim.to_dict()
        rendered = store.registry.render(claim.value)
        out["rendered"] = rendered.to_dict() if rendered else None
        return out

    @app.get("/v1/claims/{claim_id}/qualifiers")
    async def claim_qualifiers(claim_id: str, _auth: None = Depends(require_api_key)):
        return {"qualifiers": [q.to_dict() for q in await store.get_qualifiers_by_claim(claim_id)]}

    @app.get("/v1/claims/{claim_id}/references")
    async def claim_references(claim_id: str, _auth: None = Depends(require_api_key)):
        return {"references": [r.to_dict() for r in await store.get_references_by_claim(claim_id)]}

    # --- bulk ---

    @app.post("/v1/bulk/{table_id}/create")
    async def bulk_create(
        table_id: str, payload: BulkIn, team_id: str | None = Depends(team_context), _auth: None = Depends(require_api_key)
    ):
        res = await store.create_rows_bulk(table_id, payload.rows, team_id, continue_on_error=payload.continue_on_error)
        return _bulk_out(res)

    @app.post("/v1/bulk/{table_id}/update")
    async def bulk_update(table_id: str, payload: BulkIn, _auth: None = Depends(require_api_key)):
        res = await store.update_rows_bulk(table_id, payload.rows, continue_on_error=payload.continue_on_error)
        return _bulk_out(res)

    @app.post("/v1/bulk/{table_id}/delete")
    async def bulk_delete(table_id: str, payload: BulkIn, _auth: None = Depends(require_api_key)):
        res = await store.delete_rows_bulk(table_id, payload.rows, continue_on_error=payload.continue_on_error)
        return _bulk_out(res)

    # --- values ---

    @app.get("/v1/datatypes")
    async def datatypes(_auth: None = Depends(require_api_key)):
        return {"datatypes": store.registry.list_datatypes(), "plugins": store.registry.list_plugins()}

    @app.post("/v1/render")
    async def render(payload: RenderIn, _auth: None = Depends(require_api_key)):
        fn = store.registry.preview if payload.preview else store.registry.render
        out = fn(payload.value)
        return {"descriptor": out.to_dict() if out else None}

    # --- audit ---

    @app.get("/v1/audit")
    async def list_audit(
        table_id: str | None = None,
        row_id: str | None = None,
        user_id: str | None = None,
        action: str | None = None,
        status: str | None = None,
        limit: int = 50,
        offset: int = 0,
        _auth: None = Depends(require_api_key),
    ):
        entries, total = await audit.list_entries(
            table_id=table_id,
            row_id=row_id,
            user_id=user_id,
            action=action,
            status=status,
            limit=limit,
            offset=offset,
        )
        return {"total": total, "entries": [e.to_dict() for e in entries]}

    @app.get("/v1/audit/{entry_id}")
    async def get_audit(entry_id: str, _auth: None = Depends(require_api_key)):
        return (await audit.get_entry(entry_id)).to_dict()

    @app.get("/v1/history/{row_id}")
    async def history(row_id: str, limit: int = 20, _auth: None = Depends(require_api_key)):
        return {"entries": [e.to_dict() for e in await audit.history(row_id, limit=limit)]}

    @app.post("/v1/audit/{entry_id}/rollback")
    async def rollback(entry_id: str, payload: NoteIn, team_id: str | None = Depends(team_context), _auth: None = Depends(require_api_key)):
        entry = await audit.rollback(entry_id, note=payload.note, team_id=payload.team_id or team_id)
        return {"rollback": entry.to_dict() if entry else None}

    @app.post("/v1/audit/{entry_id}/approve")
    async def approve(entry_id: str, payload: NoteIn, _auth: None = Depends(require_api_key)):
        return (await audit.approve(entry_id, note=payload.note)).to_dict()

    @app.post("/v1/audit/{entry_id}/reject")
    async def reject(entry_id: str, payload: NoteIn, _auth: None = Depends(require_api_key)):
        return (await audit.reject(entry_id, note=payload.note)).to_dict()

    return app
