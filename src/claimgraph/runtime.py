"""Wiring of gateways, journal, audit engine and statement store from settings."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from claimgraph.graph.audit import AuditEngine
from claimgraph.graph.journal import ClientSession
from claimgraph.graph.models import TableIds
from claimgraph.graph.store import StatementStore
from claimgraph.graph.transactions import TransactionOrchestrator
from claimgraph.identity import IdentityProvider, build_identity_provider
from claimgraph.rowstore.base import RowStore
from claimgraph.rowstore.memory import MemoryRowStore
from claimgraph.rowstore.postgres import PostgresRowStore
from claimgraph.settings import ClaimGraphSettings, settings
from claimgraph.storage.base import ObjectStorage
from claimgraph.storage.http import HttpObjectStorage
from claimgraph.storage.memory import MemoryObjectStorage
from claimgraph.values.offload import ValueOffloader
from claimgraph.values.plugins import default_registry

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    rowstore: RowStore
    storage: ObjectStorage | None
    identity: IdentityProvider
    session: ClientSession
    audit: AuditEngine
    store: StatementStore

    async def aclose(self) -> None:
        await self.rowstore.close()
        for client in (self.storage, self.identity):
            closer: Any = getattr(client, "aclose", None)
            if closer is not None:
                await closer()


def build_runtime(
    rowstore: RowStore,
    *,
    cfg: ClaimGraphSettings = settings,
    storage: ObjectStorage | None = None,
    identity: IdentityProvider | None = None,
    session: ClientSession | None = None,
) -> Runtime:
    tables = TableIds.from_settings(cfg)
    identity = identity or build_identity_provider(cfg)
    session = session or ClientSession.open(capacity=cfg.journal_capacity, path=cfg.journal_path)
    orchestrator = TransactionOrchestrator(rowstore, session.journal)
    audit = AuditEngine(
        rowstore,
        orchestrator,
        audit_table_id=cfg.audit_table_id,
        identity=identity,
        reviewer_team_id=cfg.reviewer_team_id,
        tables=tables,
    )
    store = StatementStore(
        rowstore,
        orchestrator,
        audit,
        ValueOffloader(default_registry(cfg), storage),
        tables=tables,
        default_team_id=session.team_id,
    )
    return Runtime(rowstore=rowstore, storage=storage, identity=identity, session=session, audit=audit, store=store)


async def open_runtime(cfg: ClaimGraphSettings = settings) -> Runtime:
    """Connect the configured backends."""
    relations = TableIds.from_settings(cfg).relations()
    if cfg.rowstore == "memory":
        rowstore: RowStore = MemoryRowStore(relations)
    else:
        rowstore = await PostgresRowStore.connect(cfg.postgres_dsn, relations=relations)

    storage: ObjectStorage | None
    if cfg.storage_endpoint:
        storage = HttpObjectStorage(cfg.storage_endpoint, project=cfg.storage_project, api_key=cfg.storage_api_key)
    elif cfg.rowstore == "memory":
        storage = MemoryObjectStorage()
    else:
        logger.warning("no storage endpoint configured; oversized values stay inline")
        storage = None

    return build_runtime(rowstore, cfg=cfg, storage=storage)
