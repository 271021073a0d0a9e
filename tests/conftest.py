import pytest

from claimgraph.graph.models import TableIds
from claimgraph.identity import Identity, StaticIdentityProvider
from claimgraph.rowstore.memory import MemoryRowStore
from claimgraph.runtime import build_runtime
from claimgraph.settings import ClaimGraphSettings
from claimgraph.storage.memory import MemoryObjectStorage

AUDIT_TABLE = "audit_log"


@pytest.fixture
def cfg():
    """Settings for an in-memory deployment with auditing on."""
    return ClaimGraphSettings(
        rowstore="memory",
        audit_table_id=AUDIT_TABLE,
        reviewer_team_id="reviewers",
        journal_path=None,
        storage_endpoint=None,
        identity_endpoint=None,
    )


@pytest.fixture
def tables():
    return TableIds()


@pytest.fixture
def rowstore(tables):
    return MemoryRowStore(tables.relations())


@pytest.fixture
def storage():
    return MemoryObjectStorage()


@pytest.fixture
def identity():
    return StaticIdentityProvider(Identity(user_id="user-1", email="editor@example.org"))


@pytest.fixture
def runtime(cfg, rowstore, storage, identity):
    return build_runtime(rowstore, cfg=cfg, storage=storage, identity=identity)


@pytest.fixture
def store(runtime):
    return runtime.store


@pytest.fixture
def audit(runtime):
    return runtime.audit


@pytest.fixture
def journal(runtime):
    return runtime.session.journal


@pytest.fixture
def seed(store):
    """Factory building an entity with N claims, each with q qualifiers and r references."""

    async def _seed(n_claims=1, n_qualifiers=0, n_references=0, label="Paris"):
        entity = await store.create_entity({"label": label})
        prop = await store.create_entity({"label": "population"})
        claims = []
        for i in range(n_claims):
            claim = await store.create_claim(
                {"subject": entity.id, "property": prop.id, "datatype": "number", "value_raw": 1000 + i}
            )
            for j in range(n_qualifiers):
                await store.create_qualifier(
                    {"claim": claim.id, "property": prop.id, "datatype": "date", "value_raw": f"20{10 + j}-01-01"}
                )
            for j in range(n_references):
                await store.create_reference({"claim": claim.id, "details": f"census {j}"})
            claims.append(claim)
        return entity, prop, claims

    return _seed
