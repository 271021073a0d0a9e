import pytest

from claimgraph.errors import MissingSnapshotError, RollbackNotSupportedError, RowNotFoundError, ValidationError
from claimgraph.graph.audit import AuditEngine
from claimgraph.graph.models import AuditEntry
from claimgraph.graph.transactions import TransactionOrchestrator
from claimgraph.identity import Identity, StaticIdentityProvider

AUDIT_TABLE = "audit_log"


class FailingIdentity:
    async def current_identity(self):
        raise ConnectionError("identity service down")


class TestCreateEntry:
    """Audit rows: snapshots, identity and permissions."""

    @pytest.mark.asyncio
    async def test_disabled_audit_returns_none(self, rowstore):
        engine = AuditEngine(rowstore, TransactionOrchestrator(rowstore), audit_table_id=None)
        assert engine.enabled is False
        assert await engine.create_entry("create", "entities", "e1", after={"label": "x"}) is None
        assert rowstore.count(AUDIT_TABLE) == 0

    @pytest.mark.asyncio
    async def test_snapshots_are_stripped_copies(self, audit, rowstore):
        after = {"$id": "e1", "$createdAt": "2024-01-01", "$permissions": [], "label": "Paris", "aliases": ["a"]}
        entry = await audit.create_entry("create", "entities", "e1", after=after)
        after["aliases"].append("mutated")

        stored = await audit.get_entry(entry.id)
        assert stored.after == {"label": "Paris", "aliases": ["a"]}
        assert stored.before is None
        assert stored.status == "pending"
        assert stored.user_id == "user-1"
        assert stored.user_email == "editor@example.org"

    @pytest.mark.asyncio
    async def test_audit_row_permissions(self, audit, rowstore):
        entry = await audit.create_entry("update", "entities", "e1", before={}, after={})
        row = await rowstore.get_row(AUDIT_TABLE, entry.id)
        assert row.permissions == [
            'read("team:reviewers")',
            'update("team:reviewers")',
            'read("user:user-1")',
        ]

    @pytest.mark.asyncio
    async def test_identity_failure_degrades_to_anonymous(self, rowstore, caplog):
        engine = AuditEngine(
            rowstore, TransactionOrchestrator(rowstore), audit_table_id=AUDIT_TABLE, identity=FailingIdentity()
        )
        entry = await engine.create_entry("create", "entities", "e1", after={"label": "x"})
        assert entry.user_id is None
        assert "identity lookup failed" in caplog.text

    @pytest.mark.asyncio
    async def test_entry_written_in_transaction(self, audit, rowstore):
        tx = await rowstore.create_transaction()
        await audit.create_entry("create", "entities", "e1", transaction_id=tx)
        assert rowstore.count(AUDIT_TABLE) == 0
        await rowstore.update_transaction(tx, rollback=True)
        assert rowstore.count(AUDIT_TABLE) == 0


class TestReview:
    """approve/reject only flip status."""

    @pytest.mark.asyncio
    async def test_approve_is_idempotent(self, audit, store, rowstore):
        await store.create_entity({"label": "Paris"})
        entries, _ = await audit.list_entries()
        entry = entries[0]

        first = await audit.approve(entry.id, note="looks right")
        second = await audit.approve(entry.id, note="looks right")

        assert first.status == second.status == "approved"
        assert second.review_note == "looks right"
        assert second.reviewed_by == "user-1"
        assert second.after == entry.after
        assert rowstore.count(AUDIT_TABLE) == 1

    @pytest.mark.asyncio
    async def test_reject(self, audit, store):
        await store.create_entity({"label": "Paris"})
        entry = (await audit.list_entries())[0][0]
        for _ in range(2):
            rejected = await audit.reject(entry.id, note="vandalism")
        assert rejected.status == "rejected"
        assert (await audit.list_entries(status="rejected"))[1] == 1

    @pytest.mark.asyncio
    async def test_review_requires_audit_table(self, rowstore):
        engine = AuditEngine(rowstore, TransactionOrchestrator(rowstore), audit_table_id="")
        with pytest.raises(ValidationError):
            await engine.approve("anything")


class TestRollback:
    """Inverse mutations, each audited with a new rollback entry."""

    async def _latest(self, audit, action):
        entries, _ = await audit.list_entries(action=action)
        return entries[0]

    @pytest.mark.asyncio
    async def test_rollback_create_deletes_row(self, audit, store, rowstore, tables):
        entity = await store.create_entity({"label": "Paris"})
        entry = await self._latest(audit, "create")

        rollback = await audit.rollback(entry, note="spam")

        with pytest.raises(RowNotFoundError):
            await rowstore.get_row(tables.entities, entity.id)
        assert rollback.action == "rollback"
        assert rollback.related_audit_id == entry.id
        assert rollback.before == entry.after
        assert rollback.after is None
        assert rollback.note == "spam"

    @pytest.mark.asyncio
    async def test_rollback_update_round_trip(self, audit, store, rowstore, tables):
        entity = await store.create_entity({"label": "Paris", "aliases": ["Lutetia"]})
        await store.update_entity(entity.id, {"label": "Paris, France", "description": "capital"})
        entry = await self._latest(audit, "update")

        await audit.rollback(entry.id)

        row = await rowstore.get_row(tables.entities, entity.id)
        assert row.snapshot() == entry.before == {"label": "Paris", "aliases": ["Lutetia"]}

    @pytest.mark.asyncio
    async def test_rollback_permissions(self, audit, store, rowstore, tables):
        entity = await store.create_entity({"label": "Paris"}, team_id="editors")
        await store.update_entity_permissions(entity.id, ['read("any")'])
        entry = await self._latest(audit, "updatePermissions")
        assert entry.before == {"permissions": ['update("team:editors")', 'delete("team:editors")']}

        await audit.rollback(entry)

        row = await rowstore.get_row(tables.entities, entity.id)
        assert row.permissions == ['update("team:editors")', 'delete("team:editors")']
        assert row.data == {"label": "Paris"}

    @pytest.mark.asyncio
    async def test_rollback_delete_recreates_cascade(self, audit, store, rowstore, seed, tables):
        entity, _, claims = await seed(n_claims=2, n_qualifiers=1, n_references=1)
        await store.delete_entity(entity.id)
        entry = await self._latest(audit, "delete")

        await audit.rollback(entry, team_id="editors")

        for change in entry.changes:
            row = await rowstore.get_row(change["table"], change["rowId"])
            assert row.snapshot() == change["before"]
            assert row.permissions == change["permissions"]
        assert rowstore.count(tables.claims) == 2
        restored = await store.get_claim(claims[0].id)
        assert len(restored.qualifiers_list) == 1
        assert len(restored.references_list) == 1

    @pytest.mark.asyncio
    async def test_rollback_create_takes_dependents(self, audit, store, rowstore, seed, tables):
        entity, prop, _ = await seed(n_claims=2, n_qualifiers=1, n_references=1)
        entry = (await audit.history(entity.id))[-1]
        assert entry.action == "create"

        rollback = await audit.rollback(entry)

        assert rowstore.count(tables.claims) == 0
        assert rowstore.count(tables.qualifiers) == 0
        assert rowstore.count(tables.references) == 0
        assert len(rollback.changes) == 7
        assert rollback.changes[-1]["rowId"] == entity.id
        assert (await rowstore.get_row(tables.entities, prop.id)).data["label"] == "population"

    @pytest.mark.asyncio
    async def test_rollback_delete_keeps_team_permissions(self, audit, store, rowstore, tables):
        entity = await store.create_entity({"label": "Paris"}, team_id="editors")
        await store.delete_entity(entity.id)

        await audit.rollback(await self._latest(audit, "delete"))

        row = await rowstore.get_row(tables.entities, entity.id)
        assert row.permissions == ['update("team:editors")', 'delete("team:editors")']

    @pytest.mark.asyncio
    async def test_rollback_delete_without_recorded_permissions(self, audit, rowstore, tables):
        entry = AuditEntry(id="a9", action="delete", table_id="entities", row_id="e9", before={"label": "x"})

        await audit.rollback(entry, team_id="editors")

        row = await rowstore.get_row(tables.entities, "e9")
        assert row.data == {"label": "x"}
        assert row.permissions == ['update("team:editors")', 'delete("team:editors")']

    @pytest.mark.asyncio
    async def test_rollback_delete_needs_live_parent(self, audit, store, rowstore, seed, tables):
        _, _, claims = await seed(n_claims=1, n_qualifiers=1)
        qualifier = (await store.get_claim(claims[0].id)).qualifiers_list[0]
        await store.delete_qualifier(qualifier.id)
        await store.delete_claim(claims[0].id)
        qualifier_delete = (await audit.history(qualifier.id))[0]
        claim_delete = (await audit.history(claims[0].id))[0]
        count = rowstore.count(AUDIT_TABLE)

        with pytest.raises(ValidationError, match="no longer exists"):
            await audit.rollback(qualifier_delete)
        assert rowstore.count(tables.qualifiers) == 0
        assert rowstore.count(AUDIT_TABLE) == count

        await audit.rollback(claim_delete)
        await audit.rollback(qualifier_delete)
        restored = await store.get_claim(claims[0].id)
        assert [q.id for q in restored.qualifiers_list] == [qualifier.id]

    @pytest.mark.asyncio
    async def test_rollback_of_rollback_refused(self, audit, store):
        await store.create_entity({"label": "Paris"})
        rollback = await audit.rollback(await self._latest(audit, "create"))
        with pytest.raises(RollbackNotSupportedError):
            await audit.rollback(rollback)

    @pytest.mark.asyncio
    async def test_bulk_rollback_refused(self, audit, store):
        await store.create_rows_bulk("entities", [{"label": "a"}, {"label": "b"}])
        entry = await self._latest(audit, "bulkCreate")
        with pytest.raises(RollbackNotSupportedError):
            await audit.rollback(entry)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("action", ["update", "updatePermissions", "delete"])
    async def test_missing_before_snapshot(self, audit, action):
        entry = AuditEntry(id="a1", action=action, table_id="entities", row_id="e1", before=None)
        with pytest.raises(MissingSnapshotError):
            await audit.rollback(entry)

    @pytest.mark.asyncio
    async def test_failed_rollback_writes_nothing(self, audit, store, rowstore):
        entity = await store.create_entity({"label": "Paris"})
        entry = await self._latest(audit, "create")
        await store.delete_entity(entity.id)
        count = rowstore.count(AUDIT_TABLE)

        with pytest.raises(RowNotFoundError):
            await audit.rollback(entry)
        assert rowstore.count(AUDIT_TABLE) == count


class TestReads:
    @pytest.mark.asyncio
    async def test_list_and_history(self, audit, store):
        paris = await store.create_entity({"label": "Paris"})
        await store.create_entity({"label": "Lyon"})
        await store.update_entity(paris.id, {"description": "capital"})

        entries, total = await audit.list_entries()
        assert total == 3
        assert [e.action for e in entries] == ["update", "create", "create"]

        history = await audit.history(paris.id)
        assert [e.action for e in history] == ["update", "create"]

        only_user, _ = await audit.list_entries(user_id="user-1", table_id="entities", limit=1)
        assert len(only_user) == 1

    @pytest.mark.asyncio
    async def test_identity_without_email(self, rowstore):
        engine = AuditEngine(
            rowstore,
            TransactionOrchestrator(rowstore),
            audit_table_id=AUDIT_TABLE,
            identity=StaticIdentityProvider(Identity(user_id="bot")),
        )
        entry = await engine.create_entry("create", "entities", "e1")
        assert entry.user_id == "bot"
        assert entry.user_email is None
