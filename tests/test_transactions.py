import asyncio
import json
import logging

import pytest

from claimgraph.errors import TransactionError
from claimgraph.graph.journal import ClientSession, TransactionJournal
from claimgraph.graph.transactions import Tracked, TransactionOrchestrator
from claimgraph.rowstore.memory import MemoryRowStore


class BrokenRollbackStore(MemoryRowStore):
    async def update_transaction(self, transaction_id, *, commit=False, rollback=False):
        if rollback:
            raise TransactionError("backend unreachable")
        return await super().update_transaction(transaction_id, commit=commit, rollback=rollback)


class TestOrchestrator:
    """begin -> handler -> commit, or rollback and re-raise."""

    @pytest.mark.asyncio
    async def test_commit_journals_changes(self):
        rows = MemoryRowStore()
        orchestrator = TransactionOrchestrator(rows, TransactionJournal())

        async def handler(tx):
            row = await rows.create_row("entities", {"label": "x"}, transaction_id=tx)
            return Tracked(row.id, [{"action": "create", "table": "entities", "rowId": row.id}])

        row_id = await orchestrator.run("createEntity", handler)

        assert (await rows.get_row("entities", row_id)).data == {"label": "x"}
        entry = orchestrator.journal.entries()[-1]
        assert entry.label == "createEntity"
        assert entry.status == "committed"
        assert entry.changes == [{"action": "create", "table": "entities", "rowId": row_id}]

    @pytest.mark.asyncio
    async def test_raw_result_passes_through(self):
        orchestrator = TransactionOrchestrator(MemoryRowStore())

        async def handler(tx):
            return {"ok": True}

        assert await orchestrator.run("noop", handler) == {"ok": True}
        assert orchestrator.journal.entries()[-1].changes == []

    @pytest.mark.asyncio
    async def test_error_rolls_back_and_reraises(self):
        rows = MemoryRowStore()
        orchestrator = TransactionOrchestrator(rows)

        async def handler(tx):
            await rows.create_row("entities", {"label": "half"}, transaction_id=tx)
            raise KeyError("boom")

        with pytest.raises(KeyError):
            await orchestrator.run("createEntity", handler)

        assert rows.count("entities") == 0
        entry = orchestrator.journal.entries()[-1]
        assert (entry.status, entry.changes) == ("rolledback", [])

    @pytest.mark.asyncio
    async def test_rollback_failure_does_not_mask_original(self, caplog):
        orchestrator = TransactionOrchestrator(BrokenRollbackStore())

        async def handler(tx):
            raise ValueError("original")

        with caplog.at_level(logging.ERROR, logger="claimgraph.graph.transactions"):
            with pytest.raises(ValueError, match="original"):
                await orchestrator.run("createEntity", handler)

        assert "rollback of createEntity" in caplog.text
        assert orchestrator.journal.entries()[-1].status == "rolledback"

    @pytest.mark.asyncio
    async def test_cancelled_handler_rolls_back(self):
        rows = MemoryRowStore()
        orchestrator = TransactionOrchestrator(rows)

        async def handler(tx):
            await rows.create_row("entities", {"label": "half"}, transaction_id=tx)
            raise asyncio.CancelledError()

        with pytest.raises(asyncio.CancelledError):
            await orchestrator.run("createEntity", handler)

        assert rows._txs == {}
        assert rows.count("entities") == 0
        assert [e.status for e in orchestrator.journal.entries()] == ["rolledback"]


class TestJournal:
    """Bounded, session-owned, best-effort journal."""

    def test_capacity_trims_oldest(self):
        journal = TransactionJournal(capacity=3)
        for i in range(5):
            journal.append(f"op{i}", "committed")
        assert [e.label for e in journal.entries()] == ["op2", "op3", "op4"]

    def test_default_capacity(self):
        journal = TransactionJournal()
        for i in range(250):
            journal.append(f"op{i}", "committed")
        assert len(journal) == 200
        assert journal.entries()[0].label == "op50"

    def test_persist_and_reload(self, tmp_path):
        path = tmp_path / "journal.json"
        journal = TransactionJournal(capacity=10, path=path)
        journal.append("createEntity", "committed", [{"action": "create", "table": "entities", "rowId": "e1"}])
        journal.append("deleteEntity", "rolledback")

        assert len(json.loads(path.read_text())) == 2
        reloaded = ClientSession.open(capacity=10, path=str(path)).journal
        assert [(e.label, e.status) for e in reloaded.entries()] == [
            ("createEntity", "committed"),
            ("deleteEntity", "rolledback"),
        ]

    def test_reload_respects_capacity(self, tmp_path):
        path = tmp_path / "journal.json"
        big = TransactionJournal(capacity=50, path=path)
        for i in range(20):
            big.append(f"op{i}", "committed")
        small = TransactionJournal(capacity=5, path=path).init()
        assert [e.label for e in small.entries()] == [f"op{i}" for i in range(15, 20)]

    def test_clear(self, tmp_path):
        path = tmp_path / "journal.json"
        journal = TransactionJournal(path=path)
        journal.append("x", "committed")
        journal.clear()
        assert journal.entries() == []
        assert json.loads(path.read_text()) == []

    def test_unreadable_file_is_ignored(self, tmp_path):
        path = tmp_path / "journal.json"
        path.write_text("{not json")
        assert TransactionJournal(path=path).init().entries() == []
