import asyncio
import json

import pytest
from click.testing import CliRunner

from claimgraph.cli import main as cli_main
from claimgraph.graph.journal import TransactionJournal
from claimgraph.settings import settings


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def wired(monkeypatch, runtime):
    """Route every command through the in-memory runtime fixture."""

    async def fake_open_runtime(_cfg):
        return runtime

    monkeypatch.setattr(cli_main, "open_runtime", fake_open_runtime)
    return runtime


class TestValues:
    def test_version(self, runner):
        from claimgraph import __version__

        result = runner.invoke(cli_main.cli, ["version"])
        assert result.exit_code == 0
        assert result.output.strip() == __version__

    def test_datatypes(self, runner):
        result = runner.invoke(cli_main.cli, ["datatypes"])
        assert result.exit_code == 0
        assert "polygon" in result.output

    def test_render(self, runner):
        result = runner.invoke(cli_main.cli, ["render", "boolean", "yes"])
        assert result.exit_code == 0
        assert json.loads(result.output.splitlines()[0]) == {"type": "boolean", "value": True}

    def test_render_reports_offload(self, runner):
        result = runner.invoke(cli_main.cli, ["render", "polygon", "x" * 11000])
        assert result.exit_code == 0
        assert "would be offloaded to bucket geojson" in result.output


class TestJournal:
    def test_show_and_clear(self, runner, monkeypatch, tmp_path):
        path = tmp_path / "journal.json"
        monkeypatch.setattr(settings, "journal_path", str(path))
        journal = TransactionJournal(path=str(path)).init()
        journal.append("createEntity", "committed", [{"action": "create"}])
        journal.append("deleteClaim", "rolledback")

        shown = runner.invoke(cli_main.cli, ["journal", "show"])
        assert shown.exit_code == 0
        assert "createEntity" in shown.output
        assert "rolledback" in shown.output

        cleared = runner.invoke(cli_main.cli, ["journal", "clear"])
        assert cleared.exit_code == 0
        assert TransactionJournal(path=str(path)).init().entries() == []

    def test_show_empty(self, runner, monkeypatch):
        monkeypatch.setattr(settings, "journal_path", None)
        result = runner.invoke(cli_main.cli, ["journal", "show"])
        assert "Journal is empty" in result.output


class TestAudit:
    def test_list_show_and_approve(self, runner, wired):
        entity = asyncio.run(wired.store.create_entity({"label": "Paris"}))
        entry = asyncio.run(wired.audit.history(entity.id))[0]

        listing = runner.invoke(cli_main.cli, ["audit", "list"])
        assert listing.exit_code == 0
        assert "Audit log" in listing.output

        shown = runner.invoke(cli_main.cli, ["audit", "show", entry.id])
        assert shown.exit_code == 0
        assert entity.id in shown.output

        approved = runner.invoke(cli_main.cli, ["audit", "approve", entry.id, "--note", "ok"])
        assert approved.exit_code == 0
        assert "approved" in approved.output
        assert asyncio.run(wired.audit.get_entry(entry.id)).status == "approved"

    def test_rollback(self, runner, wired, tables):
        entity = asyncio.run(wired.store.create_entity({"label": "Paris"}))
        entry = asyncio.run(wired.audit.history(entity.id))[0]

        result = runner.invoke(cli_main.cli, ["audit", "rollback", entry.id, "--note", "undo"])
        assert result.exit_code == 0
        assert "rolled back" in result.output
        assert wired.rowstore.count(tables.entities) == 0

    def test_domain_error_becomes_click_error(self, runner, wired):
        result = runner.invoke(cli_main.cli, ["audit", "show", "ghost"])
        assert result.exit_code == 1
        assert "RowNotFoundError" in result.output

    def test_empty_log(self, runner, wired):
        result = runner.invoke(cli_main.cli, ["audit", "list"])
        assert "No audit entries" in result.output
