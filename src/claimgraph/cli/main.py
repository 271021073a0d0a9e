"""
claimgraph operator CLI.

Schema setup, audit review and rollback, journal inspection and datatype
rendering. Configuration comes from CLAIMGRAPH_* environment variables.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from claimgraph.errors import ClaimGraphError
from claimgraph.graph.journal import ClientSession
from claimgraph.graph.models import AuditEntry
from claimgraph.runtime import Runtime, open_runtime
from claimgraph.settings import settings

console = Console()


def _configure_logging() -> None:
    level = (settings.log_level or "INFO").upper()
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def _run(fn: Callable[[Runtime], Awaitable[Any]]) -> Any:
    async def go() -> Any:
        runtime = await open_runtime(settings)
        try:
            return await fn(runtime)
        finally:
            await runtime.aclose()

    try:
        return asyncio.run(go())
    except ClaimGraphError as e:
        raise click.ClickException(f"{type(e).__name__}: {e}") from e


def _parse_data(raw: str) -> Any:
    try:
        return json.loads(raw)
    except ValueError:
        return raw


def _entry_panel(entry: AuditEntry) -> Panel:
    body = json.dumps(entry.to_dict(), indent=2, default=str, ensure_ascii=False)
    return Panel(body, title=f"{entry.action} {entry.table_id}/{entry.row_id or '-'}", subtitle=entry.status)


@click.group()
def cli():
    """claimgraph - graph statement store operations"""
    _configure_logging()


@cli.command()
def version():
    """Print the package version"""
    from claimgraph import __version__

    click.echo(__version__)


@cli.command("init-schema")
def init_schema():
    """Create the Postgres row table and indexes"""
    from claimgraph.rowstore.postgres import PostgresRowStore

    async def go() -> None:
        rowstore = await PostgresRowStore.connect(settings.postgres_dsn)
        try:
            await rowstore.ensure_schema()
        finally:
            await rowstore.close()

    asyncio.run(go())
    console.print("[green]schema ready[/green]")


@cli.command()
def serve():
    """Run the HTTP service"""
    from claimgraph.service.server import main

    main()


@cli.command()
def datatypes():
    """List registered datatype plugins"""
    from claimgraph.values.plugins import default_registry

    registry = default_registry(settings)
    table = Table(title="Datatype plugins")
    table.add_column("Plugin", style="cyan")
    table.add_column("Datatypes", style="white")
    table.add_column("Bucket", style="magenta")
    table.add_column("Inline limit", style="green")
    for info in registry.list_plugins():
        policy = registry.get_storage_config(info["datatypes"][0])
        table.add_row(
            info["name"],
            ", ".join(info["datatypes"]),
            policy.bucket_id if policy else "-",
            str(policy.threshold) if policy else "-",
        )
    console.print(table)


@cli.command()
@click.argument("datatype")
@click.argument("data")
@click.option("--preview", is_flag=True, help="Render the short preview form")
def render(datatype, data, preview):
    """Render DATA as DATATYPE and print the descriptor"""
    from claimgraph.values.plugins import default_registry

    registry = default_registry(settings)
    value = {"datatype": datatype, "data": _parse_data(data)}
    out = registry.preview(value) if preview else registry.render(value)
    click.echo(json.dumps(out.to_dict() if out else None, ensure_ascii=False, default=str))
    if registry.should_upload_to_bucket(datatype, value["data"]):
        console.print(f"[yellow]would be offloaded to bucket {registry.get_bucket_id(datatype)}[/yellow]")


# --- audit ---------------------------------------------------------------


@cli.group()
def audit():
    """Review and roll back audited mutations"""


@audit.command("list")
@click.option("--table", "table_id", default=None, help="Filter by table id")
@click.option("--row", "row_id", default=None, help="Filter by row id")
@click.option("--action", default=None, help="Filter by action")
@click.option("--status", default=None, help="pending|approved|rejected")
@click.option("--limit", default=50, help="Number of entries")
def audit_list(table_id, row_id, action, status, limit):
    """Show recent audit entries, newest first"""
    entries, total = _run(
        lambda rt: rt.audit.list_entries(table_id=table_id, row_id=row_id, action=action, status=status, limit=limit)
    )
    if not entries:
        console.print("[yellow]No audit entries[/yellow]")
        return

    table = Table(title=f"Audit log ({len(entries)} of {total})")
    table.add_column("Id", style="cyan")
    table.add_column("When", style="green")
    table.add_column("Action", style="magenta")
    table.add_column("Row", style="blue")
    table.add_column("Status")
    table.add_column("User")
    for e in entries:
        when = e.created_at.strftime("%Y-%m-%d %H:%M:%S") if e.created_at else "-"
        table.add_row(e.id, when, e.action, f"{e.table_id}/{e.row_id or '-'}", e.status, e.user_id or "-")
    console.print(table)


@audit.command("show")
@click.argument("entry_id")
def audit_show(entry_id):
    """Show one audit entry with its snapshots"""
    console.print(_entry_panel(_run(lambda rt: rt.audit.get_entry(entry_id))))


@audit.command("rollback")
@click.argument("entry_id")
@click.option("--note", default=None, help="Reason recorded on the rollback entry")
@click.option("--team", "team_id", default=None, help="Team owning re-created rows")
def audit_rollback(entry_id, note, team_id):
    """Invert the mutation recorded by ENTRY_ID"""
    out = _run(lambda rt: rt.audit.rollback(entry_id, note=note, team_id=team_id))
    if out is None:
        console.print("[green]rolled back[/green] (auditing disabled, no entry written)")
    else:
        console.print(f"[green]rolled back[/green] -> {out.id}")


@audit.command("approve")
@click.argument("entry_id")
@click.option("--note", default=None)
def audit_approve(entry_id, note):
    """Mark an audit entry approved"""
    entry = _run(lambda rt: rt.audit.approve(entry_id, note=note))
    console.print(f"{entry.id}: [green]{entry.status}[/green]")


@audit.command("reject")
@click.argument("entry_id")
@click.option("--note", default=None)
def audit_reject(entry_id, note):
    """Mark an audit entry rejected"""
    entry = _run(lambda rt: rt.audit.reject(entry_id, note=note))
    console.print(f"{entry.id}: [red]{entry.status}[/red]")


# --- journal -------------------------------------------------------------


@cli.group()
def journal():
    """Inspect the local transaction journal"""


@journal.command("show")
@click.option("--limit", default=20, help="Number of entries")
def journal_show(limit):
    """Show the newest journal entries"""
    session = ClientSession.open(capacity=settings.journal_capacity, path=settings.journal_path)
    entries = session.journal.entries()[-limit:]
    if not entries:
        console.print("[yellow]Journal is empty[/yellow]")
        return
    table = Table(title="Local journal")
    table.add_column("When", style="green")
    table.add_column("Label", style="cyan")
    table.add_column("Status")
    table.add_column("Changes", justify="right")
    for e in reversed(entries):
        style = "green" if e.status == "committed" else "red"
        table.add_row(e.created_at, e.label, f"[{style}]{e.status}[/{style}]", str(len(e.changes)))
    console.print(table)


@journal.command("clear")
def journal_clear():
    """Drop every journal entry"""
    session = ClientSession.open(capacity=settings.journal_capacity, path=settings.journal_path)
    session.journal.clear()
    console.print("[green]journal cleared[/green]")


if __name__ == "__main__":
    cli()
