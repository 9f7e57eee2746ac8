"""
CLI: ``renderq dlq`` - dead-letter queue commands.
"""

from __future__ import annotations

import typer

from renderq.cli.utils import console, fail, get_container, output

app = typer.Typer(no_args_is_help=True)


@app.command("list")
def list_dead_letters(
    all_entries: bool = typer.Option(False, "--all", help="Include resolved entries"),
    limit: int = typer.Option(50, "--limit", "-n"),
    database_url: str | None = typer.Option(None, "--database-url", "-d"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """List dead-letter entries (unresolved by default)."""
    with get_container(database_url) as container:
        if all_entries:
            entries = container.dlq.list_all(limit=limit)
        else:
            entries = container.dlq.list_unresolved(limit=limit)
        output(entries, as_json=json_out, title="Dead Letters")


@app.command("resolve")
def resolve(
    entry_id: str = typer.Argument(..., help="Dead-letter entry ID"),
    by: str | None = typer.Option(None, "--by", help="Who resolved it"),
    database_url: str | None = typer.Option(None, "--database-url", "-d"),
) -> None:
    """Mark a dead-letter entry as handled."""
    with get_container(database_url) as container:
        if not container.dlq.resolve(entry_id, resolved_by=by):
            fail(f"Dead letter not found or already resolved: {entry_id}")
    console.print(f"[green]Resolved[/green] {entry_id}")
