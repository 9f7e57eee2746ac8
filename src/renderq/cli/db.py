"""
CLI: ``renderq db`` - database management commands.
"""

from __future__ import annotations

import typer

from renderq.cli.utils import console, get_container

app = typer.Typer(no_args_is_help=True)


@app.command()
def init(
    database_url: str | None = typer.Option(None, "--database-url", "-d", help="SQLAlchemy URL"),
) -> None:
    """Create the render job, queue and dead-letter tables."""
    from renderq.core.orm.session import init_db

    with get_container(database_url, create_tables=False) as container:
        init_db(container.engine)
        url = container.settings.database_url
    console.print(f"[green]Initialised[/green] {url}")
