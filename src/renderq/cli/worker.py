"""
CLI: ``renderq worker`` - run a render worker.
"""

from __future__ import annotations

import typer

from renderq.cli.utils import console, fail, get_container, load_factory
from renderq.core.errors import ConfigError

app = typer.Typer(no_args_is_help=True)


@app.command("start")
def start(
    renderer: str = typer.Option(..., "--renderer", "-r", help="Renderer factory as module:attr"),
    finalizer: str | None = typer.Option(
        None, "--finalizer", help="Storage finalizer factory as module:attr"
    ),
    concurrency: int | None = typer.Option(None, "--concurrency", "-c", min=1),
    poll_interval: float | None = typer.Option(None, "--poll-interval", help="Seconds between polls"),
    database_url: str | None = typer.Option(None, "--database-url", "-d"),
) -> None:
    """Start a render worker (blocking until SIGINT/SIGTERM).

    Example::

        renderq worker start --renderer mypkg.render:create_renderer --concurrency 4
    """
    try:
        render_impl = load_factory(renderer)
        finalizer_impl = load_factory(finalizer) if finalizer else None
    except ConfigError as exc:
        fail(str(exc))

    overrides = {}
    if concurrency is not None:
        overrides["concurrency"] = concurrency
    if poll_interval is not None:
        overrides["poll_interval"] = poll_interval

    container = get_container(database_url)
    worker = container.worker(render_impl, finalizer_impl, **overrides)
    console.print(
        f"[bold green]Starting renderq worker[/bold green] "
        f"(queue={worker.queue_name}, concurrency={worker.concurrency})"
    )
    try:
        container.start()
        worker.start()
    except KeyboardInterrupt:
        console.print("\n[yellow]Worker stopped by user[/yellow]")
    except Exception as exc:
        console.print(f"[red]Worker error: {exc}[/red]")
        raise typer.Exit(code=1)
    finally:
        container.close()
