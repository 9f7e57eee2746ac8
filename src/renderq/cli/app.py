"""
Root Typer application for the renderq CLI.
"""

from __future__ import annotations

import typer
from typer import Typer

from renderq.core.logging import configure_logging
from renderq.core.settings import get_settings

app = Typer(
    name="renderq",
    help="renderq - durable render-job queue with completion notifications.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


def _version_callback(value: bool) -> None:
    if value:
        from renderq import __version__

        typer.echo(f"renderq {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    log_level: str | None = typer.Option(None, "--log-level", help="Override RENDERQ_LOG_LEVEL"),
) -> None:
    """renderq CLI - manage the database, workers, jobs and dead letters."""
    settings = get_settings()
    configure_logging(
        level=log_level or settings.log_level,
        json_format=settings.json_logs,
        service=settings.service_name,
    )


# ── Sub-command registration ─────────────────────────────────────────────

from renderq.cli.db import app as db_app  # noqa: E402
from renderq.cli.dlq import app as dlq_app  # noqa: E402
from renderq.cli.health import health as health_command  # noqa: E402
from renderq.cli.jobs import app as jobs_app  # noqa: E402
from renderq.cli.worker import app as worker_app  # noqa: E402

app.add_typer(db_app, name="db", help="Database operations.")
app.add_typer(worker_app, name="worker", help="Render worker.")
app.add_typer(jobs_app, name="jobs", help="Render job inspection.")
app.add_typer(dlq_app, name="dlq", help="Dead-letter queue.")
app.command("health")(health_command)


if __name__ == "__main__":
    app()
