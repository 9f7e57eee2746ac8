"""
CLI: ``renderq jobs`` - inspect render jobs.
"""

from __future__ import annotations

import typer

from renderq.cli.utils import console, fail, get_container, output
from renderq.execution.models import JobStatus

app = typer.Typer(no_args_is_help=True)


@app.command("show")
def show(
    job_id: str = typer.Argument(..., help="Render job ID"),
    history: bool = typer.Option(False, "--history", help="Include status transitions"),
    database_url: str | None = typer.Option(None, "--database-url", "-d"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Show one render job."""
    with get_container(database_url) as container:
        job = container.store.get(job_id)
        if job is None:
            fail(f"Render job not found: {job_id}")
        output(job, as_json=json_out, title=f"Job {job_id}")
        if history:
            rows = [
                {
                    "from": t.from_status.value if t.from_status else None,
                    "to": t.to_status.value,
                    "attempt": t.attempt,
                    "error": t.error,
                    "at": t.created_at.isoformat() if t.created_at else None,
                }
                for t in container.store.transitions(job_id)
            ]
            if not json_out:
                console.print()
            output(rows, as_json=json_out, title="Transitions")


@app.command("list")
def list_jobs(
    user: str | None = typer.Option(None, "--user", "-u"),
    status: JobStatus | None = typer.Option(None, "--status", "-s"),
    limit: int = typer.Option(50, "--limit", "-n"),
    database_url: str | None = typer.Option(None, "--database-url", "-d"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """List render jobs, newest first."""
    with get_container(database_url) as container:
        jobs = container.store.list_jobs(user_id=user, status=status, limit=limit)
        output(jobs, as_json=json_out, title="Render Jobs")
