"""
CLI: ``renderq health`` - durable-state health check.
"""

from __future__ import annotations

import typer

from renderq.cli.utils import console, get_container, output
from renderq.execution.health import HealthStatus

_STYLE = {
    HealthStatus.HEALTHY: "green",
    HealthStatus.DEGRADED: "yellow",
    HealthStatus.UNHEALTHY: "red",
}


def health(
    database_url: str | None = typer.Option(None, "--database-url", "-d"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Check database, queue and dead-letter health. Exits 1 when unhealthy."""
    with get_container(database_url) as container:
        report = container.build_health_monitor().check()

    if json_out:
        output(report, as_json=True)
    else:
        style = _STYLE[report.overall]
        console.print(f"[bold {style}]{report.overall.value.upper()}[/bold {style}]")
        rows = [
            {"component": c.name, "status": c.status.value, "message": c.message}
            for c in report.components
        ]
        output(rows, title="Components")
        for line in report.recommendations:
            console.print(f"  - {line}")

    if report.overall == HealthStatus.UNHEALTHY:
        raise typer.Exit(code=1)
