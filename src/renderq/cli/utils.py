"""
CLI utility helpers - output formatting and container construction.
"""

from __future__ import annotations

import importlib
import json
from dataclasses import asdict
from typing import Any

import typer
from rich.console import Console
from rich.table import Table

from renderq.core.container import RenderqContainer
from renderq.core.errors import ConfigError
from renderq.core.settings import RenderqSettings, get_settings

console = Console()
err_console = Console(stderr=True)


# ── Container helper ─────────────────────────────────────────────────────


def get_container(
    database_url: str | None = None, *, create_tables: bool = True
) -> RenderqContainer:
    """Container built from settings, optionally pointed at *database_url*."""
    settings = get_settings()
    if database_url:
        settings = RenderqSettings(**{**settings.model_dump(), "database_url": database_url})
    return RenderqContainer(settings, create_tables=create_tables)


def load_factory(target_path: str) -> Any:
    """Resolve ``module:attr`` and call it if callable.

    Raises:
        ConfigError: Malformed path, missing module or missing attribute.
    """
    module_name, sep, attr = target_path.partition(":")
    if not sep or not module_name or not attr:
        raise ConfigError(f"Expected 'module:factory', got {target_path!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ConfigError(f"Cannot import {module_name!r}: {exc}", cause=exc) from exc
    try:
        target = getattr(module, attr)
    except AttributeError as exc:
        raise ConfigError(f"{module_name!r} has no attribute {attr!r}", cause=exc) from exc
    return target() if callable(target) else target


def fail(message: str, code: int = 1) -> None:
    err_console.print(f"[bold red]Error[/bold red]: {message}")
    raise typer.Exit(code=code)


# ── Output helpers ───────────────────────────────────────────────────────


def _to_dict(obj: Any) -> dict[str, Any]:
    """Convert dataclass / pydantic model / dict to plain dict."""
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    if hasattr(obj, "model_dump"):
        return obj.model_dump()
    if hasattr(obj, "__dataclass_fields__"):
        return asdict(obj)
    if isinstance(obj, dict):
        return obj
    return {"value": str(obj)}


def output(data: Any, *, as_json: bool = False, title: str = "") -> None:
    """Render an object or a list of objects to the terminal."""
    if as_json:
        payload = [_to_dict(d) for d in data] if isinstance(data, list | tuple) else _to_dict(data)
        console.print_json(json.dumps(payload, default=str))
        return

    if isinstance(data, list | tuple):
        if not data:
            console.print("[dim]No items.[/dim]")
            return
        _print_table(list(data), title=title)
    else:
        _print_dict(_to_dict(data), title=title)


def _print_table(items: list, *, title: str = "") -> None:
    first = _to_dict(items[0])
    table = Table(title=title or None, show_lines=False, pad_edge=False)
    for col in first:
        table.add_column(col, overflow="fold")
    for item in items:
        d = _to_dict(item)
        table.add_row(*("" if v is None else str(v) for v in d.values()))
    console.print(table)


def _print_dict(data: dict[str, Any], *, title: str = "") -> None:
    if title:
        console.print(f"[bold]{title}[/bold]")
    for k, v in data.items():
        console.print(f"  [cyan]{k}[/cyan]: {v}")
