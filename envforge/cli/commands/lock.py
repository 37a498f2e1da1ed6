"""``envforge lock SPEC`` — pin the current resolution of SPEC to SPEC.lock."""

from __future__ import annotations

from pathlib import Path

import typer

from envforge.cli.common import build_engine, console, fail
from envforge.core.errors import EnvforgeError


def lock_cmd(
    spec: Path = typer.Argument(..., help="Declaration file (.toml or plain list)."),
    catalog: Path = typer.Option(None, "--catalog", "-c", help="Repository catalog file."),
) -> None:
    """Resolve SPEC (without building anything) and write its lockfile."""
    try:
        engine = build_engine(catalog=catalog)
        path = engine.lock(spec)
    except EnvforgeError as exc:
        raise fail(exc) from exc
    console.print(f"[green]Locked[/green] {spec} -> [bold]{path}[/bold]")
