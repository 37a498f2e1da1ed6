"""``envforge activate SPEC [-- COMMAND...]`` — run inside an activated session.

Without a command, starts an interactive shell. The exit code mirrors
the wrapped command's; a command killed by signal N exits 128 + N.
"""

from __future__ import annotations

import os
from pathlib import Path

import typer

from envforge.cli.common import build_engine, cancel_on_interrupt, err_console, fail
from envforge.core.errors import EnvforgeError
from envforge.core.session import exit_status


def activate_cmd(
    spec: Path = typer.Argument(..., help="Declaration file (.toml or plain list)."),
    command: list[str] = typer.Argument(
        None, help="Command to run (after --). Defaults to an interactive shell."
    ),
    pure: bool = typer.Option(
        False, "--pure", help="Start from an almost empty host environment."
    ),
    catalog: Path = typer.Option(None, "--catalog", "-c", help="Repository catalog file."),
    store: Path = typer.Option(None, "--store", "-s", help="Artifact store directory."),
    locked: bool = typer.Option(False, "--locked", help="Replay SPEC.lock."),
) -> None:
    """Activate SPEC's environment for COMMAND, or for an interactive shell."""
    try:
        engine = build_engine(catalog=catalog, store=store)
        declaration = engine.load_declaration(spec)
        lockfile = engine.read_lock(spec) if locked else None
        with cancel_on_interrupt() as cancel:
            realization = engine.realize(declaration, locked=lockfile, cancel=cancel)
            session = engine.activate(realization, pure=pure, cancel=cancel)
    except EnvforgeError as exc:
        raise fail(exc) from exc

    argv = list(command or [])
    if not argv:
        argv = [engine.settings.shell or os.environ.get("SHELL", "/bin/sh")]
        err_console.print(
            f"[green]Entering {realization.environment.name}[/green] "
            f"[dim](exit the shell to deactivate)[/dim]"
        )

    with session:
        try:
            returncode = session.run(argv)
        except EnvforgeError as exc:
            raise fail(exc) from exc
    raise typer.Exit(code=exit_status(returncode))
