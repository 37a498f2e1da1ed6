"""Shared plumbing for CLI commands: engine construction, errors, Ctrl-C."""

from __future__ import annotations

import logging
import signal
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import typer
from rich.console import Console
from rich.logging import RichHandler

from envforge.config import EnvforgeSettings
from envforge.core.cancellation import CancellationToken
from envforge.core.engine import EnvironmentEngine
from envforge.core.errors import EnvforgeError, MaterializationIncompleteError

console = Console()
err_console = Console(stderr=True)


def configure_logging(level: str) -> None:
    """Route envforge logs through Rich on stderr."""
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False, rich_tracebacks=True)],
        force=True,
    )


def build_engine(
    *,
    catalog: Path | None = None,
    store: Path | None = None,
    jobs: int | None = None,
) -> EnvironmentEngine:
    """Create an engine from ENVFORGE_* settings plus command-line overrides."""
    overrides: dict[str, Any] = {}
    if catalog is not None:
        overrides["catalog_path"] = catalog
    if store is not None:
        overrides["store_path"] = store
    if jobs is not None:
        overrides["max_parallel_builds"] = jobs
    settings = EnvforgeSettings()
    if overrides:
        settings = settings.model_copy(update=overrides)
    return EnvironmentEngine(settings)


def fail(exc: EnvforgeError) -> typer.Exit:
    """Print *exc* to stderr and return the Exit carrying its code."""
    err_console.print(f"[bold red]{type(exc).__name__}:[/bold red] {exc}", highlight=False)
    if isinstance(exc, MaterializationIncompleteError) and exc.report.entries:
        err_console.print(
            f"[dim]{len(exc.report.entries)} artifacts were materialized and remain "
            f"in the store.[/dim]"
        )
    return typer.Exit(code=exc.exit_code)


@contextmanager
def cancel_on_interrupt() -> Iterator[CancellationToken]:
    """First Ctrl-C cancels cooperatively; a second one interrupts."""
    token = CancellationToken()

    def _handler(signum: int, frame: object) -> None:
        if token.cancelled:
            raise KeyboardInterrupt
        token.cancel("interrupted")
        err_console.print("[yellow]Cancelling; waiting for running builds to finish...[/yellow]")

    previous = signal.signal(signal.SIGINT, _handler)
    try:
        yield token
    finally:
        signal.signal(signal.SIGINT, previous)
