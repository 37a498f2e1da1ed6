"""Main Typer application — imports and registers all CLI commands.

Entry point: ``envforge`` (configured via pyproject.toml scripts).
"""

from __future__ import annotations

import typer

from envforge import __version__
from envforge.cli.commands.activate import activate_cmd
from envforge.cli.commands.graph import graph_cmd
from envforge.cli.commands.lock import lock_cmd
from envforge.cli.commands.resolve import resolve_cmd
from envforge.cli.commands.store import store_app
from envforge.cli.common import configure_logging, console
from envforge.config import settings

app = typer.Typer(
    name="envforge",
    help="Envforge: declarative, reproducible development environments.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    add_completion=False,
)


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"envforge {__version__}")
        raise typer.Exit()


@app.callback()
def main_callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log debug output."),
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
) -> None:
    """Resolve, build, and activate environments from a declaration file."""
    configure_logging("DEBUG" if verbose or settings.debug else settings.log_level)


# Register subcommands
app.command(name="resolve", help="Resolve and materialize SPEC; print its environment.")(
    resolve_cmd
)
app.command(
    name="activate", help="Run COMMAND (after --), or a shell, inside SPEC's environment."
)(activate_cmd)
app.command(name="lock", help="Write SPEC.lock pinning the current resolution.")(lock_cmd)
app.command(name="graph", help="Show SPEC's resolved dependency tree.")(graph_cmd)
app.add_typer(store_app, name="store")


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
