"""``envforge resolve SPEC`` — resolve, materialize, and print the environment.

Exit codes: 0 on success, 1 for a bad declaration, 2 for a resolution
error, 3 for a materialization error, 130 when interrupted.
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path

import typer
from rich.table import Table

from envforge.cli.common import build_engine, cancel_on_interrupt, console, fail
from envforge.core.errors import EnvforgeError
from envforge.core.engine import Realization


class OutputFormat(str, Enum):
    shell = "shell"
    json = "json"
    table = "table"


def _print_table(realization: Realization) -> None:
    environment = realization.environment
    artifacts = Table(title=f"Artifacts for {environment.name}")
    artifacts.add_column("Name", style="cyan")
    artifacts.add_column("Version", style="green")
    artifacts.add_column("Capabilities")
    artifacts.add_column("Store path", style="dim")
    graph = realization.graph
    for addr in graph.topological_order():
        descriptor = graph.get(addr)
        artifacts.add_row(
            descriptor.name,
            descriptor.version,
            ", ".join(graph.capabilities(addr)) or "-",
            str(realization.entries[addr].path),
        )
    console.print(artifacts)

    variables = Table(title=f"Environment {environment.digest[:19]}")
    variables.add_column("Variable", style="bold")
    variables.add_column("Value", overflow="fold")
    for key, value in environment.variables.items():
        variables.add_row(key, value)
    console.print(variables)


def resolve_cmd(
    spec: Path = typer.Argument(..., help="Declaration file (.toml or plain list)."),
    catalog: Path = typer.Option(None, "--catalog", "-c", help="Repository catalog file."),
    store: Path = typer.Option(None, "--store", "-s", help="Artifact store directory."),
    output: OutputFormat = typer.Option(
        OutputFormat.shell, "--format", "-f", help="Output format."
    ),
    locked: bool = typer.Option(
        False, "--locked", help="Replay SPEC.lock and fail if the resolution drifted."
    ),
    jobs: int = typer.Option(None, "--jobs", "-j", min=1, help="Parallel builds."),
) -> None:
    """Resolve SPEC, materialize every artifact, and print the environment."""
    try:
        engine = build_engine(catalog=catalog, store=store, jobs=jobs)
        declaration = engine.load_declaration(spec)
        lockfile = engine.read_lock(spec) if locked else None
        with cancel_on_interrupt() as cancel:
            realization = engine.realize(declaration, locked=lockfile, cancel=cancel)
    except EnvforgeError as exc:
        raise fail(exc) from exc

    if output is OutputFormat.shell:
        typer.echo(realization.environment.render_shell(), nl=False)
    elif output is OutputFormat.json:
        typer.echo(realization.environment.render_json(), nl=False)
    else:
        _print_table(realization)
