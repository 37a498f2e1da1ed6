"""``envforge graph SPEC`` — show the resolved dependency tree."""

from __future__ import annotations

from pathlib import Path

import typer
from rich.tree import Tree

from envforge.cli.common import build_engine, console, fail
from envforge.core.errors import EnvforgeError
from envforge.core.resolution_graph import ResolutionGraph


def _add_node(tree: Tree, graph: ResolutionGraph, addr: str, shown: set[str]) -> None:
    descriptor = graph.get(addr)
    caps = ", ".join(graph.capabilities(addr))
    label = f"[cyan]{descriptor.name}[/cyan] [green]{descriptor.version}[/green]"
    if caps:
        label += f" [dim]({caps})[/dim]"
    if addr in shown:
        tree.add(f"{label} [dim]...[/dim]")
        return
    shown.add(addr)
    branch = tree.add(label)
    for dep in graph.get_dependencies(addr):
        _add_node(branch, graph, dep, shown)


def graph_cmd(
    spec: Path = typer.Argument(..., help="Declaration file (.toml or plain list)."),
    catalog: Path = typer.Option(None, "--catalog", "-c", help="Repository catalog file."),
) -> None:
    """Resolve SPEC and print its dependency tree. Nothing is built."""
    try:
        engine = build_engine(catalog=catalog)
        declaration = engine.load_declaration(spec)
        graph = engine.resolve(declaration)
    except EnvforgeError as exc:
        raise fail(exc) from exc

    tree = Tree(f"[bold]{declaration.name}[/bold] [dim]({len(graph)} artifacts)[/dim]")
    shown: set[str] = set()
    for root in graph.roots:
        _add_node(tree, graph, root, shown)
    console.print(tree)
