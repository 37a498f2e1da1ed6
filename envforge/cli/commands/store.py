"""``envforge store ...`` — inspect and maintain the artifact store.

Subcommands: list, verify, evict, gc, log.
"""

from __future__ import annotations

from pathlib import Path

import typer
from rich.table import Table

from envforge.cli.common import build_engine, console, err_console, fail
from envforge.core.errors import EnvforgeError
from envforge.core.hasher import strip_address
from envforge.core.store_ledger import LedgerIntegrityError
from envforge.models.ledger import StoreEvent

store_app = typer.Typer(
    name="store",
    help="Inspect and maintain the artifact store.",
    no_args_is_help=True,
    add_completion=False,
)

_STORE_OPTION = typer.Option(None, "--store", "-s", help="Artifact store directory.")

_EVENT_STYLE = {
    StoreEvent.BUILT: "green",
    StoreEvent.REUSED: "dim",
    StoreEvent.FAILED: "red",
    StoreEvent.CORRUPT: "bold red",
    StoreEvent.EVICTED: "yellow",
}


@store_app.command(name="list", help="List published store entries.")
def list_cmd(store: Path = _STORE_OPTION) -> None:
    engine = build_engine(store=store)
    entries = engine.store.list_entries()
    if not entries:
        console.print("[dim]The store is empty.[/dim]")
        return

    table = Table(title=f"Store {engine.store.base_path}")
    table.add_column("Key", style="cyan")
    table.add_column("Name")
    table.add_column("Version", style="green")
    table.add_column("Created")
    table.add_column("Path", style="dim")
    for entry in entries:
        table.add_row(
            strip_address(entry.key)[:12],
            entry.name,
            entry.descriptor.version,
            entry.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            str(entry.path),
        )
    console.print(table)


@store_app.command(name="verify", help="Re-digest store entries and report corruption.")
def verify_cmd(
    address: str = typer.Argument(None, help="Store key prefix, or a full artifact address."),
    store: Path = _STORE_OPTION,
) -> None:
    """Verify one entry, or every entry. Exits 3 if any entry is corrupt."""
    engine = build_engine(store=store)
    if address:
        try:
            path = engine.store.find(address)
        except ValueError as exc:
            err_console.print(f"[red]{exc}[/red]")
            raise typer.Exit(code=1) from exc
        if path is None:
            err_console.print(f"[red]No store entry for {address}[/red]")
            raise typer.Exit(code=1)
        ok, reason = engine.store.verify(path)
        results = [(path, ok, reason)]
    else:
        results = engine.store.verify_all()

    corrupt = 0
    for path, ok, reason in results:
        if ok:
            console.print(f"[green]ok[/green]      {path.name}")
        else:
            corrupt += 1
            console.print(f"[bold red]CORRUPT[/bold red] {path.name}: {reason}")
    if corrupt:
        err_console.print(
            f"{corrupt} corrupt entries; remove them with `envforge store evict ADDR`."
        )
        raise typer.Exit(code=3)


@store_app.command(name="evict", help="Remove a store entry (the only way to clear corruption).")
def evict_cmd(
    address: str = typer.Argument(..., help="Store key prefix, or a full artifact address."),
    store: Path = _STORE_OPTION,
) -> None:
    engine = build_engine(store=store)
    try:
        path, recorded = engine.store.evict(address)
    except EnvforgeError as exc:
        raise fail(exc) from exc
    except (FileNotFoundError, ValueError) as exc:
        err_console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from exc
    engine.ledger.record(
        StoreEvent.EVICTED, recorded or address, path.name, store_path=path
    )
    console.print(f"[yellow]Evicted[/yellow] {path.name}")


@store_app.command(name="gc", help="Remove abandoned staging directories.")
def gc_cmd(store: Path = _STORE_OPTION) -> None:
    engine = build_engine(store=store)
    removed = engine.store.collect_garbage()
    console.print(f"Removed {len(removed)} abandoned staging directories.")


@store_app.command(name="log", help="Show the store event ledger.")
def log_cmd(
    limit: int = typer.Option(50, "--limit", "-n", min=1, help="Most recent N events."),
    verify_chain: bool = typer.Option(
        True, "--verify-chain/--no-verify-chain", help="Verify hash chain integrity."
    ),
) -> None:
    engine = build_engine()
    if verify_chain:
        try:
            engine.ledger.verify_chain()
        except LedgerIntegrityError as exc:
            err_console.print(f"[bold red]Ledger integrity error:[/bold red] {exc}")
            raise typer.Exit(code=1) from exc

    entries = engine.ledger.entries(limit=limit)
    if not entries:
        console.print("[dim]No store events recorded.[/dim]")
        return
    table = Table(title=f"Store events (last {len(entries)})")
    table.add_column("Time")
    table.add_column("Event")
    table.add_column("Artifact", style="cyan")
    table.add_column("Detail", overflow="fold")
    for entry in entries:
        style = _EVENT_STYLE.get(entry.event, "")
        table.add_row(
            entry.timestamp_utc.strftime("%Y-%m-%d %H:%M:%S"),
            f"[{style}]{entry.event.value}[/{style}]" if style else entry.event.value,
            entry.label,
            entry.detail,
        )
    console.print(table)
