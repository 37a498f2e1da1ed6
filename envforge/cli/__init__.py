"""Envforge CLI — Typer-based command-line interface.

Provides the ``envforge`` command with subcommands for resolving,
activating, locking, and inspecting environments, and for maintaining
the artifact store.

All human-facing output uses Rich; machine-readable output (shell
exports, JSON) goes to stdout unadorned.
"""
