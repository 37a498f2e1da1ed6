"""Unit tests for the CLI — command registration, output, and exit codes.

Every test runs in a scratch working directory holding a small catalog,
so the default ``.envforge/`` paths stay inside ``tmp_path``.
"""

from __future__ import annotations

import importlib
import json
import stat
from pathlib import Path

import pytest
from typer.testing import CliRunner

from envforge.cli.app import app
from envforge.config import EnvforgeSettings

runner = CliRunner()

CATALOG = """
[[package]]
name = "libA"
version = "1.0"
capabilities = ["library"]

[package.outputs]
lib = ["lib/libA.so"]
include = ["include/a/a.h"]

[package.recipe.files]
"lib/libA.so" = "libA"
"include/a/a.h" = "int a(void);"

[[package]]
name = "toolB"
version = "2.1"
capabilities = ["build-tool"]
depends = ["libA>=1.0"]

[package.outputs]
bin = ["bin/toolB"]

[package.recipe]
executables = ["bin/toolB"]

[package.recipe.files]
"bin/toolB" = "#!/bin/sh\\necho toolB 2.1\\n"

[[package]]
name = "broken"
version = "0.1"

[package.recipe]
script = "echo boom >&2; exit 1"
"""


@pytest.fixture
def workspace(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """A working directory with a catalog and a two-package declaration."""
    monkeypatch.chdir(tmp_path)
    for key in ("STORE_PATH", "CATALOG_PATH", "LEDGER_PATH", "SHELL", "DEBUG"):
        monkeypatch.delenv(f"ENVFORGE_{key}", raising=False)
    monkeypatch.delenv("ENVFORGE_SESSION", raising=False)
    monkeypatch.setenv("ENVFORGE_LOG_LEVEL", "WARNING")
    monkeypatch.setattr(importlib.import_module("envforge.cli.app"), "settings", EnvforgeSettings())
    (tmp_path / ".envforge").mkdir()
    (tmp_path / ".envforge" / "catalog.toml").write_text(CATALOG)
    (tmp_path / "env.txt").write_text("libA\ntoolB\n")
    return tmp_path


def _entry_dir(workspace: Path, name: str) -> Path:
    (path,) = (workspace / ".envforge" / "store").glob(f"*-{name}-*")
    return path


# ---------------------------------------------------------------------------
# Test: CLI help and registration
# ---------------------------------------------------------------------------


class TestCliApp:
    """The CLI must register all expected commands and show help."""

    def test_no_args_shows_help(self):
        result = runner.invoke(app, [])
        assert result.exit_code in (0, 2)
        assert "usage" in result.output.lower()

    def test_help_flag(self):
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        for name in ("resolve", "activate", "lock", "graph", "store"):
            assert name in result.output

    def test_version(self):
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert "envforge" in result.output

    @pytest.mark.parametrize("command", ["resolve", "activate", "lock", "graph", "store"])
    def test_command_exists(self, command: str):
        result = runner.invoke(app, [command, "--help"])
        assert result.exit_code == 0


# ---------------------------------------------------------------------------
# Test: resolve
# ---------------------------------------------------------------------------


class TestResolveCommand:
    def test_prints_shell_exports(self, workspace: Path):
        result = runner.invoke(app, ["resolve", "env.txt"])
        assert result.exit_code == 0, result.output
        assert "export PATH=" in result.stdout
        assert "export LD_LIBRARY_PATH=" in result.stdout
        assert str(_entry_dir(workspace, "toolB") / "bin") in result.stdout

    def test_json_output(self, workspace: Path):
        result = runner.invoke(app, ["resolve", "env.txt", "--format", "json"])
        assert result.exit_code == 0, result.output
        payload = json.loads(result.stdout)
        assert payload["name"] == "env"
        assert list(payload["variables"])[0] == "PATH"

    def test_table_output(self, workspace: Path):
        result = runner.invoke(app, ["resolve", "env.txt", "-f", "table"])
        assert result.exit_code == 0, result.output
        assert "toolB" in result.output

    def test_second_run_is_identical(self, workspace: Path):
        first = runner.invoke(app, ["resolve", "env.txt"])
        second = runner.invoke(app, ["resolve", "env.txt"])
        assert first.stdout == second.stdout

    def test_explicit_catalog_and_store(self, workspace: Path):
        (workspace / ".envforge" / "catalog.toml").rename(workspace / "cat.toml")
        result = runner.invoke(
            app, ["resolve", "env.txt", "--catalog", "cat.toml", "--store", "other-store"]
        )
        assert result.exit_code == 0, result.output
        assert any((workspace / "other-store").glob("*-libA-1.0"))

    def test_unknown_package_exits_2(self, workspace: Path):
        (workspace / "env.txt").write_text("libX\n")
        result = runner.invoke(app, ["resolve", "env.txt"])
        assert result.exit_code == 2
        assert "libX" in result.output
        assert not (workspace / ".envforge" / "store").exists()
        assert not (workspace / ".envforge" / "ledger.db").exists()

    def test_version_conflict_exits_2(self, workspace: Path):
        (workspace / "env.txt").write_text("libA<1.0\ntoolB\n")
        result = runner.invoke(app, ["resolve", "env.txt"])
        assert result.exit_code == 2

    def test_build_failure_exits_3(self, workspace: Path):
        (workspace / "env.txt").write_text("libA\nbroken\n")
        result = runner.invoke(app, ["resolve", "env.txt"])
        assert result.exit_code == 3
        assert "broken==0.1" in result.output
        # the independent artifact still made it into the store
        assert _entry_dir(workspace, "libA").exists()

    def test_bad_declaration_exits_1(self, workspace: Path):
        (workspace / "env.toml").write_text("[environment\n")
        result = runner.invoke(app, ["resolve", "env.toml"])
        assert result.exit_code == 1

    def test_missing_catalog_exits_2(self, workspace: Path):
        (workspace / ".envforge" / "catalog.toml").unlink()
        result = runner.invoke(app, ["resolve", "env.txt"])
        assert result.exit_code == 2


# ---------------------------------------------------------------------------
# Test: activate
# ---------------------------------------------------------------------------


class TestActivateCommand:
    def test_tools_on_path(self, workspace: Path):
        result = runner.invoke(app, ["activate", "env.txt", "--", "toolB"])
        assert result.exit_code == 0, result.output

    def test_exit_code_mirrored(self, workspace: Path):
        result = runner.invoke(app, ["activate", "env.txt", "--", "sh", "-c", "exit 5"])
        assert result.exit_code == 5

    def test_signal_death_exits_128_plus_signal(self, workspace: Path):
        result = runner.invoke(app, ["activate", "env.txt", "--", "sh", "-c", "kill -TERM $$"])
        assert result.exit_code == 143

    def test_session_marker_visible_to_child(self, workspace: Path):
        result = runner.invoke(
            app, ["activate", "env.txt", "--", "sh", "-c", 'test -n "$ENVFORGE_SESSION"']
        )
        assert result.exit_code == 0

    def test_pure_drops_host_variables(self, workspace: Path, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("ENVFORGE_TEST_LEAK", "1")
        script = 'test -z "$ENVFORGE_TEST_LEAK"'
        assert runner.invoke(app, ["activate", "env.txt", "--", "sh", "-c", script]).exit_code == 1
        result = runner.invoke(app, ["activate", "env.txt", "--pure", "--", "/bin/sh", "-c", script])
        assert result.exit_code == 0

    def test_resolution_error_exits_2(self, workspace: Path):
        (workspace / "env.txt").write_text("libX\n")
        result = runner.invoke(app, ["activate", "env.txt", "--", "true"])
        assert result.exit_code == 2

    def test_shell_hook_runs(self, workspace: Path):
        (workspace / "env.toml").write_text(
            '[environment]\npackages = ["toolB"]\nshell_hook = "touch hook-ran"\n'
        )
        result = runner.invoke(app, ["activate", "env.toml", "--", "true"])
        assert result.exit_code == 0, result.output
        assert (workspace / "hook-ran").exists()


# ---------------------------------------------------------------------------
# Test: lock and graph
# ---------------------------------------------------------------------------


class TestLockCommand:
    def test_lock_then_replay(self, workspace: Path):
        result = runner.invoke(app, ["lock", "env.txt"])
        assert result.exit_code == 0, result.output
        assert (workspace / "env.txt.lock").exists()
        assert not any((workspace / ".envforge" / "store").glob("*-libA-*"))

        result = runner.invoke(app, ["resolve", "env.txt", "--locked"])
        assert result.exit_code == 0, result.output

    def test_locked_without_lockfile_exits_1(self, workspace: Path):
        result = runner.invoke(app, ["resolve", "env.txt", "--locked"])
        assert result.exit_code == 1

    def test_drift_exits_2(self, workspace: Path):
        assert runner.invoke(app, ["lock", "env.txt"]).exit_code == 0
        catalog = workspace / ".envforge" / "catalog.toml"
        catalog.write_text(catalog.read_text().replace('"int a(void);"', '"int a(int);"'))
        result = runner.invoke(app, ["resolve", "env.txt", "--locked"])
        assert result.exit_code == 2
        assert "drift" in result.output.lower()


class TestGraphCommand:
    def test_tree_lists_dependencies(self, workspace: Path):
        result = runner.invoke(app, ["graph", "env.txt"])
        assert result.exit_code == 0, result.output
        assert "toolB" in result.output
        assert "libA" in result.output
        assert "..." in result.output  # libA appears again under toolB

    def test_graph_builds_nothing(self, workspace: Path):
        runner.invoke(app, ["graph", "env.txt"])
        assert not any((workspace / ".envforge" / "store").glob("*-libA-*"))


# ---------------------------------------------------------------------------
# Test: store maintenance
# ---------------------------------------------------------------------------


class TestStoreCommands:
    def test_list_empty(self, workspace: Path):
        result = runner.invoke(app, ["store", "list"])
        assert result.exit_code == 0
        assert "empty" in result.output

    def test_list_after_resolve(self, workspace: Path):
        runner.invoke(app, ["resolve", "env.txt"])
        result = runner.invoke(app, ["store", "list"])
        assert result.exit_code == 0
        assert "libA" in result.output

    def test_verify_clean_store(self, workspace: Path):
        runner.invoke(app, ["resolve", "env.txt"])
        result = runner.invoke(app, ["store", "verify"])
        assert result.exit_code == 0
        assert "CORRUPT" not in result.output

    def test_corruption_reported_then_evicted(self, workspace: Path):
        runner.invoke(app, ["resolve", "env.txt"])
        entry = _entry_dir(workspace, "libA")
        victim = entry / "lib" / "libA.so"
        (entry / "lib").chmod(0o755)
        victim.chmod(victim.stat().st_mode | stat.S_IWUSR)
        victim.write_text("tampered")

        result = runner.invoke(app, ["store", "verify"])
        assert result.exit_code == 3
        assert "CORRUPT" in result.output

        # reuse refuses the corrupt entry
        assert runner.invoke(app, ["resolve", "env.txt"]).exit_code == 3

        digest = entry.name.split("-", 1)[0]
        result = runner.invoke(app, ["store", "evict", digest[:12]])
        assert result.exit_code == 0, result.output
        assert not entry.exists()
        assert runner.invoke(app, ["resolve", "env.txt"]).exit_code == 0

    def test_evict_unknown_exits_1(self, workspace: Path):
        result = runner.invoke(app, ["store", "evict", "0123456789abcdef"])
        assert result.exit_code == 1

    def test_gc(self, workspace: Path):
        (workspace / ".envforge" / "store" / ".staging" / "deadbeef-abandoned").mkdir(parents=True)
        result = runner.invoke(app, ["store", "gc"])
        assert result.exit_code == 0
        assert "Removed 1" in result.output

    def test_log_shows_events(self, workspace: Path):
        runner.invoke(app, ["resolve", "env.txt"])
        runner.invoke(app, ["resolve", "env.txt"])
        result = runner.invoke(app, ["store", "log"])
        assert result.exit_code == 0, result.output
        assert "built" in result.output
        assert "reused" in result.output
