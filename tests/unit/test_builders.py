"""Tests for the build executor protocol and the recipe builder."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from envforge.core.builders import (
    BuildExecutor,
    RecipeBuilder,
    input_bin_dirs,
    verify_declared_outputs,
)
from envforge.core.errors import BuildFailedError
from envforge.models.artifacts import ArtifactDescriptor, BuildRecipe, StoreEntry


def _scripted(script: str, **kwargs) -> ArtifactDescriptor:
    return ArtifactDescriptor(
        name="scripted", version="1.0", recipe=BuildRecipe(script=script), **kwargs
    )


class TestRecipeBuilder:
    def test_satisfies_protocol(self):
        assert isinstance(RecipeBuilder(), BuildExecutor)

    def test_writes_files_and_exec_bits(self, tmp_path: Path, tool_b):
        RecipeBuilder().build(tool_b, tmp_path, {})
        tool = tmp_path / "bin" / "toolB"
        assert tool.read_text().startswith("#!/bin/sh")
        assert os.access(tool, os.X_OK)

    def test_script_runs_in_out_dir(self, tmp_path: Path):
        descriptor = _scripted('mkdir -p share && echo "$out" > share/where')
        RecipeBuilder().build(descriptor, tmp_path, {})
        assert (tmp_path / "share" / "where").read_text().strip() == str(tmp_path)

    def test_script_failure(self, tmp_path: Path):
        descriptor = _scripted("echo nope >&2; exit 7")
        with pytest.raises(BuildFailedError, match="exited with 7: nope"):
            RecipeBuilder().build(descriptor, tmp_path, {})

    def test_script_timeout(self, tmp_path: Path):
        with pytest.raises(BuildFailedError, match="timed out"):
            RecipeBuilder(timeout=0.2).build(_scripted("sleep 5"), tmp_path, {})

    def test_path_escape_rejected(self, tmp_path: Path):
        descriptor = ArtifactDescriptor(
            name="evil", version="1.0", recipe=BuildRecipe(files={"../escape": "x"})
        )
        with pytest.raises(BuildFailedError, match="escapes"):
            RecipeBuilder().build(descriptor, tmp_path / "out", {})
        assert not (tmp_path / "escape").exists()

    def test_dependency_binaries_on_path(self, tmp_path: Path, store, builder, tool_b):
        entry, _ = store.realize(tool_b, builder)
        descriptor = _scripted("toolB > used")
        out = tmp_path / "out"
        out.mkdir()
        RecipeBuilder().build(descriptor, out, {entry.content_address: entry})
        assert (out / "used").read_text().strip() == "toolB 2.1"


class TestHelpers:
    def test_verify_declared_outputs(self, tmp_path: Path, lib_a):
        with pytest.raises(BuildFailedError, match="lib/libA.so"):
            verify_declared_outputs(lib_a, tmp_path)
        RecipeBuilder().build(lib_a, tmp_path, {})
        verify_declared_outputs(lib_a, tmp_path)

    def test_input_bin_dirs(self, tmp_path: Path, tool_b, tool_c):
        inputs = {
            tool_b.content_address: StoreEntry(descriptor=tool_b, path=tmp_path / "b", tree_digest="x"),
            tool_c.content_address: StoreEntry(descriptor=tool_c, path=tmp_path / "c", tree_digest="y"),
        }
        assert input_bin_dirs(inputs) == [str(tmp_path / "b" / "bin"), str(tmp_path / "c" / "bin")]
