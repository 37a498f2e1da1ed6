"""Pluggable build executors — invoked only on a store cache miss.

Defines the ``BuildExecutor`` Protocol that build backends must satisfy,
and ``RecipeBuilder``, the reference backend that realizes an artifact
from the inline recipe carried by its descriptor.

A build writes into a private staging directory. Publishing the result
under its content address is the store's job, not the executor's.
"""

from __future__ import annotations

import logging
import os
import subprocess
from collections.abc import Mapping
from pathlib import Path, PurePosixPath
from typing import Protocol, runtime_checkable

from envforge.core.errors import BuildFailedError
from envforge.models.artifacts import ArtifactDescriptor, StoreEntry

logger = logging.getLogger(__name__)


@runtime_checkable
class BuildExecutor(Protocol):
    """Protocol for build backends.

    Any object with a matching ``build`` method satisfies this protocol.
    """

    def build(
        self,
        descriptor: ArtifactDescriptor,
        out_dir: Path,
        inputs: Mapping[str, StoreEntry],
    ) -> None:
        """Produce *descriptor*'s contents inside *out_dir*.

        Parameters
        ----------
        descriptor:
            The artifact to build.
        out_dir:
            An empty, private staging directory.
        inputs:
            Store entries of the artifact's direct dependencies, keyed by
            content address.
        """
        ...


def _safe_relative(out_dir: Path, relative: str, label: str) -> Path:
    rel = PurePosixPath(relative)
    if rel.is_absolute() or ".." in rel.parts or not rel.parts:
        raise BuildFailedError(label, f"recipe path {relative!r} escapes the output directory")
    return out_dir.joinpath(*rel.parts)


def verify_declared_outputs(descriptor: ArtifactDescriptor, out_dir: Path) -> None:
    """Fail the build if any declared output is missing from *out_dir*."""
    missing = [
        rel for rel in descriptor.outputs.all_paths()
        if not _safe_relative(out_dir, rel, descriptor.label).exists()
    ]
    if missing:
        raise BuildFailedError(
            descriptor.label, f"declared outputs missing after build: {', '.join(missing)}"
        )


def input_bin_dirs(inputs: Mapping[str, StoreEntry]) -> list[str]:
    """Directories holding the binaries of the given store entries."""
    dirs: list[str] = []
    for entry in inputs.values():
        for rel in entry.descriptor.outputs.bin:
            directory = str(entry.path.joinpath(*PurePosixPath(rel).parent.parts))
            if directory not in dirs:
                dirs.append(directory)
    return dirs


class RecipeBuilder:
    """Realizes an artifact from its descriptor's inline ``BuildRecipe``.

    Writes the recipe's ``files``, marks ``executables``, then runs
    ``script`` (if any) with ``out`` / ``ENVFORGE_OUT`` pointing at the
    staging directory and the dependencies' bin dirs first on ``PATH``.

    Parameters
    ----------
    shell:
        Interpreter used for recipe scripts.
    timeout:
        Seconds before a recipe script is considered hung.
    """

    def __init__(self, shell: str = "/bin/sh", timeout: float | None = None) -> None:
        self._shell = shell
        self._timeout = timeout

    def build(
        self,
        descriptor: ArtifactDescriptor,
        out_dir: Path,
        inputs: Mapping[str, StoreEntry],
    ) -> None:
        recipe = descriptor.recipe
        for rel, content in sorted(recipe.files.items()):
            target = _safe_relative(out_dir, rel, descriptor.label)
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
        for rel in recipe.executables:
            target = _safe_relative(out_dir, rel, descriptor.label)
            if not target.exists():
                raise BuildFailedError(descriptor.label, f"executable {rel!r} was not produced")
            target.chmod(0o755)

        if recipe.script:
            self._run_script(descriptor, out_dir, inputs)

    def _run_script(
        self,
        descriptor: ArtifactDescriptor,
        out_dir: Path,
        inputs: Mapping[str, StoreEntry],
    ) -> None:
        env = os.environ.copy()
        env["out"] = str(out_dir)
        env["ENVFORGE_OUT"] = str(out_dir)
        bin_dirs = input_bin_dirs(inputs)
        if bin_dirs:
            existing = env.get("PATH", "")
            env["PATH"] = os.pathsep.join([*bin_dirs, existing]) if existing else os.pathsep.join(bin_dirs)

        logger.debug("Running recipe script for %s in %s", descriptor.label, out_dir)
        try:
            result = subprocess.run(
                [self._shell, "-c", descriptor.recipe.script],
                cwd=out_dir,
                env=env,
                capture_output=True,
                text=True,
                timeout=self._timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise BuildFailedError(
                descriptor.label, f"recipe script timed out after {exc.timeout}s"
            ) from exc
        except OSError as exc:
            raise BuildFailedError(descriptor.label, f"cannot run {self._shell}: {exc}") from exc

        if result.returncode != 0:
            tail = (result.stderr or result.stdout).strip().splitlines()[-5:]
            raise BuildFailedError(
                descriptor.label,
                f"recipe script exited with {result.returncode}"
                + (f": {' | '.join(tail)}" if tail else ""),
            )
