"""Environment composer — merges store entries into one EnvironmentDescriptor.

Pure function of its inputs: no filesystem access, only the outputs
each descriptor declares and the store path it was published at.

Capability mapping:

- ``library``    -> LD_LIBRARY_PATH, LIBRARY_PATH (library dirs),
                    CPATH (include roots), PKG_CONFIG_PATH (.pc dirs),
                    CMAKE_PREFIX_PATH (entry root)
- ``build-tool`` -> PATH (binary dirs)
"""

from __future__ import annotations

import os
from collections.abc import Iterable, Mapping
from pathlib import Path, PurePosixPath

from envforge.core.resolution_graph import ResolutionGraph
from envforge.models.artifacts import StoreEntry
from envforge.models.environment import (
    CMAKE_PREFIX_PATH,
    CPATH,
    LD_LIBRARY_PATH,
    LIBRARY_PATH,
    PATH,
    PKG_CONFIG_PATH,
    SEARCH_PATH_VARIABLES,
    EnvironmentDescriptor,
)
from envforge.models.specs import Capability

OUT_PLACEHOLDER = "@out@"


def _parent_dirs(root: Path, relatives: Iterable[str]) -> list[str]:
    dirs = []
    for rel in relatives:
        parent = PurePosixPath(rel).parent
        dirs.append(str(root) if parent == PurePosixPath(".") else str(root / parent))
    return dirs


def _include_roots(root: Path, headers: Iterable[str]) -> list[str]:
    """``include/foo/bar.h`` contributes ``<root>/include``; a top-level header the root."""
    roots = []
    for rel in headers:
        parts = PurePosixPath(rel).parts
        roots.append(str(root / parts[0]) if len(parts) > 1 else str(root))
    return roots


class _PathList:
    """Ordered, duplicate-free list of directories for one variable."""

    def __init__(self) -> None:
        self._items: list[str] = []
        self._seen: set[str] = set()

    def extend(self, items: Iterable[str]) -> None:
        for item in items:
            if item and item not in self._seen:
                self._seen.add(item)
                self._items.append(item)

    def prepend(self, items: Iterable[str]) -> None:
        fresh = [item for item in items if item and item not in self._seen]
        self._seen.update(fresh)
        self._items[:0] = fresh

    def __bool__(self) -> bool:
        return bool(self._items)

    def join(self) -> str:
        return os.pathsep.join(self._items)


class EnvironmentComposer:
    """Builds the EnvironmentDescriptor for a materialized graph."""

    def compose(
        self,
        entries: Mapping[str, StoreEntry],
        graph: ResolutionGraph,
        *,
        extra_env: Mapping[str, str] | None = None,
        name: str = "default",
    ) -> EnvironmentDescriptor:
        """Compose the environment for *graph* from its store *entries*.

        Parameters
        ----------
        entries:
            Content address -> StoreEntry, one per graph node.
        graph:
            The resolution graph the entries realize.
        extra_env:
            Declaration-level variables. Scalars override artifact values;
            search-path values are placed ahead of artifact paths.
        name:
            Name recorded on the descriptor.

        Raises
        ------
        ValueError
            If a graph node has no entry.
        """
        order = graph.precedence_order()
        missing = [graph.get(addr).label for addr in order if addr not in entries]
        if missing:
            raise ValueError(f"No store entry for: {', '.join(missing)}")

        paths = {var: _PathList() for var in SEARCH_PATH_VARIABLES}
        scalars: dict[str, str] = {}
        inputs: list[str] = []

        for addr in order:
            entry = entries[addr]
            root = entry.path
            outputs = entry.descriptor.outputs
            capabilities = graph.capabilities(addr)
            inputs.append(str(root))

            if Capability.LIBRARY.value in capabilities:
                lib_dirs = _parent_dirs(root, outputs.lib)
                paths[LD_LIBRARY_PATH].extend(lib_dirs)
                paths[LIBRARY_PATH].extend(lib_dirs)
                paths[CPATH].extend(_include_roots(root, outputs.include))
                paths[PKG_CONFIG_PATH].extend(_parent_dirs(root, outputs.pkgconfig))
                paths[CMAKE_PREFIX_PATH].extend([str(root)])
            if Capability.BUILD_TOOL.value in capabilities:
                paths[PATH].extend(_parent_dirs(root, outputs.bin))

            for key in sorted(entry.descriptor.env):
                value = entry.descriptor.env[key].replace(OUT_PLACEHOLDER, str(root))
                if key in paths:
                    paths[key].extend(value.split(os.pathsep))
                else:
                    scalars.setdefault(key, value)

        for key, value in (extra_env or {}).items():
            if key in paths:
                paths[key].prepend(value.split(os.pathsep))
            else:
                scalars[key] = value

        variables = {var: paths[var].join() for var in SEARCH_PATH_VARIABLES if paths[var]}
        search_paths = tuple(variables)
        for key in sorted(scalars):
            variables[key] = scalars[key]

        return EnvironmentDescriptor(
            name=name,
            variables=variables,
            search_paths=search_paths,
            inputs=tuple(inputs),
        )
