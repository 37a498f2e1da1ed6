"""Lockfiles — record a resolution and detect drift when replaying it.

A lockfile sits next to its declaration (``env.toml`` -> ``env.toml.lock``)
and pins every node of the graph by content address. Replaying with the
lock pins each name to its recorded version; if the index now serves a
different artifact for that version, or the declaration itself changed,
that is drift.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from pydantic import ValidationError

from envforge.core.errors import DeclarationError, LockDriftError
from envforge.core.hasher import content_address
from envforge.core.resolution_graph import ResolutionGraph
from envforge.models.lockfile import LOCKFILE_VERSION, LockedArtifact, Lockfile
from envforge.models.specs import Declaration

logger = logging.getLogger(__name__)

LOCK_SUFFIX = ".lock"


def lock_path_for(declaration_path: Path) -> Path:
    declaration_path = Path(declaration_path)
    return declaration_path.with_name(declaration_path.name + LOCK_SUFFIX)


def declaration_digest(declaration: Declaration) -> str:
    """Content address of everything in a declaration except where it came from."""
    return content_address(declaration.model_dump(mode="json", exclude={"source"}))


def build_lockfile(declaration: Declaration, graph: ResolutionGraph) -> Lockfile:
    artifacts = []
    for addr in graph.topological_order():
        descriptor = graph.get(addr)
        artifacts.append(
            LockedArtifact(
                name=descriptor.name,
                version=descriptor.version,
                content_address=addr,
                depends=tuple(graph.get_dependencies(addr)),
            )
        )
    return Lockfile(
        declaration_digest=declaration_digest(declaration),
        artifacts=tuple(artifacts),
    )


def write_lockfile(lockfile: Lockfile, path: Path) -> Path:
    path = Path(path)
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_text(
        json.dumps(lockfile.model_dump(mode="json"), indent=2, sort_keys=True) + "\n",
        encoding="utf-8",
    )
    tmp.replace(path)
    logger.info("Wrote %s (%d artifacts).", path, len(lockfile.artifacts))
    return path


def read_lockfile(path: Path) -> Lockfile:
    """Load a lockfile.

    Raises
    ------
    DeclarationError
        If the file is missing, malformed, or written by another format version.
    """
    path = Path(path)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        lockfile = Lockfile.model_validate(data)
    except FileNotFoundError as exc:
        raise DeclarationError(f"No lockfile at {path}; run `envforge lock` first") from exc
    except (OSError, ValueError, ValidationError) as exc:
        raise DeclarationError(f"Invalid lockfile {path}: {exc}") from exc
    if lockfile.version != LOCKFILE_VERSION:
        raise DeclarationError(
            f"Lockfile {path} has format version {lockfile.version}, "
            f"expected {LOCKFILE_VERSION}"
        )
    return lockfile


class LockPinner:
    """Replays a lockfile: supplies version pins and detects drift.

    Parameters
    ----------
    lockfile:
        The recorded resolution.
    """

    def __init__(self, lockfile: Lockfile) -> None:
        self._lockfile = lockfile

    @property
    def lockfile(self) -> Lockfile:
        return self._lockfile

    def pins(self) -> dict[str, str]:
        """Name -> exact version, for ``Resolver.resolve(pins=...)``."""
        return {name: locked.version for name, locked in self._lockfile.pins().items()}

    def check_drift(
        self,
        declaration: Declaration,
        graph: ResolutionGraph,
        *,
        strict: bool = True,
    ) -> list[str]:
        """Compare a fresh resolution against the lock.

        Returns a list of drift descriptions. Empty list means no drift.
        Raises LockDriftError if strict=True and drift is detected.
        """
        drifts: list[str] = []
        if declaration_digest(declaration) != self._lockfile.declaration_digest:
            drifts.append("declaration changed since the lockfile was written")

        locked = self._lockfile.pins()
        resolved = {descriptor.name: descriptor for descriptor in graph.descriptors}
        for name, pin in locked.items():
            current = resolved.get(name)
            if current is None:
                drifts.append(f"{name}: locked at {pin.version} but no longer in the graph")
            elif current.content_address != pin.content_address:
                drifts.append(
                    f"{name}=={pin.version}: locked {pin.content_address}, "
                    f"index now serves {current.content_address}"
                )
        for name in resolved:
            if name not in locked:
                drifts.append(f"{name}: in the graph but not in the lockfile")

        if strict and drifts:
            raise LockDriftError(drifts)
        return drifts
