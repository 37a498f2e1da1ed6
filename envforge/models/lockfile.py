"""Lockfile model — pins a resolution so it can be replayed exactly."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict

LOCKFILE_VERSION = 1


class LockedArtifact(BaseModel):
    """One resolved node of a pinned graph."""

    model_config = ConfigDict(frozen=True)

    name: str
    version: str
    content_address: str
    depends: tuple[str, ...] = ()  # content addresses of direct dependencies


class Lockfile(BaseModel):
    """All pins for one declaration, in topological order."""

    model_config = ConfigDict(frozen=True)

    version: int = LOCKFILE_VERSION
    declaration_digest: str
    artifacts: tuple[LockedArtifact, ...] = ()

    def pins(self) -> dict[str, LockedArtifact]:
        return {artifact.name: artifact for artifact in self.artifacts}
