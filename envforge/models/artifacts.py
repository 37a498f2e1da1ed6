"""Resolved artifact identities and their materialized store entries.

An ``ArtifactDescriptor`` is immutable and content-addressed: its
``content_address`` is the SHA-256 of its identity fields, computed on
construction. A ``StoreEntry`` is the write-once directory that realizes
one descriptor on disk.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from packaging.version import InvalidVersion, Version
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from envforge.core.hasher import content_address as _content_address
from envforge.core.hasher import strip_address
from envforge.models.specs import DependencySpec


class ArtifactOutputs(BaseModel):
    """Relative paths an artifact promises to provide, grouped by kind."""

    model_config = ConfigDict(frozen=True)

    lib: tuple[str, ...] = ()
    include: tuple[str, ...] = ()
    bin: tuple[str, ...] = ()
    pkgconfig: tuple[str, ...] = ()

    def all_paths(self) -> list[str]:
        return [*self.lib, *self.include, *self.bin, *self.pkgconfig]


class BuildRecipe(BaseModel):
    """Inputs for the reference build executor.

    ``files`` maps relative paths to inline text content, ``executables``
    lists which of them get the exec bit, and ``script`` is run with
    ``/bin/sh -c`` inside the output directory afterwards.
    """

    model_config = ConfigDict(frozen=True)

    files: dict[str, str] = Field(default_factory=dict)
    executables: tuple[str, ...] = ()
    script: str = ""


class ArtifactDescriptor(BaseModel):
    """Resolved identity of one dependency."""

    model_config = ConfigDict(frozen=True)

    name: str
    version: str
    capabilities: tuple[str, ...] = ()
    depends: tuple[DependencySpec, ...] = ()
    outputs: ArtifactOutputs = ArtifactOutputs()
    env: dict[str, str] = Field(default_factory=dict)
    recipe: BuildRecipe = BuildRecipe()
    content_address: str = ""  # "sha256:<hex>", computed when omitted

    @field_validator("version")
    @classmethod
    def _check_version(cls, value: str) -> str:
        try:
            Version(value)
        except InvalidVersion as exc:
            raise ValueError(f"invalid version {value!r}: {exc}") from exc
        return value

    @field_validator("depends", mode="before")
    @classmethod
    def _coerce_depends(cls, value: Any) -> Any:
        if isinstance(value, (list, tuple)):
            return tuple(
                DependencySpec.parse(item) if isinstance(item, str) else item
                for item in value
            )
        return value

    @model_validator(mode="after")
    def _seal(self) -> ArtifactDescriptor:
        expected = _content_address(self.identity_payload())
        if not self.content_address:
            object.__setattr__(self, "content_address", expected)
        elif self.content_address != expected:
            raise ValueError(
                f"content address {self.content_address} of {self.name}=={self.version} "
                f"does not match its identity ({expected})"
            )
        return self

    def identity_payload(self) -> dict[str, Any]:
        """The fields that define this artifact's content address."""
        return self.model_dump(mode="json", exclude={"content_address"})

    def __hash__(self) -> int:
        return hash(self.content_address)

    @property
    def digest(self) -> str:
        return strip_address(self.content_address)

    @property
    def parsed_version(self) -> Version:
        return Version(self.version)

    @property
    def label(self) -> str:
        return f"{self.name}=={self.version}"


class StoreEntry(BaseModel):
    """A materialized, verified store location for one ArtifactDescriptor.

    Never mutated in place once written.
    """

    model_config = ConfigDict(frozen=True)

    descriptor: ArtifactDescriptor
    path: Path
    tree_digest: str
    store_key: str = ""  # descriptor address plus the store keys of its inputs
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    def __hash__(self) -> int:
        return hash((self.key, str(self.path)))

    @property
    def key(self) -> str:
        """Store key, falling back to the descriptor address for bare entries."""
        return self.store_key or self.descriptor.content_address

    @property
    def content_address(self) -> str:
        return self.descriptor.content_address

    @property
    def name(self) -> str:
        return self.descriptor.name
