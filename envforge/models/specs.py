"""Dependency requests and the declarations that carry them."""

from __future__ import annotations

from enum import Enum

from packaging.requirements import InvalidRequirement, Requirement
from packaging.specifiers import InvalidSpecifier, SpecifierSet
from pydantic import BaseModel, ConfigDict, Field, field_validator


class Capability(str, Enum):
    """Capability tags recognized by the environment composer."""

    LIBRARY = "library"
    BUILD_TOOL = "build-tool"


class DependencySpec(BaseModel):
    """An abstract request for one dependency.

    ``constraint`` is a PEP 440 specifier string ("" means any version).
    ``tags`` optionally narrows which capabilities of the resolved artifact
    are exposed to the environment.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    constraint: str = ""
    tags: tuple[str, ...] = ()

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        value = value.strip()
        if not value or any(ch.isspace() for ch in value):
            raise ValueError(f"invalid dependency identifier: {value!r}")
        return value

    @field_validator("constraint")
    @classmethod
    def _check_constraint(cls, value: str) -> str:
        value = value.strip()
        try:
            SpecifierSet(value)
        except InvalidSpecifier as exc:
            raise ValueError(f"invalid version constraint {value!r}: {exc}") from exc
        return value

    @classmethod
    def parse(cls, text: str, tags: tuple[str, ...] | list[str] = ()) -> DependencySpec:
        """Build a spec from a requirement string such as ``meson>=1.0``."""
        try:
            req = Requirement(text.strip())
        except InvalidRequirement as exc:
            raise ValueError(f"invalid requirement {text!r}: {exc}") from exc
        return cls(name=req.name, constraint=str(req.specifier), tags=tuple(tags))

    @property
    def specifier(self) -> SpecifierSet:
        return SpecifierSet(self.constraint)

    def __str__(self) -> str:
        return f"{self.name}{self.constraint}"


class Declaration(BaseModel):
    """A parsed environment declaration: the ordered list of requested specs.

    Order matters: it is the tie-break for every ordering decision made
    downstream (graph traversal, search-path precedence).
    """

    model_config = ConfigDict(frozen=True)

    name: str = "default"
    specs: tuple[DependencySpec, ...] = ()
    shell_hook: str = ""
    env: dict[str, str] = Field(default_factory=dict)
    source: str = ""  # path the declaration was read from, if any

    @property
    def identifiers(self) -> list[str]:
        return [spec.name for spec in self.specs]
