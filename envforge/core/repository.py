"""Repository index backends — read-only catalogs of available artifacts.

The resolver only ever talks to the ``RepositoryIndex`` protocol, so any
object with a matching ``lookup`` method can stand in for a local cache,
a remote mirror, or a test fixture.

Backends shipped here:
1. **StaticIndex** — in-memory descriptors.
2. **CatalogIndex** — a TOML or JSON catalog file on disk.
3. **LayeredIndex** — first backend that knows a name answers.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Sequence
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import tomli
from packaging.specifiers import SpecifierSet
from pydantic import ValidationError

from envforge.core.errors import RepositoryUnavailableError
from envforge.models.artifacts import ArtifactDescriptor

logger = logging.getLogger(__name__)


@runtime_checkable
class RepositoryIndex(Protocol):
    """Protocol for repository index backends.

    ``lookup`` returns every candidate for *identifier* that satisfies
    *constraint* (all candidates when it is ``None``), highest version
    first. An unknown identifier yields an empty list. Backend failures
    surface as ``RepositoryUnavailableError``.
    """

    def lookup(
        self, identifier: str, constraint: SpecifierSet | None = None
    ) -> list[ArtifactDescriptor]:
        ...


def filter_candidates(
    candidates: Iterable[ArtifactDescriptor], constraint: SpecifierSet | None
) -> list[ArtifactDescriptor]:
    """Apply *constraint* and order the survivors highest version first.

    Pre-releases follow ``packaging`` semantics: they are only returned when
    the constraint names one or no final release matches.
    """
    by_version: dict[str, list[ArtifactDescriptor]] = {}
    for candidate in candidates:
        by_version.setdefault(candidate.version, []).append(candidate)
    spec = constraint if constraint is not None else SpecifierSet()
    allowed = set(spec.filter(by_version.keys()))
    selected = [c for version in allowed for c in by_version[version]]
    selected.sort(key=lambda c: (c.parsed_version, c.content_address), reverse=True)
    return selected


class StaticIndex:
    """In-memory repository index.

    Parameters
    ----------
    descriptors:
        Initial catalog contents.
    """

    def __init__(self, descriptors: Iterable[ArtifactDescriptor] = ()) -> None:
        self._by_name: dict[str, list[ArtifactDescriptor]] = {}
        for descriptor in descriptors:
            self.add(descriptor)

    def add(self, descriptor: ArtifactDescriptor) -> None:
        entries = self._by_name.setdefault(descriptor.name, [])
        if all(e.content_address != descriptor.content_address for e in entries):
            entries.append(descriptor)

    def names(self) -> list[str]:
        return sorted(self._by_name)

    def lookup(
        self, identifier: str, constraint: SpecifierSet | None = None
    ) -> list[ArtifactDescriptor]:
        return filter_candidates(self._by_name.get(identifier, []), constraint)


class CatalogIndex:
    """Repository index backed by a catalog file.

    The catalog is a TOML (or ``.json``) document with a ``package`` array;
    each element validates as an ``ArtifactDescriptor``. The file is read
    lazily on first lookup and cached for the lifetime of the index, so one
    resolution always sees one snapshot.

    Parameters
    ----------
    path:
        Path to the catalog file.
    """

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._index: StaticIndex | None = None

    @property
    def path(self) -> Path:
        return self._path

    def _load(self, identifier: str) -> StaticIndex:
        if self._index is not None:
            return self._index
        try:
            raw = self._path.read_text(encoding="utf-8")
        except OSError as exc:
            raise RepositoryUnavailableError(
                identifier, f"cannot read catalog {self._path}: {exc}"
            ) from exc
        try:
            data: dict[str, Any] = (
                json.loads(raw) if self._path.suffix == ".json" else tomli.loads(raw)
            )
        except (json.JSONDecodeError, tomli.TOMLDecodeError) as exc:
            raise RepositoryUnavailableError(
                identifier, f"cannot parse catalog {self._path}: {exc}"
            ) from exc

        packages = data.get("package", [])
        if not isinstance(packages, list):
            raise RepositoryUnavailableError(
                identifier, f"catalog {self._path}: 'package' must be an array of tables"
            )
        descriptors = []
        for position, entry in enumerate(packages):
            try:
                descriptors.append(ArtifactDescriptor.model_validate(entry))
            except ValidationError as exc:
                raise RepositoryUnavailableError(
                    identifier,
                    f"catalog {self._path}: invalid package #{position}: {exc}",
                ) from exc

        self._index = StaticIndex(descriptors)
        logger.debug(
            "Loaded catalog %s (%d packages).", self._path, len(descriptors)
        )
        return self._index

    def lookup(
        self, identifier: str, constraint: SpecifierSet | None = None
    ) -> list[ArtifactDescriptor]:
        return self._load(identifier).lookup(identifier, constraint)


class LayeredIndex:
    """Chain of indexes; the first one that knows an identifier answers.

    An unavailable backend is skipped when a later backend answers; if no
    backend answers and at least one was unavailable, that error is raised.

    Parameters
    ----------
    indexes:
        Backends in priority order (e.g. local cache before remote mirror).
    """

    def __init__(self, indexes: Sequence[RepositoryIndex]) -> None:
        self._indexes = list(indexes)

    def lookup(
        self, identifier: str, constraint: SpecifierSet | None = None
    ) -> list[ArtifactDescriptor]:
        unavailable: RepositoryUnavailableError | None = None
        for index in self._indexes:
            try:
                candidates = index.lookup(identifier, None)
            except RepositoryUnavailableError as exc:
                logger.warning("Skipping unavailable index for %r: %s", identifier, exc.reason)
                unavailable = exc
                continue
            if candidates:
                return filter_candidates(candidates, constraint)
        if unavailable is not None:
            raise unavailable
        return []
