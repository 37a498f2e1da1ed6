"""Environment engine — wires the pipeline stages into one coordinator.

declaration -> Resolver (graph) -> Materializer (store entries)
            -> EnvironmentComposer (descriptor) -> SessionActivator (session)

Resolution errors abort before any materialization work begins, so a
failed resolve never writes to the store.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, MutableMapping
from pathlib import Path

from pydantic import BaseModel, ConfigDict

from envforge.config import EnvforgeSettings
from envforge.core.builders import BuildExecutor, RecipeBuilder
from envforge.core.cancellation import CancellationToken
from envforge.core.composer import EnvironmentComposer
from envforge.core.declaration import parse_declaration
from envforge.core.lockfile import (
    LockPinner,
    build_lockfile,
    lock_path_for,
    read_lockfile,
    write_lockfile,
)
from envforge.core.materializer import Materializer
from envforge.core.repository import CatalogIndex, RepositoryIndex
from envforge.core.resolution_graph import ResolutionGraph
from envforge.core.resolver import Resolver
from envforge.core.session import Session, SessionActivator
from envforge.core.store import ContentAddressedStore
from envforge.core.store_ledger import StoreLedger
from envforge.models.artifacts import StoreEntry
from envforge.models.environment import EnvironmentDescriptor
from envforge.models.lockfile import Lockfile
from envforge.models.specs import Declaration

logger = logging.getLogger(__name__)


class Realization(BaseModel):
    """Everything produced for one declaration up to (not including) activation."""

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    declaration: Declaration
    graph: ResolutionGraph
    entries: dict[str, StoreEntry]
    environment: EnvironmentDescriptor


class EnvironmentEngine:
    """Central coordinator for resolving and activating environments.

    Parameters
    ----------
    settings:
        Runtime configuration. Uses defaults (and ENVFORGE_* overrides)
        if not provided.
    index:
        Repository index. Defaults to the catalog at ``settings.catalog_path``.
    builder:
        Build executor. Defaults to ``RecipeBuilder``.
    store:
        Artifact store. Defaults to ``settings.store_path``.
    ledger:
        Store ledger. Defaults to ``settings.ledger_path``.
    """

    def __init__(
        self,
        settings: EnvforgeSettings | None = None,
        *,
        index: RepositoryIndex | None = None,
        builder: BuildExecutor | None = None,
        store: ContentAddressedStore | None = None,
        ledger: StoreLedger | None = None,
    ) -> None:
        self.settings = settings or EnvforgeSettings()

        # Collaborators
        self.index = index or CatalogIndex(self.settings.catalog_path)
        self.builder = builder or RecipeBuilder()
        self.store = store or ContentAddressedStore(
            self.settings.store_path,
            lock_timeout=self.settings.lock_timeout_seconds,
            poll_interval=self.settings.lock_poll_interval_seconds,
            verify_on_reuse=self.settings.verify_on_reuse,
        )
        self.ledger = ledger or StoreLedger(self.settings.ledger_path)

        # Stages
        self.resolver = Resolver(self.index)
        self.materializer = Materializer(
            self.store,
            self.builder,
            max_workers=self.settings.max_parallel_builds,
            ledger=self.ledger,
        )
        self.composer = EnvironmentComposer()
        self.activator = SessionActivator(keep=self.settings.pure_keep_variables)

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def load_declaration(self, path: Path) -> Declaration:
        return parse_declaration(path)

    def resolve(
        self,
        declaration: Declaration,
        *,
        locked: Lockfile | None = None,
        cancel: CancellationToken | None = None,
    ) -> ResolutionGraph:
        """Resolve *declaration*; with *locked*, replay the lock and fail on drift."""
        if locked is None:
            return self.resolver.resolve(declaration, cancel=cancel)
        pinner = LockPinner(locked)
        graph = self.resolver.resolve(declaration, pins=pinner.pins(), cancel=cancel)
        pinner.check_drift(declaration, graph)
        return graph

    def materialize(
        self,
        graph: ResolutionGraph,
        *,
        cancel: CancellationToken | None = None,
        timeout: float | None = None,
    ) -> dict[str, StoreEntry]:
        return self.materializer.materialize(graph, cancel=cancel, timeout=timeout)

    def compose(
        self,
        entries: Mapping[str, StoreEntry],
        graph: ResolutionGraph,
        declaration: Declaration,
    ) -> EnvironmentDescriptor:
        return self.composer.compose(
            entries, graph, extra_env=declaration.env, name=declaration.name
        )

    def realize(
        self,
        declaration: Declaration,
        *,
        locked: Lockfile | None = None,
        cancel: CancellationToken | None = None,
        timeout: float | None = None,
    ) -> Realization:
        """Resolve, materialize, and compose *declaration*."""
        graph = self.resolve(declaration, locked=locked, cancel=cancel)
        entries = self.materialize(graph, cancel=cancel, timeout=timeout)
        environment = self.compose(entries, graph, declaration)
        logger.info(
            "Environment %s ready (%s).", environment.name, environment.digest[:19]
        )
        return Realization(
            declaration=declaration, graph=graph, entries=entries, environment=environment
        )

    def activate(
        self,
        realization: Realization,
        *,
        target: MutableMapping[str, str] | None = None,
        pure: bool = False,
        cancel: CancellationToken | None = None,
    ) -> Session:
        return self.activator.activate(
            realization.environment,
            target=target,
            pure=pure,
            shell_hook=realization.declaration.shell_hook,
            cancel=cancel,
        )

    # ------------------------------------------------------------------
    # Lockfiles
    # ------------------------------------------------------------------

    def lock(self, declaration_path: Path) -> Path:
        """Resolve the declaration at *declaration_path* and write its lockfile."""
        declaration = self.load_declaration(declaration_path)
        graph = self.resolve(declaration)
        return write_lockfile(build_lockfile(declaration, graph), lock_path_for(declaration_path))

    def read_lock(self, declaration_path: Path) -> Lockfile:
        return read_lockfile(lock_path_for(declaration_path))
