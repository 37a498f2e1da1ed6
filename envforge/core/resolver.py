"""Resolver — turns requested DependencySpecs into a ResolutionGraph.

Resolution is a pure computation over one snapshot of the repository
index. It expands breadth-first from the declaration, follows each
selected artifact's own dependency specs, and picks for every name the
highest version that satisfies all constraints placed on it. Because a
constraint may only show up after its target was already expanded, the
expansion is repeated with the corrected selection until it is stable.

There is no backtracking: if the constraints collected for a name cannot
be met, resolution fails with ``VersionConflictError`` naming every
requester.
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Iterable, Mapping

from packaging.specifiers import SpecifierSet

from envforge.core.cancellation import CancellationToken
from envforge.core.errors import CycleError, NotFoundError, VersionConflictError
from envforge.core.repository import RepositoryIndex, filter_candidates
from envforge.core.resolution_graph import ResolutionGraph, find_cycle
from envforge.models.artifacts import ArtifactDescriptor
from envforge.models.specs import Declaration, DependencySpec

logger = logging.getLogger(__name__)

ROOT_REQUESTER = "declaration"
LOCK_REQUESTER = "lockfile"


class _Pass:
    """Bookkeeping for one breadth-first expansion."""

    def __init__(self) -> None:
        self.order: list[str] = []
        self.constraints: dict[str, list[tuple[str, str]]] = {}
        self.chains: dict[str, str] = {}
        self.used: dict[str, ArtifactDescriptor] = {}
        self.edges: dict[str, list[str]] = {}


class Resolver:
    """Computes the transitive closure of a declaration.

    Parameters
    ----------
    index:
        The repository index to resolve against.
    max_passes:
        Upper bound on re-expansions before a non-converging selection is
        reported as a conflict.
    """

    def __init__(self, index: RepositoryIndex, *, max_passes: int = 16) -> None:
        self._index = index
        self._max_passes = max_passes
        self._candidates_cache: dict[str, list[ArtifactDescriptor]] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def resolve(
        self,
        specs: Declaration | Iterable[DependencySpec],
        *,
        pins: Mapping[str, str] | None = None,
        cancel: CancellationToken | None = None,
    ) -> ResolutionGraph:
        """Resolve *specs* into a ResolutionGraph.

        Parameters
        ----------
        specs:
            A Declaration or an ordered collection of DependencySpecs.
        pins:
            Optional name -> exact version pins (from a lockfile).
        cancel:
            Checked between expansion steps.

        Raises
        ------
        NotFoundError, VersionConflictError, CycleError, RepositoryUnavailableError
        """
        roots = self._dedupe(specs.specs if isinstance(specs, Declaration) else specs)
        self._candidates_cache = {}
        pins = dict(pins or {})

        selection: dict[str, ArtifactDescriptor] = {}
        for pass_number in range(1, self._max_passes + 1):
            state = self._expand(roots, selection, pins, cancel)
            final = {
                name: self._best(name, state)
                for name in state.order
            }
            unstable = [
                name for name in state.order
                if final[name].content_address != state.used[name].content_address
            ]
            if not unstable:
                logger.debug("Resolution converged after %d pass(es).", pass_number)
                return self._build_graph(roots, state)
            logger.debug(
                "Pass %d: reselecting %s.", pass_number, ", ".join(unstable)
            )
            selection = final

        name = unstable[0]
        raise VersionConflictError(
            name,
            state.constraints[name],
            self._versions(name),
            reason=f"selection did not converge after {self._max_passes} passes",
        )

    # ------------------------------------------------------------------
    # Expansion
    # ------------------------------------------------------------------

    @staticmethod
    def _dedupe(specs: Iterable[DependencySpec]) -> list[DependencySpec]:
        seen: set[DependencySpec] = set()
        result = []
        for spec in specs:
            if spec not in seen:
                seen.add(spec)
                result.append(spec)
        return result

    def _expand(
        self,
        roots: list[DependencySpec],
        selection: Mapping[str, ArtifactDescriptor],
        pins: Mapping[str, str],
        cancel: CancellationToken | None,
    ) -> _Pass:
        state = _Pass()
        queue: deque[str] = deque()

        def record(spec: DependencySpec, requester_chain: str) -> None:
            if spec.name not in state.constraints:
                state.constraints[spec.name] = []
                state.order.append(spec.name)
                state.chains[spec.name] = requester_chain
                if spec.name in pins:
                    state.constraints[spec.name].append(
                        (f"=={pins[spec.name]}", LOCK_REQUESTER)
                    )
                queue.append(spec.name)
            state.constraints[spec.name].append((spec.constraint, requester_chain))

        for spec in roots:
            record(spec, ROOT_REQUESTER)

        while queue:
            if cancel is not None:
                cancel.raise_if_cancelled("resolution")
            name = queue.popleft()
            descriptor = self._choose(name, state, selection.get(name))
            state.used[name] = descriptor
            state.edges[name] = []
            chain = f"{descriptor.label} <- {state.chains[name]}"
            for dep in descriptor.depends:
                if dep.name not in state.edges[name]:
                    state.edges[name].append(dep.name)
                record(dep, chain)
        return state

    def _choose(
        self, name: str, state: _Pass, preferred: ArtifactDescriptor | None
    ) -> ArtifactDescriptor:
        """Pick a candidate consistent with the constraints known so far."""
        specifier = self._combined(state.constraints[name])
        candidates = filter_candidates(self._candidates(name, state), specifier)
        if not candidates:
            raise VersionConflictError(
                name, state.constraints[name], self._versions(name)
            )
        if preferred is not None and any(
            c.content_address == preferred.content_address for c in candidates
        ):
            return preferred
        return candidates[0]

    def _best(self, name: str, state: _Pass) -> ArtifactDescriptor:
        """Highest candidate satisfying every constraint collected in the pass."""
        specifier = self._combined(state.constraints[name])
        candidates = filter_candidates(self._candidates(name, state), specifier)
        if not candidates:
            raise VersionConflictError(
                name, state.constraints[name], self._versions(name)
            )
        return candidates[0]

    @staticmethod
    def _combined(constraints: list[tuple[str, str]]) -> SpecifierSet:
        combined = SpecifierSet()
        for constraint, _ in constraints:
            combined &= SpecifierSet(constraint)
        return combined

    def _candidates(self, name: str, state: _Pass) -> list[ArtifactDescriptor]:
        if name not in self._candidates_cache:
            found = self._index.lookup(name, None)
            if not found:
                raise NotFoundError(name, requested_by=state.chains.get(name, ROOT_REQUESTER))
            self._candidates_cache[name] = found
        return self._candidates_cache[name]

    def _versions(self, name: str) -> list[str]:
        return [c.version for c in self._candidates_cache.get(name, [])]

    # ------------------------------------------------------------------
    # Graph assembly
    # ------------------------------------------------------------------

    def _build_graph(self, roots: list[DependencySpec], state: _Pass) -> ResolutionGraph:
        cycle = find_cycle(state.order, state.edges)
        if cycle is not None:
            raise CycleError(cycle)

        address = {name: state.used[name].content_address for name in state.order}
        requested_tags: dict[str, list[str]] = {}
        for spec in roots:
            tags = requested_tags.setdefault(address[spec.name], [])
            tags.extend(tag for tag in spec.tags if tag not in tags)

        graph = ResolutionGraph(
            [state.used[name] for name in state.order],
            {address[name]: [address[d] for d in state.edges[name]] for name in state.order},
            [address[spec.name] for spec in roots],
            requested_tags,
        )
        logger.info(
            "Resolved %d requested dependencies to %d artifacts.", len(roots), len(graph)
        )
        return graph
