"""Resolution graph — a DAG of ArtifactDescriptors keyed by content address.

The graph enforces:
- No cycles (checked at construction).
- Every edge's target is itself a node of the graph.
- Exactly one node per distinct content hash.

Nodes keep the rank in which they were discovered (declaration order,
then breadth-first). Rank is the tie-break for every ordering the graph
produces, which keeps downstream output deterministic.
"""

from __future__ import annotations

import heapq
from collections import deque
from collections.abc import Iterable, Mapping, Sequence

from envforge.core.errors import CycleError
from envforge.models.artifacts import ArtifactDescriptor


def find_cycle(
    order: Sequence[str], edges: Mapping[str, Sequence[str]]
) -> list[str] | None:
    """Depth-first search for a cycle, starting from *order* in sequence.

    Returns the offending chain (first and last element equal) or ``None``.
    """
    done: set[str] = set()
    for start in order:
        if start in done:
            continue
        stack: list[str] = [start]
        on_stack: set[str] = {start}
        iterators = [iter(edges.get(start, ()))]
        while iterators:
            child = next(iterators[-1], None)
            if child is None:
                node = stack.pop()
                on_stack.discard(node)
                done.add(node)
                iterators.pop()
                continue
            if child in on_stack:
                return stack[stack.index(child):] + [child]
            if child in done:
                continue
            stack.append(child)
            on_stack.add(child)
            iterators.append(iter(edges.get(child, ())))
    return None


class ResolutionGraph:
    """Directed acyclic graph of resolved artifacts.

    Parameters
    ----------
    descriptors:
        Resolved artifacts in discovery order. Duplicates (same content
        address) collapse to one node.
    dependencies:
        content address -> direct dependency content addresses.
    roots:
        Content addresses requested directly by the declaration, in
        declaration order.
    requested_tags:
        Capability tags the declaration requested for a root, if any.
    """

    def __init__(
        self,
        descriptors: Iterable[ArtifactDescriptor],
        dependencies: Mapping[str, Sequence[str]],
        roots: Sequence[str],
        requested_tags: Mapping[str, Sequence[str]] | None = None,
    ) -> None:
        self._nodes: dict[str, ArtifactDescriptor] = {}
        for descriptor in descriptors:
            self._nodes.setdefault(descriptor.content_address, descriptor)
        self._rank: dict[str, int] = {addr: i for i, addr in enumerate(self._nodes)}

        # Forward edges: address -> direct dependencies
        self._dependencies: dict[str, list[str]] = {addr: [] for addr in self._nodes}
        for addr, deps in dependencies.items():
            if addr not in self._nodes:
                raise ValueError(f"Edge source {addr} is not a node of the graph")
            for dep in deps:
                if dep not in self._nodes:
                    raise ValueError(
                        f"Edge {self._nodes[addr].label} -> {dep} targets an unresolved node"
                    )
                if dep not in self._dependencies[addr]:
                    self._dependencies[addr].append(dep)

        # Reverse edges: address -> direct dependents
        self._dependents: dict[str, list[str]] = {addr: [] for addr in self._nodes}
        for addr, deps in self._dependencies.items():
            for dep in deps:
                self._dependents[dep].append(addr)

        self._roots: list[str] = []
        for root in roots:
            if root not in self._nodes:
                raise ValueError(f"Root {root} is not a node of the graph")
            if root not in self._roots:
                self._roots.append(root)

        self._requested_tags: dict[str, tuple[str, ...]] = {
            addr: tuple(tags) for addr, tags in (requested_tags or {}).items() if tags
        }

        self._validate_no_cycles()

    def _validate_no_cycles(self) -> None:
        """Verify the graph is a DAG, naming the cycle if it is not."""
        cycle = find_cycle(list(self._nodes), self._dependencies)
        if cycle is not None:
            raise CycleError([self._nodes[addr].name for addr in cycle])

    # ------------------------------------------------------------------
    # Query methods
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, content_address: object) -> bool:
        return content_address in self._nodes

    @property
    def descriptors(self) -> list[ArtifactDescriptor]:
        """All descriptors in discovery order."""
        return list(self._nodes.values())

    @property
    def roots(self) -> list[str]:
        return list(self._roots)

    def get(self, content_address: str) -> ArtifactDescriptor:
        return self._nodes[content_address]

    def find(self, name: str) -> ArtifactDescriptor | None:
        """Return the node resolved for *name*, if any."""
        for descriptor in self._nodes.values():
            if descriptor.name == name:
                return descriptor
        return None

    def get_dependencies(self, content_address: str) -> list[str]:
        """Return direct dependency addresses of a node."""
        return list(self._dependencies.get(content_address, []))

    def get_dependents(self, content_address: str) -> list[str]:
        """Return all transitive dependent addresses (BFS)."""
        result = []
        queue = deque(self._dependents.get(content_address, []))
        visited: set[str] = set()
        while queue:
            node = queue.popleft()
            if node in visited:
                continue
            visited.add(node)
            result.append(node)
            queue.extend(self._dependents.get(node, []))
        return result

    def capabilities(self, content_address: str) -> tuple[str, ...]:
        """Capabilities exposed for a node.

        Requested tags narrow the declared capabilities; a tag the
        artifact does not declare is never exposed.
        """
        declared = self._nodes[content_address].capabilities
        requested = self._requested_tags.get(content_address)
        if requested:
            return tuple(tag for tag in requested if tag in declared)
        return declared

    # ------------------------------------------------------------------
    # Orderings
    # ------------------------------------------------------------------

    def topological_order(self) -> list[str]:
        """Dependencies before dependents; ties broken by discovery rank."""
        in_degree = {addr: len(deps) for addr, deps in self._dependencies.items()}
        return self._kahn(in_degree, self._dependents)

    def precedence_order(self) -> list[str]:
        """Dependents before their dependencies; ties broken by discovery rank.

        This is the order in which search paths are listed: a dependent's
        own paths shadow those of anything it pulls in, and unrelated
        artifacts keep declaration order.
        """
        in_degree = {addr: len(deps) for addr, deps in self._dependents.items()}
        return self._kahn(in_degree, self._dependencies)

    def _kahn(
        self, in_degree: dict[str, int], successors: Mapping[str, Sequence[str]]
    ) -> list[str]:
        heap = [(self._rank[addr], addr) for addr, deg in in_degree.items() if deg == 0]
        heapq.heapify(heap)
        result: list[str] = []
        while heap:
            _, node = heapq.heappop(heap)
            result.append(node)
            for nxt in successors.get(node, []):
                in_degree[nxt] -= 1
                if in_degree[nxt] == 0:
                    heapq.heappush(heap, (self._rank[nxt], nxt))
        return result

    # ------------------------------------------------------------------
    # Failure propagation
    # ------------------------------------------------------------------

    def cascade_failure(self, failed: str, blocked: set[str]) -> list[str]:
        """Mark every transitive dependent of *failed* as blocked.

        Returns the addresses that were newly blocked.
        """
        newly: list[str] = []
        for dependent in self.get_dependents(failed):
            if dependent not in blocked:
                blocked.add(dependent)
                newly.append(dependent)
        return newly
