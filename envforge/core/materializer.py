"""Materializer — realizes every node of a ResolutionGraph in the store.

Independent artifacts are realized in parallel on a thread pool; an
artifact is only started once all of its dependencies are published,
because its build may read them. The store serializes same-hash work,
so concurrent callers (threads or processes) build each hash at most
once.

Failure handling mirrors cascade blocking: when an artifact fails, all
of its transitive dependents are marked ``DependencyFailedError`` and
never started, while independent branches run to completion. The
partial result is reported, never dropped.
"""

from __future__ import annotations

import concurrent.futures
import logging
import time
from collections.abc import Mapping
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from envforge.core.builders import BuildExecutor
from envforge.core.cancellation import CancellationToken
from envforge.core.errors import (
    BuildFailedError,
    DependencyFailedError,
    MaterializationError,
    MaterializationIncompleteError,
    MaterializationTimeoutError,
    OperationCancelledError,
    StoreCorruptError,
)
from envforge.core.resolution_graph import ResolutionGraph
from envforge.core.store import ContentAddressedStore
from envforge.core.store_ledger import StoreLedger
from envforge.models.artifacts import ArtifactDescriptor, StoreEntry
from envforge.models.ledger import StoreEvent

logger = logging.getLogger(__name__)


class ArtifactStatus(str, Enum):
    """Outcome of one artifact in a materialization run."""

    BUILT = "built"
    REUSED = "reused"
    FAILED = "failed"
    DEPENDENCY_FAILED = "dependency_failed"
    CANCELLED = "cancelled"


class MaterializationReport(BaseModel):
    """Per-artifact outcome of a materialization run, keyed by content address."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    total: int = 0
    entries: dict[str, StoreEntry] = Field(default_factory=dict)
    statuses: dict[str, ArtifactStatus] = Field(default_factory=dict)
    failures: dict[str, MaterializationError] = Field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failures and len(self.entries) == self.total

    def with_status(self, status: ArtifactStatus) -> list[str]:
        return [addr for addr, s in self.statuses.items() if s == status]


class Materializer:
    """Realizes resolution graphs into a content-addressed store.

    Parameters
    ----------
    store:
        The store to publish into.
    builder:
        Build executor invoked on cache misses.
    max_workers:
        Upper bound on concurrently running realizations.
    ledger:
        Optional store ledger receiving one event per artifact.
    """

    def __init__(
        self,
        store: ContentAddressedStore,
        builder: BuildExecutor,
        *,
        max_workers: int = 4,
        ledger: StoreLedger | None = None,
    ) -> None:
        if max_workers < 1:
            raise ValueError(f"max_workers must be at least 1 (got {max_workers})")
        self._store = store
        self._builder = builder
        self._max_workers = max_workers
        self._ledger = ledger

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def materialize(
        self,
        graph: ResolutionGraph,
        *,
        cancel: CancellationToken | None = None,
        timeout: float | None = None,
    ) -> dict[str, StoreEntry]:
        """Realize every node of *graph*; returns content address -> StoreEntry.

        Raises
        ------
        MaterializationIncompleteError
            If any artifact failed; ``.report`` holds what did succeed.
        MaterializationTimeoutError
            If *timeout* elapsed with builds still running.
        OperationCancelledError
            If *cancel* fired before or during the run.
        """
        report = self.run(graph, cancel=cancel, timeout=timeout)
        if report.failures:
            raise MaterializationIncompleteError(report)
        cancelled = report.with_status(ArtifactStatus.CANCELLED)
        if cancelled:
            raise OperationCancelledError(
                f"Materialization cancelled with {len(cancelled)} artifacts not started"
            )
        return dict(report.entries)

    def run(
        self,
        graph: ResolutionGraph,
        *,
        cancel: CancellationToken | None = None,
        timeout: float | None = None,
    ) -> MaterializationReport:
        """Realize *graph* and report per-artifact outcomes without raising on failure."""
        if cancel is not None:
            cancel.raise_if_cancelled("materialization")

        order = graph.topological_order()
        report = MaterializationReport(total=len(order))
        waiting_on = {addr: set(graph.get_dependencies(addr)) for addr in order}
        pending = list(order)
        blocked: set[str] = set()
        running: dict[concurrent.futures.Future, str] = {}
        deadline = time.monotonic() + timeout if timeout is not None else None

        pool = concurrent.futures.ThreadPoolExecutor(
            max_workers=self._max_workers, thread_name_prefix="envforge-build"
        )
        try:
            while pending or running:
                if cancel is not None and cancel.cancelled:
                    for addr in pending:
                        report.statuses[addr] = ArtifactStatus.CANCELLED
                    if pending:
                        logger.warning(
                            "Cancelled: %d artifacts will not be started.", len(pending)
                        )
                    pending = []
                else:
                    pending = self._submit_ready(
                        graph, pool, pending, waiting_on, blocked, running, report
                    )

                if not running:
                    break

                remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
                done, _ = concurrent.futures.wait(
                    running, timeout=remaining, return_when=concurrent.futures.FIRST_COMPLETED
                )
                if not done:
                    in_progress = [graph.get(addr).label for addr in running.values()]
                    raise MaterializationTimeoutError(in_progress)

                for future in done:
                    addr = running.pop(future)
                    self._collect(graph, addr, future, waiting_on, blocked, report)
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

        logger.info(
            "Materialized %d/%d artifacts (%d built, %d reused, %d failed).",
            len(report.entries),
            report.total,
            len(report.with_status(ArtifactStatus.BUILT)),
            len(report.with_status(ArtifactStatus.REUSED)),
            len(report.failures),
        )
        return report

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def _submit_ready(
        self,
        graph: ResolutionGraph,
        pool: concurrent.futures.ThreadPoolExecutor,
        pending: list[str],
        waiting_on: Mapping[str, set[str]],
        blocked: set[str],
        running: dict[concurrent.futures.Future, str],
        report: MaterializationReport,
    ) -> list[str]:
        still_pending = []
        for addr in pending:
            if addr in blocked:
                continue
            if waiting_on[addr]:
                still_pending.append(addr)
                continue
            inputs = {dep: report.entries[dep] for dep in graph.get_dependencies(addr)}
            future = pool.submit(self._realize_one, graph.get(addr), inputs)
            running[future] = addr
        return still_pending

    def _collect(
        self,
        graph: ResolutionGraph,
        addr: str,
        future: concurrent.futures.Future,
        waiting_on: Mapping[str, set[str]],
        blocked: set[str],
        report: MaterializationReport,
    ) -> None:
        descriptor = graph.get(addr)
        try:
            entry, built = future.result()
        except MaterializationError as exc:
            report.failures[addr] = exc
            report.statuses[addr] = ArtifactStatus.FAILED
            logger.error("%s", exc)
            for dependent in graph.cascade_failure(addr, blocked):
                report.failures[dependent] = DependencyFailedError(
                    graph.get(dependent).label, descriptor.label
                )
                report.statuses[dependent] = ArtifactStatus.DEPENDENCY_FAILED
            return

        report.entries[addr] = entry
        report.statuses[addr] = ArtifactStatus.BUILT if built else ArtifactStatus.REUSED
        for other, deps in waiting_on.items():
            deps.discard(addr)

    # ------------------------------------------------------------------
    # One artifact
    # ------------------------------------------------------------------

    def _realize_one(
        self, descriptor: ArtifactDescriptor, inputs: Mapping[str, StoreEntry]
    ) -> tuple[StoreEntry, bool]:
        try:
            entry, built = self._store.realize(descriptor, self._builder, inputs)
        except StoreCorruptError as exc:
            self._record(StoreEvent.CORRUPT, descriptor, exc.path, exc.reason)
            raise
        except BuildFailedError as exc:
            self._record(StoreEvent.FAILED, descriptor, "", exc.reason)
            raise
        except OSError as exc:
            self._record(StoreEvent.FAILED, descriptor, "", str(exc))
            raise BuildFailedError(descriptor.label, f"store I/O error: {exc}") from exc
        self._record(
            StoreEvent.BUILT if built else StoreEvent.REUSED, descriptor, entry.path, ""
        )
        return entry, built

    def _record(
        self, event: StoreEvent, descriptor: ArtifactDescriptor, path: object, detail: str
    ) -> None:
        if self._ledger is not None:
            self._ledger.record(
                event,
                descriptor.content_address,
                descriptor.label,
                store_path=str(path) if path else "",
                detail=detail,
            )
