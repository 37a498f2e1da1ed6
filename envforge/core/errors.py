"""Error taxonomy for resolution, materialization and activation.

Every error names the dependency identifier it concerns so the author of
a declaration can fix the input without reading internals. Each family
carries the exit code the CLI maps it to.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from envforge.core.materializer import MaterializationReport


class EnvforgeError(RuntimeError):
    """Base class for all envforge errors."""

    exit_code: int = 1


class DeclarationError(EnvforgeError):
    """Raised when a declaration file cannot be read or parsed."""

    exit_code = 1


class OperationCancelledError(EnvforgeError):
    """Raised when work is cancelled before it started."""

    exit_code = 130


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------


class ResolutionError(EnvforgeError):
    """Resolution failed; no materialization work has been started."""

    exit_code = 2


class NotFoundError(ResolutionError):
    """A requested identifier does not exist in the repository index."""

    def __init__(self, identifier: str, requested_by: str = "declaration") -> None:
        self.identifier = identifier
        self.requested_by = requested_by
        super().__init__(
            f"{identifier!r} not found in the repository index "
            f"(requested by {requested_by})"
        )


class VersionConflictError(ResolutionError):
    """No available version satisfies every constraint on an identifier.

    ``requirements`` holds ``(constraint, requester_chain)`` pairs.
    """

    def __init__(
        self,
        identifier: str,
        requirements: Sequence[tuple[str, str]],
        available: Sequence[str],
        reason: str = "",
    ) -> None:
        self.identifier = identifier
        self.requirements = list(requirements)
        self.available = list(available)
        parts = [
            f"{constraint or '<any>'!r} required by {chain}"
            for constraint, chain in self.requirements
        ]
        message = (
            f"No version of {identifier!r} satisfies all constraints: "
            + "; ".join(parts)
            + f". Available: {', '.join(self.available) or 'none'}"
        )
        if reason:
            message += f" ({reason})"
        super().__init__(message)


class CycleError(ResolutionError):
    """The dependency graph contains a cycle; ``chain`` starts and ends on the same node."""

    def __init__(self, chain: Sequence[str]) -> None:
        self.chain = list(chain)
        super().__init__(f"Dependency cycle: {' -> '.join(self.chain)}")


class RepositoryUnavailableError(ResolutionError):
    """The repository index could not be queried."""

    def __init__(self, identifier: str, reason: str) -> None:
        self.identifier = identifier
        self.reason = reason
        super().__init__(f"Repository unavailable while looking up {identifier!r}: {reason}")


class LockDriftError(ResolutionError):
    """The repository or declaration no longer matches a lockfile."""

    def __init__(self, drifts: Sequence[str]) -> None:
        self.drifts = list(drifts)
        super().__init__(f"Lockfile drift detected: {'; '.join(self.drifts)}")


# ---------------------------------------------------------------------------
# Materialization
# ---------------------------------------------------------------------------


class MaterializationError(EnvforgeError):
    """Realizing an artifact into the store failed."""

    exit_code = 3


class BuildFailedError(MaterializationError):
    """The build executor failed; nothing was published."""

    def __init__(self, identifier: str, reason: str) -> None:
        self.identifier = identifier
        self.reason = reason
        super().__init__(f"Build of {identifier} failed: {reason}")


class DependencyFailedError(MaterializationError):
    """A transitive dependency failed, so this artifact was not attempted."""

    def __init__(self, identifier: str, failed_dependency: str) -> None:
        self.identifier = identifier
        self.failed_dependency = failed_dependency
        super().__init__(
            f"{identifier} not materialized: dependency {failed_dependency} failed"
        )


class StoreCorruptError(MaterializationError):
    """An existing store entry does not match its content address.

    Never repaired automatically; the entry must be evicted explicitly.
    """

    def __init__(self, identifier: str, path: Any, reason: str) -> None:
        self.identifier = identifier
        self.path = path
        self.reason = reason
        super().__init__(
            f"Store entry for {identifier} at {path} is corrupt: {reason}. "
            f"Run 'envforge store evict' to remove it."
        )


class MaterializationTimeoutError(MaterializationError):
    """Waiting for in-flight builds exceeded the timeout; builds keep running."""

    def __init__(self, in_progress: Sequence[str]) -> None:
        self.in_progress = list(in_progress)
        super().__init__(
            f"Timed out waiting for builds still in progress: {', '.join(self.in_progress)}"
        )


class MaterializationIncompleteError(MaterializationError):
    """At least one artifact failed; ``report`` holds the partial result."""

    def __init__(self, report: MaterializationReport) -> None:
        self.report = report
        lines = [str(error) for error in report.failures.values()]
        super().__init__(
            f"{len(report.failures)} of {report.total} artifacts failed to materialize:\n"
            + "\n".join(f"  - {line}" for line in lines)
        )


# ---------------------------------------------------------------------------
# Activation
# ---------------------------------------------------------------------------


class ActivationError(EnvforgeError):
    """A session could not be activated."""

    exit_code = 4


class AlreadyActiveError(ActivationError):
    """The session, or the target environment, is already active."""


class EnvironmentWriteFailedError(ActivationError):
    """Writing a variable into the target environment failed."""

    def __init__(self, variable: str, reason: str) -> None:
        self.variable = variable
        self.reason = reason
        super().__init__(f"Could not set {variable}: {reason}")


class InvalidSessionTransitionError(ActivationError):
    """Raised when a requested session state transition is not valid."""
