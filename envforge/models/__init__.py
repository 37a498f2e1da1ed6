"""Envforge data models — Pydantic v2, frozen (immutable) where they are values."""

from envforge.models.artifacts import (
    ArtifactDescriptor,
    ArtifactOutputs,
    BuildRecipe,
    StoreEntry,
)
from envforge.models.environment import (
    ENV_MARKER,
    SEARCH_PATH_VARIABLES,
    SESSION_MARKER,
    EnvironmentDescriptor,
)
from envforge.models.ledger import StoreEvent, StoreLedgerEntry
from envforge.models.lockfile import LOCKFILE_VERSION, LockedArtifact, Lockfile
from envforge.models.session import VALID_TRANSITIONS, SessionState
from envforge.models.specs import Capability, Declaration, DependencySpec

__all__ = [
    # specs
    "Capability",
    "DependencySpec",
    "Declaration",
    # artifacts
    "ArtifactOutputs",
    "BuildRecipe",
    "ArtifactDescriptor",
    "StoreEntry",
    # environment
    "EnvironmentDescriptor",
    "SEARCH_PATH_VARIABLES",
    "SESSION_MARKER",
    "ENV_MARKER",
    # sessions
    "SessionState",
    "VALID_TRANSITIONS",
    # ledger
    "StoreEvent",
    "StoreLedgerEntry",
    # lockfiles
    "LOCKFILE_VERSION",
    "LockedArtifact",
    "Lockfile",
]
