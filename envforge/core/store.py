"""Content-addressed, write-once artifact store.

Storage layout::

    {base}/{key[:32]}-{name}-{version}/   published entries (read-only)
    {base}/.staging/{key}-XXXX/            in-progress builds
    {base}/.locks/{key}.lock               per-key claims

An entry's key hashes the descriptor's content address together with the
keys of the entries it was built against, so a changed dependency closure
always lands in a fresh entry. Each entry carries a manifest
(``.envforge-entry.json``) recording the descriptor it realizes, its key,
and the digest of its tree. Entries are built in
staging and published by a single ``rename``, so readers only ever see
"not present" or "complete". A published entry is never modified; a
corrupt one is reported and must be evicted explicitly.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import stat
import tempfile
import uuid
from collections.abc import Mapping
from datetime import datetime
from pathlib import Path

from pydantic import ValidationError

from envforge.core.builders import BuildExecutor, verify_declared_outputs
from envforge.core.errors import (
    BuildFailedError,
    MaterializationTimeoutError,
    StoreCorruptError,
)
from envforge.core.hasher import content_address, strip_address, tree_digest
from envforge.core.locking import ClaimTimeoutError, exclusive_claim
from envforge.models.artifacts import ArtifactDescriptor, StoreEntry

logger = logging.getLogger(__name__)

MANIFEST_NAME = ".envforge-entry.json"
STAGING_DIR = ".staging"
LOCKS_DIR = ".locks"
_EXCLUDE = frozenset({MANIFEST_NAME})


def store_key(
    descriptor: ArtifactDescriptor, inputs: Mapping[str, StoreEntry] | None = None
) -> str:
    """Key of the entry realizing *descriptor* against *inputs*.

    Input keys are themselves derived this way, so the key covers the
    whole resolved dependency closure.
    """
    return content_address(
        {
            "artifact": descriptor.content_address,
            "inputs": sorted(entry.key for entry in (inputs or {}).values()),
        }
    )


def _make_read_only(root: Path, *, include_root: bool) -> None:
    for dirpath, dirnames, filenames in os.walk(root, topdown=False):
        current = Path(dirpath)
        for name in filenames:
            child = current / name
            if not child.is_symlink():
                child.chmod(child.stat().st_mode & ~0o222)
        for name in dirnames:
            child = current / name
            if not child.is_symlink():
                child.chmod(0o555)
    if include_root:
        root.chmod(0o555)


def _force_remove(root: Path) -> None:
    """Remove a tree even if it was made read-only."""
    if not root.exists() and not root.is_symlink():
        return
    for dirpath, dirnames, _ in os.walk(root):
        for name in dirnames:
            child = Path(dirpath) / name
            if not child.is_symlink():
                child.chmod(child.stat().st_mode | stat.S_IWUSR | stat.S_IXUSR)
    root.chmod(root.stat().st_mode | stat.S_IWUSR | stat.S_IXUSR)
    shutil.rmtree(root)


class ContentAddressedStore:
    """Write-once store of materialized artifacts.

    Parameters
    ----------
    base_path:
        Root directory of the store. Created by the first build, not
        before.
    lock_timeout:
        Seconds to wait for another owner's build of the same hash.
    poll_interval:
        Seconds between attempts while waiting on a claim.
    verify_on_reuse:
        Re-digest an entry's tree before handing it out.
    """

    def __init__(
        self,
        base_path: Path,
        *,
        lock_timeout: float = 600.0,
        poll_interval: float = 0.05,
        verify_on_reuse: bool = True,
    ) -> None:
        self._base = Path(base_path)
        self._lock_timeout = lock_timeout
        self._poll_interval = poll_interval
        self._verify_on_reuse = verify_on_reuse

    @property
    def base_path(self) -> Path:
        return self._base

    def _published(self) -> list[Path]:
        if not self._base.is_dir():
            return []
        return [
            child for child in sorted(self._base.iterdir())
            if not child.name.startswith(".") and child.is_dir()
        ]

    def entry_path(
        self, descriptor: ArtifactDescriptor, inputs: Mapping[str, StoreEntry] | None = None
    ) -> Path:
        """Compute the published path for *descriptor* built against *inputs*."""
        return self._path_for_key(descriptor, store_key(descriptor, inputs))

    def _path_for_key(self, descriptor: ArtifactDescriptor, key: str) -> Path:
        return self._base / f"{strip_address(key)[:32]}-{descriptor.name}-{descriptor.version}"

    def _lock_path(self, digest: str) -> Path:
        return self._base / LOCKS_DIR / f"{digest}.lock"

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def lookup(
        self, descriptor: ArtifactDescriptor, inputs: Mapping[str, StoreEntry] | None = None
    ) -> StoreEntry | None:
        """Return the verified entry for *descriptor* built against *inputs*.

        Returns None if no such entry exists.

        Raises
        ------
        StoreCorruptError
            If an entry exists at the expected path but does not match.
        """
        key = store_key(descriptor, inputs)
        path = self._path_for_key(descriptor, key)
        if not path.exists():
            return None
        entry = self._read_entry(path, descriptor.label)
        if entry.content_address != descriptor.content_address:
            raise StoreCorruptError(
                descriptor.label,
                path,
                f"manifest records {entry.content_address}, expected {descriptor.content_address}",
            )
        if entry.store_key != key:
            raise StoreCorruptError(
                descriptor.label,
                path,
                f"manifest records key {entry.store_key or '<none>'}, expected {key}",
            )
        if self._verify_on_reuse:
            actual = tree_digest(path, exclude=_EXCLUDE)
            if actual != entry.tree_digest:
                raise StoreCorruptError(
                    descriptor.label,
                    path,
                    f"content digest {actual} does not match recorded {entry.tree_digest}",
                )
        return entry

    def _read_entry(self, path: Path, label: str) -> StoreEntry:
        manifest = path / MANIFEST_NAME
        try:
            data = json.loads(manifest.read_text(encoding="utf-8"))
            return StoreEntry(
                descriptor=ArtifactDescriptor.model_validate(data["descriptor"]),
                path=path,
                tree_digest=data["tree_digest"],
                store_key=data.get("store_key", ""),
                created_at=datetime.fromisoformat(data["created_at"]),
            )
        except (OSError, ValueError, KeyError, TypeError, ValidationError) as exc:
            raise StoreCorruptError(label, path, f"unreadable manifest: {exc}") from exc

    # ------------------------------------------------------------------
    # Realize
    # ------------------------------------------------------------------

    def realize(
        self,
        descriptor: ArtifactDescriptor,
        builder: BuildExecutor,
        inputs: Mapping[str, StoreEntry] | None = None,
    ) -> tuple[StoreEntry, bool]:
        """Return the entry for *descriptor*, building it on a cache miss.

        At most one caller builds a given hash at a time, across threads
        and processes; the others wait for the claim and then reuse the
        published entry.

        Returns
        -------
        tuple[StoreEntry, bool]
            The entry, and whether this call built it.
        """
        inputs = inputs or {}
        entry = self.lookup(descriptor, inputs)
        if entry is not None:
            logger.debug("Store hit for %s at %s", descriptor.label, entry.path)
            return entry, False

        key = store_key(descriptor, inputs)
        try:
            with exclusive_claim(
                self._lock_path(strip_address(key)),
                timeout=self._lock_timeout,
                poll_interval=self._poll_interval,
            ):
                entry = self.lookup(descriptor, inputs)
                if entry is not None:
                    logger.debug("%s was published while waiting for its claim.", descriptor.label)
                    return entry, False
                return self._build_and_publish(descriptor, builder, inputs, key), True
        except ClaimTimeoutError as exc:
            raise MaterializationTimeoutError([descriptor.label]) from exc

    def _build_and_publish(
        self,
        descriptor: ArtifactDescriptor,
        builder: BuildExecutor,
        inputs: Mapping[str, StoreEntry],
        key: str,
    ) -> StoreEntry:
        staging_root = self._base / STAGING_DIR
        staging_root.mkdir(parents=True, exist_ok=True)
        staging = Path(
            tempfile.mkdtemp(prefix=f"{strip_address(key)}-", dir=staging_root)
        )
        final = self._path_for_key(descriptor, key)
        logger.info("Building %s", descriptor.label)
        try:
            try:
                builder.build(descriptor, staging, inputs)
            except BuildFailedError:
                raise
            except Exception as exc:
                raise BuildFailedError(
                    descriptor.label, f"{type(exc).__name__}: {exc}"
                ) from exc
            verify_declared_outputs(descriptor, staging)

            entry = StoreEntry(
                descriptor=descriptor,
                path=final,
                tree_digest=tree_digest(staging, exclude=_EXCLUDE),
                store_key=key,
            )
            manifest = {
                "content_address": descriptor.content_address,
                "store_key": key,
                "inputs": sorted(e.key for e in inputs.values()),
                "tree_digest": entry.tree_digest,
                "created_at": entry.created_at.isoformat(),
                "descriptor": descriptor.model_dump(mode="json"),
            }
            (staging / MANIFEST_NAME).write_text(
                json.dumps(manifest, indent=2, sort_keys=True), encoding="utf-8"
            )
            _make_read_only(staging, include_root=False)
            try:
                os.rename(staging, final)
            except OSError as exc:
                raise BuildFailedError(descriptor.label, f"publish to {final} failed: {exc}") from exc
            final.chmod(0o555)
            logger.info("Published %s at %s", descriptor.label, final)
            return entry
        finally:
            if staging.exists():
                _force_remove(staging)

    # ------------------------------------------------------------------
    # Inspection and maintenance
    # ------------------------------------------------------------------

    def find(self, content_address: str) -> Path | None:
        """Locate a published entry by a unique store-key prefix.

        A full ``sha256:`` artifact address also matches, through the
        manifests, when exactly one entry realizes that artifact.
        """
        key = strip_address(content_address)[:32]
        if len(key) < 8:
            return None
        published = self._published()
        matches = [child for child in published if child.name.split("-", 1)[0].startswith(key)]
        if not matches and content_address.startswith("sha256:"):
            matches = [
                child for child in published
                if self._recorded_address(child) == content_address
            ]
        if len(matches) > 1:
            raise ValueError(
                f"{content_address!r} is ambiguous: {', '.join(m.name for m in matches)}"
            )
        return matches[0] if matches else None

    def list_entries(self) -> list[StoreEntry]:
        """All published entries with a readable manifest, sorted by path."""
        entries = []
        for child in self._published():
            try:
                entries.append(self._read_entry(child, child.name))
            except StoreCorruptError as exc:
                logger.warning("%s", exc)
        return entries

    def verify(self, path: Path) -> tuple[bool, str]:
        """Check one published entry; returns (ok, reason)."""
        try:
            entry = self._read_entry(path, path.name)
        except StoreCorruptError as exc:
            return False, exc.reason
        expected = self._path_for_key(entry.descriptor, entry.key)
        if path != expected:
            return False, f"entry is not at its store key ({expected.name})"
        actual = tree_digest(path, exclude=_EXCLUDE)
        if actual != entry.tree_digest:
            return False, f"content digest {actual} does not match recorded {entry.tree_digest}"
        return True, ""

    def verify_all(self) -> list[tuple[Path, bool, str]]:
        results = []
        for child in self._published():
            ok, reason = self.verify(child)
            results.append((child, ok, reason))
        return results

    def evict(self, content_address: str) -> tuple[Path, str]:
        """Remove a published entry (the only way to clear a corrupt one).

        The entry is first renamed into staging, so readers never observe
        a half-deleted tree.

        Returns
        -------
        tuple[Path, str]
            The removed path, and the content address its manifest recorded
            ("" if the manifest was unreadable).
        """
        path = self.find(content_address)
        if path is None:
            raise FileNotFoundError(f"No store entry for {content_address}")
        recorded = self._recorded_address(path)
        digest = self._recorded_key(path) or path.name.split("-", 1)[0]
        try:
            with exclusive_claim(
                self._lock_path(digest),
                timeout=self._lock_timeout,
                poll_interval=self._poll_interval,
            ):
                graveyard = self._base / STAGING_DIR / f"evict-{uuid.uuid4().hex}"
                graveyard.parent.mkdir(parents=True, exist_ok=True)
                path.chmod(path.stat().st_mode | stat.S_IWUSR | stat.S_IXUSR)
                os.rename(path, graveyard)
                _force_remove(graveyard)
        except ClaimTimeoutError as exc:
            raise MaterializationTimeoutError([path.name]) from exc
        logger.info("Evicted %s", path)
        return path, recorded

    def _recorded_address(self, path: Path) -> str:
        try:
            return self._read_entry(path, path.name).content_address
        except StoreCorruptError:
            return ""

    def _recorded_key(self, path: Path) -> str:
        try:
            return strip_address(self._read_entry(path, path.name).key)
        except StoreCorruptError:
            return ""

    def collect_garbage(self) -> list[Path]:
        """Remove abandoned staging directories.

        A staging directory is abandoned when nobody holds the claim for
        its hash. Lock files are never removed.
        """
        staging_root = self._base / STAGING_DIR
        if not staging_root.exists():
            return []
        removed: list[Path] = []
        for child in sorted(staging_root.iterdir()):
            if child.name.startswith("evict-"):
                _force_remove(child)
                removed.append(child)
                continue
            digest = child.name.split("-", 1)[0]
            try:
                with exclusive_claim(
                    self._lock_path(digest),
                    timeout=self._poll_interval,
                    poll_interval=self._poll_interval / 2,
                ):
                    _force_remove(child)
                    removed.append(child)
            except ClaimTimeoutError:
                logger.debug("Skipping %s: a build still holds its claim.", child)
        return removed
