"""Canonical hashing helpers for content addressing and integrity checks.

Every digest in envforge is SHA-256 over canonical JSON, so identical
inputs always hash identically across processes and machines.
"""

from __future__ import annotations

import hashlib
import json
import os
from pathlib import Path
from typing import Any

ADDRESS_PREFIX = "sha256:"


def canonical_json_bytes(obj: Any) -> bytes:
    """Produce canonical JSON bytes — deterministic, sorted, compact.

    - sorted keys
    - no whitespace separators (",", ":")
    - ensure_ascii=True
    - UTF-8 encoding
    """
    return json.dumps(
        obj, sort_keys=True, separators=(",", ":"), ensure_ascii=True
    ).encode("utf-8")


def sha256_hex(data: bytes) -> str:
    """Return the SHA-256 hex digest of raw bytes."""
    return hashlib.sha256(data).hexdigest()


def content_address(obj: Any) -> str:
    """Content-address a JSON-serializable object.

    Returns "sha256:<hex>" format used by the store and the resolver.
    """
    return f"{ADDRESS_PREFIX}{sha256_hex(canonical_json_bytes(obj))}"


def strip_address(address: str) -> str:
    """Strip the ``sha256:`` prefix from a content address, if present."""
    return address.removeprefix(ADDRESS_PREFIX)


def file_sha256(path: Path, chunk_size: int = 1 << 16) -> str:
    """Stream a file through SHA-256."""
    digest = hashlib.sha256()
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(chunk_size), b""):
            digest.update(chunk)
    return digest.hexdigest()


def tree_digest(root: Path, *, exclude: frozenset[str] = frozenset()) -> str:
    """Digest a directory tree: relative paths, file contents, exec bits, symlinks.

    Top-level names in *exclude* are skipped (used for the entry manifest,
    which cannot contain its own digest).
    """
    root = Path(root)
    records: list[list[str]] = []
    for dirpath, dirnames, filenames in os.walk(root, followlinks=False):
        current = Path(dirpath)
        if current == root:
            dirnames[:] = [d for d in dirnames if d not in exclude]
            filenames = [f for f in filenames if f not in exclude]
        dirnames.sort()
        for name in dirnames:
            child = current / name
            rel = child.relative_to(root).as_posix()
            if child.is_symlink():
                records.append(["l", rel, os.readlink(child)])
            else:
                records.append(["d", rel])
        for name in sorted(filenames):
            child = current / name
            rel = child.relative_to(root).as_posix()
            if child.is_symlink():
                records.append(["l", rel, os.readlink(child)])
                continue
            executable = "x" if child.stat().st_mode & 0o111 else "-"
            records.append(["f", rel, executable, file_sha256(child)])
    records.sort(key=lambda r: r[1])
    return sha256_hex(canonical_json_bytes(records))


def compute_entry_hash(entry_dict: dict[str, Any]) -> str:
    """SHA-256 of a ledger entry (excluding the entry_hash field itself).

    This is the seal that makes each entry tamper-evident.
    """
    d = {k: v for k, v in entry_dict.items() if k != "entry_hash"}
    return sha256_hex(canonical_json_bytes(d))
