"""Tests for canonical hashing and tree digests."""

from __future__ import annotations

from pathlib import Path

from envforge.core.hasher import (
    canonical_json_bytes,
    compute_entry_hash,
    content_address,
    sha256_hex,
    strip_address,
    tree_digest,
)


def _tree(root: Path) -> Path:
    (root / "bin").mkdir(parents=True)
    (root / "bin" / "tool").write_text("#!/bin/sh\n")
    (root / "lib").mkdir()
    (root / "lib" / "libx.so").write_bytes(b"\x7fELF")
    return root


class TestCanonicalHashing:
    def test_key_order_irrelevant(self):
        assert canonical_json_bytes({"b": 1, "a": 2}) == canonical_json_bytes({"a": 2, "b": 1})

    def test_compact_separators(self):
        assert canonical_json_bytes({"a": [1, 2]}) == b'{"a":[1,2]}'

    def test_content_address_format(self):
        addr = content_address({"a": 1})
        assert addr == "sha256:" + sha256_hex(b'{"a":1}')
        assert strip_address(addr) == addr[len("sha256:"):]

    def test_strip_address_without_prefix(self):
        assert strip_address("abc") == "abc"

    def test_entry_hash_ignores_its_own_field(self):
        entry = {"a": 1, "entry_hash": ""}
        assert compute_entry_hash(entry) == compute_entry_hash({"a": 1, "entry_hash": "zzz"})


class TestTreeDigest:
    def test_identical_trees_match(self, tmp_path: Path):
        a = _tree(tmp_path / "a")
        b = _tree(tmp_path / "b")
        assert tree_digest(a) == tree_digest(b)

    def test_content_change_detected(self, tmp_path: Path):
        root = _tree(tmp_path / "a")
        before = tree_digest(root)
        (root / "lib" / "libx.so").write_bytes(b"tampered")
        assert tree_digest(root) != before

    def test_exec_bit_detected(self, tmp_path: Path):
        root = _tree(tmp_path / "a")
        before = tree_digest(root)
        (root / "bin" / "tool").chmod(0o755)
        assert tree_digest(root) != before

    def test_new_file_detected(self, tmp_path: Path):
        root = _tree(tmp_path / "a")
        before = tree_digest(root)
        (root / "extra").write_text("x")
        assert tree_digest(root) != before

    def test_symlink_recorded_by_target(self, tmp_path: Path):
        root = _tree(tmp_path / "a")
        (root / "lib" / "libx.so.1").symlink_to("libx.so")
        before = tree_digest(root)
        (root / "lib" / "libx.so.1").unlink()
        (root / "lib" / "libx.so.1").symlink_to("other.so")
        assert tree_digest(root) != before

    def test_excluded_top_level_name_ignored(self, tmp_path: Path):
        root = _tree(tmp_path / "a")
        before = tree_digest(root, exclude=frozenset({"manifest.json"}))
        (root / "manifest.json").write_text("{}")
        assert tree_digest(root, exclude=frozenset({"manifest.json"})) == before
