"""Shared test fixtures for envforge."""

from __future__ import annotations

import threading
import time
from collections import Counter
from collections.abc import Callable, Iterable, Mapping
from pathlib import Path
from typing import Any

import pytest

from envforge.core.builders import RecipeBuilder
from envforge.core.errors import BuildFailedError
from envforge.core.repository import StaticIndex
from envforge.core.store import ContentAddressedStore
from envforge.core.store_ledger import StoreLedger
from envforge.models.artifacts import (
    ArtifactDescriptor,
    ArtifactOutputs,
    BuildRecipe,
    StoreEntry,
)


def _descriptor(
    name: str,
    version: str = "1.0",
    *,
    capabilities: Iterable[str] = ("library",),
    depends: Iterable[str] = (),
    lib: Iterable[str] = (),
    include: Iterable[str] = (),
    bin: Iterable[str] = (),
    pkgconfig: Iterable[str] = (),
    env: Mapping[str, str] | None = None,
    script: str = "",
) -> ArtifactDescriptor:
    """Descriptor whose recipe writes every declared output inline."""
    outputs = ArtifactOutputs(
        lib=tuple(lib), include=tuple(include), bin=tuple(bin), pkgconfig=tuple(pkgconfig)
    )
    files = {rel: f"{name} {version} {rel}\n" for rel in outputs.all_paths()}
    for rel in outputs.bin:
        files[rel] = f"#!/bin/sh\necho {name} {version}\n"
    return ArtifactDescriptor(
        name=name,
        version=version,
        capabilities=tuple(capabilities),
        depends=tuple(depends),
        outputs=outputs,
        env=dict(env or {}),
        recipe=BuildRecipe(files=files, executables=tuple(outputs.bin), script=script),
    )


class CountingBuilder:
    """RecipeBuilder wrapper that counts builds and can fail or stall on demand."""

    def __init__(self, *, fail: Iterable[str] = (), delay: float = 0.0) -> None:
        self._inner = RecipeBuilder()
        self._fail = set(fail)
        self._delay = delay
        self._lock = threading.Lock()
        self.calls: Counter[str] = Counter()
        self.inputs_seen: dict[str, list[str]] = {}

    def build(
        self,
        descriptor: ArtifactDescriptor,
        out_dir: Path,
        inputs: Mapping[str, StoreEntry],
    ) -> None:
        with self._lock:
            self.calls[descriptor.name] += 1
            self.inputs_seen[descriptor.name] = sorted(e.name for e in inputs.values())
        if self._delay:
            time.sleep(self._delay)
        if descriptor.name in self._fail:
            raise BuildFailedError(descriptor.label, "recipe exploded")
        self._inner.build(descriptor, out_dir, inputs)

    @property
    def total(self) -> int:
        return sum(self.calls.values())


@pytest.fixture
def tmp_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for test artifacts."""
    return tmp_path


@pytest.fixture
def make_descriptor() -> Callable[..., ArtifactDescriptor]:
    """Factory fixture: build an ArtifactDescriptor with a self-contained recipe."""
    return _descriptor


@pytest.fixture
def store(tmp_dir: Path) -> ContentAddressedStore:
    """Provide a fresh ContentAddressedStore in a temp directory."""
    return ContentAddressedStore(tmp_dir / "store", lock_timeout=30.0, poll_interval=0.01)


@pytest.fixture
def ledger(tmp_dir: Path) -> StoreLedger:
    """Provide a fresh StoreLedger backed by a temp SQLite database."""
    return StoreLedger(tmp_dir / "ledger.db")


@pytest.fixture
def builder() -> CountingBuilder:
    return CountingBuilder()


@pytest.fixture
def lib_a() -> ArtifactDescriptor:
    return _descriptor(
        "libA",
        "1.0",
        lib=("lib/libA.so",),
        include=("include/a/a.h",),
        pkgconfig=("lib/pkgconfig/a.pc",),
    )


@pytest.fixture
def tool_b() -> ArtifactDescriptor:
    return _descriptor("toolB", "2.1", capabilities=("build-tool",), bin=("bin/toolB",))


@pytest.fixture
def tool_c() -> ArtifactDescriptor:
    return _descriptor("toolC", "0.9", capabilities=("build-tool",), bin=("bin/toolC",))


@pytest.fixture
def example_index(
    lib_a: ArtifactDescriptor, tool_b: ArtifactDescriptor, tool_c: ArtifactDescriptor
) -> StaticIndex:
    """The libA / toolB / toolC index: three independent artifacts."""
    return StaticIndex([lib_a, tool_b, tool_c])


@pytest.fixture
def layered_index(make_descriptor: Callable[..., Any]) -> StaticIndex:
    """app -> (libfoo, tool); libfoo -> zlib; tool -> zlib. zlib comes in 1.2 and 1.3."""
    return StaticIndex(
        [
            make_descriptor("zlib", "1.2", lib=("lib/libz.so",), include=("include/zlib.h",)),
            make_descriptor("zlib", "1.3", lib=("lib/libz.so",), include=("include/zlib.h",)),
            make_descriptor(
                "libfoo", "2.0", depends=("zlib>=1.2",), lib=("lib/libfoo.so",)
            ),
            make_descriptor(
                "tool", "1.0", capabilities=("build-tool",), depends=("zlib",), bin=("bin/tool",)
            ),
            make_descriptor(
                "app",
                "0.1",
                capabilities=("build-tool",),
                depends=("libfoo", "tool"),
                bin=("bin/app",),
            ),
        ]
    )


@pytest.fixture
def make_builder() -> Callable[..., CountingBuilder]:
    """Factory fixture: a CountingBuilder that fails or stalls on demand."""
    return CountingBuilder
