"""Tests for the Materializer — parallel realization, at-most-once builds, cascades."""

from __future__ import annotations

import threading

import pytest

from envforge.core.builders import RecipeBuilder
from envforge.core.cancellation import CancellationToken
from envforge.core.errors import (
    BuildFailedError,
    DependencyFailedError,
    MaterializationIncompleteError,
    MaterializationTimeoutError,
    OperationCancelledError,
    StoreCorruptError,
)
from envforge.core.materializer import ArtifactStatus, Materializer
from envforge.core.repository import StaticIndex
from envforge.core.resolver import Resolver
from envforge.models.ledger import StoreEvent
from envforge.models.specs import DependencySpec


def _resolve(index, *names):
    return Resolver(index).resolve([DependencySpec.parse(n) for n in names])


class TestMaterialize:
    def test_example_materializes_three_entries(self, store, builder, example_index):
        graph = _resolve(example_index, "libA", "toolB", "toolC")
        entries = Materializer(store, builder).materialize(graph)
        assert len(entries) == 3
        assert set(entries) == {d.content_address for d in graph.descriptors}
        assert all(entry.path.is_dir() for entry in entries.values())

    def test_dependencies_built_before_dependents(self, store, builder, layered_index):
        graph = _resolve(layered_index, "app")
        Materializer(store, builder, max_workers=4).materialize(graph)
        assert builder.inputs_seen["app"] == ["libfoo", "tool"]
        assert builder.inputs_seen["libfoo"] == ["zlib"]
        assert builder.inputs_seen["zlib"] == []

    def test_second_run_reuses(self, store, builder, layered_index):
        graph = _resolve(layered_index, "app")
        materializer = Materializer(store, builder)
        materializer.materialize(graph)
        report = materializer.run(graph)
        assert report.ok
        assert len(report.with_status(ArtifactStatus.REUSED)) == 4
        assert builder.total == 4

    def test_concurrent_materializers_build_once(self, store, make_builder, layered_index):
        graph = _resolve(layered_index, "app")
        slow = make_builder(delay=0.05)
        reports = []

        def worker():
            reports.append(Materializer(store, slow, max_workers=2).run(graph))

        threads = [threading.Thread(target=worker) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert all(r.ok for r in reports)
        assert all(count == 1 for count in slow.calls.values())
        paths = {frozenset(str(e.path) for e in r.entries.values()) for r in reports}
        assert len(paths) == 1

    def test_invalid_worker_count(self, store, builder):
        with pytest.raises(ValueError):
            Materializer(store, builder, max_workers=0)


class TestFailures:
    def test_failure_cascades_but_independent_branch_completes(
        self, store, make_builder, make_descriptor
    ):
        index = StaticIndex(
            [
                make_descriptor("base", lib=("lib/base.so",)),
                make_descriptor("mid", depends=("base",), lib=("lib/mid.so",)),
                make_descriptor("top", depends=("mid",), lib=("lib/top.so",)),
                make_descriptor("solo", lib=("lib/solo.so",)),
            ]
        )
        graph = _resolve(index, "top", "solo")
        failing = make_builder(fail={"base"})
        report = Materializer(store, failing).run(graph)

        by_name = {graph.get(addr).name: status for addr, status in report.statuses.items()}
        assert by_name == {
            "base": ArtifactStatus.FAILED,
            "mid": ArtifactStatus.DEPENDENCY_FAILED,
            "top": ArtifactStatus.DEPENDENCY_FAILED,
            "solo": ArtifactStatus.BUILT,
        }
        assert "mid" not in failing.calls and "top" not in failing.calls
        errors = {graph.get(addr).name: err for addr, err in report.failures.items()}
        assert isinstance(errors["base"], BuildFailedError)
        assert isinstance(errors["top"], DependencyFailedError)
        assert errors["top"].failed_dependency == "base==1.0"
        assert not report.ok

    def test_materialize_raises_with_partial_report(self, store, make_builder, example_index):
        graph = _resolve(example_index, "libA", "toolB", "toolC")
        with pytest.raises(MaterializationIncompleteError) as excinfo:
            Materializer(store, make_builder(fail={"toolB"})).materialize(graph)
        report = excinfo.value.report
        assert len(report.entries) == 2
        assert len(report.failures) == 1
        assert "toolB==2.1" in str(excinfo.value)
        assert excinfo.value.exit_code == 3

    def test_corrupt_entry_reported_not_rebuilt(self, store, builder, ledger, example_index, lib_a):
        graph = _resolve(example_index, "libA")
        Materializer(store, builder).materialize(graph)
        target = store.entry_path(lib_a) / "lib" / "libA.so"
        target.parent.chmod(0o755)
        target.chmod(0o644)
        target.write_text("bitrot")

        report = Materializer(store, builder, ledger=ledger).run(graph)
        assert isinstance(report.failures[lib_a.content_address], StoreCorruptError)
        assert builder.calls["libA"] == 1
        assert ledger.count(StoreEvent.CORRUPT) == 1

    def test_ledger_records_events(self, store, make_builder, ledger, example_index):
        graph = _resolve(example_index, "libA", "toolB")
        Materializer(store, make_builder(fail={"toolB"}), ledger=ledger).run(graph)
        Materializer(store, make_builder(), ledger=ledger).run(graph)
        assert ledger.count(StoreEvent.BUILT) == 2
        assert ledger.count(StoreEvent.FAILED) == 1
        assert ledger.count(StoreEvent.REUSED) == 1
        assert ledger.verify_chain()


class TestCancellationAndTimeout:
    def test_cancelled_before_start(self, store, builder, example_index):
        graph = _resolve(example_index, "libA")
        token = CancellationToken()
        token.cancel("user")
        with pytest.raises(OperationCancelledError):
            Materializer(store, builder).materialize(graph, cancel=token)
        assert builder.total == 0
        assert store.list_entries() == []

    def test_cancel_stops_new_starts(self, store, make_descriptor):
        index = StaticIndex(
            [
                make_descriptor("first", lib=("lib/first.so",)),
                make_descriptor("second", depends=("first",), lib=("lib/second.so",)),
            ]
        )
        graph = _resolve(index, "second")
        token = CancellationToken()

        class CancellingBuilder:
            def __init__(self):
                self.built = []

            def build(self, descriptor, out_dir, inputs):
                RecipeBuilder().build(descriptor, out_dir, inputs)
                self.built.append(descriptor.name)
                token.cancel("user")

        cancelling = CancellingBuilder()
        report = Materializer(store, cancelling).run(graph, cancel=token)
        assert cancelling.built == ["first"]
        statuses = {graph.get(a).name: s for a, s in report.statuses.items()}
        assert statuses == {"first": ArtifactStatus.BUILT, "second": ArtifactStatus.CANCELLED}
        # the in-flight build was allowed to publish
        assert store.lookup(graph.find("first")) is not None

    def test_timeout_reports_in_progress(self, store, make_builder, example_index):
        graph = _resolve(example_index, "libA")
        with pytest.raises(MaterializationTimeoutError) as excinfo:
            Materializer(store, make_builder(delay=1.0)).materialize(graph, timeout=0.05)
        assert excinfo.value.in_progress == ["libA==1.0"]


class TestDependencyClosure:
    def test_new_dependency_version_rebuilds_dependent(self, store, builder, make_descriptor):
        index = StaticIndex(
            [
                make_descriptor("libA", "1.0", bin=("bin/liba-version",)),
                make_descriptor(
                    "toolB",
                    depends=("libA",),
                    bin=("bin/toolB",),
                    script="liba-version > built-against",
                ),
            ]
        )
        first = Materializer(store, builder).materialize(_resolve(index, "toolB"))

        index.add(make_descriptor("libA", "2.0", bin=("bin/liba-version",)))
        graph = _resolve(index, "toolB")
        assert graph.find("libA").version == "2.0"
        second = Materializer(store, builder).materialize(graph)

        tool_b = graph.find("toolB")
        assert builder.calls["toolB"] == 2
        assert (second[tool_b.content_address].path / "built-against").read_text() == "libA 2.0\n"
        assert second[tool_b.content_address].path != first[tool_b.content_address].path

    def test_transitive_change_reaches_top(self, store, builder, make_descriptor):
        index = StaticIndex(
            [
                make_descriptor("zlib", "1.2"),
                make_descriptor("libfoo", depends=("zlib",)),
                make_descriptor("app", depends=("libfoo",)),
            ]
        )
        before = Materializer(store, builder).materialize(_resolve(index, "app"))
        index.add(make_descriptor("zlib", "1.3"))
        graph = _resolve(index, "app")
        after = Materializer(store, builder).materialize(graph)

        app = graph.find("app")
        # app's own descriptor did not change, only its closure did
        assert app.content_address in before
        assert after[app.content_address].store_key != before[app.content_address].store_key
        assert builder.calls["app"] == 2

    def test_unchanged_closure_is_reused(self, store, builder, layered_index):
        graph = _resolve(layered_index, "app")
        Materializer(store, builder).materialize(graph)
        report = Materializer(store, builder).run(graph)
        assert set(report.statuses.values()) == {ArtifactStatus.REUSED}
        assert builder.total == 4
