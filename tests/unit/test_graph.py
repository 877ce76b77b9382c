"""
Unit Tests for the Stage Graph
"""

import threading
import time

import pytest

from genoflow.core.exceptions import ContentFallback, GraphError, ToolFailure
from genoflow.pipeline.graph import Stage, StageGraph, StageResult
from genoflow.storage.artifacts import ArtifactRef


def writer(output, text=None, calls=None, delay=0.0):
    """Executor writing one output file containing its input names."""

    def execute(ctx):
        if calls is not None:
            calls.append(ctx.stage)
        time.sleep(delay)
        path = ctx.scratch / f"{output}.txt"
        inputs = ",".join(sorted(ctx.inputs))
        path.write_text(text if text is not None else f"{ctx.stage}<-{inputs}\n")
        return {output: path}

    return execute


def failing(ctx):
    raise ToolFailure("phrank", 2, "phrank: gene table missing")


@pytest.fixture
def source_file(tmp_path):
    path = tmp_path / "input.txt"
    path.write_text("raw\n")
    return path


class TestRegistration:
    """Tests for graph construction"""

    def test_duplicate_stage_name(self):
        graph = StageGraph()
        graph.register_stage("a", [], ["x"], writer("x"))
        with pytest.raises(GraphError):
            graph.register_stage("a", [], ["y"], writer("y"))

    def test_duplicate_producer(self):
        graph = StageGraph()
        graph.register_stage("a", [], ["x"], writer("x"))
        with pytest.raises(GraphError) as exc_info:
            graph.register_stage("b", [], ["x"], writer("x"))
        assert "already produced by a" in str(exc_info.value)

    def test_cycle_rejected(self):
        graph = StageGraph()
        graph.register_stage("a", ["z"], ["x"], writer("x"))
        graph.register_stage("b", ["x"], ["y"], writer("y"))

        with pytest.raises(GraphError) as exc_info:
            graph.register_stage("c", ["y"], ["z"], writer("z"))

        assert "cycle" in str(exc_info.value)
        assert exc_info.value.stage == "c"
        # Rejected stage is not kept
        assert "c" not in graph.stages
        assert graph.producer("z") is None

    def test_self_loop_rejected(self):
        graph = StageGraph()
        with pytest.raises(GraphError):
            graph.register_stage("a", ["x"], ["x"], writer("x"))

    def test_topological_order(self):
        graph = StageGraph()
        graph.register_stage("c", ["y"], ["z"], writer("z"))
        graph.register_stage("b", ["x"], ["y"], writer("y"))
        graph.register_stage("a", ["in"], ["x"], writer("x"))

        assert graph.topological_order() == ["a", "b", "c"]
        assert graph.descendants("a") == {"b", "c"}
        assert graph.dependencies("c") == {"b"}


class TestValidation:
    """Tests for static validation"""

    def test_missing_producer(self, store, source_file):
        calls = []
        graph = StageGraph()
        graph.register_stage("a", ["in"], ["x"], writer("x", calls=calls))
        graph.register_stage("b", ["x", "nowhere"], ["y"], writer("y", calls=calls))

        with pytest.raises(GraphError) as exc_info:
            graph.run("run1", store, {"in": source_file})

        assert "nowhere" in str(exc_info.value)
        assert calls == []

    def test_static_input_shadowing_producer(self, source_file):
        graph = StageGraph()
        graph.register_stage("a", [], ["x"], writer("x"))
        with pytest.raises(GraphError):
            graph.validate(["x"])

    def test_valid_graph(self):
        graph = StageGraph()
        graph.register_stage("a", ["in"], ["x"], writer("x"))
        graph.validate(["in"])


class TestExecution:
    """Tests for StageGraph.run"""

    def test_linear_run(self, store, source_file):
        graph = StageGraph()
        graph.register_stage("a", ["in"], ["x"], writer("x"))
        graph.register_stage("b", ["x"], ["y"], writer("y"))

        run = graph.run("run1", store, {"in": source_file})

        assert run.ok
        assert [r.status for r in run.records.values()] == ["completed", "completed"]
        stored = store.get(ArtifactRef("run1", "b", "y"))
        assert run.artifacts["y"] == stored
        assert stored.read_text() == "b<-x\n"
        # Scratch space is cleaned up
        assert not (store.run_dir("run1") / ".scratch").exists()

    def test_independent_stages_run_concurrently(self, store, source_file):
        barrier = threading.Barrier(2, timeout=5)

        def meet(output):
            def execute(ctx):
                barrier.wait()
                path = ctx.scratch / output
                path.write_text(output)
                return {output: path}
            return execute

        graph = StageGraph(max_workers=2)
        graph.register_stage("left", ["in"], ["l"], meet("l"))
        graph.register_stage("right", ["in"], ["r"], meet("r"))

        run = graph.run("run1", store, {"in": source_file})
        assert run.ok

    def test_failure_skips_dependents_only(self, store, source_file):
        calls = []
        graph = StageGraph(max_workers=2)
        graph.register_stage("root", ["in"], ["x"], writer("x", calls=calls))
        graph.register_stage("bad", ["x"], ["y"], failing)
        graph.register_stage("after_bad", ["y"], ["z"], writer("z", calls=calls))
        graph.register_stage("last", ["z", "w"], ["v"], writer("v", calls=calls))
        graph.register_stage("side", ["x"], ["w"], writer("w", calls=calls, delay=0.1))

        run = graph.run("run1", store, {"in": source_file})

        assert not run.ok
        assert run.records["bad"].status == "failed"
        assert run.records["bad"].error_code == "TOOL_FAILURE"
        assert run.records["after_bad"].status == "skipped"
        assert run.records["last"].status == "skipped"
        assert run.records["side"].status == "completed"
        assert "after_bad" not in calls and "last" not in calls
        assert run.failed_stages() == ["bad"]
        assert run.first_failure().name == "bad"
        assert isinstance(run.errors["bad"], ToolFailure)
        # Independent branch output is intact
        assert store.exists(ArtifactRef("run1", "side", "w"))
        assert not store.exists(ArtifactRef("run1", "bad", "y"))

    def test_optional_stage_failure_keeps_run_ok(self, store, source_file):
        graph = StageGraph()
        graph.register_stage("main", ["in"], ["x"], writer("x"))
        graph.register_stage("extra", ["in"], ["y"], failing, required=False)

        run = graph.run("run1", store, {"in": source_file})

        assert run.ok
        assert run.records["extra"].status == "failed"

    def test_unexpected_exception_becomes_failure(self, store, source_file):
        def broken(ctx):
            raise RuntimeError("boom")

        graph = StageGraph()
        graph.register_stage("a", ["in"], ["x"], broken)
        run = graph.run("run1", store, {"in": source_file})

        assert run.records["a"].status == "failed"
        assert "boom" in run.records["a"].error

    def test_undeclared_output_fails_stage(self, store, source_file):
        def wrong(ctx):
            path = ctx.scratch / "other.txt"
            path.write_text("x")
            return {"other": path}

        graph = StageGraph()
        graph.register_stage("a", ["in"], ["x"], wrong)
        run = graph.run("run1", store, {"in": source_file})

        assert run.records["a"].status == "failed"
        assert not store.exists(ArtifactRef("run1", "a", "x"))

    def test_fallback_recorded(self, store, source_file):
        def shortcut(ctx):
            path = ctx.scratch / "x.txt"
            path.write_text(ctx.input("in").read_text())
            return StageResult(
                outputs={"x": path},
                fallback=ContentFallback(ctx.stage, "nothing to do", "passed input through"),
            )

        graph = StageGraph()
        graph.register_stage("a", ["in"], ["x"], shortcut)
        run = graph.run("run1", store, {"in": source_file})

        assert run.ok
        assert run.records["a"].fallback == "a: nothing to do -> passed input through"

    def test_unpersisted_output_passed_as_is(self, store, source_file, tmp_path):
        shared = tmp_path / "shared.fa"
        shared.write_text(">chr1\n")

        graph = StageGraph()
        graph.add(Stage("ref", (), ("fasta",), lambda ctx: {"fasta": shared}, persist=False))
        graph.register_stage("use", ["fasta"], ["x"], writer("x"))
        run = graph.run("run1", store, {})

        assert run.ok
        assert run.artifacts["fasta"] == shared
        assert shared.exists()
        assert not store.exists(ArtifactRef("run1", "ref", "fasta"))

    def test_pass_through_keeps_upstream_artifact(self, store, source_file):
        graph = StageGraph()
        graph.register_stage("make", ["in"], ["a"], writer("a"))
        graph.register_stage("ident", ["a"], ["b"], lambda ctx: {"b": ctx.input("a")})
        graph.register_stage("after", ["a", "b"], ["c"], writer("c"))

        run = graph.run("run1", store, {"in": source_file})

        assert run.ok
        upstream = store.get(ArtifactRef("run1", "make", "a"))
        assert upstream.read_text() == "make<-in\n"
        assert store.get(ArtifactRef("run1", "ident", "b")).read_bytes() == upstream.read_bytes()

    def test_pass_through_leaves_static_input_in_place(self, store, source_file):
        index = source_file.with_name(source_file.name + ".tbi")
        index.write_text("index\n")
        graph = StageGraph()
        graph.register_stage("ident", ["in"], ["b"], lambda ctx: {"b": ctx.input("in")})

        run = graph.run("run1", store, {"in": source_file})

        assert run.ok
        assert source_file.read_text() == "raw\n"
        assert index.read_text() == "index\n"
        assert store.get(ArtifactRef("run1", "ident", "b")).read_text() == "raw\n"
        assert [p.name for p in store.companions(ArtifactRef("run1", "ident", "b"))] == ["input.txt.tbi"]

    def test_resume_skips_completed_stages(self, store, source_file):
        calls = []
        graph = StageGraph()
        graph.register_stage("a", ["in"], ["x"], writer("x", calls=calls))
        graph.register_stage("b", ["x"], ["y"], failing)
        first = graph.run("run1", store, {"in": source_file})
        assert not first.ok

        resumed = StageGraph(resume=True)
        resumed.register_stage("a", ["in"], ["x"], writer("x", calls=calls))
        resumed.register_stage("b", ["x"], ["y"], writer("y", calls=calls))
        second = resumed.run("run1", store, {"in": source_file})

        assert second.ok
        assert second.records["a"].status == "cached"
        assert second.records["b"].status == "completed"
        assert calls == ["a", "b"]

    def test_runs_are_namespaced(self, store, source_file):
        graph = StageGraph()
        graph.register_stage("a", ["in"], ["x"], writer("x", text="one"))
        graph.run("run1", store, {"in": source_file})

        other = StageGraph()
        other.register_stage("a", ["in"], ["x"], writer("x", text="two"))
        other.run("run2", store, {"in": source_file})

        assert store.get(ArtifactRef("run1", "a", "x")).read_text() == "one"
        assert store.get(ArtifactRef("run2", "a", "x")).read_text() == "two"
