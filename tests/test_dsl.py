"""Tests for the programmatic graph helpers."""

import pytest

from graphbuild.dsl import build_graph, graph, group, ref, task
from graphbuild.engine import ExecutionEngine
from graphbuild.errors import CycleError, InvariantViolation
from graphbuild.model import NodeType, NotifyTarget
from graphbuild.status import Status

from conftest import RecordingExecutor


class TestHelpers:
    def test_task(self):
        t = task("compile", "make ${t}", args={"t": 1}, env={"JOBS": 4}, artifacts=["out/*"])
        assert t.type is NodeType.TASK
        assert t.args == {"t": "1"}
        assert t.env == {"JOBS": "4"}
        assert t.expanded_command() == "make 1"

    def test_group(self):
        a, b = task("a", "true"), task("b", "true")
        g = group("g", a, b, description="both")
        assert g.type is NodeType.GROUP
        assert g.children == [a, b]

    def test_ref(self):
        r = ref("publish", args_from_self=True, channel="beta")
        assert r == NotifyTarget(name="publish", args={"channel": "beta"}, args_from_self=True)

    def test_string_notification_targets(self):
        t = task("a", "true", notifies_on_failure=["cleanup"])
        assert t.notifies_on_failure == [NotifyTarget(name="cleanup")]

    def test_bad_notification_target(self):
        with pytest.raises(InvariantViolation):
            task("a", "true", notifies=[42])


class TestGraph:
    def test_registers_reachable_nodes(self):
        fetch = task("fetch", "true")
        compile_ = task("compile", "true", depends_on=[fetch])
        reg = graph(compile_)
        assert reg.nodes() == [compile_, fetch]
        assert compile_.dependencies == [fetch]

    def test_groups_wire_parents(self):
        a = task("a", "true")
        g = group("g", a)
        reg = build_graph(g)
        assert a in reg
        assert a.parents == [g]
        assert g.children == [a]

    def test_cycle_detected(self):
        a = task("a", "true")
        b = task("b", "true", depends_on=[a])
        a.dependencies.append(b)
        with pytest.raises(CycleError):
            graph(a)

    def test_runs_end_to_end(self):
        cleanup = task("cleanup", "true")
        flaky = task("flaky", "false", notifies_on_failure=[ref("cleanup")])
        reg = graph(flaky, cleanup)
        recorder = RecordingExecutor(fail={"flaky"})
        result = ExecutionEngine(reg, recorder, max_workers=1).execute()
        assert result.statuses[cleanup] is Status.DONE
        assert recorder.calls == ["flaky", "cleanup"]
