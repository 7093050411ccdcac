"""Tests for Registry: storage, lookup, cycles and notification wiring."""

import logging

import pytest

from graphbuild.errors import CycleError, InvariantViolation
from graphbuild.model import Node, NodeType, NotifyKind, NotifyTarget
from graphbuild.registry import Registry

from conftest import make_group, make_task, registry_of


class TestStorage:
    def test_add_and_lookup_by_key(self):
        reg = Registry()
        n = reg.add_node(make_task("compile", args={"target": "all"}))
        assert reg.lookup_by_key("compile|target=all") is n
        assert n in reg
        assert len(reg) == 1

    def test_lookup_missing(self):
        reg = Registry()
        assert reg.lookup_by_key("nope") is None
        assert reg.lookup_by_key(None) is None

    def test_last_write_wins_on_key(self):
        reg = Registry()
        first = reg.add_node(make_task("a"))
        second = reg.add_node(make_task("a"))
        assert reg.lookup_by_key("a") is second
        # both stay registered by identity
        assert first in reg and second in reg

    def test_extra_key(self):
        reg = Registry()
        n = reg.add_node(make_task("a"))
        reg.add_node(n, "alias")
        assert reg.lookup_by_key("alias") is n
        assert len(reg) == 1

    def test_remove_clears_every_key(self):
        reg = Registry()
        n = reg.add_node(make_task("a"))
        reg.add_node(n, "alias")
        reg.remove_node(n)
        assert n not in reg
        assert reg.lookup_by_key("a") is None
        assert reg.lookup_by_key("alias") is None
        assert reg.keys() == []

    def test_insertion_order(self):
        a, b, c = make_task("a"), make_task("b"), make_task("c")
        reg = registry_of(c, a, b)
        assert reg.nodes() == [c, a, b]

    def test_find_by_type(self):
        t, g = make_task("t"), make_group("g")
        reg = registry_of(t, g)
        assert reg.find_by_type(NodeType.GROUP) == [g]

    @pytest.mark.parametrize("bad", [None, "a", 3, {"name": "a"}])
    def test_rejects_non_nodes(self, bad):
        with pytest.raises(InvariantViolation):
            Registry().add_node(bad)


class TestLookupByNameAndArgs:
    def test_exact(self):
        reg = Registry()
        n = reg.add_node(make_task("build", args={"os": "mac"}))
        assert reg.lookup_by_name_and_args("build", {"os": "mac"}) is n

    def test_finds_dep_variant(self):
        reg = Registry()
        n = reg.add_node(Node(name="build", canonical_key="build|dep"))
        assert reg.lookup_by_name_and_args("build") is n

    def test_prefers_exact_over_dep_variant(self):
        reg = Registry()
        dep = reg.add_node(Node(name="build", canonical_key="build|dep"))
        exact = reg.add_node(Node(name="build"))
        assert reg.lookup_by_name_and_args("build") is exact
        assert reg.lookup_by_key("build|dep") is dep

    def test_stable_across_calls(self):
        reg = Registry()
        n = reg.add_node(make_task("build", args={"b": "2", "a": "1"}))
        for _ in range(3):
            assert reg.lookup_by_name_and_args("build", {"a": "1", "b": "2"}) is n

    def test_no_match(self):
        reg = registry_of(make_task("build"))
        assert reg.lookup_by_name_and_args("build", {"os": "linux"}) is None


class TestCycleDetection:
    def test_direct_back_edge(self):
        a, b = make_task("a"), make_task("b")
        reg = registry_of(a, b)
        reg.add_dependency(a, b)
        assert reg.would_create_cycle(b, a) is True
        assert reg.would_create_cycle(a, b) is False

    def test_self_edge(self):
        a = make_task("a")
        reg = registry_of(a)
        assert reg.would_create_cycle(a, a) is True

    def test_transitive(self):
        a, b, c = make_task("a"), make_task("b"), make_task("c")
        reg = registry_of(a, b, c)
        reg.add_dependency(a, b)
        reg.add_dependency(b, c)
        assert reg.would_create_cycle(c, a) is True

    def test_diamond_is_not_a_cycle(self):
        a, b, c, d = (make_task(x) for x in "abcd")
        reg = registry_of(a, b, c, d)
        reg.add_dependency(a, b)
        reg.add_dependency(a, c)
        reg.add_dependency(b, d)
        reg.add_dependency(c, d)
        assert reg.would_create_cycle(a, d) is False
        assert reg.would_create_cycle(d, a) is True

    def test_rejected_edge_leaves_graph_unchanged(self):
        a, b = make_task("a"), make_task("b")
        reg = registry_of(a, b)
        reg.connect(a, b)
        with pytest.raises(CycleError) as exc:
            reg.connect(b, a)
        assert a.dependencies == [b]
        assert b.dependencies == []
        assert exc.value.path == ["b", "a", "b"]
        assert "path=b -> a -> b" in str(exc.value)

    def test_cycle_path_through_chain(self):
        a, b, c = make_task("a"), make_task("b"), make_task("c")
        reg = registry_of(a, b, c)
        reg.connect(a, b)
        reg.connect(b, c)
        assert reg.find_cycle_path(c, a) == ["c", "a", "b", "c"]

    def test_cycle_path_empty_when_no_cycle(self):
        a, b = make_task("a"), make_task("b")
        reg = registry_of(a, b)
        assert reg.find_cycle_path(a, b) == []

    def test_add_dependency_dedupes(self):
        a, b = make_task("a"), make_task("b")
        reg = registry_of(a, b)
        reg.add_dependency(a, b)
        reg.add_dependency(a, b)
        assert a.dependencies == [b]

    def test_dependents(self):
        a, b, c = make_task("a"), make_task("b"), make_task("c")
        reg = registry_of(a, b, c)
        reg.connect(b, a)
        reg.connect(c, a)
        assert reg.dependents()[a.uid] == [b, c]
        assert reg.dependents()[b.uid] == []


class TestGroups:
    def test_add_child_links_both_ways(self):
        g, t = make_group("g"), make_task("t")
        reg = registry_of(g, t)
        reg.add_child(g, t)
        reg.add_child(g, t)
        assert g.children == [t]
        assert t.parents == [g]

    def test_parent_must_be_group(self):
        a, b = make_task("a"), make_task("b")
        with pytest.raises(InvariantViolation, match="not a group"):
            registry_of(a, b).add_child(a, b)

    def test_containment_cycle(self):
        outer, inner = make_group("outer"), make_group("inner")
        reg = registry_of(outer, inner)
        reg.add_child(outer, inner)
        with pytest.raises(CycleError):
            reg.add_child(inner, outer)
        with pytest.raises(CycleError):
            reg.add_child(outer, outer)


class TestProcessNotifications:
    def test_back_edges_created(self):
        y = make_task("y")
        x = make_task("x", notifies_on_failure=[NotifyTarget(name="y")])
        reg = registry_of(x, y)
        realized = reg.process_notifications()
        assert y.notified_by == [x]
        assert [(n.source, n.target, n.kind) for n in realized] == [(x, y, NotifyKind.FAILURE)]

    def test_idempotent(self):
        y = make_task("y")
        x = make_task("x", notifies=[NotifyTarget(name="y")], notifies_on_success=[y])
        reg = registry_of(x, y)
        first = reg.process_notifications()
        second = reg.process_notifications()
        assert y.notified_by == [x]
        assert len(first) == len(second) == 2

    def test_args_from_self(self):
        publish_mac = make_task("publish", args={"os": "mac"})
        publish_linux = make_task("publish", args={"os": "linux"})
        build = make_task(
            "build",
            args={"os": "linux"},
            notifies_on_success=[NotifyTarget(name="publish", args_from_self=True)],
        )
        reg = registry_of(publish_mac, publish_linux, build)
        reg.process_notifications()
        assert publish_linux.notified_by == [build]
        assert publish_mac.notified_by == []

    def test_unresolved_is_skipped_with_warning(self, caplog):
        x = make_task("x", notifies=[NotifyTarget(name="ghost")])
        reg = registry_of(x)
        with caplog.at_level(logging.WARNING, logger="graphbuild.registry"):
            assert reg.process_notifications() == []
            reg.process_notifications()
        assert len(reg.unresolved_notifications) == 1
        assert "ghost" in caplog.text

    def test_custom_resolver(self):
        y = make_task("y")
        x = make_task("x", notifies=[NotifyTarget(name="anything")])
        reg = registry_of(x, y)
        reg.process_notifications(resolver=lambda source, declared: y)
        assert y.notified_by == [x]

    def test_notifications_from(self):
        y, z = make_task("y"), make_task("z")
        x = make_task("x", notifies_on_success=[y], notifies_on_failure=[z])
        reg = registry_of(x, y, z)
        reg.process_notifications()
        assert [n.target for n in reg.notifications_from(x, NotifyKind.FAILURE)] == [z]
        assert len(reg.notifications_from(x)) == 2


class TestSchedulingWaits:
    def test_plain_dag_is_schedulable(self):
        a, b = make_task("a"), make_task("b", notifies_on_success=[NotifyTarget(name="report")])
        report = make_task("report")
        g = make_group("g")
        reg = registry_of(a, b, report, g)
        reg.connect(b, a)
        reg.add_child(g, a)
        reg.add_child(g, b)
        reg.process_notifications()
        assert reg.find_wait_cycle() == []
        reg.check_schedulable()

    def test_member_notifying_its_group(self):
        release = make_group("release")
        mac = make_task("mac", notifies_on_success=[NotifyTarget(name="release")])
        reg = registry_of(release, mac)
        reg.add_child(release, mac)
        reg.process_notifications()
        assert reg.find_wait_cycle() == ["release", "mac", "release"]
        with pytest.raises(CycleError) as exc:
            reg.check_schedulable()
        assert exc.value.kind == "scheduling"
        assert "release -> mac -> release" in str(exc.value)

    def test_task_notifying_its_own_dependency(self):
        y = make_task("y")
        x = make_task("x", notifies_on_failure=[NotifyTarget(name="y")])
        reg = registry_of(x, y)
        reg.connect(x, y)
        reg.process_notifications()
        assert reg.find_wait_cycle() == ["x", "y", "x"]
        with pytest.raises(CycleError):
            reg.check_schedulable()

    def test_member_depending_on_its_group(self):
        g = make_group("g")
        member = make_task("member")
        reg = registry_of(g, member)
        reg.add_child(g, member)
        reg.connect(member, g)
        with pytest.raises(CycleError):
            reg.check_schedulable()

    def test_self_notification(self):
        x = make_task("x", notifies=[NotifyTarget(name="x")])
        reg = registry_of(x)
        reg.process_notifications()
        assert reg.find_wait_cycle() == ["x", "x"]
