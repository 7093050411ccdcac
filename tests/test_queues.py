"""Tests for the ready-queue set."""

import pytest

from graphbuild.errors import InvariantViolation
from graphbuild.queues import GROUPS_READY, PENDING_WITH_PARENT, READY_QUEUE, ReadyQueues

from conftest import make_group, make_task


class TestMembership:
    def test_node_in_one_structure_only(self):
        q = ReadyQueues()
        n = make_task("a")
        q.park(n)
        with pytest.raises(InvariantViolation, match="already in pending_with_parent"):
            q.enqueue(n)
        q.unpark(n)
        q.enqueue(n)
        assert q.location(n) == READY_QUEUE

    def test_double_enqueue(self):
        q = ReadyQueues()
        n = make_task("a")
        q.enqueue(n)
        with pytest.raises(InvariantViolation):
            q.enqueue(n)

    def test_unpark_unknown(self):
        with pytest.raises(InvariantViolation):
            ReadyQueues().unpark(make_task("a"))

    def test_rejects_non_nodes(self):
        with pytest.raises(InvariantViolation):
            ReadyQueues().enqueue("a")


class TestReadyQueue:
    def test_drain_fifo_and_clears_membership(self):
        q = ReadyQueues()
        a, b, c = make_task("a"), make_task("b"), make_task("c")
        for n in (a, b, c):
            q.enqueue(n)
        assert q.drain() == [a, b, c]
        assert q.drain() == []
        assert q.location(a) is None
        assert len(q) == 0


class TestGroupsReady:
    def test_open_record_close(self):
        q = ReadyQueues()
        g = make_group("g")
        t1, t2 = make_task("t1"), make_task("t2")
        q.open_group(g)
        assert q.is_open(g) and q.location(g) == GROUPS_READY
        q.record_child(g, t1)
        q.record_child(g, t1)
        q.record_child(g, t2)
        assert q.snapshot() == {"g": ["t1", "t2"]}
        assert q.close_group(g) == [t1, t2]
        assert not q.is_open(g)
        assert q.snapshot() == {}

    def test_only_groups_open(self):
        with pytest.raises(InvariantViolation, match="not a group"):
            ReadyQueues().open_group(make_task("t"))

    def test_record_on_closed_group(self):
        with pytest.raises(InvariantViolation):
            ReadyQueues().record_child(make_group("g"), make_task("t"))

    def test_parked_location(self):
        q = ReadyQueues()
        n = make_task("a")
        q.park(n)
        assert q.is_parked(n)
        assert q.location(n) == PENDING_WITH_PARENT
        assert q.pending_with_parent == [n]
