# queues.py
from __future__ import annotations

from collections import deque
from typing import Deque, Dict, List, Optional

from .errors import InvariantViolation
from .model import Node

PENDING_WITH_PARENT = "pending_with_parent"
READY_QUEUE = "ready_queue"
GROUPS_READY = "groups_ready"


class ReadyQueues:
    """
    The three staging structures between "dependencies satisfied" and
    "dispatched":

      pending_with_parent: group members waiting for a parent group to open
      ready_queue:         nodes eligible for immediate dispatch (FIFO)
      groups_ready:        open groups -> members that have reached done

    A node lives in at most one of them at a time; every move goes through
    a method here so that membership is checked.
    """

    def __init__(self) -> None:
        self.pending_with_parent: List[Node] = []
        self.ready_queue: Deque[Node] = deque()
        self.groups_ready: Dict[Node, List[Node]] = {}
        self._where: Dict[int, str] = {}

    # ---- membership ----
    def location(self, node: Node) -> Optional[str]:
        return self._where.get(node.uid)

    def _claim(self, node: Node, where: str) -> None:
        if not isinstance(node, Node):
            raise InvariantViolation(f"queues accept Nodes only, got {type(node).__name__}")
        current = self._where.get(node.uid)
        if current is not None:
            raise InvariantViolation(f"{node.label} is already in {current}, cannot add to {where}")
        self._where[node.uid] = where

    def _release(self, node: Node, where: str) -> None:
        current = self._where.get(node.uid)
        if current != where:
            raise InvariantViolation(f"{node.label} is not in {where} (found in {current})")
        del self._where[node.uid]

    # ---- pending_with_parent ----
    def park(self, node: Node) -> None:
        self._claim(node, PENDING_WITH_PARENT)
        self.pending_with_parent.append(node)

    def unpark(self, node: Node) -> None:
        self._release(node, PENDING_WITH_PARENT)
        self.pending_with_parent.remove(node)

    def is_parked(self, node: Node) -> bool:
        return self.location(node) == PENDING_WITH_PARENT

    # ---- ready_queue ----
    def enqueue(self, node: Node) -> None:
        self._claim(node, READY_QUEUE)
        self.ready_queue.append(node)

    def drain(self) -> List[Node]:
        """Remove and return everything in ready_queue, in FIFO order."""
        batch: List[Node] = []
        while self.ready_queue:
            node = self.ready_queue.popleft()
            del self._where[node.uid]
            batch.append(node)
        return batch

    # ---- groups_ready ----
    def open_group(self, group: Node) -> None:
        if not group.is_group:
            raise InvariantViolation(f"open_group: {group.label} is not a group")
        self._claim(group, GROUPS_READY)
        self.groups_ready[group] = []

    def is_open(self, group: Node) -> bool:
        return self.location(group) == GROUPS_READY

    def record_child(self, group: Node, child: Node) -> None:
        if not self.is_open(group):
            raise InvariantViolation(f"record_child: group {group.label} is not open")
        members = self.groups_ready[group]
        if not any(c is child for c in members):
            members.append(child)

    def close_group(self, group: Node) -> List[Node]:
        """Remove `group` from groups_ready, returning its recorded children."""
        self._release(group, GROUPS_READY)
        return self.groups_ready.pop(group)

    # ---- views ----
    def snapshot(self) -> Dict[str, List[str]]:
        """groups_ready as labels, safe to hand to display code."""
        return {g.label: [c.label for c in kids] for g, kids in self.groups_ready.items()}

    def __len__(self) -> int:
        return len(self._where)

    def __repr__(self) -> str:
        return (
            f"ReadyQueues(pending_with_parent={len(self.pending_with_parent)}, "
            f"ready={len(self.ready_queue)}, groups_ready={len(self.groups_ready)})"
        )
