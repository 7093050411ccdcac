# status.py
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Iterable, Optional

from .errors import IllegalTransition, InvariantViolation
from .model import Node


class Status(str, Enum):
    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL


TERMINAL: FrozenSet[Status] = frozenset({Status.DONE, Status.FAILED, Status.SKIPPED})

# Forward-only. Groups go ready -> done/failed without running;
# a ready node can still be skipped when an upstream fails in the same pass.
_ALLOWED: Dict[Status, FrozenSet[Status]] = {
    Status.PENDING: frozenset({Status.READY, Status.SKIPPED}),
    Status.READY: frozenset({Status.RUNNING, Status.DONE, Status.FAILED, Status.SKIPPED}),
    Status.RUNNING: frozenset({Status.DONE, Status.FAILED}),
    Status.DONE: frozenset(),
    Status.FAILED: frozenset(),
    Status.SKIPPED: frozenset(),
}


def can_transition(current: Status, requested: Status) -> bool:
    return requested in _ALLOWED[current]


@dataclass(frozen=True)
class Transition:
    node: Node
    old: Status
    new: Status
    reason: Optional[str] = None


class StatusTracker:
    """
    Single source of truth for node lifecycle state.

    Unknown nodes read as PENDING. set_status() rejects anything outside the
    transition table, including setting a node to the state it already has.
    """

    def __init__(self) -> None:
        self._state: Dict[int, Status] = {}
        self._nodes: Dict[int, Node] = {}

    def get_status(self, node: Node) -> Status:
        if not isinstance(node, Node):
            raise InvariantViolation(f"get_status requires a Node, got {type(node).__name__}")
        return self._state.get(node.uid, Status.PENDING)

    def set_status(self, node: Node, status: Status, reason: Optional[str] = None) -> Transition:
        current = self.get_status(node)
        try:
            status = Status(status)
        except ValueError:
            raise InvariantViolation(f"unknown status {status!r}") from None
        if not can_transition(current, status):
            raise IllegalTransition(node=node.label, current=current.value, requested=status.value)
        self._state[node.uid] = status
        self._nodes[node.uid] = node
        return Transition(node=node, old=current, new=status, reason=reason)

    def is_terminal(self, node: Node) -> bool:
        return self.get_status(node).is_terminal

    def all_of(self, nodes: Iterable[Node], status: Status) -> bool:
        """True when every node is in `status` (vacuously true for no nodes)."""
        return all(self.get_status(n) is status for n in nodes)

    def any_of(self, nodes: Iterable[Node], status: Status) -> bool:
        return any(self.get_status(n) is status for n in nodes)

    def all_terminal(self, nodes: Iterable[Node]) -> bool:
        return all(self.get_status(n).is_terminal for n in nodes)

    def snapshot(self, nodes: Iterable[Node]) -> Dict[Node, Status]:
        """Status of every given node, in iteration order."""
        return {n: self.get_status(n) for n in nodes}

    def counts(self, nodes: Iterable[Node]) -> Dict[Status, int]:
        out = {s: 0 for s in Status}
        for n in nodes:
            out[self.get_status(n)] += 1
        return out
