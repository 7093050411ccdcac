# registry.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, List, Mapping, Optional, Set, Tuple

from .errors import CycleError, InvariantViolation
from .model import DEP_SUFFIX, Node, NodeType, NotifyKind, NotifyTarget, Notifiable, canonical_key

logger = logging.getLogger(__name__)

# resolver(source, declared_target) -> Node or None
Resolver = Callable[[Node, Notifiable], Optional[Node]]


@dataclass(frozen=True)
class Notification:
    """A realized notification edge."""
    source: Node
    target: Node
    kind: NotifyKind


_START = "start"
_FINISH = "finish"


def _collapse(labels: List[str]) -> List[str]:
    """Drop consecutive repeats (a node's finish waiting on its own start)."""
    out: List[str] = []
    for label in labels:
        if not out or out[-1] != label:
            out.append(label)
    if len(out) == 1:
        out.append(out[0])
    return out


def _require_node(value: object, op: str) -> Node:
    if not isinstance(value, Node):
        raise InvariantViolation(f"{op} requires a Node, got {type(value).__name__}")
    return value


class Registry:
    """
    Owns every Node of a build graph.

    Storage is two-level:
      _nodes:  uid -> Node       (authoritative, insertion ordered)
      _keys:   canonical key -> uid  (lookup / dedup, last write wins)
    """

    def __init__(self) -> None:
        self._nodes: Dict[int, Node] = {}
        self._keys: Dict[str, int] = {}
        self._notified: Set[Tuple[int, int, NotifyKind]] = set()
        self._notifications: List[Notification] = []
        self.unresolved_notifications: List[Tuple[Node, Notifiable, NotifyKind]] = []

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    def add_node(self, node: Node, key: Optional[str] = None) -> Node:
        """
        Register `node` by identity and by key (defaults to node.canonical_key).
        Re-registering a key points it at the newest node.
        """
        node = _require_node(node, "add_node")
        key = key or node.canonical_key
        if not key:
            raise InvariantViolation(f"add_node: node {node.name!r} has no canonical key")
        self._nodes[node.uid] = node
        self._keys[key] = node.uid
        logger.debug("add_node: %s key=%s uid=%d", node.name, key, node.uid)
        return node

    def remove_node(self, node: Node) -> None:
        node = _require_node(node, "remove_node")
        self._nodes.pop(node.uid, None)
        for key in [k for k, uid in self._keys.items() if uid == node.uid]:
            del self._keys[key]

    def has_node(self, node: Node) -> bool:
        return isinstance(node, Node) and node.uid in self._nodes

    def lookup_by_key(self, key: Optional[str]) -> Optional[Node]:
        if key is None:
            return None
        uid = self._keys.get(key)
        return self._nodes.get(uid) if uid is not None else None

    def lookup_by_name_and_args(
        self, name: str, args: Optional[Mapping[str, object]] = None
    ) -> Optional[Node]:
        """
        Try the canonical key, then its `|dep` variant, then the key with
        a trailing `|dep` removed.
        """
        key = canonical_key(name, args)
        node = self.lookup_by_key(key)
        if node is not None:
            return node
        node = self.lookup_by_key(key + DEP_SUFFIX)
        if node is not None:
            return node
        if key.endswith(DEP_SUFFIX):
            return self.lookup_by_key(key[: -len(DEP_SUFFIX)])
        return None

    def nodes(self) -> List[Node]:
        return list(self._nodes.values())

    def keys(self) -> List[str]:
        return list(self._keys)

    def find_by_type(self, node_type: NodeType) -> List[Node]:
        return [n for n in self._nodes.values() if n.type is NodeType(node_type)]

    def __iter__(self) -> Iterator[Node]:
        return iter(list(self._nodes.values()))

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, node: object) -> bool:
        return isinstance(node, Node) and self.has_node(node)

    # ------------------------------------------------------------------
    # Dependency edges
    # ------------------------------------------------------------------

    def would_create_cycle(self, source: Node, target: Node) -> bool:
        """
        True iff `target` already reaches `source` through dependency edges,
        i.e. adding `source -> target` would close a cycle.
        """
        source = _require_node(source, "would_create_cycle")
        target = _require_node(target, "would_create_cycle")
        visited: Set[int] = set()
        stack = [target]
        while stack:
            current = stack.pop()
            if current is source:
                logger.debug("cycle check %s -> %s: cycle", source.name, target.name)
                return True
            if current.uid in visited:
                continue
            visited.add(current.uid)
            stack.extend(d for d in current.dependencies if d.uid not in visited)
        return False

    def add_dependency(self, source: Node, target: Node) -> None:
        """
        Make `source` depend on `target`. No cycle check here: call
        would_create_cycle() first, or use connect().
        """
        source = _require_node(source, "add_dependency")
        target = _require_node(target, "add_dependency")
        if any(d is target for d in source.dependencies):
            return
        source.dependencies.append(target)
        logger.debug("add_dependency: %s -> %s", source.label, target.label)

    def connect(self, source: Node, target: Node) -> None:
        """Cycle-checked add_dependency(); raises CycleError before mutating."""
        if self.would_create_cycle(source, target):
            raise CycleError(
                source=source.label,
                target=target.label,
                path=self.find_cycle_path(source, target),
            )
        self.add_dependency(source, target)

    def find_cycle_path(self, source: Node, target: Node) -> List[str]:
        """
        Names along the cycle `source -> target -> ... -> source`.
        Diagnostic only; returns [] when no cycle would be formed.
        """
        source = _require_node(source, "find_cycle_path")
        target = _require_node(target, "find_cycle_path")
        if source is target:
            return [source.label, source.label]

        visited: Set[int] = {target.uid}
        # (node, index of next dependency to try)
        stack: List[Tuple[Node, int]] = [(target, 0)]
        while stack:
            current, idx = stack[-1]
            if idx >= len(current.dependencies):
                stack.pop()
                continue
            stack[-1] = (current, idx + 1)
            dep = current.dependencies[idx]
            if dep is source:
                path = [n.label for n, _ in stack]
                return [source.label, *path, source.label]
            if dep.uid not in visited:
                visited.add(dep.uid)
                stack.append((dep, 0))
        return []

    def add_child(self, group: Node, child: Node) -> None:
        """Add `child` to group membership (both directions, no duplicates)."""
        group = _require_node(group, "add_child")
        child = _require_node(child, "add_child")
        if not group.is_group:
            raise InvariantViolation(f"add_child: {group.label!r} is not a group")
        if child is group or self._is_ancestor_group(child, group):
            raise CycleError(source=group.label, target=child.label, path=[group.label, child.label, group.label])
        if not any(c is child for c in group.children):
            group.children.append(child)
        if not any(p is group for p in child.parents):
            child.parents.append(group)

    def _is_ancestor_group(self, candidate: Node, group: Node) -> bool:
        stack = list(group.parents)
        seen: Set[int] = set()
        while stack:
            parent = stack.pop()
            if parent is candidate:
                return True
            if parent.uid in seen:
                continue
            seen.add(parent.uid)
            stack.extend(parent.parents)
        return False

    def dependents(self) -> Dict[int, List[Node]]:
        """Reverse dependency map: uid -> nodes that depend on it (insertion order)."""
        out: Dict[int, List[Node]] = {uid: [] for uid in self._nodes}
        for node in self._nodes.values():
            for dep in node.dependencies:
                out.setdefault(dep.uid, []).append(node)
        return out

    # ------------------------------------------------------------------
    # Notification edges
    # ------------------------------------------------------------------

    def resolve_notification(self, source: Node, declared: Notifiable) -> Optional[Node]:
        """Default resolver: Nodes resolve to themselves, targets by name + args."""
        if isinstance(declared, Node):
            return declared if self.has_node(declared) else None
        if isinstance(declared, NotifyTarget):
            args = dict(source.args) if declared.args_from_self else {}
            args.update(declared.args)
            return self.lookup_by_name_and_args(declared.name, args)
        raise InvariantViolation(f"unsupported notification target {type(declared).__name__}")

    def process_notifications(self, resolver: Optional[Resolver] = None) -> List[Notification]:
        """
        Materialize `notified_by` back-edges for every declared notification.

        Deduplicated per (source, target, kind), so calling this again adds
        nothing. Returns all realized edges in discovery order.
        """
        resolve = resolver or self.resolve_notification
        for node in list(self._nodes.values()):
            for kind in NotifyKind:
                for declared in node.notifications(kind):
                    target = resolve(node, declared)
                    if target is None:
                        if not any(
                            s is node and d is declared and k is kind
                            for s, d, k in self.unresolved_notifications
                        ):
                            self.unresolved_notifications.append((node, declared, kind))
                            logger.warning(
                                "notification target %r of %s (%s) does not resolve; skipping",
                                getattr(declared, "name", declared), node.label, kind.value,
                            )
                        continue
                    triple = (node.uid, target.uid, kind)
                    if triple in self._notified:
                        continue
                    self._notified.add(triple)
                    if not any(n is node for n in target.notified_by):
                        target.notified_by.append(node)
                    self._notifications.append(Notification(node, target, kind))
                    logger.debug("notification: %s -[%s]-> %s", node.label, kind.value, target.label)
        return list(self._notifications)

    # ------------------------------------------------------------------
    # Scheduling waits
    # ------------------------------------------------------------------
    #
    # A node is scheduled in two steps, start and finish, and each step
    # waits on other steps:
    #   start(X)   waits on finish(dep)      for every dependency
    #              waits on finish(notifier) for every node in notified_by
    #              waits on start(group)     for every parent group
    #   finish(X)  waits on start(X)
    #              waits on finish(child)    for every member, if X is a group
    #
    # A cycle among these waits can never make progress, even when the
    # dependency edges alone are acyclic.

    def _waits_of(self, node: Node, stage: str) -> List[Tuple[Node, str]]:
        if stage == _FINISH:
            return [(node, _START)] + [(c, _FINISH) for c in node.children]
        return (
            [(d, _FINISH) for d in node.dependencies]
            + [(n, _FINISH) for n in node.notified_by]
            + [(p, _START) for p in node.parents]
        )

    def find_wait_cycle(self) -> List[str]:
        """
        Labels along a cycle of scheduling waits, first label repeated at
        the end; [] when every node can be scheduled. Reads `notified_by`,
        so run process_notifications() first.
        """
        # 1 = on the current DFS path, 2 = fully explored
        state: Dict[Tuple[int, str], int] = {}
        for root in list(self._nodes.values()):
            for stage in (_START, _FINISH):
                if (root.uid, stage) in state:
                    continue
                state[(root.uid, stage)] = 1
                path: List[Tuple[Node, str]] = [(root, stage)]
                stack = [iter(self._waits_of(root, stage))]
                while stack:
                    nxt = next(stack[-1], None)
                    if nxt is None:
                        done = path.pop()
                        stack.pop()
                        state[(done[0].uid, done[1])] = 2
                        continue
                    key = (nxt[0].uid, nxt[1])
                    seen = state.get(key)
                    if seen == 1:
                        start = next(i for i, (n, s) in enumerate(path) if (n.uid, s) == key)
                        return _collapse([n.label for n, _ in path[start:]] + [nxt[0].label])
                    if seen is None:
                        state[key] = 1
                        path.append(nxt)
                        stack.append(iter(self._waits_of(*nxt)))
        return []

    def check_schedulable(self) -> None:
        """Raise CycleError if dependency, notification and group waits form a cycle."""
        path = self.find_wait_cycle()
        if path:
            raise CycleError(source=path[0], target=path[1], path=path, kind="scheduling")

    def notifications_from(self, node: Node, kind: Optional[NotifyKind] = None) -> List[Notification]:
        return [
            n for n in self._notifications
            if n.source is node and (kind is None or n.kind is kind)
        ]

    def __repr__(self) -> str:
        edges = sum(len(n.dependencies) for n in self._nodes.values())
        return f"Registry(nodes={len(self._nodes)}, edges={edges})"
