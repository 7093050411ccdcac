# src/graphbuild/dsl.py
from __future__ import annotations

from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Union

from .errors import InvariantViolation
from .model import Node, NodeType, NotifyTarget, Notifiable
from .registry import Registry

NotifyArg = Union[str, NotifyTarget, Node]


# ---------------------------------------------------------------------
# Reference helper
# ---------------------------------------------------------------------

def ref(name: str, *, args_from_self: bool = False, **args: object) -> NotifyTarget:
    """
    A by-name reference to another node, resolved when notifications are
    processed: ref("notify", channel="ci") or ref("publish", args_from_self=True).
    """
    return NotifyTarget(name=name, args={k: str(v) for k, v in args.items()}, args_from_self=args_from_self)


def _targets(values: Optional[Iterable[NotifyArg]]) -> List[Notifiable]:
    out: List[Notifiable] = []
    for v in values or []:
        if isinstance(v, str):
            out.append(NotifyTarget(name=v))
        elif isinstance(v, (NotifyTarget, Node)):
            out.append(v)
        else:
            raise InvariantViolation(f"notification target must be a name, ref() or Node, got {type(v).__name__}")
    return out


# ---------------------------------------------------------------------
# Node helpers
# ---------------------------------------------------------------------

def task(
    name: str,
    command: Optional[str] = None,
    *,
    args: Optional[Mapping[str, object]] = None,
    depends_on: Sequence[Node] = (),
    notifies: Sequence[NotifyArg] = (),
    notifies_on_success: Sequence[NotifyArg] = (),
    notifies_on_failure: Sequence[NotifyArg] = (),
    continue_on_error: bool = False,
    env: Optional[Dict[str, object]] = None,
    cwd: str | None = None,
    artifacts: Sequence[str] = (),
    description: str | None = None,
) -> Node:
    """Create a task node. Edges are wired into a Registry by graph()."""
    return Node(
        name=name,
        type=NodeType.TASK,
        command=command,
        args={k: str(v) for k, v in (args or {}).items()},
        dependencies=list(depends_on),
        notifies=_targets(notifies),
        notifies_on_success=_targets(notifies_on_success),
        notifies_on_failure=_targets(notifies_on_failure),
        continue_on_error=continue_on_error,
        # force values to str for env compatibility
        env={k: str(v) for k, v in (env or {}).items()},
        cwd=cwd,
        artifacts=list(artifacts),
        description=description,
    )


def group(
    name: str,
    *children: Node,
    depends_on: Sequence[Node] = (),
    notifies: Sequence[NotifyArg] = (),
    notifies_on_success: Sequence[NotifyArg] = (),
    notifies_on_failure: Sequence[NotifyArg] = (),
    continue_on_error: bool = False,
    description: str | None = None,
) -> Node:
    """Create a group node: group("release", build_mac, build_linux)."""
    return Node(
        name=name,
        type=NodeType.GROUP,
        children=list(children),
        dependencies=list(depends_on),
        notifies=_targets(notifies),
        notifies_on_success=_targets(notifies_on_success),
        notifies_on_failure=_targets(notifies_on_failure),
        continue_on_error=continue_on_error,
        description=description,
    )


# ---------------------------------------------------------------------
# Graph helper (single-file story)
# ---------------------------------------------------------------------

def _reachable(roots: Iterable[Node]) -> List[Node]:
    seen: Dict[int, Node] = {}
    stack = list(roots)[::-1]
    while stack:
        node = stack.pop()
        if not isinstance(node, Node):
            raise InvariantViolation(f"graph() accepts Nodes only, got {type(node).__name__}")
        if node.uid in seen:
            continue
        seen[node.uid] = node
        linked: List[Node] = list(node.dependencies) + list(node.children)
        for kind_list in (node.notifies, node.notifies_on_success, node.notifies_on_failure):
            linked.extend(t for t in kind_list if isinstance(t, Node))
        stack.extend(reversed(linked))
    return list(seen.values())


def graph(*nodes: Node) -> Registry:
    """
    Register `nodes` and everything they link to, wiring dependency edges
    through Registry.connect() (cycle checked) and membership through
    Registry.add_child().

    Users can write:
        from graphbuild.dsl import build_graph, task

        def graph():
            fetch = task("fetch", "git fetch")
            return build_graph(fetch, task("compile", "make", depends_on=[fetch]))

    Or use GRAPH directly:
        GRAPH = build_graph(...)
    """
    registry = Registry()
    everything = _reachable(nodes)
    for node in everything:
        registry.add_node(node)

    for node in everything:
        declared_deps, node.dependencies = list(node.dependencies), []
        for dep in declared_deps:
            registry.connect(node, dep)
        if node.is_group:
            declared_children, node.children = list(node.children), []
            for child in declared_children:
                child.parents = [p for p in child.parents if p is not node]
                registry.add_child(node, child)
    return registry


build_graph = graph  # alias so a graph file can define its own graph()
