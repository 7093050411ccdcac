# model.py
from __future__ import annotations

import itertools
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Mapping, Optional, Union

from .errors import InvariantViolation

DEP_SUFFIX = "|dep"

_uids = itertools.count(1)

_VAR_RE = re.compile(r"\$\{(\w+)\}")
_POSITIONAL_RE = re.compile(r"\$(arg\d+)")


class NodeType(str, Enum):
    TASK = "task"
    GROUP = "group"


class NotifyKind(str, Enum):
    """Which list a notification edge was declared in."""
    ALWAYS = "notifies"
    SUCCESS = "notifies_on_success"
    FAILURE = "notifies_on_failure"


@dataclass(frozen=True)
class NotifyTarget:
    """
    A declared notification target that still has to be resolved to a Node.

    `args_from_self` forwards the source node's args to the target lookup.
    """
    name: str
    args: Mapping[str, str] = field(default_factory=dict)
    args_from_self: bool = False

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not self.name:
            raise InvariantViolation(f"NotifyTarget requires a non-empty name, got {self.name!r}")


# A notification list may hold declared targets or already-built nodes.
Notifiable = Union[NotifyTarget, "Node"]


def canonical_key(name: str, args: Optional[Mapping[str, object]] = None) -> str:
    """
    Deterministic identity string: `name` or `name|k1=v1,k2=v2` (keys sorted).
    """
    if not args:
        return name
    parts = ",".join(f"{k}={args[k]}" for k in sorted(args))
    return f"{name}|{parts}"


def dep_variant(key: str) -> str:
    return key if key.endswith(DEP_SUFFIX) else key + DEP_SUFFIX


def expand_command(command: str, args: Optional[Mapping[str, object]] = None) -> str:
    """
    Expand `${name}` and `$argN` placeholders from args.
    Unknown placeholders expand to an empty string.
    """
    args = args or {}

    def _sub(match: re.Match[str]) -> str:
        value = args.get(match.group(1))
        return "" if value is None else str(value)

    return _POSITIONAL_RE.sub(_sub, _VAR_RE.sub(_sub, command))


@dataclass(eq=False)
class Node:
    """
    A vertex of the build graph: a runnable task or a group of member nodes.

    Nodes hash and compare by identity. `uid` is drawn from a process-wide
    counter and is never reused, so it is safe to key maps by it.

    Edges:
      - dependencies: nodes that must be `done` before this one is ready
      - notifies*: declared notification targets (resolved by the Registry)
      - notified_by: back-edges filled by Registry.process_notifications()
      - children / parents: group membership
    """
    name: str
    type: NodeType = NodeType.TASK
    command: Optional[str] = None
    args: Dict[str, str] = field(default_factory=dict)

    dependencies: List["Node"] = field(default_factory=list)
    notifies: List[Notifiable] = field(default_factory=list)
    notifies_on_success: List[Notifiable] = field(default_factory=list)
    notifies_on_failure: List[Notifiable] = field(default_factory=list)
    notified_by: List["Node"] = field(default_factory=list)

    children: List["Node"] = field(default_factory=list)
    parents: List["Node"] = field(default_factory=list)

    # run even when an upstream dependency failed or was skipped
    continue_on_error: bool = False

    env: Dict[str, str] = field(default_factory=dict)
    cwd: Optional[str] = None
    artifacts: List[str] = field(default_factory=list)
    description: Optional[str] = None

    canonical_key: str = ""
    uid: int = field(init=False, repr=False)

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not self.name:
            raise InvariantViolation(f"Node requires a non-empty string name, got {self.name!r}")
        try:
            self.type = NodeType(self.type)
        except ValueError:
            raise InvariantViolation(
                f"Node {self.name!r}: type must be one of "
                f"{[t.value for t in NodeType]}, got {self.type!r}"
            ) from None
        if self.type is NodeType.GROUP and self.command:
            raise InvariantViolation(f"Group {self.name!r} cannot carry a command")
        if not isinstance(self.args, Mapping):
            raise InvariantViolation(f"Node {self.name!r}: args must be a mapping")
        self.args = {str(k): str(v) for k, v in self.args.items()}
        for field_name in ("notifies", "notifies_on_success", "notifies_on_failure"):
            for target in getattr(self, field_name):
                if not isinstance(target, (NotifyTarget, Node)):
                    raise InvariantViolation(
                        f"Node {self.name!r}: {field_name} entries must be NotifyTarget or Node, "
                        f"got {type(target).__name__}"
                    )
        if not self.canonical_key:
            self.canonical_key = canonical_key(self.name, self.args)
        self.uid = next(_uids)

    # ---- kind helpers ----
    @property
    def is_group(self) -> bool:
        return self.type is NodeType.GROUP

    @property
    def is_task(self) -> bool:
        return self.type is NodeType.TASK

    @property
    def label(self) -> str:
        """Human readable name: canonical key without the `|dep` marker."""
        key = self.canonical_key
        return key[: -len(DEP_SUFFIX)] if key.endswith(DEP_SUFFIX) else key

    def notifications(self, kind: NotifyKind) -> List[Notifiable]:
        return getattr(self, kind.value)

    def expanded_command(self) -> Optional[str]:
        if not self.command:
            return None
        return expand_command(self.command, self.args)

    def __repr__(self) -> str:
        return f"Node({self.label!r}, type={self.type.value}, uid={self.uid})"
