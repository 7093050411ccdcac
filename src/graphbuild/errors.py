# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List


class GraphError(Exception):
    """Base class for everything graphbuild raises on purpose."""


class InvariantViolation(GraphError):
    """
    Programmer error: malformed node, wrong argument type, queue misuse.
    Never recovered from.
    """


@dataclass(eq=False)
class CycleError(InvariantViolation):
    """
    Raised when a dependency edge would close a cycle, or when dependency,
    notification and group waits together form one (kind="scheduling").

    `path` reads source -> ... -> target -> source.
    """
    source: str
    target: str
    path: List[str] = field(default_factory=list)
    kind: str = "dependency"

    def __str__(self) -> str:
        if self.kind == "dependency":
            lines = [f"dependency cycle: {self.source} -> {self.target} would close a cycle"]
        else:
            lines = [f"{self.kind} cycle: {self.source} and {self.target} wait on each other"]
        if self.path:
            lines.append("path=" + " -> ".join(self.path))
        return "\n".join(lines)


@dataclass(eq=False)
class IllegalTransition(InvariantViolation):
    node: str
    current: str
    requested: str

    def __str__(self) -> str:
        return f"illegal status transition for {self.node}: {self.current} -> {self.requested}"


@dataclass(eq=False)
class ConfigError(GraphError):
    """
    A user-facing configuration problem, with enough context for clean CLI output.
    """
    message: str
    source: str | None = None
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [self.message]
        if self.source:
            lines.append(f"config={self.source}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)
