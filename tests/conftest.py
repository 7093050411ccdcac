"""Shared fixtures: a recording stand-in for CommandExecutor and small graph builders."""

from __future__ import annotations

import threading
from dataclasses import dataclass

import pytest

from graphbuild.model import Node, NodeType
from graphbuild.registry import Registry


@dataclass(frozen=True)
class FakeResult:
    exit_code: int
    output_tail: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class RecordingExecutor:
    """Records which nodes were dispatched; fails the names listed in `fail`."""

    def __init__(self, fail=(), raise_for=()):
        self.fail = set(fail)
        self.raise_for = set(raise_for)
        self.calls: list[str] = []
        self.log_paths: list = []
        self._lock = threading.Lock()

    def run(self, node, log_path=None):
        with self._lock:
            self.calls.append(node.name)
            self.log_paths.append(log_path)
        if node.name in self.raise_for:
            raise OSError(f"cannot spawn {node.name}")
        return FakeResult(1 if node.name in self.fail else 0)


@pytest.fixture
def recorder():
    return RecordingExecutor()


def make_task(name, command="true", **kwargs) -> Node:
    return Node(name=name, command=command, **kwargs)


def make_group(name, **kwargs) -> Node:
    return Node(name=name, type=NodeType.GROUP, **kwargs)


def registry_of(*nodes: Node) -> Registry:
    reg = Registry()
    for n in nodes:
        reg.add_node(n)
    return reg
