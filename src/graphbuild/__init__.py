from .dsl import task, group, ref, graph, build_graph
from .engine import ExecutionEngine, EngineHooks, EngineResult, UpstreamPolicy
from .errors import GraphError, InvariantViolation, CycleError, IllegalTransition, ConfigError
from .executor import CommandExecutor, CommandResult, Verbosity
from .model import Node, NodeType, NotifyKind, NotifyTarget, canonical_key
from .registry import Registry
from .status import Status, StatusTracker

__all__ = [
    "task", "group", "ref", "graph", "build_graph",
    "ExecutionEngine", "EngineHooks", "EngineResult", "UpstreamPolicy",
    "GraphError", "InvariantViolation", "CycleError", "IllegalTransition", "ConfigError",
    "CommandExecutor", "CommandResult", "Verbosity",
    "Node", "NodeType", "NotifyKind", "NotifyTarget", "canonical_key",
    "Registry",
    "Status", "StatusTracker",
]
