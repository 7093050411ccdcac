# engine.py
from __future__ import annotations

import os
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Sequence, Set, Tuple

from .errors import InvariantViolation
from .model import Node, NotifyKind
from .queues import ReadyQueues
from .registry import Notification, Registry
from .session import sanitize_name
from .status import Status, StatusTracker, Transition


class UpstreamPolicy(str, Enum):
    """
    When a `continue_on_error` node may start once all its dependencies are terminal.

      always:       regardless of how they ended
      any_success:  only if at least one of them is done (or it has none)
    """
    ALWAYS = "always"
    ANY_SUCCESS = "any_success"


class Executor(Protocol):
    def run(self, node: Node, log_path: Optional[Path]) -> Any:
        """Run node's command; the result must expose `.ok` and `.exit_code`."""


NotificationsReady = Callable[[Node, Sequence[Node], StatusTracker], bool]


def default_notifications_ready(node: Node, fired_by: Sequence[Node], tracker: StatusTracker) -> bool:
    """Every notifier has finished and at least one of them fired at us."""
    return bool(fired_by) and tracker.all_terminal(node.notified_by)


@dataclass
class EngineHooks:
    on_transition: Optional[Callable[[Transition], None]] = None
    # (node, mode, command) for commands validate/dry-run mode did not run
    on_would_run: Optional[Callable[[Node, str, str], None]] = None
    notifications_ready: NotificationsReady = default_notifications_ready
    sanitize_log_name: Callable[[str], str] = sanitize_name


@dataclass
class EngineResult:
    success: bool
    execution_order: Tuple[Node, ...]
    statuses: Dict[Node, Status]
    groups_ready: Dict[str, List[str]]
    stalled: bool = False
    diagnostics: List[str] = field(default_factory=list)
    iterations: int = 0
    reasons: Dict[Node, str] = field(default_factory=dict)
    command_results: Dict[Node, Any] = field(default_factory=dict)
    untriggered: Tuple[Node, ...] = ()

    def __iter__(self):
        # success, order, statuses, groups_ready = engine.execute()
        return iter((self.success, self.execution_order, self.statuses, self.groups_ready))


_FIRES_ON = {
    Status.DONE: (NotifyKind.ALWAYS, NotifyKind.SUCCESS),
    Status.FAILED: (NotifyKind.FAILURE,),
}


class ExecutionEngine:
    """
    Runs phase1 -> phase2 -> phase3 until every node is terminal or an
    iteration makes no progress.

    The registry, status tracker and queues are touched only from the
    thread calling execute(); phase3 worker threads just run commands.
    Side effects (display, log naming, notification policy) come in
    through `hooks`.
    """

    def __init__(
        self,
        registry: Registry,
        executor: Optional[Executor] = None,
        *,
        dry_run: bool = False,
        validate: bool = False,
        simulate_failure: Iterable[str] = (),
        max_workers: Optional[int] = None,
        max_iterations: Optional[int] = None,
        session_dir: str | Path | None = None,
        session_id: Optional[str] = None,
        hooks: Optional[EngineHooks] = None,
        upstream_policy: UpstreamPolicy = UpstreamPolicy.ALWAYS,
    ) -> None:
        if not isinstance(registry, Registry):
            raise InvariantViolation(f"ExecutionEngine requires a Registry, got {type(registry).__name__}")
        self.registry = registry
        self.executor = executor
        self.dry_run = dry_run
        self.validate = validate
        self.simulate_failure: Set[str] = {s for s in simulate_failure if s}
        if max_workers is None:
            c = os.cpu_count() or 2
            max_workers = max(1, c - 1)
        self.max_workers = max(1, int(max_workers))
        self.max_iterations = max_iterations
        self.session_dir = Path(session_dir) if session_dir is not None else None
        self.session_id = session_id
        self.hooks = hooks or EngineHooks()
        self.upstream_policy = UpstreamPolicy(upstream_policy)

        self.tracker = StatusTracker()
        self.queues = ReadyQueues()
        self.execution_order: List[Node] = []
        self.reasons: Dict[Node, str] = {}
        self.command_results: Dict[Node, Any] = {}
        self._nodes: List[Node] = []
        self._dependents: Dict[int, List[Node]] = {}
        self._fired: Dict[int, List[Node]] = {}
        self._outgoing: Dict[int, List[Notification]] = {}
        self._untriggered: Set[int] = set()
        self._staged: List[Node] = []
        self._executed = False

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    def execute(self) -> EngineResult:
        if self._executed:
            raise InvariantViolation("ExecutionEngine.execute() may only be called once")
        self._executed = True
        self._prepare()

        budget = self.max_iterations
        if budget is None:
            budget = 3 * len(self._nodes) + 3

        iterations = 0
        stalled = False
        diagnostics: List[str] = []
        while not self.tracker.all_terminal(self._nodes):
            if iterations >= budget:
                stalled = True
                diagnostics.append(f"iteration budget exhausted after {iterations} iterations")
                break
            iterations += 1

            progress = self.phase1_coordination()
            progress += self.phase2_execution_preparation()
            progress += self.phase3_actual_execution()

            if progress == 0:
                stalled = True
                diagnostics.append(f"no progress in iteration {iterations}")
                break

        if stalled:
            diagnostics.extend(self._pending_diagnostics())

        statuses = self.tracker.snapshot(self._nodes)
        success = not stalled and all(
            s is Status.DONE or (s is Status.SKIPPED and n.uid in self._untriggered)
            for n, s in statuses.items()
        )
        return EngineResult(
            success=success,
            execution_order=tuple(self.execution_order),
            statuses=statuses,
            groups_ready=self.queues.snapshot(),
            stalled=stalled,
            diagnostics=diagnostics,
            iterations=iterations,
            reasons=dict(self.reasons),
            command_results=dict(self.command_results),
            untriggered=tuple(n for n in self._nodes if n.uid in self._untriggered),
        )

    def _prepare(self) -> None:
        notifications = self.registry.process_notifications()
        self.registry.check_schedulable()
        self._nodes = self.registry.nodes()
        self._dependents = self.registry.dependents()
        self._outgoing = {}
        for n in notifications:
            self._outgoing.setdefault(n.source.uid, []).append(n)
        for node in self._nodes:
            self._fired.setdefault(node.uid, [])
            if node.parents and self.tracker.get_status(node) is Status.PENDING:
                self.queues.park(node)

    # ------------------------------------------------------------------
    # Phase 1: graph -> queues
    # ------------------------------------------------------------------

    def phase1_coordination(self) -> int:
        changes = 0
        for node in self._nodes:
            if self.tracker.get_status(node) is not Status.PENDING:
                continue
            if self.queues.is_parked(node):
                if not any(self.queues.is_open(p) for p in node.parents):
                    continue
                self.queues.unpark(node)
                changes += 1
            changes += self._evaluate(node)

        for group in list(self.queues.groups_ready):
            recorded = self.queues.groups_ready[group]
            if len(recorded) >= len(group.children):
                self.queues.close_group(group)
                self.queues.enqueue(group)
                changes += 1
            elif self.tracker.all_terminal(group.children):
                self.queues.close_group(group)
                missing = [c.label for c in group.children if not any(c is r for r in recorded)]
                self._complete(group, Status.FAILED, "members not done: " + ", ".join(missing))
                changes += 1
        return changes

    def _evaluate(self, node: Node) -> int:
        deps = node.dependencies
        if node.continue_on_error:
            if not self.tracker.all_terminal(deps):
                return 0
            if (
                self.upstream_policy is UpstreamPolicy.ANY_SUCCESS
                and deps
                and not self.tracker.any_of(deps, Status.DONE)
            ):
                self._skip(node, "no dependency succeeded", untriggered=False)
                return 1
        else:
            blocked = [d for d in deps if self.tracker.get_status(d) in (Status.FAILED, Status.SKIPPED)]
            if blocked:
                self._skip(node, f"upstream {blocked[0].label} {self.tracker.get_status(blocked[0]).value}",
                           untriggered=all(b.uid in self._untriggered for b in blocked))
                return 1
            if not self.tracker.all_of(deps, Status.DONE):
                return 0

        if node.notified_by:
            fired_by = self._fired[node.uid]
            if not self.hooks.notifications_ready(node, list(fired_by), self.tracker):
                if self.tracker.all_terminal(node.notified_by):
                    self._skip(node, "not triggered by any notification", untriggered=True)
                    return 1
                return 0

        if node.is_group:
            self._transition(node, Status.READY, "group open")
            self.queues.open_group(node)
            # members shared with an earlier group may already be done
            for child in node.children:
                if self.tracker.get_status(child) is Status.DONE:
                    self.queues.record_child(node, child)
        else:
            self._transition(node, Status.READY)
            self.queues.enqueue(node)
        return 1

    # ------------------------------------------------------------------
    # Phase 2: mode policy
    # ------------------------------------------------------------------

    def phase2_execution_preparation(self) -> int:
        batch = self.queues.drain()
        staged: List[Node] = []
        for node in batch:
            if self._is_simulated_failure(node):
                self._complete(node, Status.FAILED, "simulated failure")
            elif node.is_group:
                self._complete(node, Status.DONE, "all members done")
            elif self.validate:
                self._would_run(node, "validate")
                self._complete(node, Status.DONE, "validated")
            elif self.dry_run:
                cmd = self._would_run(node, "dry-run")
                self._complete(node, Status.DONE, f"dry-run: {cmd}" if cmd else "dry-run")
            elif not node.command:
                self._complete(node, Status.DONE, "no command")
            else:
                staged.append(node)
        self._staged = staged
        return len(batch)

    def _would_run(self, node: Node, mode: str) -> Optional[str]:
        cmd = node.expanded_command()
        if cmd and self.hooks.on_would_run is not None:
            self.hooks.on_would_run(node, mode, cmd)
        return cmd

    def _is_simulated_failure(self, node: Node) -> bool:
        if not self.simulate_failure:
            return False
        return bool({node.name, node.label, node.canonical_key} & self.simulate_failure)

    # ------------------------------------------------------------------
    # Phase 3: dispatch + barrier
    # ------------------------------------------------------------------

    def phase3_actual_execution(self) -> int:
        staged, self._staged = self._staged, []
        if not staged:
            return 0
        if self.executor is None:
            from .executor import CommandExecutor
            self.executor = CommandExecutor(session_dir=self.session_dir)

        for node in staged:
            self._transition(node, Status.RUNNING)

        outcomes: Dict[int, Tuple[Status, str, Any]] = {}
        workers = min(self.max_workers, len(staged))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            in_flight = {pool.submit(self.executor.run, n, self.log_path(n)): n for n in staged}
            for fut in as_completed(in_flight):
                node = in_flight[fut]
                try:
                    result = fut.result()
                except Exception as e:
                    outcomes[node.uid] = (Status.FAILED, f"{type(e).__name__}: {e}", None)
                    continue
                if getattr(result, "ok", False):
                    outcomes[node.uid] = (Status.DONE, "ok", result)
                else:
                    code = getattr(result, "exit_code", None)
                    outcomes[node.uid] = (Status.FAILED, f"exit code {code}", result)

        # barrier passed: apply in dispatch order
        for node in staged:
            status, reason, result = outcomes[node.uid]
            if result is not None:
                self.command_results[node] = result
            self._complete(node, status, reason)
        return len(staged)

    def log_path(self, node: Node) -> Optional[Path]:
        if self.session_dir is None:
            return None
        name = self.hooks.sanitize_log_name(node.canonical_key)
        if self.session_id:
            name = f"{name}.{self.session_id}"
        return self.session_dir / f"{name}.log"

    # ------------------------------------------------------------------
    # Status changes and propagation
    # ------------------------------------------------------------------

    def _transition(self, node: Node, status: Status, reason: Optional[str] = None) -> None:
        t = self.tracker.set_status(node, status, reason)
        if reason:
            self.reasons[node] = reason
        if self.hooks.on_transition is not None:
            self.hooks.on_transition(t)

    def _complete(self, node: Node, status: Status, reason: Optional[str] = None) -> None:
        """Move `node` to a terminal status and apply its consequences."""
        self._transition(node, status, reason)
        self.execution_order.append(node)

        for kind in _FIRES_ON.get(status, ()):
            for n in self._outgoing.get(node.uid, ()):
                fired = self._fired.setdefault(n.target.uid, [])
                if n.kind is kind and not any(f is node for f in fired):
                    fired.append(node)

        if status is Status.DONE:
            for parent in node.parents:
                if self.queues.is_open(parent):
                    self.queues.record_child(parent, node)
            return

        untriggered = node.uid in self._untriggered
        for dependent in self._dependents.get(node.uid, ()):
            if dependent.continue_on_error:
                continue
            self._skip(dependent, f"upstream {node.label} {status.value}", untriggered=untriggered)
        if status is Status.SKIPPED and node.is_group:
            for child in node.children:
                self._skip(child, f"group {node.label} skipped", untriggered=untriggered)

    def _skip(self, node: Node, reason: str, *, untriggered: bool) -> None:
        if self.tracker.get_status(node) is not Status.PENDING:
            return
        if self.queues.is_parked(node):
            self.queues.unpark(node)
        if untriggered:
            self._untriggered.add(node.uid)
        self._complete(node, Status.SKIPPED, reason)

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    def _pending_diagnostics(self) -> List[str]:
        out: List[str] = []
        for node in self._nodes:
            status = self.tracker.get_status(node)
            if status.is_terminal:
                continue
            if self.queues.is_parked(node):
                why = "waiting for a parent group to open: " + ", ".join(p.label for p in node.parents)
            elif self.queues.is_open(node):
                waiting = [c.label for c in node.children if not self.tracker.is_terminal(c)]
                why = "open group waiting on members: " + ", ".join(waiting)
            else:
                waiting = [d.label for d in node.dependencies if self.tracker.get_status(d) is not Status.DONE]
                if waiting:
                    why = "waiting on dependencies: " + ", ".join(waiting)
                elif node.notified_by:
                    why = "waiting on notifications from: " + ", ".join(n.label for n in node.notified_by)
                else:
                    why = "no blocking edge found"
            out.append(f"{node.label} [{status.value}] {why}")
        return out
