"""Console output formatting utilities for graphbuild."""

from __future__ import annotations

import sys
import threading
from typing import TYPE_CHECKING, Iterable, Mapping, Optional

if TYPE_CHECKING:
    from ..model import Node
    from ..status import Transition


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, quiet: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            quiet: If True, only failures, errors and the final results are printed
        """
        self.debug = debug
        self.quiet = quiet
        self._lock = threading.Lock()

    def print_header(self, title: str) -> None:
        """Print a section header."""
        print(f"\n{title}")
        print("-" * len(title))

    def print_run_started(
        self,
        config: str,
        targets: Iterable[str],
        node_count: int,
        mode: str,
        session_dir: Optional[str] = None,
    ) -> None:
        """Print run start information."""
        if self.quiet:
            return
        targets = list(targets)
        print("\nBUILD STARTED")
        print(f"Config: {config}")
        print(f"Targets: {', '.join(targets) if targets else '(all)'}")
        print(f"Nodes: {node_count}")
        print(f"Mode: {mode}")
        if session_dir:
            print(f"Logs: {session_dir}")
        print()

    def print_transition(self, transition: "Transition") -> None:
        """
        Render one status change. Used as the engine's on_transition hook.
        """
        node = transition.node
        new = transition.new.value
        reason = transition.reason or ""
        kind = "GROUP" if node.is_group else "TASK"

        if new == "failed":
            self.print_failure(node.label, reason or "failed", is_group=node.is_group)
            return
        if self.quiet:
            return
        if new == "running":
            print(f"{kind} STARTED: {node.label}")
        elif new == "done":
            if reason.startswith("dry-run: "):
                print(f"WOULD RUN: {node.label}: {reason[len('dry-run: '):]}")
            else:
                print(f"{kind} DONE: {node.label}" + (f" ({reason})" if reason and reason != "ok" else ""))
        elif new == "skipped":
            print(f"{kind} SKIPPED: {node.label} ({reason})")
        elif self.debug:
            print(f"[DEBUG] {node.label}: {transition.old.value} -> {new}", file=sys.stderr)

    def print_task_result(self, name: str, exit_code: int, duration: float) -> None:
        """Print the one-line summary for a finished command."""
        status = "ok" if exit_code == 0 else f"exit {exit_code}"
        with self._lock:
            print(f"  {name}: {status} ({duration:.1f}s)")

    def print_output_line(self, name: str, line: str) -> None:
        """Print a line of live command output, prefixed with the node name."""
        with self._lock:
            print(f"[{name}] {line.rstrip()}")

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        output_tail: Optional[str] = None,
        is_group: bool = False,
    ) -> None:
        """
        Print failure message.

        Args:
            name: Task or group label
            reason: Failure reason/error message
            exit_code: Optional exit code
            output_tail: Optional tail of the command output
            is_group: If True, print "GROUP FAILED", otherwise "TASK FAILED"
        """
        prefix = "GROUP FAILED" if is_group else "TASK FAILED"
        print(f"{prefix}: {name}")
        if exit_code is not None:
            print(f"Exit code: {exit_code}")
        if self.debug:
            print(f"Error details: {reason}")
        else:
            # first line only outside debug mode
            error_line = reason.split("\n")[0] if reason else "Unknown error"
            print(f"Error: {error_line}")
        if output_tail:
            print("Output (tail):")
            for line in output_tail.rstrip().splitlines()[-20:]:
                print(f"  {line}")

    def print_plan_node(self, node: "Node") -> None:
        """Print one node of the build plan with its edges."""
        kind = "group" if node.is_group else "task"
        print(f"  {node.label} ({kind})")
        if node.command:
            print(f"    command: {node.expanded_command()}")
        if node.dependencies:
            print(f"    depends on: {', '.join(d.label for d in node.dependencies)}")
        if node.children:
            print(f"    members: {', '.join(c.label for c in node.children)}")
        if node.notified_by:
            print(f"    notified by: {', '.join(n.label for n in node.notified_by)}")

    def print_target(self, name: str, kind: str, description: Optional[str]) -> None:
        print(f"  {name} ({kind})" + (f": {description}" if description else ""))

    def print_results(self, results: Mapping[str, str]) -> None:
        """Print final results summary."""
        print("\n" + "=" * 40)
        print("RESULTS")
        print("=" * 40)
        for name, status in results.items():
            status_display = status.upper() if status != "done" else "SUCCESS"
            print(f"  {name}: {status_display}")

    def print_stall(self, diagnostics: Iterable[str]) -> None:
        """Print why the build could not make progress."""
        print("\nBUILD STALLED", file=sys.stderr)
        for line in diagnostics:
            print(f"  {line}", file=sys.stderr)

    def print_artifacts_saved(self, name: str, archive: str, file_count: int) -> None:
        if self.quiet:
            return
        print(f"ARTIFACTS: {name}: {file_count} file(s) -> {archive}")

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        print(f"\nERROR: {title}", file=sys.stderr)
        print(f"{message}", file=sys.stderr)
        if details:
            for detail in details:
                print(f"  {detail}", file=sys.stderr)
        if suggestion:
            print(f"\n{suggestion}", file=sys.stderr)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            print(f"Error: {exc}", file=sys.stderr)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        print(message)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
