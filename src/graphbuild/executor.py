# executor.py
from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from enum import IntEnum
from pathlib import Path
from typing import Deque, Optional, TextIO

from .model import Node
from .session import COMMAND_LOG
from .ui.console import Console, get_console

logger = logging.getLogger(__name__)

TAIL_CHARS = 4000


class Verbosity(IntEnum):
    QUIET = 0
    NORMAL = 1
    VERBOSE = 2
    DEBUG = 3

    @classmethod
    def parse(cls, value: "str | int | Verbosity") -> "Verbosity":
        if isinstance(value, str):
            try:
                return cls[value.strip().upper()]
            except KeyError:
                raise ValueError(
                    f"verbosity must be one of {[v.name.lower() for v in cls]}, got {value!r}"
                ) from None
        return cls(value)


@dataclass(frozen=True)
class CommandResult:
    node: str
    command: str
    exit_code: int
    duration: float
    output_tail: str = ""
    log_file: Optional[Path] = None
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class CommandExecutor:
    """
    Runs one task node's command in a shell and reports how it ended.

    Output handling depends on verbosity:
      quiet    output only goes to the per-node log file
      normal   same, plus a one-line summary on the console
      verbose  output is also streamed to the console, prefixed with the node
      debug    like verbose

    Safe to call from several worker threads at once.
    """

    def __init__(
        self,
        verbosity: Verbosity = Verbosity.NORMAL,
        *,
        console: Optional[Console] = None,
        session_dir: str | Path | None = None,
        base_dir: str | Path | None = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.verbosity = Verbosity.parse(verbosity)
        self.console = console
        self.session_dir = Path(session_dir) if session_dir is not None else None
        self.base_dir = Path(base_dir).resolve() if base_dir is not None else Path.cwd()
        self.timeout = timeout
        self._record_lock = threading.Lock()

    @property
    def _console(self) -> Console:
        return self.console or get_console()

    def run(self, node: Node, log_path: Optional[Path] = None) -> CommandResult:
        command = node.expanded_command()
        if not command:
            raise ValueError(f"{node.label} has no command to run")

        cwd = (self.base_dir / (node.cwd or ".")).resolve()
        if not cwd.exists():
            raise FileNotFoundError(f"[{node.label}] cwd not found: {cwd}")

        env = os.environ.copy()
        env.update(node.env or {})

        tee = self.verbosity >= Verbosity.VERBOSE
        tail: Deque[str] = deque()
        tail_len = 0
        timed_out = threading.Event()

        logger.debug("spawn %s: %s (cwd=%s)", node.label, command, cwd)
        start = time.monotonic()
        log_fh: Optional[TextIO] = None
        if log_path is not None:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            log_fh = log_path.open("w", encoding="utf-8")
        try:
            if log_fh is not None:
                log_fh.write(f"$ {command}\n")
            proc = subprocess.Popen(
                command,
                shell=True,
                cwd=str(cwd),
                env=env,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
                # own process group so a timeout can kill the whole pipeline
                start_new_session=bool(self.timeout),
            )
            timer = None
            if self.timeout:
                def _kill() -> None:
                    timed_out.set()
                    try:
                        os.killpg(proc.pid, signal.SIGKILL)
                    except (ProcessLookupError, PermissionError):
                        proc.kill()
                timer = threading.Timer(self.timeout, _kill)
                timer.daemon = True
                timer.start()
            try:
                assert proc.stdout is not None
                for line in proc.stdout:
                    if log_fh is not None:
                        log_fh.write(line)
                    if tee:
                        self._console.print_output_line(node.label, line)
                    tail.append(line)
                    tail_len += len(line)
                    while tail_len > TAIL_CHARS and len(tail) > 1:
                        tail_len -= len(tail.popleft())
                returncode = proc.wait()
            finally:
                if timer is not None:
                    timer.cancel()
        finally:
            if log_fh is not None:
                log_fh.close()

        duration = time.monotonic() - start
        exit_code = -1 if timed_out.is_set() else returncode
        output_tail = "".join(tail)[-TAIL_CHARS:]
        if timed_out.is_set():
            output_tail += f"\n[timed out after {self.timeout}s]"

        result = CommandResult(
            node=node.label,
            command=command,
            exit_code=exit_code,
            duration=duration,
            output_tail=output_tail,
            log_file=log_path,
            timed_out=timed_out.is_set(),
        )
        logger.debug("finished %s: exit=%s in %.2fs", node.label, exit_code, duration)

        if self.verbosity >= Verbosity.NORMAL:
            self._console.print_task_result(node.label, exit_code, duration)
        self._append_record(result)
        return result

    def record_planned(self, node: Node, mode: str, command: str) -> None:
        """Log a command validate/dry-run mode skipped, next to real runs."""
        stamp = datetime.now().isoformat(timespec="seconds")
        self._write_record(
            f"[{stamp}] node={node.label}\n"
            f"  command={command}\n"
            f"  ({mode.upper()} - would execute)\n"
        )

    def _append_record(self, result: CommandResult) -> None:
        stamp = datetime.now().isoformat(timespec="seconds")
        self._write_record(
            f"[{stamp}] node={result.node}\n"
            f"  command={result.command}\n"
            f"  log={result.log_file or '-'}\n"
            f"  exit={result.exit_code} duration={result.duration:.2f}s"
            + (" timed_out=true" if result.timed_out else "")
            + "\n"
        )

    def _write_record(self, record: str) -> None:
        if self.session_dir is None:
            return
        with self._record_lock:
            self.session_dir.mkdir(parents=True, exist_ok=True)
            with (self.session_dir / COMMAND_LOG).open("a", encoding="utf-8") as fh:
                fh.write(record)
