# session.py
from __future__ import annotations

import os
import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")

COMMAND_LOG = "COMMAND_EXECUTION.log"


def sanitize_name(name: str) -> str:
    """
    File-name safe version of a node key: runs of anything outside
    [A-Za-z0-9._-] collapse to `_`, so `compile|target=all` becomes
    `compile_target_all`.
    """
    cleaned = _UNSAFE.sub("_", name).strip("._")
    return cleaned or "node"


@dataclass(frozen=True)
class BuildSession:
    """One build invocation: `<log_root>/build_<id>/` with id `<YYYYmmdd_HHMMSS>_<pid>`."""
    log_root: Path
    session_id: str

    @property
    def directory(self) -> Path:
        return self.log_root / f"build_{self.session_id}"

    @property
    def command_log(self) -> Path:
        return self.directory / COMMAND_LOG


def new_session_id(now: Optional[datetime] = None, pid: Optional[int] = None) -> str:
    now = now or datetime.now()
    pid = os.getpid() if pid is None else pid
    return f"{now:%Y%m%d_%H%M%S}_{pid}"


def create_session(
    log_root: str | Path,
    *,
    now: Optional[datetime] = None,
    pid: Optional[int] = None,
) -> BuildSession:
    session = BuildSession(Path(log_root).expanduser().resolve(), new_session_id(now, pid))
    session.directory.mkdir(parents=True, exist_ok=True)
    return session
