# artifacts.py
from __future__ import annotations

import hashlib
import json
import logging
import tarfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional

from .model import Node
from .session import sanitize_name
from .status import Status

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------
# Layout
# ---------------------------------------------------------------------
#   root/
#     <sanitized node key>/
#       <session id>.tar.gz
#       <session id>.manifest.json
#
# The manifest lists every archived file with its sha256 and size so a
# build's outputs can be checked without unpacking the archive.
# ---------------------------------------------------------------------

DEFAULT_ARTIFACT_DIR = "build/artifacts"


@dataclass(frozen=True)
class ArtifactRecord:
    node: str
    archive: Path
    manifest_path: Path
    files: List[Dict]


def _sha256_file(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        while True:
            chunk = f.read(1024 * 1024)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


def _relpath(p: Path, root: Path) -> str:
    return str(p.resolve().relative_to(root.resolve())).replace("\\", "/")


def resolve_patterns(base_dir: Path, patterns: Iterable[str]) -> List[Path]:
    """
    Expand artifact patterns into files under base_dir.
    Supports:
      - file path: "dist/app.tar"
      - dir path:  "dist/" (every file below it)
      - glob:      "dist/*.whl", "reports/**/*.xml"
    """
    base = base_dir.resolve()
    out: List[Path] = []
    for pat in patterns:
        pat = pat.strip()
        if not pat:
            continue
        if Path(pat).is_absolute():
            try:
                pat = Path(pat).relative_to(base).as_posix()
            except ValueError:
                logger.warning("artifact pattern %s is outside %s; skipping", pat, base)
                continue
        p = base / pat
        if p.is_file():
            matches = [p]
        elif p.is_dir():
            matches = sorted(f for f in p.rglob("*") if f.is_file())
        else:
            matches = sorted(m for m in base.glob(pat) if m.is_file())
        for m in matches:
            try:
                m.resolve().relative_to(base)
            except ValueError:
                logger.warning("artifact %s is outside %s; skipping", m, base)
                continue
            out.append(m)

    # de-dupe while preserving order
    seen = set()
    uniq: List[Path] = []
    for p in out:
        rp = str(p.resolve())
        if rp not in seen:
            seen.add(rp)
            uniq.append(p)
    return uniq


class ArtifactStore:
    """File-based archive of the outputs each task declares in `artifacts`."""

    def __init__(self, root: str | Path = DEFAULT_ARTIFACT_DIR):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _node_dir(self, node: Node | str) -> Path:
        key = node.label if isinstance(node, Node) else node
        d = self.root / sanitize_name(key)
        d.mkdir(parents=True, exist_ok=True)
        return d

    def archive_path(self, node: Node | str, session_id: str) -> Path:
        return self._node_dir(node) / f"{session_id}.tar.gz"

    def manifest_path(self, node: Node | str, session_id: str) -> Path:
        return self._node_dir(node) / f"{session_id}.manifest.json"

    def collect(self, node: Node, session_id: str, *, base_dir: str | Path = ".") -> Optional[ArtifactRecord]:
        """
        Archive the files matched by node.artifacts.
        Returns None when the node declares nothing or nothing matched.
        """
        if not node.artifacts:
            return None
        base = Path(base_dir).resolve()
        files = resolve_patterns(base, node.artifacts)
        if not files:
            logger.warning("%s: no files matched artifact patterns %s", node.label, node.artifacts)
            return None

        entries = [
            {"path": _relpath(f, base), "sha256": _sha256_file(f), "size": f.stat().st_size}
            for f in files
        ]
        manifest = {
            "node": node.label,
            "session": session_id,
            "patterns": list(node.artifacts),
            "files": entries,
            "generated_at_unix": int(time.time()),
        }

        art = self.archive_path(node, session_id)
        man = self.manifest_path(node, session_id)
        tmp = art.with_suffix(".gz.tmp")
        try:
            # build in tmp, then atomic rename
            with tarfile.open(str(tmp), mode="w:gz") as tar:
                for f, entry in zip(files, entries):
                    tar.add(str(f), arcname=entry["path"], recursive=False)
            tmp.replace(art)
            man.write_text(json.dumps(manifest, sort_keys=True, indent=2, ensure_ascii=False), encoding="utf-8")
        finally:
            if tmp.exists():
                tmp.unlink(missing_ok=True)

        logger.debug("archived %d file(s) for %s into %s", len(entries), node.label, art)
        return ArtifactRecord(node=node.label, archive=art, manifest_path=man, files=entries)

    def collect_all(
        self,
        execution_order: Iterable[Node],
        statuses: Mapping[Node, Status],
        session_id: str,
        *,
        base_dir: str | Path = ".",
        keep: Optional[int] = None,
    ) -> List[ArtifactRecord]:
        """Collect for every done task, in execution order, pruning as it goes."""
        records: List[ArtifactRecord] = []
        for node in execution_order:
            if not node.is_task or statuses.get(node) is not Status.DONE:
                continue
            rec = self.collect(node, session_id, base_dir=base_dir)
            if rec is None:
                continue
            records.append(rec)
            if keep is not None:
                self.prune(node, keep=keep)
        return records

    def list_archives(self, node: Node | str) -> List[Path]:
        """Archives for a node, newest first (by mtime)."""
        d = self._node_dir(node)
        return sorted(d.glob("*.tar.gz"), key=lambda p: p.stat().st_mtime, reverse=True)

    def prune(self, node: Node | str, keep: int = 3) -> List[Path]:
        """
        Keep only the newest N archives for a node.
        Uses file mtime as "newest". Returns the removed archives.
        """
        d = self._node_dir(node)
        removed: List[Path] = []
        for p in self.list_archives(node)[max(keep, 0):]:
            session = p.name[: -len(".tar.gz")]
            p.unlink(missing_ok=True)
            (d / f"{session}.manifest.json").unlink(missing_ok=True)
            removed.append(p)
        return removed
