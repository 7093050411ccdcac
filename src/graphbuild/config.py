# config.py
from __future__ import annotations

import logging
import runpy
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

import yaml

from .errors import ConfigError
from .model import Node, NodeType, NotifyKind, NotifyTarget, canonical_key, dep_variant
from .registry import Registry

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = "buildconfig.yml"

_TOP_LEVEL = {"settings", "tasks", "platforms", "groups"}
_TASK_KEYS = {
    "name", "command", "build_command", "args", "dependencies",
    "notifies", "notifies_on_success", "notifies_on_failure",
    "continue_on_error", "env", "cwd", "artifacts", "description",
}
_GROUP_KEYS = {
    "name", "children", "dependencies",
    "notifies", "notifies_on_success", "notifies_on_failure",
    "continue_on_error", "description",
}
_VERBOSITY = ("quiet", "normal", "verbose", "debug")
_POLICIES = ("always", "any_success")


# ---------------------------------------------------------------------
# Parsed configuration
# ---------------------------------------------------------------------

@dataclass
class Settings:
    max_parallel: Optional[int] = None
    verbosity: str = "normal"
    log_dir: str = "build/logs"
    artifact_dir: str = "build/artifacts"
    artifact_keep: int = 3
    upstream_policy: str = "always"
    command_timeout: Optional[float] = None


@dataclass
class NodeSpec:
    """One `tasks`/`platforms`/`groups` entry after normalization."""
    name: str
    type: NodeType = NodeType.TASK
    command: Optional[str] = None
    args: Dict[str, str] = field(default_factory=dict)
    dependencies: List[NotifyTarget] = field(default_factory=list)
    notifies: List[NotifyTarget] = field(default_factory=list)
    notifies_on_success: List[NotifyTarget] = field(default_factory=list)
    notifies_on_failure: List[NotifyTarget] = field(default_factory=list)
    children: List[NotifyTarget] = field(default_factory=list)
    continue_on_error: bool = False
    env: Dict[str, str] = field(default_factory=dict)
    cwd: Optional[str] = None
    artifacts: List[str] = field(default_factory=list)
    description: Optional[str] = None
    section: str = "tasks"


@dataclass
class BuildConfig:
    source: Path
    settings: Settings = field(default_factory=Settings)
    specs: Dict[str, NodeSpec] = field(default_factory=dict)
    # set when the graph comes from a .py file instead of YAML
    python_graph: Optional[Registry] = None

    @property
    def base_dir(self) -> Path:
        return self.source.parent


# ---------------------------------------------------------------------
# Normalization helpers
# ---------------------------------------------------------------------

def _fail(message: str, source: Path, **details: Any) -> ConfigError:
    return ConfigError(message=message, source=str(source), details=details)


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def _str_map(value: Any, what: str, source: Path) -> Dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise _fail(f"{what} must be a mapping", source, got=type(value).__name__)
    return {str(k): "" if v is None else str(v) for k, v in value.items()}


def _parse_ref(value: Any, what: str, source: Path) -> NotifyTarget:
    """A reference is a bare name or {name, args, args_from: self}."""
    if isinstance(value, str) and value.strip():
        return NotifyTarget(name=value.strip())
    if isinstance(value, dict):
        name = value.get("name")
        if not isinstance(name, str) or not name.strip():
            raise _fail(f"{what}: reference needs a name", source, entry=value)
        unknown = set(value) - {"name", "args", "args_from"}
        if unknown:
            raise _fail(f"{what}: unknown reference keys", source, keys=", ".join(sorted(unknown)))
        args_from = value.get("args_from")
        if args_from not in (None, "self"):
            raise _fail(f"{what}: args_from must be 'self'", source, got=args_from)
        return NotifyTarget(
            name=name.strip(),
            args=_str_map(value.get("args"), f"{what}.args", source),
            args_from_self=args_from == "self",
        )
    raise _fail(f"{what}: reference must be a name or a mapping", source, got=repr(value))


def _parse_refs(value: Any, what: str, source: Path) -> List[NotifyTarget]:
    return [_parse_ref(v, what, source) for v in _as_list(value)]


def _parse_settings(raw: Any, source: Path) -> Settings:
    if raw is None:
        return Settings()
    if not isinstance(raw, dict):
        raise _fail("settings must be a mapping", source)
    known = {f.name for f in fields(Settings)}
    unknown = set(raw) - known
    if unknown:
        raise _fail("unknown settings", source, keys=", ".join(sorted(unknown)))

    s = Settings(**raw)
    if s.max_parallel is not None and (not isinstance(s.max_parallel, int) or s.max_parallel < 1):
        raise _fail("settings.max_parallel must be a positive integer", source, got=s.max_parallel)
    if str(s.verbosity).lower() not in _VERBOSITY:
        raise _fail("settings.verbosity is invalid", source, got=s.verbosity, allowed="|".join(_VERBOSITY))
    s.verbosity = str(s.verbosity).lower()
    if str(s.upstream_policy).lower() not in _POLICIES:
        raise _fail("settings.upstream_policy is invalid", source, got=s.upstream_policy, allowed="|".join(_POLICIES))
    s.upstream_policy = str(s.upstream_policy).lower()
    if not isinstance(s.artifact_keep, int) or s.artifact_keep < 1:
        raise _fail("settings.artifact_keep must be a positive integer", source, got=s.artifact_keep)
    if s.command_timeout is not None:
        try:
            s.command_timeout = float(s.command_timeout)
        except (TypeError, ValueError):
            raise _fail("settings.command_timeout must be a number of seconds", source, got=s.command_timeout) from None
        if s.command_timeout <= 0:
            raise _fail("settings.command_timeout must be positive", source, got=s.command_timeout)
    s.log_dir = str(s.log_dir)
    s.artifact_dir = str(s.artifact_dir)
    return s


def _parse_entry(raw: Any, section: str, source: Path) -> NodeSpec:
    if not isinstance(raw, dict):
        raise _fail(f"{section} entries must be mappings", source, got=repr(raw))
    name = raw.get("name")
    if not isinstance(name, str) or not name.strip():
        raise _fail(f"{section} entry without a name", source, entry=raw)
    name = name.strip()
    where = f"{section}.{name}"

    is_group = section == "groups"
    allowed = _GROUP_KEYS if is_group else _TASK_KEYS
    unknown = set(raw) - allowed
    if unknown:
        raise _fail(f"{where}: unknown keys", source, keys=", ".join(sorted(unknown)))

    command = raw.get("command")
    if command is None and section == "platforms":
        command = raw.get("build_command")
    if command is not None and not isinstance(command, str):
        raise _fail(f"{where}: command must be a string", source)

    continue_on_error = raw.get("continue_on_error", False)
    if not isinstance(continue_on_error, bool):
        raise _fail(f"{where}: continue_on_error must be true or false", source)

    description = raw.get("description")
    cwd = raw.get("cwd")
    return NodeSpec(
        name=name,
        type=NodeType.GROUP if is_group else NodeType.TASK,
        command=command,
        args=_str_map(raw.get("args"), f"{where}.args", source),
        dependencies=_parse_refs(raw.get("dependencies"), f"{where}.dependencies", source),
        notifies=_parse_refs(raw.get("notifies"), f"{where}.notifies", source),
        notifies_on_success=_parse_refs(raw.get("notifies_on_success"), f"{where}.notifies_on_success", source),
        notifies_on_failure=_parse_refs(raw.get("notifies_on_failure"), f"{where}.notifies_on_failure", source),
        children=_parse_refs(raw.get("children"), f"{where}.children", source),
        continue_on_error=continue_on_error,
        env=_str_map(raw.get("env"), f"{where}.env", source),
        cwd=None if cwd is None else str(cwd),
        artifacts=[str(a) for a in _as_list(raw.get("artifacts"))],
        description=None if description is None else str(description),
        section=section,
    )


# ---------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------

def load_config(path: str | Path | None = None) -> BuildConfig:
    """
    Load a build graph file.

    YAML files hold settings/tasks/platforms/groups. A .py file must define
    either:
      - graph() -> Registry | List[Node]
      - GRAPH = Registry | [Node, ...]
    and may define SETTINGS = {...}.
    """
    cfg_path = Path(path or DEFAULT_CONFIG).expanduser().resolve()
    if not cfg_path.exists():
        raise ConfigError(message=f"Config file not found: {cfg_path}", source=str(cfg_path))
    if cfg_path.suffix == ".py":
        return _load_python(cfg_path)

    try:
        raw = yaml.safe_load(cfg_path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise _fail("Invalid YAML", cfg_path, error=str(e).replace("\n", " ")) from e
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise _fail("Top level of the config must be a mapping", cfg_path)
    unknown = set(raw) - _TOP_LEVEL
    if unknown:
        raise _fail("Unknown top-level keys", cfg_path, keys=", ".join(sorted(unknown)))

    config = BuildConfig(source=cfg_path, settings=_parse_settings(raw.get("settings"), cfg_path))
    for section in ("tasks", "platforms", "groups"):
        entries = raw.get(section) or []
        if not isinstance(entries, list):
            raise _fail(f"{section} must be a list", cfg_path)
        for entry in entries:
            spec = _parse_entry(entry, section, cfg_path)
            if spec.name in config.specs:
                raise _fail(
                    f"Duplicate node name: {spec.name}",
                    cfg_path,
                    first=config.specs[spec.name].section,
                    second=section,
                )
            config.specs[spec.name] = spec

    _check_references(config)
    logger.debug("loaded %d node definitions from %s", len(config.specs), cfg_path)
    return config


def _check_references(config: BuildConfig) -> None:
    for spec in config.specs.values():
        edges: List[Tuple[str, NotifyTarget]] = [("dependencies", r) for r in spec.dependencies]
        edges += [("children", r) for r in spec.children]
        for kind in NotifyKind:
            edges += [(kind.value, r) for r in getattr(spec, kind.value)]
        for what, r in edges:
            if r.name not in config.specs:
                raise _fail(
                    f"{spec.name}: {what} refers to unknown node {r.name!r}",
                    config.source,
                    known=", ".join(config.specs) or "(none)",
                )


def _load_python(cfg_path: Path) -> BuildConfig:
    from . import dsl

    module_name = f"graphbuild_graph_{cfg_path.stem}"
    try:
        globals_dict = runpy.run_path(str(cfg_path), run_name=module_name)
    except Exception as e:
        raise _fail("Failed to execute graph file", cfg_path, error=f"{type(e).__name__}: {e}") from e

    built: Any = None
    if "GRAPH" in globals_dict:
        built = globals_dict["GRAPH"]
    elif callable(globals_dict.get("graph")) and globals_dict["graph"] is not dsl.graph:
        built = globals_dict["graph"]()

    if isinstance(built, (list, tuple)) and all(isinstance(n, Node) for n in built):
        built = dsl.graph(*built)
    if not isinstance(built, Registry):
        raise _fail(
            "Graph file must return/define a Registry or a list of Nodes. "
            "Define graph() or GRAPH = build_graph(...).",
            cfg_path,
        )

    settings = _parse_settings(globals_dict.get("SETTINGS"), cfg_path)
    specs: Dict[str, NodeSpec] = {}
    for node in built.nodes():
        specs.setdefault(node.name, NodeSpec(name=node.name, type=node.type, command=node.command,
                                             args=dict(node.args), description=node.description,
                                             section="graph"))
    return BuildConfig(source=cfg_path, settings=settings, specs=specs, python_graph=built)


# ---------------------------------------------------------------------
# Graph construction
# ---------------------------------------------------------------------

class _GraphBuilder:
    """
    Worklist expansion from the selected targets.

    Explicit targets are registered under their canonical key, nodes that
    exist only because something references them under the `|dep` variant.
    Every reference is looked up first so that one logical node is never
    instantiated twice.
    """

    def __init__(self, config: BuildConfig) -> None:
        self.config = config
        self.registry = Registry()
        self._work: List[Tuple[Node, NodeSpec]] = []

    def build(self, targets: Sequence[str]) -> Registry:
        for name in targets:
            self._resolve(NotifyTarget(name=name), source=None, explicit=True)

        while self._work:
            node, spec = self._work.pop(0)
            for r in spec.dependencies:
                self.registry.connect(node, self._resolve(r, source=node))
            for r in spec.children:
                self.registry.add_child(node, self._resolve(r, source=node))
            for kind in NotifyKind:
                for r in getattr(spec, kind.value):
                    # instantiate the target so process_notifications() can find it
                    self._resolve(r, source=node)
                    node.notifications(kind).append(r)
        return self.registry

    def _resolve(self, r: NotifyTarget, *, source: Optional[Node], explicit: bool = False) -> Node:
        spec = self.config.specs.get(r.name)
        if spec is None:
            raise _fail(
                f"Unknown node {r.name!r}",
                self.config.source,
                referenced_by=source.label if source else "(target)",
                known=", ".join(self.config.specs) or "(none)",
            )
        ref_args = dict(source.args) if (source is not None and r.args_from_self) else {}
        ref_args.update(r.args)
        merged = {**spec.args, **ref_args}

        node = (
            self.registry.lookup_by_name_and_args(spec.name, ref_args)
            or self.registry.lookup_by_name_and_args(spec.name, merged)
        )
        if node is not None:
            return node

        key = canonical_key(spec.name, merged)
        alias = canonical_key(spec.name, ref_args)
        if not explicit:
            key, alias = dep_variant(key), dep_variant(alias)
        node = Node(
            name=spec.name,
            type=spec.type,
            command=spec.command,
            args=merged,
            continue_on_error=spec.continue_on_error,
            env=dict(spec.env),
            cwd=spec.cwd,
            artifacts=list(spec.artifacts),
            description=spec.description,
            canonical_key=key,
        )
        self.registry.add_node(node)
        if alias != key:
            self.registry.add_node(node, alias)
        logger.debug("instantiated %s as %s", spec.name, key)
        self._work.append((node, spec))
        return node


def load_graph(config: BuildConfig, targets: Optional[Iterable[str]] = None) -> Registry:
    """
    Build the Registry for `targets` (every defined node when empty).
    Raises ConfigError for unknown targets, CycleError for cycles.
    """
    wanted = [t for t in (targets or []) if t]
    unknown = [t for t in wanted if t not in config.specs]
    if unknown:
        raise _fail(
            f"Unknown target(s): {', '.join(unknown)}",
            config.source,
            available=", ".join(config.specs) or "(none)",
        )

    if config.python_graph is not None:
        registry = config.python_graph if not wanted else _subgraph(config.python_graph, wanted)
    else:
        registry = _GraphBuilder(config).build(wanted or list(config.specs))

    registry.process_notifications()
    registry.check_schedulable()
    return registry


def _subgraph(registry: Registry, names: Sequence[str]) -> Registry:
    """Copy of `registry` restricted to what the named nodes reach."""
    wanted = set(names)
    roots = [n for n in registry.nodes() if n.name in wanted]
    keep: Set[int] = set()
    stack = list(roots)
    while stack:
        node = stack.pop()
        if node.uid in keep:
            continue
        keep.add(node.uid)
        stack.extend(node.dependencies)
        stack.extend(node.children)
        for kind in NotifyKind:
            for declared in node.notifications(kind):
                target = registry.resolve_notification(node, declared)
                if target is not None:
                    stack.append(target)

    out = Registry()
    for node in registry.nodes():
        if node.uid in keep:
            out.add_node(node)
    for key in registry.keys():
        node = registry.lookup_by_key(key)
        if node is not None and node.uid in keep:
            out.add_node(node, key)
    return out


SAMPLE_CONFIG = """\
# graphbuild sample configuration
settings:
  max_parallel: 4
  verbosity: normal
  log_dir: build/logs
  artifact_dir: build/artifacts
  artifact_keep: 3
  upstream_policy: always

tasks:
  - name: fetch
    command: echo fetching sources
    description: Fetch sources

  - name: compile
    command: echo compiling ${target}
    args: {target: all}
    dependencies: [fetch]
    notifies_on_failure: [report-failure]

  - name: test
    command: echo running tests
    dependencies: [compile]
    notifies_on_success: [{name: publish, args_from: self}]

  - name: publish
    command: echo publishing
    artifacts: ["dist/*"]

  - name: report-failure
    command: echo build failed

platforms:
  - name: linux
    build_command: echo building for linux
    dependencies: [compile]

groups:
  - name: release
    children: [test, linux]
"""
