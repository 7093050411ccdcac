# cli.py
from __future__ import annotations

import logging
import sys

import click

from graphbuild.artifacts import ArtifactStore
from graphbuild.config import DEFAULT_CONFIG, SAMPLE_CONFIG, load_config, load_graph
from graphbuild.engine import EngineHooks, ExecutionEngine, UpstreamPolicy
from graphbuild.errors import ConfigError, GraphError
from graphbuild.executor import CommandExecutor, Verbosity
from graphbuild.session import create_session
from graphbuild.status import Status, Transition
from graphbuild.ui.console import Console, get_console, set_console


def _split_csv(values: tuple[str, ...]) -> list[str]:
    out: list[str] = []
    for v in values:
        out.extend(p.strip() for p in v.split(",") if p.strip())
    return out


def _load(config_path: str | None, targets: list[str]):
    """Load config + graph, turning problems into clean CLI errors."""
    console = get_console()
    try:
        config = load_config(config_path)
        registry = load_graph(config, targets)
    except ConfigError as e:
        console.print_error(
            "Invalid configuration",
            e.message,
            details=[f"{k}: {v}" for k, v in e.details.items()] + ([f"config: {e.source}"] if e.source else []),
            suggestion=(
                f"Create {DEFAULT_CONFIG} or pass --config PATH.\n  graphbuild sample-config > {DEFAULT_CONFIG}"
                if "not found" in e.message else None
            ),
        )
        sys.exit(1)
    except GraphError as e:
        console.print_error("Invalid build graph", str(e))
        sys.exit(1)
    return config, registry


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """graphbuild: dependency-graph build orchestrator."""
    console = Console(debug=debug)
    set_console(console)
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--config", "config_path", default=None, help=f"Graph file (defaults to {DEFAULT_CONFIG})")
@click.option("--target", "targets", multiple=True, help="Node to build (repeatable; default: all)")
@click.option("--dry-run", is_flag=True, default=False, help="Print commands instead of running them")
@click.option("--validate", is_flag=True, default=False, help="Check the graph only; run nothing")
@click.option("--simulate-failure", "simulate", multiple=True, help="Force nodes to fail (comma separated)")
@click.option("--quiet", "verbosity", flag_value="quiet", help="Only print failures and results")
@click.option("--verbose", "verbosity", flag_value="verbose", help="Stream command output")
@click.option("--workers", default=None, type=click.IntRange(min=1), help="Number of parallel workers")
@click.option("--log-dir", default=None, help="Root directory for build session logs")
@click.option("--artifact-dir", default=None, help="Artifact store directory")
@click.option("--no-artifacts", is_flag=True, default=False, help="Do not collect artifacts")
@click.option(
    "--upstream-policy",
    type=click.Choice([p.value for p in UpstreamPolicy]),
    default=None,
    help="When continue_on_error nodes start after upstream failures",
)
@click.pass_context
def run(ctx, config_path, targets, dry_run, validate, simulate, verbosity, workers,
        log_dir, artifact_dir, no_artifacts, upstream_policy):
    """Build the selected targets."""
    console = get_console()
    target_list = _split_csv(targets)
    config, registry = _load(config_path, target_list)
    settings = config.settings

    level = Verbosity.parse(verbosity or settings.verbosity)
    if ctx.obj.get("debug", False):
        level = Verbosity.DEBUG
    console.quiet = level is Verbosity.QUIET

    try:
        session = create_session(log_dir or settings.log_dir)
        mode = "validate" if validate else ("dry-run" if dry_run else "normal")
        console.print_run_started(
            config=config.source.name,
            targets=target_list,
            node_count=len(registry),
            mode=mode,
            session_dir=str(session.directory),
        )

        executor = CommandExecutor(
            level,
            console=console,
            session_dir=session.directory,
            base_dir=config.base_dir,
            timeout=settings.command_timeout,
        )
        engine: ExecutionEngine

        def on_transition(t: Transition) -> None:
            if t.new is Status.FAILED and t.node in engine.command_results:
                res = engine.command_results[t.node]
                console.print_failure(t.node.label, t.reason or "failed",
                                      exit_code=res.exit_code, output_tail=res.output_tail)
                return
            console.print_transition(t)

        engine = ExecutionEngine(
            registry,
            executor,
            dry_run=dry_run,
            validate=validate,
            simulate_failure=_split_csv(simulate),
            max_workers=workers or settings.max_parallel,
            session_dir=session.directory,
            session_id=session.session_id,
            hooks=EngineHooks(on_transition=on_transition, on_would_run=executor.record_planned),
            upstream_policy=UpstreamPolicy(upstream_policy or settings.upstream_policy),
        )
        result = engine.execute()

        if result.stalled:
            console.print_stall(result.diagnostics)
        console.print_results({n.label: s.value for n, s in result.statuses.items()})

        if result.success and mode == "normal" and not no_artifacts:
            store = ArtifactStore(artifact_dir or settings.artifact_dir)
            for rec in store.collect_all(
                result.execution_order,
                result.statuses,
                session.session_id,
                base_dir=config.base_dir,
                keep=settings.artifact_keep,
            ):
                console.print_artifacts_saved(rec.node, str(rec.archive), len(rec.files))

        if not result.success:
            sys.exit(1)

    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except GraphError as e:
        console.print_error("Build aborted", str(e))
        if ctx.obj.get("debug", False):
            console.print_exception(e)
        sys.exit(1)
    except OSError as e:
        console.print_exception(e)
        sys.exit(1)


@cli.command()
@click.option("--config", "config_path", default=None, help=f"Graph file (defaults to {DEFAULT_CONFIG})")
def targets(config_path):
    """List the tasks and groups a graph file defines."""
    console = get_console()
    config, _registry = _load(config_path, [])
    console.print_header(f"Targets in {config.source.name}")
    for spec in config.specs.values():
        kind = "platform" if spec.section == "platforms" else spec.type.value
        console.print_target(spec.name, kind, spec.description)


@cli.command()
@click.option("--config", "config_path", default=None, help=f"Graph file (defaults to {DEFAULT_CONFIG})")
@click.option("--target", "targets", multiple=True, help="Node to plan (repeatable; default: all)")
def plan(config_path, targets):
    """Print the build graph without running anything."""
    console = get_console()
    _config, registry = _load(config_path, _split_csv(targets))
    registry.process_notifications()
    console.print_header(f"Build plan ({len(registry)} nodes)")
    for node in registry.nodes():
        console.print_plan_node(node)
    for node, declared, kind in registry.unresolved_notifications:
        console.print_info(f"  unresolved {kind.value}: {node.label} -> {getattr(declared, 'name', declared)}")


@cli.command(name="sample-config")
def sample_config():
    """Print a sample YAML graph file."""
    click.echo(SAMPLE_CONFIG, nl=False)


if __name__ == "__main__":
    cli()
