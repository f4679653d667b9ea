# cli.py
from __future__ import annotations

import logging
import sys
import threading
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import click

from .config import EngineConfig
from .controller import RunController
from .dag import JobGraph
from .errors import EXIT_CANCELLED, EXIT_CONFIG, EXIT_FAILED, ConfigurationError
from .loader import load_workflow
from .matrix import EmptyAxisPolicy
from .model import RunContext, RunResult, Workflow
from .ui.console import Console, ConsoleObserver, get_console, set_console

DEFAULT_WORKFLOW = "dagrun_workflow.py"
DEFAULT_YAML = "dagrun.yml"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


def find_workflow_files(root: str | Path = ".") -> list[Path]:
    """Workflow files that `dagrun` picks up without --workflow, sorted."""
    root = Path(root)
    found = {p for p in root.glob("*_workflow.py")}
    for name in (DEFAULT_WORKFLOW, DEFAULT_YAML):
        if (root / name).exists():
            found.add(root / name)
    return sorted(found)


def _config_exit(title: str, message: str, **extra) -> None:
    get_console().print_error(title, message, **extra)
    sys.exit(EXIT_CONFIG)


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Resolve the workflow to load: the --workflow argument (".py" may be
    left off), else the only workflow file in the current directory.
    Exits with EXIT_CONFIG when that is not possible.
    """
    usage = f"dagrun run --workflow {DEFAULT_WORKFLOW}"

    if workflow_arg:
        candidates = [Path(workflow_arg)]
        if not candidates[0].suffix:
            candidates.append(Path(workflow_arg + ".py"))
        for path in candidates:
            if path.exists():
                return path
        _config_exit("Workflow file not found", f"No such file: {workflow_arg}",
                     suggestion=f"Pass an existing file, e.g.\n  {usage}")

    found = find_workflow_files()
    if not found:
        _config_exit(
            "No workflow file found",
            "Nothing to run in the current directory.",
            details=["Searched for:", f"  {DEFAULT_WORKFLOW}", "  *_workflow.py", f"  {DEFAULT_YAML}"],
            suggestion=f"Create {DEFAULT_WORKFLOW} or point at a file:\n  {usage}",
        )
    if len(found) > 1:
        _config_exit(
            "Multiple workflow files found",
            "Pick one with --workflow:",
            details=[str(p) for p in found],
            suggestion=f"For example:\n  {usage}",
        )
    return found[0]


def parse_inputs(pairs: Tuple[str, ...]) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected key=value, got {pair!r}", param_hint="--input")
        out[key.strip()] = value
    return out


def _load(workflow_arg: Optional[str], config: EngineConfig) -> Tuple[Path, Workflow, JobGraph]:
    """Load and validate; configuration problems exit with EXIT_CONFIG."""
    console = get_console()
    workflow_path = discover_workflow(workflow_arg)
    try:
        workflow = load_workflow(workflow_path)
        graph = JobGraph.build(workflow.jobs, empty_matrix=config.empty_matrix)
    except ConfigurationError as e:
        console.print_error("Invalid workflow", f"{workflow_path}: {e}")
        sys.exit(EXIT_CONFIG)
    return workflow_path, workflow, graph


def _engine_config(ctx, **overrides) -> EngineConfig:
    try:
        return EngineConfig.from_env().merged(**overrides)
    except ConfigurationError as e:
        get_console().print_error("Invalid configuration", str(e))
        ctx.exit(EXIT_CONFIG)


def _execute(controller: RunController, workflow: Workflow, context: RunContext) -> RunResult:
    """Run on a helper thread so Ctrl-C can cancel the run cleanly."""
    box: dict = {}

    def target() -> None:
        try:
            box["result"] = controller.execute(workflow, context)
        except BaseException as e:  # re-raised on the calling thread
            box["error"] = e

    t = threading.Thread(target=target, name="dagrun-run", daemon=True)
    t.start()
    try:
        while t.is_alive():
            t.join(0.2)
    except KeyboardInterrupt:
        get_console().print_info("\nInterrupted, cancelling run...")
        controller.abort("interrupted by user")
        t.join()
    if "error" in box:
        raise box["error"]
    return box["result"]


# ----------------------------------------------------------------------
# Shared options
# ----------------------------------------------------------------------

def context_options(fn):
    decorators = [
        click.option("--workflow", default=None, help=f"Workflow file (defaults to {DEFAULT_WORKFLOW} if present)"),
        click.option("--event", default="push", envvar="DAGRUN_EVENT", show_default=True, help="Triggering event kind"),
        click.option("--ref", default="", envvar="DAGRUN_REF", help="Git ref, e.g. refs/heads/main"),
        click.option("--sha", default="", envvar="DAGRUN_SHA", help="Commit SHA"),
        click.option("--actor", default="", envvar="DAGRUN_ACTOR", help="Who triggered the run"),
        click.option("--pr-title", default=None, help="Pull request title"),
        click.option("--pr-label", "pr_labels", multiple=True, help="Pull request label (repeatable)"),
        click.option("--input", "inputs", multiple=True, help="Manual input key=value (repeatable)"),
        click.option(
            "--empty-matrix",
            type=click.Choice([p.value for p in EmptyAxisPolicy]),
            default=None,
            help="What to do with a matrix axis that has no values",
        ),
    ]
    for d in reversed(decorators):
        fn = d(fn)
    return fn


def _context(event, ref, sha, actor, pr_title, pr_labels, inputs) -> RunContext:
    return RunContext(
        event=event,
        ref=ref,
        sha=sha,
        actor=actor,
        pr_title=pr_title,
        pr_labels=tuple(pr_labels),
        inputs=parse_inputs(inputs),
    )


# ----------------------------------------------------------------------
# Commands
# ----------------------------------------------------------------------

@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    envvar="DAGRUN_LOG_LEVEL",
    default=None,
    help="Engine log level (WARNING by default, DEBUG with --debug)",
)
@click.pass_context
def cli(ctx, debug, log_level):
    """dagrun: run a workflow of dependent jobs with conditions, matrices and artifacts."""
    console = Console(debug=debug)
    set_console(console)
    level = (log_level or ("DEBUG" if debug else "WARNING")).upper()
    logging.basicConfig(
        level=getattr(logging, level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@context_options
@click.option("--workers", default=None, type=click.IntRange(min=1), help="Number of parallel job instances")
@click.option("--timeout", "job_timeout", default=None, type=float, help="Default per-job timeout in seconds")
@click.option("--artifact-dir", default=None, help="Directory for the file artifact store")
@click.option("--redis-url", default=None, help="Store artifacts in redis instead of files")
@click.option("--cache-dir", default=None, help="Directory for job caches (kept between runs)")
@click.option("--fail-fast/--no-fail-fast", default=None, help="Stop admitting jobs after the first failure")
@click.pass_context
def run(ctx, workflow, event, ref, sha, actor, pr_title, pr_labels, inputs, empty_matrix,
        workers, job_timeout, artifact_dir, redis_url, cache_dir, fail_fast):
    """Run a workflow."""
    console = get_console()
    config = _engine_config(
        ctx,
        max_workers=workers,
        job_timeout=job_timeout,
        artifact_dir=artifact_dir,
        redis_url=redis_url,
        cache_dir=cache_dir,
        stop_on_failure=fail_fast,
        empty_matrix=empty_matrix,
    )
    workflow_path, wf, graph = _load(workflow, config)
    context = _context(event, ref, sha, actor, pr_title, pr_labels, inputs)

    try:
        controller = RunController(config, observers=[ConsoleObserver(console)])
        console.print_run_started(
            workflow=f"{wf.name} ({workflow_path.name})",
            run_id=context.run_id,
            event=context.event,
            ref=context.ref,
            job_count=len(graph.jobs),
        )
        result = _execute(controller, wf, context)
    except ConfigurationError as e:
        console.print_error("Invalid configuration", str(e))
        sys.exit(EXIT_CONFIG)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(EXIT_CANCELLED)
    except Exception as e:
        console.print_exception(e)
        sys.exit(EXIT_FAILED)

    console.print_warnings(result.warnings)
    console.print_results(result)
    sys.exit(result.exit_code)


@cli.command()
@context_options
@click.pass_context
def plan(ctx, workflow, event, ref, sha, actor, pr_title, pr_labels, inputs, empty_matrix):
    """Show the batches and the job instances a run would create."""
    console = get_console()
    config = _engine_config(ctx, empty_matrix=empty_matrix)
    _path, wf, graph = _load(workflow, config)
    context = _context(event, ref, sha, actor, pr_title, pr_labels, inputs)

    if not wf.is_triggered_by(context):
        console.print_info(f"Workflow '{wf.name}' is not triggered by {context.event} {context.ref}".rstrip())
        return

    instances: Dict[str, List[str]] = {}
    skipped = set()
    for job in graph.order():
        exp = graph.instances_for(job, context)
        upstream = next((d for d in graph.dependencies(job) if d in skipped), None)
        if exp.activated is None:
            instances[job] = [f"{i.id} (decided at runtime)" for i in exp.instances]
        elif upstream is not None:
            skipped.add(job)
            instances[job] = [f"{job} (skipped: dependency '{upstream}' skipped)"]
        elif exp.activated is False:
            skipped.add(job)
            instances[job] = [f"{job} (skipped: condition false)"]
        else:
            instances[job] = [i.id for i in exp.instances]
    console.print_plan(graph.batches(), instances)
    console.print_warnings(graph.warnings)


@cli.command()
@click.option("--workflow", default=None, help=f"Workflow file (defaults to {DEFAULT_WORKFLOW} if present)")
@click.option(
    "--empty-matrix",
    type=click.Choice([p.value for p in EmptyAxisPolicy]),
    default=None,
    help="What to do with a matrix axis that has no values",
)
@click.pass_context
def validate(ctx, workflow, empty_matrix):
    """Check a workflow without running anything."""
    console = get_console()
    config = _engine_config(ctx, empty_matrix=empty_matrix)
    workflow_path, wf, graph = _load(workflow, config)
    console.print_info(
        f"OK: {workflow_path.name} defines '{wf.name}' with {len(graph.jobs)} job(s) in {len(graph.levels)} batch(es)"
    )
    console.print_warnings(graph.warnings)


if __name__ == "__main__":
    cli()
