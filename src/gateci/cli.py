# cli.py
from __future__ import annotations

import os
import signal
import sys
import threading
from pathlib import Path

import click

from .adapters import default_registry
from .artifacts import ArtifactStore
from .dag import JobGraph
from .definition import Pipeline, load_definition
from .engine import PipelineEngine
from .errors import DefinitionError, GateCIError
from .git import source_facts
from .report import EXIT_DEFINITION, EXIT_FAILED, exit_code, write_report
from .secret_store import SecretStore
from .settings import EngineSettings
from .ui.console import Console, get_console, set_console

DEFAULT_WORKFLOWS = ("gateci.yml", "gateci.yaml", "gateci_workflow.py")


def find_workflow_files(root: Path = Path(".")) -> list[Path]:
    """
    Find all pipeline definitions in a directory.

    Returns:
        List of Path objects for pipeline files
    """
    found = [root / name for name in DEFAULT_WORKFLOWS if (root / name).exists()]
    for pattern in ("*_pipeline.yml", "*_pipeline.yaml"):
        for path in root.glob(pattern):
            if path not in found:
                found.append(path)
    return sorted(found)


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover pipeline file from argument or default.

    Raises:
        SystemExit(2): If no pipeline can be found or several exist
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists():
            console.print_error(
                "Pipeline file not found",
                f"Could not find pipeline file: {workflow_arg}",
                suggestion="Create a pipeline file or specify a different path:\n  gateci run --workflow gateci.yml",
            )
            sys.exit(EXIT_DEFINITION)
        return workflow_path

    workflow_files = find_workflow_files()

    if len(workflow_files) == 0:
        console.print_error(
            "No pipeline file found",
            "Could not find any pipeline files.",
            details=[
                "Looked for:",
                *(f"  {name}" for name in DEFAULT_WORKFLOWS),
                "  *_pipeline.yml",
            ],
            suggestion="Create gateci.yml, or specify a pipeline explicitly:\n  gateci run --workflow my_pipeline.yml",
        )
        sys.exit(EXIT_DEFINITION)

    if len(workflow_files) > 1:
        file_list = "\n".join(f"  {f}" for f in workflow_files)
        console.print_error(
            "Multiple pipeline files found",
            "Found multiple pipeline files. Please specify which one to use:",
            details=[file_list],
            suggestion="Specify a pipeline explicitly:\n  gateci run --workflow gateci.yml",
        )
        sys.exit(EXIT_DEFINITION)

    return workflow_files[0]


def _load_graph(workflow: str | None) -> tuple[Pipeline, JobGraph]:
    """Load and validate a pipeline; definition errors exit with code 2."""
    console = get_console()
    path = discover_workflow(workflow)
    try:
        pipeline = load_definition(path)
        graph = JobGraph.build(pipeline.jobs, default_registry())
    except DefinitionError as e:
        console.print_error("Invalid pipeline", f"{path}: {e}")
        sys.exit(EXIT_DEFINITION)
    return pipeline, graph


def _collect_secrets(pairs: tuple[str, ...], env_names: tuple[str, ...]) -> SecretStore:
    store = SecretStore.from_env()
    for pair in pairs:
        name, sep, value = pair.partition("=")
        if not sep or not name:
            raise click.BadParameter(f"expected NAME=VALUE, got {pair!r}", param_hint="--secret")
        store.set(name, value)
    for name in env_names:
        if name not in os.environ:
            raise click.BadParameter(f"environment variable {name} is not set", param_hint="--secret-env")
        store.set(name, os.environ[name])
    return store


def _install_cancel_handlers(engine: PipelineEngine) -> dict:
    """First SIGINT/SIGTERM cancels with the grace period, a second one kills now."""
    if threading.current_thread() is not threading.main_thread():
        return {}
    hits = {"n": 0}

    def handler(signum, frame):
        hits["n"] += 1
        engine.cancel(None if hits["n"] == 1 else 0)

    previous = {}
    for sig in (signal.SIGINT, signal.SIGTERM):
        previous[sig] = signal.signal(sig, handler)
    return previous


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """gateci: parallel pipeline runner with quality gates."""
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--workflow", default=None, help="Pipeline file (defaults to gateci.yml if present)")
@click.option("--workers", default=None, type=int, help="Number of parallel workers")
@click.option("--work-dir", default=None, help="Directory for job workspaces and logs")
@click.option("--artifact-dir", default=None, help="Artifact store directory")
@click.option("--fail-fast/--no-fail-fast", default=None, help="Stop scheduling new jobs after first failure")
@click.option("--timeout", "step_timeout", default=None, type=float, help="Default step timeout in seconds")
@click.option("--grace", default=None, type=float, help="Seconds in-flight steps get after cancellation")
@click.option("--secret", "secret_pairs", multiple=True, metavar="NAME=VALUE", help="Provide a secret")
@click.option("--secret-env", "secret_envs", multiple=True, metavar="NAME", help="Read a secret from the environment")
@click.option("--source-root", default=".", show_default=True, help="Directory the checkout adapter copies from")
@click.option("--report", "report_path", default=None, type=click.Path(dir_okay=False), help="Write a JSON run report")
@click.option("--run-id", default=None, help="Explicit run id")
@click.pass_context
def run(
    ctx,
    workflow,
    workers,
    work_dir,
    artifact_dir,
    fail_fast,
    step_timeout,
    grace,
    secret_pairs,
    secret_envs,
    source_root,
    report_path,
    run_id,
):
    """Run a pipeline."""
    console = get_console()

    secrets = _collect_secrets(secret_pairs, secret_envs)
    console.set_redactor(secrets.redact)

    pipeline, graph = _load_graph(workflow)

    settings = EngineSettings.from_env().override(
        work_dir=work_dir,
        artifact_dir=artifact_dir,
        max_workers=workers,
        fail_fast=fail_fast,
        step_timeout=step_timeout,
        cancel_grace=grace,
    )

    try:
        store = ArtifactStore(settings.artifact_dir)
        engine = PipelineEngine(
            graph,
            pipeline=pipeline.name,
            settings=settings,
            secrets=secrets,
            store=store,
            source_root=source_root,
        )
        previous = _install_cancel_handlers(engine)
        try:
            result = engine.run(run_id=run_id)
        finally:
            for sig, h in previous.items():
                if h is not None:
                    signal.signal(sig, h)

        if report_path:
            path = write_report(result, report_path, source=source_facts(source_root))
            console.print_info(f"Report: {path}")

        released = store.prune(settings.keep_runs)
        if released:
            console.print_debug(f"Released artifacts of {len(released)} old run(s)")
    except GateCIError as e:
        console.print_exception(e)
        sys.exit(EXIT_FAILED)

    sys.exit(exit_code(result))


@cli.command()
@click.option("--workflow", default=None, help="Pipeline file (defaults to gateci.yml if present)")
def validate(workflow):
    """Check a pipeline definition without running it."""
    pipeline, graph = _load_graph(workflow)
    waves = graph.topological_batches()
    get_console().print_info(f"OK: {pipeline.name} ({len(graph)} jobs, {len(waves)} waves)")


@cli.command()
@click.option("--workflow", default=None, help="Pipeline file (defaults to gateci.yml if present)")
def plan(workflow):
    """Print the execution waves of a pipeline."""
    console = get_console()
    pipeline, graph = _load_graph(workflow)
    console.print_header(f"Plan: {pipeline.name}")
    for idx, wave in enumerate(graph.topological_batches()):
        console.print_plan_wave(idx, wave)
    for job in graph:
        gates = [s.name for s in job.gate_steps]
        if gates:
            console.print_info(f"  gate in {job.name}: {', '.join(gates)}")


@cli.group()
@click.option("--artifact-dir", default=None, help="Artifact store directory")
@click.pass_context
def artifacts(ctx, artifact_dir):
    """Inspect and prune the artifact store."""
    settings = EngineSettings.from_env().override(artifact_dir=artifact_dir)
    ctx.obj["store"] = ArtifactStore(settings.artifact_dir)
    ctx.obj["settings"] = settings


@artifacts.command("list")
@click.option("--run-id", default=None, help="Only show this run")
@click.pass_context
def artifacts_list(ctx, run_id):
    """List retained runs and their artifacts."""
    console = get_console()
    store: ArtifactStore = ctx.obj["store"]
    runs = [r for r, _ in store.runs() if run_id is None or r == run_id]
    if not runs:
        console.print_info("No retained runs.")
        return
    for rid in runs:
        console.print_info(rid)
        for ref in store.refs(rid):
            console.print_info(f"  {ref.job_id}/{ref.name}  {ref.kind}  {ref.size}B  {ref.digest[:12]}")


@artifacts.command("prune")
@click.option("--keep", default=None, type=int, help="Number of newest runs to keep")
@click.pass_context
def artifacts_prune(ctx, keep):
    """Release old runs and delete blobs nothing references anymore."""
    store: ArtifactStore = ctx.obj["store"]
    keep = ctx.obj["settings"].keep_runs if keep is None else keep
    released = store.prune(keep)
    get_console().print_info(f"Released {len(released)} run(s), kept {keep}.")


if __name__ == "__main__":
    cli()
