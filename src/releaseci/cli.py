# cli.py
from __future__ import annotations

import subprocess
import sys
from pathlib import Path

import click

from releaseci import settings
from releaseci.artifacts import materialize
from releaseci.dag import build_dag, topo_levels
from releaseci.errors import WorkflowError
from releaseci.gate import PublishGate
from releaseci.git_facts.git import changed_since, current_ref
from releaseci.history import RunHistory
from releaseci.matrix import expand_job
from releaseci.model import ConcurrencyKey, EventKind, JobStatus, OutcomeKind, Workflow
from releaseci.orchestrator import Orchestrator, trigger_rules
from releaseci.runner import ShellTaskRunner, load_workflow
from releaseci.scheduler import aggregate_status
from releaseci.trigger import RawEvent, evaluate, is_tag_ref
from releaseci.ui.console import Console, get_console, set_console

EXIT_FAILED = 1
EXIT_CANCELLED = 2


def find_workflow_files() -> list[Path]:
    """Workflow files in the current directory: the configured default plus *_workflow.py."""
    workflow_files = []
    current_dir = Path(".")

    default_workflow = current_dir / settings.WORKFLOW_PATH
    if default_workflow.exists():
        workflow_files.append(default_workflow)

    for path in current_dir.glob("*_workflow.py"):
        if path.resolve() != default_workflow.resolve():
            workflow_files.append(path)

    return sorted(workflow_files)


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover workflow file from argument or default.

    Raises:
        SystemExit: If workflow cannot be found or multiple workflows exist
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists() and workflow_path.suffix != ".py":
            workflow_path = Path(str(workflow_path) + ".py")
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  releaseci run --workflow my_workflow.py",
            )
            sys.exit(1)
        return workflow_path

    workflow_files = find_workflow_files()

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=["Looked for:", f"  {settings.WORKFLOW_PATH}", "  *_workflow.py"],
            suggestion="Create a workflow file or specify one explicitly:\n  releaseci run --workflow my_workflow.py",
        )
        sys.exit(1)

    if len(workflow_files) > 1:
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[f"  {f}" for f in workflow_files],
            suggestion=f"Specify a workflow explicitly:\n  releaseci run --workflow {workflow_files[0]}",
        )
        sys.exit(1)

    return workflow_files[0]


def build_event(event: str | None, ref: str | None, changed: tuple[str, ...], base_ref: str | None, compare_ref: str) -> RawEvent:
    """Fill in whatever the user left out from the git checkout."""
    console = get_console()
    if not ref:
        try:
            ref = current_ref()
            console.print_debug(f"Using git ref: {ref}")
        except (subprocess.CalledProcessError, FileNotFoundError):
            console.print_error(
                "Could not determine git ref",
                "No --ref specified and the current git ref is unavailable.",
                suggestion="Please specify --ref explicitly:\n  releaseci run --ref refs/heads/main",
            )
            sys.exit(1)

    if not event:
        event = EventKind.TAGGED_PUSH.value if is_tag_ref(ref) else EventKind.PUSH.value

    kind = EventKind.parse(event)
    files = list(changed)
    if not files and kind is EventKind.PULL_REQUEST:
        try:
            files = changed_since(compare_ref)
        except FileNotFoundError:
            files = []
        console.print_debug(f"Changed files vs {compare_ref}: {len(files)}")

    return RawEvent(event_kind=kind, ref=ref, changed_files=tuple(files), base_ref=base_ref)


def event_options(fn):
    fn = click.option("--compare-ref", default="origin/main", show_default=True, help="Git ref to diff against for pull requests")(fn)
    fn = click.option("--base-ref", default=None, help="Pull request base branch")(fn)
    fn = click.option("--changed-file", "changed", multiple=True, help="Changed path (repeatable; defaults to git diff for pull requests)")(fn)
    fn = click.option("--ref", default=None, help="Git ref (defaults to the current checkout)")(fn)
    fn = click.option(
        "--event",
        type=click.Choice([k.value for k in EventKind]),
        default=None,
        help="Trigger kind (defaults to tagged-push for refs/tags/v*, else push)",
    )(fn)
    fn = click.option("--workflow", default=None, help=f"Workflow file path (defaults to {settings.WORKFLOW_PATH} if present)")(fn)
    return fn


def _load(workflow_arg: str | None) -> Workflow:
    workflow_path = discover_workflow(workflow_arg)
    wf = load_workflow(workflow_path)
    build_dag(wf.jobs)
    return wf


@click.group()
@click.option("--debug", is_flag=True, default=False, help="Enable debug mode (show stack traces and detailed output)")
@click.option("--quiet", is_flag=True, default=False, help="Only print the plan/results, not per-job progress")
@click.pass_context
def cli(ctx, debug, quiet):
    """releaseci: trigger-aware release orchestration for build/test/publish pipelines."""
    console = Console(debug=debug, quiet=quiet)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@event_options
@click.option("--workers", default=settings.MAX_WORKERS, type=int, help="Number of parallel workers")
@click.option("--secret", "secret_names", multiple=True, help="Secret to read from the environment (defaults to every secret the workflow requests)")
@click.option("--history-db", default=settings.DATABASE_URL, show_default=True, help="SQLAlchemy URL for run history")
@click.option("--no-history", is_flag=True, default=False, help="Do not record the run")
@click.option("--artifact-dir", default=None, help=f"Write the run's merged artifacts here (e.g. {settings.ARTIFACT_DIR})")
@click.pass_context
def run(ctx, workflow, event, ref, changed, base_ref, compare_ref, workers, secret_names, history_db, no_history, artifact_dir):
    """Evaluate a trigger event and run the workflow for it."""
    console = get_console()

    try:
        wf = _load(workflow)
        raw = build_event(event, ref, changed, base_ref, compare_ref)

        names = list(secret_names) or sorted({s for j in wf.jobs for s in j.secrets})
        orchestrator = Orchestrator(
            wf,
            ShellTaskRunner("."),
            secrets=settings.load_secrets(names),
            max_workers=workers,
            history=None if no_history else RunHistory(history_db),
            keep_artifacts=artifact_dir is not None,
        )
        run_ = orchestrator.submit(raw)
        outcome = orchestrator.execute(run_)

        if artifact_dir is not None:
            dest = materialize(orchestrator.store.merge(run_.run_id), artifact_dir)
            orchestrator.store.expire(run_.run_id)
            console.print_info(f"Artifacts written to {dest}")

        if outcome.kind is OutcomeKind.FAILED:
            sys.exit(EXIT_FAILED)
        if outcome.kind is OutcomeKind.CANCELLED:
            sys.exit(EXIT_CANCELLED)

    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except WorkflowError as e:
        console.print_error("Invalid workflow", str(e))
        sys.exit(1)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)


@cli.command()
@event_options
@click.pass_context
def plan(ctx, workflow, event, ref, changed, base_ref, compare_ref):
    """Show what a trigger event would run, without running anything."""
    console = get_console()
    try:
        wf = _load(workflow)
        raw = build_event(event, ref, changed, base_ref, compare_ref)
    except WorkflowError as e:
        console.print_error("Invalid workflow", str(e))
        sys.exit(1)

    tctx = evaluate(raw, trigger_rules(wf))
    console.print_header(f"PLAN: {wf.name}")
    console.print_info(f"Ref: {tctx.ref}")
    console.print_info(f"Event: {tctx.event_kind.value}")
    console.print_info(f"Release tag: {'yes' if tctx.is_tag_ref else 'no'}")
    console.print_info(f"Concurrency group: {ConcurrencyKey.for_context(wf.name, tctx)}")

    if not tctx.active:
        console.print_noop(tctx.reason)
        return

    adj, indeg = build_dag(wf.jobs)
    gate = PublishGate()
    # optimistic: every upstream job is assumed to succeed
    assumed = {j.name: JobStatus.SUCCEEDED for j in wf.jobs}
    for idx, level in enumerate(topo_levels(adj, indeg), start=1):
        console.print_plan_stage(idx, level)
        for name in level:
            spec = wf.job(name)
            deps = {d: assumed[d] for d in spec.needs}
            blocked = sorted(d for d, s in deps.items() if s is not JobStatus.SUCCEEDED)
            if spec.publish:
                decision = gate.authorize(tctx, aggregate_status(deps.values()))
                verdict = None if decision.allowed else f"publish denied: {decision.reason}"
            elif blocked and not spec.tolerate_upstream_failure:
                verdict = f"needs {', '.join(blocked)}"
            elif spec.condition is not None and not spec.condition(tctx, assumed):
                verdict = f"condition {spec.condition.description} is false"
            else:
                verdict = None
            if verdict is not None:
                assumed[name] = JobStatus.SKIPPED
            for inst in expand_job(spec):
                tag = f", platform={inst.platform_tag}" if inst.platform_tag else ""
                if verdict is None:
                    console.print_plan_job(inst.label, f"runs{tag}")
                else:
                    console.print_plan_job_skipped(inst.label, verdict)


@cli.command()
@click.option("--history-db", default=settings.DATABASE_URL, show_default=True, help="SQLAlchemy URL for run history")
@click.option("--key", default=None, help="Only runs of this concurrency group")
@click.option("--limit", default=20, show_default=True, type=int)
def history(history_db, key, limit):
    """List recorded runs."""
    console = get_console()
    runs = RunHistory(history_db).list_runs(concurrency_key=key, limit=limit)
    if not runs:
        console.print_info("No runs recorded.")
        return
    for r in runs:
        console.print_info(f"{r['run_id'][:12]}  {r['created_at']}  {r['concurrency_key']}  {r['outcome']}")


if __name__ == "__main__":
    cli()
