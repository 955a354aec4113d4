# cli.py
from __future__ import annotations

import json
import os
import socket
import sys
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

import click
import yaml

from triggerci import events
from triggerci.actions import default_registry
from triggerci.artifacts import ArtifactStore
from triggerci.config import Settings
from triggerci.dag import build_graph
from triggerci.engine import Engine
from triggerci.errors import TriggerciError, WorkflowLoadError
from triggerci.loader import discover_workflows, load_workflows
from triggerci.logs import configure_logging, get_masker
from triggerci.model import Event, Run, RunStatus, WorkflowDefinition
from triggerci.runners import LocalRunner, RunnerPool
from triggerci.triggers import describe
from triggerci.ui.console import Console, get_console, set_console

SECRET_ENV_PREFIX = "TRIGGERCI_SECRET_"


# ---------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------

def _pairs(values: tuple, what: str) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for item in values:
        if "=" not in item:
            raise click.BadParameter(f"expected NAME=VALUE, got {item!r}", param_hint=what)
        k, v = item.split("=", 1)
        out[k.strip()] = v
    return out


def collect_secrets(pairs: tuple, secrets_file: Optional[str], environ=None) -> Dict[str, str]:
    """
    Secrets come from TRIGGERCI_SECRET_<NAME> variables, then a YAML/JSON
    mapping file, then --secret NAME=VALUE (later wins).
    """
    env = os.environ if environ is None else environ
    secrets = {k[len(SECRET_ENV_PREFIX):]: v for k, v in env.items() if k.startswith(SECRET_ENV_PREFIX)}
    if secrets_file:
        data = yaml.safe_load(Path(secrets_file).read_text(encoding="utf-8")) or {}
        if not isinstance(data, dict):
            raise click.BadParameter("secrets file must hold a mapping", param_hint="--secrets-file")
        secrets.update({str(k): str(v) for k, v in data.items()})
    secrets.update(_pairs(pairs, "--secret"))
    return secrets


def find_workflow_files(root: Path = Path(".")) -> List[Path]:
    return discover_workflows(root)


def resolve_workflows(paths: tuple) -> List[WorkflowDefinition]:
    console = get_console()
    files = [Path(p) for p in paths] if paths else find_workflow_files()
    if not files:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=[
                "Looked for:",
                "  .triggerci/workflows/*.yml",
                "  .github/workflows/*.yml",
                "  *_workflow.py",
            ],
            suggestion="Create a workflow file or specify one explicitly:\n  triggerci run push --workflow my_workflow.py",
        )
        sys.exit(1)
    try:
        return load_workflows(files)
    except WorkflowLoadError as e:
        console.print_error("Failed to load workflow", str(e))
        sys.exit(1)


def make_runner_pool(workspace: Path, labels, artifacts_dir: str) -> RunnerPool:
    artifacts = Path(artifacts_dir)
    if not artifacts.is_absolute():
        artifacts = workspace / artifacts
    store = ArtifactStore(artifacts)
    return RunnerPool([LocalRunner(workspace, labels=labels, actions=default_registry(), artifacts=store)])


def _engine(ctx: click.Context, workflows: List[WorkflowDefinition]) -> Engine:
    obj = ctx.obj
    settings: Settings = obj["settings"]
    workspace = Path(obj["workspace"]).resolve()
    return Engine(
        workflows,
        make_runner_pool(workspace, obj["labels"] or settings.runner_labels, settings.artifacts_dir),
        secrets=obj["secrets"],
        max_parallel=obj["max_parallel"] or settings.max_parallel,
        repository=obj["repository"],
        reporter=get_console(),
    )


def _handle(ctx: click.Context, event: Event, runs_for) -> None:
    """Run `runs_for(engine)` and turn the runs into console output + exit code."""
    console = get_console()
    engine = _engine(ctx, resolve_workflows(ctx.obj["workflows"]))
    try:
        runs: List[Run] = runs_for(engine)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except TriggerciError as e:
        console.print_exception(e)
        sys.exit(1)

    if not runs:
        console.print_info(f"No workflow matched the {event.name} event.")
        return
    for run in runs:
        console.print_results(run)
    if any(run.status is not RunStatus.SUCCESS for run in runs):
        sys.exit(1)


def _announcing(event: Event):
    def runs_for(engine: Engine) -> List[Run]:
        console = get_console()
        matched = engine.matching(event)
        runs = []
        for wf, spec in matched:
            run = engine.prepare(wf, event)
            console.print_run_started(workflow=wf.name, event=event.name, job_count=len(wf.jobs), run_id=run.id)
            runs.append(engine.execute(run, trigger=spec))
        return runs
    return runs_for


# ---------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------

@click.group()
@click.option("--debug", is_flag=True, default=False, help="Enable debug mode (show stack traces and detailed output)")
@click.option("--workflow", "workflows", multiple=True, help="Workflow file (repeatable; default: discover)")
@click.option("--workspace", default=".", show_default=True, help="Directory steps run in")
@click.option("--secret", "secret_pairs", multiple=True, help="Secret NAME=VALUE (repeatable)")
@click.option("--secrets-file", default=None, help="YAML/JSON mapping of secrets")
@click.option("--max-parallel", default=None, type=int, help="Maximum jobs running at once")
@click.option("--label", "labels", multiple=True, help="Local runner label (repeatable)")
@click.option("--repository", default=None, help="owner/name, when the event payload does not say")
@click.pass_context
def cli(ctx, debug, workflows, workspace, secret_pairs, secrets_file, max_parallel, labels, repository):
    """triggerci: event-triggered workflow runner."""
    settings = Settings.from_env()
    secrets = collect_secrets(secret_pairs, secrets_file)
    configure_logging("DEBUG" if debug else settings.log_level, secrets.values())
    set_console(Console(debug=debug, masker=get_masker()))

    ctx.ensure_object(dict)
    ctx.obj.update(
        debug=debug,
        settings=settings,
        workflows=workflows,
        workspace=workspace,
        secrets=secrets,
        max_parallel=max_parallel,
        labels=frozenset(labels),
        repository=repository,
    )


@cli.command()
@click.argument("event_name")
@click.option("--payload", "payload_file", default=None, help="JSON file with the event payload ('-' for stdin)")
@click.pass_context
def run(ctx, event_name, payload_file):
    """Deliver an event (issues, push, pull_request, ...) to the workflows."""
    payload = {}
    if payload_file:
        text = sys.stdin.read() if payload_file == "-" else Path(payload_file).read_text(encoding="utf-8")
        try:
            payload = json.loads(text or "{}")
        except json.JSONDecodeError as e:
            raise click.BadParameter(f"invalid JSON: {e}", param_hint="--payload")
    event = events.normalize(event_name, payload)
    _handle(ctx, event, _announcing(event))


@cli.command()
@click.argument("workflow_name")
@click.option("--input", "inputs", multiple=True, help="Input NAME=VALUE (repeatable)")
@click.option("--ref", default="refs/heads/main", show_default=True)
@click.pass_context
def dispatch(ctx, workflow_name, inputs, ref):
    """Manually dispatch one workflow."""
    event = events.dispatch(workflow_name, ref=ref, inputs=_pairs(inputs, "--input"))
    _handle(ctx, event, _announcing(event))


@cli.command()
@click.option("--compare-ref", default="origin/main", show_default=True, help="Git ref to diff against")
@click.pass_context
def push(ctx, compare_ref):
    """Deliver a push event describing the local checkout."""
    console = get_console()
    try:
        event = events.push_from_git(ctx.obj["workspace"], compare_ref=compare_ref)
    except Exception as e:
        console.print_error("Could not read git state", str(e), suggestion="Run inside a git checkout.")
        sys.exit(1)
    console.print_debug(f"push ref={event.payload.get('ref')} changed={list(event.payload.get('changed_files', ()))}")
    _handle(ctx, event, _announcing(event))


@cli.command()
@click.option("--at", "at", default=None, help="ISO timestamp of the tick (default: now)")
@click.pass_context
def tick(ctx, at):
    """Deliver one schedule tick."""
    moment = datetime.fromisoformat(at) if at else None
    event = events.schedule_tick(moment)
    _handle(ctx, event, _announcing(event))


@cli.command()
@click.pass_context
def validate(ctx):
    """Load workflows and check their job graphs without running anything."""
    console = get_console()
    failed = False
    for wf in resolve_workflows(ctx.obj["workflows"]):
        try:
            graph = build_graph(wf)
        except TriggerciError as e:
            console.print_error(f"Invalid workflow {wf.name!r}", str(e))
            failed = True
            continue
        console.print_plan(wf.name, graph.stages(), sorted(describe(t) for t in wf.triggers))
    if failed:
        sys.exit(1)


@cli.command()
@click.option("--api", required=True, help="API base URL (e.g., http://localhost:8000)")
@click.option("--agent-id", default=None, help="Unique agent identifier (defaults to hostname)")
@click.option("--poll-interval", default=5, type=int, help="Polling interval in seconds when no runs are queued")
@click.pass_context
def agent(ctx, api, agent_id, poll_interval):
    """Run the agent loop: lease queued runs from the control plane and execute them."""
    from triggerci.agent.agent import Agent

    console = get_console()
    settings: Settings = ctx.obj["settings"]
    labels = ctx.obj["labels"] or settings.runner_labels

    worker = Agent(
        api,
        agent_id or socket.gethostname(),
        lambda workspace: make_runner_pool(workspace, labels, settings.artifacts_dir),
        poll_interval,
        secrets=ctx.obj["secrets"],
        max_parallel=ctx.obj["max_parallel"] or settings.max_parallel,
    )
    worker.install_signal_handlers()
    try:
        worker.run()
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)


@cli.command()
@click.option("--host", default="127.0.0.1", show_default=True, help="Interface to bind")
@click.option("--port", default=8000, type=int, show_default=True, help="Port to listen on")
@click.option("--workflows-dir", default=None, help="Repository checked for workflows (sets WORKFLOWS_DIR)")
@click.pass_context
def serve(ctx, host, port, workflows_dir):
    """Serve the control plane API (install the `server` extra)."""
    try:
        import uvicorn
    except ImportError:
        get_console().print_error(
            "Server dependencies missing",
            "uvicorn is not installed.",
            suggestion="pip install 'triggerci[server]'",
        )
        sys.exit(2)

    # server settings are read from the environment when the app is imported
    if workflows_dir:
        os.environ["WORKFLOWS_DIR"] = str(Path(workflows_dir).resolve())
    uvicorn.run(
        "triggerci.server.app:app",
        host=host,
        port=port,
        log_level="debug" if ctx.obj["debug"] else "info",
    )


if __name__ == "__main__":
    cli()
