from __future__ import annotations

import asyncio
import json
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from pfm.backends import (
    BackendError,
    BackendSelector,
    DirectBackend,
    LaunchBackend,
    ProbePolicy,
    TmuxBackend,
)
from pfm.checks import VerificationRunner
from pfm.completion import is_complete, latest_handoff
from pfm.config import PfmConfig, config_path, load_config
from pfm.gates import GATE_ORDER, Role, active_gate, gate_to_role
from pfm.launcher import AgentLauncher
from pfm.orchestrator import Orchestrator, RunSummary
from pfm.state import PfmStateError, RunLog, StateStore
from pfm.workitems import create_work_item, init_project, list_work_items

QUIET_EVENTS = frozenset({"check_start", "backend_probe_failed"})
EXIT_NEEDS_ATTENTION = 2


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config: PfmConfig
    store: StateStore
    launcher: AgentLauncher
    runner: VerificationRunner
    orchestrator: Orchestrator


def find_repo_root(start: Path) -> Path:
    start = start.resolve()
    for candidate in (start, *start.parents):
        if (candidate / ".pfm").is_dir():
            return candidate
    for candidate in (start, *start.parents):
        if (candidate / ".git").exists():
            return candidate
    return start


def _build_backends(config: PfmConfig) -> list[LaunchBackend]:
    available: dict[str, LaunchBackend] = {
        "tmux": TmuxBackend(agent_binary=config.agent.binary),
        "direct": DirectBackend(agent_binary=config.agent.binary),
    }
    backends: list[LaunchBackend] = []
    for name in config.agent.backend_order:
        if name not in available:
            raise click.ClickException(f"Unknown backend in agent.backend_order: {name}")
        backends.append(available[name])
    return backends


def _format_event(event: dict[str, Any]) -> str:
    name = event.get("event", "event")
    details = " ".join(f"{key}={value}" for key, value in event.items() if key != "event")
    return f"[pfm] {name} {details}".rstrip()


def _event_hook(store: StateStore, work_id: str | None):
    def _hook(event: dict[str, Any]) -> None:
        if work_id is not None and store.exists(work_id):
            RunLog(store.runlog_path(work_id)).record_event(event)
        if event.get("event") not in QUIET_EVENTS:
            click.echo(_format_event(event))

    return _hook


def _load_runtime(repo_root: Path, work_id: str | None = None) -> Runtime:
    try:
        config = load_config(config_path(repo_root))
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc
    store = StateStore(repo_root)
    hook = _event_hook(store, work_id)
    selector = BackendSelector(
        _build_backends(config),
        probe_policy=ProbePolicy(
            max_retries=max(0, int(config.agent.probe_retries)),
            backoff_seconds=max(0.0, float(config.agent.probe_backoff_seconds)),
        ),
        event_hook=hook,
    )
    launcher = AgentLauncher(
        store,
        selector,
        session_prefix=config.agent.session_prefix,
        event_hook=hook,
    )
    runner = VerificationRunner(store, event_hook=hook)
    orchestrator = Orchestrator(
        store,
        launcher,
        runner,
        config.orchestration,
        event_hook=hook,
    )
    return Runtime(
        repo_root=repo_root,
        config=config,
        store=store,
        launcher=launcher,
        runner=runner,
        orchestrator=orchestrator,
    )


def _require_work_item(runtime: Runtime, work_id: str) -> None:
    try:
        runtime.store.load(work_id)
    except PfmStateError as exc:
        raise click.ClickException(str(exc)) from exc


async def _run_cancellable(runtime: Runtime, work_id: str, **kwargs: Any) -> RunSummary:
    cancel = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, cancel.set)
    except (NotImplementedError, RuntimeError):
        pass
    try:
        return await runtime.orchestrator.run(work_id, cancel=cancel, **kwargs)
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass


@click.group()
def cli() -> None:
    """pfm: drive a work item through the gated delivery pipeline."""


@cli.command("init")
def init_command() -> None:
    repo_root = find_repo_root(Path.cwd())
    report = init_project(repo_root)
    for path in report.created:
        click.echo(f"  created {path}")
    for path in report.existing:
        click.echo(f"  exists  {path}")
    click.echo(f"Initialized pfm in {repo_root / '.pfm'}")


@cli.group("work")
def work_group() -> None:
    """Create and list work items."""


@work_group.command("new")
@click.argument("title")
@click.option("--id", "work_id", default=None, help="Explicit work item id.")
@click.option("--stack", default=None, help="Stack whose verify/security commands to use.")
def work_new_command(title: str, work_id: str | None, stack: str | None) -> None:
    repo_root = find_repo_root(Path.cwd())
    store = StateStore(repo_root)
    try:
        created = create_work_item(store, title, work_id=work_id, stack=stack)
    except (PfmStateError, ValueError, FileNotFoundError) as exc:
        raise click.ClickException(str(exc)) from exc
    item = created.item
    RunLog(store.runlog_path(item.id)).append("Work Item Created", f"Title: {item.title}")
    click.echo(f"Created work item: {item.id}")
    click.echo(f"  directory: {store.work_dir(item.id)}")
    click.echo(f"  branch: {item.branch}")
    click.echo(f"  stack: {created.stack} ({created.stack_source})")


@work_group.command("list")
def work_list_command() -> None:
    store = StateStore(find_repo_root(Path.cwd()))
    items = list_work_items(store)
    if not items:
        click.echo("No work items found.")
        return
    click.echo(f"{'ID':<24} {'STATUS':<12} {'OWNER':<16} TITLE")
    for work_id, item in items:
        if item is None:
            click.echo(f"{work_id:<24} {'???':<12} {'???':<16} (invalid state.json)")
            continue
        click.echo(f"{item.id:<24} {item.status:<12} {item.owner or '-':<16} {item.title}")


@cli.command("run")
@click.argument("work_id")
@click.option("--to", "to_gate", type=click.Choice(list(GATE_ORDER)), default=None)
@click.option(
    "--mode",
    type=click.Choice(["auto", "classic", "teams"]),
    default=None,
    help="Defaults to orchestration.default_mode.",
)
@click.option("--timeout", "timeout_seconds", type=float, default=None)
@click.option("--poll-interval", "poll_interval", type=float, default=None)
def run_command(
    work_id: str,
    to_gate: str | None,
    mode: str | None,
    timeout_seconds: float | None,
    poll_interval: float | None,
) -> None:
    repo_root = find_repo_root(Path.cwd())
    runtime = _load_runtime(repo_root, work_id)
    _require_work_item(runtime, work_id)
    if timeout_seconds is not None:
        runtime.config.orchestration.timeout_seconds = max(0.0, timeout_seconds)
    if poll_interval is not None:
        runtime.config.orchestration.poll_interval_seconds = max(0.0, poll_interval)

    try:
        summary = asyncio.run(
            _run_cancellable(
                runtime,
                work_id,
                to_gate=to_gate,
                mode=mode or runtime.config.orchestration.default_mode,
            )
        )
    except (PfmStateError, BackendError, ValueError) as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(f"Run outcome: {summary.outcome}")
    click.echo(summary.message)
    click.echo(f"Iterations: {summary.iterations}  Reroutes: {summary.reroutes}")
    if not summary.ok:
        click.get_current_context().exit(EXIT_NEEDS_ATTENTION)


@cli.command("status")
@click.argument("work_id")
@click.option("--json", "as_json", is_flag=True, default=False)
def status_command(work_id: str, as_json: bool) -> None:
    store = StateStore(find_repo_root(Path.cwd()))
    try:
        item = store.load(work_id)
    except PfmStateError as exc:
        raise click.ClickException(str(exc)) from exc

    handoffs_dir = store.handoffs_dir(work_id)
    if as_json:
        payload = item.to_dict()
        payload["active_gate"] = active_gate(item.gates)
        click.echo(json.dumps(payload, ensure_ascii=False, indent=2))
        return

    click.echo(f"{item.id}: {item.title}")
    click.echo(f"Status: {item.status}  Owner: {item.owner or '-'}  Branch: {item.branch}")
    click.echo(f"Active gate: {active_gate(item.gates) or '-'}")
    for gate in GATE_ORDER:
        role = gate_to_role(gate)
        handoff = latest_handoff(handoffs_dir, role)
        complete = is_complete(item, role, item.started_at(gate), handoffs_dir=handoffs_dir)
        marker = "*" if complete else " "
        click.echo(
            f" {marker} {gate:<16} {item.gates[gate]:<18} {handoff.name if handoff else '-'}"
        )
    if item.reruns:
        click.echo(f"Pending re-runs: {', '.join(item.reruns)}")


@cli.command("check")
@click.argument("work_id")
def check_command(work_id: str) -> None:
    repo_root = find_repo_root(Path.cwd())
    runtime = _load_runtime(repo_root, work_id)
    try:
        report = asyncio.run(runtime.runner.check(work_id))
    except PfmStateError as exc:
        raise click.ClickException(str(exc)) from exc

    for result in report.results:
        if result.skipped:
            click.echo(f"{result.name}: skipped (no command)")
        else:
            verdict = "PASS" if result.passed else "FAIL"
            click.echo(f"{result.name}: {verdict} (exit {result.exit_code}) `{result.command}`")
    click.echo(f"tests gate: {report.outcome}")
    if report.outcome != "pass":
        click.get_current_context().exit(EXIT_NEEDS_ATTENTION)


@cli.group("agent")
def agent_group() -> None:
    """Launch or nudge a single role agent."""


@agent_group.command("start")
@click.argument("role", type=click.Choice([role.value for role in Role]))
@click.argument("work_id")
@click.option("--restart", is_flag=True, default=False, help="Relaunch an in-progress gate.")
def agent_start_command(role: str, work_id: str, restart: bool) -> None:
    repo_root = find_repo_root(Path.cwd())
    runtime = _load_runtime(repo_root, work_id)
    _require_work_item(runtime, work_id)
    try:
        result = asyncio.run(runtime.launcher.start(role, work_id, restart=restart))
    except (PfmStateError, BackendError) as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(result.message)
    if result.status == "conflict":
        click.echo("Use --restart to relaunch it.")
        click.get_current_context().exit(EXIT_NEEDS_ATTENTION)
    if result.session:
        click.echo(f"Session: {result.session}")
    if result.exit_code is not None:
        click.echo(f"Agent exit code: {result.exit_code}")


@agent_group.command("nudge")
@click.argument("role", type=click.Choice([role.value for role in Role]))
@click.argument("work_id")
def agent_nudge_command(role: str, work_id: str) -> None:
    repo_root = find_repo_root(Path.cwd())
    runtime = _load_runtime(repo_root, work_id)
    _require_work_item(runtime, work_id)
    try:
        result = asyncio.run(runtime.launcher.nudge(role, work_id))
    except PfmStateError as exc:
        raise click.ClickException(str(exc)) from exc

    if result.delivered:
        click.echo(f"Nudged session {result.session}.")
        return
    click.echo(f"Session {result.session} is not reachable. Relay this message manually:")
    click.echo(result.message)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
