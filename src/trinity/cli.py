from __future__ import annotations

import asyncio
import json
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from trinity import __version__
from trinity.agents import (
    AgentBackend,
    AgentRunner,
    ClaudeCodeBackend,
    CodexBackend,
    CodexSDKBackend,
    CommandBackend,
)
from trinity.config import AGENT_KINDS, ConfigError, TrinityConfig, load_config, save_config
from trinity.prd import PrdError, StorySpec, load_prd
from trinity.report import RunReport
from trinity.session import RunSession
from trinity.state import AttemptLedger, BacklogStore, JsonStateStore, StateError
from trinity.state.store import utcnow_iso

MAX_RECORDED_EVENTS = 200

EVENT_COUNTERS = {
    "item_dispatched": "dispatch_count",
    "state_io_retry": "state_io_retry_count",
    "runner_error": "runner_error_count",
}

OUTCOME_COUNTERS = {
    "timeout": "timeout_count",
    "crashed_process": "crash_count",
    "agent_failure": "agent_failure_count",
    "success": "success_count",
}


@dataclass(slots=True)
class Workspace:
    repo_root: Path
    config_path: Path
    config: TrinityConfig
    state: JsonStateStore
    backlog: BacklogStore
    ledger: AttemptLedger


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _load_config(config_path: Path) -> TrinityConfig:
    try:
        return load_config(config_path)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc


def _open_workspace(config_value: str) -> Workspace:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = _load_config(config_path)
    state = JsonStateStore(config.state_dir(repo_root))
    backlog = BacklogStore(state)
    ledger = AttemptLedger(state.state_dir)
    try:
        backlog.load()
        ledger.load()
    except StateError as exc:
        raise click.ClickException(str(exc)) from exc
    return Workspace(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        state=state,
        backlog=backlog,
        ledger=ledger,
    )


class MetricsRecorder:
    """Event hook that buffers events and folds them into ``metrics`` once per attempt."""

    FLUSH_EVENTS = frozenset({"attempt_recorded", "loop_end", "run_halted", "run_finished"})

    def __init__(self, state: JsonStateStore) -> None:
        self.state = state
        self._pending: list[dict[str, Any]] = []

    def __call__(self, event: dict[str, Any]) -> None:
        event_payload = dict(event)
        event_payload["at"] = utcnow_iso()
        self._pending.append(event_payload)
        if event.get("event") in self.FLUSH_EVENTS:
            self.flush()

    def _fold(self, payload: Any, pending: list[dict[str, Any]]) -> dict[str, Any]:
        metrics = payload if isinstance(payload, dict) else {}
        events = metrics.get("events", [])
        if not isinstance(events, list):
            events = []
        events.extend(pending)
        metrics["events"] = events[-MAX_RECORDED_EVENTS:]

        for event in pending:
            counter = EVENT_COUNTERS.get(str(event.get("event")))
            if event.get("event") == "agent_run_end":
                counter = OUTCOME_COUNTERS.get(str(event.get("outcome")))
            if counter:
                metrics[counter] = int(metrics.get(counter, 0)) + 1
        return metrics

    def flush(self) -> None:
        if not self._pending:
            return
        pending, self._pending = self._pending, []
        try:
            self.state.update_json(
                "metrics", lambda payload: self._fold(payload, pending), default={}
            )
        except StateError as exc:
            # Metrics are advisory; the backlog and ledger carry the run state.
            click.echo(f"warning: could not record {len(pending)} event(s): {exc}", err=True)


def _build_backend(
    config: TrinityConfig, repo_root: Path, hook: MetricsRecorder
) -> AgentBackend:
    binary = config.agent.binary.strip()
    model = config.agent.model.strip() or None
    if config.agent.kind == "codex":
        return CodexBackend(binary or "codex", repo_root, model=model, event_hook=hook)
    if config.agent.kind == "codex_sdk":
        return CodexSDKBackend(
            model=model or "gpt-5-codex", working_directory=repo_root, event_hook=hook
        )
    if config.agent.kind == "command":
        return CommandBackend(list(config.agent.command), repo_root, event_hook=hook)
    return ClaudeCodeBackend(binary or "claude", repo_root, model=model, event_hook=hook)


def _import_stories(backlog: BacklogStore, stories: list[StorySpec]) -> list[str]:
    added: list[str] = []
    for story in stories:
        backlog.add(
            story.id,
            story.description,
            title=story.title,
            depends_on=story.depends_on,
            completed=story.completed,
        )
        added.append(story.id)
    return added


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


async def _drive_session(session: RunSession) -> RunReport:
    handle = session.start()
    loop = asyncio.get_running_loop()
    cancel_tasks: list[asyncio.Task[bool]] = []

    def _request_cancel() -> None:
        if cancel_tasks:
            return
        click.echo("Cancellation requested; waiting for in-flight items to finish.", err=True)
        cancel_tasks.append(loop.create_task(session.cancel(handle)))

    installed: list[signal.Signals] = []
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, _request_cancel)
        except NotImplementedError:
            continue
        installed.append(signum)
    try:
        return await session.wait(handle)
    finally:
        for signum in installed:
            loop.remove_signal_handler(signum)


def _echo_summary(report: RunReport) -> None:
    click.echo(f"Run ID: {report.run_id}")
    click.echo(f"Status: {report.status}")
    counts = report.counts
    click.echo(
        "Items: "
        + ", ".join(f"{state} {counts.get(state, 0)}" for state in sorted(counts))
    )
    if report.halt_reason:
        click.echo(f"Halt reason: {report.halt_reason}")


@click.group()
@click.version_option(__version__, prog_name="trinity")
def cli() -> None:
    """Trinity: autonomous AI development loops."""


@cli.command("init")
@click.option("--agent", "agent_kind", type=click.Choice(AGENT_KINDS), default=None)
@click.option("--prd", "prd_value", default=None, help="Import stories from a PRD JSON file.")
@click.option("--config", "config_value", default="trinity.toml", show_default=True)
def init_command(agent_kind: str | None, prd_value: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = _load_config(config_path)
    if agent_kind:
        config.agent.kind = agent_kind  # type: ignore[assignment]
    if prd_value:
        config.project.prd_path = prd_value
    try:
        config.validate()
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    save_config(config_path, config)

    workspace = _open_workspace(config_value)
    added: list[str] = []
    try:
        if prd_value:
            added = _import_stories(workspace.backlog, load_prd(repo_root / prd_value))
        workspace.state.ensure_directory()
        workspace.backlog.persist()
    except (PrdError, StateError) as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(f"Initialized Trinity in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Agent: {config.agent.kind}")
    click.echo(f"State: {workspace.state.state_dir}")
    if prd_value:
        click.echo(f"Imported {len(added)} item(s) from {prd_value}")


@cli.command("analyze")
@click.option("--config", "config_value", default="trinity.toml", show_default=True)
def analyze_command(config_value: str) -> None:
    workspace = _open_workspace(config_value)
    backlog = workspace.backlog
    _echo_json(
        {
            "items": len(backlog),
            "counts": backlog.counts(),
            "eligible": [item.id for item in backlog.list_eligible()],
            "unknown_dependencies": backlog.unknown_dependencies(),
            "dependency_cycles": backlog.dependency_cycles(),
            "dependency_blocked": backlog.dependency_blocked(),
            "attempts": workspace.ledger.counts(),
        }
    )


@cli.group("plan")
def plan_group() -> None:
    """Inspect and extend the backlog."""


@plan_group.command("add")
@click.argument("item_id")
@click.argument("description")
@click.option("--title", default="", help="Short label for the item.")
@click.option("--depends-on", "depends_on", multiple=True, help="Id the item depends on.")
@click.option("--config", "config_value", default="trinity.toml", show_default=True)
def plan_add_command(
    item_id: str,
    description: str,
    title: str,
    depends_on: tuple[str, ...],
    config_value: str,
) -> None:
    workspace = _open_workspace(config_value)
    try:
        item = workspace.backlog.add(item_id, description, title=title, depends_on=depends_on)
        workspace.backlog.persist()
    except StateError as exc:
        raise click.ClickException(str(exc)) from exc
    unknown = workspace.backlog.unknown_dependencies().get(item.id, [])
    click.echo(f"Added {item.id} (position {item.position})")
    if unknown:
        click.echo(f"Warning: unknown dependencies {', '.join(unknown)}", err=True)


@plan_group.command("import")
@click.argument("prd_path", type=click.Path(dir_okay=False, path_type=Path))
@click.option("--config", "config_value", default="trinity.toml", show_default=True)
def plan_import_command(prd_path: Path, config_value: str) -> None:
    workspace = _open_workspace(config_value)
    try:
        added = _import_stories(workspace.backlog, load_prd(prd_path))
        workspace.backlog.persist()
    except (PrdError, StateError) as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Imported {len(added)} item(s) from {prd_path}")


@plan_group.command("list")
@click.option("--config", "config_value", default="trinity.toml", show_default=True)
def plan_list_command(config_value: str) -> None:
    workspace = _open_workspace(config_value)
    items = workspace.backlog.items()
    if not items:
        click.echo("Backlog is empty.")
        return
    for item in items:
        deps = f" <- {', '.join(item.depends_on)}" if item.depends_on else ""
        label = item.title or item.description.splitlines()[0][:60]
        click.echo(f"{item.id:<16} {item.state.value:<12} x{item.attempt_count} {label}{deps}")


@cli.command("run")
@click.option("--concurrency", type=click.IntRange(min=1), default=None)
@click.option("--max-attempts", type=click.IntRange(min=1), default=None)
@click.option("--timeout", "timeout_seconds", type=click.FloatRange(min=0.0, min_open=True))
@click.option("--config", "config_value", default="trinity.toml", show_default=True)
def run_command(
    concurrency: int | None,
    max_attempts: int | None,
    timeout_seconds: float | None,
    config_value: str,
) -> None:
    repo_root = Path.cwd().resolve()
    config = _load_config(_resolve_config_path(repo_root, config_value))
    if concurrency is not None:
        config.loop.concurrency_limit = concurrency
    if max_attempts is not None:
        config.loop.max_attempts_per_item = max_attempts
    if timeout_seconds is not None:
        config.loop.per_attempt_timeout_seconds = timeout_seconds

    recorder = MetricsRecorder(JsonStateStore(config.state_dir(repo_root)))
    backend = _build_backend(config, repo_root, recorder)
    runner = AgentRunner(
        backend,
        require_completion_signal=config.agent.require_completion_signal,
        context={"model": config.agent.model} if config.agent.model else None,
        event_hook=recorder,
    )
    try:
        session = RunSession.open(
            repo_root,
            config,
            runner,
            event_hook=recorder,
        )
        report = asyncio.run(_drive_session(session))
    except StateError as exc:
        raise click.ClickException(str(exc)) from exc
    finally:
        recorder.flush()

    _echo_summary(report)
    if report.has_failures:
        _echo_json(
            {
                "failed": [entry.to_dict() for entry in report.failed],
                "blocked": [entry.to_dict() for entry in report.blocked],
                "dependency_blocked": [entry.to_dict() for entry in report.dependency_blocked],
            }
        )
    if report.status == "halted":
        raise click.exceptions.Exit(2)
    if report.has_failures:
        raise click.exceptions.Exit(1)


@cli.command("status")
@click.option("--config", "config_value", default="trinity.toml", show_default=True)
def status_command(config_value: str) -> None:
    workspace = _open_workspace(config_value)
    session = workspace.state.get_session()
    metrics = workspace.state.get_metrics()
    events = metrics.pop("events", [])
    _echo_json(
        {
            "current_run_id": session.get("current_run_id"),
            "status": session.get("status", "idle"),
            "counts": workspace.backlog.counts(),
            "in_progress": [
                item.id for item in workspace.backlog.items() if item.state.value == "in_progress"
            ],
            "metrics": metrics,
            "recent_events": events[-20:] if isinstance(events, list) else [],
        }
    )


@cli.command("report")
@click.option("--config", "config_value", default="trinity.toml", show_default=True)
def report_command(config_value: str) -> None:
    workspace = _open_workspace(config_value)
    runs = workspace.state.get_session().get("runs", [])
    reports = [run.get("report") for run in runs if isinstance(run, dict) and run.get("report")]
    if not reports:
        click.echo("No run report available.")
        return
    _echo_json(reports[-1])
