from __future__ import annotations

import asyncio
import json
import logging
import signal
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from ralph_mode.backends import (
    AgentBackend,
    ClaudeCodeBackend,
    CodexBackend,
    ResilientBackend,
    RetryPolicy,
)
from ralph_mode.config import (
    DEFAULT_GUIDE,
    DEFAULT_PLAN,
    RalphConfig,
    WorkerConfig,
    WorkerName,
    load_config,
    resolve_gate_configs,
    save_config,
)
from ralph_mode.controller import (
    ApprovalHook,
    ControllerEventHook,
    IterationController,
    RunSummary,
)
from ralph_mode.gates import Gate, GateContext, GateRunner, build_gates
from ralph_mode.lock import SessionGuard, SessionLockError
from ralph_mode.progress import ProgressLog, render
from ralph_mode.tasks import Task, TaskList, TaskListError
from ralph_mode.worker import AgentWorker, Worker
from ralph_mode.worktree import GitCommitter, WorkingTree

PROGRESS_FILE = "progress.jsonl"
LOCK_FILE = "session.lock"
RULE = "━" * 40


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: RalphConfig
    plan_path: Path
    state_path: Path
    working_tree: WorkingTree
    backend: AgentBackend
    gates: list[Gate]

    @property
    def progress(self) -> ProgressLog:
        return ProgressLog(self.state_path / PROGRESS_FILE)

    @property
    def guard(self) -> SessionGuard:
        return SessionGuard(
            self.state_path / LOCK_FILE,
            liveness_seconds=self.config.session.liveness_seconds,
        )


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        force=True,
    )


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _load_config(config_path: Path) -> RalphConfig:
    try:
        return load_config(config_path)
    except (tomllib.TOMLDecodeError, TypeError) as exc:
        raise click.ClickException(f"Invalid config {config_path}: {exc}") from exc


def _ensure_state_dir(state_path: Path) -> None:
    state_path.mkdir(parents=True, exist_ok=True)
    ignore_file = state_path / ".gitignore"
    if not ignore_file.exists():
        ignore_file.write_text("*\n", encoding="utf-8")


def _build_single_backend(
    worker_name: WorkerName, settings: WorkerConfig, repo_root: Path
) -> CodexBackend | ClaudeCodeBackend:
    if worker_name == "codex":
        return CodexBackend(binary=settings.codex_binary, working_directory=repo_root)
    return ClaudeCodeBackend(binary=settings.claude_binary, working_directory=repo_root)


def _retry_policy(settings: WorkerConfig) -> RetryPolicy:
    return RetryPolicy(
        max_retries=max(0, int(settings.max_retries)),
        backoff_seconds=max(0.0, float(settings.retry_backoff_seconds)),
        timeout_seconds=max(5.0, float(settings.timeout_seconds)),
    )


def _worker_budget(settings: WorkerConfig) -> float:
    """Outer bound on one worker call, leaving room for every retry and the fallback."""
    backends = 1 if settings.primary == settings.fallback else 2
    return _retry_policy(settings).budget_seconds(backends)


def _build_backend(
    config: RalphConfig,
    repo_root: Path,
    event_hook: ControllerEventHook | None = None,
) -> AgentBackend:
    settings = config.worker
    return ResilientBackend(
        primary_name=settings.primary,
        primary_backend=_build_single_backend(settings.primary, settings, repo_root),
        fallback_name=settings.fallback,
        fallback_backend=_build_single_backend(settings.fallback, settings, repo_root),
        retry_policy=_retry_policy(settings),
        event_hook=event_hook,
    )


def _build_worker(
    config: RalphConfig,
    backend: AgentBackend,
    event_hook: ControllerEventHook | None = None,
) -> Worker:
    return AgentWorker(
        backend,
        plan_file=config.project.plan_file,
        guide_file=config.project.guide_file,
        specs_dir=config.project.specs_dir,
        event_hook=event_hook,
    )


def _load_runtime(
    repo_root: Path,
    config_path: Path,
    *,
    event_hook: ControllerEventHook | None = None,
) -> Runtime:
    config = _load_config(config_path)
    plan_path = config.plan_path(repo_root)
    if not plan_path.exists():
        raise click.ClickException(
            f"{plan_path.name} not found. Create it first with the planning phase."
        )
    guide_path = config.guide_path(repo_root)
    if not guide_path.exists():
        click.echo(f"Warning: {guide_path.name} not found. Creating default...", err=True)
        guide_path.write_text(DEFAULT_GUIDE, encoding="utf-8")

    state_path = config.state_path(repo_root)
    _ensure_state_dir(state_path)
    backend = _build_backend(config, repo_root, event_hook)
    try:
        gates = build_gates(resolve_gate_configs(config, repo_root), backend)
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        plan_path=plan_path,
        state_path=state_path,
        working_tree=WorkingTree(repo_root, ignored=[plan_path, state_path]),
        backend=backend,
        gates=gates,
    )


def _build_gate_runner(config: RalphConfig, event_hook: ControllerEventHook | None) -> GateRunner:
    return GateRunner(
        default_timeout_seconds=config.validation.timeout_seconds,
        fail_fast=config.validation.fail_fast,
        parallel=config.validation.parallel,
        output_limit=config.validation.output_limit,
        event_hook=event_hook,
    )


def _build_controller(
    runtime: Runtime,
    *,
    event_hook: ControllerEventHook | None,
    approval_hook: ApprovalHook | None = None,
) -> IterationController:
    config = runtime.config
    return IterationController(
        plan_path=runtime.plan_path,
        progress=runtime.progress,
        gate_runner=_build_gate_runner(config, event_hook),
        gates=runtime.gates,
        worker=_build_worker(config, runtime.backend, event_hook),
        working_tree=runtime.working_tree,
        guard=runtime.guard,
        committer=GitCommitter(runtime.working_tree),
        config=config.loop,
        worker_timeout_seconds=_worker_budget(config.worker),
        heartbeat_interval_seconds=config.session.heartbeat_interval_seconds,
        event_hook=event_hook,
        approval_hook=approval_hook,
    )


def _echo_event(event: dict[str, Any]) -> None:
    name = event.get("event")
    if name == "task_selected":
        click.echo("")
        click.echo(f"ITERATION {event['iteration']}")
        click.echo(f"Task {event['task_id']}: {event['description']}")
    elif name == "worker_finished":
        click.echo(f"  worker changed {len(event['files_changed'])} file(s)")
    elif name == "gate_finished":
        label = str(event["outcome"]).upper()
        if event.get("message"):
            label += f" ({event['message']})"
        optional = "" if event.get("required", True) else " [advisory]"
        click.echo(f"  gate {event['gate']}: {label}{optional}")
    elif name == "task_completed":
        click.echo(f"  complete (record #{event['sequence_number']})")
    elif name == "task_blocked":
        click.echo(f"  blocked: {event['reason']}")
    elif name == "backend_retry":
        click.echo(f"  retrying {event['backend']} in {event['delay_seconds']:.1f}s")
    elif name == "backend_attempt_failed":
        click.echo(f"  {event['backend']} attempt failed: {event['error']}", err=True)


def _confirm_task(task: Task) -> bool:
    return click.confirm(f"Continue with task {task.id}: {task.description}?", default=True)


async def _drive(controller: IterationController, max_iterations: int | None) -> RunSummary:
    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, controller.request_stop, f"received {signum.name}")
        except (NotImplementedError, RuntimeError, ValueError):
            continue
        installed.append(signum)
    try:
        return await controller.run(max_iterations)
    finally:
        for signum in installed:
            loop.remove_signal_handler(signum)


@click.group()
def cli() -> None:
    """Ralph Mode: iterate an agent over a task list behind quality gates."""


@cli.command("init")
@click.option("--worker", type=click.Choice(["claude", "codex"]), default=None)
@click.option("--config", "config_value", default="ralph.toml", show_default=True)
def init_command(worker: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = _load_config(config_path)
    if worker:
        config.worker.primary = worker  # type: ignore[assignment]
        config.worker.fallback = "codex" if worker == "claude" else "claude"
    save_config(config_path, config)

    guide_path = config.guide_path(repo_root)
    if not guide_path.exists():
        guide_path.write_text(DEFAULT_GUIDE, encoding="utf-8")
    plan_path = config.plan_path(repo_root)
    if not plan_path.exists():
        plan_path.write_text(DEFAULT_PLAN, encoding="utf-8")
    (repo_root / config.project.specs_dir).mkdir(parents=True, exist_ok=True)
    _ensure_state_dir(config.state_path(repo_root))

    click.echo(f"Initialized Ralph Mode in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Plan: {plan_path.name}")
    click.echo(f"Guide: {guide_path.name}")
    click.echo(f"Worker: {config.worker.primary} (fallback {config.worker.fallback})")


@cli.command("run")
@click.argument("max_iterations", type=click.IntRange(min=0), required=False)
@click.option(
    "--confirm/--auto-approve",
    "confirm",
    default=None,
    help="Ask before each task instead of running unattended.",
)
@click.option("--config", "config_value", default="ralph.toml", show_default=True)
@click.option("--verbose", is_flag=True, default=False)
def run_command(
    max_iterations: int | None, confirm: bool | None, config_value: str, verbose: bool
) -> None:
    _configure_logging(verbose)
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(
        repo_root, _resolve_config_path(repo_root, config_value), event_hook=_echo_event
    )
    if confirm is not None:
        runtime.config.loop.auto_approve = not confirm
    limit = runtime.config.loop.max_iterations if max_iterations is None else max_iterations

    click.echo(RULE)
    click.echo("Ralph Mode")
    click.echo(RULE)
    click.echo(f"Max iterations: {limit or 'unlimited'}")
    click.echo(f"Plan: {runtime.plan_path.name}")
    click.echo(f"Gates: {', '.join(gate.name for gate in runtime.gates) or 'none'}")
    click.echo(RULE)

    controller = _build_controller(runtime, event_hook=_echo_event, approval_hook=_confirm_task)
    try:
        summary = asyncio.run(_drive(controller, limit))
    except (TaskListError, SessionLockError) as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo("")
    click.echo(RULE)
    if summary.state == "drained":
        click.echo("All tasks completed!")
    elif summary.state == "capped":
        click.echo(f"Reached max iterations: {limit}")
        click.echo("To continue, re-run without iteration limit")
    else:
        click.echo(f"Stopped ({summary.stop_reason}). Resume by running `ralph run` again.")
    click.echo(
        f"Iterations: {summary.iterations}  completed: {len(summary.completed)}"
        f"  blocked: {len(summary.blocked)}"
    )
    click.echo(RULE)


@cli.command("next")
@click.option("--config", "config_value", default="ralph.toml", show_default=True)
def next_command(config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config = _load_config(_resolve_config_path(repo_root, config_value))
    try:
        tasks = TaskList.load(config.plan_path(repo_root))
    except TaskListError as exc:
        raise click.ClickException(str(exc)) from exc
    task = tasks.next_pending()
    if task is None:
        click.echo("All tasks completed.")
        return
    click.echo("Next task (uncompleted):")
    click.echo("\n".join(task.render()))


@cli.command("status")
@click.option(
    "--log", "show_log", type=click.IntRange(min=0), default=0, help="Render N latest records."
)
@click.option("--config", "config_value", default="ralph.toml", show_default=True)
def status_command(show_log: int, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config = _load_config(_resolve_config_path(repo_root, config_value))
    state_path = config.state_path(repo_root)
    try:
        tasks = TaskList.load(config.plan_path(repo_root))
    except TaskListError as exc:
        raise click.ClickException(str(exc)) from exc

    progress = ProgressLog(state_path / PROGRESS_FILE)
    guard = SessionGuard(state_path / LOCK_FILE, liveness_seconds=config.session.liveness_seconds)
    latest = progress.read_latest()
    lock = guard.current()
    upcoming = tasks.next_pending()
    payload = {
        "plan": str(tasks.path),
        "tasks": tasks.counts(),
        "next_task": upcoming.to_dict() if upcoming is not None else None,
        "latest_record": latest.to_dict() if latest is not None else None,
        "lock": (
            {**lock.to_dict(), "stale": guard.is_stale(lock)} if lock is not None else None
        ),
    }
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))
    for record in progress.tail(show_log):
        click.echo("")
        click.echo(render(record))


@cli.command("validate")
@click.option("--config", "config_value", default="ralph.toml", show_default=True)
@click.option("--verbose", is_flag=True, default=False)
def validate_command(config_value: str, verbose: bool) -> None:
    _configure_logging(verbose)
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(
        repo_root, _resolve_config_path(repo_root, config_value), event_hook=_echo_event
    )
    if not runtime.gates:
        click.echo("No gates configured.")
        return

    try:
        upcoming = TaskList.load(runtime.plan_path).next_pending()
    except TaskListError as exc:
        raise click.ClickException(str(exc)) from exc
    context = GateContext(
        working_tree=runtime.repo_root,
        task=upcoming,
        diff=runtime.working_tree.diff_text(),
    )
    runner = _build_gate_runner(runtime.config, _echo_event)
    report = asyncio.run(runner.run(runtime.gates, context))
    if not report.all_passed:
        names = ", ".join(result.gate_name for result in report.failures)
        raise click.ClickException(f"Required gates failed: {names}")
    click.echo("All required gates passed.")
