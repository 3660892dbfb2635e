from __future__ import annotations

import asyncio
import json
import logging
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from orchestra.config import OrchestraConfig, load_config, save_config
from orchestra.executors import BACKENDS, ExecutorError, build_executor
from orchestra.graph import GraphError, TaskRecord, TaskSpec
from orchestra.monitor import LoggingMonitor
from orchestra.payloads import PayloadError, coerce_payload
from orchestra.scheduler import RunReport, Scheduler
from orchestra.state import JsonStateStore, StateError
from orchestra.workspaces import (
    GitWorktreeManager,
    ReconcileReport,
    SharedWorkspaceManager,
    WorkspaceError,
    WorkspaceManager,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: OrchestraConfig
    state: JsonStateStore


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _load_runtime(config_value: str) -> Runtime:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = load_config(config_path)
    state_dir = Path(config.state.dir)
    if not state_dir.is_absolute():
        state_dir = repo_root / state_dir
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        state=JsonStateStore(state_dir),
    )


def _worktree_manager(runtime: Runtime) -> GitWorktreeManager:
    settings = runtime.config.workspace
    return GitWorktreeManager(
        runtime.repo_root,
        root_dir=settings.root,
        branch_prefix=settings.branch_prefix,
        keep_branches=settings.keep_branches,
        stale_after_hours=settings.stale_after_hours,
        store=runtime.state,
    )


def load_task_file(path: Path) -> list[TaskSpec]:
    """Read a JSON or TOML task list and validate each payload."""
    text = path.read_text(encoding="utf-8")
    try:
        if path.suffix.lower() == ".toml":
            raw: Any = tomllib.loads(text)
        else:
            raw = json.loads(text)
    except (json.JSONDecodeError, tomllib.TOMLDecodeError) as exc:
        raise click.ClickException(f"Could not parse {path}: {exc}") from exc

    entries = raw.get("tasks", []) if isinstance(raw, dict) else raw
    if not isinstance(entries, list) or not entries:
        raise click.ClickException(f"{path} does not contain a task list.")

    specs: list[TaskSpec] = []
    for entry in entries:
        if not isinstance(entry, dict):
            raise click.ClickException(f"Task entries must be tables, got: {entry!r}")
        try:
            spec = TaskSpec.from_dict(entry)
            specs.append(
                TaskSpec(
                    id=spec.id,
                    dependencies=spec.dependencies,
                    payload=coerce_payload(spec.payload),
                )
            )
        except (GraphError, PayloadError) as exc:
            raise click.ClickException(str(exc)) from exc
    return specs


class RunRecorder:
    """Persists scheduler events and terminal task records."""

    def __init__(self, state: JsonStateStore, *, echo: bool = True) -> None:
        self.state = state
        self.echo = echo
        self.run_id: str | None = None

    def event(self, event: dict[str, Any]) -> None:
        if event.get("event") == "run_started":
            self.run_id = str(event["run_id"])
            self.state.record_run(
                {
                    "run_id": self.run_id,
                    "status": "in_progress",
                    "total_tasks": event.get("total_tasks"),
                    "max_concurrency": event.get("max_concurrency"),
                }
            )
        self.state.append_event(event)

    def task_finished(self, record: TaskRecord) -> None:
        self.state.record_task(self.run_id or "unknown", record.to_dict())
        if not self.echo:
            return
        line = f"{record.status:<9} {record.id}"
        if record.retry_count:
            line += f" (retries: {record.retry_count})"
        if record.status != "succeeded" and record.failure_reason:
            line += f" - {record.failure_reason}"
        click.echo(line)

    def finish(self, report: RunReport) -> None:
        self.state.record_run(report.to_dict())


def _echo_report(report: ReconcileReport) -> None:
    if not report.is_git_repo:
        click.echo("Not a git repository.")
        return
    if report.healthy and not report.fixed:
        click.echo("Worktrees are healthy.")
    for issue in report.issues:
        fixable = "" if issue.auto_fixable else " (manual)"
        click.echo(f"{issue.kind:<12} {issue.description}{fixable}")
    for fixed in report.fixed:
        click.echo(f"fixed        {fixed}")
    for failed in report.failed:
        click.echo(f"failed       {failed['issue']}: {failed['error']}")


@click.group()
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """Orchestra CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command("init")
@click.option("--backend", type=click.Choice(list(BACKENDS)), default=None)
@click.option("--config", "config_value", default="orchestra.toml", show_default=True)
def init_command(backend: str | None, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    if backend:
        runtime.config.executor.backend = backend  # type: ignore[assignment]
    save_config(runtime.config_path, runtime.config)

    manager = _worktree_manager(runtime)
    click.echo(f"Initialized Orchestra in {runtime.repo_root}")
    click.echo(f"Config: {runtime.config_path}")
    click.echo(f"Backend: {runtime.config.executor.backend}")
    click.echo(f"State: {runtime.state.state_dir}")
    if not manager.is_git_repo():
        click.echo("Warning: not a git repository; use --no-worktrees or run `git init`.")


@cli.command("run")
@click.argument("tasks_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--max-concurrency", type=click.IntRange(min=1), default=None)
@click.option("--no-worktrees", is_flag=True, default=False, help="Run in the project directory.")
@click.option("--config", "config_value", default="orchestra.toml", show_default=True)
@click.pass_context
def run_command(
    ctx: click.Context,
    tasks_file: Path,
    max_concurrency: int | None,
    no_worktrees: bool,
    config_value: str,
) -> None:
    runtime = _load_runtime(config_value)
    specs = load_task_file(tasks_file)
    if max_concurrency is not None:
        runtime.config.scheduler.max_concurrency = max_concurrency
    if no_worktrees:
        runtime.config.scheduler.use_isolated_workspaces = False

    try:
        executor = build_executor(runtime.config.executor)
    except ExecutorError as exc:
        raise click.ClickException(str(exc)) from exc

    workspaces: WorkspaceManager
    if runtime.config.scheduler.use_isolated_workspaces:
        manager = _worktree_manager(runtime)
        if not manager.is_git_repo():
            raise click.ClickException(
                "Worktree isolation needs a git repository. Use --no-worktrees to share it."
            )
        health = manager.reconcile(repair=True)
        if not health.healthy:
            logger.warning("repaired %d worktree issue(s) before the run", len(health.fixed))
        workspaces = manager
    else:
        workspaces = SharedWorkspaceManager(runtime.repo_root)

    recorder = RunRecorder(runtime.state)
    scheduler = Scheduler(
        executor,
        workspaces=workspaces,
        on_task_finished=recorder.task_finished,
        event_hook=recorder.event,
    )
    run_config = runtime.config.to_run_config(monitor=LoggingMonitor())
    try:
        report = asyncio.run(scheduler.run_with_dependencies(specs, run_config))
    except (GraphError, StateError, WorkspaceError) as exc:
        raise click.ClickException(str(exc)) from exc
    recorder.finish(report)

    click.echo(f"Run ID: {report.run_id}")
    click.echo(
        f"Tasks: {len(report.succeeded)}/{len(report.tasks)} succeeded, "
        f"{len(report.failed)} failed, {len(report.skipped)} skipped"
    )
    if not report.ok:
        ctx.exit(1)


@cli.command("status")
@click.option("--run", "run_id", default=None, help="Show task records for one run.")
@click.option("--config", "config_value", default="orchestra.toml", show_default=True)
def status_command(run_id: str | None, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    try:
        if run_id:
            payload: dict[str, Any] = {
                "run": runtime.state.get_runs().get(run_id),
                "tasks": runtime.state.get_tasks(run_id),
            }
            if payload["run"] is None:
                raise click.ClickException(f"Run not found: {run_id}")
        else:
            payload = {"runs": runtime.state.get_runs()}
    except StateError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("backend")
@click.argument("backend_name", type=click.Choice(list(BACKENDS)))
@click.option("--config", "config_value", default="orchestra.toml", show_default=True)
def backend_command(backend_name: str, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    runtime.config.executor.backend = backend_name  # type: ignore[assignment]
    save_config(runtime.config_path, runtime.config)
    click.echo(f"Executor backend set to {backend_name}")


@cli.group("worktrees")
def worktrees_group() -> None:
    """Inspect and repair task worktrees."""


@worktrees_group.command("check")
@click.option("--config", "config_value", default="orchestra.toml", show_default=True)
@click.pass_context
def worktrees_check(ctx: click.Context, config_value: str) -> None:
    report = _worktree_manager(_load_runtime(config_value)).reconcile(repair=False)
    _echo_report(report)
    if not report.healthy:
        ctx.exit(1)


@worktrees_group.command("repair")
@click.option("--config", "config_value", default="orchestra.toml", show_default=True)
@click.pass_context
def worktrees_repair(ctx: click.Context, config_value: str) -> None:
    try:
        report = _worktree_manager(_load_runtime(config_value)).reconcile(repair=True)
    except WorkspaceError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_report(report)
    if not report.repaired:
        ctx.exit(1)


@worktrees_group.command("clean")
@click.option("--yes", is_flag=True, default=False, help="Do not ask for confirmation.")
@click.option("--config", "config_value", default="orchestra.toml", show_default=True)
def worktrees_clean(yes: bool, config_value: str) -> None:
    if not yes:
        click.confirm("Remove every task worktree?", abort=True)
    try:
        report = _worktree_manager(_load_runtime(config_value)).full_cleanup()
    except WorkspaceError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_report(report)
