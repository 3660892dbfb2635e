from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Literal

from orchestra.detector import StuckThresholds
from orchestra.supervisor import RetryPolicy

if TYPE_CHECKING:
    from orchestra.monitor import ActivityMonitor
    from orchestra.scheduler import RunConfig

BackendName = Literal["claude", "codex", "process"]


@dataclass(slots=True)
class SchedulerConfig:
    max_concurrency: int = 3
    use_isolated_workspaces: bool = True


@dataclass(slots=True)
class RetryConfig:
    max_retries: int = 3
    check_interval_seconds: float = 1.0
    backoff_seconds: float = 0.0


@dataclass(slots=True)
class StuckConfig:
    idle_timeout_seconds: float = 120.0
    thinking_timeout_seconds: float = 180.0
    tool_timeout_seconds: float = 300.0
    warning_threshold: float = 0.75


@dataclass(slots=True)
class ExecutorConfig:
    backend: BackendName = "claude"
    binary: str = ""
    model: str = ""
    kill_grace_seconds: float = 5.0
    command: list[str] = field(default_factory=list)


@dataclass(slots=True)
class WorkspaceConfig:
    root: str = ".orchestra/worktrees"
    branch_prefix: str = "orchestra/"
    keep_branches: bool = True
    stale_after_hours: float = 24.0


@dataclass(slots=True)
class StateConfig:
    dir: str = ".orchestra/state"


@dataclass(slots=True)
class OrchestraConfig:
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    stuck: StuckConfig = field(default_factory=StuckConfig)
    executor: ExecutorConfig = field(default_factory=ExecutorConfig)
    workspace: WorkspaceConfig = field(default_factory=WorkspaceConfig)
    state: StateConfig = field(default_factory=StateConfig)

    @classmethod
    def default(cls) -> OrchestraConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> OrchestraConfig:
        return cls(
            scheduler=SchedulerConfig(**data.get("scheduler", {})),
            retry=RetryConfig(**data.get("retry", {})),
            stuck=StuckConfig(**data.get("stuck", {})),
            executor=ExecutorConfig(**data.get("executor", {})),
            workspace=WorkspaceConfig(**data.get("workspace", {})),
            state=StateConfig(**data.get("state", {})),
        )

    def to_dict(self) -> dict:
        return {
            "scheduler": {
                "max_concurrency": self.scheduler.max_concurrency,
                "use_isolated_workspaces": self.scheduler.use_isolated_workspaces,
            },
            "retry": {
                "max_retries": self.retry.max_retries,
                "check_interval_seconds": self.retry.check_interval_seconds,
                "backoff_seconds": self.retry.backoff_seconds,
            },
            "stuck": {
                "idle_timeout_seconds": self.stuck.idle_timeout_seconds,
                "thinking_timeout_seconds": self.stuck.thinking_timeout_seconds,
                "tool_timeout_seconds": self.stuck.tool_timeout_seconds,
                "warning_threshold": self.stuck.warning_threshold,
            },
            "executor": {
                "backend": self.executor.backend,
                "binary": self.executor.binary,
                "model": self.executor.model,
                "kill_grace_seconds": self.executor.kill_grace_seconds,
                "command": list(self.executor.command),
            },
            "workspace": {
                "root": self.workspace.root,
                "branch_prefix": self.workspace.branch_prefix,
                "keep_branches": self.workspace.keep_branches,
                "stale_after_hours": self.workspace.stale_after_hours,
            },
            "state": {
                "dir": self.state.dir,
            },
        }

    def thresholds(self) -> StuckThresholds:
        return StuckThresholds(
            idle_timeout_seconds=float(self.stuck.idle_timeout_seconds),
            thinking_timeout_seconds=float(self.stuck.thinking_timeout_seconds),
            tool_timeout_seconds=float(self.stuck.tool_timeout_seconds),
            warning_threshold=min(1.0, max(0.0, float(self.stuck.warning_threshold))),
        )

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=max(0, int(self.retry.max_retries)),
            check_interval_seconds=max(0.01, float(self.retry.check_interval_seconds)),
            backoff_seconds=max(0.0, float(self.retry.backoff_seconds)),
        )

    def to_run_config(self, monitor: ActivityMonitor | None = None) -> RunConfig:
        from orchestra.scheduler import RunConfig

        return RunConfig(
            max_concurrency=max(1, int(self.scheduler.max_concurrency)),
            use_isolated_workspaces=bool(self.scheduler.use_isolated_workspaces),
            monitor=monitor,
            retry=self.retry_policy(),
            thresholds=self.thresholds(),
        )


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0")
        return rendered + "0" if rendered.endswith(".") else rendered
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: OrchestraConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in ("scheduler", "retry", "stuck", "executor", "workspace", "state"):
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> OrchestraConfig:
    if not path.exists():
        return OrchestraConfig.default()
    return OrchestraConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: OrchestraConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
