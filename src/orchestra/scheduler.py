from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from orchestra.detector import StuckThresholds
from orchestra.executors.base import ExecutorFactory
from orchestra.graph import DependencyGraph, TaskRecord, TaskSpec, utcnow_iso
from orchestra.monitor import ActivityMonitor, notify
from orchestra.supervisor import RetryOutcome, RetryPolicy, RetrySupervisor
from orchestra.workspaces.base import WorkspaceAllocationError, WorkspaceManager
from orchestra.workspaces.shared import SharedWorkspaceManager

logger = logging.getLogger(__name__)

SchedulerEventHook = Callable[[dict[str, Any]], None]
TaskFinishedHook = Callable[[TaskRecord], None]


@dataclass(slots=True)
class RunConfig:
    max_concurrency: int = 3
    use_isolated_workspaces: bool = True
    monitor: ActivityMonitor | None = None
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    thresholds: StuckThresholds = field(default_factory=StuckThresholds)


@dataclass(slots=True)
class RunReport:
    run_id: str
    started_at: str
    finished_at: str
    tasks: list[TaskRecord]
    max_running_observed: int = 0

    def _ids(self, status: str) -> list[str]:
        return [record.id for record in self.tasks if record.status == status]

    @property
    def succeeded(self) -> list[str]:
        return self._ids("succeeded")

    @property
    def failed(self) -> list[str]:
        return self._ids("failed")

    @property
    def skipped(self) -> list[str]:
        return self._ids("skipped")

    @property
    def ok(self) -> bool:
        return all(record.status == "succeeded" for record in self.tasks)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "status": "succeeded" if self.ok else "failed",
            "total_tasks": len(self.tasks),
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "max_running_observed": self.max_running_observed,
        }


class Scheduler:
    """Bounded worker pool over a dependency graph.

    At most ``max_concurrency`` tasks are in flight. Each freed slot claims
    the next ready task in submission order. Task failures end up in the
    report; only graph construction errors are raised.
    """

    def __init__(
        self,
        executor_factory: ExecutorFactory,
        *,
        workspaces: WorkspaceManager | None = None,
        project_root: Path | None = None,
        on_task_finished: TaskFinishedHook | None = None,
        event_hook: SchedulerEventHook | None = None,
    ) -> None:
        self.executor_factory = executor_factory
        self.workspaces = workspaces
        self.project_root = project_root
        self.on_task_finished = on_task_finished
        self.event_hook = event_hook
        self.running_count = 0
        self.max_running_observed = 0

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def _workspace_manager(self, config: RunConfig) -> WorkspaceManager:
        if config.use_isolated_workspaces:
            if self.workspaces is None:
                raise ValueError("Isolated workspaces need a workspace manager.")
            return self.workspaces
        if isinstance(self.workspaces, SharedWorkspaceManager):
            return self.workspaces
        root = self.project_root or getattr(self.workspaces, "repo_root", None)
        if root is None:
            raise ValueError("Shared workspace mode needs a project root.")
        return SharedWorkspaceManager(root)

    def _finished(self, record: TaskRecord) -> None:
        if self.on_task_finished is not None:
            self.on_task_finished(record)

    async def _run_task(
        self,
        record: TaskRecord,
        workspaces: WorkspaceManager,
        supervisor: RetrySupervisor,
    ) -> RetryOutcome:
        task_id = record.id

        async def launch(attempt: int):
            workspace = await asyncio.to_thread(workspaces.allocate, task_id)
            logger.debug("task %s attempt %d in %s", task_id, attempt, workspace.path)
            return await self.executor_factory(workspace.path, record.payload)

        async def release(attempt: int) -> None:
            await asyncio.to_thread(workspaces.release, task_id)

        try:
            return await supervisor.invoke(task_id, launch, on_attempt_end=release)
        except WorkspaceAllocationError as exc:
            logger.error("task %s could not get a workspace: %s", task_id, exc)
            return RetryOutcome(success=False, error=str(exc))
        except Exception as exc:
            logger.exception("task %s crashed", task_id)
            return RetryOutcome(success=False, error=f"{type(exc).__name__}: {exc}")

    def _settle(
        self,
        graph: DependencyGraph,
        task_id: str,
        outcome: RetryOutcome,
        monitor: ActivityMonitor | None,
    ) -> None:
        graph.annotate(
            task_id,
            retry_count=outcome.retry_count,
            kill_reason=outcome.kill_reason,
            output=outcome.output,
        )
        record = graph.get(task_id)
        if outcome.success:
            promoted = graph.mark_succeeded(task_id)
            logger.info("task %s succeeded (retries=%d)", task_id, outcome.retry_count)
            self._emit(
                {
                    "event": "task_succeeded",
                    "task_id": task_id,
                    "retry_count": outcome.retry_count,
                    "unblocked": promoted,
                }
            )
            notify(monitor, "complete_job", task_id, True)
            self._finished(record)
            return

        reason = outcome.error or "failed"
        skipped = graph.mark_failed(task_id, reason)
        logger.warning("task %s failed: %s", task_id, reason)
        self._emit(
            {
                "event": "task_failed",
                "task_id": task_id,
                "reason": reason,
                "retry_count": outcome.retry_count,
                "kill_reason": outcome.kill_reason,
                "skipped": skipped,
            }
        )
        notify(monitor, "complete_job", task_id, False)
        self._finished(record)
        for skipped_id in skipped:
            self._emit(
                {
                    "event": "task_skipped",
                    "task_id": skipped_id,
                    "reason": f"dependency_failed:{task_id}",
                }
            )
            self._finished(graph.get(skipped_id))

    async def run_with_dependencies(
        self,
        items: DependencyGraph | Iterable[TaskSpec | Mapping[str, Any]],
        config: RunConfig | None = None,
    ) -> RunReport:
        config = config or RunConfig()
        graph = items if isinstance(items, DependencyGraph) else DependencyGraph(items)
        workspaces = self._workspace_manager(config)
        concurrency = max(1, int(config.max_concurrency))
        if not config.use_isolated_workspaces and concurrency > 1:
            logger.info("shared workspace mode, running one task at a time")
            concurrency = 1

        supervisor = RetrySupervisor(
            config.retry,
            config.thresholds,
            monitor=config.monitor,
            event_hook=self.event_hook,
        )
        run_id = f"run-{datetime.now(UTC).strftime('%Y%m%d%H%M%S')}-{uuid4().hex[:8]}"
        started_at = utcnow_iso()
        self.running_count = 0
        self.max_running_observed = 0
        self._emit(
            {
                "event": "run_started",
                "run_id": run_id,
                "total_tasks": len(graph),
                "max_concurrency": concurrency,
            }
        )

        in_flight: dict[asyncio.Task[RetryOutcome], str] = {}
        try:
            while True:
                while len(in_flight) < concurrency:
                    record = graph.claim_next()
                    if record is None:
                        break
                    self.running_count += 1
                    self.max_running_observed = max(self.max_running_observed, self.running_count)
                    self._emit({"event": "task_started", "task_id": record.id})
                    notify(config.monitor, "start_job", record.id)
                    task = asyncio.create_task(self._run_task(record, workspaces, supervisor))
                    in_flight[task] = record.id

                if not in_flight:
                    break

                done, _ = await asyncio.wait(in_flight, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    task_id = in_flight.pop(task)
                    self.running_count -= 1
                    self._settle(graph, task_id, task.result(), config.monitor)
        finally:
            for task in in_flight:
                task.cancel()
            if in_flight:
                await asyncio.gather(*in_flight, return_exceptions=True)

        report = RunReport(
            run_id=run_id,
            started_at=started_at,
            finished_at=utcnow_iso(),
            tasks=graph.records(),
            max_running_observed=self.max_running_observed,
        )
        self._emit({"event": "run_finished", **report.to_dict()})
        return report
