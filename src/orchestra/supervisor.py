from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from orchestra.detector import StuckDetector, StuckStatus, StuckThresholds
from orchestra.executors.base import ExecutionResult, ExecutorHandle, ExecutorSpawnError
from orchestra.graph import KillReason
from orchestra.monitor import ActivityMonitor, notify

logger = logging.getLogger(__name__)

SupervisorEventHook = Callable[[dict[str, Any]], None]
LaunchFn = Callable[[int], Awaitable[ExecutorHandle]]
AttemptEndFn = Callable[[int], Awaitable[None] | None]


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 3
    check_interval_seconds: float = 1.0
    backoff_seconds: float = 0.0

    def delay_for(self, retry: int) -> float:
        if retry <= 0 or self.backoff_seconds <= 0:
            return 0.0
        return self.backoff_seconds * (2 ** (retry - 1))


@dataclass(slots=True)
class RetryOutcome:
    success: bool
    output: str = ""
    retry_count: int = 0
    was_killed: bool = False
    kill_reason: KillReason | None = None
    exit_code: int | None = None
    error: str | None = None
    stderr: str = ""


class RetrySupervisor:
    """Runs attempts of one task, killing and restarting stuck processes.

    Each attempt selects over two tasks: the execution (drain events, then
    wait for exit) and a watchdog polling the stuck detector. Whichever
    finishes first decides the attempt.
    """

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        thresholds: StuckThresholds | None = None,
        *,
        detector: StuckDetector | None = None,
        monitor: ActivityMonitor | None = None,
        event_hook: SupervisorEventHook | None = None,
    ) -> None:
        self.policy = policy or RetryPolicy()
        self.detector = detector or StuckDetector(thresholds)
        self.monitor = monitor
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    async def _pump(self, task_id: str, handle: ExecutorHandle) -> None:
        async for event in handle.events():
            self.detector.observe(task_id, event)
            notify(self.monitor, "report_activity", task_id, event)

    async def _execute(self, handle: ExecutorHandle, pump: asyncio.Task[None]) -> ExecutionResult:
        result = await handle.wait()
        await pump
        return result

    async def _watch(self, task_id: str) -> StuckStatus:
        while True:
            await asyncio.sleep(self.policy.check_interval_seconds)
            status = self.detector.poll(task_id)
            if status.stuck:
                return status
            if status.warning:
                self._emit(
                    {
                        "event": "attempt_warning",
                        "task_id": task_id,
                        "reason": status.reason,
                        "seconds_since_activity": round(status.seconds_since_activity, 3),
                    }
                )
                notify(
                    self.monitor,
                    "report_stuck_warning",
                    task_id,
                    status.seconds_since_activity,
                )

    async def _supervise(
        self, task_id: str, handle: ExecutorHandle
    ) -> ExecutionResult | StuckStatus:
        pump = asyncio.create_task(self._pump(task_id, handle))
        execution = asyncio.create_task(self._execute(handle, pump))
        watchdog = asyncio.create_task(self._watch(task_id))
        try:
            done, _ = await asyncio.wait(
                {execution, watchdog}, return_when=asyncio.FIRST_COMPLETED
            )
            if execution in done:
                return execution.result()
            status = watchdog.result()
            await handle.kill()
            return status
        except asyncio.CancelledError:
            await handle.kill()
            raise
        finally:
            for task in (watchdog, execution, pump):
                if not task.done():
                    task.cancel()
            await asyncio.gather(watchdog, execution, pump, return_exceptions=True)

    async def _attempt(
        self, task_id: str, launch: LaunchFn, attempt: int
    ) -> ExecutionResult | StuckStatus:
        self.detector.start_tracking(task_id)
        try:
            handle = await launch(attempt)
            return await self._supervise(task_id, handle)
        finally:
            self.detector.stop_tracking(task_id)

    @staticmethod
    async def _end_attempt(on_attempt_end: AttemptEndFn | None, attempt: int) -> None:
        if on_attempt_end is None:
            return
        maybe_awaitable = on_attempt_end(attempt)
        if inspect.isawaitable(maybe_awaitable):
            await maybe_awaitable

    async def invoke(
        self,
        task_id: str,
        launch: LaunchFn,
        *,
        on_attempt_end: AttemptEndFn | None = None,
    ) -> RetryOutcome:
        """Run ``launch`` until an attempt exits or the retry budget is spent.

        ``retry_count`` counts restarts, so a task is attempted at most
        ``max_retries + 1`` times. A non-zero exit is final. Exceptions other
        than spawn failures propagate after ``on_attempt_end`` ran.
        """
        max_retries = max(0, self.policy.max_retries)
        retry_count = 0
        was_killed = False
        kill_reason: KillReason | None = None
        last_error: str | None = None

        while True:
            attempt = retry_count
            delay = self.policy.delay_for(retry_count)
            if delay:
                await asyncio.sleep(delay)
            self._emit({"event": "attempt_started", "task_id": task_id, "attempt": attempt})

            spawn_retriable = True
            try:
                result = await self._attempt(task_id, launch, attempt)
            except ExecutorSpawnError as exc:
                result = None
                last_error = str(exc)
                spawn_retriable = exc.retriable
                self._emit(
                    {
                        "event": "attempt_spawn_failed",
                        "task_id": task_id,
                        "attempt": attempt,
                        "error": last_error,
                        "retriable": exc.retriable,
                    }
                )
                logger.warning("task %s attempt %d failed to spawn: %s", task_id, attempt, exc)
            finally:
                await self._end_attempt(on_attempt_end, attempt)

            if result is None:
                if not spawn_retriable:
                    return RetryOutcome(
                        success=False,
                        retry_count=retry_count,
                        was_killed=was_killed,
                        kill_reason=kill_reason,
                        error=last_error,
                    )
            elif isinstance(result, StuckStatus):
                was_killed = True
                kill_reason = result.reason
                last_error = (
                    f"Killed after {result.seconds_since_activity:.1f}s without progress "
                    f"({kill_reason})."
                )
                self._emit(
                    {
                        "event": "attempt_stuck",
                        "task_id": task_id,
                        "attempt": attempt,
                        "reason": kill_reason,
                    }
                )
                logger.warning("task %s attempt %d stuck: %s", task_id, attempt, kill_reason)
            else:
                self._emit(
                    {
                        "event": "attempt_finished",
                        "task_id": task_id,
                        "attempt": attempt,
                        "exit_code": result.exit_code,
                    }
                )
                error = None
                if result.exit_code != 0:
                    error = f"Worker exited with code {result.exit_code}"
                    if result.stderr:
                        error = f"{error}: {result.stderr[:400]}"
                return RetryOutcome(
                    success=result.exit_code == 0,
                    output=result.output,
                    retry_count=retry_count,
                    was_killed=was_killed,
                    kill_reason=kill_reason,
                    exit_code=result.exit_code,
                    error=error,
                    stderr=result.stderr,
                )

            if retry_count >= max_retries:
                if was_killed and result is not None:
                    last_error = (
                        f"Task stuck after {retry_count} retries. Last reason: {kill_reason}"
                    )
                return RetryOutcome(
                    success=False,
                    retry_count=retry_count,
                    was_killed=was_killed,
                    kill_reason=kill_reason,
                    error=last_error,
                )

            retry_count += 1
            self._emit(
                {
                    "event": "attempt_retry",
                    "task_id": task_id,
                    "retry": retry_count,
                    "max_retries": max_retries,
                }
            )
            notify(self.monitor, "report_retry", task_id, retry_count, max_retries)
