from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
from collections.abc import AsyncIterator, Callable
from pathlib import Path
from typing import Any

from orchestra.executors.base import (
    ActivityEvent,
    ExecutionResult,
    ExecutorHandle,
    ExecutorSpawnError,
)

logger = logging.getLogger(__name__)

STREAM_LIMIT = 16 * 1024 * 1024


def parse_plain_line(line: str) -> list[ActivityEvent]:
    text = line.strip()
    if not text:
        return []
    return [ActivityEvent(kind="text", detail=text[:200])]


class LineParser:
    """Treats every non-empty stdout line as text output."""

    def __init__(self) -> None:
        self.lines: list[str] = []

    def feed(self, line: str) -> list[ActivityEvent]:
        events = parse_plain_line(line)
        if events:
            self.lines.append(line.rstrip("\n"))
        return events

    def output(self) -> str:
        return "\n".join(self.lines).strip()


class JsonStreamParser(LineParser):
    """Base for newline-delimited JSON streams.

    Lines that do not parse are buffered while they look like a truncated
    object; anything else that is not JSON counts as an idle tick.
    """

    def __init__(self) -> None:
        super().__init__()
        self._buffer = ""
        self.messages = 0

    @staticmethod
    def _appears_partial_json(raw: str) -> bool:
        return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")

    def feed(self, line: str) -> list[ActivityEvent]:
        stripped = line.strip()
        if not stripped:
            return []
        candidate = f"{self._buffer}{stripped}" if self._buffer else stripped
        try:
            message = json.loads(candidate)
        except json.JSONDecodeError:
            if self._appears_partial_json(candidate):
                self._buffer = candidate
                return [ActivityEvent(kind="idle_tick")]
            self._buffer = ""
            self.lines.append(stripped)
            return [ActivityEvent(kind="idle_tick", detail=stripped[:200])]
        self._buffer = ""
        self.messages += 1
        if not isinstance(message, dict):
            return [ActivityEvent(kind="idle_tick")]
        events = self.classify(message)
        return events or [ActivityEvent(kind="idle_tick", detail=str(message.get("type", "")))]

    def classify(self, message: dict[str, Any]) -> list[ActivityEvent]:
        raise NotImplementedError


ParserFactory = Callable[[], LineParser]


class ProcessHandle(ExecutorHandle):
    def __init__(
        self,
        process: asyncio.subprocess.Process,
        parser: LineParser,
        *,
        backend: str = "process",
        grace_seconds: float = 5.0,
    ) -> None:
        self.process = process
        self.parser = parser
        self.backend = backend
        self.grace_seconds = grace_seconds
        self._queue: asyncio.Queue[ActivityEvent | None] = asyncio.Queue()
        self._stderr_chunks: list[str] = []
        self._stdout_task = asyncio.create_task(self._read_stdout())
        self._stderr_task = asyncio.create_task(self._drain_stderr())
        self.killed_with: int | None = None

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def running(self) -> bool:
        return self.process.returncode is None

    async def _read_stdout(self) -> None:
        try:
            if self.process.stdout is None:
                return
            async for raw_line in self.process.stdout:
                line = raw_line.decode("utf-8", errors="replace")
                for event in self.parser.feed(line):
                    self._queue.put_nowait(event)
        finally:
            self._queue.put_nowait(None)

    async def _drain_stderr(self) -> None:
        if self.process.stderr is None:
            return
        async for raw_line in self.process.stderr:
            line = raw_line.decode("utf-8", errors="replace")
            self._stderr_chunks.append(line)
            if line.strip():
                self._queue.put_nowait(ActivityEvent(kind="idle_tick", detail="stderr"))

    async def events(self) -> AsyncIterator[ActivityEvent]:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event

    async def wait(self) -> ExecutionResult:
        exit_code = await self.process.wait()
        # readers may have been cancelled by kill()
        await asyncio.gather(
            self._stdout_task,
            self._stderr_task,
            return_exceptions=self.killed_with is not None,
        )
        stderr = "".join(self._stderr_chunks).strip()
        if exit_code != 0:
            logger.debug(
                "%s process %s exited with %s: %s", self.backend, self.pid, exit_code, stderr[:400]
            )
        return ExecutionResult(exit_code=exit_code, output=self.parser.output(), stderr=stderr)

    def _signal_group(self, sig: int) -> None:
        """Signal the worker's whole process group, or just the worker."""
        try:
            os.killpg(self.pid, sig)
        except PermissionError:
            self.process.send_signal(sig)

    async def kill(self, sig: int = signal.SIGTERM) -> None:
        """Stop the worker and every process it started.

        Workers run as session leaders, so their pid is also the process
        group id. Stragglers left in the group after the leader exits get
        SIGKILL; the stream readers are closed before returning.
        """
        if self.process.returncode is not None:
            return
        self.killed_with = sig
        try:
            self._signal_group(sig)
        except ProcessLookupError:
            pass
        try:
            await asyncio.wait_for(self.process.wait(), timeout=self.grace_seconds)
        except TimeoutError:
            logger.warning(
                "%s process %s ignored signal %s for %.1fs, sending SIGKILL",
                self.backend,
                self.pid,
                sig,
                self.grace_seconds,
            )
            try:
                self._signal_group(signal.SIGKILL)
            except ProcessLookupError:
                pass
            await self.process.wait()
        try:
            os.killpg(self.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            pass
        await self._close_readers()

    async def _close_readers(self) -> None:
        readers = (self._stdout_task, self._stderr_task)
        _, pending = await asyncio.wait(readers, timeout=self.grace_seconds)
        for task in pending:
            task.cancel()
        await asyncio.gather(*readers, return_exceptions=True)


class ProcessExecutor:
    """Spawns one worker process per attempt inside the given workspace."""

    backend = "process"

    def __init__(
        self,
        command_builder: Callable[[Any], list[str]] | None = None,
        parser_factory: ParserFactory = LineParser,
        *,
        grace_seconds: float = 5.0,
        env: dict[str, str] | None = None,
    ) -> None:
        self.command_builder = command_builder
        self.parser_factory = parser_factory
        self.grace_seconds = grace_seconds
        self.env = env

    def build_command(self, payload: Any) -> list[str]:
        if self.command_builder is None:
            raise NotImplementedError("ProcessExecutor needs a command builder.")
        return self.command_builder(payload)

    def build_env(self, payload: Any) -> dict[str, str]:
        env = os.environ.copy()
        if self.env:
            env.update(self.env)
        return env

    async def __call__(self, workspace: Path, payload: Any) -> ProcessHandle:
        command = self.build_command(payload)
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(workspace),
                env=self.build_env(payload),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT,
                start_new_session=True,
            )
        except FileNotFoundError as exc:
            raise ExecutorSpawnError(
                f"{self.backend} binary not found: {command[0]}",
                backend=self.backend,
            ) from exc
        except OSError as exc:
            raise ExecutorSpawnError(
                f"Failed to spawn {self.backend} process: {exc}",
                backend=self.backend,
            ) from exc
        logger.debug("spawned %s pid=%s in %s", self.backend, process.pid, workspace)
        return ProcessHandle(
            process,
            self.parser_factory(),
            backend=self.backend,
            grace_seconds=self.grace_seconds,
        )
