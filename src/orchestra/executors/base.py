from __future__ import annotations

import signal
import time
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

ActivityKind = Literal["idle_tick", "thinking", "text", "tool_use", "tool_result"]


class ExecutorError(RuntimeError):
    """Raised when an executor cannot drive its worker process."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code
        self.retriable = retriable


class ExecutorSpawnError(ExecutorError):
    """Raised when the worker process could not be started."""


@dataclass(slots=True, frozen=True)
class ActivityEvent:
    kind: ActivityKind
    at: float = field(default_factory=time.monotonic)
    detail: str = ""


@dataclass(slots=True)
class ExecutionResult:
    exit_code: int
    output: str
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class ExecutorHandle(ABC):
    """Live handle on one worker process.

    ``events()`` yields activity until the process closes its output;
    ``wait()`` returns the terminal result and never raises for a non-zero
    exit code.
    """

    @property
    @abstractmethod
    def running(self) -> bool:
        """Whether the worker process is still alive."""

    @abstractmethod
    def events(self) -> AsyncIterator[ActivityEvent]:
        """Stream classified activity events."""

    @abstractmethod
    async def wait(self) -> ExecutionResult:
        """Wait for process exit and return its result."""

    @abstractmethod
    async def kill(self, sig: int = signal.SIGTERM) -> None:
        """Terminate the process, escalating to a forceful kill."""


ExecutorFactory = Callable[[Path, Any], Awaitable[ExecutorHandle]]
