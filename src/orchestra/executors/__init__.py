from __future__ import annotations

from typing import Any

from orchestra.executors.base import (
    ActivityEvent,
    ActivityKind,
    ExecutionResult,
    ExecutorError,
    ExecutorFactory,
    ExecutorHandle,
    ExecutorSpawnError,
)
from orchestra.executors.claude import ClaudeCodeExecutor, ClaudeStreamParser
from orchestra.executors.codex import CodexExecutor, CodexStreamParser
from orchestra.executors.process import (
    JsonStreamParser,
    LineParser,
    ProcessExecutor,
    ProcessHandle,
    parse_plain_line,
)
from orchestra.payloads import coerce_payload

BACKENDS = ("claude", "codex", "process")


def _template_builder(template: list[str]):
    def build(payload: Any) -> list[str]:
        agent_payload = coerce_payload(payload)
        return [
            part.replace("{instruction}", agent_payload.instruction).replace(
                "{kind}", agent_payload.kind
            )
            for part in template
        ]

    return build


def build_executor(settings: Any) -> ProcessExecutor:
    """Create the executor named by an ``[executor]`` settings section."""
    backend = str(getattr(settings, "backend", "claude")).strip().lower()
    binary = getattr(settings, "binary", None)
    model = getattr(settings, "model", None) or None
    grace = float(getattr(settings, "kill_grace_seconds", 5.0))

    if backend == "claude":
        return ClaudeCodeExecutor(binary=binary or "claude", model=model, grace_seconds=grace)
    if backend == "codex":
        return CodexExecutor(binary=binary or "codex", model=model, grace_seconds=grace)
    if backend == "process":
        template = list(getattr(settings, "command", None) or [])
        if not template:
            raise ExecutorError(
                "The process backend needs an executor.command template.",
                backend="process",
                retriable=False,
            )
        return ProcessExecutor(_template_builder(template), grace_seconds=grace)
    raise ExecutorError(
        f"Unsupported executor backend '{backend}'. Expected one of: {', '.join(BACKENDS)}",
        backend=backend,
        retriable=False,
    )


__all__ = [
    "BACKENDS",
    "ActivityEvent",
    "ActivityKind",
    "ClaudeCodeExecutor",
    "ClaudeStreamParser",
    "CodexExecutor",
    "CodexStreamParser",
    "ExecutionResult",
    "ExecutorError",
    "ExecutorFactory",
    "ExecutorHandle",
    "ExecutorSpawnError",
    "JsonStreamParser",
    "LineParser",
    "ProcessExecutor",
    "ProcessHandle",
    "build_executor",
    "parse_plain_line",
]
