from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Literal, get_args

TaskKind = Literal["plan", "design", "implement", "review", "test"]
TASK_KINDS: tuple[str, ...] = get_args(TaskKind)

TOOL_POLICY_ALLOWLIST = {
    "Read",
    "Write",
    "Edit",
    "Bash",
    "Glob",
    "Grep",
}

# Default tool grants per kind. Planning-style kinds only read the tree.
_KIND_TOOLS: dict[str, tuple[str, ...]] = {
    "plan": ("Read", "Glob", "Grep"),
    "design": ("Read", "Glob", "Grep"),
    "implement": ("Read", "Write", "Edit", "Bash", "Glob", "Grep"),
    "review": ("Read", "Bash", "Glob", "Grep"),
    "test": ("Read", "Write", "Edit", "Bash", "Glob", "Grep"),
}


class PayloadError(ValueError):
    """Raised when a task payload cannot be interpreted."""


@dataclass(slots=True, frozen=True)
class AgentPayload:
    kind: TaskKind
    instruction: str
    model: str | None = None
    allowed_tools: tuple[str, ...] | None = None

    def tools(self) -> list[str]:
        if self.allowed_tools:
            return normalize_tools(self.allowed_tools)
        return list(_KIND_TOOLS[self.kind])

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> AgentPayload:
        kind = str(data.get("kind", "implement")).strip().lower()
        if kind not in TASK_KINDS:
            raise PayloadError(
                f"Unsupported task kind '{kind}'. Expected one of: {', '.join(TASK_KINDS)}"
            )
        instruction = str(data.get("instruction", "")).strip()
        if not instruction:
            raise PayloadError("Task payload is missing an instruction.")
        model = data.get("model")
        raw_tools = data.get("allowed_tools")
        return cls(
            kind=kind,  # type: ignore[arg-type]
            instruction=instruction,
            model=str(model).strip() if isinstance(model, str) and model.strip() else None,
            allowed_tools=tuple(normalize_tools(raw_tools)) if raw_tools else None,
        )


def normalize_tools(allowed_tools: Any) -> list[str]:
    normalized = sorted({str(tool).strip() for tool in allowed_tools if str(tool).strip()})
    unknown = [tool for tool in normalized if tool not in TOOL_POLICY_ALLOWLIST]
    if unknown:
        raise PayloadError("Tool policy rejected unknown tools: " + ", ".join(unknown))
    return normalized


def coerce_payload(payload: Any) -> AgentPayload:
    if isinstance(payload, AgentPayload):
        return payload
    if isinstance(payload, Mapping):
        return AgentPayload.from_dict(payload)
    if isinstance(payload, str) and payload.strip():
        return AgentPayload(kind="implement", instruction=payload.strip())
    raise PayloadError(f"Cannot build an agent payload from {type(payload).__name__}.")
