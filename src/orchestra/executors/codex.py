from __future__ import annotations

import json
from typing import Any

from orchestra.executors.base import ActivityEvent
from orchestra.executors.process import JsonStreamParser, ProcessExecutor
from orchestra.payloads import coerce_payload

_TOOL_ITEMS = {"command_execution", "file_change", "mcp_tool_call", "web_search"}


class CodexStreamParser(JsonStreamParser):
    """Classifies ``codex exec --json`` item events."""

    def __init__(self) -> None:
        super().__init__()
        self.messages_text: list[str] = []

    def classify(self, message: dict[str, Any]) -> list[ActivityEvent]:
        event_type = str(message.get("type", ""))
        item = message.get("item")
        if not event_type.startswith("item.") or not isinstance(item, dict):
            return []

        item_type = item.get("type")
        if item_type == "reasoning":
            return [ActivityEvent(kind="thinking")]
        if item_type == "agent_message":
            if event_type != "item.completed":
                return [ActivityEvent(kind="thinking")]
            text = item.get("text")
            if isinstance(text, str) and text:
                self.messages_text.append(text)
            return [ActivityEvent(kind="text", detail=str(text or "")[:200])]
        if item_type in _TOOL_ITEMS:
            if event_type == "item.started":
                return [ActivityEvent(kind="tool_use", detail=str(item_type))]
            if event_type == "item.completed":
                return [ActivityEvent(kind="tool_result", detail=str(item_type))]
        return []

    def output(self) -> str:
        if self.messages_text:
            return self.messages_text[-1].strip()
        return super().output()


class CodexExecutor(ProcessExecutor):
    backend = "codex"

    def __init__(
        self,
        binary: str = "codex",
        model: str | None = None,
        *,
        grace_seconds: float = 5.0,
        env: dict[str, str] | None = None,
    ) -> None:
        super().__init__(parser_factory=CodexStreamParser, grace_seconds=grace_seconds, env=env)
        self.binary = binary
        self.model = model

    def build_command(self, payload: Any) -> list[str]:
        agent_payload = coerce_payload(payload)
        command = [self.binary, "exec", "--json", "--skip-git-repo-check"]
        model = agent_payload.model or self.model
        if model:
            command.extend(["-m", model])
        if agent_payload.kind in {"plan", "design", "review"}:
            command.extend(["--sandbox", "read-only"])
        else:
            command.extend(["--sandbox", "workspace-write"])
        prompt = agent_payload.instruction
        if agent_payload.allowed_tools:
            prompt = (
                f"{prompt}\n\nAllowed tools:\n"
                f"{json.dumps(agent_payload.tools(), ensure_ascii=False)}"
            )
        command.append(prompt)
        return command
