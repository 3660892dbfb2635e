from __future__ import annotations

from typing import Any

from orchestra.executors.base import ActivityEvent
from orchestra.executors.process import JsonStreamParser, ProcessExecutor
from orchestra.payloads import AgentPayload, coerce_payload

# Planning-style kinds get the larger model unless the payload names one.
_KIND_MODELS: dict[str, str | None] = {
    "plan": "opus",
    "design": "opus",
    "implement": None,
    "review": None,
    "test": None,
}


class ClaudeStreamParser(JsonStreamParser):
    """Classifies ``--output-format stream-json`` messages."""

    def __init__(self) -> None:
        super().__init__()
        self.texts: list[str] = []
        self.result: str | None = None
        self.is_error = False

    def classify(self, message: dict[str, Any]) -> list[ActivityEvent]:
        message_type = message.get("type")
        if message_type == "result":
            result = message.get("result")
            if isinstance(result, str):
                self.result = result
            self.is_error = bool(message.get("is_error"))
            return []
        if message_type not in {"assistant", "user"}:
            return []

        body = message.get("message")
        content = body.get("content") if isinstance(body, dict) else None
        if not isinstance(content, list):
            return []

        events: list[ActivityEvent] = []
        for block in content:
            if not isinstance(block, dict):
                continue
            block_type = block.get("type")
            if block_type in {"thinking", "redacted_thinking"}:
                events.append(ActivityEvent(kind="thinking"))
            elif block_type == "text":
                text = block.get("text")
                if isinstance(text, str) and text:
                    self.texts.append(text)
                events.append(ActivityEvent(kind="text", detail=str(text or "")[:200]))
            elif block_type == "tool_use":
                events.append(ActivityEvent(kind="tool_use", detail=str(block.get("name", ""))))
            elif block_type == "tool_result":
                events.append(ActivityEvent(kind="tool_result"))
        return events

    def output(self) -> str:
        if self.result is not None:
            return self.result.strip()
        return "".join(self.texts).strip()


class ClaudeCodeExecutor(ProcessExecutor):
    backend = "claude"

    def __init__(
        self,
        binary: str = "claude",
        model: str | None = None,
        *,
        grace_seconds: float = 5.0,
        skip_permissions: bool = True,
        env: dict[str, str] | None = None,
    ) -> None:
        super().__init__(parser_factory=ClaudeStreamParser, grace_seconds=grace_seconds, env=env)
        self.binary = binary
        self.model = model
        self.skip_permissions = skip_permissions

    def model_for(self, payload: AgentPayload) -> str | None:
        return payload.model or self.model or _KIND_MODELS.get(payload.kind)

    def build_command(self, payload: Any) -> list[str]:
        agent_payload = coerce_payload(payload)
        command = [
            self.binary,
            "-p",
            agent_payload.instruction,
            "--output-format",
            "stream-json",
            "--verbose",
        ]
        if self.skip_permissions:
            command.append("--dangerously-skip-permissions")
        model = self.model_for(agent_payload)
        if model:
            command.extend(["--model", model])
        tools = agent_payload.tools()
        if tools:
            command.extend(["--allowed-tools", ",".join(tools)])
        return command

    def build_env(self, payload: Any) -> dict[str, str]:
        env = super().build_env(payload)
        env["CLAUDE_CODE_ENTRYPOINT"] = "orchestra"
        return env
