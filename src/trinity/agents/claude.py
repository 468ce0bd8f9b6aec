from __future__ import annotations

from pathlib import Path
from typing import Any

from trinity.agents.base import AgentRequest
from trinity.agents.process import EventHook, SubprocessBackend


class ClaudeCodeBackend(SubprocessBackend):
    name = "claude"

    def __init__(
        self,
        binary: str = "claude",
        working_directory: Path | None = None,
        *,
        model: str | None = None,
        event_hook: EventHook | None = None,
    ) -> None:
        super().__init__(binary, working_directory=working_directory, event_hook=event_hook)
        self.model = model

    def build_command(self, request: AgentRequest) -> list[str]:
        command = [
            self.binary,
            "-p",
            request.render_prompt(),
            "--output-format",
            "stream-json",
            "--verbose",
            "--dangerously-skip-permissions",
        ]
        if self.model:
            command.extend(["--model", self.model])
        return command

    @staticmethod
    def _extract_content(event: dict[str, Any]) -> str:
        # The closing result event repeats the assistant text.
        if event.get("type") == "result":
            return ""
        return SubprocessBackend._extract_content(event)

    def _event_error(self, event: dict[str, Any]) -> str | None:
        if event.get("type") != "result" or not event.get("is_error"):
            return None
        result = event.get("result")
        subtype = event.get("subtype") or "error"
        return f"{subtype}: {result}" if isinstance(result, str) and result else str(subtype)
