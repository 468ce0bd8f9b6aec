from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from trinity.agents.base import AgentRequest
from trinity.agents.process import EventHook, SubprocessBackend


class CodexBackend(SubprocessBackend):
    name = "codex"

    def __init__(
        self,
        binary: str = "codex",
        working_directory: Path | None = None,
        *,
        model: str | None = None,
        event_hook: EventHook | None = None,
    ) -> None:
        super().__init__(binary, working_directory=working_directory, event_hook=event_hook)
        self.model = model

    def build_command(self, request: AgentRequest) -> list[str]:
        command = [self.binary, "exec", "--json", "--full-auto"]
        requested_model = request.context.get("model") or self.model
        if isinstance(requested_model, str) and requested_model.strip():
            command.extend(["-m", requested_model.strip()])
        command.append(self._build_prompt(request))
        return command

    @staticmethod
    def _build_prompt(request: AgentRequest) -> str:
        parts = [request.render_prompt()]
        context = {key: value for key, value in request.context.items() if key != "model"}
        if context:
            parts.append("Context JSON:")
            parts.append(json.dumps(context, ensure_ascii=False, indent=2))
        return "\n\n".join(parts)

    @staticmethod
    def _extract_content(event: dict[str, Any]) -> str:
        item = event.get("item")
        if isinstance(item, dict) and item.get("type") == "agent_message":
            text = item.get("text")
            if isinstance(text, str):
                return text
        return SubprocessBackend._extract_content(event)
