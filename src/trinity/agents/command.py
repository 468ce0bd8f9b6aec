from __future__ import annotations

from pathlib import Path

from trinity.agents.base import AgentRequest
from trinity.agents.process import EventHook, SubprocessBackend


class CommandBackend(SubprocessBackend):
    """Any executable that reads the work item prompt on stdin."""

    name = "command"

    def __init__(
        self,
        command: list[str],
        working_directory: Path | None = None,
        *,
        event_hook: EventHook | None = None,
    ) -> None:
        if not command:
            raise ValueError("Command agent requires a non-empty argv.")
        super().__init__(command[0], working_directory=working_directory, event_hook=event_hook)
        self.command = list(command)

    def build_command(self, request: AgentRequest) -> list[str]:
        return [part.replace("{item_id}", request.item_id) for part in self.command]

    def stdin_payload(self, request: AgentRequest) -> bytes | None:
        return request.render_prompt().encode("utf-8")
