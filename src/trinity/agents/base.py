from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class AgentExecutionError(RuntimeError):
    """Raised when an agent invocation fails."""

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


class AgentProcessError(AgentExecutionError):
    """Raised when the agent process cannot be started or supervised."""


class OutcomeKind(StrEnum):
    SUCCESS = "success"
    AGENT_FAILURE = "agent_failure"
    TIMEOUT = "timeout"
    CRASHED_PROCESS = "crashed_process"


@dataclass(frozen=True, slots=True)
class Outcome:
    """Result of one agent invocation for one work item."""

    kind: OutcomeKind
    reason: str = ""
    exit_code: int | None = None

    @classmethod
    def success(cls, reason: str = "") -> Outcome:
        return cls(OutcomeKind.SUCCESS, reason=reason)

    @classmethod
    def agent_failure(cls, reason: str) -> Outcome:
        return cls(OutcomeKind.AGENT_FAILURE, reason=reason)

    @classmethod
    def timeout(cls, seconds: float) -> Outcome:
        return cls(OutcomeKind.TIMEOUT, reason=f"timed out after {seconds:.1f}s")

    @classmethod
    def crashed(cls, exit_code: int, detail: str = "") -> Outcome:
        return cls(OutcomeKind.CRASHED_PROCESS, reason=detail, exit_code=exit_code)

    @property
    def is_success(self) -> bool:
        return self.kind is OutcomeKind.SUCCESS

    @property
    def diagnostic(self) -> str:
        if self.kind is OutcomeKind.CRASHED_PROCESS:
            prefix = f"exit code {self.exit_code}"
            return f"{prefix}: {self.reason}" if self.reason else prefix
        return self.reason


@dataclass(slots=True)
class AgentRequest:
    item_id: str
    description: str
    title: str = ""
    context: dict[str, Any] = field(default_factory=dict)

    def render_prompt(self) -> str:
        parts: list[str] = []
        if self.title:
            parts.append(f"# {self.title}")
        parts.append(self.description.strip())
        parts.append(
            "When the work item is fully implemented, reply with "
            f'<item-done id="{self.item_id}">summary</item-done>. '
            "If it cannot be completed, reply with "
            f'<item-failed id="{self.item_id}">reason</item-failed>.'
        )
        return "\n\n".join(parts)


class AgentBackend(ABC):
    name: str = "agent"

    @abstractmethod
    async def execute(self, request: AgentRequest) -> AsyncIterator[str]:
        """Run the agent for one request and stream textual chunks.

        Implementations raise ``AgentExecutionError`` when the agent exits
        abnormally and must not leave a child process running once the
        iterator is closed or cancelled.
        """
