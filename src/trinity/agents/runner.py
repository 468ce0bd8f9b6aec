from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from trinity.agents.base import AgentBackend, AgentExecutionError, AgentRequest, Outcome
from trinity.agents.signals import SignalType, final_signal

if TYPE_CHECKING:
    from trinity.state.backlog import WorkItem

RunnerEventHook = Callable[[dict[str, Any]], None]


class AgentRunner:
    """Runs one work item through an agent backend and classifies the result."""

    def __init__(
        self,
        backend: AgentBackend,
        *,
        require_completion_signal: bool = True,
        context: dict[str, Any] | None = None,
        event_hook: RunnerEventHook | None = None,
    ) -> None:
        self.backend = backend
        self.require_completion_signal = require_completion_signal
        self.context = dict(context or {})
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    async def _collect(self, request: AgentRequest) -> str:
        chunks: list[str] = []
        async for chunk in self.backend.execute(request):
            chunks.append(chunk)
        return "".join(chunks)

    def _classify(self, item_id: str, content: str) -> Outcome:
        signal = final_signal(content, item_id)
        if signal is None:
            if self.require_completion_signal:
                return Outcome.agent_failure("agent exited without a completion signal")
            return Outcome.success()
        if signal.signal_type is SignalType.DONE:
            return Outcome.success(signal.content[:2000])
        return Outcome.agent_failure(signal.content[:2000] or "agent reported failure")

    async def run(self, item: WorkItem, timeout: float) -> Outcome:
        request = AgentRequest(
            item_id=item.id,
            description=item.description,
            title=item.title,
            context=dict(self.context),
        )
        self._emit({"event": "agent_run_start", "item_id": item.id, "backend": self.backend.name})
        try:
            content = await asyncio.wait_for(self._collect(request), timeout=timeout)
        except TimeoutError:
            outcome = Outcome.timeout(timeout)
        except AgentExecutionError as exc:
            if exc.exit_code is not None:
                outcome = Outcome.crashed(exc.exit_code, str(exc)[:2000])
            else:
                outcome = Outcome.agent_failure(str(exc)[:2000])
        else:
            outcome = self._classify(item.id, content)

        self._emit(
            {
                "event": "agent_run_end",
                "item_id": item.id,
                "outcome": outcome.kind.value,
                "exit_code": outcome.exit_code,
            }
        )
        return outcome
