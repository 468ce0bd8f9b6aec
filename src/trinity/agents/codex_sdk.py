from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import openai

from trinity.agents.base import AgentBackend, AgentExecutionError, AgentRequest
from trinity.agents.codex import CodexBackend
from trinity.agents.process import EventHook


class CodexSDKBackend(AgentBackend):
    """Responses API backend with automatic fallback to the Codex CLI."""

    name = "codex_sdk"

    def __init__(
        self,
        *,
        model: str = "gpt-5-codex",
        working_directory: Path | None = None,
        event_hook: EventHook | None = None,
    ) -> None:
        self.model = model
        self.working_directory = working_directory
        self.event_hook = event_hook
        self.cli_fallback = CodexBackend(
            working_directory=working_directory, model=model, event_hook=event_hook
        )
        self._client: Any | None
        try:
            self._client = openai.OpenAI()
        except openai.OpenAIError:
            self._client = None

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    @staticmethod
    def _extract_text(payload: Any) -> str:
        if payload is None:
            return ""
        output_text = getattr(payload, "output_text", None)
        if isinstance(output_text, str):
            return output_text
        if isinstance(payload, dict):
            value = payload.get("output_text")
            if isinstance(value, str):
                return value
        return str(output_text or "")

    async def execute(self, request: AgentRequest) -> AsyncIterator[str]:
        requested_model = request.context.get("model")
        model_name = (
            requested_model.strip()
            if isinstance(requested_model, str) and requested_model.strip()
            else self.model
        )
        if self._client is None:
            self._emit({"event": "codex_sdk_cli_fallback", "item_id": request.item_id})
            async for chunk in self.cli_fallback.execute(request):
                yield chunk
            return

        def _request() -> Any:
            return self._client.responses.create(
                model=model_name,
                input=[{"role": "user", "content": request.render_prompt()}],
            )

        self._emit({"event": "codex_sdk_request", "item_id": request.item_id, "model": model_name})
        try:
            payload = await asyncio.to_thread(_request)
        except openai.APIStatusError as exc:
            raise AgentExecutionError(
                f"Codex SDK request failed with HTTP {exc.status_code}: {exc.message}",
                backend=self.name,
                retriable=True,
            ) from exc
        except openai.OpenAIError as exc:
            raise AgentExecutionError(
                f"Codex SDK execution failed: {exc}",
                backend=self.name,
                retriable=True,
            ) from exc

        content = self._extract_text(payload).strip()
        if content:
            yield content
