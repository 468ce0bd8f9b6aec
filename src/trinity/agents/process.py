from __future__ import annotations

import asyncio
import json
import os
import signal
from collections.abc import AsyncIterator, Callable
from pathlib import Path
from typing import Any

from trinity.agents.base import AgentBackend, AgentExecutionError, AgentProcessError, AgentRequest

EventHook = Callable[[dict[str, Any]], None]

# stream-json tool results routinely exceed asyncio's 64 KiB default line limit.
STREAM_LINE_LIMIT = 16 * 1024 * 1024


async def terminate_process(process: asyncio.subprocess.Process) -> None:
    """Kill the agent and every process it spawned, then reap it."""
    if process.returncode is None:
        try:
            if hasattr(os, "killpg"):
                os.killpg(process.pid, signal.SIGKILL)
            else:
                process.kill()
        except ProcessLookupError:
            pass
        except PermissionError:
            process.kill()
    await process.wait()


class SubprocessBackend(AgentBackend):
    """Runs an agent CLI as a child process and streams its stdout."""

    name = "process"

    def __init__(
        self,
        binary: str,
        working_directory: Path | None = None,
        event_hook: EventHook | None = None,
    ) -> None:
        self.binary = binary
        self.working_directory = working_directory
        self.event_hook = event_hook

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    def build_command(self, request: AgentRequest) -> list[str]:
        raise NotImplementedError

    def stdin_payload(self, request: AgentRequest) -> bytes | None:
        return None

    @staticmethod
    def _extract_content(event: dict[str, Any]) -> str:
        content = event.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            parts: list[str] = []
            for item in content:
                if isinstance(item, dict):
                    text = item.get("text")
                    if isinstance(text, str):
                        parts.append(text)
            return "".join(parts)

        delta = event.get("delta")
        if isinstance(delta, str):
            return delta

        message = event.get("message")
        if isinstance(message, str):
            return message
        if isinstance(message, dict):
            return SubprocessBackend._extract_content(message)

        return ""

    def _event_error(self, event: dict[str, Any]) -> str | None:
        return None

    @staticmethod
    def _appears_partial_json(raw: str) -> bool:
        return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")

    async def _read_lines(self, stream: asyncio.StreamReader) -> AsyncIterator[bytes]:
        while True:
            try:
                raw_line = await stream.readline()
            except (ValueError, OSError) as exc:
                # readline raises ValueError once a line outgrows the stream limit.
                raise AgentExecutionError(
                    f"{self.name} agent output could not be read: {exc}",
                    backend=self.name,
                    retriable=True,
                ) from exc
            if not raw_line:
                return
            yield raw_line

    async def execute(self, request: AgentRequest) -> AsyncIterator[str]:
        command = self.build_command(request)
        payload = self.stdin_payload(request)
        self._emit(
            {
                "event": "agent_process_start",
                "backend": self.name,
                "item_id": request.item_id,
                "command": command[:3],
            }
        )
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.working_directory) if self.working_directory else None,
                stdin=asyncio.subprocess.PIPE if payload is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
                limit=STREAM_LINE_LIMIT,
            )
        except FileNotFoundError as exc:
            raise AgentProcessError(
                f"Agent binary not found: {command[0]}",
                backend=self.name,
                exit_code=127,
                retriable=False,
            ) from exc

        stderr_task: asyncio.Task[bytes] | None = None
        try:
            if process.stdout is None or process.stderr is None:
                raise AgentProcessError(
                    f"{self.name} agent did not expose its output streams.",
                    backend=self.name,
                    retriable=False,
                )
            stderr_task = asyncio.create_task(process.stderr.read())

            if payload is not None and process.stdin is not None:
                try:
                    process.stdin.write(payload)
                    await process.stdin.drain()
                    process.stdin.close()
                except (BrokenPipeError, ConnectionResetError):
                    # The agent exited before reading its input; its exit status reports it.
                    self._emit({"event": "agent_stdin_closed", "item_id": request.item_id})

            event_error: str | None = None
            parse_buffer = ""
            async for raw_line in self._read_lines(process.stdout):
                line = raw_line.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                candidate = f"{parse_buffer}{line}" if parse_buffer else line
                try:
                    event = json.loads(candidate)
                    parse_buffer = ""
                except json.JSONDecodeError:
                    if candidate.startswith(("{", "[")) and self._appears_partial_json(candidate):
                        parse_buffer = candidate
                        continue
                    parse_buffer = ""
                    yield f"{line}\n"
                    continue

                if not isinstance(event, dict):
                    yield f"{line}\n"
                    continue
                event_error = self._event_error(event) or event_error
                content = self._extract_content(event)
                if content:
                    yield content

            if parse_buffer:
                yield parse_buffer

            return_code = await process.wait()
            stderr_output = (await stderr_task).decode("utf-8", errors="replace").strip()
            self._emit(
                {
                    "event": "agent_process_exit",
                    "backend": self.name,
                    "item_id": request.item_id,
                    "exit_code": return_code,
                    "stderr": stderr_output[:400],
                }
            )
            if return_code != 0:
                raise AgentExecutionError(
                    f"{self.name} agent failed with exit code {return_code}: {stderr_output}",
                    backend=self.name,
                    exit_code=return_code,
                    retriable=True,
                )
            if event_error:
                raise AgentExecutionError(
                    f"{self.name} agent reported an error: {event_error}",
                    backend=self.name,
                    retriable=True,
                )
        finally:
            if stderr_task is not None and not stderr_task.done():
                stderr_task.cancel()
            await terminate_process(process)
