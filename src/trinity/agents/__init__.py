from trinity.agents.base import (
    AgentBackend,
    AgentExecutionError,
    AgentProcessError,
    AgentRequest,
    Outcome,
    OutcomeKind,
)
from trinity.agents.claude import ClaudeCodeBackend
from trinity.agents.codex import CodexBackend
from trinity.agents.codex_sdk import CodexSDKBackend
from trinity.agents.command import CommandBackend
from trinity.agents.runner import AgentRunner

__all__ = [
    "AgentBackend",
    "AgentExecutionError",
    "AgentProcessError",
    "AgentRequest",
    "AgentRunner",
    "ClaudeCodeBackend",
    "CodexBackend",
    "CodexSDKBackend",
    "CommandBackend",
    "Outcome",
    "OutcomeKind",
]
