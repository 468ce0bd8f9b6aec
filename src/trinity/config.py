from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

AgentKind = Literal["claude", "codex", "codex_sdk", "command"]
DispatchOrder = Literal["fewest_attempts", "insertion"]

AGENT_KINDS: tuple[str, ...] = ("claude", "codex", "codex_sdk", "command")
DISPATCH_ORDERS: tuple[str, ...] = ("fewest_attempts", "insertion")


class ConfigError(ValueError):
    """Raised when trinity.toml cannot be parsed or holds invalid values."""


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-project"
    prd_path: str = "prd.json"


@dataclass(slots=True)
class AgentConfig:
    kind: AgentKind = "claude"
    binary: str = ""
    model: str = ""
    command: list[str] = field(default_factory=list)
    require_completion_signal: bool = True


@dataclass(slots=True)
class LoopConfig:
    concurrency_limit: int = 1
    max_attempts_per_item: int = 3
    per_attempt_timeout_seconds: float = 1800.0
    dispatch_order: DispatchOrder = "fewest_attempts"
    block_after_consecutive_crashes: int = 2
    halt_after_failed_items: int = 0


@dataclass(slots=True)
class StateConfig:
    directory: str = ".trinity/state"
    persist_retries: int = 3
    persist_backoff_seconds: float = 0.5


@dataclass(slots=True)
class TrinityConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    loop: LoopConfig = field(default_factory=LoopConfig)
    state: StateConfig = field(default_factory=StateConfig)

    @classmethod
    def default(cls) -> TrinityConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> TrinityConfig:
        try:
            config = cls(
                project=ProjectConfig(**data.get("project", {})),
                agent=AgentConfig(**data.get("agent", {})),
                loop=LoopConfig(**data.get("loop", {})),
                state=StateConfig(**data.get("state", {})),
            )
        except TypeError as exc:
            raise ConfigError(f"Unknown configuration key: {exc}") from exc
        config.validate()
        return config

    def validate(self) -> None:
        if self.agent.kind not in AGENT_KINDS:
            raise ConfigError(f"Unsupported agent kind: {self.agent.kind}")
        if self.agent.kind == "command" and not self.agent.command:
            raise ConfigError("agent.command must list the executable for the command agent.")
        if self.loop.dispatch_order not in DISPATCH_ORDERS:
            raise ConfigError(f"Unsupported dispatch order: {self.loop.dispatch_order}")
        if self.loop.concurrency_limit < 1:
            raise ConfigError("loop.concurrency_limit must be at least 1.")
        if self.loop.max_attempts_per_item < 1:
            raise ConfigError("loop.max_attempts_per_item must be at least 1.")
        if self.loop.per_attempt_timeout_seconds <= 0:
            raise ConfigError("loop.per_attempt_timeout_seconds must be positive.")
        if self.loop.block_after_consecutive_crashes < 0:
            raise ConfigError("loop.block_after_consecutive_crashes must not be negative.")
        if self.loop.halt_after_failed_items < 0:
            raise ConfigError("loop.halt_after_failed_items must not be negative.")
        if self.state.persist_retries < 0:
            raise ConfigError("state.persist_retries must not be negative.")

    def state_dir(self, repo_root: Path) -> Path:
        directory = Path(self.state.directory)
        if not directory.is_absolute():
            directory = repo_root / directory
        return directory.resolve()

    def to_dict(self) -> dict:
        return {
            "project": {
                "name": self.project.name,
                "prd_path": self.project.prd_path,
            },
            "agent": {
                "kind": self.agent.kind,
                "binary": self.agent.binary,
                "model": self.agent.model,
                "command": list(self.agent.command),
                "require_completion_signal": self.agent.require_completion_signal,
            },
            "loop": {
                "concurrency_limit": self.loop.concurrency_limit,
                "max_attempts_per_item": self.loop.max_attempts_per_item,
                "per_attempt_timeout_seconds": self.loop.per_attempt_timeout_seconds,
                "dispatch_order": self.loop.dispatch_order,
                "block_after_consecutive_crashes": self.loop.block_after_consecutive_crashes,
                "halt_after_failed_items": self.loop.halt_after_failed_items,
            },
            "state": {
                "directory": self.state.directory,
                "persist_retries": self.state.persist_retries,
                "persist_backoff_seconds": self.state.persist_backoff_seconds,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0")
        return rendered + "0" if rendered.endswith(".") else rendered
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: TrinityConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in ("project", "agent", "loop", "state"):
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> TrinityConfig:
    if not path.exists():
        return TrinityConfig.default()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"{path.name} is not valid TOML: {exc}") from exc
    return TrinityConfig.from_dict(data)


def save_config(path: Path, config: TrinityConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
