from __future__ import annotations

import json
import os
import threading
from collections import defaultdict
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

from trinity.agents.base import Outcome, OutcomeKind
from trinity.state.store import CorruptStateError, StateIOError, utcnow_iso


@dataclass(frozen=True, slots=True)
class Attempt:
    work_item_id: str
    started_at: str
    ended_at: str | None = None
    outcome: OutcomeKind | None = None
    diagnostic: str = ""
    exit_code: int | None = None
    sequence_number: int = 0

    @classmethod
    def begin(cls, work_item_id: str) -> Attempt:
        return cls(work_item_id=work_item_id, started_at=utcnow_iso())

    def seal(self, outcome: Outcome) -> Attempt:
        return replace(
            self,
            ended_at=utcnow_iso(),
            outcome=outcome.kind,
            diagnostic=outcome.diagnostic[:2000],
            exit_code=outcome.exit_code,
        )

    @property
    def sealed(self) -> bool:
        return self.outcome is not None and self.ended_at is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "work_item_id": self.work_item_id,
            "sequence_number": self.sequence_number,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "outcome": self.outcome.value if self.outcome else None,
            "diagnostic": self.diagnostic,
            "exit_code": self.exit_code,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Attempt:
        try:
            return cls(
                work_item_id=str(payload["work_item_id"]),
                sequence_number=int(payload["sequence_number"]),
                started_at=str(payload["started_at"]),
                ended_at=str(payload["ended_at"]),
                outcome=OutcomeKind(payload["outcome"]),
                diagnostic=str(payload.get("diagnostic") or ""),
                exit_code=payload.get("exit_code"),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise CorruptStateError(f"Invalid attempt record: {payload!r}") from exc


class AttemptLedger:
    """Append-only attempt history stored as JSON Lines."""

    FILE_NAME = "attempts.jsonl"

    def __init__(self, state_dir: Path) -> None:
        self.path = state_dir.resolve() / self.FILE_NAME
        self._attempts: list[Attempt] = []
        self._by_item: dict[str, list[Attempt]] = defaultdict(list)
        self._lock = threading.Lock()

    def load(self) -> None:
        attempts: list[Attempt] = []
        by_item: dict[str, list[Attempt]] = defaultdict(list)
        if self.path.exists():
            try:
                lines = self.path.read_text(encoding="utf-8").splitlines()
            except OSError as exc:
                raise StateIOError(f"Cannot read {self.path}: {exc}") from exc
            for number, line in enumerate(lines, start=1):
                if not line.strip():
                    continue
                try:
                    payload = json.loads(line)
                except json.JSONDecodeError as exc:
                    raise CorruptStateError(
                        f"{self.path.name} line {number} is not valid JSON."
                    ) from exc
                if not isinstance(payload, dict):
                    raise CorruptStateError(f"{self.path.name} line {number} is not an object.")
                attempt = Attempt.from_dict(payload)
                expected = len(by_item[attempt.work_item_id]) + 1
                if attempt.sequence_number != expected:
                    raise CorruptStateError(
                        f"Attempt sequence for {attempt.work_item_id} jumps to "
                        f"{attempt.sequence_number} (expected {expected})."
                    )
                attempts.append(attempt)
                by_item[attempt.work_item_id].append(attempt)
        with self._lock:
            self._attempts = attempts
            self._by_item = by_item

    def _append_line(self, attempt: Attempt) -> None:
        line = json.dumps(attempt.to_dict(), ensure_ascii=False) + "\n"
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(line)
                handle.flush()
                os.fsync(handle.fileno())
        except OSError as exc:
            raise StateIOError(f"Cannot append to {self.path}: {exc}") from exc

    def record(self, attempt: Attempt) -> Attempt:
        if not attempt.sealed:
            raise ValueError(f"Attempt for {attempt.work_item_id} must be sealed before recording.")
        with self._lock:
            numbered = replace(
                attempt,
                sequence_number=len(self._by_item[attempt.work_item_id]) + 1,
            )
            self._append_line(numbered)
            self._attempts.append(numbered)
            self._by_item[numbered.work_item_id].append(numbered)
            return numbered

    def history(self, work_item_id: str) -> list[Attempt]:
        with self._lock:
            return list(self._by_item.get(work_item_id, []))

    def all(self) -> list[Attempt]:
        with self._lock:
            return list(self._attempts)

    def counts(self) -> dict[str, int]:
        with self._lock:
            return {item_id: len(items) for item_id, items in self._by_item.items() if items}
