from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from trinity.state.backlog import BacklogStore, WorkItem, WorkItemState
from trinity.state.ledger import Attempt, AttemptLedger


@dataclass(slots=True)
class ItemReport:
    item: WorkItem
    attempts: list[Attempt]
    waiting_on: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        payload = {
            "id": self.item.id,
            "title": self.item.title,
            "state": self.item.state.value,
            "attempt_count": self.item.attempt_count,
            "last_outcome": self.item.last_outcome,
            "last_diagnostic": self.item.last_diagnostic,
            "attempts": [attempt.to_dict() for attempt in self.attempts],
        }
        if self.waiting_on:
            payload["waiting_on"] = list(self.waiting_on)
        return payload


@dataclass(slots=True)
class RunReport:
    run_id: str
    status: str
    started_at: str | None
    ended_at: str | None
    counts: dict[str, int]
    failed: list[ItemReport] = field(default_factory=list)
    blocked: list[ItemReport] = field(default_factory=list)
    dependency_blocked: list[ItemReport] = field(default_factory=list)
    halt_reason: str | None = None

    @property
    def has_failures(self) -> bool:
        return bool(self.failed or self.blocked or self.dependency_blocked)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "status": self.status,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "counts": dict(self.counts),
            "halt_reason": self.halt_reason,
            "failed": [entry.to_dict() for entry in self.failed],
            "blocked": [entry.to_dict() for entry in self.blocked],
            "dependency_blocked": [entry.to_dict() for entry in self.dependency_blocked],
        }


def build_report(
    backlog: BacklogStore,
    ledger: AttemptLedger,
    *,
    run_id: str,
    status: str,
    started_at: str | None = None,
    ended_at: str | None = None,
    halt_reason: str | None = None,
) -> RunReport:
    waiting = backlog.dependency_blocked()
    report = RunReport(
        run_id=run_id,
        status=status,
        started_at=started_at,
        ended_at=ended_at,
        counts=backlog.counts(),
        halt_reason=halt_reason,
    )
    for item in backlog.items():
        if item.state is WorkItemState.FAILED:
            report.failed.append(ItemReport(item, ledger.history(item.id)))
        elif item.state is WorkItemState.BLOCKED:
            report.blocked.append(ItemReport(item, ledger.history(item.id)))
        elif item.id in waiting:
            report.dependency_blocked.append(
                ItemReport(item, ledger.history(item.id), waiting_on=waiting[item.id])
            )
    return report
