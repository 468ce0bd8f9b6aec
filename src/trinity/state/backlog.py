from __future__ import annotations

import threading
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from enum import StrEnum
from typing import Any

from trinity.state.store import CorruptStateError, JsonStateStore, StateError, utcnow_iso


class InvalidTransitionError(StateError):
    """Raised when a work item state change violates the state machine."""


class WorkItemNotFoundError(StateError):
    """Raised when a work item id is not in the backlog."""


class DuplicateWorkItemError(StateError):
    """Raised when adding a work item whose id already exists."""


class WorkItemState(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    BLOCKED = "blocked"


TERMINAL_STATES = frozenset(
    {WorkItemState.SUCCEEDED, WorkItemState.FAILED, WorkItemState.BLOCKED}
)

TRANSITIONS: dict[WorkItemState, frozenset[WorkItemState]] = {
    WorkItemState.PENDING: frozenset({WorkItemState.IN_PROGRESS}),
    WorkItemState.IN_PROGRESS: frozenset(
        {
            WorkItemState.SUCCEEDED,
            WorkItemState.PENDING,
            WorkItemState.FAILED,
            WorkItemState.BLOCKED,
        }
    ),
    WorkItemState.SUCCEEDED: frozenset(),
    WorkItemState.FAILED: frozenset(),
    WorkItemState.BLOCKED: frozenset(),
}


@dataclass(frozen=True, slots=True)
class WorkItem:
    id: str
    description: str
    title: str = ""
    state: WorkItemState = WorkItemState.PENDING
    attempt_count: int = 0
    depends_on: tuple[str, ...] = ()
    position: int = 0
    created_at: str = field(default_factory=utcnow_iso)
    updated_at: str | None = None
    last_outcome: str | None = None
    last_diagnostic: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "state": self.state.value,
            "attempt_count": self.attempt_count,
            "depends_on": list(self.depends_on),
            "position": self.position,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "last_outcome": self.last_outcome,
            "last_diagnostic": self.last_diagnostic,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> WorkItem:
        item_id = payload.get("id")
        if not isinstance(item_id, str) or not item_id.strip():
            raise CorruptStateError(f"Work item has an invalid id: {item_id!r}")
        try:
            state = WorkItemState(payload.get("state", WorkItemState.PENDING.value))
        except ValueError as exc:
            raise CorruptStateError(
                f"Work item {item_id} has unknown state {payload.get('state')!r}"
            ) from exc
        attempt_count = payload.get("attempt_count", 0)
        if not isinstance(attempt_count, int) or attempt_count < 0:
            raise CorruptStateError(f"Work item {item_id} has invalid attempt_count.")
        depends_on = payload.get("depends_on", [])
        if not isinstance(depends_on, list) or not all(isinstance(dep, str) for dep in depends_on):
            raise CorruptStateError(f"Work item {item_id} has invalid depends_on.")
        if item_id in depends_on:
            raise CorruptStateError(f"Work item {item_id} depends on itself.")
        position = payload.get("position", 0)
        if not isinstance(position, int):
            raise CorruptStateError(f"Work item {item_id} has invalid position.")
        return cls(
            id=item_id,
            title=str(payload.get("title") or ""),
            description=str(payload.get("description") or ""),
            state=state,
            attempt_count=attempt_count,
            depends_on=tuple(dict.fromkeys(depends_on)),
            position=position,
            created_at=str(payload.get("created_at") or utcnow_iso()),
            updated_at=payload.get("updated_at"),
            last_outcome=payload.get("last_outcome"),
            last_diagnostic=str(payload.get("last_diagnostic") or ""),
        )


class BacklogStore:
    """Durable id -> WorkItem mapping; the only mutation path for item state.

    Every read returns immutable snapshots. All mutations run under one lock so
    the ``pending -> in_progress`` claim is exclusive across callers.
    """

    NAMESPACE = "backlog"

    def __init__(self, state: JsonStateStore) -> None:
        self.state = state
        self._items: dict[str, WorkItem] = {}
        self._lock = threading.RLock()

    def load(self) -> None:
        payload = self.state.get_json(self.NAMESPACE, default={"items": []})
        if not isinstance(payload, dict) or not isinstance(payload.get("items"), list):
            raise CorruptStateError("Backlog document must contain an 'items' list.")
        items: dict[str, WorkItem] = {}
        for raw in payload["items"]:
            if not isinstance(raw, dict):
                raise CorruptStateError("Backlog entries must be objects.")
            item = WorkItem.from_dict(raw)
            if item.id in items:
                raise CorruptStateError(f"Duplicate work item id in backlog: {item.id}")
            items[item.id] = item
        with self._lock:
            self._items = items

    def persist(self) -> None:
        with self._lock:
            payload = {"items": [item.to_dict() for item in self._ordered()]}
        self.state.set_json(self.NAMESPACE, payload)

    def _ordered(self) -> list[WorkItem]:
        return sorted(self._items.values(), key=lambda item: (item.position, item.id))

    def add(
        self,
        item_id: str,
        description: str,
        *,
        title: str = "",
        depends_on: Iterable[str] = (),
        completed: bool = False,
    ) -> WorkItem:
        """Append a new item; ``completed`` records work delivered before the backlog existed."""
        item_id = item_id.strip()
        if not item_id:
            raise StateError("Work item id must not be empty.")
        dependencies = tuple(dict.fromkeys(dep.strip() for dep in depends_on if dep.strip()))
        if item_id in dependencies:
            raise StateError(f"Work item {item_id} cannot depend on itself.")
        with self._lock:
            if item_id in self._items:
                raise DuplicateWorkItemError(f"Work item already exists: {item_id}")
            position = max((item.position for item in self._items.values()), default=-1) + 1
            item = WorkItem(
                id=item_id,
                title=title,
                description=description,
                depends_on=dependencies,
                position=position,
            )
            if completed:
                item = replace(
                    item,
                    state=WorkItemState.SUCCEEDED,
                    updated_at=item.created_at,
                    last_diagnostic="completed before import",
                )
            self._items[item_id] = item
            return item

    def get(self, item_id: str) -> WorkItem:
        with self._lock:
            try:
                return self._items[item_id]
            except KeyError as exc:
                raise WorkItemNotFoundError(f"Work item not found: {item_id}") from exc

    def items(self) -> list[WorkItem]:
        with self._lock:
            return self._ordered()

    def __len__(self) -> int:
        return len(self._items)

    def _dependencies_met(self, item: WorkItem) -> bool:
        for dep_id in item.depends_on:
            dependency = self._items.get(dep_id)
            if dependency is None or dependency.state is not WorkItemState.SUCCEEDED:
                return False
        return True

    def list_eligible(self) -> list[WorkItem]:
        with self._lock:
            return [
                item
                for item in self._ordered()
                if item.state is WorkItemState.PENDING and self._dependencies_met(item)
            ]

    def transition(
        self,
        item_id: str,
        new_state: WorkItemState,
        *,
        outcome: str | None = None,
        diagnostic: str = "",
    ) -> WorkItem:
        with self._lock:
            item = self.get(item_id)
            if new_state not in TRANSITIONS[item.state]:
                raise InvalidTransitionError(
                    f"Work item {item_id} cannot move from {item.state.value} to {new_state.value}."
                )
            changes: dict[str, Any] = {"state": new_state, "updated_at": utcnow_iso()}
            if new_state is WorkItemState.IN_PROGRESS:
                if not self._dependencies_met(item):
                    raise InvalidTransitionError(
                        f"Work item {item_id} has unmet dependencies and cannot be dispatched."
                    )
                changes["attempt_count"] = item.attempt_count + 1
            if outcome is not None:
                changes["last_outcome"] = outcome
                changes["last_diagnostic"] = diagnostic[:2000]
            updated = replace(item, **changes)
            self._items[item_id] = updated
            return updated

    def in_progress_count(self) -> int:
        with self._lock:
            return sum(1 for item in self._items.values() if item.state is WorkItemState.IN_PROGRESS)

    def counts(self) -> dict[str, int]:
        with self._lock:
            counts = {state.value: 0 for state in WorkItemState}
            for item in self._items.values():
                counts[item.state.value] += 1
            return counts

    def unknown_dependencies(self) -> dict[str, list[str]]:
        with self._lock:
            missing: dict[str, list[str]] = {}
            for item in self._ordered():
                unknown = [dep for dep in item.depends_on if dep not in self._items]
                if unknown:
                    missing[item.id] = unknown
            return missing

    def dependency_blocked(self) -> dict[str, list[str]]:
        """Pending items that can never become eligible, with the deps holding them.

        A dependency holds an item back when it is unknown, failed, blocked,
        part of a cycle, or itself held back.
        """
        with self._lock:
            ordered = self._ordered()
            viable = {item.id for item in ordered if item.state is WorkItemState.SUCCEEDED}
            changed = True
            while changed:
                changed = False
                for item in ordered:
                    if item.id in viable or item.state not in {
                        WorkItemState.PENDING,
                        WorkItemState.IN_PROGRESS,
                    }:
                        continue
                    if all(dep_id in viable for dep_id in item.depends_on):
                        viable.add(item.id)
                        changed = True
            return {
                item.id: [dep_id for dep_id in item.depends_on if dep_id not in viable]
                for item in ordered
                if item.state is WorkItemState.PENDING and item.id not in viable
            }

    def dependency_cycles(self) -> list[list[str]]:
        with self._lock:
            ordered = self._ordered()
            visiting: list[str] = []
            done: set[str] = set()
            cycles: list[list[str]] = []

            def _visit(item_id: str) -> None:
                if item_id in done or item_id not in self._items:
                    return
                if item_id in visiting:
                    cycles.append(visiting[visiting.index(item_id):] + [item_id])
                    return
                visiting.append(item_id)
                for dep_id in self._items[item_id].depends_on:
                    _visit(dep_id)
                visiting.pop()
                done.add(item_id)

            for item in ordered:
                _visit(item.id)
            return cycles

    def recover_in_flight(self, attempt_counts: Mapping[str, int]) -> list[str]:
        """Return items left behind by an interrupted process to ``pending``.

        ``in_progress`` items and ``pending`` items whose recorded attempts
        outran the last backlog write get their ``attempt_count`` realigned
        with the ledger. Any other disagreement is corruption.
        """
        recovered: list[str] = []
        with self._lock:
            for item in self._ordered():
                recorded = int(attempt_counts.get(item.id, 0))
                lagging = item.state is WorkItemState.PENDING and item.attempt_count < recorded
                if item.state is WorkItemState.IN_PROGRESS or lagging:
                    if item.attempt_count > recorded + 1:
                        raise CorruptStateError(
                            f"Work item {item.id} claims {item.attempt_count} attempts but the "
                            f"ledger holds {recorded}."
                        )
                    self._items[item.id] = replace(
                        item,
                        state=WorkItemState.PENDING,
                        attempt_count=recorded,
                        updated_at=utcnow_iso(),
                    )
                    recovered.append(item.id)
                elif item.attempt_count != recorded:
                    raise CorruptStateError(
                        f"Work item {item.id} records {item.attempt_count} attempts but the "
                        f"ledger holds {recorded}."
                    )
        return recovered

    def resolve_recovered(
        self,
        item_id: str,
        new_state: WorkItemState,
        *,
        outcome: str | None = None,
        diagnostic: str = "",
    ) -> WorkItem:
        """Apply the routing a recorded attempt never got persisted for."""
        with self._lock:
            item = self.get(item_id)
            if item.state is not WorkItemState.PENDING or new_state not in TERMINAL_STATES:
                raise InvalidTransitionError(
                    f"Work item {item_id} cannot be resolved from {item.state.value} "
                    f"to {new_state.value}."
                )
            updated = replace(
                item,
                state=new_state,
                updated_at=utcnow_iso(),
                last_outcome=outcome,
                last_diagnostic=diagnostic[:2000],
            )
            self._items[item_id] = updated
            return updated
