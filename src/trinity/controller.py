from __future__ import annotations

import asyncio
from collections.abc import Callable
from enum import StrEnum
from typing import Any, Protocol

from trinity.agents.base import Outcome
from trinity.policy import LoopPolicy
from trinity.state.backlog import BacklogStore, WorkItem, WorkItemState
from trinity.state.ledger import Attempt, AttemptLedger
from trinity.state.store import StateIOError

ControllerEventHook = Callable[[dict[str, Any]], None]


class RunStatus(StrEnum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    HALTED = "halted"
    CANCELLED = "cancelled"


class Runner(Protocol):
    async def run(self, item: WorkItem, timeout: float) -> Outcome: ...


class LoopController:
    """Single coordinating task that owns every work item transition.

    Agent invocations run as child tasks and only hand back an ``Outcome``;
    ledger writes, state changes and persistence happen here, one completion
    at a time.
    """

    def __init__(
        self,
        backlog: BacklogStore,
        ledger: AttemptLedger,
        runner: Runner,
        policy: LoopPolicy,
        *,
        event_hook: ControllerEventHook | None = None,
    ) -> None:
        self.backlog = backlog
        self.ledger = ledger
        self.runner = runner
        self.policy = policy
        self.event_hook = event_hook
        self._cancel_requested = False
        self._halt_reason: str | None = None
        self._terminal_failures = 0
        self._in_flight: dict[asyncio.Task[tuple[Attempt, Outcome]], str] = {}

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested

    @property
    def halt_reason(self) -> str | None:
        return self._halt_reason

    @property
    def in_flight_ids(self) -> list[str]:
        return sorted(self._in_flight.values())

    def request_cancel(self) -> None:
        if not self._cancel_requested:
            self._cancel_requested = True
            self._emit({"event": "run_cancel_requested", "in_flight": self.in_flight_ids})

    def request_halt(self, reason: str) -> None:
        if self._halt_reason is None:
            self._halt_reason = reason
            self._emit({"event": "run_halted", "reason": reason, "in_flight": self.in_flight_ids})

    def _stopping(self) -> bool:
        return self._cancel_requested or self._halt_reason is not None

    async def _execute(self, item: WorkItem) -> tuple[Attempt, Outcome]:
        attempt = Attempt.begin(item.id)
        try:
            outcome = await self.runner.run(item, self.policy.per_attempt_timeout)
        except Exception as exc:
            # A runner that raises is classified like a crashed agent so the run keeps going.
            self._emit({"event": "runner_error", "item_id": item.id, "error": str(exc)})
            outcome = Outcome.crashed(-1, f"runner error: {exc}")
        return attempt, outcome

    async def _persist_backlog(self) -> bool:
        try:
            await self.policy.io_retry.call(self.backlog.persist, on_retry=self._emit)
        except StateIOError as exc:
            self.request_halt(f"backlog persistence failed: {exc}")
            return False
        return True

    async def _dispatch(self) -> int:
        free_slots = self.policy.concurrency_limit - len(self._in_flight)
        if free_slots <= 0:
            return 0
        candidates = self.policy.order_for_dispatch(self.backlog.list_eligible())
        dispatched = 0
        for candidate in candidates[:free_slots]:
            item = self.backlog.transition(candidate.id, WorkItemState.IN_PROGRESS)
            task = asyncio.create_task(self._execute(item), name=f"trinity-item-{item.id}")
            self._in_flight[task] = item.id
            dispatched += 1
            self._emit(
                {
                    "event": "item_dispatched",
                    "item_id": item.id,
                    "attempt": item.attempt_count,
                    "in_flight": len(self._in_flight),
                }
            )
        if dispatched:
            await self._persist_backlog()
        return dispatched

    async def _complete(self, item_id: str, attempt: Attempt, outcome: Outcome) -> None:
        try:
            recorded = await self.policy.io_retry.call(
                lambda: self.ledger.record(attempt.seal(outcome)),
                on_retry=self._emit,
            )
        except StateIOError as exc:
            self.request_halt(f"attempt ledger write failed for {item_id}: {exc}")
            return

        item = self.backlog.get(item_id)
        history = self.ledger.history(item_id)
        next_state = self.policy.next_state(item, outcome, history)
        updated = self.backlog.transition(
            item_id,
            next_state,
            outcome=outcome.kind.value,
            diagnostic=outcome.diagnostic,
        )
        self._emit(
            {
                "event": "attempt_recorded",
                "item_id": item_id,
                "sequence_number": recorded.sequence_number,
                "outcome": outcome.kind.value,
                "state": updated.state.value,
            }
        )
        await self._persist_backlog()

        if updated.state in {WorkItemState.FAILED, WorkItemState.BLOCKED}:
            self._terminal_failures += 1
            threshold = self.policy.halt_after_failed_items
            if threshold and self._terminal_failures >= threshold:
                self.request_halt(
                    f"{self._terminal_failures} item(s) ended failed or blocked "
                    f"(limit {threshold})"
                )

    async def run(self) -> RunStatus:
        self._emit(
            {
                "event": "loop_start",
                "concurrency_limit": self.policy.concurrency_limit,
                "max_attempts_per_item": self.policy.max_attempts_per_item,
                "dispatch_order": self.policy.dispatch_order,
            }
        )
        try:
            while True:
                if not self._stopping():
                    await self._dispatch()
                if not self._in_flight:
                    break
                done, _ = await asyncio.wait(
                    list(self._in_flight), return_when=asyncio.FIRST_COMPLETED
                )
                for task in sorted(done, key=lambda finished: self._in_flight[finished]):
                    item_id = self._in_flight.pop(task)
                    attempt, outcome = task.result()
                    await self._complete(item_id, attempt, outcome)
        finally:
            if self._in_flight:
                for task in self._in_flight:
                    task.cancel()
                await asyncio.gather(*self._in_flight, return_exceptions=True)
                self._in_flight.clear()

        if self._halt_reason is not None:
            status = RunStatus.HALTED
        elif self._cancel_requested:
            status = RunStatus.CANCELLED
        else:
            status = RunStatus.COMPLETED
        self._emit({"event": "loop_end", "status": status.value, "counts": self.backlog.counts()})
        return status
